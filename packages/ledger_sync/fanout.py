"""Run one task per bank account of a provider item on a small thread pool.

Each account is still synced sequentially; only different accounts overlap.
Results come back in input order, and a task may return ``SKIP`` to leave its
account out. The first task to raise cancels whatever has not started yet.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import TypeVar

InT = TypeVar("InT")
OutT = TypeVar("OutT")


class _Skip:
    __slots__ = ()

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return "SKIP"


SKIP: object = _Skip()


def fan_out(
    items: Sequence[InT],
    task: Callable[[InT], OutT | object],
    *,
    max_workers: int,
) -> list[OutT]:
    if not isinstance(max_workers, int) or max_workers < 1:
        raise ValueError("max_workers must be a positive integer")
    if not items:
        return []

    workers = min(max_workers, len(items))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ledger-sync") as pool:
        futures = [pool.submit(task, item) for item in items]
        try:
            results = [f.result() for f in futures]
        except BaseException:
            for f in futures:
                f.cancel()
            raise
    return [r for r in results if r is not SKIP]  # type: ignore[misc]


__all__ = ["SKIP", "fan_out"]
