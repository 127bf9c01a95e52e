import threading
import time

import pytest

from ledger_sync.fanout import SKIP, fan_out


def test_preserves_input_order_under_concurrency():
    def slow_inverse(n: int) -> int:
        time.sleep(0.01 * (5 - n))
        return n * 10

    assert fan_out(range(5), slow_inverse, max_workers=5) == [0, 10, 20, 30, 40]


def test_worker_cap_is_respected():
    lock = threading.Lock()
    in_flight = 0
    peak = 0

    def work(_n: int) -> None:
        nonlocal in_flight, peak
        with lock:
            in_flight += 1
            peak = max(peak, in_flight)
        time.sleep(0.01)
        with lock:
            in_flight -= 1

    fan_out(list(range(12)), work, max_workers=3)

    assert 1 <= peak <= 3


def test_skip_drops_items():
    assert fan_out(range(6), lambda n: SKIP if n % 2 else n, max_workers=2) == [0, 2, 4]


def test_first_failure_is_raised_and_unstarted_work_cancelled():
    started: list[int] = []

    def boom(n: int) -> int:
        started.append(n)
        if n == 0:
            raise ValueError("zero")
        time.sleep(0.01)
        return n

    with pytest.raises(ValueError, match="zero"):
        fan_out(range(50), boom, max_workers=1)

    assert len(started) < 50


def test_no_items_needs_no_pool():
    assert fan_out([], lambda n: n, max_workers=4) == []


@pytest.mark.parametrize("bad", [0, -1, 1.5])
def test_rejects_invalid_worker_count(bad):
    with pytest.raises(ValueError):
        fan_out([1], lambda n: n, max_workers=bad)
