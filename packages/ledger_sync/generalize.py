"""Description generalization and match-key helpers.

Bank descriptions mix a stable vendor/purpose part with per-transaction noise
(confirmation numbers, dates, amounts, help-line domains). Rules are keyed on
the stable part, so both learning a rule and looking one up go through
``generalize_description`` + ``normalize_match_key``.

Two ``Generalizer`` implementations exist:

- ``HeuristicGeneralizer``: local regular-expression pass (default).
- ``OpenAIGeneralizer``: asks an OpenAI model through the Responses API with a
  strict JSON schema.

``safe_generalize`` wraps either and falls back to the raw description on any
failure, so categorization never depends on the service being up.
"""

from __future__ import annotations

import json
import re
import threading
import unicodedata
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from openai import OpenAI
from openai.types.responses import ResponseTextConfigParam

from .logging_setup import get_logger

_logger = get_logger("ledger_sync.generalize")

_MONTHS = (
    r"jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|jun(?:e)?|jul(?:y)?|"
    r"aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?"
)

# Order matters: quoted memos and reference codes go first so their digits are
# not half-eaten by the date/amount patterns.
_NOISE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\"[^\"]*\"?|“[^”]*”?"),
    re.compile(
        r"\b(?:conf(?:irmation)?|ref(?:erence)?|invoice|inv|id|trace|auth|txn)\b\.?\s*"
        r"(?:no\.?|num(?:ber)?)?\s*[#:]?\s*[A-Z0-9][A-Z0-9-]*\d[A-Z0-9-]*",
        re.IGNORECASE,
    ),
    re.compile(r"#\s*[A-Z0-9-]*\d[A-Z0-9-]*", re.IGNORECASE),
    re.compile(r"https?://\S+", re.IGNORECASE),
    re.compile(
        r"\b(?:www\.)?[A-Z0-9-]+(?:\.[A-Z0-9-]+)*\.(?:com|net|org|io|co|us|biz|info|app)\b(?:/\S*)?",  # noqa: E501
        re.IGNORECASE,
    ),
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    re.compile(r"\b\d{1,2}[/-]\d{1,2}(?:[/-]\d{2,4})?\b"),
    re.compile(rf"\b(?:{_MONTHS})\.?\s+(?:\d{{1,2}},?\s+)?\d{{4}}\b", re.IGNORECASE),
    re.compile(r"[$€£]\s*\d[\d,]*(?:\.\d{1,2})?"),
    re.compile(r"\b\d[\d,]*\.\d{2}\b"),
    re.compile(r"\b(?=[A-Z0-9]*\d)(?=[A-Z0-9]*[A-Z])[A-Z0-9]{5,}\b", re.IGNORECASE),
    re.compile(r"\b\d{4,}\b"),
)
_TRAILING_PUNCT_RE = re.compile(r"[\s\-*#:/,.|]+$")
_LEADING_PUNCT_RE = re.compile(r"^[\s\-*#:/,.|]+")
_WS_RE = re.compile(r"\s+")
_NON_ALNUM_RE = re.compile(r"[^A-Z0-9]+")


def generalize_description(text: str) -> str:
    """Strip per-transaction noise and keep the vendor/purpose text.

    Examples
    --------
    >>> generalize_description("UBER   TRIP   HELP.UBER.COM")
    'UBER TRIP'
    >>> generalize_description("Zelle payment from Tangy Parson Conf# 0JIZRCX70")
    'Zelle payment from Tangy Parson'

    When everything would be stripped the input (whitespace-collapsed) is
    returned unchanged.
    """

    original = _WS_RE.sub(" ", text or "").strip()
    out = original
    for pattern in _NOISE_PATTERNS:
        out = pattern.sub(" ", out)
    out = _WS_RE.sub(" ", out).strip()
    out = _TRAILING_PUNCT_RE.sub("", out)
    out = _LEADING_PUNCT_RE.sub("", out)
    return out or original


def normalize_match_key(text: str) -> str:
    """Canonical form for rule keys: NFKC, upper case, single spaces."""

    folded = unicodedata.normalize("NFKC", text or "")
    return _WS_RE.sub(" ", folded).strip().upper()


def sanitize_vendor_key(text: str) -> str:
    """Underscore form used by the global vendor map (``"HOME DEPOT"`` → ``"HOME_DEPOT"``)."""

    return _NON_ALNUM_RE.sub("_", normalize_match_key(text)).strip("_")


class Generalizer(Protocol):
    def generalize(self, description: str) -> str: ...


class HeuristicGeneralizer:
    """Local, deterministic generalizer."""

    name = "heuristic"

    def generalize(self, description: str) -> str:
        return generalize_description(description)


# ---- OpenAI-backed generalizer -----------------------------------------------

_INSTRUCTIONS = (
    "You normalize bank transaction descriptions for rule matching. Remove "
    "confirmation or reference numbers, invoice ids, dates, amounts, URLs, help "
    "line domains and long alphanumeric codes. Keep the vendor or counterparty "
    "name and the purpose words. Never invent text that is not in the input."
)

_TEXT_CFG: ResponseTextConfigParam = {
    "format": {
        "type": "json_schema",
        "name": "generalized_description",
        "schema": {
            "type": "object",
            "properties": {"generalized_description": {"type": "string"}},
            "required": ["generalized_description"],
            "additionalProperties": False,
        },
        "strict": True,
    }
}


def _extract_response_json_mapping(resp: Any) -> Mapping[str, Any]:
    """Decode the JSON object from a Responses API result (``output_text`` first)."""

    text: str | None = getattr(resp, "output_text", None)
    if not text:
        try:
            first = resp.output[0] if getattr(resp, "output", None) else None
            content = getattr(first, "content", None)
            if content:
                maybe = getattr(content[0], "text", None)
                text = maybe if isinstance(maybe, str) else None
        except (AttributeError, IndexError, TypeError):
            text = None
    if not text:
        raise ValueError("Unexpected Responses API shape; unable to locate text output")
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError("Model output was not valid JSON per the requested schema") from e
    if not isinstance(decoded, Mapping):
        raise ValueError("Model output was not a JSON object")
    return decoded


class OpenAIGeneralizer:
    """Generalize descriptions with an OpenAI model.

    Results are memoized per input string for the lifetime of the instance; a
    sync run sees the same vendor many times.
    """

    name = "openai"

    def __init__(
        self,
        *,
        model: str = "gpt-5-mini",
        client_factory: Callable[[], Any] = OpenAI,
    ) -> None:
        self._model = model
        self._client_factory = client_factory
        self._client: Any | None = None
        self._memo: dict[str, str] = {}
        self._lock = threading.Lock()

    def _get_client(self) -> Any:
        with self._lock:
            if self._client is None:
                self._client = self._client_factory()
            return self._client

    def generalize(self, description: str) -> str:
        with self._lock:
            hit = self._memo.get(description)
        if hit is not None:
            return hit

        resp = self._get_client().responses.create(
            model=self._model,
            instructions=_INSTRUCTIONS,
            input=description,
            text=_TEXT_CFG,
        )
        decoded = _extract_response_json_mapping(resp)
        value = decoded.get("generalized_description")
        if not isinstance(value, str) or not value.strip():
            raise ValueError("generalized_description missing or blank in model output")
        result = _WS_RE.sub(" ", value).strip()
        with self._lock:
            self._memo[description] = result
        return result


def build_generalizer(name: str, *, model: str = "gpt-5-mini") -> Generalizer:
    if name == "openai":
        return OpenAIGeneralizer(model=model)
    if name == "heuristic":
        return HeuristicGeneralizer()
    raise ValueError(f"unknown generalizer: {name!r}")


def safe_generalize(generalizer: Generalizer | None, description: str) -> tuple[str, bool]:
    """Return ``(match_key, degraded)`` for ``description``.

    ``degraded`` is True when the generalizer failed and the raw description
    was used instead.
    """

    if generalizer is None:
        return normalize_match_key(description), False
    try:
        generalized = generalizer.generalize(description)
    except Exception as e:  # noqa: BLE001
        _logger.warning(
            "generalize:failed generalizer=%s error=%s",
            getattr(generalizer, "name", type(generalizer).__name__),
            e.__class__.__name__,
        )
        return normalize_match_key(description), True
    key = normalize_match_key(generalized)
    if not key:
        return normalize_match_key(description), True
    return key, False


__all__ = [
    "Generalizer",
    "HeuristicGeneralizer",
    "OpenAIGeneralizer",
    "build_generalizer",
    "generalize_description",
    "normalize_match_key",
    "safe_generalize",
    "sanitize_vendor_key",
]
