"""
Model Output Parsing

Helpers for turning raw LLM replies into structured values. Models wrap
JSON in markdown fences, prepend ``<think>`` reasoning blocks, or answer
with a bare token instead of the requested object, so parsing is an ordered
chain of small attempts that each return ``None`` on failure.
"""

import json
import logging
import re
from typing import Any, Callable, Iterable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_THINK_OPEN = "<think>"
_THINK_CLOSE = "</think>"


def preview(text: Optional[str], limit: int = 200) -> str:
    """Truncated single-line rendering of a payload for log messages."""
    if not text:
        return ""
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else flat[:limit] + "…"


def strip_think_block(raw: str) -> str:
    """Remove the first ``<think>...</think>`` block, tags included."""
    start = raw.find(_THINK_OPEN)
    if start < 0:
        return raw
    end = raw.find(_THINK_CLOSE, start)
    if end < 0:
        return raw
    return raw[:start] + raw[end + len(_THINK_CLOSE):]


def strip_code_fences(raw: str) -> str:
    return _FENCE_RE.sub("", raw)


def sanitize_model_output(raw: Optional[str]) -> str:
    if not raw:
        return ""
    return strip_code_fences(strip_think_block(raw)).strip()


def looks_like_json(text: str) -> bool:
    return text.startswith("[") or text.startswith("{")


def parse_json_payload(cleaned: str, quiet: bool = False) -> Optional[Any]:
    """Parse an already-sanitized payload, or ``None`` if it is not JSON."""
    if not looks_like_json(cleaned):
        if not quiet:
            logger.warning("Model output is not JSON: %s", preview(cleaned))
        return None
    try:
        return json.loads(cleaned)
    except (json.JSONDecodeError, ValueError) as exc:
        if quiet:
            return None
        logger.warning("Model output JSON parse failed (%s): %s", exc, preview(cleaned))
        return None


def first_success(parsers: Iterable[Callable[[str], Optional[T]]], text: str) -> Optional[T]:
    """Run ``parsers`` in order and return the first non-``None`` result."""
    for parser in parsers:
        result = parser(text)
        if result is not None:
            return result
    return None


def coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes"):
            return True
        if lowered in ("false", "no"):
            return False
    return None
