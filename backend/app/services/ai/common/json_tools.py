"""Robust JSON array extraction from LLM responses (brace balancing plus repair)."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

logger = logging.getLogger(__name__)

_TRAILING_COMMA_RE = re.compile(r",(\s*[\]}])")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
_FLAT_OBJECT_RE = re.compile(r"\{[^{}]*\}")

REQUIRED_RECORD_KEYS = ("date", "description", "amount")


def extract_json_array(text: str) -> list[Any]:
    """Extract a JSON array of records from a possibly malformed response.

    Never raises. Stages:
    1. Take the span from the first ``[`` to the last ``]``. No ``[`` at all
       means the response holds no array and ``[]`` is returned. A ``[``
       with no closing ``]`` is treated as a truncated array.
    2. Apply :func:`fix_common_json_issues` and parse.
    3. On failure, or when repair leaves an empty array although the span
       holds objects, run the recovery strategies in order and return the
       first non-empty result.
    4. Otherwise return ``[]``.
    """
    if not text or not text.strip():
        return []

    stripped = text.strip()
    start = stripped.find("[")
    if start == -1:
        logger.warning("No JSON array in response (len=%d)", len(stripped))
        return []

    end = stripped.rfind("]")
    span = stripped[start : end + 1] if end > start else stripped[start:]
    fixed = fix_common_json_issues(span)
    logger.debug("JSON span len=%d, fixed len=%d, changed=%s", len(span), len(fixed), fixed != span)

    try:
        parsed = json.loads(fixed)
    except (json.JSONDecodeError, ValueError) as exc:
        logger.warning("JSON array parse failed (%s); trying recovery strategies", exc)
    else:
        if not isinstance(parsed, list):
            logger.warning("Parsed response is %s, not an array", type(parsed).__name__)
            return []
        if parsed or "{" not in span:
            return parsed
        # Repair emptied a span that still holds objects, e.g. a "]" inside a string value.
        logger.warning("Repaired span parsed to an empty array; trying recovery strategies")

    for strategy in _RECOVERY_STRATEGIES:
        recovered = strategy(stripped)
        if recovered:
            logger.info("Recovered %d records via %s", len(recovered), strategy.__name__)
            return recovered

    logger.warning("All JSON recovery strategies failed (len=%d)", len(stripped))
    return []


def fix_common_json_issues(json_text: str) -> str:
    """Normalise common defects of a JSON array produced by an LLM.

    Returns *json_text* untouched when it already parses. Otherwise strips
    trailing commas and control characters, drops a trailing incomplete
    object and makes sure the text ends with ``]``.
    """
    try:
        json.loads(json_text)
        return json_text
    except (json.JSONDecodeError, ValueError):
        pass

    fixed = _TRAILING_COMMA_RE.sub(r"\1", json_text)
    fixed = _CONTROL_CHARS_RE.sub("", fixed)

    last_open = fixed.rfind("{")
    last_close = fixed.rfind("}")
    if last_open > last_close:
        comma = fixed.rfind(",", 0, last_open)
        if last_close != -1 and comma > last_close:
            fixed = fixed[:comma] + "]"
        elif last_close == -1 and fixed.lstrip().startswith("["):
            # Only an incomplete first object; nothing to keep.
            fixed = "[]"

    fixed = fixed.strip()
    if not fixed.endswith("]"):
        fixed += "]"
    return fixed


def _loads_fixed(candidate: str) -> Any:
    try:
        return json.loads(fix_common_json_issues(candidate))
    except (json.JSONDecodeError, ValueError):
        return None


def _largest_array(text: str) -> list[Any]:
    spans = []
    for i, ch in enumerate(text):
        if ch == "[":
            end = _balanced_end(text, i, "[", "]")
            if end is not None:
                spans.append(text[i : end + 1])

    for span in sorted(spans, key=len, reverse=True):
        parsed = _loads_fixed(span)
        if isinstance(parsed, list) and parsed:
            return parsed
    return []


def _flat_objects(text: str) -> list[Any]:
    records = []
    for match in _FLAT_OBJECT_RE.findall(text):
        parsed = _loads_fixed(match)
        if not isinstance(parsed, dict):
            continue
        if all(parsed.get(key) not in (None, "") for key in REQUIRED_RECORD_KEYS):
            records.append(parsed)
    return records


def _truncated_array(text: str) -> list[Any]:
    start = text.find("[")
    if start == -1:
        return []
    body = text[start:]

    last_close = body.rfind("}")
    if last_close == -1:
        return []
    parsed = _loads_fixed(body[: last_close + 1] + "]")
    if isinstance(parsed, list):
        return parsed

    previous_close = body.rfind("}", 0, last_close)
    if previous_close == -1:
        return []
    parsed = _loads_fixed(body[: previous_close + 1] + "]")
    if isinstance(parsed, list):
        return parsed
    return []


_RECOVERY_STRATEGIES: tuple[Callable[[str], list[Any]], ...] = (
    _largest_array,
    _flat_objects,
    _truncated_array,
)


def _balanced_end(text: str, start: int, open_ch: str, close_ch: str) -> int | None:
    """Return the index closing the bracket opened at *start*, or ``None``."""
    depth = 0
    in_string = False
    escape = False

    for i in range(start, len(text)):
        ch = text[i]

        if escape:
            escape = False
            continue

        if ch == "\\":
            if in_string:
                escape = True
            continue

        if ch == '"':
            in_string = not in_string
            continue

        if in_string:
            continue

        if ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return i

    return None
