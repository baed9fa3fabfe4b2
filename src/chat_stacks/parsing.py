"""Repair-tolerant decoding of JSON objects embedded in oracle replies."""

from __future__ import annotations

import json
import re
from typing import Any

_CODE_FENCE_OPEN = re.compile(r"```json\s*", re.IGNORECASE)
_CODE_FENCE = re.compile(r"```\s*")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_BARE_KEY = re.compile(r"([{,]\s*)(\w+)(\s*:)")


class OracleResponseParseError(ValueError):
    """Raised when an oracle reply does not contain a recoverable JSON object."""


def parse_json_object(text: str) -> dict[str, Any]:
    """Extract and decode the outermost JSON object from free-form oracle text.

    Code fences are stripped first. When strict decoding fails, trailing commas are
    removed and bare keys are quoted before a second attempt.
    """

    cleaned = _CODE_FENCE.sub("", _CODE_FENCE_OPEN.sub("", text or "")).strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end == -1 or end < start:
        raise OracleResponseParseError(f"No JSON object found in response: {text[:500]!r}")

    candidate = cleaned[start : end + 1]
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as exc:
        repaired = _BARE_KEY.sub(r'\1"\2"\3', _TRAILING_COMMA.sub(r"\1", candidate))
        try:
            payload = json.loads(repaired)
        except json.JSONDecodeError:
            raise OracleResponseParseError(
                f"JSON parse error: {exc}. Extracted JSON: {candidate[:1000]}"
            ) from exc

    if not isinstance(payload, dict):
        raise OracleResponseParseError(f"Expected JSON object, got {type(payload).__name__}.")
    return payload
