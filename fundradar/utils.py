"""Shared utility functions used across FundRadar modules."""
from __future__ import annotations

import json
import math
import re
from typing import Any

_MISSING = object()

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def strip_code_fences(text: str) -> str:
    """Return the body of the first markdown code block, or *text* unchanged."""
    m = _FENCE_RE.search(text)
    return m.group(1) if m else text


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going up (towards +inf)."""
    return math.floor(value + 0.5)


def ensure_scheme(url: str) -> str:
    url = url.strip()
    if not url.startswith(("http://", "https://")):
        url = "https://" + url
    return url
