"""Shared utility functions used across concierge modules."""
from __future__ import annotations

import json
import re
from typing import Any

_MISSING = object()

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first ``{...}`` span in *text* decoded as JSON, or None.

    Greedy match from the first ``{`` to the last ``}``, so conversational
    text around a single object is tolerated.
    """
    m = _JSON_OBJECT_RE.search(text or "")
    if not m:
        return None
    parsed = json.loads(m.group(0))
    return parsed if isinstance(parsed, dict) else None
