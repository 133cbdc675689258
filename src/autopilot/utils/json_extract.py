"""Pull a single JSON object out of free-form model output."""

import json
import re
from typing import Any, Dict, Optional, Tuple

# Greedy: from the first "{" to the last "}" so nested objects survive
_JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")


def extract_json_object(text: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """Return ``(data, None)`` on success or ``(None, reason)`` on failure.

    Only a top-level JSON object is accepted; arrays and scalars count as
    failures so callers can apply their fallback verdict.
    """
    match = _JSON_OBJECT_PATTERN.search(text or "")
    if not match:
        return None, "Could not extract JSON from evaluator response"

    raw = match.group(0)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None, f"Failed to parse evaluator JSON: {text[:200]}"

    if not isinstance(data, dict):
        return None, f"Failed to parse evaluator JSON: {text[:200]}"
    return data, None
