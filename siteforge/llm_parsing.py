from __future__ import annotations

import json
import re
from typing import Any, Optional

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or the trimmed text when unfenced."""
    t = (text or "").strip()
    m = _FENCE_RE.search(t)
    if m:
        return m.group(1).strip()
    # an unterminated fence (truncated output) still starts with ```
    if t.startswith("```json"):
        t = t[7:]
    elif t.startswith("```"):
        t = t[3:]
    if t.endswith("```"):
        t = t[:-3]
    return t.strip()


def object_slice(text: str) -> Optional[str]:
    """Slice from the first ``{`` to the last ``}``; None when no object is present.

    Models wrap JSON in prose, so the outermost braces are located before
    any parse is attempted.
    """
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return text[start : end + 1]


def _repair(candidate: str) -> str:
    s = _TRAILING_COMMA_RE.sub(r"\1", candidate)
    return s.replace("“", '"').replace("”", '"').replace("’", "'")


def extract_json_object(text: str) -> Any:
    """Extract and decode the JSON object embedded in model output; raise ValueError on failure."""
    if not isinstance(text, str) or not text.strip():
        raise ValueError("Empty response from AI")
    candidate = object_slice(strip_code_fences(text))
    if candidate is None:
        raise ValueError("Response is not valid JSON object")
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass
    try:
        return json.loads(_repair(candidate))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Failed to parse AI response as JSON: {exc.msg}") from exc
