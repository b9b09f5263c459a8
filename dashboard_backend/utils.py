import json
import math
import re
from typing import Any, Dict, List, Optional

CHART_VALUE_LIMIT = 1e12
CHART_LABEL_LIMIT = 80

_FENCE_RE = re.compile(r"```(?:json|JSON)?")


def strip_code_fences(text: str) -> str:
    """Purpose: Remove markdown code-fence markers around model output.
    Inputs/Outputs: Input is raw model text; output is the text without ``` markers.
    Side Effects / State: None; pure function.
    Dependencies: Uses a regex; called before JSON parsing of text-provider output.
    Failure Modes: Returns an empty string for falsy input.
    If Removed: Fenced JSON replies degrade to chat widgets instead of being parsed.
    Testing Notes: "```json\\n{...}\\n```" must come back as "{...}".
    """
    # Drop every fence marker and trim surrounding whitespace.
    if not text:
        return ""
    return _FENCE_RE.sub("", text).strip()


def extract_json_block(text: str) -> Optional[str]:
    """Purpose: Extract the first JSON object or array block from an arbitrary string.
    Inputs/Outputs: Input is a raw string; output is the JSON substring or None.
    Side Effects / State: None; pure function.
    Dependencies: None beyond built-ins; used by parse_model_json.
    Failure Modes: Returns None if brackets are missing or inverted.
    If Removed: Replies with chatter around the JSON cannot be parsed.
    Testing Notes: Provide strings with extra text before/after JSON and ensure extraction.
    """
    # Pick whichever opener appears first and match it with the last closer.
    if not text:
        return None
    candidates = []
    for opener, closer in (("{", "}"), ("[", "]")):
        start = text.find(opener)
        end = text.rfind(closer)
        if start != -1 and end > start:
            candidates.append((start, end))
    if not candidates:
        return None
    start, end = min(candidates)
    return text[start : end + 1]


def parse_model_json(text: str) -> Optional[Any]:
    """Purpose: Parse a JSON object/array from model output text safely.
    Inputs/Outputs: Input is raw text; output is the parsed value or None.
    Side Effects / State: None; pure function.
    Dependencies: Uses strip_code_fences, extract_json_block, and json.loads.
    Failure Modes: Returns None when no parseable JSON is found.
    If Removed: Text providers cannot trigger tools or return widgets.
    Testing Notes: Validate fenced JSON parses and prose returns None.
    """
    # Try the fence-stripped text first, then the extracted bracket block.
    cleaned = strip_code_fences(text)
    if not cleaned:
        return None
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    block = extract_json_block(cleaned)
    if not block:
        return None
    try:
        return json.loads(block)
    except json.JSONDecodeError:
        return None


def to_finite_float(value: Any) -> Optional[float]:
    """Return value as a finite float, or None for bools, non-numbers, NaN and infinities."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def sanitize_chart_data(data: Any) -> List[Dict[str, Any]]:
    """Purpose: Clean chart points before validation.
    Inputs/Outputs: Input is any list of {label, value}; output is a clean list of points.
    Side Effects / State: None; pure function.
    Dependencies: Uses to_finite_float and the CHART_* limits.
    Failure Modes: Non-list input yields an empty list.
    If Removed: A single NaN or 1e20 from the model would fail the whole chart.
    Testing Notes: {X: NaN} is dropped and {Y: 1e20} becomes {Y: 1e12}.
    """
    # Drop non-finite values, clip magnitudes, and cap label length.
    if not isinstance(data, list):
        return []
    cleaned: List[Dict[str, Any]] = []
    for point in data:
        if not isinstance(point, dict):
            continue
        value = to_finite_float(point.get("value"))
        if value is None:
            continue
        label = point.get("label")
        cleaned.append(
            {
                "label": str("" if label is None else label)[:CHART_LABEL_LIMIT],
                "value": max(min(value, CHART_VALUE_LIMIT), -CHART_VALUE_LIMIT),
            }
        )
    return cleaned
