"""
JSON helpers for untrusted model output.
"""
import json
import re
from typing import Any, Optional

_FENCE_PATTERN = re.compile(r'```(?:json)?\s*\n?(.*?)\n?```', re.DOTALL)
_TRAILING_COMMA = re.compile(r',\s*([}\]])')
_UNQUOTED_KEY = re.compile(r'([{,]\s*)([A-Za-z_][A-Za-z0-9_\-]*)\s*:')
_SINGLE_QUOTED = re.compile(r"'([^'\\]*(?:\\.[^'\\]*)*)'")


def strip_code_fences(content: str) -> str:
    """Return the body of the first markdown code block, or the input unchanged."""
    match = _FENCE_PATTERN.search(content)
    return match.group(1) if match else content


def extract_json(content: str) -> Any:
    """
    Extract JSON from a model response.

    This handles common cases like:
    - JSON wrapped in markdown code blocks
    - JSON with extra text before/after

    Args:
        content: Raw response content

    Returns:
        Parsed JSON

    Raises:
        json.JSONDecodeError: If no valid JSON found
    """
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        pass

    fenced = _FENCE_PATTERN.search(content)
    if fenced:
        try:
            return json.loads(fenced.group(1))
        except json.JSONDecodeError:
            pass

    json_match = re.search(r'\{.*\}', content, re.DOTALL)
    if json_match:
        try:
            return json.loads(json_match.group(0))
        except json.JSONDecodeError:
            pass

    json_match = re.search(r'\[.*\]', content, re.DOTALL)
    if json_match:
        return json.loads(json_match.group(0))

    raise json.JSONDecodeError("No JSON found in content", content, 0)


def fix_json_errors(text: str) -> Optional[Any]:
    """
    Repair common malformed-JSON patterns and parse the result.

    Fixes applied in order until the text parses: code fences, trailing
    commas, unquoted keys, single-quoted strings.

    Args:
        text: Possibly malformed JSON text

    Returns:
        Parsed value, or None if the text still does not parse
    """
    if not isinstance(text, str):
        return None

    candidate = strip_code_fences(text).strip()
    fixes = (
        lambda s: s,
        lambda s: _TRAILING_COMMA.sub(r'\1', s),
        lambda s: _UNQUOTED_KEY.sub(r'\1"\2":', s),
        lambda s: _SINGLE_QUOTED.sub(r'"\1"', s),
    )
    for fix in fixes:
        candidate = fix(candidate)
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None
