"""Validators for parsing LLM outputs.

Provides utilities for:
- Extracting JSON from LLM responses (with markdown code blocks)
- Loading the extracted JSON into Python values
"""

import json
import re
from typing import Any

# =============================================================================
# JSON Extraction
# =============================================================================


def extract_json_from_response(response: str) -> str | None:
    """Extract the first JSON value from an LLM response.

    Handles:
    - ```json ... ``` blocks
    - ``` ... ``` blocks (no language specified)
    - Raw JSON embedded in prose (first { or [ matched to its closing bracket)

    Returns:
        Extracted JSON string, or None if no JSON found.
    """
    patterns = [
        r"```json\s*([\s\S]*?)\s*```",
        r"```\s*([\s\S]*?)\s*```",
    ]

    for pattern in patterns:
        for match in re.findall(pattern, response, re.IGNORECASE):
            cleaned = match.strip()
            if cleaned.startswith(("{", "[")):
                return cleaned

    starts = [i for i in (response.find("["), response.find("{")) if i >= 0]
    if not starts:
        return None
    start = min(starts)
    opener = response[start]
    closer = "]" if opener == "[" else "}"
    return _extract_balanced(response[start:], opener, closer)


def _extract_balanced(text: str, open_char: str, close_char: str) -> str | None:
    """Return the prefix of text up to the bracket closing the first one."""
    depth = 0
    in_string = False
    escape = False

    for i, char in enumerate(text):
        if escape:
            escape = False
            continue
        if char == "\\":
            escape = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == open_char:
            depth += 1
        elif char == close_char:
            depth -= 1
            if depth == 0:
                return text[: i + 1]

    return None


def parse_json_response(response: str) -> Any:
    """Extract and decode JSON from a response.

    Raises:
        ValueError: if no JSON value is present or it does not decode.
    """
    payload = extract_json_from_response(response)
    if payload is None:
        raise ValueError("No JSON found in response")
    try:
        return json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in response: {e}") from e
