"""
Robust JSON extraction from LLM response text.
"""

import json
import re

_CODE_BLOCK_RE = re.compile(r'```(?:json)?\s*([\[{].*?[\]}])\s*```', re.DOTALL)
_OBJECT_RE = re.compile(r'\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}', re.DOTALL)


def extract_json(text: str):
    """
    Extract the first JSON value from LLM output.

    Handles markdown code blocks, leading/trailing prose, and objects
    embedded in text. Raises json.JSONDecodeError when nothing parses.
    """
    text = text.strip()

    # Method 1: direct parse
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    # Method 2: fenced code block
    for match in _CODE_BLOCK_RE.findall(text):
        try:
            return json.loads(match)
        except json.JSONDecodeError:
            continue

    # Method 3: embedded objects, longest first
    for match in sorted(_OBJECT_RE.findall(text), key=len, reverse=True):
        try:
            return json.loads(match)
        except json.JSONDecodeError:
            continue

    # Method 4: outermost brackets
    for open_ch, close_ch in (("{", "}"), ("[", "]")):
        try:
            start = text.index(open_ch)
            end = text.rindex(close_ch) + 1
            return json.loads(text[start:end])
        except (ValueError, json.JSONDecodeError):
            continue

    raise json.JSONDecodeError(f"Could not extract valid JSON from text: {text[:200]}...", text, 0)
