"""Text processing utilities.

Common text manipulation functions used across modules.
"""

import json
import math
import re
from typing import Any

# Patterns for removing thinking/reasoning blocks from LLM output
THINK_PATTERNS = [
    re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE),
    re.compile(r"<thinking>.*?</thinking>", re.DOTALL | re.IGNORECASE),
    re.compile(r"<analysis>.*?</analysis>", re.DOTALL | re.IGNORECASE),
    re.compile(r"<reasoning>.*?</reasoning>", re.DOTALL | re.IGNORECASE),
]

_NON_KEY_CHARS = re.compile(r"[^a-z0-9]+")


def strip_think(text: str) -> str:
    """Remove thinking/reasoning tags from LLM output.

    Args:
        text: Raw LLM output text

    Returns:
        Cleaned text without thinking artifacts
    """
    result = text
    for pattern in THINK_PATTERNS:
        result = pattern.sub("", result)
    return result.strip()


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence from model output.

    Handles ```json ... ``` and bare ``` ... ``` wrappers. Text without a
    fence is returned stripped but otherwise untouched.

    Args:
        text: Raw LLM output text

    Returns:
        The fenced payload, or the original text stripped
    """
    cleaned = text.strip()
    if cleaned.lower().startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def to_snake_key(label: str) -> str:
    """Turn a display label into a snake_case key.

    "Objection Handling" -> "objection_handling", "Cross-Sell" -> "cross_sell"
    """
    return _NON_KEY_CHARS.sub("_", label.strip().lower()).strip("_")


def key_to_label(key: str) -> str:
    """Turn a snake_case key back into a title-cased label."""
    return " ".join(part.capitalize() for part in key.split("_") if part)


def truncate(text: str, max_len: int = 120) -> str:
    """Truncate text with ellipsis if too long."""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _finite_float(literal: str) -> float | None:
    value = float(literal)
    return value if math.isfinite(value) else None


def loads_finite(text: str) -> Any:
    """json.loads, but NaN, Infinity and overflowing floats load as None."""
    return json.loads(text, parse_constant=lambda _: None, parse_float=_finite_float)


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object out of LLM output.

    Tries the text after removing thinking blocks and a code fence, then an
    embedded fenced block, then the outermost {...} span.

    Raises:
        ValueError: No JSON object could be parsed
    """
    content = strip_code_fences(strip_think(text or ""))
    candidates = [content]

    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)```", content)
    if fenced:
        candidates.append(fenced.group(1).strip())

    start = content.find("{")
    end = content.rfind("}") + 1
    if start >= 0 and end > start:
        candidates.append(content[start:end])

    for candidate in candidates:
        try:
            parsed = loads_finite(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed

    raise ValueError("No JSON object found in LLM output")
