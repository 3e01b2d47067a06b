"""
Audit Orchestration Engine
Structured model-output parsing.

Every inference call site turns model text into a typed value through
``try_parse_structured``: parse, validate, and fall back to a documented
default. Model output is untrusted; nothing here raises.
"""

import json
import logging
import re
from typing import Any, TypeVar

from pydantic import TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_FENCE_RE = re.compile(r"^```\w*\n?|\n?```$")
_decoder = json.JSONDecoder()


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_RE.sub("", cleaned).strip()
    return cleaned


def extract_json(text: str) -> Any:
    """
    Return the first JSON object or array embedded in ``text``.

    Raises:
        ValueError: no decodable JSON value was found.
    """
    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    for match in re.finditer(r"[\[{]", cleaned):
        try:
            value, _ = _decoder.raw_decode(cleaned, match.start())
            return value
        except json.JSONDecodeError:
            continue
    raise ValueError("no JSON value found in model output")


def try_parse_structured(text: str | None, schema: Any, fallback: T) -> T:
    """
    Parse model ``text`` and validate it against ``schema``.

    Args:
        text: Raw model output (may be None, fenced, or wrapped in prose).
        schema: Pydantic model class or any type TypeAdapter accepts
            (e.g. ``list[TaskProposal]``).
        fallback: Value returned when parsing or validation fails.

    Returns:
        The validated value, or ``fallback``.
    """
    if not text:
        return fallback
    try:
        raw = extract_json(text)
        return TypeAdapter(schema).validate_python(raw)
    except (ValueError, ValidationError) as e:
        logger.warning("Model output rejected for %s: %s", getattr(schema, "__name__", schema), e)
        return fallback
