"""
Input validation and sanitisation for natural-language payloads.
"""

import re
from typing import Any, Optional

from credit_gate.config.loader import InputLimits

from .errors import InvalidInput

FIELD_LABELS = {
    "job_description": "Job description",
    "bullet": "Bullet point",
    "cover_letter": "Cover letter",
    "pasted_message": "Message",
}

_SCRIPT_BLOCK = re.compile(r"<script[^>]*>[\s\S]*?</script>", re.IGNORECASE)
_HTML_TAG = re.compile(r"<[^>]+>")
_JS_SCHEME = re.compile(r"javascript:", re.IGNORECASE)
_INLINE_HANDLER = re.compile(r"on\w+\s*=", re.IGNORECASE)


def validate_text(value: Any, field: str, limits: InputLimits) -> str:
    """Sanitise a required text field and check it against its length bounds.

    Bounds apply to the sanitised text, so markup alone never passes.

    Returns:
        The sanitised text

    Raises:
        InvalidInput: If the value is missing, not a string, or out of bounds
    """
    label = FIELD_LABELS.get(field, field.replace("_", " ").capitalize())
    if not value or not isinstance(value, str):
        raise InvalidInput(f"{label} is required")

    cleaned = sanitize_text(value)
    if not cleaned:
        raise InvalidInput(f"{label} is required")
    limit = limits.get_limit(field)
    if len(cleaned) < limit.min_length:
        raise InvalidInput(f"{label} must be at least {limit.min_length} characters")
    if len(cleaned) > limit.max_length:
        raise InvalidInput(f"{label} must be less than {limit.max_length} characters")
    return cleaned


def validate_optional_text(
    value: Any, name: str, limits: InputLimits, field: str = "short_text"
) -> Optional[str]:
    """Check an optional free-text field; empty values become None."""
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise InvalidInput(f"{name} must be a string")
    cleaned = sanitize_text(value)
    limit = limits.get_limit(field)
    if len(cleaned) > limit.max_length:
        raise InvalidInput(f"{name} must be less than {limit.max_length} characters")
    return cleaned or None


def sanitize_text(text: Any) -> str:
    """Strip script blocks, tags, javascript: URLs and inline handlers."""
    if not text or not isinstance(text, str):
        return ""
    text = _SCRIPT_BLOCK.sub("", text)
    text = _HTML_TAG.sub("", text)
    text = _JS_SCHEME.sub("", text)
    text = _INLINE_HANDLER.sub("", text)
    return text.strip()
