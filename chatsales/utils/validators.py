# chatsales/utils/validators.py
"""
Format checks used before the semantic validator runs.

These are deliberately cheap: the model-backed check decides meaning, these
only decide whether a value is shaped like an email or a phone number.
"""

import re
from typing import Optional, Tuple

from chatsales.config import settings
from chatsales.utils.logger import logger


# ==================== Email ====================

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def validate_email_format(email: Optional[str]) -> Tuple[bool, Optional[str]]:
    """
    Returns:
        (is_valid, error_message)
    """
    if not email or not email.strip():
        return False, "Email address is required"
    if not EMAIL_PATTERN.match(email.strip()):
        return False, "That doesn't look like a valid email address"
    return True, None


# ==================== Phone ====================

PHONE_MIN_LENGTH = 5


def validate_phone_format(phone: Optional[str]) -> Tuple[bool, Optional[str]]:
    """
    Lenient phone check: any value with at least one digit and five or more
    characters. International formats, extensions and spacing all pass.
    """
    if not phone or not phone.strip():
        return False, "Phone number is required"
    value = phone.strip()
    if not re.search(r"\d", value):
        return False, "Phone number should contain digits"
    if len(value) < PHONE_MIN_LENGTH:
        return False, "Phone number looks too short"
    return True, None


# ==================== Text ====================

def sanitize_text(value: Optional[str], max_length: Optional[int] = None) -> str:
    """Remove control characters and cap length for stored chat text."""
    if not value:
        return ""
    limit = max_length or settings.MAX_MESSAGE_LENGTH
    cleaned = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", value).strip()
    if len(cleaned) > limit:
        logger.warning(f"[Sanitize] Text truncated from {len(cleaned)} to {limit} characters")
    return cleaned[:limit]
