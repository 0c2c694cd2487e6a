"""
Security Logging Utilities for PassMan
Prevents log injection (CWE-117) and keeps secrets out of log output.
"""

import re
from typing import Any, Optional

# Patterns for detecting potentially malicious content
LOG_INJECTION_PATTERNS = [
    r"[\r\n]",  # CRLF injection
    r"%0[ad]",  # URL-encoded CRLF
    r"\x00",  # Null bytes
    r"[\x01-\x08\x0b\x0c\x0e-\x1f\x7f]",  # Control characters
]

SAFE_LOG_PATTERN = re.compile(r"^[a-zA-Z0-9._@\-+\s]+$")

UUID_PATTERN = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


def sanitize_for_log(value: Optional[Any], max_length: int = 100, allow_special: bool = False) -> str:
    """
    Sanitize any value for safe logging.

    Args:
        value: Value to sanitize
        max_length: Maximum length of output
        allow_special: Whether to allow some special characters

    Returns:
        str: Sanitized string safe for logging
    """
    if value is None:
        return "null"

    str_value = str(value)

    if len(str_value) > max_length:
        str_value = str_value[:max_length] + "..."

    for pattern in LOG_INJECTION_PATTERNS:
        str_value = re.sub(pattern, "", str_value)

    if not allow_special and not SAFE_LOG_PATTERN.match(str_value):
        str_value = re.sub(r"[^a-zA-Z0-9._@\-+\s]", "", str_value)

    if not str_value.strip():
        return "[sanitized]"

    return str_value.strip()


def sanitize_username_for_log(username: Optional[str]) -> str:
    """
    Sanitize an email address or user name for logging.

    Args:
        username: Email or user name to sanitize

    Returns:
        str: Sanitized identity string
    """
    if not username:
        return "[no_username]"

    return sanitize_for_log(username, max_length=80)


def sanitize_id_for_log(id_value: Optional[Any]) -> str:
    """
    Sanitize ID values for logging.

    Args:
        id_value: ID to sanitize (string, int, UUID, etc.)

    Returns:
        str: Sanitized ID
    """
    if id_value is None:
        return "[no_id]"

    str_id = str(id_value)

    if str_id.isdigit() or UUID_PATTERN.match(str_id):
        return str_id

    return sanitize_for_log(str_id, max_length=50)


def mask_token_for_log(token: Optional[str]) -> str:
    """Return a short, non-reversible hint of an opaque token."""
    if not token:
        return "[no_token]"
    if len(token) <= 8:
        return "****"
    return f"{token[:4]}...{token[-2:]}"
