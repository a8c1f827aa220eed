"""Redaction utilities to prevent secrets from appearing in logs.

USAGE:
    from bsk.auth.redact import redact_secrets, REDACTED

    # Redact known secret patterns
    safe_msg = redact_secrets(f"Request failed: {url}")

    # Redact request parameters before logging
    log(safe_dict_for_logging(params))
"""

from __future__ import annotations

import re
from re import Pattern

# Placeholder for redacted content
REDACTED = "***REDACTED***"

# Patterns for common secret formats
SECRET_PATTERNS: list[tuple[str, Pattern[str]]] = [
    # Query-string signatures and listen keys
    ("signature", re.compile(r"(?<=signature=)[^&\s]+")),
    ("listen_key", re.compile(r"(?<=listenKey=)[^&\s]+")),
    # PEM blocks
    (
        "pem",
        re.compile(r"-----BEGIN [A-Z ]+-----.*?-----END [A-Z ]+-----", re.DOTALL),
    ),
    # HMAC keys and hex signatures (64 alphanumeric chars)
    ("api_key", re.compile(r"\b[A-Za-z0-9]{64}\b")),
    # Base64 secrets (common lengths)
    ("secret", re.compile(r"\b[A-Za-z0-9+/]{40,}={0,2}")),
]

# Parameter / header names whose values are always secret
DEFAULT_REDACT_KEYS = frozenset(
    {
        "api_key",
        "apikey",
        "x-mbx-apikey",
        "api_secret",
        "secret",
        "secret_key",
        "private_key",
        "signature",
        "listenkey",
        "listen_key",
        "password",
        "token",
    }
)


def redact_secrets(text: str, replacement: str = REDACTED) -> str:
    """Redact known secret patterns from text.

    Args:
        text: Input text that may contain secrets
        replacement: String to replace secrets with

    Returns:
        Text with secrets replaced

    Example:
        >>> redact_secrets("GET /api/v3/account?timestamp=1&signature=abc")
        "GET /api/v3/account?timestamp=1&signature=***REDACTED***"
    """
    result = text
    for _name, pattern in SECRET_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def mask_string(value: str, visible_chars: int = 4) -> str:
    """Mask a string showing only first and last N characters.

    Args:
        value: String to mask
        visible_chars: Number of chars to show at start and end

    Returns:
        Masked string like "abcd...wxyz"
    """
    if len(value) <= visible_chars * 2:
        return "*" * len(value)
    return f"{value[:visible_chars]}...{value[-visible_chars:]}"


def safe_dict_for_logging(
    data: dict[str, object], redact_keys: set[str] | None = None
) -> dict[str, object]:
    """Create a copy of a dict safe for logging by redacting secrets.

    Args:
        data: Dictionary that may contain secrets
        redact_keys: Additional keys to redact (case-insensitive)

    Returns:
        Copy of dict with secret values replaced
    """
    all_redact_keys = DEFAULT_REDACT_KEYS | {k.lower() for k in (redact_keys or set())}

    result: dict[str, object] = {}
    for k, v in data.items():
        if k.lower() in all_redact_keys:
            result[k] = REDACTED
        elif isinstance(v, dict):
            result[k] = safe_dict_for_logging(dict(v), redact_keys)
        elif isinstance(v, str):
            result[k] = redact_secrets(v)
        else:
            result[k] = v
    return result
