"""Security utilities for log sanitization and redirect validation.

This module provides functions to prevent security vulnerabilities:
- Log injection: Sanitize IDP-supplied and user-supplied values before logging
- Sensitive data exposure: Mask tokens and secrets in logs
- Open redirects: Restrict post-logout redirects to local paths
"""

import re
from typing import Union
from urllib.parse import urlsplit


def sanitize_log_message(msg: Union[str, bytes, int, float, None]) -> str:
    """Remove newlines and control characters from log messages.

    Query parameters such as ``state`` and ``error_description`` come straight
    from the browser, so they are stripped of control characters before they
    reach a log line.

    Args:
        msg: Message to sanitize (will be converted to string)

    Returns:
        Sanitized message with control characters removed

    Examples:
        >>> sanitize_log_message("state\\nforged line")
        'stateforged line'
    """
    if msg is None:
        return ""

    # Pattern matches: \n, \r, \t, and control chars (0x00-0x1f, 0x7f-0x9f)
    return re.sub(r"[\n\r\t\x00-\x1f\x7f-\x9f]", "", str(msg))


def mask_sensitive(value: Union[str, None], visible_chars: int = 4, mask_char: str = "*") -> str:
    """Mask sensitive values, showing only the last N characters.

    Args:
        value: Sensitive value to mask (client secrets, tokens, state values)
        visible_chars: Number of characters to show at the end (default: 4)
        mask_char: Character to use for masking (default: "*")

    Returns:
        Masked string showing only last visible_chars characters

    Examples:
        >>> mask_sensitive("sk_live_1234567890abcdef")
        '***cdef'
        >>> mask_sensitive("abc")
        '***'
        >>> mask_sensitive(None)
        '***'
    """
    if not value or len(value) <= visible_chars:
        return mask_char * 3

    return f"{mask_char * 3}{value[-visible_chars:]}"


def safe_redirect_target(url: Union[str, None], default: str = "/") -> str:
    """Return ``url`` if it is a local path, otherwise ``default``.

    Only absolute paths on the current host are accepted. Scheme-relative
    URLs (``//evil.example``) and anything with a scheme or host are
    rejected.

    Examples:
        >>> safe_redirect_target("/dashboard?tab=1")
        '/dashboard?tab=1'
        >>> safe_redirect_target("https://evil.example/")
        '/'
        >>> safe_redirect_target("//evil.example/")
        '/'
    """
    if not url:
        return default

    url = sanitize_log_message(url).strip()
    if not url.startswith("/") or url.startswith("//") or "\\" in url:
        return default

    parts = urlsplit(url)
    if parts.scheme or parts.netloc:
        return default

    return url
