# backend/authguard/core/log_utils.py
"""Utilities for safe logging and for sanitising security event metadata.

- ANSI escape sequence removal (terminal manipulation)
- Control character neutralization (log injection/forging)
- Bidirectional control stripping (visual spoofing/Trojan Source)
- Redaction of secret-looking metadata keys
- Length/depth/item limits (DoS prevention)

WARNING: This sanitizer does NOT prevent format-string injection.
Always use: logger.info("%s", user_input) NOT logger.info(user_input)
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

from authguard.core.config import settings

_ANSI_RE = re.compile(
    r"""
    \x1B
    (?:
        [@-Z\\-_]
      | \[ [0-?]* [ -/]* [@-~]
      | \] (?: [^\x07\x1B]* (?:\x07|\x1B\\))
    )
    """,
    re.VERBOSE,
)

# Control characters excluding \t, \n, \r (handled by the whitespace escaping)
_UNSAFE_CTRL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_BIDI_RE = re.compile(r"[\u202A-\u202E\u2066-\u2069\u200E\u200F]")
_INVISIBLE_RE = re.compile(r"[\u200B-\u200D\u2060\u00AD]")

# Metadata keys whose values are never persisted or logged
_SECRET_KEY_RE = re.compile(r"(password|secret|token|code|otp|hash)", re.IGNORECASE)
# Keys that merely mention codes but hold no secret
_SAFE_KEYS = {"code_id", "purpose", "codes_remaining", "error_code"}

REDACTED = "[REDACTED]"


def sanitize_for_log(value: Any, max_length: int | None = 1000) -> str:
    """Sanitize a user-controlled value for line-oriented logging.

    Examples:
        >>> sanitize_for_log("Hello\\nWorld")
        'Hello\\\\nWorld'
        >>> sanitize_for_log(None)
        '<None>'
    """
    if value is None:
        return "<None>"

    try:
        text = str(value)
    except Exception:
        return f"<Error converting to string: {type(value).__name__}>"

    text = _ANSI_RE.sub("", text)
    # Escape backslashes first to avoid double-escaping
    text = (
        text.replace("\\", "\\\\")
        .replace("\r", "\\r")
        .replace("\n", "\\n")
        .replace("\t", "\\t")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )
    text = _UNSAFE_CTRL_RE.sub("", text)
    text = _BIDI_RE.sub("", text)
    text = _INVISIBLE_RE.sub("", text)

    if max_length is not None and len(text) > max_length:
        suffix = "...[truncated]"
        keep = max(0, max_length - len(suffix))
        text = text[:keep] + suffix

    return text


def is_secret_key(key: str) -> bool:
    return key not in _SAFE_KEYS and bool(_SECRET_KEY_RE.search(key))


def sanitize_metadata(
    value: Any,
    *,
    max_str_len: int = 500,
    max_depth: int = 5,
    max_items: int = 50,
    _depth: int = 0,
) -> Any:
    """Sanitize event metadata so it can be stored as JSON.

    Strings are sanitised, secret-looking keys are redacted, nested
    structures are bounded. Datetimes and other objects become strings.
    """
    if _depth > max_depth:
        return "[max_depth]"

    if value is None or isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, str):
        return sanitize_for_log(value, max_length=max_str_len)

    if isinstance(value, Mapping):
        out: dict[str, Any] = {}
        for i, (k, v) in enumerate(value.items()):
            if i >= max_items:
                out["[truncated_items]"] = True
                break
            safe_key = sanitize_for_log(k, max_length=100)
            if is_secret_key(safe_key):
                out[safe_key] = REDACTED
                continue
            out[safe_key] = sanitize_metadata(
                v,
                max_str_len=max_str_len,
                max_depth=max_depth,
                max_items=max_items,
                _depth=_depth + 1,
            )
        return out

    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value, key=str) if isinstance(value, (set, frozenset)) else list(value)
        out_list = [
            sanitize_metadata(
                item,
                max_str_len=max_str_len,
                max_depth=max_depth,
                max_items=max_items,
                _depth=_depth + 1,
            )
            for item in items[:max_items]
        ]
        if len(items) > max_items:
            out_list.append("[truncated_items]")
        return out_list

    if hasattr(value, "isoformat"):
        return value.isoformat()

    return sanitize_for_log(value, max_length=max_str_len)


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once for processes embedding the engine."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
