"""
Credential redaction for log messages, error strings and PR/report text.
"""

from __future__ import annotations

import re
from typing import Any

REDACTED = "[REDACTED]"

# Patterns whose match keeps its "name=" / "name:" prefix and loses the value.
_SENSITIVE_PATTERNS = [
    re.compile(r"token[=:\s]+[\w\-.]+", re.IGNORECASE),
    re.compile(r"bearer\s+[\w\-.]+", re.IGNORECASE),
    re.compile(r"password[=:\s]+\S+", re.IGNORECASE),
    re.compile(r"passwd[=:\s]+\S+", re.IGNORECASE),
    re.compile(r"pwd[=:\s]+\S+", re.IGNORECASE),
    re.compile(r"api[_-]?key[=:\s]+[\w\-]+", re.IGNORECASE),
    re.compile(r"aws[_-]?secret[_-]?access[_-]?key[=:\s]+[\w/+=]+", re.IGNORECASE),
    re.compile(r"secret[=:\s]+[\w\-.]+", re.IGNORECASE),
    re.compile(r"private[_-]?key[=:\s]+[\w\-.]+", re.IGNORECASE),
]

# Patterns that are secrets in their entirety.
_BARE_SECRET_PATTERNS = [
    re.compile(r"gh[pousr]_\w+"),           # GitHub tokens
    re.compile(r"glpat-[\w\-]+"),           # GitLab personal access tokens
    re.compile(r"AKIA[0-9A-Z]{16}"),        # AWS access key id
    re.compile(r"(?<=://)[^/\s:@]+:[^/\s@]+(?=@)"),  # user:pass@ in URLs
]

_SEPARATOR = re.compile(r"[=:\s]+")


def _redact_value(match: re.Match) -> str:
    text = match.group(0)
    sep = _SEPARATOR.search(text)
    if sep is None:
        return REDACTED
    return text[: sep.end()] + REDACTED


def sanitize_string(value: str) -> str:
    """Replace credential-shaped substrings in ``value`` with [REDACTED]."""
    if not value:
        return value
    for pattern in _BARE_SECRET_PATTERNS:
        value = pattern.sub(REDACTED, value)
    for pattern in _SENSITIVE_PATTERNS:
        value = pattern.sub(_redact_value, value)
    return value


def sanitize_error(error: BaseException) -> str:
    return sanitize_string(str(error) or type(error).__name__)


def sanitize_object(obj: Any) -> Any:
    """Recursively sanitize every string inside dicts, lists and tuples."""
    if isinstance(obj, str):
        return sanitize_string(obj)
    if isinstance(obj, dict):
        return {k: sanitize_object(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return type(obj)(sanitize_object(v) for v in obj)
    return obj
