"""Failure-text classifiers for CLI stderr.

Both checks are plain case-insensitive substring matches with no exclusions,
so any stderr mentioning e.g. "api key" counts as an auth failure. The one
exception is the POSIX ``sh`` not-found form, which is matched by shape so
that messages like ``Error: model: not found`` are not read as a missing CLI.
"""
import re

AUTH_ERROR_PATTERNS = (
    "unauthorized",
    "authentication",
    "401",
    "expired",
    "login required",
    "invalid api key",
    "invalid_api_key",
    "api key",
    "permission denied",
    "access denied",
    "not authenticated",
    "auth token",
    "token expired",
    "credentials",
)

NOT_FOUND_PATTERNS = (
    "command not found",
    "is not recognized as an internal or external command",
)

# dash/sh: "sh: 1: codex: not found"
_SH_NOT_FOUND_RE = re.compile(r"^\S*sh: (?:line )?\d+: [^\s:]+: not found\s*$", re.IGNORECASE | re.MULTILINE)


def is_auth_error(stderr: str) -> bool:
    lower = (stderr or "").lower()
    return any(pattern in lower for pattern in AUTH_ERROR_PATTERNS)


def is_command_not_found(stderr: str) -> bool:
    lower = (stderr or "").lower()
    if any(pattern in lower for pattern in NOT_FOUND_PATTERNS):
        return True
    return bool(_SH_NOT_FOUND_RE.search(stderr or ""))
