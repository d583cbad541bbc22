"""Input validation for names and paths handed to system tools.

Keeps service names, process patterns and paths free of shell
metacharacters before they reach pgrep, systemctl or modprobe. ShellCheck
conditions and Shell actions are not validated here: they run arbitrary
commands by design and rely on rule-file permissions and human review.
"""

from __future__ import annotations

import os
import string
from pathlib import Path

from .errors import InvalidInputError

SHELL_DANGEROUS_CHARS = frozenset(";|&$`(){}[]<>\n\r*?~!#'\"\\")

_ALNUM = frozenset(string.ascii_letters + string.digits)
_SERVICE_CHARS = _ALNUM | frozenset("-_.@")
_PATTERN_CHARS = _ALNUM | frozenset("-_.*?")


def validate_safe_path(path: str) -> str:
    """Validate a path for use in shell commands.

    Raises:
        InvalidInputError: empty path, shell metacharacters, or ``..``
            outside the home directory and /tmp.
    """
    if not path:
        raise InvalidInputError("Empty path not allowed", path)

    if any(c in SHELL_DANGEROUS_CHARS for c in path):
        raise InvalidInputError("Path contains dangerous shell character", path)

    if ".." in path:
        home = os.environ.get("HOME", "")
        candidate = Path(path)
        inside_home = bool(home) and candidate.is_relative_to(home)
        if not inside_home and not candidate.is_relative_to("/tmp"):
            raise InvalidInputError("Path traversal not allowed outside home/tmp", path)

    return path


def validate_service_name(name: str) -> str:
    """Validate a systemd unit name (alphanumeric, dash, underscore, dot, @)."""
    if not name:
        raise InvalidInputError("Empty service name not allowed", name)
    if not set(name) <= _SERVICE_CHARS:
        raise InvalidInputError("Service name contains invalid character", name)
    return name


def validate_pattern(pattern: str) -> str:
    """Validate a process name pattern (alphanumeric, dash, underscore, dot, * and ?)."""
    if not pattern:
        raise InvalidInputError("Empty pattern not allowed", pattern)
    if not set(pattern) <= _PATTERN_CHARS:
        raise InvalidInputError("Pattern contains invalid character", pattern)
    return pattern


def validate_module_name(name: str) -> str:
    """Validate a kernel module or package name."""
    if not name:
        raise InvalidInputError("Empty module name not allowed", name)
    if not set(name) <= (_ALNUM | frozenset("-_.+")):
        raise InvalidInputError("Module name contains invalid character", name)
    return name
