"""Exception hierarchy for the PSA core.

Probe failures never surface here: condition evaluation is fail-closed and
reports False. Everything below is raised to the caller.
"""

from __future__ import annotations

from pathlib import Path


class PsaError(Exception):
    """Base class for all PSA errors."""


class NotFoundError(PsaError):
    """Raised when a rule or proposal id is unknown."""

    kind = "object"

    def __init__(self, object_id: str):
        self.object_id = object_id
        super().__init__(f"{self.kind.capitalize()} not found: {object_id}")


class RuleNotFoundError(NotFoundError):
    kind = "rule"


class ProposalNotFoundError(NotFoundError):
    kind = "proposal"


class InvalidInputError(PsaError, ValueError):
    """Raised when a name, pattern or path fails validation."""

    def __init__(self, message: str, value: str = ""):
        self.value = value
        super().__init__(message)


class StoreError(PsaError):
    """Raised when the rules directory cannot be read or written."""

    def __init__(self, message: str, path: str | Path = ""):
        self.path = path
        super().__init__(message)


class ActionFailure(PsaError):
    """Raised by an action effect when the command fails or cannot spawn."""

    def __init__(self, message: str, stderr: str = "", returncode: int = -1):
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(message)


class EscalationRequested(PsaError):
    """An Escalate action fired: the rule hands the problem off to AI."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Escalation required: {reason}")


class DaemonStoppedError(PsaError):
    """A command was submitted to, or left queued in, a stopped daemon."""
