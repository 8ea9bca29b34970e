"""Custom exception hierarchy for forinv."""

from __future__ import annotations

from pathlib import Path


class ForinvError(Exception):
    """Base error for the forinv package."""


class ConfigError(ForinvError):
    """Raised when a configuration file fails validation."""

    def __init__(self, path: Path, message: str):
        self.path = Path(path)
        self.message = message
        super().__init__(f"{self.path.name}: {self.message}")


class ValidationError(ForinvError):
    """Raised for bad input shape or range; the user can correct it."""


class NotFoundError(ForinvError):
    """Raised when a project, tree or species reference does not resolve."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} not found")


class InvalidState(ForinvError):
    """Raised when the sample capture sequence is violated."""


class InvariantViolation(ForinvError):
    """Raised when a command would break a store-wide invariant."""


class StorageError(ForinvError):
    """Raised when the persisted store cannot be read or committed."""


class SyncError(ForinvError):
    """Raised when an outbound sync fails outright."""


class TransportTimeout(SyncError):
    """Raised when an outbound sync exceeded its bounded wait.

    The outcome is ambiguous: the remote side may still have received the
    data, so callers should ask the operator to verify rather than resend.
    """

    def __init__(self, waited_s: float):
        self.waited_s = waited_s
        super().__init__(
            f"no response after {waited_s:.0f}s; the data may still have been received"
        )
