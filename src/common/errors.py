from __future__ import annotations

from typing import Any, Dict, Optional


class StateBackendError(RuntimeError):
    """
    Base error for the state backend.

    Every error carries a machine-readable `kind` plus a `context` mapping with
    whatever the caller needs to decide between retrying, waiting, or escalating
    (state key, requested action, current lock holder, ...).
    """

    kind = "StateBackendError"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message, "context": dict(self.context)}


class NotFound(StateBackendError):
    """Namespace, key or version does not exist."""

    kind = "NotFound"


class Denied(StateBackendError):
    """Principal is not allowed to perform the requested action."""

    kind = "Denied"


class LockHeld(StateBackendError):
    """Another holder owns an unexpired lock on the key."""

    kind = "LockHeld"

    def __init__(
        self,
        message: str,
        *,
        holder: str,
        acquired_at: Any,
        lock_id: Optional[str] = None,
        operation: Optional[str] = None,
        **context: Any,
    ) -> None:
        super().__init__(
            message,
            holder=holder,
            acquired_at=str(acquired_at),
            lock_id=lock_id,
            operation=operation,
            **context,
        )
        self.holder = holder
        self.acquired_at = acquired_at


class LockRequired(StateBackendError):
    """A write was attempted without an active lock on the key."""

    kind = "LockRequired"


class LockMismatch(StateBackendError):
    """The supplied lock id does not match the active lock."""

    kind = "LockMismatch"


class DecryptionFailed(StateBackendError):
    """A stored payload could not be decrypted or failed its integrity check."""

    kind = "DecryptionFailed"


class EncryptionFailed(StateBackendError):
    """The current encryption key cannot be used to write a new version."""

    kind = "EncryptionFailed"


class QuotaExceeded(StateBackendError):
    """Storage limits would be exceeded by the write."""

    kind = "QuotaExceeded"


class Unavailable(StateBackendError):
    """Transient failure of a backing store; safe to retry."""

    kind = "Unavailable"


class KeyUnavailable(RuntimeError):
    """Raised by keyrings when a key is unknown, revoked, or the token is invalid."""


class ConfigError(RuntimeError):
    """Required configuration is missing or malformed."""


ERROR_TYPES: Dict[str, type] = {
    cls.kind: cls
    for cls in (
        NotFound,
        Denied,
        LockHeld,
        LockRequired,
        LockMismatch,
        DecryptionFailed,
        EncryptionFailed,
        QuotaExceeded,
        Unavailable,
    )
}


__all__ = [
    "StateBackendError",
    "NotFound",
    "Denied",
    "LockHeld",
    "LockRequired",
    "LockMismatch",
    "DecryptionFailed",
    "EncryptionFailed",
    "QuotaExceeded",
    "Unavailable",
    "KeyUnavailable",
    "ConfigError",
    "ERROR_TYPES",
]
