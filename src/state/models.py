from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StateKey(BaseModel):
    """
    Address of a state object: `(namespace, key)`.

    Notes
    - `key` may contain slashes (e.g., "env/prod") but must be relative and
      free of ".." segments, since it is embedded in storage object paths.
    - `path` is the canonical "namespace/key" rendering used for storage and logs.
    """

    model_config = ConfigDict(frozen=True)

    namespace: str = Field(..., min_length=1, description="Top-level grouping, e.g. a team or project")
    key: str = Field(..., min_length=1, description="State key within the namespace")

    @field_validator("namespace")
    @classmethod
    def _check_namespace(cls, v: str) -> str:
        if "/" in v or v.strip() != v:
            raise ValueError("namespace must not contain '/' or surrounding whitespace")
        return v

    @field_validator("key")
    @classmethod
    def _check_key(cls, v: str) -> str:
        if v.startswith("/") or v.endswith("/"):
            raise ValueError("key must not start or end with '/'")
        if any(part in ("", ".", "..") for part in v.split("/")):
            raise ValueError("key must not contain empty, '.' or '..' segments")
        return v

    @property
    def path(self) -> str:
        return f"{self.namespace}/{self.key}"

    def __str__(self) -> str:
        return self.path


class StateVersion(BaseModel):
    """Metadata of one immutable version of a state object."""

    model_config = ConfigDict(frozen=True)

    version_id: str
    key: StateKey
    created_at: datetime
    created_by: str
    checksum: str = Field(..., description="SHA-256 hex digest of the plaintext payload")
    key_id: str = Field(..., description="Encryption key id used for this version")
    size: int = Field(0, ge=0, description="Stored (encrypted) size in bytes")


class StoredBlob(BaseModel):
    """A version together with its stored bytes, as returned by a blob store."""

    model_config = ConfigDict(frozen=True)

    version: StateVersion
    data: bytes


class StateSnapshot(BaseModel):
    """Decrypted payload of one version, as returned to coordinator callers."""

    model_config = ConfigDict(frozen=True)

    payload: bytes
    version: StateVersion

    @property
    def version_id(self) -> str:
        return self.version.version_id


class LockRecord(BaseModel):
    """
    The single active lock on a state key.

    `expires_at` is only set for lease-based locks; without it the lock is held
    until released or force-broken.
    """

    model_config = ConfigDict(frozen=True)

    key: StateKey
    lock_id: str
    holder: str
    operation: str = ""
    acquired_at: datetime
    expires_at: Optional[datetime] = None
    info: Dict[str, str] = Field(default_factory=dict, description="Free-form client metadata")

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class LockEventKind(str, Enum):
    ACQUIRED = "acquired"
    RECLAIMED = "reclaimed"
    RELEASED = "released"
    FORCE_BROKEN = "force_broken"


class LockEvent(BaseModel):
    """Audit record emitted by the lock manager for every lock transition."""

    model_config = ConfigDict(frozen=True)

    kind: LockEventKind
    key: StateKey
    lock_id: Optional[str]
    holder: Optional[str]
    actor: str
    at: datetime
    previous: Optional[LockRecord] = None


class Capability(str, Enum):
    READ = "read"
    WRITE = "write"
    LOCK = "lock"
    FORCE_UNLOCK = "force-unlock"


class Principal(BaseModel):
    """
    Authenticated caller identity.

    Fields
    - id: stable identity used as lock holder and version author.
    - capabilities: subset of {read, write, lock, force-unlock}.
    - namespaces: glob patterns of namespaces the principal may touch ("*" = all).
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    capabilities: FrozenSet[Capability] = Field(default_factory=frozenset)
    namespaces: Tuple[str, ...] = ("*",)

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities


class EncryptionContext(BaseModel):
    """Reference to the key-management handle used for new writes."""

    key_id: str = Field(..., min_length=1)


class Decision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(allowed=False, reason=reason)

    def __bool__(self) -> bool:
        return self.allowed


def lock_record_to_dict(record: Optional[LockRecord]) -> Optional[Dict[str, Any]]:
    if record is None:
        return None
    return record.model_dump(mode="json")
