from __future__ import annotations

import threading
from datetime import datetime, UTC
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set

from common.errors import NotFound, QuotaExceeded

from .models import StateKey, StateVersion, StoredBlob


DEFAULT_MAX_OBJECT_BYTES = 50 * 1024 * 1024


class BlobStore(Protocol):
    """
    Append-only, versioned storage for opaque state payloads.

    Every `put` produces a new immutable version; nothing is overwritten.
    `delete` exists only for housekeeping (see `state.retention`) and is never
    reached from the coordinator's write path.
    """

    def put(
        self,
        key: StateKey,
        data: bytes,
        *,
        created_by: str,
        checksum: str,
        key_id: str,
    ) -> StateVersion: ...

    def get(self, key: StateKey, version_id: Optional[str] = None) -> StoredBlob: ...

    def list_versions(self, key: StateKey) -> List[StateVersion]: ...

    def delete(self, key: StateKey, version_id: str) -> None: ...


class InMemoryBlobStore:
    """
    Thread-safe in-process blob store.

    - Namespaces must be created up front via `create_namespace` (or the
      `namespaces` constructor argument); writes to unknown namespaces fail
      with `NotFound`.
    - Version ids are zero-padded decimal counters, global to the store, so
      they sort the same way they were written.
    - `max_versions` bounds the retained versions per key; pruning frees room.
    """

    def __init__(
        self,
        *,
        namespaces: Iterable[str] = (),
        max_object_bytes: int = DEFAULT_MAX_OBJECT_BYTES,
        max_versions: Optional[int] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._namespaces: Set[str] = set(namespaces)
        self._versions: Dict[StateKey, List[StoredBlob]] = {}
        self._lock = threading.Lock()
        self._seq = 0
        self._max_object_bytes = max_object_bytes
        self._max_versions = max_versions
        self._clock = clock

    def create_namespace(self, namespace: str) -> None:
        with self._lock:
            self._namespaces.add(namespace)

    def put(
        self,
        key: StateKey,
        data: bytes,
        *,
        created_by: str,
        checksum: str,
        key_id: str,
    ) -> StateVersion:
        if len(data) > self._max_object_bytes:
            raise QuotaExceeded(
                f"Payload of {len(data)} bytes exceeds limit of {self._max_object_bytes}",
                key=key.path,
                action="put",
            )
        with self._lock:
            if key.namespace not in self._namespaces:
                raise NotFound(f"Namespace does not exist: {key.namespace}", key=key.path, action="put")
            history = self._versions.setdefault(key, [])
            if self._max_versions is not None and len(history) >= self._max_versions:
                raise QuotaExceeded(
                    f"Key already holds {len(history)} versions (limit {self._max_versions})",
                    key=key.path,
                    action="put",
                )
            self._seq += 1
            version = StateVersion(
                version_id=f"{self._seq:012d}",
                key=key,
                created_at=self._clock(),
                created_by=created_by,
                checksum=checksum,
                key_id=key_id,
                size=len(data),
            )
            history.append(StoredBlob(version=version, data=bytes(data)))
            return version

    def get(self, key: StateKey, version_id: Optional[str] = None) -> StoredBlob:
        with self._lock:
            history = self._versions.get(key)
            if not history:
                raise NotFound(f"No state stored for {key.path}", key=key.path, action="get")
            if version_id is None:
                return history[-1]
            for blob in history:
                if blob.version.version_id == version_id:
                    return blob
        raise NotFound(
            f"Version {version_id} not found for {key.path}",
            key=key.path,
            action="get",
            version_id=version_id,
        )

    def list_versions(self, key: StateKey) -> List[StateVersion]:
        with self._lock:
            history = self._versions.get(key)
            if not history:
                raise NotFound(f"No state stored for {key.path}", key=key.path, action="list_versions")
            return [blob.version for blob in history]

    def delete(self, key: StateKey, version_id: str) -> None:
        with self._lock:
            history = self._versions.get(key) or []
            for idx, blob in enumerate(history):
                if blob.version.version_id == version_id:
                    del history[idx]
                    if not history:
                        self._versions.pop(key, None)
                    return
        raise NotFound(
            f"Version {version_id} not found for {key.path}",
            key=key.path,
            action="delete",
            version_id=version_id,
        )


__all__ = ["BlobStore", "InMemoryBlobStore", "DEFAULT_MAX_OBJECT_BYTES"]
