from __future__ import annotations

import hashlib
import hmac
from typing import List, Optional

import structlog

from common.errors import DecryptionFailed, EncryptionFailed, KeyUnavailable
from common.keyring import Keyring

from .blob_store import BlobStore
from .models import EncryptionContext, StateKey, StateSnapshot, StateVersion


logger = structlog.get_logger(__name__)


def payload_checksum(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


class EncryptedBlobStore:
    """
    Encryption layer in front of a `BlobStore`.

    - Writes are encrypted client-side with the *current* key id from the
      encryption context; that key id is recorded on the version.
    - Reads decrypt with the version's *own* key id, so rotating the context
      never invalidates history as long as the keyring retains old keys.
    - A current key the keyring cannot use raises `EncryptionFailed` on write.
    - Any failure to decrypt, or a checksum mismatch afterwards, raises
      `DecryptionFailed`. Retrying cannot fix a revoked key, so it is never
      retried here or by the coordinator.
    """

    def __init__(self, store: BlobStore, keyring: Keyring, context: EncryptionContext) -> None:
        self._store = store
        self._keyring = keyring
        self._context = context

    @property
    def current_key_id(self) -> str:
        return self._context.key_id

    def rotate(self, new_key_id: str) -> None:
        previous = self._context.key_id
        self._context = EncryptionContext(key_id=new_key_id)
        logger.info("encryption_key_rotated", previous_key_id=previous, key_id=new_key_id)

    def put(self, key: StateKey, payload: bytes, *, created_by: str) -> StateVersion:
        key_id = self._context.key_id
        try:
            ciphertext = self._keyring.encrypt(key_id, payload)
        except KeyUnavailable as ex:
            logger.error("state_encryption_failed", key=key.path, key_id=key_id, reason=str(ex))
            raise EncryptionFailed(
                f"Cannot encrypt {key.path} with key {key_id}: {ex}",
                key=key.path,
                action="put",
                key_id=key_id,
            ) from ex
        return self._store.put(
            key,
            ciphertext,
            created_by=created_by,
            checksum=payload_checksum(payload),
            key_id=key_id,
        )

    def get(self, key: StateKey, version_id: Optional[str] = None) -> StateSnapshot:
        blob = self._store.get(key, version_id)
        version = blob.version
        try:
            plaintext = self._keyring.decrypt(version.key_id, blob.data)
        except KeyUnavailable as ex:
            logger.error(
                "state_decryption_failed",
                key=key.path,
                version_id=version.version_id,
                key_id=version.key_id,
                reason=str(ex),
            )
            raise DecryptionFailed(
                f"Cannot decrypt {key.path}@{version.version_id}: {ex}",
                key=key.path,
                action="get",
                version_id=version.version_id,
                key_id=version.key_id,
            ) from ex

        if version.checksum and not hmac.compare_digest(payload_checksum(plaintext), version.checksum):
            logger.error("state_checksum_mismatch", key=key.path, version_id=version.version_id)
            raise DecryptionFailed(
                f"Checksum mismatch for {key.path}@{version.version_id}",
                key=key.path,
                action="get",
                version_id=version.version_id,
            )
        return StateSnapshot(payload=plaintext, version=version)

    def list_versions(self, key: StateKey) -> List[StateVersion]:
        return self._store.list_versions(key)

    def delete(self, key: StateKey, version_id: str) -> None:
        self._store.delete(key, version_id)


__all__ = ["EncryptedBlobStore", "payload_checksum"]
