from __future__ import annotations

import base64
import struct
import threading
from typing import Dict, Mapping, Optional, Protocol

import boto3
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet, InvalidToken

from .aws import TRANSPORT_ERRORS, error_code, translate_client_error
from .errors import KeyUnavailable, Unavailable


class Keyring(Protocol):
    """Key-management capability: encrypt/decrypt with a named key."""

    def encrypt(self, key_id: str, plaintext: bytes) -> bytes: ...

    def decrypt(self, key_id: str, ciphertext: bytes) -> bytes: ...


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a user-provided key.

    The key must be a URL-safe base64-encoded 32-byte key (str or bytes),
    as returned by `cryptography.fernet.Fernet.generate_key()`.
    """
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


class FernetKeyring:
    """
    Local keyring of named Fernet keys.

    - Each key id maps to one Fernet key; rotation means adding a new id and
      pointing the encryption context at it, while old ids stay available for
      reading historical versions.
    - `revoke` drops key material; versions written under it become
      undecryptable (surfaced as `KeyUnavailable`).
    """

    def __init__(self, keys: Optional[Mapping[str, str | bytes]] = None) -> None:
        self._keys: Dict[str, Fernet] = {}
        self._lock = threading.Lock()
        for key_id, material in (keys or {}).items():
            self.add_key(key_id, material)

    def add_key(self, key_id: str, material: str | bytes) -> None:
        fernet = _to_fernet(material)
        with self._lock:
            self._keys[key_id] = fernet

    def revoke(self, key_id: str) -> None:
        with self._lock:
            self._keys.pop(key_id, None)

    def key_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._keys)

    def _get(self, key_id: str) -> Fernet:
        with self._lock:
            fernet = self._keys.get(key_id)
        if fernet is None:
            raise KeyUnavailable(f"Unknown or revoked key id: {key_id}")
        return fernet

    def encrypt(self, key_id: str, plaintext: bytes) -> bytes:
        return self._get(key_id).encrypt(plaintext)

    def decrypt(self, key_id: str, ciphertext: bytes) -> bytes:
        fernet = self._get(key_id)
        try:
            return fernet.decrypt(ciphertext)
        except InvalidToken as ex:
            raise KeyUnavailable(f"Invalid Fernet token for key id {key_id}") from ex


# Envelope header: magic, then big-endian length of the KMS-encrypted data key
_ENVELOPE_MAGIC = b"SBK1"
_LEN = struct.Struct(">I")

# KMS errors that mean the key can no longer decrypt (not worth retrying)
_KMS_KEY_ERRORS = frozenset(
    {
        "DisabledException",
        "KMSInvalidStateException",
        "NotFoundException",
        "AccessDeniedException",
        "InvalidCiphertextException",
        "IncorrectKeyException",
        "InvalidKeyUsageException",
    }
)


class KmsKeyring:
    """
    AWS KMS keyring using envelope encryption.

    Notes
    - KMS `Encrypt` caps plaintext at 4 KiB, far below typical state sizes, so
      each payload gets a fresh data key from `GenerateDataKey`; the payload is
      Fernet-encrypted with it and the KMS-wrapped data key is stored in a
      small header in front of the token.
    - Decryption unwraps the data key with `Decrypt(KeyId=key_id)`. Disabled,
      deleted or mismatched keys raise `KeyUnavailable`; throttling raises
      `Unavailable` so the coordinator can retry. Any other KMS error is
      translated like every other AWS error.
    """

    def __init__(self, *, kms: Optional[object] = None, region_name: Optional[str] = None) -> None:
        self._kms = kms or boto3.client("kms", region_name=region_name)

    def _call(self, fn, **kwargs):
        try:
            return fn(**kwargs)
        except ClientError as e:
            code = error_code(e)
            if code in _KMS_KEY_ERRORS:
                raise KeyUnavailable(f"KMS key {kwargs.get('KeyId')} unusable ({code})") from e
            raise translate_client_error(e, action="kms", key_id=kwargs.get("KeyId")) from e
        except TRANSPORT_ERRORS as e:
            raise Unavailable(f"KMS unreachable: {e}", action="kms") from e

    def encrypt(self, key_id: str, plaintext: bytes) -> bytes:
        resp = self._call(self._kms.generate_data_key, KeyId=key_id, KeySpec="AES_256")
        data_key: bytes = resp["Plaintext"]
        wrapped: bytes = resp["CiphertextBlob"]
        token = Fernet(base64.urlsafe_b64encode(data_key)).encrypt(plaintext)
        return _ENVELOPE_MAGIC + _LEN.pack(len(wrapped)) + wrapped + token

    def decrypt(self, key_id: str, ciphertext: bytes) -> bytes:
        header = len(_ENVELOPE_MAGIC) + _LEN.size
        if len(ciphertext) < header or not ciphertext.startswith(_ENVELOPE_MAGIC):
            raise KeyUnavailable("Ciphertext is not a KMS envelope")
        (wrapped_len,) = _LEN.unpack_from(ciphertext, len(_ENVELOPE_MAGIC))
        wrapped = ciphertext[header : header + wrapped_len]
        token = ciphertext[header + wrapped_len :]
        if len(wrapped) != wrapped_len or not token:
            raise KeyUnavailable("Truncated KMS envelope")

        resp = self._call(self._kms.decrypt, CiphertextBlob=wrapped, KeyId=key_id)
        data_key: bytes = resp["Plaintext"]
        try:
            return Fernet(base64.urlsafe_b64encode(data_key)).decrypt(token)
        except InvalidToken as ex:
            raise KeyUnavailable(f"Envelope payload rejected for key id {key_id}") from ex


__all__ = ["Keyring", "FernetKeyring", "KmsKeyring"]
