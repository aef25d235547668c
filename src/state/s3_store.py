from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import boto3
from botocore.exceptions import ClientError

from common.aws import TRANSPORT_ERRORS, error_code, translate_client_error
from common.errors import ConfigError, NotFound, QuotaExceeded, Unavailable

from .blob_store import DEFAULT_MAX_OBJECT_BYTES
from .models import StateKey, StateVersion, StoredBlob


# S3 user-metadata keys (stored as x-amz-meta-*)
META_CREATED_BY = "created-by"
META_CHECKSUM = "checksum"
META_KEY_ID = "key-id"

# Max version-metadata entries kept from head_object calls
DEFAULT_VERSION_CACHE_SIZE = 4096


@dataclass
class S3ObjectRef:
    bucket: str
    key: str


class S3BlobStore:
    """
    Blob store on a versioning-enabled S3 bucket.

    Layout
    - Each state key lives at `{prefix}{namespace}/{key}`; S3 object versioning
      provides the append-only history and the `VersionId` is the version id.
    - Version metadata (author, checksum, encryption key id) is stored as S3
      user metadata on each object version.
    - Namespaces are a configured allow-list; anything else is `NotFound`.

    Error mapping
    - Throttling, 5xx and connection failures raise `Unavailable` (retryable).
    - `NoSuchKey` / `NoSuchVersion` / 404 raise `NotFound`, as does a
      malformed version id (`InvalidArgument`) on `get`.

    `list_versions` fetches each version's metadata with `head_object` once
    and caches it; later listings only pay for versions not seen before.
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        namespaces: Iterable[str],
        prefix: str = "",
        max_object_bytes: int = DEFAULT_MAX_OBJECT_BYTES,
        region_name: Optional[str] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        version_cache_size: int = DEFAULT_VERSION_CACHE_SIZE,
    ) -> None:
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._bucket = bucket
        self._prefix = prefix
        self._namespaces = frozenset(namespaces)
        self._max_object_bytes = max_object_bytes
        self._clock = clock
        # Object versions are immutable, so their metadata never goes stale
        self._version_cache: "OrderedDict[Tuple[str, str], StateVersion]" = OrderedDict()
        self._version_cache_size = version_cache_size
        self._cache_lock = threading.Lock()

    def _ref(self, key: StateKey) -> S3ObjectRef:
        return S3ObjectRef(bucket=self._bucket, key=f"{self._prefix}{key.path}")

    def _check_namespace(self, key: StateKey, action: str) -> None:
        if key.namespace not in self._namespaces:
            raise NotFound(f"Namespace does not exist: {key.namespace}", key=key.path, action=action)

    def _call(self, action: str, key: StateKey, fn: Callable[..., Any], **kwargs: Any) -> Any:
        try:
            return fn(**kwargs)
        except ClientError as e:
            raise translate_client_error(e, key=key.path, action=action) from e
        except TRANSPORT_ERRORS as e:
            raise Unavailable(f"S3 unreachable: {e}", key=key.path, action=action) from e

    # -------- Core operations --------
    def put(
        self,
        key: StateKey,
        data: bytes,
        *,
        created_by: str,
        checksum: str,
        key_id: str,
    ) -> StateVersion:
        self._check_namespace(key, "put")
        if len(data) > self._max_object_bytes:
            raise QuotaExceeded(
                f"Payload of {len(data)} bytes exceeds limit of {self._max_object_bytes}",
                key=key.path,
                action="put",
            )
        ref = self._ref(key)
        resp = self._call(
            "put",
            key,
            self._s3.put_object,
            Bucket=ref.bucket,
            Key=ref.key,
            Body=data,
            ContentType="application/octet-stream",
            Metadata={META_CREATED_BY: created_by, META_CHECKSUM: checksum, META_KEY_ID: key_id},
        )
        version_id = resp.get("VersionId")
        if not version_id or version_id == "null":
            # Unversioned buckets overwrite in place, which would break immutability
            raise ConfigError(f"Bucket {ref.bucket} must have versioning enabled")
        return StateVersion(
            version_id=version_id,
            key=key,
            created_at=self._clock(),
            created_by=created_by,
            checksum=checksum,
            key_id=key_id,
            size=len(data),
        )

    def get(self, key: StateKey, version_id: Optional[str] = None) -> StoredBlob:
        self._check_namespace(key, "get")
        ref = self._ref(key)
        params: Dict[str, Any] = {"Bucket": ref.bucket, "Key": ref.key}
        if version_id is not None:
            params["VersionId"] = version_id
        try:
            resp = self._s3.get_object(**params)
        except ClientError as e:
            # S3 rejects a malformed version id outright instead of reporting NoSuchVersion
            if version_id is not None and error_code(e) == "InvalidArgument":
                raise NotFound(
                    f"No version {version_id} of {key.path}",
                    key=key.path,
                    action="get",
                    version_id=version_id,
                    aws_code="InvalidArgument",
                ) from e
            raise translate_client_error(e, key=key.path, action="get", version_id=version_id) from e
        except TRANSPORT_ERRORS as e:
            raise Unavailable(f"S3 unreachable: {e}", key=key.path, action="get") from e
        data = resp["Body"].read()
        version = self._version_from_response(key, resp, fallback_id=version_id, size=len(data))
        return StoredBlob(version=version, data=data)

    def list_versions(self, key: StateKey) -> List[StateVersion]:
        """Return all versions oldest first (S3 lists newest first)."""
        self._check_namespace(key, "list_versions")
        ref = self._ref(key)
        entries: List[Dict[str, Any]] = []
        paginator = self._s3.get_paginator("list_object_versions")
        try:
            for page in paginator.paginate(Bucket=ref.bucket, Prefix=ref.key):
                for item in page.get("Versions", []) or []:
                    # Prefix listing also matches longer keys ("env/prod" vs "env/prod2")
                    if item.get("Key") == ref.key:
                        entries.append(item)
        except ClientError as e:
            raise translate_client_error(e, key=key.path, action="list_versions") from e
        except TRANSPORT_ERRORS as e:
            raise Unavailable(f"S3 unreachable: {e}", key=key.path, action="list_versions") from e

        if not entries:
            raise NotFound(f"No state stored for {key.path}", key=key.path, action="list_versions")

        entries.reverse()
        entries.sort(key=lambda item: item["LastModified"])  # stable: keeps S3 order on ties

        return [self._cached_version(key, ref, item) for item in entries]

    def delete(self, key: StateKey, version_id: str) -> None:
        """Permanently remove one object version (housekeeping only)."""
        self._check_namespace(key, "delete")
        ref = self._ref(key)
        self._call(
            "delete",
            key,
            self._s3.delete_object,
            Bucket=ref.bucket,
            Key=ref.key,
            VersionId=version_id,
        )
        with self._cache_lock:
            self._version_cache.pop((ref.key, version_id), None)

    # -------- Helpers --------
    def _cached_version(self, key: StateKey, ref: S3ObjectRef, item: Dict[str, Any]) -> StateVersion:
        """Version metadata for one listing entry; `head_object` only on a cache miss."""
        cache_key = (ref.key, item["VersionId"])
        with self._cache_lock:
            cached = self._version_cache.get(cache_key)
            if cached is not None:
                self._version_cache.move_to_end(cache_key)
                return cached
        head = self._call(
            "list_versions",
            key,
            self._s3.head_object,
            Bucket=ref.bucket,
            Key=ref.key,
            VersionId=item["VersionId"],
        )
        version = self._version_from_response(key, head, fallback_id=item["VersionId"], size=int(item.get("Size", 0)))
        with self._cache_lock:
            self._version_cache[cache_key] = version
            while len(self._version_cache) > self._version_cache_size:
                self._version_cache.popitem(last=False)
        return version

    def _version_from_response(
        self,
        key: StateKey,
        resp: Dict[str, Any],
        *,
        fallback_id: Optional[str],
        size: int,
    ) -> StateVersion:
        meta = resp.get("Metadata") or {}
        created_at = resp.get("LastModified") or self._clock()
        return StateVersion(
            version_id=resp.get("VersionId") or fallback_id or "",
            key=key,
            created_at=created_at,
            created_by=meta.get(META_CREATED_BY, ""),
            checksum=meta.get(META_CHECKSUM, ""),
            key_id=meta.get(META_KEY_ID, ""),
            size=int(resp.get("ContentLength", size)),
        )


__all__ = ["S3BlobStore", "S3ObjectRef"]
