from __future__ import annotations

from datetime import datetime, timedelta, UTC
from typing import Any, Dict, List, Optional
from uuid import uuid4

from botocore.exceptions import ClientError


def client_error(code: str, op: str, status: int = 400) -> ClientError:
    return ClientError({"Error": {"Code": code}, "ResponseMetadata": {"HTTPStatusCode": status}}, op)


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class _FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data


class _FakePaginator:
    def __init__(self, s3: "FakeS3", page_size: int) -> None:
        self._s3 = s3
        self._page_size = page_size

    def paginate(self, *, Bucket: str, Prefix: str = ""):
        self._s3._maybe_fail("ListObjectVersions")
        items: List[Dict[str, Any]] = []
        for (bucket, key), versions in sorted(self._s3.objects.items()):
            if bucket != Bucket or not key.startswith(Prefix):
                continue
            # S3 lists newest first within a key
            for idx, v in enumerate(reversed(versions)):
                items.append(
                    {
                        "Key": key,
                        "VersionId": v["VersionId"],
                        "LastModified": v["LastModified"],
                        "IsLatest": idx == 0,
                        "Size": len(v["Body"]),
                    }
                )
        for start in range(0, max(len(items), 1), self._page_size):
            yield {"Versions": items[start : start + self._page_size]}


class FakeS3:
    """Versioned-bucket fake covering the calls S3BlobStore makes."""

    def __init__(self, *, versioned: bool = True, page_size: int = 2) -> None:
        self.objects: Dict[tuple, List[Dict[str, Any]]] = {}
        self.versioned = versioned
        self.page_size = page_size
        self.fail_codes: List[str] = []
        self.calls: List[str] = []
        self._tick = datetime(2025, 1, 1, tzinfo=UTC)

    def _maybe_fail(self, op: str) -> None:
        self.calls.append(op)
        if self.fail_codes:
            code = self.fail_codes.pop(0)
            raise client_error(code, op, 503 if code in ("SlowDown", "ServiceUnavailable") else 400)

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str, Metadata: Dict[str, str]):
        self._maybe_fail("PutObject")
        self._tick += timedelta(seconds=1)
        version_id = uuid4().hex if self.versioned else "null"
        entry = {
            "VersionId": version_id,
            "Body": bytes(Body),
            "Metadata": dict(Metadata),
            "LastModified": self._tick,
        }
        versions = self.objects.setdefault((Bucket, Key), [])
        if not self.versioned:
            versions.clear()
        versions.append(entry)
        return {"ETag": '"etag"', "VersionId": version_id}

    def _find(self, Bucket: str, Key: str, VersionId: Optional[str], op: str) -> Dict[str, Any]:
        versions = self.objects.get((Bucket, Key))
        if not versions:
            raise client_error("NoSuchKey", op, 404)
        if VersionId is None:
            return versions[-1]
        # Real S3 version ids are 32 URL-safe characters; anything else is rejected up front
        if len(VersionId) != 32:
            raise client_error("InvalidArgument", op, 400)
        for v in versions:
            if v["VersionId"] == VersionId:
                return v
        raise client_error("NoSuchVersion", op, 404)

    def get_object(self, *, Bucket: str, Key: str, VersionId: Optional[str] = None):
        self._maybe_fail("GetObject")
        v = self._find(Bucket, Key, VersionId, "GetObject")
        return {
            "Body": _FakeBody(v["Body"]),
            "VersionId": v["VersionId"],
            "LastModified": v["LastModified"],
            "Metadata": dict(v["Metadata"]),
            "ContentLength": len(v["Body"]),
        }

    def head_object(self, *, Bucket: str, Key: str, VersionId: Optional[str] = None):
        self._maybe_fail("HeadObject")
        v = self._find(Bucket, Key, VersionId, "HeadObject")
        return {
            "VersionId": v["VersionId"],
            "LastModified": v["LastModified"],
            "Metadata": dict(v["Metadata"]),
            "ContentLength": len(v["Body"]),
        }

    def delete_object(self, *, Bucket: str, Key: str, VersionId: Optional[str] = None):
        self._maybe_fail("DeleteObject")
        versions = self.objects.get((Bucket, Key), [])
        self.objects[(Bucket, Key)] = [v for v in versions if v["VersionId"] != VersionId]
        if not self.objects[(Bucket, Key)]:
            del self.objects[(Bucket, Key)]
        return {}

    def get_paginator(self, name: str):
        assert name == "list_object_versions"
        return _FakePaginator(self, self.page_size)


class FakeDynamo:
    """Low-level DynamoDB client fake evaluating the two condition forms the lock table uses."""

    def __init__(self) -> None:
        self.items: Dict[str, Dict[str, Dict[str, str]]] = {}
        self.fail_codes: List[str] = []
        self.consistent_reads: List[bool] = []

    def _maybe_fail(self, op: str) -> None:
        if self.fail_codes:
            raise client_error(self.fail_codes.pop(0), op, 400)

    def _check(self, current, expr, names, values, op: str) -> None:
        if expr is None:
            return
        if expr.startswith("attribute_not_exists"):
            ok = current is None
        else:
            attr = names["#r"]
            ok = current is not None and current.get(attr) == values[":expected"]
        if not ok:
            raise client_error("ConditionalCheckFailedException", op, 400)

    def put_item(
        self,
        *,
        TableName: str,
        Item,
        ConditionExpression=None,
        ExpressionAttributeNames=None,
        ExpressionAttributeValues=None,
    ):
        self._maybe_fail("PutItem")
        key = Item["LockID"]["S"]
        self._check(self.items.get(key), ConditionExpression, ExpressionAttributeNames, ExpressionAttributeValues, "PutItem")
        self.items[key] = dict(Item)
        return {}

    def get_item(self, *, TableName: str, Key, ConsistentRead: bool = False):
        self._maybe_fail("GetItem")
        self.consistent_reads.append(ConsistentRead)
        item = self.items.get(Key["LockID"]["S"])
        return {"Item": dict(item)} if item else {}

    def delete_item(
        self,
        *,
        TableName: str,
        Key,
        ConditionExpression=None,
        ExpressionAttributeNames=None,
        ExpressionAttributeValues=None,
    ):
        self._maybe_fail("DeleteItem")
        key = Key["LockID"]["S"]
        self._check(self.items.get(key), ConditionExpression, ExpressionAttributeNames, ExpressionAttributeValues, "DeleteItem")
        self.items.pop(key, None)
        return {}


class FakeKms:
    """KMS fake: data keys are 'wrapped' by tagging them with the key id."""

    def __init__(self, key_ids=("alias/state",)) -> None:
        self.enabled = set(key_ids)
        self.fail_codes: List[str] = []

    def generate_data_key(self, *, KeyId: str, KeySpec: str):
        if self.fail_codes:
            raise client_error(self.fail_codes.pop(0), "GenerateDataKey")
        if KeyId not in self.enabled:
            raise client_error("NotFoundException", "GenerateDataKey")
        plaintext = uuid4().bytes + uuid4().bytes
        return {"Plaintext": plaintext, "CiphertextBlob": KeyId.encode() + b"|" + plaintext, "KeyId": KeyId}

    def decrypt(self, *, CiphertextBlob: bytes, KeyId: str):
        if self.fail_codes:
            raise client_error(self.fail_codes.pop(0), "Decrypt")
        owner, _, plaintext = CiphertextBlob.partition(b"|")
        if owner.decode() != KeyId:
            raise client_error("IncorrectKeyException", "Decrypt")
        if KeyId not in self.enabled:
            raise client_error("DisabledException", "Decrypt")
        return {"Plaintext": plaintext, "KeyId": KeyId}


class FakeSSM:
    def __init__(self, params: Dict[str, str]) -> None:
        self.params = dict(params)

    def get_parameter(self, *, Name: str, WithDecryption: bool = False):
        if Name not in self.params:
            raise client_error("ParameterNotFound", "GetParameter")
        return {"Parameter": {"Name": Name, "Value": self.params[Name]}}
