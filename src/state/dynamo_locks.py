from __future__ import annotations

import math
from typing import Any, Callable, Dict, Optional

import boto3
from botocore.exceptions import ClientError

from common.aws import TRANSPORT_ERRORS, error_code, translate_client_error
from common.errors import Unavailable

from .locks import OptimisticLockError
from .models import LockRecord, StateKey


# Attribute names; `LockID` is the table's hash key, as in Terraform's lock table
ATTR_KEY = "LockID"
ATTR_RECORD_ID = "LockRecordId"
ATTR_INFO = "Info"
ATTR_EXPIRES = "ExpiresAt"


class DynamoLockTable:
    """
    Lock table on DynamoDB using conditional writes.

    - One item per state key, hash key `LockID` = "namespace/key".
    - `create` uses `attribute_not_exists(LockID)`, `replace` and conditional
      `delete` compare `LockRecordId`; DynamoDB evaluates the condition
      atomically, so two concurrent creates can never both succeed.
    - Reads use `ConsistentRead=True` (read-after-write on the record).
    - `ExpiresAt` (epoch seconds) is written for leases so a DynamoDB TTL can
      eventually clean up abandoned items; expiry itself is decided by the
      lock manager from the record, not by TTL deletion.
    """

    def __init__(
        self,
        *,
        dynamodb: Optional[object] = None,
        table_name: str,
        region_name: Optional[str] = None,
    ) -> None:
        self._ddb = dynamodb or boto3.client("dynamodb", region_name=region_name)
        self._table = table_name

    def _call(self, action: str, key: StateKey, fn: Callable[..., Any], **kwargs: Any) -> Any:
        try:
            return fn(TableName=self._table, **kwargs)
        except ClientError as e:
            if error_code(e) == "ConditionalCheckFailedException":
                raise OptimisticLockError(f"Lock condition failed for {key.path}") from e
            raise translate_client_error(e, key=key.path, action=action) from e
        except TRANSPORT_ERRORS as e:
            raise Unavailable(f"DynamoDB unreachable: {e}", key=key.path, action=action) from e

    @staticmethod
    def _item(record: LockRecord) -> Dict[str, Dict[str, str]]:
        item = {
            ATTR_KEY: {"S": record.key.path},
            ATTR_RECORD_ID: {"S": record.lock_id},
            ATTR_INFO: {"S": record.model_dump_json()},
        }
        if record.expires_at is not None:
            item[ATTR_EXPIRES] = {"N": str(math.ceil(record.expires_at.timestamp()))}
        return item

    def get(self, key: StateKey) -> Optional[LockRecord]:
        resp = self._call(
            "lock_info",
            key,
            self._ddb.get_item,
            Key={ATTR_KEY: {"S": key.path}},
            ConsistentRead=True,
        )
        item = resp.get("Item")
        if not item:
            return None
        return LockRecord.model_validate_json(item[ATTR_INFO]["S"])

    def create(self, record: LockRecord) -> None:
        self._call(
            "lock",
            record.key,
            self._ddb.put_item,
            Item=self._item(record),
            ConditionExpression="attribute_not_exists(#k)",
            ExpressionAttributeNames={"#k": ATTR_KEY},
        )

    def replace(self, expected_lock_id: str, record: LockRecord) -> None:
        self._call(
            "lock",
            record.key,
            self._ddb.put_item,
            Item=self._item(record),
            ConditionExpression="#r = :expected",
            ExpressionAttributeNames={"#r": ATTR_RECORD_ID},
            ExpressionAttributeValues={":expected": {"S": expected_lock_id}},
        )

    def delete(self, key: StateKey, expected_lock_id: Optional[str] = None) -> None:
        params: Dict[str, Any] = {"Key": {ATTR_KEY: {"S": key.path}}}
        if expected_lock_id is not None:
            params["ConditionExpression"] = "#r = :expected"
            params["ExpressionAttributeNames"] = {"#r": ATTR_RECORD_ID}
            params["ExpressionAttributeValues"] = {":expected": {"S": expected_lock_id}}
        self._call("unlock", key, self._ddb.delete_item, **params)


__all__ = ["DynamoLockTable"]
