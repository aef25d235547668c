from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import structlog
from pydantic import ValidationError

from common.aws import load_ssm_params
from common.config import (
    PARAM_FERNET_CURRENT,
    PARAM_FERNET_KEYS,
    PARAM_PRINCIPALS,
    Settings,
    parse_fernet_keys,
)
from common.errors import ConfigError, StateBackendError
from common.keyring import FernetKeyring, Keyring, KmsKeyring
from common.logging_config import configure_logging
from common.policy import TokenAuthenticator, parse_principals
from state.dynamo_locks import DynamoLockTable
from state.encryption import EncryptedBlobStore
from state.locks import LockManager
from state.models import EncryptionContext, Principal, StateKey, lock_record_to_dict
from state.s3_store import S3BlobStore

from .service import Coordinator


logger = structlog.get_logger(__name__)

API_PREFIX = "/v1/"
MAX_LOCK_WAIT_SECONDS = 30.0

STATUS_CODES: Dict[str, int] = {
    "BadRequest": 400,
    "Denied": 403,
    "NotFound": 404,
    "LockMismatch": 409,
    "QuotaExceeded": 413,
    "LockHeld": 423,
    "LockRequired": 428,
    "DecryptionFailed": 500,
    "EncryptionFailed": 500,
    "StateBackendError": 502,
    "Unavailable": 503,
}


class BadRequest(ValueError):
    """The request is malformed (unknown operation, missing or invalid fields)."""


# --------------- Request parsing ---------------
def _header(headers: Optional[Mapping[str, Any]], name: str) -> Optional[str]:
    if not headers:
        return None
    for k, v in headers.items():
        if k.lower() == name.lower():
            return v
    return None


def parse_event(event: Mapping[str, Any]) -> Tuple[str, Dict[str, Any], Optional[str]]:
    """Split an invocation event into (operation, body, credentials).

    Supports
    - API Gateway / function URL proxy events: `POST /v1/{Operation}` with a
      JSON body and `Authorization: Bearer <token>`.
    - Direct invocation: {"operation": "...", "token": "...", ...fields}.
    """
    if "body" in event or "rawPath" in event or "path" in event:
        path = event.get("rawPath") or event.get("path") or ""
        operation = path.rstrip("/").rsplit("/", 1)[-1] if API_PREFIX in path else ""
        raw = event.get("body") or "{}"
        if event.get("isBase64Encoded"):
            try:
                raw = base64.b64decode(raw).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as ex:
                raise BadRequest("body is not valid base64 UTF-8") from ex
        try:
            body = json.loads(raw)
        except json.JSONDecodeError as ex:
            raise BadRequest("body must be JSON") from ex
        if not isinstance(body, dict):
            raise BadRequest("body must be a JSON object")
        credentials = _header(event.get("headers"), "authorization")
    else:
        body = {k: v for k, v in event.items() if k not in ("operation", "token")}
        operation = str(event.get("operation") or "")
        credentials = event.get("token")
    if not operation:
        raise BadRequest("operation is required")
    return operation, body, credentials


def _state_key(body: Mapping[str, Any]) -> StateKey:
    try:
        return StateKey(namespace=body.get("namespace") or "", key=body.get("key") or "")
    except ValidationError as ex:
        raise BadRequest(f"invalid state key: {ex.errors()[0].get('msg')}") from ex


def _optional_float(body: Mapping[str, Any], name: str) -> Optional[float]:
    val = body.get(name)
    if val is None:
        return None
    if isinstance(val, bool) or not isinstance(val, (int, float)) or val <= 0:
        raise BadRequest(f"{name} must be a positive number")
    return float(val)


def _optional_str(body: Mapping[str, Any], name: str) -> Optional[str]:
    val = body.get(name)
    if val is None:
        return None
    if not isinstance(val, str):
        raise BadRequest(f"{name} must be a string")
    return val


def _decode_payload(body: Mapping[str, Any]) -> bytes:
    raw = body.get("payload")
    if not isinstance(raw, str):
        raise BadRequest("payload must be a base64 string")
    try:
        return base64.b64decode(raw, validate=True)
    except binascii.Error as ex:
        raise BadRequest("payload is not valid base64") from ex


# --------------- Dispatch ---------------
def _get_state(c: Coordinator, p: Principal, body: Mapping[str, Any]) -> Dict[str, Any]:
    snap = c.get_state(p, _state_key(body), _optional_str(body, "versionId"))
    return {
        "payload": base64.b64encode(snap.payload).decode("ascii"),
        "versionId": snap.version_id,
        "version": snap.version.model_dump(mode="json"),
    }


def _put_state(c: Coordinator, p: Principal, body: Mapping[str, Any]) -> Dict[str, Any]:
    version = c.put_state(p, _state_key(body), _decode_payload(body), _optional_str(body, "lockId"))
    return {"versionId": version.version_id, "version": version.model_dump(mode="json")}


def _lock(c: Coordinator, p: Principal, body: Mapping[str, Any]) -> Dict[str, Any]:
    timeout = _optional_float(body, "timeout")
    info = body.get("info") or {}
    if not isinstance(info, dict):
        raise BadRequest("info must be an object")
    record = c.lock(
        p,
        _state_key(body),
        _optional_str(body, "operation") or "",
        holder=_optional_str(body, "holder"),
        ttl=_optional_float(body, "ttl"),
        info={str(k): str(v) for k, v in info.items()},
        timeout=min(timeout, MAX_LOCK_WAIT_SECONDS) if timeout is not None else None,
    )
    return {"lockId": record.lock_id, "lock": lock_record_to_dict(record)}


def _unlock(c: Coordinator, p: Principal, body: Mapping[str, Any]) -> Dict[str, Any]:
    lock_id = body.get("lockId")
    if not isinstance(lock_id, str) or not lock_id:
        raise BadRequest("lockId is required")
    c.unlock(p, _state_key(body), lock_id)
    return {}


def _force_unlock(c: Coordinator, p: Principal, body: Mapping[str, Any]) -> Dict[str, Any]:
    return {"broken": lock_record_to_dict(c.force_unlock(p, _state_key(body)))}


def _list_versions(c: Coordinator, p: Principal, body: Mapping[str, Any]) -> Dict[str, Any]:
    versions = c.list_versions(p, _state_key(body))
    return {
        "versions": [v.version_id for v in versions],
        "details": [v.model_dump(mode="json") for v in versions],
    }


def _lock_info(c: Coordinator, p: Principal, body: Mapping[str, Any]) -> Dict[str, Any]:
    return {"lock": lock_record_to_dict(c.lock_info(p, _state_key(body)))}


OPERATIONS: Dict[str, Callable[[Coordinator, Principal, Mapping[str, Any]], Dict[str, Any]]] = {
    "GetState": _get_state,
    "PutState": _put_state,
    "Lock": _lock,
    "Unlock": _unlock,
    "ForceUnlock": _force_unlock,
    "ListVersions": _list_versions,
    "LockInfo": _lock_info,
}


def _response(status: int, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "statusCode": status,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(payload, separators=(",", ":"), sort_keys=True),
    }


def handle(event: Mapping[str, Any], *, coordinator: Coordinator, authenticator: TokenAuthenticator) -> Dict[str, Any]:
    """Authenticate, dispatch one operation and map errors to status codes."""
    try:
        operation, body, credentials = parse_event(event)
        fn = OPERATIONS.get(operation)
        if fn is None:
            raise BadRequest(f"unknown operation: {operation}")
        principal = authenticator.authenticate(credentials)
        result = fn(coordinator, principal, body)
    except BadRequest as e:
        return _response(STATUS_CODES["BadRequest"], {"ok": False, "error": "BadRequest", "message": str(e), "context": {}})
    except StateBackendError as e:
        status = STATUS_CODES.get(e.kind, 502)
        if status >= 500:
            logger.error("request_failed", error=e.kind, message=e.message, **e.context)
        return _response(status, {"ok": False, **e.to_dict()})
    return _response(200, {"ok": True, **result})


# --------------- Wiring ---------------
def build_runtime(
    settings: Settings,
    *,
    s3: Optional[object] = None,
    dynamodb: Optional[object] = None,
    kms: Optional[object] = None,
    ssm: Optional[object] = None,
) -> Tuple[Coordinator, TokenAuthenticator]:
    """Wire S3 + DynamoDB + KMS/Fernet + SSM-backed principals into a coordinator."""
    params = load_ssm_params(
        settings.param_prefix,
        [PARAM_PRINCIPALS, PARAM_FERNET_KEYS, PARAM_FERNET_CURRENT],
        ssm=ssm,
    )

    keyring: Keyring
    if settings.kms_key_id:
        keyring = KmsKeyring(kms=kms)
        context = EncryptionContext(key_id=settings.kms_key_id)
    else:
        keys = parse_fernet_keys(params.get(PARAM_FERNET_KEYS))
        current = params.get(PARAM_FERNET_CURRENT) or (sorted(keys)[-1] if keys else None)
        if not current or current not in keys:
            raise ConfigError(
                f"Missing encryption configuration: set KMS_KEY_ID or "
                f"{settings.param_prefix}{PARAM_FERNET_KEYS} / {PARAM_FERNET_CURRENT}"
            )
        keyring = FernetKeyring(keys)
        context = EncryptionContext(key_id=current)

    blobs = S3BlobStore(
        s3=s3,
        bucket=settings.state_bucket,
        namespaces=settings.namespaces,
        prefix=settings.state_prefix,
        max_object_bytes=settings.max_state_bytes,
    )
    locks = LockManager(DynamoLockTable(dynamodb=dynamodb, table_name=settings.lock_table))
    coordinator = Coordinator(store=EncryptedBlobStore(blobs, keyring, context), locks=locks)
    authenticator = TokenAuthenticator(parse_principals(params.get(PARAM_PRINCIPALS)))
    return coordinator, authenticator


_RUNTIME: Optional[Tuple[Coordinator, TokenAuthenticator]] = None


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """AWS Lambda entry for the state backend API.

    Environment:
    - STATE_BUCKET, STATE_PREFIX (optional), LOCK_TABLE, STATE_NAMESPACES, PARAM_PREFIX
    - KMS_KEY_ID (optional; Fernet keys from SSM otherwise)
    - SSM under PARAM_PREFIX: principals, and fernet_keys/fernet_current_key_id without KMS
    """
    global _RUNTIME
    if _RUNTIME is None:
        settings = Settings.from_env()
        configure_logging(json_output=settings.log_json, level=settings.log_level)
        _RUNTIME = build_runtime(settings)
    coordinator, authenticator = _RUNTIME
    return handle(event, coordinator=coordinator, authenticator=authenticator)


__all__ = ["lambda_handler", "handle", "build_runtime", "parse_event", "OPERATIONS", "STATUS_CODES", "BadRequest"]
