from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

import boto3
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .errors import NotFound, StateBackendError, Unavailable


# Error codes AWS services return for throttling and transient server faults
TRANSIENT_ERROR_CODES = frozenset(
    {
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "ProvisionedThroughputExceededException",
        "RequestLimitExceeded",
        "RequestTimeout",
        "ServiceUnavailable",
        "InternalError",
        "InternalServerError",
        "KMSInternalException",
        "DependencyTimeoutException",
        "500",
        "503",
    }
)

NOT_FOUND_ERROR_CODES = frozenset({"NoSuchKey", "NoSuchVersion", "NotFound", "404"})

# botocore transport failures (no HTTP response at all)
TRANSPORT_ERRORS = (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError)


def error_code(exc: ClientError) -> Optional[str]:
    return exc.response.get("Error", {}).get("Code")


def translate_client_error(exc: ClientError, **context: Any) -> StateBackendError:
    """Map a botocore ClientError to the backend taxonomy.

    Only transient and not-found codes are translated; anything else is
    returned as a generic `StateBackendError` carrying the AWS code so callers
    still see a typed failure with context.
    """
    code = error_code(exc)
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    if code in TRANSIENT_ERROR_CODES or (isinstance(status, int) and status >= 500):
        return Unavailable(f"Backing store unavailable ({code})", aws_code=code, **context)
    if code in NOT_FOUND_ERROR_CODES:
        return NotFound(f"Object not found ({code})", aws_code=code, **context)
    return StateBackendError(f"AWS request failed ({code})", aws_code=code, **context)


def load_ssm_params(prefix: str, names: Iterable[str], *, ssm: Optional[object] = None) -> Dict[str, Optional[str]]:
    """Read SecureString parameters under `prefix`; missing ones come back as None."""
    client = ssm or boto3.client("ssm")
    names = list(names)
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = client.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            # Leave as None if parameter missing or access denied
            if error_code(e) in ("ParameterNotFound", "AccessDeniedException"):
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


__all__ = [
    "TRANSIENT_ERROR_CODES",
    "NOT_FOUND_ERROR_CODES",
    "TRANSPORT_ERRORS",
    "error_code",
    "translate_client_error",
    "load_ssm_params",
]
