from __future__ import annotations

import json
import os
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from .errors import ConfigError


# Environment variable names
ENV_STATE_BUCKET = "STATE_BUCKET"
ENV_STATE_PREFIX = "STATE_PREFIX"  # optional; defaults to ""
ENV_LOCK_TABLE = "LOCK_TABLE"
ENV_NAMESPACES = "STATE_NAMESPACES"  # CSV
ENV_KMS_KEY_ID = "KMS_KEY_ID"  # optional; Fernet keys from SSM otherwise
ENV_PARAM_PREFIX = "PARAM_PREFIX"
ENV_MAX_STATE_BYTES = "MAX_STATE_BYTES"
ENV_LOG_LEVEL = "LOG_LEVEL"
ENV_LOG_JSON = "LOG_JSON"

# SSM parameter names under PARAM_PREFIX
PARAM_PRINCIPALS = "principals"
PARAM_FERNET_KEYS = "fernet_keys"
PARAM_FERNET_CURRENT = "fernet_current_key_id"

DEFAULT_MAX_STATE_BYTES = 50 * 1024 * 1024


def _getenv(name: str, default: Optional[str] = None, *, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    source = os.environ if env is None else env
    val = source.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise ConfigError(f"Missing required configuration: {what}")
    return v


def _parse_csv(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    norm = raw.replace("\n", ",").replace(" ", ",")
    seen: set[str] = set()
    out: List[str] = []
    for tok in norm.split(","):
        tok = tok.strip()
        if tok and tok not in seen:
            seen.add(tok)
            out.append(tok)
    return out


def _parse_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """
    Runtime configuration resolved from the environment.

    Secrets (principal table, Fernet keys) are not part of this model; they are
    read from SSM Parameter Store under `param_prefix` at wiring time.
    """

    state_bucket: str
    state_prefix: str = ""
    lock_table: str
    namespaces: List[str] = Field(..., min_length=1)
    kms_key_id: Optional[str] = None
    param_prefix: str
    max_state_bytes: int = Field(DEFAULT_MAX_STATE_BYTES, gt=0)
    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        missing = [
            name
            for name in (ENV_STATE_BUCKET, ENV_LOCK_TABLE, ENV_NAMESPACES, ENV_PARAM_PREFIX)
            if not _getenv(name, env=env)
        ]
        if missing:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

        raw_max = _getenv(ENV_MAX_STATE_BYTES, env=env)
        try:
            max_bytes = int(raw_max) if raw_max else DEFAULT_MAX_STATE_BYTES
        except ValueError as ex:
            raise ConfigError(f"{ENV_MAX_STATE_BYTES} must be an integer") from ex

        namespaces = _parse_csv(_getenv(ENV_NAMESPACES, env=env))
        if not namespaces:
            raise ConfigError(f"{ENV_NAMESPACES} lists no namespaces")

        return cls(
            state_bucket=_require(_getenv(ENV_STATE_BUCKET, env=env), ENV_STATE_BUCKET),
            state_prefix=_getenv(ENV_STATE_PREFIX, "", env=env) or "",
            lock_table=_require(_getenv(ENV_LOCK_TABLE, env=env), ENV_LOCK_TABLE),
            namespaces=namespaces,
            kms_key_id=_getenv(ENV_KMS_KEY_ID, env=env),
            param_prefix=_require(_getenv(ENV_PARAM_PREFIX, env=env), ENV_PARAM_PREFIX),
            max_state_bytes=max_bytes,
            log_level=(_getenv(ENV_LOG_LEVEL, "INFO", env=env) or "INFO").upper(),
            log_json=_parse_bool(_getenv(ENV_LOG_JSON, env=env), True),
        )


def parse_fernet_keys(raw: Optional[str]) -> Dict[str, str]:
    """Parse {"key-id": "<fernet key>", ...} from JSON."""
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as ex:
        raise ConfigError(f"{PARAM_FERNET_KEYS} must be a JSON object") from ex
    if not isinstance(data, dict) or not all(isinstance(v, str) and v for v in data.values()):
        raise ConfigError(f"{PARAM_FERNET_KEYS} must map key ids to Fernet keys")
    return {str(k): v for k, v in data.items()}


__all__ = [
    "Settings",
    "ConfigError",
    "parse_fernet_keys",
    "ENV_STATE_BUCKET",
    "ENV_STATE_PREFIX",
    "ENV_LOCK_TABLE",
    "ENV_NAMESPACES",
    "ENV_KMS_KEY_ID",
    "ENV_PARAM_PREFIX",
    "ENV_MAX_STATE_BYTES",
    "ENV_LOG_LEVEL",
    "ENV_LOG_JSON",
    "PARAM_PRINCIPALS",
    "PARAM_FERNET_KEYS",
    "PARAM_FERNET_CURRENT",
]
