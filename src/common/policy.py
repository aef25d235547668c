from __future__ import annotations

import fnmatch
import hashlib
import hmac
import json
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from state.models import Capability, Decision, Principal, StateKey

from .errors import ConfigError, Denied


def authorize(principal: Principal, key: StateKey, action: Capability) -> Decision:
    """Decide whether `principal` may perform `action` on `key`.

    Pure function of the principal's capabilities and namespace patterns:
    - deny if the capability is missing;
    - deny if no namespace pattern (glob, e.g. "team-*") matches `key.namespace`.
    """
    if not principal.can(action):
        return Decision.deny(f"principal {principal.id} lacks capability '{action.value}'")
    if not any(fnmatch.fnmatchcase(key.namespace, pat) for pat in principal.namespaces):
        return Decision.deny(f"principal {principal.id} has no access to namespace '{key.namespace}'")
    return Decision.allow()


def require(principal: Principal, key: StateKey, action: Capability) -> None:
    """Raise `Denied` unless `authorize` allows the action."""
    decision = authorize(principal, key, action)
    if not decision:
        raise Denied(
            decision.reason or "denied",
            key=key.path,
            action=action.value,
            principal=principal.id,
        )


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def parse_capabilities(raw: Union[str, Iterable[str], None]) -> frozenset[Capability]:
    """Parse capabilities from a CSV string ("read, write") or a list of names."""
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        items: List[str] = [tok.strip() for tok in raw.replace(" ", ",").split(",") if tok.strip()]
    else:
        items = [str(tok).strip() for tok in raw if str(tok).strip()]
    out = set()
    for name in items:
        try:
            out.add(Capability(name.lower()))
        except ValueError as ex:
            raise ConfigError(f"Unknown capability: {name}") from ex
    return frozenset(out)


def parse_principals(raw: Optional[str]) -> Dict[str, Principal]:
    """Parse the principal table from JSON.

    Accepts a JSON array of objects:
      [{"id": "ci", "token_sha256": "<hex>", "capabilities": ["read", "write", "lock"],
        "namespaces": ["infra-*"]}]

    `token` (plaintext) may be given instead of `token_sha256`; it is hashed on load.
    `capabilities` may also be a CSV string. Returns {token digest: Principal}.
    Empty input yields an empty table (every request is then denied).
    """
    if not raw or not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as ex:
        raise ConfigError("principals must be a JSON array") from ex
    if not isinstance(data, list):
        raise ConfigError("principals must be a JSON array")

    out: Dict[str, Principal] = {}
    for entry in data:
        if not isinstance(entry, dict) or not entry.get("id"):
            raise ConfigError("each principal needs an 'id'")
        digest = entry.get("token_sha256")
        if not digest and entry.get("token"):
            digest = token_digest(str(entry["token"]))
        if not digest:
            raise ConfigError(f"principal {entry['id']} has no token")
        namespaces = entry.get("namespaces") or ["*"]
        if isinstance(namespaces, str):
            namespaces = [ns.strip() for ns in namespaces.split(",") if ns.strip()]
        out[str(digest).lower()] = Principal(
            id=str(entry["id"]),
            capabilities=parse_capabilities(entry.get("capabilities")),
            namespaces=tuple(namespaces),
        )
    return out


class TokenAuthenticator:
    """
    Bearer-token identity provider.

    Tokens are never stored; the table maps SHA-256 digests to principals and
    lookups compare digests in constant time.
    """

    def __init__(self, principals: Mapping[str, Principal]) -> None:
        self._principals = dict(principals)

    def authenticate(self, credentials: Any) -> Principal:
        token = _extract_token(credentials)
        if not token:
            raise Denied("missing credentials", action="authenticate")
        digest = token_digest(token)
        for known, principal in self._principals.items():
            if hmac.compare_digest(known, digest):
                return principal
        raise Denied("unknown credentials", action="authenticate")


def _extract_token(credentials: Any) -> Optional[str]:
    # Accept a raw token, an "Authorization" header value, or {"token": ...}
    if isinstance(credentials, Mapping):
        credentials = credentials.get("token") or credentials.get("authorization")
    if not isinstance(credentials, str):
        return None
    value = credentials.strip()
    if value.lower().startswith("bearer "):
        value = value[7:].strip()
    return value or None


__all__ = [
    "authorize",
    "require",
    "token_digest",
    "parse_capabilities",
    "parse_principals",
    "TokenAuthenticator",
]
