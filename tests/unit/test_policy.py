from __future__ import annotations

import json

import pytest

from common.errors import ConfigError, Denied
from common.policy import (
    TokenAuthenticator,
    authorize,
    parse_capabilities,
    parse_principals,
    require,
    token_digest,
)
from state.models import Capability, Principal, StateKey


KEY = StateKey(namespace="team-a", key="env/prod")


def test_authorize_checks_capability_and_namespace():
    reader = Principal(id="r", capabilities=frozenset({Capability.READ}), namespaces=("team-*",))

    assert authorize(reader, KEY, Capability.READ).allowed
    denied = authorize(reader, KEY, Capability.WRITE)
    assert not denied.allowed
    assert "write" in (denied.reason or "")

    other = StateKey(namespace="billing", key="env/prod")
    denied_ns = authorize(reader, other, Capability.READ)
    assert not denied_ns.allowed
    assert "billing" in (denied_ns.reason or "")


def test_require_raises_denied_with_context():
    p = Principal(id="ci", capabilities=frozenset({Capability.READ}))
    with pytest.raises(Denied) as exc:
        require(p, KEY, Capability.FORCE_UNLOCK)
    assert exc.value.context == {"key": "team-a/env/prod", "action": "force-unlock", "principal": "ci"}


def test_parse_capabilities_csv_and_list():
    assert parse_capabilities("read, write") == {Capability.READ, Capability.WRITE}
    assert parse_capabilities(["lock", "FORCE-UNLOCK"]) == {Capability.LOCK, Capability.FORCE_UNLOCK}
    assert parse_capabilities(None) == frozenset()
    with pytest.raises(ConfigError):
        parse_capabilities("read,admin")


def test_parse_principals_hashes_plain_tokens():
    raw = json.dumps(
        [
            {"id": "ci", "token": "secret-ci", "capabilities": "read,write,lock"},
            {"id": "ops", "token_sha256": token_digest("secret-ops").upper(), "capabilities": ["force-unlock"],
             "namespaces": "team-a, team-b"},
        ]
    )
    table = parse_principals(raw)
    assert table[token_digest("secret-ci")].id == "ci"
    ops = table[token_digest("secret-ops")]
    assert ops.namespaces == ("team-a", "team-b")
    assert ops.capabilities == {Capability.FORCE_UNLOCK}


@pytest.mark.parametrize("raw", ["{", "{}", '[{"token": "x"}]', '[{"id": "no-token"}]'])
def test_parse_principals_rejects_malformed(raw):
    with pytest.raises(ConfigError):
        parse_principals(raw)


def test_parse_principals_empty_input():
    assert parse_principals(None) == {}
    assert parse_principals("  ") == {}


def test_token_authenticator():
    auth = TokenAuthenticator(parse_principals(json.dumps([{"id": "ci", "token": "s3cret", "capabilities": "read"}])))
    assert auth.authenticate("Bearer s3cret").id == "ci"
    assert auth.authenticate({"token": "s3cret"}).id == "ci"
    assert auth.authenticate("s3cret").id == "ci"
    with pytest.raises(Denied):
        auth.authenticate("Bearer wrong")
    with pytest.raises(Denied):
        auth.authenticate(None)
