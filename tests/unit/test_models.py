from __future__ import annotations

from datetime import datetime, timedelta, UTC

import pytest
from pydantic import ValidationError

from state.models import Capability, Decision, LockRecord, Principal, StateKey


@pytest.mark.parametrize("key", ["env/prod", "a", "team/app/terraform.tfstate"])
def test_state_key_accepts_nested_keys(key):
    sk = StateKey(namespace="infra", key=key)
    assert sk.path == f"infra/{key}"


@pytest.mark.parametrize(
    "namespace,key",
    [("", "a"), ("in/fra", "a"), ("infra", ""), ("infra", "/abs"), ("infra", "a/../b"), ("infra", "a//b")],
)
def test_state_key_rejects_unsafe_paths(namespace, key):
    with pytest.raises(ValidationError):
        StateKey(namespace=namespace, key=key)


def test_state_key_is_hashable_and_frozen():
    a = StateKey(namespace="infra", key="env/prod")
    b = StateKey(namespace="infra", key="env/prod")
    assert a == b and len({a, b}) == 1
    with pytest.raises(ValidationError):
        a.key = "other"  # type: ignore[misc]


def test_lock_record_expiry():
    now = datetime(2025, 1, 1, tzinfo=UTC)
    key = StateKey(namespace="infra", key="k")
    lease = LockRecord(key=key, lock_id="L", holder="h", acquired_at=now, expires_at=now + timedelta(seconds=10))
    forever = LockRecord(key=key, lock_id="L", holder="h", acquired_at=now)

    assert not lease.is_expired(now + timedelta(seconds=9))
    assert lease.is_expired(now + timedelta(seconds=10))
    assert not forever.is_expired(now + timedelta(days=365))


def test_principal_capabilities_and_decision_truthiness():
    p = Principal(id="ci", capabilities=frozenset({Capability.READ}))
    assert p.can(Capability.READ)
    assert not p.can(Capability.FORCE_UNLOCK)
    assert Principal(id="x", capabilities=frozenset({"force-unlock"})).can(Capability.FORCE_UNLOCK)

    assert Decision.allow()
    assert not Decision.deny("nope")
