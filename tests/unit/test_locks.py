from __future__ import annotations

import threading

import pytest

from aws_fakes import FakeClock
from common.errors import LockHeld, LockMismatch, LockRequired, Unavailable
from common.retry import RetryPolicy
from state.locks import InMemoryLockTable, LockManager, OptimisticLockError
from state.models import LockEventKind, StateKey


KEY = StateKey(namespace="infra", key="env/prod")


def _manager(clock=None):
    events = []
    mgr = LockManager(InMemoryLockTable(), on_event=events.append, clock=clock or FakeClock())
    return mgr, events


def test_acquire_then_second_acquire_fails_with_holder_context():
    mgr, events = _manager()
    rec = mgr.acquire(KEY, "alice", "plan")

    with pytest.raises(LockHeld) as exc:
        mgr.acquire(KEY, "bob", "apply")
    assert exc.value.holder == "alice"
    assert exc.value.context["lock_id"] == rec.lock_id
    assert exc.value.context["operation"] == "plan"
    assert exc.value.context["acquired_at"] == rec.acquired_at.isoformat()
    assert [e.kind for e in events] == [LockEventKind.ACQUIRED]


def test_release_requires_matching_lock_id():
    mgr, events = _manager()
    rec = mgr.acquire(KEY, "alice", "plan")

    with pytest.raises(LockMismatch):
        mgr.release(KEY, "wrong")
    # mismatch must not clear the active lock
    assert mgr.current(KEY) == rec

    mgr.release(KEY, rec.lock_id)
    assert mgr.current(KEY) is None
    assert events[-1].kind == LockEventKind.RELEASED

    with pytest.raises(LockMismatch):
        mgr.release(KEY, rec.lock_id)


class _LossyDeleteTable(InMemoryLockTable):
    """Fails the first `lost` deletes with Unavailable; with `apply` they land first."""

    def __init__(self, lost: int = 1, apply: bool = True) -> None:
        super().__init__()
        self.lost = lost
        self.apply = apply

    def delete(self, key, expected_lock_id=None):
        if self.lost:
            self.lost -= 1
            if self.apply:
                super().delete(key, expected_lock_id)
            raise Unavailable("read timeout", key=key.path)
        super().delete(key, expected_lock_id)


def test_release_whose_delete_landed_unacknowledged_succeeds():
    events = []
    sleeps = []
    mgr = LockManager(_LossyDeleteTable(), on_event=events.append, clock=FakeClock(), sleep=sleeps.append)
    rec = mgr.acquire(KEY, "alice", "plan")

    released = mgr.release(KEY, rec.lock_id)
    assert released.lock_id == rec.lock_id
    assert mgr.current(KEY) is None
    assert events[-1].kind == LockEventKind.RELEASED
    assert len(sleeps) == 1


def test_release_retries_a_delete_that_did_not_land():
    table = _LossyDeleteTable(lost=2, apply=False)
    mgr = LockManager(table, clock=FakeClock(), sleep=lambda _s: None)
    rec = mgr.acquire(KEY, "alice")
    mgr.release(KEY, rec.lock_id)
    assert mgr.current(KEY) is None


def test_release_surfaces_unavailable_after_bounded_retries():
    table = _LossyDeleteTable(lost=10, apply=False)
    mgr = LockManager(table, clock=FakeClock(), retry_policy=RetryPolicy(attempts=2), sleep=lambda _s: None)
    rec = mgr.acquire(KEY, "alice")
    with pytest.raises(Unavailable):
        mgr.release(KEY, rec.lock_id)
    assert mgr.current(KEY) == rec


def test_new_acquire_after_release_gets_new_lock_id():
    mgr, _ = _manager()
    first = mgr.acquire(KEY, "alice")
    mgr.release(KEY, first.lock_id)
    second = mgr.acquire(KEY, "bob")
    assert second.lock_id != first.lock_id
    assert second.holder == "bob"


def test_expired_lease_is_reclaimed_and_reported_as_reclaim():
    clock = FakeClock()
    mgr, events = _manager(clock)
    old = mgr.acquire(KEY, "alice", "apply", ttl=30)

    clock.advance(10)
    with pytest.raises(LockHeld):
        mgr.acquire(KEY, "bob")

    clock.advance(25)
    new = mgr.acquire(KEY, "bob", "plan")
    assert new.holder == "bob"
    assert events[-1].kind == LockEventKind.RECLAIMED
    assert events[-1].previous == old
    # the old holder can no longer release
    with pytest.raises(LockMismatch):
        mgr.release(KEY, old.lock_id)


def test_lock_without_ttl_never_expires():
    clock = FakeClock()
    mgr, _ = _manager(clock)
    mgr.acquire(KEY, "alice")
    clock.advance(10**7)
    with pytest.raises(LockHeld):
        mgr.acquire(KEY, "bob")


def test_retried_acquire_with_same_lock_id_is_idempotent():
    mgr, events = _manager()
    first = mgr.acquire(KEY, "alice", lock_id="fixed")
    again = mgr.acquire(KEY, "alice", lock_id="fixed")
    assert again == first
    assert len(events) == 1


def test_force_break_clears_foreign_lock_and_emits_event():
    mgr, events = _manager()
    rec = mgr.acquire(KEY, "alice")

    broken = mgr.force_break(KEY, "operator")
    assert broken == rec
    assert mgr.current(KEY) is None
    assert events[-1].kind == LockEventKind.FORCE_BROKEN
    assert events[-1].actor == "operator"
    assert events[-1].previous == rec

    assert mgr.force_break(KEY, "operator") is None


def test_verify():
    clock = FakeClock()
    mgr, _ = _manager(clock)
    with pytest.raises(LockRequired):
        mgr.verify(KEY, "anything")

    rec = mgr.acquire(KEY, "alice", ttl=5)
    assert mgr.verify(KEY, rec.lock_id) == rec
    with pytest.raises(LockMismatch):
        mgr.verify(KEY, "other")
    with pytest.raises(LockMismatch):
        mgr.verify(KEY, None)

    clock.advance(5)
    with pytest.raises(LockRequired):
        mgr.verify(KEY, rec.lock_id)


def test_invalid_ttl_rejected():
    mgr, _ = _manager()
    with pytest.raises(ValueError):
        mgr.acquire(KEY, "alice", ttl=0)


def test_concurrent_acquire_storm_has_exactly_one_winner():
    mgr, _ = _manager()
    n = 32
    barrier = threading.Barrier(n)
    winners = []
    losers = []

    def worker(i: int) -> None:
        barrier.wait()
        try:
            winners.append(mgr.acquire(KEY, f"holder-{i}", "plan"))
        except LockHeld:
            losers.append(i)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(winners) == 1
    assert len(losers) == n - 1
    assert mgr.current(KEY) == winners[0]


def test_in_memory_table_conditional_writes():
    table = InMemoryLockTable()
    mgr, _ = _manager()
    rec = mgr.acquire(KEY, "alice")
    table.create(rec)
    with pytest.raises(OptimisticLockError):
        table.create(rec)
    with pytest.raises(OptimisticLockError):
        table.replace("other", rec)
    with pytest.raises(OptimisticLockError):
        table.delete(KEY, expected_lock_id="other")
    table.delete(KEY, expected_lock_id=rec.lock_id)
    assert table.get(KEY) is None
