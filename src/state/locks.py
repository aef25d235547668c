from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, UTC
from typing import Callable, Dict, Mapping, Optional, Protocol
from uuid import uuid4

import structlog

from common.errors import LockHeld, LockMismatch, LockRequired, Unavailable
from common.retry import RetryPolicy, call_with_retry

from .models import LockEvent, LockEventKind, LockRecord, StateKey


logger = structlog.get_logger(__name__)

# Bounded retries when a conditional write races with another writer
_MAX_CAS_ATTEMPTS = 5


class OptimisticLockError(Exception):
    """Raised by a lock table when a conditional write's precondition fails."""


class LockTable(Protocol):
    """
    Strongly consistent storage for at most one `LockRecord` per key.

    All writes are conditional; a failed precondition raises
    `OptimisticLockError` and leaves the stored record untouched.
    """

    def get(self, key: StateKey) -> Optional[LockRecord]: ...

    def create(self, record: LockRecord) -> None:
        """Store `record` only if no record exists for its key."""
        ...

    def replace(self, expected_lock_id: str, record: LockRecord) -> None:
        """Overwrite the record only if the stored one has `expected_lock_id`."""
        ...

    def delete(self, key: StateKey, expected_lock_id: Optional[str] = None) -> None:
        """Remove the record; with `expected_lock_id`, only if it still matches."""
        ...


class InMemoryLockTable:
    """Process-local lock table; a single mutex makes each write a compare-and-swap."""

    def __init__(self) -> None:
        self._records: Dict[StateKey, LockRecord] = {}
        self._lock = threading.Lock()

    def get(self, key: StateKey) -> Optional[LockRecord]:
        with self._lock:
            return self._records.get(key)

    def create(self, record: LockRecord) -> None:
        with self._lock:
            if record.key in self._records:
                raise OptimisticLockError(f"Lock already exists for {record.key.path}")
            self._records[record.key] = record

    def replace(self, expected_lock_id: str, record: LockRecord) -> None:
        with self._lock:
            current = self._records.get(record.key)
            if current is None or current.lock_id != expected_lock_id:
                raise OptimisticLockError(f"Lock for {record.key.path} changed concurrently")
            self._records[record.key] = record

    def delete(self, key: StateKey, expected_lock_id: Optional[str] = None) -> None:
        with self._lock:
            current = self._records.get(key)
            if expected_lock_id is not None and (current is None or current.lock_id != expected_lock_id):
                raise OptimisticLockError(f"Lock for {key.path} changed concurrently")
            self._records.pop(key, None)


def new_lock_id() -> str:
    return uuid4().hex


class LockManager:
    """
    Mutual exclusion over state keys: UNLOCKED -> LOCKED -> UNLOCKED.

    Policy
    - `acquire` is fail-fast: it either wins the conditional create (or the
      conditional replace of an expired lease) or raises `LockHeld`. Waiting is
      the caller's decision (see `Coordinator.lock(timeout=...)`).
    - A lock whose `ttl` has lapsed is abandoned. The next `acquire` reclaims it
      and emits a `reclaimed` event instead of `acquired`.
    - `force_break` is for operators recovering from crashed holders. It is
      always emitted as a `force_broken` event and logged at WARNING.

    Every transition is reported to `on_event` (if given) and to the log.
    """

    def __init__(
        self,
        table: LockTable,
        *,
        on_event: Optional[Callable[[LockEvent], None]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        retry_policy: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._table = table
        self._on_event = on_event
        self._clock = clock
        self._retry = retry_policy
        self._sleep = sleep

    def _emit(
        self,
        kind: LockEventKind,
        key: StateKey,
        *,
        actor: str,
        record: Optional[LockRecord],
        previous: Optional[LockRecord] = None,
    ) -> LockEvent:
        event = LockEvent(
            kind=kind,
            key=key,
            lock_id=record.lock_id if record else None,
            holder=record.holder if record else None,
            actor=actor,
            at=self._clock(),
            previous=previous,
        )
        log = logger.warning if kind in (LockEventKind.FORCE_BROKEN, LockEventKind.RECLAIMED) else logger.info
        log(
            f"lock_{kind.value}",
            key=key.path,
            lock_id=event.lock_id,
            holder=event.holder,
            actor=actor,
            previous_lock_id=previous.lock_id if previous else None,
            previous_holder=previous.holder if previous else None,
        )
        if self._on_event is not None:
            self._on_event(event)
        return event

    def current(self, key: StateKey) -> Optional[LockRecord]:
        return self._table.get(key)

    def acquire(
        self,
        key: StateKey,
        holder: str,
        operation: str = "",
        *,
        ttl: Optional[float] = None,
        info: Optional[Mapping[str, str]] = None,
        lock_id: Optional[str] = None,
    ) -> LockRecord:
        """
        Take the lock on `key` for `holder`.

        - `ttl` (seconds) makes the lock a lease that others may reclaim once lapsed.
        - `lock_id` lets a caller retry an acquire idempotently: if the stored
          record already carries that id, it is returned unchanged.

        Raises `LockHeld` when another unexpired lock exists.
        """
        if ttl is not None and ttl <= 0:
            raise ValueError("ttl must be > 0")
        lock_id = lock_id or new_lock_id()

        for _ in range(_MAX_CAS_ATTEMPTS):
            now = self._clock()
            record = LockRecord(
                key=key,
                lock_id=lock_id,
                holder=holder,
                operation=operation,
                acquired_at=now,
                expires_at=now + timedelta(seconds=ttl) if ttl is not None else None,
                info=dict(info or {}),
            )
            try:
                self._table.create(record)
            except OptimisticLockError:
                pass
            else:
                self._emit(LockEventKind.ACQUIRED, key, actor=holder, record=record)
                return record

            existing = self._table.get(key)
            if existing is None:
                # Released between our create and read; try again
                continue
            if existing.lock_id == lock_id:
                return existing
            if not existing.is_expired(now):
                raise LockHeld(
                    f"State {key.path} is locked by {existing.holder}",
                    holder=existing.holder,
                    acquired_at=existing.acquired_at.isoformat(),
                    lock_id=existing.lock_id,
                    operation=existing.operation,
                    key=key.path,
                    action="lock",
                )
            try:
                self._table.replace(existing.lock_id, record)
            except OptimisticLockError:
                continue
            self._emit(LockEventKind.RECLAIMED, key, actor=holder, record=record, previous=existing)
            return record

        raise Unavailable(f"Lock on {key.path} is highly contended; gave up", key=key.path, action="lock")

    def release(self, key: StateKey, lock_id: str, *, actor: Optional[str] = None) -> LockRecord:
        """
        Release the lock only if `lock_id` matches the active record.

        Transient table failures are retried here. A conditional delete that
        raised `Unavailable` may still have landed, so when a retry finds our
        record gone the release is reported as done.
        """
        existing = call_with_retry(
            lambda: self._table.get(key), policy=self._retry, sleep=self._sleep, operation="unlock"
        )
        if existing is None:
            raise LockMismatch(f"No active lock on {key.path}", key=key.path, action="unlock", lock_id=lock_id)
        if existing.lock_id != lock_id:
            raise LockMismatch(
                f"Lock id does not match the active lock on {key.path}",
                key=key.path,
                action="unlock",
                lock_id=lock_id,
                holder=existing.holder,
            )
        unacknowledged = False

        def delete() -> None:
            nonlocal unacknowledged
            try:
                self._table.delete(key, expected_lock_id=lock_id)
            except Unavailable:
                unacknowledged = True
                raise
            except OptimisticLockError as e:
                if unacknowledged:
                    # An earlier attempt removed our record
                    logger.info("lock_release_confirmed", key=key.path, lock_id=lock_id)
                    return
                raise LockMismatch(
                    f"Lock on {key.path} changed before release", key=key.path, action="unlock", lock_id=lock_id
                ) from e

        call_with_retry(delete, policy=self._retry, sleep=self._sleep, operation="unlock")
        self._emit(LockEventKind.RELEASED, key, actor=actor or existing.holder, record=existing)
        return existing

    def force_break(self, key: StateKey, requester: str) -> Optional[LockRecord]:
        """Clear any lock on `key` unconditionally; returns the broken record (or None)."""
        existing = self._table.get(key)
        if existing is None:
            logger.info("lock_force_break_noop", key=key.path, actor=requester)
            return None
        self._table.delete(key)
        self._emit(LockEventKind.FORCE_BROKEN, key, actor=requester, record=None, previous=existing)
        return existing

    def verify(self, key: StateKey, lock_id: Optional[str]) -> LockRecord:
        """Check that `lock_id` is the active, unexpired lock on `key`."""
        existing = self._table.get(key)
        if existing is None:
            raise LockRequired(f"Writing {key.path} requires holding its lock", key=key.path, action="put")
        if existing.is_expired(self._clock()):
            raise LockRequired(
                f"Lock on {key.path} expired; acquire it again",
                key=key.path,
                action="put",
                holder=existing.holder,
                lock_id=existing.lock_id,
            )
        if not lock_id or existing.lock_id != lock_id:
            raise LockMismatch(
                f"Lock id does not match the active lock on {key.path}",
                key=key.path,
                action="put",
                holder=existing.holder,
            )
        return existing


__all__ = [
    "LockTable",
    "InMemoryLockTable",
    "LockManager",
    "OptimisticLockError",
    "new_lock_id",
]
