from __future__ import annotations

import time
from typing import Callable, List, Mapping, Optional

import structlog

from common.errors import Denied, LockHeld, StateBackendError
from common.policy import require
from common.retry import RetryPolicy, call_with_retry
from state.encryption import EncryptedBlobStore
from state.locks import LockManager, new_lock_id
from state.models import Capability, LockRecord, Principal, StateKey, StateSnapshot, StateVersion


logger = structlog.get_logger(__name__)


class Coordinator:
    """
    Façade over policy gate, lock manager and encrypted blob store.

    Every operation authorizes first; a denial raises `Denied` before any lock
    or storage call. Writes require the caller to hold the key's lock: there is
    no write path without a matching, unexpired lock id. The lock check and
    the blob write are separate calls, so a lease that lapses or is
    force-broken in between still lets that one version land; the lock is
    checked again afterwards and a loss is logged as `lock_lost_during_write`.

    Transient backing-store failures (`Unavailable`) are retried with bounded
    exponential backoff; every other error surfaces immediately. `unlock`
    leaves retrying to `LockManager.release`.

    Lock waiting
    - `lock(timeout=None)` is fail-fast and raises `LockHeld` at once.
    - `lock(timeout=N)` retries `LockHeld` with capped backoff for up to N
      seconds, then re-raises the last `LockHeld`. Giving up writes nothing.
    """

    def __init__(
        self,
        *,
        store: EncryptedBlobStore,
        locks: LockManager,
        retry_policy: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        max_lock_wait_delay: float = 2.0,
    ) -> None:
        self._store = store
        self._locks = locks
        self._retry = retry_policy
        self._sleep = sleep
        self._monotonic = monotonic
        self._max_lock_wait_delay = max_lock_wait_delay

    def _authorize(self, principal: Principal, key: StateKey, action: Capability) -> None:
        try:
            require(principal, key, action)
        except Denied as e:
            logger.info("request_denied", principal=principal.id, key=key.path, action=action.value, reason=e.message)
            raise

    def _with_retry(self, fn, operation: str):
        return call_with_retry(fn, policy=self._retry, sleep=self._sleep, operation=operation)

    # --------------- State ---------------
    def get_state(self, principal: Principal, key: StateKey, version_id: Optional[str] = None) -> StateSnapshot:
        self._authorize(principal, key, Capability.READ)
        return self._with_retry(lambda: self._store.get(key, version_id), "get_state")

    def put_state(self, principal: Principal, key: StateKey, payload: bytes, lock_id: Optional[str]) -> StateVersion:
        self._authorize(principal, key, Capability.WRITE)
        self._with_retry(lambda: self._locks.verify(key, lock_id), "verify_lock")
        version = self._with_retry(
            lambda: self._store.put(key, payload, created_by=principal.id),
            "put_state",
        )
        try:
            self._locks.verify(key, lock_id)
        except StateBackendError as e:
            logger.warning(
                "lock_lost_during_write",
                key=key.path,
                version_id=version.version_id,
                principal=principal.id,
                lock_id=lock_id,
                error=e.kind,
            )
        logger.info(
            "state_written",
            key=key.path,
            version_id=version.version_id,
            principal=principal.id,
            key_id=version.key_id,
            size=version.size,
        )
        return version

    def list_versions(self, principal: Principal, key: StateKey) -> List[StateVersion]:
        self._authorize(principal, key, Capability.READ)
        return self._with_retry(lambda: self._store.list_versions(key), "list_versions")

    # --------------- Locks ---------------
    def lock(
        self,
        principal: Principal,
        key: StateKey,
        operation: str = "",
        *,
        holder: Optional[str] = None,
        ttl: Optional[float] = None,
        info: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> LockRecord:
        self._authorize(principal, key, Capability.LOCK)
        holder = holder or principal.id
        # One id across retries so a landed-but-unacknowledged acquire is recognized
        lock_id = new_lock_id()

        def attempt() -> LockRecord:
            return self._with_retry(
                lambda: self._locks.acquire(key, holder, operation, ttl=ttl, info=info, lock_id=lock_id),
                "lock",
            )

        if timeout is None:
            return attempt()

        deadline = self._monotonic() + max(timeout, 0.0)
        delay = min(0.25, self._max_lock_wait_delay)
        while True:
            try:
                return attempt()
            except LockHeld:
                remaining = deadline - self._monotonic()
                if remaining <= 0:
                    raise
                logger.debug("lock_wait", key=key.path, holder=holder, remaining=remaining)
                self._sleep(min(delay, remaining))
                delay = min(delay * 2, self._max_lock_wait_delay)

    def unlock(self, principal: Principal, key: StateKey, lock_id: str) -> None:
        self._authorize(principal, key, Capability.LOCK)
        self._locks.release(key, lock_id, actor=principal.id)

    def force_unlock(self, principal: Principal, key: StateKey) -> Optional[LockRecord]:
        self._authorize(principal, key, Capability.FORCE_UNLOCK)
        return self._with_retry(lambda: self._locks.force_break(key, principal.id), "force_unlock")

    def lock_info(self, principal: Principal, key: StateKey) -> Optional[LockRecord]:
        self._authorize(principal, key, Capability.READ)
        return self._with_retry(lambda: self._locks.current(key), "lock_info")


__all__ = ["Coordinator"]
