"""
State storage: versioned blob stores, the encryption layer and lock management.

Blob stores and lock tables are interfaces with an in-memory implementation
(tests, single process) and an AWS one (S3 with versioning, DynamoDB).
"""

from .models import (
    Capability,
    LockEvent,
    LockRecord,
    Principal,
    StateKey,
    StateSnapshot,
    StateVersion,
)

__all__ = [
    "Capability",
    "LockEvent",
    "LockRecord",
    "Principal",
    "StateKey",
    "StateSnapshot",
    "StateVersion",
]
