from __future__ import annotations

from typing import List

import structlog

from .blob_store import BlobStore
from .models import StateKey


logger = structlog.get_logger(__name__)


def prune_versions(store: BlobStore, key: StateKey, keep_last: int, *, dry_run: bool = False) -> List[str]:
    """
    Delete all but the newest `keep_last` versions of `key`.

    Housekeeping only: this is the one code path that calls `BlobStore.delete`.
    The latest version is always retained. Returns the pruned version ids,
    oldest first (with `dry_run`, the ids that would be pruned).
    """
    if keep_last < 1:
        raise ValueError("keep_last must be >= 1")
    versions = store.list_versions(key)
    doomed = [v.version_id for v in versions[: max(0, len(versions) - keep_last)]]
    if not dry_run:
        for version_id in doomed:
            store.delete(key, version_id)
    logger.info(
        "state_versions_pruned",
        key=key.path,
        kept=len(versions) - len(doomed),
        pruned=len(doomed),
        dry_run=dry_run,
    )
    return doomed


__all__ = ["prune_versions"]
