from __future__ import annotations

from enum import Enum


class SyncStatus(str, Enum):
    """Per-row lifecycle tag driving outbound synchronization."""

    CREATE = "C"
    UPDATE = "U"
    DELETE = "D"
    SYNCED = "S"
    ERROR = "E"


PENDING_STATUSES = (SyncStatus.CREATE, SyncStatus.UPDATE, SyncStatus.DELETE)

# remote verb per pending tag
HTTP_METHODS = {
    SyncStatus.CREATE: "POST",
    SyncStatus.UPDATE: "PUT",
    SyncStatus.DELETE: "DELETE",
}


def apply_outcome(tag: SyncStatus, ok: bool) -> SyncStatus:
    """Next tag after a remote call for a pending row."""
    if tag not in PENDING_STATUSES:
        raise ValueError(f"Row with status {tag.value!r} is not pending synchronization")
    return SyncStatus.SYNCED if ok else SyncStatus.ERROR


def reprocess(tag: SyncStatus) -> SyncStatus:
    """Failed rows re-enter the pipeline as updates."""
    if tag != SyncStatus.ERROR:
        raise ValueError(f"Only rows with status 'E' can be reprocessed, got {tag.value!r}")
    return SyncStatus.UPDATE
