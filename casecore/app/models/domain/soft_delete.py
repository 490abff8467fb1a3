"""
Domain model for soft deletion in casecore.

This module defines the deletion metadata carried by every soft-deletable
document:
- Field names for deletion metadata and restore history
- Snapshot policies for entities whose live state is suspended while deleted
- Entity kinds known to the default registry
- Pure transitions between the LIVE and DELETED states
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, MutableMapping, Optional, Tuple


DELETED_AT = "deleted_at"
DELETED_BY = "deleted_by"
DELETE_REASON = "delete_reason"
RESTORE_HISTORY = "restore_history"
DELETED_STATE_SNAPSHOT = "deleted_state_snapshot"


class EntityKind(str, Enum):
    """Soft-deletable entity kinds in the default registry."""

    USER = "user"
    CLIENT = "client"
    CASE = "case"
    TASK = "task"
    ATTACHMENT = "attachment"
    COMMENT = "comment"
    CATEGORY = "category"


@dataclass(frozen=True)
class RestoreEntry:
    """One entry of a document's restore history."""

    restored_at: datetime
    restored_by: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {"restored_at": self.restored_at, "restored_by": self.restored_by}


@dataclass(frozen=True)
class SnapshotPolicy:
    """
    Fields captured before deletion and reinstated on restore.

    ``suspended`` holds the values forced onto the live document while it is
    deleted. Only fields present on the document are captured, so a restore
    never invents a field the document did not have.
    """

    fields: Tuple[str, ...]
    suspended: Mapping[str, Any] = field(default_factory=dict)

    def capture(self, document: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            name: copy.deepcopy(document[name])
            for name in self.fields
            if name in document
        }

    def suspend(self, document: MutableMapping[str, Any]) -> None:
        for name, value in self.suspended.items():
            document[name] = value

    def reinstate(self, document: MutableMapping[str, Any], snapshot: Mapping[str, Any]) -> None:
        for name, value in snapshot.items():
            document[name] = copy.deepcopy(value)
        # Suspension keys the document never had are removed again
        for name in self.suspended:
            if name not in snapshot:
                document.pop(name, None)


USER_AUTH_SNAPSHOT_POLICY = SnapshotPolicy(
    fields=("status", "is_active", "lock_until"),
    suspended={"status": "DISABLED", "is_active": False}
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_deleted(document: Optional[Mapping[str, Any]]) -> bool:
    """A document is live iff ``deleted_at`` is None."""
    return bool(document) and document.get(DELETED_AT) is not None


def with_soft_delete_defaults(document: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Fill missing deletion metadata with the LIVE defaults."""
    document.setdefault(DELETED_AT, None)
    document.setdefault(DELETED_BY, None)
    document.setdefault(DELETE_REASON, None)
    document.setdefault(RESTORE_HISTORY, [])
    return document


def mark_deleted(
    document: MutableMapping[str, Any],
    actor: Optional[str],
    reason: Optional[str],
    policy: Optional[SnapshotPolicy] = None,
    now: Optional[datetime] = None
) -> bool:
    """
    Move a document to DELETED in place.

    Returns:
        False if the document was already deleted, leaving it untouched
    """
    if is_deleted(document):
        return False

    with_soft_delete_defaults(document)
    document[DELETED_AT] = now or utc_now()
    document[DELETED_BY] = actor
    document[DELETE_REASON] = reason

    if policy is not None:
        document[DELETED_STATE_SNAPSHOT] = policy.capture(document)
        policy.suspend(document)

    return True


def mark_restored(
    document: MutableMapping[str, Any],
    actor: Optional[str],
    policy: Optional[SnapshotPolicy] = None,
    now: Optional[datetime] = None
) -> bool:
    """
    Move a document back to LIVE in place.

    Returns:
        False if the document was already live, leaving it untouched
    """
    if not is_deleted(document):
        return False

    restored_at = now or utc_now()
    document[DELETED_AT] = None
    document[DELETED_BY] = None
    document[DELETE_REASON] = None
    history = list(document.get(RESTORE_HISTORY) or [])
    history.append(RestoreEntry(restored_at=restored_at, restored_by=actor).to_dict())
    document[RESTORE_HISTORY] = history

    snapshot = document.pop(DELETED_STATE_SNAPSHOT, None)
    if snapshot is not None:
        if policy is not None:
            policy.reinstate(document, snapshot)
        else:
            for name, value in snapshot.items():
                document[name] = copy.deepcopy(value)

    return True
