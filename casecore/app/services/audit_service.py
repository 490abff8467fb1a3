"""
Append-only audit trail for casecore.

Audit entries are written from deferred effects after the originating
transaction commits. Entries are never changed once written: the store
exposes no working update or delete path.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection

from casecore.app.core.exceptions import AuditImmutableError, raise_database_error
from casecore.app.utils.logging import database_logger, get_logger, performance_context

logger = get_logger(__name__)


UNKNOWN_ACTOR = "UNKNOWN_ACTOR"
AUDIT_COLLECTION = "audit_log"
RECENT_ENTRY_LIMIT = 100


@dataclass
class AuditEntry:
    """One immutable audit record."""

    actor: Optional[str]
    action: str
    description: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_document(self) -> Dict[str, Any]:
        return {
            "actor": self.actor or UNKNOWN_ACTOR,
            "action": self.action,
            "description": self.description,
            "timestamp": self.timestamp,
            "metadata": dict(self.metadata),
        }


class AuditStore:
    """
    Writes audit entries to the ``audit_log`` collection.

    Without a collection the store only keeps its in-memory buffer of recent
    entries, which is what tests and the diagnostics endpoint read.
    """

    def __init__(
        self,
        collection: Optional[AsyncIOMotorCollection] = None,
        recent_limit: int = RECENT_ENTRY_LIMIT
    ):
        self._collection = collection
        self._collection_name = AUDIT_COLLECTION
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=recent_limit)

    async def append(self, entry: AuditEntry) -> Dict[str, Any]:
        """
        Persist one audit entry.

        Raises:
            DatabaseError: If the insert fails, so the calling effect is retried
        """
        document = entry.to_document()
        self._recent.appendleft(dict(document))

        if self._collection is None:
            logger.debug("Audit entry buffered without persistence", action=entry.action)
            return document

        try:
            with performance_context("mongodb_audit_append", action=entry.action):
                await self._collection.insert_one(dict(document))
        except Exception as e:
            raise_database_error(
                f"Failed to persist audit entry: {e}",
                database_type="mongodb",
                operation="insert_one",
                collection_name=self._collection_name
            )

        database_logger.query_executed(
            database_type="mongodb",
            operation="insert_one",
            collection=self._collection_name,
            result_count=1
        )
        return document

    async def update(self, *args: Any, **kwargs: Any) -> None:
        raise AuditImmutableError("Audit entries cannot be updated", operation="update")

    async def delete(self, *args: Any, **kwargs: Any) -> None:
        raise AuditImmutableError("Audit entries cannot be deleted", operation="delete")

    def recent_entries(self) -> List[Dict[str, Any]]:
        """Most recent entries first, as copies."""
        return [dict(entry) for entry in self._recent]
