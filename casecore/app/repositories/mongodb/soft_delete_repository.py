"""
MongoDB repository for soft-deletable collections in casecore.

This module provides the data access layer shared by every soft-deletable
entity kind:
- Visible reads (find, find one, count, aggregate) that hide deleted documents
- Unfiltered lookups used by delete and restore
- Inserts carrying LIVE deletion metadata
- Whole-document saves bound to the caller's session
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from motor.motor_asyncio import AsyncIOMotorCollection

from casecore.app.core.exceptions import raise_database_error
from casecore.app.models.domain.soft_delete import SnapshotPolicy, with_soft_delete_defaults
from casecore.app.repositories.mongodb.soft_delete_filter import (
    apply_default_deleted_filter,
    apply_default_deleted_pipeline,
    include_deleted,
)
from casecore.app.utils.logging import database_logger, get_logger, performance_context

logger = get_logger(__name__)


SortSpec = Sequence[Tuple[str, int]]


def _session_kwargs(session: Any) -> Dict[str, Any]:
    return {"session": session} if session is not None else {}


class SoftDeleteRepository:
    """
    Repository for one soft-deletable collection.

    All ``*_visible`` reads rewrite their filter so deleted documents are
    excluded unless the filter carries the ``include_deleted`` marker.
    """

    def __init__(
        self,
        collection: AsyncIOMotorCollection,
        entity_kind: str,
        snapshot_policy: Optional[SnapshotPolicy] = None
    ):
        """
        Initialize repository.

        Args:
            collection: Backing collection
            entity_kind: Kind name used in logs, errors and audit entries
            snapshot_policy: Fields suspended while a document is deleted
        """
        self._collection = collection
        self._collection_name = getattr(collection, "name", entity_kind)
        self.entity_kind = entity_kind
        self.snapshot_policy = snapshot_policy

    @property
    def collection_name(self) -> str:
        return self._collection_name

    async def list_visible(
        self,
        query: Optional[Mapping[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        limit: int = 0,
        session: Any = None
    ) -> List[Dict[str, Any]]:
        """
        Find documents visible under the default deletion filter.

        Raises:
            SoftDeleteError: If the filter names ``deleted_at`` without opting in
        """
        effective = apply_default_deleted_filter(query, entity_kind=self.entity_kind)

        try:
            with performance_context("mongodb_list_visible", collection=self._collection_name):
                cursor = self._collection.find(effective, **_session_kwargs(session))
                if sort:
                    cursor = cursor.sort(list(sort))
                if limit:
                    cursor = cursor.limit(limit)
                documents = await cursor.to_list(length=None)
        except Exception as e:
            raise_database_error(
                f"Failed to list {self.entity_kind} documents: {e}",
                database_type="mongodb",
                operation="find",
                collection_name=self._collection_name
            )

        database_logger.query_executed(
            database_type="mongodb",
            operation="find",
            collection=self._collection_name,
            result_count=len(documents)
        )
        return documents

    async def find_one_visible(
        self,
        query: Optional[Mapping[str, Any]] = None,
        session: Any = None
    ) -> Optional[Dict[str, Any]]:
        effective = apply_default_deleted_filter(query, entity_kind=self.entity_kind)
        return await self._find_one(effective, session)

    async def find_one_any(
        self,
        query: Optional[Mapping[str, Any]] = None,
        session: Any = None
    ) -> Optional[Dict[str, Any]]:
        """Find one document whether it is live or deleted."""
        effective = apply_default_deleted_filter(include_deleted(query), entity_kind=self.entity_kind)
        return await self._find_one(effective, session)

    async def count_visible(
        self,
        query: Optional[Mapping[str, Any]] = None,
        session: Any = None
    ) -> int:
        effective = apply_default_deleted_filter(query, entity_kind=self.entity_kind)

        try:
            with performance_context("mongodb_count_visible", collection=self._collection_name):
                count = await self._collection.count_documents(effective, **_session_kwargs(session))
        except Exception as e:
            raise_database_error(
                f"Failed to count {self.entity_kind} documents: {e}",
                database_type="mongodb",
                operation="count_documents",
                collection_name=self._collection_name
            )

        database_logger.query_executed(
            database_type="mongodb",
            operation="count_documents",
            collection=self._collection_name,
            result_count=count
        )
        return count

    async def aggregate_visible(
        self,
        pipeline: Optional[Sequence[Mapping[str, Any]]] = None,
        include_deleted: bool = False,
        session: Any = None
    ) -> List[Dict[str, Any]]:
        """
        Run an aggregation with deleted documents excluded from its input.

        Args:
            pipeline: Aggregation stages
            include_deleted: Opt in without a marker on the first ``$match``
            session: Optional session
        """
        effective = apply_default_deleted_pipeline(
            pipeline,
            include_deleted=include_deleted,
            entity_kind=self.entity_kind
        )

        try:
            with performance_context("mongodb_aggregate_visible", collection=self._collection_name):
                cursor = self._collection.aggregate(effective, **_session_kwargs(session))
                results = await cursor.to_list(length=None)
        except Exception as e:
            raise_database_error(
                f"Failed to aggregate {self.entity_kind} documents: {e}",
                database_type="mongodb",
                operation="aggregate",
                collection_name=self._collection_name
            )

        database_logger.query_executed(
            database_type="mongodb",
            operation="aggregate",
            collection=self._collection_name,
            result_count=len(results)
        )
        return results

    async def insert(self, document: Mapping[str, Any], session: Any = None) -> Any:
        """
        Insert a new LIVE document.

        Returns:
            The inserted ``_id``
        """
        prepared = with_soft_delete_defaults(dict(document))

        try:
            with performance_context("mongodb_insert", collection=self._collection_name):
                result = await self._collection.insert_one(prepared, **_session_kwargs(session))
        except Exception as e:
            raise_database_error(
                f"Failed to insert {self.entity_kind} document: {e}",
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
        return result.inserted_id

    async def save(self, document: Mapping[str, Any], session: Any = None) -> bool:
        """
        Replace a stored document by ``_id``.

        Returns:
            True if a document matched
        """
        try:
            with performance_context("mongodb_save", collection=self._collection_name):
                result = await self._collection.replace_one(
                    {"_id": document["_id"]},
                    dict(document),
                    **_session_kwargs(session)
                )
        except Exception as e:
            raise_database_error(
                f"Failed to save {self.entity_kind} document: {e}",
                database_type="mongodb",
                operation="replace_one",
                collection_name=self._collection_name
            )

        database_logger.query_executed(
            database_type="mongodb",
            operation="replace_one",
            collection=self._collection_name,
            result_count=result.matched_count
        )
        return result.matched_count > 0

    async def _find_one(self, effective: Mapping[str, Any], session: Any) -> Optional[Dict[str, Any]]:
        try:
            with performance_context("mongodb_find_one", collection=self._collection_name):
                document = await self._collection.find_one(effective, **_session_kwargs(session))
        except Exception as e:
            raise_database_error(
                f"Failed to load {self.entity_kind} document: {e}",
                database_type="mongodb",
                operation="find_one",
                collection_name=self._collection_name
            )

        database_logger.query_executed(
            database_type="mongodb",
            operation="find_one",
            collection=self._collection_name,
            result_count=1 if document else 0
        )
        return document
