"""
Soft delete service for casecore.

This module provides the idempotent delete and restore operations:
- First-write-wins deletion with state snapshots for auth-sensitive kinds
- Restore with history and exact snapshot reinstatement
- Cascades from parents to children, parent guards on restore and
  in-use guards on delete
- Commit-gated audit entries through the request's effect recorder
- Retention diagnostics for the admin API
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from casecore.app.core.effect_queue import DeferredEffect
from casecore.app.core.effect_recorder import RequestEffectContext, RequestEffectRecorder
from casecore.app.core.exceptions import ErrorCode, raise_soft_delete_error
from casecore.app.models.domain.soft_delete import (
    DELETED_AT,
    USER_AUTH_SNAPSHOT_POLICY,
    EntityKind,
    is_deleted,
    mark_deleted,
    mark_restored,
    utc_now,
)
from casecore.app.repositories.mongodb.soft_delete_filter import include_deleted, only_deleted
from casecore.app.repositories.mongodb.soft_delete_repository import SoftDeleteRepository
from casecore.app.services.audit_service import AuditEntry, AuditStore
from casecore.app.utils.logging import get_logger
from casecore.config.settings import SoftDeleteSettings

logger = get_logger(__name__)


AUDIT_WRITE = "AUDIT_WRITE"
ACTION_SOFT_DELETE = "SOFT_DELETE"
ACTION_RESTORE = "RESTORE"


@dataclass(frozen=True)
class CascadeRule:
    """Children whose ``link`` field holds the parent's ``parent_key``."""

    child: SoftDeleteRepository
    link: str
    parent_key: str = "_id"


@dataclass(frozen=True)
class ParentRule:
    """A parent that must be live before a child can be restored."""

    parent: SoftDeleteRepository
    link: str
    parent_key: str = "_id"


@dataclass(frozen=True)
class InUseRule:
    """Rows in ``repository`` referencing the entity block its deletion."""

    repository: SoftDeleteRepository
    link: str
    key: str = "_id"


@dataclass
class EntityRegistration:
    repository: SoftDeleteRepository
    cascades: List[CascadeRule] = field(default_factory=list)
    parents: List[ParentRule] = field(default_factory=list)
    in_use: List[InUseRule] = field(default_factory=list)


EntityTarget = Union[SoftDeleteRepository, EntityKind, str]


def build_default_registry(database: Any) -> Dict[str, EntityRegistration]:
    """
    Register the soft-deletable collections of a case-management database.

    Clients cascade to cases, and cases cascade to tasks, attachments and
    comments. Categories cannot be deleted while cases reference them.
    Users are suspended while deleted.
    """
    users = SoftDeleteRepository(database["users"], EntityKind.USER.value, USER_AUTH_SNAPSHOT_POLICY)
    clients = SoftDeleteRepository(database["clients"], EntityKind.CLIENT.value)
    cases = SoftDeleteRepository(database["cases"], EntityKind.CASE.value)
    tasks = SoftDeleteRepository(database["tasks"], EntityKind.TASK.value)
    attachments = SoftDeleteRepository(database["attachments"], EntityKind.ATTACHMENT.value)
    comments = SoftDeleteRepository(database["comments"], EntityKind.COMMENT.value)
    categories = SoftDeleteRepository(database["categories"], EntityKind.CATEGORY.value)

    return {
        EntityKind.USER.value: EntityRegistration(users),
        EntityKind.CLIENT.value: EntityRegistration(
            clients,
            cascades=[CascadeRule(cases, link="client_id", parent_key="client_id")]
        ),
        EntityKind.CASE.value: EntityRegistration(
            cases,
            cascades=[
                CascadeRule(tasks, link="case_id"),
                CascadeRule(attachments, link="case_id"),
                CascadeRule(comments, link="case_id"),
            ],
            parents=[ParentRule(clients, link="client_id", parent_key="client_id")]
        ),
        EntityKind.TASK.value: EntityRegistration(tasks, parents=[ParentRule(cases, link="case_id")]),
        EntityKind.ATTACHMENT.value: EntityRegistration(attachments, parents=[ParentRule(cases, link="case_id")]),
        EntityKind.COMMENT.value: EntityRegistration(comments, parents=[ParentRule(cases, link="case_id")]),
        EntityKind.CATEGORY.value: EntityRegistration(
            categories,
            in_use=[InUseRule(cases, link="category_id")]
        ),
    }


class SoftDeleteService:
    """
    Idempotent soft delete and restore across registered entity kinds.

    Writes go through the caller's session. Audit entries are buffered on
    the request's RequestEffectContext and only reach the audit store if the
    request's transaction commits.
    """

    def __init__(
        self,
        recorder: RequestEffectRecorder,
        audit_store: AuditStore,
        registry: Optional[Dict[str, EntityRegistration]] = None,
        settings: Optional[SoftDeleteSettings] = None
    ):
        self.recorder = recorder
        self.audit_store = audit_store
        self.registry: Dict[str, EntityRegistration] = dict(registry or {})
        self.settings = settings or SoftDeleteSettings()

    def register(self, registration: EntityRegistration) -> None:
        self.registry[registration.repository.entity_kind] = registration

    def get_registration(self, target: EntityTarget) -> EntityRegistration:
        """
        Resolve a kind name or repository to its registration.

        Unregistered repositories get an empty registration with no rules.

        Raises:
            SoftDeleteError: If a kind name is not registered
        """
        if isinstance(target, SoftDeleteRepository):
            registration = self.registry.get(target.entity_kind)
            if registration is not None and registration.repository is target:
                return registration
            return EntityRegistration(target)

        kind = target.value if isinstance(target, EntityKind) else str(target)
        registration = self.registry.get(kind)
        if registration is None:
            raise_soft_delete_error(
                f"Unknown entity kind: {kind}",
                entity_kind=kind,
                error_code=ErrorCode.ENTITY_KIND_UNKNOWN
            )
        return registration

    async def soft_delete(
        self,
        target: EntityTarget,
        query: Mapping[str, Any],
        actor: Optional[str],
        reason: Optional[str] = None,
        effects: Optional[RequestEffectContext] = None,
        session: Any = None
    ) -> Dict[str, Any]:
        """
        Soft delete one entity and cascade to its children.

        An entity that is already deleted keeps its original metadata and no
        audit entry is written.

        Args:
            target: Entity kind or repository
            query: Filter selecting the entity, evaluated without the
                default deletion filter
            actor: Identity performing the delete
            reason: Optional reason stored on the entity
            effects: Request effect context for the audit entry
            session: Store session of the request's transaction

        Returns:
            The entity document after the operation

        Raises:
            SoftDeleteError: If the entity does not exist or is in use
        """
        registration = self.get_registration(target)
        repository = registration.repository

        document = await repository.find_one_any(query, session=session)
        if document is None:
            raise_soft_delete_error(
                f"{repository.entity_kind} not found",
                entity_kind=repository.entity_kind,
                entity_id=_describe_query(query)
            )

        if is_deleted(document):
            logger.debug(
                "Entity already deleted",
                entity_kind=repository.entity_kind,
                entity_id=_entity_id(document)
            )
            return document

        await self._ensure_not_in_use(registration, document, session)

        mark_deleted(document, actor, reason, policy=repository.snapshot_policy)
        await repository.save(document, session=session)
        cascaded = await self._cascade_delete(registration, document, actor, reason, session)

        logger.info(
            "SOFT_DELETE_APPLIED",
            entity_kind=repository.entity_kind,
            entity_id=_entity_id(document),
            actor=actor,
            reason=reason,
            cascaded=cascaded
        )

        self._record_audit(
            effects,
            action=ACTION_SOFT_DELETE,
            entity_kind=repository.entity_kind,
            document=document,
            actor=actor,
            reason=reason,
            cascaded=cascaded
        )
        return document

    async def restore(
        self,
        target: EntityTarget,
        query: Mapping[str, Any],
        actor: Optional[str],
        effects: Optional[RequestEffectContext] = None,
        session: Any = None
    ) -> Dict[str, Any]:
        """
        Restore one entity and the children deleted with it.

        Restoring a live entity is a no-op.

        Raises:
            SoftDeleteError: If the entity does not exist or a parent is
                still deleted
        """
        registration = self.get_registration(target)
        repository = registration.repository

        document = await repository.find_one_any(query, session=session)
        if document is None:
            raise_soft_delete_error(
                f"{repository.entity_kind} not found",
                entity_kind=repository.entity_kind,
                entity_id=_describe_query(query)
            )

        if not is_deleted(document):
            return document

        await self._ensure_parents_live(registration, document, session)

        mark_restored(document, actor, policy=repository.snapshot_policy)
        await repository.save(document, session=session)
        cascaded = await self._cascade_restore(registration, document, actor, session)

        logger.info(
            "SOFT_DELETE_RESTORED",
            entity_kind=repository.entity_kind,
            entity_id=_entity_id(document),
            actor=actor,
            cascaded=cascaded
        )

        self._record_audit(
            effects,
            action=ACTION_RESTORE,
            entity_kind=repository.entity_kind,
            document=document,
            actor=actor,
            cascaded=cascaded
        )
        return document

    async def soft_delete_many(
        self,
        target: EntityTarget,
        query: Mapping[str, Any],
        actor: Optional[str],
        reason: Optional[str] = None,
        session: Any = None
    ) -> List[Dict[str, Any]]:
        """
        Soft delete every live entity matching ``query``, cascading.

        Returns:
            The documents that changed
        """
        registration = self.get_registration(target)
        repository = registration.repository

        changed = []
        for document in await repository.list_visible(query, session=session):
            await self._ensure_not_in_use(registration, document, session)
            if not mark_deleted(document, actor, reason, policy=repository.snapshot_policy):
                continue
            await repository.save(document, session=session)
            await self._cascade_delete(registration, document, actor, reason, session)
            changed.append(document)
        return changed

    async def restore_many(
        self,
        target: EntityTarget,
        query: Mapping[str, Any],
        actor: Optional[str],
        session: Any = None
    ) -> List[Dict[str, Any]]:
        """
        Restore every deleted entity matching ``query``, cascading.

        Returns:
            The documents that changed
        """
        registration = self.get_registration(target)
        repository = registration.repository

        changed = []
        for document in await repository.list_visible(only_deleted(query), session=session):
            await self._ensure_parents_live(registration, document, session)
            if not mark_restored(document, actor, policy=repository.snapshot_policy):
                continue
            await repository.save(document, session=session)
            await self._cascade_restore(registration, document, actor, session)
            changed.append(document)
        return changed

    async def build_diagnostics(self, retention_days: Optional[int] = None) -> Dict[str, Any]:
        """
        Summarize deleted documents per registered kind.

        Returns:
            ``retention_days``, the purge ``cutoff`` and one summary row per
            kind with ``deleted_count``, ``oldest_deleted_at`` and
            ``eligible_for_purge``
        """
        days = retention_days if retention_days and retention_days > 0 else self.settings.retention_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)

        summary = []
        for kind, registration in self.registry.items():
            repository = registration.repository
            deleted_count = await repository.count_visible(only_deleted())
            oldest = await repository.list_visible(only_deleted(), sort=[(DELETED_AT, 1)], limit=1)
            eligible = await repository.count_visible(include_deleted({DELETED_AT: {"$lte": cutoff}}))
            summary.append({
                "entity": kind,
                "deleted_count": deleted_count,
                "oldest_deleted_at": oldest[0][DELETED_AT] if oldest else None,
                "eligible_for_purge": eligible,
            })

        return {
            "retention_days": days,
            "cutoff": cutoff.isoformat(),
            "summary": summary,
        }

    async def _ensure_not_in_use(
        self,
        registration: EntityRegistration,
        document: Mapping[str, Any],
        session: Any
    ) -> None:
        for rule in registration.in_use:
            if rule.key not in document:
                continue
            in_use = await rule.repository.count_visible(
                include_deleted({rule.link: document[rule.key]}),
                session=session
            )
            if in_use > 0:
                raise_soft_delete_error(
                    f"{registration.repository.entity_kind} is in use by existing "
                    f"{rule.repository.entity_kind} records and cannot be deleted",
                    entity_kind=registration.repository.entity_kind,
                    entity_id=_entity_id(document),
                    error_code=ErrorCode.DELETE_BLOCKED_IN_USE
                )

    async def _ensure_parents_live(
        self,
        registration: EntityRegistration,
        document: Mapping[str, Any],
        session: Any
    ) -> None:
        for rule in registration.parents:
            link_value = document.get(rule.link)
            if link_value is None:
                continue
            parent = await rule.parent.find_one_any({rule.parent_key: link_value}, session=session)
            if is_deleted(parent):
                raise_soft_delete_error(
                    f"Cannot restore {registration.repository.entity_kind} while "
                    f"{rule.parent.entity_kind} is deleted",
                    entity_kind=registration.repository.entity_kind,
                    entity_id=_entity_id(document),
                    error_code=ErrorCode.RESTORE_PARENT_DELETED
                )

    async def _cascade_delete(
        self,
        registration: EntityRegistration,
        document: Mapping[str, Any],
        actor: Optional[str],
        reason: Optional[str],
        session: Any
    ) -> int:
        count = 0
        for rule in registration.cascades:
            if document.get(rule.parent_key) is None:
                continue
            children = await self.soft_delete_many(
                rule.child,
                {rule.link: document[rule.parent_key]},
                actor,
                reason=reason,
                session=session
            )
            count += len(children)
        return count

    async def _cascade_restore(
        self,
        registration: EntityRegistration,
        document: Mapping[str, Any],
        actor: Optional[str],
        session: Any
    ) -> int:
        count = 0
        for rule in registration.cascades:
            if document.get(rule.parent_key) is None:
                continue
            children = await self.restore_many(
                rule.child,
                {rule.link: document[rule.parent_key]},
                actor,
                session=session
            )
            count += len(children)
        return count

    def _record_audit(
        self,
        effects: Optional[RequestEffectContext],
        action: str,
        entity_kind: str,
        document: Mapping[str, Any],
        actor: Optional[str],
        reason: Optional[str] = None,
        cascaded: int = 0
    ) -> str:
        entity_id = _entity_id(document)
        entry = AuditEntry(
            actor=actor,
            action=f"{action} {entity_kind}",
            description=reason or "",
            timestamp=utc_now(),
            metadata={
                "target": entity_id,
                "scope": self.settings.audit_scope,
                "request_id": effects.request_id if effects else None,
                "reason": reason,
                "cascaded": cascaded,
            }
        )
        audit_store = self.audit_store

        async def write_audit() -> None:
            await audit_store.append(entry)

        return self.recorder.enqueue_after_commit(
            effects,
            DeferredEffect(
                kind=AUDIT_WRITE,
                payload={"action": entry.action, "target": entity_id, "actor": entry.actor},
                action=write_audit
            )
        )


def _entity_id(document: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not document or document.get("_id") is None:
        return None
    return str(document["_id"])


def _describe_query(query: Mapping[str, Any]) -> Optional[str]:
    if "_id" in query:
        return str(query["_id"])
    return None
