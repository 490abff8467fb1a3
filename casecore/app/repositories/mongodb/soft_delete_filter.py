"""
Default visibility rewriting for soft-deletable collections.

Every read query goes through these functions before it reaches MongoDB:
- ``apply_default_deleted_filter`` for find and count filters
- ``apply_default_deleted_pipeline`` for aggregation pipelines

Deleted documents are hidden unless the caller adds the ``include_deleted``
marker, which is removed before the query runs. A literal ``deleted_at``
condition without the marker is a programmer error and raises immediately.
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence

from casecore.app.core.exceptions import raise_manual_deleted_filter
from casecore.app.models.domain.soft_delete import DELETED_AT


INCLUDE_DELETED = "include_deleted"

_LOGICAL_OPERATORS = ("$and", "$or", "$nor")


def _references_deleted_at(query: Mapping[str, Any]) -> bool:
    if DELETED_AT in query:
        return True
    for operator in _LOGICAL_OPERATORS:
        for clause in query.get(operator) or ():
            if isinstance(clause, Mapping) and _references_deleted_at(clause):
                return True
    return False


def apply_default_deleted_filter(
    query: Optional[Mapping[str, Any]] = None,
    entity_kind: Optional[str] = None
) -> Dict[str, Any]:
    """
    Return the effective filter for a find or count.

    Args:
        query: Caller filter, optionally carrying the ``include_deleted`` marker
        entity_kind: Used only for error context

    Raises:
        SoftDeleteError: If ``deleted_at`` is filtered without the marker
    """
    if not query:
        return {DELETED_AT: None}

    effective = dict(query)
    opted_in = bool(effective.pop(INCLUDE_DELETED, False))

    if opted_in:
        return effective

    if _references_deleted_at(effective):
        raise_manual_deleted_filter(entity_kind)

    effective[DELETED_AT] = None
    return effective


def apply_default_deleted_pipeline(
    pipeline: Optional[Sequence[Mapping[str, Any]]] = None,
    include_deleted: bool = False,
    entity_kind: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Return the effective aggregation pipeline.

    The marker is honoured on the first ``$match`` stage only. The returned
    list is always new; stages other than the first are passed through.
    """
    stages = [dict(stage) for stage in (pipeline or [])]
    first_match = stages[0].get("$match") if stages else None

    if isinstance(first_match, Mapping):
        match = dict(first_match)
        opted_in = bool(match.pop(INCLUDE_DELETED, False)) or include_deleted

        if opted_in:
            stages[0]["$match"] = match
            return stages

        if _references_deleted_at(match):
            raise_manual_deleted_filter(entity_kind)

        match[DELETED_AT] = None
        stages[0]["$match"] = match
        return stages

    if include_deleted:
        return stages

    return [{"$match": {DELETED_AT: None}}] + stages


def include_deleted(query: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Opt a filter into seeing live and deleted documents."""
    return {**(query or {}), INCLUDE_DELETED: True}


def only_deleted(query: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Restrict a filter to deleted documents."""
    return {**(query or {}), DELETED_AT: {"$ne": None}, INCLUDE_DELETED: True}
