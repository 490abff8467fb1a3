"""
Administrative API endpoints for casecore.

Read-only diagnostics for the transactional side-effect and soft delete
core:
- Deferred effect queue depth, counters and recent failures, next to
  the request metrics the queue feeds
- Deleted document counts and purge eligibility per entity kind
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from ...core.effect_queue import EffectQueue
from ...services.metrics_service import MetricsService
from ...services.soft_delete_service import SoftDeleteService
from ...utils.logging import get_logger, performance_context
from ..deps import get_effect_queue, get_metrics_service, get_soft_delete_service

logger = get_logger(__name__)

router = APIRouter()


class SideEffectStatsResponse(BaseModel):
    """Effect queue diagnostics."""

    queue_depth: int = Field(..., description="Effects waiting to run")
    draining: bool = Field(..., description="Whether a drain is in progress")
    processed: int = Field(0, description="Action attempts made")
    succeeded: int = Field(0, description="Actions that completed")
    failed: int = Field(0, description="Action attempts that raised")
    dropped: int = Field(0, description="Effects that exhausted their retries")
    failed_effects: List[Dict[str, Any]] = Field(default_factory=list, description="Most recent failures first")
    metrics: Dict[str, Any] = Field(default_factory=dict, description="Request counts, error counts and latency percentiles")


class SoftDeleteSummary(BaseModel):
    entity: str
    deleted_count: int
    oldest_deleted_at: Optional[datetime] = None
    eligible_for_purge: int


class SoftDeleteDiagnosticsResponse(BaseModel):
    """Deleted document counts per entity kind."""

    retention_days: int = Field(..., description="Days a deleted document is kept before purge")
    cutoff: str = Field(..., description="Documents deleted before this instant are eligible for purge")
    summary: List[SoftDeleteSummary] = Field(default_factory=list)


@router.get(
    "/side-effects",
    response_model=SideEffectStatsResponse,
    summary="Deferred Effect Queue Status",
    description="Queue depth, outcome counters and the bounded failure history"
)
async def get_side_effect_stats(
    request: Request,
    queue: EffectQueue = Depends(get_effect_queue),
    metrics: MetricsService = Depends(get_metrics_service)
) -> SideEffectStatsResponse:
    stats = queue.get_stats()
    return SideEffectStatsResponse(
        queue_depth=stats["queue_depth"],
        draining=stats["draining"],
        processed=stats["processed"],
        succeeded=stats["succeeded"],
        failed=stats["failures"],
        dropped=stats["dropped"],
        failed_effects=queue.get_failed_effects(),
        metrics=metrics.get_snapshot()
    )


@router.get(
    "/soft-delete/diagnostics",
    response_model=SoftDeleteDiagnosticsResponse,
    summary="Soft Delete Diagnostics",
    description="Deleted document counts, oldest deletion and purge eligibility per entity kind"
)
async def get_soft_delete_diagnostics(
    request: Request,
    retention_days: Optional[int] = Query(
        None,
        gt=0,
        description="Override the configured retention period"
    ),
    service: SoftDeleteService = Depends(get_soft_delete_service)
) -> SoftDeleteDiagnosticsResponse:
    with performance_context("admin_soft_delete_diagnostics"):
        diagnostics = await service.build_diagnostics(retention_days=retention_days)

    logger.debug(
        "Soft delete diagnostics built",
        entity_kinds=len(diagnostics["summary"]),
        correlation_id=getattr(request.state, "correlation_id", None)
    )
    return SoftDeleteDiagnosticsResponse(**diagnostics)
