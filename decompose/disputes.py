"""Dispute records: escalation of unresolved producer/reviewer disagreement."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from . import db, progress
from .errors import ConflictError, EngineError, ValidationError
from .events import EventType
from .models import Dispute, DisputeStatus, ResolutionKind, Step, StepStatus, utcnow

logger = logging.getLogger(__name__)


async def create_dispute(
    session: AsyncSession, step: Step, *, project_id: str, cause: EngineError | None = None
) -> Dispute:
    """Open the single pending dispute for ``step``.

    Raises ``ConflictError`` carrying the existing dispute id if one is
    already pending.
    """
    existing = await db.get_pending_dispute_for_step(session, step.id)
    if existing is not None:
        raise ConflictError(
            f"Step {step.id} already has pending dispute {existing.id}",
            details={"step_id": step.id, "dispute_id": existing.id},
        )
    dispute = Dispute(
        project_id=project_id,
        step_id=step.id,
        producer_content=step.producer_content,
        producer_reasoning=step.producer_reasoning,
        reviewer_content=step.reviewer_content,
        reviewer_reasoning=step.reviewer_feedback,
        iteration_history=list(step.iteration_history or []),
        status=DisputeStatus.PENDING.value,
    )
    session.add(dispute)
    await session.flush()
    await db.record_change(
        session,
        EventType.DISPUTE_CREATED,
        entity_kind="dispute",
        entity_id=dispute.id,
        project_id=project_id,
        message=f"Dispute opened for step: {step.title}",
        details={
            "step_id": step.id,
            "iterations": step.iteration_count,
            "cause": cause.to_dict() if cause else None,
        },
    )
    return dispute


async def list_pending(session: AsyncSession, project_id: str | None = None) -> list[Dispute]:
    return await db.list_disputes(session, project_id=project_id, status=DisputeStatus.PENDING)


def resolved_content_for(
    dispute: Dispute, kind: ResolutionKind, custom_content: str | None
) -> str:
    """Pick the content a resolution kind stands for; it must be non-blank."""
    if kind == ResolutionKind.USE_PRODUCER:
        content, field = dispute.producer_content, "producer_content"
    elif kind == ResolutionKind.USE_REVIEWER:
        content, field = dispute.reviewer_content, "reviewer_content"
    else:
        content, field = custom_content, "custom_content"
    if content is None or not content.strip():
        raise ValidationError(
            f"Resolution '{kind.value}' requires non-empty {field}",
            details={"dispute_id": dispute.id, "resolution": kind.value, "field": field},
        )
    return content.strip()


async def resolve_dispute(
    session: AsyncSession,
    dispute: Dispute,
    resolution: ResolutionKind | str,
    *,
    custom_content: str | None = None,
    resolved_by: str = "human",
) -> Step:
    """Apply a human resolution: the step ends agreed with the resolved content."""
    from .collaboration import append_history, invalidate_analysis, transition

    try:
        kind = ResolutionKind(resolution)
    except ValueError as exc:
        raise ValidationError(
            f"Unknown resolution kind: {resolution}",
            details={"allowed": [k.value for k in ResolutionKind]},
        ) from exc
    if dispute.status != DisputeStatus.PENDING.value:
        raise ConflictError(
            f"Dispute {dispute.id} is already resolved", details={"dispute_id": dispute.id}
        )
    content = resolved_content_for(dispute, kind, custom_content)
    step = await db.require_step(session, dispute.step_id)

    await transition(
        session,
        step,
        StepStatus.USER_RESOLUTION,
        project_id=dispute.project_id,
        reason=f"dispute {dispute.id} resolved as {kind.value}",
    )
    step.final_content = content
    invalidate_analysis(step)
    append_history(step, resolved_by, f"resolve:{kind.value}", content=content)
    await transition(
        session, step, StepStatus.AGREED, project_id=dispute.project_id, reason="human resolution"
    )

    dispute.status = DisputeStatus.RESOLVED.value
    dispute.resolution = kind.value
    dispute.resolved_content = content
    dispute.resolved_by = resolved_by
    dispute.resolved_at = utcnow()
    await session.flush()
    await db.record_change(
        session,
        EventType.DISPUTE_RESOLVED,
        entity_kind="dispute",
        entity_id=dispute.id,
        project_id=dispute.project_id,
        message=f"Dispute resolved ({kind.value}) for step: {step.title}",
        details={"step_id": step.id, "resolution": kind.value, "resolved_by": resolved_by},
    )
    await progress.cascade_from_step(session, step)
    logger.info("Dispute %s resolved as %s by %s", dispute.id, kind.value, resolved_by)
    return step
