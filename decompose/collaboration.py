"""
Producer/reviewer refinement protocol for a single step.

Every function here works inside the caller's session and leaves the
commit to it, so a transition plus its side effects (history, dispute,
progress cascade) is written as one unit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from . import db, disputes, progress
from .errors import InvalidTransition, IterationLimitExceeded, ValidationError
from .events import EventType
from .models import Dispute, Project, Step, StepStatus, utcnow

logger = logging.getLogger(__name__)

TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.PRODUCER_DRAFT}),
    StepStatus.PRODUCER_DRAFT: frozenset({StepStatus.PRODUCER_DRAFT, StepStatus.REVIEWER_REVIEW}),
    StepStatus.REVIEWER_REVIEW: frozenset(
        {StepStatus.AGREED, StepStatus.PRODUCER_DRAFT, StepStatus.DISPUTED}
    ),
    StepStatus.DISPUTED: frozenset({StepStatus.USER_RESOLUTION}),
    StepStatus.USER_RESOLUTION: frozenset({StepStatus.AGREED}),
    StepStatus.AGREED: frozenset(),
}


@dataclass
class ReviewerDecision:
    """Reviewer verdict on the current draft."""

    approve: bool
    final_content: str | None = None
    feedback: str | None = None


def can_transition(current: StepStatus | str, target: StepStatus | str) -> bool:
    return StepStatus(target) in TRANSITIONS[StepStatus(current)]


def _require_state(step: Step, allowed: set[StepStatus], target: StepStatus) -> StepStatus:
    current = StepStatus(step.status)
    if current not in allowed:
        raise InvalidTransition(step.id, current.value, target.value)
    return current


async def transition(
    session: AsyncSession,
    step: Step,
    target: StepStatus,
    *,
    project_id: str,
    reason: str = "",
) -> None:
    """Move ``step`` to ``target`` or raise ``InvalidTransition``."""
    current = StepStatus(step.status)
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(step.id, current.value, target.value)
    if target == StepStatus.AGREED and not (step.final_content and step.final_content.strip()):
        raise ValidationError(
            f"Step {step.id} cannot be agreed without final content", details={"step_id": step.id}
        )
    step.status = target.value
    await session.flush()
    await db.record_change(
        session,
        EventType.STEP_TRANSITIONED,
        entity_kind="step",
        entity_id=step.id,
        project_id=project_id,
        message=f"Step {step.title}: {current.value} -> {target.value}",
        details={"from": current.value, "to": target.value, "reason": reason},
    )


def append_history(step: Step, actor: str, action: str, **fields: Any) -> None:
    """Append one entry to the step's iteration log."""
    entry = {
        "iteration": step.iteration_count,
        "actor": actor,
        "action": action,
        "at": utcnow().isoformat(),
    }
    entry.update({k: v for k, v in fields.items() if v is not None})
    # JSON columns are not mutation-tracked; assign a new list.
    step.iteration_history = [*(step.iteration_history or []), entry]


def invalidate_analysis(step: Step) -> None:
    """Forget every complexity opinion; they described content that is gone."""
    step.producer_complexity = None
    step.reviewer_complexity = None
    step.complexity_level = None
    step.complexity_score = None
    step.complexity_confidence = None
    step.should_promote = None
    step.complexity_details = {}
    step.analyzed_at = None


async def submit_producer_content(
    session: AsyncSession,
    step: Step,
    content: str,
    reasoning: str | None,
    *,
    project: Project,
    focus_hint: str | None = None,
    ready: bool = True,
) -> Step:
    """Record a producer draft; with ``ready`` the step goes straight to review."""
    _require_state(
        step, {StepStatus.PENDING, StepStatus.PRODUCER_DRAFT}, StepStatus.PRODUCER_DRAFT
    )
    content = db.require_text(content, "content")

    step.producer_content = content
    step.producer_reasoning = (reasoning or "").strip() or None
    if focus_hint is not None:
        step.focus_hint = focus_hint.strip() or None
    step.producer_ready = False
    invalidate_analysis(step)
    append_history(
        step,
        "producer",
        "draft",
        content=content,
        reasoning=step.producer_reasoning,
        focus_hint=step.focus_hint,
    )
    await transition(
        session, step, StepStatus.PRODUCER_DRAFT, project_id=project.id, reason="producer draft"
    )
    if ready:
        await mark_producer_ready(session, step, project=project)
    return step


async def mark_producer_ready(session: AsyncSession, step: Step, *, project: Project) -> Step:
    _require_state(step, {StepStatus.PRODUCER_DRAFT}, StepStatus.REVIEWER_REVIEW)
    if not (step.producer_content and step.producer_content.strip()):
        raise ValidationError(
            f"Step {step.id} has no producer content to review", details={"step_id": step.id}
        )
    step.producer_ready = True
    await transition(
        session, step, StepStatus.REVIEWER_REVIEW, project_id=project.id, reason="producer ready"
    )
    return step


async def submit_reviewer_decision(
    session: AsyncSession,
    step: Step,
    decision: ReviewerDecision,
    *,
    project: Project,
) -> Dispute | None:
    """Apply a reviewer verdict. Returns the dispute if the revision budget ran out."""
    target = StepStatus.AGREED if decision.approve else StepStatus.PRODUCER_DRAFT
    _require_state(step, {StepStatus.REVIEWER_REVIEW}, target)
    max_iterations = project.max_iterations
    refined = (decision.final_content or "").strip() or None
    feedback = (decision.feedback or "").strip() or None

    if refined is not None:
        step.reviewer_content = refined
    step.reviewer_feedback = feedback

    if decision.approve and step.iteration_count < max_iterations:
        final = refined or (step.producer_content or "").strip()
        if not final:
            raise ValidationError(
                f"Step {step.id} cannot be approved with empty content",
                details={"step_id": step.id},
            )
        step.final_content = final
        if refined is not None:
            invalidate_analysis(step)
        append_history(step, "reviewer", "approve", content=final, feedback=feedback)
        await transition(session, step, StepStatus.AGREED, project_id=project.id, reason="approved")
        await progress.cascade_from_step(session, step)
        return None

    next_count = step.iteration_count + 1
    if decision.approve or next_count >= max_iterations:
        step.iteration_count = max_iterations
        append_history(
            step,
            "reviewer",
            "approve" if decision.approve else "revise",
            content=refined,
            feedback=feedback,
            limit_reached=True,
        )
        await transition(
            session,
            step,
            StepStatus.DISPUTED,
            project_id=project.id,
            reason=f"iteration limit of {max_iterations} reached",
        )
        limit = IterationLimitExceeded(
            f"Step {step.id} exhausted {max_iterations} iteration(s) without agreement",
            details={"step_id": step.id, "max_iterations": max_iterations},
        )
        logger.warning("%s; escalating to dispute", limit.message)
        return await disputes.create_dispute(session, step, project_id=project.id, cause=limit)

    step.iteration_count = next_count
    step.producer_ready = False
    append_history(step, "reviewer", "revise", content=refined, feedback=feedback)
    await transition(
        session, step, StepStatus.PRODUCER_DRAFT, project_id=project.id, reason="revision requested"
    )
    return None
