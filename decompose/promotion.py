"""
Complexity bookkeeping on steps and promotion of over-complex steps into tasks.

Analysis results are stored on the step (``complexity_details`` keeps each
agent's full assessment). Promotion replaces a step by a task in one
transaction: the new task takes over the step's place in the hierarchy and
in the navigation chain, and receives generated child steps.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from . import db, progress
from .complexity import (
    DEFAULT_POLICY,
    Agent,
    ComplexityAssessment,
    ReconciledComplexity,
    ReconciliationPolicy,
)
from .config import settings
from .errors import ValidationError
from .events import EventType
from .models import Step, StepStatus, utcnow

logger = logging.getLogger(__name__)

EXCLUDED_FROM_ANALYSIS = {StepStatus.DISPUTED.value, StepStatus.USER_RESOLUTION.value}


@dataclass
class AnalysisSnapshot:
    """What the analyzer read from a step before calling out to the backend."""

    step_id: str
    version: int
    title: str
    content: str
    project_description: str
    task_objective: str
    threshold: float


@dataclass
class PromotionRecord:
    step_id: str
    step_title: str
    task_id: str
    child_step_ids: list[str]
    score: float
    level: str
    method: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "step_title": self.step_title,
            "task_id": self.task_id,
            "child_step_ids": self.child_step_ids,
            "score": round(self.score, 4),
            "level": self.level,
            "method": self.method,
        }


@dataclass
class OptimizationResult:
    project_id: str
    iterations: int = 0
    converged: bool = False
    stop_reason: str = ""  # 'no_promotions', 'nothing_to_analyze', 'iteration_cap'
    analyzed: int = 0
    skipped: int = 0
    promotions: list[PromotionRecord] = field(default_factory=list)

    @property
    def total_promotions(self) -> int:
        return len(self.promotions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "iterations": self.iterations,
            "converged": self.converged,
            "stop_reason": self.stop_reason,
            "analyzed": self.analyzed,
            "skipped": self.skipped,
            "total_promotions": self.total_promotions,
            "promotions": [p.to_dict() for p in self.promotions],
        }


def qualifies(reconciled: ReconciledComplexity, threshold: float) -> bool:
    """A step is promoted only when the vote says so and the score reaches the threshold."""
    return reconciled.should_promote and reconciled.score >= threshold


def needs_analysis(step: Step, *, force: bool = False) -> bool:
    if step.status in EXCLUDED_FROM_ANALYSIS or step.current_content is None:
        return False
    return force or step.analyzed_at is None


def still_current(step: Step, snap: AnalysisSnapshot) -> bool:
    """Whether an analysis taken from ``snap`` still describes ``step``."""
    return step.status not in EXCLUDED_FROM_ANALYSIS and step.current_content == snap.content


async def snapshot(session: AsyncSession, step: Step) -> AnalysisSnapshot:
    content = step.current_content
    if content is None:
        raise ValidationError(
            f"Step {step.id} has no content to analyze", details={"step_id": step.id}
        )
    task = await db.require_task(session, step.task_id)
    project = await db.require_project(session, task.project_id)
    return AnalysisSnapshot(
        step_id=step.id,
        version=step.version,
        title=step.title,
        content=content,
        project_description=project.description,
        task_objective=task.objective,
        threshold=project.complexity_threshold,
    )


async def steps_needing_analysis(
    session: AsyncSession, project_id: str, *, force: bool = False
) -> list[AnalysisSnapshot]:
    await db.require_project(session, project_id)
    snapshots: list[AnalysisSnapshot] = []
    for step in await db.list_project_steps(session, project_id):
        if needs_analysis(step, force=force):
            snapshots.append(await snapshot(session, step))
    return snapshots


async def record_assessment(
    session: AsyncSession,
    step: Step,
    assessment: ComplexityAssessment,
    *,
    threshold: float,
    policy: ReconciliationPolicy = DEFAULT_POLICY,
) -> ReconciledComplexity | None:
    """Store one agent's opinion; once both are present, reconcile them."""
    details = dict(step.complexity_details or {})
    details[assessment.agent.value] = assessment.to_dict()
    if assessment.agent == Agent.PRODUCER:
        step.producer_complexity = assessment.level.value
    else:
        step.reviewer_complexity = assessment.level.value

    reconciled: ReconciledComplexity | None = None
    if Agent.PRODUCER.value in details and Agent.REVIEWER.value in details:
        reconciled = policy.reconcile(
            ComplexityAssessment.from_dict(details[Agent.PRODUCER.value]),
            ComplexityAssessment.from_dict(details[Agent.REVIEWER.value]),
            threshold,
        )
        _apply_reconciled(step, reconciled)
        details["reconciled"] = reconciled.to_dict()
    step.complexity_details = details
    await session.flush()
    return reconciled


async def apply_analysis(
    session: AsyncSession,
    step: Step,
    producer: ComplexityAssessment,
    reviewer: ComplexityAssessment,
    reconciled: ReconciledComplexity,
    *,
    project_id: str,
) -> None:
    step.producer_complexity = producer.level.value
    step.reviewer_complexity = reviewer.level.value
    step.complexity_details = {
        "producer": producer.to_dict(),
        "reviewer": reviewer.to_dict(),
        "reconciled": reconciled.to_dict(),
    }
    _apply_reconciled(step, reconciled)
    await session.flush()
    await db.record_change(
        session,
        EventType.STEP_ANALYZED,
        entity_kind="step",
        entity_id=step.id,
        project_id=project_id,
        message=(
            f"Step analyzed: {step.title} ({reconciled.level.value}, "
            f"score {reconciled.score:.2f}, {reconciled.method})"
        ),
        details=reconciled.to_dict(),
    )


def _apply_reconciled(step: Step, reconciled: ReconciledComplexity) -> None:
    step.complexity_level = reconciled.level.value
    step.complexity_score = reconciled.score
    step.complexity_confidence = reconciled.confidence
    step.should_promote = reconciled.should_promote
    step.analyzed_at = utcnow()


async def can_promote(session: AsyncSession, step: Step) -> bool:
    """Whether a new task under the step's task would still fit the depth limit."""
    parent = await db.require_task(session, step.task_id)
    return await db.task_depth(session, parent) + 1 <= settings.max_task_depth


async def promote_step(
    session: AsyncSession,
    step: Step,
    child_titles: list[str],
    reconciled: ReconciledComplexity,
) -> PromotionRecord:
    """Replace ``step`` by a new task with ``child_titles`` as its chained steps."""
    parent = await db.require_task(session, step.task_id)
    content = step.current_content or ""
    titles = [t for t in (title.strip() for title in child_titles) if t]
    if not titles:
        raise ValidationError(
            f"Promotion of step {step.id} needs at least one child step",
            details={"step_id": step.id},
        )

    new_task = await db.create_task(
        session,
        parent.project_id,
        step.title,
        content,
        parent_task_id=parent.id,
        prev_ref=step.prev_ref,
        next_ref=step.next_ref,
        created_by="promotion",
        position=step.position,
        promoted_from_step_id=step.id,
    )

    children: list[Step] = []
    for index, title in enumerate(titles):
        child = await db.create_step(
            session,
            new_task.id,
            title,
            prev_ref=children[-1].ref if children else None,
            position=index,
        )
        children.append(child)

    step_id, step_title = step.id, step.title
    await db.delete_step(session, step, replacement=new_task.ref)
    await progress.cascade_from_parent(session, parent.project_id, parent.id)

    record = PromotionRecord(
        step_id=step_id,
        step_title=step_title,
        task_id=new_task.id,
        child_step_ids=[c.id for c in children],
        score=reconciled.score,
        level=reconciled.level.value,
        method=reconciled.method,
    )
    await db.record_change(
        session,
        EventType.STEP_PROMOTED,
        entity_kind="task",
        entity_id=new_task.id,
        project_id=parent.project_id,
        message=f"Step promoted to task: {step_title} ({len(children)} child steps)",
        details=record.to_dict(),
    )
    logger.info(
        "Promoted step %s to task %s with %d child step(s)", step_id, new_task.id, len(children)
    )
    return record
