"""
Public entry point of the decomposition engine.

``DecompositionService`` wraps every operation in its own transaction
(retried on optimistic-concurrency conflicts) under the entity locks it
mutates. Generation calls run outside any lock: context is read first, the
backend is called under a timeout, and the result is committed only if the
step has not moved in the meantime (same version for collaboration writes,
same content for optimization passes).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from . import collaboration, db, disputes, navigation, progress, promotion
from .collaboration import ReviewerDecision
from .complexity import DEFAULT_POLICY, Agent, ComplexityAssessment, ReconciliationPolicy
from .config import settings
from .errors import ConflictError, InvalidTransition, ValidationError
from .events import EventType
from .generation import (
    ComplexityRequest,
    DecomposeRequest,
    DraftRequest,
    GenerationBackend,
    ReviewRequest,
    build_backend,
    call_backend,
)
from .locks import EntityLocks, project_key, step_key, task_key
from .models import AuditLog, Dispute, Project, ResolutionKind, Step, StepStatus, Task
from .navigation import ChainDirection, ChainWalk, WorkItem
from .promotion import AnalysisSnapshot, OptimizationResult, PromotionRecord
from .refs import NodeRef, coerce_ref

logger = logging.getLogger(__name__)


def _ensure_version(step: Step, expected: int) -> None:
    if step.version != expected:
        raise ConflictError(
            f"Step {step.id} changed while generation was in flight; retry the operation",
            details={"step_id": step.id, "expected_version": expected, "version": step.version},
        )


class DecompositionService:
    """Facade over the entity store, collaboration protocol, promotion and navigation."""

    def __init__(
        self,
        backend: GenerationBackend | None = None,
        *,
        locks: EntityLocks | None = None,
        policy: ReconciliationPolicy = DEFAULT_POLICY,
        conflict_retries: int | None = None,
    ) -> None:
        self.backend = backend or build_backend()
        self.locks = locks or EntityLocks()
        self.policy = policy
        self.conflict_retries = conflict_retries

    async def _run(self, operation: Any) -> Any:
        return await db.run_in_transaction(operation, retries=self.conflict_retries)

    async def _step_context(self, session: AsyncSession, step_id: str) -> tuple[Step, Project]:
        step = await db.require_step(session, step_id)
        project = await db.require_project(session, await db.project_id_for(session, step))
        return step, project

    # -------------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------------

    async def create_project(
        self,
        name: str,
        description: str,
        complexity_threshold: float | None = None,
        max_iterations: int | None = None,
    ) -> Project:
        return await self._run(
            lambda s: db.create_project(s, name, description, complexity_threshold, max_iterations)
        )

    async def get_project(self, project_id: str) -> Project:
        return await self._run(lambda s: db.require_project(s, project_id))

    async def update_project_settings(
        self,
        project_id: str,
        complexity_threshold: float | None = None,
        max_iterations: int | None = None,
    ) -> Project:
        """Change tunables; existing analyses are kept until the next forced optimization."""

        async def op(session: AsyncSession) -> Project:
            project = await db.require_project(session, project_id)
            return await db.update_project_settings(
                session,
                project,
                complexity_threshold=complexity_threshold,
                max_iterations=max_iterations,
            )

        async with self.locks.hold(project_key(project_id)):
            return await self._run(op)

    async def delete_project(self, project_id: str) -> None:
        async def op(session: AsyncSession) -> None:
            await db.delete_project(session, await db.require_project(session, project_id))

        async with self.locks.hold(project_key(project_id)):
            await self._run(op)

    async def rebuild_progress(self, project_id: str) -> Project:
        async def op(session: AsyncSession) -> Project:
            changed = await progress.rebuild_project(session, project_id)
            if changed:
                logger.info("Rebuilt progress for project %s (%d value(s) changed)", project_id, changed)
            return await db.require_project(session, project_id)

        async with self.locks.hold(project_key(project_id)):
            return await self._run(op)

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    async def define_root_tasks(
        self, project_id: str, tasks: Sequence[Mapping[str, Any]]
    ) -> list[Task]:
        """Append root tasks in order, threading them onto the end of the root chain."""
        if not tasks:
            raise ValidationError("At least one task is required", details={"field": "tasks"})
        for index, entry in enumerate(tasks):
            db.require_text(entry.get("title"), f"tasks[{index}].title")

        async def op(session: AsyncSession) -> list[Task]:
            existing = await db.list_root_tasks(session, project_id)
            previous = existing[-1].ref if existing and existing[-1].next_ref is None else None
            created: list[Task] = []
            for entry in tasks:
                task = await db.create_task(
                    session,
                    project_id,
                    entry["title"],
                    entry.get("objective") or "",
                    prev_ref=previous,
                    created_by=entry.get("created_by") or "reviewer",
                )
                created.append(task)
                previous = task.ref
            await progress.cascade_from_parent(session, project_id, None)
            return created

        async with self.locks.hold(project_key(project_id)):
            return await self._run(op)

    async def create_task(
        self,
        project_id: str,
        title: str,
        objective: str = "",
        parent_task_id: str | None = None,
        prev_ref: NodeRef | str | None = None,
        next_ref: NodeRef | str | None = None,
    ) -> Task:
        async def op(session: AsyncSession) -> Task:
            task = await db.create_task(
                session,
                project_id,
                title,
                objective,
                parent_task_id=parent_task_id,
                prev_ref=prev_ref,
                next_ref=next_ref,
            )
            await progress.cascade_from_parent(session, project_id, parent_task_id)
            return task

        keys = [project_key(project_id)] + ([task_key(parent_task_id)] if parent_task_id else [])
        async with self.locks.hold(*keys):
            return await self._run(op)

    async def get_task(self, task_id: str) -> Task:
        return await self._run(lambda s: db.require_task(s, task_id))

    async def move_task(self, task_id: str, new_parent_id: str | None) -> Task:
        async def op(session: AsyncSession) -> Task:
            task = await db.require_task(session, task_id)
            old_parent_id = await db.move_task(session, task, new_parent_id)
            if old_parent_id != new_parent_id:
                await progress.cascade_from_parent(session, task.project_id, old_parent_id)
                await progress.cascade_from_parent(session, task.project_id, new_parent_id)
            return task

        project_id = (await self.get_task(task_id)).project_id
        async with self.locks.hold(project_key(project_id), task_key(task_id)):
            return await self._run(op)

    async def delete_task(self, task_id: str) -> int:
        async def op(session: AsyncSession) -> int:
            task = await db.require_task(session, task_id)
            project_id, parent_id = task.project_id, task.parent_task_id
            removed = await db.delete_task(session, task)
            await progress.cascade_from_parent(session, project_id, parent_id)
            return removed

        task = await self.get_task(task_id)
        parent = (
            task_key(task.parent_task_id) if task.parent_task_id else project_key(task.project_id)
        )
        async with self.locks.hold(parent, task_key(task_id)):
            return await self._run(op)

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def create_step(
        self,
        task_id: str,
        title: str,
        prev_ref: NodeRef | str | None = None,
        next_ref: NodeRef | str | None = None,
    ) -> Step:
        async def op(session: AsyncSession) -> Step:
            step = await db.create_step(session, task_id, title, prev_ref=prev_ref, next_ref=next_ref)
            await progress.cascade_from_step(session, step, structural=True)
            return step

        async with self.locks.hold(task_key(task_id)):
            return await self._run(op)

    async def get_step(self, step_id: str) -> Step:
        return await self._run(lambda s: db.require_step(s, step_id))

    async def delete_step(self, step_id: str) -> None:
        async def op(session: AsyncSession) -> None:
            step = await db.require_step(session, step_id)
            task = await db.require_task(session, step.task_id)
            await db.delete_step(session, step)
            await progress.cascade_from_parent(session, task.project_id, task.id)

        task_id = (await self.get_step(step_id)).task_id
        async with self.locks.hold(task_key(task_id), step_key(step_id)):
            await self._run(op)

    # -------------------------------------------------------------------------
    # Collaboration
    # -------------------------------------------------------------------------

    async def submit_producer_content(
        self,
        step_id: str,
        content: str,
        reasoning: str | None,
        focus_hint: str | None = None,
        ready: bool = True,
    ) -> Step:
        async def op(session: AsyncSession) -> Step:
            step, project = await self._step_context(session, step_id)
            return await collaboration.submit_producer_content(
                session, step, content, reasoning, project=project, focus_hint=focus_hint, ready=ready
            )

        async with self.locks.hold(step_key(step_id)):
            return await self._run(op)

    async def mark_producer_ready(self, step_id: str) -> Step:
        async def op(session: AsyncSession) -> Step:
            step, project = await self._step_context(session, step_id)
            return await collaboration.mark_producer_ready(session, step, project=project)

        async with self.locks.hold(step_key(step_id)):
            return await self._run(op)

    async def submit_reviewer_decision(self, step_id: str, decision: ReviewerDecision) -> Step:
        async def op(session: AsyncSession) -> Step:
            step, project = await self._step_context(session, step_id)
            await collaboration.submit_reviewer_decision(session, step, decision, project=project)
            return step

        async with self.locks.hold(step_key(step_id)):
            return await self._run(op)

    async def draft_step(
        self, step_id: str, focus_hint: str | None = None, timeout: float | None = None
    ) -> Step:
        """Ask the backend for a producer draft and submit it."""

        async def read(session: AsyncSession) -> tuple[int, DraftRequest]:
            step, project = await self._step_context(session, step_id)
            if step.status not in (StepStatus.PENDING.value, StepStatus.PRODUCER_DRAFT.value):
                raise InvalidTransition(step.id, step.status, StepStatus.PRODUCER_DRAFT.value)
            task = await db.require_task(session, step.task_id)
            siblings = [
                s.title
                for s in await db.list_steps(session, task.id)
                if s.id != step.id and s.position < step.position
            ]
            return step.version, DraftRequest(
                step_id=step.id,
                step_title=step.title,
                project_description=project.description,
                task_objective=task.objective,
                sibling_titles=siblings,
                focus_hint=focus_hint if focus_hint is not None else step.focus_hint,
                previous_content=step.producer_content,
                reviewer_feedback=step.reviewer_feedback,
                iteration=step.iteration_count,
            )

        async with self.locks.hold(step_key(step_id)):
            version, request = await self._run(read)
        result = await call_backend(
            "draft_step", lambda: self.backend.draft_step(request), timeout=timeout
        )

        async def write(session: AsyncSession) -> Step:
            step, project = await self._step_context(session, step_id)
            _ensure_version(step, version)
            return await collaboration.submit_producer_content(
                session,
                step,
                result.content,
                result.reasoning,
                project=project,
                focus_hint=focus_hint,
                ready=result.ready,
            )

        async with self.locks.hold(step_key(step_id)):
            return await self._run(write)

    async def review_step(self, step_id: str, timeout: float | None = None) -> Step:
        """Ask the backend for a reviewer verdict and apply it."""

        async def read(session: AsyncSession) -> tuple[int, ReviewRequest]:
            step, project = await self._step_context(session, step_id)
            if step.status != StepStatus.REVIEWER_REVIEW.value:
                raise InvalidTransition(step.id, step.status, StepStatus.AGREED.value)
            task = await db.require_task(session, step.task_id)
            return step.version, ReviewRequest(
                step_id=step.id,
                step_title=step.title,
                project_description=project.description,
                task_objective=task.objective,
                producer_content=step.producer_content or "",
                producer_reasoning=step.producer_reasoning,
                iteration=step.iteration_count,
                max_iterations=project.max_iterations,
            )

        async with self.locks.hold(step_key(step_id)):
            version, request = await self._run(read)
        result = await call_backend(
            "review_step", lambda: self.backend.review_step(request), timeout=timeout
        )
        decision = ReviewerDecision(
            approve=result.approve, final_content=result.final_content, feedback=result.feedback
        )

        async def write(session: AsyncSession) -> Step:
            step, project = await self._step_context(session, step_id)
            _ensure_version(step, version)
            await collaboration.submit_reviewer_decision(session, step, decision, project=project)
            return step

        async with self.locks.hold(step_key(step_id)):
            return await self._run(write)

    # -------------------------------------------------------------------------
    # Complexity & promotion
    # -------------------------------------------------------------------------

    def _complexity_request(self, snap: AnalysisSnapshot, agent: Agent) -> ComplexityRequest:
        return ComplexityRequest(
            agent=agent,
            step_id=snap.step_id,
            step_title=snap.title,
            content=snap.content,
            project_description=snap.project_description,
            task_objective=snap.task_objective,
            threshold=snap.threshold,
        )

    async def _assess(
        self, snap: AnalysisSnapshot, agent: Agent, timeout: float | None
    ) -> ComplexityAssessment:
        request = self._complexity_request(snap, agent)
        assessment = await call_backend(
            "assess_complexity", lambda: self.backend.assess_complexity(request), timeout=timeout
        )
        if assessment.agent != agent:
            assessment.agent = agent
        return assessment

    async def analyze_complexity(
        self, step_id: str, agent: Agent | str, timeout: float | None = None
    ) -> ComplexityAssessment:
        """One agent's independent opinion; reconciled once both opinions are stored."""
        agent = Agent(agent)

        async def read(session: AsyncSession) -> AnalysisSnapshot:
            step = await db.require_step(session, step_id)
            return await promotion.snapshot(session, step)

        async with self.locks.hold(step_key(step_id)):
            snap = await self._run(read)
        assessment = await self._assess(snap, agent, timeout)

        async def write(session: AsyncSession) -> ComplexityAssessment:
            step, project = await self._step_context(session, step_id)
            _ensure_version(step, snap.version)
            reconciled = await promotion.record_assessment(
                session, step, assessment, threshold=project.complexity_threshold, policy=self.policy
            )
            await db.record_change(
                session,
                EventType.STEP_ANALYZED,
                entity_kind="step",
                entity_id=step.id,
                project_id=project.id,
                message=f"{agent.value.capitalize()} assessed step {step.title}: {assessment.level.value}",
                details={
                    "assessment": assessment.to_dict(),
                    "reconciled": reconciled.to_dict() if reconciled else None,
                },
            )
            return assessment

        async with self.locks.hold(step_key(step_id)):
            return await self._run(write)

    async def _optimize_step(
        self, snap: AnalysisSnapshot, timeout: float | None
    ) -> tuple[bool, PromotionRecord | None]:
        producer = await self._assess(snap, Agent.PRODUCER, timeout)
        reviewer = await self._assess(snap, Agent.REVIEWER, timeout)
        reconciled = self.policy.reconcile(producer, reviewer, snap.threshold)
        child_titles: list[str] = []
        if promotion.qualifies(reconciled, snap.threshold):
            request = DecomposeRequest(
                step_id=snap.step_id,
                step_title=snap.title,
                content=snap.content,
                project_description=snap.project_description,
            )
            child_titles = await call_backend(
                "decompose_step", lambda: self.backend.decompose_step(request), timeout=timeout
            )

        async def write(session: AsyncSession) -> tuple[bool, PromotionRecord | None]:
            step = await db.get_step(session, snap.step_id)
            if step is None or not promotion.still_current(step, snap):
                return False, None
            project_id = await db.project_id_for(session, step)
            await promotion.apply_analysis(
                session, step, producer, reviewer, reconciled, project_id=project_id
            )
            if not child_titles:
                return True, None
            if not await promotion.can_promote(session, step):
                logger.warning(
                    "Step %s qualifies for promotion but its task is at the maximum depth", step.id
                )
                return True, None
            return True, await promotion.promote_step(session, step, child_titles, reconciled)

        async with self.locks.hold(step_key(snap.step_id)):
            return await self._run(write)

    async def run_promotion_optimization(
        self,
        project_id: str,
        max_iterations: int | None = None,
        force_reanalysis: bool = False,
        timeout: float | None = None,
    ) -> OptimizationResult:
        """Analyze and promote until a pass changes nothing or the pass cap is reached.

        ``force_reanalysis`` re-scores already analyzed steps on the first pass.
        """
        cap = settings.optimization_max_iterations if max_iterations is None else max_iterations
        if cap < 1:
            raise ValidationError(
                f"max_iterations must be >= 1, got {cap}", details={"field": "max_iterations"}
            )
        result = OptimizationResult(project_id=project_id)

        for iteration in range(1, cap + 1):
            force = force_reanalysis and iteration == 1
            snapshots = await self._run(
                lambda s, force=force: promotion.steps_needing_analysis(s, project_id, force=force)
            )
            result.iterations = iteration
            if not snapshots:
                result.converged, result.stop_reason = True, "nothing_to_analyze"
                break

            promoted_this_pass = 0
            for snap in snapshots:
                applied, record = await self._optimize_step(snap, timeout)
                if not applied:
                    result.skipped += 1
                    logger.info("Step %s changed during analysis; deferred to next pass", snap.step_id)
                    continue
                result.analyzed += 1
                if record is not None:
                    result.promotions.append(record)
                    promoted_this_pass += 1
            logger.info(
                "Optimization pass %d for project %s: %d analyzed, %d promoted",
                iteration,
                project_id,
                len(snapshots),
                promoted_this_pass,
            )
            if promoted_this_pass == 0:
                result.converged, result.stop_reason = True, "no_promotions"
                break
        else:
            result.converged, result.stop_reason = False, "iteration_cap"

        async def audit(session: AsyncSession) -> None:
            await db.record_change(
                session,
                EventType.OPTIMIZATION_COMPLETED,
                entity_kind="project",
                entity_id=project_id,
                project_id=project_id,
                message=(
                    f"Optimization {'converged' if result.converged else 'stopped'} after "
                    f"{result.iterations} pass(es) with {result.total_promotions} promotion(s)"
                ),
                details=result.to_dict(),
            )

        await self._run(audit)
        return result

    # -------------------------------------------------------------------------
    # Disputes
    # -------------------------------------------------------------------------

    async def list_pending_disputes(self, project_id: str | None = None) -> list[Dispute]:
        return await self._run(lambda s: disputes.list_pending(s, project_id))

    async def get_dispute(self, dispute_id: str) -> Dispute:
        return await self._run(lambda s: db.require_dispute(s, dispute_id))

    async def resolve_dispute(
        self,
        dispute_id: str,
        resolution: ResolutionKind | str,
        custom_content: str | None = None,
        resolved_by: str = "human",
    ) -> Step:
        dispute = await self.get_dispute(dispute_id)

        async def op(session: AsyncSession) -> Step:
            current = await db.require_dispute(session, dispute_id)
            return await disputes.resolve_dispute(
                session,
                current,
                resolution,
                custom_content=custom_content,
                resolved_by=resolved_by,
            )

        async with self.locks.hold(step_key(dispute.step_id), f"dispute:{dispute_id}"):
            return await self._run(op)

    # -------------------------------------------------------------------------
    # Navigation & audit
    # -------------------------------------------------------------------------

    async def get_next_actionable_item(self, project_id: str) -> WorkItem | None:
        return await self._run(lambda s: navigation.next_actionable_item(s, project_id))

    async def walk_chain(
        self,
        ref: NodeRef | str,
        direction: ChainDirection | str = ChainDirection.FORWARD,
        max_depth: int | None = None,
        stop_at_incomplete: bool = False,
    ) -> ChainWalk:
        start = coerce_ref(ref)
        if start is None:
            raise ValidationError("A start reference is required", details={"field": "ref"})
        return await self._run(
            lambda s: navigation.walk_chain(
                s, start, direction, max_depth=max_depth, stop_at_incomplete=stop_at_incomplete
            )
        )

    async def list_audit_log(self, project_id: str, limit: int = 50) -> list[AuditLog]:
        return await self._run(lambda s: db.list_audit_log(s, project_id, limit=limit))
