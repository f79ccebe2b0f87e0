"""
Derived progress: step completion cascades upward through tasks to the project.
"""

from __future__ import annotations

from collections.abc import Sequence
from math import isclose

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .errors import StructuralViolation
from .events import EventType
from .models import Project, Step, StepStatus, Task, utcnow


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def step_progress(step: Step) -> float:
    """1.0 iff the step is agreed with non-blank final content."""
    done = step.status == StepStatus.AGREED and bool(step.final_content and step.final_content.strip())
    return 1.0 if done else 0.0


def sync_step_progress(step: Step) -> bool:
    """Align a step's stored progress with its state. Returns True if it changed."""
    value = step_progress(step)
    if step.progress is not None and isclose(step.progress, value):
        return False
    step.progress = value
    return True


async def _children_progress(session: AsyncSession, task_id: str) -> list[float]:
    step_rows = await session.execute(select(Step.progress).where(Step.task_id == task_id))
    task_rows = await session.execute(select(Task.progress).where(Task.parent_task_id == task_id))
    return [float(v or 0.0) for v in step_rows.scalars().all()] + [
        float(v or 0.0) for v in task_rows.scalars().all()
    ]


async def _write_progress(
    session: AsyncSession,
    node: Task | Project,
    value: float,
    *,
    entity_kind: str,
    project_id: str,
) -> bool:
    """Store a recomputed value, bumping the row version even when unchanged.

    Two cascades that both read an ancestor therefore cannot both commit a
    stale mean; the loser hits a version mismatch and is retried.
    """
    old = node.progress or 0.0
    node.updated_at = utcnow()
    if isclose(old, value, abs_tol=1e-9):
        await session.flush()
        return False
    node.progress = value
    await session.flush()
    await db.record_change(
        session,
        EventType.PROGRESS_UPDATED,
        entity_kind=entity_kind,
        entity_id=node.id,
        project_id=project_id,
        message=f"{entity_kind.capitalize()} progress {old:.2f} -> {value:.2f}",
        details={"old": old, "new": value},
    )
    return True


async def recompute_task(session: AsyncSession, task: Task) -> bool:
    """Recompute one task from its direct children. Returns True if the value changed."""
    value = mean(await _children_progress(session, task.id))
    return await _write_progress(
        session, task, value, entity_kind="task", project_id=task.project_id
    )


async def recompute_project(session: AsyncSession, project_id: str) -> bool:
    project = await db.require_project(session, project_id)
    rows = await session.execute(
        select(Task.progress).where(Task.project_id == project_id, Task.parent_task_id.is_(None))
    )
    value = mean([float(v or 0.0) for v in rows.scalars().all()])
    return await _write_progress(
        session, project, value, entity_kind="project", project_id=project_id
    )


async def cascade_from_task(session: AsyncSession, task_id: str) -> int:
    """Recompute ``task_id`` and each ancestor, then the project.

    Stops as soon as a level is unchanged since nothing above it can move.
    Returns the number of entities whose progress changed.
    """
    changed = 0
    visited: set[str] = set()
    current_id: str | None = task_id
    project_id: str | None = None
    while current_id is not None:
        if current_id in visited:
            raise StructuralViolation(
                f"Parent chain of task {task_id} contains a cycle",
                details={"task_id": task_id, "revisited": current_id},
            )
        visited.add(current_id)
        task = await db.require_task(session, current_id)
        project_id = task.project_id
        if not await recompute_task(session, task):
            return changed
        changed += 1
        current_id = task.parent_task_id
    if project_id is not None and await recompute_project(session, project_id):
        changed += 1
    return changed


async def cascade_from_parent(
    session: AsyncSession, project_id: str, parent_task_id: str | None
) -> int:
    """Cascade after a child was added to or removed from ``parent_task_id`` (None = root)."""
    if parent_task_id is None:
        return 1 if await recompute_project(session, project_id) else 0
    return await cascade_from_task(session, parent_task_id)


async def cascade_from_step(session: AsyncSession, step: Step, *, structural: bool = False) -> int:
    """Sync a step's own progress and push any change upward.

    ``structural`` forces the cascade when the step was added/removed even
    though its own value did not move.
    """
    if not sync_step_progress(step) and not structural:
        return 0
    await session.flush()
    return await cascade_from_task(session, step.task_id)


async def rebuild_project(session: AsyncSession, project_id: str) -> int:
    """Recompute every derived progress value of a project bottom-up.

    Uses an explicit post-order worklist keyed by task id; a revisited id
    means the hierarchy is corrupted and is rejected.
    """
    changed = 0
    for step in await db.list_project_steps(session, project_id):
        if sync_step_progress(step):
            changed += 1
    await session.flush()

    stack: list[tuple[Task, bool]] = [
        (task, False) for task in reversed(await db.list_root_tasks(session, project_id))
    ]
    seen: set[str] = set()
    while stack:
        task, expanded = stack.pop()
        if expanded:
            if await recompute_task(session, task):
                changed += 1
            continue
        if task.id in seen:
            raise StructuralViolation(
                f"Task hierarchy of project {project_id} revisits task {task.id}",
                details={"project_id": project_id, "task_id": task.id},
            )
        seen.add(task.id)
        stack.append((task, True))
        for child in reversed(await db.list_child_tasks(session, task.id)):
            stack.append((child, False))

    if await recompute_project(session, project_id):
        changed += 1
    return changed
