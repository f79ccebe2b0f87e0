"""Async database connection and entity-store operations."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from sqlalchemy import event, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm.exc import StaleDataError

from .config import settings
from .errors import (
    ConflictError,
    NotFoundError,
    SchemaNotInitializedError,
    StructuralViolation,
    ValidationError,
    is_schema_missing_error,
    schema_not_initialized_message,
)
from .events import EngineEvent, EventType, event_bus
from .models import (
    AuditLog,
    Base,
    Dispute,
    DisputeStatus,
    Project,
    Step,
    Task,
)
from .refs import NodeKind, NodeRef, coerce_ref

logger = logging.getLogger(__name__)

T = TypeVar("T")

PENDING_EVENTS_KEY = "pending_events"

engine: AsyncEngine | None = None
async_session_factory: async_sessionmaker[AsyncSession] | None = None


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def configure_engine(url: str | None = None, *, echo: bool | None = None) -> AsyncEngine:
    """(Re)bind the module engine and session factory to a database URL."""
    global engine, async_session_factory
    database_url = url or settings.async_database_url
    engine = create_async_engine(
        database_url,
        echo=settings.db_echo if echo is None else echo,
        pool_pre_ping=not database_url.startswith("sqlite"),
    )
    if database_url.startswith("sqlite"):
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    async_session_factory = async_sessionmaker(engine, expire_on_commit=False)
    return engine


def _session_factory() -> async_sessionmaker[AsyncSession]:
    if async_session_factory is None:
        configure_engine()
    assert async_session_factory is not None
    return async_session_factory


async def init_db() -> None:
    """Create all tables (for development/testing)."""
    if engine is None:
        configure_engine()
    assert engine is not None
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global engine, async_session_factory
    if engine is not None:
        await engine.dispose()
    engine = None
    async_session_factory = None


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Async context manager for database sessions.

    Commits on success, rolls back on any exception. Events queued through
    ``record_change`` are emitted only after a successful commit.
    """
    pending: list[EngineEvent] = []
    async with _session_factory()() as session:
        try:
            yield session
            await session.commit()
            pending = session.info.pop(PENDING_EVENTS_KEY, [])
        except Exception as exc:
            await session.rollback()
            session.info.pop(PENDING_EVENTS_KEY, None)
            if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
            raise
    for pending_event in pending:
        await event_bus.emit(pending_event)


# SQLite reports the column, PostgreSQL the index name.
RETRYABLE_UNIQUE_MARKERS = ("uq_disputes_pending_step", "disputes.step_id")


def is_retryable_integrity_error(exc: IntegrityError) -> bool:
    """Only a racing second pending dispute for one step is a concurrency collision."""
    text = str(exc.orig if exc.orig is not None else exc)
    return any(marker in text for marker in RETRYABLE_UNIQUE_MARKERS)


async def run_in_transaction(
    operation: Callable[[AsyncSession], Awaitable[T]],
    *,
    retries: int | None = None,
) -> T:
    """Run ``operation`` in its own transaction, retrying optimistic-concurrency collisions."""
    attempts = 1 + max(0, settings.conflict_retries if retries is None else retries)
    for attempt in range(1, attempts + 1):
        try:
            async with get_session() as session:
                result = await operation(session)
            return result
        except (StaleDataError, IntegrityError) as exc:
            if isinstance(exc, IntegrityError) and not is_retryable_integrity_error(exc):
                raise StructuralViolation(
                    f"Integrity constraint violated: {exc.orig}",
                    details={"constraint": str(exc.orig)},
                ) from exc
            if attempt >= attempts:
                raise ConflictError(
                    f"Concurrent modification detected after {attempt} attempt(s); retry the operation",
                    details={"attempts": attempt},
                ) from exc
            logger.info("Concurrency conflict, retrying (attempt %d/%d): %s", attempt, attempts, exc)
    raise AssertionError("unreachable")


# =============================================================================
# Audit & Change Events
# =============================================================================


async def log_event(
    session: AsyncSession,
    *,
    entity_kind: str,
    entity_id: str,
    action: str,
    project_id: str | None = None,
    message: str | None = None,
    details: dict[str, Any] | None = None,
) -> AuditLog:
    """Append an audit row inside the caller's transaction."""
    log = AuditLog(
        project_id=project_id,
        entity_kind=entity_kind,
        entity_id=entity_id,
        action=action,
        message=message,
        details=details,
    )
    session.add(log)
    return log


async def record_change(
    session: AsyncSession,
    event_type: EventType,
    *,
    entity_kind: str,
    entity_id: str,
    project_id: str | None,
    message: str = "",
    details: dict[str, Any] | None = None,
) -> None:
    """Audit a mutation and queue its change event for after commit."""
    await log_event(
        session,
        entity_kind=entity_kind,
        entity_id=entity_id,
        action=event_type.value,
        project_id=project_id,
        message=message,
        details=details,
    )
    session.info.setdefault(PENDING_EVENTS_KEY, []).append(
        EngineEvent(
            type=event_type,
            entity_kind=entity_kind,
            entity_id=entity_id,
            project_id=project_id,
            message=message,
            data=details or {},
        )
    )


async def list_audit_log(
    session: AsyncSession, project_id: str, *, limit: int = 50
) -> list[AuditLog]:
    result = await session.execute(
        select(AuditLog)
        .where(AuditLog.project_id == project_id)
        .order_by(AuditLog.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


# =============================================================================
# Validation helpers
# =============================================================================


def require_text(value: str | None, field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} must be a non-empty string", details={"field": field})
    return str(value).strip()


def _validate_threshold(value: float) -> float:
    if not 0.0 <= float(value) <= 1.0:
        raise ValidationError(
            f"complexity_threshold must be within [0, 1], got {value}",
            details={"field": "complexity_threshold"},
        )
    return float(value)


def _validate_max_iterations(value: int) -> int:
    if int(value) < 1:
        raise ValidationError(
            f"max_iterations must be >= 1, got {value}", details={"field": "max_iterations"}
        )
    return int(value)


# =============================================================================
# Project Operations
# =============================================================================


async def create_project(
    session: AsyncSession,
    name: str,
    description: str,
    complexity_threshold: float | None = None,
    max_iterations: int | None = None,
) -> Project:
    """Create a new project."""
    project = Project(
        name=require_text(name, "name"),
        description=require_text(description, "description"),
        progress=0.0,
        complexity_threshold=_validate_threshold(
            settings.default_complexity_threshold
            if complexity_threshold is None
            else complexity_threshold
        ),
        max_iterations=_validate_max_iterations(
            settings.default_max_iterations if max_iterations is None else max_iterations
        ),
    )
    session.add(project)
    await session.flush()
    await record_change(
        session,
        EventType.ENTITY_CREATED,
        entity_kind="project",
        entity_id=project.id,
        project_id=project.id,
        message=f"Project created: {project.name}",
    )
    return project


async def get_project(session: AsyncSession, project_id: str) -> Project | None:
    """Get a project by its ID."""
    return await session.get(Project, project_id)


async def require_project(session: AsyncSession, project_id: str) -> Project:
    project = await get_project(session, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)
    return project


async def list_projects(session: AsyncSession, *, limit: int = 50) -> list[Project]:
    result = await session.execute(select(Project).order_by(Project.created_at.desc()).limit(limit))
    return list(result.scalars().all())


async def update_project_settings(
    session: AsyncSession,
    project: Project,
    *,
    complexity_threshold: float | None = None,
    max_iterations: int | None = None,
) -> Project:
    """Change tunables. Never re-triggers promotion on its own."""
    changes: dict[str, Any] = {}
    if complexity_threshold is not None:
        project.complexity_threshold = _validate_threshold(complexity_threshold)
        changes["complexity_threshold"] = project.complexity_threshold
    if max_iterations is not None:
        project.max_iterations = _validate_max_iterations(max_iterations)
        changes["max_iterations"] = project.max_iterations
    if changes:
        await session.flush()
        await record_change(
            session,
            EventType.ENTITY_UPDATED,
            entity_kind="project",
            entity_id=project.id,
            project_id=project.id,
            message="Project settings updated",
            details=changes,
        )
    return project


async def delete_project(session: AsyncSession, project: Project) -> None:
    """Delete a project and everything below it."""
    for task in await list_root_tasks(session, project.id):
        await _delete_task_subtree(session, task, splice=False)
    result = await session.execute(select(Dispute).where(Dispute.project_id == project.id))
    for dispute in result.scalars().all():
        await session.delete(dispute)
    await session.flush()
    await session.delete(project)
    await session.flush()
    await record_change(
        session,
        EventType.ENTITY_DELETED,
        entity_kind="project",
        entity_id=project.id,
        project_id=project.id,
        message=f"Project deleted: {project.name}",
    )


# =============================================================================
# Reference Operations
# =============================================================================


async def resolve_ref(session: AsyncSession, ref: NodeRef) -> Task | Step | None:
    """Load the entity a polymorphic reference points at."""
    if ref.kind == NodeKind.TASK:
        return await session.get(Task, ref.id)
    return await session.get(Step, ref.id)


async def project_id_for(session: AsyncSession, node: Task | Step) -> str:
    if isinstance(node, Task):
        return node.project_id
    task = await require_task(session, node.task_id)
    return task.project_id


async def validate_ref(
    session: AsyncSession,
    ref: NodeRef | str | None,
    *,
    project_id: str,
    self_ref: NodeRef | None = None,
) -> NodeRef | None:
    """Check that a prev/next target exists, is not the referrer, and shares its project."""
    ref = coerce_ref(ref)
    if ref is None:
        return None
    if self_ref is not None and ref == self_ref:
        raise StructuralViolation(
            f"{self_ref} cannot reference itself", details={"ref": ref.format()}
        )
    target = await resolve_ref(session, ref)
    if target is None:
        raise StructuralViolation(
            f"Reference target does not exist: {ref}", details={"ref": ref.format()}
        )
    target_project = await project_id_for(session, target)
    if target_project != project_id:
        raise StructuralViolation(
            f"Reference {ref} belongs to another project",
            details={"ref": ref.format(), "project_id": project_id},
        )
    return ref


async def splice_out(
    session: AsyncSession,
    ref: NodeRef,
    *,
    prev_ref: NodeRef | None,
    next_ref: NodeRef | None,
    replacement: NodeRef | None = None,
) -> int:
    """Re-point every prev/next reference aimed at ``ref``.

    With a replacement the referrers point at it; otherwise they inherit the
    removed node's own neighbour so the chain closes over the gap.
    """
    touched = 0
    for model in (Task, Step):
        result = await session.execute(select(model).where(model.next_ref == ref))
        for node in result.scalars().all():
            target = replacement or next_ref
            node.next_ref = None if target == node.ref else target
            touched += 1
        result = await session.execute(select(model).where(model.prev_ref == ref))
        for node in result.scalars().all():
            target = replacement or prev_ref
            node.prev_ref = None if target == node.ref else target
            touched += 1
    return touched


async def link_neighbours(
    session: AsyncSession, node: Task | Step, *, insert: bool = True
) -> None:
    """Thread a new node into the chain its neighbours already form.

    A node given only ``prev_ref = A`` while ``A -> B`` already exists is
    inserted as ``A -> node -> B`` (and symmetrically for ``next_ref``), so a
    chain never forks. A node given both neighbours, or one standing in for a
    node still in the chain (``insert=False``), only fills empty
    back-references and leaves existing ones alone.
    """
    if node.prev_ref is not None:
        prev = await resolve_ref(session, node.prev_ref)
        if prev is not None:
            displaced = prev.next_ref
            if insert and displaced is not None and displaced != node.ref and node.next_ref is None:
                node.next_ref = displaced
                after = await resolve_ref(session, displaced)
                if after is not None and after.prev_ref == prev.ref:
                    after.prev_ref = node.ref
                prev.next_ref = node.ref
            elif displaced is None:
                prev.next_ref = node.ref
    if node.next_ref is not None:
        nxt = await resolve_ref(session, node.next_ref)
        if nxt is not None:
            displaced = nxt.prev_ref
            if insert and displaced is not None and displaced != node.ref and node.prev_ref is None:
                node.prev_ref = displaced
                before = await resolve_ref(session, displaced)
                if before is not None and before.next_ref == nxt.ref:
                    before.next_ref = node.ref
                nxt.prev_ref = node.ref
            elif displaced is None:
                nxt.prev_ref = node.ref
    await session.flush()


# =============================================================================
# Task Operations
# =============================================================================


async def get_task(session: AsyncSession, task_id: str) -> Task | None:
    """Get a task by its ID."""
    return await session.get(Task, task_id)


async def require_task(session: AsyncSession, task_id: str) -> Task:
    task = await get_task(session, task_id)
    if task is None:
        raise NotFoundError("Task", task_id)
    return task


async def list_root_tasks(session: AsyncSession, project_id: str) -> list[Task]:
    result = await session.execute(
        select(Task)
        .where(Task.project_id == project_id, Task.parent_task_id.is_(None))
        .order_by(Task.position, Task.created_at)
    )
    return list(result.scalars().all())


async def list_child_tasks(session: AsyncSession, task_id: str) -> list[Task]:
    result = await session.execute(
        select(Task).where(Task.parent_task_id == task_id).order_by(Task.position, Task.created_at)
    )
    return list(result.scalars().all())


async def list_project_tasks(session: AsyncSession, project_id: str) -> list[Task]:
    result = await session.execute(
        select(Task).where(Task.project_id == project_id).order_by(Task.position, Task.created_at)
    )
    return list(result.scalars().all())


async def _next_task_position(
    session: AsyncSession, project_id: str, parent_task_id: str | None
) -> int:
    query = select(func.max(Task.position)).where(Task.project_id == project_id)
    if parent_task_id is None:
        query = query.where(Task.parent_task_id.is_(None))
    else:
        query = query.where(Task.parent_task_id == parent_task_id)
    current = (await session.execute(query)).scalar_one_or_none()
    return 0 if current is None else int(current) + 1


async def task_depth(session: AsyncSession, task: Task) -> int:
    """Depth of ``task`` (root tasks are depth 1), rejecting corrupted parent loops."""
    depth = 1
    visited = {task.id}
    current_id = task.parent_task_id
    while current_id is not None:
        if current_id in visited:
            raise StructuralViolation(
                f"Parent chain of task {task.id} contains a cycle",
                details={"task_id": task.id, "revisited": current_id},
            )
        visited.add(current_id)
        parent = await require_task(session, current_id)
        depth += 1
        current_id = parent.parent_task_id
    return depth


async def subtree_height(session: AsyncSession, task: Task) -> int:
    """Number of task levels in the subtree rooted at ``task`` (1 for a leaf)."""
    height = 0
    stack: list[tuple[str, int]] = [(task.id, 1)]
    seen: set[str] = set()
    while stack:
        task_id, level = stack.pop()
        if task_id in seen:
            raise StructuralViolation(
                f"Task subtree of {task.id} contains a cycle", details={"revisited": task_id}
            )
        seen.add(task_id)
        height = max(height, level)
        for child in await list_child_tasks(session, task_id):
            stack.append((child.id, level + 1))
    return height


async def _validate_parent(
    session: AsyncSession,
    project_id: str,
    parent_task_id: str,
    *,
    moving: Task | None = None,
) -> Task:
    parent = await require_task(session, parent_task_id)
    if parent.project_id != project_id:
        raise StructuralViolation(
            f"Parent task {parent.id} belongs to another project",
            details={"parent_task_id": parent.id, "project_id": project_id},
        )
    parent_depth = await task_depth(session, parent)
    if moving is not None:
        cursor: Task | None = parent
        while cursor is not None:
            if cursor.id == moving.id:
                raise StructuralViolation(
                    f"Moving task {moving.id} under {parent.id} would create a cycle",
                    details={"task_id": moving.id, "parent_task_id": parent.id},
                )
            cursor = await get_task(session, cursor.parent_task_id) if cursor.parent_task_id else None
    height = await subtree_height(session, moving) if moving is not None else 1
    if parent_depth + height > settings.max_task_depth:
        raise StructuralViolation(
            f"Task nesting would exceed the maximum depth of {settings.max_task_depth}",
            details={"parent_task_id": parent.id, "max_depth": settings.max_task_depth},
        )
    return parent


async def create_task(
    session: AsyncSession,
    project_id: str,
    title: str,
    objective: str = "",
    *,
    parent_task_id: str | None = None,
    prev_ref: NodeRef | str | None = None,
    next_ref: NodeRef | str | None = None,
    created_by: str = "operator",
    position: int | None = None,
    promoted_from_step_id: str | None = None,
) -> Task:
    """Create a task, validating its hierarchy links before it is written."""
    await require_project(session, project_id)
    if parent_task_id is not None:
        await _validate_parent(session, project_id, parent_task_id)
    prev = await validate_ref(session, prev_ref, project_id=project_id)
    nxt = await validate_ref(session, next_ref, project_id=project_id)

    task = Task(
        project_id=project_id,
        parent_task_id=parent_task_id,
        title=require_text(title, "title"),
        objective=(objective or "").strip(),
        progress=0.0,
        position=(
            position
            if position is not None
            else await _next_task_position(session, project_id, parent_task_id)
        ),
        prev_ref=prev,
        next_ref=nxt,
        created_by=created_by,
        promoted_from_step_id=promoted_from_step_id,
    )
    session.add(task)
    await session.flush()
    await link_neighbours(session, task, insert=promoted_from_step_id is None)
    await record_change(
        session,
        EventType.ENTITY_CREATED,
        entity_kind="task",
        entity_id=task.id,
        project_id=project_id,
        message=f"Task created: {task.title}",
        details={"parent_task_id": parent_task_id, "created_by": created_by},
    )
    return task


async def update_task(
    session: AsyncSession,
    task: Task,
    *,
    title: str | None = None,
    objective: str | None = None,
    position: int | None = None,
    prev_ref: NodeRef | str | None = None,
    next_ref: NodeRef | str | None = None,
    clear_prev: bool = False,
    clear_next: bool = False,
    project_id: str | None = None,
) -> Task:
    """Update descriptive fields and chain links of a task."""
    if project_id is not None and project_id != task.project_id:
        raise StructuralViolation(
            "A task cannot be moved to another project",
            details={"task_id": task.id, "project_id": project_id},
        )
    changes: dict[str, Any] = {}
    if title is not None:
        task.title = require_text(title, "title")
        changes["title"] = task.title
    if objective is not None:
        task.objective = objective.strip()
        changes["objective"] = task.objective
    if position is not None:
        task.position = position
        changes["position"] = position
    if clear_prev:
        task.prev_ref = None
        changes["prev_ref"] = None
    elif prev_ref is not None:
        task.prev_ref = await validate_ref(
            session, prev_ref, project_id=task.project_id, self_ref=task.ref
        )
        changes["prev_ref"] = str(task.prev_ref)
    if clear_next:
        task.next_ref = None
        changes["next_ref"] = None
    elif next_ref is not None:
        task.next_ref = await validate_ref(
            session, next_ref, project_id=task.project_id, self_ref=task.ref
        )
        changes["next_ref"] = str(task.next_ref)
    if changes:
        await session.flush()
        await record_change(
            session,
            EventType.ENTITY_UPDATED,
            entity_kind="task",
            entity_id=task.id,
            project_id=task.project_id,
            message=f"Task updated: {task.title}",
            details=changes,
        )
    return task


async def move_task(session: AsyncSession, task: Task, new_parent_id: str | None) -> str | None:
    """Re-parent a task. Returns the previous parent id."""
    old_parent_id = task.parent_task_id
    if new_parent_id == old_parent_id:
        return old_parent_id
    if new_parent_id is not None:
        if new_parent_id == task.id:
            raise StructuralViolation(
                f"Task {task.id} cannot be its own parent", details={"task_id": task.id}
            )
        await _validate_parent(session, task.project_id, new_parent_id, moving=task)
    task.parent_task_id = new_parent_id
    task.position = await _next_task_position(session, task.project_id, new_parent_id)
    await session.flush()
    await record_change(
        session,
        EventType.ENTITY_UPDATED,
        entity_kind="task",
        entity_id=task.id,
        project_id=task.project_id,
        message=f"Task moved: {task.title}",
        details={"old_parent_task_id": old_parent_id, "parent_task_id": new_parent_id},
    )
    return old_parent_id


async def _delete_task_subtree(session: AsyncSession, root: Task, *, splice: bool = True) -> int:
    """Delete ``root`` with all descendant tasks and steps. Returns the number of nodes removed."""
    doomed: list[Task] = []
    stack = [root]
    seen: set[str] = set()
    while stack:
        task = stack.pop()
        if task.id in seen:
            raise StructuralViolation(
                f"Task subtree of {root.id} contains a cycle", details={"revisited": task.id}
            )
        seen.add(task.id)
        doomed.append(task)
        stack.extend(await list_child_tasks(session, task.id))

    removed = 0
    # Children first so self-referencing FKs never dangle mid-flush.
    for task in reversed(doomed):
        for step in await list_steps(session, task.id):
            if splice:
                await splice_out(session, step.ref, prev_ref=step.prev_ref, next_ref=step.next_ref)
            await _delete_step_disputes(session, step.id)
            await session.delete(step)
            removed += 1
        await session.flush()
        if splice:
            await splice_out(session, task.ref, prev_ref=task.prev_ref, next_ref=task.next_ref)
        await session.delete(task)
        await session.flush()
        removed += 1
    return removed


async def delete_task(session: AsyncSession, task: Task) -> int:
    """Delete a task subtree, closing the navigation chain around every removed node."""
    removed = await _delete_task_subtree(session, task)
    await record_change(
        session,
        EventType.ENTITY_DELETED,
        entity_kind="task",
        entity_id=task.id,
        project_id=task.project_id,
        message=f"Task deleted: {task.title}",
        details={"removed_nodes": removed, "parent_task_id": task.parent_task_id},
    )
    return removed


# =============================================================================
# Step Operations
# =============================================================================


async def get_step(session: AsyncSession, step_id: str) -> Step | None:
    """Get a step by its ID."""
    return await session.get(Step, step_id)


async def require_step(session: AsyncSession, step_id: str) -> Step:
    step = await get_step(session, step_id)
    if step is None:
        raise NotFoundError("Step", step_id)
    return step


async def list_steps(session: AsyncSession, task_id: str) -> list[Step]:
    result = await session.execute(
        select(Step).where(Step.task_id == task_id).order_by(Step.position, Step.created_at)
    )
    return list(result.scalars().all())


async def list_project_steps(session: AsyncSession, project_id: str) -> list[Step]:
    result = await session.execute(
        select(Step)
        .join(Task, Step.task_id == Task.id)
        .where(Task.project_id == project_id)
        .order_by(Task.position, Task.created_at, Step.position, Step.created_at)
    )
    return list(result.scalars().all())


async def create_step(
    session: AsyncSession,
    task_id: str,
    title: str,
    *,
    prev_ref: NodeRef | str | None = None,
    next_ref: NodeRef | str | None = None,
    position: int | None = None,
) -> Step:
    """Create a pending step under a task."""
    task = await require_task(session, task_id)
    prev = await validate_ref(session, prev_ref, project_id=task.project_id)
    nxt = await validate_ref(session, next_ref, project_id=task.project_id)
    if position is None:
        current = (
            await session.execute(select(func.max(Step.position)).where(Step.task_id == task_id))
        ).scalar_one_or_none()
        position = 0 if current is None else int(current) + 1

    step = Step(
        task_id=task_id,
        title=require_text(title, "title"),
        position=position,
        prev_ref=prev,
        next_ref=nxt,
        progress=0.0,
        iteration_count=0,
        iteration_history=[],
        complexity_details={},
    )
    session.add(step)
    await session.flush()
    await link_neighbours(session, step)
    await record_change(
        session,
        EventType.ENTITY_CREATED,
        entity_kind="step",
        entity_id=step.id,
        project_id=task.project_id,
        message=f"Step created: {step.title}",
        details={"task_id": task_id},
    )
    return step


async def update_step(
    session: AsyncSession,
    step: Step,
    *,
    title: str | None = None,
    position: int | None = None,
    prev_ref: NodeRef | str | None = None,
    next_ref: NodeRef | str | None = None,
    clear_prev: bool = False,
    clear_next: bool = False,
) -> Step:
    """Update a step's descriptive fields and chain links."""
    project_id = await project_id_for(session, step)
    changes: dict[str, Any] = {}
    if title is not None:
        step.title = require_text(title, "title")
        changes["title"] = step.title
    if position is not None:
        step.position = position
        changes["position"] = position
    if clear_prev:
        step.prev_ref = None
        changes["prev_ref"] = None
    elif prev_ref is not None:
        step.prev_ref = await validate_ref(session, prev_ref, project_id=project_id, self_ref=step.ref)
        changes["prev_ref"] = str(step.prev_ref)
    if clear_next:
        step.next_ref = None
        changes["next_ref"] = None
    elif next_ref is not None:
        step.next_ref = await validate_ref(session, next_ref, project_id=project_id, self_ref=step.ref)
        changes["next_ref"] = str(step.next_ref)
    if changes:
        await session.flush()
        await record_change(
            session,
            EventType.ENTITY_UPDATED,
            entity_kind="step",
            entity_id=step.id,
            project_id=project_id,
            message=f"Step updated: {step.title}",
            details=changes,
        )
    return step


async def _delete_step_disputes(session: AsyncSession, step_id: str) -> None:
    result = await session.execute(select(Dispute).where(Dispute.step_id == step_id))
    for dispute in result.scalars().all():
        await session.delete(dispute)
    await session.flush()


async def delete_step(
    session: AsyncSession, step: Step, *, replacement: NodeRef | None = None
) -> None:
    """Delete a step, splicing the navigation chain around it (or onto ``replacement``)."""
    project_id = await project_id_for(session, step)
    await splice_out(
        session,
        step.ref,
        prev_ref=step.prev_ref,
        next_ref=step.next_ref,
        replacement=replacement,
    )
    await _delete_step_disputes(session, step.id)
    await session.delete(step)
    await session.flush()
    await record_change(
        session,
        EventType.ENTITY_DELETED,
        entity_kind="step",
        entity_id=step.id,
        project_id=project_id,
        message=f"Step deleted: {step.title}",
        details={"task_id": step.task_id, "replacement": str(replacement) if replacement else None},
    )


# =============================================================================
# Dispute Operations
# =============================================================================


async def get_dispute(session: AsyncSession, dispute_id: str) -> Dispute | None:
    return await session.get(Dispute, dispute_id)


async def require_dispute(session: AsyncSession, dispute_id: str) -> Dispute:
    dispute = await get_dispute(session, dispute_id)
    if dispute is None:
        raise NotFoundError("Dispute", dispute_id)
    return dispute


async def get_pending_dispute_for_step(session: AsyncSession, step_id: str) -> Dispute | None:
    result = await session.execute(
        select(Dispute).where(
            Dispute.step_id == step_id, Dispute.status == DisputeStatus.PENDING.value
        )
    )
    return result.scalar_one_or_none()


async def list_disputes(
    session: AsyncSession,
    *,
    project_id: str | None = None,
    status: DisputeStatus | None = None,
) -> list[Dispute]:
    query = select(Dispute).order_by(Dispute.created_at)
    if project_id is not None:
        query = query.where(Dispute.project_id == project_id)
    if status is not None:
        query = query.where(Dispute.status == status.value)
    result = await session.execute(query)
    return list(result.scalars().all())
