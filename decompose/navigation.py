"""Work-pointer resolution over the task hierarchy and the prev/next chain."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .config import settings
from .errors import ChainCycleError, NotFoundError, StructuralViolation, ValidationError
from .models import Step, Task
from .refs import NodeKind, NodeRef


@dataclass
class WorkItem:
    """The next thing someone should work on."""

    kind: NodeKind
    id: str
    title: str
    project_id: str
    task_id: str
    progress: float
    depth: int
    status: str | None = None

    @property
    def ref(self) -> NodeRef:
        return NodeRef(self.kind, self.id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ref": self.ref.format(),
            "title": self.title,
            "project_id": self.project_id,
            "task_id": self.task_id,
            "progress": self.progress,
            "depth": self.depth,
            "status": self.status,
        }


def _step_item(step: Step, task: Task, depth: int) -> WorkItem:
    return WorkItem(
        kind=NodeKind.STEP,
        id=step.id,
        title=step.title,
        project_id=task.project_id,
        task_id=task.id,
        progress=step.progress or 0.0,
        depth=depth,
        status=step.status,
    )


def _task_item(task: Task, depth: int) -> WorkItem:
    return WorkItem(
        kind=NodeKind.TASK,
        id=task.id,
        title=task.title,
        project_id=task.project_id,
        task_id=task.id,
        progress=task.progress or 0.0,
        depth=depth,
    )


async def next_actionable_item(session: AsyncSession, project_id: str) -> WorkItem | None:
    """First incomplete step in hierarchy order, else the first incomplete leaf-most task.

    A task's own steps come before its child tasks; a task is returned
    itself only once nothing below it is actionable. Returns None when the
    project is complete.
    """
    await db.require_project(session, project_id)
    stack: list[tuple[Task, int, bool]] = [
        (task, 1, False) for task in reversed(await db.list_root_tasks(session, project_id))
    ]
    seen: set[str] = set()
    while stack:
        task, depth, expanded = stack.pop()
        if expanded:
            if (task.progress or 0.0) < 1.0:
                return _task_item(task, depth)
            continue
        if task.id in seen:
            raise StructuralViolation(
                f"Task hierarchy of project {project_id} revisits task {task.id}",
                details={"project_id": project_id, "task_id": task.id},
            )
        seen.add(task.id)
        for step in await db.list_steps(session, task.id):
            if (step.progress or 0.0) < 1.0:
                return _step_item(step, task, depth)
        stack.append((task, depth, True))
        for child in reversed(await db.list_child_tasks(session, task.id)):
            stack.append((child, depth + 1, False))
    return None


class ChainDirection(str, Enum):
    FORWARD = "forward"
    BACKWARD = "backward"
    BOTH = "both"


@dataclass
class ChainLink:
    ref: NodeRef
    title: str
    progress: float
    distance: int  # negative when reached walking backward

    @property
    def complete(self) -> bool:
        return self.progress >= 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "ref": self.ref.format(),
            "title": self.title,
            "progress": self.progress,
            "distance": self.distance,
            "complete": self.complete,
        }


@dataclass
class ChainWalk:
    start: ChainLink
    forward: list[ChainLink] = field(default_factory=list)
    backward: list[ChainLink] = field(default_factory=list)
    truncated: bool = False
    stopped_at: NodeRef | None = None

    @property
    def items(self) -> list[ChainLink]:
        """Every visited link in chain order, oldest first."""
        return [*reversed(self.backward), self.start, *self.forward]

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start.to_dict(),
            "items": [link.to_dict() for link in self.items],
            "truncated": self.truncated,
            "stopped_at": self.stopped_at.format() if self.stopped_at else None,
        }


def _link(node: Task | Step, distance: int) -> ChainLink:
    return ChainLink(ref=node.ref, title=node.title, progress=node.progress or 0.0, distance=distance)


async def _follow(
    session: AsyncSession,
    start: Task | Step,
    walk: ChainWalk,
    *,
    forward: bool,
    max_depth: int,
    stop_at_incomplete: bool,
) -> None:
    links = walk.forward if forward else walk.backward
    sign = 1 if forward else -1
    path = [start.ref.format()]
    visited = {start.ref}
    node: Task | Step = start
    cursor = node.next_ref if forward else node.prev_ref
    while cursor is not None:
        if len(links) >= max_depth:
            walk.truncated = True
            return
        if cursor in visited:
            raise ChainCycleError([*path, cursor.format()])
        target = await db.resolve_ref(session, cursor)
        if target is None:
            raise StructuralViolation(
                f"Chain reference {node.ref} -> {cursor} points at a missing entity",
                details={"from": node.ref.format(), "ref": cursor.format()},
            )
        visited.add(cursor)
        path.append(cursor.format())
        node = target
        link = _link(node, sign * (len(links) + 1))
        links.append(link)
        if stop_at_incomplete and not link.complete:
            walk.stopped_at = link.ref
            return
        cursor = node.next_ref if forward else node.prev_ref


async def walk_chain(
    session: AsyncSession,
    start_ref: NodeRef,
    direction: ChainDirection | str = ChainDirection.FORWARD,
    *,
    max_depth: int | None = None,
    stop_at_incomplete: bool = False,
) -> ChainWalk:
    """Follow ``next_ref``/``prev_ref`` links from ``start_ref`` up to ``max_depth`` hops per side."""
    direction = ChainDirection(direction)
    depth = settings.chain_max_depth if max_depth is None else max_depth
    if depth < 0:
        raise ValidationError(f"max_depth must be >= 0, got {depth}", details={"field": "max_depth"})
    start = await db.resolve_ref(session, start_ref)
    if start is None:
        raise NotFoundError(start_ref.kind.value.capitalize(), start_ref.id)

    walk = ChainWalk(start=_link(start, 0))
    if direction in (ChainDirection.BACKWARD, ChainDirection.BOTH):
        await _follow(
            session, start, walk, forward=False, max_depth=depth, stop_at_incomplete=stop_at_incomplete
        )
    if direction in (ChainDirection.FORWARD, ChainDirection.BOTH):
        await _follow(
            session, start, walk, forward=True, max_depth=depth, stop_at_incomplete=stop_at_incomplete
        )
    return walk
