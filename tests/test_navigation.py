from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from decompose import db
from decompose.errors import ChainCycleError, NotFoundError, StructuralViolation, ValidationError
from decompose.navigation import ChainDirection
from decompose.refs import NodeKind, NodeRef
from decompose.service import DecompositionService

Agree = Callable[..., Awaitable[Any]]


async def _linear(service: DecompositionService, count: int = 4) -> list[Any]:
    project = await service.create_project("Shop", "An online shop")
    (task,) = await service.define_root_tasks(project.id, [{"title": "Catalog"}])
    steps: list[Any] = []
    for index in range(count):
        prev = steps[-1].ref if steps else None
        steps.append(await service.create_step(task.id, f"S{index + 1}", prev_ref=prev))
    return steps


@pytest.mark.asyncio
async def test_next_item_follows_hierarchy_order(service: DecompositionService, agree: Agree) -> None:
    project = await service.create_project("Shop", "An online shop")
    first, second = await service.define_root_tasks(
        project.id, [{"title": "Catalog"}, {"title": "Checkout"}]
    )
    s1 = await service.create_step(first.id, "List products")
    s2 = await service.create_step(first.id, "Product page", prev_ref=s1.ref)
    child = await service.create_task(project.id, "Search", parent_task_id=first.id)
    c1 = await service.create_step(child.id, "Search box")

    item = await service.get_next_actionable_item(project.id)
    assert item is not None and item.ref == s1.ref
    assert item.depth == 1

    await agree(s1.id)
    item = await service.get_next_actionable_item(project.id)
    assert item is not None and item.ref == s2.ref

    await agree(s2.id)
    item = await service.get_next_actionable_item(project.id)
    assert item is not None and item.ref == c1.ref
    assert item.task_id == child.id
    assert item.depth == 2

    await agree(c1.id)
    assert (await service.get_task(first.id)).progress == 1.0
    item = await service.get_next_actionable_item(project.id)
    assert item is not None
    assert item.kind == NodeKind.TASK
    assert item.id == second.id


@pytest.mark.asyncio
async def test_next_item_is_none_when_project_complete(
    service: DecompositionService, agree: Agree
) -> None:
    steps = await _linear(service, count=2)
    task = await service.get_task(steps[0].task_id)
    for step in steps:
        await agree(step.id)

    assert (await service.get_project(task.project_id)).progress == 1.0
    assert await service.get_next_actionable_item(task.project_id) is None


@pytest.mark.asyncio
async def test_next_item_for_unknown_project(service: DecompositionService) -> None:
    with pytest.raises(NotFoundError):
        await service.get_next_actionable_item("missing")


@pytest.mark.asyncio
async def test_walk_forward_and_backward(service: DecompositionService) -> None:
    s1, s2, s3, s4 = await _linear(service)

    forward = await service.walk_chain(s1.ref)
    assert [link.title for link in forward.items] == ["S1", "S2", "S3", "S4"]
    assert [link.distance for link in forward.forward] == [1, 2, 3]
    assert forward.truncated is False

    backward = await service.walk_chain(f"step:{s4.id}", ChainDirection.BACKWARD)
    assert [link.title for link in backward.backward] == ["S3", "S2", "S1"]
    assert [link.distance for link in backward.backward] == [-1, -2, -3]
    assert [link.title for link in backward.items] == ["S1", "S2", "S3", "S4"]


@pytest.mark.asyncio
async def test_walk_both_directions(service: DecompositionService) -> None:
    s1, s2, s3, s4 = await _linear(service)

    walk = await service.walk_chain(s2.ref, "both")

    assert walk.start.ref == s2.ref
    assert [link.ref for link in walk.backward] == [s1.ref]
    assert [link.ref for link in walk.forward] == [s3.ref, s4.ref]
    assert walk.to_dict()["items"][0]["ref"] == f"step:{s1.id}"


@pytest.mark.asyncio
async def test_walk_crosses_tasks(service: DecompositionService) -> None:
    project = await service.create_project("Shop", "An online shop")
    first, second = await service.define_root_tasks(
        project.id, [{"title": "Catalog"}, {"title": "Checkout"}]
    )

    walk = await service.walk_chain(first.ref)

    assert [link.ref for link in walk.forward] == [NodeRef.task(second.id)]


@pytest.mark.asyncio
async def test_walk_stops_at_first_incomplete(service: DecompositionService, agree: Agree) -> None:
    s1, s2, s3, s4 = await _linear(service)
    await agree(s1.id)
    await agree(s2.id)

    walk = await service.walk_chain(s1.ref, stop_at_incomplete=True)

    assert [link.ref for link in walk.forward] == [s2.ref, s3.ref]
    assert walk.forward[0].complete is True
    assert walk.stopped_at == s3.ref


@pytest.mark.asyncio
async def test_walk_is_bounded_by_max_depth(service: DecompositionService) -> None:
    s1, s2, s3, s4 = await _linear(service)

    walk = await service.walk_chain(s1.ref, max_depth=2)

    assert [link.ref for link in walk.forward] == [s2.ref, s3.ref]
    assert walk.truncated is True

    with pytest.raises(ValidationError):
        await service.walk_chain(s1.ref, max_depth=-1)


@pytest.mark.asyncio
async def test_walk_detects_cycles(service: DecompositionService) -> None:
    s1, s2, *_ = await _linear(service, count=2)
    async with db.get_session() as session:
        tail = await db.require_step(session, s2.id)
        tail.next_ref = s1.ref

    with pytest.raises(ChainCycleError) as exc_info:
        await service.walk_chain(s1.ref)

    assert exc_info.value.cycle == [f"step:{s1.id}", f"step:{s2.id}", f"step:{s1.id}"]


@pytest.mark.asyncio
async def test_walk_reports_dangling_reference(service: DecompositionService) -> None:
    s1, s2, *_ = await _linear(service, count=2)
    async with db.get_session() as session:
        tail = await db.require_step(session, s2.id)
        tail.next_ref = NodeRef.step("missing")

    with pytest.raises(StructuralViolation) as exc_info:
        await service.walk_chain(s1.ref)

    assert not isinstance(exc_info.value, ChainCycleError)
    assert exc_info.value.details["ref"] == "step:missing"


@pytest.mark.asyncio
async def test_walk_from_unknown_start(service: DecompositionService) -> None:
    with pytest.raises(NotFoundError):
        await service.walk_chain("task:missing")
    with pytest.raises(ValidationError):
        await service.walk_chain("not-a-ref")


@pytest.mark.asyncio
async def test_inserting_after_a_linked_step_threads_it_in(service: DecompositionService) -> None:
    project = await service.create_project("Shop", "An online shop")
    (task,) = await service.define_root_tasks(project.id, [{"title": "Catalog"}])
    s1 = await service.create_step(task.id, "S1")
    s3 = await service.create_step(task.id, "S3", prev_ref=s1.ref)

    s2 = await service.create_step(task.id, "S2", prev_ref=s1.ref)

    assert s2.next_ref == s3.ref
    forward = await service.walk_chain(s1.ref)
    assert [link.title for link in forward.items] == ["S1", "S2", "S3"]
    backward = await service.walk_chain(s3.ref, ChainDirection.BACKWARD)
    assert [link.title for link in backward.backward] == ["S2", "S1"]


@pytest.mark.asyncio
async def test_inserting_before_a_linked_step_threads_it_in(service: DecompositionService) -> None:
    project = await service.create_project("Shop", "An online shop")
    (task,) = await service.define_root_tasks(project.id, [{"title": "Catalog"}])
    s1 = await service.create_step(task.id, "S1")
    s3 = await service.create_step(task.id, "S3", prev_ref=s1.ref)

    s2 = await service.create_step(task.id, "S2", next_ref=s3.ref)

    assert s2.prev_ref == s1.ref
    forward = await service.walk_chain(s1.ref)
    assert [link.title for link in forward.items] == ["S1", "S2", "S3"]


@pytest.mark.asyncio
async def test_promoting_the_first_step_keeps_the_chain_open(
    service: DecompositionService, backend: Any
) -> None:
    s1, s2 = await _linear(service, count=2)
    await service.submit_producer_content(s1.id, "Everything about the catalog", None)
    backend.scores["S1"] = (0.9, 0.9)
    task = await service.get_task(s1.task_id)

    result = await service.run_promotion_optimization(task.project_id)

    (record,) = result.promotions
    promoted = await service.get_task(record.task_id)
    assert promoted.prev_ref is None
    assert promoted.next_ref == s2.ref
    walk = await service.walk_chain(promoted.ref)
    assert [link.ref for link in walk.items] == [promoted.ref, s2.ref]
