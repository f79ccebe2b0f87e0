import asyncio
from collections.abc import Awaitable, Callable

import pytest

from decompose import db, progress
from decompose.collaboration import ReviewerDecision
from decompose.models import Step, StepStatus
from decompose.service import DecompositionService

Agree = Callable[..., Awaitable[Step]]


def test_step_progress_is_binary() -> None:
    step = Step(status=StepStatus.AGREED.value, final_content="Ship it")
    assert progress.step_progress(step) == 1.0
    step.final_content = "   "
    assert progress.step_progress(step) == 0.0
    step.final_content = "Ship it"
    step.status = StepStatus.REVIEWER_REVIEW.value
    assert progress.step_progress(step) == 0.0


def test_mean_of_nothing_is_zero() -> None:
    assert progress.mean([]) == 0.0
    assert progress.mean([1.0, 0.0]) == 0.5


@pytest.mark.asyncio
async def test_task_with_two_steps_reports_half(service: DecompositionService, agree: Agree) -> None:
    project = await service.create_project("Shop", "An online shop")
    (task,) = await service.define_root_tasks(project.id, [{"title": "Catalog"}])
    done = await service.create_step(task.id, "List products")
    await service.create_step(task.id, "Filter products")

    step = await agree(done.id)

    assert step.progress == 1.0
    assert (await service.get_task(task.id)).progress == 0.5
    assert (await service.get_project(project.id)).progress == 0.5


@pytest.mark.asyncio
async def test_task_without_children_is_zero(service: DecompositionService) -> None:
    project = await service.create_project("Shop", "An online shop")
    empty, _ = await service.define_root_tasks(project.id, [{"title": "Empty"}, {"title": "Other"}])
    assert (await service.get_task(empty.id)).progress == 0.0
    assert (await service.get_project(project.id)).progress == 0.0


@pytest.mark.asyncio
async def test_progress_cascades_monotonically(service: DecompositionService, agree: Agree) -> None:
    project = await service.create_project("Shop", "An online shop")
    root, _ = await service.define_root_tasks(project.id, [{"title": "Root"}, {"title": "Other"}])
    s1 = await service.create_step(root.id, "Root step")
    child = await service.create_task(project.id, "Child", parent_task_id=root.id)
    c1 = await service.create_step(child.id, "Child step 1")
    await service.create_step(child.id, "Child step 2")

    async def snapshot() -> tuple[float, float, float]:
        return (
            (await service.get_task(child.id)).progress,
            (await service.get_task(root.id)).progress,
            (await service.get_project(project.id)).progress,
        )

    before = await snapshot()
    assert before == (0.0, 0.0, 0.0)

    await agree(c1.id)
    middle = await snapshot()
    assert middle == pytest.approx((0.5, 0.25, 0.125))

    await agree(s1.id)
    after = await snapshot()
    assert after == pytest.approx((0.5, 0.75, 0.375))
    assert all(b <= m <= a for b, m, a in zip(before, middle, after, strict=True))


@pytest.mark.asyncio
async def test_adding_a_step_lowers_parent_progress(service: DecompositionService, agree: Agree) -> None:
    project = await service.create_project("Shop", "An online shop")
    (task,) = await service.define_root_tasks(project.id, [{"title": "Catalog"}])
    step = await service.create_step(task.id, "List products")
    await agree(step.id)
    assert (await service.get_task(task.id)).progress == 1.0

    await service.create_step(task.id, "Filter products")
    assert (await service.get_task(task.id)).progress == 0.5
    assert (await service.get_project(project.id)).progress == 0.5


@pytest.mark.asyncio
async def test_rebuild_repairs_derived_values(service: DecompositionService, agree: Agree) -> None:
    project = await service.create_project("Shop", "An online shop")
    (task,) = await service.define_root_tasks(project.id, [{"title": "Catalog"}])
    child = await service.create_task(project.id, "Child", parent_task_id=task.id)
    step = await service.create_step(child.id, "List products")
    await agree(step.id)

    async with db.get_session() as session:
        (await db.require_task(session, task.id)).progress = 0.1
        (await db.require_task(session, child.id)).progress = 0.2
        (await db.require_project(session, project.id)).progress = 0.3

    rebuilt = await service.rebuild_progress(project.id)

    assert rebuilt.progress == 1.0
    assert (await service.get_task(child.id)).progress == 1.0
    assert (await service.get_task(task.id)).progress == 1.0


@pytest.mark.asyncio
async def test_recompute_without_change_emits_nothing(service: DecompositionService) -> None:
    project = await service.create_project("Shop", "An online shop")
    (task,) = await service.define_root_tasks(project.id, [{"title": "Catalog"}])
    await service.create_step(task.id, "List products")

    async with db.get_session() as session:
        loaded = await db.require_task(session, task.id)
        assert await progress.recompute_task(session, loaded) is False
        assert await progress.cascade_from_task(session, task.id) == 0


@pytest.mark.asyncio
async def test_unchanged_recompute_still_bumps_row_version(service: DecompositionService) -> None:
    project = await service.create_project("Shop", "An online shop")
    (task,) = await service.define_root_tasks(project.id, [{"title": "Catalog"}])
    await service.create_step(task.id, "List products")
    before = await service.get_task(task.id)

    async with db.get_session() as session:
        loaded = await db.require_task(session, task.id)
        assert await progress.recompute_task(session, loaded) is False

    after = await service.get_task(task.id)
    assert after.progress == before.progress
    assert after.version > before.version


@pytest.mark.asyncio
async def test_concurrent_sibling_changes_agree_on_parent(service: DecompositionService) -> None:
    project = await service.create_project("Shop", "An online shop")
    (task,) = await service.define_root_tasks(project.id, [{"title": "Catalog"}])
    s1 = await service.create_step(task.id, "List products")
    s2 = await service.create_step(task.id, "Filter products", prev_ref=s1.ref)
    await service.create_step(task.id, "Sort products", prev_ref=s2.ref)
    await service.submit_producer_content(s1.id, "Product grid", None)

    await asyncio.gather(
        service.submit_reviewer_decision(s1.id, ReviewerDecision(approve=True)),
        service.delete_step(s2.id),
    )

    assert (await service.get_task(task.id)).progress == 0.5
    assert (await service.get_project(project.id)).progress == 0.5
