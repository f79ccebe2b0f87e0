from typing import Any

import pytest

from decompose import db
from decompose.collaboration import TRANSITIONS, ReviewerDecision, can_transition
from decompose.errors import ConflictError, InvalidTransition, UpstreamUnavailable, ValidationError
from decompose.generation import ReviewResult
from decompose.models import DisputeStatus, StepStatus
from decompose.service import DecompositionService


async def _step(service: DecompositionService, max_iterations: int = 3) -> Any:
    project = await service.create_project("Shop", "An online shop", max_iterations=max_iterations)
    (task,) = await service.define_root_tasks(project.id, [{"title": "Catalog"}])
    return await service.create_step(task.id, "List products")


def test_transition_table() -> None:
    assert can_transition(StepStatus.PENDING, StepStatus.PRODUCER_DRAFT)
    assert can_transition("producer_draft", "producer_draft")
    assert can_transition(StepStatus.DISPUTED, StepStatus.USER_RESOLUTION)
    assert not can_transition(StepStatus.PENDING, StepStatus.AGREED)
    assert not can_transition(StepStatus.DISPUTED, StepStatus.AGREED)
    assert TRANSITIONS[StepStatus.AGREED] == frozenset()


@pytest.mark.asyncio
async def test_happy_path_reaches_agreed(service: DecompositionService) -> None:
    step = await _step(service)
    assert step.status == StepStatus.PENDING

    step = await service.submit_producer_content(step.id, "Render a product grid", "users browse")
    assert step.status == StepStatus.REVIEWER_REVIEW
    assert step.producer_ready is True

    step = await service.submit_reviewer_decision(
        step.id, ReviewerDecision(approve=True, final_content="Render a paginated product grid")
    )
    assert step.status == StepStatus.AGREED
    assert step.final_content == "Render a paginated product grid"
    assert step.progress == 1.0
    actions = [(h["actor"], h["action"]) for h in step.iteration_history]
    assert actions == [("producer", "draft"), ("reviewer", "approve")]


@pytest.mark.asyncio
async def test_approval_falls_back_to_producer_content(service: DecompositionService) -> None:
    step = await _step(service)
    await service.submit_producer_content(step.id, "Render a product grid", None)
    step = await service.submit_reviewer_decision(step.id, ReviewerDecision(approve=True))
    assert step.final_content == "Render a product grid"


@pytest.mark.asyncio
async def test_not_ready_draft_waits_for_signal(service: DecompositionService) -> None:
    step = await _step(service)
    step = await service.submit_producer_content(step.id, "First idea", None, ready=False)
    assert step.status == StepStatus.PRODUCER_DRAFT

    step = await service.submit_producer_content(step.id, "Better idea", None, ready=False)
    assert step.status == StepStatus.PRODUCER_DRAFT
    assert step.producer_content == "Better idea"

    step = await service.mark_producer_ready(step.id)
    assert step.status == StepStatus.REVIEWER_REVIEW


@pytest.mark.asyncio
async def test_agreed_requires_drafting_and_review(service: DecompositionService) -> None:
    step = await _step(service)
    with pytest.raises(InvalidTransition) as exc_info:
        await service.submit_reviewer_decision(step.id, ReviewerDecision(approve=True))
    assert exc_info.value.details == {"step_id": step.id, "from": "pending", "to": "agreed"}

    with pytest.raises(InvalidTransition):
        await service.mark_producer_ready(step.id)

    await service.submit_producer_content(step.id, "Draft", None)
    with pytest.raises(InvalidTransition):
        await service.submit_producer_content(step.id, "Another draft", None)

    assert (await service.get_step(step.id)).status == StepStatus.REVIEWER_REVIEW


@pytest.mark.asyncio
async def test_blank_content_is_rejected(service: DecompositionService) -> None:
    step = await _step(service)
    with pytest.raises(ValidationError):
        await service.submit_producer_content(step.id, "   ", None)
    assert (await service.get_step(step.id)).status == StepStatus.PENDING


@pytest.mark.asyncio
async def test_revision_increments_iteration(service: DecompositionService) -> None:
    step = await _step(service)
    await service.submit_producer_content(step.id, "Draft", None, focus_hint="layout")
    step = await service.submit_reviewer_decision(
        step.id, ReviewerDecision(approve=False, feedback="Mention pagination")
    )
    assert step.status == StepStatus.PRODUCER_DRAFT
    assert step.iteration_count == 1
    assert step.reviewer_feedback == "Mention pagination"
    assert step.producer_ready is False
    assert step.focus_hint == "layout"


@pytest.mark.asyncio
async def test_iteration_limit_opens_exactly_one_dispute(service: DecompositionService) -> None:
    step = await _step(service, max_iterations=2)

    await service.submit_producer_content(step.id, "Draft v1", "first try")
    step = await service.submit_reviewer_decision(
        step.id, ReviewerDecision(approve=False, feedback="Too vague")
    )
    assert step.status == StepStatus.PRODUCER_DRAFT
    assert step.iteration_count == 1

    await service.submit_producer_content(step.id, "Draft v2", "second try")
    step = await service.submit_reviewer_decision(
        step.id, ReviewerDecision(approve=False, feedback="Still vague")
    )

    assert step.status == StepStatus.DISPUTED
    assert step.iteration_count == 2
    assert step.progress == 0.0

    pending = await service.list_pending_disputes()
    assert len(pending) == 1
    dispute = pending[0]
    assert dispute.step_id == step.id
    assert dispute.status == DisputeStatus.PENDING
    assert dispute.producer_content == "Draft v2"
    assert dispute.reviewer_reasoning == "Still vague"
    assert len(dispute.iteration_history) == 4

    with pytest.raises(InvalidTransition):
        await service.submit_reviewer_decision(step.id, ReviewerDecision(approve=True))
    with pytest.raises(InvalidTransition):
        await service.submit_producer_content(step.id, "Draft v3", None)
    assert (await service.get_step(step.id)).iteration_count == 2


@pytest.mark.asyncio
async def test_single_iteration_budget_disputes_on_first_revision(
    service: DecompositionService,
) -> None:
    step = await _step(service, max_iterations=1)
    await service.submit_producer_content(step.id, "Draft", None)
    step = await service.submit_reviewer_decision(step.id, ReviewerDecision(approve=False))
    assert step.status == StepStatus.DISPUTED
    assert step.iteration_count == 1


@pytest.mark.asyncio
async def test_lowered_budget_turns_approval_into_dispute(service: DecompositionService) -> None:
    step = await _step(service, max_iterations=3)
    await service.submit_producer_content(step.id, "Draft", None)
    await service.submit_reviewer_decision(step.id, ReviewerDecision(approve=False))
    await service.submit_producer_content(step.id, "Draft 2", None)

    project_id = (await service.get_task(step.task_id)).project_id
    await service.update_project_settings(project_id, max_iterations=1)

    step = await service.submit_reviewer_decision(step.id, ReviewerDecision(approve=True))
    assert step.status == StepStatus.DISPUTED
    assert step.iteration_count == 1
    assert step.final_content is None


@pytest.mark.asyncio
async def test_draft_and_review_through_backend(service: DecompositionService, backend: Any) -> None:
    step = await _step(service)
    backend.reviews = [ReviewResult(approve=False, feedback="Add filters")]

    step = await service.draft_step(step.id, focus_hint="filters")
    assert step.status == StepStatus.REVIEWER_REVIEW
    assert step.producer_content == "Draft for List products focusing on filters"

    step = await service.review_step(step.id)
    assert step.status == StepStatus.PRODUCER_DRAFT
    assert step.reviewer_feedback == "Add filters"

    await service.draft_step(step.id)
    step = await service.review_step(step.id)
    assert step.status == StepStatus.AGREED
    assert backend.calls == ["draft_step", "review_step", "draft_step", "review_step"]


@pytest.mark.asyncio
async def test_backend_failure_leaves_state_unchanged(
    service: DecompositionService, backend: Any
) -> None:
    step = await _step(service)
    backend.fail_with = RuntimeError("model overloaded")

    with pytest.raises(UpstreamUnavailable) as exc_info:
        await service.draft_step(step.id)
    assert exc_info.value.retryable is True

    after = await service.get_step(step.id)
    assert after.status == StepStatus.PENDING
    assert after.version == step.version
    assert after.producer_content is None


@pytest.mark.asyncio
async def test_backend_timeout_is_retryable(service: DecompositionService, backend: Any) -> None:
    step = await _step(service)
    backend.delay = 1.0

    with pytest.raises(UpstreamUnavailable):
        await service.draft_step(step.id, timeout=0.01)
    assert (await service.get_step(step.id)).status == StepStatus.PENDING

    backend.delay = 0.0
    step = await service.draft_step(step.id)
    assert step.status == StepStatus.REVIEWER_REVIEW


@pytest.mark.asyncio
async def test_concurrent_edit_during_generation_conflicts(
    service: DecompositionService, backend: Any
) -> None:
    step = await _step(service)

    async def human_edit() -> None:
        backend.on_call = None
        await service.submit_producer_content(step.id, "Human draft", None, ready=False)

    backend.on_call = human_edit

    with pytest.raises(ConflictError):
        await service.draft_step(step.id)

    after = await service.get_step(step.id)
    assert after.producer_content == "Human draft"
    assert after.status == StepStatus.PRODUCER_DRAFT


@pytest.mark.asyncio
async def test_iteration_history_is_persisted(service: DecompositionService) -> None:
    step = await _step(service)
    await service.submit_producer_content(step.id, "Draft", "reason")
    await service.submit_reviewer_decision(step.id, ReviewerDecision(approve=False, feedback="more"))

    async with db.get_session() as session:
        loaded = await db.require_step(session, step.id)
        history = loaded.iteration_history
    assert [h["action"] for h in history] == ["draft", "revise"]
    assert history[0]["reasoning"] == "reason"
    assert history[1]["feedback"] == "more"
