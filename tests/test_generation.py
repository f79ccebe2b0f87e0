import asyncio
import json

import httpx
import pytest

from decompose.complexity import Agent, ComplexityLevel
from decompose.config import Settings
from decompose.errors import UpstreamUnavailable
from decompose.generation import (
    CircuitBreakerBackend,
    CircuitState,
    ComplexityRequest,
    DecomposeRequest,
    DraftRequest,
    DraftResult,
    HeuristicBackend,
    HttpBackend,
    ReviewRequest,
    build_backend,
    call_backend,
)


def _review_request(content: str) -> ReviewRequest:
    return ReviewRequest(
        step_id="s1",
        step_title="Checkout",
        project_description="An online shop",
        task_objective="Take payments",
        producer_content=content,
    )


def _decompose_request(content: str) -> DecomposeRequest:
    return DecomposeRequest(
        step_id="s1", step_title="Checkout", content=content, project_description="An online shop"
    )


class FlakyBackend:
    """Backend whose draft call fails until told otherwise."""

    def __init__(self) -> None:
        self.failing = True
        self.calls = 0

    async def draft_step(self, request: DraftRequest) -> DraftResult:
        self.calls += 1
        if self.failing:
            raise RuntimeError("upstream down")
        return DraftResult(content="ok")


def _draft_request() -> DraftRequest:
    return DraftRequest(
        step_id="s1", step_title="Checkout", project_description="Shop", task_objective="Pay"
    )


# =============================================================================
# call_backend
# =============================================================================


@pytest.mark.asyncio
async def test_call_backend_returns_result() -> None:
    async def ok() -> int:
        return 42

    assert await call_backend("answer", ok, timeout=1.0) == 42


@pytest.mark.asyncio
async def test_call_backend_timeout_is_upstream_unavailable() -> None:
    async def slow() -> None:
        await asyncio.sleep(1.0)

    with pytest.raises(UpstreamUnavailable) as exc_info:
        await call_backend("slow", slow, timeout=0.01)

    assert exc_info.value.details == {"operation": "slow", "timeout": 0.01}


@pytest.mark.asyncio
async def test_call_backend_wraps_errors() -> None:
    async def broken() -> None:
        raise RuntimeError("boom")

    with pytest.raises(UpstreamUnavailable, match="boom") as exc_info:
        await call_backend("broken", broken, timeout=1.0)

    assert isinstance(exc_info.value.__cause__, RuntimeError)


# =============================================================================
# Heuristic backend
# =============================================================================


@pytest.mark.asyncio
async def test_heuristic_draft_uses_context() -> None:
    backend = HeuristicBackend()
    request = _draft_request()
    request.focus_hint = "card payments"
    request.reviewer_feedback = "mention refunds"

    result = await backend.draft_step(request)

    assert result.ready is True
    assert "Objective: Pay" in result.content
    assert "Focus: card payments" in result.content
    assert "mention refunds" in result.content
    assert "card payments" in result.reasoning


@pytest.mark.asyncio
async def test_heuristic_review_rejects_thin_or_placeholder_drafts() -> None:
    backend = HeuristicBackend()

    thin = await backend.review_step(_review_request("Add checkout"))
    assert thin.approve is False
    assert "too thin" in (thin.feedback or "")

    placeholder = await backend.review_step(
        _review_request("Accept card payments through the provider, refunds are TBD for now")
    )
    assert placeholder.approve is False
    assert "tbd" in (placeholder.feedback or "")

    content = "Accept card payments through the provider and store a receipt per order"
    approved = await backend.review_step(_review_request(content))
    assert approved.approve is True
    assert approved.final_content == content


@pytest.mark.asyncio
async def test_heuristic_decompose_prefers_list_items() -> None:
    backend = HeuristicBackend()

    bullets = await backend.decompose_step(
        _decompose_request("Checkout:\n- Cart summary\n- Payment form\n- Receipt email.")
    )
    assert bullets == ["Cart summary", "Payment form", "Receipt email"]

    sentences = await backend.decompose_step(
        _decompose_request("Show the cart. Collect the payment. Send a receipt.")
    )
    assert sentences == ["Show the cart", "Collect the payment", "Send a receipt"]

    fallback = await backend.decompose_step(_decompose_request("Checkout"))
    assert fallback == ["Plan Checkout", "Implement Checkout", "Verify Checkout"]


@pytest.mark.asyncio
async def test_heuristic_decompose_respects_max_steps() -> None:
    backend = HeuristicBackend()
    content = "\n".join(f"- item {i}" for i in range(12))
    request = _decompose_request(content)
    request.max_steps = 4

    assert len(await backend.decompose_step(request)) == 4


@pytest.mark.asyncio
async def test_heuristic_assessment_is_tagged_with_agent() -> None:
    backend = HeuristicBackend()
    request = ComplexityRequest(
        agent=Agent.REVIEWER,
        step_id="s1",
        step_title="Fix typo",
        content="Fix typo in README",
        project_description="Docs",
        task_objective="Polish docs",
        threshold=0.7,
    )

    assessment = await backend.assess_complexity(request)

    assert assessment.agent == Agent.REVIEWER
    assert assessment.level == ComplexityLevel.LOW


# =============================================================================
# HTTP backend
# =============================================================================


@pytest.mark.asyncio
async def test_http_backend_posts_json() -> None:
    seen: list[tuple[str, dict]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, json.loads(request.content)))
        if request.url.path == "/v1/complexity":
            return httpx.Response(
                200, json={"level": "high", "score": 0.85, "should_promote": True, "confidence": 0.7}
            )
        return httpx.Response(200, json={"steps": ["Cart", " ", "Payment"]})

    backend = HttpBackend(base_url="http://gen.test/", transport=httpx.MockTransport(handler))
    try:
        assessment = await backend.assess_complexity(
            ComplexityRequest(
                agent=Agent.PRODUCER,
                step_id="s1",
                step_title="Checkout",
                content="Take payments",
                project_description="Shop",
                task_objective="Pay",
                threshold=0.7,
            )
        )
        steps = await backend.decompose_step(_decompose_request("Take payments"))
    finally:
        await backend.aclose()

    assert assessment.agent == Agent.PRODUCER
    assert assessment.level == ComplexityLevel.HIGH
    assert assessment.should_promote is True
    assert steps == ["Cart", "Payment"]
    assert seen[0][0] == "/v1/complexity"
    assert seen[0][1]["agent"] == "producer"
    assert seen[1][1]["max_steps"] == 8


@pytest.mark.asyncio
async def test_http_backend_maps_status_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="overloaded")

    backend = HttpBackend(base_url="http://gen.test", transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await backend.review_step(_review_request("Take payments"))
    finally:
        await backend.aclose()

    assert exc_info.value.details["status"] == 503


@pytest.mark.asyncio
async def test_http_backend_rejects_malformed_payloads() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/complexity":
            return httpx.Response(200, json={"level": "enormous", "score": 2})
        return httpx.Response(200, json={"steps": []})

    backend = HttpBackend(base_url="http://gen.test", transport=httpx.MockTransport(handler))
    request = ComplexityRequest(
        agent="reviewer",  # type: ignore[arg-type]
        step_id="s1",
        step_title="Checkout",
        content="Take payments",
        project_description="Shop",
        task_objective="Pay",
        threshold=0.7,
    )
    try:
        with pytest.raises(UpstreamUnavailable, match="Malformed"):
            await backend.assess_complexity(request)
        with pytest.raises(UpstreamUnavailable, match="no steps"):
            await backend.decompose_step(_decompose_request("Take payments"))
    finally:
        await backend.aclose()


# =============================================================================
# Circuit breaker
# =============================================================================


@pytest.mark.asyncio
async def test_circuit_breaker_opens_and_recovers() -> None:
    now = [0.0]
    inner = FlakyBackend()
    breaker = CircuitBreakerBackend(
        inner,  # type: ignore[arg-type]
        failure_threshold=2,
        success_threshold=1,
        recovery_seconds=10.0,
        clock=lambda: now[0],
    )

    for _ in range(2):
        with pytest.raises(RuntimeError):
            await breaker.draft_step(_draft_request())
    assert breaker.state == CircuitState.OPEN

    with pytest.raises(UpstreamUnavailable, match="open"):
        await breaker.draft_step(_draft_request())
    assert inner.calls == 2

    now[0] = 10.0
    inner.failing = False
    result = await breaker.draft_step(_draft_request())
    assert result.content == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.stats()["failure_count"] == 0


@pytest.mark.asyncio
async def test_half_open_failure_reopens() -> None:
    now = [0.0]
    breaker = CircuitBreakerBackend(
        FlakyBackend(),  # type: ignore[arg-type]
        failure_threshold=1,
        recovery_seconds=5.0,
        clock=lambda: now[0],
    )
    with pytest.raises(RuntimeError):
        await breaker.draft_step(_draft_request())

    now[0] = 6.0
    with pytest.raises(RuntimeError):
        await breaker.draft_step(_draft_request())
    assert breaker.state == CircuitState.OPEN

    breaker.reset()
    assert breaker.stats()["state"] == "closed"


def test_build_backend_selects_implementation() -> None:
    heuristic = build_backend(Settings(generation_backend="heuristic"))
    assert isinstance(heuristic, CircuitBreakerBackend)
    assert isinstance(heuristic.inner, HeuristicBackend)

    with pytest.raises(ValueError):
        build_backend(Settings(generation_backend="oracle"))
