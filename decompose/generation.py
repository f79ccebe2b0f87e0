"""Boundary to the content/complexity generation capability.

The engine only depends on ``GenerationBackend``. Backends are slow and
fallible; every call goes through ``call_backend`` which bounds it with a
timeout and turns any failure into ``UpstreamUnavailable``.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Protocol, TypeVar

import httpx

from .complexity import Agent, ComplexityAssessment, HeuristicComplexityScorer
from .config import Settings, settings
from .errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class DraftRequest:
    step_id: str
    step_title: str
    project_description: str
    task_objective: str
    sibling_titles: list[str] = field(default_factory=list)
    focus_hint: str | None = None
    previous_content: str | None = None
    reviewer_feedback: str | None = None
    iteration: int = 0


@dataclass
class DraftResult:
    content: str
    reasoning: str = ""
    ready: bool = True


@dataclass
class ReviewRequest:
    step_id: str
    step_title: str
    project_description: str
    task_objective: str
    producer_content: str
    producer_reasoning: str | None = None
    iteration: int = 0
    max_iterations: int = 3


@dataclass
class ReviewResult:
    approve: bool
    final_content: str | None = None
    feedback: str | None = None


@dataclass
class ComplexityRequest:
    agent: Agent
    step_id: str
    step_title: str
    content: str
    project_description: str
    task_objective: str
    threshold: float


@dataclass
class DecomposeRequest:
    step_id: str
    step_title: str
    content: str
    project_description: str
    max_steps: int = 8


class GenerationBackend(Protocol):
    async def draft_step(self, request: DraftRequest) -> DraftResult: ...

    async def review_step(self, request: ReviewRequest) -> ReviewResult: ...

    async def assess_complexity(self, request: ComplexityRequest) -> ComplexityAssessment: ...

    async def decompose_step(self, request: DecomposeRequest) -> list[str]: ...


async def call_backend(
    operation: str,
    call: Callable[[], Awaitable[T]],
    *,
    timeout: float | None = None,
) -> T:
    """Run one backend call under a timeout; failures become ``UpstreamUnavailable``."""
    limit = settings.generation_timeout_seconds if timeout is None else timeout
    try:
        return await asyncio.wait_for(call(), timeout=limit)
    except TimeoutError as exc:
        raise UpstreamUnavailable(
            f"Generation call '{operation}' timed out after {limit}s",
            details={"operation": operation, "timeout": limit},
        ) from exc
    except UpstreamUnavailable:
        raise
    except Exception as exc:
        logger.warning("Generation call '%s' failed: %s", operation, exc)
        raise UpstreamUnavailable(
            f"Generation call '{operation}' failed: {exc}",
            details={"operation": operation},
        ) from exc


# =============================================================================
# Heuristic backend
# =============================================================================


class HeuristicBackend:
    """Deterministic offline backend built on the heuristic complexity scorer."""

    MIN_APPROVAL_WORDS = 8
    PLACEHOLDER_MARKERS = ("tbd", "todo", "fixme", "???")

    def __init__(self) -> None:
        self._producer_scorer = HeuristicComplexityScorer(context_weight=0.0)
        self._reviewer_scorer = HeuristicComplexityScorer(context_weight=0.15)

    async def draft_step(self, request: DraftRequest) -> DraftResult:
        lines = [f"{request.step_title}", "", f"Objective: {request.task_objective}"]
        if request.sibling_titles:
            lines.append(f"Follows: {', '.join(request.sibling_titles)}")
        if request.focus_hint:
            lines.append(f"Focus: {request.focus_hint}")
        if request.previous_content:
            lines.extend(["", request.previous_content])
        if request.reviewer_feedback:
            lines.append(f"Addresses review feedback: {request.reviewer_feedback}")
        reasoning = (
            f"Drafted from the task objective (iteration {request.iteration})"
            + (f" with focus on {request.focus_hint}" if request.focus_hint else "")
        )
        return DraftResult(content="\n".join(lines).strip(), reasoning=reasoning, ready=True)

    async def review_step(self, request: ReviewRequest) -> ReviewResult:
        content = request.producer_content.strip()
        lowered = content.lower()
        if len(content.split()) < self.MIN_APPROVAL_WORDS:
            return ReviewResult(
                approve=False,
                feedback=f"Draft is too thin; describe the work in at least {self.MIN_APPROVAL_WORDS} words.",
            )
        markers = [m for m in self.PLACEHOLDER_MARKERS if m in lowered]
        if markers:
            return ReviewResult(
                approve=False, feedback=f"Resolve placeholders before approval: {', '.join(markers)}"
            )
        return ReviewResult(approve=True, final_content=content)

    async def assess_complexity(self, request: ComplexityRequest) -> ComplexityAssessment:
        agent = Agent(request.agent)
        if agent == Agent.REVIEWER:
            return self._reviewer_scorer.assess(
                agent,
                request.step_title,
                request.content,
                threshold=request.threshold,
                context=request.project_description,
            )
        return self._producer_scorer.assess(
            agent, request.step_title, request.content, threshold=request.threshold
        )

    async def decompose_step(self, request: DecomposeRequest) -> list[str]:
        items = HeuristicComplexityScorer.extract_items(request.content)
        if len(items) < 2:
            sentences = [
                s.strip() for s in re.split(r"(?<=[.!?])\s+|\n+", request.content) if len(s.strip()) > 3
            ]
            items = sentences if len(sentences) >= 2 else []
        if len(items) < 2:
            items = [
                f"Plan {request.step_title}",
                f"Implement {request.step_title}",
                f"Verify {request.step_title}",
            ]
        return [_title_from_text(item) for item in items[: request.max_steps]]


def _title_from_text(text: str, limit: int = 120) -> str:
    cleaned = " ".join(text.split()).rstrip(".")
    return cleaned if len(cleaned) <= limit else cleaned[: limit - 3].rstrip() + "..."


# =============================================================================
# HTTP backend
# =============================================================================


class HttpBackend:
    """Async JSON client for a remote generation service."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url, timeout=httpx.Timeout(timeout_seconds), transport=transport
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self._client.post(path, json=body)
            resp.raise_for_status()
        except httpx.RequestError as e:
            raise UpstreamUnavailable(f"Generation request failed (POST {path}): {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise UpstreamUnavailable(
                f"Generation API error {status} (POST {path}): {e.response.text}",
                details={"status": status},
            ) from e
        data = resp.json()
        if not isinstance(data, dict):
            raise UpstreamUnavailable(f"Generation API returned non-object JSON for {path}")
        return data

    async def draft_step(self, request: DraftRequest) -> DraftResult:
        data = await self._request("/v1/draft", asdict(request))
        return DraftResult(
            content=str(data.get("content") or ""),
            reasoning=str(data.get("reasoning") or ""),
            ready=bool(data.get("ready", True)),
        )

    async def review_step(self, request: ReviewRequest) -> ReviewResult:
        data = await self._request("/v1/review", asdict(request))
        return ReviewResult(
            approve=bool(data.get("approve")),
            final_content=data.get("final_content"),
            feedback=data.get("feedback"),
        )

    async def assess_complexity(self, request: ComplexityRequest) -> ComplexityAssessment:
        body = asdict(request)
        body["agent"] = Agent(request.agent).value
        data = await self._request("/v1/complexity", body)
        data.setdefault("agent", body["agent"])
        try:
            return ComplexityAssessment.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            raise UpstreamUnavailable(f"Malformed complexity assessment: {e}") from e

    async def decompose_step(self, request: DecomposeRequest) -> list[str]:
        data = await self._request("/v1/decompose", asdict(request))
        steps = data.get("steps")
        if not isinstance(steps, list) or not steps:
            raise UpstreamUnavailable("Generation API returned no steps for decomposition")
        return [_title_from_text(str(s)) for s in steps if str(s).strip()]


# =============================================================================
# Circuit breaker
# =============================================================================


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerBackend:
    """Stops calling a failing backend until a recovery window has passed."""

    def __init__(
        self,
        inner: GenerationBackend,
        *,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        recovery_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.inner = inner
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.recovery_seconds = recovery_seconds
        self._clock = clock
        self.state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at = 0.0

    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self._failures,
            "success_count": self._successes,
            "failure_threshold": self.failure_threshold,
            "success_threshold": self.success_threshold,
            "recovery_seconds": self.recovery_seconds,
        }

    def reset(self) -> None:
        logger.info("Circuit breaker manually reset from %s", self.state.value)
        self.state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0

    def _before_call(self, operation: str) -> None:
        if self.state == CircuitState.OPEN:
            if self._clock() - self._opened_at < self.recovery_seconds:
                raise UpstreamUnavailable(
                    f"Circuit breaker is open; '{operation}' rejected",
                    details={"operation": operation, "circuit_state": self.state.value},
                )
            self.state = CircuitState.HALF_OPEN
            self._successes = 0
            logger.info("Circuit breaker transitioning to half-open state")

    def _on_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.success_threshold:
                self.state = CircuitState.CLOSED
                self._failures = 0
                logger.info("Circuit breaker closed after successful recovery")
        else:
            self._failures = 0

    def _on_failure(self) -> None:
        self._failures += 1
        if self.state == CircuitState.HALF_OPEN or (
            self.state == CircuitState.CLOSED and self._failures >= self.failure_threshold
        ):
            self.state = CircuitState.OPEN
            self._opened_at = self._clock()
            logger.warning("Circuit breaker opened after %d failure(s)", self._failures)

    async def _guarded(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        self._before_call(operation)
        try:
            result = await call()
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    async def draft_step(self, request: DraftRequest) -> DraftResult:
        return await self._guarded("draft_step", lambda: self.inner.draft_step(request))

    async def review_step(self, request: ReviewRequest) -> ReviewResult:
        return await self._guarded("review_step", lambda: self.inner.review_step(request))

    async def assess_complexity(self, request: ComplexityRequest) -> ComplexityAssessment:
        return await self._guarded(
            "assess_complexity", lambda: self.inner.assess_complexity(request)
        )

    async def decompose_step(self, request: DecomposeRequest) -> list[str]:
        return await self._guarded("decompose_step", lambda: self.inner.decompose_step(request))


def build_backend(config: Settings | None = None) -> GenerationBackend:
    """Create the configured backend wrapped in a circuit breaker."""
    config = config or settings
    inner: GenerationBackend
    if config.generation_backend == "http":
        inner = HttpBackend(
            base_url=config.generation_api_url, timeout_seconds=config.generation_timeout_seconds
        )
    elif config.generation_backend == "heuristic":
        inner = HeuristicBackend()
    else:
        raise ValueError(f"Unknown generation backend: {config.generation_backend}")
    return CircuitBreakerBackend(
        inner,
        failure_threshold=config.circuit_breaker_failure_threshold,
        success_threshold=config.circuit_breaker_success_threshold,
        recovery_seconds=config.circuit_breaker_recovery_seconds,
    )
