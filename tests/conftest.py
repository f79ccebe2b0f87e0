"""Shared test fixtures and configuration for pytest."""

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path

import pytest
import pytest_asyncio

from decompose import db
from decompose.collaboration import ReviewerDecision
from decompose.complexity import Agent, ComplexityAssessment, ComplexityLevel
from decompose.generation import (
    ComplexityRequest,
    DecomposeRequest,
    DraftRequest,
    DraftResult,
    ReviewRequest,
    ReviewResult,
)
from decompose.locks import EntityLocks
from decompose.models import Step
from decompose.service import DecompositionService


class FakeBackend:
    """Scripted generation backend.

    Complexity scores are looked up by step title as (producer, reviewer).
    """

    def __init__(self) -> None:
        self.scores: dict[str, tuple[float, float]] = {}
        self.confidence = 0.9
        self.decompositions: dict[str, list[str]] = {}
        self.reviews: list[ReviewResult] = []
        self.fail_with: Exception | None = None
        self.delay = 0.0
        self.on_call: Callable[[], Awaitable[None]] | None = None
        self.calls: list[str] = []

    async def _enter(self, name: str) -> None:
        self.calls.append(name)
        if self.on_call is not None:
            await self.on_call()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with

    async def draft_step(self, request: DraftRequest) -> DraftResult:
        await self._enter("draft_step")
        hint = f" focusing on {request.focus_hint}" if request.focus_hint else ""
        return DraftResult(
            content=f"Draft for {request.step_title}{hint}", reasoning="scripted draft"
        )

    async def review_step(self, request: ReviewRequest) -> ReviewResult:
        await self._enter("review_step")
        if self.reviews:
            return self.reviews.pop(0)
        return ReviewResult(approve=True)

    async def assess_complexity(self, request: ComplexityRequest) -> ComplexityAssessment:
        await self._enter(f"assess_complexity:{request.agent.value}")
        producer, reviewer = self.scores.get(request.step_title, (0.2, 0.2))
        score = producer if request.agent == Agent.PRODUCER else reviewer
        return ComplexityAssessment(
            agent=request.agent,
            level=ComplexityLevel.from_score(score),
            score=score,
            should_promote=score >= request.threshold,
            confidence=self.confidence,
            reasoning="scripted",
        )

    async def decompose_step(self, request: DecomposeRequest) -> list[str]:
        await self._enter("decompose_step")
        return self.decompositions.get(request.step_title, ["Part one", "Part two"])


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncGenerator[None]:
    """Fresh SQLite database per test."""
    db.configure_engine(f"sqlite+aiosqlite:///{tmp_path / 'decompose.db'}")
    await db.init_db()
    yield
    await db.dispose_engine()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest_asyncio.fixture
async def service(database: None, backend: FakeBackend) -> DecompositionService:
    return DecompositionService(backend, locks=EntityLocks(use_redis=False))


@pytest.fixture
def agree(service: DecompositionService) -> Callable[..., Awaitable[Step]]:
    """Drive a step straight to agreed."""

    async def _agree(step_id: str, content: str = "Done content") -> Step:
        await service.submit_producer_content(step_id, content, "because")
        return await service.submit_reviewer_decision(step_id, ReviewerDecision(approve=True))

    return _agree
