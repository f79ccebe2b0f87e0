"""
Step complexity: independent agent assessments and their reconciliation.

Reconciliation is a two-phase vote. Each agent scores the step on its own
(``ComplexityAssessment``); ``ReconciliationPolicy.reconcile`` then combines
the two opinions into a single ``ReconciledComplexity``. The policy object is
swappable so weighting and thresholds can be tuned and tested in isolation.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class ComplexityLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    @classmethod
    def from_score(cls, score: float) -> ComplexityLevel:
        if score >= 0.7:
            return cls.HIGH
        if score >= 0.4:
            return cls.MEDIUM
        return cls.LOW


_LEVEL_RANK = {ComplexityLevel.LOW: 0, ComplexityLevel.MEDIUM: 1, ComplexityLevel.HIGH: 2}


class Agent(str, Enum):
    PRODUCER = "producer"
    REVIEWER = "reviewer"


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


@dataclass
class ComplexityAssessment:
    """One agent's independent opinion on a step."""

    agent: Agent
    level: ComplexityLevel
    score: float
    should_promote: bool
    confidence: float
    reasoning: str = ""
    suggested_steps: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.agent = Agent(self.agent)
        self.level = ComplexityLevel(self.level)
        self.score = _clamp(self.score)
        self.confidence = _clamp(self.confidence)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["agent"] = self.agent.value
        data["level"] = self.level.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ComplexityAssessment:
        return cls(
            agent=Agent(data["agent"]),
            level=ComplexityLevel(data["level"]),
            score=float(data["score"]),
            should_promote=bool(data["should_promote"]),
            confidence=float(data.get("confidence", 0.5)),
            reasoning=str(data.get("reasoning") or ""),
            suggested_steps=[str(s) for s in data.get("suggested_steps") or []],
        )


@dataclass
class ReconciledComplexity:
    """Outcome of reconciling the producer and reviewer assessments."""

    level: ComplexityLevel
    score: float
    should_promote: bool
    confidence: float
    method: str  # 'unanimous', 'close_agreement', 'weighted'

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level.value,
            "score": round(self.score, 4),
            "should_promote": self.should_promote,
            "confidence": round(self.confidence, 4),
            "method": self.method,
        }


@dataclass
class ReconciliationPolicy:
    """Rules for combining two complexity opinions."""

    close_score_delta: float = 0.2
    close_rank_delta: int = 1
    reviewer_confidence_weight: float = 1.1
    override_score: float = 0.8
    override_confidence: float = 0.8

    def reconcile(
        self,
        producer: ComplexityAssessment,
        reviewer: ComplexityAssessment,
        threshold: float,
    ) -> ReconciledComplexity:
        if producer.level == reviewer.level and producer.should_promote == reviewer.should_promote:
            average = (producer.score + reviewer.score) / 2
            return ReconciledComplexity(
                level=producer.level,
                score=average,
                should_promote=producer.should_promote,
                confidence=average,
                method="unanimous",
            )

        rank_delta = abs(producer.level.rank - reviewer.level.rank)
        score_delta = abs(producer.score - reviewer.score)
        if rank_delta <= self.close_rank_delta and score_delta <= self.close_score_delta + 1e-9:
            average = (producer.score + reviewer.score) / 2
            return ReconciledComplexity(
                level=ComplexityLevel.from_score(average),
                score=average,
                should_promote=average >= threshold,
                confidence=(producer.confidence + reviewer.confidence) / 2,
                method="close_agreement",
            )

        producer_weight = producer.confidence
        reviewer_weight = reviewer.confidence * self.reviewer_confidence_weight
        total_weight = producer_weight + reviewer_weight
        if total_weight > 0:
            weighted = (producer.score * producer_weight + reviewer.score * reviewer_weight) / total_weight
        else:
            weighted = (producer.score + reviewer.score) / 2
        weighted = _clamp(weighted)

        promote = (producer.should_promote and reviewer.should_promote) or (
            weighted > self.override_score
            and max(producer.confidence, reviewer.confidence) > self.override_confidence
        )
        return ReconciledComplexity(
            level=ComplexityLevel.from_score(weighted),
            score=weighted,
            should_promote=promote,
            confidence=min(producer.confidence, reviewer.confidence),
            method="weighted",
        )


DEFAULT_POLICY = ReconciliationPolicy()


class HeuristicComplexityScorer:
    """Scores step content from keywords, scope markers and enumerated work.

    Offline stand-in for an agent's opinion; deterministic for a given input.
    """

    SIMPLE_KEYWORDS = {
        "typo",
        "rename",
        "comment",
        "readme",
        "docs",
        "bump version",
        "update version",
        "cleanup",
        "log message",
        "config value",
    }

    COMPLEX_KEYWORDS = {
        "architecture",
        "refactor",
        "security",
        "authentication",
        "authorization",
        "migration",
        "database schema",
        "performance",
        "scalability",
        "distributed",
        "concurrency",
        "integrate",
        "redesign",
        "breaking change",
    }

    MULTI_SCOPE_PATTERNS = [
        r"across (?:all|the|multiple)",
        r"throughout",
        r"every (?:module|service|component)",
        r"end[- ]to[- ]end",
        r"multiple (?:services|components|systems)",
    ]

    ITEM_PATTERN = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+\S", re.MULTILINE)

    def __init__(self, context_weight: float = 0.0) -> None:
        self._context_weight = context_weight

    def assess(
        self,
        agent: Agent,
        title: str,
        content: str,
        *,
        threshold: float,
        context: str = "",
    ) -> ComplexityAssessment:
        text = f"{title}\n{content}".lower()
        keyword_score = self._keyword_analysis(text)
        scope_score = self._scope_analysis(text)
        volume_score = self._volume_analysis(content)
        context_score = self._keyword_analysis(context.lower()) if context else 0.5

        base = 0.35 * keyword_score + 0.25 * scope_score + 0.4 * volume_score
        score = _clamp((1 - self._context_weight) * base + self._context_weight * context_score)
        spread = max(keyword_score, scope_score, volume_score) - min(
            keyword_score, scope_score, volume_score
        )
        confidence = _clamp(1 - spread / 1.5)
        items = self.extract_items(content)

        reasons: list[str] = []
        if keyword_score > 0.7:
            reasons.append("complex_keywords")
        if keyword_score < 0.3:
            reasons.append("simple_keywords")
        if scope_score > 0.7:
            reasons.append("multi_scope")
        if len(items) >= 3:
            reasons.append(f"{len(items)}_enumerated_items")

        return ComplexityAssessment(
            agent=agent,
            level=ComplexityLevel.from_score(score),
            score=score,
            should_promote=score >= threshold,
            confidence=confidence,
            reasoning=", ".join(reasons) or "no strong signals",
            suggested_steps=items,
        )

    def _keyword_analysis(self, text: str) -> float:
        simple_count = sum(1 for kw in self.SIMPLE_KEYWORDS if kw in text)
        complex_count = sum(1 for kw in self.COMPLEX_KEYWORDS if kw in text)
        if simple_count > 0 and complex_count == 0:
            return 0.1
        if complex_count > 1 and simple_count == 0:
            return 1.0
        if complex_count > 0 and simple_count == 0:
            return 0.8
        if complex_count > simple_count:
            return 0.7
        if simple_count > complex_count:
            return 0.3
        return 0.5

    def _scope_analysis(self, text: str) -> float:
        matches = sum(1 for pattern in self.MULTI_SCOPE_PATTERNS if re.search(pattern, text))
        if matches > 1:
            return 1.0
        if matches == 1:
            return 0.8
        return 0.3

    def _volume_analysis(self, content: str) -> float:
        items = len(self.extract_items(content))
        words = len(content.split())
        item_score = min(1.0, items / 6)
        word_score = min(1.0, words / 250)
        return max(item_score, word_score)

    @classmethod
    def extract_items(cls, content: str) -> list[str]:
        """Enumerated lines (bullets or numbers) of the content, cleaned of their markers."""
        items: list[str] = []
        for line in content.splitlines():
            if cls.ITEM_PATTERN.match(line):
                cleaned = re.sub(r"^\s*(?:[-*•]|\d+[.)])\s+", "", line).strip()
                if cleaned:
                    items.append(cleaned)
        return items
