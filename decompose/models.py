"""SQLAlchemy models for the decomposition engine database."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .refs import NodeKind, NodeRef, NodeRefType


def _uuid() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


class StepStatus(StrEnum):
    PENDING = "pending"
    PRODUCER_DRAFT = "producer_draft"
    REVIEWER_REVIEW = "reviewer_review"
    AGREED = "agreed"
    DISPUTED = "disputed"
    USER_RESOLUTION = "user_resolution"


class DisputeStatus(StrEnum):
    PENDING = "pending"
    RESOLVED = "resolved"


class ResolutionKind(StrEnum):
    USE_PRODUCER = "use_producer"
    USE_REVIEWER = "use_reviewer"
    CUSTOM = "custom"
    HYBRID = "hybrid"


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSON,
        list[Any]: JSON,
        NodeRef: NodeRefType,
    }


# =============================================================================
# HIERARCHY TABLES
# =============================================================================


class Project(Base):
    """Top of the hierarchy; owns root tasks and disputes."""

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    progress: Mapped[float] = mapped_column(Float, default=0.0)
    complexity_threshold: Mapped[float] = mapped_column(Float, default=0.7)
    max_iterations: Mapped[int] = mapped_column(Integer, default=3)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __mapper_args__ = {"version_id_col": version}


class Task(Base):
    """A unit of work; nests arbitrarily and owns steps."""

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE"), index=True
    )
    parent_task_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("tasks.id", ondelete="CASCADE"), nullable=True, index=True
    )
    title: Mapped[str] = mapped_column(String, nullable=False)
    objective: Mapped[str] = mapped_column(Text, default="")
    progress: Mapped[float] = mapped_column(Float, default=0.0)
    position: Mapped[int] = mapped_column(Integer, default=0)
    prev_ref: Mapped[NodeRef | None] = mapped_column(NodeRefType, nullable=True)
    next_ref: Mapped[NodeRef | None] = mapped_column(NodeRefType, nullable=True)
    created_by: Mapped[str] = mapped_column(String, default="operator")
    promoted_from_step_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def ref(self) -> NodeRef:
        return NodeRef(NodeKind.TASK, self.id)


class Step(Base):
    """Leaf work item refined by the producer/reviewer protocol."""

    __tablename__ = "steps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    task_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tasks.id", ondelete="CASCADE"), index=True
    )
    title: Mapped[str] = mapped_column(String, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)
    prev_ref: Mapped[NodeRef | None] = mapped_column(NodeRefType, nullable=True)
    next_ref: Mapped[NodeRef | None] = mapped_column(NodeRefType, nullable=True)
    progress: Mapped[float] = mapped_column(Float, default=0.0)

    # Collaboration
    status: Mapped[str] = mapped_column(String, default=StepStatus.PENDING.value)
    producer_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    producer_reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    producer_ready: Mapped[bool] = mapped_column(Boolean, default=False)
    focus_hint: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewer_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewer_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    final_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    iteration_count: Mapped[int] = mapped_column(Integer, default=0)
    iteration_history: Mapped[list[Any]] = mapped_column(JSON, default=list)

    # Complexity
    producer_complexity: Mapped[str | None] = mapped_column(String, nullable=True)
    reviewer_complexity: Mapped[str | None] = mapped_column(String, nullable=True)
    complexity_level: Mapped[str | None] = mapped_column(String, nullable=True)
    complexity_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    complexity_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    should_promote: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    complexity_details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    analyzed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def ref(self) -> NodeRef:
        return NodeRef(NodeKind.STEP, self.id)

    @property
    def current_content(self) -> str | None:
        """Best available content: final, else reviewer-refined, else producer draft."""
        for candidate in (self.final_content, self.reviewer_content, self.producer_content):
            if candidate and candidate.strip():
                return candidate
        return None


class Dispute(Base):
    """Irreconcilable producer/reviewer disagreement awaiting a human."""

    __tablename__ = "disputes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE"), index=True
    )
    step_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("steps.id", ondelete="CASCADE"), index=True
    )
    producer_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    producer_reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewer_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewer_reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    iteration_history: Mapped[list[Any]] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String, default=DisputeStatus.PENDING.value)
    resolution: Mapped[str | None] = mapped_column(String, nullable=True)
    resolved_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index(
            "uq_disputes_pending_step",
            "step_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )


# =============================================================================
# AUDIT
# =============================================================================


class AuditLog(Base):
    """Audit trail of every mutation; survives entity deletes."""

    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    entity_kind: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
