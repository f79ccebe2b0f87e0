"""Polymorphic Task/Step references and their storage/wire format."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from sqlalchemy import String
from sqlalchemy.types import TypeDecorator

from .errors import ValidationError

_REF_RE = re.compile(r"^(?P<kind>task|step):(?P<id>[^\s:]+)$")


class NodeKind(StrEnum):
    TASK = "task"
    STEP = "step"


@dataclass(frozen=True, order=True)
class NodeRef:
    """Tagged identifier pointing at either a Task or a Step."""

    kind: NodeKind
    id: str

    @classmethod
    def task(cls, task_id: str) -> NodeRef:
        return cls(NodeKind.TASK, task_id)

    @classmethod
    def step(cls, step_id: str) -> NodeRef:
        return cls(NodeKind.STEP, step_id)

    @classmethod
    def parse(cls, value: str) -> NodeRef:
        """Parse ``"task:<id>"`` / ``"step:<id>"``; anything else is a format error."""
        if not isinstance(value, str):
            raise ValidationError(f"Reference must be a string, got {type(value).__name__}")
        match = _REF_RE.match(value)
        if not match:
            raise ValidationError(
                f"Invalid reference {value!r}: expected 'task:<id>' or 'step:<id>'",
                details={"value": value},
            )
        return cls(NodeKind(match.group("kind")), match.group("id"))

    def format(self) -> str:
        return f"{self.kind.value}:{self.id}"

    def __str__(self) -> str:
        return self.format()


def coerce_ref(value: NodeRef | str | None) -> NodeRef | None:
    """Accept a NodeRef, its wire string, or None."""
    if value is None or isinstance(value, NodeRef):
        return value
    return NodeRef.parse(value)


class NodeRefType(TypeDecorator):
    """Stores a NodeRef as its tagged string."""

    impl = String(80)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> str | None:
        ref = coerce_ref(value)
        return ref.format() if ref else None

    def process_result_value(self, value: Any, dialect: Any) -> NodeRef | None:
        if value is None:
            return None
        return NodeRef.parse(value)
