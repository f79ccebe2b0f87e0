"""Error types and helpers for the decomposition engine."""

from __future__ import annotations

import re
from typing import Any

import click


class EngineError(click.ClickException):
    """Base error carrying a machine-readable kind plus a human message."""

    kind = "EngineError"
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class ValidationError(EngineError):
    """Malformed input or a badly formatted reference."""

    kind = "ValidationError"


class NotFoundError(EngineError):
    """Unknown entity id."""

    kind = "NotFound"

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            f"{entity} not found: {entity_id}",
            details={"entity": entity, "id": entity_id},
        )


class StructuralViolation(EngineError):
    """Hierarchy invariant breach: cycle, cross-project link, self-reference."""

    kind = "StructuralViolation"


class ChainCycleError(StructuralViolation):
    """A prev/next chain loops back on itself."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(
            f"Navigation chain cycle detected: {' -> '.join(cycle)}",
            details={"cycle": cycle},
        )
        self.cycle = cycle


class InvalidTransition(EngineError):
    """Illegal state-machine move."""

    kind = "InvalidTransition"

    def __init__(self, step_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Step {step_id} cannot move from {current} to {target}",
            details={"step_id": step_id, "from": current, "to": target},
        )


class IterationLimitExceeded(EngineError):
    """Revision budget exhausted; reported through the dispute it creates."""

    kind = "IterationLimitExceeded"


class ConflictError(EngineError):
    """Optimistic-concurrency collision or duplicate pending record."""

    kind = "ConflictError"
    retryable = True


class UpstreamUnavailable(EngineError):
    """The generation capability failed or timed out. State is unchanged."""

    kind = "UpstreamUnavailable"
    retryable = True


class SchemaNotInitializedError(EngineError):
    """Raised when the database schema/migrations have not been applied."""

    kind = "SchemaNotInitialized"


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        match = _PG_MISSING_RELATION_RE.search(str(e)) or _SQLITE_MISSING_TABLE_RE.search(str(e))
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table / missing-schema error."""
    if missing_table_name(exc):
        return True
    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""
    lines: list[str] = [
        f"Database schema is not initialized{table_hint}.",
        "Run: `alembic upgrade head` or `decompose init-db`",
        "Or validate with: `decompose schema-check`",
    ]
    return "\n".join(lines)
