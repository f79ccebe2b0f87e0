"""
Change events for the decomposition engine.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from .config import settings

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    ENTITY_CREATED = "entity.created"
    ENTITY_UPDATED = "entity.updated"
    ENTITY_DELETED = "entity.deleted"

    PROGRESS_UPDATED = "progress.updated"

    STEP_TRANSITIONED = "step.transitioned"
    STEP_ANALYZED = "step.analyzed"
    STEP_PROMOTED = "step.promoted"

    DISPUTE_CREATED = "dispute.created"
    DISPUTE_RESOLVED = "dispute.resolved"

    OPTIMIZATION_COMPLETED = "optimization.completed"


@dataclass
class EngineEvent:
    """Standardized change event emitted after a successful commit."""

    id: UUID = field(default_factory=uuid4)
    type: EventType = EventType.ENTITY_UPDATED
    entity_kind: str = ""
    entity_id: str = ""
    project_id: str | None = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "entity_kind": self.entity_kind,
            "entity_id": self.entity_id,
            "project_id": self.project_id,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[EngineEvent], Awaitable[None] | None]


class EventEmitter:
    """Emits events to registered handlers."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def emit(self, event: EngineEvent) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception:
                logger.exception("Event handler failed for %s", event.type.value)


event_bus = EventEmitter()


async def publish_event_handler(event: EngineEvent) -> None:
    """Handler that publishes events to Redis Pub/Sub."""
    if not settings.redis_publish_enabled or not event.project_id:
        return

    from .redis_client import get_redis_client

    redis = get_redis_client()
    channel = f"channel:project:{event.project_id}"
    await redis.publish(channel, json.dumps(event.to_dict()))


event_bus.on_event(publish_event_handler)
