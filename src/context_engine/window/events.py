"""Context manager events and a minimal observer registry.

Handlers are synchronous callables invoked in registration order. A
handler that raises is logged and skipped; the operation that emitted
the event always completes.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from src.context_engine.window.schemas import CompressionRecord, ContextMessage, MemoryTier

logger = structlog.get_logger(__name__)


class ContextEventType(str, Enum):
    MESSAGE_ADDED = "message_added"
    MESSAGE_EVICTED = "message_evicted"
    COMPRESSION_STARTED = "compression_started"
    COMPRESSION_COMPLETED = "compression_completed"
    TIER_OVERFLOW = "tier_overflow"
    BUDGET_WARNING = "budget_warning"
    BUDGET_CRITICAL = "budget_critical"


class ContextEvent(BaseModel):
    type: ContextEventType
    timestamp: float = Field(default_factory=time.time)
    messages: list[ContextMessage] = Field(default_factory=list)
    tier: MemoryTier | None = None
    record: CompressionRecord | None = None
    overflow: int | None = None
    utilization: float | None = None


EventHandler = Callable[[ContextEvent], None]


class EventEmitter:
    """Ordered handler list with fault-isolated dispatch."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def on(self, handler: EventHandler) -> Callable[[], None]:
        """Register a handler; returns a callable that unregisters it."""
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    def emit(self, event: ContextEvent) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "context_event.handler_failed",
                    event_type=event.type.value,
                    handler=getattr(handler, "__name__", repr(handler)),
                )

    def __len__(self) -> int:
        return len(self._handlers)
