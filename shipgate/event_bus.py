import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field


class ShipgateEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    task_id: str
    payload: Dict[str, Any]


class EventBus:
    """A lightweight, synchronous event bus for decoupling SHIPGATE observability."""

    def __init__(self):
        self._subscribers: List[Callable[[ShipgateEvent], None]] = []

    def subscribe(self, callback: Callable[[ShipgateEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def emit(self, event_type: str, task_id: str, payload: Dict[str, Any]) -> ShipgateEvent:
        """Construct and broadcast a ShipgateEvent to all subscribers."""
        event = ShipgateEvent(
            event_type=event_type,
            task_id=task_id,
            payload=payload,
        )

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                # A failing subscriber (console, file sink) must not stop the pipeline.
                logger.warning(f"[EVENTS] Subscriber {subscriber!r} failed on {event_type}: {e}")

        return event
