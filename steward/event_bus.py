import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field


class HarnessEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    run_id: str
    payload: Dict[str, Any]


class EventBus:
    """A lightweight, synchronous event bus for attempt observability."""

    def __init__(self):
        self._subscribers: List[Callable[[HarnessEvent], None]] = []

    def subscribe(self, callback: Callable[[HarnessEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def emit(self, event_type: str, run_id: str, payload: Dict[str, Any]) -> HarnessEvent:
        """Construct and broadcast a HarnessEvent to all subscribers."""
        event = HarnessEvent(event_type=event_type, run_id=run_id, payload=payload)

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception:
                # A broken observer must not abort the attempt it is watching.
                logger.exception(f"[EVENT] Subscriber failed on {event_type}")

        return event
