# control-plane/core/events.py
"""
Event Bus - Internal Pub/Sub for fleet operations

Publishers (registry, deployment, credentials, sampler) emit domain events
without knowing who consumes them. Handlers provide the audit trail and
operator-facing warnings.
"""

import logging
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from database.models import utcnow

logger = logging.getLogger(__name__)


class EventPriority(Enum):
    """Event handler priority levels"""
    HIGH = 1      # Audit
    NORMAL = 5    # Operator notifications
    LOW = 10      # Analytics


@dataclass
class Event:
    """Base event class"""
    event_type: str
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    source: Optional[str] = None
    operator: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
            "operator": self.operator,
        }


@dataclass
class HandlerRegistration:
    """Registration info for an event handler"""
    handler: Callable[[Event], None]
    priority: EventPriority


class EventBus:
    """
    In-process synchronous event bus

    Handlers run in priority order. A failing handler is logged and does not
    stop the others or the publisher.
    """

    def __init__(self, max_history_size: int = 1000):
        self._handlers: Dict[str, List[HandlerRegistration]] = {}
        self._event_history: List[Event] = []
        self._max_history_size = max_history_size

    def subscribe(
        self,
        event_type: str,
        handler: Callable[[Event], None],
        priority: EventPriority = EventPriority.NORMAL,
    ) -> None:
        registrations = self._handlers.setdefault(event_type, [])
        if any(r.handler is handler for r in registrations):
            return

        registrations.append(HandlerRegistration(handler=handler, priority=priority))
        # Lower number = higher priority
        registrations.sort(key=lambda r: r.priority.value)

        logger.debug(f"Subscribed {handler.__name__} to {event_type} with priority {priority.name}")

    def publish(self, event: Event) -> None:
        self._add_to_history(event)
        handlers = self._handlers.get(event.event_type, [])

        if not handlers:
            logger.debug(f"No handlers for event: {event.event_type}")
            return

        for registration in handlers:
            try:
                registration.handler(event)
            except Exception as e:
                logger.error(
                    f"Handler {registration.handler.__name__} failed for {event.event_type}: {e}\n"
                    f"{traceback.format_exc()}"
                )

    def _add_to_history(self, event: Event) -> None:
        self._event_history.append(event)
        if len(self._event_history) > self._max_history_size:
            self._event_history = self._event_history[-self._max_history_size:]

    def get_history(self, event_type: Optional[str] = None, limit: int = 100) -> List[Event]:
        """Get recent events, optionally filtered by type"""
        history = self._event_history
        if event_type:
            history = [e for e in history if e.event_type == event_type]
        return history[-limit:]

    def get_subscriptions(self) -> Dict[str, int]:
        """Get count of handlers per event type"""
        return {event_type: len(handlers) for event_type, handlers in self._handlers.items()}

    def clear(self) -> None:
        """Clear all subscriptions and history (for testing)"""
        self._handlers.clear()
        self._event_history.clear()


event_bus = EventBus()


def publish(
    event_type: str,
    payload: Dict[str, Any],
    source: Optional[str] = None,
    operator: Optional[str] = None,
) -> Event:
    """
    Create and publish an event on the shared bus

    Usage:
        publish(EventTypes.GATEWAY_REGISTERED, {"gateway_id": 1}, source="registry")
    """
    event = Event(event_type=event_type, payload=payload, source=source, operator=operator)
    event_bus.publish(event)
    return event
