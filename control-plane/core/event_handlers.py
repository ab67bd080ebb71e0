# control-plane/core/event_handlers.py
"""
Event Handlers - React to domain events

Each handler has a single responsibility and never raises into the
publisher (the bus logs handler failures).
"""

import logging

from .domain_events import EventTypes
from .events import Event, EventPriority, event_bus

logger = logging.getLogger(__name__)


def audit_handler(event: Event) -> None:
    """
    Log every domain event for the audit trail

    Runs with HIGH priority so the audit line precedes any other reaction.
    """
    logger.info(
        f"[AUDIT] {event.event_type} | "
        f"id={event.event_id} | "
        f"operator={event.operator} | "
        f"source={event.source} | "
        f"payload={event.payload}"
    )


def on_deployment_failed(event: Event) -> None:
    payload = event.payload
    logger.error(
        f"Deployment of gateway {payload.get('name')} (id={payload.get('gateway_id')}) "
        f"failed at step {payload.get('step_index')} '{payload.get('step')}': {payload.get('output')}"
    )


def on_remote_sync_failed(event: Event) -> None:
    """Local state moved on while the host did not follow"""
    payload = event.payload
    logger.warning(
        f"Gateway {payload.get('gateway_id')} did not apply '{payload.get('action')}' "
        f"for credential {payload.get('credential_id')}: {payload.get('output')}"
    )


def on_counter_reset(event: Event) -> None:
    payload = event.payload
    logger.warning(
        f"Counter reset on credential {payload.get('credential_id')} ({payload.get('direction')}): "
        f"{payload.get('previous_bytes')} -> {payload.get('current_bytes')} bytes, rate recorded as 0"
    )


def register_event_handlers() -> None:
    """
    Register all event handlers with the event bus

    Call this during application or job startup. Safe to call twice.
    """
    logger.info("Registering event handlers...")

    for event_type in EventTypes.all():
        event_bus.subscribe(event_type, audit_handler, EventPriority.HIGH)

    event_bus.subscribe(EventTypes.GATEWAY_DEPLOYMENT_FAILED, on_deployment_failed, EventPriority.NORMAL)
    event_bus.subscribe(EventTypes.REMOTE_SYNC_FAILED, on_remote_sync_failed, EventPriority.NORMAL)
    event_bus.subscribe(EventTypes.COUNTER_RESET, on_counter_reset, EventPriority.NORMAL)

    logger.info(f"Registered handlers: {event_bus.get_subscriptions()}")
