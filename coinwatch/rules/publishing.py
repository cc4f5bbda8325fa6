"""
Append-then-deliver step shared by the evaluators.
"""

import logging
import uuid

from coinwatch.database.base import EventLog
from coinwatch.database.models import AlertEvent, AlertStatus
from coinwatch.notifiers.router import NotificationRouter

logger = logging.getLogger(__name__)


def new_event_id() -> str:
    return f"ae_{uuid.uuid4().hex}"


def publish(event: AlertEvent, events: EventLog, router: NotificationRouter) -> AlertEvent:
    """
    Persist an event, dispatch it and record the outcome.

    The event is appended before any delivery so a transport failure still
    leaves a TRIGGERED record behind.
    """
    events.append(event)
    delivered = router.dispatch(event.user_id, event)
    status = AlertStatus.DELIVERED if delivered else AlertStatus.TRIGGERED
    logger.info(
        f"Fired {event.type.value} {event.symbol} for {event.user_id} "
        f"via {', '.join(delivered) or 'no channel'}"
    )
    return events.record_delivery(event.id, delivered, status)
