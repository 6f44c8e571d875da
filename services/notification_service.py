"""
Notification Event Service
Emits named lifecycle events to the external notification subsystem.

Each event is first recorded in notification_events; the unique key
(event_name, entity_type, entity_id, transition_key) guarantees a given
transition notifies at most once even when jobs run twice.
"""

import logging
from typing import Dict, Any, Callable, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from models import NotificationEvent

logger = logging.getLogger(__name__)

NotificationSink = Callable[[str, Dict[str, Any]], None]


class NotificationEvents:
    """Event names consumed by the notification subsystem"""
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    SUBSCRIPTION_GRACE_PERIOD_STARTED = "subscription_grace_period_started"
    SUBSCRIPTION_RENEWAL_UPCOMING = "subscription_renewal_upcoming"


class NotificationService:
    """Persists and dispatches lifecycle notifications at most once"""

    def __init__(self):
        self._sinks: List[NotificationSink] = []

    def register_sink(self, sink: NotificationSink) -> None:
        self._sinks.append(sink)

    def clear_sinks(self) -> None:
        self._sinks = []

    def emit(
        self,
        session: Session,
        event_name: str,
        entity_type: str,
        entity_id: int,
        transition_key: str = "",
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Record and dispatch an event.

        Returns:
            bool: True if the event fired, False if this transition was already notified
        """
        payload = payload or {}
        try:
            with session.begin_nested():
                session.add(NotificationEvent(
                    event_name=event_name,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    transition_key=transition_key,
                    payload=payload,
                ))
        except IntegrityError:
            logger.info(
                f"🔁 NOTIFICATION_DEDUPED: {event_name} for {entity_type}={entity_id} "
                f"({transition_key or 'default'}) already sent"
            )
            return False

        logger.info(f"📣 NOTIFICATION: {event_name} for {entity_type}={entity_id}")
        message = {"entity_type": entity_type, "entity_id": entity_id, **payload}
        for sink in self._sinks:
            try:
                sink(event_name, message)
            except Exception as e:
                # Delivery is the collaborator's concern; the event stays recorded
                logger.error(f"❌ NOTIFICATION_SINK_ERROR: {event_name} via {sink!r}: {e}", exc_info=True)
        return True


# Global instance
notification_service = NotificationService()
