"""
In-process Notification Bus

Synchronous pub/sub for owner notifications (deadline reached, reveal
pending, moderation outcome). Delivery is best-effort: a failing
subscriber is logged and counted, and never fails the transition that
triggered it.
"""

from collections import defaultdict, deque
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

from pydantic import BaseModel, Field

from tenderdesk.kernel.ids import generate_id
from tenderdesk.kernel.logging import get_logger
from tenderdesk.kernel.metrics import owner_notifications_total
from tenderdesk.kernel.time import TimeProvider, default_time_provider

if TYPE_CHECKING:
    from tenderdesk.tender.models import Tender

logger = get_logger(__name__)


REVEAL_PENDING = "REVEAL_PENDING"
DEADLINE_REACHED = "DEADLINE_REACHED"
TENDER_CLOSED = "TENDER_CLOSED"
TENDER_FLAGGED = "TENDER_FLAGGED"
TENDER_APPROVED = "TENDER_APPROVED"


class Notification(BaseModel):
    """A message addressed to one recipient about one tender"""

    notification_id: str = Field(default_factory=lambda: generate_id("ntf"))
    event_type: str
    recipient_id: str
    tender_id: str
    created_at: datetime
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


NotificationHandler = Callable[[Notification], None]


class NotificationBus:
    """
    Fan-out of notifications to subscribers

    Subscribers register per event type, or for every type with "*".
    They run in registration order on the publisher's thread.
    """

    def __init__(self, time_provider: TimeProvider | None = None) -> None:
        self._handlers: defaultdict[str, list[NotificationHandler]] = defaultdict(list)
        self._time = time_provider or default_time_provider

    def subscribe(self, event_type: str, handler: NotificationHandler) -> None:
        self._handlers[event_type].append(handler)
        logger.debug(
            "Notification handler registered",
            event_type=event_type,
            total_handlers=len(self._handlers[event_type]),
        )

    def publish(self, notification: Notification) -> int:
        """
        Deliver a notification to every matching subscriber

        Returns:
            Number of handlers that completed without raising
        """
        handlers = self._handlers.get(notification.event_type, []) + self._handlers.get("*", [])
        if not handlers:
            logger.debug(
                "No handlers registered for notification",
                event_type=notification.event_type,
                tender_id=notification.tender_id,
            )
            return 0

        delivered = 0
        for handler in handlers:
            try:
                handler(notification)
            except Exception as e:
                owner_notifications_total.labels(
                    event_type=notification.event_type, status="failed"
                ).inc()
                logger.error(
                    "Notification handler failed",
                    event_type=notification.event_type,
                    tender_id=notification.tender_id,
                    error=str(e),
                    exc_info=True,
                )
                continue
            delivered += 1
            owner_notifications_total.labels(
                event_type=notification.event_type, status="delivered"
            ).inc()
        return delivered

    def notify_owner(self, tender: "Tender", event_type: str, **details: Any) -> Notification:
        """Publish `event_type` to the tender's owner"""
        notification = Notification(
            event_type=event_type,
            recipient_id=tender.owner_id,
            tender_id=tender.tender_id,
            created_at=self._time.now(),
            details=details,
        )
        self.publish(notification)
        return notification

    def clear(self) -> None:
        self._handlers.clear()


class NotificationRecorder:
    """
    Subscriber that keeps the notifications it receives, newest last

    With maxlen set only the most recent maxlen are kept.
    """

    def __init__(self, maxlen: int | None = None) -> None:
        self.received: deque[Notification] = deque(maxlen=maxlen)

    def __call__(self, notification: Notification) -> None:
        self.received.append(notification)

    def of_type(self, event_type: str) -> list[Notification]:
        return [n for n in self.received if n.event_type == event_type]
