"""Delivery status change notifications.

The dispatcher only emits "status changed" events; formatting and sending
customer or merchant messages is left to subscribers.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryStatusChanged:
    delivery_id: int
    order_id: int
    restaurant_id: int
    from_status: str
    to_status: str
    event: str
    occurred_at: datetime
    rider_id: Optional[int] = None
    reason: Optional[str] = None


Subscriber = Callable[[DeliveryStatusChanged], None]


class StatusNotifier:
    """In-process fan-out of status changes to registered subscribers."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def publish(self, change: DeliveryStatusChanged) -> None:
        logger.info(
            f"Delivery {change.delivery_id} {change.from_status} -> {change.to_status} ({change.event})"
        )
        for callback in list(self._subscribers):
            try:
                callback(change)
            except Exception:
                # A broken subscriber must not undo a committed transition
                logger.exception(f"Status subscriber {callback!r} failed for delivery {change.delivery_id}")


notifier = StatusNotifier()
