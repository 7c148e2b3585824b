"""Delivery state machine.

The only writer of ``Delivery.status``. Incoming events are compared by
status rank rather than by exact prior state, so re-delivered and
out-of-order events are harmless:

* an event for a status already reached or passed is a no-op,
* an event that would move a terminal delivery anywhere else, or skip a
  required step, raises ``StateConflict`` and changes nothing,
* ``failed`` and ``cancelled`` are reachable from every non-terminal state.

The machine flushes but never commits; callers commit once so that rider
load changes and the status change land in the same transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import DuplicateTaskError, StateConflict
from app.core.metrics import metrics
from app.db.base import ensure_utc, utcnow
from app.models.delivery import (
    ACTIVE_RIDER_STATUSES,
    STATUS_RANK,
    TERMINAL_STATUSES,
    Delivery,
    DeliveryStatus,
)
from app.models.order import Order
from app.models.restaurant import Restaurant
from app.models.scheduled_task import ScheduledTask, TaskKind
from app.services.assignment import release_rider
from app.services.normalizer import (
    DeliveryAccepted,
    DeliveryDelivered,
    DeliveryEvent,
    DeliveryFailed,
    DeliveryPickedUp,
    DeliveryStatusUnchanged,
)
from app.services.notifications import DeliveryStatusChanged, StatusNotifier, notifier as default_notifier

logger = logging.getLogger(__name__)

S = DeliveryStatus

# Legal forward moves: target -> states it may be entered from.
# Courier progress may skip steps whose events were lost (assigned ->
# picked_up, dispatched -> delivered); missing timestamps are back-filled.
FORWARD_SOURCES = {
    S.CONFIRMED: {S.CREATED},
    S.ASSIGNMENT_PENDING: {S.CONFIRMED},
    S.ASSIGNED: {S.ASSIGNMENT_PENDING},
    S.DISPATCHED: {S.ASSIGNED},
    S.PICKED_UP: {S.ASSIGNED, S.DISPATCHED},
    S.DELIVERED: {S.ASSIGNED, S.DISPATCHED, S.PICKED_UP},
}

# Timestamps in lifecycle order; each is set once and never earlier than
# the ones before it
STAMP_ORDER = ("requested_at", "accepted_at", "picked_up_at", "delivered_at")


@dataclass
class TransitionResult:
    delivery_id: int
    event: str
    from_status: DeliveryStatus
    to_status: DeliveryStatus
    applied: bool

    @property
    def noop(self) -> bool:
        return not self.applied


class DeliveryStateMachine:
    """Applies lifecycle events to deliveries within one database session."""

    def __init__(
        self,
        db: Session,
        notifier: Optional[StatusNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.notifier = notifier or default_notifier
        self.clock = clock
        self._pending: List[DeliveryStatusChanged] = []

    # ------------------------------------------------------------------
    # Creation and the internal (non-courier) steps
    # ------------------------------------------------------------------

    def create_for_order(self, order: Order, restaurant: Restaurant, provider: Optional[str]) -> Delivery:
        """Create the delivery for a newly confirmed order, in ``confirmed``."""
        delivery = Delivery(
            order_id=order.id,
            restaurant_id=restaurant.id,
            provider=provider,
            status=S.CREATED,
            poll_failure_count=0,
            pickup_latitude=restaurant.latitude,
            pickup_longitude=restaurant.longitude,
            dropoff_latitude=order.dropoff_latitude,
            dropoff_longitude=order.dropoff_longitude,
        )
        self.db.add(delivery)
        self.db.flush()
        self._advance(delivery, S.CONFIRMED, "OrderConfirmed")
        return delivery

    def begin_assignment(self, delivery: Delivery) -> TransitionResult:
        if delivery.provider is None:
            raise self._conflict(delivery, "BeginAssignment", "self-fulfilled deliveries are not assigned")
        return self._advance(delivery, S.ASSIGNMENT_PENDING, "BeginAssignment")

    def mark_assigned(self, delivery: Delivery, rider_id: int) -> TransitionResult:
        """Record the chosen rider and queue the courier request.

        The caller has already reserved capacity on the rider in the same
        transaction.
        """
        if delivery.status != S.ASSIGNMENT_PENDING:
            raise self._conflict(delivery, "RiderAssigned", "delivery is not awaiting assignment")
        delivery.rider_id = rider_id
        result = self._advance(delivery, S.ASSIGNED, "RiderAssigned")
        self._stamp(delivery, "requested_at", self.clock())
        self.schedule_task(delivery, TaskKind.DISPATCH_CALL)
        return result

    def complete(self, delivery: Delivery) -> TransitionResult:
        """Mark a self-fulfilled delivery as handed over to the customer."""
        if delivery.provider is not None and delivery.status not in TERMINAL_STATUSES:
            raise self._conflict(delivery, "ManualComplete", "courier deliveries complete via the courier")
        if delivery.provider is None and delivery.status == S.CONFIRMED:
            return self._apply(delivery, S.DELIVERED, "ManualComplete")
        return self._advance(delivery, S.DELIVERED, "ManualComplete")

    def cancel(self, delivery: Delivery, reason: Optional[str] = None) -> TransitionResult:
        return self._advance(delivery, S.CANCELLED, "Cancel", reason=reason or "cancelled")

    def fail(self, delivery: Delivery, reason: str) -> TransitionResult:
        return self._advance(delivery, S.FAILED, "DeliveryFailed", reason=reason)

    # ------------------------------------------------------------------
    # Courier events
    # ------------------------------------------------------------------

    def apply_event(self, delivery: Delivery, event: DeliveryEvent) -> TransitionResult:
        if isinstance(event, DeliveryStatusUnchanged):
            if event.tracking_url and not delivery.tracking_url:
                delivery.tracking_url = event.tracking_url
            metrics.record_noop(event.name)
            return TransitionResult(delivery.id, event.name, delivery.status, delivery.status, False)

        if isinstance(event, DeliveryFailed):
            return self._advance(delivery, S.FAILED, event.name, reason=event.reason, event_obj=event)
        return self._advance(delivery, event.target_status, event.name, event_obj=event)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def schedule_task(
        self,
        delivery: Delivery,
        kind: TaskKind,
        delay_seconds: float = 0,
        max_attempts: Optional[int] = None,
    ) -> ScheduledTask:
        """Queue a task; a delivery holds at most one outstanding task per kind."""
        existing = self.db.scalar(
            select(ScheduledTask).where(
                ScheduledTask.delivery_id == delivery.id, ScheduledTask.kind == kind
            )
        )
        if existing is not None:
            raise DuplicateTaskError(
                f"{kind.value} task already outstanding for delivery {delivery.id}"
            )
        task = ScheduledTask(
            delivery_id=delivery.id,
            kind=kind,
            run_at=self.clock() + timedelta(seconds=delay_seconds),
            attempts=0,
            max_attempts=max_attempts or settings.retry_max_attempts,
        )
        self.db.add(task)
        self.db.flush()
        logger.debug(f"Scheduled {kind.value} for delivery {delivery.id} at {task.run_at.isoformat()}")
        return task

    def clear_tasks(self, delivery: Delivery, kinds: Optional[List[TaskKind]] = None) -> int:
        query = select(ScheduledTask).where(ScheduledTask.delivery_id == delivery.id)
        if kinds is not None:
            query = query.where(ScheduledTask.kind.in_(kinds))
        tasks = self.db.scalars(query).all()
        for task in tasks:
            self.db.delete(task)
        self.db.flush()
        return len(tasks)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def publish_pending(self) -> None:
        """Emit status changes; call after the transaction has committed."""
        pending, self._pending = self._pending, []
        for change in pending:
            self.notifier.publish(change)

    def discard_pending(self) -> None:
        self._pending = []

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    def _advance(self, delivery: Delivery, target: DeliveryStatus, event: str,
                 reason: Optional[str] = None, event_obj=None) -> TransitionResult:
        current = delivery.status

        if current in TERMINAL_STATUSES:
            if current == target:
                metrics.record_noop(event)
                return TransitionResult(delivery.id, event, current, current, False)
            raise self._conflict(delivery, event, f"delivery already {current.value}")

        if target in (S.FAILED, S.CANCELLED):
            return self._apply(delivery, target, event, reason=reason, event_obj=event_obj)

        if STATUS_RANK[target] <= STATUS_RANK[current]:
            metrics.record_noop(event)
            logger.debug(f"Delivery {delivery.id}: {event} ignored at {current.value}")
            return TransitionResult(delivery.id, event, current, current, False)

        if current not in FORWARD_SOURCES.get(target, ()):
            raise self._conflict(delivery, event, f"cannot move from {current.value} to {target.value}")

        return self._apply(delivery, target, event, reason=reason, event_obj=event_obj)

    def _apply(self, delivery: Delivery, target: DeliveryStatus, event: str,
               reason: Optional[str] = None, event_obj=None) -> TransitionResult:
        previous = delivery.status
        now = self.clock()

        external_id = getattr(event_obj, "external_delivery_id", None)
        tracking_url = getattr(event_obj, "tracking_url", None)
        if external_id and not delivery.external_delivery_id and STATUS_RANK[target] >= STATUS_RANK[S.DISPATCHED]:
            delivery.external_delivery_id = external_id
        if tracking_url:
            delivery.tracking_url = tracking_url

        if target == S.DISPATCHED:
            self._stamp(delivery, "accepted_at", now)
        elif target == S.PICKED_UP:
            self._stamp(delivery, "accepted_at", now)
            self._stamp(delivery, "picked_up_at", now)
        elif target == S.DELIVERED:
            if delivery.provider is not None:
                self._stamp(delivery, "accepted_at", now)
                self._stamp(delivery, "picked_up_at", now)
            self._stamp(delivery, "delivered_at", now)
        elif target == S.CANCELLED:
            delivery.cancelled_at = delivery.cancelled_at or now
            delivery.failure_reason = reason
        elif target == S.FAILED:
            delivery.failed_at = delivery.failed_at or now
            delivery.failure_reason = reason

        if previous in ACTIVE_RIDER_STATUSES and target not in ACTIVE_RIDER_STATUSES:
            release_rider(self.db, delivery.rider_id)
        if target in (S.FAILED, S.CANCELLED):
            delivery.rider_id = None

        delivery.status = target
        if target in TERMINAL_STATUSES:
            self.clear_tasks(delivery)
        elif STATUS_RANK[target] >= STATUS_RANK[S.DISPATCHED]:
            # The courier has the delivery; a queued request would be stale
            self.clear_tasks(delivery, [TaskKind.DISPATCH_CALL])
        if target == S.DISPATCHED:
            try:
                self.schedule_task(
                    delivery, TaskKind.STATUS_REFRESH, delay_seconds=settings.status_refresh_delay_seconds
                )
            except DuplicateTaskError:
                pass
        self.db.flush()

        metrics.record_transition(previous.value, target.value)
        self._pending.append(DeliveryStatusChanged(
            delivery_id=delivery.id,
            order_id=delivery.order_id,
            restaurant_id=delivery.restaurant_id,
            from_status=previous.value,
            to_status=target.value,
            event=event,
            occurred_at=now,
            rider_id=delivery.rider_id,
            reason=reason,
        ))
        return TransitionResult(delivery.id, event, previous, target, True)

    @staticmethod
    def _stamp(delivery: Delivery, attr: str, when: datetime) -> None:
        if getattr(delivery, attr) is not None:
            return
        earlier = [
            ensure_utc(getattr(delivery, a))
            for a in STAMP_ORDER[:STAMP_ORDER.index(attr)]
            if getattr(delivery, a) is not None
        ]
        setattr(delivery, attr, max([when, *earlier]))

    def _conflict(self, delivery: Delivery, event: str, detail: str) -> StateConflict:
        metrics.record_conflict(event)
        logger.warning(f"State conflict on delivery {delivery.id}: {event} rejected ({detail})")
        return StateConflict(
            f"{event} rejected for delivery {delivery.id}: {detail}",
            delivery_id=delivery.id,
            current_status=delivery.status.value,
            event=event,
        )
