"""Dispatch orchestration.

Ties the pieces together for one database session: webhook authentication
and normalization, order intake, rider assignment, and application of
courier events. Every status change goes through ``DeliveryStateMachine``
under the per-delivery lock; provider network calls are never made while a
lock is held.
"""

import logging
import re
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Type

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import NoCandidateAvailable, NotFoundError, StateConflict, ValidationError
from app.core.metrics import metrics
from app.db.base import utcnow
from app.models.delivery import Delivery, DeliveryStatus
from app.models.order import FulfillmentType, Order, OrderStatus
from app.models.restaurant import ProviderPlatform, Restaurant, WebhookConfig
from app.models.rider import Rider
from app.schemas.webhook import WebhookResult
from app.services.assignment import RiderAssignmentEngine, load_candidates, reserve_rider
from app.services.locks import KeyedLock, delivery_locks
from app.services.normalizer import (
    DeliveryEvent,
    NormalizedEvent,
    OrderCancelled,
    OrderCreated,
    decode_body,
    normalize_inbound,
)
from app.services.notifications import StatusNotifier
from app.services.providers import (
    PROVIDERS,
    DeliveryProvider,
    DeliveryRequest,
    NormalizedOrder,
    get_provider,
)
from app.services.restaurant_config import (
    courier_platform_for,
    get_restaurant_settings,
    load_provider_config,
)
from app.services.state_machine import DeliveryStateMachine

logger = logging.getLogger(__name__)

EXTERNAL_REF_PREFIX = "dlv-"
_EXTERNAL_REF_RE = re.compile(r"^dlv-(\d+)$")


def external_delivery_ref(delivery_id: int) -> str:
    """Deterministic courier reference for a delivery."""
    return f"{EXTERNAL_REF_PREFIX}{delivery_id}"


def build_delivery_request(delivery: Delivery) -> DeliveryRequest:
    order = delivery.order
    restaurant = delivery.restaurant
    return DeliveryRequest(
        external_delivery_id=external_delivery_ref(delivery.id),
        pickup_business_name=restaurant.name,
        pickup_address=restaurant.address,
        pickup_phone=restaurant.phone,
        dropoff_address=order.dropoff_address,
        dropoff_phone=order.customer_phone,
        dropoff_contact_name=order.customer_name,
        dropoff_latitude=delivery.dropoff_latitude,
        dropoff_longitude=delivery.dropoff_longitude,
        order_value=order.total_amount,
        currency=order.currency,
    )


class DispatchService:
    """Dispatch operations bound to one database session."""

    def __init__(
        self,
        db: Session,
        providers: Optional[Mapping[str, DeliveryProvider]] = None,
        notifier: Optional[StatusNotifier] = None,
        locks: Optional[KeyedLock] = None,
        clock: Callable = utcnow,
    ):
        self.db = db
        self.providers = providers if providers is not None else PROVIDERS
        self.locks = locks or delivery_locks
        self.clock = clock
        self.machine = DeliveryStateMachine(db, notifier=notifier, clock=clock)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def authenticate_webhook(
        self,
        platform: str,
        body: bytes,
        api_key: Optional[str],
        signature: Optional[str],
    ) -> WebhookConfig:
        """Resolve the caller's webhook credentials or reject the request."""
        provider = get_provider(platform, self.providers)

        def reject(reason: str) -> ValidationError:
            metrics.record_webhook_rejected(provider.platform_name)
            logger.warning(f"Rejected {provider.platform_name} webhook: {reason}")
            return ValidationError(f"Webhook authentication failed: {reason}", authenticity=True)

        if not api_key:
            raise reject("missing API key")
        config = self.db.scalar(select(WebhookConfig).where(WebhookConfig.api_key == api_key))
        if config is None or not config.is_active:
            raise reject("unknown or inactive API key")
        if ProviderPlatform(config.platform).value != provider.platform_name:
            raise reject(f"API key is not valid for {provider.platform_name}")
        if config.api_secret and not provider.verify_webhook(body, signature, config.api_secret):
            raise reject("invalid signature")
        return config

    async def ingest_webhook(
        self,
        platform: str,
        body: bytes,
        api_key: Optional[str],
        signature: Optional[str],
    ) -> List[WebhookResult]:
        """Authenticate, normalize and apply one webhook body.

        Nothing is applied unless every record in the body is valid.
        """
        provider = get_provider(platform, self.providers)
        config = self.authenticate_webhook(platform, body, api_key, signature)
        payload = decode_body(body)
        events = await normalize_inbound(
            provider,
            payload,
            lambda: load_provider_config(self.db, config.restaurant_id, provider.platform_name),
        )

        results = []
        for event in events:
            results.append(await self.handle_event(config.restaurant_id, provider.platform_name, event))
        return results

    async def handle_event(self, restaurant_id: int, platform: str, event: NormalizedEvent) -> WebhookResult:
        handlers: Dict[Type, Callable[..., Awaitable[WebhookResult]]] = {
            OrderCreated: self._on_order_created,
            OrderCancelled: self._on_order_cancelled,
        }
        handler = handlers.get(type(event))
        if handler is not None:
            return await handler(restaurant_id, platform, event)
        return await self.apply_courier_event(event, restaurant_id=restaurant_id)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def _find_order(self, provider: str, external_id: str) -> Optional[Order]:
        return self.db.scalar(
            select(Order).where(Order.provider == provider, Order.external_id == external_id)
        )

    async def _on_order_created(self, restaurant_id: int, platform: str, event: OrderCreated) -> WebhookResult:
        async with self.locks.hold(("order", platform, event.external_id)):
            existing = self._find_order(platform, event.external_id)
            if existing is not None:
                metrics.record_noop(event.name)
                logger.info(f"Duplicate {platform} order {event.external_id}, ignoring")
                message = (
                    "Order already cancelled" if existing.status == OrderStatus.CANCELLED
                    else "Order already received"
                )
                return self._result("duplicate", event, existing, message)

            restaurant = self.db.get(Restaurant, restaurant_id)
            if restaurant is None:
                raise NotFoundError(f"Restaurant {restaurant_id} not found")

            data = event.order
            order = self._build_order(restaurant_id, platform, data, OrderStatus.CONFIRMED)
            order.confirmed_at = self.clock()
            self.db.add(order)
            try:
                self.db.flush()
                delivery = None
                if order.fulfillment_type == FulfillmentType.DELIVERY:
                    courier = courier_platform_for(self.db, restaurant_id)
                    delivery = self.machine.create_for_order(order, restaurant, courier)
                    if courier is not None:
                        self.machine.begin_assignment(delivery)
                self.db.commit()
            except IntegrityError:
                # Another process stored the same order first
                self.db.rollback()
                self.machine.discard_pending()
                existing = self._find_order(platform, event.external_id)
                return self._result("duplicate", event, existing, "Order already received")
            self.machine.publish_pending()
            logger.info(f"Received {platform} order {data.external_id} as order {order.id}")

        message = "Order received"
        if delivery is not None and delivery.status == DeliveryStatus.ASSIGNMENT_PENDING:
            rs = get_restaurant_settings(self.db, restaurant_id)
            if rs.auto_assign_riders:
                try:
                    await self.assign_rider(delivery.id)
                    message = "Order received, rider assigned"
                except NoCandidateAvailable:
                    message = "Order received, no rider available"
            self.db.refresh(delivery)
        return self._result("processed", event, order, message)

    async def _on_order_cancelled(self, restaurant_id: int, platform: str, event: OrderCancelled) -> WebhookResult:
        async with self.locks.hold(("order", platform, event.external_id)):
            order = self._find_order(platform, event.external_id)
            if order is None and event.order is not None:
                stored = self._store_cancelled_order(restaurant_id, platform, event)
                if stored is not None:
                    return self._result("processed", event, stored, "Order cancelled before it was received")
                # Another process stored the order first
                order = self._find_order(platform, event.external_id)
            if order is None or order.restaurant_id != restaurant_id:
                logger.info(f"Cancellation for unknown {platform} order {event.external_id}")
                return self._result("ignored", event, None, "Unknown order")
            if order.status == OrderStatus.CANCELLED:
                metrics.record_noop(event.name)
                return self._result("duplicate", event, order, "Order already cancelled")

            delivery_id = order.delivery.id if order.delivery is not None else None
            if delivery_id is not None:
                async with self.locks.hold(("delivery", delivery_id)):
                    delivery = self.reload(delivery_id)
                    self._run(lambda: self.machine.cancel(delivery, event.reason or "order cancelled"),
                              commit=False)
                    self._cancel_order(order)
                    self._commit()
            else:
                self._cancel_order(order)
                self._commit()
        return self._result("processed", event, order, "Order cancelled")

    def _build_order(self, restaurant_id: int, platform: str, data: NormalizedOrder, status: OrderStatus) -> Order:
        return Order(
            restaurant_id=restaurant_id,
            provider=platform,
            external_id=data.external_id,
            status=status,
            fulfillment_type=FulfillmentType(data.fulfillment_type),
            customer_name=data.customer_name,
            customer_phone=data.customer_phone,
            dropoff_address=data.dropoff_address,
            dropoff_latitude=data.dropoff_latitude,
            dropoff_longitude=data.dropoff_longitude,
            items=list(data.items),
            total_amount=data.total_amount,
            currency=data.currency,
            raw_payload=data.raw,
        )

    def _store_cancelled_order(self, restaurant_id: int, platform: str, event: OrderCancelled) -> Optional[Order]:
        """Record a cancellation that arrived before its order.

        The stored order has no delivery, so a later creation push for the
        same order is a duplicate. Returns None if the order already exists.
        """
        order = self._build_order(restaurant_id, platform, event.order, OrderStatus.CANCELLED)
        order.cancelled_at = self.clock()
        self.db.add(order)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return None
        logger.info(f"{platform} order {event.external_id} was cancelled before it was received")
        return order

    def _cancel_order(self, order: Order) -> None:
        order.status = OrderStatus.CANCELLED
        order.cancelled_at = order.cancelled_at or self.clock()

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    async def assign_rider(self, delivery_id: int) -> Rider:
        """Assign a rider and reserve its capacity in one transaction."""
        delivery = self._get_delivery(delivery_id)
        async with self.locks.hold(("restaurant", delivery.restaurant_id)):
            async with self.locks.hold(("delivery", delivery_id)):
                delivery = self.reload(delivery_id)
                if delivery.status == DeliveryStatus.CONFIRMED:
                    self._run(lambda: self.machine.begin_assignment(delivery), commit=False)
                if delivery.status != DeliveryStatus.ASSIGNMENT_PENDING:
                    self.db.rollback()
                    raise StateConflict(
                        f"Delivery {delivery_id} is {delivery.status.value}, not awaiting assignment",
                        delivery_id=delivery_id,
                        current_status=delivery.status.value,
                        event="RiderAssigned",
                    )

                rs = get_restaurant_settings(self.db, delivery.restaurant_id)
                engine = RiderAssignmentEngine(rs.max_delivery_radius, rs.distance_unit)
                candidates = list(load_candidates(self.db, delivery.restaurant_id))
                now = self.clock()
                while True:
                    try:
                        rider_id = engine.assign(delivery, candidates)
                    except NoCandidateAvailable:
                        # Keep the move to assignment_pending, if any
                        self._commit()
                        logger.info(f"No rider available for delivery {delivery_id}")
                        raise
                    if reserve_rider(self.db, rider_id, now):
                        break
                    # Lost a race for this rider's last slot
                    candidates = [r for r in candidates if r.id != rider_id]

                self._run(lambda: self.machine.mark_assigned(delivery, rider_id))
                logger.info(f"Assigned rider {rider_id} to delivery {delivery_id}")
                return self.db.get(Rider, rider_id)

    # ------------------------------------------------------------------
    # Courier events and operator actions
    # ------------------------------------------------------------------

    def find_delivery_for_event(self, external_delivery_id: Optional[str]) -> Optional[Delivery]:
        if not external_delivery_id:
            return None
        delivery = self.db.scalar(
            select(Delivery).where(Delivery.external_delivery_id == external_delivery_id)
        )
        if delivery is not None:
            return delivery
        # Courier events can arrive before our own request call returns
        match = _EXTERNAL_REF_RE.match(external_delivery_id)
        if match:
            delivery = self.db.get(Delivery, int(match.group(1)))
            if delivery is not None and delivery.provider is not None:
                return delivery
        return None

    async def apply_courier_event(
        self,
        event: DeliveryEvent,
        delivery_id: Optional[int] = None,
        restaurant_id: Optional[int] = None,
    ) -> WebhookResult:
        if delivery_id is None:
            delivery = self.find_delivery_for_event(event.external_delivery_id)
            if delivery is None or (restaurant_id is not None and delivery.restaurant_id != restaurant_id):
                logger.info(f"{event.name} for unknown delivery {event.external_delivery_id}, ignoring")
                return WebhookResult(status="ignored", event=event.name, message="Unknown delivery")
            delivery_id = delivery.id

        async with self.locks.hold(("delivery", delivery_id)):
            delivery = self.reload(delivery_id)
            result = self._run(lambda: self.machine.apply_event(delivery, event))

        return WebhookResult(
            status="processed" if result.applied else "noop",
            event=event.name,
            order_id=delivery.order_id,
            delivery_id=delivery.id,
            delivery_status=delivery.status.value,
        )

    async def fail_delivery(self, delivery_id: int, reason: str) -> Delivery:
        async with self.locks.hold(("delivery", delivery_id)):
            delivery = self.reload(delivery_id)
            self._run(lambda: self.machine.fail(delivery, reason))
        return delivery

    async def cancel_delivery(self, delivery_id: int, reason: Optional[str] = None) -> Delivery:
        async with self.locks.hold(("delivery", delivery_id)):
            delivery = self.reload(delivery_id)
            self._run(lambda: self.machine.cancel(delivery, reason), commit=False)
            if delivery.order is not None and delivery.order.status != OrderStatus.CANCELLED:
                self._cancel_order(delivery.order)
            self._commit()
        return delivery

    async def complete_delivery(self, delivery_id: int) -> Delivery:
        async with self.locks.hold(("delivery", delivery_id)):
            delivery = self.reload(delivery_id)
            self._run(lambda: self.machine.complete(delivery))
        return delivery

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_delivery(self, delivery_id: int) -> Delivery:
        delivery = self.db.get(Delivery, delivery_id)
        if delivery is None:
            raise NotFoundError(f"Delivery {delivery_id} not found")
        return delivery

    def reload(self, delivery_id: int) -> Delivery:
        """Re-read a delivery once its lock is held."""
        delivery = self.db.get(Delivery, delivery_id, populate_existing=True, with_for_update=True)
        if delivery is None:
            raise NotFoundError(f"Delivery {delivery_id} not found")
        return delivery

    def _run(self, operation: Callable, commit: bool = True):
        """Run a state machine operation, rolling back everything on failure."""
        try:
            result = operation()
        except Exception:
            self.db.rollback()
            self.machine.discard_pending()
            raise
        if commit:
            self._commit()
        return result

    def _commit(self) -> None:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.machine.discard_pending()
            raise
        self.machine.publish_pending()

    @staticmethod
    def _result(status: str, event: NormalizedEvent, order: Optional[Order], message: str) -> WebhookResult:
        delivery = order.delivery if order is not None else None
        return WebhookResult(
            status=status,
            event=event.name,
            order_id=order.id if order is not None else None,
            delivery_id=delivery.id if delivery is not None else None,
            delivery_status=delivery.status.value if delivery is not None else None,
            message=message,
        )
