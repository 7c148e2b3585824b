"""Event normalizer.

Converts raw webhook bodies and polled courier statuses into
provider-agnostic events. Nothing here touches the database; the same
input always yields equal events, which is what lets the state machine
treat a re-delivered webhook as a no-op.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, List, Optional, Union

from app.core.errors import ValidationError
from app.models.delivery import DeliveryStatus
from app.services.providers import (
    CourierState,
    DeliveryProvider,
    NormalizedOrder,
    ProviderConfig,
    ProviderDeliveryHandle,
    ProviderStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderCreated:
    name: ClassVar[str] = "OrderCreated"
    provider: str
    order: NormalizedOrder

    @property
    def external_id(self) -> str:
        return self.order.external_id


@dataclass(frozen=True)
class OrderCancelled:
    name: ClassVar[str] = "OrderCancelled"
    provider: str
    external_id: str
    reason: Optional[str] = None
    # Full record, kept so a cancellation that beats its order can store it
    order: Optional[NormalizedOrder] = field(default=None, compare=False)


@dataclass(frozen=True)
class DeliveryAccepted:
    name: ClassVar[str] = "DeliveryAccepted"
    target_status: ClassVar[DeliveryStatus] = DeliveryStatus.DISPATCHED
    external_delivery_id: str
    tracking_url: Optional[str] = None


@dataclass(frozen=True)
class DeliveryPickedUp:
    name: ClassVar[str] = "DeliveryPickedUp"
    target_status: ClassVar[DeliveryStatus] = DeliveryStatus.PICKED_UP
    external_delivery_id: str
    tracking_url: Optional[str] = None


@dataclass(frozen=True)
class DeliveryDelivered:
    name: ClassVar[str] = "DeliveryDelivered"
    target_status: ClassVar[DeliveryStatus] = DeliveryStatus.DELIVERED
    external_delivery_id: Optional[str] = None
    tracking_url: Optional[str] = None


@dataclass(frozen=True)
class DeliveryFailed:
    name: ClassVar[str] = "DeliveryFailed"
    target_status: ClassVar[DeliveryStatus] = DeliveryStatus.FAILED
    external_delivery_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class DeliveryStatusUnchanged:
    name: ClassVar[str] = "DeliveryStatusUnchanged"
    external_delivery_id: str
    raw_status: Optional[str] = None
    tracking_url: Optional[str] = None


DeliveryEvent = Union[
    DeliveryAccepted, DeliveryPickedUp, DeliveryDelivered, DeliveryFailed, DeliveryStatusUnchanged
]
NormalizedEvent = Union[OrderCreated, OrderCancelled, DeliveryEvent]


def decode_body(body: bytes) -> Dict[str, Any]:
    """Parse a raw webhook body into a JSON object."""
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"Webhook body is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")
    return payload


async def normalize_inbound(
    provider: DeliveryProvider,
    raw_payload: Dict[str, Any],
    load_config: Callable[[], ProviderConfig],
) -> List[NormalizedEvent]:
    """Normalize a verified webhook body.

    A single body may carry several orders (Gloria Food batches them), so
    one event is produced per record. Each order record is accepted through
    the provider's ``submit_order``; ``load_config`` is only called when the
    body holds one. The whole body is rejected if any record fails
    validation.
    """
    records = provider.parse_webhook(raw_payload)
    if not records:
        raise ValidationError(f"{provider.platform_name} webhook contained no records")

    config: Optional[ProviderConfig] = None
    events: List[NormalizedEvent] = []
    for record in records:
        if isinstance(record, ProviderStatus):
            events.append(_from_status(record))
            continue
        if config is None:
            config = load_config()
        order = await provider.submit_order(config, record)
        events.append(_from_order(provider.platform_name, order))
    return events


def normalize_polled(provider: DeliveryProvider, status: ProviderStatus) -> DeliveryEvent:
    """Normalize a courier status obtained by polling."""
    return _from_status(status)


def normalize_accepted(handle: ProviderDeliveryHandle) -> DeliveryAccepted:
    return DeliveryAccepted(
        external_delivery_id=handle.external_delivery_id,
        tracking_url=handle.tracking_url,
    )


def _from_order(platform: str, order: NormalizedOrder) -> Union[OrderCreated, OrderCancelled]:
    if order.cancelled:
        return OrderCancelled(
            provider=platform, external_id=order.external_id, reason=order.cancel_reason, order=order
        )
    return OrderCreated(provider=platform, order=order)


def _from_status(status: ProviderStatus) -> DeliveryEvent:
    if status.state == CourierState.PICKED_UP:
        return DeliveryPickedUp(status.external_delivery_id, tracking_url=status.tracking_url)
    if status.state == CourierState.DELIVERED:
        return DeliveryDelivered(status.external_delivery_id, tracking_url=status.tracking_url)
    if status.state == CourierState.FAILED:
        return DeliveryFailed(
            status.external_delivery_id,
            reason=status.reason or f"courier reported {status.raw_status}",
        )
    return DeliveryStatusUnchanged(
        status.external_delivery_id, raw_status=status.raw_status, tracking_url=status.tracking_url
    )
