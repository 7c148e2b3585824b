"""Gloria Food inbound order source.

Gloria Food pushes accepted (and later cancelled) orders to our webhook;
it never delivers them, so the courier capabilities are rejected.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List

from pydantic import ValidationError as PydanticValidationError

from app.core.errors import ValidationError
from app.core.metrics import metrics
from app.schemas.webhook import GloriaFoodOrder, GloriaFoodPush
from app.services.providers.base import (
    DeliveryProvider,
    DeliveryRequest,
    NormalizedOrder,
    ProviderConfig,
    ProviderDeliveryHandle,
    ProviderStatus,
    WebhookContent,
)

logger = logging.getLogger(__name__)

CANCELLED_STATUSES = {"canceled", "cancelled", "rejected", "missed"}


class GloriaFoodProvider(DeliveryProvider):
    """Gloria Food order push parser."""

    platform_name = "gloria_food"

    async def submit_order(self, config: ProviderConfig, raw_payload: Dict[str, Any]) -> NormalizedOrder:
        try:
            order = GloriaFoodOrder.model_validate(raw_payload)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid Gloria Food order: {_first_error(e)}") from e
        metrics.record_provider_call(self.platform_name, "submit_order", "ok")
        return self._normalize(order, raw_payload)

    async def request_delivery(self, config: ProviderConfig, request: DeliveryRequest) -> ProviderDeliveryHandle:
        raise self._unsupported("request_delivery")

    async def poll_delivery_status(self, config: ProviderConfig, external_delivery_id: str) -> ProviderStatus:
        raise self._unsupported("poll_delivery_status")

    def parse_webhook(self, raw_payload: Dict[str, Any]) -> List[WebhookContent]:
        try:
            push = GloriaFoodPush.model_validate(raw_payload)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid Gloria Food payload: {_first_error(e)}") from e

        return list(push.orders)

    @staticmethod
    def _normalize(order: GloriaFoodOrder, raw: Dict[str, Any]) -> NormalizedOrder:
        name = " ".join(p for p in (order.client_first_name, order.client_last_name) if p) or None
        items = [
            {
                "name": item.name,
                "quantity": item.quantity,
                "price": str(item.price),
                "total": str(item.total_item_price if item.total_item_price is not None
                             else item.price * item.quantity),
            }
            for item in order.items
        ]
        cancelled = order.status in CANCELLED_STATUSES
        return NormalizedOrder(
            external_id=str(order.id),
            cancelled=cancelled,
            fulfillment_type="delivery" if order.type == "delivery" else "pickup",
            total_amount=Decimal(order.total_price),
            currency=order.currency,
            items=items,
            customer_name=name,
            customer_phone=order.client_phone,
            dropoff_address=order.client_address,
            dropoff_latitude=order.latitude,
            dropoff_longitude=order.longitude,
            cancel_reason=(order.missed_reason or order.status) if cancelled else None,
            raw=raw,
        )


def _first_error(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))
