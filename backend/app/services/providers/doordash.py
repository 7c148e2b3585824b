"""DoorDash Drive API integration (outbound courier)."""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import jwt
from jwt.utils import base64url_decode
from pydantic import ValidationError as PydanticValidationError

from app.core.errors import ProviderError, ProviderErrorKind, ValidationError
from app.core.metrics import metrics
from app.schemas.webhook import DoorDashWebhookEvent
from app.services.providers.base import (
    CourierState,
    DeliveryProvider,
    DeliveryRequest,
    NormalizedOrder,
    ProviderConfig,
    ProviderDeliveryHandle,
    ProviderStatus,
    WebhookContent,
    classify_http_error,
)

logger = logging.getLogger(__name__)

DELIVERIES_PATH = "/drive/v2/deliveries"

STATUS_MAP = {
    "created": CourierState.UNCHANGED,
    "confirmed": CourierState.UNCHANGED,
    "enroute_to_pickup": CourierState.UNCHANGED,
    "arrived_at_pickup": CourierState.UNCHANGED,
    "picked_up": CourierState.PICKED_UP,
    "enroute_to_dropoff": CourierState.PICKED_UP,
    "arrived_at_dropoff": CourierState.PICKED_UP,
    "delivered": CourierState.DELIVERED,
    "cancelled": CourierState.FAILED,
    "returned": CourierState.FAILED,
}

EVENT_MAP = {
    "DASHER_CONFIRMED": CourierState.UNCHANGED,
    "DASHER_ENROUTE_TO_PICKUP": CourierState.UNCHANGED,
    "DASHER_CONFIRMED_PICKUP_ARRIVAL": CourierState.UNCHANGED,
    "DASHER_PICKED_UP": CourierState.PICKED_UP,
    "DASHER_ENROUTE_TO_DROPOFF": CourierState.PICKED_UP,
    "DASHER_CONFIRMED_DROPOFF_ARRIVAL": CourierState.PICKED_UP,
    "DASHER_DROPPED_OFF": CourierState.DELIVERED,
    "DELIVERY_DELIVERED": CourierState.DELIVERED,
    "DELIVERY_CANCELLED": CourierState.FAILED,
    "DELIVERY_RETURNED": CourierState.FAILED,
}


class DoorDashProvider(DeliveryProvider):
    """DoorDash Drive v2 client."""

    platform_name = "doordash"

    def _create_jwt(self, config: ProviderConfig) -> str:
        """Create JWT for DoorDash API authentication."""
        if not (config.developer_id and config.key_id and config.signing_secret):
            raise ProviderError(ProviderErrorKind.AUTH, "DoorDash credentials not configured", self.platform_name)

        now = datetime.now(timezone.utc)
        payload = {
            "aud": "doordash",
            "iss": config.developer_id,
            "kid": config.key_id,
            "exp": now + timedelta(minutes=5),
            "iat": now,
        }
        try:
            secret = base64url_decode(config.signing_secret)
        except (ValueError, TypeError) as e:
            raise ProviderError(ProviderErrorKind.AUTH, f"Invalid DoorDash signing secret: {e}", self.platform_name)
        return jwt.encode(payload, secret, algorithm="HS256", headers={"dd-ver": "DD-JWT-V1"})

    def _headers(self, config: ProviderConfig) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._create_jwt(config)}",
            "Content-Type": "application/json",
        }

    async def submit_order(self, config: ProviderConfig, raw_payload: Dict[str, Any]) -> NormalizedOrder:
        raise self._unsupported("submit_order")

    async def request_delivery(self, config: ProviderConfig, request: DeliveryRequest) -> ProviderDeliveryHandle:
        """Create a Drive delivery.

        ``external_delivery_id`` is derived from our delivery id, so repeating
        the call after an ambiguous timeout hits DoorDash's duplicate check
        (409) and we adopt the delivery that already exists.
        """
        body = self._delivery_body(config, request)
        headers = self._headers(config)
        try:
            async with self._client(config) as client:
                resp = await client.post(DELIVERIES_PATH, headers=headers, json=body)
                if resp.status_code == 409:
                    logger.info(
                        f"DoorDash delivery {request.external_delivery_id} already exists, adopting it"
                    )
                    resp = await client.get(
                        f"{DELIVERIES_PATH}/{request.external_delivery_id}", headers=headers
                    )
                resp.raise_for_status()
        except httpx.HTTPError as e:
            error = classify_http_error(self.platform_name, e)
            metrics.record_provider_call(self.platform_name, "request_delivery", error.kind.value)
            raise error from e
        data = self._json_body(resp, "request_delivery")

        metrics.record_provider_call(self.platform_name, "request_delivery", "ok")
        return ProviderDeliveryHandle(
            external_delivery_id=data.get("external_delivery_id") or request.external_delivery_id,
            raw_status=data.get("delivery_status"),
            tracking_url=data.get("tracking_url"),
            fee=data.get("fee"),
        )

    async def poll_delivery_status(self, config: ProviderConfig, external_delivery_id: str) -> ProviderStatus:
        headers = self._headers(config)
        try:
            async with self._client(config) as client:
                resp = await client.get(f"{DELIVERIES_PATH}/{external_delivery_id}", headers=headers)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            error = classify_http_error(self.platform_name, e)
            metrics.record_provider_call(self.platform_name, "poll_delivery_status", error.kind.value)
            raise error from e
        data = self._json_body(resp, "poll_delivery_status")

        metrics.record_provider_call(self.platform_name, "poll_delivery_status", "ok")
        raw_status = data.get("delivery_status")
        return ProviderStatus(
            external_delivery_id=data.get("external_delivery_id") or external_delivery_id,
            state=self.map_status(raw_status),
            raw_status=raw_status,
            reason=data.get("cancellation_reason"),
            tracking_url=data.get("tracking_url"),
        )

    def parse_webhook(self, raw_payload: Dict[str, Any]) -> List[WebhookContent]:
        try:
            event = DoorDashWebhookEvent.model_validate(raw_payload)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid DoorDash webhook: {e.errors()[0].get('msg')}") from e

        state = EVENT_MAP.get(event.event_name)
        if state is None:
            # Fall back to the status field some event types carry
            state = self.map_status(event.delivery_status)
        return [
            ProviderStatus(
                external_delivery_id=event.external_delivery_id,
                state=state,
                raw_status=event.delivery_status or event.event_name,
                reason=event.cancellation_reason,
                tracking_url=event.tracking_url,
            )
        ]

    def _json_body(self, resp: httpx.Response, operation: str) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            metrics.record_provider_call(self.platform_name, operation, ProviderErrorKind.TRANSIENT.value)
            raise ProviderError(
                ProviderErrorKind.TRANSIENT,
                f"unreadable response body (HTTP {resp.status_code}): {resp.text[:200]}",
                self.platform_name,
                status_code=resp.status_code,
            )
        return data

    @staticmethod
    def map_status(raw_status: Optional[str]) -> CourierState:
        state = STATUS_MAP.get((raw_status or "").lower())
        if state is None:
            logger.warning(f"Unknown DoorDash delivery status {raw_status!r}, treating as unchanged")
            return CourierState.UNCHANGED
        return state

    @staticmethod
    def _delivery_body(config: ProviderConfig, request: DeliveryRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "external_delivery_id": request.external_delivery_id,
            "pickup_business_name": request.pickup_business_name,
            "pickup_address": request.pickup_address,
            "pickup_phone_number": request.pickup_phone,
            "dropoff_address": request.dropoff_address,
            "dropoff_phone_number": request.dropoff_phone,
            "dropoff_contact_given_name": request.dropoff_contact_name,
            # Drive expects minor currency units
            "order_value": int((request.order_value * Decimal(100)).to_integral_value()),
            "currency": request.currency,
        }
        if request.dropoff_latitude is not None and request.dropoff_longitude is not None:
            body["dropoff_location"] = {
                "lat": request.dropoff_latitude,
                "lng": request.dropoff_longitude,
            }
        if config.merchant_id:
            body["pickup_external_business_id"] = config.merchant_id
        return {k: v for k, v in body.items() if v is not None}
