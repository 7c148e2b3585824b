"""Abstract base class and value types for external providers.

A provider is either an inbound order source (orders arrive by webhook) or
an outbound courier (we request a delivery and poll its progress). Both kinds
implement the same capability set; a capability the provider does not have
fails with ``ProviderError(rejected)``.
"""

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import httpx

from app.core.errors import ProviderError, ProviderErrorKind
from app.core.metrics import metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderConfig:
    """Per-restaurant credentials, loaded once per operation."""

    restaurant_id: int
    platform: str
    base_url: str
    timeout: float
    sandbox: bool = False
    api_key: Optional[str] = None
    store_id: Optional[str] = None
    master_key: Optional[str] = None
    developer_id: Optional[str] = None
    key_id: Optional[str] = None
    signing_secret: Optional[str] = None
    merchant_id: Optional[str] = None
    currency: str = "USD"


@dataclass(frozen=True)
class NormalizedOrder:
    """Strict canonical record of an inbound order."""

    external_id: str
    cancelled: bool
    fulfillment_type: str
    total_amount: Decimal
    currency: str
    items: List[Dict[str, Any]] = field(default_factory=list)
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    dropoff_address: Optional[str] = None
    dropoff_latitude: Optional[float] = None
    dropoff_longitude: Optional[float] = None
    cancel_reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class DeliveryRequest:
    """What a courier needs to know to pick up and drop off an order."""

    external_delivery_id: str
    pickup_business_name: str
    pickup_address: Optional[str]
    pickup_phone: Optional[str]
    dropoff_address: Optional[str]
    dropoff_phone: Optional[str]
    dropoff_contact_name: Optional[str]
    dropoff_latitude: Optional[float]
    dropoff_longitude: Optional[float]
    order_value: Decimal
    currency: str


@dataclass(frozen=True)
class ProviderDeliveryHandle:
    """Courier acknowledgement of a delivery request."""

    external_delivery_id: str
    raw_status: Optional[str] = None
    tracking_url: Optional[str] = None
    fee: Optional[int] = None


class CourierState(str, Enum):
    """Canonical courier progress, as far as dispatch cares."""

    UNCHANGED = "unchanged"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass(frozen=True)
class ProviderStatus:
    """Result of polling (or being notified of) a courier delivery."""

    external_delivery_id: str
    state: CourierState
    raw_status: Optional[str] = None
    reason: Optional[str] = None
    tracking_url: Optional[str] = None


# A raw order record to hand to submit_order, or a courier status
WebhookContent = Union[Dict[str, Any], ProviderStatus]


def classify_http_error(platform: str, exc: Exception) -> ProviderError:
    """Map an httpx failure to the provider error taxonomy.

    Timeouts, transport failures, 429 and 5xx are transient; 401/403 are
    auth failures; any other 4xx means the provider declined the request.
    """
    if isinstance(exc, httpx.TimeoutException):
        return ProviderError(ProviderErrorKind.TRANSIENT, f"timeout: {exc}", platform)
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        detail = exc.response.text[:200]
        if code in (401, 403):
            kind = ProviderErrorKind.AUTH
        elif code == 429 or code >= 500:
            kind = ProviderErrorKind.TRANSIENT
        else:
            kind = ProviderErrorKind.REJECTED
        return ProviderError(kind, f"HTTP {code}: {detail}", platform, status_code=code)
    if isinstance(exc, httpx.TransportError):
        return ProviderError(ProviderErrorKind.TRANSIENT, f"transport error: {exc}", platform)
    return ProviderError(ProviderErrorKind.TRANSIENT, str(exc), platform)


class DeliveryProvider(ABC):
    """Base interface for order-source and courier integrations."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        # Injected in tests (httpx.MockTransport)
        self._transport = transport

    @property
    @abstractmethod
    def platform_name(self) -> str:
        """Return the platform name (e.g., 'doordash', 'gloria_food')."""

    @abstractmethod
    async def submit_order(self, config: ProviderConfig, raw_payload: Dict[str, Any]) -> NormalizedOrder:
        """Accept one inbound order payload as a canonical order."""

    @abstractmethod
    async def request_delivery(self, config: ProviderConfig, request: DeliveryRequest) -> ProviderDeliveryHandle:
        """Ask the courier to fulfil a delivery."""

    @abstractmethod
    async def poll_delivery_status(self, config: ProviderConfig, external_delivery_id: str) -> ProviderStatus:
        """Fetch the courier's current view of a delivery."""

    @abstractmethod
    def parse_webhook(self, raw_payload: Dict[str, Any]) -> List[WebhookContent]:
        """Split a webhook body into records.

        Order sources return the raw order payloads, each to be accepted
        through ``submit_order``; couriers return parsed statuses. Raises
        ``app.core.errors.ValidationError`` when the envelope or a required
        identifying field is missing. Must be deterministic: the same body
        always yields the same records.
        """

    def verify_webhook(self, payload: bytes, signature: Optional[str], secret: str) -> bool:
        """Verify a hex HMAC-SHA256 signature of the raw body."""
        if not signature or not secret:
            return False
        expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    def _client(self, config: ProviderConfig) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout,
            transport=self._transport,
        )

    def _unsupported(self, operation: str) -> ProviderError:
        metrics.record_provider_call(self.platform_name, operation, "unsupported")
        return ProviderError(
            ProviderErrorKind.REJECTED,
            f"{operation} is not supported by {self.platform_name}",
            self.platform_name,
        )
