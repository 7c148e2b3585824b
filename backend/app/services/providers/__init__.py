"""Provider integrations (inbound order sources and outbound couriers)."""

from typing import Dict, Mapping, Optional

from app.core.errors import ValidationError
from app.services.providers.base import (
    CourierState,
    DeliveryProvider,
    DeliveryRequest,
    NormalizedOrder,
    ProviderConfig,
    ProviderDeliveryHandle,
    ProviderStatus,
)
from app.services.providers.doordash import DoorDashProvider
from app.services.providers.gloriafood import GloriaFoodProvider

PROVIDERS: Dict[str, DeliveryProvider] = {
    "gloria_food": GloriaFoodProvider(),
    "doordash": DoorDashProvider(),
}


def normalize_platform(platform: str) -> str:
    """``gloria-food`` and ``Gloria_Food`` both name ``gloria_food``."""
    return platform.strip().lower().replace("-", "_")


def get_provider(platform: str, registry: Optional[Mapping[str, DeliveryProvider]] = None) -> DeliveryProvider:
    providers = registry if registry is not None else PROVIDERS
    provider = providers.get(normalize_platform(platform))
    if provider is None:
        raise ValidationError(f"Unknown provider platform: {platform}")
    return provider


__all__ = [
    "CourierState",
    "DeliveryProvider",
    "DeliveryRequest",
    "DoorDashProvider",
    "GloriaFoodProvider",
    "NormalizedOrder",
    "PROVIDERS",
    "ProviderConfig",
    "ProviderDeliveryHandle",
    "ProviderStatus",
    "get_provider",
    "normalize_platform",
]
