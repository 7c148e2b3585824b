"""Resolve per-restaurant provider configuration.

Credentials are read from the restaurant's settings row for every operation
and handed to the adapter as an immutable ``ProviderConfig``.
"""

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import NotFoundError, ProviderError, ProviderErrorKind
from app.models.restaurant import Restaurant, RestaurantSettings
from app.services.providers import ProviderConfig, normalize_platform


def get_restaurant_settings(db: Session, restaurant_id: int) -> RestaurantSettings:
    restaurant = db.get(Restaurant, restaurant_id)
    if restaurant is None:
        raise NotFoundError(f"Restaurant {restaurant_id} not found")
    if restaurant.settings is None:
        # Restaurants without a settings row get defaults (no integrations)
        restaurant.settings = RestaurantSettings(restaurant_id=restaurant_id)
        db.flush()
    return restaurant.settings


def load_provider_config(db: Session, restaurant_id: int, platform: str) -> ProviderConfig:
    """Build the ProviderConfig for one call to ``platform``."""
    platform = normalize_platform(platform)
    rs = get_restaurant_settings(db, restaurant_id)

    if platform == "doordash":
        if not rs.is_doordash_connected:
            raise ProviderError(
                ProviderErrorKind.AUTH,
                f"DoorDash is not connected for restaurant {restaurant_id}",
                platform,
            )
        base_url = (
            settings.doordash_sandbox_api_base_url if rs.doordash_sandbox
            else settings.doordash_api_base_url
        )
        return ProviderConfig(
            restaurant_id=restaurant_id,
            platform=platform,
            base_url=base_url,
            timeout=settings.provider_timeout_seconds,
            sandbox=rs.doordash_sandbox,
            developer_id=rs.doordash_developer_id,
            key_id=rs.doordash_key_id,
            signing_secret=rs.doordash_signing_secret,
            merchant_id=rs.doordash_merchant_id,
            currency=rs.currency,
        )

    if platform == "gloria_food":
        return ProviderConfig(
            restaurant_id=restaurant_id,
            platform=platform,
            base_url=settings.gloria_food_api_base_url,
            timeout=settings.provider_timeout_seconds,
            api_key=rs.gloria_food_api_key,
            store_id=rs.gloria_food_store_id,
            master_key=rs.gloria_food_master_key,
            currency=rs.currency,
        )

    # Unknown platforms (e.g. test doubles) get process defaults only
    return ProviderConfig(
        restaurant_id=restaurant_id,
        platform=platform,
        base_url="",
        timeout=settings.provider_timeout_seconds,
        currency=rs.currency,
    )


def courier_platform_for(db: Session, restaurant_id: int):
    """Courier used for a restaurant's deliveries, or None for self-fulfilment."""
    rs = get_restaurant_settings(db, restaurant_id)
    if rs.is_doordash_connected:
        return "doordash"
    return None
