"""Model-level validation utilities for data integrity.

Applied through ``@validates`` so that no endpoint, adapter or background
loop can write an impossible rider load or coordinate.
"""

from decimal import Decimal


def non_negative(key: str, value):
    """Validate that a numeric value is >= 0."""
    if value is not None:
        v = Decimal(str(value)) if not isinstance(value, Decimal) else value
        if v < 0:
            raise ValueError(f"{key} cannot be negative, got {value}")
    return value


def positive(key: str, value):
    """Validate that a numeric value is > 0."""
    if value is not None:
        v = Decimal(str(value)) if not isinstance(value, Decimal) else value
        if v <= 0:
            raise ValueError(f"{key} must be positive, got {value}")
    return value


def latitude(key: str, value):
    if value is not None and not -90.0 <= float(value) <= 90.0:
        raise ValueError(f"{key} must be between -90 and 90, got {value}")
    return value


def longitude(key: str, value):
    if value is not None and not -180.0 <= float(value) <= 180.0:
        raise ValueError(f"{key} must be between -180 and 180, got {value}")
    return value


def validate_list_of_dicts(key: str, value):
    """Validate that a JSON column value is a list of dicts (or None)."""
    if value is not None:
        if not isinstance(value, list):
            raise ValueError(f"{key} must be a list, got {type(value).__name__}")
        for i, item in enumerate(value):
            if not isinstance(item, dict):
                raise ValueError(f"{key}[{i}] must be a dict, got {type(item).__name__}")
    return value
