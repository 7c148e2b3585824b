"""Dispatch error taxonomy.

Every failure the orchestrator reports to a caller is one of these. None of
them is fatal to the process: the background loops log them and move on to
the next delivery.
"""

from enum import Enum
from typing import Optional


class DispatchError(Exception):
    """Base class for all dispatch errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DispatchError):
    """Malformed or unauthenticated inbound input. Never mutates state."""

    def __init__(self, message: str, authenticity: bool = False):
        super().__init__(message)
        self.authenticity = authenticity


class StateConflict(DispatchError):
    """An event would regress a delivery or skip a required step."""

    def __init__(self, message: str, delivery_id: Optional[int] = None,
                 current_status: Optional[str] = None, event: Optional[str] = None):
        super().__init__(message)
        self.delivery_id = delivery_id
        self.current_status = current_status
        self.event = event


class ProviderErrorKind(str, Enum):
    AUTH = "auth"
    TRANSIENT = "transient"
    REJECTED = "rejected"


class ProviderError(DispatchError):
    """Failure of an outbound provider call.

    ``auth`` needs operator action, ``transient`` is retried with backoff,
    ``rejected`` ends the current attempt.
    """

    def __init__(self, kind: ProviderErrorKind, message: str,
                 platform: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = ProviderErrorKind(kind)
        self.platform = platform
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind == ProviderErrorKind.TRANSIENT

    def __str__(self) -> str:
        prefix = f"{self.platform} " if self.platform else ""
        return f"{prefix}{self.kind.value}: {self.message}"


class NoCandidateAvailable(DispatchError):
    """No rider passes the availability, capacity and radius filters."""

    def __init__(self, message: str, delivery_id: Optional[int] = None):
        super().__init__(message)
        self.delivery_id = delivery_id


class DuplicateTaskError(DispatchError):
    """A task of the same kind is already outstanding for the delivery."""


class NotFoundError(DispatchError):
    """Referenced record does not exist."""
