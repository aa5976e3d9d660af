"""
Errors raised by the complaint API client.

ApiError carries the HTTP status (0 for network/timeout) and an optional
machine code. map_api_error turns it into the delivery queue's
transient/permanent split.
"""

from __future__ import annotations

from typing import Optional

from grievance_relay.delivery.errors import (
    DeliveryError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from grievance_relay.delivery.policy import Classification, classify_status


class ApiError(Exception):
    """Complaint API call failed."""

    def __init__(self, message: str, status: int, code: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.code = code

    @property
    def is_network_error(self) -> bool:
        return self.status == 0

    @property
    def is_auth_error(self) -> bool:
        return self.status in (401, 403)


def is_retryable(e: Exception) -> bool:
    if isinstance(e, ApiError):
        return classify_status(e.status) is Classification.RETRYABLE or e.code in (
            "NETWORK_ERROR",
            "TIMEOUT",
        )
    return False


def map_api_error(e: Exception) -> DeliveryError:
    if isinstance(e, DeliveryError):
        return e
    if isinstance(e, ApiError):
        cls = TransientDeliveryError if is_retryable(e) else PermanentDeliveryError
        return cls(str(e), status_code=e.status, code=e.code)
    return PermanentDeliveryError(f"{type(e).__name__}: {e}")
