"""
Unit tests for API error mapping.
"""

import pytest

from grievance_client import ApiError, is_retryable, map_api_error
from grievance_relay.delivery import PermanentDeliveryError, TransientDeliveryError


@pytest.mark.parametrize(
    "status,code,expected",
    [
        (0, "NETWORK_ERROR", TransientDeliveryError),
        (0, "TIMEOUT", TransientDeliveryError),
        (500, None, TransientDeliveryError),
        (503, None, TransientDeliveryError),
        (429, None, TransientDeliveryError),
        (400, "PHOTO_MISSING", PermanentDeliveryError),
        (401, "PHONE_NOT_VERIFIED", PermanentDeliveryError),
        (404, None, PermanentDeliveryError),
    ],
)
def test_map_api_error(status, code, expected):
    mapped = map_api_error(ApiError("x", status, code))
    assert type(mapped) is expected
    assert mapped.status_code == status
    assert mapped.code == code


def test_unknown_exception_is_permanent():
    mapped = map_api_error(KeyError("complaint_id"))
    assert isinstance(mapped, PermanentDeliveryError)
    assert "KeyError" in str(mapped)


def test_delivery_errors_pass_through():
    err = TransientDeliveryError("already typed")
    assert map_api_error(err) is err


def test_is_retryable():
    assert is_retryable(ApiError("down", 503))
    assert not is_retryable(ApiError("bad", 400))
    assert not is_retryable(RuntimeError("boom"))
