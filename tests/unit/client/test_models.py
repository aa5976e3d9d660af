"""
Unit tests for complaint submission models.
"""

import pytest
from pydantic import ValidationError

from grievance_client import ComplaintReceipt, ComplaintSubmission, Location


def test_request_body_defaults():
    body = ComplaintSubmission(summary="  Broken streetlight ").to_request_body()
    assert body["title"] == "Broken streetlight"
    assert body["location_id"] == 1
    assert body["priority"] == "medium"
    assert body["public_consent_given"] is True
    assert body["attachment_urls"] == []
    assert "notify_emails" not in body


def test_request_body_with_location_and_emails():
    sub = ComplaintSubmission(
        summary="Water leak",
        location=Location(latitude=12.97, longitude=77.59, location_id=9),
        notify_emails=["ward9@example.org"],
    )
    body = sub.to_request_body()
    assert (body["latitude"], body["longitude"], body["location_id"]) == (12.97, 77.59, 9)
    assert body["notify_emails"] == ["ward9@example.org"]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"summary": "   "},
        {"summary": "ok", "urgency": "whenever"},
        {"summary": "ok", "location": {"latitude": 91}},
        {"summary": "ok", "location": {"longitude": -181}},
    ],
)
def test_invalid_submissions(kwargs):
    with pytest.raises(ValidationError):
        ComplaintSubmission(**kwargs)


def test_receipt_falls_back_to_id_for_number():
    r = ComplaintReceipt.from_response({"complaint_id": 7})
    assert r.complaint_id == "7"
    assert r.complaint_number == "7"


def test_receipt_unwraps_data_envelope():
    r = ComplaintReceipt.from_response({"success": True, "data": {"id": "abc"}})
    assert r.complaint_id == "abc"
    assert r.raw == {"id": "abc"}


def test_receipt_tolerates_non_dict():
    assert ComplaintReceipt.from_response(["unexpected"]).complaint_id is None
