"""
Pydantic models for complaint submissions.

A ComplaintSubmission is what the resident filled in on the device. It is
stored verbatim as the queue item payload and mapped to the API request body
only when it is sent.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class Location(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_id: Optional[int] = None

    @field_validator("latitude")
    @classmethod
    def _lat_range(cls, v):
        if v is not None and not (-90.0 <= v <= 90.0):
            raise ValueError("latitude must be between -90 and 90")
        return v

    @field_validator("longitude")
    @classmethod
    def _lng_range(cls, v):
        if v is not None and not (-180.0 <= v <= 180.0):
            raise ValueError("longitude must be between -180 and 180")
        return v


class ComplaintSubmission(BaseModel):
    """Complaint as captured by the chat flow."""

    summary: str
    description: str = ""
    category: Optional[str] = None
    urgency: str = "medium"
    location: Location = Field(default_factory=Location)
    photo_url: Optional[str] = None
    notify_emails: list[str] = Field(default_factory=list)

    @field_validator("summary")
    @classmethod
    def _summary_present(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("summary is required")
        return v

    @field_validator("urgency")
    @classmethod
    def _validate_urgency(cls, v):
        valid = {"low", "medium", "high", "urgent"}
        v = v.lower().strip()
        if v not in valid:
            raise ValueError(f"Invalid urgency: {v}. Must be one of {valid}")
        return v

    def to_request_body(self) -> dict[str, Any]:
        """Body for POST /complaints."""
        body: dict[str, Any] = {
            "title": self.summary,
            "description": self.description,
            "category": self.category,
            "location_id": self.location.location_id or 1,
            "latitude": self.location.latitude,
            "longitude": self.location.longitude,
            "priority": self.urgency,
            "public_consent_given": True,
            "attachment_urls": [self.photo_url] if self.photo_url else [],
        }
        if self.notify_emails:
            body["notify_emails"] = list(self.notify_emails)
        return body


class ComplaintReceipt(BaseModel):
    """Normalised create-complaint response."""

    complaint_id: Optional[str] = None
    complaint_number: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_response(cls, body: Any) -> "ComplaintReceipt":
        data = body.get("data") if isinstance(body, dict) and body.get("data") is not None else body
        data = data if isinstance(data, dict) else {}
        cid = data.get("complaint_id", data.get("id"))
        number = data.get("complaint_number")
        if number is None and cid is not None:
            number = str(cid)
        return cls(
            complaint_id=str(cid) if cid is not None else None,
            complaint_number=str(number) if number is not None else None,
            raw=data,
        )
