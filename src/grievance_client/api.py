from __future__ import annotations

from typing import Any, Callable, Optional, Union

import httpx
from loguru import logger

from .errors import ApiError
from .models import ComplaintReceipt, ComplaintSubmission

TokenProvider = Callable[[], Optional[str]]


class ComplaintAPI:
    """Thin async client for the complaint intake API.

    Only the create call is needed by the offline queue. Every failure is
    raised as ApiError; status 0 means the request never got an HTTP answer.

    Example:
        api = ComplaintAPI("https://api.example.org/api/v1", token="...")
        receipt = await api.create_complaint(ComplaintSubmission(summary="Broken streetlight"))
        await api.aclose()
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: Union[str, TokenProvider, None] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ComplaintAPI":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _auth_token(self) -> Optional[str]:
        if callable(self._token):
            return self._token()
        return self._token

    def has_token(self) -> bool:
        """True when a verified-phone auth token is available."""
        return bool(self._auth_token())

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ApiError("Request timeout. Please check your connection.", 0, "TIMEOUT") from exc
        except httpx.TransportError as exc:
            raise ApiError(f"Network error: {exc}", 0, "NETWORK_ERROR") from exc

        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            message = body.get("message") or body.get("error")
            if not message:
                message = f"HTTP error! status: {resp.status_code}"
            raise ApiError(message, resp.status_code, body.get("code"))

        try:
            return resp.json()
        except ValueError:
            # empty or non-JSON 2xx is still a success
            return {}

    async def create_complaint(
        self, submission: Union[ComplaintSubmission, dict[str, Any]]
    ) -> ComplaintReceipt:
        """POST /complaints."""
        if not isinstance(submission, ComplaintSubmission):
            submission = ComplaintSubmission.model_validate(submission)

        token = self._auth_token()
        if not token:
            raise ApiError(
                "Please verify your phone number to submit complaint", 401, "PHONE_NOT_VERIFIED"
            )
        if not submission.photo_url:
            raise ApiError("Photo is required for live proof.", 400, "PHOTO_MISSING")

        body = submission.to_request_body()
        logger.debug(
            f"Submitting complaint: title={body['title']!r} "
            f"has_location={body['latitude'] is not None and body['longitude'] is not None}"
        )
        raw = await self._request(
            "POST",
            "/complaints",
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )
        return ComplaintReceipt.from_response(raw)
