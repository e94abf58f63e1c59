"""Client for the user/profile service.

The orchestrator only reads customer context and asks the service to mint
portal links and log callback requests; it never writes profile data.
When ``PROFILE_SERVICE_URL`` is unset, :class:`NullProfileService` stands
in and every phone number is treated as an unknown customer.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

import httpx

from sms_orchestrator.models import ProfileContext
from sms_orchestrator.services.http_base import (
    REQUEST_TIMEOUT_SECONDS,
    ExternalServiceError,
    RetryingHttpClient,
)

logger = logging.getLogger(__name__)


class ProfileServiceError(ExternalServiceError):
    """Raised when a profile-service call fails after all retries."""


class ProfileService(ABC):
    @abstractmethod
    def get_context(self, phone_number: str) -> ProfileContext: ...

    @abstractmethod
    def create_portal_link(self, user_id: int, link_type: str) -> str: ...

    @abstractmethod
    def request_callback(
        self,
        user_id: int,
        phone_number: str,
        scheduled_for: datetime,
        reason: str | None = None,
    ) -> dict[str, Any]: ...


class ProfileServiceClient(RetryingHttpClient, ProfileService):
    service_name = "profile"
    error_class = ProfileServiceError

    def __init__(self, base_url: str, token: str | None = None):
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        super().__init__(
            httpx.Client(base_url=base_url, headers=headers, timeout=REQUEST_TIMEOUT_SECONDS)
        )

    def get_context(self, phone_number: str) -> ProfileContext:
        try:
            data = self._request("GET", "/users/lookup", params={"phone": phone_number})
        except ProfileServiceError as exc:
            if exc.status_code == 404:
                return ProfileContext(found=False)
            raise
        return ProfileContext.model_validate({"found": True, **data})

    def create_portal_link(self, user_id: int, link_type: str) -> str:
        data = self._request(
            "POST", "/magic-links", json_body={"user_id": user_id, "link_type": link_type},
        )
        url = data.get("url")
        if not url:
            raise ProfileServiceError("Magic link response did not include a url")
        logger.info("Portal link (%s) created for user %s", link_type, user_id)
        return url

    def request_callback(
        self,
        user_id: int,
        phone_number: str,
        scheduled_for: datetime,
        reason: str | None = None,
    ) -> dict[str, Any]:
        data = self._request(
            "POST",
            "/callbacks",
            json_body={
                "user_id": user_id,
                "phone_number": phone_number,
                "scheduled_for": scheduled_for.isoformat(),
                "reason": reason,
                "source": "ai_sms",
            },
        )
        logger.info("Callback requested for user %s at %s", user_id, scheduled_for.isoformat())
        return data


class NullProfileService(ProfileService):
    """Used when no profile service is configured."""

    def get_context(self, phone_number: str) -> ProfileContext:
        return ProfileContext(found=False)

    def create_portal_link(self, user_id: int, link_type: str) -> str:
        raise ProfileServiceError("Profile service is not configured")

    def request_callback(
        self,
        user_id: int,
        phone_number: str,
        scheduled_for: datetime,
        reason: str | None = None,
    ) -> dict[str, Any]:
        raise ProfileServiceError("Profile service is not configured")


def build_profile_service(base_url: str | None, token: str | None = None) -> ProfileService:
    if base_url:
        return ProfileServiceClient(base_url, token)
    logger.warning("PROFILE_SERVICE_URL not set, customer context disabled")
    return NullProfileService()
