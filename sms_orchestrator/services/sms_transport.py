"""Outbound SMS transports.

``TwilioSmsTransport`` posts to the Twilio Messages API.  Twilio docs:
https://www.twilio.com/docs/messaging/api/message-resource

``ConsoleSmsTransport`` keeps messages in memory and logs them; it backs
the ``simulate`` CLI command and is handy in tests.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod

import httpx

from sms_orchestrator.models import SmsSendRequest
from sms_orchestrator.services.http_base import (
    REQUEST_TIMEOUT_SECONDS,
    ExternalServiceError,
    RetryingHttpClient,
)

logger = logging.getLogger(__name__)


class SmsTransportError(ExternalServiceError):
    """Raised when an SMS could not be handed to the provider."""


class SmsTransport(ABC):
    @abstractmethod
    def send(self, request: SmsSendRequest) -> str:
        """Send one SMS and return the provider message id."""


class TwilioSmsTransport(RetryingHttpClient, SmsTransport):
    service_name = "twilio"
    error_class = SmsTransportError

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        base_url: str = "https://api.twilio.com/2010-04-01",
        status_callback_url: str | None = None,
    ):
        super().__init__(
            httpx.Client(
                base_url=base_url,
                auth=(account_sid, auth_token),
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        )
        self._account_sid = account_sid
        self._from_number = from_number
        self._status_callback_url = status_callback_url

    def send(self, request: SmsSendRequest) -> str:
        form = {
            "To": request.phone_number,
            "From": self._from_number,
            "Body": request.message,
        }
        if self._status_callback_url:
            form["StatusCallback"] = self._status_callback_url

        data = self._request(
            "POST", f"/Accounts/{self._account_sid}/Messages.json", data=form,
        )
        sid = data.get("sid")
        if not sid:
            raise SmsTransportError("Twilio response did not include a message sid")
        logger.info(
            "SMS sent to %s (%s, %d chars) sid=%s",
            request.phone_number, request.message_type, len(request.message), sid,
        )
        return sid


class ConsoleSmsTransport(SmsTransport):
    """Records sends instead of delivering them."""

    def __init__(self) -> None:
        self.sent: list[SmsSendRequest] = []
        self._lock = threading.Lock()

    def send(self, request: SmsSendRequest) -> str:
        with self._lock:
            self.sent.append(request)
        logger.info("[sms → %s] %s", request.phone_number, request.message)
        return f"SMconsole{uuid.uuid4().hex[:24]}"
