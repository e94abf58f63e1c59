"""Shared httpx plumbing for the outbound REST clients.

Timeouts, connection errors and 5xx responses are retried with
exponential backoff; 4xx responses are raised immediately.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from sms_orchestrator.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0


class ExternalServiceError(Exception):
    """Raised when an external API call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RetryingHttpClient:
    """Base class: subclasses set ``service_name`` and ``error_class``."""

    service_name = "http"
    error_class: type[ExternalServiceError] = ExternalServiceError

    def __init__(self, client: httpx.Client) -> None:
        self._client = client

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute an HTTP request with exponential-backoff retries."""
        operation = f"{method} {path.split('?')[0]}"
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            t0 = time.perf_counter()
            try:
                response = self._client.request(
                    method,
                    path,
                    params=params,
                    json=json_body,
                    data=data,
                )
                if response.status_code >= 500:
                    raise self.error_class(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise self.error_class(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                metrics.record_success(
                    self.service_name, operation, latency_ms=(time.perf_counter() - t0) * 1000,
                )
                return self._decode(response)

            except httpx.TransportError as exc:
                last_error = exc
                metrics.record_failure(self.service_name, operation, error_type=type(exc).__name__)
                logger.warning(
                    "%s API attempt %d/%d failed (%s). Retrying in %.1fs…",
                    self.service_name,
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except ExternalServiceError as exc:
                metrics.record_failure(
                    self.service_name, operation,
                    error_type="5xx" if (exc.status_code or 0) >= 500 else "4xx",
                    latency_ms=(time.perf_counter() - t0) * 1000,
                )
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "%s API server error on attempt %d/%d. Retrying…",
                        self.service_name,
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise  # 4xx errors are not retried

            if attempt < MAX_RETRIES:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        status_code = getattr(last_error, "status_code", None)
        raise self.error_class(
            f"{self.service_name} API request failed after {MAX_RETRIES} retries: {last_error}",
            status_code=status_code,
        )

    def _decode(self, response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise self.error_class(
                f"{self.service_name} API returned an unreadable body: {exc}",
                status_code=response.status_code,
            ) from exc
