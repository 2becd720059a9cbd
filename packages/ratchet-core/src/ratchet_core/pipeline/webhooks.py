"""Webhook notifications for pipeline lifecycle events.

Outward face of the approval channel and operator alerting: every
configured endpoint subscribed to an event receives an HTTP POST with a JSON
body ``{"event_type": ..., **event_data}``.

Delivery rules:
- 2xx/3xx responses succeed.
- 5xx responses, timeouts and transport errors are retried with exponential
  backoff (``backoff_base_seconds * 2 ** (attempt - 1)``).
- 4xx responses fail immediately.
- A failed delivery never fails the pipeline run that emitted it.

Example:
    >>> from ratchet_core.schemas.config import WebhookConfig
    >>> notifier = WebhookNotifier(
    ...     [WebhookConfig(url="https://hooks.example.com/ci", events=["approval_requested"])]
    ... )
    >>> results = await notifier.notify_all("approval_requested", {"environment": "prod"})
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from ratchet_core.schemas.config import WebhookConfig
from ratchet_core.telemetry.tracing import create_span

BACKOFF_BASE_SECONDS = 1.0
"""Base delay for exponential backoff (doubles each retry)."""

logger = structlog.get_logger(__name__)


class WebhookNotificationResult(BaseModel):
    """Result of delivering one event to one endpoint.

    Examples:
        >>> WebhookNotificationResult(success=True, status_code=204, url="https://x").attempts
        1
    """

    model_config = ConfigDict(extra="forbid")

    success: bool = Field(..., description="Whether the event was delivered")
    status_code: int | None = Field(default=None, description="Last HTTP status")
    url: str = Field(..., description="Target webhook URL")
    error: str | None = Field(default=None, description="Error if delivery failed")
    attempts: int = Field(default=1, ge=1, description="Delivery attempts made")


class WebhookNotifier:
    """Delivers pipeline events to configured webhook endpoints.

    Attributes:
        configs: Endpoint configurations.
    """

    def __init__(
        self,
        configs: list[WebhookConfig],
        *,
        backoff_base_seconds: float = BACKOFF_BASE_SECONDS,
    ) -> None:
        self.configs = list(configs)
        self._backoff_base_seconds = backoff_base_seconds

    def subscribers(self, event_type: str) -> list[WebhookConfig]:
        """Endpoints subscribed to ``event_type``."""
        return [config for config in self.configs if event_type in config.events]

    @staticmethod
    def build_payload(event_type: str, event_data: dict[str, Any]) -> dict[str, Any]:
        """Build the JSON body for an event."""
        return {"event_type": event_type, **event_data}

    def _backoff(self, attempt: int) -> float:
        return self._backoff_base_seconds * (2 ** (attempt - 1))

    async def notify(
        self,
        config: WebhookConfig,
        event_type: str,
        event_data: dict[str, Any],
    ) -> WebhookNotificationResult:
        """Deliver one event to one endpoint with retries.

        Args:
            config: Endpoint to deliver to.
            event_type: Pipeline event name.
            event_data: Event-specific payload fields.

        Returns:
            Delivery result; failures are reported, never raised.
        """
        url = config.url
        payload = self.build_payload(event_type, event_data)
        max_attempts = 1 + config.retry_count
        last_status_code: int | None = None
        last_error: str | None = None
        attempts = 0

        with create_span(
            "ratchet.webhook.notify",
            {
                "ratchet.webhook.url": url,
                "ratchet.webhook.event_type": event_type,
                "ratchet.webhook.max_attempts": max_attempts,
            },
        ) as span:
            start_time = time.monotonic()

            for attempt in range(1, max_attempts + 1):
                attempts = attempt
                retry = False
                try:
                    async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
                        response = await client.post(
                            url=url,
                            json=payload,
                            headers=config.headers or {},
                        )
                    last_status_code = response.status_code
                    if response.status_code < 400:
                        duration_ms = int((time.monotonic() - start_time) * 1000)
                        span.set_attribute("ratchet.webhook.attempts", attempt)
                        span.set_attribute("ratchet.webhook.status_code", response.status_code)
                        logger.info(
                            "webhook_notification_sent",
                            url=url,
                            event_type=event_type,
                            status_code=response.status_code,
                            attempts=attempt,
                            duration_ms=duration_ms,
                        )
                        return WebhookNotificationResult(
                            success=True,
                            status_code=response.status_code,
                            url=url,
                            attempts=attempt,
                        )
                    if response.status_code >= 500:
                        last_error = f"Server error: {response.status_code}"
                        retry = True
                    else:
                        last_error = f"Client error: {response.status_code}"
                except httpx.TimeoutException:
                    last_error = "Request timed out"
                    retry = True
                except httpx.RequestError as e:
                    last_error = str(e)
                    retry = True

                if not retry:
                    break
                if attempt < max_attempts:
                    delay = self._backoff(attempt)
                    logger.warning(
                        "webhook_notification_retry",
                        url=url,
                        event_type=event_type,
                        error=last_error,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        backoff_seconds=delay,
                    )
                    await asyncio.sleep(delay)

            span.set_attribute("ratchet.webhook.attempts", attempts)
            if last_status_code is not None:
                span.set_attribute("ratchet.webhook.status_code", last_status_code)
            logger.error(
                "webhook_notification_failed",
                url=url,
                event_type=event_type,
                status_code=last_status_code,
                error=last_error,
                attempts=attempts,
                duration_ms=int((time.monotonic() - start_time) * 1000),
            )
            return WebhookNotificationResult(
                success=False,
                status_code=last_status_code,
                url=url,
                error=last_error,
                attempts=attempts,
            )

    async def notify_all(
        self,
        event_type: str,
        event_data: dict[str, Any],
    ) -> list[WebhookNotificationResult]:
        """Deliver an event to every subscribed endpoint.

        Endpoints are notified one after another; a failing endpoint does not
        stop delivery to the rest.

        Returns:
            One result per subscribed endpoint, empty when none subscribe.
        """
        results: list[WebhookNotificationResult] = []
        for config in self.configs:
            if event_type not in config.events:
                logger.debug(
                    "webhook_skipped",
                    url=config.url,
                    event_type=event_type,
                    reason="event_type_not_subscribed",
                )
                continue
            results.append(await self.notify(config, event_type, event_data))
        return results

    def send(self, event_type: str, event_data: dict[str, Any]) -> list[WebhookNotificationResult]:
        """Synchronously deliver an event; never raises.

        Used from the orchestrator's worker threads, which run no event loop.
        """
        if not self.subscribers(event_type):
            return []
        try:
            return asyncio.run(self.notify_all(event_type, event_data))
        except Exception as e:
            # Notification problems must never fail a pipeline run.
            logger.error(
                "webhook_notification_error",
                event_type=event_type,
                error=str(e),
            )
            return []


__all__: list[str] = [
    "BACKOFF_BASE_SECONDS",
    "WebhookNotificationResult",
    "WebhookNotifier",
]
