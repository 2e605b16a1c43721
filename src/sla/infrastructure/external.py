"""
SLA External Service Integrations
==================================

External services for SLA breach tracking:
- Notification service client (per-recipient email/queue messages)
- Slack webhook breach alerts
- APScheduler for the background breach scanner
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from core import NotificationDeliveryException
from sla.application import IBreachAlerter, INotifier
from sla.domain import Recipient
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if self._clock() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._failure_count >= self.failure_threshold or self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class HttpNotificationClient(INotifier):
    """
    Client for the outbound notification service.

    Posts one JSON message per recipient. Queueing and retries belong to
    the notification service, so each message is attempted once; any
    failure raises ``NotificationDeliveryException``.
    """

    def __init__(
        self,
        service_url: Optional[str],
        timeout_seconds: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self._service_url = service_url
        self._timeout_seconds = timeout_seconds
        self._http_client = http_client
        self._circuit_breaker = circuit_breaker or CircuitBreaker()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout_seconds)
        return self._http_client

    async def notify_users(self, recipients: List[Recipient], details: Dict[str, Any]) -> None:
        await self._send([
            {"to": recipient.email, "user_id": recipient.user_id, "name": recipient.name, **details}
            for recipient in recipients
        ])

    async def notify_addresses(self, addresses: List[str], details: Dict[str, Any]) -> None:
        await self._send([{"to": address, "user_id": None, "name": None, **details} for address in addresses])

    async def _send(self, messages: List[Dict[str, Any]]) -> None:
        if not messages:
            return

        if not self._service_url:
            logger.debug(
                "Notification service URL not configured, skipping notification",
                extra={"messages": len(messages)}
            )
            return

        if not self._circuit_breaker.allow_request():
            raise NotificationDeliveryException("Circuit breaker open, notification service unavailable")

        client = await self._get_client()
        for message in messages:
            try:
                response = await client.post(self._service_url, json=message)
                response.raise_for_status()
            except httpx.HTTPError as e:
                self._circuit_breaker.record_failure()
                raise NotificationDeliveryException(f"Failed to queue notification for {message['to']}: {e}") from e

        self._circuit_breaker.record_success()
        logger.info(
            "Notifications queued",
            extra={"ticket_id": messages[0].get("ticket_id"), "count": len(messages)}
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class SlackClient(IBreachAlerter):
    """
    Slack webhook client with circuit breaker and retry logic.

    Posts one Block Kit alert per breach with:
    - Circuit breaker to prevent cascade failures
    - Exponential backoff retry
    - Timeout handling
    """

    def __init__(
        self,
        webhook_url: Optional[str],
        channel: str = "#sla-breaches",
        web_app_url: str = "http://localhost:5173",
        timeout_seconds: float = 5.0,
        max_retries: int = 3,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._webhook_url = webhook_url
        self._channel = channel
        self._web_app_url = web_app_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._max_retries = max_retries
        self._circuit_breaker = CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60
        )
        self._http_client = http_client

    @property
    def is_configured(self) -> bool:
        return bool(self._webhook_url)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout_seconds)
        return self._http_client

    def build_message(self, details: Dict[str, Any]) -> Dict[str, Any]:
        """Build Slack Block Kit message."""
        payload = details.get("payload") or {}
        ticket_id = details.get("ticket_id")
        ticket_url = f"{self._web_app_url}/tickets/{ticket_id}"
        breach_type = str(payload.get("breachType", "")).replace("_", " ").title()

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": "\U0001F6A8 SLA Breach Alert",
                    "emoji": True
                }
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*<{ticket_url}|{details.get('subject', ticket_id)}>*"}
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*SLA Type:*\n{breach_type}"},
                    {"type": "mrkdwn", "text": f"*Priority:*\n{payload.get('priority', 'Unknown')}"},
                    {"type": "mrkdwn", "text": f"*Due:*\n{payload.get('dueAt') or 'Unknown'}"},
                    {"type": "mrkdwn", "text": "*Status:*\n\U0001F534 BREACHED"}
                ]
            }
        ]

        return {
            "channel": self._channel,
            "text": details.get("subject", "SLA Breach"),
            "blocks": blocks
        }

    async def alert(self, details: Dict[str, Any]) -> bool:
        """
        Send breach alert to Slack webhook.

        Returns:
            True if sent successfully or Slack is not configured, False otherwise
        """
        if not self._webhook_url:
            logger.debug("Slack webhook URL not configured, skipping alert")
            return True

        ticket_id = details.get("ticket_id")
        if not self._circuit_breaker.allow_request():
            logger.warning(
                "Circuit breaker open, skipping Slack alert",
                extra={"ticket_id": ticket_id}
            )
            return False

        message = self.build_message(details)

        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._webhook_url, json=message)

                if response.status_code == 200:
                    self._circuit_breaker.record_success()
                    logger.info(
                        "Slack alert sent",
                        extra={"ticket_id": ticket_id}
                    )
                    return True

                logger.warning(
                    "Slack webhook returned non-200",
                    extra={
                        "status_code": response.status_code,
                        "attempt": attempt + 1
                    }
                )
            except httpx.HTTPError as e:
                logger.error(
                    "Slack alert failed",
                    extra={
                        "error": str(e),
                        "attempt": attempt + 1,
                        "ticket_id": ticket_id
                    }
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(2 ** attempt)

        self._circuit_breaker.record_failure()
        return False

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class SLAScheduler:
    """
    Wrapper for APScheduler driving the breach scanner.

    One interval job with ``max_instances=1``; the first run fires
    immediately on start.
    """

    JOB_ID = "sla_breach_scan"

    def __init__(self, interval_seconds: float = 60.0):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[Any]], run_immediately: bool = True) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("SLA scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)

        job_options: Dict[str, Any] = {}
        if run_immediately:
            job_options["next_run_time"] = datetime.now(timezone.utc)

        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id=self.JOB_ID,
            name="SLA Breach Scan",
            misfire_grace_time=max(1, int(self.interval_seconds)),
            coalesce=True,
            max_instances=1,
            replace_existing=True,
            **job_options
        )

        self._scheduler.start()
        self._running = True

        logger.info(
            "SLA scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop scheduling new cycles."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=True)
            self._scheduler = None

        self._running = False
        logger.info("SLA scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
