"""Turn admitted events into webhook alerts.

Flow for every event handed to :meth:`AlertDispatcher.submit`::

    enabled?  ── no ──→ drop
    throttle  ── suppressed ──→ drop (counted, logged at debug)
    build AlertPayload (severity + message)
    background task: POST webhook, up to ``retry_attempts`` times
      ├─ 2xx on any attempt      → alertsSent += 1, notify on_sent
      └─ all attempts failed     → DeliveryError, notify on_failure

``submit`` never blocks on the network; ingestion keeps running while
deliveries are in flight.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import aiohttp
import orjson

from onvif_alert_relay.config import AlertsConfig
from onvif_alert_relay.errors import DeliveryError, TransportError
from onvif_alert_relay.models import (
    AlertPayload,
    DeliveryResult,
    DeviceInfo,
    Event,
    ThrottleDecision,
)
from onvif_alert_relay.redactor import mask_url
from onvif_alert_relay.throttle import ThrottleEngine

logger = logging.getLogger(__name__)

SEVERITY_BY_CATEGORY = {
    "peopledetection": "high",
    "tamper": "critical",
    "tampering": "critical",
    "motionalarm": "medium",
    "motion": "medium",
    "objectdetection": "medium",
    "device": "low",
}
DEFAULT_SEVERITY = "medium"

_MESSAGE_TEMPLATES = {
    "peopledetection": "👤 Person detected at {when}",
    "motionalarm": "🚶 Motion detected at {when}",
    "motion": "🚶 Motion detected at {when}",
    "objectdetection": "🎯 Object detected at {when}",
    "tamper": "⚠️ Camera tampering detected at {when}",
    "tampering": "⚠️ Camera tampering detected at {when}",
    "device": "🔧 Device event occurred at {when}",
}

SentCallback = Callable[[AlertPayload, DeliveryResult], object]
FailureCallback = Callable[[AlertPayload, DeliveryError], object]


def determine_severity(category: str) -> str:
    return SEVERITY_BY_CATEGORY.get(category.lower(), DEFAULT_SEVERITY)


def render_message(event: Event) -> str:
    when = event.timestamp.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    template = _MESSAGE_TEMPLATES.get(event.category.lower())
    if template is None:
        return f"🔔 {event.category} event detected at {when}"
    return template.format(when=when)


def build_payload(event: Event, device: Optional[DeviceInfo] = None) -> AlertPayload:
    """Snapshot *event* (and optional device context) into an alert body."""
    camera_info = None
    if device is not None:
        camera_info = {
            "hostname": device.hostname,
            "model": device.model,
            "manufacturer": device.manufacturer,
        }
    return AlertPayload(
        event_id=event.id,
        event_type=event.category,
        timestamp=event.timestamp.isoformat(),
        topic=event.topic,
        source=event.source_tag,
        data=dict(event.data),
        severity=determine_severity(event.category),
        message=render_message(event),
        camera_info=camera_info,
    )


class AlertDispatcher:
    """Throttles events and delivers the survivors to a webhook.

    Parameters
    ----------
    config:
        Alert settings (URL, timeouts, retry policy).
    throttle:
        Shared throttle engine; ``None`` disables throttling.
    device:
        Device context attached to every alert as ``cameraInfo``.
    """

    def __init__(
        self,
        config: AlertsConfig,
        throttle: Optional[ThrottleEngine] = None,
        device: Optional[DeviceInfo] = None,
    ) -> None:
        self._config = config
        self._throttle = throttle
        self.device = device
        self._enabled = config.enabled
        self._session: Optional[aiohttp.ClientSession] = None
        self._inflight: set[asyncio.Task] = set()
        self._on_sent: list[SentCallback] = []
        self._on_failure: list[FailureCallback] = []

        self.alerts_sent = 0
        self.alerts_failed = 0
        self.alerts_suppressed = 0

    # ── toggles / observers ─────────────────────────────────────────

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> None:
        self._enabled = True
        logger.info("Alert dispatch enabled")

    def disable(self) -> None:
        self._enabled = False
        logger.info("Alert dispatch disabled")

    def on_sent(self, callback: SentCallback) -> None:
        self._on_sent.append(callback)

    def on_failure(self, callback: FailureCallback) -> None:
        self._on_failure.append(callback)

    # ── ingestion side ──────────────────────────────────────────────

    def submit(self, event: Event) -> Optional[asyncio.Task]:
        """Throttle *event* and, if admitted, start delivering it.

        Must be called from within the running event loop.  Returns the
        delivery task, or ``None`` when the event was not dispatched.
        """
        if not self._enabled:
            logger.debug("Alert dispatch disabled, skipping %s", event.id)
            return None

        if self._throttle is not None:
            decision = self._throttle.evaluate(event.category)
            if decision is not ThrottleDecision.ADMITTED:
                self.alerts_suppressed += 1
                logger.debug("Alert for %s %s: %s", event.category, event.id, decision.value)
                return None

        payload = build_payload(event, self.device)
        task = asyncio.get_running_loop().create_task(self._deliver_and_report(payload))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _deliver_and_report(self, payload: AlertPayload) -> None:
        try:
            result = await self.deliver(payload)
        except DeliveryError as exc:
            self.alerts_failed += 1
            logger.error("Alert for %s %s not delivered: %s", payload.event_type, payload.event_id, exc)
            self._notify(self._on_failure, payload, exc)
            return

        self.alerts_sent += 1
        logger.info(
            "Alert sent for %s event %s (attempts=%d, total=%d)",
            payload.event_type, payload.event_id, result.attempts, self.alerts_sent,
        )
        self._notify(self._on_sent, payload, result)

    @staticmethod
    def _notify(callbacks: list, payload: AlertPayload, outcome: Any) -> None:
        for callback in list(callbacks):
            try:
                callback(payload, outcome)
            except Exception:
                logger.exception("Alert observer %r failed", callback)

    # ── delivery ────────────────────────────────────────────────────

    async def deliver(self, payload: AlertPayload) -> DeliveryResult:
        """POST *payload* with bounded retries.

        Raises
        ------
        DeliveryError
            When every attempt failed (non-2xx, network error, or timeout).
        """
        attempts = max(1, self._config.retry_attempts)
        body = orjson.dumps(payload.to_dict())
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                status = await self._post(body)
            except TransportError as exc:
                last_error = exc
                if attempt < attempts:
                    logger.warning(
                        "Webhook attempt %d/%d failed (%s), retrying in %dms",
                        attempt, attempts, exc, self._config.retry_delay_ms,
                    )
                    await asyncio.sleep(self._config.retry_delay_ms / 1000.0)
                continue

            if attempt > 1:
                logger.info("Webhook delivered on attempt %d", attempt)
            return DeliveryResult(attempts=attempt, status=status)

        raise DeliveryError(attempts, last_error)

    async def _post(self, body: bytes) -> int:
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=self._config.timeout_ms / 1000.0)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._config.user_agent,
        }
        try:
            async with session.post(
                self._config.webhook_url, data=body, headers=headers, timeout=timeout,
            ) as response:
                if not 200 <= response.status < 300:
                    raise TransportError(
                        f"HTTP {response.status}: {response.reason}", status=response.status,
                    )
                return response.status
        except asyncio.TimeoutError as exc:
            raise TransportError(f"Timed out after {self._config.timeout_ms}ms") from exc
        except aiohttp.ClientError as exc:
            raise TransportError(str(exc)) from exc

    async def test_webhook(self) -> bool:
        """Send a ``test`` alert; ``True`` if the webhook accepted it."""
        now = datetime.now(timezone.utc)
        payload = AlertPayload(
            event_id=f"test-{int(time.time() * 1000)}",
            event_type="test",
            timestamp=now.isoformat(),
            topic="test/webhook",
            source="onvif-alert-relay",
            data={"test": True},
            severity="low",
            message="🧪 Test alert from onvif-alert-relay",
        )
        try:
            await self.deliver(payload)
        except DeliveryError as exc:
            logger.error("Webhook test failed: %s", exc)
            return False
        logger.info("Webhook test succeeded (%s)", mask_url(self._config.webhook_url))
        return True

    # ── lifecycle / status ──────────────────────────────────────────

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def drain(self) -> None:
        """Wait for in-flight deliveries; each attempt is bounded by its timeout."""
        pending = list(self._inflight)
        if pending:
            logger.info("Waiting for %d in-flight alert(s)", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "enabled": self._enabled,
            "alertsSent": self.alerts_sent,
            "alertsFailed": self.alerts_failed,
            "alertsSuppressed": self.alerts_suppressed,
            "webhookUrl": mask_url(self._config.webhook_url),
        }
        if self._throttle is not None:
            stats["throttling"] = {
                "windowMs": self._throttle.window_ms,
                "maxPerWindow": self._throttle.max_per_window,
                "debounceMs": self._throttle.debounce_ms,
            }
        return stats
