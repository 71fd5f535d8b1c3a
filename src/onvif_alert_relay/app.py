"""Wire the relay together and own its lifecycle.

Push::  receiver → ingest → normalizer → bus → dispatcher → webhook
Poll::  subscription manager (timer) → gateway.poll → ingest → …

:meth:`RelayApp.status` is the status query; :meth:`RelayApp.stop` is the
graceful shutdown path.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from onvif_alert_relay.bus import EventBus
from onvif_alert_relay.config import AppConfig, callback_base_url
from onvif_alert_relay.dispatcher import AlertDispatcher
from onvif_alert_relay.errors import ParseError, RelayError
from onvif_alert_relay.gateway import DeviceGateway, SoapDeviceGateway
from onvif_alert_relay.models import (
    DeviceInfo,
    Event,
    RawNotification,
    SubscriptionMode,
    new_event_id,
)
from onvif_alert_relay.normalizer import Normalizer
from onvif_alert_relay.receiver import NotificationReceiver
from onvif_alert_relay.subscription import SubscriptionManager
from onvif_alert_relay.throttle import ThrottleEngine

logger = logging.getLogger(__name__)

_CATEGORY_LOG_LINES = {
    "motionalarm": "Motion detected",
    "peopledetection": "People detected",
    "objectdetection": "Object detected",
    "tamper": "Tampering detected",
    "device": "Device event",
}


class RelayApp:
    """Composition root for one camera."""

    def __init__(self, config: AppConfig, gateway: Optional[DeviceGateway] = None) -> None:
        self.config = config
        self.gateway: DeviceGateway = gateway or SoapDeviceGateway(config.camera)
        self.normalizer = Normalizer()
        self.bus = EventBus()

        throttling = config.alerts.throttling
        self.throttle = ThrottleEngine(
            window_ms=throttling.window_ms,
            max_per_window=throttling.max_per_window,
            debounce_ms=throttling.debounce_ms,
        )
        self.dispatcher = AlertDispatcher(
            config.alerts,
            throttle=self.throttle if throttling.enabled else None,
        )

        events = config.events
        self.receiver: Optional[NotificationReceiver] = None
        if events.mode is SubscriptionMode.PUSH:
            self.receiver = NotificationReceiver(
                events.push.endpoint,
                self.ingest,
                host=events.push.host,
                port=events.push.port,
                max_body_bytes=events.push.max_body_bytes,
            )

        self.subscriptions = SubscriptionManager(
            self.gateway,
            events.mode,
            self.ingest,
            polling=events.polling,
            renewal=events.subscription,
            callback_base_url=callback_base_url(events.push)
            if events.mode is SubscriptionMode.PUSH else None,
            call_timeout_s=config.camera.timeout_ms / 1000.0,
            on_renewal_failure=self._renewal_failed,
        )

        self.events_processed = 0
        self._running = False
        self._register_handlers()

    # ── wiring ──────────────────────────────────────────────────────

    def _register_handlers(self) -> None:
        self.bus.subscribe_all(self._log_event)
        for category in _CATEGORY_LOG_LINES:
            self.bus.subscribe(category, self._log_category_event)
        if self.config.alerts.enabled:
            self.bus.subscribe_all(self.dispatcher.submit)

    @staticmethod
    def _log_event(event: Event) -> None:
        logger.info(
            "Event received: %s (topic=%s, source=%s, timestamp=%s)",
            event.category, event.topic, event.source_tag, event.timestamp.isoformat(),
        )

    @staticmethod
    def _log_category_event(event: Event) -> None:
        level = logging.WARNING if event.category == "tamper" else logging.INFO
        logger.log(level, "%s: %s", _CATEGORY_LOG_LINES[event.category], dict(event.data))

    def _renewal_failed(self, exc: RelayError) -> None:
        event = Event(
            id=new_event_id(),
            timestamp=datetime.now(timezone.utc),
            category="subscription_failure",
            topic="relay/SubscriptionRenewalFailure",
            source_tag=self.config.instance_id,
            data={"error": str(exc)},
        )
        if self.config.alerts.enabled:
            self.dispatcher.submit(event)

    # ── ingestion ───────────────────────────────────────────────────

    def ingest(self, raw: RawNotification) -> int:
        """Normalize *raw* and publish every event; returns the event count."""
        try:
            events = self.normalizer.normalize(raw)
        except ParseError as exc:
            logger.warning("Dropping notification: %s", exc)
            return 0

        count = 0
        for event in events:
            self.events_processed += 1
            count += 1
            self.bus.publish(event)
        return count

    # ── lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            logger.warning("Relay is already running")
            return
        self._running = True

        try:
            self.dispatcher.device = await asyncio.wait_for(
                self.gateway.get_device_information(),
                timeout=self.config.camera.timeout_ms / 1000.0,
            )
        except (RelayError, asyncio.TimeoutError) as exc:
            logger.warning("Could not retrieve device information: %s", exc)
            self.dispatcher.device = DeviceInfo(hostname=self.config.camera.hostname)
        else:
            info = self.dispatcher.device
            logger.info(
                "Camera: %s %s (firmware %s, serial %s)",
                info.manufacturer, info.model, info.firmware_version, info.serial_number,
            )

        if not self.config.events.enabled:
            logger.info("Event ingestion disabled by configuration")
            return

        if self.receiver is not None:
            await self.receiver.start()
        await self.subscriptions.start()
        logger.info(
            "Relay started (mode=%s, subscription=%s)",
            self.config.events.method, self.subscriptions.state.value,
        )

    async def stop(self) -> None:
        """Stop the poll timer, close the listener, unsubscribe, drain alerts."""
        if not self._running:
            return
        self._running = False
        await self.subscriptions.stop_timers()
        if self.receiver is not None:
            await self.receiver.stop()
        await self.subscriptions.stop()
        await self.dispatcher.close()
        await self.gateway.close()
        logger.info("Relay stopped (processed %d events)", self.events_processed)

    def status(self) -> dict[str, Any]:
        dispatcher = self.dispatcher.stats()
        return {
            "subscriptionState": self.subscriptions.state.value,
            "eventsProcessed": self.events_processed,
            "alertsSent": self.dispatcher.alerts_sent,
            "perCategoryThrottleStatus": self.throttle.status_all(),
            "subscription": self.subscriptions.status(),
            "alertsFailed": dispatcher["alertsFailed"],
            "alertsSuppressed": dispatcher["alertsSuppressed"],
            "parseErrors": self.normalizer.parse_errors,
            "alerts": dispatcher,
        }
