"""Subscription lifecycle against the Device Gateway.

Poll mode runs a fixed-interval poll loop on top of this state machine::

    Uninitialized → Subscribing → (created) → Active
                                → (failed, no retry) → Disabled
    Active   → (poll ok)   → Active
    Active   → (poll fail) → Degraded
    Degraded → (poll ok)   → Active
    Degraded → (retries == max) → Recreating → (ok) → Active
                                             → (fail) → Disabled
    Disabled → (restart()) → Subscribing

While ``Disabled`` every poll tick is a no-op.  Push mode performs a single
``subscribe`` call with the receiver's callback URL instead of polling.
A separate renewal task keeps the device-side subscription alive.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from onvif_alert_relay.config import PollingConfig, RenewalConfig, duration_seconds
from onvif_alert_relay.errors import RelayError, SubscriptionError, TransportError
from onvif_alert_relay.gateway import DeviceGateway
from onvif_alert_relay.models import (
    RawNotification,
    Subscription,
    SubscriptionHandle,
    SubscriptionMode,
    SubscriptionState,
)
from onvif_alert_relay.scheduler import PeriodicTask

logger = logging.getLogger(__name__)

T = TypeVar("T")

S = SubscriptionState
_ALLOWED = {
    S.UNINITIALIZED: {S.SUBSCRIBING},
    S.SUBSCRIBING: {S.ACTIVE, S.DISABLED},
    S.ACTIVE: {S.DEGRADED},
    S.DEGRADED: {S.ACTIVE, S.RECREATING},
    S.RECREATING: {S.ACTIVE, S.DISABLED},
    S.DISABLED: {S.SUBSCRIBING},
}

NotificationSink = Callable[[RawNotification], object]
RenewalFailureCallback = Callable[[RelayError], object]


class SubscriptionManager:
    """Owns the single :class:`Subscription` of this process.

    Parameters
    ----------
    gateway:
        Device Gateway used for every subscription call.
    mode:
        Push or poll.
    on_notification:
        Receives each polled :class:`RawNotification`.
    polling, renewal:
        Poll loop and renewal settings.
    callback_base_url:
        Receiver URL prefix (push mode); the subscription id is appended.
    call_timeout_s:
        Budget for every gateway call except ``poll``, which gets the pull
        timeout plus this budget.
    """

    def __init__(
        self,
        gateway: DeviceGateway,
        mode: SubscriptionMode,
        on_notification: NotificationSink,
        polling: Optional[PollingConfig] = None,
        renewal: Optional[RenewalConfig] = None,
        callback_base_url: Optional[str] = None,
        call_timeout_s: float = 30.0,
        on_renewal_failure: Optional[RenewalFailureCallback] = None,
    ) -> None:
        self._gateway = gateway
        self._on_notification = on_notification
        self._polling = polling or PollingConfig()
        self._renewal = renewal or RenewalConfig(renewal_enabled=False)
        self._callback_base_url = callback_base_url
        self._call_timeout_s = call_timeout_s
        self._on_renewal_failure = on_renewal_failure

        self._sub = Subscription(mode=mode)
        self._handle: Optional[SubscriptionHandle] = None
        self._poll_task: Optional[PeriodicTask] = None
        self._renew_task: Optional[PeriodicTask] = None
        self._renewal_failures = 0
        # one create/poll/recreate cycle at a time
        self._lock = asyncio.Lock()
        self.transitions: list[tuple[SubscriptionState, SubscriptionState]] = []

        if mode is SubscriptionMode.PUSH and not callback_base_url:
            raise ValueError("Push mode requires callback_base_url")

    # ── read-only accessors ─────────────────────────────────────────

    @property
    def state(self) -> SubscriptionState:
        return self._sub.state

    @property
    def subscription(self) -> Subscription:
        """A copy of the current subscription record."""
        return replace(self._sub)

    @property
    def callback_url(self) -> Optional[str]:
        if self._callback_base_url is None or not self._sub.id:
            return None
        return f"{self._callback_base_url}/{self._sub.id}"

    def status(self) -> dict[str, Any]:
        last = self._sub.last_activity_time
        return {
            "id": self._sub.id or None,
            "mode": self._sub.mode.value,
            "state": self._sub.state.value,
            "retryCount": self._sub.retry_count,
            "lastActivityTime": last.isoformat() if last else None,
            "renewalFailures": self._renewal_failures,
        }

    # ── lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        """Create the subscription and start the poll and renewal timers."""
        if self._sub.state is not S.UNINITIALIZED:
            logger.warning("Subscription manager already started (%s)", self._sub.state.value)
            return

        self._set_state(S.SUBSCRIBING)
        await self._create()

        if self._sub.mode is SubscriptionMode.POLL:
            self._poll_task = PeriodicTask(
                "poll", self._polling.pull_interval_ms / 1000.0, self.poll_once,
            )
            self._poll_task.start()
            logger.info(
                "Polling every %dms (limit=%d, timeout=%s)",
                self._polling.pull_interval_ms,
                self._polling.message_limit,
                self._polling.timeout,
            )

        if self._renewal.renewal_enabled:
            self._renew_task = PeriodicTask(
                "renew", self._renewal.renewal_interval_ms / 1000.0, self.renew_once,
            )
            self._renew_task.start()

    async def restart(self) -> None:
        """Manually recover a ``Disabled`` subscription."""
        async with self._lock:
            if self._sub.state is not S.DISABLED:
                logger.warning("Restart ignored: subscription is %s", self._sub.state.value)
                return
            self._sub.retry_count = 0
            self._set_state(S.SUBSCRIBING)
            await self._create()

    async def stop_timers(self) -> None:
        """Stop the poll and renewal tasks, letting an in-flight run finish."""
        for task in (self._poll_task, self._renew_task):
            if task is not None:
                await task.stop()
        self._poll_task = self._renew_task = None

    async def stop(self) -> None:
        """Stop timers, then unsubscribe (best-effort)."""
        await self.stop_timers()
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            await self._call(self._gateway.unsubscribe(handle))
        except RelayError as exc:
            logger.warning("Unsubscribe failed during shutdown: %s", exc)

    # ── poll cycle ──────────────────────────────────────────────────

    async def poll_once(self) -> None:
        """One poll cycle; a no-op unless the subscription is usable.

        Skipped while a restart or another cycle holds the lock.
        """
        if self._lock.locked():
            logger.debug("Subscription busy, skipping poll cycle")
            return
        async with self._lock:
            await self._poll_cycle()

    async def _poll_cycle(self) -> None:
        state = self._sub.state
        if state is S.SUBSCRIBING:
            # initial creation failed earlier and retry is enabled
            await self._create()
            return
        if state not in (S.ACTIVE, S.DEGRADED) or self._handle is None:
            return

        budget = self._call_timeout_s + _duration_or_zero(self._polling.timeout)
        try:
            notifications = await self._call(
                self._gateway.poll(self._handle, self._polling.message_limit, self._polling.timeout),
                budget,
            )
        except (SubscriptionError, TransportError) as exc:
            await self._poll_failed(exc)
            return

        self._sub.retry_count = 0
        self._sub.last_activity_time = datetime.now(timezone.utc)
        if state is S.DEGRADED:
            self._set_state(S.ACTIVE)

        if notifications:
            logger.debug("Poll returned %d notification(s)", len(notifications))
        for raw in notifications:
            try:
                self._on_notification(raw)
            except Exception:
                logger.exception("Notification sink failed")

    async def _poll_failed(self, exc: RelayError) -> None:
        self._sub.retry_count += 1
        if self._sub.state is S.ACTIVE:
            self._set_state(S.DEGRADED)
        logger.warning(
            "Poll failed (attempt %d/%d): %s",
            self._sub.retry_count, self._polling.max_retries, exc,
        )
        if self._sub.retry_count >= self._polling.max_retries:
            self._set_state(S.RECREATING)
            await self._recreate()

    # ── create / recreate ───────────────────────────────────────────

    async def _create(self) -> bool:
        try:
            handle = await self._call(self._gateway.create_subscription(self._sub.mode))
            self._sub.id = handle.id
            if self._sub.mode is SubscriptionMode.PUSH:
                await self._call(self._gateway.subscribe(handle, self.callback_url))
        except (SubscriptionError, TransportError) as exc:
            return self._create_failed(exc)

        self._handle = handle
        self._sub.retry_count = 0
        self._sub.last_activity_time = datetime.now(timezone.utc)
        self._set_state(S.ACTIVE)
        return True

    def _create_failed(self, exc: RelayError) -> bool:
        retry = self._sub.mode is SubscriptionMode.POLL and self._polling.retry_on_error
        if retry:
            self._sub.retry_count += 1
            if self._sub.retry_count < self._polling.max_retries:
                logger.warning(
                    "Subscription creation failed (attempt %d/%d), retrying next cycle: %s",
                    self._sub.retry_count, self._polling.max_retries, exc,
                )
                return False
        logger.error("Subscription creation failed, events disabled: %s", exc)
        self._set_state(S.DISABLED)
        return False

    async def _recreate(self) -> None:
        logger.info("Max retries reached, recreating subscription")
        old, self._handle = self._handle, None
        if old is not None:
            try:
                await self._call(self._gateway.unsubscribe(old))
            except RelayError as exc:
                logger.debug("Unsubscribe of stale subscription failed: %s", exc)

        try:
            handle = await self._call(self._gateway.create_subscription(self._sub.mode))
        except (SubscriptionError, TransportError) as exc:
            logger.error("Failed to recreate subscription, disabling events: %s", exc)
            self._set_state(S.DISABLED)
            return

        self._handle = handle
        self._sub.id = handle.id
        self._sub.retry_count = 0
        self._sub.last_activity_time = datetime.now(timezone.utc)
        self._set_state(S.ACTIVE)

    # ── renewal ─────────────────────────────────────────────────────

    async def renew_once(self) -> None:
        """Extend the device-side subscription; never changes state."""
        if self._sub.state not in (S.ACTIVE, S.DEGRADED) or self._handle is None:
            return
        try:
            await self._call(
                self._gateway.renew(self._handle),
                self._renewal.renewal_timeout_ms / 1000.0,
            )
        except (SubscriptionError, TransportError) as exc:
            self._renewal_failures += 1
            logger.warning(
                "Subscription renewal failed (%d/%d): %s",
                self._renewal_failures, self._renewal.max_renewal_retries, exc,
            )
            if self._renewal_failures == self._renewal.max_renewal_retries:
                logger.error("Subscription renewal failed %d times in a row", self._renewal_failures)
                if self._renewal.alert_on_failure and self._on_renewal_failure is not None:
                    self._on_renewal_failure(exc)
            return

        if self._renewal_failures:
            logger.info("Subscription renewal recovered")
        self._renewal_failures = 0
        logger.debug("Subscription renewed")

    # ── helpers ─────────────────────────────────────────────────────

    async def _call(self, coro: Awaitable[T], budget: Optional[float] = None) -> T:
        timeout = budget if budget is not None else self._call_timeout_s
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"Gateway call timed out after {timeout:.1f}s") from exc

    def _set_state(self, new: SubscriptionState) -> None:
        old = self._sub.state
        if new not in _ALLOWED[old]:
            raise RuntimeError(f"Illegal subscription transition {old.value} → {new.value}")
        self._sub.state = new
        self.transitions.append((old, new))
        logger.info("Subscription state: %s → %s", old.value, new.value)


def _duration_or_zero(value: str) -> float:
    try:
        return duration_seconds(value)
    except ValueError:
        return 0.0
