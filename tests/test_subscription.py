"""Tests for the subscription manager state machine."""

import asyncio

import pytest

from onvif_alert_relay.config import PollingConfig, RenewalConfig
from onvif_alert_relay.errors import SubscriptionError, TransportError
from onvif_alert_relay.models import (
    RawNotification,
    SubscriptionHandle,
    SubscriptionMode,
    SubscriptionState,
)
from onvif_alert_relay.subscription import SubscriptionManager

S = SubscriptionState


class FakeGateway:
    """Scriptable gateway: each ``fail_*`` counter fails that many calls."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail_create = 0
        self.fail_poll = 0
        self.fail_renew = 0
        self.poll_result: list[RawNotification] = []
        self.poll_delay = 0.0
        self.create_delay = 0.0
        self._next_id = 0

    async def create_subscription(self, mode):
        self.calls.append("create")
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.fail_create:
            self.fail_create -= 1
            raise SubscriptionError("create rejected")
        self._next_id += 1
        return SubscriptionHandle(id=f"sub-{self._next_id}", mode=mode, address="http://cam/sub")

    async def subscribe(self, handle, callback_url):
        self.calls.append(f"subscribe {callback_url}")

    async def poll(self, handle, limit, timeout):
        self.calls.append("poll")
        if self.poll_delay:
            await asyncio.sleep(self.poll_delay)
        if self.fail_poll:
            self.fail_poll -= 1
            raise TransportError("connection reset")
        return list(self.poll_result)

    async def unsubscribe(self, handle):
        self.calls.append("unsubscribe")

    async def renew(self, handle):
        self.calls.append("renew")
        if self.fail_renew:
            self.fail_renew -= 1
            raise TransportError("renew timed out")

    async def get_device_information(self):
        raise NotImplementedError

    async def close(self):
        pass


def _manager(gateway, mode=SubscriptionMode.POLL, sink=None, **kwargs) -> SubscriptionManager:
    polling = kwargs.pop("polling", PollingConfig(pull_interval_ms=60000, max_retries=3))
    renewal = kwargs.pop("renewal", RenewalConfig(renewal_enabled=False))
    kwargs.setdefault("call_timeout_s", 1.0)
    return SubscriptionManager(
        gateway, mode, sink or (lambda raw: None),
        polling=polling, renewal=renewal, **kwargs,
    )


@pytest.mark.asyncio
async def test_start_poll_mode_becomes_active() -> None:
    gateway = FakeGateway()
    manager = _manager(gateway)
    await manager.start()
    try:
        assert manager.state is S.ACTIVE
        assert manager.subscription.id == "sub-1"
        assert manager.transitions == [(S.UNINITIALIZED, S.SUBSCRIBING), (S.SUBSCRIBING, S.ACTIVE)]
    finally:
        await manager.stop()
    assert gateway.calls[-1] == "unsubscribe"


@pytest.mark.asyncio
async def test_poll_delivers_notifications() -> None:
    received = []
    gateway = FakeGateway()
    gateway.poll_result = [RawNotification(payload=b"<a/>"), RawNotification(payload=b"<b/>")]
    manager = _manager(gateway, sink=received.append)
    await manager.start()
    await manager.poll_once()
    await manager.stop()
    assert [r.payload for r in received] == [b"<a/>", b"<b/>"]
    assert manager.subscription.last_activity_time is not None


@pytest.mark.asyncio
async def test_poll_failures_degrade_recreate_then_recover() -> None:
    """max_retries failures: Active → Degraded → Recreating → Active."""
    gateway = FakeGateway()
    manager = _manager(gateway)
    await manager.start()
    gateway.fail_poll = 3

    await manager.poll_once()
    assert manager.state is S.DEGRADED
    await manager.poll_once()
    assert manager.state is S.DEGRADED
    await manager.poll_once()

    assert manager.state is S.ACTIVE
    assert manager.subscription.id == "sub-2"
    assert (S.DEGRADED, S.RECREATING) in manager.transitions
    assert (S.RECREATING, S.ACTIVE) in manager.transitions
    await manager.stop()


@pytest.mark.asyncio
async def test_failed_recreate_disables_and_polls_become_noops() -> None:
    """A failed recreate lands in Disabled; later poll cycles call nothing."""
    gateway = FakeGateway()
    manager = _manager(gateway)
    await manager.start()
    gateway.fail_poll = 3
    gateway.fail_create = 1

    for _ in range(3):
        await manager.poll_once()
    assert manager.state is S.DISABLED
    assert manager.transitions[-3:] == [
        (S.ACTIVE, S.DEGRADED),
        (S.DEGRADED, S.RECREATING),
        (S.RECREATING, S.DISABLED),
    ]

    calls_before = list(gateway.calls)
    await manager.poll_once()
    await manager.poll_once()
    assert gateway.calls == calls_before
    await manager.stop()


@pytest.mark.asyncio
async def test_successful_poll_resets_retry_count() -> None:
    gateway = FakeGateway()
    manager = _manager(gateway)
    await manager.start()
    gateway.fail_poll = 2
    await manager.poll_once()
    await manager.poll_once()
    assert manager.subscription.retry_count == 2
    await manager.poll_once()
    assert manager.state is S.ACTIVE
    assert manager.subscription.retry_count == 0
    await manager.stop()


@pytest.mark.asyncio
async def test_restart_from_disabled() -> None:
    gateway = FakeGateway()
    gateway.fail_create = 1
    manager = _manager(gateway, polling=PollingConfig(retry_on_error=False, pull_interval_ms=60000))
    await manager.start()
    assert manager.state is S.DISABLED

    await manager.restart()
    assert manager.state is S.ACTIVE
    assert (S.DISABLED, S.SUBSCRIBING) in manager.transitions
    await manager.stop()


@pytest.mark.asyncio
async def test_restart_ignored_unless_disabled() -> None:
    gateway = FakeGateway()
    manager = _manager(gateway)
    await manager.start()
    await manager.restart()
    assert gateway.calls.count("create") == 1
    await manager.stop()


@pytest.mark.asyncio
async def test_poll_ticks_during_restart_do_not_create_twice(caplog) -> None:
    """A slow restart holds off poll ticks; one new subscription, no bad transition."""
    gateway = FakeGateway()
    gateway.fail_create = 1
    manager = _manager(
        gateway, polling=PollingConfig(retry_on_error=False, pull_interval_ms=10),
    )
    await manager.start()
    assert manager.state is S.DISABLED

    gateway.create_delay = 0.05
    with caplog.at_level("ERROR", logger="onvif_alert_relay.scheduler"):
        await manager.restart()
        await asyncio.sleep(0.05)
    await manager.stop()

    assert gateway.calls.count("create") == 2
    assert manager.transitions[-2:] == [(S.DISABLED, S.SUBSCRIBING), (S.SUBSCRIBING, S.ACTIVE)]
    assert not [r for r in caplog.records if r.name == "onvif_alert_relay.scheduler"]


@pytest.mark.asyncio
async def test_initial_creation_retried_on_poll_ticks() -> None:
    """With retry_on_error, creation failures stay Subscribing until max_retries."""
    gateway = FakeGateway()
    gateway.fail_create = 2
    manager = _manager(gateway)
    await manager.start()
    assert manager.state is S.SUBSCRIBING

    await manager.poll_once()
    assert manager.state is S.SUBSCRIBING
    await manager.poll_once()
    assert manager.state is S.ACTIVE
    assert "poll" not in gateway.calls
    await manager.stop()


@pytest.mark.asyncio
async def test_initial_creation_gives_up_after_max_retries() -> None:
    gateway = FakeGateway()
    gateway.fail_create = 10
    manager = _manager(gateway)
    await manager.start()
    await manager.poll_once()
    await manager.poll_once()
    assert manager.state is S.DISABLED
    await manager.stop()


@pytest.mark.asyncio
async def test_push_mode_subscribes_with_callback_url() -> None:
    gateway = FakeGateway()
    manager = _manager(gateway, mode=SubscriptionMode.PUSH,
                       callback_base_url="http://10.0.0.2:3001/events")
    await manager.start()
    assert manager.state is S.ACTIVE
    assert "subscribe http://10.0.0.2:3001/events/sub-1" in gateway.calls
    assert manager.callback_url == "http://10.0.0.2:3001/events/sub-1"
    await manager.stop()


def test_push_mode_requires_callback_url() -> None:
    with pytest.raises(ValueError):
        _manager(FakeGateway(), mode=SubscriptionMode.PUSH)


@pytest.mark.asyncio
async def test_push_creation_failure_disables() -> None:
    gateway = FakeGateway()
    gateway.fail_create = 1
    manager = _manager(gateway, mode=SubscriptionMode.PUSH,
                       callback_base_url="http://10.0.0.2:3001/events")
    await manager.start()
    assert manager.state is S.DISABLED
    await manager.stop()


@pytest.mark.asyncio
async def test_slow_gateway_call_is_a_transport_failure() -> None:
    """A poll exceeding its budget counts as a failed cycle."""
    gateway = FakeGateway()
    manager = _manager(
        gateway,
        polling=PollingConfig(pull_interval_ms=60000, timeout="PT0S", max_retries=3),
        call_timeout_s=0.05,
    )
    await manager.start()
    gateway.poll_delay = 5.0
    await manager.poll_once()
    assert manager.state is S.DEGRADED
    await manager.stop()


# ── renewal ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_renewal_failures_reported_once_at_threshold() -> None:
    """Consecutive renewal failures hit the callback exactly at the limit."""
    failures = []
    gateway = FakeGateway()
    manager = _manager(
        gateway,
        renewal=RenewalConfig(renewal_enabled=False, max_renewal_retries=2, alert_on_failure=True),
        on_renewal_failure=failures.append,
    )
    await manager.start()
    gateway.fail_renew = 3

    await manager.renew_once()
    assert failures == []
    await manager.renew_once()
    assert len(failures) == 1
    await manager.renew_once()
    assert len(failures) == 1
    assert manager.state is S.ACTIVE

    await manager.renew_once()
    assert manager.status()["renewalFailures"] == 0
    await manager.stop()


@pytest.mark.asyncio
async def test_renewal_skipped_when_not_usable() -> None:
    gateway = FakeGateway()
    gateway.fail_create = 1
    manager = _manager(gateway, polling=PollingConfig(retry_on_error=False))
    await manager.start()
    await manager.renew_once()
    assert "renew" not in gateway.calls
    await manager.stop()


@pytest.mark.asyncio
async def test_renewal_task_runs_periodically() -> None:
    gateway = FakeGateway()
    manager = _manager(
        gateway,
        renewal=RenewalConfig(renewal_enabled=True, renewal_interval_ms=10),
    )
    await manager.start()
    await asyncio.sleep(0.1)
    await manager.stop()
    assert gateway.calls.count("renew") >= 2
