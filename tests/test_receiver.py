"""Tests for the push-mode notification receiver."""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from onvif_alert_relay.receiver import EMPTY_SOAP_ENVELOPE, NotificationReceiver


async def _client(receiver: NotificationReceiver) -> TestClient:
    client = TestClient(TestServer(receiver.build_app()))
    await client.start_server()
    return client


@pytest.mark.asyncio
async def test_post_under_endpoint_is_acknowledged() -> None:
    """A POST to <endpoint>/<id> hands the body off and returns a SOAP envelope."""
    received = []
    receiver = NotificationReceiver("/events", received.append)
    client = await _client(receiver)
    try:
        resp = await client.post("/events/sub-1", data=b"<Notify/>")
        assert resp.status == 200
        assert resp.content_type == "application/soap+xml"
        assert await resp.text() == EMPTY_SOAP_ENVELOPE
    finally:
        await client.close()
    assert [r.payload for r in received] == [b"<Notify/>"]
    assert receiver.received == 1


@pytest.mark.asyncio
async def test_garbage_body_still_acknowledged() -> None:
    """Processing failures never change the 200 acknowledgement."""

    def broken_sink(raw) -> None:
        raise ValueError("cannot parse")

    client = await _client(NotificationReceiver("/events/", broken_sink))
    try:
        resp = await client.post("/events/abc", data=b"\x00\xffnot xml")
        assert resp.status == 200
    finally:
        await client.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "method, path",
    [
        ("GET", "/events/sub-1"),
        ("PUT", "/events/sub-1"),
        ("POST", "/events"),
        ("POST", "/eventsX/sub-1"),
        ("POST", "/other/sub-1"),
    ],
)
async def test_everything_else_is_404(method, path) -> None:
    received = []
    client = await _client(NotificationReceiver("/events", received.append))
    try:
        resp = await client.request(method, path, data=b"<Notify/>")
        assert resp.status == 404
    finally:
        await client.close()
    assert received == []


@pytest.mark.asyncio
async def test_ack_failure_is_500() -> None:
    def bad_ack() -> web.Response:
        raise RuntimeError("no response")

    client = await _client(NotificationReceiver("/events", lambda raw: None, ack_factory=bad_ack))
    try:
        resp = await client.post("/events/sub-1", data=b"<Notify/>")
        assert resp.status == 500
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_large_notification_is_acknowledged() -> None:
    """Bodies past aiohttp's 1 MiB default are still read and acknowledged."""
    received = []
    client = await _client(NotificationReceiver("/events", received.append))
    body = b"<Notify>" + b"x" * (2 * 1024 * 1024) + b"</Notify>"
    try:
        resp = await client.post("/events/sub-1", data=body)
        assert resp.status == 200
    finally:
        await client.close()
    assert len(received[0].payload) == len(body)


@pytest.mark.asyncio
async def test_body_over_limit_is_413() -> None:
    received = []
    client = await _client(NotificationReceiver("/events", received.append, max_body_bytes=16))
    try:
        resp = await client.post("/events/sub-1", data=b"<Notify>" + b"x" * 64 + b"</Notify>")
        assert resp.status == 413
    finally:
        await client.close()
    assert received == []
