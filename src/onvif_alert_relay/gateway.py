"""Device Gateway: the relay's view of the camera's event service.

:class:`DeviceGateway` is the collaborator interface the subscription
manager depends on.  :class:`SoapDeviceGateway` implements it with the
handful of ONVIF / WS-BaseNotification SOAP calls the relay needs::

    create_subscription(POLL)  → CreatePullPointSubscription
    create_subscription(PUSH)  → (local handle only)
    subscribe(handle, url)     → Subscribe (ConsumerReference = url)
    poll(handle, n, timeout)   → PullMessages
    renew(handle)              → Renew
    unsubscribe(handle)        → Unsubscribe
    get_device_information()   → GetDeviceInformation

Network failures surface as :class:`TransportError`; SOAP faults and
non-2xx replies as :class:`SubscriptionError`.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import os
import uuid
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Optional, Protocol
from xml.sax.saxutils import escape

import aiohttp

from onvif_alert_relay.config import CameraConfig, duration_seconds
from onvif_alert_relay.errors import SubscriptionError, TransportError
from onvif_alert_relay.models import (
    DeviceInfo,
    RawNotification,
    SubscriptionHandle,
    SubscriptionMode,
)

logger = logging.getLogger(__name__)


class DeviceGateway(Protocol):
    """Operations the relay needs from the device."""

    async def create_subscription(self, mode: SubscriptionMode) -> SubscriptionHandle: ...

    async def subscribe(self, handle: SubscriptionHandle, callback_url: str) -> None: ...

    async def poll(
        self, handle: SubscriptionHandle, limit: int, timeout: str,
    ) -> list[RawNotification]: ...

    async def unsubscribe(self, handle: SubscriptionHandle) -> None: ...

    async def renew(self, handle: SubscriptionHandle) -> None: ...

    async def get_device_information(self) -> DeviceInfo: ...

    async def close(self) -> None: ...


_NS = {
    "env": "http://www.w3.org/2003/05/soap-envelope",
    "wsse": "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd",
    "wsu": "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd",
    "wsa": "http://www.w3.org/2005/08/addressing",
    "wsnt": "http://docs.oasis-open.org/wsn/b-2",
    "tev": "http://www.onvif.org/ver10/events/wsdl",
    "tds": "http://www.onvif.org/ver10/device/wsdl",
}

_PASSWORD_DIGEST = (
    "http://docs.oasis-open.org/wss/2004/01/"
    "oasis-200401-wss-username-token-profile-1.0#PasswordDigest"
)
_BASE64_BINARY = (
    "http://docs.oasis-open.org/wss/2004/01/"
    "oasis-200401-wss-soap-message-security-1.0#Base64Binary"
)

_ACTIONS = {
    "create_pull_point": "http://www.onvif.org/ver10/events/wsdl/EventPortType/CreatePullPointSubscriptionRequest",
    "pull": "http://www.onvif.org/ver10/events/wsdl/PullPointSubscription/PullMessagesRequest",
    "subscribe": "http://docs.oasis-open.org/wsn/bw-2/NotificationProducer/SubscribeRequest",
    "renew": "http://docs.oasis-open.org/wsn/bw-2/SubscriptionManager/RenewRequest",
    "unsubscribe": "http://docs.oasis-open.org/wsn/bw-2/SubscriptionManager/UnsubscribeRequest",
    "device_info": "http://www.onvif.org/ver10/device/wsdl/GetDeviceInformation",
}

def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _find(root: ET.Element, name: str) -> Optional[ET.Element]:
    for el in root.iter():
        if _local(el.tag) == name:
            return el
    return None


def _text(root: ET.Element, name: str) -> Optional[str]:
    el = _find(root, name)
    return el.text.strip() if el is not None and el.text else None


class SoapDeviceGateway:
    """aiohttp-based SOAP client for the camera's event and device services.

    Parameters
    ----------
    config:
        Camera address, credentials and request timeout.
    termination_time:
        Subscription lifetime requested on create/subscribe/renew.
    """

    def __init__(self, config: CameraConfig, termination_time: str = "PT120S") -> None:
        self._config = config
        self._termination_time = termination_time
        self._base = f"http://{config.hostname}:{config.port}"
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def events_url(self) -> str:
        return self._base + self._config.events_path

    @property
    def device_url(self) -> str:
        return self._base + self._config.device_path

    # ── gateway operations ──────────────────────────────────────────

    async def create_subscription(self, mode: SubscriptionMode) -> SubscriptionHandle:
        handle = SubscriptionHandle(id=uuid.uuid4().hex, mode=mode)
        if mode is SubscriptionMode.PUSH:
            return handle

        body = (
            "<tev:CreatePullPointSubscription>"
            f"<tev:InitialTerminationTime>{self._termination_time}</tev:InitialTerminationTime>"
            "</tev:CreatePullPointSubscription>"
        )
        root = await self._call(self.events_url, "create_pull_point", body)
        handle.address = _text(root, "Address")
        handle.termination_time = _text(root, "TerminationTime")
        if not handle.address:
            raise SubscriptionError("CreatePullPointSubscription returned no subscription address")
        logger.info("Pull-point subscription created at %s", handle.address)
        return handle

    async def subscribe(self, handle: SubscriptionHandle, callback_url: str) -> None:
        body = (
            "<wsnt:Subscribe>"
            "<wsnt:ConsumerReference>"
            f"<wsa:Address>{escape(callback_url)}</wsa:Address>"
            "</wsnt:ConsumerReference>"
            f"<wsnt:InitialTerminationTime>{self._termination_time}</wsnt:InitialTerminationTime>"
            "</wsnt:Subscribe>"
        )
        root = await self._call(self.events_url, "subscribe", body)
        handle.address = _text(root, "Address")
        handle.termination_time = _text(root, "TerminationTime")
        logger.info("Push subscription created (callback=%s)", callback_url)

    async def poll(
        self, handle: SubscriptionHandle, limit: int, timeout: str,
    ) -> list[RawNotification]:
        address = self._require_address(handle)
        body = (
            "<tev:PullMessages>"
            f"<tev:Timeout>{timeout}</tev:Timeout>"
            f"<tev:MessageLimit>{int(limit)}</tev:MessageLimit>"
            "</tev:PullMessages>"
        )
        # the device may hold the request open for the whole pull timeout
        budget = duration_seconds(timeout) + self._config.timeout_ms / 1000.0
        root, raw = await self._call(address, "pull", body, budget=budget, keep_raw=True)
        if _find(root, "NotificationMessage") is None:
            return []
        return [RawNotification(payload=raw)]

    async def renew(self, handle: SubscriptionHandle) -> None:
        address = self._require_address(handle)
        body = (
            "<wsnt:Renew>"
            f"<wsnt:TerminationTime>{self._termination_time}</wsnt:TerminationTime>"
            "</wsnt:Renew>"
        )
        root = await self._call(address, "renew", body)
        handle.termination_time = _text(root, "TerminationTime") or handle.termination_time

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        if not handle.address:
            logger.debug("Subscription %s has no device address, nothing to unsubscribe", handle.id)
            return
        await self._call(handle.address, "unsubscribe", "<wsnt:Unsubscribe/>")
        handle.address = None
        logger.info("Unsubscribed from events")

    async def get_device_information(self) -> DeviceInfo:
        root = await self._call(self.device_url, "device_info", "<tds:GetDeviceInformation/>")
        return DeviceInfo(
            hostname=self._config.hostname,
            manufacturer=_text(root, "Manufacturer"),
            model=_text(root, "Model"),
            firmware_version=_text(root, "FirmwareVersion"),
            serial_number=_text(root, "SerialNumber"),
            hardware_id=_text(root, "HardwareId"),
        )

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ── SOAP plumbing ───────────────────────────────────────────────

    def _require_address(self, handle: SubscriptionHandle) -> str:
        if not handle.address:
            raise SubscriptionError(f"Subscription {handle.id} has no device address")
        return handle.address

    def _envelope(self, to: str, action: str, body: str) -> str:
        nonce = os.urandom(16)
        created = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")
        digest = hashlib.sha1(
            nonce + created.encode("utf-8") + self._config.password.encode("utf-8")
        ).digest()
        xmlns = " ".join(f'xmlns:{prefix}="{uri}"' for prefix, uri in _NS.items())
        return (
            '<?xml version="1.0" encoding="UTF-8"?>'
            f"<env:Envelope {xmlns}>"
            "<env:Header>"
            '<wsse:Security env:mustUnderstand="1">'
            "<wsse:UsernameToken>"
            f"<wsse:Username>{escape(self._config.username)}</wsse:Username>"
            f'<wsse:Password Type="{_PASSWORD_DIGEST}">{base64.b64encode(digest).decode()}</wsse:Password>'
            f'<wsse:Nonce EncodingType="{_BASE64_BINARY}">{base64.b64encode(nonce).decode()}</wsse:Nonce>'
            f"<wsu:Created>{created}</wsu:Created>"
            "</wsse:UsernameToken>"
            "</wsse:Security>"
            f"<wsa:Action>{action}</wsa:Action>"
            f"<wsa:To>{escape(to)}</wsa:To>"
            "</env:Header>"
            f"<env:Body>{body}</env:Body>"
            "</env:Envelope>"
        )

    async def _call(
        self,
        url: str,
        operation: str,
        body: str,
        budget: Optional[float] = None,
        keep_raw: bool = False,
    ):
        action = _ACTIONS[operation]
        envelope = self._envelope(url, action, body)
        headers = {"Content-Type": f'application/soap+xml; charset=utf-8; action="{action}"'}
        timeout = aiohttp.ClientTimeout(total=budget or self._config.timeout_ms / 1000.0)

        session = await self._get_session()
        try:
            async with session.post(url, data=envelope.encode("utf-8"),
                                    headers=headers, timeout=timeout) as response:
                raw = await response.read()
                status = response.status
        except asyncio.TimeoutError as exc:
            raise TransportError(f"{operation}: timed out") from exc
        except aiohttp.ClientError as exc:
            raise TransportError(f"{operation}: {exc}") from exc

        try:
            root = ET.fromstring(raw) if raw else None
        except ET.ParseError:
            root = None

        if root is not None and _find(root, "Fault") is not None:
            reason = _text(root, "Text") or _text(root, "faultstring") or "unknown fault"
            raise SubscriptionError(f"{operation}: SOAP fault: {reason}")
        if not 200 <= status < 300:
            raise SubscriptionError(f"{operation}: HTTP {status}")
        if root is None:
            raise SubscriptionError(f"{operation}: unreadable response")

        logger.debug("%s succeeded (%d bytes)", operation, len(raw))
        return (root, raw) if keep_raw else root

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session
