"""HTTP listener for push-mode notifications.

Only ``POST <endpoint>/<subscription-id>`` is served; everything else is
404.  A delivery is acknowledged with an empty SOAP envelope once its body
has been read and handed off, whatever the hand-off made of it.  Only a
failure while building the response itself yields 500.  Bodies over
``max_body_bytes`` are refused with 413 before they are read.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from aiohttp import web

from onvif_alert_relay.models import RawNotification

logger = logging.getLogger(__name__)

EMPTY_SOAP_ENVELOPE = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<soap:Envelope xmlns:soap="http://www.w3.org/2003/05/soap-envelope">'
    "<soap:Body></soap:Body></soap:Envelope>"
)

NotificationSink = Callable[[RawNotification], object]


def soap_ack() -> web.Response:
    return web.Response(
        text=EMPTY_SOAP_ENVELOPE,
        status=200,
        content_type="application/soap+xml",
        charset="utf-8",
    )


class NotificationReceiver:
    """aiohttp server that feeds pushed notifications to *on_notification*.

    Parameters
    ----------
    endpoint:
        Path prefix the device posts to (e.g. ``/events``).
    on_notification:
        Called with each received :class:`RawNotification`.
    host, port:
        Bind address.
    max_body_bytes:
        Largest notification body accepted.
    """

    def __init__(
        self,
        endpoint: str,
        on_notification: NotificationSink,
        host: str = "0.0.0.0",
        port: int = 3001,
        max_body_bytes: int = 4194304,
        ack_factory: Callable[[], web.Response] = soap_ack,
    ) -> None:
        self._prefix = endpoint.rstrip("/") + "/"
        self._on_notification = on_notification
        self._host = host
        self._port = port
        self._max_body_bytes = max_body_bytes
        self._ack_factory = ack_factory
        self._runner: Optional[web.AppRunner] = None
        self.received = 0

    def build_app(self) -> web.Application:
        app = web.Application(client_max_size=self._max_body_bytes)
        app.router.add_route("*", "/{tail:.*}", self._handle)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info("Notification receiver listening on %s:%d%s", self._host, self._port, self._prefix)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Notification receiver stopped")

    def matches(self, method: str, path: str) -> bool:
        return method == "POST" and path.startswith(self._prefix)

    async def _handle(self, request: web.Request) -> web.Response:
        if not self.matches(request.method, request.path):
            return web.Response(status=404, text="Not Found")

        body = await request.read()
        self.received += 1
        raw = RawNotification(payload=body, received_at=datetime.now(timezone.utc))
        try:
            self._on_notification(raw)
        except Exception:
            logger.exception("Failed to process notification from %s", request.remote)

        try:
            return self._ack_factory()
        except Exception:
            logger.exception("Failed to build acknowledgement")
            return web.Response(status=500, text="Internal Server Error")
