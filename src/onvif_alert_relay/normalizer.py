"""Normalize raw ONVIF notification envelopes into :class:`Event` records.

Normalization pipeline::

    raw payload (SOAP envelope, push body or PullMessages response)
      │
      ├─ XML parse failure          → ParseError (whole payload, caller logs)
      └─ for each NotificationMessage block
           ├─ no inner Message      → ParseError (block skipped, logged)
           ├─ SimpleItem w/o Name   → ParseError (block skipped, logged)
           └─ valid                 → Event
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Iterator, Optional

import orjson

from onvif_alert_relay.errors import ParseError
from onvif_alert_relay.models import Event, RawNotification, new_event_id

logger = logging.getLogger(__name__)

# Maximum characters of a malformed block echoed into the log.
MAX_RAW_PAYLOAD_BYTES = 4096

UNKNOWN_CATEGORY = "unknown"

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def classify_topic(topic: Optional[str]) -> str:
    """Derive an event category from a topic such as ``tns1:VideoSource/MotionAlarm``.

    Rules, applied to the last ``/`` segment (case-insensitive, in order):

    1. contains ``people``, ``human`` or ``person`` → ``peopledetection``
    2. contains ``object`` and the topic mentions ``analytics`` → ``objectdetection``
    3. otherwise the lowercased segment with every non ``[a-z0-9]`` run
       replaced by ``_``

    An empty topic, or one without a path separator, is ``unknown``.
    """
    if not topic or "/" not in topic:
        return UNKNOWN_CATEGORY

    segment = topic.strip().rsplit("/", 1)[-1].lower()

    if "people" in segment or "human" in segment or "person" in segment:
        return "peopledetection"
    if "object" in segment and "analytics" in topic.lower():
        return "objectdetection"

    category = _NON_ALNUM_RE.sub("_", segment)
    return category or UNKNOWN_CATEGORY


class Normalizer:
    """Turns one :class:`RawNotification` into a lazy stream of events."""

    def __init__(self) -> None:
        self.parse_errors = 0

    def normalize(self, raw: RawNotification) -> Iterator[Event]:
        """Parse *raw* and return an iterator over its events.

        The envelope itself is parsed eagerly so that an unreadable payload
        surfaces immediately; the embedded blocks are then projected lazily.

        Raises
        ------
        ParseError
            If the payload is not well-formed XML at all.
        """
        try:
            root = _parse_root(raw.payload)
        except ParseError:
            self.parse_errors += 1
            raise
        return self._iter_events(root, raw.received_at)

    def _iter_events(self, root: ET.Element, received_at: datetime) -> Iterator[Event]:
        for block in _find_all(root, "NotificationMessage"):
            try:
                yield _block_to_event(block, received_at)
            except ParseError as exc:
                self.parse_errors += 1
                raw_block = ET.tostring(block, encoding="unicode")[:MAX_RAW_PAYLOAD_BYTES]
                logger.warning("Skipping malformed notification block: %s (%s)", exc, raw_block)


# ── helpers ─────────────────────────────────────────────────────────


def _parse_root(payload: bytes | str) -> ET.Element:
    if not payload:
        raise ParseError("Empty notification payload")
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    try:
        return ET.fromstring(payload)
    except ET.ParseError as exc:
        raise ParseError(f"Unparseable notification payload: {exc}") from exc


def _local(tag: str) -> str:
    """Strip the ``{namespace}`` prefix ElementTree puts on tags."""
    return tag.rsplit("}", 1)[-1]


def _find_all(element: ET.Element, name: str) -> list[ET.Element]:
    return [el for el in element.iter() if _local(el.tag) == name]


def _find_child(element: ET.Element, name: str) -> Optional[ET.Element]:
    for child in element:
        if _local(child.tag) == name:
            return child
    return None


def _simple_items(container: Optional[ET.Element]) -> dict[str, str]:
    items: dict[str, str] = {}
    if container is None:
        return items
    for item in _find_all(container, "SimpleItem"):
        name = item.get("Name")
        if not name:
            raise ParseError("SimpleItem without a Name attribute")
        items[name] = item.get("Value", "")
    return items


def _parse_utc_time(value: Optional[str], fallback: datetime) -> datetime:
    if not value:
        return fallback
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Malformed UtcTime %r, using receipt time", value)
        return fallback
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _block_to_event(block: ET.Element, received_at: datetime) -> Event:
    topic_el = _find_child(block, "Topic")
    topic = (topic_el.text or "").strip() if topic_el is not None else ""

    wrapper = _find_child(block, "Message")
    message = _find_child(wrapper, "Message") if wrapper is not None else None
    if message is None:
        raise ParseError("NotificationMessage has no inner Message element")

    source = _simple_items(_find_child(message, "Source"))
    key = _simple_items(_find_child(message, "Key"))
    data = _simple_items(_find_child(message, "Data"))

    return Event(
        id=new_event_id(),
        timestamp=_parse_utc_time(message.get("UtcTime"), received_at),
        category=classify_topic(topic),
        topic=topic or UNKNOWN_CATEGORY,
        source_tag=orjson.dumps(source).decode(),
        attributes={**source, **key},
        data=data,
        raw_payload=ET.tostring(block, encoding="unicode"),
        property_operation=message.get("PropertyOperation"),
    )
