"""Dataclass models for the relay pipeline.

``Event`` and ``AlertPayload`` are frozen snapshots; ``AlertPayload.to_dict()``
produces the webhook JSON body (camelCase keys) ready for ``orjson.dumps()``.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping, Optional


class SubscriptionMode(enum.Enum):
    """How notifications reach the relay."""

    PUSH = "push"
    POLL = "poll"


class SubscriptionState(enum.Enum):
    """States in the subscription lifecycle."""

    UNINITIALIZED = "Uninitialized"
    SUBSCRIBING = "Subscribing"
    ACTIVE = "Active"
    DEGRADED = "Degraded"
    RECREATING = "Recreating"
    DISABLED = "Disabled"


class ThrottleDecision(enum.Enum):
    """Outcome of one throttle evaluation."""

    ADMITTED = "admitted"
    RATE_LIMITED = "rate_limited"
    DEBOUNCED = "debounced"


@dataclass
class RawNotification:
    """An undecoded transport payload (HTTP body or poll response)."""

    payload: bytes | str = b""
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class Event:
    """A normalized device notification.

    ``attributes`` holds the message's source items and ``data`` its data
    items; both are read-only mappings.
    """

    id: str
    timestamp: datetime
    category: str
    topic: str = ""
    source_tag: str = ""
    attributes: Mapping[str, str] = field(default_factory=dict)
    data: Mapping[str, str] = field(default_factory=dict)
    raw_payload: str = ""
    property_operation: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))


def new_event_id() -> str:
    """Return a fresh ``<epoch-ms>-<random>`` identifier."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}"


@dataclass
class SubscriptionHandle:
    """Device-side reference to an event subscription."""

    id: str
    mode: SubscriptionMode
    address: Optional[str] = None
    termination_time: Optional[str] = None


@dataclass
class Subscription:
    """The single subscription session owned by the subscription manager."""

    id: str = ""
    mode: SubscriptionMode = SubscriptionMode.POLL
    state: SubscriptionState = SubscriptionState.UNINITIALIZED
    retry_count: int = 0
    last_activity_time: Optional[datetime] = None


@dataclass
class ThrottleRecord:
    """Per-category rate-limit/debounce bookkeeping (times in ms)."""

    category: str
    window_start: float
    count_in_window: int = 0
    last_admitted_time: Optional[float] = None


@dataclass
class DeviceInfo:
    """Identity of the camera, attached to alerts as ``cameraInfo``."""

    hostname: str = ""
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    firmware_version: Optional[str] = None
    serial_number: Optional[str] = None
    hardware_id: Optional[str] = None


@dataclass(frozen=True)
class AlertPayload:
    """Immutable alert body derived from an :class:`Event`."""

    event_id: str
    event_type: str
    timestamp: str
    topic: str
    source: str
    data: Mapping[str, Any]
    severity: str
    message: str
    camera_info: Optional[Mapping[str, Optional[str]]] = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "eventId": self.event_id,
            "eventType": self.event_type,
            "timestamp": self.timestamp,
            "topic": self.topic,
            "source": self.source,
            "data": dict(self.data),
        }
        if self.camera_info is not None:
            body["cameraInfo"] = dict(self.camera_info)
        body["severity"] = self.severity
        body["message"] = self.message
        return body


@dataclass
class DeliveryResult:
    """Outcome of a successful webhook delivery."""

    attempts: int
    status: int
