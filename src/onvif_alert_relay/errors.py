"""Error taxonomy shared by every relay component.

Propagation rules::

    ParseError          → recovered locally, logged; never aborts a batch
    TransportError      → network-level failure talking to the device or webhook
    SubscriptionError   → device rejected create/subscribe/renew; drives the
                          subscription state machine, never reaches callers
    DeliveryError       → all webhook attempts exhausted; reported to observers
    ConfigurationError  → fatal, raised at startup before any ingestion
"""

from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base class for all relay errors."""


class ParseError(RelayError):
    """A notification payload (or one embedded block of it) could not be parsed."""


class TransportError(RelayError):
    """A gateway or webhook call failed at the network layer."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class SubscriptionError(RelayError):
    """The device rejected a subscription operation."""


class DeliveryError(RelayError):
    """Every webhook delivery attempt failed."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None) -> None:
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"Webhook failed after {attempts} attempts{detail}")
        self.attempts = attempts
        self.last_error = last_error


class ConfigurationError(RelayError):
    """Missing or inconsistent settings detected at startup."""
