"""Per-category alert throttling: fixed window rate limit plus debounce.

Evaluation for a candidate arriving at ``T`` (milliseconds)::

    1. T - window_start >= window_ms        → count = 0, window_start = T
    2. count >= max_per_window              → RATE_LIMITED (no further mutation)
    3. last admitted and T - last < debounce → DEBOUNCED
    4. otherwise                             → ADMITTED (count += 1, last = T)

Suppression is a policy outcome, never an exception.  A debounced event is
dropped; nothing is re-sent when the debounce period expires.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

from onvif_alert_relay.models import ThrottleDecision, ThrottleRecord

logger = logging.getLogger(__name__)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class ThrottleEngine:
    """Owns every :class:`ThrottleRecord`; all access goes through one lock."""

    def __init__(
        self,
        window_ms: int = 60000,
        max_per_window: int = 5,
        debounce_ms: int = 5000,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        self.window_ms = window_ms
        self.max_per_window = max_per_window
        self.debounce_ms = debounce_ms
        self._clock = clock
        self._records: dict[str, ThrottleRecord] = {}
        self._suppressed: dict[str, int] = {}
        self._lock = threading.Lock()

    def evaluate(self, category: str, now_ms: Optional[float] = None) -> ThrottleDecision:
        """Decide whether an event of *category* arriving at *now_ms* is admitted."""
        now = self._clock() if now_ms is None else now_ms
        with self._lock:
            record = self._records.get(category)
            if record is None:
                record = ThrottleRecord(category=category, window_start=now)
                self._records[category] = record

            if now - record.window_start >= self.window_ms:
                record.count_in_window = 0
                record.window_start = now

            if record.count_in_window >= self.max_per_window:
                decision = ThrottleDecision.RATE_LIMITED
            elif (
                record.last_admitted_time is not None
                and now - record.last_admitted_time < self.debounce_ms
            ):
                decision = ThrottleDecision.DEBOUNCED
            else:
                record.count_in_window += 1
                if record.last_admitted_time is None or now > record.last_admitted_time:
                    record.last_admitted_time = now
                return ThrottleDecision.ADMITTED

            self._suppressed[category] = self._suppressed.get(category, 0) + 1
            count = record.count_in_window

        logger.debug(
            "%s suppressed: %s (count=%d/%d)",
            category, decision.value, count, self.max_per_window,
        )
        return decision

    def status(self, category: str, now_ms: Optional[float] = None) -> dict[str, Any]:
        """Snapshot of one category's throttle state."""
        now = self._clock() if now_ms is None else now_ms
        with self._lock:
            record = self._records.get(category)
            if record is None:
                return {"status": "no_record"}
            since_last = (
                None if record.last_admitted_time is None
                else now - record.last_admitted_time
            )
            debounce_remaining = (
                0 if since_last is None else max(0, self.debounce_ms - since_last)
            )
            return {
                "count": record.count_in_window,
                "maxPerWindow": self.max_per_window,
                "windowRemainingMs": max(0, self.window_ms - (now - record.window_start)),
                "timeSinceLastAlert": since_last,
                "debounceRemainingMs": debounce_remaining,
                "isDebouncing": debounce_remaining > 0,
                "suppressed": self._suppressed.get(category, 0),
            }

    def status_all(self, now_ms: Optional[float] = None) -> dict[str, dict[str, Any]]:
        """Status for every observed category."""
        with self._lock:
            categories = list(self._records)
        return {c: self.status(c, now_ms) for c in categories}

    def reset(self, category: Optional[str] = None) -> None:
        """Drop the record for *category*, or every record."""
        with self._lock:
            if category is None:
                self._records.clear()
                self._suppressed.clear()
            else:
                self._records.pop(category, None)
                self._suppressed.pop(category, None)
        logger.info("Throttle records cleared (%s)", category or "all")
