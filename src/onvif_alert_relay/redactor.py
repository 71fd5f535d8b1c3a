"""Keep credentials out of logs and status output.

``SecretRedactingFilter`` is attached to every log handler at startup with the
values of every config key matching ``logging.redact_patterns`` (camera
password, webhook URL, ...).  ``mask_url`` shortens URLs that are shown to
operators so query strings and tokens never appear.
"""

from __future__ import annotations

import fnmatch
import logging
from typing import Any, Iterable
from urllib.parse import urlsplit

REDACTED = "[REDACTED]"


class SecretRedactingFilter(logging.Filter):
    """Blank out the camera password, webhook URL and other resolved secrets.

    The camera password can surface in SOAP fault text and the webhook URL
    usually carries its auth token in the path or query.  Values are matched
    verbatim in the message and every string argument, longest first.
    """

    def __init__(self, secret_values: Iterable[str] | None = None) -> None:
        super().__init__()
        # single characters would shred every log line
        self._secrets: list[str] = sorted(
            {s for s in (secret_values or []) if s and len(s) > 1},
            key=len,
            reverse=True,
        )

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        record.msg = self._redact(record.msg)
        if isinstance(record.args, dict):
            record.args = {k: self._redact(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self._redact(a) for a in record.args)
        return True

    def _redact(self, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        for secret in self._secrets:
            value = value.replace(secret, REDACTED)
        return value


def collect_secret_values(config_dict: dict[str, Any], patterns: list[str] | None) -> list[str]:
    """Return string values whose key matches one of the glob *patterns*.

    Matching is case-insensitive and recurses through nested dicts and lists.
    """
    found: list[str] = []
    if patterns:
        _walk(config_dict, [p.lower() for p in patterns], found)
    return found


def _walk(obj: Any, patterns: list[str], out: list[str]) -> None:
    if isinstance(obj, dict):
        for key, val in obj.items():
            if isinstance(val, str) and any(fnmatch.fnmatch(key.lower(), p) for p in patterns):
                out.append(val)
            _walk(val, patterns, out)
    elif isinstance(obj, (list, tuple)):
        for item in obj:
            _walk(item, patterns, out)


def mask_url(url: str) -> str:
    """``https://hooks.example.com/T0/abc?k=v`` → ``https://hooks.example.com/T0/abc***``."""
    if not url:
        return "not-configured"
    parts = urlsplit(url)
    if not parts.scheme or not parts.hostname:
        return "invalid-url"
    return f"{parts.scheme}://{parts.hostname}{parts.path}***"
