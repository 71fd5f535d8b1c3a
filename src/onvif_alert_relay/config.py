"""Configuration loading, environment-variable interpolation, and validation.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → encrypted secrets → default.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.

Numeric and boolean settings may be written as placeholders, so they are
accepted as strings and coerced after interpolation.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import jsonschema
import orjson

from onvif_alert_relay import __version__
from onvif_alert_relay.errors import ConfigurationError
from onvif_alert_relay.models import SubscriptionMode

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_DURATION_RE = re.compile(r"^PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+(?:\.\d+)?)S)?$")

_SCHEMA_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "config.schema.json"

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off", ""}


@dataclass
class CameraConfig:
    """Where and how to reach the ONVIF device."""

    hostname: str = "192.168.1.100"
    port: int = 2020
    username: str = "admin"
    password: str = ""
    timeout_ms: int = 30000
    device_path: str = "/onvif/device_service"
    events_path: str = "/onvif/event_service"


@dataclass
class PollingConfig:
    """Pull-point subscription settings."""

    pull_interval_ms: int = 5000
    message_limit: int = 10
    timeout: str = "PT10S"
    retry_on_error: bool = True
    max_retries: int = 3


@dataclass
class PushConfig:
    """Notification receiver settings.

    ``host`` is the bind address; ``advertise_host`` is the address the
    device is told to call back on (defaults to ``host``).
    """

    host: str = "0.0.0.0"
    port: int = 3001
    advertise_host: str = ""
    endpoint: str = "/events"
    max_body_bytes: int = 4194304   # 4 MiB; larger bodies get 413


@dataclass
class RenewalConfig:
    """Subscription keep-alive settings."""

    renewal_enabled: bool = True
    renewal_interval_ms: int = 90000
    max_renewal_retries: int = 3
    renewal_timeout_ms: int = 10000
    alert_on_failure: bool = True


@dataclass
class EventsConfig:
    """Event ingestion settings."""

    enabled: bool = True
    method: str = "push"
    polling: PollingConfig = field(default_factory=PollingConfig)
    push: PushConfig = field(default_factory=PushConfig)
    subscription: RenewalConfig = field(default_factory=RenewalConfig)

    @property
    def mode(self) -> SubscriptionMode:
        return SubscriptionMode(self.method)


@dataclass
class ThrottlingConfig:
    """Shared per-category throttle parameters."""

    enabled: bool = True
    window_ms: int = 60000
    max_per_window: int = 5
    debounce_ms: int = 5000


@dataclass
class AlertsConfig:
    """Webhook alert settings."""

    enabled: bool = False
    webhook_url: str = ""
    timeout_ms: int = 5000
    retry_attempts: int = 3
    retry_delay_ms: int = 1000
    user_agent: str = f"onvif-alert-relay/{__version__}"
    throttling: ThrottlingConfig = field(default_factory=ThrottlingConfig)


@dataclass
class LogFileConfig:
    """Optional rotating log file, written in addition to stderr."""

    enabled: bool = False
    path: str = "/var/log/onvif-alert-relay/relay.log"
    max_size_bytes: int = 10485760   # 10 MB
    backup_count: int = 5


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    file: LogFileConfig = field(default_factory=LogFileConfig)
    redact_patterns: list[str] = field(
        default_factory=lambda: ["*password*", "*webhook_url*", "*token*", "*secret*"]
    )


@dataclass
class AppConfig:
    """Top-level application configuration."""

    instance_id: str = "relay-01"
    camera: CameraConfig = field(default_factory=CameraConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ── interpolation ───────────────────────────────────────────────────


def _interpolate_value(
    value: str,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> str:
    """Replace ``${VAR}`` / ``${VAR:-default}`` in *value*."""

    def _replacer(match: re.Match) -> str:
        var_name, default = match.group(1), match.group(2)
        if overrides and var_name in overrides:
            return overrides[var_name]
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if secrets and var_name in secrets:
            return secrets[var_name]
        if default is not None:
            return default
        raise ConfigurationError(
            f"Required variable ${{{var_name}}} is not set in environment, "
            f"CLI overrides, or encrypted secrets"
        )

    return _VAR_RE.sub(_replacer, value)


def _walk_and_interpolate(
    obj: Any,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> Any:
    if isinstance(obj, str):
        return _interpolate_value(obj, overrides, secrets)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v, overrides, secrets) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item, overrides, secrets) for item in obj]
    return obj


# ── typed conversion ────────────────────────────────────────────────


def _coerce(value: Any, default: Any, name: str) -> Any:
    """Convert *value* to the type of *default*."""
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ConfigurationError(f"{name}: expected a boolean, got {value!r}")
    if isinstance(default, int):
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"{name}: expected an integer, got {value!r}") from exc
    return value


def _build(cls: type, raw: dict[str, Any], prefix: str) -> Any:
    """Instantiate dataclass *cls* from *raw*, recursing into nested sections."""
    defaults = cls()
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in raw:
            continue
        value = raw[f.name]
        current = getattr(defaults, f.name)
        name = f"{prefix}{f.name}"
        if hasattr(current, "__dataclass_fields__"):
            kwargs[f.name] = _build(type(current), value or {}, f"{name}.")
        else:
            kwargs[f.name] = _coerce(value, current, name)
    return cls(**kwargs)


def duration_seconds(value: str) -> float:
    """Seconds in an ``xs:duration`` such as ``PT10S`` or ``PT1M30S``."""
    match = _DURATION_RE.match(value.strip()) if value else None
    if match is None or not any(match.groups()):
        raise ValueError(f"Unsupported duration: {value!r}")
    hours, minutes, seconds = match.groups()
    return int(hours or 0) * 3600 + int(minutes or 0) * 60 + float(seconds or 0)


def validate_config(cfg: AppConfig) -> AppConfig:
    """Cross-field checks that the JSON schema cannot express.

    Raises
    ------
    ConfigurationError
        On the first inconsistent setting.
    """
    events = cfg.events
    if events.method not in ("push", "poll"):
        raise ConfigurationError(f"events.method must be 'push' or 'poll', got {events.method!r}")

    if events.enabled and events.mode is SubscriptionMode.PUSH:
        push = events.push
        if not push.endpoint:
            raise ConfigurationError("Push mode requires events.push.endpoint")
        if not push.endpoint.startswith("/"):
            raise ConfigurationError("events.push.endpoint must start with '/'")
        if not 0 < push.port < 65536:
            raise ConfigurationError(f"events.push.port out of range: {push.port}")
        if push.max_body_bytes <= 0:
            raise ConfigurationError("events.push.max_body_bytes must be positive")

    if events.enabled and events.mode is SubscriptionMode.POLL:
        polling = events.polling
        if polling.pull_interval_ms <= 0:
            raise ConfigurationError("events.polling.pull_interval_ms must be positive")
        if polling.message_limit <= 0:
            raise ConfigurationError("events.polling.message_limit must be positive")
        if polling.max_retries < 1:
            raise ConfigurationError("events.polling.max_retries must be at least 1")
        try:
            duration_seconds(polling.timeout)
        except ValueError as exc:
            raise ConfigurationError(f"events.polling.timeout: {exc}") from exc

    alerts = cfg.alerts
    if alerts.enabled:
        if not alerts.webhook_url:
            raise ConfigurationError("alerts.enabled requires alerts.webhook_url")
        if alerts.retry_attempts < 1:
            raise ConfigurationError("alerts.retry_attempts must be at least 1")
        throttling = alerts.throttling
        if throttling.enabled and throttling.max_per_window < 1:
            raise ConfigurationError("alerts.throttling.max_per_window must be at least 1")
        if throttling.window_ms < 0 or throttling.debounce_ms < 0:
            raise ConfigurationError("alerts.throttling window/debounce must not be negative")

    return cfg


def config_from_dict(raw: dict[str, Any]) -> AppConfig:
    """Build and validate an :class:`AppConfig` from an interpolated dict."""
    return validate_config(_build(AppConfig, raw, ""))


def load_config(
    path: str | Path,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Load, interpolate, validate, and return the application config.

    Parameters
    ----------
    path:
        Filesystem path to ``config.json``.
    overrides:
        CLI-supplied variable overrides.
    secrets:
        Values from the encrypted secrets file.
    schema_path:
        Path to the JSON Schema file.  Defaults to
        ``config/config.schema.json`` relative to the project root.

    Raises
    ------
    ConfigurationError
        If the file is unreadable, a required ``${VAR}`` cannot be resolved,
        or the config fails schema or semantic validation.
    """
    try:
        raw: dict[str, Any] = orjson.loads(Path(path).read_bytes())
    except OSError as exc:
        raise ConfigurationError(f"Cannot read config file {path}: {exc}") from exc
    except orjson.JSONDecodeError as exc:
        raise ConfigurationError(f"Config file {path} is not valid JSON: {exc}") from exc

    interpolated = _walk_and_interpolate(raw, overrides=overrides, secrets=secrets)

    sp = Path(schema_path) if schema_path else _SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        try:
            jsonschema.validate(instance=interpolated, schema=schema)
        except jsonschema.ValidationError as exc:
            location = ".".join(str(p) for p in exc.absolute_path) or "<root>"
            raise ConfigurationError(f"{location}: {exc.message}") from exc
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s, skipping validation", sp)

    return config_from_dict(interpolated)


def callback_base_url(push: PushConfig) -> str:
    """``http://<advertise-host>:<port><endpoint>`` for push subscriptions."""
    host = push.advertise_host or push.host
    return f"http://{host}:{push.port}{push.endpoint.rstrip('/')}"
