"""Click CLI for the ONVIF alert relay.

Entry point registered in ``pyproject.toml`` as ``onvif-alert-relay``.

Subcommands::

    onvif-alert-relay                     # run the relay (same as ``run``)
    onvif-alert-relay run --method poll   # run with an explicit ingestion mode
    onvif-alert-relay test-webhook        # send one test alert, exit 0/1
    onvif-alert-relay secrets init        # create encrypted secrets file
    onvif-alert-relay secrets set KEY     # store a secret
    onvif-alert-relay secrets list        # list secret names
    onvif-alert-relay secrets rekey       # re-encrypt with a new key
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import asdict
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import click
import orjson

from onvif_alert_relay import __version__
from onvif_alert_relay.app import RelayApp
from onvif_alert_relay.config import AppConfig, LogFileConfig, load_config
from onvif_alert_relay.dispatcher import AlertDispatcher
from onvif_alert_relay.errors import ConfigurationError
from onvif_alert_relay.redactor import SecretRedactingFilter, collect_secret_values
from onvif_alert_relay.vault import SecretsVault

logger = logging.getLogger("onvif_alert_relay")

DEFAULT_CONFIG = "/etc/onvif-alert-relay/config.json"
DEFAULT_SECRETS_FILE = "/etc/onvif-alert-relay/.secrets.enc"

_LEVELS = {"warn": "WARNING"}


# ── structured JSON log formatter ───────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode()


def _setup_logging(
    level: str,
    secret_values: list[str] | None = None,
    log_file_config: Optional[LogFileConfig] = None,
) -> None:
    """JSON to stderr, optional rotating file, secrets redacted on every handler."""
    root = logging.getLogger()
    name = _LEVELS.get(level.lower(), level.upper())
    root.setLevel(getattr(logging, name, logging.INFO))

    redactor = SecretRedactingFilter(secret_values)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]

    if log_file_config and log_file_config.enabled:
        Path(log_file_config.path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            filename=log_file_config.path,
            maxBytes=log_file_config.max_size_bytes,
            backupCount=log_file_config.backup_count,
        ))

    for handler in handlers:
        handler.setFormatter(_JsonFormatter())
        # handler-level so records propagated from module loggers are covered
        handler.addFilter(redactor)
        root.addHandler(handler)


def _secrets_file() -> str:
    return os.environ.get("RELAY_SECRETS_FILE", DEFAULT_SECRETS_FILE)


def _load_secrets() -> dict[str, str]:
    key_file = os.environ.get("RELAY_KEY_FILE")
    secrets_file = _secrets_file()
    if key_file and Path(key_file).exists() and Path(secrets_file).exists():
        return SecretsVault(secrets_file, key_file).load()
    return {}


def _load(
    config_path: Optional[str],
    log_level: Optional[str],
    overrides: dict[str, str],
) -> AppConfig:
    """Load config and set up logging, exiting 1 on configuration errors."""
    cfg_path = config_path or os.environ.get("RELAY_CONFIG", DEFAULT_CONFIG)
    try:
        secrets_dict = _load_secrets()
        cfg = load_config(cfg_path, overrides=overrides, secrets=secrets_dict)
    except ConfigurationError as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc

    secret_values = collect_secret_values(asdict(cfg), cfg.logging.redact_patterns)
    _setup_logging(log_level or cfg.logging.level, secret_values, cfg.logging.file)
    return cfg


# ── main CLI group ──────────────────────────────────────────────────


_run_options = [
    click.option("-c", "--config", "config_path", default=None, help="Config file path."),
    click.option("--log-level", default=None,
                 type=click.Choice(["debug", "info", "warn", "error"]),
                 help="Log verbosity."),
    click.option("--method", default=None, type=click.Choice(["push", "poll"]),
                 help="Override the event ingestion method."),
    click.option("--webhook-url", default=None, help="Override the alert webhook URL."),
    click.option("--validate-config", "validate_only", is_flag=True,
                 help="Validate config and exit."),
]


def _with_run_options(func):
    for option in reversed(_run_options):
        func = option(func)
    return func


@click.group(invoke_without_command=True)
@_with_run_options
@click.version_option(__version__)
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Optional[str],
    log_level: Optional[str],
    method: Optional[str],
    webhook_url: Optional[str],
    validate_only: bool,
) -> None:
    """ONVIF alert relay: camera events to webhook alerts."""
    if ctx.invoked_subcommand is not None:
        return
    ctx.invoke(run, config_path=config_path, log_level=log_level, method=method,
               webhook_url=webhook_url, validate_only=validate_only)


@main.command()
@_with_run_options
def run(
    config_path: Optional[str],
    log_level: Optional[str],
    method: Optional[str],
    webhook_url: Optional[str],
    validate_only: bool,
) -> None:
    """Run the relay until SIGINT/SIGTERM."""
    overrides: dict[str, str] = {}
    if method:
        overrides["EVENT_METHOD"] = method
    if webhook_url:
        overrides["ALERTS_WEBHOOK_URL"] = webhook_url

    cfg = _load(config_path, log_level, overrides)

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    logger.info(
        "Starting onvif-alert-relay %s (instance=%s, camera=%s:%d, method=%s)",
        __version__, cfg.instance_id, cfg.camera.hostname, cfg.camera.port, cfg.events.method,
    )
    asyncio.run(_run_relay(cfg))


async def _run_relay(cfg: AppConfig) -> None:
    loop = asyncio.get_running_loop()
    app = RelayApp(cfg)
    shutdown = asyncio.Event()

    def _handle_signal() -> None:
        logger.info("Received shutdown signal")
        shutdown.set()

    def _log_status() -> None:
        logger.info("Status: %s", orjson.dumps(app.status()).decode())

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _handle_signal)
        except NotImplementedError:
            pass  # Windows
    if hasattr(signal, "SIGUSR1"):
        try:
            loop.add_signal_handler(signal.SIGUSR1, _log_status)
        except NotImplementedError:
            pass

    try:
        await app.start()
        await shutdown.wait()
    finally:
        await app.stop()


@main.command("test-webhook")
@click.option("-c", "--config", "config_path", default=None, help="Config file path.")
@click.option("--webhook-url", default=None, help="Override the alert webhook URL.")
def test_webhook(config_path: Optional[str], webhook_url: Optional[str]) -> None:
    """Send a single test alert to the configured webhook."""
    overrides = {"ALERTS_WEBHOOK_URL": webhook_url} if webhook_url else {}
    cfg = _load(config_path, None, overrides)
    if not cfg.alerts.webhook_url:
        click.echo("Config error: alerts.webhook_url is not set", err=True)
        raise SystemExit(1)

    async def _send() -> bool:
        dispatcher = AlertDispatcher(cfg.alerts)
        try:
            return await dispatcher.test_webhook()
        finally:
            await dispatcher.close()

    ok = asyncio.run(_send())
    click.echo("Webhook test succeeded." if ok else "Webhook test failed.", err=True)
    raise SystemExit(0 if ok else 1)


# ── secrets subcommand group ────────────────────────────────────────


def _vault(key_file: str, output: Optional[str] = None) -> SecretsVault:
    return SecretsVault(output or _secrets_file(), key_file)


@main.group()
def secrets() -> None:
    """Manage the encrypted secrets file."""


@secrets.command("init")
@click.option("--output", default=None, help="Path for the encrypted file.")
@click.option("--key-file", required=True, help="Path for the master key.")
def secrets_init(output: Optional[str], key_file: str) -> None:
    """Create an empty encrypted secrets file and key."""
    vault = _vault(key_file, output)
    vault.init()
    click.echo(f"Initialized: {vault.path} (key: {key_file})")


@secrets.command("set")
@click.argument("key")
@click.option("--value", prompt=True, hide_input=True, help="Secret value.")
@click.option("--key-file", required=True, help="Path to the master key.")
def secrets_set(key: str, value: str, key_file: str) -> None:
    """Store a secret in the encrypted file."""
    try:
        _vault(key_file).set(key, value)
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Set: {key}")


@secrets.command("list")
@click.option("--key-file", required=True, help="Path to the master key.")
def secrets_list(key_file: str) -> None:
    """List stored secret names (values are never shown)."""
    try:
        names = _vault(key_file).names()
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    for name in names:
        click.echo(name)


@secrets.command("rekey")
@click.option("--key-file", required=True, help="Current master key path.")
@click.option("--new-key-file", required=True, help="New master key path.")
def secrets_rekey(key_file: str, new_key_file: str) -> None:
    """Re-encrypt the secrets store with a new key."""
    try:
        _vault(key_file).rekey(new_key_file)
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Re-keyed with: {new_key_file}")
