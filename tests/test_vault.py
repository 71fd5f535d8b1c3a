"""Tests for the encrypted secrets store."""

from pathlib import Path

import pytest

from onvif_alert_relay.errors import ConfigurationError
from onvif_alert_relay.vault import SecretsVault


def _vault(tmp_path: Path) -> SecretsVault:
    vault = SecretsVault(tmp_path / "secrets.enc", tmp_path / "master.key")
    vault.init()
    return vault


def test_init_creates_key_and_empty_store(tmp_path: Path) -> None:
    vault = _vault(tmp_path)
    assert (tmp_path / "master.key").stat().st_size == 32
    assert vault.load() == {}


def test_set_list_load(tmp_path: Path) -> None:
    vault = _vault(tmp_path)
    vault.set("CAMERA_PASSWORD", "s3cret")
    vault.set("ALERTS_WEBHOOK_URL", "https://hooks.example.com/x")
    assert vault.names() == ["ALERTS_WEBHOOK_URL", "CAMERA_PASSWORD"]
    assert vault.load()["CAMERA_PASSWORD"] == "s3cret"
    assert b"s3cret" not in (tmp_path / "secrets.enc").read_bytes()


def test_rekey(tmp_path: Path) -> None:
    """After re-keying only the new key opens the store."""
    vault = _vault(tmp_path)
    vault.set("CAMERA_PASSWORD", "s3cret")
    vault.rekey(tmp_path / "new.key")
    assert vault.load() == {"CAMERA_PASSWORD": "s3cret"}

    with pytest.raises(ConfigurationError, match="wrong key"):
        SecretsVault(tmp_path / "secrets.enc", tmp_path / "master.key").load()


def test_corrupt_store(tmp_path: Path) -> None:
    vault = _vault(tmp_path)
    data = bytearray((tmp_path / "secrets.enc").read_bytes())
    data[-1] ^= 0xFF
    (tmp_path / "secrets.enc").write_bytes(bytes(data))
    with pytest.raises(ConfigurationError):
        vault.load()


def test_foreign_file(tmp_path: Path) -> None:
    vault = _vault(tmp_path)
    (tmp_path / "secrets.enc").write_bytes(b'{"plain": "json"}')
    with pytest.raises(ConfigurationError, match="not a secrets store"):
        vault.load()


def test_bad_key_file(tmp_path: Path) -> None:
    vault = _vault(tmp_path)
    (tmp_path / "master.key").write_bytes(b"short")
    with pytest.raises(ConfigurationError, match="32 bytes"):
        vault.load()
