"""Encrypted store for credentials referenced from the config file.

Layout of the store file::

    [6 bytes:  magic "ONVAR1"]
    [12 bytes: nonce]
    [N bytes:  AES-256-GCM ciphertext of a JSON object, tag appended]

The magic is passed as associated data, so a header swapped onto another
store's body fails authentication.  The key is a raw 32-byte file.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Union

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from onvif_alert_relay.errors import ConfigurationError

logger = logging.getLogger(__name__)

MAGIC = b"ONVAR1"
NONCE_LEN = 12
KEY_LEN = 32

PathLike = Union[str, Path]


class SecretsVault:
    """One encrypted ``NAME → value`` file and the key that opens it."""

    def __init__(self, path: PathLike, key_file: PathLike) -> None:
        self.path = Path(path)
        self.key_file = Path(key_file)

    def init(self) -> None:
        """Write an empty store, creating the key file first if needed."""
        key = _ensure_key(self.key_file)
        self._write(key, {})
        logger.info("Initialized secrets store %s", self.path)

    def set(self, name: str, value: str) -> None:
        key = _read_key(self.key_file)
        store = self._read(key)
        store[name] = value
        self._write(key, store)

    def names(self) -> list[str]:
        return sorted(self._read(_read_key(self.key_file)))

    def load(self) -> dict[str, str]:
        return self._read(_read_key(self.key_file))

    def rekey(self, new_key_file: PathLike) -> None:
        """Re-encrypt under *new_key_file*; later calls use the new key."""
        store = self.load()
        self.key_file = Path(new_key_file)
        self._write(_ensure_key(self.key_file), store)
        logger.info("Secrets store %s re-encrypted", self.path)

    # ── file format ─────────────────────────────────────────────────

    def _write(self, key: bytes, store: dict[str, str]) -> None:
        nonce = os.urandom(NONCE_LEN)
        sealed = AESGCM(key).encrypt(nonce, orjson.dumps(store), MAGIC)
        self.path.write_bytes(MAGIC + nonce + sealed)
        os.chmod(self.path, 0o600)

    def _read(self, key: bytes) -> dict[str, str]:
        try:
            blob = self.path.read_bytes()
        except OSError as exc:
            raise ConfigurationError(f"Cannot read secrets store {self.path}: {exc}") from exc

        if not blob.startswith(MAGIC) or len(blob) < len(MAGIC) + NONCE_LEN + 16:
            raise ConfigurationError(f"{self.path} is not a secrets store")
        nonce = blob[len(MAGIC):len(MAGIC) + NONCE_LEN]
        try:
            plaintext = AESGCM(key).decrypt(nonce, blob[len(MAGIC) + NONCE_LEN:], MAGIC)
        except InvalidTag as exc:
            raise ConfigurationError(
                f"Cannot decrypt {self.path}: wrong key or corrupted file"
            ) from exc

        store = orjson.loads(plaintext)
        if not isinstance(store, dict):
            raise ConfigurationError(f"{self.path} does not hold a name/value map")
        return {str(k): str(v) for k, v in store.items()}


def _read_key(key_file: Path) -> bytes:
    try:
        key = key_file.read_bytes()
    except OSError as exc:
        raise ConfigurationError(f"Cannot read key file {key_file}: {exc}") from exc
    if len(key) != KEY_LEN:
        raise ConfigurationError(f"Key file must hold {KEY_LEN} bytes, found {len(key)}")
    return key


def _ensure_key(key_file: Path) -> bytes:
    if not key_file.exists():
        key_file.write_bytes(AESGCM.generate_key(bit_length=256))
        os.chmod(key_file, 0o600)
    return _read_key(key_file)
