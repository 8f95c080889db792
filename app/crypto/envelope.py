"""Versioned envelope codec for provider credentials.

New values are always written as ``encV1:`` envelopes: AES-256-GCM with a
fresh 12-byte nonce, keyed by SHA-256 of the operator-supplied master secret,
serialized as base64 of ``{"nonce": ..., "ciphertext": ...}``.

Two older formats are still readable so pre-migration rows keep working:

* ``legacy:v0:<base64>`` - XOR stream keyed by the same derived key.
* ``<base64>`` with no prefix - identical XOR stream, written before any
  versioning existed.

The XOR formats are obfuscation, not encryption. They are decoded for
lossless migration only; ``migrate`` rewrites them as ``encV1:``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
import threading
from collections.abc import Callable
from enum import Enum

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_BYTES = 12
MIN_MASTER_KEY_LENGTH = 32


class SecretConfigurationError(Exception):
    """Raised when the master secret is missing or too short."""


class SecretDecryptionError(Exception):
    """Raised when an envelope cannot be decoded or fails authentication."""


class EnvelopeVersion(str, Enum):
    V1 = "encV1:"
    LEGACY_V0 = "legacy:v0:"
    BARE_LEGACY = ""

    @classmethod
    def detect(cls, envelope: str) -> "EnvelopeVersion":
        for version in (cls.V1, cls.LEGACY_V0):
            if envelope.startswith(version.value):
                return version
        return cls.BARE_LEGACY


CURRENT_VERSION = EnvelopeVersion.V1

_key_cache: dict[str, bytes] = {}
_key_lock = threading.Lock()


def derive_key(master_secret: str | None, min_length: int = MIN_MASTER_KEY_LENGTH) -> bytes:
    if not master_secret:
        raise SecretConfigurationError("Secret master key is not configured")
    if len(master_secret) < min_length:
        raise SecretConfigurationError(
            f"Secret master key must be at least {min_length} characters"
        )
    with _key_lock:
        cached = _key_cache.get(master_secret)
        if cached is None:
            cached = hashlib.sha256(master_secret.encode("utf-8")).digest()
            _key_cache[master_secret] = cached
        return cached


def _b64encode(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def _b64decode(value: str) -> bytes:
    try:
        return base64.b64decode(value.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
        raise SecretDecryptionError("Envelope is not valid base64") from exc


def _xor_stream(data: bytes, key: bytes) -> bytes:
    return bytes(byte ^ key[index % len(key)] for index, byte in enumerate(data))


class EnvelopeCodec:
    """Encrypts and decrypts secret values, dispatching on envelope version."""

    def __init__(self, master_secret: str | None, min_length: int = MIN_MASTER_KEY_LENGTH):
        self._master_secret = master_secret
        self._min_length = min_length
        self._decoders: dict[EnvelopeVersion, Callable[[str], str]] = {
            EnvelopeVersion.V1: self._decode_v1,
            EnvelopeVersion.LEGACY_V0: self._decode_legacy,
            EnvelopeVersion.BARE_LEGACY: self._decode_legacy,
        }

    @property
    def _key(self) -> bytes:
        return derive_key(self._master_secret, self._min_length)

    def encrypt(self, plaintext: str) -> str:
        key = self._key
        nonce = os.urandom(NONCE_BYTES)
        ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
        body = json.dumps(
            {"nonce": _b64encode(nonce), "ciphertext": _b64encode(ciphertext)},
            separators=(",", ":"),
        )
        return CURRENT_VERSION.value + _b64encode(body.encode("utf-8"))

    def ensure_configured(self) -> None:
        """Raise ``SecretConfigurationError`` when the master key is unusable."""
        _ = self._key

    def decrypt(self, envelope: str) -> str:
        # Surface configuration problems before looking at the payload.
        self.ensure_configured()
        version = EnvelopeVersion.detect(envelope)
        return self._decoders[version](envelope[len(version.value) :])

    def encode_legacy(self, plaintext: str, bare: bool = False) -> str:
        """Write a pre-migration value. Only used to build fixtures and tests."""
        body = _b64encode(_xor_stream(plaintext.encode("utf-8"), self._key))
        return body if bare else EnvelopeVersion.LEGACY_V0.value + body

    def needs_migration(self, envelope: str) -> bool:
        return EnvelopeVersion.detect(envelope) is not CURRENT_VERSION

    def migrate(self, envelope: str) -> str:
        if not self.needs_migration(envelope):
            return envelope
        return self.encrypt(self.decrypt(envelope))

    def _decode_v1(self, body: str) -> str:
        try:
            parsed = json.loads(_b64decode(body).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise SecretDecryptionError("Envelope payload is not valid JSON") from exc
        if not isinstance(parsed, dict):
            raise SecretDecryptionError("Envelope payload must be an object")
        nonce_raw = parsed.get("nonce")
        ciphertext_raw = parsed.get("ciphertext")
        if not isinstance(nonce_raw, str) or not isinstance(ciphertext_raw, str):
            raise SecretDecryptionError("Envelope payload is missing nonce or ciphertext")
        nonce = _b64decode(nonce_raw)
        if len(nonce) != NONCE_BYTES:
            raise SecretDecryptionError("Envelope nonce has the wrong length")
        try:
            plaintext = AESGCM(self._key).decrypt(nonce, _b64decode(ciphertext_raw), None)
        except InvalidTag as exc:
            raise SecretDecryptionError("Envelope failed authentication") from exc
        return plaintext.decode("utf-8")

    def _decode_legacy(self, body: str) -> str:
        raw = _xor_stream(_b64decode(body), self._key)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SecretDecryptionError("Legacy envelope did not decode to text") from exc
