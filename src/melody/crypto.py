"""
Field-level encryption for sensitive captured values.

Sensitive rule values never reach disk in plaintext. Each one is
JSON-encoded and sealed with AES-256-GCM under a key derived once per
process (HKDF-SHA256) from a caller-supplied secret. The key id is bound
into the ciphertext as associated data, so a field sealed under one key
refuses to open under another.

Key lifecycle:
    keys = KeyCache()
    keys.init(secret)          # derive once
    field = protect(value, keys.key_id, keys)
    value = unprotect(field, keys)
    keys.clear()               # idempotent

``clear`` takes the cache's write lock; protect/unprotect hold the read
lock for the duration of the cipher call.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .concurrency import ReadWriteLock
from .errors import DecryptionError, EncryptionError, KeyUnavailableError
from .models import EncryptedField

logger = logging.getLogger("melody.crypto")

KEY_LENGTH = 32
NONCE_LENGTH = 12
HKDF_SALT = b"melody-recovery"
HKDF_INFO = b"melody:field-encryption:v1"


# ---------------------------------------------------------------------------
# Cryptographic helpers
# ---------------------------------------------------------------------------


def _derive_key(secret: bytes, info: bytes = HKDF_INFO, length: int = KEY_LENGTH) -> bytes:
    """Derive a key using HKDF-SHA256.

    Args:
        secret: Input keying material.
        info: Context string separating key purposes.
        length: Output length in bytes.

    Returns:
        Derived key bytes.
    """
    hkdf = HKDF(algorithm=SHA256(), length=length, salt=HKDF_SALT, info=info)
    return hkdf.derive(secret)


def _key_id(key: bytes) -> str:
    """Deterministic short identifier for derived key material."""
    return hashlib.sha256(b"melody:key-id:" + key).hexdigest()[:16]


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(text: str, what: str) -> bytes:
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
        raise DecryptionError(f"Malformed {what}: {exc}", cause=exc) from exc


# ---------------------------------------------------------------------------
# KeyCache
# ---------------------------------------------------------------------------


class KeyCache:
    """Process-scoped cache for the single field-encryption key.

    One slot, guarded by a reader/writer lock. Any number of
    protect/unprotect calls can read the key at once; ``init`` and
    ``clear`` wait until they have finished.
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._key: Optional[bytes] = None
        self._key_id: Optional[str] = None

    def init(self, secret: bytes, key_id: Optional[str] = None) -> str:
        """Derive the key from ``secret`` and cache it.

        Calling again with the same secret and id is a no-op; a
        different secret replaces the cached key.

        Args:
            secret: Externally supplied secret bytes.
            key_id: Explicit key id. Defaults to a fingerprint of the
                derived key.

        Returns:
            The cached key id.
        """
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        if not secret:
            raise KeyUnavailableError("Encryption secret must not be empty")

        key = _derive_key(secret)
        kid = key_id or _key_id(key)
        with self._lock.write():
            if self._key == key and self._key_id == kid:
                return kid
            replaced = self._key is not None
            self._key = key
            self._key_id = kid
        logger.info("Encryption key %s %s", kid, "replaced" if replaced else "derived")
        return kid

    def clear(self) -> None:
        """Drop the cached key. Safe to call when nothing was derived."""
        with self._lock.write():
            if self._key is None:
                return
            self._key = None
            kid, self._key_id = self._key_id, None
        logger.info("Encryption key %s cleared", kid)

    @property
    def key_id(self) -> Optional[str]:
        with self._lock.read():
            return self._key_id

    @property
    def initialized(self) -> bool:
        with self._lock.read():
            return self._key is not None

    def get(self) -> tuple[str, bytes]:
        """Return ``(key_id, key)``.

        Raises:
            KeyUnavailableError: If no key has been derived.
        """
        with self._lock.read():
            if self._key is None or self._key_id is None:
                raise KeyUnavailableError("No encryption key has been initialized")
            return self._key_id, self._key

    def seal(self, key_id: str, plaintext: bytes) -> EncryptedField:
        with self._lock.read():
            if self._key is None:
                raise KeyUnavailableError("No encryption key has been initialized")
            if key_id != self._key_id:
                raise KeyUnavailableError(
                    f"Key '{key_id}' is not available (cached key is '{self._key_id}')"
                )
            nonce = os.urandom(NONCE_LENGTH)
            ciphertext = AESGCM(self._key).encrypt(nonce, plaintext, key_id.encode("utf-8"))
        return EncryptedField(ciphertext=_b64(ciphertext), nonce=_b64(nonce), key_id=key_id)

    def open(self, field: EncryptedField) -> bytes:
        nonce = _unb64(field.nonce, "nonce")
        ciphertext = _unb64(field.ciphertext, "ciphertext")
        if len(nonce) != NONCE_LENGTH:
            raise DecryptionError(f"Malformed nonce: expected {NONCE_LENGTH} bytes, got {len(nonce)}")
        with self._lock.read():
            if self._key is None:
                raise DecryptionError("No encryption key has been initialized")
            if field.key_id != self._key_id:
                raise DecryptionError(
                    f"Field was sealed with key '{field.key_id}', "
                    f"cached key is '{self._key_id}'"
                )
            try:
                return AESGCM(self._key).decrypt(nonce, ciphertext, field.key_id.encode("utf-8"))
            except InvalidTag as exc:
                raise DecryptionError("Integrity check failed: ciphertext was altered", cause=exc) from exc


# Process-wide cache for callers that do not manage their own (the CLI).
default_keys = KeyCache()


# ---------------------------------------------------------------------------
# Protect / Unprotect
# ---------------------------------------------------------------------------


def protect(value: Any, key_id: str, keys: KeyCache) -> EncryptedField:
    """Seal a JSON-compatible value.

    Args:
        value: Value to protect. Must be JSON-serializable.
        key_id: Id of the key to seal under; must match the cache.
        keys: Key cache holding the derived key.

    Returns:
        EncryptedField with base64 ciphertext and nonce.

    Raises:
        KeyUnavailableError: No key, or a different key is cached.
        EncryptionError: The value cannot be serialized.
    """
    try:
        plaintext = json.dumps(value, sort_keys=True, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise EncryptionError(f"Value cannot be serialized for encryption: {exc}", cause=exc) from exc
    return keys.seal(key_id, plaintext)


def unprotect(field: EncryptedField, keys: KeyCache) -> Any:
    """Open an EncryptedField and return the original value.

    Raises:
        DecryptionError: Key missing or mismatched, malformed field, or
            failed integrity check. Tampered data is never returned.
    """
    plaintext = keys.open(field)
    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecryptionError(f"Decrypted payload is not valid JSON: {exc}", cause=exc) from exc
