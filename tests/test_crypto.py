"""Tests for field-level encryption — KeyCache, protect, unprotect.

AES-256-GCM with an HKDF-SHA256 derived key; the key id is bound in as
associated data.
"""

from __future__ import annotations

import base64
import threading

import pytest

from conftest import SECRET
from melody.crypto import (
    KEY_LENGTH,
    NONCE_LENGTH,
    KeyCache,
    _derive_key,
    _key_id,
    protect,
    unprotect,
)
from melody.errors import (
    DecryptionError,
    EncryptionError,
    KeyUnavailableError,
)
from melody.models import EncryptedField


# ---------------------------------------------------------------------------
# Crypto helper tests
# ---------------------------------------------------------------------------


class TestCryptoHelpers:
    """Tests for low-level cryptographic helpers."""

    def test_derive_key_deterministic(self) -> None:
        """Same inputs produce same output."""
        assert _derive_key(b"master") == _derive_key(b"master")

    def test_derive_key_different_info(self) -> None:
        """Different info strings produce different keys."""
        assert _derive_key(b"master", b"a") != _derive_key(b"master", b"b")

    def test_derive_key_length(self) -> None:
        assert len(_derive_key(b"master")) == KEY_LENGTH

    def test_key_id_short_hex(self) -> None:
        kid = _key_id(_derive_key(b"master"))
        assert len(kid) == 16
        int(kid, 16)


# ---------------------------------------------------------------------------
# KeyCache lifecycle
# ---------------------------------------------------------------------------


class TestKeyCache:
    """Init, get, and clear."""

    def test_init_returns_key_id(self) -> None:
        cache = KeyCache()
        kid = cache.init(SECRET)
        assert cache.initialized
        assert cache.key_id == kid
        assert cache.get()[0] == kid
        assert len(cache.get()[1]) == KEY_LENGTH

    def test_init_accepts_text(self) -> None:
        assert KeyCache().init(SECRET.decode()) == KeyCache().init(SECRET)

    def test_init_is_idempotent(self) -> None:
        cache = KeyCache()
        assert cache.init(SECRET) == cache.init(SECRET)

    def test_explicit_key_id(self) -> None:
        cache = KeyCache()
        assert cache.init(SECRET, key_id="laptop-2026") == "laptop-2026"
        assert cache.key_id == "laptop-2026"

    def test_init_replaces_key(self) -> None:
        cache = KeyCache()
        first = cache.init(SECRET)
        second = cache.init(b"another secret")
        assert first != second
        assert cache.key_id == second

    def test_empty_secret(self) -> None:
        with pytest.raises(KeyUnavailableError):
            KeyCache().init(b"")

    def test_get_without_init(self) -> None:
        with pytest.raises(KeyUnavailableError):
            KeyCache().get()

    def test_clear(self, keys: KeyCache) -> None:
        keys.clear()
        assert not keys.initialized
        assert keys.key_id is None
        with pytest.raises(KeyUnavailableError):
            keys.get()

    def test_clear_is_idempotent(self) -> None:
        cache = KeyCache()
        cache.clear()
        cache.init(SECRET)
        cache.clear()
        cache.clear()
        assert not cache.initialized


# ---------------------------------------------------------------------------
# Protect / Unprotect
# ---------------------------------------------------------------------------


class TestProtect:
    """Sealing values."""

    def test_round_trip(self, keys: KeyCache) -> None:
        value = {"user": "alice", "ports": [22, 2222], "enabled": True}
        field = protect(value, keys.key_id, keys)
        assert unprotect(field, keys) == value

    def test_field_is_base64(self, keys: KeyCache) -> None:
        field = protect("hello", keys.key_id, keys)
        assert len(base64.b64decode(field.nonce)) == NONCE_LENGTH
        assert base64.b64decode(field.ciphertext)
        assert "hello" not in field.ciphertext

    def test_fresh_nonce_per_call(self, keys: KeyCache) -> None:
        a = protect("same", keys.key_id, keys)
        b = protect("same", keys.key_id, keys)
        assert a.nonce != b.nonce
        assert a.ciphertext != b.ciphertext

    def test_no_key(self) -> None:
        with pytest.raises(KeyUnavailableError):
            protect("x", "some-id", KeyCache())

    def test_unknown_key_id(self, keys: KeyCache) -> None:
        with pytest.raises(KeyUnavailableError):
            protect("x", "not-the-cached-id", keys)

    def test_key_errors_are_encryption_errors(self, keys: KeyCache) -> None:
        with pytest.raises(EncryptionError):
            protect("x", "not-the-cached-id", keys)

    def test_unserializable_value(self, keys: KeyCache) -> None:
        with pytest.raises(EncryptionError):
            protect({"when": object()}, keys.key_id, keys)


class TestUnprotect:
    """Opening sealed values; tampering never returns data."""

    @staticmethod
    def _flip(text: str, index: int = 0) -> str:
        raw = bytearray(base64.b64decode(text))
        raw[index] ^= 0x80
        return base64.b64encode(bytes(raw)).decode()

    def test_bit_flip_in_ciphertext(self, keys: KeyCache) -> None:
        field = protect({"pin": 1234}, keys.key_id, keys)
        tampered = field.model_copy(update={"ciphertext": self._flip(field.ciphertext)})
        with pytest.raises(DecryptionError):
            unprotect(tampered, keys)

    def test_bit_flip_in_tag(self, keys: KeyCache) -> None:
        field = protect({"pin": 1234}, keys.key_id, keys)
        tampered = field.model_copy(update={"ciphertext": self._flip(field.ciphertext, -1)})
        with pytest.raises(DecryptionError):
            unprotect(tampered, keys)

    def test_bit_flip_in_nonce(self, keys: KeyCache) -> None:
        field = protect({"pin": 1234}, keys.key_id, keys)
        tampered = field.model_copy(update={"nonce": self._flip(field.nonce)})
        with pytest.raises(DecryptionError):
            unprotect(tampered, keys)

    def test_key_id_is_authenticated(self) -> None:
        """Relabelling a field with another id fails even with the same key."""
        sealer = KeyCache()
        sealer.init(SECRET, key_id="one")
        field = protect("v", "one", sealer)

        opener = KeyCache()
        opener.init(SECRET, key_id="two")
        relabelled = field.model_copy(update={"key_id": "two"})
        with pytest.raises(DecryptionError):
            unprotect(relabelled, opener)

    def test_same_id_different_secret(self, keys: KeyCache) -> None:
        field = protect("v", keys.key_id, keys)
        impostor = KeyCache()
        impostor.init(b"wrong secret", key_id=keys.key_id)
        with pytest.raises(DecryptionError):
            unprotect(field, impostor)

    def test_wrong_key_id(self, keys: KeyCache) -> None:
        field = protect("v", keys.key_id, keys)
        other = KeyCache()
        other.init(b"wrong secret")
        with pytest.raises(DecryptionError, match="sealed with key"):
            unprotect(field, other)

    def test_after_clear(self, keys: KeyCache) -> None:
        field = protect("v", keys.key_id, keys)
        keys.clear()
        with pytest.raises(DecryptionError):
            unprotect(field, keys)

    def test_malformed_base64(self, keys: KeyCache) -> None:
        field = EncryptedField(ciphertext="!!!not base64!!!", nonce="AAAA", key_id=keys.key_id)
        with pytest.raises(DecryptionError, match="Malformed"):
            unprotect(field, keys)

    def test_short_nonce(self, keys: KeyCache) -> None:
        field = protect("v", keys.key_id, keys)
        short = field.model_copy(update={"nonce": base64.b64encode(b"short").decode()})
        with pytest.raises(DecryptionError, match="nonce"):
            unprotect(short, keys)


class TestConcurrentAccess:
    """protect/unprotect running alongside clear."""

    def test_clear_during_protect(self, keys: KeyCache) -> None:
        kid = keys.key_id
        errors: list[BaseException] = []
        sealed: list[EncryptedField] = []
        start = threading.Event()

        def sealer() -> None:
            start.wait()
            for i in range(200):
                try:
                    sealed.append(protect({"i": i}, kid, keys))
                except KeyUnavailableError:
                    pass
                except BaseException as exc:  # anything else is a bug
                    errors.append(exc)

        def clearer() -> None:
            start.wait()
            keys.clear()

        threads = [threading.Thread(target=sealer) for _ in range(4)]
        threads.append(threading.Thread(target=clearer))
        for t in threads:
            t.start()
        start.set()
        for t in threads:
            t.join()

        assert errors == []
        assert not keys.initialized
        keys.init(SECRET)
        for field in sealed:
            assert unprotect(field, keys)["i"] >= 0
