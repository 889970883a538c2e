"""Tests for crypto utilities and the Cipher.

Covers:
- clipbuffer/utils/crypto.py
- clipbuffer/services/encryption.py
"""

from __future__ import annotations

import base64
import os
import threading

import pytest
from cryptography.exceptions import InvalidTag

from clipbuffer.services.encryption import (
    AuthenticationFailedError,
    Cipher,
    DecryptionFailedError,
    EncryptionError,
    InvalidInputError,
    KeyNotInitializedError,
)
from clipbuffer.utils.crypto import (
    ENVELOPE_OVERHEAD,
    NONCE_SIZE,
    aes_gcm_decrypt,
    aes_gcm_encrypt,
    generate_key,
    sha256_hash,
    text_hash,
)


# ── utils/crypto.py ──────────────────────────────────────────────────


class TestAesGcm:
    def test_roundtrip(self) -> None:
        key = generate_key()
        data = aes_gcm_encrypt(key, b"Hello, clipboard!")
        assert aes_gcm_decrypt(key, data) == b"Hello, clipboard!"

    def test_different_nonces(self) -> None:
        """Two encryptions of the same plaintext produce different ciphertexts."""
        key = generate_key()
        c1 = aes_gcm_encrypt(key, b"same text")
        c2 = aes_gcm_encrypt(key, b"same text")
        assert c1[:NONCE_SIZE] != c2[:NONCE_SIZE]
        assert c1 != c2

    def test_envelope_length(self) -> None:
        key = generate_key()
        assert len(aes_gcm_encrypt(key, b"abc")) == 3 + ENVELOPE_OVERHEAD

    def test_tampered_ciphertext(self) -> None:
        key = generate_key()
        tampered = bytearray(aes_gcm_encrypt(key, b"test data"))
        tampered[-1] ^= 0xFF
        with pytest.raises(InvalidTag):
            aes_gcm_decrypt(key, bytes(tampered))

    def test_wrong_key(self) -> None:
        data = aes_gcm_encrypt(generate_key(), b"secret")
        with pytest.raises(InvalidTag):
            aes_gcm_decrypt(generate_key(), data)


class TestGenerateKey:
    def test_length(self) -> None:
        assert len(generate_key()) == 32

    def test_unique(self) -> None:
        assert generate_key() != generate_key()


class TestHashes:
    def test_sha256_known_value(self) -> None:
        assert sha256_hash(b"") == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )

    def test_text_hash_is_stable(self) -> None:
        assert text_hash("title", "body", "app") == text_hash("title", "body", "app")

    def test_text_hash_field_boundaries(self) -> None:
        assert text_hash("ab", "c") != text_hash("a", "bc")

    def test_text_hash_none_equals_empty(self) -> None:
        assert text_hash("t", "c", None) == text_hash("t", "c", "")


# ── services/encryption.py ───────────────────────────────────────────


class TestCipherRoundtrip:
    def test_bytes(self, cipher: Cipher) -> None:
        data = b"Test clipboard content"
        assert cipher.decrypt(cipher.encrypt(data)) == data

    def test_empty(self, cipher: Cipher) -> None:
        envelope = cipher.encrypt(b"")
        assert len(envelope) == ENVELOPE_OVERHEAD
        assert cipher.decrypt(envelope) == b""

    def test_large_payload(self, cipher: Cipher) -> None:
        data = os.urandom(1024 * 1024 + 17)
        assert cipher.decrypt(cipher.encrypt(data)) == data

    def test_unicode_string(self, cipher: Cipher) -> None:
        text = "Hello 世界 🌍 مرحبا"
        assert cipher.decrypt_string(cipher.encrypt_string(text)) == text

    def test_string_is_base64(self, cipher: Cipher) -> None:
        encoded = cipher.encrypt_string("hello")
        assert len(base64.b64decode(encoded)) == 5 + ENVELOPE_OVERHEAD

    def test_nondeterministic(self, cipher: Cipher) -> None:
        data = b"Same content"
        e1 = cipher.encrypt(data)
        e2 = cipher.encrypt(data)
        assert e1 != e2
        assert cipher.decrypt(e1) == data
        assert cipher.decrypt(e2) == data

    def test_bytearray_input(self, cipher: Cipher) -> None:
        assert cipher.decrypt(cipher.encrypt(bytearray(b"abc"))) == b"abc"


class TestCipherFailures:
    def test_decrypt_garbage(self, cipher: Cipher) -> None:
        with pytest.raises(AuthenticationFailedError):
            cipher.decrypt(b"not encrypted data")

    def test_decrypt_empty(self, cipher: Cipher) -> None:
        with pytest.raises(AuthenticationFailedError):
            cipher.decrypt(b"")

    def test_decrypt_tampered(self, cipher: Cipher) -> None:
        envelope = bytearray(cipher.encrypt(b"sensitive"))
        envelope[NONCE_SIZE] ^= 0x01
        with pytest.raises(AuthenticationFailedError):
            cipher.decrypt(bytes(envelope))

    def test_decrypt_truncated(self, cipher: Cipher) -> None:
        envelope = cipher.encrypt(b"sensitive")
        with pytest.raises(AuthenticationFailedError):
            cipher.decrypt(envelope[:-1])

    def test_wrong_key(self, cipher: Cipher) -> None:
        envelope = cipher.encrypt(b"sensitive")
        with pytest.raises(AuthenticationFailedError):
            Cipher(os.urandom(32)).decrypt(envelope)

    def test_auth_failure_is_decryption_error(self) -> None:
        assert issubclass(AuthenticationFailedError, DecryptionFailedError)
        assert issubclass(DecryptionFailedError, EncryptionError)

    def test_error_does_not_leak_key(self, key: bytes, cipher: Cipher) -> None:
        with pytest.raises(AuthenticationFailedError) as excinfo:
            cipher.decrypt(b"x" * 40)
        assert key.hex() not in str(excinfo.value)
        assert excinfo.value.__cause__ is None

    def test_keyless_encrypt(self) -> None:
        with pytest.raises(KeyNotInitializedError):
            Cipher(None).encrypt(b"data")

    def test_keyless_decrypt(self) -> None:
        with pytest.raises(KeyNotInitializedError):
            Cipher(None).decrypt(b"\x00" * 40)

    def test_rejects_short_key(self) -> None:
        with pytest.raises(ValueError):
            Cipher(b"short")

    def test_decrypt_string_invalid_base64(self, cipher: Cipher) -> None:
        with pytest.raises(InvalidInputError):
            cipher.decrypt_string("not base64 !!")

    def test_decrypt_string_non_utf8(self, cipher: Cipher) -> None:
        encoded = base64.b64encode(cipher.encrypt(b"\xff\xfe\xfd")).decode()
        with pytest.raises(InvalidInputError):
            cipher.decrypt_string(encoded)

    def test_encrypt_string_lone_surrogate(self, cipher: Cipher) -> None:
        with pytest.raises(InvalidInputError):
            cipher.encrypt_string("\ud800")


class TestCipherSharing:
    def test_repr_hides_key(self, key: bytes, cipher: Cipher) -> None:
        assert key.hex() not in repr(cipher)
        assert "loaded" in repr(cipher)

    def test_concurrent_use(self, cipher: Cipher) -> None:
        errors: list[Exception] = []

        def worker(n: int) -> None:
            try:
                for i in range(50):
                    payload = f"{n}-{i}".encode()
                    assert cipher.decrypt(cipher.encrypt(payload)) == payload
            except Exception as exc:  # surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []

    def test_from_key_store(self, key_store) -> None:
        c1 = Cipher.from_key_store(key_store)
        c2 = Cipher.from_key_store(key_store)
        assert c2.decrypt(c1.encrypt(b"persisted")) == b"persisted"
