"""Encryption service for clipbuffer.

Stateless AES-256-GCM wrapper around the installation key. Each call draws a
fresh 96-bit nonce, so encrypting the same payload twice yields different
envelopes. Envelope layout: nonce (12B) || ciphertext || tag (16B).
"""

from __future__ import annotations

import base64
import binascii

from cryptography.exceptions import InvalidTag

from clipbuffer.services.keystore import FileKeyStore
from clipbuffer.utils.crypto import (
    ENVELOPE_OVERHEAD,
    KEY_SIZE,
    aes_gcm_decrypt,
    aes_gcm_encrypt,
)


class EncryptionError(Exception):
    """Base class for cipher failures."""


class KeyNotInitializedError(EncryptionError):
    """The cipher was built without a key."""


class EncryptionFailedError(EncryptionError):
    """The AEAD backend refused to seal the payload."""


class DecryptionFailedError(EncryptionError):
    """The envelope could not be opened or its plaintext decoded."""


class AuthenticationFailedError(DecryptionFailedError):
    """Tag verification failed: malformed input, tampering or wrong key."""


class InvalidInputError(EncryptionError):
    """A string wrapper could not transcode its input."""


class Cipher:
    """Authenticated encryption of item payloads.

    The key is fixed at construction and never mutated, so one instance may
    be shared across threads without locking.
    """

    ALGO: str = "aes-256-gcm"

    __slots__ = ("_key",)

    def __init__(self, key: bytes | None) -> None:
        if key is not None and len(key) != KEY_SIZE:
            raise ValueError(f"Key must be {KEY_SIZE} bytes")
        self._key = bytes(key) if key is not None else None

    @classmethod
    def from_key_store(cls, key_store: FileKeyStore) -> Cipher:
        """Load (or create) the installation key. Propagates KeyStoreError."""
        return cls(key_store.get_or_create_key())

    @property
    def has_key(self) -> bool:
        return self._key is not None

    def __repr__(self) -> str:
        state = "loaded" if self._key is not None else "missing"
        return f"Cipher(algo={self.ALGO!r}, key={state})"

    def encrypt(self, plaintext: bytes) -> bytes:
        """Seal *plaintext* into a fresh envelope.

        Raises KeyNotInitializedError if no key was loaded and
        EncryptionFailedError if the backend rejects the input.
        """
        if self._key is None:
            raise KeyNotInitializedError("Encryption key not initialized")
        try:
            return aes_gcm_encrypt(self._key, bytes(plaintext))
        except (TypeError, ValueError, OverflowError) as exc:
            raise EncryptionFailedError(f"Failed to encrypt data: {type(exc).__name__}") from None

    def decrypt(self, envelope: bytes) -> bytes:
        """Open an envelope produced by encrypt().

        Raises AuthenticationFailedError on short input, tampering or a
        wrong key. No plaintext is returned on any failure path.
        """
        if self._key is None:
            raise KeyNotInitializedError("Encryption key not initialized")
        if len(envelope) < ENVELOPE_OVERHEAD:
            raise AuthenticationFailedError("Envelope too short")
        try:
            return aes_gcm_decrypt(self._key, bytes(envelope))
        except InvalidTag:
            raise AuthenticationFailedError("Authentication tag mismatch") from None

    def encrypt_string(self, text: str) -> str:
        """Encrypt a string and return base64 encoded ciphertext."""
        try:
            data = text.encode("utf-8")
        except (AttributeError, UnicodeEncodeError):
            raise InvalidInputError("Invalid input data") from None
        return base64.b64encode(self.encrypt(data)).decode("ascii")

    def decrypt_string(self, encoded: str) -> str:
        """Decrypt a base64 encoded ciphertext back to a string."""
        try:
            envelope = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError, TypeError):
            raise InvalidInputError("Invalid input data") from None
        plaintext = self.decrypt(envelope)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidInputError("Decrypted data is not valid UTF-8") from None
