"""Low-level cryptographic primitives for clipbuffer.

Pure functions with no domain knowledge, shared by the services.
"""

from __future__ import annotations

import hashlib
import os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_SIZE = 32  # AES-256
NONCE_SIZE = 12  # 96-bit GCM nonce
TAG_SIZE = 16  # 128-bit GCM tag
ENVELOPE_OVERHEAD = NONCE_SIZE + TAG_SIZE


def generate_key() -> bytes:
    """Generate a fresh random 256-bit AES key from the OS CSPRNG."""
    return AESGCM.generate_key(bit_length=KEY_SIZE * 8)


def aes_gcm_encrypt(key: bytes, plaintext: bytes, aad: bytes | None = None) -> bytes:
    """Encrypt plaintext with AES-256-GCM.

    Returns nonce (12 bytes) || ciphertext || tag (16 bytes).
    """
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, plaintext, aad)
    return nonce + ciphertext


def aes_gcm_decrypt(key: bytes, data: bytes, aad: bytes | None = None) -> bytes:
    """Decrypt data produced by aes_gcm_encrypt.

    Splits data into nonce (first 12 bytes) and ciphertext+tag.
    Raises cryptography.exceptions.InvalidTag on tampered data.
    """
    nonce = data[:NONCE_SIZE]
    ciphertext = data[NONCE_SIZE:]
    aesgcm = AESGCM(key)
    return aesgcm.decrypt(nonce, ciphertext, aad)


def sha256_hash(data: bytes) -> str:
    """Compute SHA-256 hash. Returns hex-encoded digest."""
    return hashlib.sha256(data).hexdigest()


def text_hash(*parts: str | None) -> str:
    """Stable hash over several text fields.

    Fields are UTF-8 encoded and joined with a unit separator so that
    ("ab", "c") and ("a", "bc") hash differently. None hashes like "".
    """
    joined = "\x1f".join(p or "" for p in parts)
    return sha256_hash(joined.encode("utf-8"))
