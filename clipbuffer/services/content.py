"""Encrypted content cell — write-through encryption of item payloads."""

from __future__ import annotations

import logging

from clipbuffer.services.encryption import Cipher, EncryptionError

logger = logging.getLogger(__name__)


class ContentCell:
    """Seal and open stored payloads with a shared Cipher.

    Writes prefer confidentiality but never lose data: if the cipher cannot
    seal a payload (no key, backend failure) the raw bytes are stored with
    ``is_encrypted=False``. Reads never raise: an envelope that no longer
    opens (key deleted or rotated, tampering) reads as ``None`` and is
    treated as permanently unreadable.
    """

    __slots__ = ("cipher",)

    def __init__(self, cipher: Cipher) -> None:
        self.cipher = cipher

    def seal(self, payload: bytes | None) -> tuple[bytes | None, bool]:
        """Return ``(stored_bytes, is_encrypted)`` for *payload*."""
        if payload is None:
            return None, False
        try:
            return self.cipher.encrypt(payload), True
        except EncryptionError as exc:
            # Stored unflagged so reads return it as-is
            logger.warning(
                "Encryption unavailable (%s); storing payload unencrypted",
                type(exc).__name__,
            )
            return bytes(payload), False

    def open(self, stored: bytes | None, is_encrypted: bool) -> bytes | None:
        """Return the logical payload, or None if it cannot be recovered."""
        if stored is None:
            return None
        if not is_encrypted:
            return stored
        try:
            return self.cipher.decrypt(stored)
        except EncryptionError as exc:
            logger.warning("Stored payload is unreadable (%s)", type(exc).__name__)
            return None
