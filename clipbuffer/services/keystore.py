"""Key store: owns the single symmetric secret for this installation.

The secret lives in a file readable only by the owning user (0600 inside a
0700 directory). First use generates it from the OS CSPRNG. Creation is
single-writer: the candidate key is written to a private temp file and
hard-linked into place, which fails if another writer got there first. The
loser discards its candidate and returns whatever was actually persisted,
so concurrent first-use callers always converge on one key.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from uuid import uuid4

from clipbuffer.utils.crypto import KEY_SIZE, generate_key

logger = logging.getLogger(__name__)


class KeyStoreError(Exception):
    """Raised when the secret cannot be stored, retrieved or deleted."""


class FileKeyStore:
    """Persist the encryption key in an owner-only file."""

    __slots__ = ("path", "_lock")

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def has_key(self) -> bool:
        return self.path.is_file()

    def get_or_create_key(self) -> bytes:
        """Return the persisted key, generating and storing it on first use.

        Raises:
            KeyStoreError: If the key file is unreadable, has the wrong
                length, or a new key cannot be persisted.
        """
        with self._lock:
            key = self._read_key()
            if key is not None:
                return key

            self._store_key(generate_key())

            key = self._read_key()
            if key is None:
                raise KeyStoreError(f"Key file vanished after store: {self.path}")
            return key

    def delete_key(self) -> None:
        """Remove the key. Succeeds whether or not a key exists.

        All content encrypted under the old key becomes unreadable.
        """
        with self._lock:
            try:
                self.path.unlink()
            except FileNotFoundError:
                return
            except OSError as exc:
                raise KeyStoreError(
                    f"Unable to delete key file {self.path}: {exc.strerror}"
                ) from None
            logger.warning("Encryption key deleted: %s", self.path)

    def _read_key(self) -> bytes | None:
        try:
            data = self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise KeyStoreError(
                f"Unable to retrieve key from {self.path}: {exc.strerror}"
            ) from None
        if len(data) != KEY_SIZE:
            raise KeyStoreError(
                f"Key file {self.path} is corrupt: expected {KEY_SIZE} bytes, "
                f"found {len(data)}"
            )
        return data

    def _store_key(self, key: bytes) -> None:
        """Write *key* unless another writer already persisted one."""
        directory = self.path.parent
        tmp_path = directory / f".{self.path.name}.{uuid4().hex}.tmp"
        created = False
        try:
            directory.mkdir(parents=True, exist_ok=True, mode=0o700)
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            created = True
            try:
                os.write(fd, key)
                os.fsync(fd)
            finally:
                os.close(fd)
            try:
                os.link(tmp_path, self.path)
            except FileExistsError:
                logger.info("Encryption key already persisted by another writer")
                return
            logger.info("Generated new encryption key at %s", self.path)
        except OSError as exc:
            raise KeyStoreError(
                f"Unable to store key in {self.path}: {exc.strerror}"
            ) from None
        finally:
            if created:
                tmp_path.unlink(missing_ok=True)
