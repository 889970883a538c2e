"""Explicit construction of the application-scoped services.

Nothing here is a module-level singleton: callers build one ``Services``
bundle at startup and pass its members to whoever needs them.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from sqlalchemy.engine import Engine

from clipbuffer.config import Settings
from clipbuffer.db import create_db_and_tables, create_history_engine
from clipbuffer.services.content import ContentCell
from clipbuffer.services.encryption import Cipher
from clipbuffer.services.history import HistoryService
from clipbuffer.services.keystore import FileKeyStore, KeyStoreError
from clipbuffer.services.search_index import SearchIndex

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    key_store: FileKeyStore
    cipher: Cipher
    cell: ContentCell
    index: SearchIndex
    engine: Engine
    history: HistoryService
    optimizer: threading.Thread | None = None

    def close(self) -> None:
        if self.optimizer is not None:
            self.optimizer.join(timeout=10)
        self.index.close()
        self.engine.dispose()


def get_key_store(settings: Settings) -> FileKeyStore:
    return FileKeyStore(settings.key_path)


def get_cipher(settings: Settings, key_store: FileKeyStore) -> Cipher:
    """Load the installation key into a Cipher.

    Raises KeyStoreError unless ``require_encryption`` is off, in which case
    the failure is logged and a keyless Cipher is returned; content cells
    then fall back to unencrypted storage.
    """
    try:
        return Cipher.from_key_store(key_store)
    except KeyStoreError:
        if settings.require_encryption:
            raise
        logger.error(
            "Encryption key unavailable; new clipboard items will be stored unencrypted",
            exc_info=True,
        )
        return Cipher(None)


def get_search_index(settings: Settings) -> SearchIndex:
    return SearchIndex(
        settings.index_db_path,
        result_limit=settings.search_result_limit,
        highlight=(settings.snippet_open, settings.snippet_close),
        ellipsis=settings.snippet_ellipsis,
        snippet_tokens=settings.snippet_tokens,
        title_weight=settings.title_weight,
        content_weight=settings.content_weight,
        application_weight=settings.application_weight,
    )


def build_services(settings: Settings) -> Services:
    """Construct every service for one application lifetime."""
    settings.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    key_store = get_key_store(settings)
    cipher = get_cipher(settings, key_store)
    cell = ContentCell(cipher)
    index = get_search_index(settings)

    engine = create_history_engine(settings.history_db_path)
    create_db_and_tables(engine)

    history = HistoryService(engine=engine, cell=cell, index=index, settings=settings)
    return Services(
        settings=settings,
        key_store=key_store,
        cipher=cipher,
        cell=cell,
        index=index,
        engine=engine,
        history=history,
    )
