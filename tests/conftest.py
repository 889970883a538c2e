from __future__ import annotations

import os
from pathlib import Path

import pytest

import clipbuffer.models  # noqa: F401  registers SQLModel tables

from clipbuffer.config import Settings
from clipbuffer.db import create_db_and_tables, create_history_engine
from clipbuffer.services.content import ContentCell
from clipbuffer.services.encryption import Cipher
from clipbuffer.services.history import HistoryService
from clipbuffer.services.keystore import FileKeyStore
from clipbuffer.services.search_index import SearchIndex


# ── Settings ──────────────────────────────────────────────────────────


@pytest.fixture(name="settings")
def settings_fixture(tmp_path: Path) -> Settings:
    """Settings isolated from any .env file, rooted in a temp data dir."""
    return Settings(_env_file=None, data_dir=tmp_path / "data")


# ── Encryption fixtures ───────────────────────────────────────────────


@pytest.fixture(name="key_path")
def key_path_fixture(tmp_path: Path) -> Path:
    return tmp_path / "keys" / "encryption.key"


@pytest.fixture(name="key_store")
def key_store_fixture(key_path: Path) -> FileKeyStore:
    return FileKeyStore(key_path)


@pytest.fixture(name="key")
def key_fixture() -> bytes:
    return os.urandom(32)


@pytest.fixture(name="cipher")
def cipher_fixture(key: bytes) -> Cipher:
    return Cipher(key)


@pytest.fixture(name="cell")
def cell_fixture(cipher: Cipher) -> ContentCell:
    return ContentCell(cipher)


# ── Search index fixtures ─────────────────────────────────────────────


@pytest.fixture(name="index_path")
def index_path_fixture(tmp_path: Path) -> Path:
    return tmp_path / "SearchIndex.sqlite"


@pytest.fixture(name="index")
def index_fixture(index_path: Path):
    """File-backed index so size statistics are real."""
    index = SearchIndex(index_path)
    yield index
    index.close()


# ── History fixtures ──────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory history database, fresh per test."""
    engine = create_history_engine(None)
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="history")
def history_fixture(engine, cell: ContentCell, index: SearchIndex, settings: Settings) -> HistoryService:
    return HistoryService(engine=engine, cell=cell, index=index, settings=settings)
