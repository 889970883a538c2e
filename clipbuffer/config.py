from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from platformdirs import user_data_dir
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from clipbuffer.models.history import StorageType
from clipbuffer.services.search_index import MAX_SNIPPET_TOKENS

APP_NAME = "Buffer"
MAX_HISTORY_SIZE = 1_000_000


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CLIPBUFFER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    data_dir: Path = Path(user_data_dir(APP_NAME, appauthor=False))
    history_db_name: str = "Storage.sqlite"
    index_db_name: str = "SearchIndex.sqlite"
    key_file_name: str = "encryption.key"

    # History bounds
    history_size: int = 200
    unlimited_history: bool = False
    enable_lru: bool = True
    lru_keep_days: int = 7
    enabled_storage_types: set[StorageType] = {
        StorageType.TEXT,
        StorageType.IMAGES,
        StorageType.FILES,
    }

    # When False, a key store failure at startup degrades to unencrypted storage
    require_encryption: bool = True
    reconcile_on_startup: bool = True

    # Search
    search_result_limit: int = 1000
    snippet_open: str = "<mark>"
    snippet_close: str = "</mark>"
    snippet_ellipsis: str = "..."
    snippet_tokens: int = 32
    title_weight: float = 10.0
    content_weight: float = 1.0
    application_weight: float = 0.5

    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_bounds(self) -> Settings:
        if not 1 <= self.history_size <= MAX_HISTORY_SIZE:
            raise ValueError(
                f"HISTORY_SIZE must be between 1 and {MAX_HISTORY_SIZE}, got {self.history_size}"
            )
        if not 1 <= self.lru_keep_days <= 365:
            raise ValueError(f"LRU_KEEP_DAYS must be between 1 and 365, got {self.lru_keep_days}")
        if not 1 <= self.snippet_tokens <= MAX_SNIPPET_TOKENS:
            raise ValueError(
                f"SNIPPET_TOKENS must be between 1 and {MAX_SNIPPET_TOKENS}, got {self.snippet_tokens}"
            )
        if self.search_result_limit < 1:
            raise ValueError("SEARCH_RESULT_LIMIT must be positive")
        if self.title_weight < self.content_weight:
            raise ValueError("TITLE_WEIGHT must not be lower than CONTENT_WEIGHT")
        self.log_level = self.log_level.strip().upper()
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Unknown LOG_LEVEL {self.log_level!r}")
        return self

    @property
    def history_db_path(self) -> Path:
        return self.data_dir / self.history_db_name

    @property
    def index_db_path(self) -> Path:
        return self.data_dir / self.index_db_name

    @property
    def key_path(self) -> Path:
        return self.data_dir / self.key_file_name


@lru_cache
def get_settings() -> Settings:
    return Settings()
