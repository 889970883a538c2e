"""Change-detection rows for the search index store."""
from __future__ import annotations

from sqlmodel import Field, SQLModel


class IndexMeta(SQLModel, table=True):
    __tablename__ = "index_meta"

    item_id: str = Field(primary_key=True)
    indexed_at: float  # unix timestamp
    content_hash: str  # SHA-256 hex over title/content/application
