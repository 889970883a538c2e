"""History models — clipboard items and their encrypted content cells."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlmodel import Field, SQLModel

from clipbuffer.services.content import ContentCell


class StorageType(str, Enum):
    """User-facing groups of content types that may be saved."""

    TEXT = "text"
    IMAGES = "images"
    FILES = "files"


class ContentType(str, Enum):
    TEXT = "public.utf8-plain-text"
    HTML = "public.html"
    RTF = "public.rtf"
    PNG = "public.png"
    TIFF = "public.tiff"
    FILE_URL = "public.file-url"

    @property
    def storage_type(self) -> StorageType:
        if self in (ContentType.PNG, ContentType.TIFF):
            return StorageType.IMAGES
        if self is ContentType.FILE_URL:
            return StorageType.FILES
        return StorageType.TEXT

    @property
    def searchable(self) -> bool:
        return self in (ContentType.TEXT, ContentType.HTML, ContentType.RTF)


class HistoryItem(SQLModel, table=True):
    __tablename__ = "history_items"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    application: str | None = Field(default=None)  # bundle id / process name of the source app
    first_copied_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_copied_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), index=True
    )
    copy_count: int = Field(default=1)
    pinned: bool = Field(default=False)  # pinned items are exempt from eviction


class HistoryItemContent(SQLModel, table=True):
    """One typed payload of a history item.

    ``stored_value`` holds an envelope when ``is_encrypted`` is set and the
    raw payload otherwise. Use get_value/set_value rather than touching the
    stored bytes directly.
    """

    __tablename__ = "history_item_contents"

    id: int | None = Field(default=None, primary_key=True)
    item_id: str = Field(foreign_key="history_items.id", index=True)
    type: str = Field(default="")
    stored_value: bytes | None = Field(default=None)
    is_encrypted: bool = Field(default=False)

    def get_value(self, cell: ContentCell) -> bytes | None:
        return cell.open(self.stored_value, self.is_encrypted)

    def set_value(self, value: bytes | None, cell: ContentCell) -> None:
        """Write-through: None clears both the bytes and the flag."""
        self.stored_value, self.is_encrypted = cell.seal(value)
