"""History store — bounded clipboard history kept in step with the search index.

The history database is the source of truth. Every write here is followed by
exactly one index call carrying the plaintext fields, captured before they
leave scope: ``index_item`` after an insert or update, ``remove_item`` after a
delete or eviction. The two stores are not covered by one transaction, so
``reconcile_index()`` repairs any drift left by a crash between the writes.
"""

from __future__ import annotations

import html
import logging
import re
from collections.abc import Iterator, Sequence
from datetime import datetime, timedelta, timezone

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, func, select

from clipbuffer.config import Settings
from clipbuffer.models.history import (
    ContentType,
    HistoryItem,
    HistoryItemContent,
    StorageType,
)
from clipbuffer.services.content import ContentCell
from clipbuffer.services.search_index import (
    IndexDocument,
    ReconcileReport,
    SearchIndex,
    SearchResult,
)

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 200

# Order of preference when picking the text to index
_TEXT_TYPES = tuple(t for t in ContentType if t.searchable)

_HTML_TAG_RE = re.compile(r"<[^>]+>")
_RTF_CONTROL_RE = re.compile(r"\\[a-zA-Z]+-?\d* ?|\\'[0-9a-fA-F]{2}|[{}]")
_WHITESPACE_RE = re.compile(r"\s+")

Contents = Sequence[tuple[str, bytes]]


def storage_type_of(content_type: str) -> StorageType:
    """Storage group for a raw type tag; unknown tags count as text."""
    try:
        return ContentType(content_type).storage_type
    except ValueError:
        return StorageType.TEXT


def extract_text(contents: Sequence[tuple[str, bytes | None]]) -> str | None:
    """Best plaintext rendition of an item's contents, or None if it has none."""
    by_type = {t: v for t, v in contents if v is not None}
    for content_type in _TEXT_TYPES:
        raw = by_type.get(content_type.value)
        if raw is None:
            continue
        text = raw.decode("utf-8", errors="replace")
        if content_type is ContentType.HTML:
            text = html.unescape(_HTML_TAG_RE.sub(" ", text))
        elif content_type is ContentType.RTF:
            text = _RTF_CONTROL_RE.sub("", text)
        return text
    return None


def make_title(text: str) -> str:
    """First non-blank line, whitespace collapsed, truncated."""
    for line in text.splitlines():
        collapsed = _WHITESPACE_RE.sub(" ", line).strip()
        if collapsed:
            if len(collapsed) > TITLE_MAX_LENGTH:
                return collapsed[: TITLE_MAX_LENGTH - 1] + "…"
            return collapsed
    return ""


class HistoryService:
    """Bounded, encrypted clipboard history with a synchronized search index."""

    def __init__(
        self,
        engine: Engine,
        cell: ContentCell,
        index: SearchIndex,
        settings: Settings,
    ) -> None:
        self.engine = engine
        self.cell = cell
        self.index = index
        self.settings = settings

    # ── Writes ────────────────────────────────────────────────────────

    def add(self, contents: Contents, application: str | None = None) -> HistoryItem | None:
        """Store a newly captured clipboard item.

        Content types whose storage group is disabled are dropped; if nothing
        remains the capture is ignored. Copying the same contents as the
        newest item bumps that item instead of creating a duplicate.
        """
        kept = self._enabled(contents)
        if not kept:
            logger.debug("Capture ignored: no enabled content types")
            return None

        text = extract_text(kept)
        with Session(self.engine) as session:
            latest = session.exec(
                select(HistoryItem).order_by(col(HistoryItem.last_copied_at).desc()).limit(1)
            ).first()
            if latest is not None and self._load_contents(session, latest.id) == list(kept):
                latest.copy_count += 1
                latest.last_copied_at = datetime.now(timezone.utc)
                latest.application = application
                session.add(latest)
                session.commit()
                session.refresh(latest)
                item = latest
            else:
                item = HistoryItem(application=application)
                session.add(item)
                session.flush()
                self._write_contents(session, item.id, kept)
                session.commit()
                session.refresh(item)

        self._sync_index(item.id, text, application)
        self.evict()
        return item

    def update(self, item_id: str, contents: Contents) -> HistoryItem | None:
        """Replace the contents of an existing item. Returns None if it is gone."""
        kept = self._enabled(contents)
        text = extract_text(kept)
        with Session(self.engine) as session:
            item = session.get(HistoryItem, item_id)
            if item is None:
                return None
            self._delete_contents(session, item_id)
            self._write_contents(session, item_id, kept)
            item.last_copied_at = datetime.now(timezone.utc)
            session.add(item)
            session.commit()
            session.refresh(item)

        self._sync_index(item.id, text, item.application)
        return item

    def delete(self, item_id: str) -> bool:
        with Session(self.engine) as session:
            item = session.get(HistoryItem, item_id)
            if item is None:
                return False
            self._delete_contents(session, item_id)
            session.delete(item)
            session.commit()
        self.index.remove_item(item_id)
        return True

    def clear(self, include_pinned: bool = False) -> int:
        """Delete all items (pinned ones only if asked). Returns the count removed."""
        with Session(self.engine) as session:
            query = select(HistoryItem)
            if not include_pinned:
                query = query.where(col(HistoryItem.pinned).is_(False))
            items = session.exec(query).all()
            removed = [item.id for item in items]
            for item in items:
                self._delete_contents(session, item.id)
                session.delete(item)
            session.commit()

        if include_pinned:
            self.index.clear_index()
        else:
            for item_id in removed:
                self.index.remove_item(item_id)
        logger.info("History cleared: %d items removed", len(removed))
        return len(removed)

    def pin(self, item_id: str, pinned: bool = True) -> bool:
        with Session(self.engine) as session:
            item = session.get(HistoryItem, item_id)
            if item is None:
                return False
            item.pinned = pinned
            session.add(item)
            session.commit()
        return True

    def evict(self) -> list[str]:
        """Apply the size cap and the age cut-off. Pinned items are never evicted.

        Returns the ids removed, each of which is also removed from the index.
        """
        evicted: list[str] = []
        with Session(self.engine) as session:
            unpinned = col(HistoryItem.pinned).is_(False)
            if self.settings.enable_lru:
                cutoff = datetime.now(timezone.utc) - timedelta(days=self.settings.lru_keep_days)
                stale = session.exec(
                    select(HistoryItem).where(
                        unpinned, col(HistoryItem.last_copied_at) < cutoff
                    )
                ).all()
                evicted.extend(item.id for item in stale)

            if not self.settings.unlimited_history:
                # pinned items do not count against the cap
                total = session.exec(
                    select(func.count()).select_from(HistoryItem).where(unpinned)
                ).one()
                total -= len(evicted)
                excess = total - self.settings.history_size
                if excess > 0:
                    oldest = session.exec(
                        select(HistoryItem.id)
                        .where(unpinned, col(HistoryItem.id).not_in(evicted))
                        .order_by(col(HistoryItem.last_copied_at).asc())
                        .limit(excess)
                    ).all()
                    evicted.extend(oldest)

            for item_id in evicted:
                self._delete_contents(session, item_id)
                item = session.get(HistoryItem, item_id)
                if item is not None:
                    session.delete(item)
            session.commit()

        for item_id in evicted:
            self.index.remove_item(item_id)
        if evicted:
            logger.info("Evicted %d history items", len(evicted))
        return evicted

    # ── Reads ─────────────────────────────────────────────────────────

    def get(self, item_id: str) -> HistoryItem | None:
        with Session(self.engine) as session:
            return session.get(HistoryItem, item_id)

    def items(self) -> list[HistoryItem]:
        """All items, most recently copied first."""
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(HistoryItem).order_by(col(HistoryItem.last_copied_at).desc())
                ).all()
            )

    def count(self) -> int:
        with Session(self.engine) as session:
            return session.exec(select(func.count()).select_from(HistoryItem)).one()

    def contents(self, item_id: str) -> list[tuple[str, bytes | None]]:
        """Decrypted contents; unreadable payloads come back as None."""
        with Session(self.engine) as session:
            return self._load_contents(session, item_id)

    def text(self, item_id: str) -> str | None:
        return extract_text(self.contents(item_id))

    def title(self, item_id: str) -> str:
        text = self.text(item_id)
        return make_title(text) if text else ""

    def search(self, query: str) -> list[tuple[HistoryItem, SearchResult]]:
        """Ranked hits resolved back to history items.

        Hits whose item no longer exists (index lagging behind a delete) are
        dropped.
        """
        results = self.index.search(query)
        if not results:
            return []
        ids = [r.item_id for r in results]
        with Session(self.engine) as session:
            found = {
                item.id: item
                for item in session.exec(
                    select(HistoryItem).where(col(HistoryItem.id).in_(ids))
                ).all()
            }
        return [(found[r.item_id], r) for r in results if r.item_id in found]

    # ── Index maintenance ─────────────────────────────────────────────

    def documents(self) -> Iterator[IndexDocument]:
        """Plaintext index documents for every item that has readable text."""
        for item in self.items():
            text = self.text(item.id)
            if text is None:
                continue
            yield IndexDocument(
                item_id=item.id,
                title=make_title(text),
                content=text,
                application=item.application,
            )

    def reconcile_index(self) -> ReconcileReport:
        return self.index.reconcile(self.documents())

    def rebuild_index(self) -> int:
        return self.index.rebuild(self.documents())

    # ── Helpers ───────────────────────────────────────────────────────

    def _enabled(self, contents: Contents) -> list[tuple[str, bytes]]:
        enabled = self.settings.enabled_storage_types
        kept = []
        for content_type, payload in contents:
            tag = content_type.value if isinstance(content_type, ContentType) else str(content_type)
            if storage_type_of(tag) in enabled:
                kept.append((tag, bytes(payload)))
        return kept

    def _sync_index(self, item_id: str, text: str | None, application: str | None) -> None:
        if text is None:
            self.index.remove_item(item_id)
        else:
            self.index.index_item(item_id, make_title(text), text, application)

    def _write_contents(self, session: Session, item_id: str, contents: Contents) -> None:
        for content_type, payload in contents:
            content = HistoryItemContent(item_id=item_id, type=content_type)
            content.set_value(payload, self.cell)
            session.add(content)

    def _load_contents(self, session: Session, item_id: str) -> list[tuple[str, bytes | None]]:
        rows = session.exec(
            select(HistoryItemContent)
            .where(HistoryItemContent.item_id == item_id)
            .order_by(col(HistoryItemContent.id))
        ).all()
        return [(row.type, row.get_value(self.cell)) for row in rows]

    @staticmethod
    def _delete_contents(session: Session, item_id: str) -> None:
        rows = session.exec(
            select(HistoryItemContent).where(HistoryItemContent.item_id == item_id)
        ).all()
        for row in rows:
            session.delete(row)
        session.flush()
