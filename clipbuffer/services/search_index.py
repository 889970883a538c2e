"""Search index — SQLite FTS5 full-text index over clipboard history.

The index lives in its own database file, separate from the history store.
It is a derived cache: every document can be rebuilt from history, so any
failure of the backing store is logged and degrades to a no-op (or to empty
search results) instead of propagating to the caller.

Tables:
  search_index  FTS5 (item_id UNINDEXED, title, content, application)
  index_meta    item_id -> (indexed_at, content_hash) for change detection
"""
from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select, text

from clipbuffer.models.search_meta import IndexMeta
from clipbuffer.utils.crypto import text_hash

logger = logging.getLogger(__name__)

DEFAULT_RESULT_LIMIT = 1000
DEFAULT_SNIPPET_TOKENS = 32
MAX_SNIPPET_TOKENS = 64  # FTS5 hard limit for snippet()
OPTIMIZE_MERGE_PAGES = 256
OPTIMIZE_MAX_STEPS = 10_000

_CREATE_FTS_SQL = """
    CREATE VIRTUAL TABLE IF NOT EXISTS search_index USING fts5(
        item_id UNINDEXED,
        title,
        content,
        application,
        tokenize='porter unicode61 remove_diacritics 2'
    )
"""

_SEARCH_SQL = """
    SELECT item_id,
           title,
           snippet(search_index, 2, :mark_open, :mark_close, :ellipsis, :tokens) AS snippet,
           bm25(search_index, 0.0, :w_title, :w_content, :w_application) AS bm25_rank
    FROM search_index
    WHERE search_index MATCH :query
    ORDER BY bm25_rank
    LIMIT :limit
"""


class SearchIndexError(Exception):
    """The index store is unavailable or corrupt."""


# Anything the backing store can throw. Caught at every public boundary.
_STORE_ERRORS = (SQLAlchemyError, sqlite3.Error, SearchIndexError)


@dataclass(frozen=True, slots=True)
class SearchResult:
    """A single ranked hit."""
    item_id: str
    title: str
    snippet: str  # content excerpt with highlight markers
    score: float  # higher is better (negated bm25)


@dataclass(frozen=True, slots=True)
class IndexStatistics:
    item_count: int
    size_bytes: int

    @property
    def formatted_size(self) -> str:
        size = float(self.size_bytes)
        for unit in ("bytes", "KB", "MB", "GB"):
            if size < 1000 or unit == "GB":
                break
            size /= 1000
        if unit == "bytes":
            return f"{int(size)} bytes"
        return f"{size:.1f} {unit}"


@dataclass(frozen=True, slots=True)
class IndexDocument:
    """Plaintext fields of one history item, ready for indexing."""
    item_id: str
    title: str
    content: str
    application: str | None = None

    @property
    def content_hash(self) -> str:
        return text_hash(self.title, self.content, self.application)


@dataclass(frozen=True, slots=True)
class ReconcileReport:
    removed: int = 0
    added: int = 0
    updated: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.removed or self.added or self.updated)


def build_match_query(query: str) -> str | None:
    """Turn free text into an FTS5 MATCH expression.

    Each whitespace-separated token becomes a quoted prefix term
    ("tok"*), and terms are implicitly ANDed. Tokens with no letters or
    digits are dropped since the tokenizer would discard them anyway.
    Returns None when nothing searchable remains.
    """
    terms = []
    for token in query.split():
        if not any(ch.isalnum() for ch in token):
            continue
        escaped = token.replace('"', '""')
        terms.append(f'"{escaped}"*')
    return " ".join(terms) if terms else None


class SearchIndex:
    """FTS5 index with BM25 ranking and highlighted snippets.

    All access to the single shared connection goes through ``_session()``,
    which holds the index lock for its whole lifetime, so writes and
    searches are serialized.
    """

    def __init__(
        self,
        db_path: Path | None = None,
        *,
        result_limit: int = DEFAULT_RESULT_LIMIT,
        highlight: tuple[str, str] = ("<mark>", "</mark>"),
        ellipsis: str = "...",
        snippet_tokens: int = DEFAULT_SNIPPET_TOKENS,
        title_weight: float = 10.0,
        content_weight: float = 1.0,
        application_weight: float = 0.5,
    ) -> None:
        if not 1 <= snippet_tokens <= MAX_SNIPPET_TOKENS:
            raise ValueError(f"snippet_tokens must be between 1 and {MAX_SNIPPET_TOKENS}")
        self.db_path = Path(db_path) if db_path is not None else None
        self.result_limit = result_limit
        self.highlight = highlight
        self.ellipsis = ellipsis
        self.snippet_tokens = snippet_tokens
        self.weights = (title_weight, content_weight, application_weight)

        self._lock = threading.Lock()
        self._ready = False

        if self.db_path is not None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            url = f"sqlite:///{self.db_path}"
        else:
            url = "sqlite://"
        self._engine = create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        event.listen(self._engine, "connect", _set_sqlite_pragmas)

        with self._lock:
            try:
                self._setup()
            except _STORE_ERRORS:
                logger.exception("Search index unavailable at %s", self.db_path or ":memory:")

    # ── Store access ──────────────────────────────────────────────────

    def _setup(self) -> None:
        with self._engine.begin() as conn:
            conn.execute(text(_CREATE_FTS_SQL))
        SQLModel.metadata.create_all(self._engine, tables=[IndexMeta.__table__])
        self._ready = True

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """Yield a session on the index store while holding the index lock."""
        with self._lock:
            if not self._ready:
                try:
                    self._setup()
                except _STORE_ERRORS as exc:
                    raise SearchIndexError(f"Search index unavailable: {exc}") from exc
            with Session(self._engine) as session:
                yield session

    def close(self) -> None:
        with self._lock:
            self._engine.dispose()
            self._ready = False

    # ── Mutations ─────────────────────────────────────────────────────

    def index_item(
        self,
        item_id: str,
        title: str,
        content: str,
        application: str | None = None,
    ) -> None:
        """Insert or replace the document for *item_id*.

        Always removes any existing document first, so repeated calls never
        accumulate duplicates. The metadata row is written in the same
        transaction.
        """
        doc = IndexDocument(item_id, title or "", content or "", application)
        try:
            with self._session() as session:
                self._delete_document(session, item_id)
                session.exec(
                    text(
                        "INSERT INTO search_index (item_id, title, content, application) "
                        "VALUES (:item_id, :title, :content, :application)"
                    ).bindparams(
                        item_id=doc.item_id,
                        title=doc.title,
                        content=doc.content,
                        application=doc.application or "",
                    )
                )
                session.add(
                    IndexMeta(
                        item_id=doc.item_id,
                        indexed_at=time.time(),
                        content_hash=doc.content_hash,
                    )
                )
                session.commit()
        except _STORE_ERRORS:
            logger.exception("Failed to index item %s", item_id)

    def remove_item(self, item_id: str) -> None:
        """Delete the document and metadata for *item_id*; absent ids are ignored."""
        try:
            with self._session() as session:
                self._delete_document(session, item_id)
                session.commit()
        except _STORE_ERRORS:
            logger.exception("Failed to remove item %s from search index", item_id)

    def clear_index(self) -> None:
        """Remove every document and metadata row."""
        try:
            with self._session() as session:
                session.exec(text("DELETE FROM search_index"))
                session.exec(text("DELETE FROM index_meta"))
                session.commit()
            logger.info("Search index cleared")
        except _STORE_ERRORS:
            logger.exception("Failed to clear search index")

    @staticmethod
    def _delete_document(session: Session, item_id: str) -> None:
        session.exec(
            text("DELETE FROM search_index WHERE item_id = :item_id").bindparams(
                item_id=item_id
            )
        )
        meta = session.get(IndexMeta, item_id)
        if meta is not None:
            session.delete(meta)
            session.flush()

    # ── Queries ───────────────────────────────────────────────────────

    def search(self, query: str) -> list[SearchResult]:
        """Return ranked hits for *query*, best first.

        An empty or whitespace-only query returns no results.
        """
        match = build_match_query(query or "")
        if match is None:
            return []

        w_title, w_content, w_application = self.weights
        try:
            with self._session() as session:
                rows = session.exec(
                    text(_SEARCH_SQL).bindparams(
                        mark_open=self.highlight[0],
                        mark_close=self.highlight[1],
                        ellipsis=self.ellipsis,
                        tokens=self.snippet_tokens,
                        w_title=w_title,
                        w_content=w_content,
                        w_application=w_application,
                        query=match,
                        limit=self.result_limit,
                    )
                ).all()
        except _STORE_ERRORS:
            logger.warning("Search failed; returning no results", exc_info=True)
            return []

        return [
            SearchResult(
                item_id=row[0],
                title=row[1] or "",
                snippet=row[2] or "",
                score=-float(row[3]),  # bm25() is negative, lower is better
            )
            for row in rows
        ]

    def indexed_ids(self) -> set[str]:
        """Ids with a document or a metadata row in the index."""
        try:
            with self._session() as session:
                doc_ids = session.exec(text("SELECT item_id FROM search_index")).all()
                meta_ids = session.exec(select(IndexMeta.item_id)).all()
        except _STORE_ERRORS:
            logger.warning("Could not list indexed ids", exc_info=True)
            return set()
        return {row[0] for row in doc_ids} | set(meta_ids)

    def content_hash(self, item_id: str) -> str | None:
        try:
            with self._session() as session:
                meta = session.get(IndexMeta, item_id)
                return meta.content_hash if meta is not None else None
        except _STORE_ERRORS:
            logger.warning("Could not read index metadata for %s", item_id, exc_info=True)
            return None

    def statistics(self) -> IndexStatistics:
        """Live document count and on-disk footprint of the index store."""
        count = 0
        try:
            with self._session() as session:
                count = session.exec(text("SELECT COUNT(*) FROM search_index")).scalar_one()
                if self.db_path is None:
                    page_count = session.exec(text("PRAGMA page_count")).scalar_one()
                    page_size = session.exec(text("PRAGMA page_size")).scalar_one()
                    return IndexStatistics(item_count=count, size_bytes=page_count * page_size)
        except _STORE_ERRORS:
            logger.warning("Could not read search index statistics", exc_info=True)
        return IndexStatistics(item_count=count, size_bytes=self._file_size())

    def _file_size(self) -> int:
        if self.db_path is None:
            return 0
        total = 0
        for suffix in ("", "-wal", "-shm"):
            try:
                total += Path(f"{self.db_path}{suffix}").stat().st_size
            except FileNotFoundError:
                continue
        return total

    # ── Maintenance ───────────────────────────────────────────────────

    def optimize(self, pages: int = OPTIMIZE_MERGE_PAGES) -> int:
        """Compact the index into as few segments as possible.

        Runs FTS5 incremental merges of at most *pages* pages each and
        releases the lock between steps, so concurrent searches are only
        ever delayed by one step. Stops once a step reports no work, which
        makes calling it on an optimal index a cheap no-op. Returns the
        number of steps that did work.
        """
        steps = 0
        while steps < OPTIMIZE_MAX_STEPS:
            try:
                with self._session() as session:
                    before = session.exec(text("SELECT total_changes()")).scalar_one()
                    session.exec(
                        text(
                            "INSERT INTO search_index (search_index, rank) VALUES ('merge', :pages)"
                        ).bindparams(pages=-pages)
                    )
                    after = session.exec(text("SELECT total_changes()")).scalar_one()
                    session.commit()
            except _STORE_ERRORS:
                logger.exception("Search index optimize failed after %d steps", steps)
                return steps
            # FTS5 reports fewer than two changes when a merge found nothing to do
            if after - before < 2:
                break
            steps += 1
        logger.debug("Search index optimize finished in %d steps", steps)
        return steps

    def optimize_in_background(self) -> threading.Thread:
        """Run optimize() on a daemon thread and return it."""
        thread = threading.Thread(
            target=self.optimize, name="clipbuffer-index-optimize", daemon=True
        )
        thread.start()
        return thread

    # ── Recovery ──────────────────────────────────────────────────────

    def rebuild(self, documents: Iterable[IndexDocument]) -> int:
        """Drop everything and index *documents* from scratch."""
        self.clear_index()
        count = 0
        for doc in documents:
            self.index_item(doc.item_id, doc.title, doc.content, doc.application)
            count += 1
        logger.info("Search index rebuilt with %d documents", count)
        return count

    def reconcile(self, documents: Iterable[IndexDocument]) -> ReconcileReport:
        """Bring the index in line with the authoritative *documents*.

        Documents for ids not in *documents* are removed; missing documents
        are added; documents whose stored content hash differs are
        reindexed.
        """
        wanted = {doc.item_id: doc for doc in documents}
        try:
            with self._session() as session:
                doc_ids = {
                    row[0]
                    for row in session.exec(text("SELECT item_id FROM search_index")).all()
                }
                hashes = {
                    meta.item_id: meta.content_hash
                    for meta in session.exec(select(IndexMeta)).all()
                }
        except _STORE_ERRORS:
            logger.exception("Search index reconcile skipped: store unavailable")
            return ReconcileReport()

        orphans = (doc_ids | set(hashes)) - set(wanted)
        for item_id in orphans:
            self.remove_item(item_id)

        added = updated = 0
        for item_id, doc in wanted.items():
            stored_hash = hashes.get(item_id)
            if item_id not in doc_ids or stored_hash is None:
                added += 1
            elif stored_hash != doc.content_hash:
                updated += 1
            else:
                continue
            self.index_item(doc.item_id, doc.title, doc.content, doc.application)

        report = ReconcileReport(removed=len(orphans), added=added, updated=updated)
        if report.changed:
            logger.info(
                "Search index reconciled: %d removed, %d added, %d updated",
                report.removed,
                report.added,
                report.updated,
            )
        return report


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()
