from __future__ import annotations

from clipbuffer.models.history import HistoryItem, HistoryItemContent  # noqa: F401
from clipbuffer.models.search_meta import IndexMeta  # noqa: F401
