"""Cursor-linked page cache for a single feed key.

Pages are held newest-first, each page newest-first, exactly as the
authority returns them.  Every operation keeps ids unique across all
pages; none of them has an error path.
"""

from __future__ import annotations

from dataclasses import dataclass

from feedsync.core.records import Page, Record, display_order


@dataclass(frozen=True)
class CacheSnapshot:
    """Immutable copy of the cache: the pages plus the ascending view."""

    feed_key: str
    pages: tuple[Page, ...] = ()

    @property
    def records(self) -> tuple[Record, ...]:
        """All records in display order (ascending created_at)."""
        return display_order(r for page in self.pages for r in page.records)

    @property
    def ids(self) -> list[str]:
        return [r.id for r in self.records]

    @property
    def cursor(self) -> str | None:
        return self.pages[-1].cursor if self.pages else None


class PagedCache:
    """The client's current view of one feed, organized in pages."""

    def __init__(self, feed_key: str) -> None:
        self.feed_key = feed_key
        self._pages: list[list[Record]] = []
        self._cursors: list[str | None] = []

    def __len__(self) -> int:
        return sum(len(p) for p in self._pages)

    def __contains__(self, record_id: object) -> bool:
        return self.locate(record_id) is not None  # type: ignore[arg-type]

    def __iter__(self):
        """Iterate records newest-first, page by page."""
        for page in self._pages:
            yield from page

    @property
    def is_empty(self) -> bool:
        return not self._pages

    @property
    def cursor(self) -> str | None:
        """Cursor of the oldest loaded page (``None``: nothing older)."""
        return self._cursors[-1] if self._cursors else None

    @property
    def page_count(self) -> int:
        return len(self._pages)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def locate(self, record_id: str) -> tuple[int, int] | None:
        """Return ``(page_index, offset)`` of *record_id*, or ``None``."""
        for pi, page in enumerate(self._pages):
            for oi, record in enumerate(page):
                if record.id == record_id:
                    return pi, oi
        return None

    def get(self, record_id: str) -> Record | None:
        loc = self.locate(record_id)
        if loc is None:
            return None
        return self._pages[loc[0]][loc[1]]

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def replace_first_page(self, page: Page) -> None:
        """Install *page* as the newest page.

        Any of its ids found in older pages are dropped there so the id
        stays unique.
        """
        records = _dedupe(page.records)
        incoming = {r.id for r in records}
        if not self._pages:
            self._pages.append(records)
            self._cursors.append(page.cursor)
            return
        self._pages[0] = records
        self._cursors[0] = page.cursor
        for older in self._pages[1:]:
            older[:] = [r for r in older if r.id not in incoming]

    def append_older_page(self, page: Page) -> None:
        """Append *page* after the oldest loaded page, skipping known ids."""
        known = {r.id for r in self}
        records = [r for r in _dedupe(page.records) if r.id not in known]
        self._pages.append(records)
        self._cursors.append(page.cursor)

    def upsert(self, record: Record) -> None:
        """Replace the record with the same id in place, or insert at the head."""
        loc = self.locate(record.id)
        if loc is not None:
            self._pages[loc[0]][loc[1]] = record
            return
        if not self._pages:
            self._pages.append([])
            self._cursors.append(None)
        self._pages[0].insert(0, record)

    def replace(self, target_id: str, record: Record) -> bool:
        """Swap the record at *target_id*'s position for *record*.

        When *record*'s id is already cached elsewhere, the target is simply
        removed and the cached copy is overwritten.  Returns ``False`` when
        *target_id* is not cached (nothing changes).
        """
        loc = self.locate(target_id)
        if loc is None:
            return False
        if record.id != target_id and record.id in self:
            self.remove(target_id)
            self.upsert(record)
            return True
        self._pages[loc[0]][loc[1]] = record
        return True

    def insert_at(self, record: Record, location: tuple[int, int]) -> None:
        """Insert *record* at *location*, clamped to the current page layout.

        A no-op when the id is already cached.
        """
        if record.id in self:
            return
        if not self._pages:
            self.upsert(record)
            return
        pi = min(location[0], len(self._pages) - 1)
        page = self._pages[pi]
        page.insert(min(location[1], len(page)), record)

    def remove(self, record_id: str) -> Record | None:
        """Delete *record_id* wherever it resides; return it if it was cached."""
        loc = self.locate(record_id)
        if loc is None:
            return None
        return self._pages[loc[0]].pop(loc[1])

    def clear(self) -> None:
        self._pages.clear()
        self._cursors.clear()

    def snapshot(self) -> CacheSnapshot:
        pages = tuple(
            Page(records=tuple(records), cursor=cursor)
            for records, cursor in zip(self._pages, self._cursors)
        )
        return CacheSnapshot(feed_key=self.feed_key, pages=pages)


def _dedupe(records) -> list[Record]:
    seen: set[str] = set()
    result: list[Record] = []
    for record in records:
        if record.id not in seen:
            seen.add(record.id)
            result.append(record)
    return result
