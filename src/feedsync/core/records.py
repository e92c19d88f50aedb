"""Record and Page primitives, row normalization, and display ordering.

A *record* is one entry of a feed (one message of a channel).  Records
arriving from the authority are plain row dicts; ``record_from_row()`` is
the single normalization path used by fetch results, submit responses and
feed payloads alike.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

# Column aliases accepted from authority rows: canonical name -> alternatives.
_ROW_ALIASES: dict[str, tuple[str, ...]] = {
    "feed_key": ("channel_id",),
    "author_id": ("user_id",),
    "content": ("body",),
}


@dataclass(frozen=True)
class Record:
    """One feed entry as held in the client cache.

    ``tentative`` is ``True`` while the record reflects a local intent the
    authority has not yet confirmed.  ``client_ref`` is the tentative id the
    record was created under, when the authority echoes it back.
    """

    id: str
    feed_key: str
    author_id: str
    content: str
    created_at: datetime
    updated_at: datetime
    tentative: bool = False
    client_ref: str | None = field(default=None, compare=False)

    def confirmed(self) -> Record:
        """Return a copy with the tentative flag cleared."""
        return replace(self, tentative=False)


@dataclass(frozen=True)
class Page:
    """A run of records, newest first, plus the cursor for the next older page.

    ``cursor`` is ``None`` when the authority has no older records.
    """

    records: tuple[Record, ...] = ()
    cursor: str | None = None

    @property
    def ids(self) -> list[str]:
        return [r.id for r in self.records]


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts a trailing ``Z``.  Naive values are taken to be UTC.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Format *dt* as ISO-8601 UTC with a ``Z`` suffix."""
    return parse_timestamp(dt).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Row normalization
# ---------------------------------------------------------------------------


def _row_value(row: dict, key: str):
    if key in row:
        return row[key]
    for alias in _ROW_ALIASES.get(key, ()):
        if alias in row:
            return row[alias]
    raise KeyError(key)


def record_from_row(row: dict, *, tentative: bool = False) -> Record:
    """Build a ``Record`` from an authority row dict.

    Both canonical column names and the authority's table names
    (``channel_id``, ``user_id``, ``body``) are accepted.

    Raises:
        KeyError: If a required column is missing.
    """
    created_at = parse_timestamp(_row_value(row, "created_at"))
    updated = row.get("updated_at")
    return Record(
        id=str(row["id"]),
        feed_key=str(_row_value(row, "feed_key")),
        author_id=str(_row_value(row, "author_id") or ""),
        content=str(_row_value(row, "content")),
        created_at=created_at,
        updated_at=parse_timestamp(updated) if updated else created_at,
        tentative=tentative,
        client_ref=row.get("client_ref"),
    )


def record_to_row(record: Record) -> dict:
    """Serialize a ``Record`` to a JSON-friendly row dict (canonical names)."""
    row: dict = {
        "id": record.id,
        "feed_key": record.feed_key,
        "author_id": record.author_id,
        "content": record.content,
        "created_at": format_timestamp(record.created_at),
        "updated_at": format_timestamp(record.updated_at),
        "tentative": record.tentative,
    }
    if record.client_ref is not None:
        row["client_ref"] = record.client_ref
    return row


# ---------------------------------------------------------------------------
# Paging and ordering
# ---------------------------------------------------------------------------


def page_cursor(records: list[Record] | tuple[Record, ...], limit: int) -> str | None:
    """Return the cursor for the page after *records*.

    The cursor is the created_at of the oldest (last) record, and only
    exists when the page came back full.
    """
    if not records or len(records) < limit:
        return None
    return format_timestamp(records[-1].created_at)


def display_order(records) -> tuple[Record, ...]:
    """Return *records* sorted ascending by created_at (stable for ties)."""
    return tuple(sorted(records, key=lambda r: r.created_at))


def validate_content(content: str, max_length: int) -> str:
    """Trim *content* and check it against the length bound.

    Returns the trimmed content.

    Raises:
        ValidationError: If the trimmed content is empty or too long.
    """
    from feedsync.core.errors import ValidationError

    if not isinstance(content, str):
        raise ValidationError("Message must be a string")
    trimmed = content.strip()
    if not trimmed:
        raise ValidationError("Message cannot be empty")
    if len(trimmed) > max_length:
        raise ValidationError(f"Message too long (max {max_length} characters)")
    return trimmed
