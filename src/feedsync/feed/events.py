"""Normalized change-feed events."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from feedsync.core.records import Record, record_from_row


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class Inserted:
    record: Record


@dataclass(frozen=True)
class Updated:
    record: Record


@dataclass(frozen=True)
class Deleted:
    record_id: str


@dataclass(frozen=True)
class ConnectionChanged:
    state: ConnectionState
    cause: BaseException | None = None


FeedEvent = Inserted | Updated | Deleted

# Change types the authority emits.
CHANGE_TYPES: frozenset[str] = frozenset({"INSERT", "UPDATE", "DELETE"})


def normalize_change(payload: dict) -> FeedEvent | None:
    """Turn an authority change payload into a feed event.

    The payload has the shape the authority's change stream emits::

        {"eventType": "INSERT", "new": {...row...}, "old": {}}

    DELETE payloads only need ``old.id``.  Returns ``None`` for payloads
    that carry no usable row (unknown type, missing row).
    """
    etype = str(payload.get("eventType", payload.get("type", ""))).upper()
    if etype not in CHANGE_TYPES:
        return None

    if etype == "DELETE":
        old = payload.get("old") or {}
        record_id = old.get("id")
        if not record_id:
            return None
        return Deleted(str(record_id))

    new = payload.get("new")
    if not new:
        return None
    record = record_from_row(new)
    if etype == "INSERT":
        return Inserted(record)
    return Updated(record)
