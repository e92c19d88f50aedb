"""Client-side reconciliation of a shared, append-mostly record feed.

Merges paginated reads, local optimistic mutations, and a live change feed
into one duplicate-free, ordered view per feed key.
"""

from __future__ import annotations

from feedsync.core.errors import (
    FetchFailed,
    MutationFailed,
    MutationInFlight,
    SubscriptionLost,
    ValidationError,
)
from feedsync.core.records import Page, Record
from feedsync.engine.coordinator import MutationCoordinator, MutationResult
from feedsync.engine.reconciler import EngineState, ReconciliationEngine
from feedsync.feed.adapter import ChangeFeedAdapter
from feedsync.feed.events import ConnectionState, Deleted, Inserted, Updated
from feedsync.session import FeedSession

__all__ = [
    "ChangeFeedAdapter",
    "ConnectionState",
    "Deleted",
    "EngineState",
    "FeedSession",
    "FetchFailed",
    "Inserted",
    "MutationCoordinator",
    "MutationFailed",
    "MutationInFlight",
    "MutationResult",
    "Page",
    "ReconciliationEngine",
    "Record",
    "SubscriptionLost",
    "Updated",
    "ValidationError",
]
