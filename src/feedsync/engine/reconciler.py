"""Reconciliation Engine: the single merge authority for one feed key.

Three sources feed the cache: fetched pages, local optimistic mutations,
and the live change feed.  All of them go through ``_run()``, which
executes one synchronous step at a time; a step requested while another is
executing (for example by a listener) is queued behind it.  Suspension only
happens in the ``async`` methods, around the fetch itself, never inside a
step.

Merge rules:

* ``Inserted`` -- an id already held as a confirmed record is a no-op; a
  tentative create matching the incoming record (echoed client ref, else
  same author and content) is replaced in place; anything else goes to
  the head of the first page.
* ``Updated`` -- applied only when strictly newer than the stored record.
* ``Deleted`` -- always removes; marks any in-flight mutation on the id as
  superseded.
* confirmation -- the tentative record is replaced in place by the
  authoritative one, or, when the feed got there first, the authoritative
  id is inserted only if still missing.
* rollback -- the pre-mutation record is put back exactly where it was.
* resync -- every return to connected rebuilds from a fresh first page; a
  page fetched across another drop is discarded and fetched again.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum

from feedsync.cache.ledger import (
    Confirmed,
    MutationKind,
    MutationStatus,
    PendingLedger,
    PendingMutation,
    RolledBack,
)
from feedsync.cache.paged import CacheSnapshot, PagedCache
from feedsync.core.config import FeedConfig, resolve_config
from feedsync.core.errors import FetchFailed, ValidationError
from feedsync.core.records import Page, Record, page_cursor, record_from_row
from feedsync.engine.listeners import ListenerSet
from feedsync.feed.events import ConnectionChanged, ConnectionState, Deleted, Inserted, Updated

logger = logging.getLogger(__name__)

# How many recently deleted ids a late create confirmation is checked against.
_RECENT_DELETES = 1024


class EngineState(str, Enum):
    EMPTY = "empty"
    LOADED = "loaded"
    RECONCILING = "reconciling"
    RESYNCING = "resyncing"


@dataclass(frozen=True)
class EngineSnapshot:
    """What presentation layers render: records, connection, pending work."""

    feed_key: str
    state: EngineState
    connection: ConnectionState
    cache: CacheSnapshot
    pending: tuple[str, ...] = ()

    @property
    def records(self) -> tuple[Record, ...]:
        return self.cache.records

    @property
    def has_more(self) -> bool:
        return self.cache.cursor is not None


class ReconciliationEngine:
    """Own the Paged Cache, Pending Mutation Ledger, and connection state."""

    def __init__(
        self,
        feed_key: str,
        fetcher,
        config: FeedConfig | dict | None = None,
    ) -> None:
        self.feed_key = feed_key
        self.fetcher = fetcher
        self.config = resolve_config(config)
        self.cache = PagedCache(feed_key)
        self.ledger = PendingLedger()

        self._state = EngineState.EMPTY
        self._connection = ConnectionState.CONNECTED
        self._needs_resync = False
        self._closed = False

        self._steps: deque[Callable[[], None]] = deque()
        self._draining = False
        self._dirty = False
        self._listeners = ListenerSet()

        # Bumped whenever the first page is (re)installed; older-page
        # fetches started under a previous epoch are discarded.
        self._epoch = 0
        self._older_generation = 0
        # Feed events held back while a first-page fetch is in flight.
        self._buffered: list | None = None
        self._confirmed_while_buffering: list[Record] = []
        self._recently_deleted: OrderedDict[str, None] = OrderedDict()
        self._resync_task: asyncio.Task | None = None
        # Bumped on every drop; a resync page fetched across a drop is stale.
        self._disconnects = 0

    # ------------------------------------------------------------------
    # Read-only surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def connection(self) -> ConnectionState:
        return self._connection

    @property
    def needs_resync(self) -> bool:
        return self._needs_resync

    @property
    def has_more(self) -> bool:
        return self.cache.cursor is not None

    def view(self) -> tuple[Record, ...]:
        """Current records in display order (ascending created_at)."""
        return self.cache.snapshot().records

    def snapshot(self) -> EngineSnapshot:
        return EngineSnapshot(
            feed_key=self.feed_key,
            state=self._state,
            connection=self._connection,
            cache=self.cache.snapshot(),
            pending=tuple(m.mutation_id for m in self.ledger),
        )

    def pending_status(self, mutation_id: str) -> MutationStatus | None:
        return self.ledger.status(mutation_id)

    def is_pending(self, record_id: str) -> bool:
        """True if an unconfirmed mutation governs *record_id*."""
        return record_id in self.ledger

    def subscribe(self, listener: Callable[[EngineSnapshot], None]) -> Callable[[], None]:
        """Register *listener* for snapshot changes; returns the unsubscribe callable."""
        return self._listeners.register(listener)

    # ------------------------------------------------------------------
    # Serialized entry point
    # ------------------------------------------------------------------

    def _run(self, step: Callable[[], None]) -> None:
        """Execute *step* now, or queue it behind the step currently executing."""
        if self._closed:
            return
        self._steps.append(step)
        if self._draining:
            return
        self._draining = True
        try:
            while self._steps and not self._closed:
                fn = self._steps.popleft()
                if self._state is EngineState.LOADED:
                    self._state = EngineState.RECONCILING
                try:
                    fn()
                finally:
                    if self._state is EngineState.RECONCILING:
                        self._state = EngineState.LOADED
                if self._dirty:
                    self._dirty = False
                    self._listeners.notify(self.snapshot())
        finally:
            self._draining = False
            if self._closed:
                self._steps.clear()

    def _changed(self) -> None:
        self._dirty = True

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def load(self) -> CacheSnapshot | None:
        """Fetch the newest page and install it as the first page.

        Feed events arriving during the fetch are held and replayed once
        the page is in.  Returns ``None`` if a later load superseded this one.

        Raises:
            FetchFailed: The fetch failed; the cache is unchanged.
        """
        self._epoch += 1
        epoch = self._epoch
        if self._buffered is None:
            self._buffered = []
        try:
            page = await self._fetch(None)
        except FetchFailed:
            if epoch == self._epoch:
                self._run(self._flush_buffer)
            raise
        if epoch != self._epoch:
            return None
        self._run(lambda: self._install_first_page(page, reset=False))
        return self.cache.snapshot()

    async def load_older(self) -> Page | None:
        """Fetch the page after the oldest loaded one and append it.

        Starting another call while one is outstanding makes the earlier
        call's result stale: it is dropped and that call returns ``None``.
        Also returns ``None`` when there is nothing older to fetch.

        Raises:
            FetchFailed: The (still current) fetch failed; the cache is unchanged.
        """
        cursor = self.cache.cursor
        if self._state is EngineState.EMPTY or cursor is None:
            return None

        self._older_generation += 1
        generation, epoch = self._older_generation, self._epoch

        def _stale() -> bool:
            return (
                generation != self._older_generation
                or epoch != self._epoch
                or self.cache.cursor != cursor
            )

        try:
            page = await self._fetch(cursor)
        except FetchFailed:
            if _stale():
                return None
            raise
        if _stale():
            logger.debug("discarding stale page for %s after %s", self.feed_key, cursor)
            return None

        def _append() -> None:
            self.cache.append_older_page(page)
            self._changed()

        self._run(_append)
        return page

    async def resync(self) -> None:
        """Discard feed-derived state and rebuild from a fresh first page.

        Retries with the reconnect backoff until it succeeds, the engine is
        closed, or the connection drops again.
        """
        self._run(self._enter_resync)
        logger.debug("resyncing %s", self.feed_key)

        base = float(self.config["reconnect_delay_seconds"])
        ceiling = float(self.config["reconnect_max_delay_seconds"])
        attempt = 0
        while not self._closed:
            self._epoch += 1
            epoch, disconnects = self._epoch, self._disconnects
            try:
                page = await self._fetch(None)
            except FetchFailed as exc:
                logger.warning("resync of %s failed: %s", self.feed_key, exc)
                if self._connection is ConnectionState.RECONNECTING:
                    break
                await asyncio.sleep(min(base * (2**attempt), ceiling))
                attempt += 1
                continue
            if epoch != self._epoch:
                return
            if disconnects != self._disconnects:
                logger.debug("discarding resync page for %s fetched across a drop", self.feed_key)
                if self._connection is ConnectionState.RECONNECTING:
                    break
                continue
            self._run(lambda: self._install_first_page(page, reset=True))
            logger.debug("resync of %s complete", self.feed_key)
            return

        # Gave up: keep serving the stale cache until the next reconnect.
        self._run(self._abandon_resync)

    async def wait_for_resync(self) -> None:
        """Wait for a reconnect-triggered resync, if one is running."""
        task = self._resync_task
        if task is not None and not task.done():
            await task

    async def _fetch(self, cursor: str | None) -> Page:
        limit = int(self.config["page_limit"])
        try:
            result = self.fetcher.fetch_page(self.feed_key, cursor, limit)
            if inspect.isawaitable(result):
                result = await result
            return _to_page(result, limit)
        except Exception as exc:
            raise FetchFailed(self.feed_key, cursor, exc) from exc

    def _enter_resync(self) -> None:
        self._state = EngineState.RESYNCING
        if self._buffered is None:
            self._buffered = []
        self._changed()

    def _install_first_page(self, page: Page, *, reset: bool) -> None:
        previous = {r.id for r in self.cache}
        if reset:
            self.cache.clear()
            self._needs_resync = False
        self.cache.replace_first_page(page)
        # Deletion is terminal: a page fetched before a delete landed
        # must not bring the record back.
        for record_id in self._recently_deleted:
            self.cache.remove(record_id)
        self._reapply_pending(previous)
        if self._state is not EngineState.RECONCILING:
            self._state = EngineState.LOADED
        self._changed()
        self._flush_buffer()
        if self._needs_resync and self._connection is ConnectionState.CONNECTED:
            # The connection dropped and came back while this page was in flight.
            self._start_resync()

    def _abandon_resync(self) -> None:
        self._state = EngineState.LOADED if not self.cache.is_empty else EngineState.EMPTY
        self._changed()
        self._flush_buffer()

    def _flush_buffer(self) -> None:
        buffered, self._buffered = self._buffered or [], None
        confirmed, self._confirmed_while_buffering = self._confirmed_while_buffering, []
        if self._state is EngineState.EMPTY:
            return
        for record in confirmed:
            self._merge_authoritative(record)
        for event in buffered:
            self._apply_feed_event(event)

    def _reapply_pending(self, previous: set[str]) -> None:
        """Lay still-pending local intents over a freshly installed page.

        *previous* holds the ids cached before the page went in; only records
        outside it can be the committed copy of a pending create.
        """
        for m in self.ledger:
            if m.kind is MutationKind.CREATE:
                if m.reconciled_id is not None or m.target_id in self.cache:
                    continue
                committed = self._find_committed(m, previous)
                if committed is None:
                    self.cache.upsert(m.optimistic)
                else:
                    logger.debug("fresh page already holds %s as %s", m.target_id, committed.id)
                    self.cache.upsert(replace(committed, client_ref=m.target_id))
                    m.reconciled_id = committed.id
            elif m.kind is MutationKind.UPDATE:
                current = self.cache.get(m.target_id)
                if current is None:
                    m.location = None
                    continue
                if not current.tentative:
                    m.before = current
                m.location = self.cache.locate(m.target_id)
                m.optimistic = replace(current, content=m.optimistic.content, tentative=True)
                self.cache.upsert(m.optimistic)
            else:
                current = self.cache.get(m.target_id)
                if current is None:
                    m.location = None
                    continue
                m.before = current
                m.location = self.cache.locate(m.target_id)
                self.cache.remove(m.target_id)

    # ------------------------------------------------------------------
    # Feed events
    # ------------------------------------------------------------------

    def handle_event(self, event) -> None:
        """Sink for the change feed adapter: fold *event* into the cache."""
        if isinstance(event, ConnectionChanged):
            self._run(lambda: self._on_connection(event))
            return
        if self._buffered is not None:
            self._buffered.append(event)
            return
        if self._state is EngineState.EMPTY:
            logger.debug("ignoring %r before the first page is loaded", event)
            return
        self._run(lambda: self._apply_feed_event(event))

    def _on_connection(self, event: ConnectionChanged) -> None:
        if event.state is self._connection:
            return
        self._connection = event.state
        self._changed()
        if event.state is ConnectionState.RECONNECTING:
            self._disconnects += 1
            self._needs_resync = True
            return
        if self._needs_resync and self._state is not EngineState.EMPTY:
            self._start_resync()

    def _start_resync(self) -> None:
        if self._resync_task is not None and not self._resync_task.done():
            return
        self._resync_task = asyncio.get_running_loop().create_task(self.resync())

    def _apply_feed_event(self, event) -> None:
        if isinstance(event, Inserted):
            self._on_inserted(event.record)
        elif isinstance(event, Updated):
            self._on_updated(event.record)
        elif isinstance(event, Deleted):
            self._on_deleted(event.record_id)

    def _on_inserted(self, record: Record) -> None:
        record = record.confirmed()
        existing = self.cache.get(record.id)
        if existing is not None:
            if not existing.tentative:
                return
            # An optimistic edit is showing for this id; take the authority's copy.
            self._refresh_pending_before(record)
            self.cache.upsert(record)
            self._changed()
            return

        match = self._match_tentative(record)
        if match is not None:
            logger.debug("feed insert %s confirms tentative %s", record.id, match.target_id)
            self.cache.replace(match.target_id, replace(record, client_ref=match.target_id))
            match.reconciled_id = record.id
        else:
            self.cache.upsert(record)
        self._changed()

    def _match_tentative(self, record: Record) -> PendingMutation | None:
        if record.client_ref is not None:
            m = self.ledger.for_target(record.client_ref)
            if m is not None and m.kind is MutationKind.CREATE and m.reconciled_id is None:
                return m
        if self.config["match_strategy"] != "content":
            return None
        for m in self.ledger.creates():
            if m.reconciled_id is not None or m.target_id not in self.cache:
                continue
            tentative = m.optimistic
            if tentative.author_id == record.author_id and tentative.content == record.content:
                return m
        return None

    def _find_committed(self, mutation: PendingMutation, previous: set[str]) -> Record | None:
        """A record on the fresh page that is *mutation*'s create, already committed."""
        claimed = {m.reconciled_id for m in self.ledger.creates() if m.reconciled_id}
        candidates = [
            r
            for r in self.cache
            if not r.tentative and r.id not in previous and r.id not in claimed
        ]
        for record in candidates:
            if record.client_ref == mutation.target_id:
                return record
        if self.config["match_strategy"] != "content":
            return None
        tentative = mutation.optimistic
        # Oldest first, so identical submissions pair in order.
        for record in reversed(candidates):
            if record.client_ref not in (None, mutation.target_id):
                continue
            if record.author_id == tentative.author_id and record.content == tentative.content:
                return record
        return None

    def _on_updated(self, record: Record) -> None:
        record = record.confirmed()
        self._refresh_pending_before(record)
        existing = self.cache.get(record.id)
        if existing is None:
            return
        if record.updated_at <= existing.updated_at:
            logger.debug("dropping stale update for %s", record.id)
            return
        self.cache.upsert(record)
        self._changed()

    def _remember_deleted(self, record_id: str) -> None:
        self._recently_deleted[record_id] = None
        while len(self._recently_deleted) > _RECENT_DELETES:
            self._recently_deleted.popitem(last=False)

    def _on_deleted(self, record_id: str) -> None:
        self._remember_deleted(record_id)

        pending = self.ledger.for_target(record_id)
        if pending is not None:
            pending.superseded = True
        for m in self.ledger.creates():
            if m.reconciled_id == record_id:
                m.superseded = True

        if self.cache.remove(record_id) is not None:
            self._changed()

    def _refresh_pending_before(self, record: Record) -> None:
        """Keep a pending edit/delete's rollback copy at the newest authoritative version."""
        pending = self.ledger.for_target(record.id)
        if pending is None or pending.kind is MutationKind.CREATE or pending.before is None:
            return
        if record.updated_at > pending.before.updated_at:
            pending.before = record

    def _merge_authoritative(self, record: Record) -> None:
        existing = self.cache.get(record.id)
        if existing is None:
            if record.id not in self._recently_deleted:
                self.cache.upsert(record)
                self._changed()
        elif existing.tentative or record.updated_at > existing.updated_at:
            self.cache.upsert(record)
            self._changed()

    # ------------------------------------------------------------------
    # Optimistic mutations (driven by the Mutation Coordinator)
    # ------------------------------------------------------------------

    def _assert_not_draining(self) -> None:
        if self._draining:
            raise RuntimeError("mutations cannot be started from a snapshot listener")

    def begin_create(self, record: Record) -> PendingMutation:
        """Show tentative *record* at the head of the feed and track it."""
        self._assert_not_draining()
        mutation = PendingMutation(kind=MutationKind.CREATE, target_id=record.id, optimistic=record)

        def _step() -> None:
            self.cache.upsert(record)
            self.ledger.add(mutation)
            self._changed()

        self._run(_step)
        return mutation

    def begin_edit(self, target_id: str, content: str) -> PendingMutation:
        """Show *content* on *target_id* and track the edit.

        Raises:
            ValidationError: *target_id* is not in the cache.
        """
        self._assert_not_draining()
        current = self.cache.get(target_id)
        if current is None:
            raise ValidationError(f"Record '{target_id}' is not loaded")
        optimistic = replace(current, content=content, tentative=True)
        mutation = PendingMutation(
            kind=MutationKind.UPDATE,
            target_id=target_id,
            before=current,
            location=self.cache.locate(target_id),
            optimistic=optimistic,
        )

        def _step() -> None:
            self.cache.upsert(optimistic)
            self.ledger.add(mutation)
            self._changed()

        self._run(_step)
        return mutation

    def begin_delete(self, target_id: str) -> PendingMutation:
        """Hide *target_id* and track the delete.

        Raises:
            ValidationError: *target_id* is not in the cache.
        """
        self._assert_not_draining()
        current = self.cache.get(target_id)
        if current is None:
            raise ValidationError(f"Record '{target_id}' is not loaded")
        mutation = PendingMutation(
            kind=MutationKind.DELETE,
            target_id=target_id,
            before=current,
            location=self.cache.locate(target_id),
        )

        def _step() -> None:
            self.cache.remove(target_id)
            self.ledger.add(mutation)
            self._changed()

        self._run(_step)
        return mutation

    def confirm(self, mutation: PendingMutation, record: Record | None) -> None:
        """Fold the authority's success response for *mutation* into the cache."""

        def _step() -> None:
            if self.ledger.get(mutation.mutation_id) is None:
                return
            confirmed = record.confirmed() if record is not None else None
            if mutation.kind is MutationKind.CREATE:
                confirmed = replace(confirmed, client_ref=mutation.target_id)
                self._confirm_create(mutation, confirmed)
            elif mutation.kind is MutationKind.UPDATE:
                self._confirm_edit(mutation, confirmed)
            else:
                self._remember_deleted(mutation.target_id)
                self.cache.remove(mutation.target_id)
            if (
                self._buffered is not None
                and confirmed is not None
                and not mutation.superseded
                and mutation.kind is not MutationKind.DELETE
            ):
                # A first-page fetch is in flight; re-merge once it lands.
                self._confirmed_while_buffering.append(confirmed)
            self.ledger.discard(mutation, Confirmed(confirmed))
            self._changed()

        self._run(_step)

    def _confirm_create(self, mutation: PendingMutation, record: Record) -> None:
        if mutation.superseded or record.id in self._recently_deleted:
            self.cache.remove(mutation.target_id)
            return
        if self.cache.replace(mutation.target_id, record):
            return
        # The feed already reconciled the tentative record; make sure the
        # authoritative one is there exactly once.
        self._merge_authoritative(record)

    def _confirm_edit(self, mutation: PendingMutation, record: Record | None) -> None:
        if mutation.superseded or record is None:
            return
        current = self.cache.get(mutation.target_id)
        if current is None:
            return
        if current.tentative or record.updated_at > current.updated_at:
            self.cache.upsert(record)

    def rollback(self, mutation: PendingMutation, cause: BaseException) -> None:
        """Undo *mutation*'s optimistic effect exactly and drop it."""

        def _step() -> None:
            if self.ledger.get(mutation.mutation_id) is None:
                return
            if mutation.kind is MutationKind.CREATE:
                self.cache.remove(mutation.target_id)
            elif mutation.kind is MutationKind.UPDATE:
                current = self.cache.get(mutation.target_id)
                if not mutation.superseded and current is not None and current.tentative:
                    self.cache.upsert(mutation.before)
            elif (
                not mutation.superseded
                and mutation.before is not None
                and mutation.location is not None
            ):
                self.cache.insert_at(mutation.before, mutation.location)
            self.ledger.discard(mutation, RolledBack(cause))
            self._changed()

        self._run(_step)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Stop background work and discard all state."""
        self._closed = True
        task, self._resync_task = self._resync_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._listeners.clear()
        self.cache.clear()
        self.ledger.clear()
        self._buffered = None


def _to_page(result, limit: int) -> Page:
    """Normalize a fetcher result into a ``Page``.

    Accepts a ``Page``, or a mapping with ``records`` (or ``messages``) and
    an optional ``next_cursor`` / ``nextCursor``.  Rows may be ``Record``
    instances or authority row dicts.
    """
    if isinstance(result, Page):
        return result
    rows = result.get("records", result.get("messages", []))
    records = tuple(r if isinstance(r, Record) else record_from_row(r) for r in rows)
    if "next_cursor" in result:
        cursor = result["next_cursor"]
    elif "nextCursor" in result:
        cursor = result["nextCursor"]
    else:
        cursor = page_cursor(records, limit)
    return Page(records=records, cursor=cursor)
