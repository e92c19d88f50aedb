"""In-process authority: Fetch, Submit, Subscribe, and Identity in one object.

Backs the ``feedsync demo`` command and the test-suite.  It behaves like
the remote store the engine is written against -- newest-first paging by
``created_at`` cursor, server-assigned ids, a change stream per feed key --
and adds knobs for the situations the engine must survive: injected
failures, held-back echoes, paused responses, and dropped connections.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from feedsync.core.ids import generate_record_id
from feedsync.core.records import Record, format_timestamp, page_cursor, parse_timestamp

_EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)


class AuthorityError(Exception):
    """An error as the authority reports it: a code plus a message."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class MemorySubscription:
    def __init__(self, authority: InMemoryAuthority, feed_key: str, handlers) -> None:
        self.authority = authority
        self.feed_key = feed_key
        self.handlers = handlers
        self.active = True

    def unsubscribe(self) -> None:
        self.active = False
        subs = self.authority._subscriptions.get(self.feed_key, [])
        if self in subs:
            subs.remove(self)


class InMemoryAuthority:
    """A single authoritative record store shared by any number of clients."""

    def __init__(self, user_id: str = "user_local", *, latency: float = 0.0) -> None:
        self.user_id = user_id
        self.latency = latency
        self._rows: dict[str, list[Record]] = {}
        self._subscriptions: dict[str, list[MemorySubscription]] = {}
        self._clock = _EPOCH
        self._failures: dict[str, list[BaseException]] = {}
        self._held: list[tuple[str, dict]] | None = None
        self._dropped: set[str] = set()
        self._responses: asyncio.Event | None = None
        self.calls: list[tuple[str, tuple]] = []

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    async def current_user_id(self) -> str:
        return self.user_id

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def fetch_page(self, feed_key: str, cursor: str | None, limit: int) -> dict:
        self.calls.append(("fetch_page", (feed_key, cursor, limit)))
        self._raise_injected("fetch_page")
        await self._respond("fetch_page")
        rows = sorted(self._rows.get(feed_key, []), key=lambda r: r.created_at, reverse=True)
        if cursor is not None:
            before = parse_timestamp(cursor)
            rows = [r for r in rows if r.created_at < before]
        page = rows[:limit]
        return {
            "messages": [_to_row(r) for r in page],
            "nextCursor": page_cursor(page, limit),
        }

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def create(self, feed_key: str, content: str) -> dict:
        self.calls.append(("create", (feed_key, content)))
        self._raise_injected("create")
        record = self.add_row(feed_key, content, author_id=self.user_id)
        await self._respond("create")
        return _to_row(record)

    async def update(self, record_id: str, content: str) -> dict:
        self.calls.append(("update", (record_id, content)))
        self._raise_injected("update")
        record = self.edit_row(record_id, content)
        await self._respond("update")
        return _to_row(record)

    async def delete(self, record_id: str) -> None:
        self.calls.append(("delete", (record_id,)))
        self._raise_injected("delete")
        self.delete_row(record_id)
        await self._respond("delete")

    # ------------------------------------------------------------------
    # Subscribe
    # ------------------------------------------------------------------

    def subscribe(self, feed_key: str, handlers) -> MemorySubscription:
        self.calls.append(("subscribe", (feed_key,)))
        self._raise_injected("subscribe")
        subscription = MemorySubscription(self, feed_key, handlers)
        self._subscriptions.setdefault(feed_key, []).append(subscription)
        return subscription

    def subscriber_count(self, feed_key: str) -> int:
        return len(self._subscriptions.get(feed_key, []))

    # ------------------------------------------------------------------
    # Direct authority-side writes (other clients, seeding)
    # ------------------------------------------------------------------

    def add_row(self, feed_key: str, content: str, *, author_id: str = "user_other") -> Record:
        now = self._tick()
        record = Record(
            id=generate_record_id(),
            feed_key=feed_key,
            author_id=author_id,
            content=content,
            created_at=now,
            updated_at=now,
        )
        self._rows.setdefault(feed_key, []).append(record)
        self._broadcast(feed_key, {"eventType": "INSERT", "new": _to_row(record), "old": {}})
        return record

    def edit_row(self, record_id: str, content: str) -> Record:
        feed_key, index = self._find(record_id)
        record = replace(self._rows[feed_key][index], content=content, updated_at=self._tick())
        self._rows[feed_key][index] = record
        self._broadcast(feed_key, {"eventType": "UPDATE", "new": _to_row(record), "old": {}})
        return record

    def delete_row(self, record_id: str) -> None:
        feed_key, index = self._find(record_id)
        del self._rows[feed_key][index]
        self._broadcast(feed_key, {"eventType": "DELETE", "new": {}, "old": {"id": record_id}})

    def rows(self, feed_key: str) -> list[Record]:
        """Authoritative records for *feed_key*, oldest first."""
        return sorted(self._rows.get(feed_key, []), key=lambda r: r.created_at)

    # ------------------------------------------------------------------
    # Fault injection
    # ------------------------------------------------------------------

    def fail_next(self, op: str, exc: BaseException | None = None) -> None:
        """Make the next *op* call fail.

        *op* is ``create``, ``update``, ``delete``, ``subscribe`` or
        ``fetch_page``.  With a ``:response`` suffix (``"create:response"``)
        the write is committed and broadcast but the response still fails.
        """
        if exc is None:
            exc = AuthorityError("503", f"{op} unavailable")
        self._failures.setdefault(op, []).append(exc)

    def hold_echoes(self) -> None:
        """Queue change notifications instead of delivering them."""
        if self._held is None:
            self._held = []

    def release_echoes(self) -> None:
        """Deliver queued change notifications in order."""
        held, self._held = self._held or [], None
        for feed_key, payload in held:
            self._broadcast(feed_key, payload)

    def pause_responses(self) -> None:
        """Commit submits but hold their responses until ``resume_responses()``."""
        self._responses = asyncio.Event()

    def resume_responses(self) -> None:
        if self._responses is not None:
            self._responses.set()
            self._responses = None

    def drop_connection(self, feed_key: str) -> None:
        """Report the feed as disconnected; changes made meanwhile are never delivered."""
        self._dropped.add(feed_key)
        for sub in list(self._subscriptions.get(feed_key, [])):
            sub.handlers.on_status(False, ConnectionError("connection lost"))

    def restore_connection(self, feed_key: str) -> None:
        self._dropped.discard(feed_key)
        for sub in list(self._subscriptions.get(feed_key, [])):
            sub.handlers.on_status(True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def _find(self, record_id: str) -> tuple[str, int]:
        for feed_key, rows in self._rows.items():
            for index, record in enumerate(rows):
                if record.id == record_id:
                    return feed_key, index
        raise AuthorityError("PGRST116", f"Record '{record_id}' not found")

    def _raise_injected(self, op: str) -> None:
        pending = self._failures.get(op)
        if pending:
            raise pending.pop(0)

    async def _respond(self, op: str) -> None:
        gate = self._responses
        await asyncio.sleep(self.latency)
        if gate is not None and op != "fetch_page":
            await gate.wait()
        self._raise_injected(f"{op}:response")

    def _broadcast(self, feed_key: str, payload: dict) -> None:
        if feed_key in self._dropped:
            return
        if self._held is not None:
            self._held.append((feed_key, payload))
            return
        for sub in list(self._subscriptions.get(feed_key, [])):
            if sub.active:
                sub.handlers.on_change(payload)


def _to_row(record: Record) -> dict:
    """Authority row shape (the store's own column names)."""
    return {
        "id": record.id,
        "channel_id": record.feed_key,
        "user_id": record.author_id,
        "body": record.content,
        "created_at": format_timestamp(record.created_at),
        "updated_at": format_timestamp(record.updated_at),
    }
