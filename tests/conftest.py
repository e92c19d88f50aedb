"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from click.testing import CliRunner

from feedsync.core.records import Record, page_cursor, parse_timestamp
from feedsync.memory import InMemoryAuthority

FEED = "general"
ME = "user_local"
BASE = datetime(2026, 1, 1, tzinfo=timezone.utc)

# Reconnect retries without real sleeps.
FAST_CONFIG = {"reconnect_delay_seconds": 0.0, "reconnect_max_delay_seconds": 0.0}


def ts(seconds: float) -> datetime:
    """A fixed timestamp *seconds* after the test epoch."""
    return BASE + timedelta(seconds=seconds)


def make_record(
    record_id: str,
    content: str = "hello",
    *,
    at: float = 0,
    updated: float | None = None,
    author: str = "user_other",
    tentative: bool = False,
    client_ref: str | None = None,
) -> Record:
    """Build a record created *at* seconds after the epoch."""
    return Record(
        id=record_id,
        feed_key=FEED,
        author_id=author,
        content=content,
        created_at=ts(at),
        updated_at=ts(at if updated is None else updated),
        tentative=tentative,
        client_ref=client_ref,
    )


class ScriptedFetcher:
    """Fetcher whose calls stay outstanding until the test resolves them.

    Usage::

        cursor, future = fetcher.calls[0]
        future.set_result({"records": [...], "next_cursor": None})
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str | None, asyncio.Future]] = []

    def fetch_page(self, feed_key: str, cursor: str | None, limit: int) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self.calls.append((cursor, future))
        return future


class StaticFetcher:
    """Fetcher answering from a fixed list of records, newest first by created_at."""

    def __init__(self, records: list[Record] | None = None, fail: BaseException | None = None):
        self.records = list(records or [])
        self.fail = fail
        self.cursors: list[str | None] = []

    async def fetch_page(self, feed_key: str, cursor: str | None, limit: int) -> dict:
        self.cursors.append(cursor)
        if self.fail is not None:
            raise self.fail
        rows = sorted(self.records, key=lambda r: r.created_at, reverse=True)
        if cursor is not None:
            rows = [r for r in rows if r.created_at < parse_timestamp(cursor)]
        page = rows[:limit]
        return {"records": page, "next_cursor": page_cursor(page, limit)}


async def settle() -> None:
    """Let every ready task run until the loop is idle for a few turns."""
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.fixture()
def authority() -> InMemoryAuthority:
    return InMemoryAuthority(user_id=ME)


@pytest.fixture()
def cli_runner() -> CliRunner:
    """Return a Click CliRunner for invoking CLI commands."""
    return CliRunner()
