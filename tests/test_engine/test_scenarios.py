"""End-to-end reconciliation scenarios through FeedSession."""

from __future__ import annotations

import asyncio

import pytest

from feedsync.core.errors import MutationFailed
from feedsync.engine.reconciler import EngineState
from feedsync.feed.events import ConnectionState
from feedsync.memory import InMemoryAuthority
from feedsync.session import FeedSession
from tests.conftest import FAST_CONFIG, FEED, ME, settle


def _session(authority: InMemoryAuthority) -> FeedSession:
    return FeedSession(authority, authority, authority, authority.current_user_id, FAST_CONFIG)


def test_fetch_first_page_ascending(authority: InMemoryAuthority) -> None:
    async def scenario():
        m1 = authority.add_row(FEED, "older")
        m2 = authority.add_row(FEED, "newer")
        session = _session(authority)
        await session.select(FEED)
        return session, [m1.id, m2.id]

    session, expected = asyncio.run(scenario())
    assert [r.id for r in session.engine.view()] == expected


def test_create_confirmed_by_response(authority: InMemoryAuthority) -> None:
    async def scenario():
        session = _session(authority)
        await session.select(FEED)
        authority.hold_echoes()
        authority.pause_responses()
        task = asyncio.get_running_loop().create_task(session.coordinator.submit_create("hi"))
        await settle()
        pending = session.engine.view()
        authority.resume_responses()
        result = await task
        return session, pending, result

    session, pending, result = asyncio.run(scenario())
    assert len(pending) == 1 and pending[0].tentative
    view = session.engine.view()
    assert [r.id for r in view] == [result.record.id]
    assert view[0].tentative is False


def test_feed_echo_before_response(authority: InMemoryAuthority) -> None:
    async def scenario():
        session = _session(authority)
        await session.select(FEED)
        authority.pause_responses()
        task = asyncio.get_running_loop().create_task(session.coordinator.submit_create("hi"))
        await settle()
        after_echo = session.engine.view()
        authority.resume_responses()
        result = await task
        return session, after_echo, result

    session, after_echo, result = asyncio.run(scenario())
    assert [r.id for r in after_echo] == [result.record.id]
    assert after_echo[0].author_id == ME
    assert session.engine.view() == after_echo


def test_failed_edit_reverts(authority: InMemoryAuthority) -> None:
    async def scenario():
        m1 = authority.add_row(FEED, "hello", author_id=ME)
        session = _session(authority)
        await session.select(FEED)
        authority.fail_next("update")
        with pytest.raises(MutationFailed):
            await session.coordinator.submit_edit(m1.id, "bye")
        return session, m1

    session, m1 = asyncio.run(scenario())
    assert session.engine.view() == (m1,)


def test_reconnect_matches_fresh_load(authority: InMemoryAuthority) -> None:
    async def scenario():
        authority.add_row(FEED, "before")
        gone = authority.add_row(FEED, "deleted while offline")
        session = _session(authority)
        await session.select(FEED)

        authority.drop_connection(FEED)
        assert session.engine.connection is ConnectionState.RECONNECTING
        authority.add_row(FEED, "missed")
        authority.edit_row(gone.id, "edited then deleted")
        authority.delete_row(gone.id)
        authority.restore_connection(FEED)
        await session.engine.wait_for_resync()

        fresh = _session(authority)
        await fresh.select(FEED)
        return session, fresh

    session, fresh = asyncio.run(scenario())
    assert session.engine.view() == fresh.engine.view()
    assert [r.content for r in session.engine.view()] == ["before", "missed"]
    assert session.engine.state is EngineState.LOADED
    assert session.engine.connection is ConnectionState.CONNECTED


def test_create_committed_during_a_drop(authority: InMemoryAuthority) -> None:
    async def scenario():
        session = _session(authority)
        await session.select(FEED)
        authority.pause_responses()
        authority.drop_connection(FEED)
        task = asyncio.get_running_loop().create_task(session.coordinator.submit_create("hi"))
        await settle()
        authority.restore_connection(FEED)
        await session.engine.wait_for_resync()
        during = session.engine.view()
        authority.resume_responses()
        result = await task
        return session, during, result

    session, during, result = asyncio.run(scenario())
    assert [r.id for r in during] == [result.record.id]
    assert session.engine.view() == during
    assert len(session.engine.ledger) == 0
