"""Tests for feedsync.session."""

from __future__ import annotations

import asyncio

import pytest

from feedsync.core.errors import FetchFailed
from feedsync.engine.reconciler import EngineState
from feedsync.memory import InMemoryAuthority
from feedsync.session import FeedSession
from tests.conftest import FAST_CONFIG


def _session(authority: InMemoryAuthority) -> FeedSession:
    return FeedSession(authority, authority, authority, authority.current_user_id, FAST_CONFIG)


class TestSelect:
    def test_select_subscribes_then_loads(self, authority: InMemoryAuthority) -> None:
        async def scenario() -> FeedSession:
            authority.add_row("general", "hi")
            session = _session(authority)
            await session.select("general")
            return session

        session = asyncio.run(scenario())
        ops = [op for op, _ in authority.calls]
        assert ops[:2] == ["subscribe", "fetch_page"]
        assert session.feed_key == "general"
        assert session.engine.state is EngineState.LOADED
        assert authority.subscriber_count("general") == 1

    def test_no_feed_selected(self) -> None:
        session = _session(InMemoryAuthority())
        with pytest.raises(RuntimeError, match="No feed selected"):
            session.engine
        with pytest.raises(RuntimeError, match="No feed selected"):
            session.coordinator

    def test_reselecting_same_feed_keeps_engine(self, authority: InMemoryAuthority) -> None:
        async def scenario() -> bool:
            session = _session(authority)
            first = await session.select("general")
            second = await session.select("general")
            return first is second

        assert asyncio.run(scenario())
        assert authority.subscriber_count("general") == 1

    def test_switching_feeds_tears_down_first(self, authority: InMemoryAuthority) -> None:
        async def scenario() -> FeedSession:
            authority.add_row("general", "in general")
            authority.add_row("random", "in random")
            session = _session(authority)
            await session.select("general")
            await session.select("random")
            authority.add_row("general", "late general")
            return session

        session = asyncio.run(scenario())
        assert authority.subscriber_count("general") == 0
        assert authority.subscriber_count("random") == 1
        assert [r.content for r in session.engine.view()] == ["in random"]

    def test_failed_first_load_keeps_feed_selected(self, authority: InMemoryAuthority) -> None:
        async def scenario() -> FeedSession:
            session = _session(authority)
            authority.fail_next("fetch_page")
            with pytest.raises(FetchFailed):
                await session.select("general")
            assert session.feed_key == "general"
            await session.engine.load()
            return session

        assert asyncio.run(scenario()).engine.state is EngineState.LOADED


class TestTeardown:
    def test_deselect_unsubscribes(self, authority: InMemoryAuthority) -> None:
        async def scenario() -> FeedSession:
            session = _session(authority)
            await session.select("general")
            await session.deselect()
            return session

        session = asyncio.run(scenario())
        assert session.feed_key is None
        assert authority.subscriber_count("general") == 0

    def test_workspace_switch_drops_feed(self, authority: InMemoryAuthority) -> None:
        async def scenario() -> FeedSession:
            session = _session(authority)
            await session.select_workspace("ws_1")
            await session.select("general")
            await session.select_workspace("ws_2")
            return session

        session = asyncio.run(scenario())
        assert session.workspace_id == "ws_2"
        assert session.feed_key is None
        assert authority.subscriber_count("general") == 0

    def test_close(self, authority: InMemoryAuthority) -> None:
        async def scenario() -> FeedSession:
            session = _session(authority)
            await session.select_workspace("ws_1")
            await session.select("general")
            await session.close()
            return session

        session = asyncio.run(scenario())
        assert session.workspace_id is None
        assert authority.subscriber_count("general") == 0
