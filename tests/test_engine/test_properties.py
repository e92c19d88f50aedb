"""Hypothesis property-based tests for feed reconciliation."""

from __future__ import annotations

import asyncio

from hypothesis import given, settings, strategies as st

from feedsync.engine.reconciler import ReconciliationEngine
from feedsync.feed.events import Deleted, Inserted, Updated
from tests.conftest import FAST_CONFIG, FEED, StaticFetcher, make_record

# ---------------------------------------------------------------------------
# Reusable strategies
# ---------------------------------------------------------------------------

record_numbers = st.integers(min_value=0, max_value=7)


@st.composite
def feed_events(draw):
    """One change-feed event touching a small pool of ids."""
    n = draw(record_numbers)
    kind = draw(st.sampled_from(["insert", "update", "delete"]))
    if kind == "delete":
        return Deleted(f"m{n}")
    updated = n + draw(st.integers(min_value=0, max_value=20))
    content = draw(st.sampled_from(["a", "b", "c"]))
    record = make_record(f"m{n}", content, at=n, updated=updated)
    return Inserted(record) if kind == "insert" else Updated(record)


initial_pages = st.lists(record_numbers, unique=True, max_size=6)


def _apply(initial: list[int], events, repeat: int = 1) -> ReconciliationEngine:
    async def scenario() -> ReconciliationEngine:
        records = [make_record(f"m{n}", at=n) for n in initial]
        engine = ReconciliationEngine(FEED, StaticFetcher(records), FAST_CONFIG)
        await engine.load()
        for event in events:
            for _ in range(repeat):
                engine.handle_event(event)
        return engine

    return asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


@given(initial=initial_pages, events=st.lists(feed_events(), max_size=30))
@settings(max_examples=50)
def test_ids_stay_unique_and_ordered(initial: list[int], events: list) -> None:
    engine = _apply(initial, events)
    ids = [r.id for r in engine.view()]
    assert len(ids) == len(set(ids))
    created = [r.created_at for r in engine.view()]
    assert created == sorted(created)


@given(initial=initial_pages, events=st.lists(feed_events(), max_size=30))
@settings(max_examples=50)
def test_redelivery_is_idempotent(initial: list[int], events: list) -> None:
    once = _apply(initial, events)
    twice = _apply(initial, events, repeat=2)
    assert once.view() == twice.view()
    assert [r.content for r in once.view()] == [r.content for r in twice.view()]


@given(
    stamps=st.lists(st.integers(min_value=1, max_value=1000), unique=True, min_size=1, max_size=10)
)
@settings(max_examples=50)
def test_newest_update_wins_in_any_order(stamps: list[int]) -> None:
    events = [Updated(make_record("m0", f"v{s}", updated=s)) for s in stamps]
    engine = _apply([0], events)
    assert engine.view()[0].content == f"v{max(stamps)}"


@given(
    initial=st.lists(record_numbers, unique=True, min_size=1, max_size=8),
    data=st.data(),
)
@settings(max_examples=50)
def test_rollback_restores_the_exact_view(initial: list[int], data) -> None:
    target = f"m{data.draw(st.sampled_from(initial))}"
    kind = data.draw(st.sampled_from(["edit", "delete"]))

    async def scenario() -> tuple[tuple, tuple, list, list]:
        records = [make_record(f"m{n}", at=n) for n in initial]
        engine = ReconciliationEngine(FEED, StaticFetcher(records), FAST_CONFIG)
        await engine.load()
        before_view, before_order = engine.view(), [r.id for r in engine.cache]
        if kind == "edit":
            mutation = engine.begin_edit(target, "changed")
        else:
            mutation = engine.begin_delete(target)
        engine.rollback(mutation, RuntimeError("refused"))
        return before_view, engine.view(), before_order, [r.id for r in engine.cache]

    before_view, after_view, before_order, after_order = asyncio.run(scenario())
    assert after_view == before_view
    assert after_order == before_order
    assert not any(r.tentative for r in after_view)
