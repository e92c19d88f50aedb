"""Tests for feedsync.cache.ledger."""

from __future__ import annotations

import asyncio

import pytest

from feedsync.cache.ledger import (
    Confirmed,
    MutationKind,
    MutationStatus,
    PendingLedger,
    PendingMutation,
    RolledBack,
)
from tests.conftest import make_record


def _create(target_id: str) -> PendingMutation:
    return PendingMutation(
        kind=MutationKind.CREATE,
        target_id=target_id,
        optimistic=make_record(target_id, tentative=True),
    )


class TestPendingLedger:
    def test_tracks_by_target_and_id(self) -> None:
        ledger = PendingLedger()
        m = _create("tmp_1")
        ledger.add(m)
        assert "tmp_1" in ledger
        assert ledger.for_target("tmp_1") is m
        assert ledger.get(m.mutation_id) is m
        assert ledger.status(m.mutation_id) is MutationStatus.PENDING

    def test_iterates_in_submission_order(self) -> None:
        ledger = PendingLedger()
        first, second = _create("tmp_1"), _create("tmp_2")
        ledger.add(first)
        ledger.add(PendingMutation(kind=MutationKind.DELETE, target_id="m1"))
        ledger.add(second)
        assert [m.target_id for m in ledger] == ["tmp_1", "m1", "tmp_2"]
        assert ledger.creates() == [first, second]

    def test_second_mutation_on_a_target_is_refused(self) -> None:
        ledger = PendingLedger()
        ledger.add(PendingMutation(kind=MutationKind.UPDATE, target_id="m1"))
        with pytest.raises(AssertionError):
            ledger.add(PendingMutation(kind=MutationKind.DELETE, target_id="m1"))

    def test_discard_records_outcome(self) -> None:
        ledger = PendingLedger()
        ok, bad = _create("tmp_1"), _create("tmp_2")
        ledger.add(ok)
        ledger.add(bad)
        ledger.discard(ok, Confirmed(make_record("m1")))
        ledger.discard(bad, RolledBack(RuntimeError("x")))
        assert len(ledger) == 0
        assert ledger.status(ok.mutation_id) is MutationStatus.CONFIRMED
        assert ledger.status(bad.mutation_id) is MutationStatus.ROLLED_BACK
        assert ledger.status("mut_unknown") is None

    def test_discard_resolves_future(self) -> None:
        async def scenario() -> None:
            ledger = PendingLedger()
            m = _create("tmp_1")
            m.future = asyncio.get_running_loop().create_future()
            ledger.add(m)
            assert not m.settled
            outcome = Confirmed(make_record("m1"))
            ledger.discard(m, outcome)
            assert m.settled
            assert await m.future == outcome

        asyncio.run(scenario())

    def test_history_is_bounded(self) -> None:
        ledger = PendingLedger()
        mutations = [_create(f"tmp_{i}") for i in range(300)]
        for m in mutations:
            ledger.add(m)
            ledger.discard(m, Confirmed(None))
        assert ledger.status(mutations[0].mutation_id) is None
        assert ledger.status(mutations[-1].mutation_id) is MutationStatus.CONFIRMED
