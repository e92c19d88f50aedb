"""Pending Mutation Ledger.

Tracks locally-initiated create/update/delete operations the authority has
not confirmed yet, together with what is needed to undo their optimistic
effect.  Each pending mutation is keyed by the id it governs: the tentative
id for creates, the target id for edits and deletes.  At most one pending
mutation governs an id at a time.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from feedsync.core.ids import generate_mutation_id
from feedsync.core.records import Record, utc_now

# How many settled outcomes to remember for status queries.
_SETTLED_HISTORY = 256


class MutationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class MutationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class Confirmed:
    record: Record | None


@dataclass(frozen=True)
class RolledBack:
    cause: BaseException


@dataclass
class PendingMutation:
    """One in-flight mutation.

    ``before`` is the record as it was before the optimistic apply (``None``
    for creates) and ``location`` is where it sat, so a failed delete can
    put it back in place.  ``superseded`` is set when the authority deletes
    the target while the mutation is in flight.
    """

    kind: MutationKind
    target_id: str
    before: Record | None = None
    location: tuple[int, int] | None = None
    optimistic: Record | None = None
    mutation_id: str = field(default_factory=generate_mutation_id)
    submitted_at: datetime = field(default_factory=utc_now)
    superseded: bool = False
    reconciled_id: str | None = None
    future: asyncio.Future | None = field(default=None, repr=False)

    @property
    def settled(self) -> bool:
        return self.future is not None and self.future.done()


class PendingLedger:
    """Pending mutations for one feed key, plus recent settled outcomes."""

    def __init__(self) -> None:
        self._by_target: dict[str, PendingMutation] = {}
        self._by_id: dict[str, PendingMutation] = {}
        self._settled: OrderedDict[str, MutationStatus] = OrderedDict()

    def __len__(self) -> int:
        return len(self._by_target)

    def __contains__(self, target_id: object) -> bool:
        return target_id in self._by_target

    def __iter__(self):
        """Iterate pending mutations in submission order."""
        return iter(list(self._by_target.values()))

    def add(self, mutation: PendingMutation) -> None:
        """Record *mutation* as pending.

        A second mutation for the same target is a programming error: the
        coordinator rejects or queues it before it gets here.
        """
        assert mutation.target_id not in self._by_target, (
            f"mutation already pending for {mutation.target_id}"
        )
        self._by_target[mutation.target_id] = mutation
        self._by_id[mutation.mutation_id] = mutation

    def for_target(self, target_id: str) -> PendingMutation | None:
        return self._by_target.get(target_id)

    def get(self, mutation_id: str) -> PendingMutation | None:
        return self._by_id.get(mutation_id)

    def creates(self) -> list[PendingMutation]:
        return [m for m in self._by_target.values() if m.kind is MutationKind.CREATE]

    def discard(self, mutation: PendingMutation, outcome: Confirmed | RolledBack) -> None:
        """Drop *mutation* from the ledger and resolve its completion future."""
        self._by_target.pop(mutation.target_id, None)
        self._by_id.pop(mutation.mutation_id, None)

        status = (
            MutationStatus.CONFIRMED
            if isinstance(outcome, Confirmed)
            else MutationStatus.ROLLED_BACK
        )
        self._settled[mutation.mutation_id] = status
        while len(self._settled) > _SETTLED_HISTORY:
            self._settled.popitem(last=False)

        if mutation.future is not None and not mutation.future.done():
            mutation.future.set_result(outcome)

    def status(self, mutation_id: str) -> MutationStatus | None:
        """Return the status of *mutation_id*, or ``None`` if unknown."""
        if mutation_id in self._by_id:
            return MutationStatus.PENDING
        return self._settled.get(mutation_id)

    def clear(self) -> None:
        self._by_target.clear()
        self._by_id.clear()
