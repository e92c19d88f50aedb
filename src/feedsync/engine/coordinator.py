"""Mutation Coordinator: submit, apply optimistically, await, confirm or roll back.

The coordinator never touches the cache itself.  It validates input,
asks the engine to apply the optimistic effect, issues the remote call,
and hands the outcome back to the engine.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass

from feedsync.cache.ledger import MutationKind, MutationStatus, PendingMutation
from feedsync.core.config import FeedConfig, resolve_config
from feedsync.core.errors import MutationFailed, MutationInFlight, ValidationError
from feedsync.core.ids import generate_tentative_id
from feedsync.core.records import Record, record_from_row, utc_now, validate_content
from feedsync.engine.reconciler import ReconciliationEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MutationResult:
    mutation_id: str
    kind: MutationKind
    record: Record | None = None


class MutationCoordinator:
    """One entry point per mutation kind, for a single engine's feed."""

    def __init__(
        self,
        engine: ReconciliationEngine,
        submitter,
        identity,
        config: FeedConfig | dict | None = None,
    ) -> None:
        self.engine = engine
        self.submitter = submitter
        self.identity = identity
        self.config = resolve_config(config)
        self._author_id: str | None = None

    async def author_id(self) -> str:
        """Resolve the local actor's id once; sync or async accessors both work.

        Raises:
            ValidationError: The accessor returned no identity.
        """
        if self._author_id is None:
            value = self.identity() if callable(self.identity) else self.identity
            if inspect.isawaitable(value):
                value = await value
            if not value:
                raise ValidationError("Not authenticated")
            self._author_id = str(value)
        return self._author_id

    def status(self, mutation_id: str) -> MutationStatus | None:
        return self.engine.pending_status(mutation_id)

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    async def submit_create(self, content: str) -> MutationResult:
        """Post *content* as a new record.

        Raises:
            ValidationError: Bad content; nothing was sent or shown.
            MutationFailed: The authority refused; the tentative record is gone.
        """
        content = self._validate(content)
        author_id = await self.author_id()
        now = utc_now()
        tentative = Record(
            id=generate_tentative_id(),
            feed_key=self.engine.feed_key,
            author_id=author_id,
            content=content,
            created_at=now,
            updated_at=now,
            tentative=True,
        )
        mutation = self._track(self.engine.begin_create(tentative))
        feed_key = self.engine.feed_key
        return await self._settle(mutation, lambda: self.submitter.create(feed_key, content))

    async def submit_edit(self, record_id: str, content: str) -> MutationResult:
        """Replace the content of *record_id*.

        Raises:
            ValidationError: Bad content, unknown id, or (``reject`` policy)
                another mutation on *record_id* is still pending.
            MutationFailed: The authority refused; the original content is back.
        """
        content = self._validate(content)
        await self._wait_turn(record_id)
        mutation = self._track(self.engine.begin_edit(record_id, content))
        return await self._settle(mutation, lambda: self.submitter.update(record_id, content))

    async def submit_delete(self, record_id: str) -> MutationResult:
        """Delete *record_id*.

        Raises:
            ValidationError: Unknown id, or (``reject`` policy) another
                mutation on *record_id* is still pending.
            MutationFailed: The authority refused; the record is back in place.
        """
        await self._wait_turn(record_id)
        mutation = self._track(self.engine.begin_delete(record_id))
        return await self._settle(mutation, lambda: self.submitter.delete(record_id))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate(self, content: str) -> str:
        return validate_content(content, int(self.config["max_content_length"]))

    def _track(self, mutation: PendingMutation) -> PendingMutation:
        mutation.future = asyncio.get_running_loop().create_future()
        return mutation

    async def _wait_turn(self, record_id: str) -> None:
        """Block (``queue``) or refuse (``reject``) while *record_id* has a pending mutation."""
        while True:
            pending = self.engine.ledger.for_target(record_id)
            if pending is None:
                return
            if self.config["edit_conflict_policy"] != "queue" or pending.future is None:
                raise MutationInFlight(record_id)
            logger.debug("queueing mutation on %s behind %s", record_id, pending.mutation_id)
            await asyncio.shield(pending.future)

    async def _settle(self, mutation: PendingMutation, call) -> MutationResult:
        kind = mutation.kind
        try:
            result = call()
            if inspect.isawaitable(result):
                result = await result
            record = _to_record(result)
            if kind is MutationKind.CREATE and record is None:
                raise ValueError("authority returned no record for create")
        except asyncio.CancelledError as exc:
            self.engine.rollback(mutation, exc)
            raise
        except Exception as exc:
            self.engine.rollback(mutation, exc)
            logger.debug("%s of %s rolled back: %s", kind.value, mutation.target_id, exc)
            raise MutationFailed(kind.value, exc) from exc

        self.engine.confirm(mutation, record)
        return MutationResult(mutation_id=mutation.mutation_id, kind=kind, record=record)


def _to_record(value) -> Record | None:
    if value is None or isinstance(value, Record):
        return value
    return record_from_row(value)
