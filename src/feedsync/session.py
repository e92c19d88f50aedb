"""FeedSession: the explicitly owned "current workspace / current feed" context.

Selecting a feed key builds its engine, coordinator, and change-feed
adapter; deselecting tears all three down, unsubscribing before the cache
is discarded.  Switching feeds always finishes the teardown before the
next subscription is opened.
"""

from __future__ import annotations

import logging

from feedsync.core.config import FeedConfig, resolve_config
from feedsync.engine.coordinator import MutationCoordinator
from feedsync.engine.reconciler import ReconciliationEngine
from feedsync.feed.adapter import ChangeFeedAdapter

logger = logging.getLogger(__name__)


class FeedSession:
    """Holds at most one selected feed and its collaborators."""

    def __init__(
        self,
        fetcher,
        submitter,
        subscriber,
        identity,
        config: FeedConfig | dict | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.submitter = submitter
        self.subscriber = subscriber
        self.identity = identity
        self.config = resolve_config(config)

        self.workspace_id: str | None = None
        self._feed_key: str | None = None
        self._engine: ReconciliationEngine | None = None
        self._coordinator: MutationCoordinator | None = None
        self._adapter: ChangeFeedAdapter | None = None

    @property
    def feed_key(self) -> str | None:
        return self._feed_key

    @property
    def engine(self) -> ReconciliationEngine:
        if self._engine is None:
            raise RuntimeError("No feed selected")
        return self._engine

    @property
    def coordinator(self) -> MutationCoordinator:
        if self._coordinator is None:
            raise RuntimeError("No feed selected")
        return self._coordinator

    async def select_workspace(self, workspace_id: str | None) -> None:
        """Switch workspace; the selected feed belongs to the old one and is dropped."""
        if workspace_id == self.workspace_id:
            return
        await self.deselect()
        self.workspace_id = workspace_id

    async def select(self, feed_key: str) -> ReconciliationEngine:
        """Make *feed_key* current: subscribe, then load its first page.

        Raises:
            FetchFailed: The first page could not be loaded.  The feed stays
                selected and subscribed; ``engine.load()`` may be retried.
        """
        if feed_key == self._feed_key and self._engine is not None:
            return self._engine
        await self.deselect()

        engine = ReconciliationEngine(feed_key, self.fetcher, self.config)
        adapter = ChangeFeedAdapter(self.subscriber, engine.handle_event, self.config)
        self._feed_key = feed_key
        self._engine = engine
        self._adapter = adapter
        self._coordinator = MutationCoordinator(engine, self.submitter, self.identity, self.config)

        logger.debug("selected feed %s", feed_key)
        await adapter.open(feed_key)
        await engine.load()
        return engine

    async def deselect(self) -> None:
        """Tear down the current feed: unsubscribe first, then discard the cache."""
        adapter, self._adapter = self._adapter, None
        engine, self._engine = self._engine, None
        self._coordinator = None
        feed_key, self._feed_key = self._feed_key, None
        if adapter is not None:
            await adapter.close()
        if engine is not None:
            await engine.close()
            logger.debug("deselected feed %s", feed_key)

    async def close(self) -> None:
        await self.deselect()
        self.workspace_id = None
