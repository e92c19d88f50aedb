"""Change Feed Adapter: one live subscription per feed key.

The adapter normalizes what the subscription delivers into ``Inserted`` /
``Updated`` / ``Deleted`` events and connection transitions, and hands them
to a single sink in delivery order.  It does no merging.

Every subscription is tagged with a generation number.  Closing the
adapter (or opening another feed key) bumps the generation before the old
subscription is torn down, so anything the old subscription still
delivers is dropped instead of leaking into the next feed.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable

from feedsync.core.config import FeedConfig, resolve_config
from feedsync.core.errors import SubscriptionLost
from feedsync.feed.events import (
    ConnectionChanged,
    ConnectionState,
    Deleted,
    Inserted,
    Updated,
    normalize_change,
)

logger = logging.getLogger(__name__)

EventSink = Callable[[object], None]


class FeedHandlers:
    """Callbacks handed to ``Subscriber.subscribe()`` for one subscription.

    The subscriber may deliver raw authority payloads (``on_change``) or
    events it already normalized (``on_event``), and reports transport
    state through ``on_status`` / ``on_error``.
    """

    def __init__(self, adapter: ChangeFeedAdapter, generation: int) -> None:
        self._adapter = adapter
        self._generation = generation

    def on_change(self, payload: dict) -> None:
        event = normalize_change(payload)
        if event is None:
            logger.debug("ignoring unusable change payload: %r", payload)
            return
        self._adapter._deliver(self._generation, event)

    def on_event(self, event: Inserted | Updated | Deleted) -> None:
        self._adapter._deliver(self._generation, event)

    def on_insert(self, record) -> None:
        self.on_event(Inserted(record))

    def on_update(self, record) -> None:
        self.on_event(Updated(record))

    def on_delete(self, record_id: str) -> None:
        self.on_event(Deleted(record_id))

    def on_status(self, connected: bool, cause: BaseException | None = None) -> None:
        """Transport-level connection report (the transport reconnects itself)."""
        self._adapter._transport_status(self._generation, connected, cause)

    def on_error(self, cause: BaseException) -> None:
        """The subscription itself failed; the adapter re-subscribes."""
        self._adapter._subscription_failed(self._generation, cause)


class ChangeFeedAdapter:
    """Own the live subscription for the currently selected feed key."""

    def __init__(
        self,
        subscriber,
        sink: EventSink,
        config: FeedConfig | dict | None = None,
    ) -> None:
        self.subscriber = subscriber
        self.config = resolve_config(config)
        self._sink = sink
        self._generation = 0
        self._feed_key: str | None = None
        self._subscription = None
        self._retry_task: asyncio.Task | None = None
        self._attempts = 0
        self.connection = ConnectionState.CONNECTED

    @property
    def feed_key(self) -> str | None:
        return self._feed_key

    @property
    def is_open(self) -> bool:
        return self._feed_key is not None

    async def open(self, feed_key: str) -> None:
        """Subscribe to *feed_key*, fully tearing down any previous subscription first."""
        await self.close()
        self._generation += 1
        self._feed_key = feed_key
        self._attempts = 0
        self.connection = ConnectionState.CONNECTED
        await self._subscribe(self._generation)

    async def close(self) -> None:
        """Cancel retries and unsubscribe.  Safe to call repeatedly."""
        self._generation += 1
        self._feed_key = None
        if self._retry_task is not None:
            self._retry_task.cancel()
            self._retry_task = None
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await _maybe_await(subscription.unsubscribe())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _subscribe(self, generation: int) -> None:
        feed_key = self._feed_key
        try:
            subscription = await _maybe_await(
                self.subscriber.subscribe(feed_key, FeedHandlers(self, generation))
            )
        except Exception as exc:
            if generation == self._generation:
                self._report(ConnectionState.RECONNECTING, SubscriptionLost(feed_key, exc))
                self._schedule_retry(generation)
            return

        if generation != self._generation:
            # Closed or re-opened while subscribing.
            await _maybe_await(subscription.unsubscribe())
            return

        self._subscription = subscription
        self._attempts = 0
        self._report(ConnectionState.CONNECTED)

    def _schedule_retry(self, generation: int) -> None:
        base = float(self.config["reconnect_delay_seconds"])
        ceiling = float(self.config["reconnect_max_delay_seconds"])
        delay = min(base * (2**self._attempts), ceiling)
        self._attempts += 1
        self._retry_task = asyncio.get_running_loop().create_task(
            self._retry_after(delay, generation)
        )

    async def _retry_after(self, delay: float, generation: int) -> None:
        await asyncio.sleep(delay)
        if generation != self._generation:
            return
        self._retry_task = None
        logger.debug("re-subscribing to %s (attempt %d)", self._feed_key, self._attempts)
        await self._subscribe(generation)

    def _deliver(self, generation: int, event) -> None:
        if generation != self._generation:
            logger.debug("dropping event from a closed subscription: %r", event)
            return
        self._sink(event)

    def _transport_status(self, generation: int, connected: bool, cause) -> None:
        if generation != self._generation:
            return
        if connected:
            self._report(ConnectionState.CONNECTED)
        else:
            self._report(ConnectionState.RECONNECTING, SubscriptionLost(self._feed_key, cause))

    def _subscription_failed(self, generation: int, cause: BaseException) -> None:
        if generation != self._generation:
            return
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            result = subscription.unsubscribe()
            if inspect.isawaitable(result):
                asyncio.get_running_loop().create_task(result)
        self._report(ConnectionState.RECONNECTING, SubscriptionLost(self._feed_key, cause))
        if self._retry_task is None:
            self._schedule_retry(generation)

    def _report(self, state: ConnectionState, cause: SubscriptionLost | None = None) -> None:
        if state is self.connection:
            return
        self.connection = state
        if cause is not None:
            logger.warning("%s", cause)
        else:
            logger.info("subscription to %s restored", self._feed_key)
        self._sink(ConnectionChanged(state, cause))


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value
