"""Explicit observer list for post-reconciliation notifications.

Listeners are fire-and-forget: failures are logged but never raise or
interrupt the reconciliation step that triggered them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class ListenerSet:
    """An ordered set of callbacks notified synchronously with one argument."""

    def __init__(self) -> None:
        self._listeners: list[Callable[[object], None]] = []

    def __len__(self) -> int:
        return len(self._listeners)

    def register(self, fn: Callable[[object], None]) -> Callable[[], None]:
        """Register *fn*; return a callable that unregisters it."""
        self._listeners.append(fn)

        def _unregister() -> None:
            self.unregister(fn)

        return _unregister

    def unregister(self, fn: Callable[[object], None]) -> None:
        """Remove a previously registered listener."""
        try:
            self._listeners.remove(fn)
        except ValueError:
            pass

    def notify(self, value: object) -> None:
        """Fire all registered listeners.  Never raises."""
        for fn in list(self._listeners):
            try:
                fn(value)
            except Exception:
                logger.exception("listener %r failed", fn)

    def clear(self) -> None:
        self._listeners.clear()
