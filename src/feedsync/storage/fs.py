"""Config persistence under ``<root>/.feedsync/`` and project root discovery."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from feedsync.core.config import FeedConfig, load_config, serialize_config
from feedsync.storage.locks import feedsync_lock

FEEDSYNC_DIR = ".feedsync"
FEEDSYNC_ROOT_ENV = "FEEDSYNC_ROOT"
CONFIG_FILE = "config.json"


class FeedSyncRootError(Exception):
    """FEEDSYNC_ROOT is set but does not name a feedsync project."""


def atomic_write(path: Path, text: str) -> None:
    """Replace *path* with *text* so readers never see a partial file.

    Raises:
        FileNotFoundError: If the parent directory does not exist.
    """
    if not path.parent.is_dir():
        raise FileNotFoundError(f"Parent directory does not exist: {path.parent}")
    with tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=path.parent, prefix=".tmp.", delete=False
    ) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
    try:
        os.replace(tmp.name, path)
    except OSError:
        os.unlink(tmp.name)
        raise


def ensure_feedsync_dirs(root: Path) -> Path:
    """Create ``.feedsync/locks/`` under *root*; return the ``.feedsync`` path."""
    feedsync_dir = root / FEEDSYNC_DIR
    (feedsync_dir / "locks").mkdir(parents=True, exist_ok=True)
    return feedsync_dir


def find_root(start: Path | None = None) -> Path | None:
    """Return the nearest directory at or above *start* (default cwd) holding ``.feedsync/``.

    FEEDSYNC_ROOT, when set, wins outright.

    Raises:
        FeedSyncRootError: If FEEDSYNC_ROOT is set but invalid.
    """
    env_root = os.environ.get(FEEDSYNC_ROOT_ENV)
    if env_root is not None:
        root = Path(env_root)
        if not env_root or not (root / FEEDSYNC_DIR).is_dir():
            raise FeedSyncRootError(
                f"{FEEDSYNC_ROOT_ENV} does not point at a feedsync project: {env_root!r}"
            )
        return root

    here = (start or Path.cwd()).resolve()
    return next((d for d in (here, *here.parents) if (d / FEEDSYNC_DIR).is_dir()), None)


def read_config(root: Path) -> FeedConfig:
    """Load ``.feedsync/config.json`` under *root*, defaults filled in."""
    return load_config((root / FEEDSYNC_DIR / CONFIG_FILE).read_text())


def write_config(root: Path, config: FeedConfig | dict, timeout: float = 10) -> Path:
    """Persist *config* atomically while holding the config lock.

    Raises:
        LockTimeout: Another writer held the lock for longer than *timeout*.
    """
    feedsync_dir = ensure_feedsync_dirs(root)
    path = feedsync_dir / CONFIG_FILE
    with feedsync_lock(feedsync_dir / "locks", "config", timeout=timeout):
        atomic_write(path, serialize_config(config))
    return path
