"""Default config generation and validation."""

from __future__ import annotations

import json
from typing import TypedDict

VALID_CONFLICT_POLICIES: tuple[str, ...] = ("reject", "queue")
VALID_MATCH_STRATEGIES: tuple[str, ...] = ("content", "correlation")


class FeedConfig(TypedDict, total=False):
    schema_version: int
    page_limit: int
    max_content_length: int
    edit_conflict_policy: str
    match_strategy: str
    reconnect_delay_seconds: float
    reconnect_max_delay_seconds: float


def default_config() -> FeedConfig:
    """Return the default feedsync configuration.

    The returned dict, when serialized with ``serialize_config()``,
    produces the canonical default config.json.
    """
    return {
        "schema_version": 1,
        "page_limit": 50,
        "max_content_length": 4000,
        "edit_conflict_policy": "reject",
        "match_strategy": "content",
        "reconnect_delay_seconds": 1.0,
        "reconnect_max_delay_seconds": 30.0,
    }


def serialize_config(config: FeedConfig | dict[str, object]) -> str:
    """Serialize a config dict to the canonical JSON format."""
    return json.dumps(config, sort_keys=True, indent=2) + "\n"


def load_config(raw: str) -> FeedConfig:
    """Parse a JSON config string, filling in defaults for missing keys.

    This is a pure function (no I/O).  The storage layer reads the file
    and passes the raw string here.
    """
    config = default_config()
    config.update(json.loads(raw))
    return config


def resolve_config(config: FeedConfig | dict | None) -> FeedConfig:
    """Return *config* merged over the defaults (``None`` means all defaults)."""
    merged = default_config()
    if config:
        merged.update(config)
    return merged


def validate_config(config: dict) -> list[str]:
    """Return a list of problems with *config* (empty when valid)."""
    problems: list[str] = []

    for key in ("page_limit", "max_content_length"):
        value = config.get(key)
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            problems.append(f"{key} must be a positive integer")

    policy = config.get("edit_conflict_policy")
    if policy not in VALID_CONFLICT_POLICIES:
        problems.append(
            f"edit_conflict_policy must be one of: {', '.join(VALID_CONFLICT_POLICIES)}"
        )

    strategy = config.get("match_strategy")
    if strategy not in VALID_MATCH_STRATEGIES:
        problems.append(f"match_strategy must be one of: {', '.join(VALID_MATCH_STRATEGIES)}")

    delay = config.get("reconnect_delay_seconds")
    max_delay = config.get("reconnect_max_delay_seconds")
    if not isinstance(delay, (int, float)) or delay < 0:
        problems.append("reconnect_delay_seconds must be a non-negative number")
    elif not isinstance(max_delay, (int, float)) or max_delay < delay:
        problems.append("reconnect_max_delay_seconds must be >= reconnect_delay_seconds")

    return problems


def coerce_config_value(key: str, raw: str) -> object:
    """Convert a CLI string into the type the config key expects.

    Raises:
        KeyError: If *key* is not a known config key.
        ValueError: If *raw* cannot be converted.
    """
    template = default_config()
    if key not in template or key == "schema_version":
        raise KeyError(key)
    current = template[key]
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw
