"""ULID generation and validation."""

from __future__ import annotations

import re

from ulid import ULID

# Crockford Base32 alphabet: 0-9 A-Z excluding I, L, O, U
_CROCKFORD_B32_RE = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$", re.IGNORECASE)

TENTATIVE_PREFIX = "tmp"


def generate_tentative_id() -> str:
    """Generate a locally-unique id for a record the authority has not confirmed."""
    return f"{TENTATIVE_PREFIX}_{ULID()}"


def generate_record_id() -> str:
    """Generate an authority-side record id with the msg_ prefix."""
    return f"msg_{ULID()}"


def generate_mutation_id() -> str:
    """Generate a pending-mutation id with the mut_ prefix."""
    return f"mut_{ULID()}"


def is_tentative_id(id_str: str) -> bool:
    """Return ``True`` if *id_str* was produced by ``generate_tentative_id()``."""
    return validate_id(id_str, TENTATIVE_PREFIX)


def validate_id(id_str: str, expected_prefix: str) -> bool:
    """Validate a ``<prefix>_<ulid>`` identifier.

    The ULID portion must be exactly 26 characters of valid Crockford
    Base32 (0-9, A-Z excluding I, L, O, U -- case insensitive).
    """
    if not isinstance(id_str, str) or not isinstance(expected_prefix, str):
        return False

    parts = id_str.split("_", maxsplit=1)
    if len(parts) != 2:
        return False

    prefix, ulid_part = parts
    if prefix != expected_prefix:
        return False

    return bool(_CROCKFORD_B32_RE.match(ulid_part))
