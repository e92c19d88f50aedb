"""Shared CLI helpers and output utilities."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import NoReturn

import click

from feedsync.storage.fs import FeedSyncRootError, find_root


def json_envelope(ok: bool, *, data: object = None, error: object = None) -> str:
    """Build a structured JSON output envelope."""
    result: dict = {"ok": ok}
    if data is not None:
        result["data"] = data
    if error is not None:
        result["error"] = error
    return json.dumps(result, sort_keys=True, indent=2) + "\n"


def json_error_obj(code: str, message: str) -> dict:
    """Build an error object for the JSON envelope."""
    return {"code": code, "message": message}


def output_error(message: str, code: str, is_json: bool, exit_code: int = 1) -> NoReturn:
    """Print error and exit. JSON errors go to stdout; human errors to stderr."""
    if is_json:
        click.echo(json_envelope(False, error=json_error_obj(code, message)))
    else:
        click.echo(f"Error: {message}", err=True)
    raise SystemExit(exit_code)


def require_root(is_json: bool = False) -> Path:
    """Find the directory holding .feedsync/ or exit with an error."""
    try:
        root = find_root()
    except FeedSyncRootError as e:
        output_error(str(e), "NOT_INITIALIZED", is_json)
    if root is None:
        output_error(
            "Not a feedsync project (no .feedsync/ found). Run 'feedsync init' first.",
            "NOT_INITIALIZED",
            is_json,
        )
    return root


def configure_logging(verbose: bool) -> None:
    """Send library logging to stderr; DEBUG with --verbose or FEEDSYNC_DEBUG."""
    debug = verbose or bool(os.environ.get("FEEDSYNC_DEBUG"))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )
