"""CLI entry point and commands."""

from __future__ import annotations

from pathlib import Path

import click

from feedsync.cli.helpers import configure_logging, json_envelope, output_error, require_root
from feedsync.core.config import (
    coerce_config_value,
    default_config,
    serialize_config,
    validate_config,
)
from feedsync.storage.fs import FEEDSYNC_DIR, CONFIG_FILE, read_config, write_config
from feedsync.storage.locks import LockTimeout


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log reconciliation decisions to stderr.")
def cli(verbose: bool) -> None:
    """feedsync: optimistic, reconciled client view of a shared record feed."""
    configure_logging(verbose)


@cli.command()
@click.option(
    "--path",
    "target_path",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    help="Directory to initialize feedsync in (defaults to current directory).",
)
@click.option("--page-limit", type=int, default=None, help="Records per fetched page.")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON.")
def init(target_path: str, page_limit: int | None, output_json: bool) -> None:
    """Write a default .feedsync/config.json."""
    root = Path(target_path)
    config_path = root / FEEDSYNC_DIR / CONFIG_FILE
    if config_path.exists():
        if output_json:
            click.echo(json_envelope(True, data={"path": str(config_path), "created": False}))
        else:
            click.echo(f"feedsync already initialized in {root}")
        return

    config = default_config()
    if page_limit is not None:
        config["page_limit"] = page_limit
    problems = validate_config(config)
    if problems:
        output_error("; ".join(problems), "INVALID_CONFIG", output_json)

    try:
        path = write_config(root, config)
    except LockTimeout as e:
        output_error(str(e), "LOCK_TIMEOUT", output_json)

    if output_json:
        click.echo(json_envelope(True, data={"path": str(path), "created": True}))
    else:
        click.echo(f"Initialized feedsync in {root / FEEDSYNC_DIR}")


@cli.group()
def config() -> None:
    """Inspect and change .feedsync/config.json."""


@config.command("show")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON.")
def config_show(output_json: bool) -> None:
    """Print the effective configuration."""
    root = require_root(output_json)
    current = read_config(root)
    if output_json:
        click.echo(json_envelope(True, data=current))
        return
    click.echo(serialize_config(current), nl=False)


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON.")
def config_set(key: str, value: str, output_json: bool) -> None:
    """Set KEY to VALUE and save, refusing invalid results."""
    root = require_root(output_json)
    current = read_config(root)
    try:
        current[key] = coerce_config_value(key, value)
    except KeyError:
        output_error(f"Unknown config key: {key}", "INVALID_KEY", output_json)
    except ValueError:
        output_error(f"Invalid value for {key}: {value}", "INVALID_VALUE", output_json)

    problems = validate_config(current)
    if problems:
        output_error("; ".join(problems), "INVALID_CONFIG", output_json)

    try:
        write_config(root, current)
    except LockTimeout as e:
        output_error(str(e), "LOCK_TIMEOUT", output_json)

    if output_json:
        click.echo(json_envelope(True, data={key: current[key]}))
    else:
        click.echo(f"{key} = {current[key]}")


# ---------------------------------------------------------------------------
# Register command modules (must be after cli group is defined)
# ---------------------------------------------------------------------------
from feedsync.cli import demo_cmd as _demo_cmd  # noqa: E402, F401

if __name__ == "__main__":
    cli()
