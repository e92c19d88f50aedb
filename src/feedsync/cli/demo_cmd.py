"""Scenario runner: feedsync demo.

Each scenario drives a FeedSession against an InMemoryAuthority and
reports the view a presentation layer would render at the end.
"""

from __future__ import annotations

import asyncio

import click

from feedsync.cli.helpers import json_envelope, output_error
from feedsync.cli.main import cli
from feedsync.core.config import resolve_config
from feedsync.core.errors import MutationFailed
from feedsync.core.records import record_to_row
from feedsync.memory import InMemoryAuthority
from feedsync.session import FeedSession
from feedsync.storage.fs import FeedSyncRootError, find_root, read_config

FEED = "general"


def _session(authority: InMemoryAuthority, config: dict) -> FeedSession:
    return FeedSession(
        fetcher=authority,
        submitter=authority,
        subscriber=authority,
        identity=authority.current_user_id,
        config=config,
    )


def _report(session: FeedSession, title: str, notes: list[str]) -> dict:
    engine = session.engine
    return {
        "title": title,
        "connection": engine.connection.value,
        "state": engine.state.value,
        "records": [record_to_row(r) for r in engine.view()],
        "notes": notes,
    }


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


async def _scenario_a(config: dict) -> dict:
    authority = InMemoryAuthority()
    authority.add_row(FEED, "first")
    authority.add_row(FEED, "second")
    session = _session(authority, config)
    await session.select(FEED)
    report = _report(session, "Fetch a page of two records", ["view is oldest first"])
    await session.close()
    return report


async def _scenario_b(config: dict) -> dict:
    authority = InMemoryAuthority()
    session = _session(authority, config)
    await session.select(FEED)

    authority.pause_responses()
    authority.hold_echoes()
    task = asyncio.get_running_loop().create_task(session.coordinator.submit_create("hi"))
    await asyncio.sleep(0)
    tentative = [r for r in session.engine.view() if r.tentative]
    notes = [f"tentative records while pending: {len(tentative)}"]

    authority.resume_responses()
    result = await task
    authority.release_echoes()
    notes.append(f"confirmed as {result.record.id}")
    report = _report(session, "Optimistic create confirmed by the response", notes)
    await session.close()
    return report


async def _scenario_c(config: dict) -> dict:
    authority = InMemoryAuthority()
    session = _session(authority, config)
    await session.select(FEED)

    authority.pause_responses()
    task = asyncio.get_running_loop().create_task(session.coordinator.submit_create("hi"))
    await asyncio.sleep(0)
    notes = [f"records after feed echo: {len(session.engine.view())}"]

    authority.resume_responses()
    await task
    notes.append(f"records after late response: {len(session.engine.view())}")
    report = _report(session, "Feed echo reconciles before the response", notes)
    await session.close()
    return report


async def _scenario_d(config: dict) -> dict:
    authority = InMemoryAuthority()
    original = authority.add_row(FEED, "hello", author_id=authority.user_id)
    session = _session(authority, config)
    await session.select(FEED)

    authority.fail_next("update")
    notes: list[str] = []
    try:
        await session.coordinator.submit_edit(original.id, "bye")
    except MutationFailed as e:
        notes.append(f"edit failed: {e}")
    report = _report(session, "Failed edit rolls back", notes)
    await session.close()
    return report


async def _scenario_e(config: dict) -> dict:
    authority = InMemoryAuthority()
    authority.add_row(FEED, "before the drop")
    session = _session(authority, config)
    await session.select(FEED)

    authority.drop_connection(FEED)
    notes = [f"connection: {session.engine.connection.value}"]
    authority.add_row(FEED, "missed while offline")
    authority.restore_connection(FEED)
    await session.engine.wait_for_resync()
    notes.append(f"records after resync: {len(session.engine.view())}")
    report = _report(session, "Reconnect triggers a full resync", notes)
    await session.close()
    return report


SCENARIOS = {
    "A": _scenario_a,
    "B": _scenario_b,
    "C": _scenario_c,
    "D": _scenario_d,
    "E": _scenario_e,
}


async def run_scenarios(names: list[str], config: dict) -> dict[str, dict]:
    results: dict[str, dict] = {}
    for name in names:
        results[name] = await SCENARIOS[name](config)
    return results


def _load_project_config() -> dict:
    """Use the project config when run inside a feedsync project, else defaults."""
    try:
        root = find_root()
    except FeedSyncRootError as e:
        output_error(str(e), "NOT_INITIALIZED", False)
    if root is None:
        return resolve_config(None)
    return read_config(root)


@cli.command()
@click.option(
    "--scenario",
    type=click.Choice([*SCENARIOS, "all"], case_sensitive=False),
    default="all",
    help="Which scenario to run.",
)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON.")
def demo(scenario: str, output_json: bool) -> None:
    """Run reconciliation scenarios against an in-memory authority."""
    names = list(SCENARIOS) if scenario.lower() == "all" else [scenario.upper()]
    results = asyncio.run(run_scenarios(names, _load_project_config()))

    if output_json:
        click.echo(json_envelope(True, data=results))
        return

    for name, report in results.items():
        click.echo(f"Scenario {name}: {report['title']}")
        click.echo(f"  connection: {report['connection']}")
        for row in report["records"]:
            marker = " (tentative)" if row["tentative"] else ""
            click.echo(f"  [{row['id']}] {row['author_id']}: {row['content']}{marker}")
        for note in report["notes"]:
            click.echo(f"  - {note}")
