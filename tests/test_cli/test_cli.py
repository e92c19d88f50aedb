"""Tests for the feedsync CLI: init, config, and demo."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from feedsync.cli.main import cli


@pytest.fixture()
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """An initialized project, with FEEDSYNC_ROOT pointing at it."""
    result = CliRunner().invoke(cli, ["init", "--path", str(tmp_path)])
    assert result.exit_code == 0, result.output
    monkeypatch.setenv("FEEDSYNC_ROOT", str(tmp_path))
    return tmp_path


class TestInit:
    def test_creates_config(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        result = cli_runner.invoke(cli, ["init", "--path", str(tmp_path)])
        assert result.exit_code == 0
        assert "Initialized feedsync" in result.output
        config = json.loads((tmp_path / ".feedsync" / "config.json").read_text())
        assert config["page_limit"] == 50

    def test_idempotent(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        cli_runner.invoke(cli, ["init", "--path", str(tmp_path), "--page-limit", "10"])
        result = cli_runner.invoke(cli, ["init", "--path", str(tmp_path), "--json"])
        assert result.exit_code == 0
        parsed = json.loads(result.output)
        assert parsed == {"ok": True, "data": {"path": parsed["data"]["path"], "created": False}}
        config = json.loads((tmp_path / ".feedsync" / "config.json").read_text())
        assert config["page_limit"] == 10

    def test_rejects_bad_page_limit(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        args = ["init", "--path", str(tmp_path), "--page-limit", "0", "--json"]
        result = cli_runner.invoke(cli, args)
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "INVALID_CONFIG"
        assert not (tmp_path / ".feedsync" / "config.json").exists()


class TestConfig:
    def test_show(self, cli_runner: CliRunner, project: Path) -> None:
        result = cli_runner.invoke(cli, ["config", "show", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.output)["data"]["max_content_length"] == 4000

    def test_set(self, cli_runner: CliRunner, project: Path) -> None:
        result = cli_runner.invoke(cli, ["config", "set", "edit_conflict_policy", "queue"])
        assert result.exit_code == 0
        assert "edit_conflict_policy = queue" in result.output
        config = json.loads((project / ".feedsync" / "config.json").read_text())
        assert config["edit_conflict_policy"] == "queue"

    @pytest.mark.parametrize(
        ("key", "value", "code"),
        [
            ("nope", "1", "INVALID_KEY"),
            ("page_limit", "lots", "INVALID_VALUE"),
            ("match_strategy", "fuzzy", "INVALID_CONFIG"),
        ],
    )
    def test_set_rejects(
        self, cli_runner: CliRunner, project: Path, key: str, value: str, code: str
    ) -> None:
        result = cli_runner.invoke(cli, ["config", "set", key, value, "--json"])
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == code

    def test_outside_a_project(
        self, cli_runner: CliRunner, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("FEEDSYNC_ROOT", raising=False)
        monkeypatch.chdir(tmp_path)
        result = cli_runner.invoke(cli, ["config", "show", "--json"])
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "NOT_INITIALIZED"


class TestDemo:
    def test_all_scenarios_json(
        self, cli_runner: CliRunner, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("FEEDSYNC_ROOT", raising=False)
        monkeypatch.chdir(tmp_path)
        result = cli_runner.invoke(cli, ["demo", "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)["data"]
        assert sorted(data) == ["A", "B", "C", "D", "E"]

        assert [r["content"] for r in data["A"]["records"]] == ["first", "second"]
        for name in ("B", "C"):
            records = data[name]["records"]
            assert len(records) == 1
            assert records[0]["tentative"] is False
        assert [r["content"] for r in data["D"]["records"]] == ["hello"]
        assert [r["content"] for r in data["E"]["records"]] == [
            "before the drop",
            "missed while offline",
        ]
        assert data["E"]["connection"] == "connected"

    def test_single_scenario_text(self, cli_runner: CliRunner, project: Path) -> None:
        result = cli_runner.invoke(cli, ["demo", "--scenario", "d"])
        assert result.exit_code == 0, result.output
        assert "Scenario D: Failed edit rolls back" in result.output
        assert "edit failed:" in result.output
        assert "(tentative)" not in result.output
