"""Tests for the calsync CLI commands."""

import json
import logging

import pytest
from click.testing import CliRunner

from calsync.cli import build_provider_client, cli
from calsync.config import CalsyncConfig, ProviderConfig, SyncWindowConfig
from calsync.providers import PROVIDER_TYPES, GraphProviderClient

pytestmark = pytest.mark.unit

WEEKLY_DESCRIPTOR = json.dumps(
    {
        "pattern": {"type": "weekly", "interval": 1, "daysOfWeek": ["monday", "wednesday"]},
        "range": {"type": "endDate", "startDate": "2026-03-02", "endDate": "2026-03-31"},
    }
)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def _reset_root_handlers():
    """Commands that load config install handlers bound to the runner's streams."""
    yield
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "calsync.toml"
    path.write_text(
        '[[feeds]]\nid = "work"\ncalendar_id = "AAMkAGI2"\nname = "Work"\n\n'
        '[[feeds]]\nid = "family"\ncalendar_id = "AAMkAGI3"\nenabled = false\n'
    )
    return path


# ---------------------------------------------------------------------------
# Recurrence conversion
# ---------------------------------------------------------------------------


class TestPatternToRule:
    def test_prints_rule(self, runner):
        result = runner.invoke(cli, ["pattern-to-rule", WEEKLY_DESCRIPTOR])
        assert result.exit_code == 0, result.output
        assert result.output.strip() == (
            "RRULE:FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE;UNTIL=20260331T235959Z;"
            "DTSTART=20260302T000000Z"
        )

    def test_today_anchors_missing_start_date(self, runner):
        descriptor = json.dumps({"pattern": {"type": "daily"}, "range": {"type": "noEnd"}})
        result = runner.invoke(cli, ["pattern-to-rule", descriptor, "--today", "2026-05-04"])
        assert result.exit_code == 0, result.output
        assert result.output.strip() == "RRULE:FREQ=DAILY;INTERVAL=1;DTSTART=20260504T000000Z"

    def test_invalid_json(self, runner):
        result = runner.invoke(cli, ["pattern-to-rule", "{not json"])
        assert result.exit_code == 1
        assert "Invalid JSON" in result.output

    def test_descriptor_must_be_object(self, runner):
        result = runner.invoke(cli, ["pattern-to-rule", "[1, 2]"])
        assert result.exit_code == 1
        assert "must be a JSON object" in result.output

    def test_unknown_pattern_type(self, runner):
        descriptor = json.dumps({"pattern": {"type": "fortnightly"}})
        result = runner.invoke(cli, ["pattern-to-rule", descriptor])
        assert result.exit_code == 1
        assert "Cannot convert pattern" in result.output


class TestRuleToPattern:
    def test_prints_descriptor_with_provider_field_names(self, runner):
        result = runner.invoke(
            cli, ["rule-to-pattern", "RRULE:FREQ=WEEKLY;BYDAY=MO,WE;UNTIL=20261231T235959Z"]
        )
        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["pattern"]["type"] == "weekly"
        assert payload["pattern"]["daysOfWeek"] == ["monday", "wednesday"]
        assert payload["range"] == {"type": "endDate", "endDate": "2026-12-31"}

    def test_bad_rule(self, runner):
        result = runner.invoke(cli, ["rule-to-pattern", "RRULE:FREQ=SECONDLY"])
        assert result.exit_code == 1
        assert "Cannot convert rule" in result.output


# ---------------------------------------------------------------------------
# Config-driven commands
# ---------------------------------------------------------------------------


class TestFeedsCommand:
    def test_lists_configured_feeds(self, runner, config_file):
        result = runner.invoke(cli, ["feeds", "--config", str(config_file)])
        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert lines[0].startswith("ID")
        assert any(line.startswith("work") and "yes" in line for line in lines)
        assert any(line.startswith("family") and "no" in line for line in lines)

    def test_no_feeds(self, runner, tmp_path):
        (tmp_path / "calsync.toml").write_text("")
        result = runner.invoke(cli, ["feeds", "--config", str(tmp_path)])
        assert result.exit_code == 0
        assert "No feeds configured" in result.output

    def test_missing_config(self, runner, tmp_path):
        result = runner.invoke(cli, ["feeds", "--config", str(tmp_path / "absent.toml")])
        assert result.exit_code == 1
        assert "Config error" in result.output


class TestSyncCommand:
    def test_unknown_feed(self, runner, config_file):
        result = runner.invoke(cli, ["sync", "holidays", "--config", str(config_file)])
        assert result.exit_code == 1
        assert "Unknown feed" in result.output

    def test_requires_access_token(self, runner, config_file):
        result = runner.invoke(cli, ["sync", "--config", str(config_file)])
        assert result.exit_code == 1
        assert "access_token is required" in result.output


class _RecordingClient:
    def __init__(self, **kwargs):
        self.kwargs = kwargs


class TestBuildProviderClient:
    async def test_default_type_builds_graph_client(self):
        config = CalsyncConfig(provider=ProviderConfig(access_token="tok"))
        client = build_provider_client(config)
        try:
            assert isinstance(client, GraphProviderClient)
        finally:
            await client.aclose()

    def test_client_class_comes_from_registry(self, monkeypatch):
        monkeypatch.setitem(PROVIDER_TYPES, "graph", _RecordingClient)
        config = CalsyncConfig(
            provider=ProviderConfig(access_token="tok", base_url="https://graph.test/v1.0"),
            sync=SyncWindowConfig(page_size=50, max_retries=1),
        )

        client = build_provider_client(config)

        assert isinstance(client, _RecordingClient)
        assert client.kwargs["access_token"] == "tok"
        assert client.kwargs["base_url"] == "https://graph.test/v1.0"
        assert (client.kwargs["page_size"], client.kwargs["max_retries"]) == (50, 1)


def test_version(runner):
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output
