"""
Command-line interface smoke tests via typer's CliRunner.
"""

from importlib.metadata import EntryPoint

import pytest
from typer.testing import CliRunner

from calendar_sync_engine import cli as cli_module
from calendar_sync_engine.cli import app
from calendar_sync_engine.db import StateDatabase
from calendar_sync_engine.models import CalendarIntegration
from calendar_sync_engine.models import ConflictType
from calendar_sync_engine.models import Provider
from calendar_sync_engine.models import SyncDirection
from calendar_sync_engine.models import SyncStatus
from calendar_sync_engine.providers import ENTRY_POINT_GROUP
from calendar_sync_engine.sync.detector import ConflictDetector
from tests.conftest import make_external
from tests.conftest import make_local

runner = CliRunner()


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    # Keep rich from wrapping or truncating table cells in captured output.
    monkeypatch.setattr(cli_module.console, "width", 200)


@pytest.fixture
def cli(tmp_path):
    """Invoke the CLI against a throwaway state DB and config path."""
    db_path = tmp_path / "state.db"
    config_path = tmp_path / "calendar-sync.ini"

    def _invoke(*args):
        return runner.invoke(
            app, ["--config", str(config_path), "--state-db", str(db_path), *args]
        )

    _invoke.db_path = db_path
    _invoke.config_path = config_path
    return _invoke


@pytest.fixture
def google_plugin(monkeypatch):
    ep = EntryPoint(
        name="google", value="tests.fake_client:make_fake_client", group=ENTRY_POINT_GROUP
    )
    monkeypatch.setattr("calendar_sync_engine.providers.entry_points", lambda group: [ep])


class TestIntegrationCommands:
    def test_connect_then_status(self, cli):
        connected = cli("connect", "user-1", "google", "--id", "g1")
        assert connected.exit_code == 0, connected.output
        assert "Connected google:primary for user-1" in connected.output

        status = cli("status")
        assert status.exit_code == 0, status.output
        assert "g1" in status.output
        assert "idle" in status.output

    def test_status_without_database(self, cli):
        result = cli("status")
        assert result.exit_code == 0
        assert "No integrations yet" in result.output

    def test_configure_changes_preferences(self, cli):
        cli("connect", "user-1", "google", "--id", "g1")

        result = cli("configure", "g1", "--disable", "--direction", "import_only")

        assert result.exit_code == 0, result.output
        assert "disabled" in result.output
        with StateDatabase(cli.db_path) as db:
            integration = db.get_integration("g1")
        assert not integration.sync_enabled
        assert integration.sync_direction == SyncDirection.IMPORT_ONLY

    def test_configure_unknown_integration(self, cli):
        result = cli("configure", "nope", "--enable")
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_disconnect(self, cli):
        cli("connect", "user-1", "google", "--id", "g1")

        result = cli("disconnect", "g1", "--yes")

        assert result.exit_code == 0, result.output
        with StateDatabase(cli.db_path) as db:
            assert db.get_integration("g1") is None


class TestSyncCommands:
    def test_sync_with_plugin(self, cli, google_plugin):
        cli("connect", "user-1", "google", "--id", "g1")

        result = cli("sync", "user-1", "g1")

        assert result.exit_code == 0, result.output
        assert "Results" in result.output
        with StateDatabase(cli.db_path) as db:
            assert db.get_integration("g1").sync_status == SyncStatus.SUCCESS

    def test_sync_without_plugin_fails(self, cli, monkeypatch):
        monkeypatch.setattr("calendar_sync_engine.providers.entry_points", lambda group: [])
        cli("connect", "user-1", "google", "--id", "g1")

        result = cli("sync", "user-1", "g1")

        assert result.exit_code == 1
        assert "No provider client registered" in result.output
        with StateDatabase(cli.db_path) as db:
            assert db.get_integration("g1").sync_status == SyncStatus.ERROR

    def test_sync_unknown_integration(self, cli):
        result = cli("sync", "user-1", "missing")
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_sync_all_without_integrations(self, cli):
        result = cli("sync-all")
        assert result.exit_code == 0
        assert "No enabled integrations" in result.output


class TestConflictCommands:
    def test_no_pending_conflicts(self, cli):
        result = cli("conflicts", "user-1")
        assert result.exit_code == 0
        assert "No pending conflicts" in result.output

    def test_stats_on_empty_database(self, cli):
        result = cli("conflict-stats", "user-1")
        assert result.exit_code == 0
        assert "Total" in result.output

    def test_resolve_unknown_conflict(self, cli):
        result = cli("resolve", "nope", "user-1", "ignore")
        assert result.exit_code == 1
        assert "Conflict nope not found" in result.output

    def test_resolve_rejects_bad_json(self, cli):
        result = cli("resolve", "nope", "user-1", "merge", "--merged", "{not json")
        assert result.exit_code == 1
        assert "not valid JSON" in result.output


def _seed_title_conflict(db_path):
    """g1 with a local "Standup" whose external copy was renamed "Stand-up"."""
    with StateDatabase(db_path) as db:
        db.create_integration(CalendarIntegration(id="g1", user_id="user-1", provider=Provider.GOOGLE))
        local = make_local("L1", "Standup")
        db.insert_local_event(local)
        conflict = ConflictDetector.build_conflict(
            "user-1",
            "g1",
            ConflictType.CONTENT_MISMATCH,
            "'Standup' was edited on both sides",
            local,
            make_external("X1", "Stand-up"),
        )
        db.insert_conflict(conflict)
        db.commit()
    return conflict


class TestBatchAndHistoryCommands:
    def test_conflicts_show_severity_and_suggestion(self, cli):
        _seed_title_conflict(cli.db_path)

        result = cli("conflicts", "user-1")

        assert result.exit_code == 0, result.output
        assert "low" in result.output
        assert "merge" in result.output

    def test_batch_needs_exactly_one_strategy(self, cli):
        assert cli("resolve-batch", "user-1").exit_code == 1
        both = cli("resolve-batch", "user-1", "--rule", "local_wins", "--prefer", "title=local")
        assert both.exit_code == 1
        assert "exactly one" in both.output

    def test_batch_rule_resolves_all_pending(self, cli, google_plugin):
        _seed_title_conflict(cli.db_path)

        result = cli("resolve-batch", "user-1", "--rule", "external_wins")

        assert result.exit_code == 0, result.output
        assert "Resolved 1" in result.output
        with StateDatabase(cli.db_path) as db:
            assert db.get_local_event("L1").title == "Stand-up"

    def test_batch_reports_each_failure(self, cli, google_plugin):
        conflict = _seed_title_conflict(cli.db_path)

        result = cli(
            "resolve-batch", "user-1", "--prefer", "location=local", "--id", conflict.id, "--id", "nope"
        )

        assert result.exit_code == 1
        assert "Failed to resolve conflict nope" in result.output

    def test_batch_rejects_malformed_priorities(self, cli):
        result = cli("resolve-batch", "user-1", "--prefer", "colour=external")
        assert result.exit_code == 2
        assert "GROUP=SOURCE" in result.output

    def test_history_is_empty_before_any_pass(self, cli):
        result = cli("history")
        assert result.exit_code == 0
        assert "No sync history" in result.output

    def test_history_lists_passes(self, cli, google_plugin):
        cli("connect", "user-1", "google", "--id", "g1")
        cli("sync", "user-1", "g1")

        result = cli("history", "g1")

        assert result.exit_code == 0, result.output
        assert "g1" in result.output
        assert "completed" in result.output
        assert "bidirectional" in result.output


class TestPreview:
    def test_weekly_preview(self, cli):
        result = cli(
            "preview",
            "weekly",
            "--start",
            "2026-03-02T09:00:00",
            "--days",
            "mon,wed",
            "--occurrences",
            "4",
            "--count",
            "3",
        )

        assert result.exit_code == 0, result.output
        assert "Repeats every week on Mon, Wed for 4 times" in result.output
        assert "Mon 2026-03-02" in result.output
        assert "Wed 2026-03-04" in result.output
        assert "Mon 2026-03-09" in result.output
        assert "Wed 2026-03-11" not in result.output
        assert "Total occurrences: 4" in result.output

    def test_invalid_pattern_is_reported(self, cli):
        result = cli("preview", "weekly", "--start", "2026-03-02T09:00:00")
        assert result.exit_code == 1
        assert "Weekly recurrence must specify at least one day of the week" in result.output


class TestConfigFile:
    def test_invalid_value_is_reported(self, cli):
        cli.config_path.write_text("[calendar-sync]\nmax_retries = lots\n")
        result = cli("status")
        assert result.exit_code == 1
        assert "Invalid value for max_retries" in result.output

    def test_state_db_from_config_file(self, tmp_path):
        db_path = tmp_path / "from-config.db"
        config_path = tmp_path / "calendar-sync.ini"
        config_path.write_text(f"[calendar-sync]\nstate_db_path = {db_path}\n")

        result = runner.invoke(
            app, ["--config", str(config_path), "connect", "user-1", "microsoft", "--id", "m1"]
        )

        assert result.exit_code == 0, result.output
        with StateDatabase(db_path) as db:
            assert db.get_integration("m1") is not None
