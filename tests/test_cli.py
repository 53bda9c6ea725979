"""Tests for the typer command-line interface."""

import json
from unittest.mock import AsyncMock, patch

from typer.testing import CliRunner

from pricesync.cli import app
from pricesync.core.types import BackfillFailure, BackfillResult, FailureCode
from pricesync.store.database import CatalogStore

runner = CliRunner()


def make_result(ok=True, dry_run=False):
    result = BackfillResult(
        ok=ok, run_id="run-1", set_key="paldea-evolved", canonical_set_name="Paldea Evolved",
        provider_set_id="paldea-evolved-pokemon", language="EN", aggressive=True, dry_run=dry_run,
        provider_set_id_override=None, provider_window_requested="all", provider_window_used="365d",
        matched_count=3, printings_selected=4,
    )
    if not ok:
        result.failures = [BackfillFailure("slug", "p-1", FailureCode.PROVIDER_FETCH_FAILED, "HTTP 500")]
        result.error_counts = {"PROVIDER_FETCH_FAILED": 1}
        result.hard_fail_count = 1
        result.first_error = "PROVIDER_FETCH_FAILED: HTTP 500"
    return result


class TestBackfillCommand:
    """Test the backfill command."""

    def test_successful_run_renders_summary(self, tmp_path):
        with patch("pricesync.cli.run_backfill", new_callable=AsyncMock, return_value=make_result()) as mock_run:
            outcome = runner.invoke(app, ["backfill", "paldea-evolved", "--dry-run", "--no-aggressive",
                                          "--db", str(tmp_path / "cli.db")])

        assert outcome.exit_code == 0
        assert "paldea-evolved-pokemon" in outcome.stdout
        kwargs = mock_run.await_args.kwargs
        assert kwargs["dry_run"] is True
        assert kwargs["aggressive"] is False
        assert kwargs["language"] == "EN"

    def test_failed_run_exits_one(self, tmp_path):
        with patch("pricesync.cli.run_backfill", new_callable=AsyncMock, return_value=make_result(ok=False)):
            outcome = runner.invoke(app, ["backfill", "paldea-evolved", "--db", str(tmp_path / "cli.db")])

        assert outcome.exit_code == 1
        assert "PROVIDER_FETCH_FAILED" in outcome.stdout

    def test_json_output(self, tmp_path):
        with patch("pricesync.cli.run_backfill", new_callable=AsyncMock, return_value=make_result()):
            outcome = runner.invoke(app, ["backfill", "paldea-evolved", "--json", "--db", str(tmp_path / "cli.db")])

        assert outcome.exit_code == 0
        payload = json.loads(outcome.stdout[outcome.stdout.index("{"):])
        assert payload["provider_window_used"] == "365d"

    def test_invalid_arguments_exit_two(self, tmp_path):
        outcome = runner.invoke(app, ["backfill", "paldea-evolved", "--language", "JP",
                                      "--db", str(tmp_path / "cli.db")])
        assert outcome.exit_code == 2


class TestStoreCommands:
    """Test database helper commands."""

    def test_init_db(self, tmp_path):
        path = tmp_path / "fresh.db"
        outcome = runner.invoke(app, ["init-db", "--db", str(path)])
        assert outcome.exit_code == 0
        assert path.exists()

    def test_show_run(self, tmp_path):
        path = str(tmp_path / "runs.db")
        CatalogStore(path).write_run({
            "id": "run-1", "job": "backfill_justtcg_set", "source": "justtcg", "status": "finished",
            "ok": True, "meta": {"provider_window_used": "all", "first_error": None},
        })

        found = runner.invoke(app, ["show-run", "run-1", "--db", path])
        missing = runner.invoke(app, ["show-run", "nope", "--db", path])

        assert found.exit_code == 0
        assert "backfill_justtcg_set" in found.stdout
        assert missing.exit_code == 1
