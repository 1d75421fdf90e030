"""
Tests for the CLI interface.
"""

import csv
import json
import os
import tempfile

import yaml
from typer.testing import CliRunner

from api_cost_tracker.cli.main import app, EXIT_CODE_OK, EXIT_CODE_FAIL
from api_cost_tracker.storage.repository import SQLiteLedgerStore

runner = CliRunner()


class TestCLI:
    """Test CLI commands against a temporary ledger."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _invoke(self, *args):
        return runner.invoke(app, ["--db", self.db_path, *args])

    def _write_config(self, config_data: dict) -> str:
        config_path = os.path.join(self.temp_dir, "config.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_no_command_prints_hint(self):
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_OK
        assert "Use --help" in result.output

    def test_init_creates_database(self):
        result = self._invoke("init")
        assert result.exit_code == EXIT_CODE_OK
        assert "Database initialized successfully" in result.output
        assert os.path.exists(self.db_path)

    def test_track_records_event(self):
        result = self._invoke("track", "dataforseo", "keywords_volume", "--quantity", "1000")
        assert result.exit_code == EXIT_CODE_OK
        assert "$0.75" in result.output

        [event] = list(SQLiteLedgerStore(self.db_path).iter_events())
        assert event.cost == 0.75
        assert event.metadata == {"source": "cli"}

    def test_track_defaults_to_test_call(self):
        result = self._invoke("track")
        assert result.exit_code == EXIT_CODE_OK
        [event] = list(SQLiteLedgerStore(self.db_path).iter_events())
        assert (event.provider, event.endpoint) == ("dataforseo", "keywords_volume")

    def test_track_unrecognized(self):
        result = self._invoke("track", "ghost_provider", "x")
        assert result.exit_code == EXIT_CODE_OK
        assert "unrecognized" in result.output

    def test_usage_json(self):
        self._invoke("track", "google", "places_search")
        result = self._invoke("usage", "--json")
        assert result.exit_code == EXIT_CODE_OK
        assert '"totalRequests": 1' in result.output

    def test_usage_invalid_period(self):
        result = self._invoke("usage", "--period", "June")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid period" in result.output

    def test_history(self):
        result = self._invoke("history", "--months", "2")
        assert result.exit_code == EXIT_CODE_OK
        assert "Usage history" in result.output

    def test_breakdown_invalid_group_by(self):
        result = self._invoke("breakdown", "--group-by", "hour")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "group_by" in result.output

    def test_breakdown_empty(self):
        result = self._invoke("breakdown", "--start", "2020-01-01", "--end", "2020-02-01")
        assert result.exit_code == EXIT_CODE_OK
        assert "No usage found" in result.output

    def test_health(self):
        self._invoke("track", "google", "places_search", "--status-code", "500")
        result = self._invoke("health")
        assert result.exit_code == EXIT_CODE_OK
        assert "unhealthy" in result.output

    def test_optimize_without_usage(self):
        result = self._invoke("optimize")
        assert result.exit_code == EXIT_CODE_OK
        assert "No optimization suggestions" in result.output

    def test_subscribe_and_list(self):
        result = self._invoke("subscribe", "builtwith", "--name", "Pro", "--cost", "295", "--credits", "5000")
        assert result.exit_code == EXIT_CODE_OK
        assert "builtwith subscribed to Pro" in result.output

        result = self._invoke("subscriptions")
        assert result.exit_code == EXIT_CODE_OK
        assert "builtwith" in result.output

    def test_subscribe_invalid_period(self):
        result = self._invoke("subscribe", "builtwith", "--name", "Pro", "--cost", "295", "--period", "weekly")
        assert result.exit_code == EXIT_CODE_FAIL

    def test_export_json_to_stdout(self):
        self._invoke("track", "google", "places_search")
        result = self._invoke("export", "--format", "json")
        assert result.exit_code == EXIT_CODE_OK
        [row] = json.loads(result.output)
        assert row["endpoint"] == "places_search"

    def test_export_csv_to_file(self):
        self._invoke("track", "google", "places_search")
        output = os.path.join(self.temp_dir, "report.csv")
        result = self._invoke("export", "--format", "csv", "--output", output)
        assert result.exit_code == EXIT_CODE_OK
        with open(output, encoding="utf-8") as f:
            rows = list(csv.reader(f))
        assert rows[0][0] == "timestamp"
        assert len(rows) == 2

    def test_export_invalid_format(self):
        result = self._invoke("export", "--format", "xml")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unsupported report format" in result.output

    def test_config_file_is_applied(self):
        config_path = self._write_config({
            "providers": {
                "acme": {
                    "billing_type": "pay_per_use",
                    "endpoints": [{"name": "lookup", "path": "/lookup", "cost": 2.5}]
                }
            },
            "logging": {"level": "WARNING"}
        })
        result = runner.invoke(app, ["--db", self.db_path, "--config", config_path, "track", "acme", "lookup"])
        assert result.exit_code == EXIT_CODE_OK
        assert "$2.50" in result.output

    def test_missing_config_file_fails(self):
        result = runner.invoke(app, ["--db", self.db_path, "--config", "missing.yaml", "usage"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "not found" in result.output
