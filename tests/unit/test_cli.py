"""Unit tests for registrant_sync.cli mode dispatch (no database)."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

from click.testing import CliRunner

from registrant_sync.cli import main
from registrant_sync.shared import SyncCounters
from registrant_sync.sync import SyncResult


class TestCliModes:
    def test_describe_direct_uses_handler(self):
        with patch("registrant_sync.cli.handle_request",
                   return_value=(200, {"columns": []})) as handler:
            result = CliRunner().invoke(main, ["--mode", "describe", "--table", "Lote", "--source-dsn", "host=x"])
        assert result.exit_code == 0, result.output
        assert handler.call_args[0][:2] == ("describe", {"table": "Lote"})
        assert json.loads(result.stdout) == {"columns": []}

    def test_handler_failure_exits_1(self):
        with patch("registrant_sync.cli.handle_request",
                   return_value=(500, {"success": False, "error": "boom"})):
            result = CliRunner().invoke(main, ["--mode", "list_tables", "--source-dsn", "host=x"])
        assert result.exit_code == 1

    def test_list_tables_via_gateway(self):
        gateway = MagicMock()
        gateway.invoke.return_value = {"tables": ["Registration"]}
        with patch("registrant_sync.cli.ProxyGateway", return_value=gateway):
            result = CliRunner().invoke(main, ["--mode", "list_tables", "--via-gateway"])
        assert result.exit_code == 0, result.output
        gateway.invoke.assert_called_once_with("list-tables", {})

    def test_gateway_check_failure(self):
        gateway = MagicMock()
        gateway.test_connection.return_value = {"success": False, "error": "denied"}
        with patch("registrant_sync.cli.ProxyGateway", return_value=gateway):
            result = CliRunner().invoke(main, ["--mode", "gateway_check"])
        assert result.exit_code == 1
        assert json.loads(result.stdout) == {"success": False, "error": "denied"}

    def test_sync_failure_writes_report_and_exits_1(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        failed = SyncResult(success=False, count=0, error="refused", state="FAILED", counters=SyncCounters())
        with patch("registrant_sync.cli.run_sync", return_value=failed) as run:
            result = CliRunner().invoke(main, [
                "--mode", "sync", "--owner-id", "o1", "--event-id", "7", "--run-id", "r1",
            ])
        assert result.exit_code == 1
        assert "refused" in result.stderr
        assert run.call_args.kwargs["event_id"] == "7"
        report = json.loads((tmp_path / "artifacts" / "reports" / "r1.json").read_text())
        assert report["outcome"]["error"] == "refused"
        assert report["owner_id"] == "o1"

    def test_bad_config_file(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("unknown_key: 1\n", encoding="utf-8")
        result = CliRunner().invoke(main, ["--mode", "events", "--config", str(path)])
        assert result.exit_code == 1
        assert "Unknown config keys" in result.stderr
