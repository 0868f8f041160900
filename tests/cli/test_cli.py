"""Tests for CLI commands and output formatting."""

import json

from typer.testing import CliRunner

from journalcoach.cli.main import app
from journalcoach.cli.output import format_pass_summary, mask_secret

runner = CliRunner()


def test_mask_secret() -> None:
    assert mask_secret("") == "(unset)"
    assert mask_secret("short") == "***"
    assert mask_secret("a-long-secret-value") == "***alue"


def test_pass_summary_json() -> None:
    summary = {"claim": {"processed": 2, "message_ids": ["a", "b"]}}
    assert json.loads(format_pass_summary("process-pending", summary, as_json=True)) == summary


def test_pass_summary_table_lists_phases() -> None:
    rendered = format_pass_summary(
        "process-pending",
        {"claim": {"processed": 2, "message_ids": ["a"]}, "chat_notifications": {"sent": 1}},
    )
    assert "processed=2" in rendered
    assert "sent=1" in rendered
    assert "message_ids" not in rendered


class TestConfigValidateCommand:
    def test_valid_config(self, tmp_path) -> None:
        path = tmp_path / "journalcoach.yaml"
        path.write_text("cron:\n  secret: abc\n")

        result = runner.invoke(app, ["config", "validate", "--config", str(path)])

        assert result.exit_code == 0
        assert "Config is valid." in result.output
        assert "Push: not configured" in result.output

    def test_enforced_without_keys_fails(self, tmp_path) -> None:
        path = tmp_path / "journalcoach.yaml"
        path.write_text("queue:\n  token: qstash\n")

        result = runner.invoke(app, ["config", "validate", "--config", str(path)])

        assert result.exit_code == 1
        assert "Config validation failed" in result.output

    def test_missing_file(self, tmp_path) -> None:
        result = runner.invoke(
            app, ["config", "validate", "--config", str(tmp_path / "missing.yaml")]
        )
        assert result.exit_code == 1
