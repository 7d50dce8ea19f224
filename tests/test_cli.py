"""
命令行测试
"""
import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from notification_workflow.cli import cli


EXAMPLES = Path(__file__).resolve().parent.parent / "examples"

PAYLOAD = json.dumps({"order_id": "42", "email": "ann@example.com", "phone": "+15550100", "name": "Ann"})

ORPHAN_YAML = """
workflow:
  code: orphan
  name: Orphan
  nodes:
    - key: first
      type: delay
      delay_ms: 10
    - key: lonely
      type: delay
      delay_ms: 10
"""


@pytest.fixture
def runner():
    return CliRunner()


class TestValidateCommand:
    """validate 命令测试"""

    def test_valid_workflow(self, runner):
        result = runner.invoke(cli, ["validate", str(EXAMPLES / "order_followup.yaml")])

        assert result.exit_code == 0, result.output
        report = json.loads(result.stdout)
        assert report["ok"] is True
        assert report["errors"] == []

    def test_templated_workflow(self, runner):
        result = runner.invoke(cli, [
            "validate",
            str(EXAMPLES / "order_followup_from_templates.yaml"),
            "--templates", str(EXAMPLES / "templates.yaml")
        ])
        assert result.exit_code == 0, result.output

    def test_unreachable_node(self, runner, tmp_path):
        path = tmp_path / "orphan.yaml"
        path.write_text(ORPHAN_YAML, encoding="utf-8")

        result = runner.invoke(cli, ["validate", str(path)])

        assert result.exit_code == 1
        report = json.loads(result.stdout)
        assert report["ok"] is False
        assert len(report["unreachable"]) == 1

    def test_invalid_definition(self, runner, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text(json.dumps({"code": "broken", "name": "Broken", "nodes": []}), encoding="utf-8")

        result = runner.invoke(cli, ["validate", str(path)])

        assert result.exit_code == 1
        assert "Invalid workflow definition" in result.output


class TestRunCommand:
    """run 命令测试"""

    def test_run_to_completion(self, runner):
        result = runner.invoke(cli, [
            "run", str(EXAMPLES / "order_followup.yaml"),
            "--payload", PAYLOAD,
            "--key", "order-42"
        ])

        assert result.exit_code == 0, result.output
        output = json.loads(result.stdout)
        assert output["status"] == "completed"
        assert output["attempts"] == 1
        assert [step["success"] for step in output["steps"]] == [True, True, True]

    def test_payload_rejected_by_schema(self, runner):
        result = runner.invoke(cli, [
            "run", str(EXAMPLES / "order_followup.yaml"),
            "--payload", '{"order_id": "42"}'
        ])

        assert result.exit_code == 1
        assert "Error" in result.output

    def test_missing_payload_value_fails_instance(self, runner, tmp_path):
        path = tmp_path / "sms.yaml"
        path.write_text(
            "workflow:\n"
            "  code: sms_only\n"
            "  name: SMS only\n"
            "  nodes:\n"
            "    - key: text\n"
            "      type: sms\n"
            "      sms_to_template: \"{{ payload.phone }}\"\n"
            "      sms_body_template: hello\n",
            encoding="utf-8"
        )

        result = runner.invoke(cli, ["run", str(path), "--payload", "{}"])

        assert result.exit_code == 0, result.output
        output = json.loads(result.stdout)
        assert output["status"] == "failed"
        assert "payload.phone" in output["last_error"]


class TestDispatchCommand:
    """dispatch 命令测试"""

    def test_dispatch_once_on_empty_database(self, runner, tmp_path, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")

        result = runner.invoke(cli, ["dispatch", "--once"])

        assert result.exit_code == 0, result.output
        assert "Processed 0 trigger instance(s)" in result.stdout
