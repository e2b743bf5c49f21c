"""CLI tests using click's test runner."""

import json
import textwrap

import pytest
from click.testing import CliRunner

from auditpipe import __version__
from auditpipe.cli import cli


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "proj"
    (root / "src").mkdir(parents=True)
    (root / "src" / "app.py").write_text(
        textwrap.dedent("""\
            def handler(user_input):
                # TODO: validate input
                return eval(user_input)
            """),
        encoding="utf-8",
    )
    (root / "src" / "util.py").write_text("def helper(value):\n    return value * 2\n", encoding="utf-8")
    (root / "node_modules" / "lib").mkdir(parents=True)
    (root / "node_modules" / "lib" / "index.js").write_text("eval(x)\n", encoding="utf-8")
    return root


@pytest.fixture
def finished_run(runner, project, tmp_path):
    """A stored run: (db path, report dict)."""
    db = tmp_path / "results.db"
    report = tmp_path / "report.json"
    result = runner.invoke(
        cli,
        ["run", "--root", str(project), "--db", str(db), "--quiet", "--output-json", str(report)],
    )
    assert result.exit_code == 2, result.output
    return db, json.loads(report.read_text(encoding="utf-8"))


def test_help_lists_command_categories(runner):
    result = runner.invoke(cli, ["-h"])
    assert result.exit_code == 0
    assert "ANALYSIS" in result.output
    assert "INSPECTION" in result.output


def test_version(runner):
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


class TestRun:
    def test_critical_finding_sets_exit_code(self, finished_run):
        _, report = finished_run
        assert report["status"] == "COMPLETED"
        assert report["projectId"] == "proj"
        assert [s["stage"] for s in report["stages"]][0] == "SOURCE_COLLECT"
        rule_ids = {r["ruleId"] for r in report["results"]}
        assert "SEC030" in rule_ids
        # vendor directories are never collected
        assert all(not r["filePath"].startswith("node_modules") for r in report["results"])
        assert report["results"][0]["severity"] == "CRITICAL"

    def test_clean_project_exits_zero(self, runner, tmp_path):
        root = tmp_path / "clean"
        root.mkdir()
        (root / "ok.py").write_text("def add(a, b):\n    return a + b\n", encoding="utf-8")
        result = runner.invoke(cli, ["run", "--root", str(root), "--db", str(tmp_path / "c.db"), "--quiet"])
        assert result.exit_code == 0, result.output

    def test_missing_root(self, runner, tmp_path):
        result = runner.invoke(cli, ["run", "--root", str(tmp_path / "absent"), "--db", str(tmp_path / "x.db"), "--quiet"])
        assert result.exit_code == 2
        assert "does not exist" in result.output

    def test_custom_ruleset(self, runner, project, tmp_path):
        ruleset = tmp_path / "team.yaml"
        ruleset.write_text(
            textwrap.dedent("""\
                rules:
                  - id: TEAM001
                    category: quality/maintainability
                    severity: high
                    pattern: helper
                    message: helper is deprecated
                """),
            encoding="utf-8",
        )
        report = tmp_path / "report.json"
        result = runner.invoke(
            cli,
            ["run", "--root", str(project), "--db", str(tmp_path / "r.db"), "--ruleset", str(ruleset),
             "--quiet", "--output-json", str(report)],
        )
        assert result.exit_code == 2, result.output
        data = json.loads(report.read_text(encoding="utf-8"))
        assert "TEAM001" in {r["ruleId"] for r in data["results"]}


class TestErrorHandling:
    def test_bad_ruleset_is_a_one_line_error(self, runner, project, tmp_path):
        ruleset = tmp_path / "bad.yaml"
        ruleset.write_text("rules:\n  - id: BAD1\n    category: quality/general\n    pattern: '(unclosed'\n", encoding="utf-8")
        result = runner.invoke(
            cli, ["run", "--root", str(project), "--db", str(tmp_path / "b.db"), "--ruleset", str(ruleset), "--quiet"]
        )
        assert result.exit_code == 1
        assert "ConfigError" in result.output
        assert "invalid regex" in result.output
        assert not (project / ".pf" / "error.log").exists()

    def test_crash_appends_record_under_root(self, runner, tmp_path, monkeypatch):
        def explode(root):
            raise RuntimeError("config store offline")

        monkeypatch.setattr("auditpipe.commands.rules.load_runtime_config", explode)
        result = runner.invoke(cli, ["rules", "--root", str(tmp_path)])

        assert result.exit_code == 1
        assert "Unexpected RuntimeError: config store offline" in result.output
        lines = (tmp_path / ".pf" / "error.log").read_text(encoding="utf-8").splitlines()
        record = json.loads(lines[-1])
        assert record["command"] == "rules_command"
        assert record["errorType"] == "RuntimeError"
        assert record["params"]["root"] == str(tmp_path)
        assert "config store offline" in record["traceback"][-1]


class TestRules:
    def test_lists_registry(self, runner, tmp_path):
        result = runner.invoke(cli, ["rules", "--root", str(tmp_path)])
        assert result.exit_code == 0
        assert "RULE REGISTRY (version" in result.output
        assert "QUA003" in result.output

    def test_no_match(self, runner, tmp_path):
        result = runner.invoke(cli, ["rules", "--root", str(tmp_path), "--category", "security"])
        assert result.exit_code == 0
        assert "No rules match." in result.output

    def test_disabled_filter(self, runner, tmp_path):
        result = runner.invoke(cli, ["rules", "--root", str(tmp_path), "--disabled"])
        assert "STY004" in result.output
        assert "QUA003" not in result.output


class TestStatus:
    def test_lists_executions(self, runner, finished_run):
        db, report = finished_run
        result = runner.invoke(cli, ["status", "--db", str(db)])
        assert result.exit_code == 0
        assert "EXECUTIONS" in result.output
        assert report["executionId"] in result.output

    def test_execution_with_results(self, runner, finished_run):
        db, report = finished_run
        result = runner.invoke(cli, ["status", report["executionId"], "--db", str(db), "--results"])
        assert result.exit_code == 0, result.output
        assert f"EXECUTION {report['executionId']}" in result.output
        assert "SEC030" in result.output

    def test_unknown_execution(self, runner, finished_run):
        db, _ = finished_run
        result = runner.invoke(cli, ["status", "exec_missing", "--db", str(db)])
        assert result.exit_code == 1
        assert "Unknown execution" in result.output

    def test_missing_database(self, runner, tmp_path):
        result = runner.invoke(cli, ["status", "--root", str(tmp_path)])
        assert result.exit_code == 1
        assert "No result database" in result.output
