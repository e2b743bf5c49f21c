"""Tests for the result sinks."""

import json

import pytest

from auditpipe.categorizer import categorize_all
from auditpipe.findings import FindingSource, RawFinding, SecurityPayload
from auditpipe.normalizer import ResultNormalizer
from auditpipe.pipeline.structures import PipelineStageExecution, Stage, StageStatus, utcnow
from auditpipe.rules.base import Severity
from auditpipe.sink import InMemoryResultSink, ResultSink, SqliteResultSink


def _results(execution_id):
    findings = [
        RawFinding(
            source=FindingSource.SECURITY,
            payload=SecurityPayload(
                file_path=path,
                line_start=line,
                line_end=line,
                rule_id=rule_id,
                category="security/injection",
                severity=severity,
                message="m",
                vulnerability_type="code_injection",
            ),
        )
        for path, line, rule_id, severity in [
            ("b.py", 1, "SEC040", Severity.MEDIUM),
            ("a.py", 5, "SEC030", Severity.CRITICAL),
            ("a.py", 2, "SEC040", Severity.MEDIUM),
        ]
    ]
    return ResultNormalizer(execution_id).normalize(categorize_all(findings))


@pytest.fixture
def sqlite_sink(tmp_path):
    sink = SqliteResultSink(tmp_path / "nested" / "results.db")
    yield sink
    sink.close()


def test_sinks_satisfy_protocol(sqlite_sink):
    assert isinstance(InMemoryResultSink(), ResultSink)
    assert isinstance(sqlite_sink, ResultSink)


class TestSqliteSink:
    def test_stage_upsert(self, sqlite_sink):
        record = PipelineStageExecution(execute_id="exec_1", stage=Stage.AST_PARSE)
        sqlite_sink.write_stage(record)
        record.transition(StageStatus.RUNNING)
        record.started_at = utcnow()
        sqlite_sink.write_stage(record)

        rows = sqlite_sink.fetch_stages("exec_1")
        assert len(rows) == 1
        assert rows[0]["status"] == "running"
        assert rows[0]["started_at"] == record.started_at.isoformat()

    def test_stages_fetched_in_pipeline_order(self, sqlite_sink):
        for stage in (Stage.NORMALIZE, Stage.SOURCE_COLLECT, Stage.RULE_PARSE):
            sqlite_sink.write_stage(PipelineStageExecution(execute_id="exec_1", stage=stage))
        assert [r["stage"] for r in sqlite_sink.fetch_stages("exec_1")] == [
            "SOURCE_COLLECT",
            "RULE_PARSE",
            "NORMALIZE",
        ]

    def test_results_round_trip_in_report_order(self, sqlite_sink):
        results = _results("exec_1")
        sqlite_sink.write_results("exec_1", list(reversed(results)))
        rows = sqlite_sink.fetch_results("exec_1")
        assert [(r["severity"], r["file_path"], r["line_start"]) for r in rows] == [
            ("CRITICAL", "a.py", 5),
            ("MEDIUM", "a.py", 2),
            ("MEDIUM", "b.py", 1),
        ]
        assert rows[0]["deterministic"] == 1
        assert json.loads(rows[0]["raw_json"])["source"] == "security"

    def test_rewriting_results_does_not_duplicate(self, sqlite_sink):
        results = _results("exec_1")
        sqlite_sink.write_results("exec_1", results)
        sqlite_sink.write_results("exec_1", results)
        assert len(sqlite_sink.fetch_results("exec_1")) == 3

    def test_executions_listed(self, sqlite_sink):
        for execution_id in ("exec_b", "exec_a"):
            sqlite_sink.write_stage(PipelineStageExecution(execute_id=execution_id, stage=Stage.SOURCE_COLLECT))
        assert sqlite_sink.fetch_executions() == ["exec_a", "exec_b"]
        assert sqlite_sink.fetch_results("exec_a") == []

    def test_data_survives_reopen(self, tmp_path):
        path = tmp_path / "results.db"
        with SqliteResultSink(path) as sink:
            sink.write_results("exec_1", _results("exec_1"))
        with SqliteResultSink(path) as sink:
            assert len(sink.fetch_results("exec_1")) == 3


class TestInMemorySink:
    def test_stage_records_latest_in_order(self):
        sink = InMemoryResultSink()
        collect = PipelineStageExecution(execute_id="exec_1", stage=Stage.SOURCE_COLLECT)
        detect = PipelineStageExecution(execute_id="exec_1", stage=Stage.LANGUAGE_DETECT)
        sink.write_stage(detect)
        sink.write_stage(collect)
        collect.transition(StageStatus.RUNNING)
        sink.write_stage(collect)

        records = sink.stage_records("exec_1")
        assert [(r["stage"], r["status"]) for r in records] == [
            ("SOURCE_COLLECT", "running"),
            ("LANGUAGE_DETECT", "pending"),
        ]
        assert len(sink.stage_writes) == 3
        assert sink.stage_records("other") == []

    def test_results_replaced_per_execution(self):
        sink = InMemoryResultSink()
        results = _results("exec_1")
        sink.write_results("exec_1", results)
        sink.write_results("exec_1", results[:1])
        assert sink.results["exec_1"] == results[:1]
