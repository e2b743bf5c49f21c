"""Result sinks: where stage progress and normalized results are persisted.

The pipeline only writes through a sink. The fetch_* helpers on the SQLite
sink exist for the CLI, which reads stored runs back.
"""

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from auditpipe.findings import NormalizedResult
from auditpipe.pipeline.structures import PipelineStageExecution, STAGE_ORDER

SCHEMA = [
    """CREATE TABLE IF NOT EXISTS stage_executions (
        execution_id TEXT NOT NULL,
        stage TEXT NOT NULL,
        status TEXT NOT NULL,
        progress INTEGER NOT NULL DEFAULT 0,
        message TEXT,
        error TEXT,
        started_at TEXT,
        completed_at TEXT,
        PRIMARY KEY (execution_id, stage)
    )""",
    """CREATE TABLE IF NOT EXISTS normalized_results (
        execution_id TEXT NOT NULL,
        id TEXT NOT NULL,
        file_path TEXT NOT NULL,
        line_start INTEGER NOT NULL,
        line_end INTEGER NOT NULL,
        language TEXT,
        main_category TEXT NOT NULL,
        sub_category TEXT NOT NULL,
        rule_id TEXT,
        severity TEXT NOT NULL,
        message TEXT NOT NULL,
        suggestion TEXT,
        explanation TEXT,
        confidence REAL NOT NULL,
        deterministic INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        raw_json TEXT,
        PRIMARY KEY (execution_id, id)
    )""",
    "CREATE INDEX IF NOT EXISTS idx_results_severity ON normalized_results (execution_id, severity)",
]


@runtime_checkable
class ResultSink(Protocol):
    def write_stage(self, record: PipelineStageExecution) -> None: ...

    def write_results(self, execution_id: str, results: list[NormalizedResult]) -> None: ...


class InMemoryResultSink:
    """Keeps everything in dicts. Also records every stage write in order."""

    def __init__(self):
        self._lock = threading.Lock()
        self.stages: dict[tuple[str, str], dict[str, Any]] = {}
        self.stage_writes: list[dict[str, Any]] = []
        self.results: dict[str, list[NormalizedResult]] = {}

    def write_stage(self, record: PipelineStageExecution) -> None:
        snapshot = record.to_dict()
        with self._lock:
            self.stages[(record.execute_id, record.stage.value)] = snapshot
            self.stage_writes.append(snapshot)

    def write_results(self, execution_id: str, results: list[NormalizedResult]) -> None:
        with self._lock:
            self.results[execution_id] = list(results)

    def stage_records(self, execution_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [
                self.stages[(execution_id, stage.value)]
                for stage in STAGE_ORDER
                if (execution_id, stage.value) in self.stages
            ]


class SqliteResultSink:
    """SQLite-backed sink. Upserts by (execution_id, stage) and (execution_id, id)."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.create_schema()

    def create_schema(self) -> None:
        with self._lock:
            cursor = self.conn.cursor()
            for statement in SCHEMA:
                cursor.execute(statement)
            self.conn.commit()

    def write_stage(self, record: PipelineStageExecution) -> None:
        with self._lock:
            self.conn.execute(
                """INSERT INTO stage_executions
                       (execution_id, stage, status, progress, message, error, started_at, completed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (execution_id, stage) DO UPDATE SET
                       status = excluded.status,
                       progress = excluded.progress,
                       message = excluded.message,
                       error = excluded.error,
                       started_at = excluded.started_at,
                       completed_at = excluded.completed_at""",
                (
                    record.execute_id,
                    record.stage.value,
                    record.status.value,
                    record.progress,
                    record.message,
                    record.error,
                    record.started_at.isoformat() if record.started_at else None,
                    record.completed_at.isoformat() if record.completed_at else None,
                ),
            )
            self.conn.commit()

    def write_results(self, execution_id: str, results: list[NormalizedResult]) -> None:
        rows = [
            (
                execution_id,
                r.id,
                r.file_path,
                r.line_start,
                r.line_end,
                r.language,
                r.main_category.value,
                r.sub_category.value,
                r.rule_id,
                r.severity.value,
                r.message,
                r.suggestion,
                r.explanation,
                r.confidence,
                int(r.deterministic),
                r.created_at.isoformat(),
                json.dumps(r.raw_result, default=str),
            )
            for r in results
        ]
        with self._lock:
            self.conn.executemany(
                """INSERT OR REPLACE INTO normalized_results
                       (execution_id, id, file_path, line_start, line_end, language, main_category,
                        sub_category, rule_id, severity, message, suggestion, explanation,
                        confidence, deterministic, created_at, raw_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )
            self.conn.commit()

    def fetch_stages(self, execution_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM stage_executions WHERE execution_id = ?", (execution_id,)
            ).fetchall()
        order = {stage.value: i for i, stage in enumerate(STAGE_ORDER)}
        return sorted((dict(row) for row in rows), key=lambda row: order.get(row["stage"], len(order)))

    def fetch_results(self, execution_id: str) -> list[dict[str, Any]]:
        """Stored results in report order (severity, path, line)."""
        with self._lock:
            rows = self.conn.execute(
                """SELECT * FROM normalized_results WHERE execution_id = ?
                   ORDER BY CASE severity
                       WHEN 'CRITICAL' THEN 0 WHEN 'HIGH' THEN 1 WHEN 'MEDIUM' THEN 2
                       WHEN 'LOW' THEN 3 ELSE 4 END,
                   file_path, line_start, rule_id, id""",
                (execution_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def fetch_executions(self) -> list[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT DISTINCT execution_id FROM stage_executions ORDER BY execution_id"
            ).fetchall()
        return [row["execution_id"] for row in rows]

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def __enter__(self) -> "SqliteResultSink":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
