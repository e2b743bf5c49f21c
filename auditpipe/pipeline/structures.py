"""Data contracts for pipeline execution."""

import hashlib
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from auditpipe.findings import NormalizedResult, RawFinding


class Stage(Enum):
    """The eight pipeline stages, in execution order."""

    SOURCE_COLLECT = "SOURCE_COLLECT"
    LANGUAGE_DETECT = "LANGUAGE_DETECT"
    AST_PARSE = "AST_PARSE"
    STATIC_ANALYZE = "STATIC_ANALYZE"
    RULE_PARSE = "RULE_PARSE"
    CATEGORIZE = "CATEGORIZE"
    NORMALIZE = "NORMALIZE"
    AI_ENHANCE = "AI_ENHANCE"


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)

# Stages that run concurrently through the scheduler
PARALLEL_STAGES: tuple[Stage, ...] = (Stage.STATIC_ANALYZE, Stage.RULE_PARSE)

# Stages that depend on the parallel pair
DEPENDENT_STAGES: tuple[Stage, ...] = (Stage.CATEGORIZE, Stage.NORMALIZE, Stage.AI_ENHANCE)


class StageStatus(Enum):
    """Status of a pipeline stage."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (StageStatus.COMPLETED, StageStatus.FAILED, StageStatus.SKIPPED)


_ALLOWED_TRANSITIONS = {
    StageStatus.PENDING: {StageStatus.RUNNING, StageStatus.SKIPPED},
    StageStatus.RUNNING: {StageStatus.COMPLETED, StageStatus.FAILED, StageStatus.SKIPPED},
    StageStatus.COMPLETED: set(),
    StageStatus.FAILED: set(),
    StageStatus.SKIPPED: set(),
}


class RunStatus(Enum):
    """Terminal (and in-flight) status of a whole pipeline run."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PipelineStageExecution:
    """Progress record of one stage within one run.

    Status only moves forward: pending -> running -> completed|failed|skipped,
    or pending -> skipped for stages that are never attempted.
    """

    execute_id: str
    stage: Stage
    status: StageStatus = StageStatus.PENDING
    progress: int = 0
    message: str = ""
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def transition(self, status: StageStatus) -> None:
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(
                f"{self.stage.value}: illegal transition {self.status.value} -> {status.value}"
            )
        self.status = status

    @property
    def duration_ms(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds() * 1000
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "executeId": self.execute_id,
            "stage": self.stage.value,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "error": self.error,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(frozen=True)
class SourceFile:
    """One file handed to the pipeline by a source collector."""

    path: str
    content: str

    @property
    def size(self) -> int:
        return len(self.content.encode("utf-8"))

    @property
    def extension(self) -> str:
        name = self.path.rsplit("/", 1)[-1]
        return "." + name.rsplit(".", 1)[-1].lower() if "." in name else ""

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.content.encode("utf-8")).hexdigest()


@dataclass
class PipelineSummary:
    """Aggregate numbers of a finished run."""

    total_files: int = 0
    analyzed_files: int = 0
    total_issues: int = 0
    issues_by_severity: dict[str, int] = field(default_factory=dict)
    issues_by_category: dict[str, int] = field(default_factory=dict)
    top_languages: list[dict[str, Any]] = field(default_factory=list)
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PipelineRun:
    """Everything the orchestrator knows about one execution."""

    execution_id: str
    project_id: str
    revision: str | None
    stages: dict[Stage, PipelineStageExecution]
    status: RunStatus = RunStatus.RUNNING
    results: list[NormalizedResult] = field(default_factory=list)
    partial_findings: dict[Stage, list[RawFinding]] = field(default_factory=dict)
    summary: PipelineSummary = field(default_factory=PipelineSummary)
    error: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def terminal(self) -> bool:
        return self.status is not RunStatus.RUNNING

    def stage_list(self) -> list[PipelineStageExecution]:
        return [self.stages[stage] for stage in STAGE_ORDER]
