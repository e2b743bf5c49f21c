"""Pipeline execution infrastructure."""
from .structures import (
    PipelineRun,
    PipelineStageExecution,
    PipelineSummary,
    RunStatus,
    SourceFile,
    Stage,
    StageStatus,
)
from .renderer import RichRenderer
from .ui import console, print_header, print_run_panel, print_warning

__all__ = [
    "PipelineRun",
    "PipelineStageExecution",
    "PipelineSummary",
    "RunStatus",
    "SourceFile",
    "Stage",
    "StageStatus",
    "RichRenderer",
    "console", "print_header", "print_run_panel", "print_warning",
]
