"""Shared Rich console and the styles of pipeline output.

Stage statuses and severities are rendered the same way by the live stage
table, the `status` command and the end-of-run panel, so their styles live
here next to the one Console instance commands print through.
"""

import sys

from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from rich.theme import Theme

from .structures import PipelineRun, RunStatus

AUDITPIPE_THEME = Theme({
    "info": "bold cyan",
    "warning": "bold yellow",
    "error": "bold red",
    "success": "bold green",
    "critical": "bold red",
    "high": "bold yellow",
    "medium": "bold blue",
    "low": "cyan",
    "severity.info": "dim white",
    "stage": "bold magenta",
    "path": "bold cyan",
    "dim": "dim white",
})

# Stage status -> theme style, shared by the live table and the status command
STATUS_STYLES = {
    "pending": "dim",
    "running": "info",
    "completed": "success",
    "failed": "error",
    "skipped": "warning",
}

console = Console(theme=AUDITPIPE_THEME, force_terminal=sys.stdout.isatty())


def severity_style(severity: str) -> str:
    name = severity.lower()
    return "severity.info" if name == "info" else name


def print_header(title: str) -> None:
    console.rule(f"[bold]{title}[/bold]")


def print_warning(msg: str) -> None:
    console.print(f"[warning]WARNING:[/warning] {msg}")


def run_outcome_style(run: PipelineRun) -> str:
    """Border style of the end-of-run panel: worst severity found, or the failure."""
    if run.status is not RunStatus.COMPLETED:
        return "error"
    by_severity = run.summary.issues_by_severity
    for name in ("CRITICAL", "HIGH", "MEDIUM", "LOW"):
        if by_severity.get(name):
            return severity_style(name)
    return "success"


def print_run_panel(run: PipelineRun) -> None:
    """Print the one-panel outcome of a run: status, issue counts by severity, timing."""
    summary = run.summary
    body = Text.assemble((f"{run.status.value}", "bold"), f"  execution {run.execution_id}\n")
    if run.status is RunStatus.COMPLETED:
        body.append(f"{summary.total_issues} issues")
        counts = [(name, count) for name, count in summary.issues_by_severity.items() if count]
        for i, (name, count) in enumerate(counts):
            body.append(": " if i == 0 else ", ")
            body.append(f"{count} {name.lower()}", style=severity_style(name))
        body.append("\n")
    else:
        body.append(f"{run.error or 'pipeline did not complete'}\n", style="error")
    body.append(
        f"{summary.analyzed_files}/{summary.total_files} files analyzed in {summary.duration_ms / 1000:.1f}s",
        style="dim",
    )
    console.print(Panel(body, border_style=run_outcome_style(run), expand=False))
