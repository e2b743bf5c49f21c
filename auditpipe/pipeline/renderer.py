"""Rich-based live stage table for a running pipeline."""
import sys
import time
from pathlib import Path
from typing import TYPE_CHECKING, TextIO

from rich.console import Console, ConsoleOptions, RenderResult
from rich.live import Live
from rich.table import Table

from auditpipe.utils.logging import restore_stderr_sink, swap_to_rich_sink
from .structures import PARALLEL_STAGES, STAGE_ORDER, PipelineRun, StageStatus
from .ui import AUDITPIPE_THEME, STATUS_STYLES, severity_style

if TYPE_CHECKING:
    from auditpipe.events import StageEvent


class DynamicTable:
    """Wrapper that builds a fresh table on each Rich render cycle.

    Rich calls __rich_console__ on each refresh (4x/second), so elapsed
    times of running stages tick without explicit updates.
    """

    def __init__(self, renderer: "RichRenderer"):
        self.renderer = renderer

    def __rich_console__(self, console: Console, options: ConsoleOptions) -> RenderResult:
        yield self.renderer._build_live_table()


class RichRenderer:
    """Live stage dashboard. Registered on the orchestrator as an observer.

    TTY: a Live table redrawn in place, with log lines printed above it.
    Non-TTY: one line per stage transition.
    """

    MAX_ERROR_CHARS = 200

    def __init__(self, quiet: bool = False, log_file: Path | None = None):
        self.quiet = quiet
        self.log_file: TextIO | None = None
        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            self.log_file = open(log_file, 'a', encoding='utf-8', buffering=1)

        self.is_tty = sys.stdout.isatty()
        # Own console for Live display, but shared theme for consistency
        self.console = Console(theme=AUDITPIPE_THEME, force_terminal=self.is_tty)

        self._stages: dict[str, dict] = {
            stage.value: {'status': StageStatus.PENDING.value, 'progress': 0, 'message': ''}
            for stage in STAGE_ORDER
        }
        self._live: Live | None = None
        self._log_handler_id: int | None = None

    def _build_live_table(self) -> Table:
        table = Table(title="Pipeline Progress", expand=True)
        table.add_column("Stage", style="cyan", no_wrap=True)
        table.add_column("Status", width=10)
        table.add_column("Progress", justify="right", width=8)
        table.add_column("Time", justify="right", width=8)
        table.add_column("Detail", overflow="ellipsis")

        now = time.time()
        parallel = {stage.value for stage in PARALLEL_STAGES}
        for name, info in self._stages.items():
            status = info['status']
            if status == "running":
                time_str = f"{now - info.get('start_time', now):.1f}s"
            elif info.get('elapsed') is not None:
                time_str = f"{info['elapsed']:.1f}s"
            else:
                time_str = "-"
            label = f"{name} ||" if name in parallel else name
            style = STATUS_STYLES.get(status, "dim")
            table.add_row(
                label,
                f"[{style}]{status}[/{style}]",
                f"{info['progress']}%",
                time_str,
                info.get('error') or info['message'],
            )
        return table

    def _write(self, text: str, is_error: bool = False):
        """Central output handler."""
        if self.log_file:
            self.log_file.write(text + "\n")
            self.log_file.flush()

        if self.quiet and not is_error:
            return
        if self._live:
            # print above the table; the table stays at the bottom
            self._live.console.print(text, style="bold red" if is_error else None, markup=False)
        else:
            print(text, file=sys.stderr if is_error else sys.stdout, flush=True)

    def _log_sink(self, message):
        self._live.console.print(message.rstrip("\n"), markup=False, highlight=False)

    def start(self):
        """Start the live display (call before the pipeline starts)."""
        if self.is_tty and not self.quiet:
            self._live = Live(DynamicTable(self), refresh_per_second=4, console=self.console)
            self._live.__enter__()
            self._log_handler_id = swap_to_rich_sink(self._log_sink)

    def stop(self):
        """Stop the live display (call after the pipeline completes)."""
        if self._log_handler_id is not None:
            restore_stderr_sink(self._log_handler_id)
            self._log_handler_id = None
        if self._live:
            self._live.__exit__(None, None, None)
            self._live = None
        if self.log_file:
            self.log_file.close()
            self.log_file = None

    def __enter__(self) -> "RichRenderer":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()

    # PipelineObserver implementation

    def on_stage_event(self, event: "StageEvent") -> None:
        name = event.stage.value
        info = self._stages[name]
        previous = info['status']
        status = event.status.value
        info.update(status=status, progress=event.progress, message=event.message, error=event.error)

        if status == "running" and previous != "running":
            info['start_time'] = time.time()
            info['elapsed'] = None
            if not self._live:
                self._write(f"[START] {name}")
        elif event.status.terminal:
            start = info.get('start_time')
            info['elapsed'] = time.time() - start if start else None
            if status == "failed":
                error = event.error or event.message
                if len(error) > self.MAX_ERROR_CHARS:
                    error = error[:self.MAX_ERROR_CHARS] + "..."
                self._write(f"[FAILED] {name}: {error}", is_error=True)
            elif not self._live:
                tag = "OK" if status == "completed" else "SKIPPED"
                self._write(f"[{tag}] {name} {event.message}".rstrip())

    def on_run_complete(self, execution_id: str, status: str, error: str | None) -> None:
        self._write(f"[{status}] {execution_id}" + (f": {error}" if error else ""), is_error=bool(error))

    def print_summary(self, run: PipelineRun, limit: int = 20):
        """Final summary: counts per severity, then the top results."""
        summary = run.summary
        self._write(f"\n{'=' * 60}")
        self._write(
            f"{run.status.value}: {summary.total_issues} issues in "
            f"{summary.analyzed_files}/{summary.total_files} files ({summary.duration_ms:.0f} ms)"
        )
        self._write('=' * 60)
        if self.quiet or not run.results:
            return

        table = Table(title="Top Results", expand=True)
        table.add_column("Severity", width=9)
        table.add_column("Location", style="path", no_wrap=True)
        table.add_column("Rule", width=8)
        table.add_column("Message", overflow="fold")
        for result in run.results[:limit]:
            style = severity_style(result.severity.value)
            table.add_row(
                f"[{style}]{result.severity.value}[/{style}]",
                f"{result.file_path}:{result.line_start}",
                result.rule_id or "-",
                result.message,
            )
        self.console.print(table)
        if len(run.results) > limit:
            self._write(f"... {len(run.results) - limit} more, see `auditpipe status {run.execution_id}`")
