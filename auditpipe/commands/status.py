"""Show the stored stage records (and results) of an execution."""

from pathlib import Path

import click
from rich.table import Table

from auditpipe.config_runtime import load_runtime_config
from auditpipe.pipeline.ui import STATUS_STYLES, console, print_header, severity_style
from auditpipe.sink import SqliteResultSink
from auditpipe.utils.error_handler import handle_exceptions


@click.command("status")
@click.argument("execution_id", required=False)
@click.option("--db", type=click.Path(dir_okay=False, path_type=Path), default=None, help="SQLite result database")
@click.option("--root", default=".", type=click.Path(file_okay=False, path_type=Path), help="Project root (locates .pf/results.db)")
@click.option("--results", "show_results", is_flag=True, help="Also list the stored normalized results")
@handle_exceptions
def status(execution_id, db, root, show_results):
    """Print the stored stage records of an execution.

    Without EXECUTION_ID, lists the executions recorded in the database.

    Examples:
      auditpipe status
      auditpipe status exec_3f2a9c1b7d4e --results"""
    cfg = load_runtime_config(str(root))
    db_path = db or Path(root) / cfg["paths"]["db"]
    if not db_path.exists():
        raise click.ClickException(f"No result database at {db_path}. Run `auditpipe run` first.")

    with SqliteResultSink(db_path) as sink:
        if execution_id is None:
            executions = sink.fetch_executions()
            print_header("EXECUTIONS")
            for known in executions:
                console.print(known, highlight=False)
            if not executions:
                console.print("[dim]No executions recorded.[/dim]")
            return

        stages = sink.fetch_stages(execution_id)
        if not stages:
            raise click.ClickException(f"Unknown execution: {execution_id}")
        results = sink.fetch_results(execution_id) if show_results else []

    print_header(f"EXECUTION {execution_id}")
    table = Table(expand=True)
    table.add_column("Stage", style="cyan", no_wrap=True)
    table.add_column("Status", width=10)
    table.add_column("Progress", justify="right", width=8)
    table.add_column("Started")
    table.add_column("Completed")
    table.add_column("Detail", overflow="fold")
    for row in stages:
        style = STATUS_STYLES.get(row["status"], "dim")
        table.add_row(
            row["stage"],
            f"[{style}]{row['status']}[/{style}]",
            f"{row['progress']}%",
            row["started_at"] or "-",
            row["completed_at"] or "-",
            row["error"] or row["message"] or "",
        )
    console.print(table)

    if show_results:
        table = Table(title=f"{len(results)} results", expand=True)
        table.add_column("Severity", width=9)
        table.add_column("Location", style="path", no_wrap=True)
        table.add_column("Category")
        table.add_column("Rule", width=8)
        table.add_column("Message", overflow="fold")
        for row in results:
            style = severity_style(row["severity"])
            table.add_row(
                f"[{style}]{row['severity']}[/{style}]",
                f"{row['file_path']}:{row['line_start']}",
                f"{row['main_category']}/{row['sub_category']}",
                row["rule_id"] or "-",
                row["message"],
            )
        console.print(table)
