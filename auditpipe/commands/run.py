"""Run the analysis pipeline over a directory."""

import asyncio
import json
import sys
from pathlib import Path

import click

from auditpipe.ai_client import HttpCompletionService
from auditpipe.collector import FilesystemCollector
from auditpipe.config_runtime import load_runtime_config
from auditpipe.orchestrator import PipelineConfig, PipelineOrchestrator
from auditpipe.pipeline.renderer import RichRenderer
from auditpipe.pipeline.structures import PipelineRun, RunStatus
from auditpipe.pipeline.ui import print_run_panel, print_warning
from auditpipe.rules.base import Severity
from auditpipe.rules.defaults import default_rules
from auditpipe.rules.engine import RuleEngine
from auditpipe.scheduler import SchedulerConfig
from auditpipe.sink import SqliteResultSink
from auditpipe.utils.error_handler import handle_exceptions
from auditpipe.utils.exit_codes import ExitCodes
from auditpipe.utils.logging import configure_file_logging, logger


def exit_code_for(run: PipelineRun) -> int:
    if run.status is not RunStatus.COMPLETED:
        return ExitCodes.PIPELINE_FAILED
    severities = {r.severity for r in run.results}
    if Severity.CRITICAL in severities:
        return ExitCodes.CRITICAL_SEVERITY
    if Severity.HIGH in severities:
        return ExitCodes.HIGH_SEVERITY
    return ExitCodes.SUCCESS


def build_rule_engine(pipeline_config: PipelineConfig, ruleset: Path | None) -> RuleEngine:
    engine = RuleEngine(
        default_rules(
            complexity_threshold=pipeline_config.complexity_threshold,
            max_function_lines=pipeline_config.max_function_lines,
            max_nesting=pipeline_config.max_nesting,
            max_params=pipeline_config.max_params,
        )
    )
    if ruleset:
        loaded = engine.load_ruleset_file(ruleset)
        logger.info(f"Loaded {len(loaded)} rules from {ruleset} (registry version {engine.get_version()})")
    return engine


def run_report(run: PipelineRun) -> dict:
    return {
        "executionId": run.execution_id,
        "projectId": run.project_id,
        "status": run.status.value,
        "error": run.error,
        "summary": run.summary.to_dict(),
        "stages": [record.to_dict() for record in run.stage_list()],
        "results": [result.to_wire() for result in run.results],
    }


async def _run_pipeline(orchestrator: PipelineOrchestrator, project_id: str) -> PipelineRun:
    execution_id = orchestrator.start_pipeline(project_id)
    try:
        return await orchestrator.wait(execution_id)
    except asyncio.CancelledError:
        orchestrator.cancel_pipeline(execution_id)
        raise


@click.command()
@handle_exceptions
@click.option("--root", default=".", type=click.Path(exists=True, file_okay=False, path_type=Path), help="Root directory to analyze")
@click.option("--project-id", default=None, help="Project identifier (default: root directory name)")
@click.option("--db", type=click.Path(dir_okay=False, path_type=Path), default=None, help="SQLite result database")
@click.option("--with-ai", is_flag=True, help="Enable the AI_ENHANCE stage (needs ai.base_url)")
@click.option("--max-concurrency", type=int, default=None, help="Concurrent agent tasks")
@click.option("--ruleset", type=click.Path(dir_okay=False, path_type=Path), default=None, help="YAML rule set to load")
@click.option("--output-json", type=click.Path(dir_okay=False, path_type=Path), default=None, help="Write the run report as JSON")
@click.option("--quiet", is_flag=True, help="Minimal output")
def run(root, project_id, db, with_ai, max_concurrency, ruleset, output_json, quiet):
    """Run the eight-stage analysis pipeline over a directory.

    Stages:
      SOURCE_COLLECT, LANGUAGE_DETECT, AST_PARSE        (sequential)
      STATIC_ANALYZE || RULE_PARSE                     (parallel, scheduled)
      CATEGORIZE, NORMALIZE, AI_ENHANCE                (sequential)

    Examples:
      auditpipe run --root ./src
      auditpipe run --ruleset rules.yaml --output-json report.json
      auditpipe run --with-ai --max-concurrency 8

    Output Files:
      .pf/results.db              # Stage records and normalized results
      .pf/pipeline.log            # Stage transitions
      .pf/auditpipe.log           # Debug log

    Exit Codes:
      0 = No high or critical findings
      1 = High severity findings
      2 = Critical findings
      3 = Pipeline failed or cancelled"""
    root = root.resolve()
    cfg = load_runtime_config(str(root))
    pf_dir = root / ".pf"

    scheduler_config = SchedulerConfig.from_runtime(cfg, max_concurrency=max_concurrency)
    pipeline_config = PipelineConfig.from_runtime(cfg, ai_enabled=True if with_ai else None)
    ruleset = ruleset or (Path(cfg["paths"]["ruleset"]) if cfg["paths"]["ruleset"] else None)
    engine = build_rule_engine(pipeline_config, ruleset)

    ai_service = None
    if pipeline_config.ai_enabled:
        if cfg["ai"]["base_url"]:
            ai_service = HttpCompletionService.from_runtime(cfg)
        else:
            print_warning("AI enabled but ai.base_url is not configured; AI_ENHANCE will be skipped")

    db_path = db or root / cfg["paths"]["db"]
    log_handler = configure_file_logging(pf_dir)
    renderer = RichRenderer(quiet=quiet, log_file=pf_dir / "pipeline.log")

    with SqliteResultSink(db_path) as sink:
        orchestrator = PipelineOrchestrator(
            FilesystemCollector(root, max_file_size=pipeline_config.max_file_size),
            sink,
            scheduler_config=scheduler_config,
            pipeline_config=pipeline_config,
            rule_engine=engine,
            ai_service=ai_service,
            observers=[renderer],
        )
        renderer.start()
        try:
            result = asyncio.run(_run_pipeline(orchestrator, project_id or root.name))
        except KeyboardInterrupt:
            click.echo("\n[INFO] Pipeline stopped by user.", err=True)
            sys.exit(130)
        finally:
            renderer.stop()
            logger.remove(log_handler)

    renderer.print_summary(result)
    if output_json:
        output_json.parent.mkdir(parents=True, exist_ok=True)
        with open(output_json, "w", encoding="utf-8") as f:
            json.dump(run_report(result), f, indent=2)
        logger.info(f"Report written to {output_json}")
    if not quiet:
        print_run_panel(result)

    sys.exit(exit_code_for(result))
