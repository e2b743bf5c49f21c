"""Pipeline orchestrator: drives one run through the eight stages.

SOURCE_COLLECT -> LANGUAGE_DETECT -> AST_PARSE -> {STATIC_ANALYZE, RULE_PARSE}
-> CATEGORIZE -> NORMALIZE -> AI_ENHANCE

The parallel pair is fanned out through a Scheduler owned by the run; the
orchestrator joins on both task sets before moving on. Stage records are only
ever mutated here, on the event loop, and every transition is written to the
sink and published on the run's EventBus.
"""

import asyncio
import fnmatch
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field, fields
from typing import Any

from auditpipe.agents import (
    AgentType,
    AIAgent,
    AIReviewItem,
    AnalysisUnit,
    AnalyzerAgent,
    ASTAgent,
    DependencyAgent,
    RuleAgent,
    SecurityAgent,
)
from auditpipe.ai_client import AICompletionService
from auditpipe.ast_parser import ASTParser
from auditpipe.categorizer import categorize_all
from auditpipe.collector import SourceCollector
from auditpipe.errors import ConfigError, StageAbortError, UnknownExecutionError, ValidationError
from auditpipe.events import EventBus, PipelineObserver, StageEvent
from auditpipe.findings import NormalizedResult, RawFinding
from auditpipe.language import LanguageDetector, compute_stats, is_excluded_path, is_manifest
from auditpipe.normalizer import ResultNormalizer, get_stats
from auditpipe.pipeline.structures import (
    DEPENDENT_STAGES,
    STAGE_ORDER,
    PipelineRun,
    PipelineStageExecution,
    PipelineSummary,
    RunStatus,
    SourceFile,
    Stage,
    StageStatus,
    utcnow,
)
from auditpipe.rules.defaults import default_rules
from auditpipe.rules.engine import RuleEngine
from auditpipe.scheduler import Scheduler, SchedulerConfig, TaskStatus
from auditpipe.sink import InMemoryResultSink, ResultSink
from auditpipe.utils.constants import DEFAULT_MAX_FILE_SIZE
from auditpipe.utils.logging import logger

NOT_ATTEMPTED = "not attempted"
SNIPPET_CONTEXT_LINES = 2


@dataclass(frozen=True)
class PipelineConfig:
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    exclude_patterns: tuple[str, ...] = ("node_modules/*", ".git/*", "dist/*", "*.min.js")
    batch_size: int = 25
    complexity_threshold: int = 15
    max_function_lines: int = 50
    max_file_lines: int = 300
    max_nesting: int = 4
    max_params: int = 5
    max_imports: int = 20
    ai_enabled: bool = False
    ai_batch_size: int = 10

    def __post_init__(self):
        for name in ("max_file_size", "batch_size", "ai_batch_size"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be >= 1, got {getattr(self, name)}")
        for name in ("complexity_threshold", "max_function_lines", "max_file_lines",
                     "max_nesting", "max_params", "max_imports"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0, got {getattr(self, name)}")

    @classmethod
    def from_runtime(cls, cfg: dict[str, Any], **overrides) -> "PipelineConfig":
        section = dict(cfg.get("pipeline", {}))
        section.update({k: v for k, v in overrides.items() if v is not None})
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in section.items() if k in known}
        if "exclude_patterns" in values:
            values["exclude_patterns"] = tuple(values["exclude_patterns"])
        return cls(**values)


@dataclass
class _RunContext:
    run: PipelineRun
    bus: EventBus
    scheduler: Scheduler
    task: asyncio.Task | None = None
    sources: dict[str, SourceFile] = field(default_factory=dict)
    languages: dict[str, str] = field(default_factory=dict)


def _batches(items: list, size: int) -> list[list]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class PipelineOrchestrator:
    """Runs analysis pipelines. Each run gets its own Scheduler.

    All public methods must be called from the event loop the runs execute on.
    """

    def __init__(
        self,
        collector: SourceCollector,
        sink: ResultSink | None = None,
        *,
        scheduler_config: SchedulerConfig | None = None,
        pipeline_config: PipelineConfig | None = None,
        rule_engine: RuleEngine | None = None,
        ai_service: AICompletionService | None = None,
        agents: Iterable[AnalyzerAgent] = (),
        observers: Iterable[PipelineObserver] = (),
    ):
        self.collector = collector
        self.sink = sink if sink is not None else InMemoryResultSink()
        self.scheduler_config = scheduler_config or SchedulerConfig()
        self.config = pipeline_config or PipelineConfig()
        self.rule_engine = rule_engine or RuleEngine(
            default_rules(
                complexity_threshold=self.config.complexity_threshold,
                max_function_lines=self.config.max_function_lines,
                max_nesting=self.config.max_nesting,
                max_params=self.config.max_params,
            )
        )
        self.ai_service = ai_service
        self.agent_overrides = {AgentType.parse(a.agent_type): a for a in agents}
        self.observers = list(observers)
        self.detector = LanguageDetector()
        self.parser = ASTParser()
        self._runs: dict[str, _RunContext] = {}

    # ------------------------------------------------------------------
    # public surface
    # ------------------------------------------------------------------

    def build_agents(self) -> list[AnalyzerAgent]:
        agents: dict[AgentType, AnalyzerAgent] = {
            AgentType.AST: ASTAgent(
                complexity_threshold=self.config.complexity_threshold,
                max_function_lines=self.config.max_function_lines,
                max_file_lines=self.config.max_file_lines,
                max_nesting=self.config.max_nesting,
                max_params=self.config.max_params,
                parser=self.parser,
            ),
            AgentType.RULE: RuleAgent(self.rule_engine),
            AgentType.SECURITY: SecurityAgent(),
            AgentType.DEPENDENCY: DependencyAgent(max_imports=self.config.max_imports, parser=self.parser),
        }
        if self.ai_service is not None:
            agents[AgentType.AI] = AIAgent(self.ai_service)
        agents.update(self.agent_overrides)
        return list(agents.values())

    def start_pipeline(self, project_id: str, revision: str | None = None, execution_id: str | None = None) -> str:
        """Create a run and start it in the background. Returns its execution id."""
        loop = asyncio.get_running_loop()
        execution_id = execution_id or f"exec_{uuid.uuid4().hex[:12]}"
        if execution_id in self._runs:
            raise ConfigError(f"Execution id already in use: {execution_id}")

        run = PipelineRun(
            execution_id=execution_id,
            project_id=project_id,
            revision=revision,
            stages={stage: PipelineStageExecution(execute_id=execution_id, stage=stage) for stage in STAGE_ORDER},
        )
        ctx = _RunContext(
            run=run,
            bus=EventBus(self.observers),
            scheduler=Scheduler(self.scheduler_config, agents=self.build_agents()),
        )
        self._runs[execution_id] = ctx
        for record in run.stage_list():
            self._emit(ctx, record)
        ctx.task = loop.create_task(self._execute(ctx), name=f"pipeline-{execution_id}")
        logger.bind(execution_id=execution_id).info(f"Pipeline started for project {project_id}")
        return execution_id

    async def run_pipeline(self, project_id: str, revision: str | None = None) -> PipelineRun:
        """Start a run and wait for it to finish."""
        return await self.wait(self.start_pipeline(project_id, revision))

    async def wait(self, execution_id: str) -> PipelineRun:
        ctx = self._context(execution_id)
        if ctx.task is not None:
            try:
                await asyncio.shield(ctx.task)
            except asyncio.CancelledError:
                # a run cancelled before its first step never reaches _execute
                if not ctx.task.cancelled():
                    raise
        return ctx.run

    def get_run(self, execution_id: str) -> PipelineRun:
        return self._context(execution_id).run

    def get_pipeline_status(self, execution_id: str) -> list[PipelineStageExecution]:
        """Stage records in pipeline order (copies)."""
        run = self._context(execution_id).run
        return [PipelineStageExecution(**vars(record)) for record in run.stage_list()]

    def get_stage_findings(self, execution_id: str, stage: Stage) -> list[RawFinding]:
        return list(self._context(execution_id).run.partial_findings.get(stage, []))

    def events(self, execution_id: str) -> EventBus:
        return self._context(execution_id).bus

    def get_scheduler(self, execution_id: str) -> Scheduler:
        return self._context(execution_id).scheduler

    def cancel_pipeline(self, execution_id: str) -> bool:
        """Cancel a run. Returns False if it had already finished.

        Running stages are failed and pending stages skipped. No results are
        written to the sink. Tasks already executing are left to finish and
        their output is discarded.
        """
        ctx = self._context(execution_id)
        run = ctx.run
        if run.terminal:
            return False

        ctx.scheduler.stop()
        ctx.scheduler.clear()
        for record in run.stage_list():
            if record.status is StageStatus.RUNNING:
                self._finish(ctx, record, StageStatus.FAILED, message="cancelled", error="cancelled")
            elif record.status is StageStatus.PENDING:
                self._finish(ctx, record, StageStatus.SKIPPED, message="cancelled")
        run.results = []
        self._close_run(ctx, RunStatus.CANCELLED, "cancelled")
        if ctx.task is not None and not ctx.task.done() and ctx.task is not asyncio.current_task():
            ctx.task.cancel()
        return True

    # ------------------------------------------------------------------
    # stage bookkeeping
    # ------------------------------------------------------------------

    def _context(self, execution_id: str) -> _RunContext:
        ctx = self._runs.get(execution_id)
        if ctx is None:
            raise UnknownExecutionError(f"Unknown execution: {execution_id}")
        return ctx

    def _emit(self, ctx: _RunContext, record: PipelineStageExecution) -> None:
        self.sink.write_stage(record)
        ctx.bus.publish(StageEvent.from_record(record))

    def _begin(self, ctx: _RunContext, stage: Stage, message: str = "") -> PipelineStageExecution:
        if ctx.run.terminal:
            raise asyncio.CancelledError()
        record = ctx.run.stages[stage]
        record.transition(StageStatus.RUNNING)
        record.progress = 0
        record.message = message or "running"
        record.started_at = utcnow()
        logger.bind(execution_id=ctx.run.execution_id).debug(f"{stage.value} started")
        self._emit(ctx, record)
        return record

    def _progress(self, ctx: _RunContext, stage: Stage, done: int, total: int) -> None:
        record = ctx.run.stages[stage]
        if ctx.run.terminal or record.status is not StageStatus.RUNNING:
            return
        record.progress = 100 if total == 0 else min(99, done * 100 // total)
        record.message = f"{done}/{total} tasks"
        self._emit(ctx, record)

    def _finish(
        self,
        ctx: _RunContext,
        record: PipelineStageExecution,
        status: StageStatus,
        message: str = "",
        error: str | None = None,
    ) -> None:
        # records of a finished or cancelled run are frozen
        if ctx.run.terminal:
            return
        record.transition(status)
        if status is StageStatus.COMPLETED:
            record.progress = 100
        record.message = message
        record.error = error
        if record.started_at is not None or status is not StageStatus.SKIPPED:
            record.completed_at = utcnow()
        log = logger.bind(execution_id=ctx.run.execution_id)
        if status is StageStatus.FAILED:
            log.error(f"{record.stage.value} failed: {error}")
        else:
            log.info(f"{record.stage.value} {status.value}" + (f": {message}" if message else ""))
        self._emit(ctx, record)

    def _complete(self, ctx: _RunContext, stage: Stage, message: str = "") -> None:
        self._finish(ctx, ctx.run.stages[stage], StageStatus.COMPLETED, message=message)

    def _fail(self, ctx: _RunContext, stage: Stage, reason: str) -> StageAbortError:
        abort = StageAbortError(stage.value, reason)
        self._finish(ctx, ctx.run.stages[stage], StageStatus.FAILED, message="failed", error=str(abort))
        return abort

    def _skip_remaining(self, ctx: _RunContext, cause: str) -> None:
        for record in ctx.run.stage_list():
            if record.status is StageStatus.PENDING:
                self._finish(ctx, record, StageStatus.SKIPPED, message=NOT_ATTEMPTED, error=cause)

    def _close_run(self, ctx: _RunContext, status: RunStatus, error: str | None = None) -> None:
        run = ctx.run
        if run.terminal:
            return
        run.status = status
        run.error = error
        run.completed_at = utcnow()
        run.summary.duration_ms = (run.completed_at - run.started_at).total_seconds() * 1000
        logger.bind(execution_id=run.execution_id).info(
            f"Pipeline {status.value}" + (f": {error}" if error else "")
        )
        ctx.bus.close(run.execution_id, status.value, error)

    # ------------------------------------------------------------------
    # the run
    # ------------------------------------------------------------------

    async def _execute(self, ctx: _RunContext) -> None:
        run = ctx.run
        ctx.scheduler.start()
        try:
            await self._run_stages(ctx)
        except asyncio.CancelledError:
            if run.status is not RunStatus.CANCELLED:
                # cancelled from outside cancel_pipeline
                self.cancel_pipeline(run.execution_id)
                raise
        except StageAbortError as e:
            self._skip_remaining(ctx, str(e))
            self._close_run(ctx, RunStatus.FAILED, str(e))
        except Exception as e:
            logger.bind(execution_id=run.execution_id).opt(exception=True).error(f"Pipeline crashed: {e}")
            for record in run.stage_list():
                if record.status is StageStatus.RUNNING:
                    self._finish(ctx, record, StageStatus.FAILED, message="failed", error=f"{record.stage.value}: {e}")
            self._skip_remaining(ctx, str(e))
            self._close_run(ctx, RunStatus.FAILED, str(e))
        finally:
            await ctx.scheduler.aclose()

    async def _inline(self, ctx: _RunContext, stage: Stage, fn, *args, thread: bool = False):
        """Run a non-scheduled stage; failures become StageAbortError."""
        self._begin(ctx, stage)
        try:
            if thread:
                return await asyncio.to_thread(fn, *args)
            return fn(*args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = str(e) or type(e).__name__
            self._fail(ctx, stage, reason)
            raise StageAbortError(stage.value, reason) from e

    async def _run_stages(self, ctx: _RunContext) -> None:
        run = ctx.run

        sources = await self._inline(ctx, Stage.SOURCE_COLLECT, self._collect, run, thread=True)
        ctx.sources = {s.path: s for s in sources}
        self._complete(ctx, Stage.SOURCE_COLLECT, f"{len(sources)} files collected")

        code, manifests = await self._inline(ctx, Stage.LANGUAGE_DETECT, self._detect, ctx, sources)
        self._complete(
            ctx, Stage.LANGUAGE_DETECT,
            f"{len(code)} source files, {len(manifests)} manifests, "
            f"{len(run.summary.top_languages)} languages",
        )

        units = await self._inline(ctx, Stage.AST_PARSE, self._parse, code, thread=True)
        parse_errors = sum(1 for u in units if u.parsed and u.parsed.parse_error)
        self._complete(ctx, Stage.AST_PARSE, f"{len(units)} files parsed, {parse_errors} with syntax errors")

        manifest_units = [AnalysisUnit(source=m, language="manifest") for m in manifests]
        await self._run_parallel(ctx, units, manifest_units)

        findings = run.partial_findings[Stage.STATIC_ANALYZE] + run.partial_findings[Stage.RULE_PARSE]
        categorized = await self._inline(ctx, Stage.CATEGORIZE, categorize_all, findings)
        unmapped = sum(1 for c in categorized if not c.mapped)
        self._complete(ctx, Stage.CATEGORIZE, f"{len(categorized)} findings categorized, {unmapped} unmapped")

        normalizer = ResultNormalizer(run.execution_id, languages=ctx.languages)
        results = await self._inline(ctx, Stage.NORMALIZE, normalizer.normalize, categorized)
        self._complete(ctx, Stage.NORMALIZE, f"{len(results)} results from {len(categorized)} findings")

        results = await self._ai_enhance(ctx, normalizer, results)

        self.sink.write_results(run.execution_id, results)
        run.results = results
        self._fill_summary(ctx, results)
        self._close_run(ctx, RunStatus.COMPLETED)

    # ------------------------------------------------------------------
    # inline stage bodies
    # ------------------------------------------------------------------

    def _collect(self, run: PipelineRun) -> list[SourceFile]:
        collected = self.collector.collect(run.project_id, run.revision)
        kept = []
        for source in collected:
            if source.size > self.config.max_file_size:
                continue
            if any(fnmatch.fnmatch(source.path, p) for p in self.config.exclude_patterns):
                continue
            kept.append(source)
        run.summary.total_files = len(kept)
        return sorted(kept, key=lambda s: s.path)

    def _detect(self, ctx: _RunContext, sources: list[SourceFile]) -> tuple[list[tuple[SourceFile, str]], list[SourceFile]]:
        code: list[tuple[SourceFile, str]] = []
        manifests: list[SourceFile] = []
        mappings = []
        for source in sources:
            if is_excluded_path(source.path):
                continue
            if is_manifest(source.path):
                manifests.append(source)
                continue
            mapping = self.detector.detect(source)
            if mapping.language is None:
                continue
            mappings.append(mapping)
            ctx.languages[source.path] = mapping.language
            code.append((source, mapping.language))
        stats = compute_stats(mappings, sources)
        ctx.run.summary.analyzed_files = len(code)
        ctx.run.summary.top_languages = [s.to_dict() for s in stats[:5]]
        return code, manifests

    def _parse(self, code: list[tuple[SourceFile, str]]) -> list[AnalysisUnit]:
        return [
            AnalysisUnit(source=source, language=language, parsed=self.parser.parse_file(source, language))
            for source, language in code
        ]

    # ------------------------------------------------------------------
    # scheduled stages
    # ------------------------------------------------------------------

    async def _join_stage(self, ctx: _RunContext, stage: Stage, task_ids: list[str]) -> tuple[list[RawFinding], str | None]:
        """Wait for a stage's tasks, reporting progress as each one finishes.

        Returns the findings of the completed tasks and the error of the first
        failed task (in enqueue order), if any.
        """
        scheduler = ctx.scheduler
        total = len(task_ids)
        done = 0
        for future in asyncio.as_completed([scheduler.completion(t) for t in task_ids]):
            await future
            done += 1
            self._progress(ctx, stage, done, total)

        findings: list[RawFinding] = []
        first_error = None
        for task_id in task_ids:
            task = scheduler.get_task(task_id)
            if task.status is TaskStatus.COMPLETED:
                findings.extend(task.output or [])
            elif first_error is None:
                first_error = task.error or "task failed"
        return findings, first_error

    def _enqueue(self, ctx: _RunContext, plan: list[tuple[AgentType, Any, int]]) -> list[str]:
        return [ctx.scheduler.add_task(agent_type, payload, priority=priority) for agent_type, payload, priority in plan]

    async def _run_parallel(self, ctx: _RunContext, units: list[AnalysisUnit], manifests: list[AnalysisUnit]) -> None:
        """Fan STATIC_ANALYZE and RULE_PARSE out together and join on both.

        Findings of completed tasks are kept per stage even when the sibling
        stage fails; in that case the dependent stages are skipped.
        """
        run = ctx.run
        batches = _batches(units, self.config.batch_size)
        plans = {
            Stage.STATIC_ANALYZE: [(AgentType.AST, batch, 0) for batch in batches]
            + [(AgentType.DEPENDENCY, units + manifests, 1)],
            Stage.RULE_PARSE: [(AgentType.RULE, batch, 0) for batch in batches]
            + [(AgentType.SECURITY, batch, 0) for batch in batches],
        }

        for stage, plan in plans.items():
            self._begin(ctx, stage, f"{len(plan)} tasks")
        enqueued: dict[Stage, list[str]] = {}
        failures: list[StageAbortError] = []
        for stage, plan in plans.items():
            run.partial_findings[stage] = []
            try:
                enqueued[stage] = self._enqueue(ctx, plan)
            except ValidationError as e:
                failures.append(self._fail(ctx, stage, str(e)))

        async def join(stage: Stage, task_ids: list[str]) -> StageAbortError | None:
            findings, error = await self._join_stage(ctx, stage, task_ids)
            run.partial_findings[stage] = findings
            if error is not None:
                return self._fail(ctx, stage, error)
            self._complete(ctx, stage, f"{len(findings)} findings from {len(task_ids)} tasks")
            return None

        outcomes = await asyncio.gather(*(join(stage, ids) for stage, ids in enqueued.items()))
        failures.extend(e for e in outcomes if e is not None)
        if failures:
            failures.sort(key=lambda e: STAGE_ORDER.index(Stage(e.stage)))
            cause = failures[0]
            for stage in DEPENDENT_STAGES:
                record = run.stages[stage]
                if record.status is StageStatus.PENDING:
                    self._finish(ctx, record, StageStatus.SKIPPED, message=NOT_ATTEMPTED, error=str(cause))
            raise cause

    def _snippet(self, ctx: _RunContext, result: NormalizedResult) -> str:
        source = ctx.sources.get(result.file_path)
        if source is None:
            return ""
        lines = source.content.splitlines()
        start = max(result.line_start - 1 - SNIPPET_CONTEXT_LINES, 0)
        end = min(result.line_end + SNIPPET_CONTEXT_LINES, len(lines))
        return "\n".join(lines[start:end])

    async def _ai_enhance(self, ctx: _RunContext, normalizer: ResultNormalizer, results: list[NormalizedResult]) -> list[NormalizedResult]:
        """Optional AI pass. Every failure mode degrades to a skipped stage."""
        run = ctx.run
        record = run.stages[Stage.AI_ENHANCE]
        if not self.config.ai_enabled or self.ai_service is None:
            self._finish(ctx, record, StageStatus.SKIPPED, message="AI disabled")
            return results

        self._begin(ctx, Stage.AI_ENHANCE)
        try:
            available = await self.ai_service.is_available()
        except Exception as e:
            logger.bind(execution_id=run.execution_id).warning(f"AI availability probe failed: {e}")
            available = False
        if not available:
            self._finish(ctx, record, StageStatus.SKIPPED, message="AI service unavailable")
            return results
        if not results:
            self._complete(ctx, Stage.AI_ENHANCE, "nothing to review")
            return results

        items = [AIReviewItem(result=r, snippet=self._snippet(ctx, r)) for r in results]
        plan = [(AgentType.AI, batch, 0) for batch in _batches(items, self.config.ai_batch_size)]
        try:
            task_ids = self._enqueue(ctx, plan)
        except ValidationError as e:
            self._finish(ctx, record, StageStatus.SKIPPED, message="AI enhancement failed", error=str(e))
            return results

        findings, error = await self._join_stage(ctx, Stage.AI_ENHANCE, task_ids)
        run.partial_findings[Stage.AI_ENHANCE] = findings
        if error is not None:
            self._finish(ctx, record, StageStatus.SKIPPED, message="AI enhancement failed", error=f"{Stage.AI_ENHANCE.value}: {error}")
            return results

        enhanced = normalizer.merge_ai(results, categorize_all(findings))
        self._complete(ctx, Stage.AI_ENHANCE, f"{len(findings)} AI findings merged")
        return enhanced

    def _fill_summary(self, ctx: _RunContext, results: list[NormalizedResult]) -> None:
        stats = get_stats(results)
        summary: PipelineSummary = ctx.run.summary
        summary.total_issues = stats["total"]
        summary.issues_by_severity = stats["bySeverity"]
        summary.issues_by_category = stats["byCategory"]
