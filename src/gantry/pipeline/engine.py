"""Pipeline engine — validates workflows and drives pipeline runs.

Key exports:
    PipelineEngine — validate(), run(), start(), cancel(), active_runs().
    RunHandle — a run started in the background by :meth:`PipelineEngine.start`.

A run is driven by one cooperative control loop. Each pass:

1. computes the ready set (pending stages whose dependencies succeeded),
2. evaluates each ready stage's condition: false skips the stage and its
   dependents, true marks it eligible,
3. launches eligible stages as tasks, never more than ``max_parallel`` at
   once,
4. waits for the next stage to finish (or for a cancel request) and records
   its outcome, skipping every dependent of a failed stage.

The loop ends when no stage is pending, eligible or running. Stage tasks
never write run state themselves; they return a :class:`_StageOutcome`
that the loop hands to the :class:`ResultAggregator`.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from gantry.pipeline.aggregator import ResultAggregator
from gantry.pipeline.conditions import evaluate_condition
from gantry.pipeline.errors import (
    CancellationError,
    DefinitionError,
    SecretScopeError,
    StageFailure,
)
from gantry.pipeline.graph import StageGraph
from gantry.pipeline.invokers import (
    OUTPUT_ENV_VAR,
    CommandRunner,
    InvokerRegistry,
    TaskRequest,
    TaskResult,
    parse_output_file,
)
from gantry.pipeline.models import (
    ArtifactRef,
    Finding,
    PipelineRun,
    RunStatus,
    StageDefinition,
    StageStatus,
    TriggerContext,
    WorkflowDefinition,
    WorkflowInputs,
    new_run_id,
)
from gantry.pipeline.registry import PipelineRegistry
from gantry.pipeline.secrets import SecretScopeManager, SecretStore, build_stage_env
from gantry.pipeline.templates import TEMPLATE_ROOTS, resolve_templates, template_references

logger = logging.getLogger("gantry.pipeline.engine")

CANCELLED_REASON = "run cancelled"
CONDITION_NOT_MET = "condition not met"


@dataclass
class _StageOutcome:
    success: bool
    reason: str | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    artifacts: list[ArtifactRef] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)
    exit_code: int | None = None
    attempts: int = 1
    retryable: bool = True


class RunHandle:
    """A pipeline run executing in the background."""

    def __init__(self, run_id: str, task: asyncio.Task[PipelineRun], engine: PipelineEngine):
        self.run_id = run_id
        self._task = task
        self._engine = engine

    def done(self) -> bool:
        return self._task.done()

    def cancel(self, reason: str = CANCELLED_REASON) -> bool:
        return self._engine.cancel(self.run_id, reason)

    async def wait(self) -> PipelineRun:
        return await self._task


class PipelineEngine:
    """Executes workflow definitions.

    Usage::

        engine = PipelineEngine(registry, secret_store=SecretStore.load())
        run = await engine.run(workflow, TriggerContext(event="push", branch="main"))
        run.status  # RunStatus.SUCCEEDED
    """

    def __init__(
        self,
        registry: PipelineRegistry | None = None,
        invokers: InvokerRegistry | None = None,
        secret_store: SecretStore | None = None,
        *,
        max_parallel: int = 4,
        cancel_grace_seconds: float = 10.0,
        default_timeout: int | None = None,
        workdir: Path | str | None = None,
        artifacts_dir: Path | str | None = None,
        base_env: dict[str, str] | None = None,
    ):
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self._registry = registry
        self._invokers = invokers or InvokerRegistry()
        self._secrets = SecretScopeManager(secret_store)
        self._max_parallel = max_parallel
        self._cancel_grace = cancel_grace_seconds
        self._default_timeout = default_timeout
        self._workdir = Path(workdir) if workdir else Path.cwd()
        self._artifacts_dir = Path(artifacts_dir) if artifacts_dir else None
        self._base_env = base_env

        # Cancel requests, keyed by run_id; created before the run's loop starts
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._cancel_reasons: dict[str, str] = {}
        self._handles: dict[str, RunHandle] = {}

    @property
    def invokers(self) -> InvokerRegistry:
        return self._invokers

    # ── Validation ───────────────────────────────────────────────────────────

    def validate(self, workflow: WorkflowDefinition) -> None:
        """Reject a workflow that cannot run. Raises DefinitionError.

        Checks the stage graph, that every ``uses`` names a registered
        invoker, that declared secrets exist in the store, and that every
        template reference points at a declared secret, an upstream stage
        or one of its declared outputs.
        """
        graph = StageGraph(workflow.stages)
        graph.validate()

        for stage in workflow.stages:
            if not self._invokers.has(stage.uses):
                raise DefinitionError(
                    f"Stage '{stage.name}' uses unknown invoker '{stage.uses}'. "
                    f"Available: {self._invokers.list_invokers()}"
                )
            missing = self._secrets.missing(stage)
            if missing:
                raise DefinitionError(
                    f"Stage '{stage.name}' declares secrets not present in the "
                    f"secret store: {missing}"
                )
            self._validate_templates(workflow, graph, stage)

    def _validate_templates(
        self, workflow: WorkflowDefinition, graph: StageGraph, stage: StageDefinition
    ) -> None:
        upstream = graph.upstream(stage.name)
        refs = template_references([stage.run or "", stage.inputs, stage.env, workflow.env])
        for path in refs:
            root = path[0]
            where = f"Stage '{stage.name}' template '{{{{ {'.'.join(path)} }}}}'"
            if root not in TEMPLATE_ROOTS:
                raise DefinitionError(f"{where} has unknown root '{root}'")
            if root == "secrets":
                if len(path) < 2 or path[1] not in stage.secrets:
                    raise DefinitionError(f"{where} references a secret the stage does not declare")
            elif root == "stages":
                if len(path) < 2 or path[1] not in upstream:
                    raise DefinitionError(
                        f"{where} references a stage that is not upstream of '{stage.name}'"
                    )
                if len(path) >= 4 and path[2] == "outputs":
                    producer = workflow.get_stage(path[1])
                    if producer is not None and path[3] not in producer.outputs:
                        raise DefinitionError(
                            f"{where} references output '{path[3]}' which stage "
                            f"'{path[1]}' does not declare"
                        )

    # ── Run lifecycle ────────────────────────────────────────────────────────

    async def run(
        self,
        workflow: WorkflowDefinition,
        trigger: TriggerContext,
        *,
        inputs: dict[str, Any] | None = None,
        run_id: str | None = None,
    ) -> PipelineRun:
        """Execute ``workflow`` to completion and return the finished run.

        Raises DefinitionError, before any stage starts, if the workflow or
        its inputs are invalid. Stage failures never raise; they are
        recorded on the returned run.
        """
        run_id = run_id or new_run_id()
        try:
            self.validate(workflow)
            params = self._validate_inputs(workflow, inputs)
        except DefinitionError:
            self._forget(run_id)
            raise

        now = datetime.now(timezone.utc)
        run = PipelineRun(
            run_id=run_id,
            workflow_name=workflow.name,
            definition_snapshot=workflow.model_dump_json(),
            trigger=trigger,
            inputs=params.as_dict(),
            status=RunStatus.RUNNING,
            created_at=now,
            started_at=now,
        )
        cancel_event = self._cancel_events.setdefault(run_id, asyncio.Event())
        if self._registry:
            await self._registry.create_pipeline_run(run)

        scratch_root, cleanup = self._scratch_root(run_id)
        driver = _RunDriver(self, workflow, run, cancel_event, scratch_root)
        logger.info(
            "Starting pipeline run %s (workflow '%s', %d stages, event=%s ref=%s)",
            run_id,
            workflow.name,
            len(workflow.stages),
            trigger.event,
            trigger.ref or "-",
        )
        try:
            await driver.drive()
        except Exception as exc:
            logger.exception("Pipeline run %s aborted", run_id)
            run.status = RunStatus.FAILED
            run.error_message = f"internal error: {exc}"
            run.completed_at = datetime.now(timezone.utc)
            await self._persist_run(run)
            raise
        finally:
            self._forget(run_id)
            if cleanup:
                shutil.rmtree(scratch_root, ignore_errors=True)

        cancelled = driver.cancel_reason is not None
        run.status = driver.aggregator.overall_status(cancelled=cancelled)
        run.completed_at = datetime.now(timezone.utc)
        if cancelled:
            run.error_message = str(CancellationError(run_id, driver.cancel_reason))
        elif run.status == RunStatus.FAILED:
            failed = driver.aggregator.names_with(StageStatus.FAILED, StageStatus.CANCELLED)
            blocking = [n for n in failed if not run.stages[n].continue_on_error]
            run.error_message = f"Stages failed: {', '.join(blocking)}"
        await self._persist_run(run)

        logger.info(
            "Pipeline run %s finished: %s %s",
            run_id,
            run.status.value,
            driver.aggregator.summary(),
        )
        return run

    def start(
        self,
        workflow: WorkflowDefinition,
        trigger: TriggerContext,
        *,
        inputs: dict[str, Any] | None = None,
        run_id: str | None = None,
    ) -> RunHandle:
        """Validate, then execute the run as a background task."""
        self.validate(workflow)
        self._validate_inputs(workflow, inputs)
        run_id = run_id or new_run_id()
        self._cancel_events.setdefault(run_id, asyncio.Event())
        task = asyncio.create_task(
            self.run(workflow, trigger, inputs=inputs, run_id=run_id),
            name=f"pipeline-{run_id}",
        )
        handle = RunHandle(run_id, task, self)
        self._handles[run_id] = handle
        return handle

    def cancel(self, run_id: str, reason: str = CANCELLED_REASON) -> bool:
        """Request cancellation of an active run. Returns False if unknown."""
        event = self._cancel_events.get(run_id)
        if event is None or event.is_set():
            return False
        self._cancel_reasons[run_id] = reason
        event.set()
        logger.info("Cancellation requested for run %s: %s", run_id, reason)
        return True

    def active_runs(self) -> list[str]:
        return sorted(self._cancel_events)

    def get_handle(self, run_id: str) -> RunHandle | None:
        return self._handles.get(run_id)

    # ── Internals ────────────────────────────────────────────────────────────

    def _validate_inputs(
        self, workflow: WorkflowDefinition, inputs: dict[str, Any] | None
    ) -> WorkflowInputs:
        try:
            return WorkflowInputs.model_validate({**workflow.inputs, **(inputs or {})})
        except ValidationError as exc:
            raise DefinitionError(f"Invalid workflow inputs: {exc}") from exc

    def _forget(self, run_id: str) -> None:
        self._cancel_events.pop(run_id, None)
        self._cancel_reasons.pop(run_id, None)
        self._handles.pop(run_id, None)

    def _scratch_root(self, run_id: str) -> tuple[Path, bool]:
        """Per-run directory for reports; temporary unless artifacts are kept."""
        if self._artifacts_dir is not None:
            root = self._artifacts_dir / run_id
            root.mkdir(parents=True, exist_ok=True)
            return root, False
        return Path(tempfile.mkdtemp(prefix=f"gantry-{run_id}-")), True

    async def _persist_run(self, run: PipelineRun) -> None:
        if self._registry:
            await self._registry.update_pipeline_run(run)

    async def _persist_stages(self, aggregator: ResultAggregator) -> None:
        changed = aggregator.drain_changes()
        if self._registry:
            for stage_run in changed:
                await self._registry.save_stage_run(stage_run)


class _RunDriver:
    """Control loop state for one run."""

    def __init__(
        self,
        engine: PipelineEngine,
        workflow: WorkflowDefinition,
        run: PipelineRun,
        cancel_event: asyncio.Event,
        scratch_root: Path,
    ):
        self._engine = engine
        self._workflow = workflow
        self._run = run
        self._trigger = run.trigger or TriggerContext(event="manual")
        self._cancel_event = cancel_event
        self._scratch_root = scratch_root
        self._graph = StageGraph(workflow.stages)
        self._order = {name: i for i, name in enumerate(self._graph.names)}
        self._limit = workflow.max_parallel or engine._max_parallel
        self.aggregator = ResultAggregator(run, workflow, self._graph)
        self.cancel_reason: str | None = None
        self._in_flight: dict[asyncio.Task[_StageOutcome], str] = {}

    async def drive(self) -> None:
        await self._engine._persist_stages(self.aggregator)
        cancel_wait = asyncio.ensure_future(self._cancel_event.wait())
        try:
            while True:
                if self._cancel_event.is_set():
                    await self._wind_down()
                    break
                self._schedule()
                self._launch()
                await self._engine._persist_stages(self.aggregator)

                if not self._in_flight:
                    if not self.aggregator.is_finished():
                        self._skip_unreachable()
                        await self._engine._persist_stages(self.aggregator)
                    break

                done, _ = await asyncio.wait(
                    {*self._in_flight, cancel_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    if task is not cancel_wait:
                        self._record(self._in_flight.pop(task), task.result())
                await self._engine._persist_stages(self.aggregator)
        finally:
            cancel_wait.cancel()
            for task in self._in_flight:
                task.cancel()
            if self._in_flight:
                await asyncio.gather(*self._in_flight, return_exceptions=True)

    # ── Scheduling ───────────────────────────────────────────────────────────

    def _schedule(self) -> None:
        """Move ready stages to eligible, or skip them if their condition fails."""
        ready = sorted(self._graph.ready(self.aggregator.statuses()), key=self._order.__getitem__)
        for name in ready:
            stage = self._workflow.get_stage(name)
            if stage is None or self.aggregator.status(name) != StageStatus.PENDING:
                continue
            if evaluate_condition(stage.condition, self._trigger):
                self.aggregator.mark_eligible(name)
            else:
                logger.info(
                    "Stage '%s' condition not met, skipping (run %s)", name, self._run.run_id
                )
                self.aggregator.record_skipped(name, CONDITION_NOT_MET)
                self.aggregator.skip_downstream(name, f"upstream '{name}' skipped")

    def _launch(self) -> None:
        eligible = sorted(self.aggregator.names_with(StageStatus.ELIGIBLE), key=self._order.__getitem__)
        for name in eligible:
            if len(self._in_flight) >= self._limit:
                break
            stage = self._workflow.get_stage(name)
            assert stage is not None
            self.aggregator.mark_running(name)
            upstream = self.aggregator.outputs_for(name)
            task = asyncio.create_task(
                self._execute_stage(stage, upstream),
                name=f"{self._run.run_id}:{name}",
            )
            self._in_flight[task] = name
            logger.info("Stage '%s' started (run %s)", name, self._run.run_id)

    def _record(self, name: str, outcome: _StageOutcome) -> None:
        if outcome.success:
            self.aggregator.record_success(
                name,
                outputs=outcome.outputs,
                artifacts=outcome.artifacts,
                findings=outcome.findings,
                exit_code=outcome.exit_code,
                attempts=outcome.attempts,
            )
            logger.info("Stage '%s' succeeded (run %s)", name, self._run.run_id)
            return

        stage_run = self.aggregator.record_failure(
            name,
            outcome.reason or "failed",
            outputs=outcome.outputs,
            artifacts=outcome.artifacts,
            findings=outcome.findings,
            exit_code=outcome.exit_code,
            attempts=outcome.attempts,
        )
        tolerated = " (continue_on_error)" if stage_run.continue_on_error else ""
        logger.warning(
            "Stage '%s' failed%s: %s (run %s)", name, tolerated, outcome.reason, self._run.run_id
        )
        # Dependents of a failed stage never run, tolerated or not
        self.aggregator.skip_downstream(name, f"upstream '{name}' failed")

    def _skip_unreachable(self) -> None:
        for name in self.aggregator.names_with(StageStatus.PENDING, StageStatus.ELIGIBLE):
            self.aggregator.record_skipped(name, "dependencies not satisfied")

    async def _wind_down(self) -> None:
        """Skip everything not started, give running stages the grace period."""
        reason = self._engine._cancel_reasons.get(self._run.run_id, CANCELLED_REASON)
        self.cancel_reason = reason
        for name in self.aggregator.names_with(StageStatus.PENDING, StageStatus.ELIGIBLE):
            self.aggregator.record_skipped(name, reason)
        await self._engine._persist_stages(self.aggregator)

        if not self._in_flight:
            return
        logger.info(
            "Run %s cancelled; waiting up to %.1fs for %d running stages",
            self._run.run_id,
            self._engine._cancel_grace,
            len(self._in_flight),
        )
        done, pending = await asyncio.wait(
            set(self._in_flight), timeout=self._engine._cancel_grace
        )
        for task in done:
            self._record(self._in_flight.pop(task), task.result())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for task in pending:
            self.aggregator.record_cancelled(self._in_flight.pop(task), reason)
        await self._engine._persist_stages(self.aggregator)

    # ── Stage execution ──────────────────────────────────────────────────────

    async def _execute_stage(
        self, stage: StageDefinition, upstream: dict[str, dict[str, Any]]
    ) -> _StageOutcome:
        """Run one stage with its retry and timeout policy.

        Returns an outcome; only task cancellation propagates.
        """
        try:
            request, output_file = self._prepare(stage, upstream)
        except SecretScopeError as exc:
            return _StageOutcome(success=False, reason=str(exc), attempts=0)
        except Exception as exc:
            logger.exception("Stage '%s' could not be prepared", stage.name)
            return _StageOutcome(success=False, reason=f"{type(exc).__name__}: {exc}", attempts=0)

        invoker = self._engine._invokers.get(stage.uses)
        timeout = stage.parse_timeout_seconds() or self._engine._default_timeout
        max_attempts = stage.retry + 1

        outcome = _StageOutcome(success=False)
        for attempt in range(1, max_attempts + 1):
            output_file.unlink(missing_ok=True)
            outcome = await self._attempt(stage, invoker, request, timeout, output_file)
            outcome.attempts = attempt
            if outcome.success or not outcome.retryable:
                break
            if attempt < max_attempts:
                logger.info(
                    "Stage '%s' attempt %d/%d failed (%s), retrying",
                    stage.name,
                    attempt,
                    max_attempts,
                    outcome.reason,
                )
        return outcome

    def _prepare(
        self, stage: StageDefinition, upstream: dict[str, dict[str, Any]]
    ) -> tuple[TaskRequest, Path]:
        """Scope secrets, resolve templates and build the stage's request."""
        engine = self._engine
        scoped = engine._secrets.scope_for(stage)
        namespace = {
            "inputs": self._run.inputs,
            "trigger": self._trigger.namespace(),
            "matrix": dict(self._trigger.matrix),
            "stages": upstream,
            "secrets": scoped,
        }
        run_cmd = resolve_templates(stage.run, **namespace)
        stage_inputs = resolve_templates(stage.inputs, **namespace)
        env = resolve_templates({**self._workflow.env, **stage.env}, **namespace)

        scratch = self._scratch_root / stage.name
        scratch.mkdir(parents=True, exist_ok=True)
        output_file = scratch / "outputs.env"
        workdir = engine._workdir / stage.working_directory if stage.working_directory else engine._workdir

        stage_env = build_stage_env(
            scoped,
            base_env=engine._base_env,
            extra={
                **{k: "" if v is None else str(v) for k, v in env.items()},
                OUTPUT_ENV_VAR: str(output_file),
                "GANTRY_RUN_ID": self._run.run_id,
                "GANTRY_STAGE": stage.name,
            },
            store_names=engine._secrets.store.names(),
        )
        request = TaskRequest(
            run_id=self._run.run_id,
            stage=stage.name,
            uses=stage.uses,
            inputs={**self._run.inputs, **stage_inputs},
            secrets=scoped,
            trigger=self._trigger,
            workdir=workdir,
            scratch_dir=scratch,
            run_command=CommandRunner(stage=stage.name, env=stage_env, cwd=workdir, secrets=scoped),
            run=run_cmd if isinstance(run_cmd, str) else None,
            upstream=upstream,
        )
        return request, output_file

    async def _attempt(
        self,
        stage: StageDefinition,
        invoker: Any,
        request: TaskRequest,
        timeout: int | None,
        output_file: Path,
    ) -> _StageOutcome:
        try:
            if timeout:
                result: TaskResult = await asyncio.wait_for(invoker.invoke(request), timeout=timeout)
            else:
                result = await invoker.invoke(request)
        except asyncio.TimeoutError:
            return _StageOutcome(success=False, reason=f"timed out after {timeout}s")
        except SecretScopeError as exc:
            return _StageOutcome(success=False, reason=str(exc), retryable=False)
        except StageFailure as exc:
            return _StageOutcome(success=False, reason=exc.reason, exit_code=exc.exit_code)
        except Exception as exc:
            logger.exception("Stage '%s' invoker '%s' raised", stage.name, stage.uses)
            return _StageOutcome(success=False, reason=f"{type(exc).__name__}: {exc}")

        outputs = {**parse_output_file(output_file), **result.outputs}
        reason = None
        if not result.success:
            reason = result.error or (
                f"exit code {result.exit_code}" if result.exit_code is not None else "failed"
            )
            reason = request.run_command.redact(reason)
        return _StageOutcome(
            success=result.success,
            reason=reason,
            outputs=outputs,
            artifacts=list(result.artifacts),
            findings=list(result.findings),
            exit_code=result.exit_code,
        )
