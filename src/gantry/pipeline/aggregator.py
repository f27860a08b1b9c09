"""Result aggregator — owns the run state of one pipeline run.

Every stage state change goes through this class. Transitions are checked
against the lifecycle below and a recorded terminal outcome (succeeded,
failed, skipped, cancelled) can never be overwritten::

    pending ──► eligible ──► running ──► succeeded | failed | cancelled
       │            │
       └────────────┴──► skipped

Key exports:
    ResultAggregator — stage transitions, outputs/artifacts/findings,
        downstream skip propagation and the overall run status.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterable

from gantry.pipeline.errors import StateTransitionError
from gantry.pipeline.models import (
    ArtifactRef,
    Finding,
    PipelineRun,
    RunStatus,
    StageRun,
    StageStatus,
)

if TYPE_CHECKING:
    from gantry.pipeline.graph import StageGraph
    from gantry.pipeline.models import WorkflowDefinition

logger = logging.getLogger("gantry.pipeline.aggregator")

_ALLOWED: dict[StageStatus, frozenset[StageStatus]] = {
    StageStatus.PENDING: frozenset({StageStatus.ELIGIBLE, StageStatus.SKIPPED}),
    StageStatus.ELIGIBLE: frozenset({StageStatus.RUNNING, StageStatus.SKIPPED}),
    StageStatus.RUNNING: frozenset(
        {StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.CANCELLED}
    ),
}


class ResultAggregator:
    """Records stage outcomes for a single run.

    The executor's control loop is the only caller, so each stage has one
    writer at a time. Changed stages are queued and handed out by
    :meth:`drain_changes` for persistence.
    """

    def __init__(self, run: PipelineRun, workflow: WorkflowDefinition, graph: StageGraph):
        self._run = run
        self._graph = graph
        self._declared_outputs: dict[str, set[str]] = {
            s.name: set(s.outputs) for s in workflow.stages
        }
        self._changed: list[str] = []

        for stage in workflow.stages:
            run.stages[stage.name] = StageRun(
                run_id=run.run_id,
                stage=stage.name,
                continue_on_error=stage.continue_on_error,
            )
            self._changed.append(stage.name)

    @property
    def run(self) -> PipelineRun:
        return self._run

    # ── Transitions ──────────────────────────────────────────────────────────

    def _transition(self, name: str, status: StageStatus, reason: str | None = None) -> StageRun:
        stage_run = self._run.stages.get(name)
        if stage_run is None:
            raise StateTransitionError(f"Unknown stage '{name}' in run {self._run.run_id}")
        if stage_run.is_terminal:
            raise StateTransitionError(
                f"Stage '{name}' outcome already recorded as {stage_run.status.value}"
            )
        if status not in _ALLOWED.get(stage_run.status, frozenset()):
            raise StateTransitionError(
                f"Stage '{name}' cannot move from {stage_run.status.value} to {status.value}"
            )

        stage_run.status = status
        if reason is not None:
            stage_run.reason = reason
        now = datetime.now(timezone.utc)
        if status == StageStatus.RUNNING:
            stage_run.started_at = now
        elif stage_run.is_terminal:
            stage_run.completed_at = now
        self._changed.append(name)
        logger.debug("Run %s stage '%s' → %s", self._run.run_id, name, status.value)
        return stage_run

    def mark_eligible(self, name: str) -> StageRun:
        return self._transition(name, StageStatus.ELIGIBLE)

    def mark_running(self, name: str) -> StageRun:
        return self._transition(name, StageStatus.RUNNING)

    def record_success(
        self,
        name: str,
        *,
        outputs: dict[str, Any] | None = None,
        artifacts: Iterable[ArtifactRef] = (),
        findings: Iterable[Finding] = (),
        exit_code: int | None = 0,
        attempts: int = 1,
    ) -> StageRun:
        stage_run = self._transition(name, StageStatus.SUCCEEDED)
        self._attach(stage_run, outputs, artifacts, findings, exit_code, attempts)
        return stage_run

    def record_failure(
        self,
        name: str,
        reason: str,
        *,
        outputs: dict[str, Any] | None = None,
        artifacts: Iterable[ArtifactRef] = (),
        findings: Iterable[Finding] = (),
        exit_code: int | None = None,
        attempts: int = 1,
    ) -> StageRun:
        stage_run = self._transition(name, StageStatus.FAILED, reason)
        self._attach(stage_run, outputs, artifacts, findings, exit_code, attempts)
        return stage_run

    def record_skipped(self, name: str, reason: str) -> StageRun:
        return self._transition(name, StageStatus.SKIPPED, reason)

    def record_cancelled(self, name: str, reason: str = "run cancelled") -> StageRun:
        return self._transition(name, StageStatus.CANCELLED, reason)

    def skip_downstream(self, name: str, reason: str) -> list[str]:
        """Skip every not-yet-finished transitive dependent of ``name``.

        One reachability pass over the graph; stages already terminal
        (e.g. skipped through another failed branch) are left alone.
        """
        skipped: list[str] = []
        for dependent in sorted(self._graph.downstream([name])):
            if self._run.stages[dependent].is_terminal:
                continue
            self.record_skipped(dependent, reason)
            skipped.append(dependent)
        if skipped:
            logger.info(
                "Run %s: skipped %d stages downstream of '%s': %s",
                self._run.run_id,
                len(skipped),
                name,
                ", ".join(skipped),
            )
        return skipped

    def _attach(
        self,
        stage_run: StageRun,
        outputs: dict[str, Any] | None,
        artifacts: Iterable[ArtifactRef],
        findings: Iterable[Finding],
        exit_code: int | None,
        attempts: int,
    ) -> None:
        declared = self._declared_outputs.get(stage_run.stage, set())
        kept: dict[str, str] = {}
        for key, value in (outputs or {}).items():
            if key in declared:
                kept[key] = str(value)
            else:
                logger.debug(
                    "Stage '%s' produced undeclared output '%s', dropped", stage_run.stage, key
                )
        stage_run.outputs = kept
        stage_run.artifacts = list(artifacts)
        stage_run.findings = list(findings)
        stage_run.exit_code = exit_code
        stage_run.attempts = attempts

    # ── Queries ──────────────────────────────────────────────────────────────

    def status(self, name: str) -> StageStatus:
        return self._run.stages[name].status

    def statuses(self) -> dict[str, StageStatus]:
        return self._run.statuses()

    def names_with(self, *statuses: StageStatus) -> list[str]:
        return [name for name, sr in self._run.stages.items() if sr.status in statuses]

    def is_finished(self) -> bool:
        """True once no stage is pending, eligible or running."""
        return not self.names_with(StageStatus.PENDING, StageStatus.ELIGIBLE, StageStatus.RUNNING)

    def outputs_for(self, name: str) -> dict[str, dict[str, Any]]:
        """Results of a stage's transitive upstream stages, keyed by stage name."""
        visible: dict[str, dict[str, Any]] = {}
        for upstream in self._graph.upstream(name):
            sr = self._run.stages[upstream]
            visible[upstream] = {
                "status": sr.status.value,
                "outputs": dict(sr.outputs),
                "artifacts": {a.name: a.uri for a in sr.artifacts},
            }
        return visible

    def overall_status(self, *, cancelled: bool = False) -> RunStatus:
        """Succeeded only if every non-skipped stage succeeded.

        Failures of ``continue_on_error`` stages are ignored; any other
        failed stage fails the run.
        """
        if cancelled:
            return RunStatus.CANCELLED
        for sr in self._run.stages.values():
            if sr.status == StageStatus.FAILED and not sr.continue_on_error:
                return RunStatus.FAILED
            if sr.status == StageStatus.CANCELLED:
                return RunStatus.FAILED
        return RunStatus.SUCCEEDED

    def summary(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for sr in self._run.stages.values():
            counts[sr.status.value] = counts.get(sr.status.value, 0) + 1
        return counts

    def drain_changes(self) -> list[StageRun]:
        """Stage runs changed since the last drain, each listed once."""
        names = list(dict.fromkeys(self._changed))
        self._changed.clear()
        return [self._run.stages[n] for n in names]
