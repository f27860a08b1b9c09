"""Pipeline registry — SQLite persistence for pipeline runs, stages, and findings.

Key exports:
    PipelineRegistry — CRUD for pipeline_runs, stage_runs and stage_findings.
    open_registry — connect, set the row factory and create tables.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

import aiosqlite

from gantry.pipeline.models import (
    ArtifactRef,
    Finding,
    PipelineRun,
    RunStatus,
    StageRun,
    StageStatus,
    TriggerContext,
)

logger = logging.getLogger("gantry.pipeline.registry")


class PipelineRegistry:
    """SQLite-backed persistence for pipeline runs.

    Takes an already-open aiosqlite connection whose ``row_factory`` is
    ``aiosqlite.Row``. Call :meth:`initialize` to create tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def initialize(self) -> None:
        """Create all pipeline tables if they don't exist."""
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Pipeline registry tables initialized")

    async def close(self) -> None:
        await self._db.close()

    # ── Pipeline Run CRUD ────────────────────────────────────────────────────

    async def create_pipeline_run(self, run: PipelineRun) -> None:
        """Insert a new pipeline run."""
        await self._db.execute(
            """
            INSERT INTO pipeline_runs (
                run_id, workflow_name, definition_snapshot,
                trigger, inputs, status,
                created_at, started_at, completed_at, error_message
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.run_id,
                run.workflow_name,
                run.definition_snapshot,
                run.trigger.model_dump_json() if run.trigger else None,
                json.dumps(run.inputs, default=str),
                run.status.value,
                _dt_to_str(run.created_at),
                _dt_to_str(run.started_at),
                _dt_to_str(run.completed_at),
                run.error_message,
            ),
        )
        await self._db.commit()

    async def get_pipeline_run(self, run_id: str, *, with_stages: bool = True) -> PipelineRun | None:
        """Fetch a pipeline run by ID, including its stage runs."""
        cursor = await self._db.execute("SELECT * FROM pipeline_runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        run = _row_to_pipeline_run(row)
        if with_stages:
            for stage_run in await self.get_stage_runs_for_pipeline(run_id):
                run.stages[stage_run.stage] = stage_run
        return run

    async def list_pipeline_runs(
        self,
        *,
        status: RunStatus | None = None,
        workflow_name: str | None = None,
        limit: int = 50,
    ) -> list[PipelineRun]:
        """Most recent runs first, optionally filtered. Stage runs are not loaded."""
        clauses: list[str] = []
        params: list[object] = []
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        if workflow_name:
            clauses.append("workflow_name = ?")
            params.append(workflow_name)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await self._db.execute(
            f"SELECT * FROM pipeline_runs {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (*params, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_pipeline_run(r) for r in rows]

    async def get_active_pipeline_runs(self) -> list[PipelineRun]:
        """Runs still pending or running (e.g. left over from a crash)."""
        cursor = await self._db.execute(
            "SELECT * FROM pipeline_runs WHERE status IN ('pending', 'running') "
            "ORDER BY created_at"
        )
        rows = await cursor.fetchall()
        return [_row_to_pipeline_run(r) for r in rows]

    async def update_pipeline_run(self, run: PipelineRun) -> None:
        """Update a pipeline run's mutable fields."""
        await self._db.execute(
            """
            UPDATE pipeline_runs SET
                status = ?, started_at = ?, completed_at = ?, error_message = ?
            WHERE run_id = ?
            """,
            (
                run.status.value,
                _dt_to_str(run.started_at),
                _dt_to_str(run.completed_at),
                run.error_message,
                run.run_id,
            ),
        )
        await self._db.commit()

    async def delete_pipeline_run(self, run_id: str) -> None:
        """Delete a pipeline run and its stage runs and findings."""
        await self._db.execute("DELETE FROM stage_findings WHERE run_id = ?", (run_id,))
        await self._db.execute("DELETE FROM stage_runs WHERE run_id = ?", (run_id,))
        await self._db.execute("DELETE FROM pipeline_runs WHERE run_id = ?", (run_id,))
        await self._db.commit()

    # ── Stage Run CRUD ───────────────────────────────────────────────────────

    async def save_stage_run(self, stage_run: StageRun) -> None:
        """Insert or update a stage run; findings are replaced wholesale."""
        await self._db.execute(
            """
            INSERT INTO stage_runs (
                run_id, stage, status, reason, outputs, artifacts,
                exit_code, continue_on_error, attempts, started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id, stage) DO UPDATE SET
                status = excluded.status,
                reason = excluded.reason,
                outputs = excluded.outputs,
                artifacts = excluded.artifacts,
                exit_code = excluded.exit_code,
                attempts = excluded.attempts,
                started_at = excluded.started_at,
                completed_at = excluded.completed_at
            """,
            (
                stage_run.run_id,
                stage_run.stage,
                stage_run.status.value,
                stage_run.reason,
                json.dumps(stage_run.outputs),
                json.dumps([a.model_dump() for a in stage_run.artifacts]),
                stage_run.exit_code,
                int(stage_run.continue_on_error),
                stage_run.attempts,
                _dt_to_str(stage_run.started_at),
                _dt_to_str(stage_run.completed_at),
            ),
        )
        await self._db.execute(
            "DELETE FROM stage_findings WHERE run_id = ? AND stage = ?",
            (stage_run.run_id, stage_run.stage),
        )
        if stage_run.findings:
            await self._db.executemany(
                """
                INSERT INTO stage_findings (run_id, stage, rule_id, level, message, location, tool)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        stage_run.run_id,
                        stage_run.stage,
                        f.rule_id,
                        f.level,
                        f.message,
                        f.location,
                        f.tool,
                    )
                    for f in stage_run.findings
                ],
            )
        await self._db.commit()

    async def get_stage_runs_for_pipeline(self, run_id: str) -> list[StageRun]:
        """Get all stage runs for a pipeline run, in insertion order."""
        cursor = await self._db.execute(
            "SELECT * FROM stage_runs WHERE run_id = ? ORDER BY id", (run_id,)
        )
        rows = await cursor.fetchall()
        stage_runs = [_row_to_stage_run(r) for r in rows]
        findings = await self._findings_by_stage(run_id)
        for sr in stage_runs:
            sr.findings = findings.get(sr.stage, [])
        return stage_runs

    async def get_findings(self, run_id: str, stage: str | None = None) -> list[Finding]:
        """Findings recorded for a run, optionally for one stage."""
        if stage:
            return (await self._findings_by_stage(run_id)).get(stage, [])
        return [f for fs in (await self._findings_by_stage(run_id)).values() for f in fs]

    async def _findings_by_stage(self, run_id: str) -> dict[str, list[Finding]]:
        cursor = await self._db.execute(
            "SELECT * FROM stage_findings WHERE run_id = ? ORDER BY id", (run_id,)
        )
        rows = await cursor.fetchall()
        grouped: dict[str, list[Finding]] = {}
        for row in rows:
            grouped.setdefault(row["stage"], []).append(_row_to_finding(row))
        return grouped


async def open_registry(db_path: str | Path) -> PipelineRegistry:
    """Open (creating if needed) the SQLite database at ``db_path``."""
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))
    db.row_factory = aiosqlite.Row
    registry = PipelineRegistry(db)
    await registry.initialize()
    return registry


# ── Schema ───────────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipeline_runs (
    run_id TEXT PRIMARY KEY,
    workflow_name TEXT NOT NULL,
    definition_snapshot TEXT NOT NULL DEFAULT '{}',

    trigger TEXT,
    inputs TEXT DEFAULT '{}',

    status TEXT DEFAULT 'pending',

    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    started_at TEXT,
    completed_at TEXT,

    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_pipeline_runs_status
    ON pipeline_runs(status);
CREATE INDEX IF NOT EXISTS idx_pipeline_runs_workflow
    ON pipeline_runs(workflow_name, created_at);

CREATE TABLE IF NOT EXISTS stage_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES pipeline_runs(run_id) ON DELETE CASCADE,
    stage TEXT NOT NULL,

    status TEXT DEFAULT 'pending',
    reason TEXT,

    outputs TEXT DEFAULT '{}',
    artifacts TEXT DEFAULT '[]',
    exit_code INTEGER,
    continue_on_error INTEGER DEFAULT 0,
    attempts INTEGER DEFAULT 0,

    started_at TEXT,
    completed_at TEXT,

    UNIQUE(run_id, stage)
);

CREATE INDEX IF NOT EXISTS idx_stage_runs_run
    ON stage_runs(run_id);

CREATE TABLE IF NOT EXISTS stage_findings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL,
    stage TEXT NOT NULL,
    rule_id TEXT NOT NULL,
    level TEXT DEFAULT 'warning',
    message TEXT DEFAULT '',
    location TEXT,
    tool TEXT
);

CREATE INDEX IF NOT EXISTS idx_stage_findings_run
    ON stage_findings(run_id, stage);
"""


# ── Row-to-Model Converters ─────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _row_to_pipeline_run(row: aiosqlite.Row) -> PipelineRun:
    """Convert a database row to a PipelineRun model (without stages)."""
    trigger = row["trigger"]
    inputs = row["inputs"]
    return PipelineRun(
        run_id=row["run_id"],
        workflow_name=row["workflow_name"],
        definition_snapshot=row["definition_snapshot"],
        trigger=TriggerContext.model_validate_json(trigger) if trigger else None,
        inputs=json.loads(inputs) if inputs else {},
        status=RunStatus(row["status"]),
        created_at=_str_to_dt(row["created_at"]),
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
        error_message=row["error_message"],
    )


def _row_to_stage_run(row: aiosqlite.Row) -> StageRun:
    """Convert a database row to a StageRun model (findings attached separately)."""
    outputs = row["outputs"]
    if isinstance(outputs, str):
        outputs = json.loads(outputs)
    artifacts = row["artifacts"]
    if isinstance(artifacts, str):
        artifacts = json.loads(artifacts)

    return StageRun(
        run_id=row["run_id"],
        stage=row["stage"],
        status=StageStatus(row["status"]),
        reason=row["reason"],
        outputs=outputs or {},
        artifacts=[ArtifactRef(**a) for a in artifacts or []],
        exit_code=row["exit_code"],
        continue_on_error=bool(row["continue_on_error"]),
        attempts=row["attempts"] or 0,
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )


def _row_to_finding(row: aiosqlite.Row) -> Finding:
    return Finding(
        rule_id=row["rule_id"],
        level=row["level"] or "warning",
        message=row["message"] or "",
        location=row["location"],
        tool=row["tool"],
    )
