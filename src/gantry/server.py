"""Gantry Server — FastAPI application that ties all components together.

Startup sequence:
1. Load .gantry/config.yaml
2. Open the SQLite run registry
3. Seal the secret store (environment + optional secrets file)
4. Register built-in and plugin task invokers
5. Load workflow definitions
6. Begin accepting webhooks

Shutdown:
1. Cancel active runs and wait for them to wind down
2. Close database
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import Body, FastAPI, HTTPException

from gantry import __version__
from gantry.config import GantrySettings, load_settings
from gantry.pipeline import (
    DefinitionError,
    InvokerRegistry,
    PipelineEngine,
    PipelineRegistry,
    RunStatus,
    SecretStore,
    TriggerContext,
    WorkflowDefinition,
    load_workflows,
    open_registry,
)
from gantry.webhook import configure as configure_webhook
from gantry.webhook import router as webhook_router

logger = logging.getLogger(__name__)

SHUTDOWN_REASON = "server shutting down"


class GantryServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, repo_root: Path | None = None):
        self.repo_root = repo_root or Path.cwd()

        # Components (initialized in start())
        self.settings: GantrySettings | None = None
        self.registry: PipelineRegistry | None = None
        self.engine: PipelineEngine | None = None
        self.workflows: dict[str, WorkflowDefinition] = {}

    async def start(self) -> None:
        """Initialize all components."""
        logger.info("Gantry server starting (repo=%s)", self.repo_root)

        # 1. Load config
        self.settings = load_settings(self.repo_root)

        # 2. Initialize database
        db_path = self.settings.db_path(self.repo_root)
        logger.info("Registry DB path: %s", db_path)
        self.registry = await open_registry(db_path)

        # 3. Secret store
        secrets_file = (
            self.settings.resolve_path(self.repo_root, self.settings.secrets_file)
            if self.settings.secrets_file
            else None
        )
        store = SecretStore.load(
            env_prefix=self.settings.secret_env_prefix,
            dotenv_path=secrets_file,
        )

        # 4. Invokers
        invokers = InvokerRegistry()
        for plugin in self.settings.plugins:
            invokers.load_plugin(plugin)

        self.engine = PipelineEngine(
            self.registry,
            invokers,
            store,
            max_parallel=self.settings.max_parallel,
            cancel_grace_seconds=self.settings.cancel_grace_seconds,
            default_timeout=self.settings.default_timeout_seconds(),
            workdir=self.repo_root,
            artifacts_dir=self.settings.resolve_path(self.repo_root, self.settings.data_dir)
            / "artifacts",
        )

        # 5. Workflows
        self.workflows = load_workflows(
            self.settings.resolve_path(self.repo_root, self.settings.workflows_dir)
        )

        # 6. Webhooks
        configure_webhook(self.dispatch, webhook_secret=self.settings.webhook_secret)

        logger.info("Gantry server started successfully")

    async def stop(self) -> None:
        """Graceful shutdown — cancel active runs, close the database."""
        logger.info("Gantry server shutting down")

        if self.engine:
            handles = [
                h for h in (self.engine.get_handle(r) for r in self.engine.active_runs()) if h
            ]
            for handle in handles:
                handle.cancel(SHUTDOWN_REASON)
            if handles:
                await asyncio.gather(*(h.wait() for h in handles), return_exceptions=True)
        if self.registry:
            await self.registry.close()

        logger.info("Gantry server stopped")

    async def dispatch(self, trigger: TriggerContext, inputs: dict[str, Any]) -> list[str]:
        """Start every workflow whose ``on`` filter accepts the trigger event."""
        if not self.engine:
            return []
        run_ids = []
        for name, workflow in self.workflows.items():
            if not workflow.accepts_event(trigger.event):
                continue
            try:
                handle = self.engine.start(workflow, trigger, inputs=inputs)
            except DefinitionError as exc:
                logger.error("Workflow '%s' not started: %s", name, exc)
                continue
            logger.info("Started run %s of workflow '%s' (%s)", handle.run_id, name, trigger.event)
            run_ids.append(handle.run_id)
        return run_ids


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = GantryServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan — startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(repo_root: Path | None = None) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = GantryServer(repo_root)

    app = FastAPI(
        title="Gantry",
        version=__version__,
        description="Declarative CI/CD pipeline orchestrator",
        lifespan=lifespan,
    )

    # Mount routes
    app.include_router(webhook_router)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "workflows": sorted(_server.workflows),
            "active_runs": _server.engine.active_runs() if _server.engine else [],
        }

    @app.get("/runs")
    async def list_runs(
        status: RunStatus | None = None, workflow: str | None = None, limit: int = 50
    ):
        """List recorded pipeline runs, newest first."""
        if not _server.registry:
            return {"runs": []}
        runs = await _server.registry.list_pipeline_runs(
            status=status, workflow_name=workflow, limit=limit
        )
        return {"runs": [r.model_dump(mode="json") for r in runs]}

    @app.get("/runs/{run_id}")
    async def get_run(run_id: str):
        """One run with its stage records."""
        run = await _server.registry.get_pipeline_run(run_id) if _server.registry else None
        if run is None:
            raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
        return run.model_dump(mode="json")

    @app.post("/runs/{run_id}/cancel")
    async def cancel_run(run_id: str):
        """Request cancellation of an active run."""
        if not _server.engine or not _server.engine.cancel(run_id):
            raise HTTPException(status_code=404, detail=f"Run {run_id} is not active")
        return {"run_id": run_id, "cancelling": True}

    @app.post("/workflows/{name}/runs", status_code=202)
    async def dispatch_workflow(name: str, inputs: dict[str, Any] | None = Body(default=None)):
        """Manually start a workflow (``workflow_dispatch``)."""
        workflow = _server.workflows.get(name)
        if workflow is None or not _server.engine:
            raise HTTPException(status_code=404, detail=f"Workflow '{name}' not found")
        trigger = TriggerContext(event="workflow_dispatch", actor="api")
        try:
            handle = _server.engine.start(workflow, trigger, inputs=inputs)
        except DefinitionError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {"run_id": handle.run_id}

    return app
