"""Gantry CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

# ── Default templates for `gantry init` ──────────────────────────────────────

_DEFAULT_CONFIG = """\
# .gantry/config.yaml — Gantry project configuration

max_parallel: 4
cancel_grace_seconds: 10
default_timeout: 1h

data_dir: .gantry-data
workflows_dir: .gantry/workflows

# Secrets come from GANTRY_SECRET_<NAME> environment variables and,
# optionally, a dotenv file. Stages only see the secrets they declare.
secret_env_prefix: GANTRY_SECRET_
# secrets_file: .gantry/secrets.env

# webhook_secret: set GANTRY_WEBHOOK_SECRET instead of committing it

# Python modules exposing register_invokers(registry)
plugins: []
"""

_DEFAULT_WORKFLOW = """\
# .gantry/workflows/ci.yaml — {project_name} CI pipeline

name: ci
on: [push, pull_request, workflow_dispatch]

inputs:
  image_name: "{project_name}"
  scan_path: "."
  fail_on_severity: "CRITICAL,HIGH"

stages:
  lint:
    run: echo "lint {{{{ trigger.branch }}}}"

  test:
    run: echo "test"

  security-scan:
    needs: [lint, test]
    uses: trivy
    with:
      scan_type: fs

  build:
    needs: [security-scan]
    uses: docker-build
    outputs: [image, digest]

  deploy:
    needs: [build]
    if: branch == main && event == push
    run: echo "deploy {{{{ stages.build.outputs.image }}}}"
"""


def _init_project(repo_root: Path) -> None:
    """Scaffold a .gantry/ directory with a default config and workflow."""
    gantry_dir = repo_root / ".gantry"
    workflows_dir = gantry_dir / "workflows"

    if gantry_dir.exists():
        print(f"Error: {gantry_dir} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    project_name = repo_root.resolve().name
    workflows_dir.mkdir(parents=True)
    (gantry_dir / "config.yaml").write_text(_DEFAULT_CONFIG)
    (workflows_dir / "ci.yaml").write_text(_DEFAULT_WORKFLOW.format(project_name=project_name))

    print(f"Initialized Gantry project at {gantry_dir}")
    print()
    print("Next steps:")
    print(f"  1. Review {gantry_dir / 'config.yaml'}")
    print(f"  2. Edit {workflows_dir / 'ci.yaml'}")
    print(f"  3. Run: gantry run ci --repo-root {repo_root}")


# ── Shared helpers ───────────────────────────────────────────────────────────


def _parse_pairs(values: list[str] | None, flag: str) -> dict[str, str]:
    """Parse repeated ``key=value`` flags into a dict."""
    pairs: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            print(f"Error: {flag} expects key=value, got {item!r}", file=sys.stderr)
            sys.exit(2)
        pairs[key.strip()] = value
    return pairs


def _resolve_workflow_path(repo_root: Path, workflows_dir: Path, target: str) -> Path:
    """A workflow argument is either a file path or a name under workflows_dir."""
    candidate = Path(target)
    if candidate.suffix in (".yaml", ".yml"):
        return candidate if candidate.is_absolute() else repo_root / candidate
    for suffix in (".yaml", ".yml"):
        path = workflows_dir / f"{target}{suffix}"
        if path.exists():
            return path
    return workflows_dir / f"{target}.yaml"


def _build_invokers(settings):
    from gantry.pipeline import InvokerRegistry

    invokers = InvokerRegistry()
    for plugin in settings.plugins:
        invokers.load_plugin(plugin)
    return invokers


def _build_secret_store(settings, repo_root: Path, secrets_file: Path | None):
    from gantry.pipeline import SecretStore

    if secrets_file is None and settings.secrets_file:
        secrets_file = settings.resolve_path(repo_root, settings.secrets_file)
    try:
        return SecretStore.load(env_prefix=settings.secret_env_prefix, dotenv_path=secrets_file)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)


def _load_for_command(args):
    """Load settings and the target workflow. Exits 2 on an invalid definition."""
    from gantry.config import load_settings
    from gantry.pipeline import DefinitionError, load_workflow

    try:
        settings = load_settings(args.repo_root)
    except ValueError as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)

    workflows_dir = settings.resolve_path(args.repo_root, settings.workflows_dir)
    path = _resolve_workflow_path(args.repo_root, workflows_dir, args.workflow)
    try:
        workflow = load_workflow(path)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)
    except DefinitionError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)
    return settings, workflow


# ── validate / plan ──────────────────────────────────────────────────────────


def _validate(args) -> None:
    """Check a workflow against the graph, invokers, secrets and templates."""
    from gantry.pipeline import DefinitionError, PipelineEngine
    from gantry.pipeline.conditions import unknown_keys

    settings, workflow = _load_for_command(args)
    engine = PipelineEngine(
        invokers=_build_invokers(settings),
        secret_store=_build_secret_store(settings, args.repo_root, args.secrets_file),
    )
    try:
        engine.validate(workflow)
    except DefinitionError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)

    for stage in workflow.stages:
        unknown = unknown_keys(stage.condition)
        if unknown:
            print(
                f"Warning: stage '{stage.name}' condition uses unknown predicates "
                f"{sorted(unknown)} and will always be skipped",
                file=sys.stderr,
            )
    print(f"Workflow '{workflow.name}' is valid ({len(workflow.stages)} stages)")


def _plan(args) -> None:
    """Print the execution levels of a workflow without running it."""
    from gantry.pipeline import StageGraph

    _, workflow = _load_for_command(args)
    graph = StageGraph(workflow.stages)

    print(f"Workflow: {workflow.name}")
    if workflow.triggers:
        print(f"Triggers: {', '.join(workflow.triggers)}")
    for i, level in enumerate(graph.levels(), start=1):
        print(f"  Level {i}:")
        for name in level:
            stage = workflow.get_stage(name)
            needs = f"  needs: {', '.join(stage.needs)}" if stage.needs else ""
            cond = f"  if: {stage.condition}" if stage.condition is not None else ""
            print(f"    {name:<24} {stage.uses:<14}{needs}{cond}")


# ── run ──────────────────────────────────────────────────────────────────────

_EXIT_CODES = {"succeeded": 0, "failed": 1, "cancelled": 130}


async def _run_workflow(args) -> int:
    from gantry.pipeline import (
        DefinitionError,
        PipelineEngine,
        TriggerContext,
        open_registry,
    )

    settings, workflow = _load_for_command(args)
    inputs = _parse_pairs(args.input, "--input")
    matrix = _parse_pairs(args.matrix, "--matrix")
    secret_store = _build_secret_store(settings, args.repo_root, args.secrets_file)
    invokers = _build_invokers(settings)

    registry = None
    if not args.no_db:
        registry = await open_registry(args.db or settings.db_path(args.repo_root))

    engine = PipelineEngine(
        registry,
        invokers,
        secret_store,
        max_parallel=args.max_parallel or settings.max_parallel,
        cancel_grace_seconds=settings.cancel_grace_seconds,
        default_timeout=settings.default_timeout_seconds(),
        workdir=args.workdir or args.repo_root,
        artifacts_dir=args.artifacts_dir,
    )
    trigger = TriggerContext(
        event=args.event,
        ref=args.ref or "",
        branch=args.branch or "",
        actor=args.actor or os.environ.get("USER", ""),
        matrix=matrix,
    )

    try:
        try:
            handle = engine.start(workflow, trigger, inputs=inputs)
        except DefinitionError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 2

        loop = asyncio.get_running_loop()
        handles_sigint = True
        try:
            loop.add_signal_handler(signal.SIGINT, handle.cancel, "interrupted")
        except NotImplementedError:
            handles_sigint = False
            logging.getLogger(__name__).debug("SIGINT handler not supported on this platform")

        try:
            run = await handle.wait()
        except DefinitionError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 2
        finally:
            if handles_sigint:
                loop.remove_signal_handler(signal.SIGINT)
    finally:
        if registry:
            await registry.close()

    print()
    print(f"Run {run.run_id} ({workflow.name}): {run.status.value.upper()}")
    for name in workflow.stage_names():
        stage = run.stages[name]
        reason = f"  ({stage.reason})" if stage.reason else ""
        print(f"  {name:<24} {stage.status.value:<10}{reason}")
        for finding in stage.findings:
            print(f"      [{finding.level}] {finding.rule_id}: {finding.message}")
    if run.error_message:
        print(run.error_message)
    return _EXIT_CODES.get(run.status.value, 1)


# ── runs / cancel ────────────────────────────────────────────────────────────


async def _list_runs(args) -> None:
    from gantry.config import load_settings
    from gantry.pipeline import open_registry

    settings = load_settings(args.repo_root)
    db_path = args.db or settings.db_path(args.repo_root)
    if not Path(db_path).exists():
        print("No runs recorded.")
        return

    registry = await open_registry(db_path)
    try:
        runs = await registry.list_pipeline_runs(workflow_name=args.workflow, limit=args.limit)
    finally:
        await registry.close()

    if not runs:
        print("No runs recorded.")
        return
    print(f"{'RUN ID':<22} {'WORKFLOW':<20} {'STATUS':<10} CREATED")
    for run in runs:
        created = run.created_at.strftime("%Y-%m-%d %H:%M:%S") if run.created_at else "-"
        print(f"{run.run_id:<22} {run.workflow_name:<20} {run.status.value:<10} {created}")


def _cancel_run(args) -> None:
    """Ask a running server to cancel a run."""
    import httpx

    url = args.url.rstrip("/") + f"/runs/{args.run_id}/cancel"
    try:
        resp = httpx.post(url, timeout=10.0)
    except httpx.HTTPError as exc:
        print(f"Error: cannot reach Gantry server at {args.url}: {exc}", file=sys.stderr)
        sys.exit(1)
    if resp.status_code == 404:
        print(f"Error: run {args.run_id} is not active", file=sys.stderr)
        sys.exit(1)
    if resp.status_code >= 400:
        print(f"Error: server returned {resp.status_code}: {resp.text}", file=sys.stderr)
        sys.exit(1)
    print(f"Cancellation requested for run {args.run_id}")


# ── Argument parsing ─────────────────────────────────────────────────────────


def _add_repo_root(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )


def _add_log_level(parser: argparse.ArgumentParser, default: str = "WARNING") -> None:
    parser.add_argument(
        "--log-level",
        default=default,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help=f"Logging level (default: {default})",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gantry",
        description="Gantry — declarative CI/CD pipeline orchestrator",
    )
    subparsers = parser.add_subparsers(dest="command")

    # gantry init
    init_parser = subparsers.add_parser("init", help="Initialize a new Gantry project")
    _add_repo_root(init_parser)

    # gantry validate / plan
    for name, help_text in (
        ("validate", "Validate a workflow definition"),
        ("plan", "Show the execution levels of a workflow"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("workflow", help="Workflow name or path to a workflow YAML file")
        _add_repo_root(sub)
        _add_log_level(sub)
        if name == "validate":
            sub.add_argument("--secrets-file", type=Path, help="Dotenv file with secret values")

    # gantry run
    run_parser = subparsers.add_parser("run", help="Run a workflow locally")
    run_parser.add_argument("workflow", help="Workflow name or path to a workflow YAML file")
    _add_repo_root(run_parser)
    run_parser.add_argument("--event", default="workflow_dispatch", help="Trigger event type")
    run_parser.add_argument("--ref", help="Git ref, e.g. refs/heads/main")
    run_parser.add_argument("--branch", help="Branch name (derived from --ref if omitted)")
    run_parser.add_argument("--actor", help="Actor who triggered the run (default: $USER)")
    run_parser.add_argument(
        "--input", action="append", metavar="KEY=VALUE", help="Workflow input (repeatable)"
    )
    run_parser.add_argument(
        "--matrix", action="append", metavar="KEY=VALUE", help="Matrix value (repeatable)"
    )
    run_parser.add_argument("--secrets-file", type=Path, help="Dotenv file with secret values")
    run_parser.add_argument("--max-parallel", type=int, help="Override max concurrent stages")
    run_parser.add_argument("--workdir", type=Path, help="Working directory for stages")
    run_parser.add_argument(
        "--artifacts-dir", type=Path, help="Keep stage reports under this directory"
    )
    run_parser.add_argument("--db", type=Path, help="Run registry database path")
    run_parser.add_argument("--no-db", action="store_true", help="Do not record the run")
    _add_log_level(run_parser, default="INFO")

    # gantry runs
    runs_parser = subparsers.add_parser("runs", help="List recorded pipeline runs")
    _add_repo_root(runs_parser)
    runs_parser.add_argument("--workflow", help="Only runs of this workflow")
    runs_parser.add_argument("--limit", type=int, default=20, help="Max runs to show")
    runs_parser.add_argument("--db", type=Path, help="Run registry database path")
    _add_log_level(runs_parser)

    # gantry cancel
    cancel_parser = subparsers.add_parser("cancel", help="Cancel a run on a Gantry server")
    cancel_parser.add_argument("run_id", help="Run ID to cancel")
    cancel_parser.add_argument(
        "--url",
        default=os.environ.get("GANTRY_URL", "http://localhost:8000"),
        help="Gantry server URL (default: $GANTRY_URL or http://localhost:8000)",
    )

    # gantry serve
    serve_parser = subparsers.add_parser("serve", help="Start the Gantry webhook server")
    _add_repo_root(serve_parser)
    serve_parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )
    _add_log_level(serve_parser, default="INFO")

    return parser


def main(argv: list[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "init":
        _init_project(args.repo_root)
        return

    if args.command == "cancel":
        _cancel_run(args)
        return

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "validate":
        _validate(args)
        return

    if args.command == "plan":
        _plan(args)
        return

    if args.command == "run":
        sys.exit(asyncio.run(_run_workflow(args)))

    if args.command == "runs":
        asyncio.run(_list_runs(args))
        return

    # serve
    gantry_dir = args.repo_root / ".gantry"
    if not gantry_dir.exists():
        print(f"Error: .gantry/ directory not found at {gantry_dir}", file=sys.stderr)
        print("Run 'gantry init' to create one, or specify --repo-root", file=sys.stderr)
        sys.exit(1)

    import uvicorn

    from gantry.server import create_app

    app = create_app(repo_root=args.repo_root)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
