"""Task invokers — the boundary between the pipeline core and external tools.

Provides a registry of named task invokers with built-in variants for the
tools a build / scan / deploy workflow typically reaches, plus support for
user-extensible invokers loaded from Python modules.

Built-in invokers:
    - ``command``      — run the stage's ``run`` shell command
    - ``docker-build`` — ``docker buildx build`` an image, optionally push
    - ``trivy``        — vulnerability scan (filesystem or image), SARIF report
    - ``checkov``      — IaC misconfiguration scan, SARIF report
    - ``conftest``     — policy evaluation of config files
    - ``terraform``    — ``init`` / ``validate`` / ``plan`` (LocalStack aware)
    - ``helm``         — ``helm upgrade --install`` a chart
    - ``webhook``      — HTTP POST to an endpoint

Every tool is opaque: invokers only build command lines, run them through
the request's :class:`CommandRunner` and translate exit codes and reports
into a :class:`TaskResult`.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable

import httpx

from gantry.pipeline.errors import StageFailure
from gantry.pipeline.models import ArtifactRef, Finding, TriggerContext
from gantry.pipeline.secrets import ScopedSecrets, redact

logger = logging.getLogger(__name__)

OUTPUT_ENV_VAR = "GANTRY_OUTPUT"

LOCALSTACK_ENDPOINT = "http://localhost:4566"


# ── Command runner ───────────────────────────────────────────────────────────


@dataclass
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class CommandRunner:
    """Runs stage subprocesses with the stage's environment and workdir.

    Captured output is logged at DEBUG with the stage's secret values
    masked. Cancelling the awaiting task kills the subprocess.
    """

    def __init__(
        self,
        *,
        stage: str,
        env: dict[str, str],
        cwd: Path,
        secrets: ScopedSecrets | None = None,
    ):
        self._stage = stage
        self._env = env
        self._cwd = cwd
        self._secret_values = list(secrets.values()) if secrets else []

    @property
    def env(self) -> dict[str, str]:
        return dict(self._env)

    async def __call__(
        self,
        cmd: str | Sequence[str],
        *,
        env: dict[str, str] | None = None,
        cwd: Path | str | None = None,
    ) -> CommandResult:
        proc_env = {**self._env, **(env or {})}
        proc_cwd = str(self._cwd / cwd) if cwd else str(self._cwd)

        if isinstance(cmd, str):
            display = cmd
            proc = await asyncio.create_subprocess_shell(
                cmd,
                cwd=proc_cwd,
                env=proc_env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        else:
            display = " ".join(cmd)
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=proc_cwd,
                env=proc_env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )

        logger.info("Stage '%s' running: %s", self._stage, self.redact(display))
        try:
            stdout_bytes, stderr_bytes = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        stdout = (stdout_bytes or b"").decode(errors="replace")
        stderr = (stderr_bytes or b"").decode(errors="replace")
        if stdout:
            logger.debug("Stage '%s' stdout:\n%s", self._stage, self.redact(stdout))
        if stderr:
            logger.debug("Stage '%s' stderr:\n%s", self._stage, self.redact(stderr))
        return CommandResult(proc.returncode or 0, stdout, stderr)

    def redact(self, text: str) -> str:
        return redact(text, self._secret_values)


# ── Request / Result ─────────────────────────────────────────────────────────


@dataclass
class TaskRequest:
    """Everything an invoker gets for one stage invocation.

    ``inputs`` holds the workflow parameters overlaid with the stage's
    resolved ``with`` values. ``scratch_dir`` is a per-stage directory for
    reports and metadata files.
    """

    run_id: str
    stage: str
    uses: str
    inputs: dict[str, Any]
    secrets: ScopedSecrets
    trigger: TriggerContext
    workdir: Path
    scratch_dir: Path
    run_command: CommandRunner
    run: str | None = None
    upstream: dict[str, dict[str, Any]] = field(default_factory=dict)

    def require(self, *names: str) -> dict[str, Any]:
        """Return the named inputs, raising StageFailure if any is unset."""
        missing = [n for n in names if self.inputs.get(n) in (None, "")]
        if missing:
            raise StageFailure(self.stage, f"'{self.uses}' requires inputs: {', '.join(missing)}")
        return {n: self.inputs[n] for n in names}


@dataclass
class TaskResult:
    success: bool
    exit_code: int | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    artifacts: list[ArtifactRef] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)
    stdout: str = ""
    stderr: str = ""
    error: str | None = None

    @classmethod
    def from_command(cls, result: CommandResult, **kwargs: Any) -> TaskResult:
        success = kwargs.pop("success", result.exit_code == 0)
        error = kwargs.pop("error", None)
        if not success and error is None:
            error = f"exit code {result.exit_code}"
        return cls(
            success=success,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            error=error,
            **kwargs,
        )


# ── Invoker Protocol ─────────────────────────────────────────────────────────


@runtime_checkable
class TaskInvoker(Protocol):
    """One variant per external tool."""

    async def invoke(self, request: TaskRequest) -> TaskResult:
        """Run the task and report its result."""
        ...


class FunctionInvoker:
    """Adapts a plain (sync or async) function to :class:`TaskInvoker`."""

    def __init__(self, name: str, fn: Callable[[TaskRequest], Any]):
        self.name = name
        self._fn = fn

    async def invoke(self, request: TaskRequest) -> TaskResult:
        if inspect.iscoroutinefunction(self._fn):
            return await self._fn(request)
        return self._fn(request)

    def __repr__(self) -> str:
        return f"FunctionInvoker({self.name!r})"


# ── Invoker Registry ─────────────────────────────────────────────────────────


class InvokerRegistry:
    """Registry mapping ``uses:`` names to task invokers.

    Usage::

        invokers = InvokerRegistry()

        @invokers.register("notify")
        async def notify(request: TaskRequest) -> TaskResult:
            ...

    Built-in invokers are pre-registered at construction time.
    """

    def __init__(self) -> None:
        self._invokers: dict[str, TaskInvoker] = {}
        self._register_builtin_invokers()

    # ── Registration ──────────────────────────────────────────────────────────

    def register(self, name: str) -> Callable[[Callable], Callable]:
        """Decorator registering a function or invoker class under ``name``."""

        def decorator(obj: Callable) -> Callable:
            self.register_fn(name, obj)
            return obj

        return decorator

    def register_fn(self, name: str, obj: Any) -> None:
        """Register an invoker instance, invoker class, or plain function."""
        if inspect.isclass(obj):
            invoker = obj()
        elif isinstance(obj, TaskInvoker):
            invoker = obj
        elif callable(obj):
            invoker = FunctionInvoker(name, obj)
        else:
            raise TypeError(f"Cannot register {obj!r} as invoker '{name}'")
        if name in self._invokers:
            logger.warning("Invoker '%s' re-registered, replacing %r", name, self._invokers[name])
        self._invokers[name] = invoker
        logger.debug("Registered invoker: %s", name)

    def load_plugin(self, module_path: str) -> int:
        """Load invokers from a module exposing ``register_invokers(registry)``.

        Returns the number of newly registered names.
        """
        before = set(self._invokers)
        module = importlib.import_module(module_path)
        if hasattr(module, "register_invokers"):
            module.register_invokers(self)
        else:
            logger.warning("Plugin %s has no register_invokers(registry) function", module_path)
        added = len(set(self._invokers) - before)
        logger.info("Loaded %d invokers from plugin: %s", added, module_path)
        return added

    def has(self, name: str) -> bool:
        return name in self._invokers

    def get(self, name: str) -> TaskInvoker | None:
        return self._invokers.get(name)

    def list_invokers(self) -> list[str]:
        return sorted(self._invokers)

    # ── Built-ins ─────────────────────────────────────────────────────────────

    def _register_builtin_invokers(self) -> None:
        self.register_fn("command", CommandInvoker)
        self.register_fn("docker-build", DockerBuildInvoker)
        self.register_fn("trivy", TrivyInvoker)
        self.register_fn("checkov", CheckovInvoker)
        self.register_fn("conftest", ConftestInvoker)
        self.register_fn("terraform", TerraformInvoker)
        self.register_fn("helm", HelmInvoker)
        self.register_fn("webhook", WebhookInvoker)


# ── Built-in Invoker Implementations ─────────────────────────────────────────


class CommandInvoker:
    """Run the stage's ``run`` command in a shell.

    Params:
        shell: Optional interpreter, e.g. ``bash -eo pipefail -c``.
    """

    async def invoke(self, request: TaskRequest) -> TaskResult:
        if not request.run:
            return TaskResult(success=False, error="command stage has no 'run'")
        cmd = request.run
        shell = request.inputs.get("shell")
        if shell:
            cmd = [*str(shell).split(), request.run]
        result = await request.run_command(cmd)
        return TaskResult.from_command(result)


class DockerBuildInvoker:
    """Build (and optionally push) a container image with ``docker buildx``.

    Params:
        image_name (required), dockerfile, context, platforms, push,
        tags (extra tags), build_args (mapping).

    Outputs ``image`` and, when the builder reports one, ``digest``.
    """

    async def invoke(self, request: TaskRequest) -> TaskResult:
        params = request.require("image_name")
        image = str(params["image_name"])
        platforms = request.inputs.get("platforms") or ["linux/amd64"]
        if isinstance(platforms, str):
            platforms = [p.strip() for p in platforms.split(",") if p.strip()]
        push = _as_bool(request.inputs.get("push", False))
        metadata_file = request.scratch_dir / "docker-metadata.json"

        cmd = [
            "docker", "buildx", "build",
            "--file", str(request.inputs.get("dockerfile", "Dockerfile")),
            "--platform", ",".join(platforms),
            "--tag", image,
            "--metadata-file", str(metadata_file),
        ]
        for tag in request.inputs.get("tags") or []:
            cmd.extend(["--tag", str(tag)])
        for key, value in (request.inputs.get("build_args") or {}).items():
            cmd.extend(["--build-arg", f"{key}={value}"])
        if push:
            cmd.append("--push")
        elif len(platforms) == 1:
            # --load only works for a single platform
            cmd.append("--load")
        cmd.append(str(request.inputs.get("context", ".")))

        result = await request.run_command(cmd)
        if result.exit_code != 0:
            return TaskResult.from_command(result)

        outputs = {"image": image}
        artifacts = []
        digest = _read_image_digest(metadata_file)
        if digest:
            outputs["digest"] = digest
            artifacts.append(ArtifactRef(name="image", uri=f"{image}@{digest}", kind="image"))
        else:
            artifacts.append(ArtifactRef(name="image", uri=image, kind="image"))
        return TaskResult.from_command(result, outputs=outputs, artifacts=artifacts)


class TrivyInvoker:
    """Vulnerability scan with Trivy; fails on findings at ``fail_on_severity``.

    Params:
        scan_type: ``fs`` (default), ``image`` or ``config``.
        scan_path: Target for ``fs`` / ``config`` scans.
        image_ref: Target for ``image`` scans (defaults to ``image_name``).
        fail_on_severity: Comma-separated severities, e.g. ``CRITICAL,HIGH``.
    """

    async def invoke(self, request: TaskRequest) -> TaskResult:
        scan_type = str(request.inputs.get("scan_type", "fs"))
        if scan_type == "image":
            target = request.inputs.get("image_ref") or request.inputs.get("image_name")
        else:
            target = request.inputs.get("scan_path", ".")
        if not target:
            return TaskResult(success=False, error="trivy image scan needs 'image_ref' or 'image_name'")

        report = request.scratch_dir / "trivy.sarif"
        cmd = [
            "trivy", scan_type,
            "--severity", str(request.inputs.get("fail_on_severity", "CRITICAL,HIGH")),
            "--exit-code", "1",
            "--format", "sarif",
            "--output", str(report),
            str(target),
        ]
        result = await request.run_command(cmd)
        findings = parse_sarif_file(report, tool="trivy")
        return TaskResult.from_command(
            result,
            outputs={"findings": str(len(findings))},
            artifacts=_report_artifacts(report, "trivy-report"),
            findings=findings,
            error=None if result.exit_code == 0 else f"trivy reported {len(findings)} findings",
        )


class CheckovInvoker:
    """IaC misconfiguration scan with Checkov.

    Params:
        scan_path: Directory to scan.
        framework: Optional framework filter (``terraform``, ``kubernetes``...).
        soft_fail: Report findings without failing the stage.
    """

    async def invoke(self, request: TaskRequest) -> TaskResult:
        out_dir = request.scratch_dir / "checkov"
        cmd = [
            "checkov",
            "--directory", str(request.inputs.get("scan_path", ".")),
            "--output", "sarif",
            "--output-file-path", str(out_dir),
            "--quiet",
        ]
        if request.inputs.get("framework"):
            cmd.extend(["--framework", str(request.inputs["framework"])])
        if _as_bool(request.inputs.get("soft_fail", False)):
            cmd.append("--soft-fail")

        result = await request.run_command(cmd)
        report = out_dir / "results_sarif.sarif"
        findings = parse_sarif_file(report, tool="checkov")
        return TaskResult.from_command(
            result,
            outputs={"findings": str(len(findings))},
            artifacts=_report_artifacts(report, "checkov-report"),
            findings=findings,
        )


class ConftestInvoker:
    """Evaluate config files against Rego policies with conftest.

    Params:
        files (required): Path or list of paths to test.
        policy: Policy directory (default ``policy``).
        namespace: Optional policy namespace.
    """

    async def invoke(self, request: TaskRequest) -> TaskResult:
        files = request.require("files")["files"]
        if isinstance(files, str):
            files = [files]
        cmd = [
            "conftest", "test", *[str(f) for f in files],
            "--policy", str(request.inputs.get("policy", "policy")),
            "--output", "json",
            "--no-color",
        ]
        if request.inputs.get("namespace") and request.inputs.get("namespace") != "default":
            cmd.extend(["--namespace", str(request.inputs["namespace"])])

        result = await request.run_command(cmd)
        findings = parse_conftest_json(result.stdout)
        failures = sum(1 for f in findings if f.level == "error")
        return TaskResult.from_command(
            result,
            outputs={"failures": str(failures)},
            findings=findings,
        )


class TerraformInvoker:
    """Run ``terraform init``, ``validate`` and ``plan``.

    Params:
        working_directory: Terraform root module.
        terraform_version: Required version prefix (checked, not installed).
        localstack: Point AWS providers at a LocalStack endpoint.
        var_file: Optional ``-var-file``.

    Outputs ``has_changes`` and produces the saved plan as an artifact.
    """

    async def invoke(self, request: TaskRequest) -> TaskResult:
        chdir = f"-chdir={request.inputs.get('working_directory', '.')}"
        env: dict[str, str] = {"TF_IN_AUTOMATION": "1", "TF_INPUT": "0"}
        if _as_bool(request.inputs.get("localstack", False)):
            env.update(
                {
                    "AWS_ENDPOINT_URL": str(
                        request.inputs.get("localstack_endpoint", LOCALSTACK_ENDPOINT)
                    ),
                    "AWS_ACCESS_KEY_ID": "test",
                    "AWS_SECRET_ACCESS_KEY": "test",
                    "AWS_DEFAULT_REGION": str(request.inputs.get("aws_region", "us-east-1")),
                }
            )

        wanted = request.inputs.get("terraform_version")
        if wanted:
            version = await request.run_command(["terraform", "version", "-json"], env=env)
            actual = _terraform_version(version.stdout)
            if version.exit_code != 0 or not actual.startswith(str(wanted)):
                return TaskResult.from_command(
                    version,
                    success=False,
                    error=f"terraform {wanted} required, found {actual or 'unknown'}",
                )

        plan_file = request.scratch_dir / "tfplan"
        steps = [
            ["terraform", chdir, "init", "-input=false", "-no-color"],
            ["terraform", chdir, "validate", "-no-color"],
        ]
        for step in steps:
            result = await request.run_command(step, env=env)
            if result.exit_code != 0:
                return TaskResult.from_command(result, error=f"terraform {step[2]} failed")

        plan = ["terraform", chdir, "plan", "-input=false", "-no-color",
                "-detailed-exitcode", f"-out={plan_file}"]
        if request.inputs.get("var_file"):
            plan.append(f"-var-file={request.inputs['var_file']}")
        result = await request.run_command(plan, env=env)
        # -detailed-exitcode: 0 no changes, 2 changes present, 1 error
        if result.exit_code not in (0, 2):
            return TaskResult.from_command(result, error="terraform plan failed")
        return TaskResult.from_command(
            result,
            success=True,
            outputs={"has_changes": "true" if result.exit_code == 2 else "false"},
            artifacts=[ArtifactRef(name="plan", uri=str(plan_file), kind="terraform-plan")],
        )


class HelmInvoker:
    """Deploy a chart with ``helm upgrade --install``.

    Params:
        chart_path (required), release_name (required), namespace,
        values (list of values files), set (mapping of ``--set`` values),
        timeout (helm duration, default ``5m``).
    """

    async def invoke(self, request: TaskRequest) -> TaskResult:
        params = request.require("chart_path", "release_name")
        namespace = str(request.inputs.get("namespace", "default"))
        cmd = [
            "helm", "upgrade", "--install",
            str(params["release_name"]), str(params["chart_path"]),
            "--namespace", namespace,
            "--create-namespace",
            "--wait",
            "--timeout", str(request.inputs.get("timeout", "5m")),
        ]
        values = request.inputs.get("values") or []
        if isinstance(values, str):
            values = [values]
        for path in values:
            cmd.extend(["--values", str(path)])
        for key, value in (request.inputs.get("set") or {}).items():
            cmd.extend(["--set", f"{key}={value}"])

        result = await request.run_command(cmd)
        return TaskResult.from_command(
            result,
            outputs={"release": str(params["release_name"]), "namespace": namespace},
        )


class WebhookInvoker:
    """POST a JSON notification with httpx.

    Params:
        url (required), body (mapping merged into the payload), headers,
        token_secret (name of a declared secret sent as a Bearer token),
        timeout (seconds, default 30).
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    async def invoke(self, request: TaskRequest) -> TaskResult:
        url = str(request.require("url")["url"])
        headers = {str(k): str(v) for k, v in (request.inputs.get("headers") or {}).items()}
        token_secret = request.inputs.get("token_secret")
        if token_secret:
            # Raises SecretScopeError when the stage did not declare it
            headers["Authorization"] = f"Bearer {request.secrets[str(token_secret)]}"

        payload = {
            "run_id": request.run_id,
            "stage": request.stage,
            "trigger": {
                "event": request.trigger.event,
                "ref": request.trigger.ref,
                "branch": request.trigger.branch,
                "actor": request.trigger.actor,
            },
            **(request.inputs.get("body") or {}),
        }
        timeout = float(request.inputs.get("timeout", 30))
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            try:
                resp = await client.post(url, json=payload, headers=headers)
            except httpx.HTTPError as exc:
                return TaskResult(success=False, error=f"webhook request failed: {exc}")

        ok = resp.is_success
        return TaskResult(
            success=ok,
            exit_code=0 if ok else 1,
            outputs={"status_code": str(resp.status_code)},
            stdout=resp.text,
            error=None if ok else f"webhook returned HTTP {resp.status_code}",
        )


# ── Reports & outputs ────────────────────────────────────────────────────────


def parse_output_file(path: Path) -> dict[str, str]:
    """Read ``key=value`` lines a stage wrote to its ``GANTRY_OUTPUT`` file.

    Blank lines and ``#`` comments are ignored; later keys win.
    """
    if not path.exists():
        return {}
    outputs: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            logger.warning("Ignoring malformed output line in %s: %r", path, line)
            continue
        key, value = line.split("=", 1)
        outputs[key.strip()] = value.strip()
    return outputs


def parse_sarif(data: dict[str, Any], tool: str | None = None) -> list[Finding]:
    """Flatten a SARIF 2.1.0 log into findings."""
    findings: list[Finding] = []
    for run in data.get("runs") or []:
        driver = (run.get("tool") or {}).get("driver") or {}
        tool_name = driver.get("name") or tool
        rules = driver.get("rules") or []
        rule_levels = {
            r.get("id"): (r.get("defaultConfiguration") or {}).get("level")
            for r in rules
            if r.get("id")
        }
        for result in run.get("results") or []:
            rule_id = result.get("ruleId")
            if rule_id is None and isinstance(result.get("ruleIndex"), int):
                idx = result["ruleIndex"]
                rule_id = rules[idx].get("id") if 0 <= idx < len(rules) else None
            findings.append(
                Finding(
                    rule_id=rule_id or "unknown",
                    level=result.get("level") or rule_levels.get(rule_id) or "warning",
                    message=(result.get("message") or {}).get("text", ""),
                    location=_sarif_location(result),
                    tool=tool_name,
                )
            )
    return findings


def parse_sarif_file(path: Path, tool: str | None = None) -> list[Finding]:
    if not path.exists():
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Could not read SARIF report %s: %s", path, exc)
        return []
    return parse_sarif(data, tool=tool)


def parse_conftest_json(stdout: str) -> list[Finding]:
    """Turn ``conftest --output json`` results into findings."""
    try:
        results = json.loads(stdout) if stdout.strip() else []
    except json.JSONDecodeError:
        logger.warning("conftest output is not JSON; no findings recorded")
        return []
    findings: list[Finding] = []
    for entry in results:
        filename = entry.get("filename")
        namespace = entry.get("namespace", "main")
        for level, key in (("error", "failures"), ("warning", "warnings")):
            for item in entry.get(key) or []:
                meta = item.get("metadata") or {}
                findings.append(
                    Finding(
                        rule_id=meta.get("query") or f"{namespace}.{key}",
                        level=level,
                        message=item.get("msg", ""),
                        location=filename,
                        tool="conftest",
                    )
                )
    return findings


def _sarif_location(result: dict[str, Any]) -> str | None:
    locations = result.get("locations") or []
    if not locations:
        return None
    physical = locations[0].get("physicalLocation") or {}
    uri = (physical.get("artifactLocation") or {}).get("uri")
    line = (physical.get("region") or {}).get("startLine")
    if uri and line:
        return f"{uri}:{line}"
    return uri


def _report_artifacts(path: Path, name: str) -> list[ArtifactRef]:
    if path.exists():
        return [ArtifactRef(name=name, uri=str(path), kind="sarif")]
    return []


def _read_image_digest(metadata_file: Path) -> str | None:
    if not metadata_file.exists():
        return None
    try:
        meta = json.loads(metadata_file.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        return None
    return meta.get("containerimage.digest")


def _terraform_version(stdout: str) -> str:
    try:
        return str(json.loads(stdout).get("terraform_version", ""))
    except (json.JSONDecodeError, AttributeError):
        return ""


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
