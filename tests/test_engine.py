"""Tests for the PipelineEngine — validation, scheduling, cancellation.

Covers:
- Definition errors raised before any stage is dispatched
- Dependency gating, condition skips and skip propagation
- Declared outputs flowing to dependent stages
- Per-stage secret scoping
- Retry, timeout, continue_on_error and concurrency limits
- Run cancellation with a grace period
- Persistence through the PipelineRegistry
"""

from __future__ import annotations

import asyncio
import random

import pytest
import pytest_asyncio

from gantry.pipeline import (
    DefinitionError,
    PipelineEngine,
    RunStatus,
    SecretStore,
    StageStatus,
    TaskResult,
    TriggerContext,
    open_registry,
)

from conftest import stage, workflow


PR_TRIGGER = TriggerContext(event="pull_request", branch="feature/login", actor="alice")
PUSH_MAIN = TriggerContext(event="push", branch="main", actor="alice")


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _ci_workflow(**security_fields):
    return workflow(
        stage("test"),
        stage("security", **security_fields),
        stage("build", "test", "security"),
        stage("deploy", "build", condition="branch == main"),
        name="ci",
    )


# ── Canonical scenarios ──────────────────────────────────────────────────────


class TestCiScenarios:
    @pytest.mark.asyncio
    async def test_pull_request_skips_deploy(self, engine, recorder):
        run = await engine.run(_ci_workflow(), PR_TRIGGER)

        assert run.statuses() == {
            "test": StageStatus.SUCCEEDED,
            "security": StageStatus.SUCCEEDED,
            "build": StageStatus.SUCCEEDED,
            "deploy": StageStatus.SKIPPED,
        }
        assert run.stages["deploy"].reason == "condition not met"
        assert run.status == RunStatus.SUCCEEDED
        assert "deploy" not in recorder.calls
        # build only after both of its dependencies
        assert recorder.calls.index("build") > recorder.calls.index("test")
        assert recorder.calls.index("build") > recorder.calls.index("security")

    @pytest.mark.asyncio
    async def test_push_to_main_deploys(self, engine, recorder):
        run = await engine.run(_ci_workflow(), PUSH_MAIN)
        assert run.stages["deploy"].status == StageStatus.SUCCEEDED
        assert recorder.calls[-1] == "deploy"

    @pytest.mark.asyncio
    async def test_security_failure_skips_dependents(self, engine, recorder):
        run = await engine.run(_ci_workflow(inputs={"fail": "2 critical vulnerabilities"}), PR_TRIGGER)

        assert run.statuses() == {
            "test": StageStatus.SUCCEEDED,
            "security": StageStatus.FAILED,
            "build": StageStatus.SKIPPED,
            "deploy": StageStatus.SKIPPED,
        }
        assert run.stages["security"].reason == "2 critical vulnerabilities"
        assert run.stages["build"].reason == "upstream 'security' failed"
        assert run.status == RunStatus.FAILED
        assert run.error_message == "Stages failed: security"
        assert "build" not in recorder.calls

    @pytest.mark.asyncio
    async def test_independent_branch_keeps_running(self, engine, recorder):
        wf = workflow(
            stage("a", inputs={"fail": "boom"}),
            stage("a2", "a"),
            stage("b", inputs={"delay": 0.05}),
            stage("b2", "b"),
        )
        run = await engine.run(wf, PUSH_MAIN)
        assert run.stages["a2"].status == StageStatus.SKIPPED
        assert run.stages["b2"].status == StageStatus.SUCCEEDED
        assert run.status == RunStatus.FAILED


# ── Definition errors ────────────────────────────────────────────────────────


class TestDefinitionErrors:
    @pytest.mark.asyncio
    async def test_cycle_rejected_before_dispatch(self, engine, recorder):
        wf = workflow(stage("root"), stage("a", "root", "b"), stage("b", "a"))
        with pytest.raises(DefinitionError) as exc_info:
            await engine.run(wf, PUSH_MAIN)
        assert exc_info.value.cycle is not None
        assert set(exc_info.value.cycle) == {"a", "b"}
        assert recorder.calls == []
        assert engine.active_runs() == []

    @pytest.mark.asyncio
    async def test_unknown_invoker(self, engine):
        wf = workflow(stage("a", uses="teleport"))
        with pytest.raises(DefinitionError, match="unknown invoker 'teleport'"):
            await engine.run(wf, PUSH_MAIN)

    @pytest.mark.asyncio
    async def test_secret_missing_from_store(self, engine):
        wf = workflow(stage("push", secrets=["NOT_IN_STORE"]))
        with pytest.raises(DefinitionError, match="NOT_IN_STORE"):
            await engine.run(wf, PUSH_MAIN)

    def test_template_undeclared_secret(self, engine):
        wf = workflow(stage("push", inputs={"token": "{{ secrets.REGISTRY_TOKEN }}"}))
        with pytest.raises(DefinitionError, match="does not declare"):
            engine.validate(wf)

    def test_template_non_upstream_stage(self, engine):
        wf = workflow(
            stage("build", outputs=["image"]),
            stage("scan", inputs={"image": "{{ stages.build.outputs.image }}"}),
        )
        with pytest.raises(DefinitionError, match="not upstream"):
            engine.validate(wf)

    def test_template_undeclared_output(self, engine):
        wf = workflow(
            stage("build", outputs=["image"]),
            stage("scan", "build", inputs={"ref": "{{ stages.build.outputs.digest }}"}),
        )
        with pytest.raises(DefinitionError, match="output 'digest'"):
            engine.validate(wf)

    def test_template_unknown_root(self, engine):
        wf = workflow(stage("a", env={"X": "{{ env.HOME }}"}))
        with pytest.raises(DefinitionError, match="unknown root 'env'"):
            engine.validate(wf)

    @pytest.mark.asyncio
    async def test_invalid_inputs(self, engine, recorder):
        with pytest.raises(DefinitionError, match="Invalid workflow inputs"):
            await engine.run(workflow(stage("a")), PUSH_MAIN, inputs={"fail_on_severity": "BOGUS"})
        assert recorder.calls == []


# ── Outputs and templates ────────────────────────────────────────────────────


class TestOutputs:
    @pytest.mark.asyncio
    async def test_declared_outputs_reach_dependents(self, engine, recorder):
        wf = workflow(
            stage(
                "build",
                outputs=["image", "digest"],
                inputs={"outputs": {"image": "ghcr.io/acme/api:1", "digest": "sha256:ab", "x": "y"}},
            ),
            stage(
                "deploy",
                "build",
                inputs={"ref": "{{ stages.build.outputs.image }}@{{ stages.build.outputs.digest }}"},
            ),
        )
        run = await engine.run(wf, PUSH_MAIN)

        assert run.stages["build"].outputs == {"image": "ghcr.io/acme/api:1", "digest": "sha256:ab"}
        request = recorder.requests["deploy"]
        assert request.inputs["ref"] == "ghcr.io/acme/api:1@sha256:ab"
        assert request.upstream["build"]["outputs"]["image"] == "ghcr.io/acme/api:1"

    @pytest.mark.asyncio
    async def test_workflow_inputs_and_trigger_in_templates(self, engine, recorder):
        wf = workflow(
            stage("a", inputs={"tag": "{{ inputs.image_name }}:{{ trigger.branch }}"}),
        )
        await engine.run(wf, PUSH_MAIN, inputs={"image_name": "api"})
        request = recorder.requests["a"]
        assert request.inputs["tag"] == "api:main"
        # workflow parameters are visible to the invoker alongside stage inputs
        assert request.inputs["image_name"] == "api"
        assert request.inputs["dockerfile"] == "Dockerfile"

    @pytest.mark.asyncio
    async def test_output_file_written_by_command(self, engine):
        wf = workflow(
            {
                "name": "version",
                "run": 'echo "version=1.2.3" >> "$GANTRY_OUTPUT"; echo "junk=1" >> "$GANTRY_OUTPUT"',
                "outputs": ["version"],
            },
        )
        run = await engine.run(wf, PUSH_MAIN)
        assert run.stages["version"].status == StageStatus.SUCCEEDED
        assert run.stages["version"].outputs == {"version": "1.2.3"}

    @pytest.mark.asyncio
    async def test_command_exit_code_recorded(self, engine):
        run = await engine.run(workflow({"name": "broken", "run": "exit 3"}), PUSH_MAIN)
        sr = run.stages["broken"]
        assert sr.status == StageStatus.FAILED
        assert sr.exit_code == 3
        assert sr.reason == "exit code 3"


# ── Secrets ──────────────────────────────────────────────────────────────────


class TestSecretScoping:
    @pytest.mark.asyncio
    async def test_each_stage_sees_only_its_secrets(self, engine, recorder):
        wf = workflow(
            stage("lint"),
            stage("push", "lint", secrets=["REGISTRY_TOKEN"]),
            stage("deploy", "push", secrets=["DEPLOY_KEY"]),
        )
        await engine.run(wf, PUSH_MAIN)

        assert dict(recorder.requests["lint"].secrets) == {}
        assert dict(recorder.requests["push"].secrets) == {"REGISTRY_TOKEN": "reg-s3cret"}
        assert dict(recorder.requests["deploy"].secrets) == {"DEPLOY_KEY": "deploy-s3cret"}

        push_env = recorder.requests["push"].run_command.env
        assert push_env["REGISTRY_TOKEN"] == "reg-s3cret"
        assert "DEPLOY_KEY" not in push_env
        assert "REGISTRY_TOKEN" not in recorder.requests["lint"].run_command.env

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", range(8))
    async def test_random_declared_subsets(self, invokers, recorder, base_env, tmp_path, seed):
        rng = random.Random(seed)
        names = [f"SECRET_{i}" for i in range(6)]
        store = SecretStore({n: f"value-{n}" for n in names})
        store.seal()
        engine = PipelineEngine(
            invokers=invokers, secret_store=store, workdir=tmp_path, base_env=base_env
        )
        declared = {
            f"s{i}": sorted(rng.sample(names, rng.randint(0, len(names)))) for i in range(4)
        }
        wf = workflow(*(stage(name, secrets=secrets) for name, secrets in declared.items()))

        await engine.run(wf, PUSH_MAIN)

        for name, secrets in declared.items():
            received = recorder.requests[name].secrets
            assert set(received) == set(secrets)

    @pytest.mark.asyncio
    async def test_undeclared_secret_access_fails_without_retry(self, engine, invokers):
        async def sneaky(request):
            return TaskResult(success=True, outputs={"stolen": request.secrets["DEPLOY_KEY"]})

        invokers.register_fn("sneaky", sneaky)
        wf = workflow(stage("push", uses="sneaky", secrets=["REGISTRY_TOKEN"], retry=3))
        run = await engine.run(wf, PUSH_MAIN)

        sr = run.stages["push"]
        assert sr.status == StageStatus.FAILED
        assert "undeclared secret 'DEPLOY_KEY'" in sr.reason
        assert sr.attempts == 1

    @pytest.mark.asyncio
    async def test_secret_values_redacted_from_reason(self, engine, invokers):
        async def leaky(request):
            return TaskResult(
                success=False, error=f"login failed for {request.secrets['REGISTRY_TOKEN']}"
            )

        invokers.register_fn("leaky", leaky)
        run = await engine.run(
            workflow(stage("push", uses="leaky", secrets=["REGISTRY_TOKEN"])), PUSH_MAIN
        )
        assert run.stages["push"].reason == "login failed for ***"

    @pytest.mark.asyncio
    async def test_secret_env_for_command_stage(self, engine):
        wf = workflow(
            {
                "name": "push",
                "run": 'test "$REGISTRY_TOKEN" = reg-s3cret && test -z "$DEPLOY_KEY"',
                "secrets": ["REGISTRY_TOKEN"],
            }
        )
        run = await engine.run(wf, PUSH_MAIN)
        assert run.stages["push"].status == StageStatus.SUCCEEDED


# ── Execution policy ─────────────────────────────────────────────────────────


class TestExecutionPolicy:
    @pytest.mark.asyncio
    async def test_retry_until_success(self, engine, recorder):
        run = await engine.run(workflow(stage("flaky", retry=2, inputs={"fail_times": 2})), PUSH_MAIN)
        sr = run.stages["flaky"]
        assert sr.status == StageStatus.SUCCEEDED
        assert sr.attempts == 3
        assert recorder.attempts["flaky"] == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, engine, recorder):
        run = await engine.run(workflow(stage("flaky", retry=1, inputs={"fail_times": 5})), PUSH_MAIN)
        sr = run.stages["flaky"]
        assert sr.status == StageStatus.FAILED
        assert sr.attempts == 2
        assert sr.reason == "flaky failure"

    @pytest.mark.asyncio
    async def test_timeout(self, engine, recorder):
        run = await engine.run(
            workflow(stage("slow", timeout="1s", inputs={"delay": 10})), PUSH_MAIN
        )
        sr = run.stages["slow"]
        assert sr.status == StageStatus.FAILED
        assert sr.reason == "timed out after 1s"
        assert recorder.cancelled == ["slow"]

    @pytest.mark.asyncio
    async def test_continue_on_error(self, engine, recorder):
        wf = workflow(
            stage("lint", continue_on_error=True, inputs={"fail": "style"}),
            stage("build", "lint"),
            stage("docs"),
        )
        run = await engine.run(wf, PUSH_MAIN)
        assert run.stages["lint"].status == StageStatus.FAILED
        assert run.stages["build"].status == StageStatus.SKIPPED
        assert run.stages["build"].reason == "upstream 'lint' failed"
        assert run.stages["docs"].status == StageStatus.SUCCEEDED
        assert "build" not in recorder.calls
        assert run.status == RunStatus.SUCCEEDED
        assert run.error_message is None

    @pytest.mark.asyncio
    async def test_invoker_exception_fails_stage(self, engine, invokers):
        def explode(request):
            raise RuntimeError("tool crashed")

        invokers.register_fn("explode", explode)
        run = await engine.run(workflow(stage("a", uses="explode"), stage("b", "a")), PUSH_MAIN)
        assert run.stages["a"].status == StageStatus.FAILED
        assert run.stages["a"].reason == "RuntimeError: tool crashed"
        assert run.stages["b"].status == StageStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_workflow_max_parallel(self, engine, recorder):
        wf = workflow(
            *(stage(f"s{i}", inputs={"delay": 0.05}) for i in range(6)),
            max_parallel=2,
        )
        run = await engine.run(wf, PUSH_MAIN)
        assert run.status == RunStatus.SUCCEEDED
        assert recorder.peak == 2

    @pytest.mark.asyncio
    async def test_engine_max_parallel_one_serializes(self, invokers, recorder, base_env, tmp_path):
        engine = PipelineEngine(invokers=invokers, max_parallel=1, workdir=tmp_path, base_env=base_env)
        wf = workflow(*(stage(f"s{i}", inputs={"delay": 0.01}) for i in range(4)))
        await engine.run(wf, PUSH_MAIN)
        assert recorder.peak == 1
        assert sorted(recorder.calls) == ["s0", "s1", "s2", "s3"]

    def test_max_parallel_must_be_positive(self):
        with pytest.raises(ValueError):
            PipelineEngine(max_parallel=0)

    @pytest.mark.asyncio
    async def test_matrix_condition(self, engine, recorder):
        wf = workflow(
            stage("linux-only", condition={"matrix": {"os": "linux"}}),
            stage("windows-only", condition="matrix.os == windows"),
        )
        trigger = TriggerContext(event="push", branch="main", matrix={"os": "linux"})
        run = await engine.run(wf, trigger)
        assert run.stages["linux-only"].status == StageStatus.SUCCEEDED
        assert run.stages["windows-only"].status == StageStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_malformed_condition_skips_stage_only(self, engine, recorder):
        wf = workflow(stage("odd", condition="branch =="), stage("fine"))
        run = await engine.run(wf, PUSH_MAIN)
        assert run.stages["odd"].status == StageStatus.SKIPPED
        assert run.stages["fine"].status == StageStatus.SUCCEEDED
        assert run.status == RunStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_boolean_condition(self, engine, recorder):
        wf = workflow(stage("off", condition=False), stage("on", condition=True))
        run = await engine.run(wf, PUSH_MAIN)
        assert run.stages["off"].status == StageStatus.SKIPPED
        assert run.stages["off"].reason == "condition not met"
        assert recorder.calls == ["on"]


# ── Cancellation ─────────────────────────────────────────────────────────────


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_with_running_and_pending(self, engine, recorder):
        wf = workflow(stage("A"), stage("B", inputs={"delay": 10}), stage("C", "B"))
        handle = engine.start(wf, PUSH_MAIN)
        await _wait_for(lambda: "B" in recorder.calls and "A" in recorder.calls)

        assert handle.run_id in engine.active_runs()
        assert handle.cancel() is True
        run = await handle.wait()

        assert run.stages["A"].status == StageStatus.SUCCEEDED
        assert run.stages["B"].status == StageStatus.CANCELLED
        assert run.stages["C"].status == StageStatus.SKIPPED
        assert run.stages["C"].reason == "run cancelled"
        assert "C" not in recorder.calls
        assert recorder.cancelled == ["B"]
        assert run.status == RunStatus.CANCELLED
        assert run.error_message == f"Run {run.run_id}: run cancelled"
        assert engine.active_runs() == []

    @pytest.mark.asyncio
    async def test_running_stage_finishes_within_grace(self, invokers, recorder, base_env, tmp_path):
        engine = PipelineEngine(
            invokers=invokers, cancel_grace_seconds=5.0, workdir=tmp_path, base_env=base_env
        )
        wf = workflow(stage("B", inputs={"delay": 0.2}), stage("C", "B"))
        handle = engine.start(wf, PUSH_MAIN)
        await _wait_for(lambda: "B" in recorder.calls)

        engine.cancel(handle.run_id, "superseded by newer push")
        run = await handle.wait()

        assert run.stages["B"].status == StageStatus.SUCCEEDED
        assert run.stages["C"].status == StageStatus.SKIPPED
        assert run.stages["C"].reason == "superseded by newer push"
        assert run.status == RunStatus.CANCELLED

    def test_cancel_unknown_run(self, engine):
        assert engine.cancel("run-missing") is False

    @pytest.mark.asyncio
    async def test_cancel_twice_is_noop(self, engine, recorder):
        handle = engine.start(workflow(stage("B", inputs={"delay": 10})), PUSH_MAIN)
        await _wait_for(lambda: "B" in recorder.calls)
        assert engine.cancel(handle.run_id) is True
        assert engine.cancel(handle.run_id) is False
        await handle.wait()


# ── Termination property ─────────────────────────────────────────────────────


class TestRandomGraphs:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", range(12))
    async def test_every_stage_ends_terminal(self, engine, recorder, seed):
        rng = random.Random(seed)
        stages = []
        for i in range(8):
            needs = rng.sample([f"s{j}" for j in range(i)], rng.randint(0, min(i, 3)))
            fields = {}
            if rng.random() < 0.25:
                fields["inputs"] = {"fail": "boom"}
            if rng.random() < 0.2:
                fields["condition"] = rng.choice(["event == push", "event == pull_request"])
            stages.append(stage(f"s{i}", *needs, **fields))
        wf = workflow(*stages, max_parallel=3)

        run = await engine.run(wf, PUSH_MAIN)

        terminal = {StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED}
        for definition in wf.stages:
            sr = run.stages[definition.name]
            assert sr.status in terminal
            dep_statuses = [run.stages[d].status for d in definition.needs]
            if any(s != StageStatus.SUCCEEDED for s in dep_statuses):
                assert sr.status == StageStatus.SKIPPED
                assert definition.name not in recorder.calls
            if sr.status == StageStatus.SUCCEEDED:
                assert all(s == StageStatus.SUCCEEDED for s in dep_statuses)
            assert recorder.calls.count(definition.name) <= 1

        failed = any(sr.status == StageStatus.FAILED for sr in run.stages.values())
        assert run.status == (RunStatus.FAILED if failed else RunStatus.SUCCEEDED)


# ── Persistence ──────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def registry(tmp_path):
    reg = await open_registry(tmp_path / "runs.db")
    yield reg
    await reg.close()


class TestPersistence:
    @pytest.mark.asyncio
    async def test_run_and_stages_persisted(self, registry, invokers, secret_store, base_env, tmp_path):
        engine = PipelineEngine(
            registry, invokers, secret_store, workdir=tmp_path, base_env=base_env
        )
        run = await engine.run(_ci_workflow(inputs={"fail": "vulns"}), PR_TRIGGER)

        stored = await registry.get_pipeline_run(run.run_id)
        assert stored is not None
        assert stored.status == RunStatus.FAILED
        assert stored.workflow_name == "ci"
        assert stored.trigger.branch == "feature/login"
        assert stored.statuses() == run.statuses()
        assert stored.stages["build"].reason == "upstream 'security' failed"
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_artifacts_dir_keeps_scratch(self, invokers, base_env, tmp_path, recorder):
        artifacts = tmp_path / "artifacts"
        engine = PipelineEngine(
            invokers=invokers, workdir=tmp_path, base_env=base_env, artifacts_dir=artifacts
        )
        run = await engine.run(workflow(stage("a")), PUSH_MAIN)
        assert (artifacts / run.run_id / "a").is_dir()
        assert recorder.requests["a"].scratch_dir == artifacts / run.run_id / "a"
