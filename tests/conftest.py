"""Shared fixtures for the pipeline tests.

Most engine tests use a ``fake`` invoker whose behaviour is driven by the
stage's ``with`` values:

    delay:      seconds to sleep before finishing
    fail:       failure message; the stage fails with it
    fail_times: fail this many attempts, then succeed
    outputs:    mapping returned as stage outputs
"""

from __future__ import annotations

import asyncio
import os
from typing import Any

import pytest

from gantry.pipeline import (
    InvokerRegistry,
    PipelineEngine,
    SecretStore,
    StageDefinition,
    TaskRequest,
    TaskResult,
    WorkflowDefinition,
)


class InvocationRecorder:
    """Fake invoker that records every call it receives."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.requests: dict[str, TaskRequest] = {}
        self.attempts: dict[str, int] = {}
        self.active = 0
        self.peak = 0
        self.cancelled: list[str] = []

    async def invoke(self, request: TaskRequest) -> TaskResult:
        self.calls.append(request.stage)
        self.requests[request.stage] = request
        self.attempts[request.stage] = self.attempts.get(request.stage, 0) + 1
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            delay = float(request.inputs.get("delay", 0))
            if delay:
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self.cancelled.append(request.stage)
            raise
        finally:
            self.active -= 1

        fail_times = int(request.inputs.get("fail_times", 0))
        if fail_times and self.attempts[request.stage] <= fail_times:
            return TaskResult(success=False, exit_code=1, error="flaky failure")
        if request.inputs.get("fail"):
            return TaskResult(success=False, exit_code=1, error=str(request.inputs["fail"]))
        return TaskResult(
            success=True,
            exit_code=0,
            outputs={k: str(v) for k, v in (request.inputs.get("outputs") or {}).items()},
        )


def stage(name: str, *needs: str, **fields: Any) -> dict[str, Any]:
    """A ``fake`` stage definition dict."""
    return {"name": name, "uses": "fake", "needs": list(needs), **fields}


def workflow(*stages: dict[str, Any], **fields: Any) -> WorkflowDefinition:
    return WorkflowDefinition(
        name=fields.pop("name", "wf"),
        stages=[StageDefinition.model_validate(s) for s in stages],
        **fields,
    )


@pytest.fixture
def recorder() -> InvocationRecorder:
    return InvocationRecorder()


@pytest.fixture
def invokers(recorder: InvocationRecorder) -> InvokerRegistry:
    registry = InvokerRegistry()
    registry.register_fn("fake", recorder.invoke)
    return registry


@pytest.fixture
def secret_store() -> SecretStore:
    store = SecretStore({"REGISTRY_TOKEN": "reg-s3cret", "DEPLOY_KEY": "deploy-s3cret"})
    store.seal()
    return store


@pytest.fixture
def base_env() -> dict[str, str]:
    return {"PATH": os.environ.get("PATH", "/usr/bin:/bin"), "HOME": "/tmp"}


@pytest.fixture
def engine(invokers, secret_store, base_env, tmp_path) -> PipelineEngine:
    return PipelineEngine(
        invokers=invokers,
        secret_store=secret_store,
        max_parallel=4,
        cancel_grace_seconds=0.2,
        workdir=tmp_path,
        base_env=base_env,
    )
