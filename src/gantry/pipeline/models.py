"""Pipeline Pydantic models — workflow definitions and runtime state.

Key exports:
    Definition models: WorkflowDefinition, StageDefinition, WorkflowInputs
    Trigger model: TriggerContext
    Runtime state models: PipelineRun, RunStatus, StageRun, StageStatus,
        ArtifactRef, Finding
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator


# ── Enums ────────────────────────────────────────────────────────────────────


class StageStatus(str, Enum):
    """Stage lifecycle states."""

    PENDING = "pending"
    ELIGIBLE = "eligible"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {
        StageStatus.SUCCEEDED,
        StageStatus.FAILED,
        StageStatus.SKIPPED,
        StageStatus.CANCELLED,
    }
)


class RunStatus(str, Enum):
    """Pipeline run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


SEVERITY_LEVELS = ("UNKNOWN", "LOW", "MEDIUM", "HIGH", "CRITICAL")

# ── Stage name validation ────────────────────────────────────────────────────

STAGE_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")


# ── Invocation parameters ────────────────────────────────────────────────────


class WorkflowInputs(BaseModel):
    """Workflow invocation parameters shared by the built-in task invokers.

    Unknown keys are kept so custom invokers can read their own parameters.
    """

    dockerfile: str = "Dockerfile"
    context: str = "."
    image_name: str | None = None
    push: bool = False
    platforms: list[str] = Field(default_factory=lambda: ["linux/amd64"])
    terraform_version: str | None = None
    working_directory: str = "."
    localstack: bool = False
    chart_path: str | None = None
    release_name: str | None = None
    namespace: str = "default"
    scan_path: str = "."
    fail_on_severity: str = "CRITICAL,HIGH"

    model_config = {"extra": "allow"}

    @field_validator("platforms", mode="before")
    @classmethod
    def _split_platforms(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        return v

    @field_validator("fail_on_severity")
    @classmethod
    def _validate_severity(cls, v: str) -> str:
        levels = [s.strip().upper() for s in v.split(",") if s.strip()]
        unknown = [s for s in levels if s not in SEVERITY_LEVELS]
        if unknown or not levels:
            raise ValueError(
                f"fail_on_severity must list levels from {SEVERITY_LEVELS}, got {v!r}"
            )
        return ",".join(levels)

    def as_dict(self) -> dict[str, Any]:
        """All parameters, declared and extra, as a plain dict."""
        return self.model_dump()


# ── Trigger ──────────────────────────────────────────────────────────────────


class TriggerContext(BaseModel):
    """The event that started a pipeline run. Immutable once created."""

    event: str
    ref: str = ""
    branch: str = ""
    actor: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    matrix: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _derive_ref_and_branch(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        ref = data.get("ref") or ""
        branch = data.get("branch") or ""
        if not branch and ref.startswith("refs/heads/"):
            data["branch"] = ref[len("refs/heads/"):]
        elif branch and not ref:
            data["ref"] = f"refs/heads/{branch}"
        return data

    @classmethod
    def from_github(cls, event_type: str, payload: dict[str, Any]) -> TriggerContext:
        """Build a trigger context from a GitHub webhook delivery."""
        actor = (payload.get("sender") or {}).get("login", "")
        if event_type == "pull_request":
            pr = payload.get("pull_request") or {}
            number = pr.get("number") or payload.get("number")
            return cls(
                event=event_type,
                ref=f"refs/pull/{number}/merge" if number else "",
                branch=(pr.get("head") or {}).get("ref", ""),
                actor=actor,
                payload=payload,
            )
        return cls(
            event=event_type,
            ref=payload.get("ref", "") or "",
            actor=actor,
            payload=payload,
        )

    def namespace(self) -> dict[str, Any]:
        """Values exposed to conditions and templates under ``trigger``."""
        return {
            "event": self.event,
            "ref": self.ref,
            "branch": self.branch,
            "actor": self.actor,
            "payload": self.payload,
        }


# ── Definition Models (parsed from YAML) ────────────────────────────────────


class StageDefinition(BaseModel):
    """A single stage in a workflow definition."""

    name: str
    description: str = ""
    needs: list[str] = []

    # Run condition, string expression or mapping form
    condition: bool | str | dict[str, Any] | None = Field(
        None, validation_alias=AliasChoices("condition", "if")
    )

    # Task reference
    uses: str = "command"
    run: str | None = None
    inputs: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("inputs", "with")
    )
    env: dict[str, str] = {}
    working_directory: str | None = Field(
        None, validation_alias=AliasChoices("working_directory", "working-directory")
    )

    # Scoped secrets and declared outputs
    secrets: list[str] = []
    outputs: list[str] = []

    # Execution policy
    timeout: str | None = None
    retry: int = Field(0, ge=0, le=5)
    continue_on_error: bool = Field(
        False, validation_alias=AliasChoices("continue_on_error", "continue-on-error")
    )

    model_config = {"populate_by_name": True}

    @field_validator("needs", "secrets", "outputs", mode="before")
    @classmethod
    def _coerce_list(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("env", mode="before")
    @classmethod
    def _coerce_env(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        return {str(k): _env_str(val) for k, val in v.items()}

    @model_validator(mode="after")
    def validate_stage(self) -> StageDefinition:
        if not STAGE_NAME_PATTERN.match(self.name):
            msg = f"Stage name '{self.name}' must match pattern {STAGE_NAME_PATTERN.pattern}"
            raise ValueError(msg)
        if self.name in self.needs:
            msg = f"Stage '{self.name}' cannot depend on itself"
            raise ValueError(msg)
        if self.uses == "command" and not self.run:
            msg = f"Stage '{self.name}': command stages require 'run'"
            raise ValueError(msg)
        if self.timeout:
            parse_duration_seconds(self.timeout)
        # Preserve order, drop repeats
        self.needs = list(dict.fromkeys(self.needs))
        self.secrets = list(dict.fromkeys(self.secrets))
        return self

    def parse_timeout_seconds(self) -> int | None:
        """Parse the timeout string (e.g. '30m', '2h') to seconds."""
        if not self.timeout:
            return None
        return parse_duration_seconds(self.timeout)


class WorkflowDefinition(BaseModel):
    """Complete workflow definition parsed from YAML."""

    name: str = "workflow"
    description: str = ""
    triggers: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("triggers", "on")
    )
    inputs: dict[str, Any] = {}
    env: dict[str, str] = {}
    max_parallel: int | None = Field(None, ge=1)
    stages: list[StageDefinition] = Field(min_length=1)

    model_config = {"populate_by_name": True}

    @field_validator("triggers", mode="before")
    @classmethod
    def _coerce_triggers(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        if isinstance(v, dict):
            return [str(k) for k in v]
        return v

    @field_validator("env", mode="before")
    @classmethod
    def _coerce_env(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        return {str(k): _env_str(val) for k, val in v.items()}

    def get_stage(self, name: str) -> StageDefinition | None:
        """Look up a stage by name."""
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]

    def accepts_event(self, event: str) -> bool:
        """True if a trigger of this event type should start the workflow."""
        return not self.triggers or event in self.triggers

    def check(self) -> None:
        """Validate the stage graph. Raises DefinitionError."""
        from gantry.pipeline.graph import StageGraph

        StageGraph(self.stages).validate()


# ── Runtime State Models ─────────────────────────────────────────────────────


class ArtifactRef(BaseModel):
    """Opaque reference to an artifact held in an external store."""

    name: str
    uri: str
    kind: str = "file"


class Finding(BaseModel):
    """One entry from a structured findings report (SARIF result)."""

    rule_id: str
    level: str = "warning"
    message: str = ""
    location: str | None = None
    tool: str | None = None


class StageRun(BaseModel):
    """Runtime state of a single stage within a pipeline run."""

    run_id: str
    stage: str

    status: StageStatus = StageStatus.PENDING
    reason: str | None = None

    # Results
    outputs: dict[str, str] = {}
    artifacts: list[ArtifactRef] = []
    findings: list[Finding] = []
    exit_code: int | None = None
    continue_on_error: bool = False

    # Retry tracking (one logical invocation regardless of attempts)
    attempts: int = 0

    # Timing
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class PipelineRun(BaseModel):
    """Runtime state of a pipeline execution."""

    run_id: str
    workflow_name: str
    definition_snapshot: str = "{}"  # JSON-serialized WorkflowDefinition

    trigger: TriggerContext | None = None
    inputs: dict[str, Any] = {}

    status: RunStatus = RunStatus.PENDING
    stages: dict[str, StageRun] = {}

    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    error_message: str | None = None

    def stage(self, name: str) -> StageRun | None:
        return self.stages.get(name)

    def statuses(self) -> dict[str, StageStatus]:
        """Stage name → status snapshot."""
        return {name: sr.status for name, sr in self.stages.items()}


# ── Helpers ──────────────────────────────────────────────────────────────────


def new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"


def parse_duration_seconds(duration: str) -> int:
    """Parse a duration string like '30s', '5m', '2h', '1d' to seconds.

    Raises ValueError on invalid format.
    """
    match = re.match(r"^(\d+)\s*(s|m|h|d)$", duration.strip())
    if not match:
        msg = f"Invalid duration format: '{duration}'. Expected <number><s|m|h|d>"
        raise ValueError(msg)
    value = int(match.group(1))
    unit = match.group(2)
    multipliers = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    return value * multipliers[unit]


def _env_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)
