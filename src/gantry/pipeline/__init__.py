"""Pipeline orchestration core.

Workflows are parsed into a validated stage graph and executed by a single
control loop that gates stages on their ``needs``, evaluates run conditions
against the trigger, scopes secrets per stage and short-circuits the
dependents of failed stages.

Key exports:
    PipelineEngine — Executor
    StageGraph — Dependency DAG
    ResultAggregator — Run state owner
    SecretStore, SecretScopeManager — Per-stage secret scoping
    InvokerRegistry — Pluggable task invokers
    PipelineRegistry — SQLite persistence
    WorkflowDefinition — Workflow config model
    PipelineRun, StageRun — Runtime state models
"""

from gantry.pipeline.aggregator import ResultAggregator
from gantry.pipeline.conditions import evaluate_condition, parse_condition
from gantry.pipeline.engine import PipelineEngine, RunHandle
from gantry.pipeline.errors import (
    CancellationError,
    ConditionError,
    DefinitionError,
    GantryError,
    SecretScopeError,
    StageFailure,
    StateTransitionError,
)
from gantry.pipeline.graph import StageGraph
from gantry.pipeline.invokers import (
    CommandResult,
    CommandRunner,
    InvokerRegistry,
    TaskInvoker,
    TaskRequest,
    TaskResult,
)
from gantry.pipeline.loader import load_workflow, load_workflows, parse_workflow
from gantry.pipeline.models import (
    ArtifactRef,
    Finding,
    PipelineRun,
    RunStatus,
    StageDefinition,
    StageRun,
    StageStatus,
    TriggerContext,
    WorkflowDefinition,
    WorkflowInputs,
)
from gantry.pipeline.registry import PipelineRegistry, open_registry
from gantry.pipeline.secrets import ScopedSecrets, SecretScopeManager, SecretStore

__all__ = [
    # Engine
    "PipelineEngine",
    "RunHandle",
    "ResultAggregator",
    "StageGraph",
    # Conditions
    "evaluate_condition",
    "parse_condition",
    # Invokers
    "CommandResult",
    "CommandRunner",
    "InvokerRegistry",
    "TaskInvoker",
    "TaskRequest",
    "TaskResult",
    # Secrets
    "ScopedSecrets",
    "SecretScopeManager",
    "SecretStore",
    # Registry
    "PipelineRegistry",
    "open_registry",
    # Loading
    "load_workflow",
    "load_workflows",
    "parse_workflow",
    # Definition models
    "WorkflowDefinition",
    "StageDefinition",
    "WorkflowInputs",
    "TriggerContext",
    # Runtime state models
    "PipelineRun",
    "RunStatus",
    "StageRun",
    "StageStatus",
    "ArtifactRef",
    "Finding",
    # Errors
    "GantryError",
    "DefinitionError",
    "ConditionError",
    "StageFailure",
    "SecretScopeError",
    "CancellationError",
    "StateTransitionError",
]
