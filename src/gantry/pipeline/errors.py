"""Pipeline error taxonomy.

Key exports:
    GantryError — base class for everything raised by the pipeline core
    DefinitionError — invalid workflow (cycle, duplicate stage, missing
        dependency, unknown invoker, undeclared secret); raised before any
        stage is dispatched
    ConditionError — malformed stage condition; the stage fails closed
    StageFailure — a stage task returned non-success
    SecretScopeError — a stage asked for a secret it did not declare
    CancellationError — the run was cancelled
    StateTransitionError — illegal write to a stage's recorded state
"""

from __future__ import annotations


class GantryError(Exception):
    """Base class for pipeline errors."""


class DefinitionError(GantryError, ValueError):
    """The workflow definition is invalid.

    ``cycle`` holds the offending cycle as an ordered list of stage names
    (first name repeated at the end) when the error is a dependency cycle.
    """

    def __init__(self, message: str, *, cycle: list[str] | None = None):
        super().__init__(message)
        self.cycle = cycle


class ConditionError(GantryError):
    """A stage condition expression could not be parsed."""

    def __init__(self, message: str, *, expression: object = None):
        super().__init__(message)
        self.expression = expression


class StageFailure(GantryError):
    """A stage task finished with a non-success result."""

    def __init__(self, stage: str, reason: str, *, exit_code: int | None = None):
        super().__init__(f"Stage '{stage}' failed: {reason}")
        self.stage = stage
        self.reason = reason
        self.exit_code = exit_code


class SecretScopeError(GantryError):
    """Configuration error: a secret was requested outside the stage's scope."""

    def __init__(self, stage: str, secret: str, message: str | None = None):
        super().__init__(
            message or f"Stage '{stage}' requested undeclared secret '{secret}'"
        )
        self.stage = stage
        self.secret = secret


class CancellationError(GantryError):
    """The pipeline run was cancelled."""

    def __init__(self, run_id: str, reason: str = "run cancelled"):
        super().__init__(f"Run {run_id}: {reason}")
        self.run_id = run_id
        self.reason = reason


class StateTransitionError(GantryError, RuntimeError):
    """A stage state write violated the run-state transition rules."""
