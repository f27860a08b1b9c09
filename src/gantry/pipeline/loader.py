"""Workflow loading — YAML files into validated WorkflowDefinitions.

Parsing is declarative only: a ``yaml.SafeLoader`` that rejects duplicate
keys, pydantic validation, then the stage graph check. Any problem
surfaces as :class:`DefinitionError`.

Stages may be written as a list or, GitHub-jobs style, as a mapping keyed
by stage name::

    stages:
      test:
        run: pytest
      build:
        needs: test
        uses: docker-build
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from gantry.pipeline.errors import DefinitionError
from gantry.pipeline.models import WorkflowDefinition

logger = logging.getLogger("gantry.pipeline.loader")

WORKFLOW_SUFFIXES = (".yaml", ".yml")


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects repeated mapping keys instead of keeping the last."""

    def construct_mapping(self, node, deep=False):
        seen: set[Any] = set()
        for key_node, _ in node.value:
            # Merge keys and complex keys are left to SafeLoader
            if not isinstance(key_node, yaml.ScalarNode) or key_node.tag == "tag:yaml.org,2002:merge":
                continue
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"found duplicate key {key!r}",
                    key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def safe_load_workflow(stream: Any) -> Any:
    """``yaml.safe_load`` that raises on duplicate keys, e.g. a stage defined twice."""
    return yaml.load(stream, Loader=_UniqueKeyLoader)


def parse_workflow(raw: Any, *, source: str = "<workflow>") -> WorkflowDefinition:
    """Validate a parsed YAML document into a WorkflowDefinition."""
    if not isinstance(raw, dict):
        raise DefinitionError(
            f"{source}: expected a YAML mapping, got {type(raw).__name__}"
        )
    raw = dict(raw)

    # PyYAML parses bare `on:` as boolean True; normalize it
    if True in raw:
        raw["on"] = raw.pop(True)

    stages = raw.get("stages")
    if isinstance(stages, dict):
        raw["stages"] = [_named_stage(name, body, source) for name, body in stages.items()]
    elif stages is None:
        raise DefinitionError(f"{source}: no 'stages' section found")

    try:
        workflow = WorkflowDefinition.model_validate(raw)
    except ValidationError as exc:
        raise DefinitionError(f"{source}: {_format_validation_error(exc)}") from exc

    workflow.check()
    return workflow


def load_workflow(path: str | Path) -> WorkflowDefinition:
    """Load and validate one workflow file.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        DefinitionError: If the YAML or the workflow is invalid.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Workflow not found: {path}")

    try:
        with open(path) as f:
            raw = safe_load_workflow(f)
    except yaml.YAMLError as exc:
        raise DefinitionError(f"{path}: invalid YAML: {exc}") from exc

    if isinstance(raw, dict) and "name" not in raw:
        raw["name"] = path.stem
    workflow = parse_workflow(raw, source=str(path))
    logger.debug("Loaded workflow '%s' from %s (%d stages)", workflow.name, path, len(workflow.stages))
    return workflow


def load_workflows(workflows_dir: str | Path) -> dict[str, WorkflowDefinition]:
    """Load every ``*.yaml`` / ``*.yml`` workflow in a directory.

    Invalid files are logged and skipped so one broken workflow does not
    take the others down. Returns name → definition.
    """
    workflows_dir = Path(workflows_dir)
    workflows: dict[str, WorkflowDefinition] = {}
    if not workflows_dir.exists():
        logger.warning("No workflows directory found at %s", workflows_dir)
        return workflows

    for path in sorted(workflows_dir.iterdir()):
        if path.suffix not in WORKFLOW_SUFFIXES:
            continue
        try:
            workflow = load_workflow(path)
        except DefinitionError as exc:
            logger.error("Skipping invalid workflow %s: %s", path.name, exc)
            continue
        if workflow.name in workflows:
            logger.error("Duplicate workflow name '%s' in %s, skipping", workflow.name, path.name)
            continue
        workflows[workflow.name] = workflow

    logger.info("Loaded %d workflows from %s", len(workflows), workflows_dir)
    return workflows


def _named_stage(name: Any, body: Any, source: str) -> dict[str, Any]:
    if body is None:
        body = {}
    if not isinstance(body, dict):
        raise DefinitionError(f"{source}: stage '{name}' must be a mapping")
    body = dict(body)
    if "name" in body and body["name"] != name:
        raise DefinitionError(
            f"{source}: stage key '{name}' does not match its name '{body['name']}'"
        )
    body["name"] = str(name)
    return body


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "invalid")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)
