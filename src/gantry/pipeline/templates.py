"""Template expression resolution for stage inputs.

Resolves ``{{ expression }}`` templates in stage ``inputs``, ``run`` and
``env`` values against the run's namespace just before a stage starts.

Supports:
    - Dotted path access: ``{{ inputs.image_name }}``
    - Upstream outputs: ``{{ stages.build.outputs.digest }}``
    - Trigger fields: ``{{ trigger.branch }}``, ``{{ trigger.payload.after }}``
    - Matrix values: ``{{ matrix.os }}``
    - Scoped secrets: ``{{ secrets.REGISTRY_TOKEN }}``
    - Index access: ``{{ inputs.platforms[0] }}``
    - Filter functions: ``{{ inputs.platforms | join }}``
    - Comparison expressions: ``{{ inputs.push == true }}``
    - Literal passthrough for non-string values

No arbitrary code execution and no loops or conditionals; expressions only
resolve against the known roots listed above.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

logger = logging.getLogger("gantry.pipeline.templates")

# Matches {{ expression }} with optional whitespace
_TEMPLATE_RE = re.compile(r"\{\{\s*(.+?)\s*\}\}")

# Matches a filter: expr | filter_name
_FILTER_RE = re.compile(r"^(.+?)\s*\|\s*([a-zA-Z_][a-zA-Z0-9_]*)$")

# Matches comparison: expr != value  or  expr == value
_COMPARISON_RE = re.compile(r"^(.+?)\s*(!=|==)\s*(.+)$")

# Matches dotted path with optional array index: inputs.platforms[0]
_PATH_SEGMENT_RE = re.compile(r"([a-zA-Z_][a-zA-Z0-9_-]*)(?:\[(\d+)\])?")

TEMPLATE_ROOTS = frozenset({"inputs", "trigger", "matrix", "stages", "secrets"})


class TemplateResolver:
    """Resolves ``{{ expression }}`` templates against a namespace of values.

    Usage::

        resolver = TemplateResolver({
            "inputs": {"image_name": "ghcr.io/acme/api"},
            "stages": {"build": {"outputs": {"digest": "sha256:..."}}},
        })
        resolver.resolve("{{ inputs.image_name }}@{{ stages.build.outputs.digest }}")
    """

    def __init__(
        self,
        namespace: dict[str, Any] | None = None,
        *,
        filters: dict[str, Any] | None = None,
    ):
        self._namespace = namespace or {}
        self._filters: dict[str, Any] = filters or {}

    def resolve(self, value: Any) -> Any:
        """Resolve template expressions in a value.

        - Strings with ``{{ }}`` are resolved.
        - Dicts have their values recursively resolved.
        - Lists have their items recursively resolved.
        - Other types are returned as-is.
        """
        if isinstance(value, str):
            return self._resolve_string(value)
        if isinstance(value, dict):
            return {k: self.resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve(item) for item in value]
        return value

    def resolve_expr(self, expr: str) -> Any:
        """Resolve a single expression string (without {{ }} delimiters).

        Returns the resolved value, or None if the path does not exist.
        """
        filter_match = _FILTER_RE.match(expr)
        if filter_match:
            inner_expr = filter_match.group(1).strip()
            filter_name = filter_match.group(2)
            inner_value = self._resolve_path(inner_expr)
            return self._apply_filter(filter_name, inner_value)

        cmp_match = _COMPARISON_RE.match(expr)
        if cmp_match:
            lhs_value = self._resolve_path(cmp_match.group(1).strip())
            rhs_value = self._parse_literal(cmp_match.group(3).strip())
            if cmp_match.group(2) == "!=":
                return lhs_value != rhs_value
            return lhs_value == rhs_value

        return self._resolve_path(expr)

    def _resolve_string(self, text: str) -> Any:
        """Resolve all ``{{ }}`` expressions in a string.

        If the entire string is a single expression, return the raw value
        (preserving type). Otherwise, interpolate as string.
        """
        if "{{" not in text:
            return text

        stripped = text.strip()
        single_match = re.fullmatch(r"\{\{\s*([^{}]+?)\s*\}\}", stripped)
        if single_match:
            return self.resolve_expr(single_match.group(1))

        def _replacer(m: re.Match) -> str:
            result = self.resolve_expr(m.group(1))
            if result is None:
                return ""
            if isinstance(result, bool):
                return str(result).lower()
            return str(result)

        return _TEMPLATE_RE.sub(_replacer, text)

    def _resolve_path(self, path: str) -> Any:
        """Resolve a dotted path like ``inputs.platforms[0]`` against the namespace."""
        current: Any = self._namespace

        for segment in path.strip().split("."):
            if current is None:
                return None

            match = _PATH_SEGMENT_RE.fullmatch(segment)
            if not match:
                return None

            key = match.group(1)
            idx_str = match.group(2)

            # ScopedSecrets is a Mapping whose lookup raises on undeclared names
            if isinstance(current, Mapping):
                current = current.get(key)
            elif hasattr(current, key):
                current = getattr(current, key)
            else:
                return None

            if idx_str is not None:
                idx = int(idx_str)
                if isinstance(current, (list, tuple)) and 0 <= idx < len(current):
                    current = current[idx]
                else:
                    return None

        return current

    def _apply_filter(self, filter_name: str, value: Any) -> Any:
        """Apply a named filter function to a value."""
        if filter_name in self._filters:
            fn = self._filters[filter_name]
            try:
                return fn(value)
            except Exception:
                logger.warning("Filter '%s' failed on value %r", filter_name, value)
                return value

        if filter_name == "str":
            return str(value) if value is not None else ""
        if filter_name == "int":
            try:
                return int(value)
            except (ValueError, TypeError):
                return 0
        if filter_name == "default":
            return value if value is not None else ""
        if filter_name == "join":
            if isinstance(value, (list, tuple)):
                return ",".join(str(v) for v in value)
            return value
        if filter_name == "lower":
            return str(value).lower() if value is not None else ""

        logger.warning("Unknown template filter: '%s'", filter_name)
        return value

    @staticmethod
    def _parse_literal(raw: str) -> Any:
        """Parse a literal value from an expression RHS."""
        if raw == "null" or raw == "None":
            return None
        if raw == "true" or raw == "True":
            return True
        if raw == "false" or raw == "False":
            return False
        if raw.startswith('"') and raw.endswith('"'):
            return raw[1:-1]
        if raw.startswith("'") and raw.endswith("'"):
            return raw[1:-1]
        try:
            return int(raw)
        except ValueError:
            pass
        try:
            return float(raw)
        except ValueError:
            pass
        return raw


def template_references(value: Any) -> list[list[str]]:
    """Return the dotted paths referenced by templates in ``value``.

    Each path is split into segments with array indices dropped, e.g.
    ``{{ stages.build.outputs.digest | str }}`` gives
    ``[["stages", "build", "outputs", "digest"]]``.
    """
    refs: list[list[str]] = []
    if isinstance(value, str):
        for m in _TEMPLATE_RE.finditer(value):
            expr = m.group(1)
            filter_match = _FILTER_RE.match(expr)
            if filter_match:
                expr = filter_match.group(1)
            cmp_match = _COMPARISON_RE.match(expr)
            if cmp_match:
                expr = cmp_match.group(1)
            segments = []
            for segment in expr.strip().split("."):
                seg_match = _PATH_SEGMENT_RE.fullmatch(segment)
                segments.append(seg_match.group(1) if seg_match else segment)
            refs.append(segments)
    elif isinstance(value, dict):
        for v in value.values():
            refs.extend(template_references(v))
    elif isinstance(value, list):
        for item in value:
            refs.extend(template_references(item))
    return refs


def resolve_templates(
    value: Any,
    *,
    inputs: dict[str, Any] | None = None,
    trigger: dict[str, Any] | None = None,
    matrix: dict[str, Any] | None = None,
    stages: dict[str, Any] | None = None,
    secrets: Mapping[str, str] | None = None,
    filters: dict[str, Any] | None = None,
) -> Any:
    """Resolve ``{{ expression }}`` templates against a stage's namespace.

    Args:
        value: The value (string, dict, list, or scalar) to resolve.
        inputs: Workflow invocation parameters.
        trigger: Trigger context fields.
        matrix: Matrix values of the run.
        stages: Upstream stage results (``{name: {"outputs": {...}}}``).
        secrets: The stage's ScopedSecrets.
        filters: Custom filter functions (name → callable).

    Returns:
        The resolved value with all template expressions expanded.
    """
    namespace: dict[str, Any] = {}
    if inputs is not None:
        namespace["inputs"] = inputs
    if trigger is not None:
        namespace["trigger"] = trigger
    if matrix is not None:
        namespace["matrix"] = matrix
    if stages is not None:
        namespace["stages"] = stages
    if secrets is not None:
        namespace["secrets"] = secrets
    return TemplateResolver(namespace, filters=filters).resolve(value)
