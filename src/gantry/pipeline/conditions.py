"""Stage run conditions — evaluated against the run's TriggerContext.

Two equivalent forms are accepted in workflow YAML.

String expressions::

    if: branch == main
    if: event != pull_request && ref == refs/tags/v*
    if: matrix.os == linux || actor == release-bot

Mappings::

    if:
      event: [push, workflow_dispatch]
      branch: "release/*"
      matrix: {os: linux}
    if:
      any:
        - {branch: main}
        - {ref: "refs/tags/*"}

Supported predicates: ``event`` (equality), ``branch`` and ``ref`` (glob),
``actor`` (equality) and ``matrix.<key>`` (equality). ``&&`` binds tighter
than ``||``; parentheses are not supported. Unknown predicate keys evaluate
to False. A malformed expression raises :class:`ConditionError` from
:func:`parse_condition`; :func:`evaluate_condition` turns that into False so
the stage is treated as ineligible while the run carries on.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any, Protocol

from gantry.pipeline.errors import ConditionError
from gantry.pipeline.models import TriggerContext

logger = logging.getLogger("gantry.pipeline.conditions")

PREDICATE_KEYS = frozenset({"event", "branch", "ref", "actor", "matrix"})
_GLOB_KEYS = frozenset({"branch", "ref"})

# Matches: key == value  /  key != value
_COMPARISON_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_.-]*)\s*(==|!=)\s*(.+)$")

# Matches ${{ expr }} or {{ expr }} wrappers
_WRAPPER_RE = re.compile(r"^\$?\{\{\s*(.*?)\s*\}\}$", re.DOTALL)


class Condition(Protocol):
    def evaluate(self, ctx: TriggerContext) -> bool: ...


# ── Condition nodes ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Const:
    value: bool

    def evaluate(self, ctx: TriggerContext) -> bool:
        return self.value


@dataclass(frozen=True)
class Predicate:
    """``key op value`` where key is a predicate name or ``matrix.<name>``."""

    key: str
    expected: tuple[str, ...]
    negate: bool = False

    def evaluate(self, ctx: TriggerContext) -> bool:
        found, actual = _lookup(self.key, ctx)
        if not found:
            # Unknown keys and missing matrix values fail closed, for == and != alike
            return False
        base = self.key.split(".", 1)[0]
        if base in _GLOB_KEYS:
            matched = any(fnmatchcase(actual, pattern) for pattern in self.expected)
        else:
            matched = actual in self.expected
        return not matched if self.negate else matched


@dataclass(frozen=True)
class AllOf:
    parts: tuple[Condition, ...]

    def evaluate(self, ctx: TriggerContext) -> bool:
        return all(p.evaluate(ctx) for p in self.parts)


@dataclass(frozen=True)
class AnyOf:
    parts: tuple[Condition, ...]

    def evaluate(self, ctx: TriggerContext) -> bool:
        return any(p.evaluate(ctx) for p in self.parts)


@dataclass(frozen=True)
class Not:
    inner: Condition

    def evaluate(self, ctx: TriggerContext) -> bool:
        return not self.inner.evaluate(ctx)


# ── Public API ───────────────────────────────────────────────────────────────


def parse_condition(expr: str | dict[str, Any] | bool | None) -> Condition:
    """Compile a condition expression. Raises ConditionError if malformed."""
    if expr is None:
        return Const(True)
    if isinstance(expr, bool):
        return Const(expr)
    if isinstance(expr, str):
        return _parse_string(expr)
    if isinstance(expr, dict):
        return _parse_mapping(expr)
    raise ConditionError(
        f"Condition must be a string or mapping, got {type(expr).__name__}",
        expression=expr,
    )


def evaluate_condition(expr: str | dict[str, Any] | bool | None, ctx: TriggerContext) -> bool:
    """Evaluate a stage condition against the trigger context.

    Never raises: malformed expressions, and any expression naming an
    unknown predicate (even under ``not``), evaluate to False.
    """
    try:
        condition = parse_condition(expr)
    except ConditionError as exc:
        logger.warning("Malformed condition %r treated as false: %s", expr, exc)
        return False
    unknown: set[str] = set()
    _collect_unknown(condition, unknown)
    if unknown:
        logger.warning(
            "Condition %r uses unknown predicates %s, treated as false", expr, sorted(unknown)
        )
        return False
    return condition.evaluate(ctx)


def unknown_keys(expr: str | dict[str, Any] | bool | None) -> set[str]:
    """Predicate keys in a condition that the evaluator does not know.

    Used by ``gantry validate`` to warn about conditions that will always
    fail closed.
    """
    try:
        condition = parse_condition(expr)
    except ConditionError:
        return set()
    found: set[str] = set()
    _collect_unknown(condition, found)
    return found


# ── String parsing ───────────────────────────────────────────────────────────


def _parse_string(text: str) -> Condition:
    expr = text.strip()
    wrapped = _WRAPPER_RE.match(expr)
    if wrapped:
        expr = wrapped.group(1).strip()
    if not expr:
        raise ConditionError("Empty condition expression", expression=text)
    if "(" in expr or ")" in expr:
        raise ConditionError("Parentheses are not supported in conditions", expression=text)

    alternatives: list[Condition] = []
    for or_part in expr.split("||"):
        terms: list[Condition] = []
        for and_part in or_part.split("&&"):
            terms.append(_parse_term(and_part.strip(), text))
        alternatives.append(terms[0] if len(terms) == 1 else AllOf(tuple(terms)))
    return alternatives[0] if len(alternatives) == 1 else AnyOf(tuple(alternatives))


def _parse_term(term: str, original: str) -> Condition:
    if not term:
        raise ConditionError("Dangling '&&' or '||' in condition", expression=original)
    if term.startswith("!") and not term.startswith("!="):
        return Not(_parse_term(term[1:].strip(), original))
    lowered = term.lower()
    if lowered in ("true", "false"):
        return Const(lowered == "true")

    match = _COMPARISON_RE.match(term)
    if not match:
        raise ConditionError(f"Cannot parse condition term '{term}'", expression=original)
    key, op, raw_value = match.group(1), match.group(2), match.group(3).strip()
    value = _unquote(raw_value)
    if value == "" and raw_value not in ('""', "''"):
        raise ConditionError(f"Missing value in condition term '{term}'", expression=original)
    return Predicate(key=_normalize_key(key), expected=(value,), negate=(op == "!="))


def _unquote(raw: str) -> str:
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
        return raw[1:-1]
    if any(ch in raw for ch in ("'", '"')):
        raise ConditionError(f"Unbalanced quotes in value {raw!r}", expression=raw)
    return raw


def _normalize_key(key: str) -> str:
    # GitHub-style aliases
    aliases = {
        "github.event_name": "event",
        "github.ref": "ref",
        "github.ref_name": "branch",
        "github.actor": "actor",
    }
    return aliases.get(key, key)


# ── Mapping parsing ──────────────────────────────────────────────────────────


def _parse_mapping(mapping: dict[str, Any]) -> Condition:
    if not mapping:
        raise ConditionError("Empty condition mapping", expression=mapping)

    parts: list[Condition] = []
    for key, value in mapping.items():
        if key in ("all", "any"):
            if not isinstance(value, list) or not value:
                raise ConditionError(
                    f"'{key}' condition requires a non-empty list", expression=mapping
                )
            subs = tuple(parse_condition(v) for v in value)
            parts.append(AllOf(subs) if key == "all" else AnyOf(subs))
        elif key == "not":
            parts.append(Not(parse_condition(value)))
        elif key == "matrix":
            if not isinstance(value, dict) or not value:
                raise ConditionError(
                    "'matrix' condition requires a mapping of matrix values",
                    expression=mapping,
                )
            for mkey, mval in value.items():
                parts.append(Predicate(key=f"matrix.{mkey}", expected=_expected(mval, mapping)))
        else:
            parts.append(Predicate(key=str(key), expected=_expected(value, mapping)))

    return parts[0] if len(parts) == 1 else AllOf(tuple(parts))


def _expected(value: Any, mapping: dict[str, Any]) -> tuple[str, ...]:
    if isinstance(value, list):
        if not value:
            raise ConditionError("Condition value list is empty", expression=mapping)
        return tuple(_scalar(v, mapping) for v in value)
    return (_scalar(value, mapping),)


def _scalar(value: Any, mapping: dict[str, Any]) -> str:
    if isinstance(value, (dict, list)) or value is None:
        raise ConditionError(f"Condition value {value!r} is not a scalar", expression=mapping)
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


# ── Lookup ───────────────────────────────────────────────────────────────────


def _lookup(key: str, ctx: TriggerContext) -> tuple[bool, str]:
    if key.startswith("matrix."):
        name = key[len("matrix."):]
        if name not in ctx.matrix:
            return False, ""
        value = ctx.matrix[name]
        if isinstance(value, bool):
            return True, str(value).lower()
        return True, str(value)
    if key in ("event", "branch", "ref", "actor"):
        return True, getattr(ctx, key)
    logger.warning("Unknown condition predicate '%s' evaluates to false", key)
    return False, ""


def _collect_unknown(condition: Condition, found: set[str]) -> None:
    if isinstance(condition, Predicate):
        base = condition.key.split(".", 1)[0]
        if base not in PREDICATE_KEYS or condition.key == "matrix":
            found.add(condition.key)
    elif isinstance(condition, (AllOf, AnyOf)):
        for part in condition.parts:
            _collect_unknown(part, found)
    elif isinstance(condition, Not):
        _collect_unknown(condition.inner, found)
