"""Stage graph — dependency DAG built from a workflow's ``needs`` edges.

Key exports:
    StageGraph — validation (duplicates, missing deps, cycles), topological
        ordering, readiness and downstream reachability queries.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING, Iterable, Mapping

from gantry.pipeline.errors import DefinitionError
from gantry.pipeline.models import StageStatus

if TYPE_CHECKING:
    from gantry.pipeline.models import StageDefinition

logger = logging.getLogger("gantry.pipeline.graph")


class StageGraph:
    """Directed acyclic graph of stages.

    Edges run from a dependency to its dependents: ``build`` needs ``test``
    gives the edge ``test -> build``. Construction never raises; call
    :meth:`validate` to reject duplicate names, unknown ``needs`` targets
    and cycles.
    """

    def __init__(self, stages: Iterable[StageDefinition]):
        stages = list(stages)
        self._names: list[str] = [s.name for s in stages]
        self._known: set[str] = set(self._names)

        self._deps: dict[str, list[str]] = {}
        self._dependents: dict[str, set[str]] = {name: set() for name in self._known}
        for stage in stages:
            self._deps.setdefault(stage.name, [])
            for dep in stage.needs:
                if dep not in self._deps[stage.name]:
                    self._deps[stage.name].append(dep)
                if dep in self._known:
                    self._dependents[dep].add(stage.name)

    # ── Validation ───────────────────────────────────────────────────────────

    def validate(self) -> None:
        """Raise DefinitionError if the graph cannot be executed."""
        dupes = sorted({n for n in self._names if self._names.count(n) > 1})
        if dupes:
            raise DefinitionError(f"Duplicate stage names: {dupes}")

        for name in self._names:
            for dep in self._deps[name]:
                if dep not in self._known:
                    raise DefinitionError(
                        f"Stage '{name}' needs unknown stage '{dep}'. "
                        f"Known stages: {sorted(self._known)}"
                    )

        cycle = self.find_cycle()
        if cycle:
            raise DefinitionError(
                f"Dependency cycle detected: {' -> '.join(cycle)}", cycle=cycle
            )

    def find_cycle(self) -> list[str] | None:
        """Return one dependency cycle as an ordered list of stage names.

        The list follows ``needs`` edges and repeats the first name at the
        end, e.g. ``["a", "b", "a"]`` for a needs b, b needs a. Returns None
        for an acyclic graph.
        """
        white, gray, black = 0, 1, 2
        color = {name: white for name in self._names}

        for root in self._names:
            if color[root] != white:
                continue
            # Iterative DFS; each frame is (node, iterator over its deps)
            path: list[str] = [root]
            stack = [(root, iter(self._deps[root]))]
            color[root] = gray
            while stack:
                node, deps = stack[-1]
                advanced = False
                for dep in deps:
                    if dep not in color:
                        continue
                    if color[dep] == gray:
                        start = path.index(dep)
                        return path[start:] + [dep]
                    if color[dep] == white:
                        color[dep] = gray
                        path.append(dep)
                        stack.append((dep, iter(self._deps[dep])))
                        advanced = True
                        break
                if not advanced:
                    color[node] = black
                    path.pop()
                    stack.pop()
        return None

    # ── Ordering ─────────────────────────────────────────────────────────────

    def topological_order(self) -> list[str]:
        """Stage names in dependency order (definition order breaks ties)."""
        return [name for level in self.levels() for name in level]

    def levels(self) -> list[list[str]]:
        """Group stages into levels; every stage in a level may run in parallel."""
        indeg = {name: len([d for d in self._deps[name] if d in self._known]) for name in self._names}
        order = {name: i for i, name in enumerate(self._names)}
        q = deque(name for name in self._names if indeg[name] == 0)

        levels: list[list[str]] = []
        processed = 0
        while q:
            level: list[str] = []
            for _ in range(len(q)):
                node = q.popleft()
                level.append(node)
                processed += 1
            nxt: list[str] = []
            for node in level:
                for child in self._dependents[node]:
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        nxt.append(child)
            q.extend(sorted(nxt, key=order.__getitem__))
            levels.append(level)

        if processed != len(self._names):
            stuck = sorted(n for n, d in indeg.items() if d > 0)
            raise DefinitionError(f"Stage graph has a cycle. Stuck stages: {stuck}")
        return levels

    # ── Queries ──────────────────────────────────────────────────────────────

    @property
    def names(self) -> list[str]:
        return list(self._names)

    def dependencies(self, name: str) -> list[str]:
        return list(self._deps.get(name, []))

    def dependents(self, name: str) -> set[str]:
        return set(self._dependents.get(name, set()))

    def ready(self, state: Mapping[str, StageStatus]) -> set[str]:
        """Pending stages whose every dependency has Succeeded.

        Stages missing from ``state`` count as Pending.
        """
        result: set[str] = set()
        for name in self._names:
            if state.get(name, StageStatus.PENDING) != StageStatus.PENDING:
                continue
            if all(state.get(dep) == StageStatus.SUCCEEDED for dep in self._deps[name]):
                result.add(name)
        return result

    def downstream(self, names: Iterable[str]) -> set[str]:
        """All transitive dependents of ``names`` (single BFS pass).

        The starting stages themselves are not included.
        """
        start = set(names)
        seen: set[str] = set()
        q = deque(start)
        while q:
            node = q.popleft()
            for child in self._dependents.get(node, ()):
                if child not in seen and child not in start:
                    seen.add(child)
                    q.append(child)
        return seen

    def upstream(self, name: str) -> set[str]:
        """All transitive dependencies of a stage."""
        seen: set[str] = set()
        q = deque(self._deps.get(name, []))
        while q:
            node = q.popleft()
            if node in seen or node not in self._known:
                continue
            seen.add(node)
            q.extend(self._deps.get(node, []))
        return seen
