"""Dependency graph - ordering constraints between deployable units."""

from collections.abc import Iterable

from ..core.exceptions import CycleDetected, DuplicateUnit, UnknownDependency
from .models import DeployableUnit

# DFS colours
_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


class DependencyGraph:
    """Owns a set of deployable units and orders them for deployment.

    Edges point from a unit to the units it depends on. Ordering is
    deterministic for a given unit set: the traversal visits units and
    their dependencies in ascending id order.
    """

    def __init__(self) -> None:
        self._units: dict[str, DeployableUnit] = {}

    @classmethod
    def from_units(cls, units: Iterable[DeployableUnit]) -> "DependencyGraph":
        """Build a graph from units given in any order.

        Args:
            units: Units to add

        Returns:
            Validated dependency graph

        Raises:
            DuplicateUnit: If two units share an id
            UnknownDependency: If a unit depends on an id not in the set
            CycleDetected: If the dependencies are cyclic
        """
        units = list(units)
        graph = cls()

        ids: set[str] = set()
        for unit in units:
            if unit.id in ids:
                raise DuplicateUnit(unit.id)
            ids.add(unit.id)

        for unit in sorted(units, key=lambda u: u.id):
            missing = unit.depends_on - ids
            if missing:
                raise UnknownDependency(unit.id, list(missing))
            graph._units[unit.id] = unit

        graph.topological_order()
        return graph

    def add_unit(self, unit: DeployableUnit) -> None:
        """Add a unit whose dependencies are already part of the graph.

        Args:
            unit: Unit to add

        Raises:
            DuplicateUnit: If the id already exists
            CycleDetected: If the unit depends on itself
            UnknownDependency: If a dependency id is absent
        """
        if unit.id in self._units:
            raise DuplicateUnit(unit.id)
        if unit.id in unit.depends_on:
            raise CycleDetected([unit.id, unit.id])

        missing = unit.depends_on - self._units.keys()
        if missing:
            raise UnknownDependency(unit.id, list(missing))

        self._units[unit.id] = unit

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._units

    def __len__(self) -> int:
        return len(self._units)

    def get(self, unit_id: str) -> DeployableUnit:
        return self._units[unit_id]

    @property
    def units(self) -> list[DeployableUnit]:
        return [self._units[uid] for uid in sorted(self._units)]

    def dependencies_of(self, unit_id: str) -> set[str]:
        return set(self._units[unit_id].depends_on)

    def dependents_of(self, unit_id: str) -> set[str]:
        return {
            uid for uid, unit in self._units.items() if unit_id in unit.depends_on
        }

    def descendants(self, unit_id: str) -> set[str]:
        """Every unit that transitively depends on ``unit_id``."""
        found: set[str] = set()
        frontier = [unit_id]
        while frontier:
            for dependent in self.dependents_of(frontier.pop()):
                if dependent not in found:
                    found.add(dependent)
                    frontier.append(dependent)
        return found

    def roots(self) -> list[str]:
        """Units without dependencies, sorted by id."""
        return sorted(uid for uid, unit in self._units.items() if not unit.depends_on)

    def topological_order(self) -> list[str]:
        """Order unit ids so every dependency precedes its dependents.

        Depth-first traversal with three-colour marking; a back edge to a
        unit still in progress is a cycle.

        Returns:
            Unit ids in deployment order

        Raises:
            CycleDetected: With the offending cycle, if the graph is cyclic
        """
        color = {uid: _UNVISITED for uid in self._units}
        order: list[str] = []
        path: list[str] = []

        def visit(uid: str) -> None:
            color[uid] = _IN_PROGRESS
            path.append(uid)

            for dep in sorted(self._units[uid].depends_on):
                if color[dep] == _IN_PROGRESS:
                    start = path.index(dep)
                    raise CycleDetected(path[start:] + [dep])
                if color[dep] == _UNVISITED:
                    visit(dep)

            path.pop()
            color[uid] = _DONE
            order.append(uid)

        for uid in sorted(self._units):
            if color[uid] == _UNVISITED:
                visit(uid)

        return order

    def levels(self) -> list[list[str]]:
        """Group units into stages that can be deployed in parallel.

        A unit's stage is one past the deepest stage of its dependencies.

        Returns:
            List of stages, each sorted by id
        """
        depth: dict[str, int] = {}
        for uid in self.topological_order():
            deps = self._units[uid].depends_on
            depth[uid] = 1 + max((depth[d] for d in deps), default=-1)

        stages: list[list[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for uid in sorted(depth):
            stages[depth[uid]].append(uid)
        return stages
