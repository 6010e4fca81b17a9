"""Resource graph: ordered resource specs with parent→child dependency edges."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from sb_lifecycle.config.models import PARENT_KINDS, ResourceSpec
from sb_lifecycle.errors import GraphError


@dataclass(frozen=True, slots=True)
class DependencyEdge:
    """``parent`` owns ``child``; the child is created after and deleted before it."""

    parent: str
    child: str


class ResourceGraph:
    """A set of ResourceSpecs keyed by name.

    Parents may be declared after their children; ordering is resolved by
    ``ordered()``. Parent existence and kind compatibility are checked by
    ``validate()``, which every ordering call runs first.
    """

    def __init__(self, specs: Iterable[ResourceSpec] = ()) -> None:
        self._specs: dict[str, ResourceSpec] = {}
        for spec in specs:
            self.add(spec)

    def add(self, spec: ResourceSpec) -> None:
        if spec.name in self._specs:
            msg = f"duplicate resource name '{spec.name}'"
            raise GraphError(msg)
        self._specs[spec.name] = spec

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    def __getitem__(self, name: str) -> ResourceSpec:
        return self._specs[name]

    @property
    def specs(self) -> list[ResourceSpec]:
        """Specs in declaration order."""
        return list(self._specs.values())

    def edges(self) -> list[DependencyEdge]:
        return [
            DependencyEdge(parent=spec.parent, child=spec.name)
            for spec in self._specs.values()
            if spec.parent is not None
        ]

    def children(self, name: str) -> list[ResourceSpec]:
        return [s for s in self._specs.values() if s.parent == name]

    def validate(self) -> None:
        """Check every parent reference resolves to a spec of the right kind."""
        for spec in self._specs.values():
            if spec.parent is None:
                continue
            parent = self._specs.get(spec.parent)
            if parent is None:
                msg = (
                    f"{spec.kind} '{spec.name}' references unknown parent "
                    f"'{spec.parent}'"
                )
                raise GraphError(msg)
            expected = PARENT_KINDS[spec.kind]
            if parent.kind != expected:
                msg = (
                    f"{spec.kind} '{spec.name}' must be owned by a {expected}, "
                    f"but '{parent.name}' is a {parent.kind}"
                )
                raise GraphError(msg)

    def ordered(self) -> list[ResourceSpec]:
        """Topological order, stable with respect to declaration order.

        At every step the earliest-declared spec whose parent is already
        placed comes next, so a graph declared parents-first keeps its order.
        """
        self.levels()  # validates and rejects cycles
        pending = list(self._specs.values())
        placed: set[str] = set()
        order: list[ResourceSpec] = []
        while pending:
            spec = next(
                s for s in pending if s.parent is None or s.parent in placed
            )
            pending.remove(spec)
            placed.add(spec.name)
            order.append(spec)
        return order

    def levels(self) -> list[list[ResourceSpec]]:
        """Specs grouped by depth; everything in a level depends only on earlier levels.

        Kahn's algorithm, processed a whole frontier at a time. Any spec
        left unvisited sits on a cycle.
        """
        self.validate()
        remaining = dict(self._specs)
        placed: set[str] = set()
        levels: list[list[ResourceSpec]] = []
        while remaining:
            frontier = [
                spec
                for spec in remaining.values()
                if spec.parent is None or spec.parent in placed
            ]
            if not frontier:
                cycle = ", ".join(sorted(remaining))
                msg = f"dependency cycle among resources: {cycle}"
                raise GraphError(msg)
            for spec in frontier:
                del remaining[spec.name]
                placed.add(spec.name)
            levels.append(frontier)
        return levels
