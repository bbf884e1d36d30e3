"""Plan dependency graph: declaration-ordered traversal and cycle detection."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from heapq import heapify, heappop, heappush
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nucleus_orchestrator.domain.models import Plan


class CycleError(ValueError):
    """Raised when plan edges form a cycle; ``cycles`` holds closed paths."""

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        self.cycles: tuple[tuple[str, ...], ...] = tuple(tuple(path) for path in cycles)
        shown = "; ".join(" -> ".join(path) for path in self.cycles[:3])
        if len(self.cycles) > 3:
            shown += "; ..."
        super().__init__(f"Plan graph contains cycle(s): {shown or 'unresolved'}")


class TaskGraph:
    """
    Task ids joined by ``source -> target`` edges.

    A node's rank is the position it was first declared at. Whenever more than
    one task is ready, traversal takes the lowest rank, so the plan's task list
    order is its execution order wherever edges allow.
    """

    __slots__ = ("_rank", "_successors")

    def __init__(
        self,
        nodes: Iterable[str] | None = None,
        edges: Iterable[tuple[str, str]] | None = None,
    ) -> None:
        self._rank: dict[str, int] = {}
        # Inner dicts are insertion-ordered sets.
        self._successors: dict[str, dict[str, None]] = {}
        for node in nodes or ():
            self.add_node(node)
        for source, target in edges or ():
            self.add_edge(source, target)

    @classmethod
    def from_plan(cls, plan: Plan) -> TaskGraph:
        return cls(plan.task_ids, ((edge.source, edge.target) for edge in plan.edges))

    @property
    def nodes(self) -> tuple[str, ...]:
        return tuple(self._rank)

    @property
    def edges(self) -> tuple[tuple[str, str], ...]:
        return tuple(
            (source, target)
            for source in self._rank
            for target in self._by_rank(self._successors[source])
        )

    def __contains__(self, node: object) -> bool:
        return node in self._rank

    def __len__(self) -> int:
        return len(self._rank)

    def add_node(self, node: str) -> None:
        if not isinstance(node, str) or not node:
            raise ValueError("Node ID must be a non-empty string.")
        if node not in self._rank:
            self._rank[node] = len(self._rank)
            self._successors[node] = {}

    def add_edge(self, source: str, target: str) -> None:
        self.add_node(source)
        self.add_node(target)
        self._successors[source][target] = None

    def topological_sort(self) -> tuple[str, ...]:
        """Kahn's algorithm over a rank-keyed heap; raises ``CycleError``."""
        names = self.nodes
        waiting = dict.fromkeys(names, 0)
        for targets in self._successors.values():
            for target in targets:
                waiting[target] += 1

        frontier = [self._rank[node] for node in names if not waiting[node]]
        heapify(frontier)
        emitted: list[str] = []
        while frontier:
            node = names[heappop(frontier)]
            emitted.append(node)
            for target in self._successors[node]:
                waiting[target] -= 1
                if not waiting[target]:
                    heappush(frontier, self._rank[target])

        if len(emitted) < len(names):
            raise CycleError(self._cycles_within([node for node in names if waiting[node]]))
        return tuple(emitted)

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """Cycles closed by DFS back edges, as closed paths such as ``("a", "b", "a")``."""
        return self._cycles_within(self.nodes)

    def _cycles_within(self, candidates: Sequence[str]) -> tuple[tuple[str, ...], ...]:
        allowed = set(candidates)
        finished: set[str] = set()
        found: set[tuple[str, ...]] = set()

        for root in candidates:
            if root in finished:
                continue
            path = [root]
            position = {root: 0}
            pending = [iter(self._by_rank(self._successors[root]))]
            while pending:
                step = next(pending[-1], None)
                if step is None:
                    pending.pop()
                    done = path.pop()
                    del position[done]
                    finished.add(done)
                elif step in position:
                    found.add(_closed_rotation(path[position[step] :]))
                elif step in allowed and step not in finished:
                    position[step] = len(path)
                    path.append(step)
                    pending.append(iter(self._by_rank(self._successors[step])))
        return tuple(sorted(found))

    def _by_rank(self, nodes: Iterable[str]) -> list[str]:
        return sorted(nodes, key=self._rank.__getitem__)


def _closed_rotation(loop: Sequence[str]) -> tuple[str, ...]:
    # Smallest rotation, so one cycle reached from different roots dedupes.
    start = min(range(len(loop)), key=lambda offset: tuple(loop[offset:]) + tuple(loop[:offset]))
    rotated = tuple(loop[start:]) + tuple(loop[:start])
    return (*rotated, rotated[0])


__all__ = ["CycleError", "TaskGraph"]
