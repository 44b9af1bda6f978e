"""Pure dependency-graph algorithms: cycle detection and topological layering.

A graph maps a ticket id to the ids it depends on (its prerequisites).
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from enum import Enum

Graph = Mapping[str, Iterable[str]]

_ON_PATH = 1
_DONE = 2


class DependencyValidationError(ValueError):
    """Base error for rejected dependency edge mutations."""


class CycleError(DependencyValidationError):
    """Adding the requested edges would close a dependency cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Dependency cycle detected: {' → '.join(cycle)}")
        self.cycle = cycle


class CrossProjectError(DependencyValidationError):
    """An edge connects tickets from different projects."""

    def __init__(self, ticket_id: str, depends_on_ticket_id: str) -> None:
        super().__init__(
            "Cross-project dependency not allowed: "
            f'ticket "{ticket_id}" and "{depends_on_ticket_id}" belong to different projects',
        )
        self.ticket_id = ticket_id
        self.depends_on_ticket_id = depends_on_ticket_id


class TicketNotFoundError(DependencyValidationError):
    """An edge references a ticket that does not exist."""

    def __init__(self, ticket_id: str) -> None:
        super().__init__(f'Ticket "{ticket_id}" not found')
        self.ticket_id = ticket_id


class DependencyCheckKind(str, Enum):
    OK = "ok"
    CYCLE = "cycle"
    CROSS_PROJECT = "cross_project"
    MISSING_TICKET = "missing_ticket"


@dataclass(slots=True, frozen=True)
class DependencyEdge:
    """Requested edge: ``ticket_id`` depends on ``depends_on_ticket_id``."""

    ticket_id: str
    depends_on_ticket_id: str


@dataclass(slots=True, frozen=True)
class DependencyCheck:
    """Outcome of validating a batch of edges before any write."""

    kind: DependencyCheckKind
    cycle: tuple[str, ...] = ()
    ticket_id: str | None = None
    depends_on_ticket_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.kind == DependencyCheckKind.OK

    def raise_for_error(self) -> None:
        if self.kind == DependencyCheckKind.CYCLE:
            raise CycleError(list(self.cycle))
        if self.kind == DependencyCheckKind.CROSS_PROJECT:
            raise CrossProjectError(self.ticket_id or "", self.depends_on_ticket_id or "")
        if self.kind == DependencyCheckKind.MISSING_TICKET:
            raise TicketNotFoundError(self.ticket_id or "")


def detect_cycle(graph: Graph) -> list[str] | None:
    """Return one cycle as ``[start, ..., start]`` or ``None`` when acyclic.

    Depth-first traversal keeps every node of the current path marked; an
    edge back into a marked node closes the cycle. A ticket depending on
    itself is reported as ``[ticket, ticket]``.
    """

    adjacency = {node: tuple(deps) for node, deps in graph.items()}
    nodes: dict[str, None] = {}
    for node, deps in adjacency.items():
        nodes.setdefault(node, None)
        for dep in deps:
            nodes.setdefault(dep, None)

    state: dict[str, int] = {}
    for root in nodes:
        if root in state:
            continue
        path: list[str] = [root]
        state[root] = _ON_PATH
        stack: list[Iterator[str]] = [iter(adjacency.get(root, ()))]
        while stack:
            dep = next(stack[-1], None)
            if dep is None:
                stack.pop()
                state[path.pop()] = _DONE
                continue
            dep_state = state.get(dep)
            if dep_state == _ON_PATH:
                return [*path[path.index(dep) :], dep]
            if dep_state is None:
                state[dep] = _ON_PATH
                path.append(dep)
                stack.append(iter(adjacency.get(dep, ())))
    return None


def topological_layers(graph: Graph, ticket_ids: Iterable[str]) -> list[list[str]]:
    """Kahn layering of ``ticket_ids``, ignoring prerequisites outside the subset.

    Each layer holds every ticket whose in-subset prerequisites all sit in
    earlier layers. Within a layer tickets keep their input order. The graph
    must be acyclic; run :func:`detect_cycle` on unvalidated input first.
    """

    subset = list(dict.fromkeys(ticket_ids))
    members = set(subset)
    in_degree = dict.fromkeys(subset, 0)
    successors: dict[str, list[str]] = {ticket_id: [] for ticket_id in subset}

    for ticket_id in subset:
        for dep in set(graph.get(ticket_id, ())):
            if dep in members and dep != ticket_id:
                in_degree[ticket_id] += 1
                successors[dep].append(ticket_id)

    layers: list[list[str]] = []
    current = [ticket_id for ticket_id in subset if in_degree[ticket_id] == 0]
    while current:
        layers.append(current)
        released: set[str] = set()
        for ticket_id in current:
            for successor in successors[ticket_id]:
                in_degree[successor] -= 1
                if in_degree[successor] == 0:
                    released.add(successor)
        current = [ticket_id for ticket_id in subset if ticket_id in released]
    return layers


def transitive_prerequisites(graph: Graph, ticket_ids: Iterable[str]) -> set[str]:
    """Return ``ticket_ids`` plus every ticket they transitively depend on."""

    result: set[str] = set()
    pending = list(ticket_ids)
    while pending:
        current = pending.pop()
        if current in result:
            continue
        result.add(current)
        pending.extend(dep for dep in graph.get(current, ()) if dep not in result)
    return result


def merge_edges(graph: Graph, edges: Iterable[DependencyEdge]) -> dict[str, set[str]]:
    """Copy ``graph`` and add ``edges`` to it."""

    merged = {node: set(deps) for node, deps in graph.items()}
    for edge in edges:
        merged.setdefault(edge.ticket_id, set()).add(edge.depends_on_ticket_id)
    return merged
