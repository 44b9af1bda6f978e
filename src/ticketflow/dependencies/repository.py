"""Ticket and dependency-edge persistence with write-time graph validation."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from uuid import uuid4

from sqlmodel import Session, col, delete, select

from ticketflow.dependencies.graph import (
    DependencyCheck,
    DependencyCheckKind,
    DependencyEdge,
    detect_cycle,
    merge_edges,
    topological_layers,
    transitive_prerequisites,
)
from ticketflow.dependencies.models import (
    DependencyView,
    TicketCreate,
    TicketKind,
    TicketView,
)
from ticketflow.storage.common import to_utc_aware_datetime, utc_now
from ticketflow.storage.database import Database
from ticketflow.storage.sqlmodel_models import Ticket, TicketDependency

logger = logging.getLogger(__name__)


class TicketRepository:
    """Minimal ticket registry; tickets are owned by the planning layer."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def create_ticket(self, payload: TicketCreate) -> TicketView:
        if payload.kind == TicketKind.STORY and not payload.epic_id:
            raise ValueError("Story tickets require a parent epic_id.")
        row = Ticket(
            ticket_id=payload.ticket_id or str(uuid4()),
            project_id=payload.project_id,
            kind=payload.kind.value,
            epic_id=payload.epic_id if payload.kind == TicketKind.STORY else None,
            title=payload.title,
            created_at=utc_now(),
        )
        with self.database.session() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_ticket_view(row)

    def get_ticket(self, ticket_id: str) -> TicketView | None:
        with self.database.session() as session:
            row = session.get(Ticket, ticket_id)
            return _to_ticket_view(row) if row is not None else None

    def list_tickets(self, project_id: str) -> list[TicketView]:
        with self.database.session() as session:
            rows = session.exec(
                select(Ticket)
                .where(Ticket.project_id == project_id)
                .order_by(col(Ticket.created_at).asc(), col(Ticket.ticket_id).asc()),
            ).all()
            return [_to_ticket_view(row) for row in rows]


class DependencyRepository:
    """Reads dependency edges as graphs and validates every edge mutation."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def load_project_graph(self, project_id: str) -> dict[str, set[str]]:
        """Adjacency view ``ticket_id -> prerequisites`` for a whole project."""

        with self.database.session() as session:
            return _load_graph(session, project_id)

    def edges_for_tickets(self, project_id: str, ticket_ids: Iterable[str]) -> dict[str, set[str]]:
        """Adjacency view restricted to edges whose both endpoints are in ``ticket_ids``."""

        members = set(ticket_ids)
        if not members:
            return {}
        with self.database.session() as session:
            rows = session.exec(
                select(TicketDependency).where(
                    TicketDependency.project_id == project_id,
                    col(TicketDependency.ticket_id).in_(members),
                    col(TicketDependency.depends_on_ticket_id).in_(members),
                ),
            ).all()
        graph: dict[str, set[str]] = {ticket_id: set() for ticket_id in members}
        for row in rows:
            graph[row.ticket_id].add(row.depends_on_ticket_id)
        return graph

    def topological_sort(self, project_id: str, ticket_ids: Iterable[str]) -> list[list[str]]:
        """Layer ``ticket_ids`` by their stored dependencies (callers check for cycles first)."""

        ordered = list(dict.fromkeys(ticket_ids))
        return topological_layers(self.edges_for_tickets(project_id, ordered), ordered)

    def find_cycle(self, project_id: str, ticket_ids: Iterable[str] | None = None) -> list[str] | None:
        if ticket_ids is None:
            return detect_cycle(self.load_project_graph(project_id))
        return detect_cycle(self.edges_for_tickets(project_id, ticket_ids))

    def get_transitive_dependencies(self, project_id: str, ticket_ids: Iterable[str]) -> set[str]:
        return transitive_prerequisites(self.load_project_graph(project_id), ticket_ids)

    def check_dependency_edges(
        self,
        project_id: str,
        edges: Iterable[DependencyEdge],
        *,
        replacing_ticket_id: str | None = None,
    ) -> DependencyCheck:
        """Validate ``edges`` against the stored graph without writing anything.

        ``replacing_ticket_id`` drops that ticket's stored prerequisites from
        the graph first, for validating a full replacement of its edges.
        """

        requested = list(edges)
        with self.database.session() as session:
            return _check_edges(
                session,
                project_id,
                requested,
                replacing_ticket_id=replacing_ticket_id,
            )

    def create_dependencies(
        self,
        project_id: str,
        edges: Iterable[DependencyEdge],
    ) -> list[DependencyView]:
        """Insert validated edges; self-edges are dropped, duplicates ignored.

        Raises :class:`CycleError`, :class:`CrossProjectError` or
        :class:`TicketNotFoundError` before any write.
        """

        requested = _without_self_edges(edges)
        if not requested:
            return []
        with self.database.session() as session:
            _check_edges(session, project_id, requested).raise_for_error()
            created = _insert_new_edges(session, project_id, requested)
            session.commit()
        logger.info(
            "Created %d dependency edge(s) for project %s.",
            len(created),
            project_id,
        )
        return created

    def set_ticket_dependencies(
        self,
        project_id: str,
        ticket_id: str,
        depends_on_ids: Iterable[str],
    ) -> list[DependencyView]:
        """Replace every prerequisite of ``ticket_id`` with ``depends_on_ids``."""

        requested = _without_self_edges(
            DependencyEdge(ticket_id=ticket_id, depends_on_ticket_id=dep) for dep in depends_on_ids
        )
        with self.database.session() as session:
            _check_edges(
                session,
                project_id,
                requested,
                replacing_ticket_id=ticket_id,
            ).raise_for_error()
            session.exec(
                delete(TicketDependency).where(col(TicketDependency.ticket_id) == ticket_id),
            )
            created = _insert_new_edges(session, project_id, requested)
            session.commit()
        return created

    def remove_dependency(self, dependency_id: str) -> bool:
        with self.database.session() as session:
            result = session.exec(
                delete(TicketDependency).where(
                    col(TicketDependency.dependency_id) == dependency_id,
                ),
            )
            session.commit()
            return bool(result.rowcount)

    def remove_dependency_edge(self, ticket_id: str, depends_on_ticket_id: str) -> bool:
        with self.database.session() as session:
            result = session.exec(
                delete(TicketDependency).where(
                    col(TicketDependency.ticket_id) == ticket_id,
                    col(TicketDependency.depends_on_ticket_id) == depends_on_ticket_id,
                ),
            )
            session.commit()
            return bool(result.rowcount)

    def list_project_dependencies(self, project_id: str) -> list[DependencyView]:
        with self.database.session() as session:
            rows = session.exec(
                select(TicketDependency)
                .where(TicketDependency.project_id == project_id)
                .order_by(col(TicketDependency.created_at).asc()),
            ).all()
            return [_to_dependency_view(row) for row in rows]

    def get_ticket_dependencies(self, ticket_id: str) -> list[DependencyView]:
        """Edges where ``ticket_id`` is the dependent (its prerequisites)."""

        with self.database.session() as session:
            rows = session.exec(
                select(TicketDependency).where(TicketDependency.ticket_id == ticket_id),
            ).all()
            return [_to_dependency_view(row) for row in rows]

    def get_ticket_dependents(self, ticket_id: str) -> list[DependencyView]:
        """Edges where other tickets depend on ``ticket_id``."""

        with self.database.session() as session:
            rows = session.exec(
                select(TicketDependency).where(
                    TicketDependency.depends_on_ticket_id == ticket_id,
                ),
            ).all()
            return [_to_dependency_view(row) for row in rows]


def _load_graph(session: Session, project_id: str) -> dict[str, set[str]]:
    rows = session.exec(
        select(TicketDependency).where(TicketDependency.project_id == project_id),
    ).all()
    graph: dict[str, set[str]] = {}
    for row in rows:
        graph.setdefault(row.ticket_id, set()).add(row.depends_on_ticket_id)
    return graph


def _check_edges(
    session: Session,
    project_id: str,
    edges: list[DependencyEdge],
    *,
    replacing_ticket_id: str | None = None,
) -> DependencyCheck:
    ticket_ids = list(
        dict.fromkeys(
            ticket_id for edge in edges for ticket_id in (edge.ticket_id, edge.depends_on_ticket_id)
        ),
    )
    if not ticket_ids:
        return DependencyCheck(kind=DependencyCheckKind.OK)

    rows = session.exec(select(Ticket).where(col(Ticket.ticket_id).in_(ticket_ids))).all()
    projects = {row.ticket_id: row.project_id for row in rows}
    for ticket_id in ticket_ids:
        owner = projects.get(ticket_id)
        if owner is None:
            return DependencyCheck(kind=DependencyCheckKind.MISSING_TICKET, ticket_id=ticket_id)
        if owner != project_id:
            edge = next(
                edge for edge in edges if ticket_id in (edge.ticket_id, edge.depends_on_ticket_id)
            )
            return DependencyCheck(
                kind=DependencyCheckKind.CROSS_PROJECT,
                ticket_id=edge.ticket_id,
                depends_on_ticket_id=edge.depends_on_ticket_id,
            )

    graph = _load_graph(session, project_id)
    if replacing_ticket_id is not None:
        graph.pop(replacing_ticket_id, None)
    cycle = detect_cycle(merge_edges(graph, edges))
    if cycle is not None:
        return DependencyCheck(kind=DependencyCheckKind.CYCLE, cycle=tuple(cycle))
    return DependencyCheck(kind=DependencyCheckKind.OK)


def _insert_new_edges(
    session: Session,
    project_id: str,
    edges: list[DependencyEdge],
) -> list[DependencyView]:
    deduped = list(dict.fromkeys(edges))
    existing = {
        (row.ticket_id, row.depends_on_ticket_id)
        for row in session.exec(
            select(TicketDependency).where(
                col(TicketDependency.ticket_id).in_({edge.ticket_id for edge in deduped}),
            ),
        ).all()
    }
    now = utc_now()
    rows = [
        TicketDependency(
            dependency_id=str(uuid4()),
            ticket_id=edge.ticket_id,
            depends_on_ticket_id=edge.depends_on_ticket_id,
            project_id=project_id,
            created_at=now,
        )
        for edge in deduped
        if (edge.ticket_id, edge.depends_on_ticket_id) not in existing
    ]
    session.add_all(rows)
    session.flush()
    return [_to_dependency_view(row) for row in rows]


def _without_self_edges(edges: Iterable[DependencyEdge]) -> list[DependencyEdge]:
    return [edge for edge in edges if edge.ticket_id != edge.depends_on_ticket_id]


def _to_ticket_view(row: Ticket) -> TicketView:
    return TicketView(
        ticket_id=row.ticket_id,
        project_id=row.project_id,
        kind=TicketKind(row.kind),
        epic_id=row.epic_id,
        title=row.title,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_dependency_view(row: TicketDependency) -> DependencyView:
    return DependencyView(
        dependency_id=row.dependency_id,
        ticket_id=row.ticket_id,
        depends_on_ticket_id=row.depends_on_ticket_id,
        project_id=row.project_id,
        created_at=to_utc_aware_datetime(row.created_at),
    )
