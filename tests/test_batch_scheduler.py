from __future__ import annotations

import threading

import allure

from ticketflow.dependencies.graph import DependencyEdge
from ticketflow.dependencies.repository import DependencyRepository
from ticketflow.dependencies.scheduler import (
    PREREQUISITE_FAILED_REASON,
    BatchScheduler,
    LaunchResult,
    TicketExecutionStatus,
    execute_dag_plan,
    new_execution_plan,
)
from ticketflow.storage.database import Database

pytestmark = [
    allure.epic("Ticket Dependencies"),
    allure.feature("Batch Scheduler"),
]

DIAMOND = {"A": {"B", "C"}, "B": {"D"}, "C": {"D"}}


def _diamond_plan():
    return new_execution_plan([["D"], ["B", "C"], ["A"]], ["A", "B", "C", "D"], DIAMOND)


def test_execute_dag_plan_runs_all_layers_on_success() -> None:
    launched: list[str] = []
    lock = threading.Lock()

    def launch(ticket_id: str) -> LaunchResult:
        with lock:
            launched.append(ticket_id)
        return LaunchResult(ticket_id=ticket_id, success=True, session_id=f"s-{ticket_id}")

    statuses = execute_dag_plan(_diamond_plan(), launch)

    assert set(statuses.values()) == {TicketExecutionStatus.DONE}
    assert launched[0] == "D"
    assert launched[-1] == "A"
    assert sorted(launched[1:3]) == ["B", "C"]


def test_failed_prerequisite_skips_dependents_without_launching() -> None:
    launched: list[str] = []

    def launch(ticket_id: str) -> LaunchResult:
        launched.append(ticket_id)
        return LaunchResult(ticket_id=ticket_id, success=ticket_id != "B", error="boom")

    plan = _diamond_plan()
    statuses = execute_dag_plan(plan, launch)

    assert statuses == {
        "A": TicketExecutionStatus.SKIPPED,
        "B": TicketExecutionStatus.FAILED,
        "C": TicketExecutionStatus.DONE,
        "D": TicketExecutionStatus.DONE,
    }
    assert plan.reasons == {"A": PREREQUISITE_FAILED_REASON, "B": "boom"}
    assert "A" not in launched


def test_skip_propagates_transitively() -> None:
    plan = new_execution_plan([["C"], ["B"], ["A"]], ["A", "B", "C"], {"A": {"B"}, "B": {"C"}})

    statuses = execute_dag_plan(plan, lambda ticket_id: LaunchResult(ticket_id, success=False))

    assert statuses == {
        "A": TicketExecutionStatus.SKIPPED,
        "B": TicketExecutionStatus.SKIPPED,
        "C": TicketExecutionStatus.FAILED,
    }
    assert plan.reasons["C"] == "Unknown error"


def test_raised_exception_marks_only_that_ticket_failed() -> None:
    def launch(ticket_id: str) -> LaunchResult:
        if ticket_id == "C":
            raise RuntimeError("spawn exploded")
        return LaunchResult(ticket_id, success=True)

    plan = _diamond_plan()
    statuses = execute_dag_plan(plan, launch)

    assert statuses["B"] == TicketExecutionStatus.DONE
    assert statuses["C"] == TicketExecutionStatus.FAILED
    assert statuses["A"] == TicketExecutionStatus.SKIPPED
    assert plan.reasons["C"] == "spawn exploded"


def test_layer_is_a_barrier_and_siblings_run_concurrently() -> None:
    barrier = threading.Barrier(2, timeout=5)
    finished: set[str] = set()
    order_violations: list[str] = []

    def launch(ticket_id: str) -> LaunchResult:
        if ticket_id in {"B", "C"}:
            # Deadlocks unless both siblings run at the same time.
            barrier.wait()
        if ticket_id == "A" and not {"B", "C"} <= finished:
            order_violations.append(ticket_id)
        finished.add(ticket_id)
        return LaunchResult(ticket_id, success=True)

    statuses = execute_dag_plan(_diamond_plan(), launch)

    assert order_violations == []
    assert statuses["A"] == TicketExecutionStatus.DONE


def test_status_callback_sees_every_transition_in_order() -> None:
    events: list[tuple[str, str, str | None]] = []

    def on_status_change(ticket_id: str, status: TicketExecutionStatus, reason: str | None) -> None:
        events.append((ticket_id, status.value, reason))

    plan = new_execution_plan([["B"], ["A"]], ["A", "B"], {"A": {"B"}})
    execute_dag_plan(plan, lambda ticket_id: LaunchResult(ticket_id, success=False, error="x"), on_status_change)

    assert events == [
        ("B", "running", None),
        ("B", "failed", "x"),
        ("A", "skipped", PREREQUISITE_FAILED_REASON),
    ]


def test_batch_scheduler_builds_plan_from_store(database: Database, seed_tickets) -> None:
    seed_tickets("p1", "A", "B", "C", "D")
    dependencies = DependencyRepository(database)
    dependencies.create_dependencies(
        "p1",
        [DependencyEdge("A", "B"), DependencyEdge("A", "C"), DependencyEdge("B", "D"), DependencyEdge("C", "D")],
    )
    scheduler = BatchScheduler(dependencies, max_workers=1)

    plan = scheduler.build_execution_plan("p1", ["A", "B", "C", "D"])

    assert plan.layers == [["D"], ["B", "C"], ["A"]]
    assert set(plan.ticket_status.values()) == {TicketExecutionStatus.PENDING}

    statuses = scheduler.execute_dag_plan(
        "p1",
        plan,
        lambda ticket_id: LaunchResult(ticket_id, success=ticket_id != "D"),
    )
    assert statuses == {
        "A": TicketExecutionStatus.SKIPPED,
        "B": TicketExecutionStatus.SKIPPED,
        "C": TicketExecutionStatus.SKIPPED,
        "D": TicketExecutionStatus.FAILED,
    }
