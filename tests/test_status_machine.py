from __future__ import annotations

import allure
import pytest

from ticketflow.sessions.status_machine import (
    InvalidTransitionError,
    SessionStatus,
    assert_valid_transition,
    is_terminal_status,
    is_valid_transition,
    normalize_status,
)

pytestmark = [
    allure.epic("Agent Sessions"),
    allure.feature("Status Machine"),
]

ALLOWED = {
    ("queued", "running"),
    ("queued", "cancelled"),
    ("queued", "failed"),
    ("running", "completed"),
    ("running", "failed"),
    ("running", "cancelled"),
}


@pytest.mark.parametrize("source", [status.value for status in SessionStatus])
@pytest.mark.parametrize("target", [status.value for status in SessionStatus])
def test_transition_table_is_exhaustive(source: str, target: str) -> None:
    expected = (source, target) in ALLOWED

    assert is_valid_transition(source, target) is expected
    if expected:
        assert assert_valid_transition("s1", source, target) == SessionStatus(target)
    else:
        with pytest.raises(InvalidTransitionError) as error:
            assert_valid_transition("s1", source, target)
        assert str(error.value) == f"Invalid session status transition for s1: {source} -> {target}"


def test_invalid_transition_message_uses_plain_values_for_enum_inputs() -> None:
    with pytest.raises(InvalidTransitionError) as error:
        assert_valid_transition("abc", SessionStatus.COMPLETED, SessionStatus.RUNNING)

    assert str(error.value) == "Invalid session status transition for abc: completed -> running"


def test_legacy_pending_behaves_as_queued() -> None:
    assert normalize_status("pending") == SessionStatus.QUEUED
    assert is_valid_transition("pending", "running")
    assert not is_terminal_status("pending")


def test_terminal_statuses() -> None:
    assert {status for status in SessionStatus if is_terminal_status(status)} == {
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.CANCELLED,
    }


def test_unknown_status_is_never_a_valid_source_or_target() -> None:
    assert normalize_status("paused") is None
    assert not is_valid_transition("paused", "running")
    assert not is_valid_transition("queued", "paused")
    with pytest.raises(InvalidTransitionError, match="paused -> running"):
        assert_valid_transition("s1", "paused", "running")
