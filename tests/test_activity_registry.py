from __future__ import annotations

import allure

from ticketflow.runtime.activity_registry import Activity, ActivityRegistry

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Activity Registry"),
]


def test_register_get_and_list_by_project() -> None:
    registry = ActivityRegistry()
    registry.register(Activity("a1", "p1", "agent_session", kill=lambda: None))
    registry.register(Activity("a2", "p1", "agent_session", kill=lambda: None))
    registry.register(Activity("b1", "p2", "agent_session", kill=lambda: None))

    assert registry.get("a1") is not None
    assert sorted(activity.activity_id for activity in registry.list_by_project("p1")) == ["a1", "a2"]
    assert len(registry) == 3


def test_cancel_kills_and_removes() -> None:
    killed: list[str] = []
    registry = ActivityRegistry()
    registry.register(Activity("a1", "p1", "agent_session", kill=lambda: killed.append("a1")))

    assert registry.cancel("a1") is True
    assert killed == ["a1"]
    assert registry.get("a1") is None
    assert registry.cancel("a1") is False


def test_cancel_still_removes_when_kill_raises() -> None:
    def explode() -> None:
        raise RuntimeError("already gone")

    registry = ActivityRegistry()
    registry.register(Activity("a1", "p1", "agent_session", kill=explode))

    assert registry.cancel("a1") is True
    assert registry.get("a1") is None


def test_unregister_returns_activity() -> None:
    registry = ActivityRegistry()
    activity = Activity("a1", "p1", "agent_session", kill=lambda: None, label="Build login")
    registry.register(activity)

    assert registry.unregister("a1") is activity
    assert registry.unregister("a1") is None


def test_activity_without_kill_can_be_cancelled() -> None:
    registry = ActivityRegistry()
    registry.register(Activity("chat-1", "p1", "chat_stream"))

    assert registry.get("chat-1") is not None
    assert registry.cancel("chat-1") is True
    assert registry.get("chat-1") is None
    assert len(registry) == 0
