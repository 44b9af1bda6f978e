from __future__ import annotations

import json
import threading
from pathlib import Path

import allure

from ticketflow.sessions.log_writer import LogWriterRegistry, SessionLogWriter, read_log_entries

pytestmark = [
    allure.epic("Agent Sessions"),
    allure.feature("Session Logs"),
]


def test_header_append_and_end_are_sequenced(tmp_path: Path) -> None:
    path = tmp_path / "s1" / "logs.ndjson"
    writer = SessionLogWriter("s1", path)

    writer.write_header({"provider": "codex"})
    assert writer.append("agent_output", {"text": "hello"}) == 1
    assert writer.end("completed", None, 1200) == 2
    assert writer.current_seq == 3

    entries = read_log_entries(path)
    assert [entry["_type"] for entry in entries] == ["session_start", "agent_output", "session_end"]
    assert [entry["seq"] for entry in entries] == [0, 1, 2]
    assert all(entry["sessionId"] == "s1" for entry in entries)
    assert entries[0]["provider"] == "codex"
    assert entries[2] | {"ts": None} == {
        "_type": "session_end",
        "ts": None,
        "seq": 2,
        "sessionId": "s1",
        "status": "completed",
        "error": None,
        "durationMs": 1200,
    }


def test_reserved_keys_cannot_be_overridden(tmp_path: Path) -> None:
    path = tmp_path / "logs.ndjson"
    writer = SessionLogWriter("s1", path)
    writer.write_header()

    writer.append("note", {"seq": 99, "sessionId": "other", "_type": "fake", "text": "x"})

    entry = read_log_entries(path)[1]
    assert (entry["_type"], entry["seq"], entry["sessionId"], entry["text"]) == ("note", 1, "s1", "x")


def test_write_header_truncates_previous_log(tmp_path: Path) -> None:
    path = tmp_path / "logs.ndjson"
    writer = SessionLogWriter("s1", path)
    writer.write_header()
    writer.append("note")

    writer.write_header({"attempt": 2})

    entries = read_log_entries(path)
    assert len(entries) == 1
    assert entries[0]["attempt"] == 2
    assert writer.current_seq == 1


def test_concurrent_appends_produce_contiguous_seq(tmp_path: Path) -> None:
    path = tmp_path / "logs.ndjson"
    writer = SessionLogWriter("s1", path)
    writer.write_header()
    start = threading.Barrier(8, timeout=10)

    def append_many(worker: int) -> None:
        start.wait()
        for index in range(50):
            writer.append("tick", {"worker": worker, "index": index})

    threads = [threading.Thread(target=append_many, args=(worker,)) for worker in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 401
    assert all(json.loads(line) for line in lines)
    entries = read_log_entries(path)
    assert [entry["seq"] for entry in entries] == list(range(401))
    for worker in range(8):
        indexes = [entry["index"] for entry in entries if entry.get("worker") == worker]
        assert indexes == list(range(50))



def test_header_rewrite_during_appends_keeps_file_in_seq_order(tmp_path: Path) -> None:
    for attempt in range(20):
        path = tmp_path / f"logs-{attempt}.ndjson"
        writer = SessionLogWriter("s1", path)
        writer.write_header()
        start = threading.Barrier(5, timeout=10)

        threads = [
            threading.Thread(target=_append_ticks, args=(writer, start, worker, 40)) for worker in range(4)
        ]
        for thread in threads:
            thread.start()
        start.wait()
        writer.write_header({"attempt": attempt})
        for thread in threads:
            thread.join()

        in_file_order = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
        assert in_file_order[0]["_type"] == "session_start"
        assert in_file_order[0]["attempt"] == attempt
        assert [entry["seq"] for entry in in_file_order] == list(range(len(in_file_order)))
        assert writer.current_seq == len(in_file_order)


def _append_ticks(writer: SessionLogWriter, start: threading.Barrier, worker: int, count: int) -> None:
    start.wait()
    for index in range(count):
        writer.append("tick", {"worker": worker, "index": index})


def test_read_log_entries_skips_malformed_lines(tmp_path: Path) -> None:
    path = tmp_path / "logs.ndjson"
    path.write_text(
        "\n".join(
            [
                json.dumps({"_type": "b", "seq": 2}),
                "{not json",
                "[1, 2]",
                "",
                json.dumps({"_type": "a", "seq": 1}),
            ],
        ),
        encoding="utf-8",
    )

    assert [entry["_type"] for entry in read_log_entries(path)] == ["a", "b"]
    assert read_log_entries(tmp_path / "missing.ndjson") == []


def test_append_failure_is_dropped_not_raised(tmp_path: Path) -> None:
    path = tmp_path / "logs.ndjson"
    writer = SessionLogWriter("s1", path)
    writer.write_header()
    path.unlink()
    path.mkdir()

    assert writer.append("note") == 1
    assert writer.append("note") == 2


def test_registry_returns_one_writer_per_session(tmp_path: Path) -> None:
    registry = LogWriterRegistry()
    first = registry.get_log_writer("s1", tmp_path / "s1.ndjson")

    assert registry.get_log_writer("s1", tmp_path / "other.ndjson") is first
    assert "s1" in registry
    assert registry.release_log_writer("s1") is True
    assert "s1" not in registry
    assert registry.release_log_writer("s1") is False
    assert registry.get_log_writer("s1", tmp_path / "s1.ndjson") is not first
