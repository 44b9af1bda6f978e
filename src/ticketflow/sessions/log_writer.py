"""Session-scoped NDJSON log writer with ordering guarantees.

Each session gets one writer holding a private, monotonically increasing
sequence number. Appends are queued and drained by a single flusher at a
time, so concurrent appenders never interleave writes to the same file.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from pathlib import Path
from typing import Any

from ticketflow.storage.common import utc_now

logger = logging.getLogger(__name__)

SESSION_START = "session_start"
SESSION_END = "session_end"
_RESERVED_KEYS = frozenset({"_type", "ts", "seq", "sessionId"})

LogEntry = dict[str, Any]


class SessionLogWriter:
    """Append-only NDJSON writer for one session."""

    def __init__(self, session_id: str, file_path: Path) -> None:
        self.session_id = session_id
        self.file_path = file_path
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        self._seq = 0
        self._queue: deque[LogEntry] = deque()
        self._writing = False
        self._state_lock = threading.Lock()
        self._io_lock = threading.Lock()

    @property
    def current_seq(self) -> int:
        """Sequence number the next entry will receive."""

        with self._state_lock:
            return self._seq

    def write_header(self, metadata: dict[str, Any] | None = None) -> None:
        """Start the log over with a ``session_start`` entry at seq 0.

        Entries still queued are dropped; one already taken by the flusher is
        written before the file is truncated.
        """

        with self._io_lock, self._state_lock:
            self._queue.clear()
            self._seq = 0
            entry = self._build_entry(SESSION_START, metadata or {})
            try:
                self.file_path.write_text(_dump(entry), encoding="utf-8")
            except OSError as error:
                logger.warning("Failed to write log header for session %s: %s", self.session_id, error)

    def append(self, entry_type: str, data: dict[str, Any] | None = None) -> int:
        """Queue an entry, flush if no flush is running, and return its seq."""

        with self._state_lock:
            entry = self._build_entry(entry_type, data or {})
            self._queue.append(entry)
            if self._writing:
                return entry["seq"]
            self._writing = True
        self._flush()
        return entry["seq"]

    def end(
        self,
        status: str,
        error: str | None = None,
        duration_ms: int | None = None,
    ) -> int:
        return self.append(
            SESSION_END,
            {"status": status, "error": error, "durationMs": duration_ms},
        )

    def _build_entry(self, entry_type: str, data: dict[str, Any]) -> LogEntry:
        entry: LogEntry = {
            "_type": entry_type,
            "ts": utc_now().isoformat(),
            "seq": self._seq,
            "sessionId": self.session_id,
        }
        entry.update((key, value) for key, value in data.items() if key not in _RESERVED_KEYS)
        self._seq += 1
        return entry

    def _flush(self) -> None:
        # Lock order is _io_lock then _state_lock, as in write_header.
        while True:
            with self._io_lock:
                with self._state_lock:
                    if not self._queue:
                        self._writing = False
                        return
                    entry = self._queue.popleft()
                try:
                    with self.file_path.open("a", encoding="utf-8") as handle:
                        handle.write(_dump(entry))
                except OSError as error:
                    logger.warning(
                        "Dropped log entry seq=%s for session %s: %s",
                        entry["seq"],
                        self.session_id,
                        error,
                    )


class LogWriterRegistry:
    """One writer per session id for the lifetime of that session."""

    def __init__(self) -> None:
        self._writers: dict[str, SessionLogWriter] = {}
        self._lock = threading.Lock()

    def get_log_writer(self, session_id: str, file_path: Path) -> SessionLogWriter:
        with self._lock:
            writer = self._writers.get(session_id)
            if writer is None:
                writer = SessionLogWriter(session_id, file_path)
                self._writers[session_id] = writer
            return writer

    def release_log_writer(self, session_id: str) -> bool:
        with self._lock:
            return self._writers.pop(session_id, None) is not None

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._writers


def read_log_entries(file_path: Path) -> list[LogEntry]:
    """Parse an NDJSON log, skipping malformed lines, ordered by seq."""

    try:
        content = file_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    except OSError as error:
        logger.warning("Failed to read session log %s: %s", file_path, error)
        return []

    entries: list[LogEntry] = []
    for line in content.splitlines():
        if not line.strip():
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            entries.append(parsed)
    entries.sort(key=_seq_key)
    return entries


def _seq_key(entry: LogEntry) -> int:
    seq = entry.get("seq")
    return seq if isinstance(seq, int) else 0


def _dump(entry: LogEntry) -> str:
    return json.dumps(entry, ensure_ascii=False, default=str) + "\n"
