"""Registry of in-flight activities that can be cancelled by id."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from ticketflow.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Activity:
    activity_id: str
    project_id: str
    kind: str
    kill: Callable[[], None] | None = None
    label: str = ""
    provider: str | None = None
    started_at: datetime = field(default_factory=utc_now)


class ActivityRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._activities: dict[str, Activity] = {}

    def register(self, activity: Activity) -> None:
        with self._lock:
            self._activities[activity.activity_id] = activity

    def unregister(self, activity_id: str) -> Activity | None:
        with self._lock:
            return self._activities.pop(activity_id, None)

    def cancel(self, activity_id: str) -> bool:
        """Invoke the activity's kill, if any, and drop it; ``False`` if unknown."""

        with self._lock:
            activity = self._activities.pop(activity_id, None)
        if activity is None:
            return False
        if activity.kill is None:
            return True
        try:
            activity.kill()
        except Exception:
            logger.exception("Kill failed for activity %s", activity_id)
        return True

    def get(self, activity_id: str) -> Activity | None:
        with self._lock:
            return self._activities.get(activity_id)

    def list_by_project(self, project_id: str) -> list[Activity]:
        with self._lock:
            return [a for a in self._activities.values() if a.project_id == project_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._activities)
