from __future__ import annotations

import itertools
import threading
import time
from typing import TYPE_CHECKING

from .config import RunConfig
from .metrics import MetricsCollector
from .scheduler import RampSchedule

if TYPE_CHECKING:
    from .load import VirtualUser


class RunContext:
    """Shared state of one run: config, schedule, samples, stop signal and live workers."""

    def __init__(
        self,
        config: RunConfig,
        metrics: MetricsCollector | None = None,
        clock=time.monotonic,
    ) -> None:
        self.config = config
        self.schedule = RampSchedule(config.stages)
        self.metrics = metrics or MetricsCollector()
        self.stop_event = threading.Event()
        self.abort_reason: str | None = None

        self._clock = clock
        self._started_at: float | None = None
        self._finished_at: float | None = None
        self._users_lock = threading.Lock()
        self._users: list[VirtualUser] = []
        self._vu_ids = itertools.count(start=1)

    def mark_started(self) -> None:
        self._started_at = self._clock()
        self._finished_at = None

    def mark_finished(self) -> None:
        if self._started_at is None:
            self._started_at = self._clock()
        self._finished_at = self._clock()

    def elapsed_s(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._finished_at if self._finished_at is not None else self._clock()
        return max(end - self._started_at, 0.0)

    def next_vu_id(self) -> int:
        return next(self._vu_ids)

    def abort(self, reason: str) -> None:
        if self.abort_reason is None:
            self.abort_reason = reason
        self.stop_event.set()

    @property
    def aborted(self) -> bool:
        return self.abort_reason is not None

    def add_user(self, user: VirtualUser) -> None:
        with self._users_lock:
            self._users.append(user)

    def users(self) -> list[VirtualUser]:
        with self._users_lock:
            return list(self._users)

    def live_users(self) -> list[VirtualUser]:
        """Workers that are running and have not been asked to stop, oldest first."""
        with self._users_lock:
            return [user for user in self._users if user.running]

    def prune_users(self) -> None:
        with self._users_lock:
            self._users = [user for user in self._users if user.is_alive()]
