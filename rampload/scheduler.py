from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Sequence

import requests

from .config import Stage
from .load import RequestFunction, VirtualUser

if TYPE_CHECKING:
    from .context import RunContext
    from .thresholds import ThresholdEvaluator

LOGGER = logging.getLogger("rampload.scheduler")

_ROUNDING_TOLERANCE = 1e-9


class RampSchedule:
    """Piecewise-linear target concurrency over a sequence of stages.

    The ramp starts at zero virtual users and moves linearly from each
    stage's starting level to its target over the stage duration.
    Fractional levels are floored.
    """

    def __init__(self, stages: Sequence[Stage]) -> None:
        self._stages = tuple(stages)

    @property
    def total_duration_s(self) -> float:
        return sum(stage.duration_s for stage in self._stages)

    @property
    def peak_target(self) -> int:
        return max((stage.target for stage in self._stages), default=0)

    def target_at(self, elapsed_s: float) -> int:
        level = 0
        stage_start = 0.0
        for stage in self._stages:
            stage_end = stage_start + stage.duration_s
            if elapsed_s < stage_end:
                progress = max(elapsed_s - stage_start, 0.0) / stage.duration_s
                value = level + (stage.target - level) * progress
                return max(int(math.floor(value + _ROUNDING_TOLERANCE)), 0)
            level = stage.target
            stage_start = stage_end
        return level


@dataclass
class SchedulerStatistics:
    spawned: int
    peak_live: int
    interrupted: int
    duration_s: float


class RampScheduler:
    """Drives virtual-user lifecycle so the live count tracks the ramp schedule."""

    def __init__(
        self,
        context: RunContext,
        request_fn: RequestFunction,
        session_factory: Callable[[], requests.Session] = requests.Session,
        evaluator: ThresholdEvaluator | None = None,
    ) -> None:
        self._context = context
        self._request_fn = request_fn
        self._session_factory = session_factory
        self._evaluator = evaluator
        self._spawned = 0
        self._peak_live = 0

    def run(self) -> SchedulerStatistics:
        context = self._context
        schedule = context.schedule
        context.mark_started()

        if schedule.peak_target == 0:
            LOGGER.info("No stage targets any virtual users; nothing to run")
            context.mark_finished()
            return SchedulerStatistics(0, 0, 0, context.elapsed_s())

        context.metrics.add("vus_max", schedule.peak_target)
        tick_s = context.config.tick_interval_s
        total_s = schedule.total_duration_s
        check_aborts = self._evaluator is not None and self._evaluator.has_abort_thresholds
        LOGGER.info(
            "Ramping up to %d virtual user(s) over %.1fs", schedule.peak_target, total_s
        )

        interrupted = 0
        try:
            while not context.stop_event.is_set():
                elapsed = context.elapsed_s()
                if elapsed >= total_s:
                    break
                live = self.reconcile(schedule.target_at(elapsed))
                context.metrics.add("vus", live)
                if check_aborts:
                    self._check_abort(elapsed)
                context.stop_event.wait(timeout=min(tick_s, max(total_s - elapsed, 0.0)))
        except KeyboardInterrupt:
            LOGGER.warning("Interrupted; stopping virtual users")
            context.abort("interrupted")
        finally:
            interrupted = self.shutdown()
            context.mark_finished()

        return SchedulerStatistics(
            spawned=self._spawned,
            peak_live=self._peak_live,
            interrupted=interrupted,
            duration_s=context.elapsed_s(),
        )

    def reconcile(self, target: int) -> int:
        """Spawn or retire workers so that ``target`` are live; return the live count."""
        context = self._context
        context.prune_users()
        live = context.live_users()

        if len(live) < target:
            for _ in range(target - len(live)):
                self._spawn()
        elif len(live) > target:
            # newest workers retire first
            for user in live[target:]:
                user.stop()

        live_count = len(context.live_users())
        self._peak_live = max(self._peak_live, live_count)
        return live_count

    def shutdown(self) -> int:
        """Stop every worker and wait up to the graceful-stop period.

        Returns the number of workers still running afterwards; they are
        daemon threads and are abandoned.
        """
        context = self._context
        context.stop_event.set()
        users = context.users()
        for user in users:
            user.stop()

        deadline = time.monotonic() + context.config.graceful_stop_s
        for user in users:
            user.join(timeout=max(deadline - time.monotonic(), 0.0))

        interrupted = sum(1 for user in users if user.is_alive())
        if interrupted:
            LOGGER.warning(
                "%d virtual user(s) still busy after %.1fs graceful stop; abandoning",
                interrupted,
                context.config.graceful_stop_s,
            )
        context.prune_users()
        return interrupted

    def _spawn(self) -> VirtualUser:
        context = self._context
        user = VirtualUser(
            vu_id=context.next_vu_id(),
            context=context,
            request_fn=self._request_fn,
            session_factory=self._session_factory,
        )
        user.start()
        context.add_user(user)
        self._spawned += 1
        return user

    def _check_abort(self, elapsed_s: float) -> None:
        breach = self._evaluator.abort_breach(self._context.metrics, elapsed_s)
        if breach is None:
            return
        reason = f"threshold {breach.threshold} crossed (observed {breach.observed:g})"
        LOGGER.error("Aborting run: %s", reason)
        self._context.abort(reason)


__all__ = ["RampSchedule", "RampScheduler", "SchedulerStatistics"]
