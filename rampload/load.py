from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Iterable, Mapping

import requests

from .config import Check, RequestSpec
from .errors import RequestError
from .metrics import MetricsCollector

if TYPE_CHECKING:
    from .context import RunContext

LOGGER = logging.getLogger("rampload.load")


@dataclass(frozen=True)
class Response:
    """Outcome of one request as seen by the metrics layer."""

    status: int
    duration_ms: float
    body_size: int = 0
    tags: Mapping[str, str] = field(default_factory=dict)
    error: str | None = None

    @property
    def expected(self) -> bool:
        return self.error is None and 200 <= self.status < 400


RequestFunction = Callable[[requests.Session], Response]


class HttpRequest:
    """Request function issuing the configured HTTP request on a virtual user's session."""

    def __init__(self, spec: RequestSpec) -> None:
        self._spec = spec
        self._tags = {
            **dict(spec.tags),
            "method": spec.method,
            "url": spec.url,
            "name": spec.display_name,
        }

    def __call__(self, session: requests.Session) -> Response:
        started = time.perf_counter()
        try:
            response = session.request(
                self._spec.method, self._spec.url, timeout=self._spec.timeout_s
            )
            body_size = len(response.content)
        except requests.RequestException as exc:
            duration_ms = (time.perf_counter() - started) * 1000.0
            raise RequestError(
                f"{self._spec.method} {self._spec.url} failed: {exc}",
                duration_ms=duration_ms,
                tags=self._tags,
            ) from exc
        duration_ms = (time.perf_counter() - started) * 1000.0
        return Response(
            status=response.status_code,
            duration_ms=duration_ms,
            body_size=body_size,
            tags=self._tags,
        )


def record_response(
    metrics: MetricsCollector,
    response: Response,
    checks: Iterable[Check] = (),
    timestamp: float | None = None,
) -> None:
    """Emit the request metrics and check results for one response."""
    if timestamp is None:
        timestamp = time.time()
    tags = dict(response.tags)
    tags["status"] = str(response.status)
    tags["expected_response"] = "true" if response.expected else "false"

    metrics.add("http_reqs", 1, tags, timestamp)
    metrics.add("http_req_duration", response.duration_ms, tags, timestamp)
    metrics.add("http_req_failed", 0 if response.expected else 1, tags, timestamp)
    metrics.add("data_received", response.body_size, tags, timestamp)
    for check in checks:
        check_tags = dict(response.tags)
        check_tags["check"] = check.name
        metrics.add("checks", 1 if check.passes(response.status) else 0, check_tags, timestamp)


class VirtualUser(threading.Thread):
    """Simulated client repeating the request function until told to stop.

    ``stop()`` never interrupts a request: the worker finishes the iteration
    in flight, skips any remaining pause, and exits.
    """

    def __init__(
        self,
        vu_id: int,
        context: RunContext,
        request_fn: RequestFunction,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        super().__init__(name=f"vu-{vu_id}", daemon=True)
        self.vu_id = vu_id
        self.iterations = 0
        self._context = context
        self._request_fn = request_fn
        self._session_factory = session_factory
        self._stop_event = threading.Event()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    @property
    def running(self) -> bool:
        return self.is_alive() and not self._stop_event.is_set()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        session = self._session_factory()
        pause_s = self._context.config.pause_s
        LOGGER.debug("vu %d started", self.vu_id)
        try:
            while not self._should_stop():
                self._run_iteration(session)
                if pause_s > 0 and self._stop_event.wait(timeout=pause_s):
                    break
        finally:
            session.close()
            LOGGER.debug("vu %d stopped after %d iteration(s)", self.vu_id, self.iterations)

    def _should_stop(self) -> bool:
        return self._stop_event.is_set() or self._context.stop_event.is_set()

    def _run_iteration(self, session: requests.Session) -> None:
        metrics = self._context.metrics
        started = time.perf_counter()
        try:
            response = self._request_fn(session)
        except RequestError as exc:
            LOGGER.debug("vu %d request failed: %s", self.vu_id, exc)
            response = Response(
                status=0, duration_ms=exc.duration_ms, tags=exc.tags, error=str(exc)
            )
        except Exception:  # noqa: BLE001
            LOGGER.exception("vu %d iteration failed", self.vu_id)
            return

        finished_ts = time.time()
        record_response(metrics, response, self._context.config.checks, finished_ts)
        iteration_ms = (time.perf_counter() - started) * 1000.0
        metrics.add("iterations", 1, timestamp=finished_ts)
        metrics.add("iteration_duration", iteration_ms, timestamp=finished_ts)
        self.iterations += 1


__all__ = [
    "HttpRequest",
    "RequestFunction",
    "Response",
    "VirtualUser",
    "record_response",
]
