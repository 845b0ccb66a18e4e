"""
Shared pytest fixtures for the rampload test suite.

Network I/O never leaves the process: virtual users get a ``FakeSession``
whose ``request`` returns canned responses, and scheduler tests use
sub-second stages with fast ticks so whole runs finish quickly.
"""

from __future__ import annotations

import time
from typing import Any

import pytest

from rampload.config import build_run_config
from rampload.load import Response
from rampload.metrics import MetricsCollector


class FakeHttpResponse:
    """Stand-in for ``requests.Response`` with just the attributes the harness reads."""

    def __init__(self, status_code: int = 200, content: bytes = b'{"ts": 1}'):
        self.status_code = status_code
        self.content = content


class FakeSession:
    """Minimal ``requests.Session`` replacement that records calls."""

    def __init__(self, status_code: int = 200, error: Exception | None = None):
        self.status_code = status_code
        self.error = error
        self.calls: list[tuple[str, str, float]] = []
        self.closed = False

    def request(self, method: str, url: str, timeout: float | None = None):
        self.calls.append((method, url, timeout))
        if self.error is not None:
            raise self.error
        return FakeHttpResponse(self.status_code)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def collector() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def make_config():
    """Factory building a validated RunConfig from keyword overrides."""

    def factory(**overrides: Any):
        data: dict[str, Any] = {
            "stages": [{"duration": 1, "target": 1}],
            "request": {"url": "http://localhost:8881/timestamp"},
            "graceful_stop": 1,
            "tick_interval": 0.02,
        }
        data.update(overrides)
        return build_run_config(data)

    return factory


@pytest.fixture
def quick_request():
    """Request function that returns a 200 after a few milliseconds."""

    def request_fn(session) -> Response:
        time.sleep(0.005)
        return Response(status=200, duration_ms=5.0, body_size=9, tags={"name": "quick"})

    return request_fn
