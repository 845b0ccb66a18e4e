from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from .errors import ConfigError
from .thresholds import NO_DATA_FAIL, NO_DATA_POLICIES, Threshold, parse_thresholds

DEFAULT_URL = "http://localhost:8881/timestamp"
DEFAULT_REQUEST_TIMEOUT_S = 60.0
DEFAULT_GRACEFUL_STOP_S = 30.0
DEFAULT_TICK_INTERVAL_S = 1.0

_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")

_TOP_LEVEL_KEYS = {
    "stages",
    "thresholds",
    "request",
    "checks",
    "pause",
    "graceful_stop",
    "tick_interval",
    "no_data",
}
_REQUEST_KEYS = {"url", "method", "timeout", "name", "tags"}


def parse_duration(value: Any) -> float:
    """Return seconds for ``30``, ``"30s"``, ``"500ms"``, ``"1m30s"`` or ``"2h"``."""
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ConfigError("empty duration")
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART_RE.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if pos != len(text):
                raise ConfigError(f"invalid duration {value!r}") from None
    else:
        raise ConfigError(f"invalid duration {value!r}")

    if seconds < 0:
        raise ConfigError(f"duration must not be negative: {value!r}")
    return seconds


@dataclass(frozen=True)
class Stage:
    """One ramp segment: reach ``target`` virtual users over ``duration_s`` seconds."""

    duration_s: float
    target: int

    def __post_init__(self) -> None:
        if self.duration_s < 0:
            raise ConfigError(f"stage duration must not be negative, got {self.duration_s}")
        if isinstance(self.target, bool) or not isinstance(self.target, int) or self.target < 0:
            raise ConfigError(f"stage target must be a non-negative integer, got {self.target!r}")


@dataclass(frozen=True)
class Check:
    """Named assertion on a response status, reported through the ``checks`` metric."""

    name: str
    status: int

    def passes(self, status: int) -> bool:
        return status == self.status


@dataclass(frozen=True)
class RequestSpec:
    url: str
    method: str = "GET"
    timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S
    name: str | None = None
    tags: Mapping[str, str] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.url


@dataclass(frozen=True)
class RunConfig:
    stages: tuple[Stage, ...]
    thresholds: tuple[Threshold, ...] = ()
    request: RequestSpec | None = None
    checks: tuple[Check, ...] = ()
    pause_s: float = 0.0
    graceful_stop_s: float = DEFAULT_GRACEFUL_STOP_S
    tick_interval_s: float = DEFAULT_TICK_INTERVAL_S
    no_data_policy: str = NO_DATA_FAIL

    @property
    def total_duration_s(self) -> float:
        return sum(stage.duration_s for stage in self.stages)

    @property
    def peak_target(self) -> int:
        return max((stage.target for stage in self.stages), default=0)


def parse_stages(raw: Any) -> tuple[Stage, ...]:
    if not isinstance(raw, (list, tuple)) or not raw:
        raise ConfigError("stages must be a non-empty list")
    stages = []
    for idx, item in enumerate(raw):
        if isinstance(item, Mapping):
            unknown = set(item) - {"duration", "target"}
            if unknown:
                raise ConfigError(f"stage {idx}: unknown key(s) {sorted(unknown)}")
            if "duration" not in item or "target" not in item:
                raise ConfigError(f"stage {idx}: both 'duration' and 'target' are required")
            duration, target = item["duration"], item["target"]
        elif isinstance(item, (list, tuple)) and len(item) == 2:
            duration, target = item
        else:
            raise ConfigError(f"stage {idx}: expected a mapping with duration and target")
        try:
            stages.append(Stage(duration_s=parse_duration(duration), target=target))
        except ConfigError as exc:
            raise ConfigError(f"stage {idx}: {exc}") from exc
    return tuple(stages)


def _label(value: Any, what: str) -> str:
    # YAML reads unquoted yes/no/on/off/true/false as booleans
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ConfigError(
            f"{what} must be a string or number, got {value!r}; quote it in YAML"
        )
    return str(value)


def parse_request(raw: Any) -> RequestSpec | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = {"url": raw}
    if not isinstance(raw, Mapping):
        raise ConfigError("request must be a mapping or a URL string")
    unknown = set(raw) - _REQUEST_KEYS
    if unknown:
        raise ConfigError(f"request: unknown key(s) {sorted(unknown)}")
    url = raw.get("url")
    if not isinstance(url, str) or not url.strip():
        raise ConfigError("request.url must be a non-empty string")
    tags = raw.get("tags") or {}
    if not isinstance(tags, Mapping):
        raise ConfigError("request.tags must be a mapping")
    timeout_s = parse_duration(raw.get("timeout", DEFAULT_REQUEST_TIMEOUT_S))
    if timeout_s <= 0:
        raise ConfigError("request.timeout must be positive")
    return RequestSpec(
        url=url.strip(),
        method=str(raw.get("method", "GET")).upper(),
        timeout_s=timeout_s,
        name=None if raw.get("name") is None else _label(raw["name"], "request.name"),
        tags={
            _label(k, "request tag name"): _label(v, f"request tag {k!r}")
            for k, v in tags.items()
        },
    )


def parse_checks(raw: Any) -> tuple[Check, ...]:
    if not raw:
        return ()
    if not isinstance(raw, Mapping):
        raise ConfigError("checks must be a mapping of check name to expected status")
    checks = []
    for name, status in raw.items():
        if isinstance(status, bool) or not isinstance(status, int):
            raise ConfigError(f"check {name!r}: expected status must be an integer")
        checks.append(Check(name=_label(name, "check name"), status=status))
    return tuple(checks)


def build_run_config(data: Mapping[str, Any]) -> RunConfig:
    """Validate a raw mapping (usually parsed YAML) into a :class:`RunConfig`."""
    if not isinstance(data, Mapping):
        raise ConfigError("configuration must be a mapping")
    unknown = set(data) - _TOP_LEVEL_KEYS
    if unknown:
        raise ConfigError(f"unknown configuration key(s) {sorted(unknown)}")

    no_data = data.get("no_data", NO_DATA_FAIL)
    if no_data not in NO_DATA_POLICIES:
        raise ConfigError(f"no_data must be one of {', '.join(NO_DATA_POLICIES)}, got {no_data!r}")

    tick_interval_s = parse_duration(data.get("tick_interval", DEFAULT_TICK_INTERVAL_S))
    if tick_interval_s <= 0:
        raise ConfigError("tick_interval must be positive")

    return RunConfig(
        stages=parse_stages(data.get("stages")),
        thresholds=parse_thresholds(data.get("thresholds"), parse_duration),
        request=parse_request(data.get("request")),
        checks=parse_checks(data.get("checks")),
        pause_s=parse_duration(data.get("pause", 0)),
        graceful_stop_s=parse_duration(data.get("graceful_stop", DEFAULT_GRACEFUL_STOP_S)),
        tick_interval_s=tick_interval_s,
        no_data_policy=no_data,
    )


def load_config(path: str | Path) -> RunConfig:
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigError(f"cannot read configuration {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if data is None:
        raise ConfigError(f"configuration {path} is empty")
    return build_run_config(data)


def default_run_config(url: str = DEFAULT_URL) -> RunConfig:
    """Return the built-in profile for the timestamp endpoint.

    The request carries no ``staticAsset`` tag, so the static-asset threshold
    never sees samples; that one threshold opts out of the strict no-data
    policy while the others keep it.
    """

    return build_run_config(
        {
            "stages": [
                {"duration": "30s", "target": 100},
                {"duration": "1m", "target": 100},
                {"duration": "30s", "target": 0},
            ],
            "thresholds": {
                "http_req_duration": ["p(99)<500"],
                "http_req_duration{staticAsset:yes}": [
                    {"threshold": "p(99)<300", "no_data": "pass"}
                ],
                "http_req_failed": ["rate<0.001"],
            },
            "request": {"url": url, "method": "GET"},
            "checks": {"is status 200": 200},
        }
    )


def describe_stages(stages: Iterable[Stage]) -> str:
    return ", ".join(f"{stage.duration_s:g}s->{stage.target}" for stage in stages)


__all__ = [
    "Check",
    "DEFAULT_URL",
    "RequestSpec",
    "RunConfig",
    "Stage",
    "build_run_config",
    "default_run_config",
    "describe_stages",
    "load_config",
    "parse_duration",
    "parse_stages",
]
