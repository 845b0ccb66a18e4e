from __future__ import annotations

import array
import itertools
import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

import numpy as np
import pandas as pd

TREND = "trend"
RATE = "rate"
COUNTER = "counter"
GAUGE = "gauge"

BUILTIN_METRICS: dict[str, str] = {
    "http_reqs": COUNTER,
    "http_req_duration": TREND,
    "http_req_failed": RATE,
    "data_received": COUNTER,
    "checks": RATE,
    "iterations": COUNTER,
    "iteration_duration": TREND,
    "vus": GAUGE,
    "vus_max": GAUGE,
}

AGGREGATIONS: dict[str, frozenset[str]] = {
    TREND: frozenset({"avg", "min", "max", "med", "p", "count"}),
    RATE: frozenset({"rate"}),
    COUNTER: frozenset({"count", "rate"}),
    GAUGE: frozenset({"value", "min", "max"}),
}

# (label, aggregation, percentile) triples reported in the end-of-run summary.
SUMMARY_FIELDS: dict[str, tuple[tuple[str, str, float | None], ...]] = {
    TREND: (
        ("avg", "avg", None),
        ("min", "min", None),
        ("med", "med", None),
        ("max", "max", None),
        ("p(90)", "p", 90.0),
        ("p(95)", "p", 95.0),
        ("count", "count", None),
    ),
    RATE: (("rate", "rate", None), ("passes", "passes", None), ("fails", "fails", None)),
    COUNTER: (("count", "count", None), ("rate", "rate", None)),
    GAUGE: (("value", "value", None), ("min", "min", None), ("max", "max", None)),
}

SAMPLE_COLUMNS = ["metric", "value", "timestamp"]


@dataclass(frozen=True)
class MetricSample:
    name: str
    value: float
    tags: Mapping[str, str] = field(default_factory=dict)
    timestamp: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", float(self.value))
        if not isinstance(self.tags, MappingProxyType):
            object.__setattr__(
                self, "tags", MappingProxyType({str(k): str(v) for k, v in self.tags.items()})
            )


def metric_kind(name: str) -> str:
    try:
        return BUILTIN_METRICS[name]
    except KeyError:
        raise ValueError(f"unknown metric {name!r}") from None


def aggregate_values(
    kind: str,
    aggregation: str,
    values: np.ndarray,
    duration_s: float = 0.0,
    percentile: float | None = None,
) -> float:
    """Reduce a non-empty, insertion-ordered value array to one number.

    Percentiles are exact, interpolating linearly between the two closest ranks.
    """
    if kind == RATE:
        passes = int(np.count_nonzero(values == 1))
        if aggregation == "passes":
            return float(passes)
        if aggregation == "fails":
            return float(len(values) - passes)
        return passes / len(values)
    if kind == COUNTER:
        total = float(np.sum(values))
        if aggregation == "rate":
            return total / duration_s if duration_s > 0 else 0.0
        return total
    if kind == GAUGE and aggregation == "value":
        return float(values[-1])

    if aggregation == "avg":
        return float(np.mean(values))
    if aggregation == "min":
        return float(np.min(values))
    if aggregation == "max":
        return float(np.max(values))
    if aggregation == "med":
        return float(np.median(values))
    if aggregation == "count":
        return float(len(values))
    if aggregation == "p":
        return float(np.percentile(values, percentile, method="linear"))
    raise ValueError(f"unsupported aggregation {aggregation!r} for {kind} metric")


class _Series:
    """Samples of one metric sharing one tag set, kept as packed arrays."""

    __slots__ = ("tags", "values", "timestamps", "order")

    def __init__(self, tags: Mapping[str, str]) -> None:
        self.tags = tags
        self.values = array.array("d")
        self.timestamps = array.array("d")
        self.order = array.array("q")

    def matches(self, tag_filter: Mapping[str, str]) -> bool:
        return all(self.tags.get(key) == value for key, value in tag_filter.items())


class MetricsCollector:
    """Thread-safe store for the samples emitted by virtual users and the scheduler.

    Samples are grouped by metric name and exact tag set; each group shares
    one read-only tag mapping and stores values, timestamps and arrival order
    in flat arrays. Every value is kept, so percentiles stay exact.
    """

    def __init__(self, clock=time.time) -> None:
        self._clock = clock
        self._records_lock = threading.Lock()
        self._series: dict[str, dict[frozenset, _Series]] = {}
        self._counter = itertools.count()
        self._total = 0

    def add(
        self,
        name: str,
        value: float,
        tags: Mapping[str, str] | None = None,
        timestamp: float | None = None,
    ) -> MetricSample:
        metric_kind(name)
        normalised = {str(k): str(v) for k, v in (tags or {}).items()}
        key = frozenset(normalised.items())
        value = float(value)
        timestamp = self._clock() if timestamp is None else float(timestamp)
        with self._records_lock:
            by_tags = self._series.setdefault(name, {})
            series = by_tags.get(key)
            if series is None:
                series = by_tags[key] = _Series(MappingProxyType(normalised))
            series.values.append(value)
            series.timestamps.append(timestamp)
            series.order.append(next(self._counter))
            self._total += 1
        return MetricSample(name=name, value=value, tags=series.tags, timestamp=timestamp)

    def _collect(self, name: str | None, tag_filter: Mapping[str, str] | None = None):
        """Copy matching series under the lock as (name, tags, values, timestamps, order)."""
        with self._records_lock:
            names = list(self._series) if name is None else [name]
            parts = []
            for metric in names:
                for series in self._series.get(metric, {}).values():
                    if tag_filter and not series.matches(tag_filter):
                        continue
                    parts.append(
                        (
                            metric,
                            series.tags,
                            np.array(series.values, dtype=float),
                            np.array(series.timestamps, dtype=float),
                            np.array(series.order, dtype=np.int64),
                        )
                    )
        return parts

    def snapshot(self, name: str | None = None) -> list[MetricSample]:
        entries = []
        for metric, tags, values, timestamps, order in self._collect(name):
            for idx in range(len(values)):
                entries.append(
                    (
                        int(order[idx]),
                        MetricSample(metric, values[idx], tags, float(timestamps[idx])),
                    )
                )
        entries.sort(key=lambda entry: entry[0])
        return [sample for _, sample in entries]

    def values(self, name: str, tag_filter: Mapping[str, str] | None = None) -> np.ndarray:
        """Return the values of ``name`` samples whose tags include every ``tag_filter`` pair.

        Values come back in arrival order.
        """
        parts = self._collect(name, tag_filter)
        if not parts:
            return np.empty(0, dtype=float)
        values = np.concatenate([part[2] for part in parts])
        order = np.concatenate([part[4] for part in parts])
        return values[np.argsort(order, kind="stable")]

    def count(self, name: str | None = None) -> int:
        with self._records_lock:
            if name is None:
                return self._total
            return sum(len(series.values) for series in self._series.get(name, {}).values())

    def build_dataframe(self) -> pd.DataFrame:
        parts = self._collect(None)
        if not parts:
            return pd.DataFrame(columns=SAMPLE_COLUMNS)

        frames = []
        for metric, tags, values, timestamps, order in parts:
            frame = pd.DataFrame(
                {"metric": metric, "value": values, "timestamp": timestamps, "_order": order}
            )
            for key, value in tags.items():
                frame[f"tag_{key}"] = value
            frames.append(frame)
        df = pd.concat(frames, ignore_index=True, sort=False)
        return df.sort_values("_order", kind="stable").drop(columns="_order").reset_index(drop=True)

    def summaries(self, duration_s: float = 0.0) -> dict[str, dict[str, float]]:
        """Per-metric statistics for the end-of-run summary, keyed by metric name."""
        with self._records_lock:
            names = sorted(self._series)

        summary: dict[str, dict[str, float]] = {}
        for name in names:
            values = self.values(name)
            if len(values) == 0:
                continue
            kind = BUILTIN_METRICS[name]
            summary[name] = {
                label: aggregate_values(kind, aggregation, values, duration_s, percentile)
                for label, aggregation, percentile in SUMMARY_FIELDS[kind]
            }
        return summary


__all__ = [
    "AGGREGATIONS",
    "BUILTIN_METRICS",
    "COUNTER",
    "GAUGE",
    "MetricSample",
    "MetricsCollector",
    "RATE",
    "SUMMARY_FIELDS",
    "TREND",
    "aggregate_values",
    "metric_kind",
]
