"""
Threshold parsing and evaluation.

Threshold definitions pair a metric selector (``http_req_duration`` or
``http_req_duration{staticAsset:yes}``) with one or more expressions such as
``p(99)<500`` or ``rate<0.001``.  Expressions are parsed once, when the run
configuration is built, into :class:`ThresholdExpression` values; evaluation
only aggregates samples and compares numbers.

Percentiles are exact order statistics with linear interpolation between the
two closest ranks, so ``p(q)`` always lies between two adjacent sorted
samples.  Comparisons use the operator as written: ``rate<0.001`` fails at
exactly 0.001.
"""

from __future__ import annotations

import logging
import operator
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

import numpy as np

from .errors import ConfigError
from .metrics import AGGREGATIONS, BUILTIN_METRICS, MetricsCollector, aggregate_values

LOGGER = logging.getLogger("rampload.thresholds")

PASS = "pass"
FAIL = "fail"
NO_DATA = "no data"

NO_DATA_FAIL = "fail"
NO_DATA_PASS = "pass"
NO_DATA_POLICIES = (NO_DATA_FAIL, NO_DATA_PASS)

OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "===": operator.eq,
    "!=": operator.ne,
}

_SELECTOR_RE = re.compile(r"^\s*(?P<name>[A-Za-z_][A-Za-z0-9_]*)\s*(?:\{(?P<tags>.*)\})?\s*$")
_EXPRESSION_RE = re.compile(
    r"^\s*(?P<agg>avg|min|max|med|count|rate|value|p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\))"
    r"\s*(?P<op><=|>=|===|==|!=|<|>)"
    r"\s*(?P<value>[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)\s*$"
)


@dataclass(frozen=True)
class MetricSelector:
    name: str
    tags: tuple[tuple[str, str], ...] = ()

    @property
    def tag_filter(self) -> dict[str, str]:
        return dict(self.tags)

    @property
    def kind(self) -> str:
        return BUILTIN_METRICS[self.name]

    def __str__(self) -> str:
        if not self.tags:
            return self.name
        inner = ",".join(f"{key}:{value}" for key, value in self.tags)
        return f"{self.name}{{{inner}}}"


@dataclass(frozen=True)
class ThresholdExpression:
    """Parsed ``<aggregation> <operator> <value>`` triple."""

    aggregation: str
    operator: str
    value: float
    percentile: float | None = None
    source: str = ""

    def compare(self, observed: float) -> bool:
        return OPERATORS[self.operator](observed, self.value)

    def __str__(self) -> str:
        return self.source or f"{self.aggregation}{self.operator}{self.value:g}"


@dataclass(frozen=True)
class Threshold:
    selector: MetricSelector
    expression: ThresholdExpression
    abort_on_fail: bool = False
    delay_abort_eval_s: float = 0.0
    no_data: str | None = None

    def __str__(self) -> str:
        return f"{self.selector}: {self.expression}"


@dataclass(frozen=True)
class ThresholdResult:
    threshold: Threshold
    status: str
    passed: bool
    observed: float | None = None
    sample_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "selector": str(self.threshold.selector),
            "expression": str(self.threshold.expression),
            "status": self.status,
            "passed": self.passed,
            "observed": self.observed,
            "samples": self.sample_count,
        }


@dataclass
class EvaluationReport:
    results: list[ThresholdResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.results)

    @property
    def failed(self) -> list[ThresholdResult]:
        return [result for result in self.results if not result.passed]

    def __iter__(self):
        return iter(self.results)


def parse_selector(text: str) -> MetricSelector:
    match = _SELECTOR_RE.match(text)
    if match is None:
        raise ConfigError(f"invalid metric selector {text!r}")
    name = match.group("name")
    if name not in BUILTIN_METRICS:
        raise ConfigError(f"threshold references unknown metric {name!r}")

    raw_tags = match.group("tags")
    tags: list[tuple[str, str]] = []
    if raw_tags is not None:
        if not raw_tags.strip():
            raise ConfigError(f"empty tag filter in selector {text!r}")
        for item in raw_tags.split(","):
            key, sep, value = item.partition(":")
            key, value = key.strip(), value.strip()
            if not sep or not key or not value:
                raise ConfigError(f"invalid tag filter {item.strip()!r} in selector {text!r}")
            tags.append((key, value))
    return MetricSelector(name=name, tags=tuple(tags))


def parse_expression(text: str) -> ThresholdExpression:
    if not isinstance(text, str):
        raise ConfigError(f"threshold expression must be a string, got {text!r}")
    match = _EXPRESSION_RE.match(text)
    if match is None:
        raise ConfigError(f"invalid threshold expression {text!r}")

    aggregation = match.group("agg")
    percentile = None
    if aggregation.startswith("p("):
        percentile = float(match.group("pct"))
        if not 0.0 <= percentile <= 100.0:
            raise ConfigError(f"percentile out of range in {text!r}")
        aggregation = "p"

    return ThresholdExpression(
        aggregation=aggregation,
        operator=match.group("op"),
        value=float(match.group("value")),
        percentile=percentile,
        source=text.strip(),
    )


def parse_threshold(
    selector_text: str,
    definition: str | Mapping[str, Any],
    parse_duration: Callable[[Any], float] | None = None,
) -> Threshold:
    """Build a :class:`Threshold` from a selector and one list entry of its definition.

    ``definition`` is either the bare expression string or a mapping with a
    ``threshold`` key and optional ``abort_on_fail``/``delay_abort_eval``
    (camelCase spellings are accepted too). A per-threshold ``no_data``
    overrides the run-wide policy for that threshold only.
    """
    selector = parse_selector(selector_text)
    abort_on_fail = False
    delay_abort_eval_s = 0.0
    no_data = None

    if isinstance(definition, Mapping):
        known = {
            "threshold",
            "abort_on_fail",
            "abortOnFail",
            "delay_abort_eval",
            "delayAbortEval",
            "no_data",
        }
        unknown = set(definition) - known
        if unknown:
            raise ConfigError(
                f"unknown threshold option(s) {sorted(unknown)} for {selector_text!r}"
            )
        if "threshold" not in definition:
            raise ConfigError(f"threshold object for {selector_text!r} needs a 'threshold' key")
        expression_text = definition["threshold"]
        abort_on_fail = definition.get("abort_on_fail", definition.get("abortOnFail", False))
        if not isinstance(abort_on_fail, bool):
            raise ConfigError(f"abort_on_fail must be a boolean for {selector_text!r}")
        delay = definition.get("delay_abort_eval", definition.get("delayAbortEval"))
        if delay is not None:
            if parse_duration is None:
                raise ConfigError("delay_abort_eval requires a duration parser")
            delay_abort_eval_s = parse_duration(delay)
        no_data = definition.get("no_data")
        if no_data is not None and no_data not in NO_DATA_POLICIES:
            raise ConfigError(
                f"no_data must be one of {', '.join(NO_DATA_POLICIES)} for {selector_text!r}, "
                f"got {no_data!r}"
            )
    else:
        expression_text = definition

    expression = parse_expression(expression_text)
    allowed = AGGREGATIONS[selector.kind]
    if expression.aggregation not in allowed:
        raise ConfigError(
            f"aggregation {expression.aggregation!r} is not available for "
            f"{selector.kind} metric {selector.name!r} (allowed: {', '.join(sorted(allowed))})"
        )

    return Threshold(
        selector=selector,
        expression=expression,
        abort_on_fail=abort_on_fail,
        delay_abort_eval_s=delay_abort_eval_s,
        no_data=no_data,
    )


def parse_thresholds(
    definitions: Mapping[str, Any] | None,
    parse_duration: Callable[[Any], float] | None = None,
) -> tuple[Threshold, ...]:
    if not definitions:
        return ()
    if not isinstance(definitions, Mapping):
        raise ConfigError("thresholds must be a mapping of metric selector to expressions")

    thresholds: list[Threshold] = []
    for selector_text, entries in definitions.items():
        if isinstance(entries, (str, Mapping)):
            entries = [entries]
        if not isinstance(entries, Sequence) or not entries:
            raise ConfigError(f"thresholds for {selector_text!r} must be a non-empty list")
        for entry in entries:
            thresholds.append(parse_threshold(str(selector_text), entry, parse_duration))
    return tuple(thresholds)


def aggregate(
    expression: ThresholdExpression,
    kind: str,
    values: np.ndarray,
    duration_s: float,
) -> float:
    """Compute the aggregation an expression refers to over a non-empty array."""
    return aggregate_values(
        kind, expression.aggregation, values, duration_s, expression.percentile
    )


class ThresholdEvaluator:
    """Evaluates parsed thresholds against the samples held by a collector."""

    def __init__(self, thresholds: Iterable[Threshold], no_data_policy: str = NO_DATA_FAIL) -> None:
        if no_data_policy not in NO_DATA_POLICIES:
            raise ConfigError(
                f"no_data policy must be one of {', '.join(NO_DATA_POLICIES)}, got {no_data_policy!r}"
            )
        self._thresholds = tuple(thresholds)
        self._no_data_policy = no_data_policy

    @property
    def has_abort_thresholds(self) -> bool:
        return any(threshold.abort_on_fail for threshold in self._thresholds)

    def evaluate_one(
        self, threshold: Threshold, collector: MetricsCollector, duration_s: float
    ) -> ThresholdResult:
        selector = threshold.selector
        values = collector.values(selector.name, selector.tag_filter)
        if len(values) == 0:
            return ThresholdResult(
                threshold=threshold,
                status=NO_DATA,
                passed=(threshold.no_data or self._no_data_policy) == NO_DATA_PASS,
            )

        observed = aggregate(threshold.expression, selector.kind, values, duration_s)
        ok = threshold.expression.compare(observed)
        return ThresholdResult(
            threshold=threshold,
            status=PASS if ok else FAIL,
            passed=ok,
            observed=observed,
            sample_count=len(values),
        )

    def evaluate(self, collector: MetricsCollector, duration_s: float = 0.0) -> EvaluationReport:
        report = EvaluationReport(
            results=[self.evaluate_one(t, collector, duration_s) for t in self._thresholds]
        )
        for result in report.failed:
            LOGGER.debug(
                "threshold %s -> %s (observed=%s)", result.threshold, result.status, result.observed
            )
        return report

    def abort_breach(
        self, collector: MetricsCollector, elapsed_s: float
    ) -> ThresholdResult | None:
        """Return the first failing abort-on-fail threshold whose delay has passed.

        Thresholds without data never abort a run.
        """
        for threshold in self._thresholds:
            if not threshold.abort_on_fail or elapsed_s < threshold.delay_abort_eval_s:
                continue
            result = self.evaluate_one(threshold, collector, elapsed_s)
            if result.status == FAIL:
                return result
        return None


__all__ = [
    "EvaluationReport",
    "FAIL",
    "MetricSelector",
    "NO_DATA",
    "NO_DATA_FAIL",
    "NO_DATA_PASS",
    "PASS",
    "Threshold",
    "ThresholdEvaluator",
    "ThresholdExpression",
    "ThresholdResult",
    "aggregate",
    "parse_expression",
    "parse_selector",
    "parse_threshold",
    "parse_thresholds",
]
