from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import pandas as pd
import requests

from .config import RunConfig, default_run_config, describe_stages, load_config
from .context import RunContext
from .errors import ConfigError
from .load import HttpRequest, RequestFunction
from .metrics import MetricsCollector
from .scheduler import RampScheduler, SchedulerStatistics
from .thresholds import NO_DATA_POLICIES, EvaluationReport, ThresholdEvaluator

LOGGER = logging.getLogger("rampload")

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_SCRIPT_ERROR = 2


@dataclass
class RunResult:
    config: RunConfig
    context: RunContext
    statistics: SchedulerStatistics
    report: EvaluationReport

    @property
    def metrics(self) -> MetricsCollector:
        return self.context.metrics

    @property
    def passed(self) -> bool:
        return self.report.passed and not self.context.aborted

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "duration_s": self.statistics.duration_s,
            "aborted": self.context.abort_reason,
            "vus_spawned": self.statistics.spawned,
            "vus_peak": self.statistics.peak_live,
            "vus_interrupted": self.statistics.interrupted,
            "metrics": self.metrics.summaries(self.statistics.duration_s),
            "thresholds": [result.to_dict() for result in self.report],
        }


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ramp virtual users against an HTTP endpoint")
    parser.add_argument(
        "--config",
        default=os.environ.get("RAMPLOAD_CONFIG"),
        help="YAML run configuration (defaults to the built-in timestamp profile)",
    )
    parser.add_argument(
        "--url",
        default=os.environ.get("RAMPLOAD_URL"),
        help="Override the request URL",
    )
    parser.add_argument("--tick-interval", type=float, help="Seconds between scheduling ticks")
    parser.add_argument(
        "--graceful-stop",
        type=float,
        help="Seconds to wait for in-flight iterations when the run ends",
    )
    parser.add_argument(
        "--no-data",
        choices=NO_DATA_POLICIES,
        help="Outcome of thresholds that matched no samples",
    )
    parser.add_argument(
        "--output-dir",
        default=os.environ.get("RAMPLOAD_OUTPUT_DIR"),
        help="Directory for samples.csv, summary.json and charts",
    )
    parser.add_argument(
        "--charts",
        action="store_true",
        help="Render PNG charts into the output directory",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the planned stages and thresholds",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("RAMPLOAD_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    parser.add_argument(
        "--log-path",
        default=os.environ.get("RAMPLOAD_LOG_PATH"),
        help="Optional file to write the run log to",
    )
    return parser.parse_args(argv)


def setup_logging(level: str, log_path: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if log_path:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, mode="w", encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        logging.getLogger("rampload").addHandler(handler)


def resolve_config(args: argparse.Namespace) -> RunConfig:
    config = load_config(args.config) if args.config else default_run_config()

    overrides: dict[str, Any] = {}
    if args.url:
        if config.request is None:
            raise ConfigError("--url given but the configuration has no request section")
        overrides["request"] = dataclasses.replace(config.request, url=args.url)
    if args.tick_interval is not None:
        if args.tick_interval <= 0:
            raise ConfigError("--tick-interval must be positive")
        overrides["tick_interval_s"] = args.tick_interval
    if args.graceful_stop is not None:
        if args.graceful_stop < 0:
            raise ConfigError("--graceful-stop must not be negative")
        overrides["graceful_stop_s"] = args.graceful_stop
    if args.no_data is not None:
        overrides["no_data_policy"] = args.no_data
    return dataclasses.replace(config, **overrides) if overrides else config


def execute(
    config: RunConfig,
    request_fn: RequestFunction | None = None,
    session_factory: Callable[[], requests.Session] = requests.Session,
) -> RunResult:
    """Run the ramp described by ``config`` and evaluate its thresholds."""
    if request_fn is None:
        if config.request is None:
            raise ConfigError("configuration has no request and no request function was given")
        request_fn = HttpRequest(config.request)

    evaluator = ThresholdEvaluator(config.thresholds, config.no_data_policy)
    context = RunContext(config)
    scheduler = RampScheduler(
        context,
        request_fn,
        session_factory=session_factory,
        evaluator=evaluator,
    )
    statistics = scheduler.run()
    report = evaluator.evaluate(context.metrics, statistics.duration_s)
    return RunResult(config=config, context=context, statistics=statistics, report=report)


def write_artifacts(result: RunResult, output_dir: Path, charts: bool = False) -> list[Path]:
    output_dir.mkdir(parents=True, exist_ok=True)
    written = []

    df = result.metrics.build_dataframe()
    samples_path = output_dir / "samples.csv"
    df.to_csv(samples_path, index=False)
    written.append(samples_path)
    LOGGER.info("Saved %d sample(s) to %s", len(df), samples_path)

    summary_path = output_dir / "summary.json"
    with open(summary_path, "w", encoding="utf-8") as f:
        json.dump(result.to_dict(), f, indent=2)
    written.append(summary_path)
    LOGGER.info("Run summary written to %s", summary_path)

    if charts:
        from .charts import render_run_charts

        written.extend(render_run_charts(df, result.context.schedule, output_dir))
    return written


def print_summary(result: RunResult) -> None:
    stats = result.statistics
    print(
        f"Run finished in {stats.duration_s:.1f}s: {stats.spawned} VU(s) spawned, "
        f"peak {stats.peak_live}, {stats.interrupted} interrupted"
    )
    if result.context.aborted:
        print(f"Run aborted: {result.context.abort_reason}")

    summaries = result.metrics.summaries(stats.duration_s)
    if summaries:
        table = pd.DataFrame.from_dict(summaries, orient="index")
        print()
        print(table.to_string(float_format=lambda v: f"{v:.2f}", na_rep=""))

    print()
    print("Thresholds:")
    if not result.report.results:
        print("  <none>")
    for item in result.report:
        observed = "-" if item.observed is None else f"{item.observed:.4g}"
        mark = "PASS" if item.passed else "FAIL"
        print(
            f"  [{mark}] {str(item.threshold.selector):<40} {str(item.threshold.expression):<14}"
            f" {item.status:<8} observed={observed} samples={item.sample_count}"
        )
    print()
    print(f"Overall: {'PASS' if result.passed else 'FAIL'}")


def _print_plan(config: RunConfig) -> None:
    request = config.request
    target = f"{request.method} {request.url}" if request else "<custom request function>"
    print(f"Request: {target}")
    print(f"Stages: {describe_stages(config.stages)} (total {config.total_duration_s:g}s)")
    print(f"Peak VUs: {config.peak_target}")
    print(f"No-data policy: {config.no_data_policy}")
    for threshold in config.thresholds:
        suffix = " (abort on fail)" if threshold.abort_on_fail else ""
        print(f"  - {threshold}{suffix}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level, args.log_path)

    try:
        config = resolve_config(args)
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return EXIT_SCRIPT_ERROR

    if args.dry_run:
        _print_plan(config)
        return EXIT_PASS

    LOGGER.info("Stages: %s", describe_stages(config.stages))
    try:
        result = execute(config)
    except ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return EXIT_SCRIPT_ERROR

    print_summary(result)
    if args.output_dir:
        write_artifacts(result, Path(args.output_dir), charts=args.charts)

    return EXIT_PASS if result.passed else EXIT_THRESHOLD_BREACH


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
