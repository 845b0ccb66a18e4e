from __future__ import annotations

from pathlib import Path

import pytest

from rampload.config import (
    DEFAULT_URL,
    Stage,
    build_run_config,
    default_run_config,
    load_config,
    parse_duration,
    parse_stages,
)
from rampload.errors import ConfigError
from rampload.metrics import MetricsCollector
from rampload.thresholds import NO_DATA, ThresholdEvaluator

SAMPLE_CONFIG = Path(__file__).resolve().parent.parent / "configs" / "timestamp.yaml"


@pytest.mark.parametrize(
    "raw, expected",
    [
        (30, 30.0),
        (1.5, 1.5),
        ("30s", 30.0),
        ("1m", 60.0),
        ("1m30s", 90.0),
        ("500ms", 0.5),
        ("2h", 7200.0),
        ("0.25", 0.25),
    ],
)
def test_parse_duration_accepts_numbers_and_unit_strings(raw, expected):
    assert parse_duration(raw) == pytest.approx(expected)


@pytest.mark.parametrize("raw", ["", "abc", "10x", "1m 30s", "-5s", -1, True, None, [1]])
def test_parse_duration_rejects_malformed_values(raw):
    with pytest.raises(ConfigError):
        parse_duration(raw)


def test_parse_stages_keeps_order():
    stages = parse_stages(
        [
            {"duration": "30s", "target": 100},
            {"duration": "1m", "target": 100},
            {"duration": "30s", "target": 0},
        ]
    )
    assert stages == (Stage(30.0, 100), Stage(60.0, 100), Stage(30.0, 0))


@pytest.mark.parametrize(
    "raw",
    [
        [],
        None,
        [{"duration": "10s"}],
        [{"duration": "10s", "target": -1}],
        [{"duration": "10s", "target": 2.5}],
        [{"duration": "10s", "target": True}],
        [{"duration": "10s", "target": 1, "rate": 3}],
        ["10s"],
    ],
)
def test_parse_stages_rejects_malformed_definitions(raw):
    with pytest.raises(ConfigError):
        parse_stages(raw)


def test_build_run_config_parses_thresholds_once():
    config = build_run_config(
        {
            "stages": [{"duration": "10s", "target": 5}],
            "thresholds": {
                "http_req_duration": ["p(99)<500", "avg<200"],
                "http_req_failed": [
                    {"threshold": "rate<0.001", "abortOnFail": True, "delayAbortEval": "5s"}
                ],
            },
            "request": "http://example.test/",
        }
    )

    assert len(config.thresholds) == 3
    p99 = config.thresholds[0]
    assert (p99.expression.aggregation, p99.expression.percentile) == ("p", 99.0)
    assert (p99.expression.operator, p99.expression.value) == ("<", 500.0)
    failed = config.thresholds[2]
    assert failed.abort_on_fail is True
    assert failed.delay_abort_eval_s == 5.0
    assert config.request.url == "http://example.test/"
    assert config.request.method == "GET"


@pytest.mark.parametrize(
    "overrides",
    [
        {"thresholds": {"http_req_duration": ["p(99)"]}},
        {"thresholds": {"no_such_metric": ["avg<1"]}},
        {"thresholds": {"http_req_failed": ["p(95)<1"]}},
        {"no_data": "ignore"},
        {"tick_interval": 0},
        {"request": {"url": ""}},
        {"request": {"url": "http://x", "verb": "GET"}},
        {"checks": {"is status 200": "200"}},
        {"ramp": []},
    ],
)
def test_build_run_config_raises_config_error(overrides):
    data = {"stages": [{"duration": "10s", "target": 1}]}
    data.update(overrides)
    with pytest.raises(ConfigError):
        build_run_config(data)


def test_load_config_reads_yaml(tmp_path):
    path = tmp_path / "run.yaml"
    path.write_text(
        "stages:\n"
        "  - {duration: 30s, target: 100}\n"
        "  - {duration: 30s, target: 0}\n"
        "thresholds:\n"
        "  'http_req_duration{staticAsset:yes}': ['p(99)<300']\n"
        "request:\n"
        "  url: http://localhost:8881/timestamp\n"
        "  timeout: 5s\n"
        "  tags: {staticAsset: 'yes'}\n"
        "checks:\n"
        "  is status 200: 200\n"
        "pause: 500ms\n",
        encoding="utf-8",
    )

    config = load_config(path)

    assert config.total_duration_s == 60.0
    assert config.peak_target == 100
    assert config.request.timeout_s == 5.0
    assert dict(config.request.tags) == {"staticAsset": "yes"}
    assert config.checks[0].name == "is status 200"
    assert config.pause_s == 0.5
    assert config.thresholds[0].selector.tag_filter == {"staticAsset": "yes"}


def test_load_config_reports_missing_and_invalid_files(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yaml")

    broken = tmp_path / "broken.yaml"
    broken.write_text("stages: [\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(broken)

    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(empty)


def test_default_run_config_matches_timestamp_profile():
    config = default_run_config()

    assert config.request.url == DEFAULT_URL
    assert [(s.duration_s, s.target) for s in config.stages] == [(30, 100), (60, 100), (30, 0)]
    assert [str(t) for t in config.thresholds] == [
        "http_req_duration: p(99)<500",
        "http_req_duration{staticAsset:yes}: p(99)<300",
        "http_req_failed: rate<0.001",
    ]
    assert config.no_data_policy == "fail"
    assert [t.no_data for t in config.thresholds] == [None, "pass", None]


@pytest.mark.parametrize(
    "fragment",
    [
        "request:\n  url: http://localhost:8881/timestamp\n  tags: {staticAsset: yes}\n",
        "request:\n  url: http://localhost:8881/timestamp\n  tags: {cached: off}\n",
        "request:\n  url: http://localhost:8881/timestamp\n  name: on\n",
        "request: http://localhost:8881/timestamp\nchecks:\n  yes: 200\n",
    ],
)
def test_load_config_rejects_unquoted_yaml_booleans(tmp_path, fragment):
    path = tmp_path / "run.yaml"
    path.write_text(
        "stages:\n"
        "  - {duration: 10s, target: 1}\n"
        "thresholds:\n"
        "  'http_req_duration{staticAsset:yes}': ['p(99)<300']\n" + fragment,
        encoding="utf-8",
    )

    with pytest.raises(ConfigError, match="quote it"):
        load_config(path)


def test_numeric_tag_values_are_accepted_as_strings():
    config = build_run_config(
        {
            "stages": [{"duration": "10s", "target": 1}],
            "request": {"url": "http://example.test/", "tags": {"build": 42, "ratio": 0.5}},
        }
    )

    assert dict(config.request.tags) == {"build": "42", "ratio": "0.5"}


def test_per_threshold_no_data_overrides_run_policy():
    config = build_run_config(
        {
            "stages": [{"duration": "10s", "target": 1}],
            "thresholds": {
                "http_req_duration": ["p(99)<500"],
                "http_req_duration{staticAsset:yes}": [
                    {"threshold": "p(99)<300", "no_data": "pass"}
                ],
            },
        }
    )
    evaluator = ThresholdEvaluator(config.thresholds, config.no_data_policy)

    strict, relaxed = evaluator.evaluate(MetricsCollector()).results

    assert (strict.status, strict.passed) == (NO_DATA, False)
    assert (relaxed.status, relaxed.passed) == (NO_DATA, True)


def test_per_threshold_no_data_rejects_unknown_policy():
    with pytest.raises(ConfigError):
        build_run_config(
            {
                "stages": [{"duration": "10s", "target": 1}],
                "thresholds": {
                    "http_req_duration": [{"threshold": "p(99)<500", "no_data": "skip"}]
                },
            }
        )


def test_sample_config_matches_builtin_profile():
    config = load_config(SAMPLE_CONFIG)
    builtin = default_run_config()

    assert config.stages == builtin.stages
    assert config.thresholds == builtin.thresholds
    assert config.checks == builtin.checks
    assert config.no_data_policy == "fail"
    assert not any(t.abort_on_fail for t in config.thresholds)
    assert config.request.url == DEFAULT_URL
    assert config.request.timeout_s == 60.0
