from __future__ import annotations

import threading

import pytest

from rampload.metrics import TREND, MetricSample, MetricsCollector, aggregate_values
from rampload.thresholds import ThresholdEvaluator, parse_thresholds


def test_sample_is_immutable_and_normalises_values():
    sample = MetricSample("http_req_failed", True, {"status": 500}, timestamp=1.0)

    assert sample.value == 1.0
    assert dict(sample.tags) == {"status": "500"}
    with pytest.raises(TypeError):
        sample.tags["status"] = "200"
    with pytest.raises(AttributeError):
        sample.value = 0.0


def test_add_rejects_unknown_metric(collector):
    with pytest.raises(ValueError):
        collector.add("custom_metric", 1)


def test_values_filters_by_name_and_tags(collector):
    collector.add("http_req_duration", 10.0, {"staticAsset": "yes", "status": "200"})
    collector.add("http_req_duration", 20.0, {"staticAsset": "no", "status": "200"})
    collector.add("http_reqs", 1, {"staticAsset": "yes"})

    assert collector.values("http_req_duration").tolist() == [10.0, 20.0]
    assert collector.values("http_req_duration", {"staticAsset": "yes"}).tolist() == [10.0]
    assert collector.values("http_req_duration", {"staticAsset": "maybe"}).size == 0
    assert collector.count() == 3
    assert collector.count("http_reqs") == 1


def test_clock_is_used_when_no_timestamp_given():
    collector = MetricsCollector(clock=lambda: 42.0)

    sample = collector.add("iterations", 1)

    assert sample.timestamp == 42.0


def test_concurrent_writers_do_not_lose_samples(collector):
    def writer():
        for _ in range(500):
            collector.add("http_reqs", 1)

    threads = [threading.Thread(target=writer) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert collector.count("http_reqs") == 4000
    assert collector.values("http_reqs").sum() == 4000


def test_build_dataframe_flattens_tags(collector):
    collector.add("http_req_duration", 12.5, {"status": "200"}, timestamp=1.0)
    collector.add("vus", 3, timestamp=2.0)

    df = collector.build_dataframe()

    assert list(df["metric"]) == ["http_req_duration", "vus"]
    assert df.loc[0, "tag_status"] == "200"
    assert df["tag_status"].isna().iloc[1]


def test_build_dataframe_empty_has_columns(collector):
    df = collector.build_dataframe()

    assert df.empty
    assert list(df.columns) == ["metric", "value", "timestamp"]


def test_summaries_per_metric_kind(collector):
    for value in (100.0, 200.0, 300.0):
        collector.add("http_req_duration", value)
    collector.add("http_req_failed", 0)
    collector.add("http_req_failed", 1)
    for _ in range(4):
        collector.add("http_reqs", 1)
    collector.add("vus", 2)

    summary = collector.summaries(duration_s=2.0)

    assert summary["http_req_duration"]["med"] == 200.0
    assert summary["http_req_duration"]["count"] == 3.0
    assert summary["http_req_failed"] == {"rate": 0.5, "passes": 1.0, "fails": 1.0}
    assert summary["http_reqs"] == {"count": 4.0, "rate": 2.0}
    assert summary["vus"] == {"value": 2.0, "min": 2.0, "max": 2.0}


def test_samples_with_equal_tags_share_one_mapping(collector):
    first = collector.add("http_req_duration", 1.0, {"status": "200", "name": "ts"})
    second = collector.add("http_req_duration", 2.0, {"name": "ts", "status": 200})
    other = collector.add("http_req_duration", 3.0, {"status": "500", "name": "ts"})

    assert first.tags is second.tags
    assert other.tags is not first.tags
    assert [sample.value for sample in collector.snapshot("http_req_duration")] == [1.0, 2.0, 3.0]


def test_values_keep_arrival_order_across_tag_sets(collector):
    for idx, status in enumerate(["200", "500", "200", "404", "500"]):
        collector.add("vus", idx, {"status": status})

    assert collector.values("vus").tolist() == [0.0, 1.0, 2.0, 3.0, 4.0]
    assert collector.values("vus", {"status": "500"}).tolist() == [1.0, 4.0]
    assert collector.summaries()["vus"]["value"] == 4.0

    df = collector.build_dataframe()
    assert df["value"].tolist() == [0.0, 1.0, 2.0, 3.0, 4.0]
    assert df["tag_status"].tolist() == ["200", "500", "200", "404", "500"]


def test_summaries_agree_with_threshold_aggregation(collector):
    for value in range(1, 1001):
        collector.add("http_req_duration", float(value))
    evaluator = ThresholdEvaluator(
        parse_thresholds({"http_req_duration": ["p(95)<0", "avg<0", "med<0", "max<0"]})
    )

    summary = collector.summaries()["http_req_duration"]
    observed = [result.observed for result in evaluator.evaluate(collector)]

    assert observed == [summary["p(95)"], summary["avg"], summary["med"], summary["max"]]
    values = collector.values("http_req_duration")
    assert summary["p(90)"] == aggregate_values(TREND, "p", values, percentile=90.0)
