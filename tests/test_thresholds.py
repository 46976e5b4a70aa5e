import pytest

from logload.engine.collector import RATE, MetricsCollector
from logload.engine.thresholds import (
    ThresholdSyntaxError,
    all_passed,
    evaluate_thresholds,
    parse_threshold,
    parse_thresholds,
    validate_thresholds,
)


@pytest.mark.parametrize(
    "expression, aggregation, op, bound",
    [
        ("p(95)<500", "p(95)", "<", 500.0),
        ("rate<0.1", "rate", "<", 0.1),
        ("avg <= 200", "avg", "<=", 200.0),
        ("count>10", "count", ">", 10.0),
        ("p(99.9) < 1500", "p(99.9)", "<", 1500.0),
        ("max===0", "max", "===", 0.0),
    ],
)
def test_parse_threshold(expression, aggregation, op, bound):
    threshold = parse_threshold("http_req_duration", expression)
    assert threshold.aggregation == aggregation
    assert threshold.operator == op
    assert threshold.bound == bound


def test_parse_threshold_with_tag_filter():
    threshold = parse_threshold("http_req_duration{name:health}", "p(95)<200")
    assert threshold.metric == "http_req_duration"
    assert threshold.tags == {"name": "health"}
    assert threshold.key == "http_req_duration{name:health}"


@pytest.mark.parametrize(
    "metric, expression",
    [
        ("http_req_duration", "p95<500"),
        ("http_req_duration", "p(101)<500"),
        ("http_req_duration", "avg<"),
        ("http_req_duration", "median<5"),
        ("http req", "avg<5"),
        ("http_req_duration{name}", "avg<5"),
    ],
)
def test_parse_threshold_rejects_bad_syntax(metric, expression):
    with pytest.raises(ThresholdSyntaxError):
        parse_threshold(metric, expression)


def test_parse_thresholds_flattens_lists():
    parsed = parse_thresholds({"http_req_duration": ["p(95)<500", "avg<200"], "errors": ["rate<0.1"]})
    assert [t.expression for t in parsed] == ["p(95)<500", "avg<200", "rate<0.1"]


def build_collector(durations, errors):
    collector = MetricsCollector()
    collector.register("errors", RATE)
    for value in durations:
        collector.add("http_req_duration", value, {"name": "log"})
    for value in errors:
        collector.add("errors", value)
    return collector


def test_default_thresholds_pass_for_fast_clean_run():
    collector = build_collector([100] * 50, [0] * 50)
    results = evaluate_thresholds(
        parse_thresholds({"http_req_duration": ["p(95)<500"], "errors": ["rate<0.1"]}),
        collector,
    )
    assert all_passed(results)
    assert [r.observed for r in results] == [100.0, 0.0]


def test_thresholds_fail_for_slow_or_erroring_run():
    collector = build_collector([100] * 90 + [900] * 10, [1] * 2 + [0] * 8)
    results = evaluate_thresholds(
        parse_thresholds({"http_req_duration": ["p(95)<500"], "errors": ["rate<0.1"]}),
        collector,
    )
    assert [r.passed for r in results] == [False, False]
    assert results[1].observed == pytest.approx(0.2)
    assert not all_passed(results)
    assert results[0].to_dict()["metric"] == "http_req_duration"


def test_tag_filtered_threshold_ignores_other_requests():
    collector = build_collector([100] * 10, [])
    collector.add("http_req_duration", 5000, {"name": "health"})
    results = evaluate_thresholds(
        parse_thresholds({"http_req_duration{name:log}": ["max<200"]}), collector
    )
    assert all_passed(results)


def test_unknown_metric_evaluates_as_zero():
    results = evaluate_thresholds(parse_thresholds({"custom": ["count<1"]}), MetricsCollector())
    assert results[0].observed == 0
    assert results[0].passed


def test_aggregation_not_defined_for_kind():
    collector = build_collector([], [1])
    with pytest.raises(ThresholdSyntaxError):
        evaluate_thresholds(parse_thresholds({"errors": ["avg<1"]}), collector)


@pytest.mark.parametrize(
    "metric, expression",
    [
        ("errors", "avg<0.1"),
        ("errors", "p(95)<1"),
        ("http_reqs", "p(99)<10"),
        ("vus", "rate<1"),
        ("http_req_duration", "value<1"),
    ],
)
def test_validate_rejects_aggregation_foreign_to_kind(metric, expression):
    collector = MetricsCollector()
    collector.register("errors", RATE)
    with pytest.raises(ThresholdSyntaxError):
        validate_thresholds(parse_thresholds({metric: [expression]}), collector.kind_of)


def test_validate_accepts_matching_aggregations_and_unknown_metrics():
    collector = MetricsCollector()
    collector.register("errors", RATE)
    validate_thresholds(
        parse_thresholds(
            {
                "http_req_duration{name:log}": ["p(95)<500", "avg<200", "count>0"],
                "errors": ["rate<0.1"],
                "http_reqs": ["count>10", "rate>1"],
                "vus": ["max<=20", "value==0"],
                "not_registered": ["p(50)<1"],
            }
        ),
        collector.kind_of,
    )


def test_percentile_on_rate_metric_is_not_evaluated():
    collector = build_collector([], [0, 1])
    with pytest.raises(ThresholdSyntaxError):
        evaluate_thresholds(parse_thresholds({"errors": ["p(95)<1"]}), collector)
