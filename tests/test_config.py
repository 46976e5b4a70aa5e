import json

import pytest

from logload.engine.config import (
    LoadOptions,
    PlanError,
    Stage,
    default_options,
    format_duration,
    load_options,
    options_from_dict,
    parse_duration,
)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2m", 120.0),
        ("30s", 30.0),
        ("1m30s", 90.0),
        ("500ms", 0.5),
        ("1h", 3600.0),
        ("0.3s", 0.3),
        (45, 45.0),
        ("12", 12.0),
    ],
)
def test_parse_duration(value, expected):
    assert parse_duration(value) == pytest.approx(expected)


@pytest.mark.parametrize("value", ["", "2x", "m2", "1m 30s", None, True, "-5s"])
def test_parse_duration_rejects_garbage(value):
    with pytest.raises(PlanError):
        parse_duration(value)


def test_format_duration():
    assert format_duration(120) == "2m"
    assert format_duration(90) == "1m30s"
    assert format_duration(5) == "5s"


def test_default_profile_is_sixteen_minutes_peaking_at_twenty():
    options = default_options()
    assert options.total_duration_seconds == 16 * 60
    assert options.peak_target == 20
    assert [stage.target for stage in options.stages] == [10, 10, 20, 20, 0]
    assert options.thresholds == {
        "http_req_duration": ["p(95)<500"],
        "errors": ["rate<0.1"],
    }
    assert options.think_time_seconds == 1.0


def test_stage_validation():
    with pytest.raises(PlanError):
        Stage(duration_seconds=0, target=5)
    with pytest.raises(PlanError):
        Stage(duration_seconds=10, target=-1)
    with pytest.raises(PlanError):
        LoadOptions(stages=[])


def test_options_from_dict():
    options = options_from_dict(
        {
            "stages": [{"duration": "10s", "target": 3}, {"duration": "5s", "target": 0}],
            "thresholds": {"http_req_duration{name:health}": "p(99)<300"},
            "thinkTime": "250ms",
            "gracefulRampDown": "5s",
        }
    )
    assert options.total_duration_seconds == 15
    assert options.peak_target == 3
    assert options.thresholds == {"http_req_duration{name:health}": ["p(99)<300"]}
    assert options.think_time_seconds == pytest.approx(0.25)
    assert options.graceful_ramp_down_seconds == 5


@pytest.mark.parametrize(
    "data",
    [
        [],
        {},
        {"stages": []},
        {"stages": [{"duration": "10s"}]},
        {"stages": [{"duration": "10s", "target": "many"}]},
        {"stages": [{"duration": "10s", "target": 1}], "thresholds": ["p(95)<1"]},
        {"stages": [{"duration": "10s", "target": 1}], "thresholds": {"errors": ["rate<<1"]}},
    ],
)
def test_options_from_dict_rejects_invalid_plans(data):
    with pytest.raises(PlanError):
        options_from_dict(data)


def test_load_options_defaults_without_path():
    assert load_options(None).total_duration_seconds == 960


def test_load_options_reads_json(tmp_path):
    plan = tmp_path / "plan.json"
    plan.write_text(json.dumps({"stages": [{"duration": "1m", "target": 4}]}), encoding="utf-8")
    options = load_options(plan)
    assert options.stages == [Stage(duration_seconds=60.0, target=4)]
    assert options.thresholds == {}


def test_load_options_reports_bad_files(tmp_path):
    with pytest.raises(PlanError):
        load_options(tmp_path / "missing.json")
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(PlanError):
        load_options(broken)
