from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Sequence

from .thresholds import ThresholdSyntaxError, parse_thresholds


class PlanError(ValueError):
    """Raised when a load plan cannot be parsed or fails validation."""


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float:
    """Convert ``"2m"``, ``"1m30s"``, ``"500ms"`` or a number into seconds."""

    if isinstance(value, bool):
        raise PlanError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip().lower()
        if not text:
            raise PlanError("duration must not be empty")
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if pos != len(text):
                raise PlanError(f"invalid duration {value!r}") from None
    else:
        raise PlanError(f"invalid duration {value!r}")
    if seconds < 0:
        raise PlanError(f"duration must be >= 0, got {value!r}")
    return seconds


def format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(round(seconds)), 60)
    if minutes and secs:
        return f"{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m"
    return f"{secs}s"


@dataclass(frozen=True)
class Stage:
    """Ramp the VU count linearly to ``target`` over ``duration_seconds``."""

    duration_seconds: float
    target: int

    def __post_init__(self) -> None:
        if self.duration_seconds <= 0:
            raise PlanError(f"stage duration must be > 0, got {self.duration_seconds}")
        if self.target < 0:
            raise PlanError(f"stage target must be >= 0, got {self.target}")


@dataclass
class LoadOptions:
    """Declarative description of a run: ramp shape, pass/fail gates, pacing."""

    stages: Sequence[Stage]
    thresholds: dict[str, list[str]] = field(default_factory=dict)
    graceful_ramp_down_seconds: float = 30.0
    think_time_seconds: float = 1.0
    request_timeout_seconds: float = 60.0
    start_vus: int = 0

    def __post_init__(self) -> None:
        if not self.stages:
            raise PlanError("a load plan needs at least one stage")
        if self.start_vus < 0:
            raise PlanError("start_vus must be >= 0")

    @property
    def total_duration_seconds(self) -> float:
        return sum(stage.duration_seconds for stage in self.stages)

    @property
    def peak_target(self) -> int:
        return max([self.start_vus, *(stage.target for stage in self.stages)])

    def describe(self) -> Iterable[str]:
        for idx, stage in enumerate(self.stages, start=1):
            yield f"stage {idx}: {format_duration(stage.duration_seconds)} -> {stage.target} VUs"
        for metric, expressions in self.thresholds.items():
            yield f"threshold {metric}: {', '.join(expressions)}"


def default_options() -> LoadOptions:
    """Return the standard log-service profile: 16 minutes, peaking at 20 VUs."""

    return LoadOptions(
        stages=[
            Stage(duration_seconds=parse_duration("2m"), target=10),
            Stage(duration_seconds=parse_duration("5m"), target=10),
            Stage(duration_seconds=parse_duration("2m"), target=20),
            Stage(duration_seconds=parse_duration("5m"), target=20),
            Stage(duration_seconds=parse_duration("2m"), target=0),
        ],
        thresholds={
            "http_req_duration": ["p(95)<500"],
            "errors": ["rate<0.1"],
        },
        think_time_seconds=1.0,
    )


def options_from_dict(data: dict[str, Any]) -> LoadOptions:
    if not isinstance(data, dict):
        raise PlanError("load plan must be a JSON object")

    raw_stages = data.get("stages")
    if not isinstance(raw_stages, list) or not raw_stages:
        raise PlanError("load plan must define a non-empty 'stages' list")

    stages: list[Stage] = []
    for idx, raw in enumerate(raw_stages, start=1):
        if not isinstance(raw, dict) or "duration" not in raw or "target" not in raw:
            raise PlanError(f"stage {idx} needs 'duration' and 'target'")
        target = raw["target"]
        if isinstance(target, bool) or not isinstance(target, int):
            raise PlanError(f"stage {idx} target must be an integer, got {target!r}")
        stages.append(Stage(duration_seconds=parse_duration(raw["duration"]), target=target))

    thresholds = data.get("thresholds", {})
    if not isinstance(thresholds, dict):
        raise PlanError("'thresholds' must be an object of metric -> expressions")
    normalised: dict[str, list[str]] = {}
    for metric, expressions in thresholds.items():
        if isinstance(expressions, str):
            expressions = [expressions]
        if not isinstance(expressions, list) or not all(isinstance(e, str) for e in expressions):
            raise PlanError(f"thresholds for {metric!r} must be a list of strings")
        normalised[metric] = list(expressions)

    try:
        parse_thresholds(normalised)
    except ThresholdSyntaxError as exc:
        raise PlanError(str(exc)) from exc

    defaults = default_options()
    return LoadOptions(
        stages=stages,
        thresholds=normalised,
        graceful_ramp_down_seconds=parse_duration(
            data.get("gracefulRampDown", defaults.graceful_ramp_down_seconds)
        ),
        think_time_seconds=parse_duration(data.get("thinkTime", defaults.think_time_seconds)),
        request_timeout_seconds=parse_duration(
            data.get("requestTimeout", defaults.request_timeout_seconds)
        ),
        start_vus=int(data.get("startVUs", 0)),
    )


def load_options(path: str | Path | None) -> LoadOptions:
    if not path:
        return default_options()
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise PlanError(f"cannot read load plan {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise PlanError(f"load plan {path} is not valid JSON: {exc}") from exc
    return options_from_dict(data)
