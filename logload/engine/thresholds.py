from __future__ import annotations

import logging
import operator
import re
from dataclasses import dataclass, field
from typing import Callable, Mapping

from .collector import COUNTER, GAUGE, RATE, TREND

LOGGER = logging.getLogger("logload.engine.thresholds")

_METRIC_KEY = re.compile(r"^\s*(?P<name>[A-Za-z_][\w.-]*)\s*(?:\{(?P<tags>[^}]*)\})?\s*$")
_EXPRESSION = re.compile(
    r"^\s*(?P<agg>avg|min|max|med|count|rate|value|p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\))"
    r"\s*(?P<op><=|>=|===|==|!=|<|>)\s*(?P<bound>-?\d+(?:\.\d+)?)\s*$"
)

OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "===": operator.eq,
    "!=": operator.ne,
}

# Aggregations each metric kind can be gated on; p(N) is trend-only.
KIND_AGGREGATIONS: dict[str, tuple[str, ...]] = {
    TREND: ("avg", "min", "med", "max", "count"),
    COUNTER: ("count", "rate"),
    RATE: ("rate",),
    GAUGE: ("value", "min", "max"),
}


class ThresholdSyntaxError(ValueError):
    """Raised for a metric key or expression that cannot be parsed."""


@dataclass(frozen=True)
class Threshold:
    metric: str
    expression: str
    aggregation: str
    operator: str
    bound: float
    tags: Mapping[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        if not self.tags:
            return self.metric
        inner = ",".join(f"{k}:{v}" for k, v in self.tags.items())
        return f"{self.metric}{{{inner}}}"

    def passes(self, observed: float) -> bool:
        return OPERATORS[self.operator](observed, self.bound)


@dataclass(frozen=True)
class ThresholdResult:
    threshold: Threshold
    observed: float
    passed: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "metric": self.threshold.key,
            "expression": self.threshold.expression,
            "observed": self.observed,
            "passed": self.passed,
        }


def parse_metric_key(key: str) -> tuple[str, dict[str, str]]:
    match = _METRIC_KEY.match(key)
    if not match:
        raise ThresholdSyntaxError(f"invalid threshold metric {key!r}")
    tags: dict[str, str] = {}
    raw_tags = match.group("tags")
    if raw_tags:
        for part in raw_tags.split(","):
            tag_name, sep, tag_value = part.partition(":")
            if not sep or not tag_name.strip():
                raise ThresholdSyntaxError(f"invalid tag filter {part!r} in {key!r}")
            tags[tag_name.strip()] = tag_value.strip()
    return match.group("name"), tags


def parse_threshold(metric_key: str, expression: str) -> Threshold:
    """Parse one k6-style gate such as ``p(95)<500`` or ``rate<0.1``."""

    name, tags = parse_metric_key(metric_key)
    match = _EXPRESSION.match(expression)
    if not match:
        raise ThresholdSyntaxError(
            f"invalid threshold expression {expression!r} for {metric_key!r}"
        )
    pct = match.group("pct")
    if pct is not None:
        pct_value = float(pct)
        if not 0 <= pct_value <= 100:
            raise ThresholdSyntaxError(f"percentile out of range in {expression!r}")
        aggregation = f"p({pct})"
    else:
        aggregation = match.group("agg")
    return Threshold(
        metric=name,
        expression=expression.strip(),
        aggregation=aggregation,
        operator=match.group("op"),
        bound=float(match.group("bound")),
        tags=tags,
    )


def parse_thresholds(spec: Mapping[str, list[str]]) -> list[Threshold]:
    return [
        parse_threshold(metric_key, expression)
        for metric_key, expressions in spec.items()
        for expression in expressions
    ]


def check_aggregation(threshold: Threshold, kind: str | None) -> None:
    """Reject a gate whose aggregation the metric kind does not produce.

    Unknown metrics (``kind`` of None) are let through and evaluate as empty.
    """
    if kind is None:
        return
    if threshold.aggregation.startswith("p("):
        allowed = kind == TREND
    else:
        allowed = threshold.aggregation in KIND_AGGREGATIONS.get(kind, ())
    if not allowed:
        raise ThresholdSyntaxError(
            f"aggregation {threshold.aggregation!r} is not defined for "
            f"{kind} metric {threshold.metric!r}"
        )


def validate_thresholds(thresholds: list[Threshold], kind_of: Callable[[str], str | None]) -> None:
    for threshold in thresholds:
        check_aggregation(threshold, kind_of(threshold.metric))


def evaluate_thresholds(thresholds: list[Threshold], collector) -> list[ThresholdResult]:
    results: list[ThresholdResult] = []
    for threshold in thresholds:
        kind = collector.kind_of(threshold.metric)
        check_aggregation(threshold, kind)
        if kind is None:
            LOGGER.warning("Threshold on unknown metric %s treated as empty", threshold.key)
            observed = 0.0
        elif threshold.aggregation.startswith("p("):
            pct = float(threshold.aggregation[2:-1])
            observed = collector.percentile(threshold.metric, pct, threshold.tags)
        else:
            stats = collector.aggregate(threshold.metric, threshold.tags)
            observed = stats[threshold.aggregation]
        passed = threshold.passes(observed)
        if not passed:
            LOGGER.warning(
                "Threshold crossed: %s %s (observed %.4f)",
                threshold.key,
                threshold.expression,
                observed,
            )
        results.append(ThresholdResult(threshold=threshold, observed=observed, passed=passed))
    return results


def all_passed(results: list[ThresholdResult]) -> bool:
    return all(result.passed for result in results)
