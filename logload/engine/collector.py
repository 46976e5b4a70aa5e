from __future__ import annotations

import collections
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Mapping

import numpy as np
import pandas as pd

COUNTER = "counter"
GAUGE = "gauge"
RATE = "rate"
TREND = "trend"

METRIC_KINDS = (COUNTER, GAUGE, RATE, TREND)

BUILTIN_METRICS: dict[str, str] = {
    "http_reqs": COUNTER,
    "http_req_duration": TREND,
    "http_req_failed": RATE,
    "checks": RATE,
    "iterations": COUNTER,
    "iteration_duration": TREND,
    "vus": GAUGE,
}

TREND_PERCENTILES = (90, 95, 99)

BASE_COLUMNS = ["metric", "kind", "value", "timestamp"]


@dataclass
class MetricSample:
    name: str
    value: float
    timestamp: float
    tags: dict[str, str] = field(default_factory=dict)


class MetricsCollector:
    """Thread-safe sink for every sample produced during a run."""

    def __init__(self, clock=time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._kinds: dict[str, str] = dict(BUILTIN_METRICS)
        self._samples: list[MetricSample] = []
        self._run_start_ts: float | None = None
        self._run_end_ts: float | None = None

    def register(self, name: str, kind: str) -> None:
        if kind not in METRIC_KINDS:
            raise ValueError(f"unknown metric kind {kind!r}")
        with self._lock:
            existing = self._kinds.get(name)
            if existing is not None and existing != kind:
                raise ValueError(f"metric {name!r} already registered as {existing}")
            self._kinds[name] = kind

    def kind_of(self, name: str) -> str | None:
        with self._lock:
            return self._kinds.get(name)

    def add(self, name: str, value: float, tags: Mapping[str, Any] | None = None) -> None:
        sample = MetricSample(
            name=name,
            value=float(value),
            timestamp=self._clock(),
            tags={key: str(val) for key, val in (tags or {}).items()},
        )
        with self._lock:
            if name not in self._kinds:
                raise KeyError(f"metric {name!r} is not registered")
            self._samples.append(sample)

    def set_run_window(self, start_ts: float, end_ts: float) -> None:
        with self._lock:
            self._run_start_ts = start_ts
            self._run_end_ts = end_ts

    def metric_names(self) -> list[str]:
        with self._lock:
            seen = {sample.name for sample in self._samples}
        return sorted(seen)

    def samples(self, name: str, tags: Mapping[str, str] | None = None) -> list[MetricSample]:
        with self._lock:
            rows = [sample for sample in self._samples if sample.name == name]
        if tags:
            rows = [
                sample
                for sample in rows
                if all(sample.tags.get(key) == value for key, value in tags.items())
            ]
        return rows

    def aggregate(self, name: str, tags: Mapping[str, str] | None = None) -> dict[str, float]:
        """Reduce the samples of one metric (optionally a tagged sub-metric)."""

        kind = self.kind_of(name)
        if kind is None:
            raise KeyError(f"metric {name!r} is not registered")
        values = np.array([sample.value for sample in self.samples(name, tags)], dtype=float)

        if kind == TREND:
            if values.size == 0:
                stats = {"avg": 0.0, "min": 0.0, "med": 0.0, "max": 0.0, "count": 0.0}
                stats.update({f"p({p})": 0.0 for p in TREND_PERCENTILES})
                return stats
            stats = {
                "avg": float(values.mean()),
                "min": float(values.min()),
                "med": float(np.median(values)),
                "max": float(values.max()),
                "count": float(values.size),
            }
            stats.update(
                {f"p({p})": float(np.percentile(values, p)) for p in TREND_PERCENTILES}
            )
            return stats

        if kind == COUNTER:
            total = float(values.sum()) if values.size else 0.0
            elapsed = self._elapsed()
            return {"count": total, "rate": total / elapsed if elapsed > 0 else 0.0}

        if kind == RATE:
            passes = int(np.count_nonzero(values))
            fails = int(values.size - passes)
            return {
                "rate": passes / values.size if values.size else 0.0,
                "passes": float(passes),
                "fails": float(fails),
            }

        if values.size == 0:
            return {"value": 0.0, "min": 0.0, "max": 0.0}
        return {
            "value": float(values[-1]),
            "min": float(values.min()),
            "max": float(values.max()),
        }

    def percentile(self, name: str, pct: float, tags: Mapping[str, str] | None = None) -> float:
        values = [sample.value for sample in self.samples(name, tags)]
        if not values:
            return 0.0
        return float(np.percentile(np.array(values, dtype=float), pct))

    def summary(self) -> dict[str, dict[str, float]]:
        return {name: self.aggregate(name) for name in self.metric_names()}

    def check_summaries(self) -> dict[str, dict[str, int]]:
        counters: dict[str, collections.Counter[str]] = collections.defaultdict(collections.Counter)
        for sample in self.samples("checks"):
            check_name = sample.tags.get("check", "<unnamed>")
            counters[check_name]["passes" if sample.value else "fails"] += 1
        return {name: {"passes": c["passes"], "fails": c["fails"]} for name, c in counters.items()}

    def build_dataframe(self, filter_window: bool = True) -> pd.DataFrame:
        with self._lock:
            rows = list(self._samples)
            kinds = dict(self._kinds)
            start_ts = self._run_start_ts
            end_ts = self._run_end_ts

        if filter_window and start_ts is not None and end_ts is not None:
            rows = [row for row in rows if start_ts <= row.timestamp <= end_ts]

        if not rows:
            return pd.DataFrame(columns=BASE_COLUMNS)

        records = []
        for row in rows:
            record = {
                "metric": row.name,
                "kind": kinds.get(row.name),
                "value": row.value,
                "timestamp": row.timestamp,
            }
            record.update(row.tags)
            records.append(record)
        return pd.DataFrame(records)

    def _elapsed(self) -> float:
        with self._lock:
            start_ts = self._run_start_ts
            end_ts = self._run_end_ts
            if start_ts is None and self._samples:
                start_ts = self._samples[0].timestamp
        if start_ts is None:
            return 0.0
        if end_ts is None:
            end_ts = self._clock()
        return max(end_ts - start_ts, 0.0)
