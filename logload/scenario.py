from __future__ import annotations

import os
import random
from typing import Callable
from urllib.parse import urlencode

from .engine.collector import RATE, MetricsCollector
from .engine.load import VirtualUserContext

MESSAGES: tuple[str, ...] = (
    "UserLogin",
    "PaymentProcessed",
    "DatabaseQuery",
    "CacheHit",
    "APIRequest",
    "ServiceCall",
    "ErrorOccurred",
    "SystemHealth",
)

LEVELS: tuple[str, ...] = ("INFO", "WARN", "ERROR", "DEBUG")

DEFAULT_BASE_URL = "http://service1:8081"

LOG_BUDGET_MS = 500.0
HEALTH_BUDGET_MS = 200.0

ERROR_METRIC = "errors"

JSON_HEADERS = {"Content-Type": "application/json"}


def resolve_base_url(override: str | None = None) -> str:
    base_url = override or os.environ.get("BASE_URL") or DEFAULT_BASE_URL
    return base_url.rstrip("/")


def pick_log_params(rng: random.Random) -> tuple[str, str]:
    return rng.choice(MESSAGES), rng.choice(LEVELS)


def build_log_url(base_url: str, message: str, level: str) -> str:
    return f"{base_url}/log?{urlencode({'message': message, 'level': level})}"


def build_health_url(base_url: str) -> str:
    return f"{base_url}/actuator/health"


class LogServiceScenario:
    """One iteration posts a random log line, then probes the health endpoint.

    A response whose checks do not all pass adds ``1`` to the ``errors`` rate.
    Passing responses add nothing, so any failure drives the rate to 100%
    while a healthy run has no samples at all. Nothing is retried or raised.
    """

    def __init__(
        self,
        base_url: str,
        think_time_seconds: float = 1.0,
        on_log_sent: Callable[[str, str], None] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.think_time_seconds = think_time_seconds
        self.on_log_sent = on_log_sent

    def register_metrics(self, collector: MetricsCollector) -> None:
        collector.register(ERROR_METRIC, RATE)

    def run_iteration(self, ctx: VirtualUserContext) -> None:
        message, level = pick_log_params(ctx.rng)

        log_response = ctx.http.post(
            build_log_url(self.base_url, message, level),
            data=None,
            headers=JSON_HEADERS,
            name="log",
        )
        log_ok = ctx.check(
            log_response,
            {
                "log endpoint status is 200": lambda r: r.status == 200,
                "response time < 500ms": lambda r: r.duration_ms < LOG_BUDGET_MS,
            },
            tags={"name": "log"},
        )
        if not log_ok:
            ctx.metrics.add(ERROR_METRIC, 1, {"name": "log"})
        if log_response.status == 200 and self.on_log_sent is not None:
            self.on_log_sent(message, level)

        health_response = ctx.http.get(build_health_url(self.base_url), name="health")
        health_ok = ctx.check(
            health_response,
            {
                "health endpoint status is 200": lambda r: r.status == 200,
                "health response time < 200ms": lambda r: r.duration_ms < HEALTH_BUDGET_MS,
            },
            tags={"name": "health"},
        )
        if not health_ok:
            ctx.metrics.add(ERROR_METRIC, 1, {"name": "health"})

        ctx.sleep(self.think_time_seconds)


__all__ = [
    "DEFAULT_BASE_URL",
    "LEVELS",
    "MESSAGES",
    "LogServiceScenario",
    "build_health_url",
    "build_log_url",
    "pick_log_params",
    "resolve_base_url",
]
