from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping

import requests

from .collector import MetricsCollector

LOGGER = logging.getLogger("logload.engine.http")


@dataclass
class HttpResponse:
    url: str
    method: str
    status: int
    duration_ms: float
    body: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400

    @property
    def failed(self) -> bool:
        return self.status == 0 or self.status >= 400


class HttpClient:
    """requests.Session wrapper that records every call as a metric sample.

    Transport failures never escape: they come back as status ``0`` with
    ``error`` set, and count towards ``http_req_failed``.
    """

    def __init__(
        self,
        collector: MetricsCollector,
        timeout: float = 60.0,
        session: requests.Session | None = None,
        base_tags: Mapping[str, Any] | None = None,
    ) -> None:
        self._collector = collector
        self._timeout = timeout
        self._session = session or requests.Session()
        self._base_tags = dict(base_tags or {})

    def get(self, url: str, **kwargs: Any) -> HttpResponse:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, data: Any = None, **kwargs: Any) -> HttpResponse:
        return self.request("POST", url, data=data, **kwargs)

    def request(
        self,
        method: str,
        url: str,
        *,
        name: str | None = None,
        headers: Mapping[str, str] | None = None,
        data: Any = None,
        params: Mapping[str, Any] | None = None,
        tags: Mapping[str, Any] | None = None,
    ) -> HttpResponse:
        started = time.perf_counter()
        try:
            raw = self._session.request(
                method,
                url,
                headers=dict(headers or {}),
                data=data,
                params=params,
                timeout=self._timeout,
            )
            duration_ms = (time.perf_counter() - started) * 1000.0
            response = HttpResponse(
                url=url,
                method=method,
                status=raw.status_code,
                duration_ms=duration_ms,
                body=raw.text,
            )
        except requests.RequestException as exc:
            duration_ms = (time.perf_counter() - started) * 1000.0
            LOGGER.debug("%s %s failed: %s", method, url, exc)
            response = HttpResponse(
                url=url,
                method=method,
                status=0,
                duration_ms=duration_ms,
                error=str(exc),
            )

        sample_tags = dict(self._base_tags)
        sample_tags.update(tags or {})
        sample_tags.update(
            {"method": method, "name": name or url, "status": response.status}
        )
        self._collector.add("http_reqs", 1, sample_tags)
        self._collector.add("http_req_duration", response.duration_ms, sample_tags)
        self._collector.add("http_req_failed", 1 if response.failed else 0, sample_tags)
        return response

    def close(self) -> None:
        self._session.close()
