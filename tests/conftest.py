from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass, field

import pytest
import requests

from logload.engine.collector import MetricsCollector
from logload.engine.http import HttpClient
from logload.engine.load import VirtualUserContext


@dataclass
class FakeResponse:
    status_code: int
    text: str = ""


@dataclass
class RecordedRequest:
    method: str
    url: str
    headers: dict
    data: object


@dataclass
class FakeSession:
    """Stand-in for requests.Session answering from a path -> status table."""

    statuses: dict[str, int] = field(default_factory=dict)
    delays: dict[str, float] = field(default_factory=dict)
    raise_for: set[str] = field(default_factory=set)
    requests: list[RecordedRequest] = field(default_factory=list)
    closed: bool = False

    def request(self, method, url, headers=None, data=None, params=None, timeout=None):
        self.requests.append(RecordedRequest(method, url, dict(headers or {}), data))
        path = url.split("://", 1)[-1].split("/", 1)[-1].split("?", 1)[0]
        path = "/" + path
        if path in self.raise_for:
            raise requests.ConnectionError(f"connection refused: {url}")
        delay = self.delays.get(path, 0.0)
        if delay:
            time.sleep(delay)
        return FakeResponse(status_code=self.statuses.get(path, 200), text="ok")

    def close(self) -> None:
        self.closed = True


class SharedSessionFactory:
    """Hands every VU a FakeSession that logs into one shared request list."""

    def __init__(self, **kwargs) -> None:
        self._kwargs = kwargs
        self._lock = threading.Lock()
        self.sessions: list[FakeSession] = []

    def __call__(self) -> FakeSession:
        session = FakeSession(**self._kwargs)
        with self._lock:
            self.sessions.append(session)
        return session

    @property
    def requests(self) -> list[RecordedRequest]:
        with self._lock:
            return [req for session in self.sessions for req in session.requests]


@pytest.fixture
def collector() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def make_context(collector):
    def factory(session: FakeSession, seed: int = 7, stop_event: threading.Event | None = None):
        return VirtualUserContext(
            vu_id=1,
            http=HttpClient(collector, timeout=5.0, session=session),
            metrics=collector,
            rng=random.Random(seed),
            stop_event=stop_event or threading.Event(),
        )

    return factory
