from __future__ import annotations

import itertools
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

import requests

from .collector import MetricsCollector
from .config import LoadOptions
from .http import HttpClient
from .stages import StageScheduler

LOGGER = logging.getLogger("logload.engine.load")


@dataclass
class LoadStatistics:
    iterations: int
    started_at: float
    finished_at: float
    peak_vus: int = 0
    interrupted: bool = False

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    @property
    def iterations_per_second(self) -> float:
        if self.duration_s == 0:
            return 0.0
        return self.iterations / self.duration_s


class VirtualUserContext:
    """Everything a scenario iteration may touch on behalf of one VU."""

    def __init__(
        self,
        vu_id: int,
        http: HttpClient,
        metrics: MetricsCollector,
        rng: random.Random,
        stop_event: threading.Event,
    ) -> None:
        self.vu_id = vu_id
        self.iteration = 0
        self.http = http
        self.metrics = metrics
        self.rng = rng
        self._stop_event = stop_event

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def sleep(self, seconds: float) -> bool:
        """Pause the VU; returns True when the pause was cut short by a stop."""
        if seconds <= 0:
            return self._stop_event.is_set()
        return self._stop_event.wait(timeout=seconds)

    def check(
        self,
        value: Any,
        checks: Mapping[str, Callable[[Any], bool]],
        tags: Mapping[str, Any] | None = None,
    ) -> bool:
        all_ok = True
        for name, predicate in checks.items():
            try:
                ok = bool(predicate(value))
            except Exception:  # noqa: BLE001
                LOGGER.exception("check %r raised on VU %d", name, self.vu_id)
                ok = False
            sample_tags = dict(tags or {})
            sample_tags["check"] = name
            self.metrics.add("checks", 1 if ok else 0, sample_tags)
            all_ok = all_ok and ok
        return all_ok


class _VirtualUser:
    def __init__(self, vu_id: int) -> None:
        self.vu_id = vu_id
        self.stop_event = threading.Event()
        self.thread: threading.Thread | None = None

    def is_alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()


class StagedLoadRunner:
    """Runs a scenario under a staged VU profile, one thread per active VU."""

    def __init__(
        self,
        options: LoadOptions,
        scenario,
        collector: MetricsCollector,
        tick_seconds: float = 0.1,
        session_factory: Callable[[], requests.Session] | None = None,
        seed: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._options = options
        self._scenario = scenario
        self._collector = collector
        self._tick_seconds = tick_seconds
        self._session_factory = session_factory or requests.Session
        self._seed = seed
        self._clock = clock
        self._scheduler = StageScheduler(options.stages, start_vus=options.start_vus)

        self._vu_ids = itertools.count(start=1)
        self._active: list[_VirtualUser] = []
        self._retiring: list[_VirtualUser] = []
        self._lock = threading.Lock()
        self._iterations = 0
        self._peak_vus = 0
        self._stop_event = threading.Event()

    @property
    def scheduler(self) -> StageScheduler:
        return self._scheduler

    @property
    def active_vus(self) -> int:
        with self._lock:
            return len(self._active)

    def run(self) -> LoadStatistics:
        started_at = time.time()
        start = self._clock()
        total = self._scheduler.total_duration
        last_stage: int | None = -1
        LOGGER.info(
            "Starting run: %d stage(s), %.0fs total, peak %d VUs",
            len(self._scheduler.stages),
            total,
            self._scheduler.peak,
        )

        try:
            while not self._stop_event.is_set():
                elapsed = self._clock() - start
                if elapsed >= total:
                    break
                stage_idx = self._scheduler.stage_index_at(elapsed)
                if stage_idx != last_stage:
                    stage = self._scheduler.stages[stage_idx]
                    LOGGER.info(
                        "Stage %d/%d: ramping to %d VUs over %.0fs",
                        stage_idx + 1,
                        len(self._scheduler.stages),
                        stage.target,
                        stage.duration_seconds,
                    )
                    last_stage = stage_idx
                self._scale_to(self._scheduler.target_at(elapsed))
                self._collector.add("vus", self.active_vus)
                if self._stop_event.wait(timeout=self._tick_seconds):
                    break
        finally:
            self._scale_to(0)
            self._collector.add("vus", 0)
            self._join_retiring(self._options.graceful_ramp_down_seconds)

        finished_at = time.time()
        self._collector.set_run_window(started_at, finished_at)
        with self._lock:
            iterations = self._iterations
            peak = self._peak_vus
        LOGGER.info(
            "Run finished: %d iteration(s) in %.1fs (peak %d VUs)",
            iterations,
            finished_at - started_at,
            peak,
        )
        return LoadStatistics(
            iterations=iterations,
            started_at=started_at,
            finished_at=finished_at,
            peak_vus=peak,
            interrupted=self._stop_event.is_set(),
        )

    def stop(self) -> None:
        self._stop_event.set()
        with self._lock:
            for vu in self._active + self._retiring:
                vu.stop_event.set()

    def _scale_to(self, target: int) -> None:
        with self._lock:
            while len(self._active) < target:
                vu = _VirtualUser(next(self._vu_ids))
                thread = threading.Thread(
                    target=self._vu_loop,
                    args=(vu,),
                    name=f"vu-{vu.vu_id}",
                    daemon=True,
                )
                vu.thread = thread
                self._active.append(vu)
                thread.start()
            while len(self._active) > target:
                vu = self._active.pop()
                vu.stop_event.set()
                self._retiring.append(vu)
            self._peak_vus = max(self._peak_vus, len(self._active))
            self._retiring = [vu for vu in self._retiring if vu.is_alive()]

    def _join_retiring(self, timeout_s: float) -> None:
        deadline = time.monotonic() + timeout_s
        with self._lock:
            retiring = list(self._retiring)
        for vu in retiring:
            remaining = max(deadline - time.monotonic(), 0.0)
            if vu.thread is not None:
                vu.thread.join(timeout=remaining)
        still_running = [vu.vu_id for vu in retiring if vu.is_alive()]
        if still_running:
            LOGGER.warning(
                "%d VU(s) did not finish within the %.0fs graceful ramp-down: %s",
                len(still_running),
                timeout_s,
                ", ".join(str(vu_id) for vu_id in still_running),
            )

    def _vu_loop(self, vu: _VirtualUser) -> None:
        rng = random.Random(None if self._seed is None else self._seed + vu.vu_id)
        http = HttpClient(
            self._collector,
            timeout=self._options.request_timeout_seconds,
            session=self._session_factory(),
        )
        ctx = VirtualUserContext(
            vu_id=vu.vu_id,
            http=http,
            metrics=self._collector,
            rng=rng,
            stop_event=vu.stop_event,
        )
        LOGGER.debug("VU %d started", vu.vu_id)
        try:
            while not vu.stop_event.is_set():
                started = time.perf_counter()
                try:
                    self._scenario.run_iteration(ctx)
                except Exception:  # noqa: BLE001
                    LOGGER.exception("VU %d iteration %d failed", vu.vu_id, ctx.iteration)
                duration_ms = (time.perf_counter() - started) * 1000.0
                self._collector.add("iterations", 1)
                self._collector.add("iteration_duration", duration_ms)
                ctx.iteration += 1
                with self._lock:
                    self._iterations += 1
        finally:
            http.close()
            LOGGER.debug("VU %d stopped after %d iteration(s)", vu.vu_id, ctx.iteration)
