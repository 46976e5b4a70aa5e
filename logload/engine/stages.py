from __future__ import annotations

import math
from typing import Sequence

from .config import Stage


class StageScheduler:
    """Maps elapsed run time onto a target number of virtual users.

    Each stage ramps linearly from the previous stage's target (``start_vus``
    for the first one) to its own target. While ramping up the value is
    rounded down and while ramping down it is rounded up, so the VU count
    never overshoots the line between two stage targets.
    """

    def __init__(self, stages: Sequence[Stage], start_vus: int = 0) -> None:
        if not stages:
            raise ValueError("StageScheduler needs at least one stage")
        self._stages = list(stages)
        self._start_vus = start_vus
        self._boundaries: list[float] = []
        elapsed = 0.0
        for stage in self._stages:
            elapsed += stage.duration_seconds
            self._boundaries.append(elapsed)

    @property
    def stages(self) -> list[Stage]:
        return list(self._stages)

    @property
    def total_duration(self) -> float:
        return self._boundaries[-1]

    @property
    def peak(self) -> int:
        return max([self._start_vus, *(stage.target for stage in self._stages)])

    def stage_index_at(self, elapsed: float) -> int | None:
        if elapsed < 0:
            return 0
        for idx, boundary in enumerate(self._boundaries):
            if elapsed < boundary:
                return idx
        return None

    def target_at(self, elapsed: float) -> int:
        idx = self.stage_index_at(elapsed)
        if idx is None:
            return self._stages[-1].target

        stage = self._stages[idx]
        start_target = self._start_vus if idx == 0 else self._stages[idx - 1].target
        stage_start = self._boundaries[idx] - stage.duration_seconds
        fraction = min(max((elapsed - stage_start) / stage.duration_seconds, 0.0), 1.0)
        value = start_target + (stage.target - start_target) * fraction

        if stage.target >= start_target:
            return int(math.floor(value + 1e-9))
        return int(math.ceil(value - 1e-9))

    def timeline(self, step: float = 1.0) -> list[tuple[float, int]]:
        if step <= 0:
            raise ValueError("timeline step must be > 0")
        points: list[tuple[float, int]] = []
        count = int(math.floor(self.total_duration / step))
        for i in range(count + 1):
            t = i * step
            points.append((t, self.target_at(t)))
        if points[-1][0] < self.total_duration:
            points.append((self.total_duration, self.target_at(self.total_duration)))
        return points
