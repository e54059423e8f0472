"""
Running statistics — min / max / cumulative mean since the last reset.

No window, no decay: avg is the plain arithmetic mean of every value
observed since the accumulator was (re)seeded, updated incrementally as

    avg' = (avg * count + x) / (count + 1)

The first observe() on a fresh accumulator seeds it (count = 1), so an
accumulator is never read in an undefined state.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class StatsAccumulator:
    count: int = 0
    min: float = 0.0
    max: float = 0.0
    avg: float = 0.0

    @property
    def seeded(self) -> bool:
        return self.count > 0

    def reset(self, seed: float) -> None:
        """Drop all history and start again from `seed` as the only sample."""
        self.count = 1
        self.min = self.max = self.avg = seed

    def observe(self, x: float) -> None:
        if not self.seeded:
            self.reset(x)
            return
        if x > self.max:
            self.max = x
        if x < self.min:
            self.min = x
        self.avg = (self.avg * self.count + x) / (self.count + 1)
        self.count += 1

    def copy(self) -> StatsAccumulator:
        return StatsAccumulator(self.count, self.min, self.max, self.avg)
