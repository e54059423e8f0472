"""Tests for the running min/max/mean accumulator."""

from __future__ import annotations

import math

import pytest

from sgpuz.lib.stats import StatsAccumulator


def test_fresh_accumulator_is_unseeded():
    s = StatsAccumulator()
    assert not s.seeded
    assert s.count == 0


def test_first_observation_seeds():
    s = StatsAccumulator()
    s.observe(42.0)
    assert s.seeded
    assert (s.count, s.min, s.max, s.avg) == (1, 42.0, 42.0, 42.0)


def test_min_max_mean_of_sequence():
    s = StatsAccumulator()
    for x in [30, 40, 50]:
        s.observe(x)
    assert s.min == 30
    assert s.max == 50
    assert s.avg == pytest.approx(40)
    assert s.count == 3


@pytest.mark.parametrize("values", [
    [1500, 1550, 1480],
    [-5.5, 0.0, 12.25, 3.0, -1.0],
    [7.0] * 10,
    list(range(1, 101)),
])
def test_matches_builtin_aggregates(values):
    s = StatsAccumulator()
    for x in values:
        s.observe(x)
    assert s.min == min(values)
    assert s.max == max(values)
    assert math.isclose(s.avg, sum(values) / len(values), rel_tol=1e-9, abs_tol=1e-9)


def test_mean_is_cumulative_not_windowed():
    s = StatsAccumulator()
    for _ in range(99):
        s.observe(0.0)
    s.observe(100.0)
    # a sliding window or EMA would weight the last sample much more
    assert s.avg == pytest.approx(1.0)


def test_reset_behaves_like_fresh_seeded_accumulator():
    used = StatsAccumulator()
    for x in [900, 10, 5000]:
        used.observe(x)
    used.reset(60)

    fresh = StatsAccumulator()
    fresh.observe(60)

    for x in [70, 55, 65]:
        used.observe(x)
        fresh.observe(x)
    assert used == fresh


def test_copy_is_independent():
    s = StatsAccumulator()
    s.observe(1.0)
    c = s.copy()
    s.observe(10.0)
    assert c.max == 1.0
    assert s.max == 10.0
