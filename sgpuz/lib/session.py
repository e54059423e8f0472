"""
Session state — the one object both console workers share.

The sampler writes observations, the keyboard worker flips flags and
records failures, the renderer reads. Every field is private and behind
one lock; the only ways in are the methods below, and the only way out
for rendering is snapshot_for_render(), which returns a frozen copy.

  apply_observations(values, parameters, errors)   sampler, once per poll
  request_reset()                                  R key
  toggle_logging()                                 L key
  mark_dirty(key)                                  after any adjustment
  record_error(source, err)                        failed command
  set_display_active(False)                        shutdown
  snapshot_for_render()          → RenderView      renderer
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from sgpuz.lib.capability import CapabilityProfile
from sgpuz.lib.card import StaticInfo
from sgpuz.lib.stats import StatsAccumulator


class Metric(Enum):
    """Tracked sensors: (label, unit, decimals shown for the average)."""

    GPU_CLOCK = ("GPU Clock", "MHz", 0)
    TEMPERATURE = ("GPU Temp", "C", 1)
    MEM_CLOCK = ("Mem.Clock", "MHz", 0)
    POWER = ("Power GPU", "W", 1)
    FAN_RPM = ("Fan Speed", "RPM", 0)
    GPU_UTIL = ("GPU Usage", "%", 0)
    MEM_UTIL = ("Memory Usage", "%", 0)
    CORE_VOLTAGE = ("Core Voltage", "mV", 1)

    def __init__(self, label: str, unit: str, precision: int):
        self.label = label
        self.unit = unit
        self.precision = precision


def tracked_metrics(profile: CapabilityProfile) -> tuple[Metric, ...]:
    """Core voltage is only sampled when the chip exposes it."""
    if profile.voltage_available:
        return tuple(Metric)
    return tuple(m for m in Metric if m is not Metric.CORE_VOLTAGE)


@dataclass(frozen=True)
class ControlFlags:
    display_active: bool = True
    logging: bool = False
    reset_pending: bool = False


@dataclass(frozen=True)
class RenderView:
    """Point-in-time copy of the session for one frame."""
    static: StaticInfo
    profile: CapabilityProfile
    metrics: tuple[Metric, ...]
    latest: Mapping[Metric, float]
    stats: Mapping[Metric, StatsAccumulator]
    parameters: Mapping[str, str]
    stale: frozenset
    flags: ControlFlags
    samples: int
    last_error: str
    last_key: str


class SessionState:

    def __init__(self, static: StaticInfo, profile: CapabilityProfile):
        self.static = static
        self.profile = profile
        self.metrics = tracked_metrics(profile)
        self._lock = threading.Lock()
        self._stats = {m: StatsAccumulator() for m in self.metrics}
        self._latest: dict[Metric, float] = {}
        self._parameters: dict[str, str] = {}
        self._stale: set = set()
        self._flags = ControlFlags()
        self._samples = 0
        self._last_error = ""
        self._last_key = ""

    # ── sampler side ──

    def apply_observations(
        self,
        values: Mapping[Metric, float],
        parameters: Mapping[str, str] | None = None,
        errors: Mapping[object, Exception] | None = None,
    ) -> None:
        """Fold one poll into the statistics, atomically.

        `values` only holds metrics that were read successfully; a metric
        listed in `errors` keeps its previous latest value and is flagged
        stale. A pending reset is consumed here: accumulators reseed from
        this poll.
        """
        errors = errors or {}
        with self._lock:
            if self._flags.reset_pending:
                self._stats = {m: StatsAccumulator() for m in self.metrics}
                self._samples = 0
                self._flags = replace(self._flags, reset_pending=False)
            for metric, value in values.items():
                if metric in self._stats:
                    self._stats[metric].observe(value)
                    self._latest[metric] = value
            if parameters:
                self._parameters.update(parameters)
            self._stale = set(errors)
            if errors:
                self._last_error = _describe(next(iter(errors.values())))
            self._samples += 1

    # ── keyboard side ──

    def request_reset(self) -> None:
        with self._lock:
            self._flags = replace(self._flags, reset_pending=True)

    def toggle_logging(self) -> bool:
        with self._lock:
            self._flags = replace(self._flags, logging=not self._flags.logging)
            return self._flags.logging

    def mark_dirty(self, key: str) -> None:
        with self._lock:
            self._last_key = key

    def record_error(self, source: str, err: Exception) -> None:
        with self._lock:
            self._last_error = f"[{source}] {_describe(err)}"

    # ── session side ──

    def set_display_active(self, active: bool) -> None:
        with self._lock:
            self._flags = replace(self._flags, display_active=active)

    @property
    def display_active(self) -> bool:
        with self._lock:
            return self._flags.display_active

    @property
    def flags(self) -> ControlFlags:
        with self._lock:
            return self._flags

    def snapshot_for_render(self) -> RenderView:
        with self._lock:
            return RenderView(
                static=self.static,
                profile=self.profile,
                metrics=self.metrics,
                latest=MappingProxyType(dict(self._latest)),
                stats=MappingProxyType({m: s.copy() for m, s in self._stats.items()}),
                parameters=MappingProxyType(dict(self._parameters)),
                stale=frozenset(self._stale),
                flags=self._flags,
                samples=self._samples,
                last_error=self._last_error,
                last_key=self._last_key,
            )


def _describe(err: Exception) -> str:
    short = getattr(err, "short", None)
    return short() if callable(short) else str(err)
