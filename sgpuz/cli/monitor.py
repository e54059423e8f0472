"""
CLI monitor — the sampling / rendering worker of the live console.

One loop, no timer: poll every sensor and parameter through the card,
fold the poll into SessionState, then redraw the frame in place (cursor
home, no clear). The loop is paced only by how long the vendor tools take
to answer; --interval adds a sleep between frames if asked for.

A sensor that fails keeps its last value on screen with an ERR marker and
the failure text goes on the status line. Nothing a single query does can
stop the loop.

The frame is plain box-drawn text of fixed width so a redraw fully
overwrites the previous one.
"""

from __future__ import annotations

import sys
import threading
from typing import Callable

from sgpuz.lib.backend import DeviceError
from sgpuz.lib.card import GraphicsCard
from sgpuz.lib.logfile import SampleLog, note
from sgpuz.lib.session import Metric, RenderView, SessionState

CURSOR_HOME = "\033[H"
WIDTH = 70


# ── Polling ──

def metric_readers(card: GraphicsCard) -> dict[Metric, Callable[[], float]]:
    return {
        Metric.GPU_CLOCK: card.gpu_clock,
        Metric.TEMPERATURE: card.gpu_temperature,
        Metric.MEM_CLOCK: card.memory_clock,
        Metric.POWER: card.power_gpu,
        Metric.FAN_RPM: card.fan_current_speed_rpm,
        Metric.GPU_UTIL: card.gpu_usage,
        Metric.MEM_UTIL: card.memory_usage,
        Metric.CORE_VOLTAGE: card.core_voltage,
    }


def parameter_readers(card: GraphicsCard) -> dict[str, Callable[[], object]]:
    return {
        "pci_info": card.pci_info,
        "power_limit": lambda: f"{card.power_limit():.2f} W",
        "gpu_clock_max": card.gpu_clock_max,
        "gpu_clock_offset": card.gpu_clock_offset,
        "memory_clock_max": card.memory_clock_max,
        "memory_clock_offset": card.memory_clock_offset,
        "core_voltage_offset": card.core_voltage_offset,
        "performance_state": card.performance_state,
        "powermizer_mode": card.powermizer_mode,
        "throttle": card.gpu_throttle_reasons,
        "fan_control": card.fan_control,
        "fan_target_speed": lambda: f"{card.fan_target_speed()}%",
        "fan_current_speed": lambda: f"{card.fan_current_speed()}%",
    }


def poll_card(card: GraphicsCard, metrics) -> tuple[dict, dict, dict]:
    """One query per metric / parameter. Returns (values, parameters, errors).

    A DeviceError is caught per reading and reported in `errors` under
    the metric or parameter key; the other readings are unaffected.
    """
    values: dict[Metric, float] = {}
    parameters: dict[str, str] = {}
    errors: dict[object, DeviceError] = {}

    readers = metric_readers(card)
    for metric in metrics:
        try:
            values[metric] = readers[metric]()
        except DeviceError as e:
            errors[metric] = e

    for key, reader in parameter_readers(card).items():
        try:
            parameters[key] = str(reader())
        except DeviceError as e:
            errors[key] = e

    return values, parameters, errors


# ── Frame rendering ──

def _line(text: str = "") -> str:
    return f"│{(' ' + text)[:WIDTH]:<{WIDTH}}│"


def _rule(title: str = "") -> str:
    if not title:
        return f"├{'─' * WIDTH}┤"
    return f"├{('─── ' + title + ' ')[:WIDTH]:─<{WIDTH}}┤"


def _fmt(value: float | None, precision: int) -> str:
    if value is None:
        return "--"
    return f"{value:.{precision}f}"


def _range(r: tuple[int, int] | None) -> tuple[str, str]:
    return (str(r[0]), str(r[1])) if r else ("N/A", "N/A")


def stats_line(view: RenderView, metric: Metric) -> str:
    p = metric.precision
    current = _fmt(view.latest.get(metric), p)
    if metric in view.stale:
        current += " ERR"
    s = view.stats[metric]
    if not s.seeded:
        return f"{metric.label}: {current} {metric.unit}"
    return (
        f"{metric.label}: {current} {metric.unit}  "
        f"Max: {_fmt(s.max, p)}  Min: {_fmt(s.min, p)}  Avg: {_fmt(s.avg, p)}"
    )


def render_frame(view: RenderView) -> str:
    """Full screen for one RenderView."""
    st = view.static
    prof = view.profile
    par = view.parameters

    def param(key: str) -> str:
        text = par.get(key, "--")
        return f"{text} ERR" if key in view.stale else text

    gpu_min, gpu_max = _range(prof.gpu_clock_offset_range)
    mem_min, mem_max = _range(prof.mem_clock_offset_range)
    volt_min, volt_max = prof.voltage_range_text()

    lines = [f"┌{'─' * WIDTH}┐", f"│{'SGPU-Z':^{WIDTH}}│", _rule()]

    # Identity
    lines.append(_line(f"Vendor: {st.vendor}  Name: {st.product_name}  Driver: {st.driver_version}"))
    lines.append(_line(f"VBIOS Version: {st.vbios_version}  InfoROM Version: {st.inforom_version}"))
    lines.append(_line(
        f"Dev. ID: {st.device_id}  SM: {st.computing_cores}  "
        f"SlowD.T: {st.temp_slowdown}  ShutD.T: {st.temp_shutdown}"
    ))
    lines.append(_line(f"Memory Size: {st.memory_size}  Bus Interface: {param('pci_info')}"))

    # Parameters
    lines.append(_rule("PARAMETERS"))
    lines.append(_line(
        f"[G]PU Clock Offset: {param('gpu_clock_offset')}  Min: {gpu_min}  Max: {gpu_max}"
        f"  MaxClk: {param('gpu_clock_max')}"
    ))
    lines.append(_line(
        f"[M]em.Clock Offset: {param('memory_clock_offset')}  Min: {mem_min}  Max: {mem_max}"
        f"  MaxClk: {param('memory_clock_max')}"
    ))
    lines.append(_line(f"Core [V].Offset: {param('core_voltage_offset')}  Min: {volt_min}  Max: {volt_max}"))
    power_key = "[P]ower Limit" if st.power_management == "Enabled" else "Power Limit"
    lines.append(_line(
        f"{power_key}: {param('power_limit')}  Min: {st.power_min:.2f} W  Max: {st.power_max:.2f} W"
    ))
    if par.get("fan_control", "0") == "0":
        lines.append(_line("[F]an Control: Disabled"))
    else:
        lines.append(_line(
            f"[F]an Control: Enabled  [T]arget Fan PWM: {param('fan_target_speed')}"
            f"  Curr. Fan PWM: {param('fan_current_speed')}"
        ))
    lines.append(_line(
        f"Po[w]erMizer Mode: {param('powermizer_mode')}  "
        f"Performance State: {param('performance_state')}"
    ))

    # Sensors
    logs = "ON " if view.flags.logging else "OFF"
    lines.append(_rule(f"[R]eset Stats/Logs │ SENSORS │ [L]ogs:{logs} │ N:{view.samples}"))
    for metric in view.metrics:
        lines.append(_line(stats_line(view, metric)))

    lines.append(_rule())
    lines.append(_line(f"GPU Throttle: {param('throttle')}"))
    lines.append(_line(f"Status: {view.last_error or 'OK'}"))
    lines.append(f"└{'─' * WIDTH}┘")
    lines.append(f"  Key: {view.last_key or '-'}   Press Ctrl+C to exit".ljust(WIDTH + 2))

    return "\n".join(lines)


def sample_row(view: RenderView) -> list[str]:
    return [_fmt(view.latest.get(m), m.precision) for m in view.metrics]


def sample_columns(metrics) -> list[str]:
    return [m.name.lower() for m in metrics]


# ── Worker ──

class SamplerRenderer:
    """Continuous worker: poll → apply_observations → render, until stopped."""

    def __init__(
        self,
        card: GraphicsCard,
        state: SessionState,
        stop: threading.Event,
        out=None,
        interval: float = 0.0,
        sample_log: SampleLog | None = None,
    ):
        self.card = card
        self.state = state
        self.stop = stop
        self.out = out if out is not None else sys.__stdout__
        self.interval = interval
        self.sample_log = sample_log or SampleLog(sample_columns(state.metrics))
        self.failure: BaseException | None = None
        self._noted: dict[object, str] = {}

    def _note_errors(self, errors: dict) -> None:
        # Log each failure once when it appears or changes, not every poll
        for key, err in errors.items():
            text = err.short()
            if self._noted.get(key) != text:
                note(f"poll {getattr(key, 'name', key)}: {text}")
        self._noted = {key: err.short() for key, err in errors.items()}

    def step(self) -> RenderView:
        values, parameters, errors = poll_card(self.card, self.state.metrics)
        self.state.apply_observations(values, parameters, errors)
        self._note_errors(errors)
        view = self.state.snapshot_for_render()
        if view.flags.logging:
            self.sample_log.write(sample_row(view))
        self.out.write(CURSOR_HOME + render_frame(view))
        self.out.flush()
        return view

    def run(self) -> None:
        try:
            while self.state.display_active and not self.stop.is_set():
                self.step()
                if self.interval > 0:
                    self.stop.wait(self.interval)
        except BaseException as e:
            self.failure = e
            self.stop.set()
