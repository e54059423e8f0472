"""Tests for polling, frame rendering and the sampler/renderer worker."""

from __future__ import annotations

import io
import threading

from conftest import new_chip_backend, old_chip_backend, quiet
from sgpuz.cli.monitor import (
    CURSOR_HOME,
    SamplerRenderer,
    poll_card,
    render_frame,
    sample_columns,
    stats_line,
)
from sgpuz.lib.backend import ErrorCode
from sgpuz.lib.card import NvidiaCard
from sgpuz.lib.logfile import SampleLog
from sgpuz.lib.session import Metric, SessionState


def make(backend=None):
    card = NvidiaCard(backend or new_chip_backend(), 0)
    profile = card.capabilities(say=quiet)
    return card, SessionState(card.static_info(), profile)


# ===================================================================
# poll_card
# ===================================================================

def test_poll_reads_every_metric(card, state):
    values, parameters, errors = poll_card(card, state.metrics)
    assert errors == {}
    assert values[Metric.GPU_CLOCK] == 1500
    assert values[Metric.MEM_CLOCK] == 3500
    assert values[Metric.FAN_RPM] == 1200
    assert values[Metric.CORE_VOLTAGE] == 1050.0
    assert parameters["power_limit"] == "150.00 W"
    assert parameters["powermizer_mode"] == "Auto"
    assert parameters["fan_target_speed"] == "40%"


def test_one_failing_sensor_does_not_stop_the_poll():
    b = new_chip_backend()
    b.failing["temperature.gpu"] = ErrorCode.GPU_IS_LOST
    card, state = make(b)
    values, _, errors = poll_card(card, state.metrics)
    assert Metric.TEMPERATURE not in values
    assert errors[Metric.TEMPERATURE].code == ErrorCode.GPU_IS_LOST
    assert values[Metric.POWER] == 120.5


def test_failing_parameter_is_keyed_by_name():
    b = new_chip_backend()
    b.failing["pstate"] = ErrorCode.NOT_SUPPORTED
    card, state = make(b)
    _, parameters, errors = poll_card(card, state.metrics)
    assert "performance_state" not in parameters
    assert "performance_state" in errors


# ===================================================================
# Rendering
# ===================================================================

def test_frame_content(card, state):
    values, parameters, errors = poll_card(card, state.metrics)
    state.apply_observations(values, parameters, errors)
    frame = render_frame(state.snapshot_for_render())
    assert "GeForce GTX 1080" in frame
    assert "[G]PU Clock Offset: 0  Min: -200  Max: 1000" in frame
    assert "[P]ower Limit: 150.00 W" in frame
    assert "[L]ogs:OFF" in frame
    assert "N:1" in frame
    assert "Status: OK" in frame
    assert "[F]an Control: Disabled" in frame


def test_frame_lines_have_fixed_width(card, state):
    state.apply_observations(*poll_card(card, state.metrics))
    lines = render_frame(state.snapshot_for_render()).splitlines()
    widths = {len(line) for line in lines}
    assert len(widths) == 1


def test_frame_without_voltage_control():
    card, state = make(old_chip_backend())
    state.apply_observations(*poll_card(card, state.metrics))
    frame = render_frame(state.snapshot_for_render())
    assert "Core [V].Offset: N/A  Min: N/A  Max: N/A" in frame
    assert "Core Voltage" not in frame


def test_stats_line_before_and_after_seed(state):
    assert stats_line(state.snapshot_for_render(), Metric.GPU_CLOCK) == "GPU Clock: -- MHz"
    for mhz in (1500, 1550, 1480):
        state.apply_observations({Metric.GPU_CLOCK: mhz})
    line = stats_line(state.snapshot_for_render(), Metric.GPU_CLOCK)
    assert line == "GPU Clock: 1480 MHz  Max: 1550  Min: 1480  Avg: 1510"


def test_stale_metric_marked(card, state):
    state.apply_observations({Metric.TEMPERATURE: 60.0})
    b = card.backend
    b.failing["temperature.gpu"] = ErrorCode.UNKNOWN
    state.apply_observations(*poll_card(card, state.metrics))
    view = state.snapshot_for_render()
    assert stats_line(view, Metric.TEMPERATURE).startswith("GPU Temp: 60.0 ERR C")
    assert "Status: fake:" in render_frame(view)


# ===================================================================
# SamplerRenderer
# ===================================================================

def test_step_redraws_in_place(card, state):
    out = io.StringIO()
    worker = SamplerRenderer(card, state, threading.Event(), out=out)
    worker.step()
    worker.step()
    text = out.getvalue()
    assert text.startswith(CURSOR_HOME)
    assert text.count(CURSOR_HOME) == 2
    assert "\033[2J" not in text
    assert state.snapshot_for_render().samples == 2


def test_sample_log_only_while_logging(card, state, tmp_path):
    log = SampleLog(sample_columns(state.metrics), directory=str(tmp_path))
    worker = SamplerRenderer(card, state, threading.Event(), out=io.StringIO(), sample_log=log)
    worker.step()
    assert log.path is None

    state.toggle_logging()
    worker.step()
    worker.step()
    log.close()

    rows = open(log.path, encoding="utf-8").read().splitlines()
    assert rows[0] == "timestamp," + ",".join(sample_columns(state.metrics))
    assert len(rows) == 3
    assert rows[1].split(",")[1] == "1500"


def test_run_stops_on_event(card, state):
    stop = threading.Event()
    worker = SamplerRenderer(card, state, stop, out=io.StringIO(), interval=0.01)
    t = threading.Thread(target=worker.run)
    t.start()
    stop.wait(0.1)
    stop.set()
    t.join(timeout=2)
    assert not t.is_alive()
    assert worker.failure is None
    assert state.snapshot_for_render().samples >= 1


def test_run_stops_when_display_inactive(card, state):
    state.set_display_active(False)
    out = io.StringIO()
    SamplerRenderer(card, state, threading.Event(), out=out).run()
    assert out.getvalue() == ""


def test_unexpected_failure_is_captured(card, state):
    class BrokenOut(io.StringIO):
        def write(self, s):
            raise OSError("terminal gone")

    stop = threading.Event()
    worker = SamplerRenderer(card, state, stop, out=BrokenOut())
    worker.run()
    assert stop.is_set()
    assert isinstance(worker.failure, OSError)
