"""
CLI controls — the keyboard worker of the live console.

Single keystrokes, no echo, no Enter. Uppercase raises, lowercase lowers:

  G/g  GPU clock offset      ±10 MHz
  M/m  memory clock offset   ±50 MHz
  V/v  core voltage offset   ±5000 µV (raw units)
  P/p  power limit           ±5 W, dropped if it would leave [min, max]
  T/t  fan target speed      ±1 %, only while manual fan control is on
  F/f  manual fan control    on/off
  W/w  PowerMizer mode       ±1 (raw enum value)
  R/r  reset statistics
  L/l  CSV sample logging    on/off

Every adjustment reads the current value from the card first and writes
value ± step. The displayed value is never used as the base, so repeated
presses cannot drift from what the device actually holds. G, M and V are
checked against the offset ranges found at startup; a step that would
leave the range is dropped, like an out-of-range power limit.
"""

from __future__ import annotations

import os
import select
import sys
import termios
import threading
from dataclasses import dataclass
from enum import Enum

from sgpuz.lib.backend import DeviceError
from sgpuz.lib.card import GraphicsCard
from sgpuz.lib.logfile import note
from sgpuz.lib.session import SessionState


class Knob(Enum):
    GPU_CLOCK_OFFSET = "gpu-clock-offset"
    MEM_CLOCK_OFFSET = "memory-clock-offset"
    VOLTAGE_OFFSET = "core-voltage-offset"
    POWER_LIMIT = "power-limit"
    FAN_TARGET = "fan-target-speed"
    POWERMIZER = "powermizer-mode"
    FAN_CONTROL = "fan-control"
    RESET_STATS = "reset-stats"
    LOGGING = "logging"


@dataclass(frozen=True)
class Steps:
    gpu_clock: int = 10
    mem_clock: int = 50
    voltage: int = 5000
    power: int = 5
    fan: int = 1
    powermizer: int = 1


@dataclass(frozen=True)
class AdjustmentCommand:
    knob: Knob
    delta: int = 0


def command_for_key(key: str, steps: Steps = Steps()) -> AdjustmentCommand | None:
    """Map one keystroke to a command. Unknown keys → None."""
    stepped = {
        "g": (Knob.GPU_CLOCK_OFFSET, steps.gpu_clock),
        "m": (Knob.MEM_CLOCK_OFFSET, steps.mem_clock),
        "v": (Knob.VOLTAGE_OFFSET, steps.voltage),
        "p": (Knob.POWER_LIMIT, steps.power),
        "t": (Knob.FAN_TARGET, steps.fan),
        "w": (Knob.POWERMIZER, steps.powermizer),
    }
    toggles = {"f": Knob.FAN_CONTROL, "r": Knob.RESET_STATS, "l": Knob.LOGGING}

    if len(key) != 1:
        return None
    low = key.lower()
    if low in stepped:
        knob, step = stepped[low]
        return AdjustmentCommand(knob, step if key.isupper() else -step)
    if low in toggles:
        return AdjustmentCommand(toggles[low])
    return None


# knob → (getter, setter, profile range field) on the card, for the plain
# read-modify-write knobs. No range field, or a None range, lets every value through.
_READ_WRITE = {
    Knob.GPU_CLOCK_OFFSET: ("gpu_clock_offset", "set_gpu_clock_offset", "gpu_clock_offset_range"),
    Knob.MEM_CLOCK_OFFSET: ("memory_clock_offset", "set_memory_clock_offset", "mem_clock_offset_range"),
    Knob.VOLTAGE_OFFSET: ("core_voltage_offset_raw", "set_core_voltage_offset", "voltage_offset_range"),
    Knob.POWERMIZER: ("powermizer_mode_raw", "set_powermizer_mode", None),
}


def within(value: int, bounds: tuple[int, int] | None) -> bool:
    if bounds is None:
        return True
    lo, hi = bounds
    return lo <= value <= hi


class CommandDispatcher:

    def __init__(self, card: GraphicsCard, state: SessionState, steps: Steps = Steps()):
        self.card = card
        self.state = state
        self.steps = steps

    def apply(self, cmd: AdjustmentCommand) -> None:
        """Execute one command against the card / session state.

        A candidate outside the detected offset range is dropped without a
        write. Raises DeviceError if the card refuses; handle() contains it.
        """
        card = self.card
        if cmd.knob in _READ_WRITE:
            getter, setter, range_field = _READ_WRITE[cmd.knob]
            candidate = getattr(card, getter)() + cmd.delta
            bounds = getattr(card.capabilities(), range_field) if range_field else None
            if within(candidate, bounds):
                getattr(card, setter)(candidate)
        elif cmd.knob is Knob.POWER_LIMIT:
            card.set_power_limit(int(card.power_limit()) + cmd.delta)
        elif cmd.knob is Knob.FAN_TARGET:
            if card.fan_control() == 1:
                card.set_fan_target_speed(card.fan_target_speed() + cmd.delta)
        elif cmd.knob is Knob.FAN_CONTROL:
            if card.fan_control() == 0:
                card.enable_fan_control()
            else:
                card.reset_fan_control()
        elif cmd.knob is Knob.RESET_STATS:
            self.state.request_reset()
        elif cmd.knob is Knob.LOGGING:
            self.state.toggle_logging()

    def handle(self, key: str) -> bool:
        """Dispatch one keystroke. Returns False for ignored keys."""
        cmd = command_for_key(key, self.steps)
        if cmd is None:
            return False
        try:
            self.apply(cmd)
        except DeviceError as e:
            self.state.record_error(cmd.knob.value, e)
            note(f"{cmd.knob.value} ({key}): {e.short()}")
        self.state.mark_dirty(key)
        return True


# ── Keyboard ──

class KeyReader:
    """Unbuffered, no-echo single-character reads from a file descriptor.

    enable() switches the terminal to non-canonical, no-echo mode with
    signals left on, so Ctrl+C still interrupts. restore() puts the saved
    attributes back and is safe to call more than once.
    """

    def __init__(self, fd: int | None = None):
        self.fd = sys.stdin.fileno() if fd is None else fd
        self._saved = None
        self.eof = False

    def enable(self) -> None:
        if not os.isatty(self.fd):
            return
        self._saved = termios.tcgetattr(self.fd)
        attrs = termios.tcgetattr(self.fd)
        attrs[3] &= ~(termios.ICANON | termios.ECHO)
        attrs[6][termios.VMIN] = 1
        attrs[6][termios.VTIME] = 0
        termios.tcsetattr(self.fd, termios.TCSANOW, attrs)

    def restore(self) -> None:
        if self._saved is None:
            return
        try:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, self._saved)
        except termios.error:
            pass
        self._saved = None

    def read_key(self, timeout: float) -> str | None:
        """One character, or None if nothing arrived within `timeout`."""
        if self.eof:
            return None
        ready, _, _ = select.select([self.fd], [], [], timeout)
        if not ready:
            return None
        data = os.read(self.fd, 1)
        if not data:
            self.eof = True
            return None
        return data.decode("utf-8", errors="replace")


class KeyboardWorker:
    """Blocking keystroke loop feeding a CommandDispatcher until `stop` is set."""

    POLL = 0.1

    def __init__(self, dispatcher: CommandDispatcher, reader: KeyReader, stop: threading.Event):
        self.dispatcher = dispatcher
        self.reader = reader
        self.stop = stop
        self.failure: BaseException | None = None

    def run(self) -> None:
        try:
            while not self.stop.is_set():
                if self.reader.eof:
                    self.stop.wait(self.POLL)
                    continue
                key = self.reader.read_key(self.POLL)
                if key:
                    self.dispatcher.handle(key)
        except BaseException as e:
            self.failure = e
            self.stop.set()
