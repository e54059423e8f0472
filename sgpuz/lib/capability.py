"""
Capability bootstrap — which overclock knobs this chip has, and their ranges.

Run once per session, right after the card is opened:

  1. clock offset attribute
       GPUGraphicsClockOffsetAllPerformanceLevels answers  →  "all-levels"
       (Pascal and newer, offset applies to every P-state)
       anything else                                       →  "highest-level"
       (Fermi/Kepler/Maxwell, offset on performance level 3 only)
     The second branch is a fallback, not a verdict: an unknown chip lands
     there too and is never reported as unsupported.
  2. offset ranges parsed from the verbose query ("... in the range A - B")
  3. voltage control: GPUOverVoltageOffset answers or it doesn't

Coolbits (X config) is checked before this, see lib/coolbits.py.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

from sgpuz.lib.backend import DeviceError, gpu_attr

ALL_LEVELS = "all-levels"
HIGHEST_LEVEL = "highest-level"

VOLTAGE_OFFSET_ATTR = "GPUOverVoltageOffset"


@dataclass(frozen=True)
class AttributeRef:
    """Name of a clock offset attribute plus the chip generation it implies."""
    name: str
    generation: str

    def path(self, gpu: int) -> str:
        return gpu_attr(gpu, self.name)


GPU_OFFSET_ALL = AttributeRef("GPUGraphicsClockOffsetAllPerformanceLevels", ALL_LEVELS)
MEM_OFFSET_ALL = AttributeRef("GPUMemoryTransferRateOffsetAllPerformanceLevels", ALL_LEVELS)
GPU_OFFSET_P3 = AttributeRef("GPUGraphicsClockOffset[3]", HIGHEST_LEVEL)
MEM_OFFSET_P3 = AttributeRef("GPUMemoryTransferRateOffset[3]", HIGHEST_LEVEL)


@dataclass(frozen=True)
class CapabilityProfile:
    gpu_clock_offset_attr: AttributeRef
    mem_clock_offset_attr: AttributeRef
    gpu_clock_offset_range: tuple[int, int] | None
    mem_clock_offset_range: tuple[int, int] | None
    voltage_available: bool
    voltage_offset_range: tuple[int, int] | None   # raw µV

    @property
    def chip_generation(self) -> str:
        return self.gpu_clock_offset_attr.generation

    def voltage_range_text(self) -> tuple[str, str]:
        """(min, max) as '%0.1f mV' strings, or ('N/A', 'N/A')."""
        if not self.voltage_available or self.voltage_offset_range is None:
            return ("N/A", "N/A")
        lo, hi = self.voltage_offset_range
        return (f"{lo / 1000:0.1f} mV", f"{hi / 1000:0.1f} mV")


_RANGE_RE = re.compile(r"range\s+(-?\d+)\s+-\s+(-?\d+)")


def parse_range(text: str) -> tuple[int, int] | None:
    """Pull (min, max) out of nvidia-settings' verbose query output.

    Returns None when the text has no usable range sentence.
    """
    m = _RANGE_RE.search(" ".join(str(text).split()))
    if m is None:
        return None
    lo, hi = int(m.group(1)), int(m.group(2))
    if lo > hi:
        return None
    return (lo, hi)


Query = Callable[..., "str | float"]


def _try_read(query: Query, path: str) -> str:
    """Verbose query that reports absence as '' instead of raising."""
    try:
        return str(query(path, verbose=True)).strip()
    except DeviceError:
        return ""


def detect_profile(query: Query, gpu: int, say: Callable[[str], None] = print) -> CapabilityProfile:
    """Run the detection steps against `query` (a serialized card query)."""

    # ── clock offset attribute ──
    if _try_read(query, GPU_OFFSET_ALL.path(gpu)):
        say("Seems to be a Pascal or upper Chip: we can Overclock all levels !")
        gpu_ref, mem_ref = GPU_OFFSET_ALL, MEM_OFFSET_ALL
    else:
        say("Seems to be a Fermi, Kepler or Maxwell Chip: we only can overclock some level ...")
        gpu_ref, mem_ref = GPU_OFFSET_P3, MEM_OFFSET_P3

    # ── offset ranges ── query errors here are initialization-fatal
    gpu_range = parse_range(query(gpu_ref.path(gpu), verbose=True))
    mem_range = parse_range(query(mem_ref.path(gpu), verbose=True))

    # ── voltage control ──
    volt_text = _try_read(query, gpu_attr(gpu, VOLTAGE_OFFSET_ATTR))
    if volt_text:
        say("Voltage Control seems IS available :)")
        volt_range = parse_range(volt_text)
    else:
        say("Voltage Control seems NOT available :(")
        volt_range = None

    return CapabilityProfile(
        gpu_clock_offset_attr=gpu_ref,
        mem_clock_offset_attr=mem_ref,
        gpu_clock_offset_range=gpu_range,
        mem_clock_offset_range=mem_range,
        voltage_available=bool(volt_text),
        voltage_offset_range=volt_range,
    )
