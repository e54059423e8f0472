"""
Graphics card — semantic operations on top of a DeviceBackend.

The console never builds attribute paths or parses tool output itself;
it asks the card for "gpu clock", "power limit", "set fan target to 60"
and the card turns that into backend queries.

Vendor polymorphism is a lookup table: open_card() picks the subclass for
the detected vendor and anything not in CARDS is fatal at session start.
Only NVIDIA is implemented.

Every backend call goes through one re-entrant lock per card, so the
sampler and the keyboard worker never interleave vendor-tool invocations.
"""

from __future__ import annotations

import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from sgpuz.lib.backend import (
    DeviceBackend,
    DeviceError,
    ErrorCode,
    UnsupportedVendorError,
    fan_attr,
    gpu_attr,
)
from sgpuz.lib.capability import CapabilityProfile, VOLTAGE_OFFSET_ATTR, detect_profile

POWERMIZER_MODES = {
    0: "Adaptive",
    1: "Pref. Max. Performance",
    2: "Auto",
    3: "Pref. Cons. Performance",
}

# Some boards report nonsense RPM now and then; anything above this is dropped
MAX_SANE_RPM = 5000


@dataclass(frozen=True)
class StaticInfo:
    """Identity block — read once, never changes during a session."""
    vendor: str
    product_name: str
    vbios_version: str
    device_id: str
    computing_cores: str
    memory_size: str
    driver_version: str
    inforom_version: str
    power_management: str
    power_min: float
    power_max: float
    power_default: float
    temp_slowdown: str
    temp_shutdown: str


def _number(value, what: str) -> float:
    try:
        return float(str(value).split()[0])
    except (ValueError, IndexError):
        raise DeviceError(ErrorCode.NOT_SUPPORTED, "sgpuz", what,
                          f"{what} returned {value!r}") from None


class GraphicsCard(ABC):
    """Vendor-neutral part: locking, device listing, capability profile."""

    vendor = ""

    def __init__(self, backend: DeviceBackend, gpu: int = 0):
        self.backend = backend
        self.gpu = gpu
        self._io = threading.RLock()
        self._profile: CapabilityProfile | None = None
        self._profile_lock = threading.Lock()

    # ── serialized backend access ──

    def query(self, path: str, verbose: bool = False) -> str | float:
        with self._io:
            return self.backend.query(path, verbose=verbose)

    def set(self, path: str, value) -> None:
        with self._io:
            self.backend.set(path, value)

    def list_gpus(self) -> list[str]:
        with self._io:
            return self.backend.list_devices()

    # ── capability profile ──

    @abstractmethod
    def detect(self, say: Callable[[str], None]) -> CapabilityProfile:
        """Build the vendor capability profile. Called once, under the profile lock."""

    def capabilities(self, say: Callable[[str], None] = print) -> CapabilityProfile:
        """Detect once, on first need. Later calls return the same object."""
        with self._profile_lock:
            if self._profile is None:
                self._profile = self.detect(say)
            return self._profile

    def close(self) -> None:
        with self._io:
            self.backend.close()


class NvidiaCard(GraphicsCard):
    """nvidia-smi fields via NVML + nvidia-settings attributes."""

    vendor = "NVIDIA"

    def __init__(self, backend: DeviceBackend, gpu: int = 0):
        super().__init__(backend, gpu)
        self._last_rpm = 0

    def detect(self, say: Callable[[str], None]) -> CapabilityProfile:
        return detect_profile(self.query, self.gpu, say=say)

    def _attr(self, name: str) -> str:
        return gpu_attr(self.gpu, name)

    def _fan(self, name: str) -> str:
        return fan_attr(self.gpu, name)

    # ── identity ──

    def product_name(self) -> str:
        return str(self.query("name"))

    def vbios_version(self) -> str:
        return str(self.query("vbios_version"))

    def driver_version(self) -> str:
        return str(self.query("driver_version"))

    def inforom_version(self) -> str:
        return str(self.query("inforom.img"))

    def device_id(self) -> str:
        return f"{self.query('pci.device_id')}-{self.query('pci.sub_device_id')}"

    def computing_cores(self) -> str:
        return str(self.query(self._attr("CUDACores")))

    def memory_size(self) -> str:
        return f"{self.query('memory.total')} MiB"

    def pci_info(self) -> str:
        gen_max = self.query("pcie.link.gen.max")
        width_max = self.query("pcie.link.width.max")
        gen_cur = self.query("pcie.link.gen.current")
        width_cur = self.query("pcie.link.width.current")
        speed = _number(self.query(self._attr("PCIECurrentLinkSpeed")), "PCIECurrentLinkSpeed")
        return f"PCI-E {gen_max}.0x{width_max} @ {gen_cur}.0x{width_cur} {speed / 1000:.1f}GT/s"

    def static_info(self) -> StaticInfo:
        return StaticInfo(
            vendor=self.vendor,
            product_name=self.product_name(),
            vbios_version=self.vbios_version(),
            device_id=self.device_id(),
            computing_cores=self.computing_cores(),
            memory_size=self.memory_size(),
            driver_version=self.driver_version(),
            inforom_version=self.inforom_version(),
            power_management=self.power_management(),
            power_min=self.power_min(),
            power_max=self.power_max(),
            power_default=self.power_default(),
            temp_slowdown=self.gpu_temperature_slowdown(),
            temp_shutdown=self.gpu_temperature_shutdown(),
        )

    # ── power ──

    def power_gpu(self) -> float:
        return _number(self.query("power.draw"), "power.draw")

    def power_default(self) -> float:
        return _number(self.query("power.default_limit"), "power.default_limit")

    def power_management(self) -> str:
        return str(self.query("power.management"))

    def power_limit(self) -> float:
        return _number(self.query("power.limit"), "power.limit")

    def power_min(self) -> float:
        return _number(self.query("power.min_limit"), "power.min_limit")

    def power_max(self) -> float:
        return _number(self.query("power.max_limit"), "power.max_limit")

    def set_power_limit(self, watts: int) -> bool:
        """Apply `watts` only if it lies within [min, max]. Returns True if applied.

        Bounds are compared on whole watts; an out-of-range request is
        dropped without raising.
        """
        if not int(self.power_min()) <= watts <= int(self.power_max()):
            return False
        self.set("power.limit", watts)
        return True

    # ── clocks ──

    def _clock_freqs(self) -> tuple[int, int]:
        text = str(self.query(self._attr("GPUCurrentClockFreqs")))
        for line in text.splitlines():
            if "," in line:
                gpu, mem = line.split(",", 1)
                return int(_number(gpu, "GPUCurrentClockFreqs")), int(_number(mem, "GPUCurrentClockFreqs"))
        raise DeviceError(ErrorCode.NOT_SUPPORTED, "nvidia-settings",
                          self._attr("GPUCurrentClockFreqs"), f"unexpected reply {text!r}")

    def gpu_clock(self) -> int:
        return self._clock_freqs()[0]

    def memory_clock(self) -> int:
        return self._clock_freqs()[1]

    def gpu_clock_max(self) -> str:
        return f"{self.query('clocks.max.graphics')} MHz"

    def memory_clock_max(self) -> str:
        return f"{self.query('clocks.max.memory')} MHz"

    def gpu_clock_offset(self) -> int:
        path = self.capabilities().gpu_clock_offset_attr.path(self.gpu)
        return int(_number(self.query(path), path))

    def set_gpu_clock_offset(self, mhz: int) -> None:
        self.set(self.capabilities().gpu_clock_offset_attr.path(self.gpu), mhz)

    def memory_clock_offset(self) -> int:
        path = self.capabilities().mem_clock_offset_attr.path(self.gpu)
        return int(_number(self.query(path), path))

    def set_memory_clock_offset(self, mhz: int) -> None:
        self.set(self.capabilities().mem_clock_offset_attr.path(self.gpu), mhz)

    def performance_state(self) -> str:
        return str(self.query("pstate"))

    # ── voltage ── every call is a sentinel when the chip has no control

    def core_voltage(self) -> float:
        """Current core voltage in mV, 0 when voltage control is unavailable."""
        if not self.capabilities().voltage_available:
            return 0.0
        return _number(self.query(self._attr("GPUCurrentCoreVoltage")), "GPUCurrentCoreVoltage") / 1000

    def core_voltage_offset(self) -> str:
        if not self.capabilities().voltage_available:
            return "N/A"
        return f"{self.core_voltage_offset_raw() / 1000:0.1f} mV"

    def core_voltage_offset_raw(self) -> int:
        if not self.capabilities().voltage_available:
            return 0
        return int(_number(self.query(self._attr(VOLTAGE_OFFSET_ATTR)), VOLTAGE_OFFSET_ATTR))

    def set_core_voltage_offset(self, microvolts: int) -> bool:
        if not self.capabilities().voltage_available:
            return False
        self.set(self._attr(VOLTAGE_OFFSET_ATTR), microvolts)
        return True

    # ── powermizer ──

    def powermizer_mode_raw(self) -> int:
        return int(_number(self.query(self._attr("GPUPowerMizerMode")), "GPUPowerMizerMode"))

    def powermizer_mode(self) -> str:
        return POWERMIZER_MODES.get(self.powermizer_mode_raw(), "Unknown")

    def set_powermizer_mode(self, mode: int) -> None:
        self.set(self._attr("GPUPowerMizerMode"), mode)

    # ── thermals / utilization ──

    def gpu_temperature(self) -> float:
        return _number(self.query("temperature.gpu"), "temperature.gpu")

    def gpu_temperature_slowdown(self) -> str:
        return f"{self.query('temperature.gpu.slowdown')} C"

    def gpu_temperature_shutdown(self) -> str:
        return f"{self.query('temperature.gpu.shutdown')} C"

    def gpu_throttle_reasons(self) -> str:
        return str(self.query("clocks_throttle_reasons.active"))

    def gpu_usage(self) -> float:
        return _number(self.query("utilization.gpu"), "utilization.gpu")

    def memory_usage(self) -> float:
        return _number(self.query("utilization.memory"), "utilization.memory")

    # ── fan ──

    def fan_control(self) -> int:
        """1 when manual fan control is on, 0 when the driver controls the fan."""
        return int(_number(self.query(self._attr("GPUFanControlState")), "GPUFanControlState"))

    def enable_fan_control(self) -> None:
        self.set(self._attr("GPUFanControlState"), 1)

    def reset_fan_control(self) -> None:
        self.set(self._attr("GPUFanControlState"), 0)

    def fan_target_speed(self) -> int:
        return int(_number(self.query(self._fan("GPUTargetFanSpeed")), "GPUTargetFanSpeed"))

    def set_fan_target_speed(self, pct: int) -> None:
        self.set(self._fan("GPUTargetFanSpeed"), pct)

    def fan_current_speed(self) -> int:
        return int(_number(self.query(self._fan("GPUCurrentFanSpeed")), "GPUCurrentFanSpeed"))

    def fan_current_speed_rpm(self) -> int:
        rpm = int(_number(self.query(self._fan("GPUCurrentFanSpeedRPM")), "GPUCurrentFanSpeedRPM"))
        if rpm > MAX_SANE_RPM:
            return self._last_rpm
        self._last_rpm = rpm
        return rpm


# ── vendor dispatch ──

CARDS: dict[str, type[GraphicsCard]] = {
    "NVIDIA": NvidiaCard,
}


def open_card(vendor: str, backend: DeviceBackend, gpu: int = 0) -> GraphicsCard:
    cls = CARDS.get(vendor)
    if cls is None:
        raise UnsupportedVendorError(vendor)
    return cls(backend, gpu)


def detect_vendor() -> str:
    """First word of glxinfo's 'OpenGL vendor string', e.g. 'NVIDIA'."""
    try:
        out = subprocess.run(["glxinfo"], capture_output=True, text=True, check=True).stdout
    except (OSError, subprocess.CalledProcessError) as e:
        raise DeviceError(ErrorCode.UNKNOWN, "glxinfo", "glxinfo",
                          "Could not access to display") from e
    for line in out.splitlines():
        if "opengl vendor" in line.lower():
            words = line.split(":", 1)[1].split()
            if words:
                return words[0]
    raise DeviceError(ErrorCode.NOT_FOUND, "glxinfo", "glxinfo", "No OpenGL vendor reported")
