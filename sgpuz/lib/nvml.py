"""
NVML side of the NVIDIA backend — nvidia-smi query fields served by pynvml.

Uses nvidia-ml-py (pynvml), the official NVIDIA Python binding for the
NVIDIA Management Library. nvidia-smi is itself an NVML front-end, so the
fields below keep nvidia-smi's --query-gpu names and its behaviour:
  - values come back in display units (W, MHz, °C, MiB, %)
  - a sensor the board does not have reads as "N/A" instead of failing
  - any other NVML status becomes a DeviceError with the same code
    nvidia-smi would have exited with

Provides:
  - NvmlDevice(index)            → one GPU, field-addressed
  - NvmlDevice.query(field)      → str | float
  - NvmlDevice.set("power.limit", watts)
  - list_devices()               → ["GPU 0: <name> (UUID: ...)", ...]
"""

from __future__ import annotations

import atexit
import warnings as _warnings

_warnings.filterwarnings("ignore", message=".*pynvml.*deprecated.*", category=FutureWarning)

import pynvml as nvml  # noqa: E402

from sgpuz.lib.backend import DeviceError, ErrorCode, classify  # noqa: E402

# ── Globals ──
# NVML must be initialized once before any calls, and shut down on exit.

_initialized = False

NOT_AVAILABLE = "N/A"


def _ensure_init() -> None:
    """Lazily initialize NVML on first use."""
    global _initialized
    if not _initialized:
        try:
            nvml.nvmlInit()
        except nvml.NVMLError as e:
            raise DeviceError(classify(e.value), "nvidia-smi", "nvmlInit") from e
        _initialized = True
        atexit.register(_shutdown)


def _shutdown() -> None:
    """Clean up NVML on exit. Errors are ignored, the process may be dying."""
    global _initialized
    if _initialized:
        try:
            nvml.nvmlShutdown()
        except nvml.NVMLError:
            pass
        _initialized = False


# ── Throttle reason flags ──
# Bitmask from nvmlDeviceGetCurrentClocksThrottleReasons. Several can be
# active at once (e.g. power cap and thermal slowdown together).

THROTTLE_REASONS = {
    0x0000_0001: "GPU_IDLE",
    0x0000_0002: "APP_CLOCK_SETTING",
    0x0000_0004: "SW_POWER_CAP",
    0x0000_0008: "HW_SLOWDOWN",
    0x0000_0010: "SYNC_BOOST",
    0x0000_0020: "SW_THERMAL",
    0x0000_0040: "HW_THERMAL",
    0x0000_0080: "HW_POWER_BRAKE",
    0x0000_0100: "DISPLAY_CLOCK",
}


def decode_throttle_reasons(bitmask: int) -> list[str]:
    """Decode throttle reason bitmask into human-readable strings."""
    if bitmask == 0:
        return ["NONE"]
    reasons = []
    for flag, name in THROTTLE_REASONS.items():
        if bitmask & flag:
            reasons.append(name)
    return reasons or [f"UNKNOWN(0x{bitmask:08x})"]


def _text(value) -> str:
    # Older pynvml releases return bytes for every string getter
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _watts(milliwatts) -> float:
    return milliwatts / 1000.0


# ── Field table ──
# nvidia-smi field name → reader(handle). Power is reported in mW by NVML.

_FIELDS = {
    "name": lambda h: _text(nvml.nvmlDeviceGetName(h)),
    "uuid": lambda h: _text(nvml.nvmlDeviceGetUUID(h)),
    "vbios_version": lambda h: _text(nvml.nvmlDeviceGetVbiosVersion(h)),
    "driver_version": lambda h: _text(nvml.nvmlSystemGetDriverVersion()),
    "inforom.img": lambda h: _text(nvml.nvmlDeviceGetInforomImageVersion(h)),
    "pci.bus_id": lambda h: _text(nvml.nvmlDeviceGetPciInfo(h).busId),
    "pci.device_id": lambda h: f"0x{nvml.nvmlDeviceGetPciInfo(h).pciDeviceId:08X}",
    "pci.sub_device_id": lambda h: f"0x{nvml.nvmlDeviceGetPciInfo(h).pciSubSystemId:08X}",
    "pcie.link.gen.max": lambda h: nvml.nvmlDeviceGetMaxPcieLinkGeneration(h),
    "pcie.link.width.max": lambda h: nvml.nvmlDeviceGetMaxPcieLinkWidth(h),
    "pcie.link.gen.current": lambda h: nvml.nvmlDeviceGetCurrPcieLinkGeneration(h),
    "pcie.link.width.current": lambda h: nvml.nvmlDeviceGetCurrPcieLinkWidth(h),
    "memory.total": lambda h: nvml.nvmlDeviceGetMemoryInfo(h).total // (1024 * 1024),
    "power.draw": lambda h: _watts(nvml.nvmlDeviceGetPowerUsage(h)),
    "power.limit": lambda h: _watts(nvml.nvmlDeviceGetPowerManagementLimit(h)),
    "power.default_limit": lambda h: _watts(nvml.nvmlDeviceGetPowerManagementDefaultLimit(h)),
    "power.min_limit": lambda h: _watts(nvml.nvmlDeviceGetPowerManagementLimitConstraints(h)[0]),
    "power.max_limit": lambda h: _watts(nvml.nvmlDeviceGetPowerManagementLimitConstraints(h)[1]),
    "power.management": lambda h: (
        "Enabled" if nvml.nvmlDeviceGetPowerManagementMode(h) == nvml.NVML_FEATURE_ENABLED
        else "Disabled"
    ),
    "clocks.max.graphics": lambda h: nvml.nvmlDeviceGetMaxClockInfo(h, nvml.NVML_CLOCK_GRAPHICS),
    "clocks.max.memory": lambda h: nvml.nvmlDeviceGetMaxClockInfo(h, nvml.NVML_CLOCK_MEM),
    "pstate": lambda h: f"P{nvml.nvmlDeviceGetPerformanceState(h)}",
    "temperature.gpu": lambda h: nvml.nvmlDeviceGetTemperature(h, nvml.NVML_TEMPERATURE_GPU),
    "temperature.gpu.slowdown": lambda h: nvml.nvmlDeviceGetTemperatureThreshold(
        h, nvml.NVML_TEMPERATURE_THRESHOLD_SLOWDOWN),
    "temperature.gpu.shutdown": lambda h: nvml.nvmlDeviceGetTemperatureThreshold(
        h, nvml.NVML_TEMPERATURE_THRESHOLD_SHUTDOWN),
    "clocks_throttle_reasons.active": lambda h: "|".join(
        decode_throttle_reasons(nvml.nvmlDeviceGetCurrentClocksThrottleReasons(h))),
    "utilization.gpu": lambda h: nvml.nvmlDeviceGetUtilizationRates(h).gpu,
    "utilization.memory": lambda h: nvml.nvmlDeviceGetUtilizationRates(h).memory,
}

SETTABLE_FIELDS = ("power.limit",)


def _fail(e: nvml.NVMLError, command: str) -> DeviceError:
    return DeviceError(classify(e.value), "nvidia-smi", command)


def list_devices() -> list[str]:
    """nvidia-smi -L equivalent: one 'GPU i: name (UUID: ...)' line per GPU."""
    _ensure_init()
    try:
        count = nvml.nvmlDeviceGetCount()
        lines = []
        for i in range(count):
            h = nvml.nvmlDeviceGetHandleByIndex(i)
            name = _text(nvml.nvmlDeviceGetName(h))
            uuid = _text(nvml.nvmlDeviceGetUUID(h))
            lines.append(f"GPU {i}: {name} (UUID: {uuid})")
        return lines
    except nvml.NVMLError as e:
        raise _fail(e, "-L") from e


class NvmlDevice:
    """One GPU addressed by nvidia-smi field names."""

    def __init__(self, index: int = 0):
        self.index = index
        self._handle = None

    def _h(self):
        if self._handle is None:
            _ensure_init()
            try:
                self._handle = nvml.nvmlDeviceGetHandleByIndex(self.index)
            except nvml.NVMLError as e:
                raise _fail(e, f"-i {self.index}") from e
        return self._handle

    def query(self, field: str) -> str | float:
        reader = _FIELDS.get(field)
        if reader is None:
            raise DeviceError(ErrorCode.INVALID_ARGUMENT, "nvidia-smi",
                              f"--query-gpu={field}")
        try:
            return reader(self._h())
        except nvml.NVMLError as e:
            if e.value == nvml.NVML_ERROR_NOT_SUPPORTED:
                return NOT_AVAILABLE
            raise _fail(e, f"-i {self.index} --query-gpu={field}") from e

    def set(self, field: str, value) -> None:
        if field not in SETTABLE_FIELDS:
            raise DeviceError(ErrorCode.INVALID_ARGUMENT, "nvidia-smi", f"set {field}")
        try:
            nvml.nvmlDeviceSetPowerManagementLimit(self._h(), int(round(float(value) * 1000)))
        except nvml.NVMLError as e:
            raise _fail(e, f"-i {self.index} -pl {value}") from e
