"""
Pytest fixtures for sgpuz.

Nothing here needs a GPU: FakeBackend answers from a dict keyed by the
same paths the real backend uses ([gpu:0]/Attr for nvidia-settings,
nvidia-smi field names for NVML) and records every set().
"""
from __future__ import annotations

import threading

import pytest

from sgpuz.lib.backend import DeviceBackend, DeviceError, ErrorCode
from sgpuz.lib.card import NvidiaCard
from sgpuz.lib.session import SessionState


def verbose_text(name: str, value, lo: int, hi: int) -> str:
    """What `nvidia-settings -q` prints for a ranged integer attribute."""
    return (
        f"  Attribute '{name}' (host:0[gpu:0]): {value}.\n"
        f"    The valid values for '{name}' are in the range {lo} - {hi} (inclusive).\n"
        f"    '{name}' can use the following target types: GPU.\n"
    )


NEW_CHIP = {
    "[gpu:0]/GPUGraphicsClockOffsetAllPerformanceLevels": "0",
    "[gpu:0]/GPUMemoryTransferRateOffsetAllPerformanceLevels": "0",
    "[gpu:0]/GPUOverVoltageOffset": "0",
}

NEW_CHIP_VERBOSE = {
    "[gpu:0]/GPUGraphicsClockOffsetAllPerformanceLevels":
        verbose_text("GPUGraphicsClockOffsetAllPerformanceLevels", 0, -200, 1000),
    "[gpu:0]/GPUMemoryTransferRateOffsetAllPerformanceLevels":
        verbose_text("GPUMemoryTransferRateOffsetAllPerformanceLevels", 0, -2000, 6000),
    "[gpu:0]/GPUOverVoltageOffset": verbose_text("GPUOverVoltageOffset", 0, 0, 100000),
}

OLD_CHIP = {
    "[gpu:0]/GPUGraphicsClockOffset[3]": "0",
    "[gpu:0]/GPUMemoryTransferRateOffset[3]": "0",
}

OLD_CHIP_VERBOSE = {
    "[gpu:0]/GPUGraphicsClockOffset[3]": verbose_text("GPUGraphicsClockOffset", 0, -135, 450),
    "[gpu:0]/GPUMemoryTransferRateOffset[3]": verbose_text("GPUMemoryTransferRateOffset", 0, -500, 1000),
}

SENSORS = {
    # nvidia-settings side
    "[gpu:0]/GPUCurrentClockFreqs": "1500,3500",
    "[gpu:0]/GPUCurrentCoreVoltage": "1050000",
    "[gpu:0]/GPUPowerMizerMode": "2",
    "[gpu:0]/GPUFanControlState": "0",
    "[gpu:0]/CUDACores": "2560",
    "[gpu:0]/PCIECurrentLinkSpeed": "8000",
    "[fan:0]/GPUTargetFanSpeed": "40",
    "[fan:0]/GPUCurrentFanSpeed": "38",
    "[fan:0]/GPUCurrentFanSpeedRPM": "1200",
    # NVML side (nvidia-smi field names)
    "name": "GeForce GTX 1080",
    "vbios_version": "86.04.17.00.80",
    "driver_version": "550.54.14",
    "inforom.img": "G001.0000.01.03",
    "pci.device_id": "0x1B8010DE",
    "pci.sub_device_id": "0x119E10DE",
    "pcie.link.gen.max": 3,
    "pcie.link.width.max": 16,
    "pcie.link.gen.current": 3,
    "pcie.link.width.current": 16,
    "memory.total": 8192,
    "power.draw": 120.5,
    "power.limit": 150.0,
    "power.default_limit": 180.0,
    "power.min_limit": 100.0,
    "power.max_limit": 200.0,
    "power.management": "Enabled",
    "clocks.max.graphics": 1911,
    "clocks.max.memory": 5005,
    "pstate": "P2",
    "temperature.gpu": 60,
    "temperature.gpu.slowdown": 94,
    "temperature.gpu.shutdown": 97,
    "clocks_throttle_reasons.active": "NONE",
    "utilization.gpu": 30,
    "utilization.memory": 20,
}


class FakeBackend(DeviceBackend):
    """Dict-backed DeviceBackend.

    `failing` maps path → ErrorCode for paths that must raise. Verbose
    queries of a path without a verbose entry echo the plain value with no
    range sentence.
    """

    def __init__(self, values=None, verbose=None, failing=None, gpus=1):
        self.values = dict(values or {})
        self.verbose = dict(verbose or {})
        self.failing = dict(failing or {})
        self.gpus = gpus
        self.queries: list[tuple[str, bool]] = []
        self.sets: list[tuple[str, object]] = []
        self.closed = False
        self.active = 0
        self.max_active = 0
        self._count_lock = threading.Lock()

    def _enter(self):
        with self._count_lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)

    def _leave(self):
        with self._count_lock:
            self.active -= 1

    def query(self, path, verbose=False):
        self._enter()
        try:
            self.queries.append((path, verbose))
            if path in self.failing:
                raise DeviceError(self.failing[path], "fake", path)
            if verbose and path in self.verbose:
                return self.verbose[path]
            if path not in self.values:
                raise DeviceError(ErrorCode.NOT_FOUND, "fake", path)
            value = self.values[path]
            return f"Attribute '{path}': {value}." if verbose else value
        finally:
            self._leave()

    def set(self, path, value):
        self._enter()
        try:
            if path in self.failing:
                raise DeviceError(self.failing[path], "fake", path)
            self.sets.append((path, value))
            self.values[path] = value
        finally:
            self._leave()

    def list_devices(self):
        return [f"GPU {i}: GeForce GTX 1080 (UUID: GPU-{i})" for i in range(self.gpus)]

    def close(self):
        self.closed = True


def new_chip_backend(**overrides) -> FakeBackend:
    values = {**SENSORS, **NEW_CHIP, **overrides}
    return FakeBackend(values, NEW_CHIP_VERBOSE)


def old_chip_backend(**overrides) -> FakeBackend:
    values = {**SENSORS, **OLD_CHIP, **overrides}
    return FakeBackend(values, OLD_CHIP_VERBOSE)


def quiet(_msg):
    pass


@pytest.fixture
def backend():
    return new_chip_backend()


@pytest.fixture
def card(backend):
    c = NvidiaCard(backend, 0)
    c.capabilities(say=quiet)
    return c


@pytest.fixture
def state(card):
    return SessionState(card.static_info(), card.capabilities())
