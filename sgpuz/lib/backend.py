"""
Device backend contract — the leaf every other layer talks through.

A backend knows how to reach the vendor tooling and nothing else:
  - query(path)       → str | float   (one attribute or query field)
  - set(path, value)  → None          (raises DeviceError on failure)
  - list_devices()    → list[str]     (one line per GPU, nvidia-smi -L style)

Two addressing schemes share the same `path` argument:
  [gpu:N]/Attribute, [fan:N]/Attribute  →  X-server attributes (nvidia-settings)
  anything else (power.draw, pstate...) →  nvidia-smi query field names (NVML)

The numbering of ErrorCode is the nvidia-smi exit-code table, which is
also the NVML return-code table (nvidia-smi exits with the NVML status).
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from enum import IntEnum


# ── Error taxonomy ──

class ErrorCode(IntEnum):
    INVALID_ARGUMENT = 2
    NOT_SUPPORTED = 3
    NO_PERMISSION = 4
    NOT_FOUND = 6
    INSUFFICIENT_POWER = 8
    DRIVER_NOT_LOADED = 9
    IRQ_ISSUE = 10
    LIBRARY_NOT_FOUND = 12
    FUNCTION_NOT_FOUND = 13
    CORRUPTED_INFOROM = 14
    GPU_IS_LOST = 15
    UNKNOWN = 999


ERROR_MESSAGES = {
    ErrorCode.INVALID_ARGUMENT: "A supplied argument or flag is invalid.",
    ErrorCode.NOT_SUPPORTED: "The requested operation is not available on target device.",
    ErrorCode.NO_PERMISSION: (
        "The current user does not have permission to access this device "
        "or perform this operation."
    ),
    ErrorCode.NOT_FOUND: "A query to find an object was unsuccessful.",
    ErrorCode.INSUFFICIENT_POWER: "A device's external power cables are not properly attached.",
    ErrorCode.DRIVER_NOT_LOADED: "NVIDIA driver is not loaded.",
    ErrorCode.IRQ_ISSUE: "NVIDIA Kernel detected an interrupt issue with a GPU.",
    ErrorCode.LIBRARY_NOT_FOUND: "NVML Shared Library couldn't be found or loaded.",
    ErrorCode.FUNCTION_NOT_FOUND: "Local version of NVML doesn't implement this function.",
    ErrorCode.CORRUPTED_INFOROM: "infoROM is corrupted.",
    ErrorCode.GPU_IS_LOST: (
        "The GPU has fallen off the bus or has otherwise become inaccessible."
    ),
    ErrorCode.UNKNOWN: "Other error or internal driver error occurred !",
}


def classify(status: int) -> ErrorCode:
    """Map a raw tool exit code / NVML status onto the taxonomy."""
    try:
        return ErrorCode(status)
    except ValueError:
        return ErrorCode.UNKNOWN


class DeviceError(Exception):
    """A vendor tool call failed.

    `tool` names the side that failed ("nvidia-smi" or "nvidia-settings"),
    `command` is the path or command line, `detail` is whatever the tool
    itself said (may be empty).
    """

    def __init__(self, code: ErrorCode, tool: str = "nvidia-smi",
                 command: str = "", detail: str = ""):
        self.code = code
        self.tool = tool
        self.command = command
        self.detail = detail
        super().__init__(self.diagnostic())

    @property
    def message(self) -> str:
        return self.detail or ERROR_MESSAGES[self.code]

    def diagnostic(self) -> str:
        """Two-line operator diagnostic, same wording as the vendor tables."""
        text = f"** {self.tool} ERROR **: {self.message}"
        if self.command:
            text += f"\n >> Command: {self.command}"
        return text

    def short(self) -> str:
        """One-line form for the status line of the live frame."""
        return f"{self.tool}: {self.message}"


class UnsupportedVendorError(Exception):
    """The card vendor has no GraphicsCard implementation."""

    def __init__(self, vendor: str):
        self.vendor = vendor
        super().__init__(f"** ERROR **: Card Vendor {vendor} is not (yet) supported !")


# ── Attribute paths ──

_PATH_RE = re.compile(r"^\[(gpu|fan):(\d+)\]/(\S+)$")


def gpu_attr(gpu: int, name: str) -> str:
    return f"[gpu:{gpu}]/{name}"


def fan_attr(fan: int, name: str) -> str:
    return f"[fan:{fan}]/{name}"


def is_attribute_path(path: str) -> bool:
    """True for [gpu:N]/X or [fan:N]/X — the nvidia-settings side."""
    return _PATH_RE.match(path) is not None


def split_attribute_path(path: str) -> tuple[str, int, str]:
    """'[fan:1]/GPUTargetFanSpeed' → ('fan', 1, 'GPUTargetFanSpeed')."""
    m = _PATH_RE.match(path)
    if m is None:
        raise DeviceError(ErrorCode.INVALID_ARGUMENT, "nvidia-settings", path,
                          f"Malformed attribute path: {path!r}")
    return m.group(1), int(m.group(2)), m.group(3)


# ── Contract ──

class DeviceBackend(ABC):
    """Executes vendor queries and mutations for one physical GPU.

    Implementations are not required to be thread-safe; GraphicsCard
    serializes every call it makes.
    """

    @abstractmethod
    def query(self, path: str, verbose: bool = False) -> str | float:
        """Read one attribute / field.

        verbose=True asks nvidia-settings for the long form that carries
        the "valid values ... in the range A - B" sentence. Ignored for
        NVML fields.
        """

    @abstractmethod
    def set(self, path: str, value) -> None:
        """Write one attribute / field. Raises DeviceError on failure."""

    @abstractmethod
    def list_devices(self) -> list[str]:
        """One descriptive line per GPU, index order."""

    def close(self) -> None:
        """Release library handles. Default: nothing to release."""
