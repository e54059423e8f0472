"""
NVIDIA backend — routes each path to the tool that owns it.

  [gpu:N]/Attr, [fan:N]/Attr  →  nvidia-settings (lib/nvsettings.py)
  nvidia-smi field names      →  NVML via pynvml (lib/nvml.py)
"""

from __future__ import annotations

from sgpuz.lib import nvml
from sgpuz.lib.backend import DeviceBackend, is_attribute_path
from sgpuz.lib.nvsettings import NvSettings


class NvidiaBackend(DeviceBackend):

    def __init__(self, gpu: int = 0, sudo: bool = False, display: str | None = None):
        self.gpu = gpu
        self.smi = nvml.NvmlDevice(gpu)
        self.settings = NvSettings(sudo=sudo, display=display)

    def query(self, path: str, verbose: bool = False) -> str | float:
        if is_attribute_path(path):
            return self.settings.query(path, verbose=verbose)
        return self.smi.query(path)

    def set(self, path: str, value) -> None:
        if is_attribute_path(path):
            self.settings.assign(path, value)
        else:
            self.smi.set(path, value)

    def list_devices(self) -> list[str]:
        return nvml.list_devices()

    def close(self) -> None:
        nvml._shutdown()
