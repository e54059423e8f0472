"""
nvidia-settings runner — X-server attributes addressed as [gpu:N]/Attr.

NVML has no API for clock offsets, over-voltage, PowerMizer or manual fan
control on GeForce boards; those live behind the NV-CONTROL X extension
and the only supported way in is the nvidia-settings binary.

nvidia-settings does not use exit codes consistently. It prints
"ERROR: ..." lines on stderr and often still exits 0, so failures are
detected from stderr and classified by message text into the shared
ErrorCode taxonomy.
"""

from __future__ import annotations

import subprocess

from sgpuz.lib.backend import DeviceError, ErrorCode, split_attribute_path

TOOL = "nvidia-settings"

# Message fragment → code. First match wins, checked in order.
_STDERR_CODES = (
    ("not available", ErrorCode.NOT_SUPPORTED),
    ("read-only", ErrorCode.NOT_SUPPORTED),
    ("unknown", ErrorCode.NOT_FOUND),
    ("unrecognized", ErrorCode.NOT_FOUND),
    ("not allowed", ErrorCode.NO_PERMISSION),
    ("permission", ErrorCode.NO_PERMISSION),
    ("authorization", ErrorCode.NO_PERMISSION),
    ("invalid", ErrorCode.INVALID_ARGUMENT),
    ("nv-control", ErrorCode.DRIVER_NOT_LOADED),
    ("unable to find display", ErrorCode.DRIVER_NOT_LOADED),
    ("display is undefined", ErrorCode.DRIVER_NOT_LOADED),
)


def classify_stderr(stderr: str) -> ErrorCode:
    low = stderr.lower()
    for fragment, code in _STDERR_CODES:
        if fragment in low:
            return code
    return ErrorCode.UNKNOWN


def error_lines(stderr: str) -> list[str]:
    return [line for line in stderr.splitlines() if "ERROR" in line]


def _detail(lines: list[str]) -> str:
    # "ERROR: Error assigning value ..." → "Error assigning value ..."
    parts = [line.split(":", 1)[1] if ":" in line else line for line in lines]
    return " ".join(" ".join(parts).split())


class NvSettings:
    """Thin subprocess wrapper. One instance per session.

    sudo=True prefixes every call with sudo, for X servers that only
    accept NV-CONTROL writes from root.
    """

    def __init__(self, sudo: bool = False, display: str | None = None):
        self.sudo = sudo
        self.display = display

    def _argv(self, *args: str) -> list[str]:
        argv = ["sudo"] if self.sudo else []
        argv.append(TOOL)
        if self.display:
            argv += ["-c", self.display]
        argv += list(args)
        return argv

    def _run(self, args: list[str], path: str) -> str:
        argv = self._argv(*args)
        try:
            proc = subprocess.run(argv, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise DeviceError(ErrorCode.UNKNOWN, TOOL, " ".join(argv),
                              f"{TOOL} not found on PATH") from e
        errors = error_lines(proc.stderr)
        if errors and args[0] == "-a" and self._tolerated(path, errors):
            return proc.stdout
        if errors:
            raise DeviceError(classify_stderr("\n".join(errors)), TOOL,
                              " ".join(argv), _detail(errors))
        if proc.returncode != 0:
            # failed without an ERROR: line, e.g. no X display to talk to
            detail = " ".join(proc.stderr.split()) or f"exited with status {proc.returncode}"
            raise DeviceError(classify_stderr(proc.stderr), TOOL, " ".join(argv), detail)
        return proc.stdout

    @staticmethod
    def _tolerated(path: str, errors: list[str]) -> bool:
        # The driver applies graphics clock offsets and still reports the
        # attribute as "Unknown" on some releases.
        _, _, name = split_attribute_path(path)
        if "GraphicsClockOffset" not in name:
            return False
        base = name.split("[", 1)[0]
        return all(base in line and "Unknown" in line for line in errors)

    def query(self, path: str, verbose: bool = False) -> str:
        split_attribute_path(path)
        if verbose:
            out = self._run(["-q", path], path)
            return " ".join(out.split())
        return self._run(["-t", "-q", path], path).strip()

    def assign(self, path: str, value) -> None:
        split_attribute_path(path)
        self._run(["-a", f"{path}={value}"], path)
