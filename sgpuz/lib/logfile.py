"""
Run logs — everything printed goes to logs/<command>_<timestamp>.log too.

init_log() swaps sys.stdout/sys.stderr for a _Tee so every print() lands
in both the terminal and the log file. The live console frame is written
to the real terminal (sys.__stdout__) and never reaches the log; errors
that happen while the frame is up are written with note(), which goes to
the log file only.

SampleLog is the CSV file the L key switches on: one row per poll.
"""

from __future__ import annotations

import os
import sys
from datetime import datetime

_log_file = None


# ── Logging tee ──
class _Tee:
    """Write to both a file and the terminal stream it replaces."""
    def __init__(self, stream, log_file):
        self._stream = stream
        self._log = log_file

    def write(self, data):
        self._stream.write(data)
        self._log.write(data)

    def flush(self):
        self._stream.flush()
        self._log.flush()

    def __getattr__(self, name):
        return getattr(self._stream, name)


def logs_dir() -> str:
    """<repo_root>/logs, created on demand."""
    repo_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    path = os.path.join(repo_root, "logs")
    os.makedirs(path, exist_ok=True)
    return path


def _stamp() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def init_log(command: str) -> str:
    """Set up file logging. Returns the log file path."""
    global _log_file
    log_path = os.path.join(logs_dir(), f"{command}_{_stamp()}.log")
    _log_file = open(log_path, "w", encoding="utf-8")
    sys.stdout = _Tee(sys.__stdout__, _log_file)
    sys.stderr = _Tee(sys.__stderr__, _log_file)
    return log_path


def note(message: str) -> None:
    """Timestamped line in the run log only. No-op before init_log()."""
    if _log_file is None:
        return
    ts = datetime.now().strftime("[%Y-%m-%d %H:%M:%S]")
    _log_file.write(f"{ts} {message}\n")
    _log_file.flush()


class SampleLog:
    """Append-only CSV of polled values, opened lazily on first row."""

    def __init__(self, columns: list[str], directory: str | None = None):
        self.columns = columns
        self.directory = directory
        self.path: str | None = None
        self._fh = None

    def write(self, values: list[str]) -> None:
        if self._fh is None:
            directory = self.directory or logs_dir()
            os.makedirs(directory, exist_ok=True)
            self.path = os.path.join(directory, f"samples_{_stamp()}.csv")
            self._fh = open(self.path, "a", encoding="utf-8")
            self._fh.write("timestamp," + ",".join(self.columns) + "\n")
        ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        self._fh.write(ts + "," + ",".join(values) + "\n")
        self._fh.flush()

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
