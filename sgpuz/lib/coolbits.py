"""
Coolbits check — the X driver option that unlocks overclocking controls.

Coolbits is a bitmask in xorg.conf. 28 = 4 (manual fan) + 8 (clock
offsets) + 16 (over-voltage). Anything lower and nvidia-settings refuses
the writes this tool depends on, so the operator is offered a fix.

Outcomes:
  ENABLED   → Coolbits >= 28, carry on
  UNKNOWN   → no X log / no config path found, carry on without checking
  APPLIED   → operator said yes, nvidia-xconfig rewrote the file; X must
              be restarted, so the session ends here
  DECLINED  → operator said no; session ends cleanly
"""

from __future__ import annotations

import re
import subprocess
from pathlib import Path
from typing import Callable

from sgpuz.lib.backend import DeviceError, ErrorCode

REQUIRED = 28

ENABLED = "enabled"
UNKNOWN = "unknown"
APPLIED = "applied"
DECLINED = "declined"

_COOLBITS_RE = re.compile(r"coolbits\"?\s+\"?(\d+)", re.IGNORECASE)


def xorg_log_path(display: str) -> Path:
    """':0' → /var/log/Xorg.0.log, 'host:1.0' → /var/log/Xorg.1.log"""
    number = display.split(":", 1)[-1].split(".", 1)[0] or "0"
    return Path(f"/var/log/Xorg.{number}.log")


def find_xorg_conf(log_text: str) -> Path | None:
    """The X server logs the config file it loaded: Using config file: "/etc/X11/xorg.conf"."""
    for line in log_text.splitlines():
        if "xorg.conf" in line and '"' in line:
            path = Path(line.split('"')[1])
            if path.is_dir():
                path = path / "xorg.conf"
            return path
    return None


def read_coolbits(conf_text: str) -> int:
    """Coolbits value from xorg.conf text, 0 when the option is absent."""
    m = _COOLBITS_RE.search(conf_text)
    return int(m.group(1)) if m else 0


def apply_coolbits(conf: Path, sudo: bool = True) -> None:
    """Write Coolbits=28 into `conf` with nvidia-xconfig. Raises DeviceError on failure."""
    prefix = ["sudo"] if sudo else []
    steps = [
        prefix + [
            "nvidia-xconfig", f"--cool-bits={REQUIRED}",
            "-c", str(conf), "-o", str(conf),
            "--allow-empty-initial-configuration",
        ],
    ]
    if not conf.exists():
        steps.insert(0, prefix + ["touch", str(conf)])
    for argv in steps:
        try:
            subprocess.run(argv, check=True)
        except subprocess.CalledProcessError as e:
            raise DeviceError(ErrorCode.UNKNOWN, "nvidia-xconfig", " ".join(argv),
                              f"exited with status {e.returncode}") from e
        except OSError as e:
            raise DeviceError(ErrorCode.UNKNOWN, "nvidia-xconfig", " ".join(argv),
                              f"{argv[0]}: {e.strerror or e}") from e


def check_coolbits(
    display: str,
    ask: Callable[[str], str] = input,
    sudo: bool = True,
    say: Callable[[str], None] = print,
) -> str:
    """Inspect Coolbits for `display` and offer to fix it. Returns an outcome constant."""
    log = xorg_log_path(display)
    try:
        conf = find_xorg_conf(log.read_text(encoding="utf-8", errors="replace"))
    except OSError:
        conf = None
    if conf is None:
        say(f">> No X configuration found via {log}, skipping Coolbits check")
        return UNKNOWN

    say(f">> X Configuration from {conf} !")
    try:
        value = read_coolbits(conf.read_text(encoding="utf-8", errors="replace"))
    except OSError:
        value = 0
    if value == 0:
        say(">> No coolbits in Xorg.conf !")
    if value >= REQUIRED:
        return ENABLED

    answer = ask("WARNING: NVIDIA Coolbits not enabled or not set at optimum setting.\n"
                 "Do you want to set it (Y/n)? ").strip()
    if answer in ("", "Y", "y"):
        apply_coolbits(conf, sudo=sudo)
        say("Please re-start X Server to make it work :) !")
        return APPLIED
    return DECLINED
