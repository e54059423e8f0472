"""
CLI entry point — sgpuz command dispatcher.

  sgpuz [console]  →  cli/console.py  (live monitor + overclock keys)
  sgpuz info       →  cli/console.py  (identity + capability profile)
  sgpuz list       →  cli/console.py  (one line per GPU)

Usage examples:
    sgpuz
    sgpuz console --gpu 1 --interval 0.5
    sgpuz console --vendor NVIDIA --skip-coolbits --yes
    sgpuz info
    sgpuz list

Imports are deferred inside each branch so --help works on machines
without the NVIDIA stack.
"""

from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime

from sgpuz.lib.logfile import init_log


def _add_device_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--gpu", "-g", type=int, default=None,
                   help="GPU index (asked interactively when several are present)")
    p.add_argument("--vendor", default=None,
                   help="Card vendor, skips glxinfo detection (only NVIDIA is supported)")
    p.add_argument("--display", default=os.environ.get("DISPLAY"),
                   help="X display for nvidia-settings (default: $DISPLAY)")
    p.add_argument("--sudo", action="store_true",
                   help="Run vendor tools through sudo")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    p = argparse.ArgumentParser(
        prog="sgpuz",
        description="SGPU-Z — GPU monitor and live overclocking console",
    )
    sub = p.add_subparsers(dest="command", help="Command to run")

    # ── console ── full-screen session, two workers
    con = sub.add_parser("console", aliases=["con", "c"], help="Live monitor + overclock keys")
    _add_device_args(con)
    con.add_argument("--interval", "-i", type=float, default=0.0,
                     help="Pause between frames in seconds (default 0: redraw as fast as the tools answer)")
    con.add_argument("--skip-coolbits", action="store_true", help="Don't inspect xorg.conf Coolbits")
    con.add_argument("--yes", "-y", action="store_true", help="Start without the ENTER prompt")

    # ── info ── static identity + capability profile
    info = sub.add_parser("info", help="Detailed GPU information and OC capabilities")
    _add_device_args(info)

    # ── list ── device listing
    lst = sub.add_parser("list", aliases=["ls"], help="List GPUs")
    _add_device_args(lst)

    return p


def main(argv: list[str] | None = None) -> int:
    """Parse args and dispatch to the correct subcommand handler.

    No subcommand means `console` with default options.
    """
    parser = build_parser()
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0].startswith("-") and argv[0] not in ("-h", "--help"):
        argv.insert(0, "console")
    args = parser.parse_args(argv)

    cmd_name = {"con": "console", "c": "console", "ls": "list"}.get(args.command, args.command)
    log_path = init_log(cmd_name)
    ts = datetime.now().strftime("[%Y-%m-%d %H:%M:%S]")
    print(f"{ts} sgpuz {cmd_name} — log: {log_path}")

    if cmd_name == "console":
        from sgpuz.cli.console import cmd_console
        return cmd_console(args)

    elif cmd_name == "info":
        from sgpuz.cli.console import cmd_info
        return cmd_info(args)

    elif cmd_name == "list":
        from sgpuz.cli.console import cmd_list
        return cmd_list(args)

    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
