"""
CLI console — the interactive session: bootstrap, two workers, cleanup.

Startup (any DeviceError here is fatal, printed as a diagnostic, exit 1):
  vendor (glxinfo or --vendor) → backend → GPU choice → Coolbits check
  → capability profile → static identity → SessionState

Running:
  sampler thread   cli/monitor.py  SamplerRenderer   poll + redraw
  keyboard thread  cli/controls.py KeyboardWorker    keystroke → command
  main thread      waits on the stop event (Ctrl+C, SIGTERM, SIGHUP,
                   or a worker dying)

Shutdown runs in a finally block, so every exit path clears the display
flag, joins the workers, restores the terminal and shows the cursor.
"""

from __future__ import annotations

import signal
import sys
import threading
from typing import Callable

from sgpuz.lib import coolbits
from sgpuz.lib.backend import DeviceError, UnsupportedVendorError
from sgpuz.lib.card import GraphicsCard, detect_vendor, open_card
from sgpuz.lib.nvidia import NvidiaBackend
from sgpuz.lib.session import SessionState
from sgpuz.cli.controls import CommandDispatcher, KeyboardWorker, KeyReader
from sgpuz.cli.monitor import SamplerRenderer

HIDE_CURSOR = "\033[?25l"
SHOW_CURSOR = "\033[?25h"
CLEAR = "\033[2J\033[H"

BACKENDS = {
    "NVIDIA": NvidiaBackend,
}


# ── Bootstrap ──

def choose_gpu(gpus: list[str], ask: Callable[[str], str] = input,
               say: Callable[[str], None] = print) -> int:
    """Single GPU → 0. Several → list them and ask for an index."""
    if len(gpus) <= 1:
        return 0
    say("WARNING - More than one GPU detected !")
    for line in gpus:
        say(line)
    while True:
        answer = ask("Input the GPU to check (only the ID number): ").strip()
        if answer.isdigit() and int(answer) < len(gpus):
            return int(answer)


def connect(args, ask: Callable[[str], str] = input,
            say: Callable[[str], None] = print) -> GraphicsCard:
    """Open the card the arguments point at. Raises on unsupported vendor."""
    vendor = args.vendor or detect_vendor()
    say(f"Card Vendor: {vendor}")
    factory = BACKENDS.get(vendor)
    if factory is None:
        raise UnsupportedVendorError(vendor)

    gpu = args.gpu
    if gpu is None:
        first = open_card(vendor, factory(0, sudo=args.sudo, display=args.display), 0)
        try:
            gpu = choose_gpu(first.list_gpus(), ask, say)
        finally:
            first.close()
    return open_card(vendor, factory(gpu, sudo=args.sudo, display=args.display), gpu)


def bootstrap(card: GraphicsCard, say: Callable[[str], None] = print) -> SessionState:
    """Capability profile + static identity → a fresh SessionState."""
    say(">> Initialization and Checking Graphics Card access ...")
    profile = card.capabilities(say=say)
    static = card.static_info()
    say("Initialization and Check OK :D !!")
    return SessionState(static, profile)


# ── Session ──

def install_signal_handlers(stop: threading.Event) -> dict:
    """SIGTERM / SIGHUP end the session like Ctrl+C. Returns previous handlers."""
    previous = {}
    if threading.current_thread() is not threading.main_thread():
        return previous

    def _handler(_sig, _frame):
        stop.set()

    for sig in (signal.SIGTERM, signal.SIGHUP):
        previous[sig] = signal.signal(sig, _handler)
    return previous


def restore_signal_handlers(previous: dict) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


class Session:
    """Owns the workers and the terminal for the lifetime of one console run."""

    JOIN_TIMEOUT = 5.0

    def __init__(self, card: GraphicsCard, state: SessionState, interval: float = 0.0,
                 reader: KeyReader | None = None, out=None):
        self.card = card
        self.state = state
        self.stop = threading.Event()
        self.out = out if out is not None else sys.__stdout__
        self.reader = reader or KeyReader()
        self.sampler = SamplerRenderer(card, state, self.stop, out=self.out, interval=interval)
        self.keyboard = KeyboardWorker(CommandDispatcher(card, state), self.reader, self.stop)
        self.threads: list[threading.Thread] = []

    def start(self) -> None:
        self.reader.enable()
        self.out.write(HIDE_CURSOR + CLEAR)
        self.out.flush()
        self.threads = [
            threading.Thread(target=self.sampler.run, name="sgpuz-sampler", daemon=True),
            threading.Thread(target=self.keyboard.run, name="sgpuz-keyboard", daemon=True),
        ]
        for t in self.threads:
            t.start()

    def wait(self) -> None:
        while not self.stop.wait(0.2):
            pass

    def shutdown(self) -> None:
        self.state.set_display_active(False)
        self.stop.set()
        for t in self.threads:
            t.join(self.JOIN_TIMEOUT)
        self.reader.restore()
        self.sampler.sample_log.close()
        self.out.write(SHOW_CURSOR + "\n")
        self.out.flush()

    def run(self) -> int:
        """Start, block until told to stop, always clean up.

        A worker that died with an exception is re-raised after cleanup.
        """
        previous = install_signal_handlers(self.stop)
        try:
            self.start()
            self.wait()
        except KeyboardInterrupt:
            pass
        finally:
            self.shutdown()
            restore_signal_handlers(previous)
        failure = self.sampler.failure or self.keyboard.failure
        if failure is not None:
            raise failure
        return 0


# ── Commands ──

def _fatal(e: Exception) -> int:
    text = e.diagnostic() if isinstance(e, DeviceError) else str(e)
    print(text, file=sys.stderr)
    return 1


def cmd_console(args) -> int:
    """Interactive monitor + overclock console."""
    code = 0
    card = None
    try:
        try:
            card = connect(args)
            if args.display and not args.skip_coolbits:
                outcome = coolbits.check_coolbits(args.display, sudo=args.sudo)
                if outcome in (coolbits.APPLIED, coolbits.DECLINED):
                    return 0
            state = bootstrap(card)
        except (DeviceError, UnsupportedVendorError) as e:
            code = _fatal(e)
            return code

        if not args.yes:
            input("\nReady to Start ? Press ENTER !")
        try:
            code = Session(card, state, interval=args.interval).run()
        except Exception:
            code = 1
            raise
        return code
    finally:
        if card is not None:
            card.close()
        print(f"\n>> [{code}] Cleaning up ... DONE !\n")


def cmd_info(args) -> int:
    """Static identity + capability profile, no live session."""
    try:
        card = connect(args)
        profile = card.capabilities()
        s = card.static_info()
    except (DeviceError, UnsupportedVendorError) as e:
        return _fatal(e)

    gpu_range = profile.gpu_clock_offset_range or ("N/A", "N/A")
    mem_range = profile.mem_clock_offset_range or ("N/A", "N/A")
    volt_min, volt_max = profile.voltage_range_text()
    print(f"═══ GPU {card.gpu}: {s.product_name} ═══")
    print(f"  Vendor:         {s.vendor}")
    print(f"  Driver:         {s.driver_version}")
    print(f"  VBIOS:          {s.vbios_version}")
    print(f"  InfoROM:        {s.inforom_version}")
    print(f"  Device ID:      {s.device_id}")
    print(f"  CUDA Cores:     {s.computing_cores}")
    print(f"  Memory:         {s.memory_size}")
    print(f"  Power Mgmt:     {s.power_management}")
    print(f"  Power Range:    {s.power_min:.0f}W – {s.power_max:.0f}W")
    print(f"  Power Default:  {s.power_default:.0f}W")
    print(f"  Slowdown Temp:  {s.temp_slowdown}")
    print(f"  Shutdown Temp:  {s.temp_shutdown}")
    print(f"  Chip OC Mode:   {profile.chip_generation}")
    print(f"  Core Offset:    {profile.gpu_clock_offset_attr.name}  "
          f"(range: {gpu_range[0]} to {gpu_range[1]})")
    print(f"  Mem Offset:     {profile.mem_clock_offset_attr.name}  "
          f"(range: {mem_range[0]} to {mem_range[1]})")
    print(f"  Voltage Offset: {'available' if profile.voltage_available else 'N/A'}  "
          f"(range: {volt_min} to {volt_max})")
    card.close()
    return 0


def cmd_list(args) -> int:
    """nvidia-smi -L style listing."""
    vendor = args.vendor or "NVIDIA"
    factory = BACKENDS.get(vendor)
    if factory is None:
        return _fatal(UnsupportedVendorError(vendor))
    card = open_card(vendor, factory(0, sudo=args.sudo, display=args.display), 0)
    try:
        for line in card.list_gpus():
            print(line)
    except DeviceError as e:
        return _fatal(e)
    finally:
        card.close()
    return 0
