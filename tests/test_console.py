"""Tests for console bootstrap, the Session lifecycle and the commands."""

from __future__ import annotations

import argparse
import io
import threading

import pytest

from conftest import FakeBackend, new_chip_backend, quiet
from sgpuz.cli import console
from sgpuz.cli.console import HIDE_CURSOR, SHOW_CURSOR, Session, bootstrap, choose_gpu, connect
from sgpuz.lib.backend import DeviceError, ErrorCode, UnsupportedVendorError
from sgpuz.lib.card import NvidiaCard


def make_args(**kw):
    base = dict(gpu=None, vendor="NVIDIA", display=None, sudo=False,
                interval=0.0, skip_coolbits=True, yes=True)
    base.update(kw)
    return argparse.Namespace(**base)


@pytest.fixture
def fake_backends(monkeypatch):
    """Every backend the console opens is a new-chip FakeBackend with 3 GPUs."""
    opened = []

    def factory(gpu, sudo=False, display=None):
        b = new_chip_backend()
        b.gpus = 3
        b.gpu = gpu
        opened.append(b)
        return b

    monkeypatch.setitem(console.BACKENDS, "NVIDIA", factory)
    return opened


# ===================================================================
# Bootstrap
# ===================================================================

def test_single_gpu_needs_no_prompt():
    assert choose_gpu(["GPU 0: x"], ask=pytest.fail, say=quiet) == 0


def test_choose_gpu_reprompts_until_valid():
    answers = iter(["7", "abc", "1"])
    gpus = ["GPU 0: a", "GPU 1: b"]
    assert choose_gpu(gpus, ask=lambda _: next(answers), say=quiet) == 1


def test_connect_explicit_gpu(fake_backends):
    card = connect(make_args(gpu=2), ask=pytest.fail, say=quiet)
    assert isinstance(card, NvidiaCard)
    assert card.gpu == 2
    assert fake_backends[-1].gpu == 2


def test_connect_prompts_on_multi_gpu(fake_backends):
    card = connect(make_args(), ask=lambda _: "1", say=quiet)
    assert card.gpu == 1


def test_connect_lists_through_card(monkeypatch, fake_backends):
    listed = []

    def list_gpus(self):
        listed.append(self.gpu)
        return ["GPU 0: a", "GPU 1: b"]

    monkeypatch.setattr(NvidiaCard, "list_gpus", list_gpus)
    card = connect(make_args(), ask=lambda _: "1", say=quiet)
    assert listed == [0]
    assert card.gpu == 1
    # the listing backend is closed, the session one stays open
    assert [b.closed for b in fake_backends] == [True, False]


def test_connect_unsupported_vendor():
    with pytest.raises(UnsupportedVendorError):
        connect(make_args(vendor="AMD"), say=quiet)


def test_connect_detects_vendor(monkeypatch, fake_backends):
    monkeypatch.setattr(console, "detect_vendor", lambda: "NVIDIA")
    card = connect(make_args(vendor=None, gpu=0), say=quiet)
    assert card.vendor == "NVIDIA"


def test_bootstrap_builds_state():
    card = NvidiaCard(new_chip_backend(), 0)
    state = bootstrap(card, say=quiet)
    assert state.static.product_name == "GeForce GTX 1080"
    assert state.profile.voltage_available


def test_bootstrap_range_failure_is_fatal():
    b = new_chip_backend()
    b.failing["[gpu:0]/GPUMemoryTransferRateOffsetAllPerformanceLevels"] = ErrorCode.NO_PERMISSION
    with pytest.raises(DeviceError):
        bootstrap(NvidiaCard(b, 0), say=quiet)


# ===================================================================
# Session
# ===================================================================

class ScriptedReader:
    def __init__(self, keys):
        self.keys = list(keys)
        self.eof = False
        self.enabled = False
        self.restored = False

    def enable(self):
        self.enabled = True

    def restore(self):
        self.restored = True

    def read_key(self, timeout):
        if not self.keys:
            self.eof = True
            return None
        return self.keys.pop(0)


def test_session_runs_and_cleans_up():
    card = NvidiaCard(new_chip_backend(), 0)
    state = bootstrap(card, say=quiet)
    reader = ScriptedReader(["P"])
    out = io.StringIO()
    session = Session(card, state, reader=reader, out=out)

    timer = threading.Timer(0.3, session.stop.set)
    timer.start()
    assert session.run() == 0
    timer.cancel()

    text = out.getvalue()
    assert text.startswith(HIDE_CURSOR)
    assert text.rstrip().endswith(SHOW_CURSOR)
    assert reader.enabled and reader.restored
    assert not state.display_active
    assert all(not t.is_alive() for t in session.threads)
    assert ("power.limit", 155) in card.backend.sets
    assert state.snapshot_for_render().samples >= 1


def test_session_reraises_worker_failure():
    class Broken(ScriptedReader):
        def read_key(self, timeout):
            raise OSError("tty gone")

    card = NvidiaCard(new_chip_backend(), 0)
    state = bootstrap(card, say=quiet)
    reader = Broken([])
    session = Session(card, state, reader=reader, out=io.StringIO())
    with pytest.raises(OSError):
        session.run()
    assert reader.restored
    assert not state.display_active


# ===================================================================
# Commands
# ===================================================================

def test_cmd_console_unsupported_vendor(capsys):
    assert console.cmd_console(make_args(vendor="AMD")) == 1
    captured = capsys.readouterr()
    assert "not (yet) supported" in captured.err
    assert ">> [1] Cleaning up ... DONE !" in captured.out


def test_cmd_console_declined_coolbits(monkeypatch, fake_backends, capsys):
    monkeypatch.setattr(console.coolbits, "check_coolbits",
                        lambda display, sudo: console.coolbits.DECLINED)
    args = make_args(gpu=0, display=":0", skip_coolbits=False)
    assert console.cmd_console(args) == 0
    assert fake_backends[-1].closed
    assert fake_backends[-1].sets == []


def test_cmd_console_coolbits_failure_is_fatal(monkeypatch, fake_backends, capsys):
    def refuse(conf, sudo=True):
        raise DeviceError(ErrorCode.UNKNOWN, "nvidia-xconfig",
                          f"nvidia-xconfig --cool-bits=28 -c {conf}", "exited with status 1")

    monkeypatch.setattr(console.coolbits, "check_coolbits",
                        lambda display, sudo: refuse("/etc/X11/xorg.conf"))
    args = make_args(gpu=0, display=":0", skip_coolbits=False)
    assert console.cmd_console(args) == 1
    captured = capsys.readouterr()
    assert "** nvidia-xconfig ERROR **: exited with status 1" in captured.err
    assert ">> Command: nvidia-xconfig --cool-bits=28" in captured.err
    assert ">> [1] Cleaning up ... DONE !" in captured.out
    assert fake_backends[-1].closed


def test_cmd_info(fake_backends, capsys):
    assert console.cmd_info(make_args(gpu=0)) == 0
    out = capsys.readouterr().out
    assert "GeForce GTX 1080" in out
    assert "GPUGraphicsClockOffsetAllPerformanceLevels" in out
    assert "(range: -200 to 1000)" in out
    assert "Power Default:  180W" in out


def test_cmd_list(fake_backends, capsys):
    assert console.cmd_list(make_args()) == 0
    out = capsys.readouterr().out.splitlines()
    assert out == [f"GPU {i}: GeForce GTX 1080 (UUID: GPU-{i})" for i in range(3)]


def test_cmd_list_goes_through_card(monkeypatch, fake_backends, capsys):
    monkeypatch.setattr(NvidiaCard, "list_gpus", lambda self: ["GPU 0: listed by card"])
    assert console.cmd_list(make_args()) == 0
    assert capsys.readouterr().out.splitlines() == ["GPU 0: listed by card"]
    assert fake_backends[-1].closed


def test_cmd_list_failure(monkeypatch, capsys):
    class Dead(FakeBackend):
        def list_devices(self):
            raise DeviceError(ErrorCode.DRIVER_NOT_LOADED, "nvidia-smi", "-L")

    monkeypatch.setitem(console.BACKENDS, "NVIDIA", lambda gpu, sudo=False, display=None: Dead())
    assert console.cmd_list(make_args()) == 1
    assert "NVIDIA driver is not loaded." in capsys.readouterr().err
