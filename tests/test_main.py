from types import SimpleNamespace

import faucet.main as faucet_main
from faucet.config import FaucetSettings
from faucet.lifecycle import LeaseLifecycleManager


class InterruptedThread:
    """Thread stand-in whose join is interrupted by Ctrl-C."""

    started = False

    def __init__(self, target=None, name=None, args=(), daemon=None):
        self.name = name

    def start(self):
        InterruptedThread.started = True

    def join(self, timeout=None):
        raise KeyboardInterrupt


class StubNode:
    def __init__(self, lightning_enabled):
        self.lightning_enabled = lightning_enabled


def prepare(monkeypatch, lightning_enabled):
    settings = FaucetSettings(change_address="tb1qchange", bitcoind_rpc_user="user")
    monkeypatch.setattr(faucet_main, "load_settings", lambda: settings)
    monkeypatch.setattr(faucet_main, "configure_logging", lambda level="INFO": None)
    monkeypatch.setattr(faucet_main, "build_node", lambda settings, logger: StubNode(lightning_enabled))
    monkeypatch.setattr(faucet_main, "threading", SimpleNamespace(Thread=InterruptedThread))
    InterruptedThread.started = False


def test_ctrl_c_stops_onchain_only_faucet_cleanly(monkeypatch):
    prepare(monkeypatch, lightning_enabled=False)

    faucet_main.main()

    assert InterruptedThread.started is True


def test_ctrl_c_stops_lease_sweep_cleanly(monkeypatch):
    prepare(monkeypatch, lightning_enabled=True)

    def interrupted(self):
        raise KeyboardInterrupt

    monkeypatch.setattr(LeaseLifecycleManager, "run_forever", interrupted)

    faucet_main.main()

    assert InterruptedThread.started is True
