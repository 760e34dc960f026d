import threading
import time

import pytest

from faucet.errors import WalletBusy
from faucet.wallet import WalletAccessCoordinator


def test_wallet_is_mutually_exclusive_under_load():
    wallet = WalletAccessCoordinator()
    lock = threading.Lock()
    inside = 0
    max_inside = 0

    def worker():
        nonlocal inside, max_inside
        for _ in range(25):
            with wallet.acquire("load"):
                with lock:
                    inside += 1
                    max_inside = max(max_inside, inside)
                time.sleep(0.0005)
                with lock:
                    inside -= 1

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert max_inside == 1
    assert wallet.acquisitions == 8 * 25
    assert wallet.holder is None


def test_wallet_released_when_operation_raises():
    wallet = WalletAccessCoordinator()

    with pytest.raises(RuntimeError):
        with wallet.acquire("send"):
            assert wallet.holder == "send"
            raise RuntimeError("node rpc failed")

    assert wallet.holder is None
    with wallet.acquire("send", timeout=0.5) as handle:
        assert handle.purpose == "send"


def test_wallet_serves_waiters_in_arrival_order():
    wallet = WalletAccessCoordinator()
    order = []

    def waiter(index):
        with wallet.acquire(f"waiter-{index}"):
            order.append(index)

    threads = []
    with wallet.acquire("holder"):
        for index in range(5):
            thread = threading.Thread(target=waiter, args=(index,))
            thread.start()
            threads.append(thread)
            deadline = time.monotonic() + 2
            while wallet.waiting < index + 1 and time.monotonic() < deadline:
                time.sleep(0.001)
        assert wallet.waiting == 5

    for thread in threads:
        thread.join()
    assert order == [0, 1, 2, 3, 4]


def test_wallet_timeout_gives_up_without_blocking_others():
    wallet = WalletAccessCoordinator()
    acquired = []

    with wallet.acquire("holder"):
        with pytest.raises(WalletBusy):
            with wallet.acquire("impatient", timeout=0.05):
                pass
        assert wallet.waiting == 0

        def next_waiter():
            with wallet.acquire("next") as handle:
                acquired.append(handle.purpose)

        thread = threading.Thread(target=next_waiter)
        thread.start()
        time.sleep(0.02)
        assert acquired == []

    thread.join(timeout=2)
    assert acquired == ["next"]
