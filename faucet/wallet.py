"""Exclusive access to the node wallet.

Balance checks and spends travel over separate RPC calls, so two requests that
both read the balance before either spends can allocate the same coins twice.
Every operation that consumes wallet funds (sends, channel funding, channel
closes) runs while holding the single handle issued by this coordinator.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Deque, Iterator, Optional

from .errors import WalletBusy

logger = logging.getLogger(__name__)


@dataclass
class WalletHandle:
    ticket: int
    purpose: str
    acquired_at: float = field(default_factory=time.monotonic)
    released: bool = False


class WalletAccessCoordinator:
    """FIFO mutual exclusion over the node wallet."""

    def __init__(self, timeout_seconds: Optional[float] = None) -> None:
        self.timeout_seconds = timeout_seconds
        self._cond = threading.Condition(threading.Lock())
        self._queue: Deque[int] = deque()
        self._next_ticket = 0
        self._holder: Optional[WalletHandle] = None
        self.acquisitions = 0

    @property
    def holder(self) -> Optional[str]:
        with self._cond:
            return self._holder.purpose if self._holder is not None else None

    @property
    def waiting(self) -> int:
        with self._cond:
            return len(self._queue)

    @contextmanager
    def acquire(self, purpose: str = "wallet", timeout: Optional[float] = None) -> Iterator[WalletHandle]:
        """Block until this caller holds the wallet; released when the block exits."""
        handle = self._enter(purpose, self.timeout_seconds if timeout is None else timeout)
        try:
            yield handle
        finally:
            self._exit(handle)

    def _enter(self, purpose: str, timeout: Optional[float]) -> WalletHandle:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            self._queue.append(ticket)
            while self._holder is not None or self._queue[0] != ticket:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    self._queue.remove(ticket)
                    self._cond.notify_all()
                    logger.warning("Wallet access for %s timed out after %ss", purpose, timeout)
                    raise WalletBusy("wallet is busy, try again later")
                self._cond.wait(remaining)
            self._queue.popleft()
            handle = WalletHandle(ticket=ticket, purpose=purpose)
            self._holder = handle
            self.acquisitions += 1
        logger.debug("Wallet acquired by %s (ticket=%s)", purpose, ticket)
        return handle

    def _exit(self, handle: WalletHandle) -> None:
        with self._cond:
            if handle.released or self._holder is not handle:
                return
            handle.released = True
            self._holder = None
            self._cond.notify_all()
        logger.debug(
            "Wallet released by %s after %.3fs",
            handle.purpose,
            time.monotonic() - handle.acquired_at,
        )


__all__ = ["WalletAccessCoordinator", "WalletHandle"]
