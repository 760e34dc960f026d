"""Periodic sweep that moves channel leases through their lifecycle."""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from .errors import ChannelCloseFailed, FaucetError, NodeUnavailable
from .leases import Lease, LeaseRegistry, LeaseState, utcnow
from .node import CHANNEL_ACTIVE, CHANNEL_CLOSED, NodeRpc
from .wallet import WalletAccessCoordinator

logger = logging.getLogger(__name__)


class LeaseLifecycleManager:
    """Drives leases opening -> active -> expiring -> closed (or failed).

    Expired leases are closed under the wallet handle because a cooperative
    close moves funds back into the node wallet. Failed closes stay in
    `expiring` and are retried on every sweep until the node confirms.
    """

    def __init__(
        self,
        registry: LeaseRegistry,
        node: NodeRpc,
        wallet: WalletAccessCoordinator,
        *,
        sweep_interval: float = 30.0,
        open_timeout: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.node = node
        self.wallet = wallet
        self.sweep_interval = sweep_interval
        self.open_timeout = open_timeout
        self.clock = clock
        self._sweep_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep_once(self, now: Optional[datetime] = None) -> None:
        """Run a single pass over every live lease."""
        with self._sweep_lock:
            now = now or self.clock()
            for lease in self.registry.snapshot():
                try:
                    self._advance(lease, now)
                except Exception as exc:  # pragma: no cover - keep sweeping other leases
                    logger.exception("Lease sweep failed for %s: %s", lease.lease_id, exc)

    def _advance(self, lease: Lease, now: datetime) -> None:
        if lease.state == LeaseState.OPENING:
            self._check_opening(lease, now)
        elif lease.state == LeaseState.ACTIVE:
            if lease.is_expired(now):
                self._expire(lease, now)
        elif lease.state == LeaseState.EXPIRING:
            self._close(lease, now)
        else:
            # Terminal lease left behind by an interrupted sweep; no node calls.
            self.registry.remove(lease.lease_id)

    def _check_opening(self, lease: Lease, now: datetime) -> None:
        status: Optional[str] = None
        try:
            status = self.node.get_channel_status(lease.channel_id)
        except FaucetError as exc:
            logger.warning("Could not read status of channel %s: %s", lease.channel_id, exc)

        if status == CHANNEL_ACTIVE:
            lease = self.registry.update_state(lease.lease_id, LeaseState.ACTIVE, now=now)
            if lease.is_expired(now):
                self._expire(lease, now)
            return
        if status == CHANNEL_CLOSED:
            self._fail(lease, now, "channel closed before it became usable")
            return
        if now - lease.created_at >= self.open_timeout:
            self._fail(lease, now, "channel open was not confirmed in time")

    def _expire(self, lease: Lease, now: datetime) -> None:
        lease = self.registry.update_state(lease.lease_id, LeaseState.EXPIRING, now=now)
        self._close(lease, now)

    def _close(self, lease: Lease, now: datetime) -> None:
        attempts = lease.close_attempts + 1
        try:
            with self.wallet.acquire("close_channel"):
                txid = self.node.close_channel(lease.channel_id)
        except ChannelCloseFailed as exc:
            if not exc.recoverable:
                self._fail(lease, now, exc.message, close_attempts=attempts)
                return
            self._record_close_failure(lease, now, attempts, exc)
            return
        except NodeUnavailable as exc:
            self._record_close_failure(lease, now, attempts, exc)
            return

        self.registry.update_state(
            lease.lease_id,
            LeaseState.CLOSED,
            now=now,
            close_attempts=attempts,
            closing_txid=txid,
            last_error=None,
        )
        self.registry.remove(lease.lease_id)
        logger.info(
            "Reclaimed %s sats from lease %s (channel=%s txid=%s attempts=%s)",
            lease.capacity,
            lease.lease_id,
            lease.channel_id,
            txid,
            attempts,
        )

    def _record_close_failure(self, lease: Lease, now: datetime, attempts: int, exc: FaucetError) -> None:
        logger.warning(
            "Close of channel %s for lease %s failed (attempt %s); retrying next sweep: %s",
            lease.channel_id,
            lease.lease_id,
            attempts,
            exc,
        )
        self.registry.update_state(
            lease.lease_id,
            LeaseState.EXPIRING,
            now=now,
            close_attempts=attempts,
            last_error=exc.message,
        )

    def _fail(self, lease: Lease, now: datetime, reason: str, **changes) -> None:
        logger.error("Lease %s (channel %s) failed: %s", lease.lease_id, lease.channel_id, reason)
        self.registry.update_state(
            lease.lease_id,
            LeaseState.FAILED,
            now=now,
            last_error=reason,
            **changes,
        )
        self.registry.remove(lease.lease_id)

    def run_forever(self) -> None:
        """Blocking loop that sweeps every configured interval until stopped."""
        interval = self.sweep_interval
        logger.info("Starting lease sweep with interval %s seconds", interval)
        while not self._stop.is_set():
            start = time.monotonic()
            try:
                self.sweep_once()
            except Exception as exc:  # pragma: no cover - unexpected sweep errors
                logger.exception("Unexpected error in lease sweep: %s", exc)
            elapsed = time.monotonic() - start
            self._stop.wait(max(interval - elapsed, 0))
        logger.info("Lease sweep stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="lease-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


__all__ = ["LeaseLifecycleManager"]
