"""Turns validated faucet requests into node operations."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from .errors import ChannelOpenFailed, FaucetError, InsufficientFunds, LightningDisabled, NodeUnavailable
from .leases import Lease, LeaseRegistry, LeaseRegistryError, LeaseState, utcnow
from .node import CHANNEL_PENDING, NodeRpc
from .wallet import WalletAccessCoordinator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendRequest:
    destination_address: str
    amount: int


@dataclass(frozen=True)
class LeaseRequest:
    requesting_node_pubkey: str
    requested_capacity: int
    lease_duration: timedelta


@dataclass(frozen=True)
class DispatchResult:
    transaction_id: str


class Dispatcher:
    """Single entry point for sends and channel leases.

    Both paths read the spendable balance and spend it while holding the
    wallet handle, so concurrent requests can never allocate the same coins.
    The handle is released as soon as the node has accepted the mutation.
    """

    def __init__(
        self,
        node: NodeRpc,
        wallet: WalletAccessCoordinator,
        registry: LeaseRegistry,
        *,
        fee_reserve: int = 0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.node = node
        self.wallet = wallet
        self.registry = registry
        self.fee_reserve = fee_reserve
        self.clock = clock

    @property
    def lightning_enabled(self) -> bool:
        return self.node.lightning_enabled

    def send(self, request: SendRequest) -> DispatchResult:
        with self.wallet.acquire("send"):
            balance = self.node.get_spendable_balance()
            required = request.amount + self.fee_reserve
            if required > balance:
                logger.warning(
                    "Refusing send of %s sats to %s: balance=%s required=%s",
                    request.amount,
                    request.destination_address,
                    balance,
                    required,
                )
                raise InsufficientFunds("we ran out of money, sorry")
            txid = self.node.send(request.destination_address, request.amount)
        logger.info("Sent %s sats to %s (txid=%s)", request.amount, request.destination_address, txid)
        return DispatchResult(transaction_id=txid)

    def lease(self, request: LeaseRequest) -> Lease:
        if not self.node.lightning_enabled:
            raise LightningDisabled("lightning support is not configured")

        with self.wallet.acquire("open_channel"):
            balance = self.node.get_spendable_balance(for_channel=True)
            if request.requested_capacity > balance:
                logger.warning(
                    "Refusing %s sat channel to %s: balance=%s",
                    request.requested_capacity,
                    request.requesting_node_pubkey,
                    balance,
                )
                raise InsufficientFunds("not enough funds to open the channel")
            try:
                channel_id = self.node.open_channel(
                    request.requesting_node_pubkey, request.requested_capacity
                )
            except NodeUnavailable as exc:
                # The node may have committed the open before the reply was lost.
                recovered = self._find_untracked_channel(request.requesting_node_pubkey)
                if recovered is None:
                    raise
                logger.warning(
                    "Channel open to %s reported %s but channel %s exists; tracking it",
                    request.requesting_node_pubkey,
                    exc,
                    recovered,
                )
                channel_id = recovered

        created_at = self.clock()
        lease = Lease(
            lease_id=uuid.uuid4().hex,
            channel_id=channel_id,
            peer_pubkey=request.requesting_node_pubkey,
            capacity=request.requested_capacity,
            created_at=created_at,
            expires_at=created_at + request.lease_duration,
            state=LeaseState.OPENING,
            updated_at=created_at,
        )
        try:
            self.registry.insert(lease)
        except LeaseRegistryError as exc:
            # The channel is already committed at the node; nothing to roll back.
            logger.error("Channel %s opened but lease could not be registered: %s", channel_id, exc)
            raise ChannelOpenFailed(str(exc)) from exc
        logger.info(
            "Lease %s opened channel %s to %s (capacity=%s expires_at=%s)",
            lease.lease_id,
            channel_id,
            lease.peer_pubkey,
            lease.capacity,
            lease.expires_at,
        )
        return lease

    def _find_untracked_channel(self, peer_pubkey: str) -> Optional[str]:
        """Pending channel with `peer_pubkey` that no lease owns yet, if any."""
        try:
            channels = self.node.get_peer_channels(peer_pubkey)
        except FaucetError as exc:
            logger.error("Could not reconcile channel open to %s: %s", peer_pubkey, exc)
            return None
        tracked = {lease.channel_id for lease in self.registry.snapshot()}
        for channel_id, status in sorted(channels.items()):
            if status == CHANNEL_PENDING and channel_id not in tracked:
                return channel_id
        return None

    def lease_status(self, lease_id: str) -> Optional[Lease]:
        return self.registry.get(lease_id)


__all__ = ["DispatchResult", "Dispatcher", "LeaseRequest", "SendRequest"]
