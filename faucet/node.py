"""Narrow interface between the dispatch core and the backing nodes."""
from __future__ import annotations

from typing import Dict, Optional, Protocol

from .bitcoind import BitcoindClient
from .cln import CHANNEL_ACTIVE, CHANNEL_CLOSED, CHANNEL_PENDING, ClnClient
from .errors import LightningDisabled


class NodeRpc(Protocol):
    @property
    def lightning_enabled(self) -> bool: ...

    def get_spendable_balance(self, for_channel: bool = False) -> int: ...

    def send(self, destination_address: str, amount: int) -> str: ...

    def open_channel(self, peer_pubkey: str, capacity: int) -> str: ...

    def close_channel(self, channel_id: str) -> Optional[str]: ...

    def get_channel_status(self, channel_id: str) -> str: ...

    def get_peer_channels(self, peer_pubkey: str) -> Dict[str, str]: ...


class NodeFacade:
    """Routes on-chain calls to bitcoind and channel calls to Core Lightning.

    Channels are funded from the Lightning node's own on-chain wallet, so the
    balance consulted before a channel open comes from there.
    """

    def __init__(self, bitcoind: BitcoindClient, lightning: Optional[ClnClient] = None) -> None:
        self.bitcoind = bitcoind
        self.lightning = lightning

    @property
    def lightning_enabled(self) -> bool:
        return self.lightning is not None

    def _require_lightning(self) -> ClnClient:
        if self.lightning is None:
            raise LightningDisabled("lightning support is not configured")
        return self.lightning

    def get_spendable_balance(self, for_channel: bool = False) -> int:
        if for_channel:
            return self._require_lightning().spendable_funds()
        return self.bitcoind.spendable_balance()

    def send(self, destination_address: str, amount: int) -> str:
        return self.bitcoind.send(destination_address, amount)

    def open_channel(self, peer_pubkey: str, capacity: int) -> str:
        return self._require_lightning().fund_channel(peer_pubkey, capacity)

    def close_channel(self, channel_id: str) -> Optional[str]:
        return self._require_lightning().close(channel_id)

    def get_channel_status(self, channel_id: str) -> str:
        return self._require_lightning().channel_status(channel_id)

    def get_peer_channels(self, peer_pubkey: str) -> Dict[str, str]:
        return self._require_lightning().peer_channels(peer_pubkey)


__all__ = [
    "CHANNEL_ACTIVE",
    "CHANNEL_CLOSED",
    "CHANNEL_PENDING",
    "NodeFacade",
    "NodeRpc",
]
