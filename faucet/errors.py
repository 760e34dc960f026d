"""Typed failures raised by the dispatch core and the node clients."""
from __future__ import annotations

from typing import Optional


class FaucetError(Exception):
    """Base error carrying the HTTP status the request surface should use."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InsufficientFunds(FaucetError):
    status_code = 503


class BroadcastFailed(FaucetError):
    status_code = 502


class InvalidDestination(FaucetError):
    status_code = 400


class ChannelOpenFailed(FaucetError):
    status_code = 502


class LightningDisabled(ChannelOpenFailed):
    status_code = 404


class ChannelCloseFailed(FaucetError):
    """Close attempt failed; retried by the lifecycle sweep unless irrecoverable."""

    status_code = 502

    def __init__(self, message: str, *, recoverable: bool = True) -> None:
        super().__init__(message)
        self.recoverable = recoverable


class NodeUnavailable(FaucetError):
    status_code = 503


class WalletBusy(NodeUnavailable):
    """Raised when wallet access could not be obtained within the timeout."""


__all__ = [
    "BroadcastFailed",
    "ChannelCloseFailed",
    "ChannelOpenFailed",
    "FaucetError",
    "InsufficientFunds",
    "InvalidDestination",
    "LightningDisabled",
    "NodeUnavailable",
    "WalletBusy",
]
