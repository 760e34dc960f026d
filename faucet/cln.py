"""Client for Core Lightning's JSON-RPC unix socket.

lightningd speaks JSON-RPC 2.0 over a unix stream socket and terminates every
response with a blank line. Each call opens a fresh connection.
"""

from __future__ import annotations

import itertools
import json
import logging
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

from .errors import ChannelCloseFailed, ChannelOpenFailed, InsufficientFunds, NodeUnavailable

logger = logging.getLogger(__name__)

CHANNEL_PENDING = "pending"
CHANNEL_ACTIVE = "active"
CHANNEL_CLOSED = "closed"

FUND_MAX_EXCEEDED = 300
FUND_CANNOT_AFFORD = 301
JSONRPC2_INVALID_PARAMS = -32602

ACTIVE_STATES = frozenset({"CHANNELD_NORMAL", "CHANNELD_AWAITING_SPLICE"})
PENDING_STATES = frozenset(
    {
        "OPENINGD",
        "CHANNELD_AWAITING_LOCKIN",
        "DUALOPEND_OPEN_INIT",
        "DUALOPEND_OPEN_COMMIT_READY",
        "DUALOPEND_OPEN_COMMITTED",
        "DUALOPEND_AWAITING_LOCKIN",
    }
)


class ClnRpcError(RuntimeError):
    def __init__(self, method: str, code: int, message: str) -> None:
        super().__init__(f"{method} failed ({code}): {message}")
        self.method = method
        self.code = code
        self.message = message


def parse_msat(value: Any) -> int:
    """Accept both integer msat and the legacy "1234msat" string form."""
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.endswith("msat"):
        return int(value[:-4])
    return int(value)


def _recv_json(sock: socket.socket) -> dict[str, Any]:
    decoder = json.JSONDecoder()
    buffer = b""
    while True:
        part = sock.recv(65536)
        if not part:
            raise NodeUnavailable("lightningd closed connection unexpectedly")
        buffer += part
        try:
            text = buffer.decode("utf-8")
        except UnicodeDecodeError as exc:
            # A multibyte character may be split across reads.
            if exc.end == len(buffer):
                continue
            raise NodeUnavailable("lightningd returned invalid UTF-8") from exc
        candidate = text.lstrip()
        try:
            response, _ = decoder.raw_decode(candidate)
        except json.JSONDecodeError:
            continue
        if not isinstance(response, dict):
            raise NodeUnavailable("lightningd returned invalid response")
        return response


@dataclass
class ClnClient:
    rpc_path: Path
    timeout_seconds: float = 60.0
    push_msat: int = 0
    # Mutual close waits this long before lightningd force-closes; keep it below timeout_seconds.
    unilateral_timeout_seconds: int = 30
    _ids: Iterator[int] = field(default_factory=lambda: itertools.count(1), repr=False)

    def _connect(self) -> socket.socket:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout_seconds)
        try:
            sock.connect(str(self.rpc_path))
        except OSError:
            sock.close()
            raise
        return sock

    def _rpc(self, method: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        request = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or {}}
        try:
            with self._connect() as sock:
                sock.sendall(json.dumps(request).encode("utf-8"))
                response = _recv_json(sock)
        except OSError as exc:
            raise NodeUnavailable(f"lightningd unreachable at {self.rpc_path}: {exc}") from exc
        if "error" in response:
            error = response.get("error")
            code = int(error.get("code", 0)) if isinstance(error, dict) else 0
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            raise ClnRpcError(method, code, message or "lightningd error")
        result = response.get("result")
        if not isinstance(result, dict):
            raise NodeUnavailable(f"lightningd returned invalid result for {method}")
        return result

    def info(self) -> dict[str, Any]:
        try:
            return self._rpc("getinfo")
        except ClnRpcError as exc:
            raise NodeUnavailable(str(exc)) from exc

    def spendable_funds(self) -> int:
        """Confirmed, unreserved on-chain outputs of the Lightning wallet, in sats."""
        try:
            result = self._rpc("listfunds")
        except ClnRpcError as exc:
            raise NodeUnavailable(str(exc)) from exc
        total_msat = 0
        for output in result.get("outputs") or []:
            if not isinstance(output, dict):
                continue
            if output.get("status") != "confirmed" or output.get("reserved"):
                continue
            total_msat += parse_msat(output.get("amount_msat", 0))
        return total_msat // 1000

    def fund_channel(self, peer_pubkey: str, capacity: int) -> str:
        params: dict[str, Any] = {
            "id": peer_pubkey,
            "amount": int(capacity),
            "announce": True,
            "minconf": 0,
        }
        if self.push_msat:
            params["push_msat"] = int(self.push_msat)
        try:
            result = self._rpc("fundchannel", params)
        except ClnRpcError as exc:
            if exc.code in (FUND_MAX_EXCEEDED, FUND_CANNOT_AFFORD):
                raise InsufficientFunds(f"cannot fund channel: {exc.message}") from exc
            raise ChannelOpenFailed(f"some cln error: {exc.message}") from exc
        channel_id = result.get("channel_id")
        if not isinstance(channel_id, str) or not channel_id:
            raise ChannelOpenFailed("fundchannel returned no channel_id")
        logger.info(
            "Funded channel %s to %s (capacity=%s txid=%s)",
            channel_id,
            peer_pubkey,
            capacity,
            result.get("txid"),
        )
        return channel_id

    def close(self, channel_id: str) -> Optional[str]:
        try:
            result = self._rpc(
                "close",
                {"id": channel_id, "unilateraltimeout": int(self.unilateral_timeout_seconds)},
            )
        except ClnRpcError as exc:
            unknown = exc.code == JSONRPC2_INVALID_PARAMS or "not found" in exc.message.lower()
            raise ChannelCloseFailed(
                f"close of {channel_id} failed: {exc.message}",
                recoverable=not unknown,
            ) from exc
        txid = result.get("txid")
        logger.info("Closed channel %s (type=%s txid=%s)", channel_id, result.get("type"), txid)
        return txid if isinstance(txid, str) else None

    def _peer_channels(self, params: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        try:
            result = self._rpc("listpeerchannels", params)
        except ClnRpcError as exc:
            raise NodeUnavailable(str(exc)) from exc
        return [channel for channel in result.get("channels") or [] if isinstance(channel, dict)]

    def channel_status(self, channel_id: str) -> str:
        for channel in self._peer_channels():
            if channel.get("channel_id") == channel_id:
                return _map_state(channel.get("state"))
        return CHANNEL_CLOSED

    def peer_channels(self, peer_pubkey: str) -> dict[str, str]:
        """Channel id -> status for every channel lightningd holds with `peer_pubkey`."""
        channels: dict[str, str] = {}
        for channel in self._peer_channels({"id": peer_pubkey}):
            channel_id = channel.get("channel_id")
            if isinstance(channel_id, str) and channel_id:
                channels[channel_id] = _map_state(channel.get("state"))
        return channels


def _map_state(state: Any) -> str:
    if state in ACTIVE_STATES:
        return CHANNEL_ACTIVE
    if state in PENDING_STATES:
        return CHANNEL_PENDING
    return CHANNEL_CLOSED


__all__ = ["CHANNEL_ACTIVE", "CHANNEL_CLOSED", "CHANNEL_PENDING", "ClnClient", "ClnRpcError", "parse_msat"]
