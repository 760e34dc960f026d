import json
import socket
import threading
import time
from pathlib import Path

import pytest

from faucet.cln import CHANNEL_ACTIVE, CHANNEL_CLOSED, CHANNEL_PENDING, ClnClient, parse_msat
from faucet.errors import ChannelCloseFailed, ChannelOpenFailed, InsufficientFunds, NodeUnavailable

PEER = "02" + "ef" * 32


class FakeLightningd:
    """Serves one JSON-RPC request per connection over a socketpair."""

    def __init__(self, handlers, split_inside=None):
        self.handlers = handlers
        self.split_inside = split_inside
        self.requests = []
        self._threads = []

    def connect(self):
        client_end, server_end = socket.socketpair()
        thread = threading.Thread(target=self._serve, args=(server_end,), daemon=True)
        thread.start()
        self._threads.append(thread)
        return client_end

    def _serve(self, sock):
        decoder = json.JSONDecoder()
        buffer = ""
        with sock:
            while True:
                part = sock.recv(65536)
                if not part:
                    return
                buffer += part.decode("utf-8")
                try:
                    request, _ = decoder.raw_decode(buffer)
                    break
                except json.JSONDecodeError:
                    continue
            self.requests.append(request)
            handler = self.handlers[request["method"]]
            if isinstance(handler, bytes):
                sock.sendall(handler)
                return
            if isinstance(handler, tuple):
                code, message = handler
                response = {"jsonrpc": "2.0", "id": request["id"], "error": {"code": code, "message": message}}
            else:
                response = {"jsonrpc": "2.0", "id": request["id"], "result": handler}
            payload = json.dumps(response, ensure_ascii=False).encode("utf-8") + b"\n\n"
            if self.split_inside is None:
                sock.sendall(payload)
                return
            split_at = payload.index(self.split_inside.encode("utf-8")) + 1
            sock.sendall(payload[:split_at])
            time.sleep(0.05)
            sock.sendall(payload[split_at:])

    def join(self):
        for thread in self._threads:
            thread.join(timeout=2)


def make_client(monkeypatch, handlers, split_inside=None, **kwargs):
    lightningd = FakeLightningd(handlers, split_inside=split_inside)
    client = ClnClient(rpc_path=Path("/tmp/lightning-rpc"), timeout_seconds=2, **kwargs)
    monkeypatch.setattr(client, "_connect", lightningd.connect)
    return client, lightningd


def test_parse_msat_accepts_both_forms():
    assert parse_msat(5_000) == 5_000
    assert parse_msat("5000msat") == 5_000


def test_fund_channel_sends_expected_params(monkeypatch):
    client, lightningd = make_client(
        monkeypatch,
        {"fundchannel": {"channel_id": "cid-1", "txid": "funding"}},
        push_msat=1_000,
    )

    channel_id = client.fund_channel(PEER, 250_000)
    lightningd.join()

    assert channel_id == "cid-1"
    request = lightningd.requests[0]
    assert request["jsonrpc"] == "2.0"
    assert request["params"] == {
        "id": PEER,
        "amount": 250_000,
        "announce": True,
        "minconf": 0,
        "push_msat": 1_000,
    }


def test_fund_channel_cannot_afford_is_insufficient_funds(monkeypatch):
    client, _ = make_client(monkeypatch, {"fundchannel": (301, "Cannot afford transaction")})

    with pytest.raises(InsufficientFunds):
        client.fund_channel(PEER, 250_000)


def test_fund_channel_other_error_is_open_failure(monkeypatch):
    client, _ = make_client(monkeypatch, {"fundchannel": (-1, "Unknown peer")})

    with pytest.raises(ChannelOpenFailed):
        client.fund_channel(PEER, 250_000)


def test_channel_status_maps_cln_states(monkeypatch):
    channels = {
        "channels": [
            {"channel_id": "normal", "state": "CHANNELD_NORMAL"},
            {"channel_id": "lockin", "state": "CHANNELD_AWAITING_LOCKIN"},
            {"channel_id": "onchain", "state": "ONCHAIN"},
        ]
    }
    client, _ = make_client(monkeypatch, {"listpeerchannels": channels})

    assert client.channel_status("normal") == CHANNEL_ACTIVE
    assert client.channel_status("lockin") == CHANNEL_PENDING
    assert client.channel_status("onchain") == CHANNEL_CLOSED
    assert client.channel_status("forgotten") == CHANNEL_CLOSED


def test_spendable_funds_counts_confirmed_unreserved_outputs(monkeypatch):
    outputs = {
        "outputs": [
            {"amount_msat": 1_000_000, "status": "confirmed"},
            {"amount_msat": "2000000msat", "status": "confirmed"},
            {"amount_msat": 5_000_000, "status": "unconfirmed"},
            {"amount_msat": 7_000_000, "status": "confirmed", "reserved": True},
        ]
    }
    client, _ = make_client(monkeypatch, {"listfunds": outputs})

    assert client.spendable_funds() == 3_000


def test_close_bounds_mutual_negotiation(monkeypatch):
    client, lightningd = make_client(
        monkeypatch,
        {"close": {"type": "unilateral", "txid": "closing"}},
        unilateral_timeout_seconds=15,
    )

    assert client.close("cid-1") == "closing"
    lightningd.join()
    assert lightningd.requests[0]["params"] == {"id": "cid-1", "unilateraltimeout": 15}
    assert client.unilateral_timeout_seconds < client.timeout_seconds


def test_close_uses_default_unilateral_timeout(monkeypatch):
    client, lightningd = make_client(monkeypatch, {"close": {"type": "mutual", "txid": "closing"}})

    client.close("cid-1")
    lightningd.join()

    assert lightningd.requests[0]["params"]["unilateraltimeout"] == 30


def test_peer_channels_filters_by_peer(monkeypatch):
    channels = {
        "channels": [
            {"channel_id": "fresh", "state": "CHANNELD_AWAITING_LOCKIN"},
            {"channel_id": "old", "state": "CHANNELD_NORMAL"},
        ]
    }
    client, lightningd = make_client(monkeypatch, {"listpeerchannels": channels})

    assert client.peer_channels(PEER) == {"fresh": CHANNEL_PENDING, "old": CHANNEL_ACTIVE}
    lightningd.join()
    assert lightningd.requests[0]["params"] == {"id": PEER}


def test_response_split_inside_multibyte_character(monkeypatch):
    client, _ = make_client(
        monkeypatch,
        {"getinfo": {"id": PEER, "alias": "café", "network": "signet"}},
        split_inside="é",
    )

    info = client.info()

    assert info["alias"] == "café"


def test_invalid_utf8_response_is_node_unavailable(monkeypatch):
    client, _ = make_client(
        monkeypatch,
        {"getinfo": b'{"jsonrpc": "2.0", "id": 1, "result": {"alias": "\xff\xfe"}}\n\n'},
    )

    with pytest.raises(NodeUnavailable):
        client.info()


def test_close_of_unknown_channel_is_not_recoverable(monkeypatch):
    client, _ = make_client(monkeypatch, {"close": (-32602, "Short channel ID not found")})

    with pytest.raises(ChannelCloseFailed) as excinfo:
        client.close("cid-1")
    assert excinfo.value.recoverable is False


def test_close_of_disconnected_peer_is_recoverable(monkeypatch):
    client, _ = make_client(monkeypatch, {"close": (-1, "Peer is not connected")})

    with pytest.raises(ChannelCloseFailed) as excinfo:
        client.close("cid-1")
    assert excinfo.value.recoverable is True


def test_missing_socket_is_node_unavailable(tmp_path: Path):
    client = ClnClient(rpc_path=tmp_path / "missing-rpc", timeout_seconds=1)

    with pytest.raises(NodeUnavailable):
        client.info()
