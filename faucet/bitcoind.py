"""bitcoind JSON-RPC client used for on-chain faucet payouts."""
from __future__ import annotations

import itertools
import logging
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import requests

from .errors import BroadcastFailed, InsufficientFunds, InvalidDestination, NodeUnavailable

logger = logging.getLogger(__name__)

SATS_PER_BTC = Decimal(100_000_000)
DUST_LIMIT_SATS = 546

RPC_INVALID_ADDRESS_OR_KEY = -5
RPC_WALLET_INSUFFICIENT_FUNDS = -6
RPC_VERIFY_ERROR = -25
RPC_VERIFY_REJECTED = -26
RPC_VERIFY_ALREADY_IN_CHAIN = -27


def sats_to_btc(sats: int) -> Decimal:
    return (Decimal(sats) / SATS_PER_BTC).quantize(Decimal("0.00000001"))


def btc_to_sats(value: Any) -> int:
    return int((Decimal(str(value)) * SATS_PER_BTC).to_integral_value())


class BitcoindRpcError(RuntimeError):
    def __init__(self, method: str, code: int, message: str) -> None:
        super().__init__(f"{method} failed ({code}): {message}")
        self.method = method
        self.code = code
        self.message = message


class BitcoindClient:
    def __init__(
        self,
        url: str,
        change_address: str,
        *,
        cookie_file: Optional[Path] = None,
        rpc_user: Optional[str] = None,
        rpc_password: Optional[str] = None,
        wallet: Optional[str] = None,
        fee_sats: int = 1_000,
        timeout_seconds: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url.rstrip("/")
        if wallet:
            self.url = f"{self.url}/wallet/{wallet}"
        self.change_address = change_address
        self.cookie_file = cookie_file
        self.rpc_user = rpc_user
        self.rpc_password = rpc_password
        self.fee_sats = fee_sats
        self.timeout_seconds = timeout_seconds
        self._http = session or requests.Session()
        self._ids = itertools.count(1)

    def _auth(self) -> Optional[Tuple[str, str]]:
        if self.cookie_file is not None:
            try:
                raw = Path(self.cookie_file).expanduser().read_text(encoding="utf-8").strip()
            except OSError as exc:
                raise NodeUnavailable(f"cannot read bitcoind cookie file: {exc}") from exc
            user, _, password = raw.partition(":")
            return user, password
        if self.rpc_user is not None:
            return self.rpc_user, self.rpc_password or ""
        return None

    def _rpc(self, method: str, *params: Any) -> Any:
        payload = {"jsonrpc": "1.0", "id": next(self._ids), "method": method, "params": list(params)}
        try:
            response = self._http.post(
                self.url,
                json=payload,
                auth=self._auth(),
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise NodeUnavailable(f"bitcoind unreachable: {exc}") from exc

        # bitcoind answers RPC errors with HTTP 500 and a JSON body.
        try:
            body = response.json()
        except ValueError as exc:
            raise NodeUnavailable(
                f"bitcoind returned HTTP {response.status_code} without a JSON body"
            ) from exc
        if not isinstance(body, dict):
            raise NodeUnavailable("bitcoind returned an invalid response")
        error = body.get("error")
        if error:
            code = int(error.get("code", 0)) if isinstance(error, dict) else 0
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            raise BitcoindRpcError(method, code, message)
        return body.get("result")

    def _list_unspent(self) -> List[Dict[str, Any]]:
        unspents = self._rpc("listunspent", 1)
        if not isinstance(unspents, list):
            raise NodeUnavailable("listunspent returned an invalid result")
        return [utxo for utxo in unspents if isinstance(utxo, dict) and utxo.get("safe", True)]

    def spendable_balance(self) -> int:
        try:
            return sum(btc_to_sats(utxo.get("amount", 0)) for utxo in self._list_unspent())
        except BitcoindRpcError as exc:
            raise NodeUnavailable(str(exc)) from exc

    def send(self, address: str, amount: int) -> str:
        """Build, sign and broadcast a payment of `amount` sats to `address`."""
        try:
            unspents = self._list_unspent()
        except BitcoindRpcError as exc:
            raise NodeUnavailable(str(exc)) from exc

        # Smallest coins last so pop() spends them first.
        unspents.sort(key=lambda utxo: btc_to_sats(utxo.get("amount", 0)), reverse=True)
        needed = amount + self.fee_sats
        available = 0
        inputs: List[Dict[str, Any]] = []
        while available < needed:
            if not unspents:
                raise InsufficientFunds("we ran out of money, sorry")
            utxo = unspents.pop()
            inputs.append({"txid": utxo["txid"], "vout": utxo["vout"]})
            available += btc_to_sats(utxo.get("amount", 0))

        outputs: Dict[str, str] = {address: str(sats_to_btc(amount))}
        change = available - needed
        if change >= DUST_LIMIT_SATS:
            outputs[self.change_address] = str(sats_to_btc(change))

        try:
            raw_tx = self._rpc("createrawtransaction", inputs, outputs, 0, True)
            signed = self._rpc("signrawtransactionwithwallet", raw_tx)
        except BitcoindRpcError as exc:
            if exc.code == RPC_INVALID_ADDRESS_OR_KEY:
                raise InvalidDestination("the provided address is invalid") from exc
            if exc.code == RPC_WALLET_INSUFFICIENT_FUNDS:
                raise InsufficientFunds("we ran out of money, sorry") from exc
            raise NodeUnavailable(str(exc)) from exc

        if not isinstance(signed, dict) or not signed.get("complete"):
            raise BroadcastFailed("wallet could not fully sign the transaction")

        try:
            txid = self._rpc("sendrawtransaction", signed["hex"])
        except BitcoindRpcError as exc:
            if exc.code == RPC_WALLET_INSUFFICIENT_FUNDS:
                raise InsufficientFunds("we ran out of money, sorry") from exc
            raise BroadcastFailed(f"transaction was not relayed: {exc.message}") from exc

        logger.info("Broadcast %s sats to %s (txid=%s inputs=%s)", amount, address, txid, len(inputs))
        return str(txid)


__all__ = ["BitcoindClient", "BitcoindRpcError", "btc_to_sats", "sats_to_btc"]
