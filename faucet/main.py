"""CLI entrypoint for the faucet."""
from __future__ import annotations

import logging
import sys
import threading
from datetime import timedelta
from typing import Optional

from pydantic import ValidationError

from .api import create_app, run_api
from .bitcoind import BitcoindClient
from .cln import ClnClient
from .config import FaucetSettings, load_settings
from .dispatcher import Dispatcher
from .errors import NodeUnavailable
from .leases import LeaseRegistry
from .lifecycle import LeaseLifecycleManager
from .node import NodeFacade
from .wallet import WalletAccessCoordinator


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
        stream=sys.stdout,
    )


def build_node(settings: FaucetSettings, logger: logging.Logger) -> NodeFacade:
    bitcoind = BitcoindClient(
        settings.bitcoind_url,
        settings.change_address,
        cookie_file=settings.bitcoind_cookie_file,
        rpc_user=settings.bitcoind_rpc_user,
        rpc_password=settings.bitcoind_rpc_password,
        wallet=settings.bitcoind_wallet,
        fee_sats=settings.send_fee_sats,
        timeout_seconds=settings.bitcoind_timeout_seconds,
    )

    lightning: Optional[ClnClient] = None
    if settings.cln_rpc_path is not None:
        lightning = ClnClient(
            rpc_path=settings.cln_rpc_path,
            timeout_seconds=settings.cln_timeout_seconds,
            push_msat=settings.push_value * 1000,
            unilateral_timeout_seconds=settings.close_unilateral_timeout_seconds,
        )
        info = lightning.info()
        logger.info(
            "Connected to lightningd id=%s alias=%s network=%s",
            info.get("id"),
            info.get("alias"),
            info.get("network"),
        )
    else:
        logger.info("CLN_RPC_PATH not set; channel leases disabled")
    return NodeFacade(bitcoind, lightning)


def main() -> None:
    try:
        settings = load_settings()
    except ValidationError as exc:
        configure_logging()
        logging.getLogger(__name__).error("Invalid faucet configuration: %s", exc)
        sys.exit(1)

    configure_logging(settings.log_level)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting faucet network=%s bitcoind=%s sendable=[%s, %s] sats",
        settings.network,
        settings.bitcoind_url,
        settings.min_sendable_amount,
        settings.max_sendable_amount,
    )

    try:
        node = build_node(settings, logger)
    except NodeUnavailable as exc:
        logger.error("Unable to reach lightningd: %s", exc)
        sys.exit(1)

    wallet = WalletAccessCoordinator(timeout_seconds=settings.wallet_acquire_timeout_seconds)
    registry = LeaseRegistry(settings.leases_path)
    dispatcher = Dispatcher(node, wallet, registry, fee_reserve=settings.send_fee_sats)
    lifecycle = LeaseLifecycleManager(
        registry,
        node,
        wallet,
        sweep_interval=settings.lease_sweep_interval_seconds,
        open_timeout=timedelta(seconds=settings.lease_open_timeout_seconds),
    )

    app = create_app(dispatcher, settings)
    api_thread = threading.Thread(
        target=run_api,
        name="faucet-api",
        args=(app, settings),
        daemon=True,
    )
    api_thread.start()
    logger.info("HTTP API available at http://%s:%s", settings.api_host, settings.api_port)

    try:
        if node.lightning_enabled:
            lifecycle.run_forever()
        else:
            api_thread.join()
    except KeyboardInterrupt:
        logger.info("Faucet stopped via keyboard interrupt")


if __name__ == "__main__":
    main()
