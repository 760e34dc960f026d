"""HTTP API for faucet payouts and channel leases."""
from __future__ import annotations

import re
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field, field_validator

from .config import FaucetSettings
from .dispatcher import Dispatcher, LeaseRequest, SendRequest
from .errors import FaucetError
from .leases import Lease, LeaseState

BECH32_HRP = {"signet": "tb", "testnet": "tb", "regtest": "bcrt"}
BECH32_CHARSET = "[02-9ac-hj-np-z]"
BASE58_PREFIX = re.compile(r"^[mn2][1-9A-HJ-NP-Za-km-z]{25,34}$")


def is_network_address(address: str, network: str) -> bool:
    """Cheap syntax check that an address belongs to the faucet's network."""
    hrp = BECH32_HRP.get(network, "tb")
    lowered = address.lower()
    if lowered.startswith(hrp + "1"):
        if address != lowered and address != address.upper():
            return False
        return re.fullmatch(rf"{hrp}1{BECH32_CHARSET}{{8,87}}", lowered) is not None
    return BASE58_PREFIX.match(address) is not None


class SendPayload(BaseModel):
    address: str = Field(min_length=1, max_length=128)
    amount: int = Field(gt=0)

    @field_validator("address")
    @classmethod
    def strip_address(cls, value: str) -> str:
        return value.strip()


class SendResponse(BaseModel):
    txid: str


class ChannelPayload(BaseModel):
    node_id: str = Field(pattern=r"^0[23][0-9a-fA-F]{64}$")
    capacity: Optional[int] = Field(default=None, gt=0)
    lease_seconds: Optional[int] = Field(default=None, gt=0)


class LeaseRecord(BaseModel):
    lease_id: str
    channel_id: str
    peer_pubkey: str
    capacity: int
    state: str
    created_at: str
    expires_at: str
    updated_at: Optional[str] = None
    close_attempts: int = 0
    last_error: Optional[str] = None
    closing_txid: Optional[str] = None


class LeaseListResponse(BaseModel):
    leases: List[LeaseRecord]


def _lease_to_model(lease: Lease) -> LeaseRecord:
    return LeaseRecord(**lease.to_dict())


def create_app(dispatcher: Dispatcher, settings: FaucetSettings) -> FastAPI:
    app = FastAPI(title="Signet Faucet", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    network = str(getattr(settings, "network", "signet"))
    min_sendable = int(getattr(settings, "min_sendable_amount", 420))
    max_sendable = int(getattr(settings, "max_sendable_amount", 1_000_000))
    channel_value = int(getattr(settings, "channel_value", 1_000_000))
    max_channel_value = int(getattr(settings, "max_channel_value", channel_value))
    lease_seconds = int(getattr(settings, "lease_seconds", 86_400))
    lease_min_seconds = int(getattr(settings, "lease_min_seconds", 60))
    lease_max_seconds = int(getattr(settings, "lease_max_seconds", 7 * 86_400))
    index_path = getattr(settings, "index_path", None)

    @app.exception_handler(FaucetError)
    async def faucet_error_handler(_: Request, exc: FaucetError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": type(exc).__name__},
        )

    @app.get("/", response_model=None)
    def index() -> Union[FileResponse, Dict[str, Any]]:
        """Serve the faucet page, or a summary of its limits when none is configured."""
        if index_path is not None and Path(index_path).is_file():
            return FileResponse(index_path, media_type="text/html")
        return {
            "name": "Signet Faucet",
            "network": network,
            "min_sendable_amount": min_sendable,
            "max_sendable_amount": max_sendable,
            "lightning_enabled": dispatcher.lightning_enabled,
            "docs": "/docs",
        }

    @app.get("/api/health")
    def health() -> Dict[str, Any]:
        return {"ok": True, "lightning_enabled": dispatcher.lightning_enabled}

    @app.post("/api/send", response_model=SendResponse)
    def send(payload: SendPayload) -> SendResponse:
        if not is_network_address(payload.address, network):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"The informed address is not a valid {network} address",
            )
        if payload.amount > max_sendable:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="The requested amount is too big")
        if payload.amount < min_sendable:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="The requested amount is too little")
        result = dispatcher.send(SendRequest(destination_address=payload.address, amount=payload.amount))
        return SendResponse(txid=result.transaction_id)

    def _resolve_lease_seconds(requested: Optional[int]) -> int:
        value = lease_seconds if requested is None else int(requested)
        value = max(lease_min_seconds, value)
        return min(value, lease_max_seconds)

    if dispatcher.lightning_enabled:

        @app.post("/api/channel", response_model=LeaseRecord)
        def open_channel(payload: ChannelPayload) -> LeaseRecord:
            capacity = payload.capacity if payload.capacity is not None else channel_value
            if capacity > max_channel_value:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="The requested capacity is too big")
            request = LeaseRequest(
                requesting_node_pubkey=payload.node_id.lower(),
                requested_capacity=capacity,
                lease_duration=timedelta(seconds=_resolve_lease_seconds(payload.lease_seconds)),
            )
            return _lease_to_model(dispatcher.lease(request))

    @app.get("/api/leases/{lease_id}", response_model=LeaseRecord)
    def get_lease(lease_id: str) -> LeaseRecord:
        lease = dispatcher.lease_status(lease_id)
        if lease is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Lease not found")
        return _lease_to_model(lease)

    @app.get("/api/leases", response_model=LeaseListResponse)
    def list_leases(
        state: Optional[str] = Query(default=None),
        limit: int = Query(default=200, ge=1, le=2000),
    ) -> LeaseListResponse:
        if state is not None:
            try:
                wanted: Optional[LeaseState] = LeaseState(state.lower())
            except ValueError:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid state filter")
        else:
            wanted = None
        registry = dispatcher.registry
        leases = registry.snapshot() + registry.retired()
        if wanted is not None:
            leases = [lease for lease in leases if lease.state == wanted]
        leases.sort(key=lambda lease: lease.created_at, reverse=True)
        return LeaseListResponse(leases=[_lease_to_model(lease) for lease in leases[:limit]])

    return app


def run_api(app: FastAPI, settings: FaucetSettings) -> None:
    """Run the FastAPI app using uvicorn."""
    import uvicorn  # Imported lazily to avoid mandatory dependency in tests

    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
        root_path=settings.api_root_path,
    )
    server = uvicorn.Server(config)
    server.install_signal_handlers = False
    server.run()


__all__ = ["create_app", "is_network_address", "run_api"]
