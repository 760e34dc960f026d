"""Settings loader for the faucet."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

NETWORKS = ("signet", "testnet", "regtest")


class FaucetSettings(BaseSettings):
    bitcoind_url: str = Field(default="http://localhost:38332", validation_alias="BITCOIND_URL")
    bitcoind_cookie_file: Optional[Path] = Field(default=None, validation_alias="BITCOIND_COOKIE_FILE")
    bitcoind_rpc_user: Optional[str] = Field(default=None, validation_alias="BITCOIND_RPC_USER")
    bitcoind_rpc_password: Optional[str] = Field(default=None, validation_alias="BITCOIND_RPC_PASSWORD")
    bitcoind_wallet: Optional[str] = Field(default=None, validation_alias="BITCOIND_WALLET")
    bitcoind_timeout_seconds: float = Field(default=30.0, validation_alias="BITCOIND_TIMEOUT_SECONDS")

    change_address: str = Field(validation_alias="CHANGE_ADDRESS")
    network: str = Field(default="signet", validation_alias="FAUCET_NETWORK")

    max_sendable_amount: int = Field(default=1_000_000, validation_alias="MAX_SENDABLE_AMOUNT")
    min_sendable_amount: int = Field(default=420, validation_alias="MIN_SENDABLE_AMOUNT")
    send_fee_sats: int = Field(default=1_000, validation_alias="FAUCET_SEND_FEE_SATS")

    cln_rpc_path: Optional[Path] = Field(default=None, validation_alias="CLN_RPC_PATH")
    cln_timeout_seconds: float = Field(default=60.0, validation_alias="CLN_TIMEOUT_SECONDS")
    channel_value: int = Field(default=1_000_000, validation_alias="CHANNEL_VALUE")
    max_channel_value: int = Field(default=5_000_000, validation_alias="MAX_CHANNEL_VALUE")
    push_value: int = Field(default=0, validation_alias="PUSH_VALUE")
    close_unilateral_timeout_seconds: int = Field(
        default=30, validation_alias="LEASE_CLOSE_UNILATERAL_TIMEOUT_SECONDS"
    )

    lease_seconds: int = Field(default=86_400, validation_alias="LEASE_SECONDS")
    lease_min_seconds: int = Field(default=60, validation_alias="LEASE_MIN_SECONDS")
    lease_max_seconds: int = Field(default=7 * 86_400, validation_alias="LEASE_MAX_SECONDS")
    lease_sweep_interval_seconds: float = Field(default=30.0, validation_alias="LEASE_SWEEP_INTERVAL_SECONDS")
    lease_open_timeout_seconds: int = Field(default=3_600, validation_alias="LEASE_OPEN_TIMEOUT_SECONDS")
    leases_path: Optional[Path] = Field(default=None, validation_alias="FAUCET_LEASES_PATH")
    wallet_acquire_timeout_seconds: Optional[float] = Field(
        default=None, validation_alias="WALLET_ACQUIRE_TIMEOUT_SECONDS"
    )

    api_host: str = Field(default="0.0.0.0", validation_alias="FAUCET_API_HOST")
    api_port: int = Field(default=8080, validation_alias="FAUCET_API_PORT")
    api_root_path: str = Field(default="", validation_alias="FAUCET_API_ROOT_PATH")
    index_path: Optional[Path] = Field(default=None, validation_alias="FAUCET_INDEX_PATH")
    log_level: str = Field(default="INFO", validation_alias="FAUCET_LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def lightning_enabled(self) -> bool:
        return self.cln_rpc_path is not None

    @field_validator("network")
    @classmethod
    def validate_network(cls, value: str) -> str:
        candidate = value.strip().lower()
        if candidate not in NETWORKS:
            raise ValueError(f"FAUCET_NETWORK must be one of {', '.join(NETWORKS)}")
        return candidate

    @field_validator("change_address")
    @classmethod
    def validate_change_address(cls, value: str) -> str:
        candidate = value.strip()
        if not candidate:
            raise ValueError("You have to provide a valid change address (CHANGE_ADDRESS)")
        return candidate

    @field_validator(
        "max_sendable_amount",
        "min_sendable_amount",
        "channel_value",
        "max_channel_value",
        "lease_seconds",
        "lease_min_seconds",
        "lease_max_seconds",
        "lease_open_timeout_seconds",
        "close_unilateral_timeout_seconds",
        "api_port",
    )
    @classmethod
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("send_fee_sats", "push_value")
    @classmethod
    def validate_non_negative_int(cls, value: int) -> int:
        if value < 0:
            raise ValueError("Value must not be negative")
        return value

    @field_validator(
        "bitcoind_timeout_seconds",
        "cln_timeout_seconds",
        "lease_sweep_interval_seconds",
        "wallet_acquire_timeout_seconds",
    )
    @classmethod
    def validate_positive_float(cls, value: Optional[float]) -> Optional[float]:
        if value is None:
            return value
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"

    @model_validator(mode="after")
    def validate_ranges(self) -> "FaucetSettings":
        if self.min_sendable_amount > self.max_sendable_amount:
            raise ValueError("MIN_SENDABLE_AMOUNT must not exceed MAX_SENDABLE_AMOUNT")
        if self.channel_value > self.max_channel_value:
            raise ValueError("CHANNEL_VALUE must not exceed MAX_CHANNEL_VALUE")
        if self.push_value >= self.channel_value:
            raise ValueError("PUSH_VALUE must be smaller than CHANNEL_VALUE")
        if not self.lease_min_seconds <= self.lease_seconds <= self.lease_max_seconds:
            raise ValueError("LEASE_SECONDS must lie between LEASE_MIN_SECONDS and LEASE_MAX_SECONDS")
        if self.close_unilateral_timeout_seconds >= self.cln_timeout_seconds:
            raise ValueError("LEASE_CLOSE_UNILATERAL_TIMEOUT_SECONDS must be shorter than CLN_TIMEOUT_SECONDS")
        if self.bitcoind_cookie_file is None and self.bitcoind_rpc_user is None:
            raise ValueError("Set BITCOIND_COOKIE_FILE or BITCOIND_RPC_USER to authenticate with bitcoind")
        return self


def load_settings() -> FaucetSettings:
    return FaucetSettings()  # type: ignore[call-arg]


__all__ = ["FaucetSettings", "load_settings"]
