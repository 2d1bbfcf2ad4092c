"""
Configuration for the CoinJoin mixer.

Process settings (network, chain-data endpoint, data directory) come from the
environment or a .env file; the round parameters live in MixerConfig.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from cjcore.constants import STANDARD_DUST_LIMIT
from cjcore.models import NetworkType
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    network: Literal["mainnet", "testnet", "signet", "regtest"] = "regtest"
    # Bitcoin Core RPC endpoint, host:port or a full URL
    host: str = "127.0.0.1:18443"
    rpc_user: str = "rpcuser"
    rpc_password: str = "rpcpassword"

    data_dir: Path = Path("./data")

    log_level: str = "INFO"

    @property
    def rpc_url(self) -> str:
        if self.host.startswith(("http://", "https://")):
            return self.host
        return f"http://{self.host}"


def get_settings() -> Settings:
    return Settings()


class MixerConfig(BaseModel):
    """Parameters of one CoinJoin round."""

    network: NetworkType = NetworkType.REGTEST

    # Every output pays exactly `denomination` sats
    denomination: int = Field(default=5_000, gt=0)
    output_count: int = Field(default=5, ge=1, le=100)
    fee_rate: int = Field(default=10, ge=1, description="Fee rate in sat/vB")

    # Wallet structure
    account: int = Field(default=0, ge=0)
    gap_limit: int = Field(default=20, ge=1)

    # Coordinator funding
    min_confirmations: int = Field(default=1, ge=0)
    dust_threshold: int = Field(default=STANDARD_DUST_LIMIT, ge=0)

    @model_validator(mode="after")
    def check_denomination_above_dust(self) -> MixerConfig:
        if self.denomination < self.dust_threshold:
            raise ValueError(
                f"Denomination {self.denomination} is below the dust threshold "
                f"{self.dust_threshold}"
            )
        return self
