from pydantic_settings import BaseSettings
from pydantic import Field, model_validator
from functools import lru_cache
from typing import List, Self


class Settings(BaseSettings):
    rpc_url: str = Field(
        default="http://127.0.0.1:8545", description="Primary JSON-RPC endpoint"
    )
    # Comma-separated, tried in order after rpc_url fails
    fallback_rpc_urls: str = Field(
        default="", description="Fallback JSON-RPC endpoints"
    )
    rpc_calls_per_second: float = Field(
        default=10, description="Client-side rate limit shared by all endpoints"
    )

    network: str = Field(default="ethereum", description="Network name used by the statistics API")
    api_url: str = Field(
        default="https://api.curve.finance/api", description="Statistics API base URL"
    )
    prices_api_url: str = Field(
        default="https://prices.curve.finance", description="Prices API base URL (user collateral events)"
    )
    request_timeout_seconds: float = Field(
        default=10, description="Total timeout for a single statistics API request"
    )

    stats_cache_ttl_seconds: float = Field(
        default=300, description="TTL for aggregate market data, pools and borrowing capacity"
    )
    user_collateral_cache_ttl_seconds: float = Field(
        default=60, description="TTL for per-user collateral events from the prices API"
    )
    user_state_cache_ttl_seconds: float = Field(
        default=10, description="TTL for on-chain user state snapshots"
    )
    allowance_cache_ttl_seconds: float = Field(
        default=5, description="TTL for ERC20 allowance reads"
    )
    oracle_price_cache_ttl_seconds: float = Field(
        default=60, description="TTL for the AMM oracle price"
    )
    amm_parameters_cache_ttl_seconds: float = Field(
        default=86400, description="TTL for immutable AMM parameters (A, base price)"
    )
    bands_info_cache_ttl_seconds: float = Field(
        default=60, description="TTL for active, min and max band numbers"
    )

    default_slippage: float = Field(
        default=0.1, description="Default slippage in percent for swaps and liquidations"
    )

    @model_validator(mode="after")
    def check_slippage(self) -> Self:
        """Default slippage must pass the liquidation guard (0 < s <= 100)."""
        if not 0 < self.default_slippage <= 100:
            raise ValueError(f"default_slippage must be in (0, 100], got {self.default_slippage}")
        return self

    def get_rpc_urls(self) -> List[str]:
        """Primary endpoint followed by fallbacks, without duplicates."""
        urls = [self.rpc_url]
        for url in self.fallback_rpc_urls.split(","):
            url = url.strip()
            if url and url not in urls:
                urls.append(url)
        return urls

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
