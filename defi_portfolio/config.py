from pydantic_settings import BaseSettings
from pydantic import Field, model_validator
from functools import lru_cache
from typing import Self


class Settings(BaseSettings):
    # Chain-specific RPC URLs
    ethereum_rpc_url: str = Field(
        default="https://ethereum-rpc.publicnode.com", description="Ethereum mainnet RPC URL"
    )
    base_rpc_url: str = Field(default="https://mainnet.base.org", description="Base RPC URL")
    arbitrum_rpc_url: str = Field(
        default="https://arb1.arbitrum.io/rpc", description="Arbitrum One RPC URL"
    )
    optimism_rpc_url: str = Field(
        default="https://mainnet.optimism.io", description="Optimism RPC URL"
    )

    # Block explorer (Etherscan V2 multichain API)
    explorer_api_url: str = Field(
        default="https://api.etherscan.io/v2/api", description="Block explorer API base URL"
    )
    etherscan_api_key: str | None = Field(
        default=None, description="Explorer API key (token discovery is disabled without it)"
    )

    # Price source
    coingecko_api_url: str = Field(
        default="https://api.coingecko.com/api/v3", description="CoinGecko API base URL"
    )
    coingecko_api_key: str | None = Field(default=None, description="CoinGecko demo API key")

    # Cache TTLs
    static_cache_ttl_seconds: float = Field(
        default=300.0, description="TTL for descriptive data (reserve lists, token metadata)"
    )
    balance_cache_ttl_seconds: float = Field(default=30.0, description="TTL for balances")
    price_cache_ttl_seconds: float = Field(default=60.0, description="TTL for USD prices")
    cache_cleanup_interval_seconds: float = Field(
        default=60.0, gt=0, description="How often expired cache entries are dropped"
    )

    # Retry policy
    retry_max_attempts: int = Field(default=3, ge=1, description="Attempts per upstream call")
    retry_base_delay_seconds: float = Field(
        default=1.0, ge=0, description="Base delay for exponential backoff"
    )
    upstream_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout for a single upstream HTTP/RPC call"
    )

    # Batching
    balance_batch_size: int = Field(default=10, ge=1, description="Concurrent token balance fetches")
    balance_batch_pause_seconds: float = Field(
        default=0.5, ge=0, description="Pause between token balance batches"
    )
    price_batch_size: int = Field(default=50, ge=1, description="Addresses per price request")
    multicall_max_batch_size: int = Field(
        default=300, ge=1, description="Calls per aggregate3 request"
    )
    rpc_calls_per_second: float = Field(default=10.0, gt=0, description="RPC rate limit per chain")

    http_host: str = Field(default="0.0.0.0", description="HTTP bind host")
    http_port: int = Field(default=8080, description="HTTP port for the API and /metrics")

    @model_validator(mode="after")
    def strip_blank_keys(self) -> Self:
        """Treat empty API keys from .env files as unset."""
        if self.etherscan_api_key is not None and not self.etherscan_api_key.strip():
            object.__setattr__(self, "etherscan_api_key", None)
        if self.coingecko_api_key is not None and not self.coingecko_api_key.strip():
            object.__setattr__(self, "coingecko_api_key", None)
        return self

    def get_rpc_url(self, chain: str) -> str:
        """Get RPC URL for a specific chain."""
        chain = chain.lower()
        chain_url = getattr(self, f"{chain}_rpc_url", None)
        if chain_url is None:
            raise KeyError(f"No RPC URL setting for chain: {chain}")
        return chain_url

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
