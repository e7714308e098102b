import pytest

from defi_portfolio.config import Settings
from defi_portfolio.errors import UnsupportedChainOrProtocol
from defi_portfolio.networks import (
    ChainRegistry,
    build_chain_registry,
    is_zero_address,
    require_address,
)

from conftest import make_chain


class TestRequireAddress:
    def test_checksums(self):
        address = require_address("0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48", "usdc")
        assert address == "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"

    def test_rejects_malformed(self):
        with pytest.raises(ValueError, match="aave.pool"):
            require_address("0x1234", "aave.pool")

    def test_rejects_zero_address(self):
        with pytest.raises(ValueError):
            require_address("0x0000000000000000000000000000000000000000", "x")

    def test_is_zero_address(self):
        assert is_zero_address("0x0000000000000000000000000000000000000000")
        assert is_zero_address(None)
        assert not is_zero_address("0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48")


class TestChainRegistry:
    def test_lookup_by_key_and_chain_id(self, registry):
        assert registry.get("Base").chain_id == 8453
        assert registry.by_chain_id(1).key == "ethereum"
        assert len(registry) == 2

    def test_unknown_chain(self, registry):
        with pytest.raises(UnsupportedChainOrProtocol):
            registry.get("solana")
        with pytest.raises(UnsupportedChainOrProtocol):
            registry.by_chain_id(999)

    def test_duplicate_chain_id_rejected(self):
        with pytest.raises(ValueError, match="Chain ID"):
            ChainRegistry([make_chain("ethereum", 1), make_chain("mainnet", 1)])

    def test_duplicate_key_rejected(self):
        with pytest.raises(ValueError, match="Duplicate"):
            ChainRegistry([make_chain("ethereum", 1), make_chain("ethereum", 5)])

    def test_invalid_chain_id(self):
        with pytest.raises(ValueError):
            make_chain("broken", 0)


class TestBuildChainRegistry:
    def test_default_chains(self):
        registry = build_chain_registry(Settings(_env_file=None))
        assert registry.keys() == ["ethereum", "base", "arbitrum", "optimism"]
        assert registry.get("arbitrum").price_platform == "arbitrum-one"
        assert registry.get("base").price_platform == "base"

    def test_rpc_url_from_settings(self):
        settings = Settings(_env_file=None, base_rpc_url="http://base.local")
        assert build_chain_registry(settings).get("base").rpc_url == "http://base.local"
        assert settings.get_rpc_url("BASE") == "http://base.local"

    def test_blank_api_keys_are_unset(self):
        settings = Settings(_env_file=None, etherscan_api_key="  ", coingecko_api_key="")
        assert settings.etherscan_api_key is None
        assert settings.coingecko_api_key is None
