"""Block-explorer API client (Etherscan V2 multichain API).

One API key covers every chain; the chain is selected with the ``chainid``
query parameter. Responses follow the Etherscan envelope
``{"status": "1"|"0", "message": ..., "result": ...}``.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List

import aiohttp
from web3 import AsyncWeb3

from defi_portfolio.errors import (
    ConfigurationMissing,
    DecodeError,
    TransportError,
    UpstreamRateLimited,
    UpstreamResponseError,
)
from defi_portfolio.networks import Chain, is_zero_address

logger = logging.getLogger(__name__)

# status "0" messages that mean "empty", not "failed"
EMPTY_RESULT_MESSAGES = ("no transactions found", "no records found", "no token transfers found")


@dataclass(frozen=True)
class DiscoveredToken:
    """An ERC20 contract seen in the wallet's transfer history."""
    address: str
    symbol: str | None
    name: str | None
    decimals: int


class ExplorerClient:
    """Thin async client over the explorer's account/token endpoints."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        api_key: str | None,
        timeout_seconds: float = 10.0,
    ):
        self._session = session
        self._api_key = api_key
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    @property
    def has_api_key(self) -> bool:
        return bool(self._api_key)

    def supports(self, chain: Chain) -> bool:
        return self.has_api_key and bool(chain.explorer_api_url)

    async def _get(self, chain: Chain, params: Dict[str, Any]) -> Any:
        if not self._api_key:
            raise ConfigurationMissing("Explorer API key not configured")
        if not chain.explorer_api_url:
            raise ConfigurationMissing(f"No explorer API for {chain.key}")

        query = {"chainid": str(chain.chain_id), **params, "apikey": self._api_key}
        action = params.get("action")
        try:
            async with self._session.get(
                chain.explorer_api_url, params=query, timeout=self._timeout
            ) as response:
                if response.status == 429:
                    raise UpstreamRateLimited(f"Explorer rate limited ({chain.key} {action})")
                if response.status >= 500:
                    raise TransportError(f"Explorer HTTP {response.status} ({chain.key} {action})")
                if response.status >= 400:
                    raise UpstreamResponseError(
                        f"Explorer HTTP {response.status} ({chain.key} {action})"
                    )
                payload = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise TransportError(f"Explorer unreachable ({chain.key} {action}): {e}") from e
        except ValueError as e:
            raise UpstreamResponseError(f"Explorer returned invalid JSON ({chain.key} {action})") from e

        if not isinstance(payload, dict):
            raise UpstreamResponseError(f"Unexpected explorer payload ({chain.key} {action})")

        status = str(payload.get("status", ""))
        message = str(payload.get("message", ""))
        result = payload.get("result")
        if status == "1":
            return result

        detail = f"{message}: {result}" if isinstance(result, str) else message
        if "rate limit" in detail.lower():
            raise UpstreamRateLimited(f"Explorer rate limited ({chain.key} {action}): {detail}")
        if message.lower() in EMPTY_RESULT_MESSAGES:
            return []
        raise UpstreamResponseError(f"Explorer error ({chain.key} {action}): {detail}")

    async def token_transfers(self, chain: Chain, wallet_address: str) -> List[DiscoveredToken]:
        """Distinct ERC20 contracts from the wallet's token-transfer history.

        Addresses are de-duplicated case-insensitively; the first transfer
        seen for a contract supplies its symbol, name and decimals.
        """
        records = await self._get(chain, {
            "module": "account",
            "action": "tokentx",
            "address": wallet_address,
            "startblock": "0",
            "endblock": "99999999",
            "sort": "asc",
        })
        if not isinstance(records, list):
            raise UpstreamResponseError(f"Unexpected tokentx result on {chain.key}")

        tokens: Dict[str, DiscoveredToken] = {}
        for record in records:
            address = str(record.get("contractAddress") or "").lower()
            if is_zero_address(address) or address in tokens:
                continue
            if not AsyncWeb3.is_address(address):
                logger.warning(f"Ignoring malformed contract address {address!r} on {chain.key}")
                continue
            try:
                decimals = int(record.get("tokenDecimal") or 0)
            except ValueError:
                logger.warning(f"Ignoring {address} on {chain.key}: bad tokenDecimal")
                continue
            tokens[address] = DiscoveredToken(
                address=AsyncWeb3.to_checksum_address(address),
                symbol=record.get("tokenSymbol") or None,
                name=record.get("tokenName") or None,
                decimals=decimals,
            )
        return list(tokens.values())

    async def token_balance(self, chain: Chain, wallet_address: str, token_address: str) -> int:
        result = await self._get(chain, {
            "module": "account",
            "action": "tokenbalance",
            "address": wallet_address,
            "contractaddress": token_address,
            "tag": "latest",
        })
        return self._parse_amount(result, chain, "tokenbalance")

    async def token_info(self, chain: Chain, token_address: str) -> Dict[str, Any] | None:
        """Descriptive token record, or None when the explorer has none."""
        result = await self._get(chain, {
            "module": "token",
            "action": "tokeninfo",
            "contractaddress": token_address,
        })
        if isinstance(result, list) and result:
            return result[0]
        return None

    @staticmethod
    def _parse_amount(result: Any, chain: Chain, action: str) -> int:
        try:
            return int(result)
        except (TypeError, ValueError) as e:
            raise DecodeError(f"Explorer {action} on {chain.key} returned {result!r}") from e
