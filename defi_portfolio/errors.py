"""Error taxonomy shared by every upstream client, resolver and the engine.

Upstream failures derive from UpstreamError and are retried by the fetch
wrapper. Decode failures and configuration absence are local to the object or
feature that hit them and never abort a whole request.
"""


class PortfolioError(Exception):
    """Base exception for the aggregation engine."""


class UpstreamError(PortfolioError):
    """An upstream source (RPC, explorer, price feed) failed after retries."""


class TransportError(UpstreamError):
    """Network or RPC transport failure (unreachable, timeout, 5xx)."""


class UpstreamRateLimited(UpstreamError):
    """Upstream answered with HTTP 429 or an equivalent rate-limit message."""


class UpstreamResponseError(UpstreamError):
    """Upstream answered, but with an application-level error payload."""


class BatchTransportError(TransportError):
    """The batching contract call itself failed; every call in the batch failed."""


class DecodeError(PortfolioError):
    """On-chain return data did not match the expected ABI types."""


class UnsupportedChainOrProtocol(PortfolioError):
    """Chain key or chain ID is not configured."""


class UnsupportedProtocolOnChain(UnsupportedChainOrProtocol):
    """Protocol has no deployment configured on the requested chain."""

    def __init__(self, protocol: str, chain: str):
        super().__init__(f"{protocol} is not supported on {chain}")
        self.protocol = protocol
        self.chain = chain


class ConfigurationMissing(PortfolioError):
    """A credential needed by one feature is absent."""


class InvalidWalletAddress(PortfolioError):
    """Wallet address failed validation; the request is rejected up front."""
