"""Main entry point for the DeFi Portfolio Aggregator.

This module wires and runs the application components:
- Portfolio engine (RPC clients, explorer, price source, resolvers)
- HTTP API for balances, positions and combined reports
- Prometheus metrics endpoint

Usage:
    python -m defi_portfolio.main
"""

import asyncio
import logging
import signal
from typing import List

import aiohttp
from aiohttp import web

from defi_portfolio.config import get_settings
from defi_portfolio.core.engine import PortfolioEngine
from defi_portfolio.errors import InvalidWalletAddress, UnsupportedChainOrProtocol
from defi_portfolio.services.metrics import RequestTimer, get_content_type, get_metrics

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=logging.INFO,
)
logger = logging.getLogger(__name__)

ENGINE_KEY = web.AppKey("engine", PortfolioEngine)


def parse_list(value: str | None) -> List[str] | None:
    """Comma-separated query parameter; empty means no filter."""
    if not value:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


def bad_request(error: Exception) -> web.Response:
    return web.json_response({"error": str(error)}, status=400)


async def tokens_handler(request: web.Request) -> web.Response:
    """Valued token balances for a wallet."""
    engine = request.app[ENGINE_KEY]
    with RequestTimer("tokens"):
        try:
            report = await engine.get_balances(
                request.query.get("wallet", ""),
                chains=parse_list(request.query.get("chains")),
            )
        except (InvalidWalletAddress, UnsupportedChainOrProtocol) as e:
            return bad_request(e)
    return web.json_response(report.to_dict())


async def positions_handler(request: web.Request) -> web.Response:
    """Protocol positions for a wallet."""
    engine = request.app[ENGINE_KEY]
    with RequestTimer("positions"):
        try:
            report = await engine.get_positions(
                request.query.get("wallet", ""),
                chains=parse_list(request.query.get("chains")),
                protocols=parse_list(request.query.get("protocols")),
            )
        except (InvalidWalletAddress, UnsupportedChainOrProtocol) as e:
            return bad_request(e)
    return web.json_response(report.to_dict())


async def report_handler(request: web.Request) -> web.Response:
    """Balances and positions in one response."""
    engine = request.app[ENGINE_KEY]
    with RequestTimer("report"):
        try:
            report = await engine.get_report(
                request.query.get("wallet", ""),
                chains=parse_list(request.query.get("chains")),
                protocols=parse_list(request.query.get("protocols")),
            )
        except (InvalidWalletAddress, UnsupportedChainOrProtocol) as e:
            return bad_request(e)
    return web.json_response(report.to_dict())


async def metrics_handler(_request: web.Request) -> web.Response:
    """Prometheus metrics endpoint."""
    # Prometheus' content type carries a charset, which content_type= rejects
    return web.Response(
        body=get_metrics(),
        headers={"Content-Type": get_content_type()},
    )


async def health_handler(request: web.Request) -> web.Response:
    """Health check endpoint."""
    engine = request.app[ENGINE_KEY]
    return web.json_response({"status": "healthy", **engine.get_stats()})


def create_app(engine: PortfolioEngine) -> web.Application:
    app = web.Application()
    app[ENGINE_KEY] = engine
    app.router.add_get("/tokens", tokens_handler)
    app.router.add_get("/positions", positions_handler)
    app.router.add_get("/report", report_handler)
    app.router.add_get("/metrics", metrics_handler)
    app.router.add_get("/health", health_handler)
    return app


async def run_http_server(engine: PortfolioEngine, host: str = "0.0.0.0", port: int = 8080):
    """Run the API HTTP server."""
    runner = web.AppRunner(create_app(engine))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"API server running on http://{host}:{port}")
    return runner


async def main():
    logger.info("Starting DeFi Portfolio Aggregator...")
    settings = get_settings()

    session = aiohttp.ClientSession()
    engine = PortfolioEngine.create(settings, session)

    # Chain ID mismatches are logged, not fatal
    networks = await engine.verify_networks()
    for chain, ok in networks.items():
        if not ok:
            logger.warning(f"Network check failed for {chain}")

    runner = await run_http_server(engine, host=settings.http_host, port=settings.http_port)

    # Periodic sweep of expired cache entries
    cleanup_task = asyncio.create_task(
        engine.run_cache_cleanup(settings.cache_cleanup_interval_seconds)
    )

    # Setup graceful shutdown
    loop = asyncio.get_event_loop()
    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    logger.info("Ready. Press Ctrl+C to stop.")
    await shutdown_event.wait()

    logger.info("Shutting down...")
    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass

    await runner.cleanup()
    await engine.close()
    await session.close()
    logger.info("Shutdown complete")


def main_sync():
    asyncio.run(main())


if __name__ == "__main__":
    main_sync()
