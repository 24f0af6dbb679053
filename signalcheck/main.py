"""signalcheck — application entry point.

Boots the FastAPI read-only API and provides the CLI entry point for
one-shot and serve modes.
"""

import logging

from fastapi import FastAPI

from signalcheck.api.routers import router

app = FastAPI(title="signalcheck API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("signalcheck")


@app.get("/health")
async def health():
    """Liveness check."""
    return {"status": "ok"}


def build_service(config):
    """Wire client, cache and service from *config*."""
    from signalcheck.cache.incremental import IncrementalCache
    from signalcheck.cache.store import SqliteCacheStore
    from signalcheck.exchange.binance_client import BinanceClient
    from signalcheck.service import AnalyticsService

    client = BinanceClient(config)
    cache = IncrementalCache(SqliteCacheStore(config.cache_db_path))
    return AnalyticsService(config, client, cache)


def build_scheduler(config, service, notifier):
    """Register one refresh job per analytics operation."""
    from signalcheck.scheduler import RefreshScheduler

    scheduler = RefreshScheduler()
    interval = config.poll_interval_seconds

    async def _breakouts():
        result = await service.fetch_breakouts()
        notifier.diff(result)

    scheduler.add_job("rsi", interval, service.fetch_multiple_rsi)
    scheduler.add_job("oversold", interval, service.fetch_oversold_history)
    scheduler.add_job("breakouts", interval, _breakouts)
    return scheduler


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments and dispatch to the appropriate mode."""
    import argparse
    import asyncio
    import json

    from signalcheck.api.routers import configure_routers
    from signalcheck.config import load_config
    from signalcheck.notify import SignalNotifier

    parser = argparse.ArgumentParser(description="signalcheck crypto analytics")
    parser.add_argument(
        "--mode",
        choices=["once", "serve"],
        default="serve",
        help="once: refresh everything and print JSON; serve: API + scheduler (default)",
    )
    parser.add_argument("--env", help="Path to a .env file")
    parser.add_argument(
        "--refresh",
        action="store_true",
        help="Bypass the candle-cadence cache check (once mode)",
    )
    args = parser.parse_args()

    config = load_config(args.env)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    service = build_service(config)

    if args.mode == "once":
        output = asyncio.run(service.refresh_all(refresh=args.refresh))
        print(json.dumps(output, indent=2))
        return

    notifier = SignalNotifier(utc_offset_hours=config.session_utc_offset_hours)
    scheduler = build_scheduler(config, service, notifier)
    configure_routers(service, scheduler)
    asyncio.run(_serve(scheduler, config.api_port))


async def _serve(scheduler, port: int = 8080) -> None:
    """Start the API server and the refresh scheduler concurrently."""
    import asyncio

    import uvicorn

    uvi_config = uvicorn.Config(
        app,
        host="0.0.0.0",
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(uvi_config)

    async def _run_server():
        try:
            await server.serve()
        finally:
            scheduler.stop()

    logger.info("API available at http://localhost:%d", port)
    results = await asyncio.gather(
        _run_server(),
        scheduler.run(),
        return_exceptions=True,
    )
    logger.info("signalcheck stopped. Results: %s", results)


if __name__ == "__main__":
    _run_cli()
