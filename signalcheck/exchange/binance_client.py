"""Binance public REST API async client.

Handles all communication with the exchange: kline (candle) fetching and
ticker prices.  Both endpoints are read-only and unauthenticated.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import httpx

from signalcheck.config import Config
from signalcheck.errors import FatalAccessError, MarketDataError, TransientNetworkError
from signalcheck.exchange.models import Candle, to_millis

logger = logging.getLogger("signalcheck.exchange")

_DEFAULT_RETRY_AFTER = 60.0  # seconds, when 429 carries no Retry-After
_TRANSPORT_RETRY_DELAY = 2.0  # seconds
_MAX_KLINE_LIMIT = 1000
_PAGE_DELAY_SECONDS = 0.1
_MAX_PAGES = 10


def normalize_symbol(symbol: str) -> str:
    """``"BTC/USDT"`` → ``"BTCUSDT"``."""
    return symbol.replace("/", "").upper()


def _retry_after_seconds(resp: httpx.Response) -> float:
    raw = resp.headers.get("Retry-After")
    if not raw:
        return _DEFAULT_RETRY_AFTER
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return _DEFAULT_RETRY_AFTER


class BinanceClient:
    """Async client wrapping the Binance spot market-data endpoints.

    Args:
        config: Application configuration (only ``binance_base_url`` is read).
        sleep: Awaitable sleep used for rate-limit waits; injectable for tests.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        config: Config,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = config.binance_base_url
        self._sleep = sleep
        self._timeout = timeout

    # ── Request helper ───────────────────────────────────────────────────

    async def _get(self, path: str, params: dict) -> httpx.Response:
        """Execute a GET with the exchange's failure policy.

        429 waits for the server's ``Retry-After`` hint (60 s by default) and
        retries exactly once.  Transport errors retry once after a short
        delay.  418 is fatal.  Any other non-2xx raises ``MarketDataError``.
        """
        url = f"{self._base_url}{path}"
        rate_limited = False
        transport_failed = False

        while True:
            try:
                async with httpx.AsyncClient() as client:
                    resp = await client.get(url, params=params, timeout=self._timeout)
            except httpx.TransportError as exc:
                if transport_failed:
                    raise TransientNetworkError(
                        f"Binance GET {path} failed after retry: {exc}"
                    ) from exc
                transport_failed = True
                logger.warning(
                    "Binance GET %s transport error (%s), retrying in %.1fs",
                    path, exc, _TRANSPORT_RETRY_DELAY,
                )
                await self._sleep(_TRANSPORT_RETRY_DELAY)
                continue

            if resp.status_code == 429:
                if rate_limited:
                    raise TransientNetworkError(
                        f"Binance API rate limit persisted after retry ({path})",
                        status_code=429,
                    )
                rate_limited = True
                wait = _retry_after_seconds(resp)
                logger.warning(
                    "[Rate Limit] Binance API rate limit exceeded. Waiting %.0fs before retry...",
                    wait,
                )
                await self._sleep(wait)
                continue

            if resp.status_code == 418:
                raise FatalAccessError(
                    "Binance API: IP banned (418). Please wait before retrying.",
                    status_code=418,
                )

            if not resp.is_success:
                raise MarketDataError(
                    f"Binance API error: {resp.status_code} {resp.reason_phrase}",
                    status_code=resp.status_code,
                )
            return resp

    # ── Candle data ──────────────────────────────────────────────────────

    async def get_candles(
        self,
        symbol: str,
        interval: str,
        limit: int = 168,
        end_time: Optional[datetime] = None,
    ) -> list[Candle]:
        """Fetch klines for *symbol*.

        Args:
            symbol: e.g. ``"BTC/USDT"`` or ``"BTCUSDT"``.
            interval: e.g. ``"1h"``, ``"4h"``, ``"5m"``.
            limit: number of candles to request (max 1000).
            end_time: only candles opening at or before this time.

        Returns:
            List of ``Candle`` objects sorted ascending by close time.
        """
        params: dict = {
            "symbol": normalize_symbol(symbol),
            "interval": interval,
            "limit": min(int(limit), _MAX_KLINE_LIMIT),
        }
        if end_time is not None:
            params["endTime"] = to_millis(end_time)

        resp = await self._get("/api/v3/klines", params)

        candles = [Candle.from_kline(k) for k in resp.json()]
        # The exchange may hand back newest-first; callers rely on ascending.
        candles.sort(key=lambda c: c.close_time)
        if candles:
            logger.debug(
                "[%s] %d %s candles, most recent close %s",
                symbol, len(candles), interval, candles[-1].close_time.isoformat(),
            )
        return candles

    async def get_candles_since(
        self,
        symbol: str,
        interval: str,
        start_time: datetime,
        max_candles: int = 288,
    ) -> list[Candle]:
        """Fetch candles closing at or after *start_time*, oldest first.

        Pages backwards from the most recent candle with ``endTime`` until
        *start_time* is covered, then keeps the first *max_candles*.
        """
        collected: dict[datetime, Candle] = {}
        end_time: Optional[datetime] = None

        for _ in range(_MAX_PAGES):
            batch_limit = min(_MAX_KLINE_LIMIT, max_candles + 100)
            batch = await self.get_candles(symbol, interval, batch_limit, end_time)
            if not batch:
                break

            for candle in batch:
                if candle.close_time >= start_time:
                    collected[candle.open_time] = candle

            oldest = batch[0]
            if len(batch) < batch_limit or oldest.close_time < start_time:
                break

            end_time = oldest.open_time - timedelta(milliseconds=1)
            await self._sleep(_PAGE_DELAY_SECONDS)

        candles = sorted(collected.values(), key=lambda c: c.close_time)
        return candles[:max_candles]

    # ── Prices ───────────────────────────────────────────────────────────

    async def get_price(self, symbol: str) -> float:
        """Return the latest traded price for *symbol*."""
        resp = await self._get(
            "/api/v3/ticker/price", {"symbol": normalize_symbol(symbol)}
        )
        return float(resp.json()["price"])
