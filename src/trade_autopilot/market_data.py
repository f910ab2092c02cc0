"""Watchlist-backed market data using **yfinance** daily candles.

Quotes are cached for a short TTL so one scan cycle never downloads the
same ticker twice.
"""

from __future__ import annotations

import threading
import time
import warnings

import yfinance as yf
from loguru import logger

from .errors import DataUnavailable
from .gateways import PriceSnapshot
from .settings import settings

warnings.filterwarnings("ignore", category=FutureWarning, module="yfinance")


class YFinanceMarketData:
    def __init__(self, watchlist: list[str] | None = None, *, cache_ttl_seconds: float = 60.0) -> None:
        symbols = watchlist if watchlist is not None else settings.watchlist_csv.split(",")
        self.watchlist = [s.strip().upper() for s in symbols if s.strip()]
        self.cache_ttl_seconds = cache_ttl_seconds
        self._cache: dict[str, tuple[float, PriceSnapshot]] = {}
        self._lock = threading.Lock()

    def get_candidates(self, limit: int) -> list[str]:
        return self.watchlist[:limit]

    def get_quote(self, symbol: str) -> PriceSnapshot:
        with self._lock:
            cached = self._cache.get(symbol)
        if cached and time.monotonic() - cached[0] < self.cache_ttl_seconds:
            return cached[1]

        try:
            hist = yf.Ticker(symbol).history(period="5d", interval="1d")
        except Exception as exc:
            raise DataUnavailable(f"{symbol}: quote download failed: {exc}") from exc

        if hist is None or hist.empty:
            raise DataUnavailable(f"{symbol}: no price history returned")

        closes = [float(v) for v in hist["Close"].values]
        price = closes[-1]
        previous = closes[-2] if len(closes) > 1 else price
        change = (price - previous) / previous * 100 if previous else 0.0
        snapshot = PriceSnapshot(
            symbol=symbol,
            price=price,
            change_percent=change,
            volume=float(hist["Volume"].values[-1]),
        )
        with self._lock:
            self._cache[symbol] = (time.monotonic(), snapshot)
        logger.debug("Quote {} {:.2f} ({:+.2f}%)", symbol, price, change)
        return snapshot
