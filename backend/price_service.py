"""
Price service: USD price and 24h change per asset symbol.

Quotes are cached per symbol for PRICE_CACHE_TTL_SECONDS. The backing source
is a pluggable fetcher:
- StaticPriceFetcher: fixed table, deterministic (development, tests)
- CoinGeckoPriceFetcher: CoinGecko /simple/price over HTTP

A failed or unknown lookup yields a zero-valued quote instead of an error.
"""

import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

import requests

from locks import KeyedLock

PRICE_SOURCE = os.getenv("PRICE_SOURCE", "static").strip().lower()
PRICE_CACHE_TTL_SECONDS = float(os.getenv("PRICE_CACHE_TTL_SECONDS", "60"))
COINGECKO_API_BASE = "https://api.coingecko.com/api/v3"
COINGECKO_API_KEY = (os.getenv("COINGECKO_API_KEY") or "").strip()

BASE_PRICES_USD = {
    "ETH": 1900.0,
    "WETH": 1900.0,
    "BTC": 38000.0,
    "CBBTC": 38000.0,
    "SOL": 100.0,
    "UNI": 10.0,
    "AAVE": 125.0,
    "USDC": 1.0,
    "USDT": 1.0,
    "DAI": 1.0,
    "MATIC": 0.8,
    "LINK": 15.0,
    "ARB": 1.2,
}

COINGECKO_IDS = {
    "ETH": "ethereum",
    "WETH": "weth",
    "BTC": "bitcoin",
    "CBBTC": "coinbase-wrapped-btc",
    "SOL": "solana",
    "UNI": "uniswap",
    "AAVE": "aave",
    "USDC": "usd-coin",
    "USDT": "tether",
    "DAI": "dai",
    "MATIC": "matic-network",
    "LINK": "chainlink",
    "ARB": "arbitrum",
}


@dataclass
class PriceQuote:
    symbol: str
    price_usd: float
    change_24h: float
    fetched_at: float

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "priceUSD": self.price_usd,
            "change24h": self.change_24h,
            "lastUpdated": self.fetched_at,
        }


class StaticPriceFetcher:
    """Serve prices from a fixed {symbol: (price_usd, change_24h)} table."""

    def __init__(self, prices: Optional[Dict[str, tuple]] = None):
        if prices is None:
            prices = {symbol: (price, 0.0) for symbol, price in BASE_PRICES_USD.items()}
        self.prices = {symbol.upper(): value for symbol, value in prices.items()}

    def set_price(self, symbol: str, price_usd: float, change_24h: float = 0.0):
        self.prices[symbol.upper()] = (price_usd, change_24h)

    def fetch(self, symbol: str) -> Optional[tuple]:
        return self.prices.get(symbol.upper())


class CoinGeckoPriceFetcher:
    """Fetch price and 24h change from CoinGecko."""

    def __init__(self, api_key: str = COINGECKO_API_KEY, timeout: int = 10, ids: Optional[Dict[str, str]] = None):
        self.api_key = api_key
        self.timeout = timeout
        self.ids = ids or COINGECKO_IDS

    def fetch(self, symbol: str) -> Optional[tuple]:
        coin_id = self.ids.get(symbol.upper())
        if not coin_id:
            return None

        headers = {"accept": "application/json"}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key

        response = requests.get(
            f"{COINGECKO_API_BASE}/simple/price",
            params={"ids": coin_id, "vs_currencies": "usd", "include_24hr_change": "true"},
            headers=headers,
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json().get(coin_id)
        if not data or "usd" not in data:
            return None
        return float(data["usd"]), float(data.get("usd_24h_change") or 0.0)


def build_fetcher(source: str = PRICE_SOURCE):
    """Fetcher for the configured PRICE_SOURCE."""
    if source == "coingecko":
        return CoinGeckoPriceFetcher()
    return StaticPriceFetcher()


class PriceService:
    """Per-symbol TTL cache in front of a price fetcher."""

    def __init__(
        self,
        fetcher=None,
        ttl_seconds: float = PRICE_CACHE_TTL_SECONDS,
        use_cache: bool = True,
        clock: Callable[[], float] = time.time,
        max_workers: int = 8,
    ):
        self.fetcher = fetcher or build_fetcher()
        self.ttl_seconds = ttl_seconds
        self.use_cache = use_cache
        self.clock = clock
        self.max_workers = max_workers
        self._cache: Dict[str, PriceQuote] = {}
        self._cache_lock = threading.Lock()
        self._refresh_locks = KeyedLock()

    def _cached(self, symbol: str) -> Optional[PriceQuote]:
        with self._cache_lock:
            quote = self._cache.get(symbol)
        if quote and self.clock() - quote.fetched_at < self.ttl_seconds:
            return quote
        return None

    def get_price(self, symbol: str) -> PriceQuote:
        """Quote for one symbol, from cache while fresh."""
        symbol = symbol.upper()
        if self.use_cache:
            quote = self._cached(symbol)
            if quote:
                return quote

        with self._refresh_locks.hold(symbol):
            # Another caller may have refreshed while we waited
            if self.use_cache:
                quote = self._cached(symbol)
                if quote:
                    return quote

            try:
                data = self.fetcher.fetch(symbol)
            except Exception as e:
                print(f"[Prices] Fetch failed for {symbol}: {e}")
                return PriceQuote(symbol, 0.0, 0.0, self.clock())

            if data is None:
                print(f"[Prices] No price data for {symbol}")
                return PriceQuote(symbol, 0.0, 0.0, self.clock())

            price_usd, change_24h = data
            quote = PriceQuote(symbol, float(price_usd), float(change_24h), self.clock())
            if self.use_cache:
                with self._cache_lock:
                    self._cache[symbol] = quote
            return quote

    def get_batch_prices(self, symbols: Iterable[str]) -> Dict[str, PriceQuote]:
        """Fetch several symbols concurrently; returns only after all complete."""
        unique = list(dict.fromkeys(s.upper() for s in symbols))
        if not unique:
            return {}
        if len(unique) == 1:
            return {unique[0]: self.get_price(unique[0])}

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(unique))) as pool:
            quotes = list(pool.map(self.get_price, unique))
        return dict(zip(unique, quotes))

    def clear_cache(self):
        with self._cache_lock:
            self._cache.clear()

    def cache_stats(self) -> dict:
        with self._cache_lock:
            return {"size": len(self._cache), "entries": list(self._cache.keys())}
