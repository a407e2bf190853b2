"""
Price oracle — resolves a reference price / TWAP from independent sources.

Sources (in priority order):
1. Uniswap V3 observe() — tick cumulatives over the horizon, price = 1.0001^tick
2. Chainlink aggregator — latestRoundData()
3. Pyth Hermes — latest signed update, rejected when older than max_age
4. Local moving average — the monitored pool's own implied price

Each source either returns a PriceReading or raises. The oracle logs the
failure and falls through to the next one; it never retries inside a single
resolution.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

import httpx
import numpy as np
import structlog

from .chain import ChainReader, CallVariant
from .errors import ChainReadError, NoOracleAvailableError, StaleDataError

logger = structlog.get_logger(__name__)

TICK_BASE = 1.0001
CHAINLINK_DEFAULT_DECIMALS = 8

UNI_V3_OBSERVE = CallVariant("observe(uint32[])", ("int56[]", "uint160[]"))
CHAINLINK_LATEST_ROUND = CallVariant(
    "latestRoundData()", ("uint80", "int256", "uint256", "uint256", "uint80")
)
CHAINLINK_DECIMALS = CallVariant("decimals()", ("uint8",))


@dataclass(frozen=True)
class PriceReading:
    price: float
    source: str
    window_start: int
    window_end: int

    @property
    def price_bps(self) -> int:
        return round(self.price * 10_000)


class PriceSource(Protocol):
    tag: str

    async def fetch(self, now: int) -> PriceReading:
        ...


def tick_to_price(tick: float) -> float:
    return TICK_BASE ** tick


class UniswapV3TickSource:
    tag = "uni_v3_observe"

    def __init__(self, reader: ChainReader, pool_address: str, horizon_seconds: int) -> None:
        self.reader = reader
        self.pool_address = pool_address
        self.horizon_seconds = horizon_seconds

    async def fetch(self, now: int) -> PriceReading:
        tick_cumulatives, _ = await self.reader.call(
            self.pool_address, UNI_V3_OBSERVE, ([self.horizon_seconds, 0],)
        )
        avg_tick = (tick_cumulatives[1] - tick_cumulatives[0]) / self.horizon_seconds
        return PriceReading(
            price=tick_to_price(avg_tick),
            source=self.tag,
            window_start=now - self.horizon_seconds,
            window_end=now,
        )


class ChainlinkFeedSource:
    tag = "chainlink_latest"

    def __init__(self, reader: ChainReader, aggregator_address: str, horizon_seconds: int) -> None:
        self.reader = reader
        self.aggregator_address = aggregator_address
        self.horizon_seconds = horizon_seconds
        self._decimals: Optional[int] = None

    async def _feed_decimals(self) -> int:
        if self._decimals is None:
            result = await self.reader.try_call(self.aggregator_address, CHAINLINK_DECIMALS)
            self._decimals = int(result.value) if result.ok else CHAINLINK_DEFAULT_DECIMALS
        return self._decimals

    async def fetch(self, now: int) -> PriceReading:
        _, answer, _, updated_at, _ = await self.reader.call(
            self.aggregator_address, CHAINLINK_LATEST_ROUND
        )
        if answer <= 0:
            raise ValueError(f"non-positive answer {answer}")
        decimals = await self._feed_decimals()
        return PriceReading(
            price=answer / 10**decimals,
            source=self.tag,
            window_start=int(updated_at) - self.horizon_seconds,
            window_end=int(updated_at),
        )


class PythHermesSource:
    tag = "pyth_hermes"

    def __init__(
        self,
        client: httpx.AsyncClient,
        price_feed_id: str,
        max_age_seconds: int = 60,
        hermes_url: str = "https://hermes.pyth.network",
    ) -> None:
        self.client = client
        self.price_feed_id = price_feed_id
        self.max_age_seconds = max_age_seconds
        self.hermes_url = hermes_url.rstrip("/")

    async def fetch(self, now: int) -> PriceReading:
        resp = await self.client.get(
            f"{self.hermes_url}/v2/updates/price/latest",
            params={"ids[]": self.price_feed_id, "parsed": "true"},
        )
        resp.raise_for_status()
        parsed = resp.json().get("parsed") or []
        if not parsed or "price" not in parsed[0]:
            raise ValueError(f"no parsed price for feed {self.price_feed_id}")

        feed = parsed[0]["price"]
        publish_time = int(feed["publish_time"])
        age = now - publish_time
        if age > self.max_age_seconds:
            raise StaleDataError(f"pyth update is {age}s old (max {self.max_age_seconds}s)")

        price = int(feed["price"]) * 10 ** int(feed["expo"])
        return PriceReading(
            price=float(price),
            source=self.tag,
            window_start=publish_time,
            window_end=publish_time,
        )


class LocalMovingAverageSource:
    """Average of the pool's own implied price.

    Uses the ring buffer of recorded prices inside the horizon; when it is
    empty, samples the pool at evenly spaced recent blocks instead.
    """

    tag = "local_moving_avg"

    def __init__(
        self,
        reader: ChainReader,
        horizon_seconds: int,
        capacity: int = 1080,
        block_time_seconds: int = 12,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.reader = reader
        self.horizon_seconds = horizon_seconds
        self.block_time_seconds = block_time_seconds
        # Oldest entries are evicted once capacity is reached.
        self.buffer: deque[tuple[int, float]] = deque(maxlen=capacity)

    def record(self, timestamp: int, price: float) -> None:
        self.buffer.append((timestamp, price))

    def sample_count(self) -> int:
        return min(60, max(6, self.horizon_seconds // 60))

    async def implied_price(self, block: int) -> float:
        base_token, quote_token = await self.reader.get_coin_addresses()
        base_decimals = await self.reader.get_token_decimals(base_token)
        quote_decimals = await self.reader.get_token_decimals(quote_token)

        amount_out = await self.reader.quote_swap(0, 1, 10**base_decimals, block)
        if amount_out is not None:
            return amount_out / 10**quote_decimals

        raw_base, raw_quote = await self.reader.get_balances(block)
        if raw_base == 0:
            raise ChainReadError(f"empty base reserve at block {block}")
        return (raw_quote / 10**quote_decimals) / (raw_base / 10**base_decimals)

    async def fetch(self, now: int) -> PriceReading:
        window_start = now - self.horizon_seconds
        recent = [price for ts, price in self.buffer if window_start <= ts <= now]
        if recent:
            return PriceReading(
                price=float(np.mean(recent)),
                source=self.tag,
                window_start=window_start,
                window_end=now,
            )

        latest = await self.reader.get_block("latest")
        count = self.sample_count()
        spacing = max(1, self.horizon_seconds // (self.block_time_seconds * count))
        blocks = [latest.number - i * spacing for i in range(count) if latest.number - i * spacing >= 0]
        prices = [await self.implied_price(block) for block in blocks]
        return PriceReading(
            price=float(np.mean(prices)),
            source=f"{self.tag}:blocks",
            window_start=window_start,
            window_end=now,
        )


class PriceOracle:
    """Ordered fallback over price sources."""

    def __init__(self, sources: Sequence[PriceSource]) -> None:
        self.sources = list(sources)

    async def get_twap(self, now: Optional[int] = None) -> PriceReading:
        now = int(time.time()) if now is None else now
        for source in self.sources:
            try:
                reading = await source.fetch(now)
            except Exception as e:
                logger.warning("price_source_fallthrough", source=source.tag, error=repr(e))
                continue
            logger.debug("price_resolved", source=reading.source, price=reading.price)
            return reading

        raise NoOracleAvailableError(
            f"no price source answered (tried {[s.tag for s in self.sources]})"
        )

    def local_source(self) -> Optional[LocalMovingAverageSource]:
        for source in self.sources:
            if isinstance(source, LocalMovingAverageSource):
                return source
        return None


def build_price_oracle(
    reader: ChainReader,
    http_client: httpx.AsyncClient,
    horizon_seconds: int,
    uniswap_v3_pool: str = "",
    chainlink_aggregator: str = "",
    pyth_price_feed_id: str = "",
    pyth_hermes_url: str = "https://hermes.pyth.network",
    pyth_max_age_seconds: int = 60,
    local_capacity: Optional[int] = 1080,
) -> PriceOracle:
    """Only configured sources are included; pass local_capacity=None to skip the local average."""
    sources: list[PriceSource] = []
    if uniswap_v3_pool:
        sources.append(UniswapV3TickSource(reader, uniswap_v3_pool, horizon_seconds))
    if chainlink_aggregator:
        sources.append(ChainlinkFeedSource(reader, chainlink_aggregator, horizon_seconds))
    if pyth_price_feed_id:
        sources.append(
            PythHermesSource(http_client, pyth_price_feed_id, pyth_max_age_seconds, pyth_hermes_url)
        )
    if local_capacity is not None:
        sources.append(LocalMovingAverageSource(reader, horizon_seconds, capacity=local_capacity))
    return PriceOracle(sources)
