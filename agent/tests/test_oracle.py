import httpx
import pytest
from conftest import POOL, T0, install_pool

from liquidity_guard.chain import ChainReader
from liquidity_guard.errors import NoOracleAvailableError, StaleDataError
from liquidity_guard.oracle import (
    ChainlinkFeedSource,
    LocalMovingAverageSource,
    PriceOracle,
    PythHermesSource,
    UniswapV3TickSource,
    build_price_oracle,
    tick_to_price,
)

UNI_POOL = "0x" + "88" * 20
AGGREGATOR = "0x" + "99" * 20
FEED_ID = "0x" + "ab" * 32


def hermes_client(publish_time: int, price: int = 99_990_000, expo: int = -8) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v2/updates/price/latest"
        assert request.url.params["ids[]"] == FEED_ID
        return httpx.Response(
            200,
            json={
                "parsed": [
                    {
                        "id": FEED_ID[2:],
                        "price": {"price": str(price), "conf": "100", "expo": expo, "publish_time": publish_time},
                    }
                ]
            },
        )

    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://hermes.test")


@pytest.mark.asyncio
async def test_uniswap_tick_average(fake_w3):
    horizon = 1800
    fake_w3.eth.register(
        UNI_POOL,
        "observe(uint32[])",
        lambda seconds_ago: ([0, 10 * horizon], [0, 0]),
    )
    source = UniswapV3TickSource(ChainReader(fake_w3, POOL), UNI_POOL, horizon)

    reading = await source.fetch(T0)

    assert reading.price == pytest.approx(tick_to_price(10))
    assert reading.source == "uni_v3_observe"
    assert (reading.window_start, reading.window_end) == (T0 - horizon, T0)


@pytest.mark.asyncio
async def test_chainlink_scales_by_feed_decimals(fake_w3):
    fake_w3.eth.register(
        AGGREGATOR,
        "latestRoundData()",
        lambda: (7, 99_950_000, T0 - 30, T0 - 20, 7),
    )
    fake_w3.eth.register(AGGREGATOR, "decimals()", lambda: 8)
    source = ChainlinkFeedSource(ChainReader(fake_w3, POOL), AGGREGATOR, 1800)

    reading = await source.fetch(T0)

    assert reading.price == pytest.approx(0.9995)
    assert reading.price_bps == 9995
    assert reading.window_end == T0 - 20


@pytest.mark.asyncio
async def test_pyth_fresh_and_stale():
    async with hermes_client(publish_time=T0 - 10) as client:
        reading = await PythHermesSource(client, FEED_ID, 60, "https://hermes.test").fetch(T0)
    assert reading.price == pytest.approx(0.9999)
    assert reading.source == "pyth_hermes"

    async with hermes_client(publish_time=T0 - 600) as client:
        with pytest.raises(StaleDataError):
            await PythHermesSource(client, FEED_ID, 60, "https://hermes.test").fetch(T0)


@pytest.mark.asyncio
async def test_local_average_uses_buffer_inside_horizon(fake_w3):
    source = LocalMovingAverageSource(ChainReader(fake_w3, POOL), horizon_seconds=600, capacity=3)
    source.record(T0 - 5000, 0.5)
    source.record(T0 - 120, 0.99)
    source.record(T0 - 60, 0.97)
    source.record(T0, 0.98)

    reading = await source.fetch(T0)

    assert len(source.buffer) == 3
    assert reading.price == pytest.approx(0.98)
    assert reading.source == "local_moving_avg"


@pytest.mark.asyncio
async def test_local_average_samples_blocks_when_buffer_empty(fake_w3):
    install_pool(fake_w3.eth, price_num=997)
    fake_w3.eth.latest_block = 1_000
    source = LocalMovingAverageSource(ChainReader(fake_w3, POOL), horizon_seconds=1800)

    reading = await source.fetch(T0)

    assert reading.price == pytest.approx(0.997)
    assert reading.source == "local_moving_avg:blocks"
    quotes = [c for c in fake_w3.eth.calls if c[1].startswith("get_dy")]
    assert len(quotes) == source.sample_count() == 30


@pytest.mark.asyncio
async def test_fallback_order_reaches_fourth_source(fake_w3):
    # a: no observe() on the pool, b: non-positive answer, c: stale update, d: local buffer
    fake_w3.eth.register(
        AGGREGATOR,
        "latestRoundData()",
        lambda: (1, 0, T0, T0, 1),
    )
    reader = ChainReader(fake_w3, POOL)
    local = LocalMovingAverageSource(reader, horizon_seconds=1800)
    local.record(T0, 0.995)

    async with hermes_client(publish_time=T0 - 3600) as client:
        oracle = PriceOracle(
            [
                UniswapV3TickSource(reader, UNI_POOL, 1800),
                ChainlinkFeedSource(reader, AGGREGATOR, 1800),
                PythHermesSource(client, FEED_ID, 60, "https://hermes.test"),
                local,
            ]
        )
        reading = await oracle.get_twap(T0)

    assert reading.source == "local_moving_avg"
    assert reading.price == pytest.approx(0.995)


@pytest.mark.asyncio
async def test_all_sources_failing_raises(fake_w3):
    reader = ChainReader(fake_w3, POOL)

    async with hermes_client(publish_time=T0 - 3600) as client:
        oracle = PriceOracle(
            [
                UniswapV3TickSource(reader, UNI_POOL, 1800),
                ChainlinkFeedSource(reader, AGGREGATOR, 1800),
                PythHermesSource(client, FEED_ID, 60, "https://hermes.test"),
                LocalMovingAverageSource(reader, horizon_seconds=1800),
            ]
        )
        with pytest.raises(NoOracleAvailableError):
            await oracle.get_twap(T0)


def test_builder_only_includes_configured_sources(fake_w3):
    reader = ChainReader(fake_w3, POOL)
    client = httpx.AsyncClient()

    oracle = build_price_oracle(reader, client, 1800, chainlink_aggregator=AGGREGATOR)
    assert [s.tag for s in oracle.sources] == ["chainlink_latest", "local_moving_avg"]
    assert oracle.local_source() is oracle.sources[-1]

    lending = build_price_oracle(reader, client, 1800, pyth_price_feed_id=FEED_ID, local_capacity=None)
    assert [s.tag for s in lending.sources] == ["pyth_hermes"]
    assert lending.local_source() is None
