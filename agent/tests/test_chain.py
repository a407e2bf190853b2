import pytest
from conftest import BASE_TOKEN, LENDING_POOL, POOL, QUOTE_TOKEN, install_pool
from eth_abi import encode as abi_encode
from web3 import Web3

from liquidity_guard.chain import (
    LIQUIDATION_CALL_TOPIC,
    CallVariant,
    ChainReader,
    LendingMarketReader,
)
from liquidity_guard.errors import ChainReadError, ConfigurationError


@pytest.mark.asyncio
async def test_balances_prefer_first_variant(fake_w3):
    fake_w3.eth.register(POOL, "balances(uint256)", lambda i: [10, 20][i])
    fake_w3.eth.register(POOL, "balances(int128)", lambda i: [1, 2][i])
    reader = ChainReader(fake_w3, POOL)

    assert await reader.get_balances() == (10, 20)


@pytest.mark.asyncio
async def test_balances_fall_through_to_int128(fake_w3):
    install_pool(fake_w3.eth, base_reserve=7, quote_reserve=9)
    reader = ChainReader(fake_w3, POOL)

    assert await reader.get_balances(42) == (7, 9)


@pytest.mark.asyncio
async def test_balances_fall_back_to_token_balance_of(fake_w3):
    fake_w3.eth.register(POOL, "coins(uint256)", lambda i: [BASE_TOKEN, QUOTE_TOKEN][i])
    fake_w3.eth.register(BASE_TOKEN, "balanceOf(address)", lambda owner: 111)
    fake_w3.eth.register(QUOTE_TOKEN, "balanceOf(address)", lambda owner: 222)
    reader = ChainReader(fake_w3, POOL)

    assert await reader.get_balances() == (111, 222)


@pytest.mark.asyncio
async def test_balances_raise_when_every_strategy_fails(fake_w3):
    reader = ChainReader(fake_w3, POOL, fallback_coins=[BASE_TOKEN, QUOTE_TOKEN])

    with pytest.raises(ChainReadError):
        await reader.get_balances()


@pytest.mark.asyncio
async def test_quote_swap_returns_none_without_a_quote_signature(fake_w3):
    reader = ChainReader(fake_w3, POOL)

    assert await reader.quote_swap(0, 1, 10**18) is None


@pytest.mark.asyncio
async def test_quote_swap_uses_int256_variant(fake_w3):
    fake_w3.eth.register(POOL, "get_dy(int256,int256,uint256)", lambda i, j, dx: dx - 1)
    reader = ChainReader(fake_w3, POOL)

    assert await reader.quote_swap(0, 1, 1000) == 999


@pytest.mark.asyncio
async def test_coin_addresses_use_configured_fallback(fake_w3):
    reader = ChainReader(fake_w3, POOL, fallback_coins=[BASE_TOKEN, QUOTE_TOKEN])

    coins = await reader.get_coin_addresses()

    assert coins == (Web3.to_checksum_address(BASE_TOKEN), Web3.to_checksum_address(QUOTE_TOKEN))


@pytest.mark.asyncio
async def test_coin_addresses_without_fallback_is_a_configuration_error(fake_w3):
    reader = ChainReader(fake_w3, POOL)

    with pytest.raises(ConfigurationError):
        await reader.get_coin_addresses()


@pytest.mark.asyncio
async def test_coin_addresses_read_n_coins_first(fake_w3):
    install_pool(fake_w3.eth)
    fake_w3.eth.register(POOL, "N_COINS()", lambda: 2)
    reader = ChainReader(fake_w3, POOL)

    await reader.get_coin_addresses()

    assert fake_w3.eth.calls[0] == (POOL.lower(), "N_COINS()")


@pytest.mark.asyncio
async def test_single_coin_pool_falls_back_to_configured_pair(fake_w3):
    install_pool(fake_w3.eth)
    fake_w3.eth.register(POOL, "N_COINS()", lambda: 1)
    other = "0x" + "99" * 20
    reader = ChainReader(fake_w3, POOL, fallback_coins=[other, QUOTE_TOKEN])

    assert await reader.get_coin_addresses() == (
        Web3.to_checksum_address(other),
        Web3.to_checksum_address(QUOTE_TOKEN),
    )


@pytest.mark.parametrize("address", ["", "0x1234", "not-an-address"])
def test_reader_rejects_invalid_contract_address(fake_w3, address):
    with pytest.raises(ConfigurationError):
        ChainReader(fake_w3, address)


def test_call_variant_abi_has_one_function():
    [entry] = CallVariant("get_dy(int128,int128,uint256)").abi

    assert entry["name"] == "get_dy"
    assert [i["type"] for i in entry["inputs"]] == ["int128", "int128", "uint256"]
    assert [o["type"] for o in entry["outputs"]] == ["uint256"]


@pytest.mark.asyncio
async def test_decimals_default_and_cache(fake_w3):
    fake_w3.eth.register(BASE_TOKEN, "decimals()", lambda: 6)
    reader = ChainReader(fake_w3, POOL, default_decimals=18)

    assert await reader.get_token_decimals(BASE_TOKEN) == 6
    assert await reader.get_token_decimals(QUOTE_TOKEN) == 18

    fake_w3.eth.handlers.clear()
    assert await reader.get_token_decimals(BASE_TOKEN) == 6


@pytest.mark.asyncio
async def test_total_supply_failure_raises(fake_w3):
    reader = ChainReader(fake_w3, POOL)

    with pytest.raises(ChainReadError):
        await reader.get_total_supply()


def _topic(address: str) -> bytes:
    return bytes(12) + bytes.fromhex(address[2:])


def _liquidation_log(block: int, tx_byte: str, user: str) -> dict:
    return {
        "blockNumber": block,
        "transactionHash": bytes.fromhex(tx_byte * 32),
        "logIndex": 3,
        "topics": [
            bytes.fromhex(LIQUIDATION_CALL_TOPIC[2:]),
            _topic(BASE_TOKEN),
            _topic(QUOTE_TOKEN),
            _topic(user),
        ],
        "data": abi_encode(
            ["uint256", "uint256", "address", "bool"],
            [4 * 10**18, 5 * 10**18, "0x" + "77" * 20, False],
        ),
    }


@pytest.mark.asyncio
async def test_poll_liquidations_decodes_and_advances(fake_w3):
    user = "0x" + "66" * 20
    fake_w3.eth.latest_block = 500
    fake_w3.eth.block_timestamps[450] = 1_700_000_450
    fake_w3.eth.logs = [_liquidation_log(350, "bb", user), _liquidation_log(450, "aa", user)]
    lending = LendingMarketReader(ChainReader(fake_w3, LENDING_POOL), LENDING_POOL)

    events = await lending.poll_liquidations(BASE_TOKEN)

    query = fake_w3.eth.log_queries[0]
    assert (query["fromBlock"], query["toBlock"]) == (401, 500)
    assert query["topics"][0] == LIQUIDATION_CALL_TOPIC
    assert len(events) == 1

    event = events[0]
    assert event.transaction_hash == "0x" + "aa" * 32
    assert event.timestamp == 1_700_000_450
    assert event.user == Web3.to_checksum_address(user)
    assert event.collateral_asset == Web3.to_checksum_address(BASE_TOKEN)
    assert event.debt_asset == Web3.to_checksum_address(QUOTE_TOKEN)
    assert event.debt_to_cover == 4 * 10**18
    assert event.liquidated_collateral_amount == 5 * 10**18
    assert event.liquidation_id == f"{event.transaction_hash}-{event.user}"

    assert await lending.poll_liquidations(BASE_TOKEN) == []
    assert lending.last_processed_block == 500


@pytest.mark.asyncio
async def test_poll_liquidations_keeps_cursor_on_failure(fake_w3):
    async def broken_get_logs(params):
        raise TimeoutError("rpc down")

    fake_w3.eth.latest_block = 500
    fake_w3.eth.get_logs = broken_get_logs
    lending = LendingMarketReader(ChainReader(fake_w3, LENDING_POOL), LENDING_POOL, last_processed_block=480)

    with pytest.raises(ChainReadError):
        await lending.poll_liquidations(BASE_TOKEN)
    assert lending.last_processed_block == 480
