from typing import Any, Callable

import pytest

from liquidity_guard.models import LiquidationEvent

POOL = "0x" + "11" * 20
BASE_TOKEN = "0x" + "22" * 20
QUOTE_TOKEN = "0x" + "33" * 20
LENDING_POOL = "0x" + "44" * 20
VERIFIER = "0x" + "55" * 20

# anvil account #0
SIGNER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
SIGNER_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

T0 = 1_700_000_000


class FakeEth:
    """Answers contract reads by (address, signature) from Python handlers."""

    def __init__(self) -> None:
        self.handlers: dict[tuple[str, str], Callable[..., Any]] = {}
        self.latest_block = 100
        self.block_timestamps: dict[int, int] = {}
        self.logs: list[dict[str, Any]] = []
        self.log_queries: list[dict[str, Any]] = []
        self.calls: list[tuple[str, str]] = []

    def register(self, address: str, signature: str, handler: Callable[..., Any]) -> None:
        self.handlers[(address.lower(), signature)] = handler

    def contract(self, address: str, abi: list[dict[str, Any]]) -> "FakeContract":
        return FakeContract(self, address, abi)

    async def get_block(self, block_identifier: Any) -> dict[str, int]:
        number = self.latest_block if block_identifier == "latest" else int(block_identifier)
        return {"number": number, "timestamp": self.block_timestamps.get(number, T0 + number * 12)}

    async def get_logs(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        self.log_queries.append(params)
        return [
            log for log in self.logs
            if params["fromBlock"] <= log["blockNumber"] <= params["toBlock"]
        ]


class FakeContractCall:
    def __init__(self, eth: FakeEth, address: str, signature: str, args: tuple) -> None:
        self.eth = eth
        self.address = address
        self.signature = signature
        self.args = args

    async def call(self, block_identifier: Any = "latest") -> Any:
        key = (self.address.lower(), self.signature)
        if key not in self.eth.handlers:
            raise ValueError("execution reverted")
        self.eth.calls.append(key)
        return self.eth.handlers[key](*self.args)


class FakeContractFunctions:
    def __init__(self, eth: FakeEth, address: str, abi: list[dict[str, Any]]) -> None:
        self._eth = eth
        self._address = address
        self._signatures = {
            entry["name"]: f"{entry['name']}({','.join(i['type'] for i in entry['inputs'])})"
            for entry in abi
        }

    def __getattr__(self, name: str) -> Callable[..., FakeContractCall]:
        if name.startswith("_") or name not in self._signatures:
            raise AttributeError(name)
        signature = self._signatures[name]
        return lambda *args: FakeContractCall(self._eth, self._address, signature, args)


class FakeContract:
    def __init__(self, eth: FakeEth, address: str, abi: list[dict[str, Any]]) -> None:
        self.address = address
        self.functions = FakeContractFunctions(eth, address, abi)


class FakeWeb3:
    def __init__(self) -> None:
        self.eth = FakeEth()


def install_pool(
    eth: FakeEth,
    base_reserve: int = 600 * 10**18,
    quote_reserve: int = 400 * 10**18,
    price_num: int = 998,
    loss_num: int = 990,
    decimals: int = 18,
) -> None:
    """A Curve-style pool: int128 indices, ``get_dy`` quoting ``num / 1000`` of input."""
    reserves = {0: base_reserve, 1: quote_reserve}
    coins = {0: BASE_TOKEN, 1: QUOTE_TOKEN}

    eth.register(POOL, "balances(int128)", lambda i: reserves[i])
    eth.register(POOL, "coins(int128)", lambda i: coins[i])
    eth.register(POOL, "totalSupply()", lambda: 1_000 * 10**18)
    eth.register(
        POOL,
        "get_dy(int128,int128,uint256)",
        lambda i, j, dx: dx * price_num // 1000 if i == 0 else dx * loss_num // 1000,
    )
    eth.register(BASE_TOKEN, "decimals()", lambda: decimals)
    eth.register(QUOTE_TOKEN, "decimals()", lambda: decimals)


def make_liquidation(tx_byte: str = "aa", user: str = "0x" + "66" * 20, timestamp: int = T0, block: int = 90) -> LiquidationEvent:
    return LiquidationEvent(
        block_number=block,
        transaction_hash="0x" + tx_byte * 32,
        timestamp=timestamp,
        user=user,
        collateral_asset=BASE_TOKEN,
        debt_asset=QUOTE_TOKEN,
        liquidated_collateral_amount=5 * 10**18,
        debt_to_cover=4 * 10**18,
        liquidator="0x" + "77" * 20,
    )


@pytest.fixture()
def fake_w3() -> FakeWeb3:
    return FakeWeb3()
