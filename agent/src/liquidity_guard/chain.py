"""
Chain reader — typed, read-only access to a stable pool via Web3.

Pools in the wild expose the same primitive (balances, coin addresses, swap
quotes) under different signatures. Each signature is a ``CallVariant``; the
reader walks an ordered list of variants (or ``BalanceStrategy`` objects) and
stops at the first one that answers. Individual failures come back as a
``ReadResult`` and never escape; only exhausting every option raises.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Protocol, Sequence

from eth_abi import decode as abi_decode
from eth_utils import keccak
from web3 import Web3

from .errors import ChainReadError, ConfigurationError
from .models import LiquidationEvent

logger = logging.getLogger(__name__)

BlockRef = int | str


@dataclass(frozen=True)
class CallVariant:
    """One ABI signature, e.g. ``CallVariant("balances(int128)")``."""

    signature: str
    output_types: tuple[str, ...] = ("uint256",)

    @property
    def name(self) -> str:
        return self.signature[: self.signature.index("(")]

    @property
    def input_types(self) -> list[str]:
        args = self.signature[self.signature.index("(") + 1 : -1]
        return [t.strip() for t in args.split(",") if t.strip()]

    @property
    def abi(self) -> list[dict[str, Any]]:
        """Minimal single-function ABI, so overloaded names never collide."""
        return [
            {
                "type": "function",
                "name": self.name,
                "stateMutability": "view",
                "inputs": [{"name": f"arg{i}", "type": t} for i, t in enumerate(self.input_types)],
                "outputs": [{"name": "", "type": t} for t in self.output_types],
            }
        ]


@dataclass(frozen=True)
class ReadResult:
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any) -> "ReadResult":
        return cls(value=value)

    @classmethod
    def failure(cls, error: str) -> "ReadResult":
        return cls(error=error)


@dataclass(frozen=True)
class BlockInfo:
    number: int
    timestamp: int


# ── Signature catalogs (ordered by preference) ─────────────────────────────────

BALANCE_VARIANTS = (
    CallVariant("balances(uint256)"),
    CallVariant("balances(int128)"),
    CallVariant("underlying_balances(uint256)"),
    CallVariant("underlying_balances(int128)"),
)

COIN_VARIANTS = (
    CallVariant("coins(uint256)", ("address",)),
    CallVariant("coins(int128)", ("address",)),
    CallVariant("underlying_coins(uint256)", ("address",)),
    CallVariant("underlying_coins(int128)", ("address",)),
)

QUOTE_VARIANTS = (
    CallVariant("get_dy(int128,int128,uint256)"),
    CallVariant("get_dy(int256,int256,uint256)"),
    CallVariant("get_dy_underlying(int128,int128,uint256)"),
)

N_COINS = CallVariant("N_COINS()")
TOTAL_SUPPLY = CallVariant("totalSupply()")
ERC20_DECIMALS = CallVariant("decimals()", ("uint8",))
ERC20_BALANCE_OF = CallVariant("balanceOf(address)")


# ── Balance strategies ─────────────────────────────────────────────────────────

class BalanceStrategy(Protocol):
    name: str

    async def fetch(self, reader: "ChainReader", block: BlockRef) -> ReadResult:
        ...


class PoolBalancesStrategy:
    """Read both reserves straight from the pool."""

    def __init__(self, variant: CallVariant) -> None:
        self.variant = variant
        self.name = f"pool:{variant.signature}"

    async def fetch(self, reader: "ChainReader", block: BlockRef) -> ReadResult:
        base, quote = await asyncio.gather(
            reader.try_call(reader.pool_address, self.variant, (0,), block),
            reader.try_call(reader.pool_address, self.variant, (1,), block),
        )
        if not base.ok:
            return base
        if not quote.ok:
            return quote
        return ReadResult.success((base.value, quote.value))


class TokenBalanceOfStrategy:
    """Ask each constituent token for the pool's balance."""

    name = "erc20:balanceOf"

    async def fetch(self, reader: "ChainReader", block: BlockRef) -> ReadResult:
        try:
            base_token, quote_token = await reader.get_coin_addresses()
        except ConfigurationError as e:
            return ReadResult.failure(str(e))

        base, quote = await asyncio.gather(
            reader.try_call(base_token, ERC20_BALANCE_OF, (reader.pool_address,), block),
            reader.try_call(quote_token, ERC20_BALANCE_OF, (reader.pool_address,), block),
        )
        if not base.ok:
            return base
        if not quote.ok:
            return quote
        return ReadResult.success((base.value, quote.value))


def default_balance_strategies() -> list[BalanceStrategy]:
    strategies: list[BalanceStrategy] = [PoolBalancesStrategy(v) for v in BALANCE_VARIANTS]
    strategies.append(TokenBalanceOfStrategy())
    return strategies


# ── Reader ─────────────────────────────────────────────────────────────────────

class ChainReader:
    """Read access to one pool. Every RPC is bounded by ``timeout``."""

    def __init__(
        self,
        w3: Any,
        pool_address: str,
        fallback_coins: Iterable[str] = (),
        default_decimals: int = 18,
        timeout: float = 10.0,
        balance_strategies: Optional[Sequence[BalanceStrategy]] = None,
        quote_variants: Sequence[CallVariant] = QUOTE_VARIANTS,
    ) -> None:
        if not Web3.is_address(pool_address):
            raise ConfigurationError(f"invalid contract address {pool_address!r}")
        self.w3 = w3
        self.pool_address = Web3.to_checksum_address(pool_address)
        self.fallback_coins = [
            Web3.to_checksum_address(addr) for addr in fallback_coins if Web3.is_address(addr)
        ]
        self.default_decimals = default_decimals
        self.timeout = timeout
        self.balance_strategies = list(balance_strategies or default_balance_strategies())
        self.quote_variants = list(quote_variants)

        self._coins: Optional[tuple[str, str]] = None
        self._decimals: dict[str, int] = {}

    async def _rpc(self, awaitable: Any) -> Any:
        return await asyncio.wait_for(awaitable, timeout=self.timeout)

    async def call(
        self,
        to: str,
        variant: CallVariant,
        args: Sequence[Any] = (),
        block: BlockRef = "latest",
    ) -> tuple:
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(to), abi=variant.abi)
        fn = getattr(contract.functions, variant.name)(*args)
        result = await self._rpc(fn.call(block_identifier=block))
        if len(variant.output_types) == 1:
            return (result,)
        return tuple(result)

    async def try_call(
        self,
        to: str,
        variant: CallVariant,
        args: Sequence[Any] = (),
        block: BlockRef = "latest",
    ) -> ReadResult:
        try:
            decoded = await self.call(to, variant, args, block)
        except Exception as e:
            logger.debug(f"{variant.signature} on {to} failed: {e!r}")
            return ReadResult.failure(f"{variant.signature}: {e!r}")
        return ReadResult.success(decoded[0] if len(decoded) == 1 else decoded)

    async def first_success(
        self,
        to: str,
        variants: Sequence[CallVariant],
        args: Sequence[Any] = (),
        block: BlockRef = "latest",
    ) -> ReadResult:
        errors = []
        for variant in variants:
            result = await self.try_call(to, variant, args, block)
            if result.ok:
                return result
            errors.append(result.error)
        return ReadResult.failure("; ".join(errors))

    async def get_block(self, block: BlockRef = "latest") -> BlockInfo:
        try:
            data = await self._rpc(self.w3.eth.get_block(block))
        except Exception as e:
            raise ChainReadError(f"get_block({block}) failed: {e!r}") from e
        return BlockInfo(number=int(data["number"]), timestamp=int(data["timestamp"]))

    async def get_balances(self, block: BlockRef = "latest") -> tuple[int, int]:
        """Raw (base, quote) reserves from the first strategy that answers."""
        errors = []
        for strategy in self.balance_strategies:
            result = await strategy.fetch(self, block)
            if result.ok:
                return result.value
            errors.append(f"{strategy.name}: {result.error}")
        raise ChainReadError(f"all balance accessors failed at {block}: {errors}")

    async def _coin_count(self) -> int:
        result = await self.try_call(self.pool_address, N_COINS)
        if result.ok:
            return int(result.value)
        return 2

    async def get_coin_addresses(self) -> tuple[str, str]:
        if self._coins is not None:
            return self._coins

        count = min(await self._coin_count(), 2)
        coins: list[str] = []
        for index in range(count):
            result = await self.first_success(self.pool_address, COIN_VARIANTS, (index,))
            if result.ok:
                coins.append(Web3.to_checksum_address(result.value))
            elif index < len(self.fallback_coins):
                coins.append(self.fallback_coins[index])
            else:
                break

        if len(coins) < 2:
            if len(self.fallback_coins) < 2:
                raise ConfigurationError(
                    f"unable to resolve coin addresses for pool {self.pool_address}; "
                    "configure COIN_ADDRESSES"
                )
            logger.warning("Using configured coin addresses", extra={"pool": self.pool_address})
            coins = self.fallback_coins[:2]

        self._coins = (coins[0], coins[1])
        return self._coins

    async def get_token_decimals(self, token: str) -> int:
        """Best effort; falls back to ``default_decimals``."""
        if token in self._decimals:
            return self._decimals[token]

        result = await self.try_call(token, ERC20_DECIMALS)
        if not result.ok:
            logger.warning(
                f"decimals() unavailable for {token}, assuming {self.default_decimals}"
            )
            return self.default_decimals

        self._decimals[token] = int(result.value)
        return self._decimals[token]

    async def quote_swap(
        self,
        in_index: int,
        out_index: int,
        amount_in: int,
        block: BlockRef = "latest",
    ) -> Optional[int]:
        """Simulated swap output, or None when no quote signature answers."""
        result = await self.first_success(
            self.pool_address, self.quote_variants, (in_index, out_index, amount_in), block
        )
        if not result.ok:
            logger.debug(f"No swap quote for {in_index}->{out_index}: {result.error}")
            return None
        return int(result.value)

    async def get_total_supply(self, block: BlockRef = "latest") -> int:
        result = await self.try_call(self.pool_address, TOTAL_SUPPLY, (), block)
        if not result.ok:
            raise ChainReadError(f"totalSupply() failed: {result.error}")
        return int(result.value)


# ── Lending market logs ────────────────────────────────────────────────────────

LIQUIDATION_CALL_SIGNATURE = "LiquidationCall(address,address,address,uint256,uint256,address,bool)"
LIQUIDATION_CALL_TOPIC = "0x" + keccak(text=LIQUIDATION_CALL_SIGNATURE).hex()
INITIAL_LOOKBACK_BLOCKS = 100


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, str):
        return bytes.fromhex(value.removeprefix("0x"))
    return bytes(value)


def _address_topic(address: str) -> str:
    return "0x" + "00" * 12 + address.lower().removeprefix("0x")


def _topic_address(topic: Any) -> str:
    return Web3.to_checksum_address("0x" + _as_bytes(topic)[-20:].hex())


@dataclass
class LendingMarketReader:
    """Streams LiquidationCall events for one collateral asset."""

    reader: ChainReader
    lending_pool_address: str
    last_processed_block: Optional[int] = None
    _block_times: dict[int, int] = field(default_factory=dict)

    async def _block_timestamp(self, number: int) -> int:
        if number not in self._block_times:
            self._block_times[number] = (await self.reader.get_block(number)).timestamp
        return self._block_times[number]

    async def fetch_liquidations(
        self, collateral_asset: str, from_block: int, to_block: int
    ) -> list[LiquidationEvent]:
        params = {
            "address": Web3.to_checksum_address(self.lending_pool_address),
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [LIQUIDATION_CALL_TOPIC, _address_topic(collateral_asset)],
        }
        try:
            logs = await self.reader._rpc(self.reader.w3.eth.get_logs(params))
        except Exception as e:
            raise ChainReadError(f"eth_getLogs {from_block}-{to_block} failed: {e!r}") from e

        events = []
        for log in logs:
            topics = log["topics"]
            debt_to_cover, collateral_amount, liquidator, _receive_a_token = abi_decode(
                ["uint256", "uint256", "address", "bool"], _as_bytes(log["data"])
            )
            block_number = int(log["blockNumber"])
            events.append(
                LiquidationEvent(
                    block_number=block_number,
                    transaction_hash="0x" + _as_bytes(log["transactionHash"]).hex(),
                    log_index=int(log.get("logIndex", 0)),
                    timestamp=await self._block_timestamp(block_number),
                    collateral_asset=_topic_address(topics[1]),
                    debt_asset=_topic_address(topics[2]),
                    user=_topic_address(topics[3]),
                    liquidated_collateral_amount=int(collateral_amount),
                    debt_to_cover=int(debt_to_cover),
                    liquidator=Web3.to_checksum_address(liquidator),
                )
            )

        logger.info(
            f"Fetched {len(events)} liquidations",
            extra={"collateral": collateral_asset, "from": from_block, "to": to_block},
        )
        return events

    async def poll_liquidations(self, collateral_asset: str) -> list[LiquidationEvent]:
        """New liquidations since the last poll (first poll looks back 100 blocks)."""
        latest = (await self.reader.get_block("latest")).number
        if self.last_processed_block is None:
            self.last_processed_block = max(latest - INITIAL_LOOKBACK_BLOCKS, 0)

        from_block = self.last_processed_block + 1
        if from_block > latest:
            return []

        events = await self.fetch_liquidations(collateral_asset, from_block, latest)
        self.last_processed_block = latest
        return events
