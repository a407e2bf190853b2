"""
Monitoring loops — one long-lived task per market.

PoolMonitor (stable pool):
1. Read block, reserves, LP supply and swap quotes concurrently
2. Resolve the reference TWAP (local price buffer is fed first)
3. Append the sample and advance the RiskDetector on the reserve ratio
4. On transitions: write a risk-window version, store a snapshot, emit a webhook

LendingMonitor (lending collateral):
1. Resolve the collateral price and its deviation from 1.0
2. Advance the LiquidationCorrelator on the deviation
3. While a window is open, pull LiquidationCall logs and record each one

Storage failures after a transition are retried, then logged. The detector's
in-memory state is never rolled back.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .chain import ChainReader, LendingMarketReader
from .detector import DepegEnd, DepegStart, DetectorEvent, LiquidationCorrelator, RiskDetector
from .errors import NoOracleAvailableError
from .models import (
    BPS_BASE,
    LiquidationEvent,
    LiquidationRecord,
    RiskState,
    RiskType,
    RiskWindow,
    Sample,
    Snapshot,
    SnapshotLabel,
    make_risk_id,
)
from .oracle import PriceOracle
from .retry import with_retry
from .snapshots import LocalSnapshotStore
from .store import EventStore
from .webhooks import WebhookEmitter

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass
class ActiveWindow:
    risk_id: str
    window_start: int
    version: int
    severity_bps: int

    def ratchet(self, severity_bps: Optional[int]) -> int:
        if severity_bps is not None:
            self.severity_bps = max(self.severity_bps, severity_bps)
        return self.severity_bps


def ratio_bps(reserve_base: float, reserve_quote: float) -> int:
    total = reserve_base + reserve_quote
    if total == 0:
        return 0
    return round(reserve_base / total * BPS_BASE)


def loss_bps(amount_in: float, amount_out: float) -> int:
    """Relative shortfall of a swap, floored at zero."""
    if amount_in == 0:
        return 0
    return max(round((amount_in - amount_out) / amount_in * BPS_BASE), 0)


class _MarketLoop:
    """Shared persistence and scheduling for both monitors."""

    def __init__(
        self,
        store: EventStore,
        snapshots: LocalSnapshotStore,
        webhooks: WebhookEmitter,
        pool_id: str,
        chain_id: int,
        poll_interval_seconds: float,
        attestor: str,
        clock: Callable[[], float],
        persist_retries: int,
        retry_delay_seconds: float,
    ) -> None:
        self.store = store
        self.snapshots = snapshots
        self.webhooks = webhooks
        self.pool_id = pool_id
        self.chain_id = chain_id
        self.poll_interval_seconds = poll_interval_seconds
        self.attestor = attestor
        self.clock = clock
        self.persist_retries = persist_retries
        self.retry_delay_seconds = retry_delay_seconds

        self.window: Optional[ActiveWindow] = None
        self.last_timestamp: Optional[int] = None
        self._stop = asyncio.Event()
        self._stats: dict[str, int] = {"ticks": 0, "skipped": 0, "errors": 0, "windows": 0}

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    async def tick(self) -> Any:
        raise NotImplementedError

    async def run(self) -> None:
        """Tick until ``stop()``; a tick in flight is allowed to finish."""
        logger.info(
            "Starting monitor",
            extra={"pool_id": self.pool_id, "poll_interval": self.poll_interval_seconds},
        )
        self._stop.clear()
        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Monitor tick failed: {e}", exc_info=True, extra={"pool_id": self.pool_id})
                self._stats["errors"] += 1

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Monitor stopped", extra={"pool_id": self.pool_id})

    def stop(self) -> None:
        self._stop.set()

    def _accept(self, timestamp: int) -> bool:
        if self.last_timestamp is not None and timestamp <= self.last_timestamp:
            logger.debug(
                f"Dropping non-monotonic sample at {timestamp} (last {self.last_timestamp})",
                extra={"pool_id": self.pool_id},
            )
            self._stats["skipped"] += 1
            return False
        self.last_timestamp = timestamp
        return True

    async def _persist(self, what: str, fn: Callable[[], Awaitable[Any]]) -> Optional[Any]:
        try:
            return await with_retry(
                fn,
                max_retries=self.persist_retries,
                initial_delay=self.retry_delay_seconds,
                context={"pool_id": self.pool_id, "write": what},
            )
        except Exception as e:
            logger.error(f"Giving up on {what}: {e!r}", extra={"pool_id": self.pool_id})
            self._stats["errors"] += 1
            return None

    def _risk_row(
        self,
        window: ActiveWindow,
        risk_type: RiskType,
        state: RiskState,
        twap_bps: int,
        reference_ratio_bps: int,
        window_end: Optional[int] = None,
    ) -> RiskWindow:
        return RiskWindow(
            risk_id=window.risk_id,
            pool_id=self.pool_id,
            chain_id=self.chain_id,
            risk_type=risk_type,
            state=state,
            window_start=window.window_start,
            window_end=window_end,
            severity_bps=window.severity_bps,
            twap_bps=twap_bps,
            reference_ratio_bps=reference_ratio_bps,
            version=window.version,
            attested_at=int(self.clock()),
            attestor=self.attestor,
        )

    async def _write_window(self, row: RiskWindow) -> None:
        await self._persist(f"risk window v{row.version}", lambda: self.store.append_risk_window(row))

    async def _record_snapshot(
        self, risk_id: str, label: SnapshotLabel, document: dict[str, Any], note: str
    ) -> str:
        content_id = await self._persist(
            f"{label.value} snapshot", lambda: asyncio.to_thread(self.snapshots.put, document)
        )
        if content_id is None:
            return ""

        snapshot = Snapshot(
            snapshot_id=uuid.uuid4().hex,
            risk_id=risk_id,
            pool_id=self.pool_id,
            content_id=content_id,
            label=label,
            note=note,
            uploaded_at=int(self.clock()),
        )
        await self._persist(f"{label.value} snapshot row", lambda: self.store.append_snapshot(snapshot))
        return content_id


class PoolMonitor(_MarketLoop):
    """Reserve-ratio depeg monitor for one two-asset pool."""

    def __init__(
        self,
        reader: ChainReader,
        oracle: PriceOracle,
        store: EventStore,
        snapshots: LocalSnapshotStore,
        webhooks: WebhookEmitter,
        detector: RiskDetector,
        pool_id: str,
        chain_id: int,
        quote_amount: int = 100_000,
        poll_interval_seconds: float = 10.0,
        attestor: str = ZERO_ADDRESS,
        clock: Callable[[], float] = time.time,
        persist_retries: int = 3,
        retry_delay_seconds: float = 1.0,
    ) -> None:
        super().__init__(
            store, snapshots, webhooks, pool_id, chain_id,
            poll_interval_seconds, attestor, clock, persist_retries, retry_delay_seconds,
        )
        self.reader = reader
        self.oracle = oracle
        self.detector = detector
        self.quote_amount = quote_amount

    async def take_sample(self) -> Sample:
        block, (base_token, quote_token) = await asyncio.gather(
            self.reader.get_block("latest"), self.reader.get_coin_addresses()
        )
        base_decimals, quote_decimals = await asyncio.gather(
            self.reader.get_token_decimals(base_token),
            self.reader.get_token_decimals(quote_token),
        )

        quote_in = self.quote_amount * 10**quote_decimals
        (raw_base, raw_quote), raw_supply, price_out, loss_out = await asyncio.gather(
            self.reader.get_balances(block.number),
            self.reader.get_total_supply(block.number),
            self.reader.quote_swap(0, 1, 10**base_decimals, block.number),
            self.reader.quote_swap(1, 0, quote_in, block.number),
        )

        reserve_base = raw_base / 10**base_decimals
        reserve_quote = raw_quote / 10**quote_decimals
        price = price_out / 10**quote_decimals if price_out is not None else None
        severity = (
            loss_bps(float(self.quote_amount), loss_out / 10**base_decimals)
            if loss_out is not None
            else None
        )

        local = self.oracle.local_source()
        if local is not None and price is not None:
            local.record(block.timestamp, price)
        reading = await self.oracle.get_twap(block.timestamp)

        return Sample(
            pool_id=self.pool_id,
            timestamp=block.timestamp,
            block_number=block.number,
            reserve_base=reserve_base,
            reserve_quote=reserve_quote,
            total_supply=raw_supply / 10**base_decimals,
            price=price,
            ratio_bps=ratio_bps(reserve_base, reserve_quote),
            severity_bps=severity,
            twap_bps=reading.price_bps,
        )

    async def tick(self) -> Optional[DetectorEvent]:
        self._stats["ticks"] += 1
        try:
            sample = await self.take_sample()
        except NoOracleAvailableError as e:
            logger.warning(f"Skipping tick: {e}", extra={"pool_id": self.pool_id})
            self._stats["skipped"] += 1
            return None
        return await self.process_sample(sample)

    async def process_sample(self, sample: Sample) -> Optional[DetectorEvent]:
        if not self._accept(sample.timestamp):
            return None

        await self._persist("sample", lambda: self.store.append_sample(sample))
        event = self.detector.observe(sample.timestamp, sample.ratio_bps)

        if isinstance(event, DepegStart):
            await self._open(event, sample)
        elif isinstance(event, DepegEnd):
            await self._close(event, sample)
        elif self.window is not None:
            self.window.ratchet(sample.severity_bps)
            self.window.version += 1
            await self._write_window(
                self._risk_row(self.window, RiskType.DEPEG_LP, RiskState.OPEN, sample.twap_bps, sample.ratio_bps)
            )
        return event

    def _snapshot_document(self, timestamp: int, sample: Sample) -> dict[str, Any]:
        return {
            "timestamp": timestamp,
            "block_number": sample.block_number,
            "pool_id": self.pool_id,
            "chain_id": self.chain_id,
            "reserves": {
                "base": sample.reserve_base,
                "quote": sample.reserve_quote,
                "total_supply": sample.total_supply,
            },
            "price": sample.price,
            "ratio_bps": sample.ratio_bps,
            "severity_bps": sample.severity_bps,
            "twap_bps": sample.twap_bps,
        }

    async def _open(self, event: DepegStart, sample: Sample) -> None:
        risk_id = make_risk_id(self.pool_id, event.start)
        self.window = ActiveWindow(
            risk_id=risk_id,
            window_start=event.start,
            version=1,
            severity_bps=sample.severity_bps or 0,
        )
        self._stats["windows"] += 1
        logger.info(
            f"Depeg window opened: {risk_id}",
            extra={"ratio_bps": sample.ratio_bps, "block": sample.block_number},
        )

        await self._write_window(
            self._risk_row(self.window, RiskType.DEPEG_LP, RiskState.OPEN, sample.twap_bps, sample.ratio_bps)
        )
        content_id = await self._record_snapshot(
            risk_id,
            SnapshotLabel.DEPEG_START,
            self._snapshot_document(event.start, sample),
            f"Depeg window opened at block {sample.block_number}",
        )
        await self.webhooks.emit(
            "DEPEG_START",
            {
                "type": "DEPEG_START",
                "riskId": risk_id,
                "timestamp": event.start,
                "twapE18": sample.twap_bps * BPS_BASE,
                "snapshotCid": content_id,
                "signature": None,
            },
        )

    async def _close(self, event: DepegEnd, sample: Sample) -> None:
        window = self.window
        if window is None:
            # Restarted mid-window: the detector knows the start, nothing else.
            window = ActiveWindow(
                risk_id=make_risk_id(self.pool_id, event.start),
                window_start=event.start,
                version=1,
                severity_bps=0,
            )
        window.ratchet(sample.severity_bps)
        window.version += 1
        self.window = None
        logger.info(
            f"Depeg window closed: {window.risk_id}",
            extra={"duration": event.end - window.window_start, "severity_bps": window.severity_bps},
        )

        await self._write_window(
            self._risk_row(
                window, RiskType.DEPEG_LP, RiskState.RESOLVED, sample.twap_bps, sample.ratio_bps, event.end
            )
        )
        content_id = await self._record_snapshot(
            window.risk_id,
            SnapshotLabel.DEPEG_END,
            self._snapshot_document(event.end, sample),
            f"Depeg window closed at block {sample.block_number}",
        )
        await self.webhooks.emit(
            "DEPEG_END",
            {
                "type": "DEPEG_END",
                "riskId": window.risk_id,
                "timestamp": event.end,
                "twapE18": sample.twap_bps * BPS_BASE,
                "snapshotCid": content_id,
                "signature": None,
            },
        )


def deviation_bps(price: float) -> int:
    return round(abs(price - 1.0) * BPS_BASE)


class LendingMonitor(_MarketLoop):
    """Collateral depeg monitor that ties liquidations to the open window."""

    def __init__(
        self,
        oracle: PriceOracle,
        liquidations: LendingMarketReader,
        store: EventStore,
        snapshots: LocalSnapshotStore,
        webhooks: WebhookEmitter,
        correlator: LiquidationCorrelator,
        pool_id: str,
        chain_id: int,
        collateral_asset: str,
        poll_interval_seconds: float = 10.0,
        attestor: str = ZERO_ADDRESS,
        clock: Callable[[], float] = time.time,
        persist_retries: int = 3,
        retry_delay_seconds: float = 1.0,
    ) -> None:
        super().__init__(
            store, snapshots, webhooks, pool_id, chain_id,
            poll_interval_seconds, attestor, clock, persist_retries, retry_delay_seconds,
        )
        self.oracle = oracle
        self.liquidations = liquidations
        self.correlator = correlator
        self.collateral_asset = collateral_asset
        self.last_price = 1.0

    async def tick(self) -> Optional[DetectorEvent]:
        self._stats["ticks"] += 1
        now = int(self.clock())
        try:
            reading = await self.oracle.get_twap(now)
        except NoOracleAvailableError as e:
            logger.warning(f"Skipping tick: {e}", extra={"pool_id": self.pool_id})
            self._stats["skipped"] += 1
            return None
        return await self.process_price(now, reading.price)

    async def process_price(self, timestamp: int, price: float) -> Optional[DetectorEvent]:
        if not self._accept(timestamp):
            return None

        self.last_price = price
        deviation = deviation_bps(price)
        sample = Sample(
            pool_id=self.pool_id,
            timestamp=timestamp,
            block_number=0,
            reserve_base=0.0,
            reserve_quote=0.0,
            total_supply=0.0,
            price=price,
            ratio_bps=BPS_BASE,
            severity_bps=deviation,
            twap_bps=round(price * BPS_BASE),
        )
        await self._persist("sample", lambda: self.store.append_sample(sample))

        event = self.correlator.observe(timestamp, deviation)
        if isinstance(event, DepegStart):
            await self._open(event, sample)
        elif isinstance(event, DepegEnd):
            await self._close(event, sample)
        elif self.window is not None and deviation > self.window.severity_bps:
            self.window.ratchet(deviation)
            self.window.version += 1
            await self._write_window(
                self._risk_row(self.window, RiskType.LENDING_DLP, RiskState.OPEN, sample.twap_bps, BPS_BASE)
            )

        if self.correlator.active:
            await self.collect_liquidations()
        return event

    def _snapshot_document(self, timestamp: int, block_number: int, price: float) -> dict[str, Any]:
        return {
            "timestamp": timestamp,
            "block_number": block_number,
            "pool_id": self.pool_id,
            "chain_id": self.chain_id,
            "collateral_asset": self.collateral_asset,
            "price": price,
            "deviation_bps": deviation_bps(price),
        }

    async def _open(self, event: DepegStart, sample: Sample) -> None:
        risk_id = make_risk_id(self.pool_id, event.start)
        self.window = ActiveWindow(
            risk_id=risk_id, window_start=event.start, version=1, severity_bps=event.value
        )
        # Look back from the current head for this window only.
        self.liquidations.last_processed_block = None
        self._stats["windows"] += 1
        logger.info(
            f"Collateral depeg window opened: {risk_id}",
            extra={"price": sample.price, "deviation_bps": event.value},
        )

        await self._write_window(
            self._risk_row(self.window, RiskType.LENDING_DLP, RiskState.OPEN, sample.twap_bps, BPS_BASE)
        )
        content_id = await self._record_snapshot(
            risk_id,
            SnapshotLabel.DEPEG_START,
            self._snapshot_document(event.start, 0, sample.price),
            f"Collateral deviation {event.value} bps",
        )
        await self.webhooks.emit(
            "DEPEG_START",
            {
                "type": "DEPEG_START",
                "riskId": risk_id,
                "poolId": self.pool_id,
                "chainId": self.chain_id,
                "timestamp": event.start,
                "collateralAsset": self.collateral_asset,
                "price": sample.price,
                "deviationBps": event.value,
                "snapshotCid": content_id,
            },
        )

    async def _close(self, event: DepegEnd, sample: Sample) -> None:
        window = self.window or ActiveWindow(
            risk_id=make_risk_id(self.pool_id, event.start),
            window_start=event.start,
            version=1,
            severity_bps=0,
        )
        window.version += 1
        self.window = None
        liquidation_count = len(self.correlator.liquidations)
        logger.info(
            f"Collateral depeg window closed: {window.risk_id}",
            extra={
                "duration": event.end - window.window_start,
                "liquidations": liquidation_count,
                "severity_bps": window.severity_bps,
            },
        )

        await self._write_window(
            self._risk_row(
                window, RiskType.LENDING_DLP, RiskState.RESOLVED, sample.twap_bps, BPS_BASE, event.end
            )
        )
        content_id = await self._record_snapshot(
            window.risk_id,
            SnapshotLabel.DEPEG_END,
            self._snapshot_document(event.end, 0, sample.price),
            f"Collateral recovered after {liquidation_count} liquidations",
        )
        await self.webhooks.emit(
            "DEPEG_END",
            {
                "type": "DEPEG_END",
                "riskId": window.risk_id,
                "poolId": self.pool_id,
                "chainId": self.chain_id,
                "timestamp": event.end,
                "liquidationCount": liquidation_count,
                "snapshotCid": content_id,
            },
        )

    async def collect_liquidations(self) -> list[LiquidationRecord]:
        """Record liquidations seen since the last poll inside the open window."""
        window = self.window
        if window is None:
            return []

        events = await self.liquidations.poll_liquidations(self.collateral_asset)
        in_window = [e for e in events if e.timestamp >= window.window_start]
        records = []
        for correlated in self.correlator.correlate(in_window):
            records.append(await self._record_liquidation(window, correlated.liquidation))

        if records:
            logger.info(
                f"{len(records)} liquidations during {window.risk_id}",
                extra={"pool_id": self.pool_id},
            )
        return records

    async def _record_liquidation(self, window: ActiveWindow, liquidation: LiquidationEvent) -> LiquidationRecord:
        record = LiquidationRecord(
            liquidation_id=liquidation.liquidation_id,
            risk_id=window.risk_id,
            pool_id=self.pool_id,
            event=liquidation,
            recorded_at=int(self.clock()),
        )
        await self._persist("liquidation", lambda: self.store.append_liquidation(record))

        content_id = await self._record_snapshot(
            window.risk_id,
            SnapshotLabel.DEPEG_LIQ,
            {
                **self._snapshot_document(liquidation.timestamp, liquidation.block_number, self.last_price),
                "liquidation_id": liquidation.liquidation_id,
                "transaction_hash": liquidation.transaction_hash,
            },
            f"Liquidation for user {liquidation.user} at block {liquidation.block_number}",
        )
        await self.webhooks.emit(
            "DEPEG_LIQ",
            {
                "type": "DEPEG_LIQ",
                "riskId": window.risk_id,
                "poolId": self.pool_id,
                "chainId": self.chain_id,
                "timestamp": liquidation.timestamp,
                "liquidationId": liquidation.liquidation_id,
                "user": liquidation.user,
                "collateralAsset": liquidation.collateral_asset,
                "liquidatedAmount": str(liquidation.liquidated_collateral_amount),
                "debtCovered": str(liquidation.debt_to_cover),
                "price": self.last_price,
                "deviationBps": window.severity_bps,
                "txHash": liquidation.transaction_hash,
                "snapshotCid": content_id,
            },
        )
        return record
