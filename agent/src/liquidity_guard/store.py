"""
Event store — append-only persistence for samples, risk windows, snapshots,
liquidations, claims and per-(policy, risk) nonce counters.

Two back-ends share one contract:
  InMemoryEventStore — process-local, used by tests and demo runs
  SqlEventStore      — SQLAlchemy Core (sqlite by default); blocking calls
                       run in a worker thread
"""

from __future__ import annotations

import asyncio
import json
import threading
from collections import defaultdict
from pathlib import Path
from typing import Optional, Protocol

import numpy as np
from sqlalchemy import (
    BigInteger,
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import make_url

from .models import (
    ClaimRecord,
    LiquidationRecord,
    RiskWindow,
    Sample,
    Snapshot,
    WindowMetrics,
)


class EventStore(Protocol):
    async def append_sample(self, sample: Sample) -> None: ...

    async def append_risk_window(self, window: RiskWindow) -> None: ...

    async def latest_risk_window(self, risk_id: str) -> Optional[RiskWindow]: ...

    async def list_risk_windows(self, pool_id: Optional[str] = None) -> list[RiskWindow]: ...

    async def window_metrics(self, pool_id: str, start: int, end: int) -> WindowMetrics: ...

    async def append_snapshot(self, snapshot: Snapshot) -> None: ...

    async def list_snapshots(self, risk_id: str) -> list[Snapshot]: ...

    async def append_liquidation(self, record: LiquidationRecord) -> None: ...

    async def list_liquidations(self, risk_id: str) -> list[LiquidationRecord]: ...

    async def next_nonce(self, policy_id: str, risk_id: str) -> int: ...

    async def append_claim(self, claim: ClaimRecord) -> None: ...

    async def list_claims(self, policy_id: str, risk_id: str) -> list[ClaimRecord]: ...


# ── In-memory ──────────────────────────────────────────────────────────────────

class InMemoryEventStore:
    def __init__(self) -> None:
        self.samples: list[Sample] = []
        self.risk_rows: list[RiskWindow] = []
        self.snapshots: list[Snapshot] = []
        self.liquidations: list[LiquidationRecord] = []
        self.claims: list[ClaimRecord] = []
        self.nonces: dict[tuple[str, str], int] = {}
        self._nonce_locks: dict[tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    async def append_sample(self, sample: Sample) -> None:
        self.samples.append(sample)

    async def append_risk_window(self, window: RiskWindow) -> None:
        self.risk_rows.append(window)

    async def latest_risk_window(self, risk_id: str) -> Optional[RiskWindow]:
        rows = [row for row in self.risk_rows if row.risk_id == risk_id]
        return max(rows, key=lambda row: row.version) if rows else None

    async def list_risk_windows(self, pool_id: Optional[str] = None) -> list[RiskWindow]:
        latest: dict[str, RiskWindow] = {}
        for row in self.risk_rows:
            if pool_id is not None and row.pool_id != pool_id:
                continue
            current = latest.get(row.risk_id)
            if current is None or row.version > current.version:
                latest[row.risk_id] = row
        return sorted(latest.values(), key=lambda row: row.window_start, reverse=True)

    async def window_metrics(self, pool_id: str, start: int, end: int) -> WindowMetrics:
        rows = [s for s in self.samples if s.pool_id == pool_id and start <= s.timestamp <= end]
        if not rows:
            return WindowMetrics()
        severities = [s.severity_bps for s in rows if s.severity_bps is not None]
        return WindowMetrics(
            min_ratio_bps=min(s.ratio_bps for s in rows),
            max_severity_bps=max(severities) if severities else None,
            avg_twap_bps=float(np.mean([s.twap_bps for s in rows])),
            samples=len(rows),
        )

    async def append_snapshot(self, snapshot: Snapshot) -> None:
        self.snapshots.append(snapshot)

    async def list_snapshots(self, risk_id: str) -> list[Snapshot]:
        rows = [s for s in self.snapshots if s.risk_id == risk_id]
        return sorted(rows, key=lambda s: s.uploaded_at)

    async def append_liquidation(self, record: LiquidationRecord) -> None:
        self.liquidations.append(record)

    async def list_liquidations(self, risk_id: str) -> list[LiquidationRecord]:
        return [r for r in self.liquidations if r.risk_id == risk_id]

    async def next_nonce(self, policy_id: str, risk_id: str) -> int:
        key = (policy_id, risk_id)
        async with self._nonce_locks[key]:
            current = self.nonces.get(key, 0)
            # Yield while holding the lock so the read-increment-write stays
            # linear even when the backing write is slow.
            await asyncio.sleep(0)
            self.nonces[key] = current + 1
            return current + 1

    async def append_claim(self, claim: ClaimRecord) -> None:
        self.claims.append(claim)

    async def list_claims(self, policy_id: str, risk_id: str) -> list[ClaimRecord]:
        return [c for c in self.claims if c.policy_id == policy_id and c.risk_id == risk_id]


# ── SQL ────────────────────────────────────────────────────────────────────────

metadata = MetaData()

pool_samples = Table(
    "pool_samples",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("pool_id", String(128), nullable=False, index=True),
    Column("ts", BigInteger, nullable=False, index=True),
    Column("block_number", BigInteger, nullable=False),
    Column("reserve_base", Float, nullable=False),
    Column("reserve_quote", Float, nullable=False),
    Column("total_supply", Float, nullable=False),
    Column("price", Float),
    Column("ratio_bps", Integer, nullable=False),
    Column("severity_bps", Integer),
    Column("twap_bps", Integer, nullable=False),
)

risk_events = Table(
    "risk_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("risk_id", String(256), nullable=False, index=True),
    Column("pool_id", String(128), nullable=False, index=True),
    Column("chain_id", Integer, nullable=False),
    Column("risk_type", String(32), nullable=False),
    Column("risk_state", String(16), nullable=False),
    Column("window_start", BigInteger, nullable=False),
    Column("window_end", BigInteger),
    Column("severity_bps", Integer, nullable=False),
    Column("twap_bps", Integer, nullable=False),
    Column("ratio_bps", Integer, nullable=False),
    Column("version", Integer, nullable=False),
    Column("attested_at", BigInteger, nullable=False),
    Column("attestor", String(42), nullable=False),
    UniqueConstraint("risk_id", "version", name="uq_risk_version"),
)

snapshots = Table(
    "snapshots",
    metadata,
    Column("snapshot_id", String(64), primary_key=True),
    Column("risk_id", String(256), nullable=False, index=True),
    Column("pool_id", String(128), nullable=False),
    Column("content_id", String(128), nullable=False),
    Column("label", String(16), nullable=False),
    Column("note", Text, nullable=False, default=""),
    Column("uploaded_at", BigInteger, nullable=False),
)

liquidations = Table(
    "liquidations",
    metadata,
    Column("liquidation_id", String(160), primary_key=True),
    Column("risk_id", String(256), nullable=False, index=True),
    Column("pool_id", String(128), nullable=False),
    Column("event", Text, nullable=False),
    Column("recorded_at", BigInteger, nullable=False),
)

claim_nonces = Table(
    "claim_nonces",
    metadata,
    Column("policy_id", String(78), primary_key=True),
    Column("risk_id", String(256), primary_key=True),
    Column("nonce", BigInteger, nullable=False),
)

claims = Table(
    "claims",
    metadata,
    Column("claim_id", String(64), primary_key=True),
    Column("policy_id", String(78), nullable=False, index=True),
    Column("risk_id", String(256), nullable=False, index=True),
    Column("mode", String(16), nullable=False),
    Column("payout_amount", String(78), nullable=False),
    Column("deductible_bps", Integer, nullable=False),
    Column("coverage_cap", String(78), nullable=False),
    Column("nonce", BigInteger, nullable=False),
    Column("signature", String(132), nullable=False),
    Column("signed_payload", Text, nullable=False),
    Column("state", String(16), nullable=False),
    Column("created_at", BigInteger, nullable=False),
    UniqueConstraint("policy_id", "risk_id", "nonce", name="uq_claim_nonce"),
)


def _ensure_sqlite_path(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return
    database = parsed.database
    if not database or database == ":memory:":
        return
    Path(database).parent.mkdir(parents=True, exist_ok=True)


def _risk_from_row(row) -> RiskWindow:
    return RiskWindow(
        risk_id=row.risk_id,
        pool_id=row.pool_id,
        chain_id=row.chain_id,
        risk_type=row.risk_type,
        state=row.risk_state,
        window_start=row.window_start,
        window_end=row.window_end,
        severity_bps=row.severity_bps,
        twap_bps=row.twap_bps,
        reference_ratio_bps=row.ratio_bps,
        version=row.version,
        attested_at=row.attested_at,
        attestor=row.attestor,
    )


class SqlEventStore:
    def __init__(self, url: str) -> None:
        connect_args: dict[str, object] = {}
        if make_url(url).get_backend_name() == "sqlite":
            connect_args["check_same_thread"] = False
            _ensure_sqlite_path(url)
        self.engine = create_engine(url, future=True, pool_pre_ping=True, connect_args=connect_args)
        metadata.create_all(self.engine)
        # Serialises nonce allocation inside this process; the row lock covers
        # other processes on back-ends that honour FOR UPDATE.
        self._nonce_lock = threading.Lock()

    def close(self) -> None:
        self.engine.dispose()

    async def _run(self, fn, *args):
        return await asyncio.to_thread(fn, *args)

    # samples
    def _append_sample(self, sample: Sample) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                insert(pool_samples).values(
                    pool_id=sample.pool_id,
                    ts=sample.timestamp,
                    block_number=sample.block_number,
                    reserve_base=sample.reserve_base,
                    reserve_quote=sample.reserve_quote,
                    total_supply=sample.total_supply,
                    price=sample.price,
                    ratio_bps=sample.ratio_bps,
                    severity_bps=sample.severity_bps,
                    twap_bps=sample.twap_bps,
                )
            )

    async def append_sample(self, sample: Sample) -> None:
        await self._run(self._append_sample, sample)

    def _window_metrics(self, pool_id: str, start: int, end: int) -> WindowMetrics:
        query = select(
            func.min(pool_samples.c.ratio_bps),
            func.max(pool_samples.c.severity_bps),
            func.avg(pool_samples.c.twap_bps),
            func.count(),
        ).where(
            and_(
                pool_samples.c.pool_id == pool_id,
                pool_samples.c.ts >= start,
                pool_samples.c.ts <= end,
            )
        )
        with self.engine.connect() as conn:
            min_ratio, max_severity, avg_twap, count = conn.execute(query).one()
        return WindowMetrics(
            min_ratio_bps=min_ratio,
            max_severity_bps=max_severity,
            avg_twap_bps=float(avg_twap) if avg_twap is not None else None,
            samples=count or 0,
        )

    async def window_metrics(self, pool_id: str, start: int, end: int) -> WindowMetrics:
        return await self._run(self._window_metrics, pool_id, start, end)

    # risk windows
    def _append_risk_window(self, window: RiskWindow) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                insert(risk_events).values(
                    risk_id=window.risk_id,
                    pool_id=window.pool_id,
                    chain_id=window.chain_id,
                    risk_type=window.risk_type.value,
                    risk_state=window.state.value,
                    window_start=window.window_start,
                    window_end=window.window_end,
                    severity_bps=window.severity_bps,
                    twap_bps=window.twap_bps,
                    ratio_bps=window.reference_ratio_bps,
                    version=window.version,
                    attested_at=window.attested_at,
                    attestor=window.attestor,
                )
            )

    async def append_risk_window(self, window: RiskWindow) -> None:
        await self._run(self._append_risk_window, window)

    def _latest_risk_window(self, risk_id: str) -> Optional[RiskWindow]:
        query = (
            select(risk_events)
            .where(risk_events.c.risk_id == risk_id)
            .order_by(risk_events.c.version.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(query).first()
        return _risk_from_row(row) if row else None

    async def latest_risk_window(self, risk_id: str) -> Optional[RiskWindow]:
        return await self._run(self._latest_risk_window, risk_id)

    def _list_risk_windows(self, pool_id: Optional[str]) -> list[RiskWindow]:
        latest = (
            select(risk_events.c.risk_id, func.max(risk_events.c.version).label("version"))
            .group_by(risk_events.c.risk_id)
            .subquery()
        )
        query = select(risk_events).join(
            latest,
            and_(
                risk_events.c.risk_id == latest.c.risk_id,
                risk_events.c.version == latest.c.version,
            ),
        )
        if pool_id is not None:
            query = query.where(risk_events.c.pool_id == pool_id)
        query = query.order_by(risk_events.c.window_start.desc())
        with self.engine.connect() as conn:
            return [_risk_from_row(row) for row in conn.execute(query)]

    async def list_risk_windows(self, pool_id: Optional[str] = None) -> list[RiskWindow]:
        return await self._run(self._list_risk_windows, pool_id)

    # snapshots
    def _append_snapshot(self, snapshot: Snapshot) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                insert(snapshots).values(
                    snapshot_id=snapshot.snapshot_id,
                    risk_id=snapshot.risk_id,
                    pool_id=snapshot.pool_id,
                    content_id=snapshot.content_id,
                    label=snapshot.label.value,
                    note=snapshot.note,
                    uploaded_at=snapshot.uploaded_at,
                )
            )

    async def append_snapshot(self, snapshot: Snapshot) -> None:
        await self._run(self._append_snapshot, snapshot)

    def _list_snapshots(self, risk_id: str) -> list[Snapshot]:
        query = (
            select(snapshots)
            .where(snapshots.c.risk_id == risk_id)
            .order_by(snapshots.c.uploaded_at.asc())
        )
        with self.engine.connect() as conn:
            return [Snapshot(**row._mapping) for row in conn.execute(query)]

    async def list_snapshots(self, risk_id: str) -> list[Snapshot]:
        return await self._run(self._list_snapshots, risk_id)

    # liquidations
    def _append_liquidation(self, record: LiquidationRecord) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                insert(liquidations).values(
                    liquidation_id=record.liquidation_id,
                    risk_id=record.risk_id,
                    pool_id=record.pool_id,
                    event=record.event.model_dump_json(),
                    recorded_at=record.recorded_at,
                )
            )

    async def append_liquidation(self, record: LiquidationRecord) -> None:
        await self._run(self._append_liquidation, record)

    def _list_liquidations(self, risk_id: str) -> list[LiquidationRecord]:
        query = select(liquidations).where(liquidations.c.risk_id == risk_id)
        with self.engine.connect() as conn:
            return [
                LiquidationRecord(
                    liquidation_id=row.liquidation_id,
                    risk_id=row.risk_id,
                    pool_id=row.pool_id,
                    event=json.loads(row.event),
                    recorded_at=row.recorded_at,
                )
                for row in conn.execute(query)
            ]

    async def list_liquidations(self, risk_id: str) -> list[LiquidationRecord]:
        return await self._run(self._list_liquidations, risk_id)

    # nonces
    def _next_nonce(self, policy_id: str, risk_id: str) -> int:
        key = and_(claim_nonces.c.policy_id == policy_id, claim_nonces.c.risk_id == risk_id)
        with self._nonce_lock, self.engine.begin() as conn:
            current = conn.execute(
                select(claim_nonces.c.nonce).where(key).with_for_update()
            ).scalar_one_or_none()
            if current is None:
                conn.execute(insert(claim_nonces).values(policy_id=policy_id, risk_id=risk_id, nonce=1))
                return 1
            conn.execute(update(claim_nonces).where(key).values(nonce=current + 1))
            return current + 1

    async def next_nonce(self, policy_id: str, risk_id: str) -> int:
        return await self._run(self._next_nonce, policy_id, risk_id)

    # claims
    def _append_claim(self, claim: ClaimRecord) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                insert(claims).values(
                    claim_id=claim.claim_id,
                    policy_id=claim.policy_id,
                    risk_id=claim.risk_id,
                    mode=claim.mode.value,
                    payout_amount=str(claim.payout_amount),
                    deductible_bps=claim.deductible_bps,
                    coverage_cap=str(claim.coverage_cap),
                    nonce=claim.nonce,
                    signature=claim.signature,
                    signed_payload=json.dumps(claim.signed_payload, sort_keys=True),
                    state=claim.state.value,
                    created_at=claim.created_at,
                )
            )

    async def append_claim(self, claim: ClaimRecord) -> None:
        await self._run(self._append_claim, claim)

    def _list_claims(self, policy_id: str, risk_id: str) -> list[ClaimRecord]:
        query = (
            select(claims)
            .where(and_(claims.c.policy_id == policy_id, claims.c.risk_id == risk_id))
            .order_by(claims.c.nonce.asc())
        )
        with self.engine.connect() as conn:
            return [
                ClaimRecord(
                    claim_id=row.claim_id,
                    policy_id=row.policy_id,
                    risk_id=row.risk_id,
                    mode=row.mode,
                    payout_amount=int(row.payout_amount),
                    deductible_bps=row.deductible_bps,
                    coverage_cap=int(row.coverage_cap),
                    nonce=row.nonce,
                    signature=row.signature,
                    signed_payload=json.loads(row.signed_payload),
                    state=row.state,
                    created_at=row.created_at,
                )
                for row in conn.execute(query)
            ]

    async def list_claims(self, policy_id: str, risk_id: str) -> list[ClaimRecord]:
        return await self._run(self._list_claims, policy_id, risk_id)


def create_event_store(url: str) -> EventStore:
    if url.startswith("memory://"):
        return InMemoryEventStore()
    return SqlEventStore(url)
