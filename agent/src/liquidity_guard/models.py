"""Domain models for the LiquidityGuard monitor and claim pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

BPS_BASE = 10_000


# ── Enums ──────────────────────────────────────────────────────────────────────

class RiskType(str, Enum):
    DEPEG_LP = "DEPEG_LP"
    LENDING_DLP = "LENDING_DLP"


class RiskState(str, Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


class SnapshotLabel(str, Enum):
    DEPEG_START = "DEPEG_START"
    DEPEG_END = "DEPEG_END"
    DEPEG_LIQ = "DEPEG_LIQ"


class ClaimMode(str, Enum):
    PREVIEW = "PREVIEW"
    FINAL = "FINAL"


class ClaimState(str, Enum):
    SIGNED = "SIGNED"


# ── Monitoring ─────────────────────────────────────────────────────────────────

class Sample(BaseModel):
    """One poll tick. ``price``/``severity_bps`` are None when no quote answered."""

    model_config = ConfigDict(frozen=True)

    pool_id: str
    timestamp: int
    block_number: int
    reserve_base: float
    reserve_quote: float
    total_supply: float
    price: Optional[float] = None
    ratio_bps: int
    severity_bps: Optional[int] = None
    twap_bps: int


class RiskWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    risk_id: str
    pool_id: str
    chain_id: int
    risk_type: RiskType = RiskType.DEPEG_LP
    state: RiskState
    window_start: int
    window_end: Optional[int] = None
    severity_bps: int = 0
    twap_bps: int = 0
    reference_ratio_bps: int = 0
    version: int = 1
    attested_at: int
    attestor: str = "0x0000000000000000000000000000000000000000"


def make_risk_id(pool_id: str, window_start: int) -> str:
    return f"{pool_id}|{window_start}"


class Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    snapshot_id: str
    risk_id: str
    pool_id: str
    content_id: str
    label: SnapshotLabel
    note: str = ""
    uploaded_at: int


class LiquidationEvent(BaseModel):
    """A lending-market LiquidationCall decoded from logs."""

    model_config = ConfigDict(frozen=True)

    block_number: int
    transaction_hash: str
    log_index: int = 0
    timestamp: int
    user: str
    collateral_asset: str
    debt_asset: str
    liquidated_collateral_amount: int
    debt_to_cover: int
    liquidator: str

    @property
    def liquidation_id(self) -> str:
        return f"{self.transaction_hash}-{self.user}"


class LiquidationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    liquidation_id: str
    risk_id: str
    pool_id: str
    event: LiquidationEvent
    recorded_at: int


class WindowMetrics(BaseModel):
    min_ratio_bps: Optional[int] = None
    max_severity_bps: Optional[int] = None
    avg_twap_bps: Optional[float] = None
    samples: int = 0


# ── Claims ─────────────────────────────────────────────────────────────────────

class Policy(BaseModel):
    """Caller-supplied policy terms. Read-only to the core."""

    policy_id: str = Field(description="Decimal policy id (encoded as uint256)")
    risk_id: str
    owner: str
    insured_amount: int = Field(ge=0)
    coverage_cap: int = Field(ge=0)
    deductible_bps: int = Field(ge=0)
    k_bps: int = Field(default=5_000, ge=0)
    start_at: int = 0
    active_at: int = 0
    end_at: int = 0
    claimed_up_to: int = Field(default=0, ge=0)

    @field_validator("policy_id")
    @classmethod
    def _decimal_policy_id(cls, value: str) -> str:
        if not (value.isascii() and value.isdigit()):
            raise ValueError("policy_id must be a decimal integer string")
        # Canonical form: "0012" and "12" share one nonce counter.
        return str(int(value))


class SnapshotRef(BaseModel):
    id: str
    type: SnapshotLabel
    content_id: str
    uploaded_at: int
    note: str = ""


class ClaimPreview(BaseModel):
    mode: ClaimMode = ClaimMode.PREVIEW
    policy_id: str
    risk_id: str
    chain_id: int
    window_start: int
    window_end: int
    window_open: bool
    severity_bps: int
    reference_value: int
    current_value: int
    payout: int
    twap_bps: Optional[float] = None
    metrics: WindowMetrics
    deductible_applied: int
    coverage_cap_applied: bool
    min_held_balance: int
    snapshots: list[SnapshotRef] = []


class ClaimRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    claim_id: str
    policy_id: str
    risk_id: str
    mode: ClaimMode = ClaimMode.FINAL
    payout_amount: int
    deductible_bps: int
    coverage_cap: int
    nonce: int
    signature: str
    signed_payload: dict[str, Any]
    state: ClaimState = ClaimState.SIGNED
    created_at: int


class SignedClaim(BaseModel):
    claim_id: str
    policy_id: str
    risk_id: str
    nonce: int
    signer: str
    signature: str
    typed_data: dict[str, Any]
    expires_at: int
    preview: ClaimPreview
