"""
Claim service — previews and EIP-712 signed payout attestations.

preview_claim is side-effect free. sign_claim consumes one nonce per
(policy, risk) and records the ClaimRecord before the signature is handed
back, so every attestation that leaves the service is auditable.
"""

import logging
import time
import uuid
from typing import Callable, Optional

from .errors import ConfigurationError, RiskNotFoundError
from .models import (
    ClaimMode,
    ClaimPreview,
    ClaimRecord,
    ClaimState,
    Policy,
    RiskState,
    RiskWindow,
    SignedClaim,
    SnapshotRef,
)
from .payout import compute_payout
from .signing import (
    TypedDataSigner,
    build_claim_typed_data,
    build_domain,
    risk_id_to_bytes32,
)
from .store import EventStore

logger = logging.getLogger(__name__)


class ClaimService:
    def __init__(
        self,
        store: EventStore,
        signer: Optional[TypedDataSigner] = None,
        verifying_contract: str = "",
        domain_name: str = "LiquidityGuardPayout",
        domain_version: str = "1",
        deadline_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.signer = signer
        self.verifying_contract = verifying_contract
        self.domain_name = domain_name
        self.domain_version = domain_version
        self.deadline_seconds = deadline_seconds
        self.clock = clock

    async def _require_window(self, risk_id: str) -> RiskWindow:
        window = await self.store.latest_risk_window(risk_id)
        if window is None:
            raise RiskNotFoundError(risk_id)
        return window

    async def _preview(self, policy: Policy, window: RiskWindow) -> ClaimPreview:
        now = int(self.clock())
        window_open = window.state is RiskState.OPEN or window.window_end is None
        window_end = now if window_open else window.window_end

        metrics = await self.store.window_metrics(window.pool_id, window.window_start, window_end)
        severity_bps = (
            metrics.max_severity_bps if metrics.max_severity_bps is not None else window.severity_bps
        )

        payout = compute_payout(
            policy.coverage_cap, policy.k_bps, policy.deductible_bps, severity_bps
        )
        snapshots = await self.store.list_snapshots(window.risk_id)

        return ClaimPreview(
            policy_id=policy.policy_id,
            risk_id=window.risk_id,
            chain_id=window.chain_id,
            window_start=window.window_start,
            window_end=window_end,
            window_open=window_open,
            severity_bps=severity_bps,
            reference_value=policy.insured_amount,
            current_value=max(policy.insured_amount - payout, 0),
            payout=payout,
            twap_bps=metrics.avg_twap_bps,
            metrics=metrics,
            deductible_applied=max(severity_bps - policy.deductible_bps, 0),
            coverage_cap_applied=payout >= policy.coverage_cap > 0,
            min_held_balance=max(policy.insured_amount - policy.claimed_up_to, 0),
            snapshots=[
                SnapshotRef(
                    id=s.snapshot_id,
                    type=s.label,
                    content_id=s.content_id,
                    uploaded_at=s.uploaded_at,
                    note=s.note,
                )
                for s in snapshots
            ],
        )

    async def preview_claim(self, policy: Policy) -> ClaimPreview:
        window = await self._require_window(policy.risk_id)
        return await self._preview(policy, window)

    async def sign_claim(self, policy: Policy, deadline: Optional[int] = None) -> SignedClaim:
        """Sign a FINAL attestation.

        Configuration, unknown-risk and deadline errors are raised before a
        nonce is consumed. The ClaimRecord is stored before this returns.
        """
        if self.signer is None:
            raise ConfigurationError("signer private key not configured")
        if not self.verifying_contract:
            raise ConfigurationError("payout verifier address not configured")

        preview = await self.preview_claim(policy)
        # Re-read: the window may have been resolved or re-versioned since.
        window = await self._require_window(policy.risk_id)
        domain = build_domain(
            self.domain_name, self.domain_version, window.chain_id, self.verifying_contract
        )

        now = int(self.clock())
        expires_at = deadline if deadline is not None else now + self.deadline_seconds
        if expires_at < 0:
            raise ValueError("deadline must be non-negative")

        # Every field that can fail is built before a nonce is consumed.
        message = {
            "policyId": int(policy.policy_id),
            "riskId": risk_id_to_bytes32(window.risk_id),
            "windowStart": preview.window_start,
            "windowEnd": preview.window_end,
            "severity": preview.severity_bps,
            "referenceValue": preview.reference_value,
            "currentValue": preview.current_value,
            "payout": preview.payout,
            "deadline": expires_at,
        }
        nonce = await self.store.next_nonce(policy.policy_id, policy.risk_id)
        message["nonce"] = nonce
        typed_data = build_claim_typed_data(domain, message)
        signature = self.signer.sign_typed_data(typed_data)

        record = ClaimRecord(
            claim_id=uuid.uuid4().hex,
            policy_id=policy.policy_id,
            risk_id=window.risk_id,
            mode=ClaimMode.FINAL,
            payout_amount=preview.payout,
            deductible_bps=policy.deductible_bps,
            coverage_cap=policy.coverage_cap,
            nonce=nonce,
            signature=signature,
            signed_payload=typed_data,
            state=ClaimState.SIGNED,
            created_at=now,
        )
        await self.store.append_claim(record)

        logger.info(
            f"Claim signed for policy {policy.policy_id}",
            extra={"risk_id": window.risk_id, "nonce": nonce, "payout": preview.payout},
        )
        return SignedClaim(
            claim_id=record.claim_id,
            policy_id=policy.policy_id,
            risk_id=window.risk_id,
            nonce=nonce,
            signer=self.signer.address,
            signature=signature,
            typed_data=typed_data,
            expires_at=expires_at,
            preview=preview,
        )
