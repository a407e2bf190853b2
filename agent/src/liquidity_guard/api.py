"""
FastAPI server — risk windows, claim previews and signed attestations.

The lifespan wires the monitors, event store and claim service, and runs the
monitors as background tasks.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from .chain import ChainReader, LendingMarketReader
from .claims import ClaimService
from .config import Settings, settings
from .detector import Direction, LiquidationCorrelator, RiskDetector
from .errors import ConfigurationError, LiquidityGuardError, RiskNotFoundError
from .models import ClaimPreview, Policy, RiskWindow, SignedClaim
from .monitor import ZERO_ADDRESS, LendingMonitor, PoolMonitor
from .oracle import build_price_oracle
from .signing import LocalKeySigner
from .snapshots import LocalSnapshotStore
from .store import EventStore, create_event_store
from .webhooks import WebhookEmitter

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

ERROR_STATUS = {
    "not_found": 404,
    "not_configured": 503,
    "internal": 500,
}


@dataclass
class Components:
    store: EventStore
    claims: ClaimService
    monitors: list[Any] = field(default_factory=list)
    http_client: Optional[httpx.AsyncClient] = None
    webhooks: Optional[WebhookEmitter] = None


def build_components(cfg: Settings) -> Components:
    """Wire the production graph from settings."""
    if cfg.enable_lending_monitoring:
        for name in ("lending_pool_address", "lending_collateral_asset"):
            if not Web3.is_address(getattr(cfg, name)):
                raise ConfigurationError(f"{name.upper()} must be set when lending monitoring is enabled")

    w3 = AsyncWeb3(AsyncHTTPProvider(cfg.rpc_url))
    http_client = httpx.AsyncClient(timeout=cfg.rpc_timeout_seconds)
    store = create_event_store(cfg.database_url)
    snapshots = LocalSnapshotStore(cfg.snapshot_dir)
    webhooks = WebhookEmitter(cfg.webhook_base_url, cfg.webhook_secret, client=http_client)

    signer = LocalKeySigner(cfg.signer_private_key) if cfg.signer_private_key else None
    attestor = signer.address if signer else ZERO_ADDRESS

    reader = ChainReader(
        w3,
        cfg.pool_address,
        fallback_coins=cfg.coin_addresses,
        default_decimals=cfg.default_token_decimals,
        timeout=cfg.rpc_timeout_seconds,
    )
    oracle = build_price_oracle(
        reader,
        http_client,
        cfg.twap_horizon_seconds,
        uniswap_v3_pool=cfg.uniswap_v3_pool_address,
        chainlink_aggregator=cfg.chainlink_aggregator_address,
        pyth_price_feed_id=cfg.pyth_price_feed_id,
        pyth_hermes_url=cfg.pyth_hermes_url,
        pyth_max_age_seconds=cfg.pyth_max_age_seconds,
        local_capacity=cfg.local_twap_capacity,
    )
    monitors: list[Any] = [
        PoolMonitor(
            reader,
            oracle,
            store,
            snapshots,
            webhooks,
            RiskDetector(cfg.threshold_bps, cfg.grace_period_seconds, Direction.BELOW),
            pool_id=cfg.pool_id,
            chain_id=cfg.chain_id,
            quote_amount=cfg.quote_amount,
            poll_interval_seconds=cfg.poll_interval_seconds,
            attestor=attestor,
        )
    ]

    if cfg.enable_lending_monitoring:
        lending_reader = ChainReader(
            w3, cfg.lending_pool_address, timeout=cfg.rpc_timeout_seconds
        )
        lending_oracle = build_price_oracle(
            lending_reader,
            http_client,
            cfg.twap_horizon_seconds,
            chainlink_aggregator=cfg.lending_price_feed,
            pyth_price_feed_id=cfg.lending_pyth_price_feed_id,
            pyth_hermes_url=cfg.pyth_hermes_url,
            pyth_max_age_seconds=cfg.pyth_max_age_seconds,
            local_capacity=None,
        )
        monitors.append(
            LendingMonitor(
                lending_oracle,
                LendingMarketReader(lending_reader, cfg.lending_pool_address),
                store,
                snapshots,
                webhooks,
                LiquidationCorrelator(cfg.lending_depeg_threshold_bps, cfg.lending_grace_period_seconds),
                pool_id=cfg.lending_pool_id,
                chain_id=cfg.chain_id,
                collateral_asset=cfg.lending_collateral_asset,
                poll_interval_seconds=cfg.poll_interval_seconds,
                attestor=attestor,
            )
        )

    claims = ClaimService(
        store,
        signer=signer,
        verifying_contract=cfg.payout_verifier_address,
        domain_name=cfg.eip712_domain_name,
        domain_version=cfg.eip712_domain_version,
        deadline_seconds=cfg.claim_deadline_seconds,
    )
    return Components(store, claims, monitors, http_client, webhooks)


class SignClaimRequest(BaseModel):
    policy: Policy
    deadline: Optional[int] = None


def create_app(components: Optional[Components] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the monitors and tear them down on shutdown."""
        comps = components or build_components(settings)
        app.state.components = comps

        tasks = [asyncio.create_task(monitor.run()) for monitor in comps.monitors]
        logger.info(f"Started {len(tasks)} monitors")

        yield

        for monitor in comps.monitors:
            monitor.stop()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if comps.http_client is not None:
            await comps.http_client.aclose()
        close = getattr(comps.store, "close", None)
        if close is not None:
            close()
        logger.info("Components shut down")

    app = FastAPI(
        title="LiquidityGuard API",
        version=VERSION,
        description="Depeg risk windows and signed payout attestations",
        lifespan=lifespan,
    )

    @app.exception_handler(LiquidityGuardError)
    async def _guard_error(request: Request, exc: LiquidityGuardError) -> JSONResponse:
        status = ERROR_STATUS.get(exc.code, 500)
        if status >= 500:
            logger.error(f"{request.url.path} failed: {exc}")
        return JSONResponse(status_code=status, content={"error": exc.code, "detail": str(exc)})

    def _components(request: Request) -> Components:
        return request.app.state.components

    # ── Routes ─────────────────────────────────────────────────────────────────

    @app.get("/health")
    async def health(request: Request):
        comps = _components(request)
        return {
            "status": "ok",
            "version": VERSION,
            "monitors": [
                {"pool_id": m.pool_id, "window": m.window.risk_id if m.window else None, **m.stats}
                for m in comps.monitors
            ],
        }

    @app.get("/risk", response_model=list[RiskWindow])
    async def list_risk(request: Request, pool_id: Optional[str] = None):
        return await _components(request).store.list_risk_windows(pool_id)

    @app.get("/risk/{risk_id}")
    async def get_risk(request: Request, risk_id: str):
        store = _components(request).store
        window = await store.latest_risk_window(risk_id)
        if window is None:
            raise RiskNotFoundError(risk_id)
        snapshots = await store.list_snapshots(risk_id)
        liquidations = await store.list_liquidations(risk_id)
        return {
            "window": window.model_dump(mode="json"),
            "snapshots": [s.model_dump(mode="json") for s in snapshots],
            "liquidations": [r.model_dump(mode="json") for r in liquidations],
        }

    @app.post("/claims/preview", response_model=ClaimPreview)
    async def preview_claim(request: Request, policy: Policy):
        return await _components(request).claims.preview_claim(policy)

    @app.post("/claims/sign", response_model=SignedClaim)
    async def sign_claim(request: Request, body: SignClaimRequest):
        return await _components(request).claims.sign_claim(body.policy, body.deadline)

    return app


app = create_app()
