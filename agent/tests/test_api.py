from urllib.parse import quote

import pytest
from conftest import SIGNER_ADDRESS, SIGNER_KEY, T0, VERIFIER
from fastapi.testclient import TestClient

from liquidity_guard.api import Components, build_components, create_app
from liquidity_guard.claims import ClaimService
from liquidity_guard.config import Settings
from liquidity_guard.errors import ConfigurationError
from liquidity_guard.models import RiskState, RiskWindow, Sample, make_risk_id
from liquidity_guard.signing import LocalKeySigner
from liquidity_guard.store import InMemoryEventStore

POOL_ID = "curve-usdc-usdf"
RISK_ID = make_risk_id(POOL_ID, T0)


@pytest.fixture()
def store() -> InMemoryEventStore:
    store = InMemoryEventStore()
    for version, state in ((1, RiskState.OPEN), (2, RiskState.RESOLVED)):
        store.risk_rows.append(
            RiskWindow(
                risk_id=RISK_ID,
                pool_id=POOL_ID,
                chain_id=1,
                state=state,
                window_start=T0,
                window_end=T0 + 900 if state is RiskState.RESOLVED else None,
                severity_bps=150,
                twap_bps=9950,
                reference_ratio_bps=4600,
                version=version,
                attested_at=T0 + version,
            )
        )
    store.samples.append(
        Sample(
            pool_id=POOL_ID,
            timestamp=T0 + 60,
            block_number=5,
            reserve_base=460.0,
            reserve_quote=540.0,
            total_supply=1000.0,
            ratio_bps=4600,
            severity_bps=150,
            twap_bps=9950,
        )
    )
    return store


def client_for(store, signer=None, verifier=VERIFIER) -> TestClient:
    claims = ClaimService(store, signer=signer, verifying_contract=verifier, clock=lambda: T0 + 5000)
    return TestClient(create_app(Components(store=store, claims=claims)))


POLICY = {
    "policy_id": "7",
    "risk_id": RISK_ID,
    "owner": "0x" + "ee" * 20,
    "insured_amount": 1_000_000_000,
    "coverage_cap": 800_000_000,
    "deductible_bps": 25,
}


def test_health(store):
    with client_for(store) as client:
        resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.json()["monitors"] == []


def test_risk_listing_and_lookup(store):
    with client_for(store) as client:
        listed = client.get("/risk", params={"pool_id": POOL_ID}).json()
        detail = client.get(f"/risk/{quote(RISK_ID, safe='')}")
        missing = client.get("/risk/unknown")

    assert [(w["risk_id"], w["version"], w["state"]) for w in listed] == [(RISK_ID, 2, "RESOLVED")]
    assert detail.status_code == 200
    assert detail.json()["window"]["window_end"] == T0 + 900
    assert detail.json()["snapshots"] == []
    assert missing.status_code == 404
    assert missing.json()["error"] == "not_found"


def test_preview(store):
    with client_for(store) as client:
        resp = client.post("/claims/preview", json=POLICY)

    assert resp.status_code == 200
    body = resp.json()
    assert body["mode"] == "PREVIEW"
    assert body["payout"] == 5_000_000
    assert body["window_open"] is False


def test_preview_rejects_bad_policy(store):
    with client_for(store) as client:
        resp = client.post("/claims/preview", json={**POLICY, "policy_id": "abc"})

    assert resp.status_code == 422


def test_sign_requires_configuration(store):
    with client_for(store, signer=None) as client:
        resp = client.post("/claims/sign", json={"policy": POLICY})

    assert resp.status_code == 503
    assert resp.json()["error"] == "not_configured"
    assert store.nonces == {}


def test_sign(store):
    with client_for(store, signer=LocalKeySigner(SIGNER_KEY)) as client:
        resp = client.post("/claims/sign", json={"policy": POLICY, "deadline": T0 + 6000})

    assert resp.status_code == 200
    body = resp.json()
    assert body["signer"] == SIGNER_ADDRESS
    assert body["nonce"] == 1
    assert body["expires_at"] == T0 + 6000
    assert body["typed_data"]["primaryType"] == "ClaimPayload"
    assert len(store.claims) == 1


@pytest.mark.parametrize(
    "overrides",
    [
        {"lending_pool_address": "", "lending_collateral_asset": "0x" + "22" * 20},
        {"lending_pool_address": "0x" + "44" * 20, "lending_collateral_asset": ""},
    ],
)
def test_lending_monitor_requires_addresses(tmp_path, overrides):
    cfg = Settings(
        enable_lending_monitoring=True,
        database_url="memory://",
        snapshot_dir=str(tmp_path / "snapshots"),
        **overrides,
    )

    with pytest.raises(ConfigurationError):
        build_components(cfg)
