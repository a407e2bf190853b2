"""Configuration management for the LiquidityGuard monitor."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Blockchain ─────────────────────────────────────────────────────────────
    rpc_url: str = Field(default="http://127.0.0.1:8545", description="Ethereum RPC URL")
    rpc_timeout_seconds: float = Field(default=10.0, description="Per-call RPC timeout")
    chain_id: int = Field(default=1, description="Chain ID")

    # ── Monitored pool ─────────────────────────────────────────────────────────
    pool_id: str = Field(default="curve-usdc-usdf", description="Stable pool identifier")
    pool_address: str = Field(
        default="0x72310daaed61321b02b08a547150c07522c6a976",
        description="Curve-style pool contract",
    )
    coin_addresses: list[str] = Field(
        default=[],
        description="Static (base, quote) token pair used when on-chain resolution fails",
    )
    default_token_decimals: int = Field(default=18, description="Decimals when ERC-20 lookup fails")
    quote_amount: int = Field(default=100_000, description="Quote size (whole quote tokens) for loss estimates")

    # ── Detector ───────────────────────────────────────────────────────────────
    threshold_bps: int = Field(default=2500, description="Minimum healthy base-reserve ratio (bps)")
    grace_period_seconds: int = Field(default=900, description="Sustained breach before a window opens")
    poll_interval_seconds: float = Field(default=10.0, description="Monitoring loop interval")

    # ── TWAP sources (first configured source that answers wins) ───────────────
    twap_horizon_seconds: int = Field(default=1800, description="TWAP lookback")
    uniswap_v3_pool_address: str = Field(default="", description="Uniswap V3 pool for observe()")
    chainlink_aggregator_address: str = Field(default="", description="Chainlink aggregator")
    pyth_hermes_url: str = Field(default="https://hermes.pyth.network", description="Pyth Hermes endpoint")
    pyth_price_feed_id: str = Field(default="", description="Pyth price feed ID")
    pyth_max_age_seconds: int = Field(default=60, description="Max Pyth publish age")
    local_twap_capacity: int = Field(default=1080, description="Local price ring-buffer size")

    # ── Attestation signing ────────────────────────────────────────────────────
    signer_private_key: str = Field(default="", description="Attestation signer key")
    payout_verifier_address: str = Field(default="", description="EIP-712 verifyingContract")
    eip712_domain_name: str = Field(default="LiquidityGuardPayout", description="EIP-712 domain name")
    eip712_domain_version: str = Field(default="1", description="EIP-712 domain version")
    claim_deadline_seconds: int = Field(default=3600, description="Default attestation validity")

    # ── Storage / delivery ─────────────────────────────────────────────────────
    database_url: str = Field(default="sqlite:///data/liquidity_guard.db", description="Event store URL")
    snapshot_dir: str = Field(default="data/snapshots", description="Snapshot directory")
    webhook_base_url: str = Field(default="", description="Validator webhook base URL")
    webhook_secret: str = Field(default="", description="HMAC secret for webhook bodies")

    # ── Lending market variant ─────────────────────────────────────────────────
    enable_lending_monitoring: bool = Field(default=False, description="Run the lending collateral monitor")
    lending_pool_id: str = Field(default="aave-pyusd", description="Lending market identifier")
    lending_pool_address: str = Field(default="", description="Lending pool emitting LiquidationCall")
    lending_collateral_asset: str = Field(default="", description="Collateral token address")
    lending_price_feed: str = Field(default="", description="Chainlink feed for the collateral")
    lending_pyth_price_feed_id: str = Field(default="", description="Pyth fallback feed for the collateral")
    lending_depeg_threshold_bps: int = Field(default=200, description="Max tolerated deviation (bps)")
    lending_grace_period_seconds: int = Field(default=0, description="Sustained deviation before a window opens")

    # ── API Server ─────────────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=3000, description="API server port")
    log_level: str = Field(default="INFO", description="Root log level")


settings = Settings()
