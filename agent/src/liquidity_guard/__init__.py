"""LiquidityGuard — stable-pool depeg monitor with signed payout attestations."""

from .claims import ClaimService
from .detector import Direction, LiquidationCorrelator, RiskDetector
from .errors import (
    ChainReadError,
    ConfigurationError,
    LiquidityGuardError,
    NoOracleAvailableError,
    RiskNotFoundError,
    StaleDataError,
)
from .payout import compute_payout

__all__ = [
    "ChainReadError",
    "ClaimService",
    "ConfigurationError",
    "Direction",
    "LiquidationCorrelator",
    "LiquidityGuardError",
    "NoOracleAvailableError",
    "RiskDetector",
    "RiskNotFoundError",
    "StaleDataError",
    "compute_payout",
]

__version__ = "0.1.0"
