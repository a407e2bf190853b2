"""Error taxonomy shared by the monitor, oracle and claim layers."""


class LiquidityGuardError(Exception):
    """Base error. ``code`` lets outer layers map failures to responses."""

    code = "internal"


class ChainReadError(LiquidityGuardError):
    """Every ABI variant for a chain read failed. Retry on the next tick."""


class ConfigurationError(LiquidityGuardError):
    """A required address, key or domain setting is missing."""

    code = "not_configured"


class NoOracleAvailableError(LiquidityGuardError):
    """All price sources failed; the sample is skipped."""


class StaleDataError(LiquidityGuardError):
    """An oracle reading is older than its freshness bound."""


class RiskNotFoundError(LiquidityGuardError):
    code = "not_found"

    def __init__(self, risk_id: str) -> None:
        super().__init__(f"risk window not found: {risk_id}")
        self.risk_id = risk_id
