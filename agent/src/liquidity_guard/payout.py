"""Severity → payout conversion.

Integer-only so the result matches a verifying contract bit for bit:

    severity = max(severity_bps - deductible_bps, 0)
    payout   = min(coverage_cap * k_bps * severity // 10_000**2, coverage_cap)
"""

from .models import BPS_BASE


def compute_payout(coverage_cap: int, k_bps: int, deductible_bps: int, severity_bps: int) -> int:
    for name, value in (
        ("coverage_cap", coverage_cap),
        ("k_bps", k_bps),
        ("deductible_bps", deductible_bps),
        ("severity_bps", severity_bps),
    ):
        if not isinstance(value, int) or isinstance(value, bool):
            raise TypeError(f"{name} must be an int, got {type(value).__name__}")
        if value < 0:
            raise ValueError(f"{name} must be non-negative")

    severity = max(severity_bps - deductible_bps, 0)
    if severity == 0:
        return 0

    payout = (coverage_cap * k_bps * severity) // (BPS_BASE * BPS_BASE)
    return min(payout, coverage_cap)
