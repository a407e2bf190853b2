"""
Risk Detector — hysteresis state machine over sampled ratios.

A value on the unsafe side of the threshold starts a breach. The breach only
becomes a risk window once it has been held for the grace period (inclusive),
and the window is back-dated to the first breaching sample. Recovery before
the grace period elapses clears the breach silently.

States:
  NORMAL    → no breach recorded
  BREACHING → breach recorded, grace period not yet served (implicit)
  ACTIVE    → a window is open
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .models import LiquidationEvent


class Direction(str, Enum):
    BELOW = "below"  # unsafe when value < threshold (minimum reserve ratio)
    ABOVE = "above"  # unsafe when value >= threshold (maximum deviation)


@dataclass(frozen=True)
class DepegStart:
    start: int
    value: int
    kind: str = "DEPEG_START"


@dataclass(frozen=True)
class DepegEnd:
    start: int
    end: int
    value: int
    kind: str = "DEPEG_END"


@dataclass(frozen=True)
class DepegLiquidation:
    risk_start: int
    liquidation: LiquidationEvent
    kind: str = "DEPEG_LIQ"


DetectorEvent = Union[DepegStart, DepegEnd]


class RiskDetector:
    """Single-window detector. One instance per monitored market."""

    def __init__(
        self,
        threshold_bps: int,
        grace_period_seconds: int,
        direction: Direction = Direction.BELOW,
    ) -> None:
        self.threshold_bps = threshold_bps
        self.grace_period_seconds = grace_period_seconds
        self.direction = direction

        self.breach_started_at: Optional[int] = None
        self.window_start: Optional[int] = None

    @property
    def active(self) -> bool:
        return self.window_start is not None

    def is_unsafe(self, value: int) -> bool:
        if self.direction is Direction.BELOW:
            return value < self.threshold_bps
        return value >= self.threshold_bps

    def observe(self, timestamp: int, value: int) -> Optional[DetectorEvent]:
        """Advance on one sample. Timestamps must be non-decreasing."""
        if self.is_unsafe(value):
            if self.breach_started_at is None:
                self.breach_started_at = timestamp
            if (
                not self.active
                and timestamp - self.breach_started_at >= self.grace_period_seconds
            ):
                self.window_start = self.breach_started_at
                return DepegStart(start=self.window_start, value=value)
            return None

        if self.active:
            start = self.window_start
            self.reset()
            return DepegEnd(start=start, end=timestamp, value=value)

        self.breach_started_at = None
        return None

    def reset(self) -> None:
        self.breach_started_at = None
        self.window_start = None


class LiquidationCorrelator:
    """Deviation-keyed detector that also collects liquidations seen while active.

    Liquidations are evidence only; they never open or close a window.
    """

    def __init__(self, max_deviation_bps: int, grace_period_seconds: int = 0) -> None:
        self.detector = RiskDetector(
            threshold_bps=max_deviation_bps,
            grace_period_seconds=grace_period_seconds,
            direction=Direction.ABOVE,
        )
        self.liquidations: list[LiquidationEvent] = []
        self._seen: set[str] = set()

    @property
    def active(self) -> bool:
        return self.detector.active

    def observe(self, timestamp: int, deviation_bps: int) -> Optional[DetectorEvent]:
        event = self.detector.observe(timestamp, deviation_bps)
        if isinstance(event, DepegStart):
            self.liquidations = []
            self._seen = set()
        return event

    def correlate(self, liquidations: list[LiquidationEvent]) -> list[DepegLiquidation]:
        if not self.active:
            return []

        correlated = []
        for liquidation in liquidations:
            if liquidation.liquidation_id in self._seen:
                continue
            self._seen.add(liquidation.liquidation_id)
            self.liquidations.append(liquidation)
            correlated.append(
                DepegLiquidation(risk_start=self.detector.window_start, liquidation=liquidation)
            )
        return correlated
