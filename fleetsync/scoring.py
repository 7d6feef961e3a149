from dataclasses import dataclass
from typing import Optional

from .config import config


@dataclass(frozen=True)
class BehaviorCounters:
    """Daily incident counters reported for one vehicle."""
    harsh_brake: int = 0
    rapid_accel: int = 0
    speeding: int = 0
    seatbelt_off: int = 0

    @property
    def total(self) -> int:
        return self.harsh_brake + self.rapid_accel + self.speeding + self.seatbelt_off


@dataclass(frozen=True)
class ScoreBreakdown:
    brake_score: float
    acceleration_score: float
    speed_score: float
    seatbelt_score: float
    overall_score: float


def _penalized(count: int, penalty: int, base: int) -> float:
    return float(max(0, base - penalty * count))


def compute_scores(counters: BehaviorCounters, provider_score: Optional[float] = None) -> ScoreBreakdown:
    """Map daily counters to sub-scores and an overall score.

    Sub-scores floor at 0. The provider's own overall score wins when it is
    present (an explicit 0 counts as present); otherwise the overall score is
    the unweighted mean of the four sub-scores.
    """
    base = config.score_base
    brake = _penalized(counters.harsh_brake, config.score_brake_penalty, base)
    accel = _penalized(counters.rapid_accel, config.score_accel_penalty, base)
    speed = _penalized(counters.speeding, config.score_speed_penalty, base)
    seatbelt = 0.0 if counters.seatbelt_off > 0 else float(base)

    if provider_score is not None:
        overall = float(provider_score)
    else:
        overall = (brake + accel + speed + seatbelt) / 4

    return ScoreBreakdown(
        brake_score=brake,
        acceleration_score=accel,
        speed_score=speed,
        seatbelt_score=seatbelt,
        overall_score=overall,
    )


def risk_tier(overall_score: float) -> str:
    """Bucket an overall score into high / medium / low risk."""
    if overall_score < config.risk_high_below:
        return "high"
    if overall_score < config.risk_low_at_or_above:
        return "medium"
    return "low"
