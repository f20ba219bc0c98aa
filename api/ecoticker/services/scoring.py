"""Severity scoring - urgency, level clamping, aggregation policy, anomaly detection."""
from dataclasses import dataclass
from typing import Optional, Protocol
import structlog

logger = structlog.get_logger()

INSUFFICIENT_DATA = -1
FALLBACK_SCORE = 50

LEVEL_RANGES = {
    "MINIMAL": (0, 25),
    "MODERATE": (26, 50),
    "SIGNIFICANT": (51, 75),
    "SEVERE": (76, 100),
}

URGENCY_THRESHOLDS = (
    (80, "breaking"),
    (60, "critical"),
    (30, "moderate"),
)


def derive_urgency(score: int) -> str:
    """breaking >= 80, critical 60-79, moderate 30-59, informational below."""
    for threshold, urgency in URGENCY_THRESHOLDS:
        if score >= threshold:
            return urgency
    return "informational"


@dataclass(frozen=True)
class ValidatedScore:
    level: str
    score: int
    clamped: bool


def validate_score(level: Optional[str], score) -> ValidatedScore:
    """Clamp a classifier score into its severity level's range."""
    if level == "INSUFFICIENT_DATA" or score == INSUFFICIENT_DATA:
        return ValidatedScore("INSUFFICIENT_DATA", INSUFFICIENT_DATA, False)

    try:
        value = int(round(float(score)))
    except (TypeError, ValueError):
        return ValidatedScore("INSUFFICIENT_DATA", INSUFFICIENT_DATA, False)

    if level not in LEVEL_RANGES:
        logger.warning("scoring: unknown severity level, using MODERATE", level=level)
        low, high = LEVEL_RANGES["MODERATE"]
        return ValidatedScore("MODERATE", max(low, min(high, value)), True)

    low, high = LEVEL_RANGES[level]
    clamped = max(low, min(high, value))
    return ValidatedScore(level, clamped, clamped != value)


def score_to_level(score: int) -> str:
    if score == INSUFFICIENT_DATA:
        return "INSUFFICIENT_DATA"
    for level, (low, high) in LEVEL_RANGES.items():
        if low <= score <= high:
            return level
    return "MODERATE"


class AggregationPolicy(Protocol):
    """Combines the health/eco/econ sub-scores into a topic's overall score."""

    def __call__(self, health: int, eco: int, econ: int) -> int: ...


class WeightedAggregationPolicy:
    """Weighted mean of usable dimensions, weights renormalized over what is left.

    Dimensions marked INSUFFICIENT_DATA are dropped. With nothing usable the
    policy returns FALLBACK_SCORE.
    """

    def __init__(self, health: float = 0.35, eco: float = 0.40, econ: float = 0.25):
        if min(health, eco, econ) < 0 or health + eco + econ <= 0:
            raise ValueError("weights must be non-negative and not all zero")
        self.weights = {"health": health, "eco": eco, "econ": econ}

    @classmethod
    def from_settings(cls, settings) -> "WeightedAggregationPolicy":
        return cls(
            health=settings.SCORE_WEIGHT_HEALTH,
            eco=settings.SCORE_WEIGHT_ECO,
            econ=settings.SCORE_WEIGHT_ECON,
        )

    def __call__(self, health: int, eco: int, econ: int) -> int:
        dims = [
            (score, self.weights[name])
            for name, score in (("health", health), ("eco", eco), ("econ", econ))
            if score is not None and score >= 0
        ]
        total_weight = sum(w for _, w in dims)
        if not dims or total_weight == 0:
            logger.warning("scoring: all dimensions insufficient, using fallback",
                           fallback=FALLBACK_SCORE)
            return FALLBACK_SCORE
        return int(round(sum(s * w for s, w in dims) / total_weight))


def detect_anomaly(previous: Optional[int], new: int, threshold: int = 25) -> bool:
    """True when a dimension moved by more than one severity level."""
    if previous is None or previous == INSUFFICIENT_DATA or new == INSUFFICIENT_DATA:
        return False
    return abs(new - previous) > threshold


def combine_dimension(values: list[tuple[int, float]]) -> int:
    """Confidence-weighted mean of per-article scores for one dimension.

    values: (score, confidence) pairs. Insufficient scores are skipped; zero or
    missing confidence counts as a small positive weight so a lone article
    still contributes.
    """
    usable = [(s, c if c and c > 0 else 0.1) for s, c in values if s is not None and s >= 0]
    if not usable:
        return INSUFFICIENT_DATA
    total = sum(c for _, c in usable)
    return int(round(sum(s * c for s, c in usable) / total))
