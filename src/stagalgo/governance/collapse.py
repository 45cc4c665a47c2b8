"""Collapse scoring from oracle signals.

Six factor scores in [0, 1] are blended with fixed weights. A factor comes
from the signal's embedded sub-score when present, otherwise from its
declared severity.
"""

from datetime import datetime

from stagalgo.core.types import OracleSignal, Severity
from stagalgo.governance.models import CollapseFactors, CollapseRecommendation, CollapseSignal

FACTOR_WEIGHTS: dict[str, float] = {
    "fundamental_decline": 0.25,
    "unusual_volume": 0.15,
    "abnormal_spreads": 0.15,
    "oracle_red_flags": 0.20,
    "negative_sentiment": 0.15,
    "technical_breakdown": 0.10,
}

SEVERITY_SCORES: dict[Severity, float] = {
    Severity.LOW: 0.2,
    Severity.MEDIUM: 0.4,
    Severity.HIGH: 0.7,
    Severity.CRITICAL: 0.9,
}
DEFAULT_FACTOR_SCORE = 0.3
DEFAULT_CONFIDENCE = 0.7


def factor_score(signal: OracleSignal, key: str) -> float:
    """Sub-score ``key`` from ``signal.factors`` (capped at 1), else severity-based."""
    value = signal.factors.get(key)
    if value:
        return max(0.0, min(value, 1.0))
    if signal.severity is None:
        return DEFAULT_FACTOR_SCORE
    return SEVERITY_SCORES[signal.severity]


def red_flag_score(signal: OracleSignal) -> float:
    if signal.severity == Severity.CRITICAL:
        return 0.9
    if signal.severity == Severity.HIGH:
        return 0.7
    return 0.3


def collapse_factors(signal: OracleSignal) -> CollapseFactors:
    return CollapseFactors(
        fundamental_decline=factor_score(signal, "fundamental"),
        unusual_volume=factor_score(signal, "volume"),
        abnormal_spreads=factor_score(signal, "spread"),
        oracle_red_flags=red_flag_score(signal),
        negative_sentiment=factor_score(signal, "sentiment"),
        technical_breakdown=factor_score(signal, "technical"),
    )


def weighted_score(factors: CollapseFactors) -> float:
    values = factors.model_dump()
    return sum(values[name] * weight for name, weight in FACTOR_WEIGHTS.items())


def recommend(
    score: float,
    exit_threshold: float = 0.8,
    reduce_threshold: float = 0.6,
    monitor_threshold: float = 0.4,
) -> CollapseRecommendation:
    if score > exit_threshold:
        return "exit_immediately"
    if score > reduce_threshold:
        return "reduce_exposure"
    if score > monitor_threshold:
        return "monitor_closely"
    return "no_action"


def score_signal(
    signal: OracleSignal,
    generated_at: datetime,
    exit_threshold: float = 0.8,
    reduce_threshold: float = 0.6,
    monitor_threshold: float = 0.4,
) -> CollapseSignal:
    factors = collapse_factors(signal)
    score = weighted_score(factors)
    return CollapseSignal(
        symbol=signal.symbol,
        score=score,
        factors=factors,
        recommendation=recommend(score, exit_threshold, reduce_threshold, monitor_threshold),
        confidence=signal.confidence if signal.confidence is not None else DEFAULT_CONFIDENCE,
        generated_at=generated_at,
    )
