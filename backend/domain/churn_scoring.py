"""
domain/churn_scoring.py - Customer-level churn risk scoring.

Signals (failed payments, abandoned carts, cancellation page visits...) are
recorded against a customer and decay linearly to zero over their decay
window. A customer's risk score is the sum of the decayed, confidence-scaled
weights of their live signals, capped at 100.

    contribution = weight * max(0, 1 - age_days / decay_days) * confidence

Levels:
    CRITICAL >= 80   HIGH >= 60   MEDIUM >= 40   LOW >= 20   MINIMAL < 20
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from domain.enums import CustomerSignalType, RiskLevel, SignalCategory


# ---------------------------------------------------------------------------
# Signal Weights
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SignalWeight:
    signal_type: str
    category: str
    base_weight: float
    decay_days: int
    is_additive: bool = False  # additive signals stack up to max_occurrences
    max_occurrences: int = 1


_WEIGHTS: list[SignalWeight] = [
    # Engagement
    SignalWeight(CustomerSignalType.LOGIN_DECLINE, SignalCategory.ENGAGEMENT, 15, 30),
    SignalWeight(CustomerSignalType.EMAIL_UNSUBSCRIBE, SignalCategory.ENGAGEMENT, 15, 60),
    SignalWeight(CustomerSignalType.EMAIL_DISENGAGED, SignalCategory.ENGAGEMENT, 10, 30),
    # Payment
    SignalWeight(CustomerSignalType.PAYMENT_FAILED, SignalCategory.PAYMENT, 25, 30, True, 3),
    SignalWeight(CustomerSignalType.CARD_EXPIRING, SignalCategory.PAYMENT, 15, 30),
    # Behaviour
    SignalWeight(CustomerSignalType.SUBSCRIPTION_SKIP, SignalCategory.BEHAVIOR, 10, 30, True, 3),
    SignalWeight(CustomerSignalType.CART_ABANDONED, SignalCategory.BEHAVIOR, 8, 14, True, 5),
    SignalWeight(CustomerSignalType.CHECKOUT_CHURN_RISK, SignalCategory.BEHAVIOR, 10, 7, True, 3),
    # Lifecycle
    SignalWeight(CustomerSignalType.CANCELLATION_PAGE_VISIT, SignalCategory.LIFECYCLE, 30, 14),
    SignalWeight(CustomerSignalType.PLAN_DOWNGRADE, SignalCategory.LIFECYCLE, 20, 60),
    # External
    SignalWeight(CustomerSignalType.NEGATIVE_SUPPORT_TICKET, SignalCategory.EXTERNAL, 15, 30, True, 3),
    SignalWeight(CustomerSignalType.COMPETITOR_MENTION, SignalCategory.EXTERNAL, 20, 30),
    SignalWeight(CustomerSignalType.NEGATIVE_REVIEW, SignalCategory.EXTERNAL, 15, 60),
]

SIGNAL_WEIGHTS: dict[str, SignalWeight] = {w.signal_type: w for w in _WEIGHTS}

RISK_LEVEL_ORDER: list[str] = [
    RiskLevel.MINIMAL,
    RiskLevel.LOW,
    RiskLevel.MEDIUM,
    RiskLevel.HIGH,
    RiskLevel.CRITICAL,
]


def get_signal_weight(signal_type: str) -> Optional[SignalWeight]:
    return SIGNAL_WEIGHTS.get(signal_type)


def empty_breakdown() -> dict[str, float]:
    return {category.value: 0.0 for category in SignalCategory}


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def signal_contribution(
    weight: float,
    detected_at: datetime,
    decay_days: int,
    confidence: float,
    now: datetime,
) -> float:
    """Decayed, confidence-scaled weight of one signal at time ``now``."""
    if decay_days <= 0:
        return 0.0
    age_days = (now - detected_at).total_seconds() / 86400
    decay_factor = max(0.0, 1 - age_days / decay_days)
    return weight * decay_factor * confidence


def score_signals(signals: Iterable, now: datetime) -> tuple[float, dict[str, float]]:
    """Sum contributions of live signals.

    ``signals`` are ChurnSignal rows (anything with signal_type, weight,
    detected_at, decay_days, confidence). Signal types missing from the
    weight table are ignored.

    Returns:
        (score capped at 100, per-category breakdown)
    """
    total = 0.0
    breakdown = empty_breakdown()
    for signal in signals:
        config = SIGNAL_WEIGHTS.get(signal.signal_type)
        if config is None:
            continue
        confidence = signal.confidence if signal.confidence is not None else 0.8
        effective = signal_contribution(
            signal.weight, signal.detected_at, signal.decay_days, confidence, now
        )
        total += effective
        breakdown[config.category.value] += effective

    score = round(min(100.0, total), 2)
    return score, {k: round(v, 2) for k, v in breakdown.items()}


def risk_level_for(score: float) -> str:
    if score >= 80:
        return RiskLevel.CRITICAL
    if score >= 60:
        return RiskLevel.HIGH
    if score >= 40:
        return RiskLevel.MEDIUM
    if score >= 20:
        return RiskLevel.LOW
    return RiskLevel.MINIMAL


def compute_trend(score: float, previous_score: float | None) -> tuple[str, float]:
    """Compare with the stored score. A rising score means the customer is declining."""
    delta = round(score - previous_score, 2) if previous_score is not None else 0.0
    if delta > 5:
        return "declining", delta
    if delta < -5:
        return "improving", delta
    return "stable", delta


def generate_recommendations(risk_level: str, breakdown: dict[str, float]) -> list[str]:
    recommendations: list[str] = []

    if risk_level in (RiskLevel.CRITICAL, RiskLevel.HIGH):
        recommendations += ["save_flow", "personal_outreach"]

    if breakdown.get(SignalCategory.PAYMENT.value, 0) > 20:
        recommendations += ["payment_recovery", "payment_method_update"]
    if breakdown.get(SignalCategory.ENGAGEMENT.value, 0) > 20:
        recommendations += ["re_engagement_email", "exclusive_offer"]
    if breakdown.get(SignalCategory.BEHAVIOR.value, 0) > 15:
        recommendations += ["product_recommendation", "pause_offer"]

    # Dedupe, preserving order
    return list(dict.fromkeys(recommendations))


def predict_churn_date(score: float, trend: str, now: datetime) -> Optional[datetime]:
    """Estimated churn date for scores of 40 and above, else None."""
    if score < 40:
        return None
    if trend == "declining":
        days = max(7, math.floor((100 - score) * 0.5))
    elif trend == "improving":
        days = max(30, math.floor((100 - score) * 1.5))
    else:
        days = math.floor(100 - score)
    return now + timedelta(days=days)


def risk_levels_at_or_above(level: str) -> list[str]:
    try:
        index = RISK_LEVEL_ORDER.index(level)
    except ValueError:
        index = RISK_LEVEL_ORDER.index(RiskLevel.HIGH)
    return [str(lvl) for lvl in RISK_LEVEL_ORDER[index:]]
