"""
Customer churn predictor.

Records churn signals against customers and keeps one ChurnRiskScore row per
customer up to date. Scoring itself lives in domain/churn_scoring.py; this
module owns persistence, caching and the periodic sweeps.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from domain.churn_scoring import (
    compute_trend,
    generate_recommendations,
    get_signal_weight,
    predict_churn_date,
    risk_level_for,
    risk_levels_at_or_above,
    score_signals,
)
from domain.enums import RiskLevel
from errors import InvalidStateError, NotFoundError
from models import ChurnRiskScore, ChurnSignal, Customer
from services.events import record_event

logger = logging.getLogger(__name__)

CACHE_TTL = timedelta(hours=6)
RECALCULATION_INTERVAL = timedelta(days=1)


def _live_signals(db: Session, customer_id: int, signal_type: Optional[str], now: datetime):
    query = db.query(ChurnSignal).filter(
        ChurnSignal.customer_id == customer_id,
        ChurnSignal.expires_at > now,
    )
    if signal_type:
        query = query.filter(ChurnSignal.signal_type == signal_type)
    return query


# ---------------------------------------------------------------------------
# Signal recording
# ---------------------------------------------------------------------------

def record_signal(
    db: Session,
    customer_id: int,
    signal_type: str,
    value=None,
    confidence: float = 0.8,
    metadata: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> ChurnSignal:
    """Record a churn signal for a customer.

    Non-additive signals refresh the live row of the same type instead of
    adding another. Additive signals stack until their max occurrences,
    after which the latest row is returned unchanged. Only a newly created
    row triggers a risk recalculation.
    """
    now = now or datetime.utcnow()
    weight = get_signal_weight(signal_type)
    if weight is None:
        raise InvalidStateError(f"Unknown signal type: {signal_type}")

    customer = db.query(Customer).filter(Customer.id == customer_id).first()
    if not customer:
        raise NotFoundError(f"Customer {customer_id} not found")

    expires_at = now + timedelta(days=weight.decay_days)
    value_str = "" if value is None else str(value)

    if not weight.is_additive:
        existing = _live_signals(db, customer_id, signal_type, now).first()
        if existing:
            existing.value = value_str
            existing.confidence = confidence
            existing.metadata_json = metadata
            existing.detected_at = now
            existing.expires_at = expires_at
            db.commit()
            db.refresh(existing)
            return existing
    else:
        count = _live_signals(db, customer_id, signal_type, now).count()
        if count >= weight.max_occurrences:
            logger.debug(f"Max occurrences reached for {signal_type} on customer {customer_id}")
            return (
                db.query(ChurnSignal)
                .filter(ChurnSignal.customer_id == customer_id, ChurnSignal.signal_type == signal_type)
                .order_by(ChurnSignal.detected_at.desc(), ChurnSignal.id.desc())
                .first()
            )

    signal = ChurnSignal(
        customer_id=customer_id,
        company_id=customer.company_id,
        signal_type=str(signal_type),
        weight=weight.base_weight,
        value=value_str,
        confidence=confidence,
        decay_days=weight.decay_days,
        detected_at=now,
        expires_at=expires_at,
        metadata_json=metadata,
    )
    db.add(signal)
    db.flush()

    previous = _stored_score(db, customer_id)
    previous_score = previous.score if previous else None
    previous_level = previous.risk_level if previous else None

    risk = calculate_risk_score(db, customer_id, now=now, commit=False)

    record_event(
        db, "churn.signal.detected",
        {
            "signal_id": signal.id,
            "signal_type": signal.signal_type,
            "customer_id": customer_id,
            "previous_score": previous_score,
            "new_score": risk.score,
            "risk_level_changed": previous_level != risk.risk_level,
            "previous_risk_level": previous_level,
            "new_risk_level": risk.risk_level,
        },
        company_id=customer.company_id, aggregate_type="customer", aggregate_id=customer_id,
    )

    if risk.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
        actions = risk.recommended_actions or []
        record_event(
            db, "churn.high_risk.detected",
            {
                "customer_id": customer_id,
                "score": risk.score,
                "risk_level": risk.risk_level,
                "recommended_intervention": actions[0] if actions else "save_flow",
            },
            company_id=customer.company_id, aggregate_type="customer", aggregate_id=customer_id,
        )
        logger.info(f"Customer {customer_id} is {risk.risk_level} churn risk ({risk.score})")

    db.commit()
    db.refresh(signal)
    logger.info(f"Churn signal {signal_type} recorded for customer {customer_id}")
    return signal


# ---------------------------------------------------------------------------
# Risk scores
# ---------------------------------------------------------------------------

def _stored_score(db: Session, customer_id: int) -> Optional[ChurnRiskScore]:
    return db.query(ChurnRiskScore).filter(ChurnRiskScore.customer_id == customer_id).first()


def calculate_risk_score(
    db: Session,
    customer_id: int,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> ChurnRiskScore:
    """Recompute and store a customer's churn risk from their live signals."""
    now = now or datetime.utcnow()
    customer = db.query(Customer).filter(Customer.id == customer_id).first()
    if not customer:
        raise NotFoundError(f"Customer {customer_id} not found")

    signals = _live_signals(db, customer_id, None, now).all()
    score, breakdown = score_signals(signals, now)
    level = risk_level_for(score)

    stored = _stored_score(db, customer_id)
    trend, delta = compute_trend(score, stored.score if stored else None)

    if stored is None:
        stored = ChurnRiskScore(customer_id=customer_id, company_id=customer.company_id)
        db.add(stored)

    stored.score = score
    stored.risk_level = str(level)
    stored.signal_breakdown = breakdown
    stored.trend = trend
    stored.trend_delta = delta
    stored.predicted_churn_date = predict_churn_date(score, trend, now)
    stored.recommended_actions = generate_recommendations(level, breakdown)
    stored.calculated_at = now
    stored.next_calculation_at = now + RECALCULATION_INTERVAL

    if commit:
        db.commit()
        db.refresh(stored)
    else:
        db.flush()
    return stored


def get_customer_risk_score(db: Session, customer_id: int, now: Optional[datetime] = None) -> ChurnRiskScore:
    """Stored score if calculated within the last 6 hours, else a fresh one."""
    now = now or datetime.utcnow()
    cached = _stored_score(db, customer_id)
    if cached and cached.calculated_at and cached.calculated_at > now - CACHE_TTL:
        return cached
    return calculate_risk_score(db, customer_id, now=now)


def get_high_risk_customers(
    db: Session,
    company_id: int,
    min_level: str = RiskLevel.HIGH,
    limit: int = 50,
    offset: int = 0,
) -> List[ChurnRiskScore]:
    return (
        db.query(ChurnRiskScore)
        .filter(
            ChurnRiskScore.company_id == company_id,
            ChurnRiskScore.risk_level.in_(risk_levels_at_or_above(min_level)),
        )
        .order_by(ChurnRiskScore.score.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_customer_signals(db: Session, customer_id: int, now: Optional[datetime] = None) -> List[ChurnSignal]:
    now = now or datetime.utcnow()
    return _live_signals(db, customer_id, None, now).order_by(ChurnSignal.detected_at.desc()).all()


# ---------------------------------------------------------------------------
# Periodic sweeps
# ---------------------------------------------------------------------------

def purge_expired_signals(db: Session, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    deleted = (
        db.query(ChurnSignal)
        .filter(ChurnSignal.expires_at < now)
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info(f"Purged {deleted} expired churn signals")
    return deleted


def recalculate_all_risk_scores(db: Session, now: Optional[datetime] = None, company_id: Optional[int] = None) -> int:
    """Recalculate scores for every customer with live signals. Returns the count."""
    now = now or datetime.utcnow()
    query = db.query(ChurnSignal.customer_id).filter(ChurnSignal.expires_at > now)
    if company_id is not None:
        query = query.filter(ChurnSignal.company_id == company_id)
    customer_ids = [row[0] for row in query.distinct().all()]

    recalculated = 0
    for customer_id in customer_ids:
        try:
            calculate_risk_score(db, customer_id, now=now)
            recalculated += 1
        except NotFoundError:
            logger.error(f"Failed to recalculate risk score for customer {customer_id}")
            db.rollback()
    logger.info(f"Recalculated {recalculated} churn risk scores")
    return recalculated
