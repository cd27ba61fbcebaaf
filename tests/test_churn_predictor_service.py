from datetime import timedelta

import pytest

from conftest import NOW
from errors import InvalidStateError, NotFoundError
from models import ChurnRiskScore, ChurnSignal, Customer, MomentumEvent
from services import churn_predictor_service


def test_unknown_signal_type_or_customer(db, customer):
    with pytest.raises(InvalidStateError):
        churn_predictor_service.record_signal(db, customer.id, "MOOD_SWING", now=NOW)
    with pytest.raises(NotFoundError):
        churn_predictor_service.record_signal(db, 9999, "PAYMENT_FAILED", now=NOW)


def test_single_signal_scores_customer(db, customer):
    signal = churn_predictor_service.record_signal(
        db, customer.id, "CANCELLATION_PAGE_VISIT", value="pricing", confidence=1.0, now=NOW
    )

    assert signal.weight == 30
    assert signal.expires_at == NOW + timedelta(days=14)
    risk = db.query(ChurnRiskScore).filter_by(customer_id=customer.id).one()
    assert risk.score == 30.0
    assert risk.risk_level == "LOW"
    assert risk.signal_breakdown["lifecycle"] == 30.0
    assert risk.next_calculation_at == NOW + timedelta(days=1)

    event = db.query(MomentumEvent).filter_by(event_type="churn.signal.detected").one()
    assert event.payload["previous_score"] is None
    assert event.payload["new_score"] == 30.0
    assert event.payload["risk_level_changed"] is True


def test_non_additive_signal_is_refreshed_not_duplicated(db, customer):
    first = churn_predictor_service.record_signal(db, customer.id, "CARD_EXPIRING", value="03/26", now=NOW)
    second = churn_predictor_service.record_signal(
        db, customer.id, "CARD_EXPIRING", value="04/26", now=NOW + timedelta(days=2)
    )

    assert second.id == first.id
    assert second.value == "04/26"
    assert second.expires_at == NOW + timedelta(days=32)
    assert db.query(ChurnSignal).count() == 1


def test_additive_signal_stacks_to_max_and_flags_high_risk(db, customer):
    for i in range(4):
        churn_predictor_service.record_signal(
            db, customer.id, "PAYMENT_FAILED", confidence=1.0, now=NOW + timedelta(seconds=i)
        )

    assert db.query(ChurnSignal).filter_by(signal_type="PAYMENT_FAILED").count() == 3
    risk = db.query(ChurnRiskScore).filter_by(customer_id=customer.id).one()
    assert risk.score == pytest.approx(75.0, abs=0.01)
    assert risk.risk_level == "HIGH"
    assert risk.recommended_actions[:2] == ["save_flow", "personal_outreach"]
    assert "payment_recovery" in risk.recommended_actions
    assert risk.predicted_churn_date is not None

    high_risk = db.query(MomentumEvent).filter_by(event_type="churn.high_risk.detected").all()
    assert len(high_risk) == 1
    assert high_risk[0].payload["recommended_intervention"] == "save_flow"


def test_score_decays_over_time(db, customer):
    churn_predictor_service.record_signal(db, customer.id, "COMPETITOR_MENTION", confidence=1.0, now=NOW)

    risk = churn_predictor_service.calculate_risk_score(db, customer.id, now=NOW + timedelta(days=15))

    assert risk.score == 10.0
    assert risk.trend == "improving"
    assert risk.trend_delta == -10.0


def test_cached_score_is_reused_for_six_hours(db, customer):
    churn_predictor_service.record_signal(db, customer.id, "COMPETITOR_MENTION", confidence=1.0, now=NOW)

    cached = churn_predictor_service.get_customer_risk_score(db, customer.id, now=NOW + timedelta(hours=1))
    assert cached.calculated_at == NOW

    fresh = churn_predictor_service.get_customer_risk_score(db, customer.id, now=NOW + timedelta(hours=7))
    assert fresh.calculated_at == NOW + timedelta(hours=7)


def test_high_risk_listing_filters_by_level(db, company, customer):
    calm = Customer(company_id=company.id, first_name="Kim", created_at=NOW)
    db.add(calm)
    db.commit()
    for i in range(3):
        churn_predictor_service.record_signal(
            db, customer.id, "PAYMENT_FAILED", confidence=1.0, now=NOW + timedelta(seconds=i)
        )
    churn_predictor_service.record_signal(db, calm.id, "EMAIL_DISENGAGED", now=NOW)

    high = churn_predictor_service.get_high_risk_customers(db, company.id)
    everyone = churn_predictor_service.get_high_risk_customers(db, company.id, min_level="MINIMAL")

    assert [r.customer_id for r in high] == [customer.id]
    assert [r.customer_id for r in everyone] == [customer.id, calm.id]


def test_purge_and_recalculate(db, customer):
    churn_predictor_service.record_signal(db, customer.id, "CART_ABANDONED", now=NOW)
    churn_predictor_service.record_signal(db, customer.id, "PLAN_DOWNGRADE", now=NOW)

    later = NOW + timedelta(days=20)
    assert churn_predictor_service.purge_expired_signals(db, now=later) == 1
    assert [s.signal_type for s in churn_predictor_service.get_customer_signals(db, customer.id, now=later)] == [
        "PLAN_DOWNGRADE"
    ]

    assert churn_predictor_service.recalculate_all_risk_scores(db, now=later) == 1
    risk = db.query(ChurnRiskScore).filter_by(customer_id=customer.id).one()
    assert risk.calculated_at == later
