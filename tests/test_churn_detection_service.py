import httpx
import pytest

from config import settings
from domain.checkout_signals import CheckoutEvent
from errors import NotFoundError
from models import CartSaveAttempt, ChurnSignal, CSMessage, CSSession, FunnelSession, MomentumEvent
from services import churn_detection_service

T0 = 1_700_000_000_000

# A shopper who wanders off to other tabs, stares at the total, goes back
# twice and then tries a promo code after sitting on the email field.
HESITANT_CHECKOUT = [
    (0, {"type": "CHECKOUT_STARTED"}),
    (1000, {"type": "FIELD_FOCUS", "field": "email"}),
    (2000, {"type": "TAB_BLUR"}),
    (12000, {"type": "TAB_FOCUS"}),
    (13000, {"type": "TAB_BLUR"}),
    (23000, {"type": "TAB_FOCUS"}),
    (24000, {"type": "SCROLL_UP"}),
    (25000, {"type": "SCROLL_UP"}),
    (26000, {"type": "TOTAL_VIEWED", "duration": 6000}),
    (27000, {"type": "BACK_NAVIGATION"}),
    (28000, {"type": "BACK_NAVIGATION"}),
    (32000, {"type": "PROMO_CODE_ATTEMPT", "promo_code": "WELCOME"}),
]


def _track(db, token, offset, fields):
    event = CheckoutEvent(timestamp=T0 + offset, **fields)
    return churn_detection_service.track_checkout_event(db, token, event)


def _replay(db, token, steps):
    return [_track(db, token, offset, fields) for offset, fields in steps]


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

def test_session_takes_customer_from_cart(db, company, customer, make_cart):
    cart = make_cart(company, customer)
    session = churn_detection_service.start_checkout_session(db, company.id, cart_id=cart.id, customer_id=None)

    assert session.customer_id == customer.id
    assert session.checkout_behavior["tab_blur_count"] == 0
    assert len(session.session_token) >= 32


def test_session_rejects_cart_from_other_company(db, company, other_company, make_cart):
    cart = make_cart(company)
    with pytest.raises(NotFoundError):
        churn_detection_service.start_checkout_session(db, other_company.id, cart_id=cart.id)


def test_unknown_session_raises(db):
    with pytest.raises(NotFoundError):
        churn_detection_service.track_checkout_event(db, "nope", CheckoutEvent(type="TAB_BLUR"))


# ---------------------------------------------------------------------------
# Event tracking
# ---------------------------------------------------------------------------

def test_behaviour_is_persisted_between_events(db, company):
    session = churn_detection_service.start_checkout_session(db, company.id, lead_id="lead-1")
    _replay(db, session.session_token, HESITANT_CHECKOUT[:6])

    stored = db.get(FunnelSession, session.id).checkout_behavior
    assert stored["tab_blur_count"] == 2
    assert stored["total_tab_blur_time"] == 20000
    assert stored["current_field"] == "email"


def test_comparison_shopping_alone_does_not_alert(db, company):
    session = churn_detection_service.start_checkout_session(db, company.id)
    results = _replay(db, session.session_token, HESITANT_CHECKOUT[:6])

    assert results[-1] == {}
    assert db.query(MomentumEvent).filter_by(event_type="checkout.churn.detected").count() == 0


def test_hesitant_checkout_escalates_to_save_flow(db, company, customer, make_cart):
    cart = make_cart(company, customer)
    session = churn_detection_service.start_checkout_session(db, company.id, cart_id=cart.id)

    results = _replay(db, session.session_token, HESITANT_CHECKOUT)

    # Price shock on top of comparison shopping crosses the alert line
    first_alert = results[8]["alert"]
    assert first_alert["risk_score"] == 50
    assert first_alert["predicted_reason"] == "TOO_EXPENSIVE"
    assert first_alert["suggested_intervention"]["urgency"] == "gentle"
    assert results[10]["alert"]["risk_score"] == 60.5

    # Field hesitation pushes it over the high-risk threshold
    final = results[-1]["alert"]
    assert final["risk_score"] == 71.0
    assert final["suggested_intervention"]["urgency"] == "immediate"
    assert {s["type"] for s in final["signals"]} == {
        "COMPARISON_SHOPPING", "PRICE_SHOCK", "RECONSIDERATION", "FIELD_HESITATION",
    }

    attempts = db.query(CartSaveAttempt).filter_by(cart_id=cart.id).all()
    assert len(attempts) == 1
    attempt = attempts[0]
    assert attempt.diagnosis_reason == "TOO_EXPENSIVE"
    assert attempt.metadata_json["source"] == "churn_detection"
    assert attempt.metadata_json["channels_used"] == ["REALTIME"]
    assert attempt.metadata_json["churn_detection"]["risk_score"] == 71.0
    assert attempt.metadata_json["churn_detection"]["session_id"] == session.session_token

    alerts = db.query(MomentumEvent).filter_by(event_type="checkout.churn.detected").count()
    assert alerts == 4
    # Additive signal, capped at three live occurrences
    signals = db.query(ChurnSignal).filter_by(customer_id=customer.id, signal_type="CHECKOUT_CHURN_RISK").all()
    assert len(signals) == 3


def test_alert_without_customer_records_no_signal(db, company, make_cart):
    cart = make_cart(company)
    session = churn_detection_service.start_checkout_session(db, company.id, cart_id=cart.id)

    _replay(db, session.session_token, HESITANT_CHECKOUT)

    assert db.query(ChurnSignal).count() == 0
    assert db.query(CartSaveAttempt).filter_by(cart_id=cart.id).count() == 1


def test_session_alert_is_company_scoped(db, company, other_company):
    session = churn_detection_service.start_checkout_session(db, company.id)
    _replay(db, session.session_token, HESITANT_CHECKOUT[:9])

    alert = churn_detection_service.get_session_alert(
        db, session.session_token, company_id=company.id, now=T0 + 26000
    )
    assert alert.risk_score == 50

    with pytest.raises(NotFoundError):
        churn_detection_service.get_session_alert(db, session.session_token, company_id=other_company.id)


# ---------------------------------------------------------------------------
# Chat escalation
# ---------------------------------------------------------------------------

def _alerted_session(db, company, **session_kwargs):
    session = churn_detection_service.start_checkout_session(db, company.id, **session_kwargs)
    _replay(db, session.session_token, HESITANT_CHECKOUT[:9])
    alert = churn_detection_service.get_session_alert(db, session.session_token, now=T0 + 26000)
    return session, alert


def test_escalation_needs_customer_or_lead(db, company):
    session, alert = _alerted_session(db, company)

    assert churn_detection_service.escalate_to_chat(db, session.session_token, alert) == {"escalated": False}
    assert churn_detection_service.escalate_to_chat(db, "missing", alert) == {"escalated": False}
    assert db.query(CSSession).count() == 0


def test_escalation_opens_proactive_chat(db, company, customer, make_cart):
    cart = make_cart(company, customer)
    session, alert = _alerted_session(db, company, cart_id=cart.id)

    result = churn_detection_service.escalate_to_chat(db, session.session_token, alert)

    assert result["escalated"] is True
    cs_session = db.get(CSSession, result["chat_session_id"])
    assert cs_session.customer_id == customer.id
    assert cs_session.lead_id is None
    assert cs_session.context["type"] == "PROACTIVE_CHECKOUT_HELP"
    assert cs_session.context["cart_value"] == 150.0
    assert cs_session.context["predicted_reason"] == "TOO_EXPENSIVE"

    message = db.query(CSMessage).filter_by(session_id=cs_session.id).one()
    assert message.role == "ASSISTANT"
    assert message.content.startswith("Hey there! I noticed you might be looking for the best deal.")
    assert message.metadata_json == {"proactive": True, "trigger_reason": "TOO_EXPENSIVE"}
    assert db.query(MomentumEvent).filter_by(event_type="cs.session.proactive").count() == 1


def test_escalation_for_lead_notifies_webhook(db, company, monkeypatch):
    received = []

    def handler(request):
        received.append(request)
        return httpx.Response(202)

    real_client = httpx.Client
    monkeypatch.setattr(settings, "CS_WEBHOOK_URL", "https://cs.example.com/hooks/proactive")
    monkeypatch.setattr(
        churn_detection_service.httpx, "Client",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )
    session, alert = _alerted_session(db, company, lead_id="lead-42")

    result = churn_detection_service.escalate_to_chat(db, session.session_token, alert)

    assert result["escalated"] is True
    assert db.get(CSSession, result["chat_session_id"]).lead_id == "lead-42"
    assert len(received) == 1
    assert received[0].url == "https://cs.example.com/hooks/proactive"


def test_webhook_failure_does_not_block_escalation(db, company, monkeypatch):
    real_client = httpx.Client
    monkeypatch.setattr(settings, "CS_WEBHOOK_URL", "https://cs.example.com/hooks/proactive")
    monkeypatch.setattr(
        churn_detection_service.httpx, "Client",
        lambda **kwargs: real_client(transport=httpx.MockTransport(lambda r: httpx.Response(500)), **kwargs),
    )
    session, alert = _alerted_session(db, company, lead_id="lead-7")

    result = churn_detection_service.escalate_to_chat(db, session.session_token, alert)

    assert result["escalated"] is True
