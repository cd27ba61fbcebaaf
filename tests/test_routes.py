import base64

import pytest

from models import User
from domain.checkout_signals import now_ms
from routes.auth import create_access_token, get_password_hash


# ---------------------------------------------------------------------------
# Health & auth
# ---------------------------------------------------------------------------

def test_root_and_health(client):
    assert client.get("/").json()["status"] == "running"
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["ai_enabled"] is False


def test_login_and_me(client, user):
    resp = client.post("/api/v1/auth/login", json={"username": "admin", "password": "secret"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["user"]["company_id"] == user.company_id

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {body['token']}"})
    assert me.status_code == 200
    assert me.json()["username"] == "admin"


def test_login_rejects_bad_password(client, user):
    resp = client.post("/auth/login", json={"username": "admin", "password": "wrong"})
    assert resp.status_code == 401


def test_protected_routes_need_token(client):
    assert client.get("/carts/abandoned").status_code == 401
    resp = client.get("/carts/abandoned", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


def test_admin_sweeps_require_admin(client, db, company):
    manager = User(
        username="mgr", password_hash=get_password_hash("pw"), role="manager",
        name="Manager", company_id=company.id,
    )
    db.add(manager)
    db.commit()
    token = create_access_token({"sub": manager.id})

    resp = client.post("/cart-save/dispatch-due", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Carts
# ---------------------------------------------------------------------------

def test_create_cart_with_inline_customer(client, auth_headers):
    resp = client.post("/api/v1/carts/", headers=auth_headers, json={
        "customer": {"first_name": "Noor", "email": "noor@example.com"},
        "items": [
            {"product_name": "Rain Shell", "unit_price": 89.5, "quantity": 2},
        ],
    })
    assert resp.status_code == 201
    cart = resp.json()
    assert cart["grand_total"] == 179.0
    assert cart["item_count"] == 2
    assert cart["customer_id"] is not None

    fetched = client.get(f"/api/v1/carts/{cart['id']}", headers=auth_headers)
    assert fetched.status_code == 200
    assert fetched.json()["items"][0]["product_name"] == "Rain Shell"


def test_cart_validation(client, auth_headers):
    resp = client.post("/carts/", headers=auth_headers, json={"items": []})
    assert resp.status_code == 422


def test_other_company_cart_is_hidden(client, auth_headers, other_company, make_cart):
    foreign = make_cart(other_company)
    assert client.get(f"/carts/{foreign.id}", headers=auth_headers).status_code == 404
    resp = client.post("/cart-save/initiate", headers=auth_headers, json={"cart_id": foreign.id})
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Cart not found"}


@pytest.mark.parametrize("raw", ["nope", "1:99999999999999:éé", "1:²:abcd"])
def test_invalid_recovery_link(client, raw):
    token = base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")
    resp = client.get(f"/carts/recover/{token}")
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Recovery link is invalid or expired"}


# ---------------------------------------------------------------------------
# Checkout tracking
# ---------------------------------------------------------------------------

def test_public_checkout_session_and_events(client, company, customer, make_cart):
    cart = make_cart(company, customer)
    resp = client.post("/checkout/sessions", json={"company_code": "ACME", "cart_token": cart.session_token})
    assert resp.status_code == 201
    session = resp.json()
    assert session["cart_id"] == cart.id
    assert session["customer_id"] == customer.id

    event = client.post(
        f"/checkout/sessions/{session['session_token']}/events",
        json={"type": "FIELD_FOCUS", "field": "email"},
    )
    assert event.status_code == 200
    assert event.json() == {"alert": None}


def test_checkout_unknown_company_or_session(client, company):
    resp = client.post("/checkout/sessions", json={"company_code": "NOPE"})
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Unknown company"

    resp = client.post("/checkout/sessions/missing/events", json={"type": "TAB_BLUR"})
    assert resp.status_code == 404


def test_checkout_rejects_unknown_event_type(client, company):
    token = client.post("/checkout/sessions", json={"company_code": "ACME"}).json()["session_token"]
    resp = client.post(f"/checkout/sessions/{token}/events", json={"type": "DANCE"})
    assert resp.status_code == 422


def test_escalation_flow(client, auth_headers, company, customer, make_cart):
    cart = make_cart(company, customer)
    token = client.post(
        "/checkout/sessions", json={"company_code": "ACME", "cart_token": cart.session_token}
    ).json()["session_token"]

    quiet = client.post(f"/checkout/sessions/{token}/escalate", headers=auth_headers)
    assert quiet.json() == {"escalated": False, "chat_session_id": None, "reason": "no_churn_risk"}

    base = now_ms() - 40_000
    events = [
        (0, {"type": "TAB_BLUR"}),
        (10_000, {"type": "TAB_FOCUS"}),
        (11_000, {"type": "TAB_BLUR"}),
        (21_000, {"type": "TAB_FOCUS"}),
        (22_000, {"type": "SCROLL_UP"}),
        (23_000, {"type": "SCROLL_UP"}),
        (24_000, {"type": "TOTAL_VIEWED", "duration": 6000}),
    ]
    last = None
    for offset, body in events:
        last = client.post(f"/checkout/sessions/{token}/events", json={**body, "timestamp": base + offset})
    assert last.json()["alert"]["risk_score"] == 50

    escalated = client.post(f"/checkout/sessions/{token}/escalate", headers=auth_headers).json()
    assert escalated["escalated"] is True
    assert escalated["chat_session_id"] is not None


# ---------------------------------------------------------------------------
# Cart save, churn, delivery, events
# ---------------------------------------------------------------------------

def test_cart_save_lifecycle(client, auth_headers, company, customer, make_cart):
    cart = make_cart(company, customer)

    started = client.post("/cart-save/initiate", headers=auth_headers, json={"cart_id": cart.id}).json()
    assert started["stage"] == "BROWSE_REMINDER"
    attempt_id = started["attempt_id"]

    executed = client.post(f"/cart-save/attempts/{attempt_id}/execute", headers=auth_headers)
    assert executed.status_code == 200
    assert executed.json()["channels"] == ["IN_APP"]

    progressed = client.post(
        f"/cart-save/attempts/{attempt_id}/progress", headers=auth_headers, json={"response_type": "CLICKED"}
    )
    assert progressed.json() == {"stage": "PATTERN_INTERRUPT", "status": "ACTIVE"}

    status = client.get(f"/cart-save/attempts/{attempt_id}/status", headers=auth_headers).json()
    assert status["intervention_count"] == 1

    attempts = client.get("/cart-save/attempts", headers=auth_headers).json()
    assert attempts[0]["interventions"][0]["stage"] == "BROWSE_REMINDER"

    bad = client.post(
        f"/cart-save/attempts/{attempt_id}/diagnosis", headers=auth_headers, json={"reason": "BORED"}
    )
    assert bad.status_code == 422


def test_cart_save_config_endpoints(client, auth_headers):
    updated = client.put(
        "/cart-save/config", headers=auth_headers, json={"stages": {"browse_reminder": {"enabled": False}}}
    ).json()
    assert updated["stages"]["browse_reminder"]["enabled"] is False
    assert client.get("/cart-save/config", headers=auth_headers).json() == updated


def test_churn_signal_and_risk(client, auth_headers, customer):
    resp = client.post("/churn/signals", headers=auth_headers, json={
        "customer_id": customer.id, "signal_type": "CANCELLATION_PAGE_VISIT", "confidence": 1.0,
    })
    assert resp.status_code == 201

    risk = client.get(f"/churn/customers/{customer.id}/risk", headers=auth_headers).json()
    assert risk["score"] == 30.0
    assert risk["risk_level"] == "LOW"

    assert client.get("/churn/high-risk", headers=auth_headers).json() == []
    assert len(client.get("/churn/high-risk?min_level=LOW", headers=auth_headers).json()) == 1


def test_churn_signal_for_foreign_customer(client, auth_headers, db, other_company):
    from models import Customer

    stranger = Customer(company_id=other_company.id, first_name="Ola")
    db.add(stranger)
    db.commit()
    resp = client.post("/churn/signals", headers=auth_headers, json={
        "customer_id": stranger.id, "signal_type": "PAYMENT_FAILED",
    })
    assert resp.status_code == 404


def test_delivery_send_and_rate_limit(client, auth_headers, customer):
    payload = {"customer_id": customer.id, "channel": "EMAIL", "subject": "Hi", "body": "Your cart is waiting"}
    for _ in range(3):
        assert client.post("/delivery/send", headers=auth_headers, json=payload).status_code == 201

    resp = client.post("/delivery/send", headers=auth_headers, json=payload)
    assert resp.status_code == 429
    assert resp.json() == {"detail": "Rate limit exceeded: EMAIL daily limit reached"}

    history = client.get(f"/delivery/customers/{customer.id}/messages", headers=auth_headers).json()
    assert len(history) == 3


def test_unsubscribe_then_send_conflicts(client, auth_headers, customer):
    resp = client.post("/delivery/unsubscribe", headers=auth_headers, json={"customer_id": customer.id, "channel": "SMS"})
    assert resp.json()["unsubscribed"] is True

    resp = client.post("/delivery/send", headers=auth_headers, json={
        "customer_id": customer.id, "channel": "SMS", "body": "Hello",
    })
    assert resp.status_code == 409


def test_event_outbox_poll_and_ack(client, auth_headers, company, customer, make_cart):
    cart = make_cart(company, customer)
    client.post("/cart-save/initiate", headers=auth_headers, json={"cart_id": cart.id})

    pending = client.get("/events/", headers=auth_headers).json()
    assert [e["event_type"] for e in pending] == ["cart_save.initiated"]

    acked = client.post("/events/published", headers=auth_headers, json={"ids": [e["id"] for e in pending]})
    assert acked.json() == {"updated": 1}
    assert client.get("/events/", headers=auth_headers).json() == []


def test_voice_recovery_endpoints(client, auth_headers, company, customer, make_cart):
    cart = make_cart(company, customer)
    off = client.post("/voice-recovery/initiate", headers=auth_headers, json={"cart_id": cart.id}).json()
    assert off["success"] is False
    assert off["reason"] == "disabled"

    client.put("/cart-save/config", headers=auth_headers, json={
        "stages": {"voice_recovery": {"enabled": True}},
        "blackout_hours": {"start": 0, "end": 0},
    })
    started = client.post("/api/v1/voice-recovery/initiate", headers=auth_headers, json={"cart_id": cart.id}).json()
    assert started["call_id"].startswith("voice_")

    bad = client.post(
        f"/voice-recovery/calls/{started['call_id']}/outcome", headers=auth_headers, json={"outcome": "MAYBE"}
    )
    assert bad.status_code == 422

    saved = client.post(
        f"/voice-recovery/calls/{started['call_id']}/outcome",
        headers=auth_headers,
        json={"outcome": "SAVED", "offer_accepted": "FREE_SHIPPING", "duration_seconds": 42},
    )
    assert saved.json() == {"attempt_id": started["attempt_id"], "status": "CONVERTED", "follow_up_attempt_id": None}

    stats = client.get("/voice-recovery/analytics", headers=auth_headers).json()
    assert stats["converted"] == 1
    assert stats["average_call_duration"] == 42.0

    missing = client.post("/voice-recovery/calls/voice_nope/outcome", headers=auth_headers, json={"outcome": "SAVED"})
    assert missing.status_code == 404


def test_voice_script_and_admin_dispatch(client, auth_headers):
    script = client.get("/voice-recovery/script", headers=auth_headers).json()
    assert "price_concern" in script["interventions"]

    summary = client.post("/voice-recovery/dispatch-scheduled", headers=auth_headers).json()
    assert summary == {"placed": 0, "rescheduled": 0, "closed": 0}
