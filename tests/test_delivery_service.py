from datetime import datetime, timedelta

import pytest

from conftest import NOW
from errors import InvalidStateError, NotFoundError, RateLimitExceededError, UnsubscribedError
from models import Customer, MomentumEvent
from services import delivery_service


def _send(db, company, customer, channel="EMAIL", now=NOW, **kwargs):
    return delivery_service.send_message(
        db, company.id, customer.id, channel, "Your cart", "Come back soon", now=now, **kwargs
    )


# ---------------------------------------------------------------------------
# Sending
# ---------------------------------------------------------------------------

def test_email_is_sent_with_status_history(db, company, customer):
    message = _send(db, company, customer, category="cart_recovery")

    assert message.status == "SENT"
    assert message.provider_message_id.startswith("email_")
    assert message.recipient_email == "dana@example.com"
    assert message.sent_at == NOW
    assert [h["status"] for h in message.status_history] == ["PENDING", "SENDING", "SENT"]
    assert db.query(MomentumEvent).filter_by(event_type="delivery.sent").count() == 1


def test_channel_daily_limit(db, company, customer):
    for _ in range(3):
        _send(db, company, customer)

    with pytest.raises(RateLimitExceededError) as exc:
        _send(db, company, customer)
    assert exc.value.http_status == 429
    assert "EMAIL daily limit reached" in exc.value.message

    # Other channels still have room
    assert _send(db, company, customer, channel="PUSH").status == "SENT"


def test_overall_daily_limit(db, company, customer):
    delivery_service.update_delivery_config(db, company.id, {"rate_limits": {"max_per_customer_per_day": 2}})
    _send(db, company, customer, channel="PUSH")
    _send(db, company, customer, channel="IN_APP")

    with pytest.raises(RateLimitExceededError):
        _send(db, company, customer, channel="SMS")
    # A day later the window has moved on
    assert _send(db, company, customer, channel="SMS", now=NOW + timedelta(days=1, minutes=1)).status == "SENT"


def test_unsubscribed_channel_is_refused(db, company, customer):
    delivery_service.record_unsubscribe(db, customer.id, "SMS", now=NOW)

    with pytest.raises(UnsubscribedError):
        _send(db, company, customer, channel="SMS")

    delivery_service.update_delivery_config(db, company.id, {"honor_unsubscribes": False})
    assert _send(db, company, customer, channel="SMS").status == "SENT"


def test_unknown_customer_or_channel(db, company, other_company, customer):
    with pytest.raises(NotFoundError):
        delivery_service.send_message(db, company.id, 9999, "EMAIL", None, "hi", now=NOW)
    with pytest.raises(NotFoundError):
        delivery_service.send_message(db, other_company.id, customer.id, "EMAIL", None, "hi", now=NOW)
    with pytest.raises(InvalidStateError):
        _send(db, company, customer, channel="REALTIME")


# ---------------------------------------------------------------------------
# Failures & retries
# ---------------------------------------------------------------------------

def test_missing_phone_fails_and_is_retried(db, company):
    customer = Customer(company_id=company.id, first_name="Ira", email="ira@example.com", created_at=NOW)
    db.add(customer)
    db.commit()

    message = _send(db, company, customer, channel="SMS")

    assert message.status == "FAILED"
    assert message.failure_reason == "Customer has no phone number"
    assert message.retries_remaining == 3
    assert message.next_retry_at == NOW + timedelta(minutes=30)

    # Not due yet
    assert delivery_service.retry_failed_messages(db, now=NOW + timedelta(minutes=10)) == {"retried": 0, "succeeded": 0}

    message.recipient_phone = "+15550003333"
    db.commit()
    result = delivery_service.retry_failed_messages(db, now=NOW + timedelta(minutes=31))

    assert result == {"retried": 1, "succeeded": 1}
    db.refresh(message)
    assert message.status == "SENT"
    assert message.retries_remaining == 2
    assert message.next_retry_at is None


def test_retries_run_out(db, company):
    customer = Customer(company_id=company.id, first_name="Ira", created_at=NOW)
    db.add(customer)
    db.commit()
    message = _send(db, company, customer, channel="VOICE")

    when = NOW
    for _ in range(3):
        when += timedelta(minutes=31)
        delivery_service.retry_failed_messages(db, now=when)

    db.refresh(message)
    assert message.status == "FAILED"
    assert message.retries_remaining == 0
    assert message.next_retry_at is None


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

def test_scheduled_send_respects_quiet_hours(db, company, customer):
    late = datetime(2026, 3, 10, 23, 0)
    message = _send(db, company, customer, scheduled_for=late)

    assert message.status == "QUEUED"
    assert message.scheduled_for == datetime(2026, 3, 11, 8, 0)

    assert delivery_service.process_scheduled_messages(db, now=datetime(2026, 3, 11, 7, 59)) == 0
    assert delivery_service.process_scheduled_messages(db, now=datetime(2026, 3, 11, 8, 0)) == 1
    db.refresh(message)
    assert message.status == "SENT"


def test_past_schedule_sends_immediately(db, company, customer):
    message = _send(db, company, customer, scheduled_for=NOW - timedelta(minutes=5))
    assert message.status == "SENT"


# ---------------------------------------------------------------------------
# Tracking & metrics
# ---------------------------------------------------------------------------

def test_tracking_events_update_counters(db, company, customer):
    message = _send(db, company, customer)

    delivery_service.track_delivery_event(db, message.id, "delivered", now=NOW)
    delivery_service.track_delivery_event(db, message.id, "opened", now=NOW)
    delivery_service.track_delivery_event(db, message.id, "opened", now=NOW)
    message = delivery_service.track_delivery_event(db, message.id, "clicked", {"link": "cta"}, now=NOW)

    assert message.status == "CLICKED"
    assert message.opens_count == 2
    assert message.clicks_count == 1
    assert message.status_history[-1]["metadata"] == {"link": "cta"}
    assert db.query(MomentumEvent).filter_by(event_type="delivery.opened").count() == 2


def test_unknown_tracking_event(db, company, customer):
    message = _send(db, company, customer)
    with pytest.raises(InvalidStateError):
        delivery_service.track_delivery_event(db, message.id, "liked")
    with pytest.raises(NotFoundError):
        delivery_service.track_delivery_event(db, 9999, "opened")


def test_unsubscribe_event_sets_preference(db, company, customer):
    message = _send(db, company, customer)
    delivery_service.track_delivery_event(db, message.id, "unsubscribed", now=NOW)

    assert delivery_service.is_unsubscribed(db, customer.id, "EMAIL")
    assert not delivery_service.is_unsubscribed(db, customer.id, "SMS")


def test_delivery_metrics(db, company, customer):
    first = _send(db, company, customer)
    _send(db, company, customer)
    delivery_service.track_delivery_event(db, first.id, "delivered", now=NOW)
    delivery_service.track_delivery_event(db, first.id, "opened", now=NOW)

    metrics = delivery_service.get_delivery_metrics(db, company.id, channel="EMAIL")

    assert metrics["total"] == 2
    assert metrics["sent"] == 2
    assert metrics["delivery_rate"] == 50.0
    assert metrics["open_rate"] == 100.0
    assert metrics["click_rate"] == 0.0

    history = delivery_service.get_customer_messages(db, company.id, customer.id)
    assert len(history) == 2


def test_converted_messages_still_count_towards_limits(db, company, customer):
    first = _send(db, company, customer)
    _send(db, company, customer)
    _send(db, company, customer)
    delivery_service.track_delivery_event(db, first.id, "converted", now=NOW)
    delivery_service.track_delivery_event(db, first.id, "unsubscribed", now=NOW)
    delivery_service.update_delivery_config(db, company.id, {"honor_unsubscribes": False})

    with pytest.raises(RateLimitExceededError):
        _send(db, company, customer)


def test_failed_sends_do_not_use_up_limits(db, company):
    customer = Customer(company_id=company.id, first_name="Ira", created_at=NOW)
    db.add(customer)
    db.commit()
    for _ in range(4):
        assert _send(db, company, customer).status == "FAILED"


def test_late_delivery_receipt_does_not_rewind_status(db, company, customer):
    message = _send(db, company, customer)
    delivery_service.track_delivery_event(db, message.id, "opened", now=NOW)

    message = delivery_service.track_delivery_event(db, message.id, "delivered", now=NOW + timedelta(minutes=1))

    assert message.status == "OPENED"
    assert message.delivered_at == NOW + timedelta(minutes=1)
    assert [h["status"] for h in message.status_history][-2:] == ["OPENED", "DELIVERED"]
