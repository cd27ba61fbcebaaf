"""
Multi-channel message delivery.

Every outbound message (save-flow interventions, recovery emails) goes
through send_message(), which enforces per-customer rate limits and
unsubscribes, records a DeliveryMessage with its status history, and hands
the message to a simulated channel provider. Failed sends are queued for
retry; retry_failed_messages() is the periodic sweep.

Default limits (per customer):
    5 messages / day, 15 / week
    EMAIL 3, SMS 2, PUSH 5, IN_APP 10, VOICE 1 per day
Quiet hours 21:00-08:00 apply to scheduled sends.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from domain.enums import CartSaveChannel, DeliveryStatus
from domain.save_flow import adjust_for_blackout, deep_merge
from errors import InvalidStateError, NotFoundError, RateLimitExceededError, UnsubscribedError
from models import Customer, CustomerPreference, DeliveryConfig, DeliveryMessage
from services.events import record_event

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_DELIVERY_CONFIG = {
    "rate_limits": {
        "max_per_customer_per_day": 5,
        "max_per_customer_per_week": 15,
        "channel_limits": {
            CartSaveChannel.EMAIL.value: 3,
            CartSaveChannel.SMS.value: 2,
            CartSaveChannel.PUSH.value: 5,
            CartSaveChannel.IN_APP.value: 10,
            CartSaveChannel.VOICE.value: 1,
        },
    },
    "quiet_hours": {"enabled": True, "start": 21, "end": 8},
    "honor_unsubscribes": True,
    "retry": {"max_retries": 3, "retry_delay_minutes": 30},
}

SUPPORTED_CHANNELS = {
    CartSaveChannel.EMAIL.value,
    CartSaveChannel.SMS.value,
    CartSaveChannel.PUSH.value,
    CartSaveChannel.IN_APP.value,
    CartSaveChannel.VOICE.value,
}

_STATUS_ORDER = [s.value for s in DeliveryStatus]

EVENT_STATUS = {
    "delivered": DeliveryStatus.DELIVERED,
    "opened": DeliveryStatus.OPENED,
    "clicked": DeliveryStatus.CLICKED,
    "converted": DeliveryStatus.CONVERTED,
    "bounced": DeliveryStatus.BOUNCED,
    "unsubscribed": DeliveryStatus.UNSUBSCRIBED,
}


class ProviderError(Exception):
    """A channel provider refused or could not deliver a message."""


def get_delivery_config(db: Session, company_id: int) -> dict:
    row = db.query(DeliveryConfig).filter(DeliveryConfig.company_id == company_id).first()
    return deep_merge(DEFAULT_DELIVERY_CONFIG, row.settings if row else None)


def update_delivery_config(db: Session, company_id: int, updates: dict) -> dict:
    row = db.query(DeliveryConfig).filter(DeliveryConfig.company_id == company_id).first()
    if row is None:
        row = DeliveryConfig(company_id=company_id, settings={})
        db.add(row)
    row.settings = deep_merge(row.settings or {}, updates)
    db.commit()
    logger.info(f"Delivery config updated for company {company_id}")
    return deep_merge(DEFAULT_DELIVERY_CONFIG, row.settings)


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------

def is_unsubscribed(db: Session, customer_id: int, channel: str) -> bool:
    pref = (
        db.query(CustomerPreference)
        .filter(
            CustomerPreference.customer_id == customer_id,
            CustomerPreference.channel == channel,
            CustomerPreference.unsubscribed == True,  # noqa: E712
        )
        .first()
    )
    return pref is not None


def record_unsubscribe(db: Session, customer_id: int, channel: str, now: Optional[datetime] = None) -> CustomerPreference:
    now = now or datetime.utcnow()
    pref = (
        db.query(CustomerPreference)
        .filter(CustomerPreference.customer_id == customer_id, CustomerPreference.channel == channel)
        .first()
    )
    if pref is None:
        pref = CustomerPreference(customer_id=customer_id, channel=channel)
        db.add(pref)
    pref.unsubscribed = True
    pref.unsubscribed_at = now
    db.commit()
    logger.info(f"Customer {customer_id} unsubscribed from {channel}")
    return pref


def adjust_for_quiet_hours(when: datetime, start_hour: int, end_hour: int) -> datetime:
    """Push a send time past quiet hours. The window may span midnight."""
    return adjust_for_blackout(when, start_hour, end_hour)


# ---------------------------------------------------------------------------
# Rate limits
# ---------------------------------------------------------------------------

def _sent_count(db: Session, customer_id: int, since: datetime, channel: Optional[str] = None) -> int:
    """Messages that reached a provider since ``since``, whatever happened to them afterwards."""
    query = db.query(func.count(DeliveryMessage.id)).filter(
        DeliveryMessage.customer_id == customer_id,
        DeliveryMessage.sent_at.isnot(None),
        DeliveryMessage.sent_at >= since,
    )
    if channel:
        query = query.filter(DeliveryMessage.channel == channel)
    return query.scalar() or 0


def check_rate_limits(db: Session, customer_id: int, channel: str, config: dict, now: datetime) -> Optional[str]:
    """Return the reason a send would exceed a limit, or None when allowed."""
    limits = config["rate_limits"]
    day_ago = now - timedelta(days=1)

    if _sent_count(db, customer_id, day_ago) >= limits["max_per_customer_per_day"]:
        return "Daily limit reached"
    if _sent_count(db, customer_id, now - timedelta(days=7)) >= limits["max_per_customer_per_week"]:
        return "Weekly limit reached"

    channel_limit = limits["channel_limits"].get(channel)
    if channel_limit and _sent_count(db, customer_id, day_ago, channel) >= channel_limit:
        return f"{channel} daily limit reached"
    return None


# ---------------------------------------------------------------------------
# Provider (simulated)
# ---------------------------------------------------------------------------

def _provider_send(message: DeliveryMessage) -> str:
    """Hand the message to the channel provider and return its message id.

    Providers are simulated; a message with no address for its channel is
    rejected the way a real provider would reject it.
    """
    if message.channel == CartSaveChannel.EMAIL and not message.recipient_email:
        raise ProviderError("Customer has no email address")
    if message.channel in (CartSaveChannel.SMS, CartSaveChannel.VOICE) and not message.recipient_phone:
        raise ProviderError("Customer has no phone number")
    return f"{message.channel.lower()}_{uuid.uuid4().hex[:16]}"


def _record_history(message: DeliveryMessage, status: str, now: datetime, extra: dict) -> None:
    entry = {"status": status, "timestamp": now.isoformat()}
    if extra:
        entry["metadata"] = extra
    # Reassign so the JSON column is flagged dirty
    message.status_history = list(message.status_history or []) + [entry]


def _push_status(message: DeliveryMessage, status: str, now: datetime, **extra) -> None:
    message.status = status
    _record_history(message, status, now, extra)


def _is_advance(current: Optional[str], new: str) -> bool:
    """Tracking events never move a message back, e.g. a late "delivered" after "opened"."""
    if current not in _STATUS_ORDER:
        return True
    return _STATUS_ORDER.index(new) > _STATUS_ORDER.index(current)


def _deliver(db: Session, message: DeliveryMessage, now: datetime) -> bool:
    """Run one delivery attempt. Returns True when the provider accepted it."""
    _push_status(message, DeliveryStatus.SENDING.value, now)
    try:
        provider_id = _provider_send(message)
    except ProviderError as e:
        logger.error(f"Delivery of message {message.id} via {message.channel} failed: {e}")
        _push_status(message, DeliveryStatus.FAILED.value, now, error=str(e))
        message.failed_at = now
        message.failure_reason = str(e)
        return False

    message.provider_message_id = provider_id
    message.sent_at = now
    message.next_retry_at = None
    _push_status(message, DeliveryStatus.SENT.value, now)
    record_event(
        db, "delivery.sent",
        {"message_id": message.id, "channel": message.channel, "customer_id": message.customer_id},
        company_id=message.company_id, aggregate_type="delivery_message", aggregate_id=message.id,
    )
    return True


# ---------------------------------------------------------------------------
# Sending
# ---------------------------------------------------------------------------

def send_message(
    db: Session,
    company_id: int,
    customer_id: int,
    channel: str,
    subject: Optional[str],
    body: str,
    category: Optional[str] = None,
    cart_intervention_id: Optional[int] = None,
    scheduled_for: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> DeliveryMessage:
    """Send (or queue) a message to a customer on one channel.

    Raises:
        NotFoundError: unknown customer.
        InvalidStateError: unsupported channel.
        RateLimitExceededError: daily, weekly or channel limit reached.
        UnsubscribedError: the customer opted out of this channel.
    """
    now = now or datetime.utcnow()
    channel = str(channel)

    customer = (
        db.query(Customer)
        .filter(Customer.id == customer_id, Customer.company_id == company_id)
        .first()
    )
    if not customer:
        raise NotFoundError(f"Customer {customer_id} not found")
    if channel not in SUPPORTED_CHANNELS:
        raise InvalidStateError(f"Unsupported delivery channel: {channel}")

    config = get_delivery_config(db, company_id)

    limit_reason = check_rate_limits(db, customer_id, channel, config, now)
    if limit_reason:
        logger.info(f"Rate limit for customer {customer_id} on {channel}: {limit_reason}")
        raise RateLimitExceededError(f"Rate limit exceeded: {limit_reason}", channel=channel)

    if config["honor_unsubscribes"] and is_unsubscribed(db, customer_id, channel):
        raise UnsubscribedError(f"Customer unsubscribed from {channel}", channel=channel)

    if scheduled_for is not None and config["quiet_hours"]["enabled"]:
        scheduled_for = adjust_for_quiet_hours(
            scheduled_for, config["quiet_hours"]["start"], config["quiet_hours"]["end"]
        )

    message = DeliveryMessage(
        company_id=company_id,
        customer_id=customer_id,
        cart_intervention_id=cart_intervention_id,
        channel=channel,
        recipient_email=customer.email,
        recipient_phone=customer.phone,
        subject=subject,
        body=body,
        category=category,
        scheduled_for=scheduled_for,
        status_history=[],
        created_at=now,
    )
    db.add(message)
    db.flush()

    if scheduled_for and scheduled_for > now:
        _push_status(message, DeliveryStatus.QUEUED.value, now)
    else:
        _push_status(message, DeliveryStatus.PENDING.value, now)
        if not _deliver(db, message, now):
            retry = config["retry"]
            message.retries_remaining = retry["max_retries"]
            message.next_retry_at = now + timedelta(minutes=retry["retry_delay_minutes"])

    db.commit()
    db.refresh(message)
    logger.info(f"Message {message.id} ({channel}) for customer {customer_id}: {message.status}")
    return message


def process_scheduled_messages(db: Session, now: Optional[datetime] = None, limit: int = 100) -> int:
    """Deliver queued messages whose send time has arrived. Returns how many were sent."""
    now = now or datetime.utcnow()
    due = (
        db.query(DeliveryMessage)
        .filter(DeliveryMessage.status == DeliveryStatus.QUEUED.value, DeliveryMessage.scheduled_for <= now)
        .order_by(DeliveryMessage.scheduled_for)
        .limit(limit)
        .all()
    )
    sent = 0
    for message in due:
        if _deliver(db, message, now):
            sent += 1
        else:
            retry = get_delivery_config(db, message.company_id)["retry"]
            message.retries_remaining = retry["max_retries"]
            message.next_retry_at = now + timedelta(minutes=retry["retry_delay_minutes"])
    db.commit()
    return sent


def retry_failed_messages(db: Session, now: Optional[datetime] = None, limit: int = 50) -> dict:
    """Retry FAILED messages whose retry time has come."""
    now = now or datetime.utcnow()
    candidates = (
        db.query(DeliveryMessage)
        .filter(
            DeliveryMessage.status == DeliveryStatus.FAILED.value,
            DeliveryMessage.retries_remaining > 0,
            DeliveryMessage.next_retry_at <= now,
        )
        .limit(limit)
        .all()
    )

    succeeded = 0
    for message in candidates:
        message.retries_remaining = message.retries_remaining - 1
        if _deliver(db, message, now):
            succeeded += 1
            continue
        if message.retries_remaining > 0:
            delay = get_delivery_config(db, message.company_id)["retry"]["retry_delay_minutes"]
            message.next_retry_at = now + timedelta(minutes=delay)
        else:
            message.next_retry_at = None

    db.commit()
    logger.info(f"Retried {len(candidates)} failed messages, {succeeded} succeeded")
    return {"retried": len(candidates), "succeeded": succeeded}


# ---------------------------------------------------------------------------
# Tracking
# ---------------------------------------------------------------------------

def track_delivery_event(
    db: Session,
    message_id: int,
    event: str,
    metadata: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> DeliveryMessage:
    """Apply a provider / pixel event (opened, clicked, bounced...) to a message."""
    now = now or datetime.utcnow()
    message = db.query(DeliveryMessage).filter(DeliveryMessage.id == message_id).first()
    if not message:
        raise NotFoundError(f"Message {message_id} not found")

    status = EVENT_STATUS.get(event)
    if status is None:
        raise InvalidStateError(f"Unknown delivery event: {event}")

    if _is_advance(message.status, status.value):
        _push_status(message, status.value, now, **(metadata or {}))
    else:
        _record_history(message, status.value, now, metadata or {})

    if event == "delivered":
        message.delivered_at = now
    elif event == "opened":
        message.opened_at = now
        message.opens_count = (message.opens_count or 0) + 1
    elif event == "clicked":
        message.clicked_at = now
        message.clicks_count = (message.clicks_count or 0) + 1
    elif event == "converted":
        message.converted_at = now
    elif event == "unsubscribed":
        record_unsubscribe(db, message.customer_id, message.channel, now)

    record_event(
        db, f"delivery.{event}",
        {"message_id": message.id, "customer_id": message.customer_id, **(metadata or {})},
        company_id=message.company_id, aggregate_type="delivery_message", aggregate_id=message.id,
    )
    db.commit()
    db.refresh(message)
    return message


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def get_customer_messages(
    db: Session,
    company_id: int,
    customer_id: int,
    channel: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[DeliveryMessage]:
    query = db.query(DeliveryMessage).filter(
        DeliveryMessage.company_id == company_id,
        DeliveryMessage.customer_id == customer_id,
    )
    if channel:
        query = query.filter(DeliveryMessage.channel == channel)
    if status:
        query = query.filter(DeliveryMessage.status == status)
    return query.order_by(DeliveryMessage.created_at.desc()).offset(offset).limit(limit).all()


def get_delivery_metrics(
    db: Session,
    company_id: int,
    channel: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> dict:
    query = db.query(DeliveryMessage).filter(DeliveryMessage.company_id == company_id)
    if channel:
        query = query.filter(DeliveryMessage.channel == channel)
    if start_date:
        query = query.filter(DeliveryMessage.created_at >= start_date)
    if end_date:
        query = query.filter(DeliveryMessage.created_at <= end_date)
    messages = query.all()

    sent = sum(1 for m in messages if m.sent_at is not None)
    delivered = sum(1 for m in messages if m.delivered_at is not None)
    opened = sum(1 for m in messages if m.opened_at is not None)
    clicked = sum(1 for m in messages if m.clicked_at is not None)
    converted = sum(1 for m in messages if m.converted_at is not None)
    failed = sum(1 for m in messages if m.status == DeliveryStatus.FAILED.value)
    bounced = sum(1 for m in messages if m.status == DeliveryStatus.BOUNCED.value)

    return {
        "total": len(messages),
        "sent": sent,
        "delivered": delivered,
        "opened": opened,
        "clicked": clicked,
        "converted": converted,
        "failed": failed,
        "bounced": bounced,
        "delivery_rate": round(delivered / sent * 100, 1) if sent else 0.0,
        "open_rate": round(opened / delivered * 100, 1) if delivered else 0.0,
        "click_rate": round(clicked / opened * 100, 1) if opened else 0.0,
        "conversion_rate": round(converted / clicked * 100, 1) if clicked else 0.0,
    }
