"""
Voice recovery service.

Places outbound recovery calls for abandoned carts through the delivery
service's VOICE channel and tracks each call as a VOICE_RECOVERY save
attempt. Calls that would land in the company's blackout hours are stored
as PAUSED attempts and placed by ``dispatch_scheduled_calls`` once due.
Call outcomes reported by the voice provider close or keep the attempt
open; analytics summarise answer and conversion rates.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from domain.enums import (
    CartSaveChannel,
    CartSaveStage,
    CartSaveStatus,
    InterventionStatus,
    VoiceCallOutcome,
)
from domain.save_flow import adjust_for_blackout, in_blackout, is_stage_enabled
from domain.voice_recovery import (
    UNANSWERED_OUTCOMES,
    is_final_outcome,
    opening_lines,
    status_for_outcome,
)
from errors import InvalidStateError, NotFoundError, RateLimitExceededError, UnsubscribedError
from models import Cart, CartIntervention, CartSaveAttempt
from services import delivery_service
from services.cart_save_service import get_flow_config
from services.events import record_event

logger = logging.getLogger(__name__)

VOICE = CartSaveChannel.VOICE.value
VOICE_STAGE = CartSaveStage.VOICE_RECOVERY.value


def _result(success: bool, attempt_id=None, call_id=None, scheduled_at=None, reason=None) -> dict:
    return {
        "success": success,
        "attempt_id": attempt_id,
        "call_id": call_id,
        "scheduled_at": scheduled_at,
        "reason": reason,
    }


def _voice_attempts(db: Session, cart_id: int) -> int:
    return (
        db.query(CartSaveAttempt)
        .filter(CartSaveAttempt.cart_id == cart_id, CartSaveAttempt.current_stage == VOICE_STAGE)
        .count()
    )


def _new_attempt(cart: Cart, status: str, metadata: dict, now: datetime) -> CartSaveAttempt:
    return CartSaveAttempt(
        cart_id=cart.id,
        company_id=cart.company_id,
        customer_id=cart.customer_id,
        current_stage=VOICE_STAGE,
        status=status,
        cart_value=float(cart.grand_total or 0),
        metadata_json={
            "channel": VOICE,
            "channels_used": [VOICE],
            "item_count": cart.item_count,
            **metadata,
        },
        stage_history=[{"stage": VOICE_STAGE, "entered_at": now.isoformat()}],
        started_at=now,
        created_at=now,
    )


def _schedule(db: Session, cart: Cart, when: datetime, now: datetime, **metadata) -> CartSaveAttempt:
    attempt = _new_attempt(
        cart,
        CartSaveStatus.PAUSED.value,
        {"scheduled": True, "scheduled_for": when.isoformat(), **metadata},
        now,
    )
    db.add(attempt)
    db.flush()
    record_event(
        db, "voice_recovery.scheduled",
        {"attempt_id": attempt.id, "cart_id": cart.id, "scheduled_for": when.isoformat()},
        company_id=cart.company_id, aggregate_type="cart_save_attempt", aggregate_id=attempt.id,
    )
    logger.info(f"Voice recovery for cart {cart.id} scheduled for {when.isoformat()}")
    return attempt


def _place_call(db: Session, cart: Cart, now: datetime):
    """Send the call through the delivery service.

    Returns the delivery message, or None when the provider could not place
    it. A failed call is not left for the delivery retry sweep.
    """
    customer = cart.customer
    message = delivery_service.send_message(
        db,
        cart.company_id,
        customer.id,
        VOICE,
        subject=None,
        body=opening_lines(customer.first_name, cart.item_count or 0),
        category="voice_recovery",
        now=now,
    )
    if not message.provider_message_id:
        message.retries_remaining = 0
        message.next_retry_at = None
        return None
    return message


# ---------------------------------------------------------------------------
# Initiation
# ---------------------------------------------------------------------------

def initiate_voice_recovery(
    db: Session,
    company_id: int,
    cart_id: int,
    now: Optional[datetime] = None,
) -> dict:
    """Call the shopper behind an abandoned cart, or schedule the call.

    Returns ``{success, attempt_id, call_id, scheduled_at, reason}``. A call
    that cannot be made (no phone, stage disabled, attempt cap, rate limit,
    opt-out, provider failure) comes back with ``success`` False and a
    ``reason`` and no attempt is stored.

    Raises:
        NotFoundError: the cart does not exist for this company.
    """
    now = now or datetime.utcnow()
    cart = db.query(Cart).filter(Cart.id == cart_id, Cart.company_id == company_id).first()
    if not cart:
        raise NotFoundError("Cart not found")

    if not cart.customer or not cart.customer.phone:
        logger.warning(f"Cannot start voice recovery for cart {cart_id}: no phone number")
        return _result(False, reason="no_phone")

    config = get_flow_config(db, company_id)
    if not is_stage_enabled(VOICE_STAGE, config):
        logger.info(f"Voice recovery disabled for company {company_id}")
        return _result(False, reason="disabled")

    if _voice_attempts(db, cart_id) >= config["max_attempts_per_cart"]:
        logger.info(f"Max voice recovery attempts reached for cart {cart_id}")
        return _result(False, reason="max_attempts")

    blackout = config["blackout_hours"]
    if in_blackout(now.hour, blackout["start"], blackout["end"]):
        when = adjust_for_blackout(now, blackout["start"], blackout["end"])
        attempt = _schedule(db, cart, when, now)
        db.commit()
        return _result(True, attempt_id=attempt.id, scheduled_at=when)

    try:
        message = _place_call(db, cart, now)
    except RateLimitExceededError:
        return _result(False, reason="rate_limited")
    except UnsubscribedError:
        return _result(False, reason="unsubscribed")

    if message is None:
        db.commit()
        logger.error(f"Voice recovery call for cart {cart_id} could not be placed")
        return _result(False, reason="call_failed")

    attempt = _new_attempt(
        cart,
        CartSaveStatus.ACTIVE.value,
        {"call_id": message.provider_message_id, "delivery_message_id": message.id},
        now,
    )
    db.add(attempt)
    db.flush()
    record_event(
        db, "voice_recovery.initiated",
        {"attempt_id": attempt.id, "cart_id": cart.id, "customer_id": cart.customer_id,
         "call_id": message.provider_message_id},
        company_id=company_id, aggregate_type="cart_save_attempt", aggregate_id=attempt.id,
    )
    db.commit()
    logger.info(f"Voice recovery initiated for cart {cart_id}, call {message.provider_message_id}")
    return _result(True, attempt_id=attempt.id, call_id=message.provider_message_id)


def dispatch_scheduled_calls(db: Session, now: Optional[datetime] = None, limit: int = 50) -> dict:
    """Place the calls of PAUSED voice attempts whose time has come.

    A placed call turns the attempt ACTIVE. A rate-limited call moves to the
    next day; an opted-out customer closes the attempt as UNSUBSCRIBED and a
    provider failure closes it as EXHAUSTED.
    """
    now = now or datetime.utcnow()
    paused = (
        db.query(CartSaveAttempt)
        .filter(
            CartSaveAttempt.current_stage == VOICE_STAGE,
            CartSaveAttempt.status == CartSaveStatus.PAUSED.value,
        )
        .order_by(CartSaveAttempt.id)
        .all()
    )
    due = [
        a for a in paused
        if datetime.fromisoformat((a.metadata_json or {}).get("scheduled_for") or now.isoformat()) <= now
    ][:limit]

    summary = {"placed": 0, "rescheduled": 0, "closed": 0}
    for attempt in due:
        cart = attempt.cart
        metadata = dict(attempt.metadata_json or {})
        try:
            message = _place_call(db, cart, now) if cart.customer and cart.customer.phone else None
        except RateLimitExceededError:
            metadata["scheduled_for"] = (now + timedelta(days=1)).isoformat()
            attempt.metadata_json = metadata
            summary["rescheduled"] += 1
            continue
        except UnsubscribedError:
            attempt.status = CartSaveStatus.UNSUBSCRIBED.value
            attempt.completed_at = now
            summary["closed"] += 1
            continue

        if message is None:
            attempt.status = CartSaveStatus.EXHAUSTED.value
            attempt.completed_at = now
            summary["closed"] += 1
            continue

        metadata.update({
            "scheduled": False,
            "call_id": message.provider_message_id,
            "delivery_message_id": message.id,
        })
        attempt.metadata_json = metadata
        attempt.status = CartSaveStatus.ACTIVE.value
        attempt.cart_value = float(cart.grand_total or 0)
        record_event(
            db, "voice_recovery.initiated",
            {"attempt_id": attempt.id, "cart_id": cart.id, "customer_id": cart.customer_id,
             "call_id": message.provider_message_id},
            company_id=attempt.company_id, aggregate_type="cart_save_attempt", aggregate_id=attempt.id,
        )
        summary["placed"] += 1

    db.commit()
    if due:
        logger.info(f"Scheduled voice calls: {summary}")
    return summary


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

def _attempt_for_call(db: Session, call_id: str, company_id: Optional[int]) -> CartSaveAttempt:
    query = db.query(CartSaveAttempt).filter(CartSaveAttempt.current_stage == VOICE_STAGE)
    if company_id is not None:
        query = query.filter(CartSaveAttempt.company_id == company_id)
    for attempt in query.order_by(CartSaveAttempt.id.desc()).all():
        if (attempt.metadata_json or {}).get("call_id") == call_id:
            return attempt
    raise NotFoundError(f"No voice recovery attempt for call {call_id}")


def process_call_outcome(
    db: Session,
    call_id: str,
    outcome: str,
    reason: Optional[str] = None,
    offer_accepted: Optional[str] = None,
    next_attempt_at: Optional[datetime] = None,
    duration_seconds: Optional[int] = None,
    company_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Apply the result of a recovery call to its attempt.

    SAVED converts the attempt and stores a CONVERTED intervention for the
    call; DECLINED exhausts it; anything else leaves it ACTIVE. A
    CALLBACK_SCHEDULED outcome with ``next_attempt_at`` adds a PAUSED
    follow-up attempt for that time (shifted out of blackout hours).

    Raises:
        NotFoundError: no voice attempt carries this call id.
        InvalidStateError: the attempt was already closed.
    """
    now = now or datetime.utcnow()
    outcome = str(VoiceCallOutcome(outcome))
    attempt = _attempt_for_call(db, call_id, company_id)
    if attempt.status != CartSaveStatus.ACTIVE:
        raise InvalidStateError(f"Voice recovery attempt {attempt.id} is already {attempt.status}")

    attempt.status = str(status_for_outcome(outcome))
    if reason:
        attempt.diagnosis_reason = str(reason)
    if is_final_outcome(outcome):
        attempt.completed_at = now

    metadata = dict(attempt.metadata_json or {})
    metadata["outcome"] = outcome
    metadata["offer_accepted"] = offer_accepted
    if duration_seconds is not None:
        metadata["duration_seconds"] = duration_seconds
    attempt.metadata_json = metadata

    if outcome == VoiceCallOutcome.SAVED:
        db.add(CartIntervention(
            attempt_id=attempt.id,
            cart_id=attempt.cart_id,
            stage=VOICE_STAGE,
            channels=[VOICE],
            content={"type": "VOICE_CALL", "outcome": outcome, "offer_accepted": offer_accepted},
            triggers_used=["voice_recovery"],
            offer_type=offer_accepted,
            status=InterventionStatus.CONVERTED.value,
            scheduled_at=now,
            sent_at=now,
            converted_at=now,
            created_at=now,
        ))
        record_event(
            db, "voice_recovery.converted",
            {"attempt_id": attempt.id, "cart_id": attempt.cart_id, "offer_type": offer_accepted},
            company_id=attempt.company_id, aggregate_type="cart_save_attempt", aggregate_id=attempt.id,
        )

    follow_up = None
    if outcome == VoiceCallOutcome.CALLBACK_SCHEDULED and next_attempt_at:
        config = get_flow_config(db, attempt.company_id)
        blackout = config["blackout_hours"]
        when = adjust_for_blackout(next_attempt_at, blackout["start"], blackout["end"])
        follow_up = _schedule(db, attempt.cart, when, now, callback_for=attempt.id)

    db.commit()
    logger.info(f"Voice recovery call {call_id} completed with outcome {outcome}")
    return {
        "attempt_id": attempt.id,
        "status": attempt.status,
        "follow_up_attempt_id": follow_up.id if follow_up else None,
    }


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------

def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def get_voice_recovery_analytics(
    db: Session,
    company_id: int,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> dict:
    """Call volume, answer and conversion rates, and when calls work best."""
    query = db.query(CartSaveAttempt).filter(
        CartSaveAttempt.company_id == company_id,
        CartSaveAttempt.current_stage == VOICE_STAGE,
    )
    if start_date:
        query = query.filter(CartSaveAttempt.created_at >= start_date)
    if end_date:
        query = query.filter(CartSaveAttempt.created_at <= end_date)
    attempts = query.all()

    converted = [a for a in attempts if a.status == CartSaveStatus.CONVERTED]
    answered = [
        a for a in attempts
        if (a.metadata_json or {}).get("outcome") not in UNANSWERED_OUTCOMES
    ]
    placed = [a for a in attempts if (a.metadata_json or {}).get("call_id")]
    durations = [(a.metadata_json or {}).get("duration_seconds") or 0 for a in placed]

    declines = Counter(
        a.diagnosis_reason for a in attempts
        if a.status == CartSaveStatus.EXHAUSTED and a.diagnosis_reason
    )

    by_hour = {hour: {"total": 0, "converted": 0} for hour in range(24)}
    for attempt in attempts:
        if attempt.created_at is None:
            continue
        bucket = by_hour[attempt.created_at.hour]
        bucket["total"] += 1
        if attempt.status == CartSaveStatus.CONVERTED:
            bucket["converted"] += 1

    return {
        "total_calls": len(attempts),
        "answered": len(answered),
        "converted": len(converted),
        "conversion_rate": _pct(len(converted), len(attempts)),
        "total_recovered": round(sum(float(a.cart.grand_total or 0) for a in converted), 2),
        "average_call_duration": round(sum(durations) / len(durations), 2) if durations else 0.0,
        "top_decline_reasons": [
            {"reason": reason, "count": count} for reason, count in declines.most_common(5)
        ],
        "success_by_time_of_day": [
            {"hour": hour, "rate": _pct(data["converted"], data["total"])}
            for hour, data in by_hour.items()
        ],
    }
