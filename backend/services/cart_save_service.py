"""
Cart save-flow service.

Drives CartSaveAttempt rows through the stage machine in domain/save_flow.py:
starting an attempt for an abandoned cart, scheduling and dispatching the
intervention for the current stage, applying customer responses, and
reporting recovery analytics. Called by the cart-save routes, the
abandonment sweep and checkout churn detection.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from domain.enums import (
    CartAbandonmentReason,
    CartSaveChannel,
    CartSaveResponseType,
    CartSaveStage,
    CartSaveStatus,
    CartStatus,
    InterventionStatus,
)
from domain.save_flow import (
    STAGE_ORDER,
    adjust_for_blackout,
    calculate_cart_risk_score,
    default_flow_config,
    determine_start_stage,
    generate_offer,
    get_next_stage,
    get_stage_config,
    has_high_value_items,
    merge_flow_config,
    select_channels,
)
from errors import InvalidStateError, MomentumError, NotFoundError, UnsubscribedError
from models import Cart, CartIntervention, CartSaveAttempt, CartSaveConfig
from services import delivery_service
from services.content_service import content_service
from services.events import record_event

logger = logging.getLogger(__name__)

# Delivered in place (on-page / in-app), never through the delivery service
IN_PLACE_CHANNELS = {CartSaveChannel.IN_APP.value, CartSaveChannel.REALTIME.value}

# Stages reported in the drop-off funnel
FUNNEL_STAGES = STAGE_ORDER[:6]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_attempt(db: Session, attempt_id: int, company_id: Optional[int] = None) -> CartSaveAttempt:
    attempt = db.query(CartSaveAttempt).filter(CartSaveAttempt.id == attempt_id).first()
    if not attempt or (company_id is not None and attempt.company_id != company_id):
        raise NotFoundError("Save attempt not found")
    return attempt


def _customer_ltv(db: Session, cart: Cart) -> float:
    if not cart.customer_id:
        return 0.0
    total = (
        db.query(func.coalesce(func.sum(Cart.grand_total), 0.0))
        .filter(Cart.customer_id == cart.customer_id, Cart.status == CartStatus.CONVERTED.value)
        .scalar()
    )
    return float(total or 0.0)


def _complete(db: Session, attempt: CartSaveAttempt, status: str, now: datetime) -> None:
    attempt.status = str(status)
    attempt.completed_at = now
    record_event(
        db, "cart_save.completed",
        {"attempt_id": attempt.id, "cart_id": attempt.cart_id, "status": attempt.status},
        company_id=attempt.company_id, aggregate_type="cart_save_attempt", aggregate_id=attempt.id,
    )
    db.commit()
    logger.info(f"Completed save attempt {attempt.id} with status {status}")


def complete_active_attempts(db: Session, cart_id: int, status: str, now: Optional[datetime] = None) -> int:
    """Close every open attempt on a cart, e.g. when the cart converts.

    Paused voice attempts are closed too so their call is never placed.
    """
    now = now or datetime.utcnow()
    open_statuses = [CartSaveStatus.ACTIVE.value, CartSaveStatus.PAUSED.value]
    attempts = (
        db.query(CartSaveAttempt)
        .filter(CartSaveAttempt.cart_id == cart_id, CartSaveAttempt.status.in_(open_statuses))
        .all()
    )
    for attempt in attempts:
        _complete(db, attempt, status, now)
    return len(attempts)


# ---------------------------------------------------------------------------
# Flow configuration
# ---------------------------------------------------------------------------

def get_flow_config(db: Session, company_id: int) -> dict:
    """Company flow config: defaults with the stored overrides applied."""
    row = db.query(CartSaveConfig).filter(CartSaveConfig.company_id == company_id).first()
    config = default_flow_config()
    if row is None:
        return config

    config = merge_flow_config(config, {"stages": row.stage_configs or {}})
    config["max_attempts_per_cart"] = row.max_attempts_per_cart
    config["respect_unsubscribe"] = row.respect_unsubscribe
    config["blackout_hours"] = {"start": row.blackout_hours_start, "end": row.blackout_hours_end}
    return config


def update_flow_config(db: Session, company_id: int, updates: dict) -> dict:
    """Deep-merge ``updates`` into the company config and store it."""
    merged = merge_flow_config(get_flow_config(db, company_id), updates)

    row = db.query(CartSaveConfig).filter(CartSaveConfig.company_id == company_id).first()
    if row is None:
        row = CartSaveConfig(company_id=company_id)
        db.add(row)

    row.stage_configs = merged["stages"]
    row.max_attempts_per_cart = merged["max_attempts_per_cart"]
    row.respect_unsubscribe = merged["respect_unsubscribe"]
    row.blackout_hours_start = merged["blackout_hours"]["start"]
    row.blackout_hours_end = merged["blackout_hours"]["end"]
    db.commit()
    logger.info(f"Cart save config updated for company {company_id}")
    return merged


# ---------------------------------------------------------------------------
# Flow lifecycle
# ---------------------------------------------------------------------------

def initiate_cart_save_flow(
    db: Session,
    cart_id: int,
    reason: Optional[str] = None,
    company_id: Optional[int] = None,
    source: str = "abandonment",
    metadata: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Start a save attempt for a cart, or return the one already running.

    When an ACTIVE attempt exists it is returned unchanged apart from
    ``metadata`` being merged in and a missing diagnosis reason filled.
    """
    now = now or datetime.utcnow()
    cart = db.query(Cart).filter(Cart.id == cart_id).first()
    if not cart or (company_id is not None and cart.company_id != company_id):
        raise NotFoundError("Cart not found")

    existing = (
        db.query(CartSaveAttempt)
        .filter(
            CartSaveAttempt.cart_id == cart_id,
            CartSaveAttempt.status == CartSaveStatus.ACTIVE.value,
            CartSaveAttempt.current_stage != CartSaveStage.VOICE_RECOVERY.value,
        )
        .first()
    )
    if existing:
        if metadata:
            existing.metadata_json = {**(existing.metadata_json or {}), **metadata}
        if reason and not existing.diagnosis_reason:
            existing.diagnosis_reason = str(reason)
        db.commit()
        return {"attempt_id": existing.id, "stage": existing.current_stage, "created": False}

    config = get_flow_config(db, cart.company_id)

    prior = db.query(CartSaveAttempt).filter(CartSaveAttempt.cart_id == cart_id).count()
    if prior >= config["max_attempts_per_cart"]:
        raise InvalidStateError(
            f"Cart {cart_id} already had {prior} save attempts", cart_id=cart_id
        )

    start_stage = determine_start_stage(config)
    customer = cart.customer
    risk_score = calculate_cart_risk_score(
        cart.grand_total,
        cart.item_count,
        customer.created_at if customer else None,
        now,
        has_customer=customer is not None,
    )

    attempt_metadata = {
        "item_count": cart.item_count,
        "has_high_value_items": has_high_value_items(cart.items),
        "customer_ltv": _customer_ltv(db, cart),
        "offers_presented": [],
        "channels_used": [],
        "source": source,
    }
    attempt_metadata.update(metadata or {})

    attempt = CartSaveAttempt(
        cart_id=cart.id,
        company_id=cart.company_id,
        customer_id=cart.customer_id,
        current_stage=str(start_stage),
        status=CartSaveStatus.ACTIVE.value,
        diagnosis_reason=str(reason) if reason else None,
        customer_risk_score=risk_score,
        cart_value=float(cart.grand_total or 0),
        metadata_json=attempt_metadata,
        stage_history=[{"stage": str(start_stage), "entered_at": now.isoformat()}],
        started_at=now,
        created_at=now,
    )
    db.add(attempt)
    db.flush()

    record_event(
        db, "cart_save.initiated",
        {"attempt_id": attempt.id, "cart_id": cart.id, "stage": attempt.current_stage, "source": source},
        company_id=cart.company_id, aggregate_type="cart_save_attempt", aggregate_id=attempt.id,
    )
    db.commit()
    logger.info(f"Initiated cart save flow for cart {cart_id}, attempt {attempt.id} ({source})")
    return {"attempt_id": attempt.id, "stage": attempt.current_stage, "created": True}


def progress_cart_save_flow(
    db: Session,
    attempt_id: int,
    response: Optional[dict] = None,
    company_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Apply a customer response and move the attempt on.

    ``response`` is ``{"type": CartSaveResponseType, "data": {...}}``; a survey
    answer travels as ``data["answer"]``.
    """
    now = now or datetime.utcnow()
    attempt = _get_attempt(db, attempt_id, company_id)

    if attempt.status != CartSaveStatus.ACTIVE:
        return {"stage": None, "status": attempt.status}

    response_type = (response or {}).get("type")
    response_data = (response or {}).get("data") or {}
    answer = response_data.get("answer")

    if response_type and attempt.interventions:
        latest = attempt.interventions[-1]
        latest.response_type = str(response_type)
        latest.response_at = now
        if response_type == CartSaveResponseType.SURVEY_ANSWERED:
            latest.survey_answer = answer

    if attempt.cart.status == CartStatus.CONVERTED or response_type == CartSaveResponseType.CONVERTED:
        _complete(db, attempt, CartSaveStatus.CONVERTED, now)
        return {"stage": None, "status": CartSaveStatus.CONVERTED.value}

    if response_type == CartSaveResponseType.UNSUBSCRIBED:
        _complete(db, attempt, CartSaveStatus.UNSUBSCRIBED, now)
        return {"stage": None, "status": CartSaveStatus.UNSUBSCRIBED.value}

    config = get_flow_config(db, attempt.company_id)
    current_stage = attempt.current_stage
    if current_stage == CartSaveStage.VOICE_RECOVERY:
        next_stage = None  # calls have no next stage
    else:
        next_stage = get_next_stage(current_stage, config, response_type)

    if next_stage is None:
        _complete(db, attempt, CartSaveStatus.EXHAUSTED, now)
        return {"stage": None, "status": CartSaveStatus.EXHAUSTED.value}

    attempt.stage_history = list(attempt.stage_history or []) + [{
        "stage": str(next_stage),
        "entered_at": now.isoformat(),
        "previous_stage": current_stage,
        "response": str(response_type) if response_type else None,
    }]
    attempt.current_stage = str(next_stage)
    if response_type == CartSaveResponseType.SURVEY_ANSWERED and answer:
        attempt.diagnosis_reason = answer

    db.commit()
    logger.info(f"Progressed attempt {attempt.id} from {current_stage} to {next_stage}")
    return {"stage": str(next_stage), "status": CartSaveStatus.ACTIVE.value}


def record_diagnosis_answer(
    db: Session,
    attempt_id: int,
    reason: str,
    company_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Store the survey answer as the diagnosis reason and advance the flow."""
    if reason not in set(CartAbandonmentReason):
        raise InvalidStateError(f"Unknown abandonment reason: {reason}")
    return progress_cart_save_flow(
        db,
        attempt_id,
        {"type": CartSaveResponseType.SURVEY_ANSWERED, "data": {"answer": str(reason)}},
        company_id=company_id,
        now=now,
    )


# ---------------------------------------------------------------------------
# Interventions
# ---------------------------------------------------------------------------

def execute_intervention(
    db: Session,
    attempt_id: int,
    now: Optional[datetime] = None,
    deliver: bool = True,
    company_id: Optional[int] = None,
) -> dict:
    """Create the intervention for the attempt's current stage.

    The send time is ``now + delay_minutes`` moved out of blackout hours.
    When that time has already arrived and ``deliver`` is set, it is
    dispatched immediately.

    Raises:
        InvalidStateError: attempt not ACTIVE, or its stage is disabled.
        UnsubscribedError: the customer opted out of every stage channel
            (the attempt is closed as UNSUBSCRIBED).
    """
    now = now or datetime.utcnow()
    attempt = _get_attempt(db, attempt_id, company_id)
    if attempt.status != CartSaveStatus.ACTIVE:
        raise InvalidStateError("Save attempt is not active")
    if attempt.current_stage == CartSaveStage.VOICE_RECOVERY:
        raise InvalidStateError("Voice recovery attempts are driven by call outcomes")

    config = get_flow_config(db, attempt.company_id)
    stage = attempt.current_stage
    stage_config = get_stage_config(stage, config)
    if not stage_config or not stage_config.get("enabled"):
        raise InvalidStateError(f"Stage {stage} is not enabled")

    cart = attempt.cart
    customer = cart.customer

    channels = select_channels(stage_config)
    if config["respect_unsubscribe"] and customer is not None:
        channels = [
            ch for ch in channels
            if ch in IN_PLACE_CHANNELS or not delivery_service.is_unsubscribed(db, customer.id, ch)
        ]
        if not channels:
            _complete(db, attempt, CartSaveStatus.UNSUBSCRIBED, now)
            raise UnsubscribedError("Customer unsubscribed from every channel for this stage")

    content = content_service.build_intervention_content(
        stage,
        cart.id,
        customer.first_name if customer else None,
        cart.item_count,
        attempt.diagnosis_reason,
    )
    offer = generate_offer(stage, stage_config, attempt.diagnosis_reason, now)
    if offer:
        content["offer"] = offer["description"]

    blackout = config["blackout_hours"]
    scheduled_at = adjust_for_blackout(
        now + timedelta(minutes=stage_config.get("delay_minutes", 0) or 0),
        blackout["start"],
        blackout["end"],
    )

    intervention = CartIntervention(
        attempt_id=attempt.id,
        cart_id=cart.id,
        stage=stage,
        channels=channels,
        content=content,
        triggers_used=content["triggers_applied"],
        offer_code=offer["code"] if offer else None,
        offer_type=offer["type"] if offer else None,
        offer_value=offer["value"] if offer else None,
        offer_expires_at=offer["expires_at"] if offer else None,
        status=InterventionStatus.SCHEDULED.value,
        scheduled_at=scheduled_at,
        delivery_results=[],
        created_at=now,
    )
    db.add(intervention)

    metadata = dict(attempt.metadata_json or {})
    if offer:
        metadata["offers_presented"] = list(metadata.get("offers_presented", [])) + [offer["code"]]
    used = list(metadata.get("channels_used", []))
    metadata["channels_used"] = used + [ch for ch in channels if ch not in used]
    attempt.metadata_json = metadata

    db.flush()
    record_event(
        db, "cart_save.intervention.scheduled",
        {"attempt_id": attempt.id, "intervention_id": intervention.id, "stage": stage, "channels": channels},
        company_id=attempt.company_id, aggregate_type="cart_save_attempt", aggregate_id=attempt.id,
    )
    db.commit()
    logger.info(f"Created intervention {intervention.id} for attempt {attempt.id} at stage {stage}")

    if deliver and scheduled_at <= now:
        dispatch_intervention(db, intervention.id, now=now)

    db.refresh(intervention)
    return {
        "intervention_id": intervention.id,
        "channels": channels,
        "scheduled_at": intervention.scheduled_at,
        "status": intervention.status,
        "offer_code": intervention.offer_code,
    }


def _message_text(content: dict) -> str:
    parts = [content.get("headline"), content.get("body"), content.get("offer")]
    cta = content.get("cta")
    if cta:
        parts.append(f"{cta}: {content.get('recovery_url', '')}".strip())
    return "\n\n".join(p for p in parts if p)


def dispatch_intervention(db: Session, intervention_id: int, now: Optional[datetime] = None) -> CartIntervention:
    """Send a scheduled intervention on each of its channels.

    Per-channel failures (rate limits, unsubscribes, provider errors) are
    logged and recorded in ``delivery_results``; they never raise.
    """
    now = now or datetime.utcnow()
    intervention = db.query(CartIntervention).filter(CartIntervention.id == intervention_id).first()
    if not intervention:
        raise NotFoundError("Intervention not found")
    if intervention.status != InterventionStatus.SCHEDULED:
        raise InvalidStateError(f"Intervention {intervention_id} was already dispatched")

    attempt = intervention.attempt
    company_id = attempt.company_id
    customer_id = attempt.cart.customer_id
    content = dict(intervention.content or {})
    text = _message_text(content)

    results = []
    for channel in intervention.channels or []:
        if channel in IN_PLACE_CHANNELS or customer_id is None:
            results.append({"channel": channel, "status": "DELIVERED", "message_id": None})
            continue
        try:
            message = delivery_service.send_message(
                db, company_id, customer_id, channel,
                content.get("subject"), text,
                category="cart_recovery",
                cart_intervention_id=intervention.id,
                now=now,
            )
            results.append({"channel": channel, "status": message.status, "message_id": message.id})
        except MomentumError as e:
            logger.warning(f"Intervention {intervention.id} not sent via {channel}: {e.message}")
            results.append({"channel": channel, "status": "FAILED", "message_id": None, "error": e.message})

    delivered = [r for r in results if r["status"] != "FAILED"]
    if results and len(delivered) == len(results):
        intervention.status = InterventionStatus.SENT.value
    elif delivered:
        intervention.status = InterventionStatus.PARTIALLY_SENT.value
    else:
        intervention.status = InterventionStatus.FAILED.value
    if delivered:
        intervention.sent_at = now
    intervention.delivery_results = results

    db.commit()
    logger.info(f"Dispatched intervention {intervention.id}: {intervention.status}")
    return intervention


def dispatch_due_interventions(db: Session, now: Optional[datetime] = None, limit: int = 100) -> dict:
    """Dispatch every scheduled intervention whose time has come."""
    now = now or datetime.utcnow()
    due_ids = [
        row[0]
        for row in (
            db.query(CartIntervention.id)
            .join(CartSaveAttempt, CartIntervention.attempt_id == CartSaveAttempt.id)
            .filter(
                CartIntervention.status == InterventionStatus.SCHEDULED.value,
                CartIntervention.scheduled_at <= now,
                CartSaveAttempt.status == CartSaveStatus.ACTIVE.value,
            )
            .order_by(CartIntervention.scheduled_at)
            .limit(limit)
            .all()
        )
    ]

    summary = defaultdict(int)
    for intervention_id in due_ids:
        intervention = dispatch_intervention(db, intervention_id, now=now)
        summary[intervention.status] += 1

    logger.info(f"Dispatched {len(due_ids)} due interventions")
    return {"dispatched": len(due_ids), "by_status": dict(summary)}


# ---------------------------------------------------------------------------
# Status & listing
# ---------------------------------------------------------------------------

def get_attempt_status(db: Session, attempt_id: int, company_id: Optional[int] = None) -> dict:
    attempt = _get_attempt(db, attempt_id, company_id)
    return {
        "attempt_id": attempt.id,
        "status": attempt.status,
        "current_stage": attempt.current_stage if attempt.status == CartSaveStatus.ACTIVE else None,
        "intervention_count": len(attempt.interventions),
        "started_at": attempt.started_at,
        "completed_at": attempt.completed_at,
    }


def list_attempts(
    db: Session,
    company_id: int,
    status: Optional[str] = None,
    channel: Optional[str] = None,
    limit: int = 50,
) -> List[CartSaveAttempt]:
    query = db.query(CartSaveAttempt).filter(CartSaveAttempt.company_id == company_id)
    if status:
        query = query.filter(CartSaveAttempt.status == status)
    attempts = query.order_by(CartSaveAttempt.created_at.desc(), CartSaveAttempt.id.desc()).all()
    if channel:
        # Channels live in the metadata JSON
        attempts = [a for a in attempts if channel in (a.metadata_json or {}).get("channels_used", [])]
    return attempts[:limit]


def expire_stale_attempts(
    db: Session,
    max_age_days: int = 14,
    now: Optional[datetime] = None,
    company_id: Optional[int] = None,
) -> int:
    """Close ACTIVE attempts started more than ``max_age_days`` ago as EXPIRED."""
    now = now or datetime.utcnow()
    query = db.query(CartSaveAttempt).filter(
        CartSaveAttempt.status == CartSaveStatus.ACTIVE.value,
        CartSaveAttempt.started_at < now - timedelta(days=max_age_days),
    )
    if company_id is not None:
        query = query.filter(CartSaveAttempt.company_id == company_id)

    stale = query.all()
    for attempt in stale:
        _complete(db, attempt, CartSaveStatus.EXPIRED, now)
    return len(stale)


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------

def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def get_analytics(
    db: Session,
    company_id: int,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Recovery analytics over attempts created in the date range."""
    now = now or datetime.utcnow()
    query = db.query(CartSaveAttempt).filter(CartSaveAttempt.company_id == company_id)
    if start_date:
        query = query.filter(CartSaveAttempt.created_at >= start_date)
    if end_date:
        query = query.filter(CartSaveAttempt.created_at <= end_date)
    attempts = query.all()

    converted = [a for a in attempts if a.status == CartSaveStatus.CONVERTED]
    total = len(attempts)
    revenue = sum(float(a.cart.grand_total or 0) for a in converted)

    by_channel: dict = {}
    for attempt in attempts:
        for channel in (attempt.metadata_json or {}).get("channels_used") or [CartSaveChannel.EMAIL.value]:
            bucket = by_channel.setdefault(channel, {"attempts": 0, "recovered": 0, "rate": 0.0})
            bucket["attempts"] += 1
            if attempt.status == CartSaveStatus.CONVERTED:
                bucket["recovered"] += 1
    for bucket in by_channel.values():
        bucket["rate"] = _pct(bucket["recovered"], bucket["attempts"])

    reason_counts: dict = {}
    for attempt in attempts:
        bucket = reason_counts.setdefault(attempt.diagnosis_reason or "UNKNOWN", {"count": 0, "converted": 0})
        bucket["count"] += 1
        if attempt.status == CartSaveStatus.CONVERTED:
            bucket["converted"] += 1
    by_reason = [
        {"reason": reason, "count": data["count"], "recovery_rate": _pct(data["converted"], data["count"])}
        for reason, data in reason_counts.items()
    ]

    by_stage = []
    for stage in FUNNEL_STAGES:
        at_stage = [
            a for a in attempts
            if any(entry.get("stage") == stage for entry in (a.stage_history or []))
        ]
        converted_here = [a for a in at_stage if a.status == CartSaveStatus.CONVERTED]
        dropped_here = [
            a for a in at_stage
            if a.status != CartSaveStatus.CONVERTED and a.current_stage == stage
        ]
        by_stage.append({
            "stage": str(stage),
            "dropoff": _pct(len(dropped_here), len(at_stage)),
            "conversion": _pct(len(converted_here), len(at_stage)),
        })

    timeline = []
    for days_back in range(6, -1, -1):
        day = (now - timedelta(days=days_back)).date()
        day_attempts = [a for a in attempts if a.created_at and a.created_at.date() == day]
        timeline.append({
            "date": day.isoformat(),
            "abandoned": len(day_attempts),
            "recovered": sum(1 for a in day_attempts if a.status == CartSaveStatus.CONVERTED),
        })

    return {
        "total_abandoned": total,
        "total_recovered": len(converted),
        "recovery_rate": _pct(len(converted), total),
        "revenue_recovered": round(revenue, 2),
        "average_cart_value": round(revenue / len(converted), 2) if converted else 0.0,
        "by_channel": by_channel,
        "by_reason": by_reason,
        "by_stage": by_stage,
        "timeline": timeline,
    }
