"""
Checkout churn detection.

Folds behavioural events from the checkout page into the funnel session,
raises a ChurnAlert when the shopper looks about to leave, and reacts to it:
an outbox event for real-time interventions, a customer churn signal, and
(for high-risk alerts) a cart save flow. Sessions can also be escalated to a
proactive customer-service chat.
"""

import logging
import secrets
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from config import settings
from domain.checkout_signals import (
    ChurnAlert,
    CheckoutEvent,
    CheckoutSessionData,
    analyze_signals,
    now_ms,
    process_event,
    proactive_message,
)
from domain.enums import CartSaveChannel, CSChannel, CSTier, CustomerSignalType
from errors import MomentumError, NotFoundError
from models import Cart, CSMessage, CSSession, FunnelSession
from services import cart_save_service, churn_predictor_service
from services.events import record_event

logger = logging.getLogger(__name__)

HIGH_RISK_THRESHOLD = 70


def _get_session(db: Session, session_token: str) -> Optional[FunnelSession]:
    return db.query(FunnelSession).filter(FunnelSession.session_token == session_token).first()


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

def start_checkout_session(
    db: Session,
    company_id: int,
    cart_id: Optional[int] = None,
    customer_id: Optional[int] = None,
    lead_id: Optional[str] = None,
) -> FunnelSession:
    """Open a funnel session to track a checkout. The cart's customer wins over ``customer_id``."""
    if cart_id is not None:
        cart = db.query(Cart).filter(Cart.id == cart_id, Cart.company_id == company_id).first()
        if not cart:
            raise NotFoundError("Cart not found")
        customer_id = cart.customer_id or customer_id

    session = FunnelSession(
        session_token=secrets.token_urlsafe(24),
        company_id=company_id,
        cart_id=cart_id,
        customer_id=customer_id,
        lead_id=lead_id,
        checkout_behavior=CheckoutSessionData().to_dict(),
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    logger.info(f"Checkout session {session.id} started for company {company_id}")
    return session


# ---------------------------------------------------------------------------
# Event tracking
# ---------------------------------------------------------------------------

def track_checkout_event(db: Session, session_token: str, event: CheckoutEvent) -> dict:
    """Fold one checkout event into the session and react to any alert.

    Returns ``{"alert": {...}}`` when churn risk crossed the alert threshold,
    else ``{}``.
    """
    session = _get_session(db, session_token)
    if not session:
        raise NotFoundError("Checkout session not found")

    now = event.timestamp if event.timestamp is not None else now_ms()
    data = CheckoutSessionData.from_dict(session.checkout_behavior)
    data = process_event(data, event, now)
    session.checkout_behavior = data.to_dict()
    db.commit()

    alert = analyze_signals(session_token, data, now)
    if alert is None:
        return {}

    handle_churn_alert(db, session, alert)
    return {"alert": alert.to_dict()}


def handle_churn_alert(db: Session, session: FunnelSession, alert: ChurnAlert) -> None:
    """React to a checkout churn alert.

    High-risk alerts (70+) on a session with a cart start the cart save
    flow, or annotate the attempt already running for that cart.
    """
    cart_id = session.cart_id
    alert_data = alert.to_dict()

    record_event(
        db, "checkout.churn.detected",
        {"session_id": session.session_token, "cart_id": cart_id, "alert": alert_data},
        company_id=session.company_id, aggregate_type="funnel_session", aggregate_id=session.id,
    )
    db.commit()

    customer_id = session.customer_id or (session.cart.customer_id if session.cart else None)
    if customer_id:
        churn_predictor_service.record_signal(
            db,
            customer_id,
            CustomerSignalType.CHECKOUT_CHURN_RISK,
            value=alert.risk_score,
            confidence=min(1.0, alert.risk_score / 100),
            metadata={"session_id": session.session_token, "predicted_reason": alert_data["predicted_reason"]},
        )

    if alert.risk_score >= HIGH_RISK_THRESHOLD and cart_id:
        try:
            cart_save_service.initiate_cart_save_flow(
                db,
                cart_id,
                reason=alert.predicted_reason,
                company_id=session.company_id,
                source="churn_detection",
                metadata={
                    "churn_detection": {
                        "signals": alert_data["signals"],
                        "risk_score": alert.risk_score,
                        "suggested_intervention": alert_data["suggested_intervention"],
                        "session_id": session.session_token,
                    },
                    "channels_used": [CartSaveChannel.REALTIME.value],
                },
            )
        except MomentumError as e:
            logger.warning(f"Save flow not started for cart {cart_id}: {e.message}")

    logger.info(
        f"Churn alert for session {session.id}: risk={alert.risk_score}, "
        f"reason={alert_data['predicted_reason']}"
    )


# ---------------------------------------------------------------------------
# Customer-service escalation
# ---------------------------------------------------------------------------

def _notify_cs_webhook(payload: dict) -> None:
    if not settings.CS_WEBHOOK_URL:
        return
    try:
        with httpx.Client(timeout=15) as client:
            resp = client.post(settings.CS_WEBHOOK_URL, json=payload)
            if resp.status_code >= 300:
                logger.error(f"CS webhook failed ({resp.status_code}): {resp.text}")
    except httpx.HTTPError as e:
        logger.error(f"Error notifying CS webhook: {e}")


def escalate_to_chat(db: Session, session_token: str, alert: ChurnAlert) -> dict:
    """Open a proactive AI chat for a hesitating shopper.

    Needs a known customer or lead on the session; otherwise nothing is
    escalated.
    """
    session = _get_session(db, session_token)
    if not session:
        return {"escalated": False}

    cart = session.cart
    customer_id = (cart.customer_id if cart else None) or session.customer_id
    if not customer_id and not session.lead_id:
        return {"escalated": False}

    cart_value = sum(item.quantity * float(item.unit_price or 0) for item in cart.items) if cart else 0.0
    alert_data = alert.to_dict()

    cs_session = CSSession(
        company_id=session.company_id,
        customer_id=customer_id,
        lead_id=None if customer_id else session.lead_id,
        channel=CSChannel.CHAT.value,
        current_tier=CSTier.AI_REP.value,
        status="ACTIVE",
        context={
            "type": "PROACTIVE_CHECKOUT_HELP",
            "churn_risk": alert.risk_score,
            "predicted_reason": alert_data["predicted_reason"],
            "cart_value": round(cart_value, 2),
            "suggested_approach": alert_data["suggested_intervention"],
            "cart_id": cart.id if cart else None,
            "session_id": session_token,
            "initiated_by": "churn_detection",
        },
    )
    db.add(cs_session)
    db.flush()

    db.add(CSMessage(
        session_id=cs_session.id,
        role="ASSISTANT",
        content=proactive_message(alert.predicted_reason),
        metadata_json={"proactive": True, "trigger_reason": alert_data["predicted_reason"]},
    ))

    payload = {
        "cs_session_id": cs_session.id,
        "customer_id": customer_id,
        "lead_id": session.lead_id,
        "reason": "checkout_churn_risk",
    }
    record_event(
        db, "cs.session.proactive", payload,
        company_id=session.company_id, aggregate_type="cs_session", aggregate_id=cs_session.id,
    )
    db.commit()
    logger.info(f"Escalated checkout session {session.id} to chat {cs_session.id}")

    _notify_cs_webhook(payload)
    return {"escalated": True, "chat_session_id": cs_session.id}


def get_session_alert(
    db: Session,
    session_token: str,
    company_id: Optional[int] = None,
    now: Optional[int] = None,
) -> Optional[ChurnAlert]:
    """Analyse a session's stored behaviour without adding an event."""
    session = _get_session(db, session_token)
    if not session or (company_id is not None and session.company_id != company_id):
        raise NotFoundError("Checkout session not found")
    data = CheckoutSessionData.from_dict(session.checkout_behavior)
    return analyze_signals(session_token, data, now)
