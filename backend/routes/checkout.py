"""
Checkout tracking endpoints.
The storefront opens a session and streams behaviour events; each event is
analysed for churn risk and any alert is returned so the page can show the
suggested intervention right away.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from database import get_db
from domain.checkout_signals import CheckoutEvent
from models import Cart, Company, User
from routes.auth import get_current_user
from schemas import (
    CheckoutEventRequest,
    CheckoutEventResponse,
    CheckoutSessionCreate,
    CheckoutSessionResponse,
    EscalationResponse,
)
from services import churn_detection_service

router = APIRouter(prefix="/checkout", tags=["Checkout"])


@router.post("/sessions", response_model=CheckoutSessionResponse, status_code=201)
def start_session(request: CheckoutSessionCreate, db: Session = Depends(get_db)):
    """Open a tracking session for a checkout page (public)."""
    company = db.query(Company).filter(Company.code == request.company_code).first()
    if not company:
        raise HTTPException(status_code=404, detail="Unknown company")

    cart_id = None
    if request.cart_token:
        cart = (
            db.query(Cart)
            .filter(Cart.session_token == request.cart_token, Cart.company_id == company.id)
            .first()
        )
        if not cart:
            raise HTTPException(status_code=404, detail="Cart not found")
        cart_id = cart.id

    return churn_detection_service.start_checkout_session(
        db, company.id, cart_id=cart_id, lead_id=request.lead_id
    )


@router.post("/sessions/{session_token}/events", response_model=CheckoutEventResponse)
def track_event(session_token: str, request: CheckoutEventRequest, db: Session = Depends(get_db)):
    """Record a checkout behaviour event (public)."""
    event = CheckoutEvent(**request.model_dump())
    return churn_detection_service.track_checkout_event(db, session_token, event)


@router.post("/sessions/{session_token}/escalate", response_model=EscalationResponse)
def escalate(
    session_token: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Open a proactive chat for the session if it currently shows churn risk."""
    alert = churn_detection_service.get_session_alert(db, session_token, company_id=current_user.company_id)
    if alert is None:
        return EscalationResponse(escalated=False, reason="no_churn_risk")
    return churn_detection_service.escalate_to_chat(db, session_token, alert)
