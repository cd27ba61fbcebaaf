"""
Cart endpoints.
Cart CRUD for the storefront, abandonment listings and stats for the
merchant dashboard, and the public recovery-link redemption.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from database import get_db
from models import User
from routes.auth import get_current_user, require_admin
from schemas import (
    AbandonmentStats,
    CartActivity,
    CartCreate,
    CartResponse,
    RecoverCartResponse,
)
from services import cart_abandonment_service

router = APIRouter(prefix="/carts", tags=["Carts"])


@router.post("/", response_model=CartResponse, status_code=201)
def create_cart(
    request: CartCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Create a cart with its items, optionally creating the customer inline."""
    customer_id = request.customer_id
    if customer_id is None and request.customer is not None:
        customer = cart_abandonment_service.create_customer(
            db, current_user.company_id, **request.customer.model_dump()
        )
        customer_id = customer.id

    return cart_abandonment_service.create_cart(
        db,
        current_user.company_id,
        [item.model_dump() for item in request.items],
        customer_id=customer_id,
        currency=request.currency,
    )


@router.get("/at-risk", response_model=List[CartResponse])
def list_at_risk_carts(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Carts idle for 30-60 minutes."""
    return cart_abandonment_service.get_at_risk_carts(db, current_user.company_id)


@router.get("/abandoned", response_model=List[CartResponse])
def list_abandoned_carts(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    has_email: bool = False,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return cart_abandonment_service.get_abandoned_carts(
        db, current_user.company_id, limit=limit, offset=offset, has_email=has_email
    )


@router.get("/stats", response_model=AbandonmentStats)
def abandonment_stats(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return cart_abandonment_service.get_abandonment_stats(db, current_user.company_id, start, end)


@router.post("/detect")
def run_abandonment_detection(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Run one abandonment sweep for the caller's company."""
    count = cart_abandonment_service.detect_abandoned_carts_for_company(db, current_user.company_id)
    return {"abandoned": count}


@router.post("/recovery-emails")
def send_recovery_emails(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    sent = cart_abandonment_service.send_pending_recovery_emails(db)
    return {"sent": sent}


@router.get("/recover/{token}", response_model=RecoverCartResponse)
def recover_cart(token: str, db: Session = Depends(get_db)):
    """Redeem a recovery link. Public: the token is the credential."""
    session_token = cart_abandonment_service.recover_cart(db, token)
    if session_token is None:
        raise HTTPException(status_code=404, detail="Recovery link is invalid or expired")
    return RecoverCartResponse(session_token=session_token)


@router.get("/{cart_id}", response_model=CartResponse)
def get_cart(
    cart_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return cart_abandonment_service.get_cart(db, cart_id, current_user.company_id)


@router.post("/{cart_id}/activity", response_model=CartResponse)
def record_activity(
    cart_id: int,
    request: CartActivity,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Touch the cart (and optionally add items)."""
    return cart_abandonment_service.record_cart_activity(
        db, cart_id, current_user.company_id, items=[item.model_dump() for item in request.items]
    )


@router.post("/{cart_id}/convert", response_model=CartResponse)
def convert_cart(
    cart_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return cart_abandonment_service.convert_cart(db, cart_id, current_user.company_id)
