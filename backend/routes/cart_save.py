"""
Cart save-flow endpoints.
Start, advance and inspect save attempts; run the dispatch and expiry
sweeps; read recovery analytics and the company flow configuration.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from database import get_db
from models import User
from routes.auth import get_current_user, require_admin
from schemas import (
    AttemptStatusResponse,
    CartSaveAttemptResponse,
    CartSaveInitiate,
    CartSaveInitiateResponse,
    CartSaveProgress,
    CartSaveProgressResponse,
    DiagnosisAnswer,
    DispatchSummary,
    InterventionExecuteResponse,
)
from services import cart_save_service

router = APIRouter(prefix="/cart-save", tags=["Cart Save"])


@router.post("/initiate", response_model=CartSaveInitiateResponse)
def initiate_flow(
    request: CartSaveInitiate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Start a save flow for a cart. Returns the running attempt if there is one."""
    return cart_save_service.initiate_cart_save_flow(
        db,
        request.cart_id,
        reason=request.reason,
        company_id=current_user.company_id,
        source="manual",
    )


@router.post("/attempts/{attempt_id}/progress", response_model=CartSaveProgressResponse)
def progress_flow(
    attempt_id: int,
    request: CartSaveProgress,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    response = None
    if request.response_type is not None:
        response = {"type": request.response_type, "data": {"answer": request.answer}}
    return cart_save_service.progress_cart_save_flow(
        db, attempt_id, response, company_id=current_user.company_id
    )


@router.post("/attempts/{attempt_id}/execute", response_model=InterventionExecuteResponse)
def execute_intervention(
    attempt_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Schedule (and, when due, send) the intervention for the current stage."""
    return cart_save_service.execute_intervention(
        db, attempt_id, company_id=current_user.company_id
    )


@router.post("/attempts/{attempt_id}/diagnosis", response_model=CartSaveProgressResponse)
def record_diagnosis(
    attempt_id: int,
    request: DiagnosisAnswer,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return cart_save_service.record_diagnosis_answer(
        db, attempt_id, request.reason, company_id=current_user.company_id
    )


@router.get("/attempts/{attempt_id}/status", response_model=AttemptStatusResponse)
def attempt_status(
    attempt_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return cart_save_service.get_attempt_status(db, attempt_id, company_id=current_user.company_id)


@router.get("/attempts", response_model=List[CartSaveAttemptResponse])
def list_attempts(
    status: Optional[str] = None,
    channel: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return cart_save_service.list_attempts(
        db, current_user.company_id, status=status, channel=channel, limit=limit
    )


@router.get("/analytics")
def analytics(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Recovery rate, revenue, and breakdowns by channel, reason and stage."""
    return cart_save_service.get_analytics(db, current_user.company_id, start_date, end_date)


@router.get("/config")
def get_config(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return cart_save_service.get_flow_config(db, current_user.company_id)


@router.put("/config")
def update_config(
    updates: Dict[str, Any],
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Deep-merge overrides into the company's flow configuration."""
    return cart_save_service.update_flow_config(db, current_user.company_id, updates)


@router.post("/dispatch-due", response_model=DispatchSummary)
def dispatch_due(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    return cart_save_service.dispatch_due_interventions(db)


@router.post("/expire-stale")
def expire_stale(
    max_age_days: int = Query(14, ge=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    expired = cart_save_service.expire_stale_attempts(
        db, max_age_days=max_age_days, company_id=current_user.company_id
    )
    return {"expired": expired}
