"""
Customer churn endpoints.
Record churn signals, read risk scores, and run the periodic maintenance
sweeps on demand.
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from database import get_db
from domain.enums import RiskLevel
from models import Customer, User
from routes.auth import get_current_user, require_admin
from schemas import ChurnRiskResponse, ChurnSignalCreate, ChurnSignalResponse
from services import churn_predictor_service

router = APIRouter(prefix="/churn", tags=["Churn"])


def _check_customer(db: Session, customer_id: int, company_id: int) -> None:
    exists = (
        db.query(Customer.id)
        .filter(Customer.id == customer_id, Customer.company_id == company_id)
        .first()
    )
    if not exists:
        raise HTTPException(status_code=404, detail="Customer not found")


@router.post("/signals", response_model=ChurnSignalResponse, status_code=201)
def record_signal(
    request: ChurnSignalCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    _check_customer(db, request.customer_id, current_user.company_id)
    return churn_predictor_service.record_signal(
        db,
        request.customer_id,
        request.signal_type,
        value=request.value,
        confidence=request.confidence,
        metadata=request.metadata,
    )


@router.get("/customers/{customer_id}/risk", response_model=ChurnRiskResponse)
def customer_risk(
    customer_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Cached score when fresh (under 6 hours), else recalculated."""
    _check_customer(db, customer_id, current_user.company_id)
    return churn_predictor_service.get_customer_risk_score(db, customer_id)


@router.get("/customers/{customer_id}/signals", response_model=List[ChurnSignalResponse])
def customer_signals(
    customer_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    _check_customer(db, customer_id, current_user.company_id)
    return churn_predictor_service.get_customer_signals(db, customer_id)


@router.get("/high-risk", response_model=List[ChurnRiskResponse])
def high_risk_customers(
    min_level: RiskLevel = RiskLevel.HIGH,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return churn_predictor_service.get_high_risk_customers(
        db, current_user.company_id, min_level=min_level, limit=limit, offset=offset
    )


@router.post("/purge-expired")
def purge_expired(db: Session = Depends(get_db), current_user: User = Depends(require_admin)):
    return {"purged": churn_predictor_service.purge_expired_signals(db)}


@router.post("/recalculate")
def recalculate(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    count = churn_predictor_service.recalculate_all_risk_scores(db, company_id=current_user.company_id)
    return {"recalculated": count}
