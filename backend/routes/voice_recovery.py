"""
Voice recovery endpoints.
Start recovery calls for abandoned carts, report call outcomes, place
scheduled calls, and read call analytics and the default call script.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from domain.voice_recovery import DEFAULT_VOICE_SCRIPT
from models import User
from routes.auth import get_current_user, require_admin
from schemas import (
    CallOutcomeRequest,
    CallOutcomeResponse,
    ScheduledCallsSummary,
    VoiceRecoveryInitiate,
    VoiceRecoveryResult,
)
from services import voice_recovery_service

router = APIRouter(prefix="/voice-recovery", tags=["Voice Recovery"])


@router.post("/initiate", response_model=VoiceRecoveryResult)
def initiate_call(
    request: VoiceRecoveryInitiate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Call the cart's customer now, or schedule the call past blackout hours."""
    return voice_recovery_service.initiate_voice_recovery(db, current_user.company_id, request.cart_id)


@router.post("/calls/{call_id}/outcome", response_model=CallOutcomeResponse)
def report_outcome(
    call_id: str,
    request: CallOutcomeRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return voice_recovery_service.process_call_outcome(
        db,
        call_id,
        request.outcome,
        reason=request.reason,
        offer_accepted=request.offer_accepted,
        next_attempt_at=request.next_attempt_at,
        duration_seconds=request.duration_seconds,
        company_id=current_user.company_id,
    )


@router.post("/dispatch-scheduled", response_model=ScheduledCallsSummary)
def dispatch_scheduled(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    return voice_recovery_service.dispatch_scheduled_calls(db)


@router.get("/analytics")
def analytics(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return voice_recovery_service.get_voice_recovery_analytics(
        db, current_user.company_id, start_date, end_date
    )


@router.get("/script")
def call_script(current_user: User = Depends(get_current_user)):
    return DEFAULT_VOICE_SCRIPT
