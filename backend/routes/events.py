"""
Domain event outbox endpoints.
Downstream consumers poll unpublished events and acknowledge them.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from database import get_db
from models import User
from routes.auth import get_current_user
from schemas import EventResponse, MarkPublishedRequest
from services import events

router = APIRouter(prefix="/events", tags=["Events"])


@router.get("/", response_model=List[EventResponse])
def list_events(
    event_type: Optional[str] = None,
    unpublished_only: bool = True,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return events.list_events(
        db,
        company_id=current_user.company_id,
        event_type=event_type,
        unpublished_only=unpublished_only,
        limit=limit,
    )


@router.post("/published")
def mark_published(
    request: MarkPublishedRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Acknowledge events (only the caller's company's rows are touched)."""
    return {"updated": events.mark_published(db, request.ids, company_id=current_user.company_id)}
