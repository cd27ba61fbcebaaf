"""
Delivery endpoints.
Send messages through the rate-limited delivery pipeline, ingest provider
tracking events, and inspect a customer's message history.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from database import get_db
from models import Customer, DeliveryMessage, User
from routes.auth import get_current_user, require_admin
from schemas import (
    DeliveryEventRequest,
    DeliveryMessageResponse,
    DeliverySendRequest,
    UnsubscribeRequest,
)
from services import delivery_service

router = APIRouter(prefix="/delivery", tags=["Delivery"])


@router.post("/send", response_model=DeliveryMessageResponse, status_code=201)
def send_message(
    request: DeliverySendRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return delivery_service.send_message(
        db,
        current_user.company_id,
        request.customer_id,
        request.channel,
        request.subject,
        request.body,
        category=request.category,
        scheduled_for=request.scheduled_for,
    )


@router.post("/messages/{message_id}/events", response_model=DeliveryMessageResponse)
def track_event(
    message_id: int,
    request: DeliveryEventRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Apply a tracking event: delivered, opened, clicked, converted, bounced or unsubscribed."""
    message = db.query(DeliveryMessage).filter(DeliveryMessage.id == message_id).first()
    if not message or message.company_id != current_user.company_id:
        raise HTTPException(status_code=404, detail="Message not found")
    return delivery_service.track_delivery_event(db, message_id, request.event, request.metadata)


@router.get("/customers/{customer_id}/messages", response_model=List[DeliveryMessageResponse])
def customer_messages(
    customer_id: int,
    channel: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return delivery_service.get_customer_messages(
        db, current_user.company_id, customer_id,
        channel=channel, status=status, limit=limit, offset=offset,
    )


@router.post("/unsubscribe")
def unsubscribe(
    request: UnsubscribeRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    customer = db.query(Customer).filter(Customer.id == request.customer_id).first()
    if not customer or customer.company_id != current_user.company_id:
        raise HTTPException(status_code=404, detail="Customer not found")
    pref = delivery_service.record_unsubscribe(db, customer.id, request.channel)
    return {"customer_id": pref.customer_id, "channel": pref.channel, "unsubscribed": pref.unsubscribed}


@router.get("/metrics")
def metrics(
    channel: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return delivery_service.get_delivery_metrics(
        db, current_user.company_id, channel=channel, start_date=start_date, end_date=end_date
    )


@router.get("/config")
def get_config(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return delivery_service.get_delivery_config(db, current_user.company_id)


@router.put("/config")
def update_config(
    updates: dict,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return delivery_service.update_delivery_config(db, current_user.company_id, updates)


@router.post("/process-scheduled")
def process_scheduled(db: Session = Depends(get_db), current_user: User = Depends(require_admin)):
    return {"sent": delivery_service.process_scheduled_messages(db)}


@router.post("/retry-failed")
def retry_failed(db: Session = Depends(get_db), current_user: User = Depends(require_admin)):
    return delivery_service.retry_failed_messages(db)
