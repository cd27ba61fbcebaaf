"""
Domain event outbox.

Services record events (``checkout.churn.detected``, ``churn.signal.detected``,
``cart_save.completed`` ...) as rows in the same transaction as the change
that produced them. Downstream consumers poll unpublished rows and mark them
published once handled.
"""

import logging
from typing import List, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session

from models import MomentumEvent

logger = logging.getLogger(__name__)


def record_event(
    db: Session,
    event_type: str,
    payload: dict,
    company_id: Optional[int] = None,
    aggregate_type: Optional[str] = None,
    aggregate_id=None,
) -> MomentumEvent:
    """Add an event row to the session. The caller owns the commit."""
    event = MomentumEvent(
        event_type=event_type,
        company_id=company_id,
        aggregate_type=aggregate_type,
        aggregate_id=str(aggregate_id) if aggregate_id is not None else None,
        payload=jsonable_encoder(payload),
    )
    db.add(event)
    db.flush()
    logger.info(f"Event {event_type} recorded for {aggregate_type}:{aggregate_id}")
    return event


def list_events(
    db: Session,
    company_id: Optional[int] = None,
    event_type: Optional[str] = None,
    unpublished_only: bool = False,
    limit: int = 100,
) -> List[MomentumEvent]:
    query = db.query(MomentumEvent)
    if company_id is not None:
        query = query.filter(MomentumEvent.company_id == company_id)
    if event_type:
        query = query.filter(MomentumEvent.event_type == event_type)
    if unpublished_only:
        query = query.filter(MomentumEvent.published == False)  # noqa: E712
    return query.order_by(MomentumEvent.id).limit(limit).all()


def mark_published(db: Session, event_ids: List[int], company_id: Optional[int] = None) -> int:
    """Flag events as handled. Returns how many rows were updated."""
    if not event_ids:
        return 0
    query = db.query(MomentumEvent).filter(MomentumEvent.id.in_(event_ids))
    if company_id is not None:
        query = query.filter(MomentumEvent.company_id == company_id)
    count = (
        query
        .update({MomentumEvent.published: True}, synchronize_session=False)
    )
    db.commit()
    return count
