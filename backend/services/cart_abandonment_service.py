"""
Cart lifecycle and abandonment.

Creates and updates carts, sweeps inactive carts into ABANDONED (feeding the
churn predictor and the save flow), sends the one-off recovery email and
resolves signed recovery links back into a live cart.

Recovery tokens are ``base64url("<cart_id>:<expires_ms>:<sig>")`` where
``sig`` is the first 16 hex chars of HMAC-SHA256 over ``"<cart_id>:<expires_ms>"``
keyed with CART_RECOVERY_SECRET.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from config import settings
from domain.enums import CartSaveChannel, CartSaveStatus, CartStatus, CustomerSignalType
from domain.intervention_templates import render_template
from errors import InvalidStateError, MomentumError, NotFoundError
from models import Cart, CartItem, Company, Customer
from services import cart_save_service, churn_predictor_service, delivery_service
from services.events import record_event

logger = logging.getLogger(__name__)

ABANDONMENT_CONFIG = {
    "at_risk_threshold_minutes": 30,
    "abandoned_threshold_minutes": 60,
    "enable_recovery_emails": True,
    "first_email_delay_hours": 1,
    "second_email_delay_hours": 24,
    "max_recovery_emails": 2,
}

RECOVERY_BATCH_SIZE = 100


# ---------------------------------------------------------------------------
# Cart CRUD
# ---------------------------------------------------------------------------

def _apply_items(cart: Cart, items: List[dict]) -> None:
    for item in items:
        cart.items.append(CartItem(
            product_name=item["product_name"],
            sku=item.get("sku"),
            unit_price=float(item["unit_price"]),
            quantity=int(item.get("quantity", 1)),
            product_snapshot=item.get("product_snapshot") or {},
        ))
    cart.item_count = sum(i.quantity for i in cart.items)
    cart.grand_total = round(sum(i.quantity * i.unit_price for i in cart.items), 2)


def create_customer(db: Session, company_id: int, **fields) -> Customer:
    customer = Customer(company_id=company_id, **fields)
    db.add(customer)
    db.commit()
    db.refresh(customer)
    return customer


def get_cart(db: Session, cart_id: int, company_id: Optional[int] = None) -> Cart:
    cart = db.query(Cart).filter(Cart.id == cart_id).first()
    if not cart or (company_id is not None and cart.company_id != company_id):
        raise NotFoundError("Cart not found")
    return cart


def create_cart(
    db: Session,
    company_id: int,
    items: List[dict],
    customer_id: Optional[int] = None,
    currency: str = "USD",
    now: Optional[datetime] = None,
) -> Cart:
    now = now or datetime.utcnow()
    if customer_id is not None:
        customer = (
            db.query(Customer)
            .filter(Customer.id == customer_id, Customer.company_id == company_id)
            .first()
        )
        if not customer:
            raise NotFoundError(f"Customer {customer_id} not found")

    cart = Cart(
        company_id=company_id,
        customer_id=customer_id,
        session_token=secrets.token_urlsafe(24),
        status=CartStatus.ACTIVE.value,
        currency=currency,
        last_activity_at=now,
        created_at=now,
    )
    _apply_items(cart, items)
    db.add(cart)
    db.commit()
    db.refresh(cart)
    logger.info(f"Cart {cart.id} created for company {company_id} ({cart.item_count} items)")
    return cart


def record_cart_activity(
    db: Session,
    cart_id: int,
    company_id: Optional[int] = None,
    items: Optional[List[dict]] = None,
    now: Optional[datetime] = None,
) -> Cart:
    """Touch the cart's activity clock, optionally adding items."""
    now = now or datetime.utcnow()
    cart = get_cart(db, cart_id, company_id)
    if cart.status == CartStatus.CONVERTED:
        raise InvalidStateError("Cart already converted", cart_id=cart_id)

    if items:
        _apply_items(cart, items)
    cart.last_activity_at = now
    db.commit()
    db.refresh(cart)
    return cart


def convert_cart(db: Session, cart_id: int, company_id: Optional[int] = None, now: Optional[datetime] = None) -> Cart:
    """Mark the cart purchased and close any running save attempt as CONVERTED."""
    now = now or datetime.utcnow()
    cart = get_cart(db, cart_id, company_id)
    if cart.status == CartStatus.CONVERTED:
        return cart

    was_abandoned = cart.abandoned_at is not None
    cart.status = CartStatus.CONVERTED.value
    cart.converted_at = now
    record_event(
        db, "cart.converted",
        {"cart_id": cart.id, "grand_total": cart.grand_total, "recovered": was_abandoned},
        company_id=cart.company_id, aggregate_type="cart", aggregate_id=cart.id,
    )
    db.commit()

    cart_save_service.complete_active_attempts(db, cart.id, CartSaveStatus.CONVERTED, now)
    db.refresh(cart)
    logger.info(f"Cart {cart.id} converted (recovered={was_abandoned})")
    return cart


# ---------------------------------------------------------------------------
# Abandonment detection
# ---------------------------------------------------------------------------

def detect_abandoned_carts_for_company(db: Session, company_id: int, now: Optional[datetime] = None) -> int:
    """Mark inactive ACTIVE carts as ABANDONED. Returns how many were marked."""
    now = now or datetime.utcnow()
    threshold = now - timedelta(minutes=ABANDONMENT_CONFIG["abandoned_threshold_minutes"])

    carts = (
        db.query(Cart)
        .filter(
            Cart.company_id == company_id,
            Cart.status == CartStatus.ACTIVE.value,
            Cart.last_activity_at < threshold,
            Cart.items.any(),
        )
        .all()
    )

    for cart in carts:
        cart.status = CartStatus.ABANDONED.value
        cart.abandoned_at = now
        record_event(
            db, "cart.abandoned",
            {"cart_id": cart.id, "customer_id": cart.customer_id, "grand_total": cart.grand_total},
            company_id=company_id, aggregate_type="cart", aggregate_id=cart.id,
        )
    db.commit()

    for cart in carts:
        if cart.customer_id:
            churn_predictor_service.record_signal(
                db, cart.customer_id, CustomerSignalType.CART_ABANDONED,
                value=cart.grand_total, metadata={"cart_id": cart.id}, now=now,
            )
        if settings.AUTO_START_SAVE_FLOW:
            try:
                cart_save_service.initiate_cart_save_flow(db, cart.id, source="abandonment", now=now)
            except MomentumError as e:
                logger.warning(f"Save flow not started for cart {cart.id}: {e.message}")

    if carts:
        logger.info(f"Marked {len(carts)} carts as abandoned for company {company_id}")
    return len(carts)


def detect_abandoned_carts(db: Session, now: Optional[datetime] = None) -> int:
    """Run abandonment detection for every company."""
    total = 0
    for (company_id,) in db.query(Company.id).all():
        total += detect_abandoned_carts_for_company(db, company_id, now=now)
    return total


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def get_at_risk_carts(db: Session, company_id: int, now: Optional[datetime] = None) -> List[Cart]:
    """ACTIVE carts idle past the at-risk threshold but not yet abandoned."""
    now = now or datetime.utcnow()
    at_risk = now - timedelta(minutes=ABANDONMENT_CONFIG["at_risk_threshold_minutes"])
    abandoned = now - timedelta(minutes=ABANDONMENT_CONFIG["abandoned_threshold_minutes"])
    return (
        db.query(Cart)
        .filter(
            Cart.company_id == company_id,
            Cart.status == CartStatus.ACTIVE.value,
            Cart.last_activity_at < at_risk,
            Cart.last_activity_at >= abandoned,
            Cart.items.any(),
        )
        .order_by(Cart.last_activity_at.asc())
        .all()
    )


def get_abandoned_carts(
    db: Session,
    company_id: int,
    limit: int = 50,
    offset: int = 0,
    has_email: bool = False,
) -> List[Cart]:
    query = db.query(Cart).filter(
        Cart.company_id == company_id,
        Cart.status == CartStatus.ABANDONED.value,
        Cart.items.any(),
    )
    if has_email:
        query = query.join(Customer, Cart.customer_id == Customer.id).filter(Customer.email.isnot(None))
    return query.order_by(Cart.abandoned_at.desc()).offset(offset).limit(limit).all()


def get_abandonment_stats(
    db: Session,
    company_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> dict:
    abandoned_q = db.query(Cart).filter(
        Cart.company_id == company_id, Cart.status == CartStatus.ABANDONED.value
    )
    recovered_q = db.query(Cart).filter(
        Cart.company_id == company_id,
        Cart.status == CartStatus.CONVERTED.value,
        Cart.abandoned_at.isnot(None),
    )
    if start:
        abandoned_q = abandoned_q.filter(Cart.abandoned_at >= start)
        recovered_q = recovered_q.filter(Cart.converted_at >= start)
    if end:
        abandoned_q = abandoned_q.filter(Cart.abandoned_at <= end)
        recovered_q = recovered_q.filter(Cart.converted_at <= end)

    abandoned = abandoned_q.all()
    recovered = recovered_q.all()

    pending = (
        db.query(Cart)
        .join(Customer, Cart.customer_id == Customer.id)
        .filter(
            Cart.company_id == company_id,
            Cart.status == CartStatus.ABANDONED.value,
            Cart.recovery_email_sent.is_(False),
            Customer.email.isnot(None),
        )
        .count()
    )

    total_abandoned = len(abandoned)
    total_recovered = len(recovered)
    return {
        "total_abandoned": total_abandoned,
        "total_recovered": total_recovered,
        "recovery_rate": round(total_recovered / total_abandoned * 100, 2) if total_abandoned else 0.0,
        "total_revenue_lost": round(sum(c.grand_total or 0 for c in abandoned), 2),
        "total_revenue_recovered": round(sum(c.grand_total or 0 for c in recovered), 2),
        "pending_recovery_emails": pending,
    }


# ---------------------------------------------------------------------------
# Recovery tokens
# ---------------------------------------------------------------------------

_DIGITS = re.compile(r"[0-9]+", re.ASCII)
_SIGNATURE = re.compile(r"[0-9a-f]{16}", re.ASCII)


def _sign(payload: str) -> str:
    digest = hmac.new(settings.CART_RECOVERY_SECRET.encode(), payload.encode(), hashlib.sha256).hexdigest()
    return digest[:16]


def generate_recovery_token(cart_id: int, now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    expires = now + timedelta(days=settings.RECOVERY_TOKEN_EXPIRY_DAYS)
    expires_ms = int((expires - datetime(1970, 1, 1)).total_seconds() * 1000)
    payload = f"{cart_id}:{expires_ms}"
    raw = f"{payload}:{_sign(payload)}"
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")


def decode_recovery_token(token: str, now: Optional[datetime] = None) -> Optional[int]:
    """Cart id from a recovery token, or None if malformed, expired or forged."""
    now = now or datetime.utcnow()
    try:
        padded = token + "=" * (-len(token) % 4)
        raw = base64.urlsafe_b64decode(padded.encode()).decode()
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None

    parts = raw.split(":")
    if len(parts) != 3:
        return None
    cart_id, expires_ms, signature = parts
    if not _DIGITS.fullmatch(cart_id) or not _DIGITS.fullmatch(expires_ms):
        return None

    now_ms = int((now - datetime(1970, 1, 1)).total_seconds() * 1000)
    if int(expires_ms) < now_ms:
        return None

    expected = _sign(f"{cart_id}:{expires_ms}")
    if not _SIGNATURE.fullmatch(signature) or not hmac.compare_digest(signature, expected):
        return None
    return int(cart_id)


def recovery_link(cart_id: int, now: Optional[datetime] = None) -> str:
    return f"{settings.PORTAL_URL}/recover/{generate_recovery_token(cart_id, now)}"


# ---------------------------------------------------------------------------
# Recovery emails
# ---------------------------------------------------------------------------

def _send_recovery_email(db: Session, cart: Cart, now: datetime) -> None:
    customer = cart.customer
    content = render_template("recovery_email", {
        "customer_name": customer.first_name or "there",
        "item_count": cart.item_count,
        "item_text": "item" if cart.item_count == 1 else "items",
        "currency": cart.currency,
        "grand_total": f"{cart.grand_total:.2f}",
        "recovery_url": recovery_link(cart.id, now),
    })
    delivery_service.send_message(
        db,
        cart.company_id,
        customer.id,
        CartSaveChannel.EMAIL.value,
        content["subject"],
        content["body"],
        category="recovery_email",
        now=now,
    )
    cart.recovery_email_sent = True
    cart.recovery_email_sent_at = now
    db.commit()
    logger.info(f"Recovery email sent for cart {cart.id}")


def send_pending_recovery_emails(db: Session, now: Optional[datetime] = None) -> int:
    """Email abandoned carts that have waited past the first-email delay. Returns the count sent."""
    now = now or datetime.utcnow()
    if not ABANDONMENT_CONFIG["enable_recovery_emails"]:
        return 0

    threshold = now - timedelta(hours=ABANDONMENT_CONFIG["first_email_delay_hours"])
    carts = (
        db.query(Cart)
        .join(Customer, Cart.customer_id == Customer.id)
        .filter(
            Cart.status == CartStatus.ABANDONED.value,
            Cart.recovery_email_sent.is_(False),
            Cart.abandoned_at <= threshold,
            Customer.email.isnot(None),
        )
        .limit(RECOVERY_BATCH_SIZE)
        .all()
    )
    logger.info(f"Found {len(carts)} carts needing recovery email")

    sent = 0
    for cart in carts:
        try:
            _send_recovery_email(db, cart, now)
            sent += 1
        except MomentumError as e:
            db.rollback()
            logger.error(f"Error sending recovery email for cart {cart.id}: {e.message}")
    return sent


def recover_cart(db: Session, token: str, now: Optional[datetime] = None) -> Optional[str]:
    """Reactivate an ABANDONED cart from a recovery link. Returns its session token."""
    now = now or datetime.utcnow()
    cart_id = decode_recovery_token(token, now)
    if cart_id is None:
        return None

    cart = (
        db.query(Cart)
        .filter(Cart.id == cart_id, Cart.status == CartStatus.ABANDONED.value)
        .first()
    )
    if not cart:
        return None

    cart.status = CartStatus.ACTIVE.value
    cart.last_activity_at = now
    cart.recovery_clicks = (cart.recovery_clicks or 0) + 1
    record_event(
        db, "cart.recovered",
        {"cart_id": cart.id},
        company_id=cart.company_id, aggregate_type="cart", aggregate_id=cart.id,
    )
    db.commit()
    logger.info(f"Cart {cart_id} recovered via email link")
    return cart.session_token
