"""
SQLAlchemy ORM models for the Momentum backend.
"""

from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Float, Boolean, Text,
    DateTime, ForeignKey, JSON, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from database import Base


# ---------------------------------------------------------------------------
# Company (tenant)
# ---------------------------------------------------------------------------
class Company(Base):
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    code = Column(String(20), nullable=False, unique=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    users = relationship("User", back_populates="company")
    customers = relationship("Customer", back_populates="company")


# ---------------------------------------------------------------------------
# User (Authentication)
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    username = Column(String(100), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="manager")  # admin | manager
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    company = relationship("Company", back_populates="users")


# ---------------------------------------------------------------------------
# Customer
# ---------------------------------------------------------------------------
class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    email = Column(String(200), nullable=True, index=True)
    phone = Column(String(30), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    company = relationship("Company", back_populates="customers")
    carts = relationship("Cart", back_populates="customer")
    preferences = relationship("CustomerPreference", back_populates="customer", cascade="all, delete-orphan")


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------
class Cart(Base):
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)
    session_token = Column(String(64), nullable=False, unique=True, index=True)

    status = Column(String(20), default="ACTIVE", index=True)  # ACTIVE | ABANDONED | CONVERTED
    currency = Column(String(3), default="USD")
    grand_total = Column(Float, default=0.0)
    item_count = Column(Integer, default=0)

    last_activity_at = Column(DateTime, default=datetime.utcnow, index=True)
    abandoned_at = Column(DateTime, nullable=True)
    converted_at = Column(DateTime, nullable=True)

    recovery_email_sent = Column(Boolean, default=False)
    recovery_email_sent_at = Column(DateTime, nullable=True)
    recovery_clicks = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    customer = relationship("Customer", back_populates="carts")
    items = relationship("CartItem", back_populates="cart", cascade="all, delete-orphan")
    save_attempts = relationship("CartSaveAttempt", back_populates="cart")


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    cart_id = Column(Integer, ForeignKey("carts.id"), nullable=False, index=True)
    product_name = Column(String(200), nullable=False)
    sku = Column(String(100), nullable=True)
    product_snapshot = Column(JSON, default=dict)
    unit_price = Column(Float, nullable=False)
    quantity = Column(Integer, default=1)

    cart = relationship("Cart", back_populates="items")


# ---------------------------------------------------------------------------
# Funnel Session (checkout behaviour tracking)
# ---------------------------------------------------------------------------
class FunnelSession(Base):
    __tablename__ = "funnel_sessions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    session_token = Column(String(64), nullable=False, unique=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    cart_id = Column(Integer, ForeignKey("carts.id"), nullable=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True)
    lead_id = Column(String(64), nullable=True)  # anonymous lead captured by the funnel

    checkout_behavior = Column(JSON, nullable=True)  # serialized CheckoutSessionData

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    cart = relationship("Cart")
    customer = relationship("Customer")


# ---------------------------------------------------------------------------
# Cart Save Config (per company)
# ---------------------------------------------------------------------------
class CartSaveConfig(Base):
    __tablename__ = "cart_save_configs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, unique=True, index=True)

    stage_configs = Column(JSON, nullable=False, default=dict)  # stage key -> stage config overrides
    max_attempts_per_cart = Column(Integer, default=3)
    respect_unsubscribe = Column(Boolean, default=True)
    blackout_hours_start = Column(Integer, default=22)
    blackout_hours_end = Column(Integer, default=8)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ---------------------------------------------------------------------------
# Cart Save Attempt (one walk through the save-flow stages)
# ---------------------------------------------------------------------------
class CartSaveAttempt(Base):
    __tablename__ = "cart_save_attempts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    cart_id = Column(Integer, ForeignKey("carts.id"), nullable=False, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)

    current_stage = Column(String(40), nullable=False)
    status = Column(String(20), default="ACTIVE", index=True)
    # ACTIVE | PAUSED | CONVERTED | EXHAUSTED | UNSUBSCRIBED | EXPIRED

    diagnosis_reason = Column(String(40), nullable=True)
    customer_risk_score = Column(Float, default=0.0)  # 0-100
    cart_value = Column(Float, default=0.0)

    metadata_json = Column(JSON, default=dict)
    stage_history = Column(JSON, default=list)  # [{stage, entered_at, previous_stage, response}]

    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    cart = relationship("Cart", back_populates="save_attempts")
    customer = relationship("Customer")
    interventions = relationship(
        "CartIntervention",
        back_populates="attempt",
        cascade="all, delete-orphan",
        order_by="CartIntervention.id",
    )


class CartIntervention(Base):
    __tablename__ = "cart_interventions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    attempt_id = Column(Integer, ForeignKey("cart_save_attempts.id"), nullable=False, index=True)
    cart_id = Column(Integer, ForeignKey("carts.id"), nullable=False, index=True)
    stage = Column(String(40), nullable=False)

    channels = Column(JSON, default=list)
    content = Column(JSON, default=dict)  # subject, headline, body, cta, recovery_url, triggers_applied
    triggers_used = Column(JSON, default=list)

    offer_code = Column(String(40), nullable=True)
    offer_type = Column(String(30), nullable=True)  # PERCENTAGE | FREE_SHIPPING
    offer_value = Column(Float, nullable=True)
    offer_expires_at = Column(DateTime, nullable=True)

    status = Column(String(20), default="SCHEDULED", index=True)
    # SCHEDULED | SENT | PARTIALLY_SENT | FAILED | CONVERTED
    scheduled_at = Column(DateTime, nullable=True, index=True)
    sent_at = Column(DateTime, nullable=True)
    converted_at = Column(DateTime, nullable=True)
    delivery_results = Column(JSON, default=list)  # [{channel, status, message_id, error}]

    response_type = Column(String(30), nullable=True)
    response_at = Column(DateTime, nullable=True)
    survey_answer = Column(String(40), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    attempt = relationship("CartSaveAttempt", back_populates="interventions")


# ---------------------------------------------------------------------------
# Customer churn signals & scores
# ---------------------------------------------------------------------------
class ChurnSignal(Base):
    __tablename__ = "churn_signals"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)

    signal_type = Column(String(40), nullable=False, index=True)
    weight = Column(Float, nullable=False)
    value = Column(String(200), nullable=True)
    confidence = Column(Float, default=0.8)  # 0.0-1.0
    decay_days = Column(Integer, nullable=False)

    detected_at = Column(DateTime, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)
    metadata_json = Column(JSON, nullable=True)


class ChurnRiskScore(Base):
    __tablename__ = "churn_risk_scores"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, unique=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)

    score = Column(Float, default=0.0)  # 0-100
    risk_level = Column(String(20), default="MINIMAL", index=True)
    signal_breakdown = Column(JSON, default=dict)
    trend = Column(String(20), default="stable")  # improving | stable | declining
    trend_delta = Column(Float, default=0.0)
    predicted_churn_date = Column(DateTime, nullable=True)
    recommended_actions = Column(JSON, default=list)

    calculated_at = Column(DateTime, default=datetime.utcnow)
    next_calculation_at = Column(DateTime, nullable=True)


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------
class DeliveryMessage(Base):
    __tablename__ = "delivery_messages"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    cart_intervention_id = Column(Integer, ForeignKey("cart_interventions.id"), nullable=True)

    channel = Column(String(20), nullable=False, index=True)
    recipient_email = Column(String(200), nullable=True)
    recipient_phone = Column(String(30), nullable=True)
    subject = Column(String(300), nullable=True)
    body = Column(Text, nullable=False)
    category = Column(String(50), nullable=True)  # cart_recovery | recovery_email | churn | ...

    status = Column(String(20), default="PENDING", index=True)
    status_history = Column(JSON, default=list)
    provider_message_id = Column(String(100), nullable=True)

    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    opened_at = Column(DateTime, nullable=True)
    clicked_at = Column(DateTime, nullable=True)
    converted_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)
    scheduled_for = Column(DateTime, nullable=True)
    opens_count = Column(Integer, default=0)
    clicks_count = Column(Integer, default=0)

    retries_remaining = Column(Integer, default=0)
    next_retry_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)


class DeliveryConfig(Base):
    __tablename__ = "delivery_configs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, unique=True, index=True)
    settings = Column(JSON, nullable=False, default=dict)  # overrides merged onto the defaults
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CustomerPreference(Base):
    __tablename__ = "customer_preferences"
    __table_args__ = (UniqueConstraint("customer_id", "channel", name="uq_customer_channel"),)

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    channel = Column(String(20), nullable=False)
    unsubscribed = Column(Boolean, default=False)
    unsubscribed_at = Column(DateTime, nullable=True)

    customer = relationship("Customer", back_populates="preferences")


# ---------------------------------------------------------------------------
# Customer Service chat (escalation target)
# ---------------------------------------------------------------------------
class CSSession(Base):
    __tablename__ = "cs_sessions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True)
    lead_id = Column(String(64), nullable=True)

    channel = Column(String(20), default="CHAT")
    current_tier = Column(String(20), default="AI_REP")
    status = Column(String(20), default="ACTIVE")
    context = Column(JSON, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)

    messages = relationship("CSMessage", back_populates="session", order_by="CSMessage.id")


class CSMessage(Base):
    __tablename__ = "cs_messages"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("cs_sessions.id"), nullable=False, index=True)
    role = Column(String(20), nullable=False)  # ASSISTANT | CUSTOMER | AGENT
    content = Column(Text, nullable=False)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    session = relationship("CSSession", back_populates="messages")


# ---------------------------------------------------------------------------
# Momentum Event (outbox of domain events for downstream consumers)
# ---------------------------------------------------------------------------
class MomentumEvent(Base):
    __tablename__ = "momentum_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    event_type = Column(String(60), nullable=False, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=True, index=True)
    aggregate_type = Column(String(40), nullable=True)
    aggregate_id = Column(String(64), nullable=True)
    payload = Column(JSON, default=dict)
    published = Column(Boolean, default=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
