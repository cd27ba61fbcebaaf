"""
Pydantic schemas for request/response validation.
"""

from datetime import datetime
from typing import Optional, List, Any, Dict
from pydantic import BaseModel, Field

from domain.enums import (
    CartAbandonmentReason,
    CartSaveChannel,
    CartSaveResponseType,
    CheckoutEventType,
    CustomerSignalType,
    RiskLevel,
    VoiceCallOutcome,
)


# ============================= Auth Schemas =============================

class LoginRequest(BaseModel):
    username: str
    password: str


class LoginResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    user: dict


class UserResponse(BaseModel):
    id: int
    username: str
    role: str
    company_id: int
    name: str
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}


# ============================= Cart Schemas =============================

class CustomerCreate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class CustomerResponse(BaseModel):
    id: int
    company_id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class CartItemCreate(BaseModel):
    product_name: str = Field(..., min_length=1, max_length=200)
    sku: Optional[str] = None
    unit_price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    product_snapshot: Dict[str, Any] = {}


class CartItemResponse(BaseModel):
    id: int
    product_name: str
    sku: Optional[str] = None
    unit_price: float
    quantity: int

    model_config = {"from_attributes": True}


class CartCreate(BaseModel):
    customer_id: Optional[int] = None
    customer: Optional[CustomerCreate] = None
    currency: str = "USD"
    items: List[CartItemCreate] = Field(..., min_length=1)


class CartActivity(BaseModel):
    items: List[CartItemCreate] = []


class CartResponse(BaseModel):
    id: int
    company_id: int
    customer_id: Optional[int] = None
    session_token: str
    status: str
    currency: str
    grand_total: float
    item_count: int
    last_activity_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None
    converted_at: Optional[datetime] = None
    recovery_email_sent: bool
    recovery_clicks: int
    items: List[CartItemResponse] = []
    created_at: datetime

    model_config = {"from_attributes": True}


class AbandonmentStats(BaseModel):
    total_abandoned: int
    total_recovered: int
    recovery_rate: float
    total_revenue_lost: float
    total_revenue_recovered: float
    pending_recovery_emails: int


class RecoverCartResponse(BaseModel):
    session_token: str


# ============================= Cart Save Schemas =============================

class CartSaveInitiate(BaseModel):
    cart_id: int
    reason: Optional[CartAbandonmentReason] = None


class CartSaveInitiateResponse(BaseModel):
    attempt_id: int
    stage: str
    created: bool


class CartSaveProgress(BaseModel):
    response_type: Optional[CartSaveResponseType] = None
    answer: Optional[str] = None


class CartSaveProgressResponse(BaseModel):
    stage: Optional[str] = None
    status: str


class DiagnosisAnswer(BaseModel):
    reason: CartAbandonmentReason


class InterventionExecuteResponse(BaseModel):
    intervention_id: int
    channels: List[str]
    scheduled_at: datetime
    status: str
    offer_code: Optional[str] = None


class AttemptStatusResponse(BaseModel):
    attempt_id: int
    status: str
    current_stage: Optional[str] = None
    intervention_count: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class InterventionResponse(BaseModel):
    id: int
    stage: str
    channels: List[str] = []
    content: Dict[str, Any] = {}
    offer_code: Optional[str] = None
    offer_type: Optional[str] = None
    offer_value: Optional[float] = None
    status: str
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivery_results: List[Dict[str, Any]] = []
    response_type: Optional[str] = None

    model_config = {"from_attributes": True}


class CartSaveAttemptResponse(BaseModel):
    id: int
    cart_id: int
    customer_id: Optional[int] = None
    current_stage: str
    status: str
    diagnosis_reason: Optional[str] = None
    customer_risk_score: float
    cart_value: float
    metadata_json: Dict[str, Any] = {}
    stage_history: List[Dict[str, Any]] = []
    interventions: List[InterventionResponse] = []
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class DispatchSummary(BaseModel):
    dispatched: int
    by_status: Dict[str, int] = {}


# ============================= Voice Recovery Schemas =============================

class VoiceRecoveryInitiate(BaseModel):
    cart_id: int


class VoiceRecoveryResult(BaseModel):
    success: bool
    attempt_id: Optional[int] = None
    call_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    reason: Optional[str] = None


class CallOutcomeRequest(BaseModel):
    outcome: VoiceCallOutcome
    reason: Optional[CartAbandonmentReason] = None
    offer_accepted: Optional[str] = Field(None, max_length=30)
    next_attempt_at: Optional[datetime] = None
    duration_seconds: Optional[int] = Field(None, ge=0)


class CallOutcomeResponse(BaseModel):
    attempt_id: int
    status: str
    follow_up_attempt_id: Optional[int] = None


class ScheduledCallsSummary(BaseModel):
    placed: int
    rescheduled: int
    closed: int


# ============================= Checkout Schemas =============================

class CheckoutSessionCreate(BaseModel):
    company_code: str
    cart_token: Optional[str] = None
    lead_id: Optional[str] = None


class CheckoutSessionResponse(BaseModel):
    session_token: str
    cart_id: Optional[int] = None
    customer_id: Optional[int] = None

    model_config = {"from_attributes": True}


class CheckoutEventRequest(BaseModel):
    type: CheckoutEventType
    field: Optional[str] = None
    step: Optional[str] = None
    duration: Optional[int] = Field(None, ge=0)
    promo_code: Optional[str] = None
    timestamp: Optional[int] = None


class CheckoutEventResponse(BaseModel):
    alert: Optional[Dict[str, Any]] = None


class EscalationResponse(BaseModel):
    escalated: bool
    chat_session_id: Optional[int] = None
    reason: Optional[str] = None


# ============================= Churn Schemas =============================

class ChurnSignalCreate(BaseModel):
    customer_id: int
    signal_type: CustomerSignalType
    value: Optional[str] = None
    confidence: float = Field(0.8, ge=0, le=1)
    metadata: Optional[Dict[str, Any]] = None


class ChurnSignalResponse(BaseModel):
    id: int
    customer_id: int
    signal_type: str
    weight: float
    value: Optional[str] = None
    confidence: float
    detected_at: datetime
    expires_at: datetime

    model_config = {"from_attributes": True}


class ChurnRiskResponse(BaseModel):
    customer_id: int
    score: float
    risk_level: RiskLevel
    signal_breakdown: Dict[str, float] = {}
    trend: str
    trend_delta: float
    predicted_churn_date: Optional[datetime] = None
    recommended_actions: List[str] = []
    calculated_at: datetime

    model_config = {"from_attributes": True}


# ============================= Delivery Schemas =============================

class DeliverySendRequest(BaseModel):
    customer_id: int
    channel: CartSaveChannel
    subject: Optional[str] = None
    body: str = Field(..., min_length=1)
    category: Optional[str] = None
    scheduled_for: Optional[datetime] = None


class DeliveryEventRequest(BaseModel):
    event: str
    metadata: Optional[Dict[str, Any]] = None


class DeliveryMessageResponse(BaseModel):
    id: int
    customer_id: int
    channel: str
    subject: Optional[str] = None
    category: Optional[str] = None
    status: str
    status_history: List[Dict[str, Any]] = []
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    clicked_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    retries_remaining: int = 0
    created_at: datetime

    model_config = {"from_attributes": True}


class UnsubscribeRequest(BaseModel):
    customer_id: int
    channel: CartSaveChannel


# ============================= Event Schemas =============================

class EventResponse(BaseModel):
    id: int
    event_type: str
    aggregate_type: Optional[str] = None
    aggregate_id: Optional[str] = None
    payload: Dict[str, Any] = {}
    published: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class MarkPublishedRequest(BaseModel):
    ids: List[int]
