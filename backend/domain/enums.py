"""
domain/enums.py - All domain enumerations for the Momentum backend.

Uses StrEnum so values serialize cleanly to JSON and can be stored
directly in String columns.
"""
from __future__ import annotations

from enum import StrEnum


# ---------------------------------------------------------------------------
# Carts
# ---------------------------------------------------------------------------
class CartStatus(StrEnum):
    ACTIVE = "ACTIVE"
    ABANDONED = "ABANDONED"
    CONVERTED = "CONVERTED"


# ---------------------------------------------------------------------------
# Cart Save Flow
# ---------------------------------------------------------------------------
class CartSaveStage(StrEnum):
    """The fixed sequence every save attempt walks through.

    Disabled stages are skipped; the walk never goes backwards.
    """
    BROWSE_REMINDER = "BROWSE_REMINDER"
    PATTERN_INTERRUPT = "PATTERN_INTERRUPT"
    DIAGNOSIS_SURVEY = "DIAGNOSIS_SURVEY"
    BRANCHING_INTERVENTION = "BRANCHING_INTERVENTION"
    NUCLEAR_OFFER = "NUCLEAR_OFFER"
    LOSS_VISUALIZATION = "LOSS_VISUALIZATION"
    WINBACK_SEQUENCE = "WINBACK_SEQUENCE"
    # Outbound call; runs as its own attempt, outside the walk above
    VOICE_RECOVERY = "VOICE_RECOVERY"


class CartSaveStatus(StrEnum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"  # waiting for a scheduled voice call
    CONVERTED = "CONVERTED"
    EXHAUSTED = "EXHAUSTED"
    UNSUBSCRIBED = "UNSUBSCRIBED"
    EXPIRED = "EXPIRED"


class CartAbandonmentReason(StrEnum):
    """Why a shopper left. Answered via the diagnosis survey or predicted."""
    TOO_EXPENSIVE = "TOO_EXPENSIVE"
    SHIPPING_COST = "SHIPPING_COST"
    PAYMENT_ISSUES = "PAYMENT_ISSUES"
    COMPARING_OPTIONS = "COMPARING_OPTIONS"
    NEED_MORE_INFO = "NEED_MORE_INFO"
    JUST_BROWSING = "JUST_BROWSING"
    SAVING_FOR_LATER = "SAVING_FOR_LATER"
    OTHER = "OTHER"


class CartSaveResponseType(StrEnum):
    """Customer response to the latest intervention."""
    OPENED = "OPENED"
    CLICKED = "CLICKED"
    SURVEY_ANSWERED = "SURVEY_ANSWERED"
    DISMISSED = "DISMISSED"
    CONVERTED = "CONVERTED"
    UNSUBSCRIBED = "UNSUBSCRIBED"


class CartSaveChannel(StrEnum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    PUSH = "PUSH"
    IN_APP = "IN_APP"
    VOICE = "VOICE"
    REALTIME = "REALTIME"


class CartInterventionType(StrEnum):
    """Intervention kinds offered by the diagnosis branches."""
    DISCOUNT = "DISCOUNT"
    FREE_SHIPPING = "FREE_SHIPPING"
    PAYMENT_PLAN = "PAYMENT_PLAN"
    ALTERNATIVE_PAYMENT = "ALTERNATIVE_PAYMENT"
    SOCIAL_PROOF = "SOCIAL_PROOF"
    COMPARISON_GUIDE = "COMPARISON_GUIDE"
    PRODUCT_INFO = "PRODUCT_INFO"
    LIVE_CHAT = "LIVE_CHAT"
    SAVE_CART = "SAVE_CART"
    PRICE_ALERT = "PRICE_ALERT"
    SUPPORT = "SUPPORT"


class InterventionStatus(StrEnum):
    SCHEDULED = "SCHEDULED"
    SENT = "SENT"
    PARTIALLY_SENT = "PARTIALLY_SENT"
    FAILED = "FAILED"
    CONVERTED = "CONVERTED"


class VoiceCallOutcome(StrEnum):
    """How a voice recovery call ended."""
    SAVED = "SAVED"
    DECLINED = "DECLINED"
    NO_ANSWER = "NO_ANSWER"
    VOICEMAIL = "VOICEMAIL"
    CALLBACK_SCHEDULED = "CALLBACK_SCHEDULED"


# ---------------------------------------------------------------------------
# Checkout Behaviour
# ---------------------------------------------------------------------------
class CheckoutEventType(StrEnum):
    """Behavioural events posted by the checkout page."""
    FIELD_FOCUS = "FIELD_FOCUS"
    FIELD_BLUR = "FIELD_BLUR"
    TAB_BLUR = "TAB_BLUR"
    TAB_FOCUS = "TAB_FOCUS"
    SCROLL_UP = "SCROLL_UP"
    TOTAL_VIEWED = "TOTAL_VIEWED"
    BACK_NAVIGATION = "BACK_NAVIGATION"
    PAYMENT_METHOD_CHANGED = "PAYMENT_METHOD_CHANGED"
    PROMO_CODE_ATTEMPT = "PROMO_CODE_ATTEMPT"
    CHECKOUT_STARTED = "CHECKOUT_STARTED"
    CHECKOUT_STEP_CHANGED = "CHECKOUT_STEP_CHANGED"


class CheckoutSignalType(StrEnum):
    FIELD_HESITATION = "FIELD_HESITATION"
    PAYMENT_HESITATION = "PAYMENT_HESITATION"
    COMPARISON_SHOPPING = "COMPARISON_SHOPPING"
    PRICE_SHOCK = "PRICE_SHOCK"
    RECONSIDERATION = "RECONSIDERATION"
    PROMO_SEEKING = "PROMO_SEEKING"
    EXTENDED_CHECKOUT = "EXTENDED_CHECKOUT"


class SignalSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class InterventionType(StrEnum):
    """Real-time on-page intervention suggested for a churn alert."""
    DISCOUNT_OFFER = "DISCOUNT_OFFER"
    FREE_SHIPPING = "FREE_SHIPPING"
    TRUST_SIGNAL = "TRUST_SIGNAL"
    VALUE_PROP = "VALUE_PROP"
    CHAT_OFFER = "CHAT_OFFER"
    SAVE_CART = "SAVE_CART"
    SUPPORT_OFFER = "SUPPORT_OFFER"


class InterventionDisplay(StrEnum):
    POPUP = "POPUP"
    BANNER = "BANNER"
    INLINE = "INLINE"
    SIDEBAR = "SIDEBAR"
    CHAT_WIDGET = "CHAT_WIDGET"


# ---------------------------------------------------------------------------
# Customer Churn Prediction
# ---------------------------------------------------------------------------
class SignalCategory(StrEnum):
    ENGAGEMENT = "engagement"
    PAYMENT = "payment"
    BEHAVIOR = "behavior"
    LIFECYCLE = "lifecycle"
    EXTERNAL = "external"


class CustomerSignalType(StrEnum):
    """Customer-level churn signals, each weighted and decaying over time."""
    LOGIN_DECLINE = "LOGIN_DECLINE"
    EMAIL_UNSUBSCRIBE = "EMAIL_UNSUBSCRIBE"
    EMAIL_DISENGAGED = "EMAIL_DISENGAGED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CARD_EXPIRING = "CARD_EXPIRING"
    SUBSCRIPTION_SKIP = "SUBSCRIPTION_SKIP"
    CART_ABANDONED = "CART_ABANDONED"
    CHECKOUT_CHURN_RISK = "CHECKOUT_CHURN_RISK"
    NEGATIVE_SUPPORT_TICKET = "NEGATIVE_SUPPORT_TICKET"
    CANCELLATION_PAGE_VISIT = "CANCELLATION_PAGE_VISIT"
    PLAN_DOWNGRADE = "PLAN_DOWNGRADE"
    COMPETITOR_MENTION = "COMPETITOR_MENTION"
    NEGATIVE_REVIEW = "NEGATIVE_REVIEW"


class RiskLevel(StrEnum):
    MINIMAL = "MINIMAL"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------
class DeliveryStatus(StrEnum):
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    SENDING = "SENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    OPENED = "OPENED"
    CLICKED = "CLICKED"
    CONVERTED = "CONVERTED"
    BOUNCED = "BOUNCED"
    FAILED = "FAILED"
    UNSUBSCRIBED = "UNSUBSCRIBED"


class CSChannel(StrEnum):
    CHAT = "CHAT"
    VOICE = "VOICE"
    EMAIL = "EMAIL"


class CSTier(StrEnum):
    AI_REP = "AI_REP"
    AI_MANAGER = "AI_MANAGER"
    HUMAN_AGENT = "HUMAN_AGENT"
