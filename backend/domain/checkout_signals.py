"""
domain/checkout_signals.py - Real-time checkout behaviour analysis.

The checkout page streams behavioural events (field focus, tab switches,
scrolling back to the totals, promo code attempts...). Each event is folded
into a per-session CheckoutSessionData; after every event the session is
analysed for hesitation signals. When the combined risk crosses the alert
threshold a ChurnAlert is produced with a predicted abandonment reason and a
suggested on-page intervention.

Signals:
    FIELD_HESITATION     >30s since the last field focus
    PAYMENT_HESITATION   >45s spent on a payment / card field
    COMPARISON_SHOPPING  >15s total away from the tab, 2+ tab switches
    PRICE_SHOCK          >5s looking at the total, 2+ scroll-ups
    RECONSIDERATION      2+ back navigations
    PROMO_SEEKING        2+ promo code attempts
    EXTENDED_CHECKOUT    >3 min since checkout started

All timestamps are epoch milliseconds.
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Optional

from domain.enums import (
    CartAbandonmentReason,
    CheckoutEventType,
    CheckoutSignalType,
    InterventionDisplay,
    InterventionType,
    SignalSeverity,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------

FIELD_HESITATION_MS = 30_000
PAYMENT_HESITATION_MS = 45_000
TAB_BLUR_DURATION_MS = 15_000
SCROLL_UP_COUNT = 3
TOTAL_CHECKOUT_TIME_MS = 180_000
PRICE_SHOCK_TIME_MS = 5_000

ALERT_THRESHOLD = 40

SIGNAL_WEIGHTS: dict[str, int] = {
    CheckoutSignalType.PAYMENT_HESITATION: 30,
    CheckoutSignalType.PRICE_SHOCK: 25,
    CheckoutSignalType.COMPARISON_SHOPPING: 25,
    CheckoutSignalType.FIELD_HESITATION: 15,
    CheckoutSignalType.RECONSIDERATION: 15,
    CheckoutSignalType.PROMO_SEEKING: 10,
    CheckoutSignalType.EXTENDED_CHECKOUT: 5,
}

SEVERITY_MULTIPLIERS: dict[str, float] = {
    SignalSeverity.HIGH: 1.0,
    SignalSeverity.MEDIUM: 0.7,
    SignalSeverity.LOW: 0.4,
}


def now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------

@dataclass
class CheckoutEvent:
    """A single behavioural event posted by the checkout page."""
    type: str
    field: Optional[str] = None
    step: Optional[str] = None
    duration: Optional[int] = None
    promo_code: Optional[str] = None
    timestamp: Optional[int] = None


@dataclass
class CheckoutSessionData:
    """Accumulated behaviour for one checkout session.

    Stored as JSON on the funnel session; ``to_dict``/``from_dict`` are the
    persistence boundary.
    """
    current_field: Optional[str] = None
    last_field_focus_time: Optional[int] = None
    field_history: list[dict] = field(default_factory=list)
    field_timings: dict[str, int] = field(default_factory=dict)
    tab_blur_time: Optional[int] = None
    tab_blur_count: int = 0
    total_tab_blur_time: int = 0
    scroll_up_count: int = 0
    last_scroll_up_time: Optional[int] = None
    total_viewed_at: Optional[int] = None
    total_view_duration: int = 0
    back_navigation_count: int = 0
    payment_method_changes: int = 0
    promo_code_attempts: int = 0
    last_promo_attempt: Optional[str] = None
    checkout_start_time: Optional[int] = None
    current_step: Optional[str] = None
    step_history: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CheckoutSessionData":
        """Rebuild from stored JSON, ignoring keys this version doesn't know."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class CheckoutSignal:
    type: str
    severity: str
    field: Optional[str] = None
    duration: Optional[int] = None
    count: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class SuggestedIntervention:
    type: str
    message: str
    urgency: str  # immediate | gentle
    channel: str  # display surface, see InterventionDisplay

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ChurnAlert:
    session_id: str
    signals: list[CheckoutSignal]
    risk_score: float
    predicted_reason: str
    suggested_intervention: SuggestedIntervention
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "signals": [s.to_dict() for s in self.signals],
            "risk_score": self.risk_score,
            "predicted_reason": str(self.predicted_reason),
            "suggested_intervention": self.suggested_intervention.to_dict(),
            "timestamp": self.timestamp,
        }


# ---------------------------------------------------------------------------
# Event Folding
# ---------------------------------------------------------------------------

def process_event(
    data: CheckoutSessionData,
    event: CheckoutEvent,
    now: int | None = None,
) -> CheckoutSessionData:
    """Fold ``event`` into ``data`` in place and return it.

    ``now`` is the processing time in ms; it defaults to the event's own
    timestamp, then to the wall clock. Unknown event types leave the data
    untouched.
    """
    if now is None:
        now = event.timestamp if event.timestamp is not None else now_ms()

    etype = event.type

    if etype == CheckoutEventType.FIELD_FOCUS:
        data.current_field = event.field
        data.last_field_focus_time = now
        data.field_history = data.field_history + [{"field": event.field, "timestamp": now}]

    elif etype == CheckoutEventType.FIELD_BLUR:
        spent = now - (data.last_field_focus_time or now)
        timings = dict(data.field_timings)
        if event.field:
            timings[event.field] = timings.get(event.field, 0) + spent
        data.field_timings = timings
        data.current_field = None

    elif etype == CheckoutEventType.TAB_BLUR:
        data.tab_blur_time = now
        data.tab_blur_count += 1

    elif etype == CheckoutEventType.TAB_FOCUS:
        away = now - data.tab_blur_time if data.tab_blur_time else 0
        data.tab_blur_time = None
        data.total_tab_blur_time += away

    elif etype == CheckoutEventType.SCROLL_UP:
        data.scroll_up_count += 1
        data.last_scroll_up_time = now

    elif etype == CheckoutEventType.TOTAL_VIEWED:
        data.total_viewed_at = data.total_viewed_at or now
        data.total_view_duration += event.duration or 0

    elif etype == CheckoutEventType.BACK_NAVIGATION:
        data.back_navigation_count += 1

    elif etype == CheckoutEventType.PAYMENT_METHOD_CHANGED:
        data.payment_method_changes += 1

    elif etype == CheckoutEventType.PROMO_CODE_ATTEMPT:
        data.promo_code_attempts += 1
        data.last_promo_attempt = event.promo_code

    elif etype == CheckoutEventType.CHECKOUT_STARTED:
        data.checkout_start_time = now

    elif etype == CheckoutEventType.CHECKOUT_STEP_CHANGED:
        data.current_step = event.step
        data.step_history = data.step_history + [{"step": event.step, "timestamp": now}]

    else:
        logger.debug("Ignoring unknown checkout event type %s", etype)

    return data


# ---------------------------------------------------------------------------
# Signal Detection & Scoring
# ---------------------------------------------------------------------------

def _is_payment_field(name: str | None) -> bool:
    return bool(name) and ("payment" in name or "card" in name)


def detect_signals(data: CheckoutSessionData, now: int) -> list[CheckoutSignal]:
    """Return every hesitation signal present in the session right now."""
    signals: list[CheckoutSignal] = []

    if data.last_field_focus_time:
        since_focus = now - data.last_field_focus_time
        if since_focus > FIELD_HESITATION_MS:
            signals.append(CheckoutSignal(
                type=CheckoutSignalType.FIELD_HESITATION,
                severity=SignalSeverity.MEDIUM,
                field=data.current_field,
                duration=since_focus,
            ))

    if _is_payment_field(data.current_field):
        payment_time = data.field_timings.get(data.current_field, 0)
        if payment_time > PAYMENT_HESITATION_MS:
            signals.append(CheckoutSignal(
                type=CheckoutSignalType.PAYMENT_HESITATION,
                severity=SignalSeverity.HIGH,
                field=data.current_field,
                duration=payment_time,
            ))

    if data.total_tab_blur_time > TAB_BLUR_DURATION_MS and data.tab_blur_count >= 2:
        signals.append(CheckoutSignal(
            type=CheckoutSignalType.COMPARISON_SHOPPING,
            severity=SignalSeverity.HIGH,
            duration=data.total_tab_blur_time,
        ))

    if data.total_view_duration > PRICE_SHOCK_TIME_MS and data.scroll_up_count >= 2:
        signals.append(CheckoutSignal(
            type=CheckoutSignalType.PRICE_SHOCK,
            severity=SignalSeverity.HIGH,
            duration=data.total_view_duration,
        ))

    if data.back_navigation_count >= 2:
        signals.append(CheckoutSignal(
            type=CheckoutSignalType.RECONSIDERATION,
            severity=SignalSeverity.MEDIUM,
            count=data.back_navigation_count,
        ))

    if data.promo_code_attempts >= 2:
        signals.append(CheckoutSignal(
            type=CheckoutSignalType.PROMO_SEEKING,
            severity=SignalSeverity.MEDIUM,
            count=data.promo_code_attempts,
        ))

    if data.checkout_start_time:
        elapsed = now - data.checkout_start_time
        if elapsed > TOTAL_CHECKOUT_TIME_MS:
            signals.append(CheckoutSignal(
                type=CheckoutSignalType.EXTENDED_CHECKOUT,
                severity=SignalSeverity.LOW,
                duration=elapsed,
            ))

    return signals


def calculate_risk_score(signals: list[CheckoutSignal]) -> float:
    """Weighted sum of signals scaled by severity, capped at 100."""
    score = 0.0
    for signal in signals:
        weight = SIGNAL_WEIGHTS.get(signal.type, 10)
        score += weight * SEVERITY_MULTIPLIERS.get(signal.severity, 0.4)
    return min(100.0, round(score, 2))


def predict_abandonment_reason(
    signals: list[CheckoutSignal],
    data: CheckoutSessionData,
) -> str:
    """Most likely reason the shopper is about to leave, in priority order."""
    types = {s.type for s in signals}

    if CheckoutSignalType.PRICE_SHOCK in types or CheckoutSignalType.PROMO_SEEKING in types:
        return CartAbandonmentReason.TOO_EXPENSIVE
    if CheckoutSignalType.COMPARISON_SHOPPING in types:
        return CartAbandonmentReason.COMPARING_OPTIONS
    if CheckoutSignalType.PAYMENT_HESITATION in types:
        return CartAbandonmentReason.PAYMENT_ISSUES
    if data.promo_code_attempts > 0:
        return CartAbandonmentReason.TOO_EXPENSIVE
    if CheckoutSignalType.FIELD_HESITATION in types and "shipping" in (data.current_field or ""):
        return CartAbandonmentReason.SHIPPING_COST
    return CartAbandonmentReason.JUST_BROWSING


# ---------------------------------------------------------------------------
# Interventions & Chat Openers
# ---------------------------------------------------------------------------

_INTERVENTIONS: dict[str, tuple[str, str, str, str]] = {
    # reason -> (type, message, urgency, display)
    CartAbandonmentReason.TOO_EXPENSIVE: (
        InterventionType.DISCOUNT_OFFER, "Hesitating? Use code SAVE10 for 10% off!",
        "gentle", InterventionDisplay.POPUP,
    ),
    CartAbandonmentReason.SHIPPING_COST: (
        InterventionType.FREE_SHIPPING, "Free shipping on orders over $50!",
        "gentle", InterventionDisplay.BANNER,
    ),
    CartAbandonmentReason.PAYMENT_ISSUES: (
        InterventionType.TRUST_SIGNAL, "Secure checkout. 30-day returns. 24/7 support.",
        "gentle", InterventionDisplay.INLINE,
    ),
    CartAbandonmentReason.COMPARING_OPTIONS: (
        InterventionType.VALUE_PROP, "Why customers choose us: Fast shipping, quality guarantee",
        "gentle", InterventionDisplay.SIDEBAR,
    ),
    CartAbandonmentReason.NEED_MORE_INFO: (
        InterventionType.CHAT_OFFER, "Have questions? Chat with us!",
        "gentle", InterventionDisplay.CHAT_WIDGET,
    ),
    CartAbandonmentReason.JUST_BROWSING: (
        InterventionType.SAVE_CART, "Save your cart for later?",
        "gentle", InterventionDisplay.POPUP,
    ),
    CartAbandonmentReason.OTHER: (
        InterventionType.SUPPORT_OFFER, "Having trouble? We can help!",
        "immediate", InterventionDisplay.CHAT_WIDGET,
    ),
    CartAbandonmentReason.SAVING_FOR_LATER: (
        InterventionType.SAVE_CART, "No pressure - we'll save your cart",
        "gentle", InterventionDisplay.POPUP,
    ),
}


def suggest_intervention(reason: str, risk_score: float) -> SuggestedIntervention:
    """On-page intervention for a predicted reason.

    A TOO_EXPENSIVE alert above 70 is shown immediately instead of gently.
    """
    itype, message, urgency, display = _INTERVENTIONS.get(
        reason, _INTERVENTIONS[CartAbandonmentReason.JUST_BROWSING]
    )
    if reason == CartAbandonmentReason.TOO_EXPENSIVE and risk_score > 70:
        urgency = "immediate"
    return SuggestedIntervention(
        type=str(itype), message=message, urgency=urgency, channel=str(display),
    )


PROACTIVE_MESSAGES: dict[str, str] = {
    CartAbandonmentReason.TOO_EXPENSIVE: (
        "Hey there! I noticed you might be looking for the best deal. "
        "I might be able to help with a special offer - interested?"
    ),
    CartAbandonmentReason.SHIPPING_COST: (
        "Hi! Have questions about shipping? I'm here to help - we have some great options!"
    ),
    CartAbandonmentReason.PAYMENT_ISSUES: (
        "Hello! I wanted to let you know we're here to help if you have any questions "
        "about your order. We've got secure checkout and easy returns!"
    ),
    CartAbandonmentReason.COMPARING_OPTIONS: (
        "Hi there! I see you're doing some research - smart! "
        "Can I answer any questions to help you decide?"
    ),
    CartAbandonmentReason.NEED_MORE_INFO: (
        "Hey! Have questions about what you're looking at? I'd love to help you find the perfect fit!"
    ),
    CartAbandonmentReason.JUST_BROWSING: "Hi! Just wanted to check in - let me know if you need any help!",
    CartAbandonmentReason.OTHER: "Hello! Running into any issues? I'm here to help get you sorted!",
    CartAbandonmentReason.SAVING_FOR_LATER: (
        "Hi there! No pressure at all - but if there's anything I can help with, just let me know!"
    ),
}


def proactive_message(reason: str) -> str:
    """Opening chat line for a proactive escalation."""
    return PROACTIVE_MESSAGES.get(reason, PROACTIVE_MESSAGES[CartAbandonmentReason.JUST_BROWSING])


# ---------------------------------------------------------------------------
# Analysis Entry Point
# ---------------------------------------------------------------------------

def analyze_signals(
    session_id: str,
    data: CheckoutSessionData,
    now: int | None = None,
) -> Optional[ChurnAlert]:
    """Analyse a session and return an alert when risk reaches 40, else None."""
    now = now if now is not None else now_ms()
    signals = detect_signals(data, now)
    if not signals:
        return None

    risk_score = calculate_risk_score(signals)
    if risk_score < ALERT_THRESHOLD:
        return None

    reason = predict_abandonment_reason(signals, data)
    return ChurnAlert(
        session_id=session_id,
        signals=signals,
        risk_score=risk_score,
        predicted_reason=reason,
        suggested_intervention=suggest_intervention(reason, risk_score),
        timestamp=now,
    )
