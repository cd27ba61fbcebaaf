"""
domain/voice_recovery.py - Script and outcome rules for recovery calls.

A voice recovery call is an outbound call to a shopper who left a cart. The
agent greets them, asks what held them back, follows up on the answer and,
where it fits, offers something concrete. The call ends in one of the
VoiceCallOutcome values, which decides what happens to the save attempt:

    SAVED               --> CONVERTED
    DECLINED            --> EXHAUSTED
    NO_ANSWER           --> stays ACTIVE
    VOICEMAIL           --> stays ACTIVE
    CALLBACK_SCHEDULED  --> stays ACTIVE (plus a follow-up call if a time was given)

Pure module: no ORM, no I/O.
"""
from __future__ import annotations

import re
from typing import Any, Optional

from domain.enums import CartAbandonmentReason, CartSaveStatus, VoiceCallOutcome


# ---------------------------------------------------------------------------
# Default Script
# ---------------------------------------------------------------------------

DEFAULT_VOICE_SCRIPT: dict[str, Any] = {
    "name": "Cart Recovery - Default",
    "opening": {
        "greeting": (
            "Hi {customer_name}! This is a quick call about the {item_count} {item_text} "
            "you were checking out earlier. We noticed you didn't complete your purchase "
            "and wanted to make sure everything was okay."
        ),
        "confirm_customer": True,
    },
    "diagnosis": {
        "primary_question": "Was there anything that held you back from completing your order today?",
        "follow_ups": [
            {
                "trigger": r"price|expensive|cost|afford",
                "question": (
                    "I totally understand, budget matters. Would it help if I could offer "
                    "you a special discount to make it more affordable?"
                ),
            },
            {
                "trigger": r"shipping|delivery",
                "question": (
                    "Got it, shipping can be a factor. Let me check if we have any shipping "
                    "offers available for you."
                ),
            },
            {
                "trigger": r"later|busy|time",
                "question": (
                    "No problem at all! Would you like me to save your cart and send you a "
                    "reminder? I can also set up a special offer that'll be waiting for you."
                ),
            },
            {
                "trigger": r"compare|other|looking",
                "question": (
                    "Smart move to compare options! Is there anything specific about the "
                    "product you'd like me to clarify?"
                ),
            },
        ],
    },
    "interventions": {
        "price_concern": {
            "response": "Great news, I can offer you 15% off your order right now. Would you like me to apply that?",
            "offer": {"type": "PERCENTAGE", "value": 15},
        },
        "shipping_issue": {
            "response": "I can offer you free shipping on this order. Want me to update your cart?",
            "offer": {"type": "FREE_SHIPPING", "value": 0},
        },
        "needs_time": {
            "response": (
                "Absolutely, I'll keep your cart saved, and I'm adding a 10% discount "
                "that'll be there when you're ready."
            ),
            "offer": {"type": "PERCENTAGE", "value": 10},
        },
        "product_uncertainty": {
            "response": (
                "Happy to answer any questions. To help you decide, I can offer free "
                "returns within 30 days."
            ),
            "offer": {"type": "EXTENDED_RETURNS", "value": 30},
        },
    },
    "closing": {
        "accept_offer": "Wonderful! I've applied that to your account. Thanks so much for your time today!",
        "decline_offer": "No problem at all! Your cart will stay saved for you. Have a great day!",
        "escalate_to_human": "Let me connect you with a team member who can help further. One moment please.",
    },
}

# Abandonment reason -> intervention key in the script
REASON_CONDITIONS: dict[str, str] = {
    CartAbandonmentReason.TOO_EXPENSIVE: "price_concern",
    CartAbandonmentReason.SHIPPING_COST: "shipping_issue",
    CartAbandonmentReason.SAVING_FOR_LATER: "needs_time",
    CartAbandonmentReason.JUST_BROWSING: "needs_time",
    CartAbandonmentReason.COMPARING_OPTIONS: "product_uncertainty",
    CartAbandonmentReason.NEED_MORE_INFO: "product_uncertainty",
}


# ---------------------------------------------------------------------------
# Script Helpers
# ---------------------------------------------------------------------------

def opening_lines(customer_name: Optional[str], item_count: int, script: Optional[dict] = None) -> str:
    """Greeting plus the diagnosis question, as spoken at the start of the call."""
    script = script or DEFAULT_VOICE_SCRIPT
    greeting = script["opening"]["greeting"].format(
        customer_name=customer_name or "there",
        item_count=item_count,
        item_text="item" if item_count == 1 else "items",
    )
    return f"{greeting} {script['diagnosis']['primary_question']}"


def follow_up_for(answer: str, script: Optional[dict] = None) -> Optional[str]:
    """First follow-up question whose trigger matches the shopper's answer."""
    script = script or DEFAULT_VOICE_SCRIPT
    for follow_up in script["diagnosis"]["follow_ups"]:
        if re.search(follow_up["trigger"], answer or "", re.IGNORECASE):
            return follow_up["question"]
    return None


def intervention_for_reason(reason: Optional[str], script: Optional[dict] = None) -> Optional[dict]:
    """Scripted response and offer for an abandonment reason, if the script has one."""
    script = script or DEFAULT_VOICE_SCRIPT
    condition = REASON_CONDITIONS.get(reason)
    if condition is None:
        return None
    return script["interventions"].get(condition)


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

OUTCOME_STATUS: dict[str, str] = {
    VoiceCallOutcome.SAVED: CartSaveStatus.CONVERTED,
    VoiceCallOutcome.DECLINED: CartSaveStatus.EXHAUSTED,
    VoiceCallOutcome.NO_ANSWER: CartSaveStatus.ACTIVE,
    VoiceCallOutcome.VOICEMAIL: CartSaveStatus.ACTIVE,
    VoiceCallOutcome.CALLBACK_SCHEDULED: CartSaveStatus.ACTIVE,
}

# Outcomes where nobody picked up
UNANSWERED_OUTCOMES: set[str] = {VoiceCallOutcome.NO_ANSWER, VoiceCallOutcome.VOICEMAIL}


def status_for_outcome(outcome: str) -> str:
    return OUTCOME_STATUS[outcome]


def is_final_outcome(outcome: str) -> bool:
    return status_for_outcome(outcome) != CartSaveStatus.ACTIVE
