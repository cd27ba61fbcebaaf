"""
domain/save_flow.py - Cart save-flow stage machine.

An abandoned cart is walked through a fixed sequence of stages, each one a
different kind of nudge. Stages can be switched off per company; the walk
always moves forward and skips disabled stages.

Stage Order:
    BROWSE_REMINDER --> PATTERN_INTERRUPT --> DIAGNOSIS_SURVEY
        --> BRANCHING_INTERVENTION --> NUCLEAR_OFFER
        --> LOSS_VISUALIZATION --> WINBACK_SEQUENCE --> (exhausted)

    A CONVERTED response ends the walk at any stage.

Everything here is pure: no ORM, no I/O. The service layer loads the company
config, calls into these functions and persists the result.
"""
from __future__ import annotations

import copy
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from domain.enums import (
    CartAbandonmentReason,
    CartInterventionType,
    CartSaveChannel,
    CartSaveResponseType,
    CartSaveStage,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Stage Order & Config Keys
# ---------------------------------------------------------------------------

STAGE_ORDER: list[str] = [
    CartSaveStage.BROWSE_REMINDER,
    CartSaveStage.PATTERN_INTERRUPT,
    CartSaveStage.DIAGNOSIS_SURVEY,
    CartSaveStage.BRANCHING_INTERVENTION,
    CartSaveStage.NUCLEAR_OFFER,
    CartSaveStage.LOSS_VISUALIZATION,
    CartSaveStage.WINBACK_SEQUENCE,
]

# Stage -> key under config["stages"]
STAGE_CONFIG_KEYS: dict[str, str] = {stage: stage.value.lower() for stage in STAGE_ORDER}
STAGE_CONFIG_KEYS[CartSaveStage.VOICE_RECOVERY] = "voice_recovery"

# Stages that may carry a discount / free-shipping offer
OFFER_STAGES: set[str] = {
    CartSaveStage.BRANCHING_INTERVENTION,
    CartSaveStage.NUCLEAR_OFFER,
}


# ---------------------------------------------------------------------------
# Default Flow Configuration
# ---------------------------------------------------------------------------

DEFAULT_CART_SAVE_CONFIG: dict[str, Any] = {
    "stages": {
        "browse_reminder": {
            "enabled": True,
            "delay_minutes": 30,
            "channels": [CartSaveChannel.IN_APP.value],
        },
        "pattern_interrupt": {
            "enabled": True,
            "delay_minutes": 60,
            "channels": [CartSaveChannel.EMAIL.value],
        },
        "diagnosis_survey": {
            "enabled": True,
            "delay_minutes": 24 * 60,
            "channels": [CartSaveChannel.EMAIL.value],
        },
        "branching_intervention": {
            "enabled": True,
            "delay_minutes": 60,
            "channels": [CartSaveChannel.EMAIL.value, CartSaveChannel.SMS.value],
            "max_discount_percent": 15,
        },
        "nuclear_offer": {
            "enabled": True,
            "delay_minutes": 48 * 60,
            "channels": [CartSaveChannel.EMAIL.value, CartSaveChannel.SMS.value],
            "max_discount_percent": 20,
        },
        "loss_visualization": {
            "enabled": True,
            "delay_minutes": 72 * 60,
            "channels": [CartSaveChannel.EMAIL.value],
        },
        "winback_sequence": {
            "enabled": True,
            "delay_minutes": 7 * 24 * 60,
            "channels": [CartSaveChannel.EMAIL.value],
        },
        "voice_recovery": {
            "enabled": False,
            "delay_minutes": 0,
            "channels": [CartSaveChannel.VOICE.value],
        },
    },
    "max_attempts_per_cart": 3,
    "respect_unsubscribe": True,
    "blackout_hours": {"start": 22, "end": 8},
}


def default_flow_config() -> dict[str, Any]:
    """Return a fresh copy of the default config (safe to mutate)."""
    return copy.deepcopy(DEFAULT_CART_SAVE_CONFIG)


def deep_merge(base: dict[str, Any], overrides: dict[str, Any] | None) -> dict[str, Any]:
    """Merge ``overrides`` onto ``base`` recursively without mutating either.

    Nested dicts are merged key by key; every other value (lists included)
    is replaced outright.
    """
    merged = copy.deepcopy(base)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def merge_flow_config(base: dict[str, Any], overrides: dict[str, Any] | None) -> dict[str, Any]:
    """Apply company overrides to a flow config.

    ``stages``, each stage block and ``blackout_hours`` merge key by key, so
    an override of ``{"stages": {"nuclear_offer": {"enabled": False}}}``
    leaves the rest of that stage intact. ``channels`` lists are replaced.
    """
    return deep_merge(base, overrides)


# ---------------------------------------------------------------------------
# Stage Navigation
# ---------------------------------------------------------------------------

def get_stage_config(stage: str, config: dict[str, Any]) -> Optional[dict[str, Any]]:
    """Look up the config block for a stage, or None for an unknown stage."""
    key = STAGE_CONFIG_KEYS.get(stage)
    if key is None:
        return None
    return config.get("stages", {}).get(key)


def is_stage_enabled(stage: str, config: dict[str, Any]) -> bool:
    stage_config = get_stage_config(stage, config)
    return bool(stage_config and stage_config.get("enabled"))


def determine_start_stage(config: dict[str, Any]) -> str:
    """Pick the first stage a new attempt enters.

    BROWSE_REMINDER if enabled, else PATTERN_INTERRUPT if enabled. The
    diagnosis survey is the floor even when it is itself disabled.
    """
    if is_stage_enabled(CartSaveStage.BROWSE_REMINDER, config):
        return CartSaveStage.BROWSE_REMINDER
    if is_stage_enabled(CartSaveStage.PATTERN_INTERRUPT, config):
        return CartSaveStage.PATTERN_INTERRUPT
    return CartSaveStage.DIAGNOSIS_SURVEY


def get_next_stage(
    current_stage: str,
    config: dict[str, Any],
    response_type: str | None = None,
) -> Optional[str]:
    """Return the next enabled stage after ``current_stage``.

    Returns None when the customer converted or when no enabled stage
    remains (the attempt is exhausted).
    """
    if response_type == CartSaveResponseType.CONVERTED:
        return None

    try:
        current_index = STAGE_ORDER.index(current_stage)
    except ValueError:
        logger.warning("Unknown save-flow stage %s", current_stage)
        return None

    for stage in STAGE_ORDER[current_index + 1:]:
        if is_stage_enabled(stage, config):
            return stage
    return None


def select_channels(stage_config: dict[str, Any] | None) -> list[str]:
    """Channels configured for a stage; EMAIL when none are set."""
    if stage_config:
        channels = stage_config.get("channels")
        if channels:
            return list(channels)
        if stage_config.get("channel"):
            return [stage_config["channel"]]
    return [CartSaveChannel.EMAIL.value]


# ---------------------------------------------------------------------------
# Diagnosis Branches
# ---------------------------------------------------------------------------

DIAGNOSIS_BRANCHES: dict[str, list[dict[str, Any]]] = {
    CartAbandonmentReason.TOO_EXPENSIVE: [
        {
            "type": CartInterventionType.DISCOUNT,
            "message": "Here's 10% off to help you complete your order",
            "value": 10,
        },
        {
            "type": CartInterventionType.PAYMENT_PLAN,
            "message": "Split your purchase into 4 interest-free payments",
        },
    ],
    CartAbandonmentReason.SHIPPING_COST: [
        {
            "type": CartInterventionType.FREE_SHIPPING,
            "message": "Good news: shipping is on us for your order",
        },
    ],
    CartAbandonmentReason.PAYMENT_ISSUES: [
        {
            "type": CartInterventionType.ALTERNATIVE_PAYMENT,
            "message": "Having trouble paying? Try another payment method",
        },
        {
            "type": CartInterventionType.SUPPORT,
            "message": "Our team can help you finish checking out",
        },
    ],
    CartAbandonmentReason.COMPARING_OPTIONS: [
        {
            "type": CartInterventionType.COMPARISON_GUIDE,
            "message": "See how your picks compare before you decide",
        },
        {
            "type": CartInterventionType.SOCIAL_PROOF,
            "message": "Thousands of customers chose these items this month",
        },
    ],
    CartAbandonmentReason.NEED_MORE_INFO: [
        {
            "type": CartInterventionType.PRODUCT_INFO,
            "message": "Everything you need to know about the items in your cart",
        },
        {
            "type": CartInterventionType.LIVE_CHAT,
            "message": "Questions? Chat with a product expert now",
        },
    ],
    CartAbandonmentReason.JUST_BROWSING: [
        {
            "type": CartInterventionType.SAVE_CART,
            "message": "We saved your cart so you can pick up where you left off",
        },
    ],
    CartAbandonmentReason.SAVING_FOR_LATER: [
        {
            "type": CartInterventionType.PRICE_ALERT,
            "message": "We'll let you know if the price drops on your items",
        },
        {
            "type": CartInterventionType.SAVE_CART,
            "message": "Your cart is saved and ready whenever you are",
        },
    ],
    CartAbandonmentReason.OTHER: [
        {
            "type": CartInterventionType.SUPPORT,
            "message": "Tell us what went wrong and we'll make it right",
        },
    ],
}


def get_intervention_for_reason(reason: str | None) -> Optional[dict[str, Any]]:
    """First intervention of the branch for ``reason``, or None."""
    if not reason:
        return None
    branch = DIAGNOSIS_BRANCHES.get(reason)
    return branch[0] if branch else None


# ---------------------------------------------------------------------------
# Offers
# ---------------------------------------------------------------------------

def generate_offer(
    stage: str,
    stage_config: dict[str, Any] | None,
    reason: str | None,
    now: datetime | None = None,
) -> Optional[dict[str, Any]]:
    """Build the offer attached to an intervention, if any.

    Only the branching and nuclear stages carry offers:
        TOO_EXPENSIVE  -> percentage off, capped at 15, valid 48h
        SHIPPING_COST  -> free shipping, valid 48h
        NUCLEAR_OFFER  -> the stage's max discount (default 20), valid 24h
    """
    if stage not in OFFER_STAGES:
        return None

    now = now or datetime.utcnow()
    max_discount = (stage_config or {}).get("max_discount_percent", 10)

    if reason == CartAbandonmentReason.TOO_EXPENSIVE:
        value = min(max_discount or 10, 15)
        return {
            "type": "PERCENTAGE",
            "value": value,
            "code": f"SAVE{value}",
            "expires_at": now + timedelta(hours=48),
            "description": f"{value}% off your order",
        }

    if reason == CartAbandonmentReason.SHIPPING_COST:
        return {
            "type": "FREE_SHIPPING",
            "value": None,
            "code": "FREESHIP",
            "expires_at": now + timedelta(hours=48),
            "description": "Free shipping on your order",
        }

    if stage == CartSaveStage.NUCLEAR_OFFER:
        value = max_discount or 20
        return {
            "type": "PERCENTAGE",
            "value": value,
            "code": f"COMEBACK{value}",
            "expires_at": now + timedelta(hours=24),
            "description": f"{value}% off - our best offer",
        }

    return None


# ---------------------------------------------------------------------------
# Cart Risk
# ---------------------------------------------------------------------------

def calculate_cart_risk_score(
    grand_total: float,
    item_count: int,
    customer_created_at: datetime | None = None,
    now: datetime | None = None,
    has_customer: bool | None = None,
) -> float:
    """Heuristic abandonment risk for a cart (0-100).

    Bigger totals raise risk; more items and a known (especially long-lived)
    customer lower it. ``has_customer`` defaults to whether a creation date
    was supplied.
    """
    now = now or datetime.utcnow()
    if has_customer is None:
        has_customer = customer_created_at is not None

    score = 50.0
    total = float(grand_total or 0)
    if total > 100:
        score += 10
    if total > 200:
        score += 10
    if (item_count or 0) > 3:
        score -= 10

    if has_customer:
        score -= 15
        if customer_created_at and (now - customer_created_at) > timedelta(days=30):
            score -= 10

    return max(0.0, min(100.0, score))


def has_high_value_items(items: Iterable[Any], threshold: float = 50.0) -> bool:
    """True when any item's unit price is above ``threshold``.

    Accepts ORM rows or dicts with a ``unit_price`` key.
    """
    for item in items:
        price = item.get("unit_price") if isinstance(item, dict) else getattr(item, "unit_price", 0)
        if float(price or 0) > threshold:
            return True
    return False


# ---------------------------------------------------------------------------
# Blackout Hours
# ---------------------------------------------------------------------------

def in_blackout(hour: int, start_hour: int, end_hour: int) -> bool:
    """Whether ``hour`` falls in [start, end). The window may span midnight."""
    if start_hour == end_hour:
        return False
    if start_hour > end_hour:
        return hour >= start_hour or hour < end_hour
    return start_hour <= hour < end_hour


def adjust_for_blackout(when: datetime, start_hour: int, end_hour: int) -> datetime:
    """Move ``when`` to the end of the blackout window if it falls inside one."""
    if not in_blackout(when.hour, start_hour, end_hour):
        return when

    adjusted = when.replace(hour=end_hour, minute=0, second=0, microsecond=0)
    if adjusted <= when:
        adjusted += timedelta(days=1)
    return adjusted
