"""
domain/intervention_templates.py - Copy for save-flow interventions.

One template per save-flow stage plus the plain recovery email sent by the
abandonment sweep. Each template has subject / headline / body / cta parts
with {placeholder} substitution. The branching stage swaps in the diagnosis
branch message when the abandonment reason is known.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from domain.enums import CartSaveStage
from domain.save_flow import get_intervention_for_reason


# ===========================================================================
# Template Definition
# ===========================================================================

@dataclass
class InterventionTemplate:
    """Subject, headline, body and call-to-action for one message."""
    name: str
    subject: str
    headline: str
    body: str
    cta: str
    description: str = ""


# Global template registry
TEMPLATES: dict[str, InterventionTemplate] = {}

DEFAULT_TRIGGERS: list[str] = ["urgency", "loss_aversion"]


def _register(t: InterventionTemplate) -> InterventionTemplate:
    TEMPLATES[t.name] = t
    return t


# ===========================================================================
# Stage Templates
# ===========================================================================

_register(InterventionTemplate(
    name=CartSaveStage.BROWSE_REMINDER,
    description="Gentle in-app nudge shortly after the cart goes quiet",
    subject="Still shopping?",
    headline="Hey {customer_name}, still deciding?",
    body="You have {item_count} {item_text} waiting in your cart.",
    cta="Continue Shopping",
))

_register(InterventionTemplate(
    name=CartSaveStage.PATTERN_INTERRUPT,
    subject="{customer_name}, you left something behind",
    headline="Your cart misses you",
    body="Your {item_count} {item_text} are still waiting. Complete your order before they sell out!",
    cta="Complete Your Order",
))

_register(InterventionTemplate(
    name=CartSaveStage.DIAGNOSIS_SURVEY,
    description="Asks the shopper why they left",
    subject="Quick question about your order",
    headline="{customer_name}, we noticed you didn't complete your order",
    body="We'd love to help. What's holding you back?",
    cta="Tell Us Why",
))

_register(InterventionTemplate(
    name=CartSaveStage.BRANCHING_INTERVENTION,
    description="Reason-specific help; subject and body come from the diagnosis branch",
    subject="A special offer for you",
    headline="We've got something for you",
    body="Complete your order today with a special offer.",
    cta="Claim Your Offer",
))

_register(InterventionTemplate(
    name=CartSaveStage.NUCLEAR_OFFER,
    subject="Our best offer - just for you",
    headline="{customer_name}, this is our best offer",
    body="We really want you to experience our products. Here's our best deal.",
    cta="Get My Discount",
))

_register(InterventionTemplate(
    name=CartSaveStage.LOSS_VISUALIZATION,
    subject="Last chance - your cart is expiring",
    headline="Don't miss out",
    body="Your {item_count} {item_text} won't be reserved much longer. Act now to avoid disappointment.",
    cta="Save My Items",
))

_register(InterventionTemplate(
    name=CartSaveStage.WINBACK_SEQUENCE,
    subject="We miss you!",
    headline="It's been a while",
    body="Your favorites are still here. Come back and see what's new!",
    cta="Shop Now",
))

_register(InterventionTemplate(
    name="recovery_email",
    description="Sent once by the abandonment sweep, independent of the save flow",
    subject="You left {item_count} {item_text} in your cart",
    headline="Hi {customer_name}, your cart is waiting",
    body="Pick up right where you left off. Your cart total is {currency} {grand_total}.\n\n{recovery_url}",
    cta="Return to Cart",
))

_register(InterventionTemplate(
    name="default",
    subject="Complete your order",
    headline="Your cart is waiting",
    body="You have {item_count} {item_text} in your cart.",
    cta="Complete Order",
))


# ===========================================================================
# Rendering
# ===========================================================================

def _fill(text: str, params: dict) -> str:
    for key, value in params.items():
        text = text.replace(f"{{{key}}}", str(value))
    # Unfilled placeholders collapse to nothing
    return re.sub(r"\{(\w+)\}", "", text)


def render_template(name: str, params: dict | None = None) -> Optional[dict[str, str]]:
    """Render a registered template into subject/headline/body/cta."""
    template = TEMPLATES.get(name)
    if template is None:
        return None
    params = params or {}
    return {
        "subject": _fill(template.subject, params),
        "headline": _fill(template.headline, params),
        "body": _fill(template.body, params),
        "cta": _fill(template.cta, params),
    }


def render_stage_content(
    stage: str,
    customer_name: str | None,
    item_count: int,
    reason: str | None = None,
) -> dict[str, str]:
    """Render the copy for a save-flow stage.

    The customer name defaults to "there" and "item"/"items" follows the
    count. Unknown stages fall back to the generic template.
    """
    params = {
        "customer_name": customer_name or "there",
        "item_count": item_count,
        "item_text": "item" if item_count == 1 else "items",
    }
    name = stage if stage in TEMPLATES else "default"
    content = render_template(name, params)

    if stage == CartSaveStage.BRANCHING_INTERVENTION:
        intervention = get_intervention_for_reason(reason)
        if intervention:
            content["subject"] = intervention["message"]
            content["body"] = intervention["message"]

    return content


def list_templates() -> list[dict]:
    """Metadata about every registered template."""
    return [
        {"name": str(t.name), "subject": t.subject, "description": t.description}
        for t in TEMPLATES.values()
    ]
