from datetime import datetime, timedelta

from domain.enums import CartAbandonmentReason, CartSaveResponseType, CartSaveStage
from domain.intervention_templates import render_stage_content, render_template
from domain.save_flow import (
    adjust_for_blackout,
    calculate_cart_risk_score,
    default_flow_config,
    determine_start_stage,
    generate_offer,
    get_intervention_for_reason,
    get_next_stage,
    get_stage_config,
    has_high_value_items,
    in_blackout,
    merge_flow_config,
    select_channels,
)

NOW = datetime(2026, 3, 10, 12, 0)


def _config(**disabled):
    overrides = {"stages": {key: {"enabled": False} for key in disabled}}
    return merge_flow_config(default_flow_config(), overrides)


# ---------------------------------------------------------------------------
# Stage navigation
# ---------------------------------------------------------------------------

def test_start_stage_defaults_to_browse_reminder():
    assert determine_start_stage(default_flow_config()) == CartSaveStage.BROWSE_REMINDER


def test_start_stage_falls_back_to_pattern_interrupt():
    config = _config(browse_reminder=True)
    assert determine_start_stage(config) == CartSaveStage.PATTERN_INTERRUPT


def test_start_stage_floor_is_diagnosis_survey():
    config = _config(browse_reminder=True, pattern_interrupt=True, diagnosis_survey=True)
    assert determine_start_stage(config) == CartSaveStage.DIAGNOSIS_SURVEY


def test_next_stage_follows_fixed_order():
    config = default_flow_config()
    assert get_next_stage(CartSaveStage.BROWSE_REMINDER, config) == CartSaveStage.PATTERN_INTERRUPT
    assert get_next_stage(CartSaveStage.DIAGNOSIS_SURVEY, config) == CartSaveStage.BRANCHING_INTERVENTION


def test_next_stage_skips_disabled_stages():
    config = _config(nuclear_offer=True, loss_visualization=True)
    assert (
        get_next_stage(CartSaveStage.BRANCHING_INTERVENTION, config)
        == CartSaveStage.WINBACK_SEQUENCE
    )


def test_next_stage_none_when_exhausted_or_converted():
    config = default_flow_config()
    assert get_next_stage(CartSaveStage.WINBACK_SEQUENCE, config) is None
    assert get_next_stage(
        CartSaveStage.BROWSE_REMINDER, config, CartSaveResponseType.CONVERTED
    ) is None


def test_next_stage_unknown_stage_returns_none():
    assert get_next_stage("NOT_A_STAGE", default_flow_config()) is None


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def test_merge_keeps_untouched_keys_and_does_not_mutate_base():
    base = default_flow_config()
    merged = merge_flow_config(base, {
        "stages": {"nuclear_offer": {"max_discount_percent": 25}},
        "blackout_hours": {"start": 23},
    })

    nuclear = get_stage_config(CartSaveStage.NUCLEAR_OFFER, merged)
    assert nuclear["max_discount_percent"] == 25
    assert nuclear["enabled"] is True
    assert merged["blackout_hours"] == {"start": 23, "end": 8}
    assert base["stages"]["nuclear_offer"]["max_discount_percent"] == 20


def test_merge_replaces_channel_lists():
    merged = merge_flow_config(default_flow_config(), {
        "stages": {"branching_intervention": {"channels": ["PUSH"]}},
    })
    stage = get_stage_config(CartSaveStage.BRANCHING_INTERVENTION, merged)
    assert stage["channels"] == ["PUSH"]


def test_select_channels_defaults_to_email():
    assert select_channels(None) == ["EMAIL"]
    assert select_channels({"enabled": True}) == ["EMAIL"]
    assert select_channels({"channels": ["SMS", "PUSH"]}) == ["SMS", "PUSH"]


# ---------------------------------------------------------------------------
# Diagnosis & offers
# ---------------------------------------------------------------------------

def test_intervention_for_reason():
    first = get_intervention_for_reason(CartAbandonmentReason.TOO_EXPENSIVE)
    assert first["type"] == "DISCOUNT"
    assert first["value"] == 10
    assert get_intervention_for_reason(None) is None
    assert get_intervention_for_reason("UNHEARD_OF") is None


def test_offer_only_on_offer_stages():
    stage_config = {"max_discount_percent": 15}
    assert generate_offer(
        CartSaveStage.PATTERN_INTERRUPT, stage_config, CartAbandonmentReason.TOO_EXPENSIVE, NOW
    ) is None


def test_too_expensive_discount_is_capped_at_15():
    offer = generate_offer(
        CartSaveStage.NUCLEAR_OFFER, {"max_discount_percent": 20}, CartAbandonmentReason.TOO_EXPENSIVE, NOW
    )
    assert offer["type"] == "PERCENTAGE"
    assert offer["value"] == 15
    assert offer["code"] == "SAVE15"
    assert offer["expires_at"] == NOW + timedelta(hours=48)


def test_too_expensive_defaults_to_ten_percent():
    offer = generate_offer(
        CartSaveStage.BRANCHING_INTERVENTION, {}, CartAbandonmentReason.TOO_EXPENSIVE, NOW
    )
    assert offer["code"] == "SAVE10"


def test_shipping_cost_gets_free_shipping():
    offer = generate_offer(
        CartSaveStage.BRANCHING_INTERVENTION, {"max_discount_percent": 15}, CartAbandonmentReason.SHIPPING_COST, NOW
    )
    assert offer["type"] == "FREE_SHIPPING"
    assert offer["code"] == "FREESHIP"
    assert offer["value"] is None


def test_nuclear_offer_without_reason_uses_stage_max():
    offer = generate_offer(CartSaveStage.NUCLEAR_OFFER, {"max_discount_percent": 20}, None, NOW)
    assert offer["value"] == 20
    assert offer["code"] == "COMEBACK20"
    assert offer["expires_at"] == NOW + timedelta(hours=24)


def test_branching_without_price_reason_has_no_offer():
    assert generate_offer(
        CartSaveStage.BRANCHING_INTERVENTION, {"max_discount_percent": 15}, CartAbandonmentReason.JUST_BROWSING, NOW
    ) is None


# ---------------------------------------------------------------------------
# Cart risk
# ---------------------------------------------------------------------------

def test_cart_risk_for_large_anonymous_cart():
    assert calculate_cart_risk_score(250, 1, now=NOW) == 70


def test_cart_risk_for_loyal_customer():
    score = calculate_cart_risk_score(50, 5, customer_created_at=NOW - timedelta(days=365), now=NOW)
    assert score == 15


def test_cart_risk_new_customer_only_gets_base_reduction():
    score = calculate_cart_risk_score(150, 1, customer_created_at=NOW - timedelta(days=3), now=NOW)
    assert score == 45


def test_high_value_items_accepts_dicts():
    assert has_high_value_items([{"unit_price": 20}, {"unit_price": 75}])
    assert not has_high_value_items([{"unit_price": 50}])


# ---------------------------------------------------------------------------
# Blackout hours
# ---------------------------------------------------------------------------

def test_in_blackout_spanning_midnight():
    assert in_blackout(23, 22, 8)
    assert in_blackout(3, 22, 8)
    assert not in_blackout(8, 22, 8)
    assert not in_blackout(12, 22, 8)
    assert not in_blackout(5, 6, 6)


def test_adjust_for_blackout_late_evening_moves_to_next_morning():
    when = datetime(2026, 3, 10, 23, 15)
    assert adjust_for_blackout(when, 22, 8) == datetime(2026, 3, 11, 8, 0)


def test_adjust_for_blackout_early_morning_moves_to_same_morning():
    when = datetime(2026, 3, 10, 3, 40)
    assert adjust_for_blackout(when, 22, 8) == datetime(2026, 3, 10, 8, 0)


def test_adjust_for_blackout_leaves_daytime_alone():
    when = datetime(2026, 3, 10, 14, 5)
    assert adjust_for_blackout(when, 22, 8) == when


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

def test_stage_content_defaults_name_and_pluralises():
    content = render_stage_content(CartSaveStage.PATTERN_INTERRUPT, None, 1)
    assert content["subject"].startswith("there,")
    assert "1 item " in content["body"]


def test_branching_content_uses_diagnosis_message():
    content = render_stage_content(
        CartSaveStage.BRANCHING_INTERVENTION, "Dana", 2, CartAbandonmentReason.SHIPPING_COST
    )
    assert content["subject"] == "Good news: shipping is on us for your order"
    assert content["body"] == content["subject"]


def test_render_template_drops_unfilled_placeholders():
    content = render_template("recovery_email", {"customer_name": "Dana"})
    assert "{" not in content["body"]
    assert content["headline"] == "Hi Dana, your cart is waiting"
    assert render_template("missing", {}) is None
