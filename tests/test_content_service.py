from types import SimpleNamespace

import pytest

from conftest import NOW
from config import settings
from domain.intervention_templates import DEFAULT_TRIGGERS, render_stage_content
from models import CartIntervention
from services import cart_save_service, content_service as content_module


class FakeAnthropic:
    """Stands in for anthropic.Anthropic; records every messages.create call."""

    calls = []
    reply = None
    error = None

    def __init__(self, api_key=None):
        self.api_key = api_key
        self.messages = SimpleNamespace(create=self._create)

    def _create(self, **kwargs):
        FakeAnthropic.calls.append(kwargs)
        if FakeAnthropic.error:
            raise FakeAnthropic.error
        return SimpleNamespace(content=[SimpleNamespace(text=f"  {FakeAnthropic.reply}\n")])


@pytest.fixture
def claude(monkeypatch):
    FakeAnthropic.calls = []
    FakeAnthropic.error = None
    FakeAnthropic.reply = "Hi Dana, your Trail Jacket is still waiting for you."
    monkeypatch.setattr(settings, "ENABLE_AI_FEATURES", True)
    monkeypatch.setattr(settings, "ANTHROPIC_API_KEY", "test-key")
    monkeypatch.setattr(content_module.anthropic, "Anthropic", FakeAnthropic)
    return FakeAnthropic


def test_disabled_service_uses_template_copy(monkeypatch):
    monkeypatch.setattr(content_module.anthropic, "Anthropic", FakeAnthropic)
    FakeAnthropic.calls = []
    service = content_module.ContentService()

    content = service.build_intervention_content("BROWSE_REMINDER", 7, "Dana", 3)

    assert content["body"] == render_stage_content("BROWSE_REMINDER", "Dana", 3)["body"]
    assert FakeAnthropic.calls == []


def test_claude_rewrites_the_body(claude):
    service = content_module.ContentService()

    content = service.build_intervention_content(
        "BRANCHING_INTERVENTION", 7, "Dana", 3, reason="TOO_EXPENSIVE"
    )

    template = render_stage_content("BRANCHING_INTERVENTION", "Dana", 3, "TOO_EXPENSIVE")
    assert content["body"] == claude.reply
    assert content["subject"] == template["subject"]
    assert content["recovery_url"] == f"{settings.PORTAL_URL.rstrip('/')}/recover/7"
    assert content["triggers_applied"] == list(DEFAULT_TRIGGERS)

    call = claude.calls[0]
    assert call["model"] == settings.AI_MODEL
    assert call["system"] == content_module.COPYWRITER_SYSTEM_PROMPT
    prompt = call["messages"][0]["content"]
    assert "Why the shopper left: TOO_EXPENSIVE" in prompt
    assert template["body"] in prompt


def test_api_error_keeps_template_body(claude):
    claude.error = RuntimeError("overloaded")
    service = content_module.ContentService()

    content = service.build_intervention_content("BROWSE_REMINDER", 7, "Dana", 3)

    assert content["body"] == render_stage_content("BROWSE_REMINDER", "Dana", 3)["body"]
    assert content["triggers_applied"] == list(DEFAULT_TRIGGERS)
    assert len(claude.calls) == 1


def test_empty_reply_keeps_template_body(claude):
    claude.reply = "   "
    body = content_module.ContentService().personalise_body("BROWSE_REMINDER", "Template body")
    assert body == "Template body"


def test_rewritten_copy_is_stored_on_the_intervention(db, company, customer, make_cart, claude, monkeypatch):
    monkeypatch.setattr(content_module.content_service, "enabled", True)
    monkeypatch.setattr(content_module.content_service, "api_key", "test-key")
    cart = make_cart(company, customer)
    started = cart_save_service.initiate_cart_save_flow(db, cart.id, now=NOW)

    result = cart_save_service.execute_intervention(db, started["attempt_id"], now=NOW)

    intervention = db.get(CartIntervention, result["intervention_id"])
    assert intervention.content["body"] == claude.reply
    assert "/recover/" in intervention.content["recovery_url"]
