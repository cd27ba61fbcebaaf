"""
Intervention copy generation.

Templates produce the subject / headline / body / cta for every stage. When
AI features are on and an Anthropic key is configured, Claude rewrites the
body into a warmer, personalised version; any failure keeps the template copy.
"""

import logging
from typing import Optional

import anthropic

from config import settings
from domain.intervention_templates import DEFAULT_TRIGGERS, render_stage_content

logger = logging.getLogger(__name__)

COPYWRITER_SYSTEM_PROMPT = """You write short cart-recovery messages for an online store.

Rules:
- Rewrite only the message body you are given. Keep every fact, number, code and link.
- At most 3 sentences. Friendly, never pushy, no false scarcity.
- Plain text only: no markdown, no emoji, no greeting line, no signature.
- Reply with the rewritten body and nothing else.
"""


class ContentService:
    """Builds intervention content, optionally polished by Claude."""

    def __init__(self):
        self.api_key = settings.ANTHROPIC_API_KEY
        self.enabled = settings.ENABLE_AI_FEATURES and bool(self.api_key)

    def _call_claude(self, user_message: str, max_tokens: int = 300) -> Optional[str]:
        if not self.enabled:
            return None
        try:
            client = anthropic.Anthropic(api_key=self.api_key)
            message = client.messages.create(
                model=settings.AI_MODEL,
                max_tokens=max_tokens,
                system=COPYWRITER_SYSTEM_PROMPT,
                messages=[{"role": "user", "content": user_message}],
            )
            text = message.content[0].text.strip()
            return text or None
        except Exception as e:
            logger.error(f"Claude API error: {e}")
            return None

    def personalise_body(self, stage: str, body: str, reason: Optional[str] = None) -> str:
        prompt = f"Stage: {stage}\n"
        if reason:
            prompt += f"Why the shopper left: {reason}\n"
        prompt += f"\nBody:\n{body}"
        rewritten = self._call_claude(prompt)
        return rewritten or body

    def build_intervention_content(
        self,
        stage: str,
        cart_id: int,
        customer_name: Optional[str],
        item_count: int,
        reason: Optional[str] = None,
    ) -> dict:
        """Full content dict stored on a CartIntervention."""
        content = render_stage_content(stage, customer_name, item_count, reason)
        content["body"] = self.personalise_body(stage, content["body"], reason)
        content["recovery_url"] = recovery_url(cart_id)
        content["triggers_applied"] = list(DEFAULT_TRIGGERS)
        return content


def recovery_url(cart_id: int) -> str:
    return f"{settings.PORTAL_URL.rstrip('/')}/recover/{cart_id}"


content_service = ContentService()
