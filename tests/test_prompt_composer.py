# tests/test_prompt_composer.py
"""
Prompt Composer: template precedence, interrupts and style constraints.
"""

import pytest

from chatsales.agents.field_validator import ValidationFailure
from chatsales.agents.prompt_composer import (
    DEFAULT_STYLE,
    DEMO_STYLE,
    PromptComposer,
    PromptContext,
    StyleConstraints,
    TemplateKind,
)
from chatsales.agents.question_selector import QuestionSelector, TurnSignals
from chatsales.models.conversation import ConversationRecord, TurnRecord, TurnRole
from chatsales.models.lead import LeadRecord
from chatsales.models.support_ticket import TicketRecord, TicketStatus


DISCOVERED = dict(
    name="Maria",
    business_type="plumbing",
    lead_source="google",
    leads_per_week="15",
    deal_value="$1500",
    after_hours_pain="voicemail",
)
COMPLETE = dict(DISCOVERED, email="maria@plumb.co", phone="555-0100", service_need="chatbot",
                timing="next month", budget="10k")
LINK = "http://localhost:3000/book-demo?sessionId=s-1"


def _ticket(status=TicketStatus.OPEN) -> TicketRecord:
    return TicketRecord(ticket_id="TKT-1", session_id="s-1", status=status, transcript="user: it's broken")


def _ctx(lead_fields, signals=None, failures=(), asked_field=None, **kwargs) -> PromptContext:
    lead = LeadRecord(session_id="s-1", **lead_fields)
    plan = QuestionSelector().select(lead, signals, failures, asked_field)
    return PromptContext(plan=plan, lead=lead, **kwargs)


# ============================================================================
# TEMPLATE PRECEDENCE
# ============================================================================

class TestTemplatePrecedence:

    def setup_method(self):
        self.composer = PromptComposer(persona_name="Abby", product_name="LeadBot", product_price="$97/month")

    def test_demo_mode_wins(self):
        ctx = _ctx(COMPLETE, demo_mode=True, booking_link=LINK)
        composed = self.composer.compose(ctx)
        assert composed.kind == TemplateKind.DEMO
        assert composed.style == DEMO_STYLE
        assert "Never offer to book a demo" in composed.system_prompt

    def test_discovery_template(self):
        composed = self.composer.compose(_ctx({"name": "Maria"}))
        assert composed.kind == TemplateKind.DISCOVERY
        assert 'Ask exactly this question: "What type of business is this?"' in composed.system_prompt

    def test_opening_uses_discovery_template_with_name_question(self):
        composed = self.composer.compose(_ctx({}))
        assert composed.kind == TemplateKind.DISCOVERY
        assert "Who am I speaking with?" in composed.system_prompt

    def test_qualification_complete_offers_booking_link(self):
        composed = self.composer.compose(_ctx(COMPLETE, booking_link=LINK))
        assert composed.kind == TemplateKind.QUALIFICATION_COMPLETE
        assert f"[Book a Demo]({LINK})" in composed.system_prompt

    def test_qualification_complete_outranks_support(self):
        """An open ticket never replaces the booking offer."""
        ctx = _ctx(COMPLETE, booking_link=LINK, active_ticket=_ticket(), ticket_just_created=True)
        composed = self.composer.compose(ctx)
        assert composed.kind == TemplateKind.QUALIFICATION_COMPLETE
        assert "TKT-1" in composed.system_prompt
        assert LINK in composed.system_prompt

    def test_support_and_qualification(self):
        ctx = _ctx(DISCOVERED, active_ticket=_ticket(), ticket_just_created=True)
        composed = self.composer.compose(ctx)
        assert composed.kind == TemplateKind.SUPPORT_AND_QUALIFICATION
        assert "Ticket ID: TKT-1" in composed.system_prompt
        assert "What's your email?" in composed.system_prompt

    def test_existing_ticket_during_qualification(self):
        ctx = _ctx(DISCOVERED, active_ticket=_ticket(), ticket_just_created=False)
        composed = self.composer.compose(ctx)
        assert composed.kind == TemplateKind.QUALIFICATION
        assert "Do not mention it" in composed.system_prompt

    def test_discovery_acknowledges_new_ticket(self):
        ctx = _ctx({"name": "Maria"}, active_ticket=_ticket(), ticket_just_created=True)
        composed = self.composer.compose(ctx)
        assert composed.kind == TemplateKind.DISCOVERY
        assert "TKT-1" in composed.system_prompt

    def test_exactly_one_template_per_turn(self):
        ctx = _ctx(DISCOVERED)
        composed = self.composer.compose(ctx)
        assert composed.system_prompt.count("You are Abby") == 1


class TestPromptContent:

    def setup_method(self):
        self.composer = PromptComposer(persona_name="Abby", product_name="LeadBot", product_price="$97/month")

    def test_validation_failure_rendered(self):
        failure = ValidationFailure("email", "Invalid email format")
        composed = self.composer.compose(_ctx(DISCOVERED, failures=[failure], asked_field="email"))
        assert "Invalid email format" in composed.system_prompt
        assert "name@company.com" in composed.system_prompt

    def test_collected_fields_listed(self):
        composed = self.composer.compose(_ctx({"name": "Maria", "business_type": "plumbing"}))
        assert "WHAT YOU KNOW ABOUT THIS VISITOR" in composed.system_prompt
        assert "plumbing" in composed.system_prompt

    def test_objection_rebuttal(self):
        composed = self.composer.compose(_ctx({"name": "Maria"}, TurnSignals(objection="roi")))
        assert "OBJECTION (roi)" in composed.system_prompt
        assert "$97/month" in composed.system_prompt

    def test_buying_intent_asks_email_first(self):
        composed = self.composer.compose(_ctx(DISCOVERED, TurnSignals(buying_intent=True)))
        assert "BUYING INTENT" in composed.system_prompt
        assert "Get their email" in composed.system_prompt

    def test_urgent_request(self):
        composed = self.composer.compose(_ctx({"name": "Maria"}, TurnSignals(urgent=True)))
        assert "URGENT REQUEST" in composed.system_prompt

    def test_style_rules_rendered(self):
        composed = self.composer.compose(_ctx({}))
        assert "STYLE RULES" in composed.system_prompt
        assert "No emojis." in composed.system_prompt

    def test_build_messages_uses_dialogue_history(self):
        composed = self.composer.compose(_ctx({}))
        from datetime import datetime
        now = datetime.now()
        convo = ConversationRecord(session_id="s-1", turns=[
            TurnRecord(role=TurnRole.USER, content="hi", timestamp=now),
            TurnRecord(role=TurnRole.ASSISTANT, content="Who am I speaking with?", timestamp=now),
            TurnRecord(role=TurnRole.USER, content="Maria", timestamp=now),
        ])

        messages = self.composer.build_messages(composed, convo)

        assert messages[0] == {"role": "system", "content": composed.system_prompt}
        assert [m["role"] for m in messages[1:]] == ["user", "assistant", "user"]
        assert messages[-1]["content"] == "Maria"


# ============================================================================
# STYLE CONSTRAINTS
# ============================================================================

class TestStyleConstraints:

    def test_compliant_reply(self):
        assert DEFAULT_STYLE.violations("Thanks Maria! What type of business is this?") == []

    def test_too_many_sentences(self):
        problems = DEFAULT_STYLE.violations("Hi there. How are you? Great! Tell me.")
        assert any("sentences" in p for p in problems)

    def test_word_limit_is_per_message_block(self):
        long_block = " ".join(["word"] * 41)
        assert any("words" in p for p in DEFAULT_STYLE.violations(long_block))
        split = " ".join(["word"] * 20) + "\n\n" + " ".join(["word"] * 20)
        assert not any("words" in p for p in DEFAULT_STYLE.violations(split))

    def test_forbidden_phrase(self):
        problems = DEFAULT_STYLE.violations("Feel free to ask.")
        assert problems == ['forbidden phrase "Feel free to"']

    def test_emoji(self):
        assert "contains emoji" in DEFAULT_STYLE.violations("Hi \U0001F600")
        assert StyleConstraints(allow_emojis=True).violations("Hi \U0001F600") == []

    @pytest.mark.parametrize("text", ["I'm here.", "That doesn't work."])
    def test_contractions_flagged_when_disabled(self, text):
        style = StyleConstraints(use_contractions=False)
        assert "uses contractions" in style.violations(text)
        assert DEFAULT_STYLE.violations(text) == []
