# chatsales/agents/prompt_composer.py
"""
Prompt Composer

Builds the single system instruction for the next reply. Exactly one
template is active per turn, chosen by precedence (highest first):

  1. demo mode
  2. discovery
  3. qualification complete (always offers booking, with a support note if a ticket is open)
  4. support ticket just created + qualification active
  5. qualification
  6. support only
  7. fallback

Interrupts (objection rebuttal, urgency, buying intent) and the last
validation failure render inside whichever template is active. Tone rules
live in StyleConstraints so they can be checked on their own.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from chatsales.agents.field_validator import FIELD_LABELS
from chatsales.agents.question_selector import DialoguePhase, QuestionPlan
from chatsales.config import settings
from chatsales.models.conversation import ConversationRecord
from chatsales.models.lead import LeadRecord
from chatsales.models.support_ticket import TicketRecord


# =============================================================================
# Style constraints
# =============================================================================

_EMOJI = re.compile("[\U0001F300-\U0001FAFF\U00002600-\U000027BF\U0001F000-\U0001F2FF]")
_CONTRACTION = re.compile(r"\b\w+(?:n't|'re|'m|'ll|'ve|'d)\b", re.IGNORECASE)
_SENTENCE_END = re.compile(r"[.!?]+(?=\s|$)")

DEFAULT_FORBIDDEN_PHRASES: Tuple[str, ...] = (
    "I'd be happy to help",
    "Feel free to",
    "Please don't hesitate",
    "At your convenience",
)


@dataclass(frozen=True)
class StyleConstraints:
    """
    Tone rules for one reply.

    max_sentences counts the whole reply; max_words counts each message
    block (blocks are separated by blank lines).
    """
    max_sentences: int = 3
    max_words: int = 40
    forbidden_phrases: Tuple[str, ...] = DEFAULT_FORBIDDEN_PHRASES
    allow_emojis: bool = False
    use_contractions: bool = True

    def render(self) -> str:
        lines = [
            "STYLE RULES:",
            f"- At most {self.max_sentences} sentences in total.",
            f"- At most {self.max_words} words per message; split longer replies into short messages separated by a blank line.",
        ]
        if self.forbidden_phrases:
            quoted = ", ".join(f'"{p}"' for p in self.forbidden_phrases)
            lines.append(f"- Never use these phrases: {quoted}.")
        lines.append("- Emojis are fine, sparingly." if self.allow_emojis else "- No emojis.")
        if self.use_contractions:
            lines.append("- Use contractions (I'm, you're, that's, don't). Sound like a real person texting.")
        else:
            lines.append("- Do not use contractions.")
        return "\n".join(lines)

    def violations(self, text: str) -> List[str]:
        """Human-readable list of rules the reply breaks; empty when compliant."""
        problems: List[str] = []
        body = (text or "").strip()
        if not body:
            return problems

        sentences = len(_SENTENCE_END.findall(body)) or 1
        if sentences > self.max_sentences:
            problems.append(f"{sentences} sentences (max {self.max_sentences})")

        for block in re.split(r"\n\s*\n", body):
            words = len(block.split())
            if words > self.max_words:
                problems.append(f"message of {words} words (max {self.max_words})")

        lowered = body.lower()
        for phrase in self.forbidden_phrases:
            if phrase.lower() in lowered:
                problems.append(f'forbidden phrase "{phrase}"')

        if not self.allow_emojis and _EMOJI.search(body):
            problems.append("contains emoji")
        if not self.use_contractions and _CONTRACTION.search(body):
            problems.append("uses contractions")
        return problems


DEFAULT_STYLE = StyleConstraints()
DEMO_STYLE = StyleConstraints(max_sentences=6, max_words=15)


# =============================================================================
# Content tables
# =============================================================================

OBJECTION_REBUTTALS: Dict[str, str] = {
    "price": "Totally fair. How much does one missed lead cost you?",
    "timing": "I hear that a lot. What usually changes between now and later?",
    "trust": "Totally fair. What feels risky: the tech, setup, or results?",
    "authority": "That makes sense. Do they usually care about price, results, or time saved?",
    "hidden": "No problem. Usually it's cost, trust, or ROI. Which one?",
    "roi": "Good question. How many jobs cover {price}? One or two?",
}

FIELD_GUIDANCE: Dict[str, str] = {
    "name": "Ask for their first name, e.g. \"Sarah\".",
    "email": "Ask for a complete email address like name@company.com.",
    "phone": "Any phone number with digits works, e.g. (555) 123-4567.",
    "service_need": "A short description of what they want help with is enough.",
    "timing": "A rough timeframe is fine, e.g. \"next month\" or \"asap\".",
    "budget": "A rough number or range is fine, e.g. \"around 5k\". \"Not sure\" is also fine.",
    "leads_per_week": "A rough number or range is fine.",
    "leads_per_day": "A rough number is fine.",
    "overnight_leads": "A rough number is fine.",
    "deal_value": "A rough dollar amount or range is fine.",
}


class TemplateKind(str, Enum):
    DEMO = "demo"
    DISCOVERY = "discovery"
    QUALIFICATION_COMPLETE = "qualification_complete"
    SUPPORT_AND_QUALIFICATION = "support_and_qualification"
    QUALIFICATION = "qualification"
    SUPPORT = "support"
    FALLBACK = "fallback"


@dataclass
class PromptContext:
    plan: QuestionPlan
    lead: LeadRecord
    demo_mode: bool = False
    active_ticket: Optional[TicketRecord] = None
    ticket_just_created: bool = False
    booking_link: Optional[str] = None

    @property
    def qualification_active(self) -> bool:
        return self.plan.discovery_complete and self.plan.question is not None

    @property
    def qualification_complete(self) -> bool:
        return self.plan.discovery_complete and self.plan.all_questions_answered


@dataclass
class ComposedPrompt:
    kind: TemplateKind
    system_prompt: str
    style: StyleConstraints = field(default=DEFAULT_STYLE)


FALLBACK_QUESTION = "I'd love to get to know you better. What's your name?"


class PromptComposer:

    def __init__(
        self,
        persona_name: Optional[str] = None,
        product_name: Optional[str] = None,
        product_price: Optional[str] = None,
        style: StyleConstraints = DEFAULT_STYLE,
        demo_style: StyleConstraints = DEMO_STYLE,
    ):
        self.persona = persona_name or settings.AGENT_PERSONA_NAME
        self.product = product_name or settings.PRODUCT_NAME
        self.price = product_price or settings.PRODUCT_PRICE
        self.style = style
        self.demo_style = demo_style

    def choose_template(self, ctx: PromptContext) -> TemplateKind:
        if ctx.demo_mode:
            return TemplateKind.DEMO
        if not ctx.plan.discovery_complete and ctx.plan.question:
            return TemplateKind.DISCOVERY
        if ctx.qualification_complete:
            return TemplateKind.QUALIFICATION_COMPLETE
        if ctx.ticket_just_created and ctx.qualification_active:
            return TemplateKind.SUPPORT_AND_QUALIFICATION
        if ctx.qualification_active:
            return TemplateKind.QUALIFICATION
        if ctx.active_ticket is not None and ctx.active_ticket.is_active:
            return TemplateKind.SUPPORT
        return TemplateKind.FALLBACK

    def compose(self, ctx: PromptContext) -> ComposedPrompt:
        kind = self.choose_template(ctx)
        style = self.demo_style if kind == TemplateKind.DEMO else self.style
        builder = {
            TemplateKind.DEMO: self._demo,
            TemplateKind.DISCOVERY: self._discovery,
            TemplateKind.QUALIFICATION_COMPLETE: self._qualification_complete,
            TemplateKind.SUPPORT_AND_QUALIFICATION: self._support_and_qualification,
            TemplateKind.QUALIFICATION: self._qualification,
            TemplateKind.SUPPORT: self._support,
            TemplateKind.FALLBACK: self._fallback,
        }[kind]

        sections = [builder(ctx)]
        if kind != TemplateKind.DEMO:
            sections.append(self._collected(ctx.lead))
            interrupt = self._interrupt(ctx)
            if interrupt:
                sections.append(interrupt)
        sections.append(style.render())
        return ComposedPrompt(kind=kind, system_prompt="\n\n".join(s for s in sections if s), style=style)

    def build_messages(
        self,
        composed: ComposedPrompt,
        conversation: ConversationRecord,
        history_limit: int = 20,
    ) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": composed.system_prompt}]
        for turn in conversation.dialogue()[-history_limit:]:
            messages.append({"role": turn.role.value, "content": turn.content})
        return messages

    # =========================================================================
    # Shared pieces
    # =========================================================================

    def _header(self, extra: str = "") -> str:
        return (
            f"You are {self.persona}, a real sales rep for {self.product}. You're friendly, direct, "
            f"and sound like a genuine person, not a bot. {extra}"
        ).strip()

    def _ask(self, question: str, ctx: PromptContext) -> str:
        lines = [f'Ask exactly this question: "{question}"']
        failure = ctx.plan.failure
        if failure:
            label = FIELD_LABELS.get(failure.field, failure.field)
            lines.append(
                f"The visitor's last answer for their {label} was not usable ({failure.reason}). "
                f"Briefly say what you need, then ask again."
            )
            guidance = FIELD_GUIDANCE.get(failure.field)
            if guidance:
                lines.append(guidance)
        lines.append("Ask only this one question.")
        return "\n".join(lines)

    def _collected(self, lead: LeadRecord) -> str:
        known = lead.collected()
        if not known:
            return ""
        rows = "\n".join(f"- {FIELD_LABELS.get(k, k)}: {v}" for k, v in known.items())
        return f"WHAT YOU KNOW ABOUT THIS VISITOR (use it to personalize, never re-ask):\n{rows}"

    def _interrupt(self, ctx: PromptContext) -> str:
        plan = ctx.plan
        parts = []
        if plan.phase == DialoguePhase.OBJECTION and plan.signals.objection:
            rebuttal = OBJECTION_REBUTTALS.get(plan.signals.objection, OBJECTION_REBUTTALS["hidden"])
            parts.append(
                f"OBJECTION ({plan.signals.objection}): respond with \"{rebuttal.format(price=self.price)}\" "
                "Handle the objection this turn instead of asking the next question."
            )
        if plan.phase == DialoguePhase.BUYING_INTENT:
            close = f'"{self.price}. 30-day free trial. Want to try it?"'
            if not ctx.lead.has("email"):
                parts.append(f'BUYING INTENT: the visitor is ready. Skip remaining questions. Get their email: "Great! What\'s your email?" then close with {close}')
            else:
                parts.append(f"BUYING INTENT: the visitor is ready. No more discovery. Close with {close}")
        if plan.signals.urgent:
            parts.append(
                'URGENT REQUEST: acknowledge it first: "Got it. Is this an emergency or scheduled?" '
                'If it is an emergency, ask "What\'s the best number to reach you?"'
            )
        return "\n".join(parts)

    # =========================================================================
    # Templates
    # =========================================================================

    def _demo(self, ctx: PromptContext) -> str:
        ticket_note = ""
        if ctx.ticket_just_created and ctx.active_ticket:
            ticket_note = (
                f"\n\nA support ticket was just created (Ticket ID: {ctx.active_ticket.ticket_id}).\n"
                "Respond first with: \"Got it. I've created a ticket for you. Someone will follow up soon.\" "
                "Then continue the conversation naturally."
            )
        return f"""You are {self.persona}, the live demo of {self.product}.

ABSOLUTE MESSAGE LENGTH RULES:
- 10-15 words MAX per message. If you need to say more, send 2-3 separate short messages, each on its own line with a blank line between.
- Never write paragraphs.

YOU ARE THE DEMO:
- This chat IS the demonstration. Never offer to book a demo or schedule a call.
- If asked to see how it works: "You're looking at it! I work just like this on your site 24/7."
- Do not ask for name, email or phone.

PRICING (when asked):
"{self.price}."

"No contracts. Cancel anytime."

"30-day free trial, no card needed to start."{ticket_note}"""

    def _discovery(self, ctx: PromptContext) -> str:
        ticket_note = ""
        if ctx.ticket_just_created and ctx.active_ticket:
            ticket_note = (
                f"\nA support ticket was just created ({ctx.active_ticket.ticket_id}). "
                "Acknowledge it in one short sentence, then ask the question."
            )
        return (
            f"{self._header()}\n\n"
            "DISCOVERY: learn about their business one question at a time. "
            "No pitching, no feature lists, no pricing unless asked.\n"
            f"{self._ask(ctx.plan.question, ctx)}{ticket_note}"
        )

    def _qualification_complete(self, ctx: PromptContext) -> str:
        lead = ctx.lead
        support_note = ""
        if ctx.active_ticket is not None and ctx.active_ticket.is_active:
            if ctx.ticket_just_created:
                support_note = (
                    f"Start with ONE sentence: \"I've created a support ticket for you (Ticket ID: "
                    f"{ctx.active_ticket.ticket_id}), and our team will contact you soon.\"\n"
                )
            else:
                support_note = (
                    f"Start with ONE sentence: \"Your support ticket ({ctx.active_ticket.ticket_id}) "
                    "is being handled by our team.\"\n"
                )
        link = ctx.booking_link or ""
        return (
            f"{self._header('The lead qualification is complete!')}\n\n"
            f"{support_note}"
            "You MUST offer to book a demo in this reply. An open support ticket never replaces the offer.\n"
            f"Include this link exactly: [Book a Demo]({link})\n"
            f"Tie it back to what they told you: {lead.service_need or 'their needs'}, "
            f"timeline {lead.timing or 'getting started'}, budget {lead.budget or 'their budget'}."
        )

    def _support_and_qualification(self, ctx: PromptContext) -> str:
        ticket_id = ctx.active_ticket.ticket_id if ctx.active_ticket else ""
        return (
            f"{self._header('A support ticket has just been created for this visitor because they reported a problem. You are also qualifying this lead.')}\n\n"
            "Do BOTH in one reply, qualification first in importance:\n"
            f"1. ONE sentence: \"I'm sorry to hear about the issue. I've created a support ticket for you "
            f"(Ticket ID: {ticket_id}), and our team will contact you soon.\"\n"
            "2. Then continue qualification.\n"
            f"{self._ask(ctx.plan.question, ctx)}\n"
            "Do not ask follow-up questions about the problem; the team has it."
        )

    def _qualification(self, ctx: PromptContext) -> str:
        ticket_note = ""
        if ctx.active_ticket is not None and ctx.active_ticket.is_active:
            ticket_note = "\nA support ticket already exists and was acknowledged earlier. Do not mention it."
        return (
            f"{self._header()}\n\n"
            "QUALIFICATION: collect the visitor's contact details and needs, one question at a time.\n"
            f"{self._ask(ctx.plan.question, ctx)}{ticket_note}"
        )

    def _support(self, ctx: PromptContext) -> str:
        ticket = ctx.active_ticket
        if ctx.ticket_just_created:
            ack = (
                f"A support ticket has just been created (Ticket ID: {ticket.ticket_id}). Tell them it was submitted, "
                "give them the Ticket ID, and say the support team will contact them soon."
            )
        else:
            ack = f"A support ticket ({ticket.ticket_id}) is open. Reassure them it is being handled."
        return (
            f"{self._header('Be empathetic.')}\n\n"
            f"{ack}\n"
            "Acknowledge their problem. Do not troubleshoot or promise timelines."
        )

    def _fallback(self, ctx: PromptContext) -> str:
        return f"{self._header()}\n\n{self._ask(ctx.plan.question or FALLBACK_QUESTION, ctx)}"
