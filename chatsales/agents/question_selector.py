# chatsales/agents/question_selector.py
"""
Phase / Question Selector

Derives the dialogue phase from lead completeness plus signals in the latest
message, and picks the single next question to ask. Nothing here is stored:
the plan is recomputed every turn.

Question order:
  opening        name
  discovery      business_type, lead_source, leads_per_week, deal_value, after_hours_pain
  qualification  email, phone, service_need, then
                   timing, budget                                  (budget known)
                   leads_per_day, overnight_leads, return_call_timing (budget "unknown")

Objection, urgency and buying intent are interrupts detected from keywords;
they colour one reply but never move the queue position.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from chatsales.agents.field_validator import ValidationFailure, is_unknown_answer
from chatsales.models.lead import LeadRecord
from chatsales.utils.logger import logger


class DialoguePhase(str, Enum):
    OPENING = "opening"
    DISCOVERY = "discovery"
    QUALIFICATION = "qualification"
    OBJECTION = "objection"
    CLOSING = "closing"
    BUYING_INTENT = "buying_intent"


# =============================================================================
# Question tables
# =============================================================================

OPENING_QUESTION = "Who am I speaking with?"

FIELD_QUESTIONS: Dict[str, str] = {
    "name": OPENING_QUESTION,
    "business_type": "What type of business is this?",
    "lead_source": "How do leads usually come in for you?",
    "leads_per_week": "Roughly how many per week?",
    "deal_value": "What's a typical deal or job worth?",
    "after_hours_pain": "What happens when leads come in after hours or when you're busy?",
    "email": "What's your email?",
    "phone": "And your phone number?",
    "service_need": "What's the main thing you're hoping we can help with?",
    "timing": "To make sure I share the most relevant info, when are you looking to get started?",
    "budget": "To help me personalize this for you, what's your budget range?",
    "leads_per_day": "Got it. To better understand your situation, how many leads do you typically get per day?",
    "overnight_leads": "Thanks! How many of those leads come in overnight or after hours?",
    "return_call_timing": "Perfect. When do you typically return calls to those leads?",
}

DISCOVERY_ORDER: Tuple[str, ...] = ("business_type", "lead_source", "leads_per_week", "deal_value", "after_hours_pain")
CONTACT_ORDER: Tuple[str, ...] = ("email", "phone")
KNOWN_BUDGET_ORDER: Tuple[str, ...] = ("timing", "budget")
UNKNOWN_BUDGET_ORDER: Tuple[str, ...] = ("leads_per_day", "overnight_leads", "return_call_timing")

# Phrases that identify which field an assistant message was asking about
_QUESTION_CUES: Sequence[Tuple[str, Tuple[str, ...]]] = (
    ("name", ("who am i speaking with", "your name", "what should i call you")),
    ("business_type", ("type of business", "kind of business", "what business")),
    ("lead_source", ("leads usually come in", "how do leads", "where do your leads", "where do leads")),
    ("leads_per_day", ("per day",)),
    ("overnight_leads", ("overnight", "overnight or after hours")),
    ("return_call_timing", ("return calls", "call them back", "call back")),
    ("leads_per_week", ("per week",)),
    ("deal_value", ("deal or job worth", "job worth", "deal worth", "deal value")),
    ("after_hours_pain", ("after hours", "when you're busy")),
    ("email", ("email",)),
    ("phone", ("phone number", "phone", "best number")),
    ("service_need", ("help with", "reason you're reaching out", "looking for help")),
    ("timing", ("get started", "timeline", "when are you looking", "when do you want to start")),
    ("budget", ("budget", "how much are you", "price range")),
)


def field_for_question(assistant_message: Optional[str]) -> Optional[str]:
    """
    Which lead field the assistant was asking about.

    The cue ending last in the message wins, since replies often acknowledge
    one answer before asking the next question. On a tie the longer cue wins.
    """
    text = (assistant_message or "").lower()
    if not text:
        return None
    best: Optional[str] = None
    best_key = (-1, 0)
    for field_name, cues in _QUESTION_CUES:
        for cue in cues:
            pos = text.rfind(cue)
            if pos < 0:
                continue
            key = (pos + len(cue), len(cue))
            if key > best_key:
                best, best_key = field_name, key
    return best


# =============================================================================
# Keyword detectors
# =============================================================================

REJECTION_PATTERN = re.compile(
    r"^(no|skip|not|don'?t|won'?t|refuse|reject|i don'?t want|i don'?t need|not interested)\b",
    re.IGNORECASE,
)


def is_rejection(message: Optional[str]) -> bool:
    return bool(REJECTION_PATTERN.match((message or "").strip()))


_BUYING_SIGNALS = (
    "sign up", "sign me up", "how do i start", "how do i get started", "let's start", "lets start",
    "how much", "what's the price", "whats the price", "pricing",
    "i'm ready", "im ready", "ready to start", "let's do it", "lets do it", "i'm in", "im in",
    "sounds good", "that works", "sold", "i'll take it", "ill take it", "yes please",
    "how do i try it", "want to try", "try it",
)
_BUYING_NEGATIVE_CONTEXT = ("not ready", "not sure", "don't want", "dont want", "not interested")


def _contains(message: str, phrase: str) -> bool:
    return re.search(r"(?<![a-z])" + re.escape(phrase) + r"(?![a-z])", message) is not None


def detect_buying_intent(message: Optional[str]) -> bool:
    text = (message or "").lower().strip()
    if not text or any(neg in text for neg in _BUYING_NEGATIVE_CONTEXT):
        return False
    return any(_contains(text, signal) for signal in _BUYING_SIGNALS)


OBJECTION_KEYWORDS: Sequence[Tuple[str, Tuple[str, ...]]] = (
    ("price", ("expensive", "too much", "can't afford", "cant afford", "cheaper")),
    ("timing", ("not right now", "later", "think about it", "not ready")),
    ("trust", ("don't trust", "dont trust", "skeptical", "will this work")),
    ("authority", ("talk to my", "check with", "partner", "boss")),
    ("roi", ("worth it", "pay for itself", "roi")),
    ("hidden", ("not sure", "i don't know", "maybe")),
)


def detect_objection(message: Optional[str], answering_field: Optional[str] = None) -> Optional[str]:
    """
    Objection category for the message, or None.

    A bare "not sure" given as the answer to a question is an answer, not a
    hidden objection.
    """
    text = (message or "").lower().strip()
    if not text:
        return None
    for category, keywords in OBJECTION_KEYWORDS:
        if not any(_contains(text, kw) for kw in keywords):
            continue
        if category == "hidden" and answering_field and is_unknown_answer(text):
            return None
        return category
    return None


URGENCY_KEYWORDS = ("emergency", "urgent", "flooding", "leak", "broken", "asap", "immediately", "right now")


# "not right now", "nothing urgent", "isn't an emergency"
_NEGATION_BEFORE = re.compile(
    r"(?<![a-z])(?:not|no|never|nothing|isn'?t|aren'?t|wasn'?t|don'?t)(?:\s+\w+){0,2}\s*$"
)


def detect_urgency(message: Optional[str]) -> bool:
    """True when an urgency keyword appears without a negation just before it."""
    text = (message or "").lower()
    for kw in URGENCY_KEYWORDS:
        pattern = r"(?<![a-z])" + re.escape(kw) + r"(?![a-z])"
        for match in re.finditer(pattern, text):
            if not _NEGATION_BEFORE.search(text[:match.start()]):
                return True
    return False


@dataclass
class TurnSignals:
    """Transient signals read from the latest user message."""
    objection: Optional[str] = None
    urgent: bool = False
    buying_intent: bool = False

    @classmethod
    def detect(cls, message: str, answering_field: Optional[str] = None) -> "TurnSignals":
        return cls(
            objection=detect_objection(message, answering_field),
            urgent=detect_urgency(message),
            buying_intent=detect_buying_intent(message),
        )


# =============================================================================
# Selector
# =============================================================================

@dataclass
class QuestionPlan:
    phase: DialoguePhase
    field: Optional[str]
    question: Optional[str]
    failure: Optional[ValidationFailure] = None
    signals: TurnSignals = field(default_factory=TurnSignals)
    discovery_complete: bool = False
    mandatory_complete: bool = False
    buying_intent_suppressed: bool = False

    @property
    def all_questions_answered(self) -> bool:
        return self.field is None


class QuestionSelector:

    def question_order(self, lead: LeadRecord) -> List[str]:
        order = ["name", *DISCOVERY_ORDER, *CONTACT_ORDER, "service_need"]
        order.extend(UNKNOWN_BUDGET_ORDER if lead.budget_unknown else KNOWN_BUDGET_ORDER)
        return order

    def next_field(self, lead: LeadRecord) -> Optional[str]:
        for name in self.question_order(lead):
            if not lead.has(name):
                return name
        return None

    @staticmethod
    def discovery_complete(lead: LeadRecord) -> bool:
        return lead.has("name") and all(lead.has(f) for f in DISCOVERY_ORDER)

    def select(
        self,
        lead: LeadRecord,
        signals: Optional[TurnSignals] = None,
        failures: Sequence[ValidationFailure] = (),
        asked_field: Optional[str] = None,
    ) -> QuestionPlan:
        """
        Plan the next reply.

        A validation failure for the field that was being asked (or that is
        next in line) re-asks that same field with the failure attached.
        """
        signals = signals or TurnSignals()
        next_field = self.next_field(lead)
        discovery_done = self.discovery_complete(lead)

        failure = None
        for f in failures:
            if f.field in (asked_field, next_field) and not lead.has(f.field):
                failure = f
                break
        target = failure.field if failure else next_field
        question = FIELD_QUESTIONS.get(target) if target else None

        suppressed = False
        if signals.buying_intent and discovery_done:
            phase = DialoguePhase.BUYING_INTENT
        elif signals.objection:
            phase = DialoguePhase.OBJECTION
        elif not lead.has("name"):
            phase = DialoguePhase.OPENING
        elif not discovery_done:
            phase = DialoguePhase.DISCOVERY
        elif target is not None:
            phase = DialoguePhase.QUALIFICATION
        else:
            phase = DialoguePhase.CLOSING

        if signals.buying_intent and not discovery_done:
            suppressed = True
            logger.info("[Selector] Buying intent before discovery is complete; continuing discovery")

        return QuestionPlan(
            phase=phase,
            field=target,
            question=question,
            failure=failure,
            signals=signals,
            discovery_complete=discovery_done,
            mandatory_complete=not lead.missing_mandatory(),
            buying_intent_suppressed=suppressed,
        )
