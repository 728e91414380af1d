# chatsales/agents/support_detector.py
"""
Support Escalation Detector

Two-stage gate: a keyword pre-filter on the latest message, then (only on a
match) a semantic classifier over the last five turns. A session with an
open or in-progress ticket is never escalated again.

Classifier failures mean "no escalation". Ticket enrichment (sentiment,
priority, summary) falls back to keyword rules when the model is unavailable.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Optional

from chatsales.config import settings
from chatsales.models.conversation import ConversationRecord, TurnRole
from chatsales.models.lead import LeadRecord
from chatsales.models.support_ticket import Sentiment, TicketPriority, TicketRecord
from chatsales.services.openai_service import CompletionProvider, ProviderError
from chatsales.services.stores import ActiveTicketExistsError, TicketStore
from chatsales.utils.logger import logger


SUPPORT_KEYWORDS = (
    "problem", "issue", "complaint", "error", "broken", "not working", "fix", "bug",
    "wrong", "help with", "disappointed", "frustrated", "angry", "terrible", "awful",
)

NEGATIVE_WORDS = ("bad", "terrible", "awful", "hate", "disappointed", "frustrated", "angry", "worst", "horrible")
VERY_NEGATIVE_WORDS = ("hate", "worst", "horrible", "terrible", "awful", "angry")

CLASSIFIER_CONTEXT_TURNS = 5


def matches_support_keywords(message: Optional[str]) -> bool:
    text = (message or "").lower()
    return any(kw in text for kw in SUPPORT_KEYWORDS)


def basic_sentiment(texts: List[str]) -> Sentiment:
    """Keyword sentiment used when the model cannot be asked."""
    blob = " ".join(texts).lower()
    very_negative = sum(1 for w in VERY_NEGATIVE_WORDS if w in blob)
    negative = sum(1 for w in NEGATIVE_WORDS if w in blob)
    if very_negative >= 2:
        return Sentiment.VERY_NEGATIVE
    if negative >= 2:
        return Sentiment.NEGATIVE
    if negative == 1:
        return Sentiment.NEUTRAL
    return Sentiment.POSITIVE


def fallback_priority(sentiment: Sentiment) -> TicketPriority:
    if sentiment == Sentiment.VERY_NEGATIVE:
        return TicketPriority.HIGH
    if sentiment == Sentiment.NEGATIVE:
        return TicketPriority.MEDIUM
    return TicketPriority.LOW


def format_ticket_transcript(conversation: ConversationRecord, persona_name: str) -> str:
    lines = []
    for turn in conversation.dialogue():
        speaker = "User" if turn.role == TurnRole.USER else persona_name
        lines.append(f"[{turn.timestamp.isoformat()}] {speaker}: {turn.content}")
    return "\n\n".join(lines)


@dataclass
class EscalationDecision:
    is_support_issue: bool
    reason: str = ""
    category: Optional[str] = None


@dataclass
class EscalationOutcome:
    ticket: Optional[TicketRecord] = None
    created: bool = False
    keyword_match: bool = False
    decision: Optional[EscalationDecision] = None

    @property
    def has_active_ticket(self) -> bool:
        return self.ticket is not None and self.ticket.is_active


class SupportEscalationDetector:

    def __init__(
        self,
        provider: CompletionProvider,
        tickets: TicketStore,
        persona_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.provider = provider
        self.tickets = tickets
        self.persona_name = persona_name or settings.AGENT_PERSONA_NAME
        self.timeout = timeout or settings.LLM_AUX_TIMEOUT

    async def evaluate(
        self,
        session_id: str,
        message: str,
        conversation: ConversationRecord,
        lead: Optional[LeadRecord] = None,
    ) -> EscalationOutcome:
        """
        Decide whether the latest message opens a ticket, and open it.

        Store failures propagate as PersistenceError; model failures never do.
        """
        active = await self.tickets.get_active_by_session(session_id)
        if active is not None:
            logger.debug(f"[Support] {session_id} already has {active.ticket_id}; skipping detection")
            return EscalationOutcome(ticket=active)

        if not matches_support_keywords(message):
            return EscalationOutcome()

        decision = await self.classify(conversation)
        outcome = EscalationOutcome(keyword_match=True, decision=decision)
        if not decision.is_support_issue:
            return outcome

        logger.info(f"[Support] Support issue detected for {session_id}: {decision.reason} ({decision.category})")
        sentiment, summary = await asyncio.gather(
            self.analyze_sentiment(conversation),
            self.summarize(conversation, lead),
        )
        priority = await self.determine_priority(conversation, sentiment)

        try:
            outcome.ticket = await self.tickets.create({
                "session_id": session_id,
                "priority": priority,
                "sentiment": sentiment,
                "summary": summary,
                "transcript": format_ticket_transcript(conversation, self.persona_name),
                "user_name": lead.name if lead else None,
                "user_email": lead.email if lead else None,
                "user_phone": lead.phone if lead else None,
            })
            outcome.created = True
        except ActiveTicketExistsError as e:
            # another turn opened one first
            logger.info(f"[Support] {session_id} got ticket {e.ticket_id} concurrently; not creating another")
            outcome.ticket = await self.tickets.get_active_by_session(session_id)
        return outcome

    # =========================================================================
    # Model calls
    # =========================================================================

    def _recent(self, conversation: ConversationRecord) -> str:
        turns = conversation.dialogue()[-CLASSIFIER_CONTEXT_TURNS:]
        return "\n".join(f"{t.role.value}: {t.content}" for t in turns)

    async def classify(self, conversation: ConversationRecord) -> EscalationDecision:
        prompt = f"""Analyze if the user is expressing a PROBLEM, ISSUE, or COMPLAINT that requires support/ticket creation.

User's latest message and recent conversation context:
{self._recent(conversation)}

Determine if the user is:
1. Reporting a technical problem ("it's not working", "error", "bug", "broken")
2. Expressing a complaint ("disappointed", "frustrated", "not satisfied")
3. Asking for help with an issue ("I have a problem with...", "need help fixing...")
4. Reporting something wrong ("this doesn't work", "can't access", "failed")

DO NOT create tickets for:
- General questions about services or products
- Normal conversation or answers to qualification questions
- Booking requests

Respond with JSON: {{"isSupportIssue": true/false, "reason": "brief explanation", "category": "technical|complaint|question|other"}}"""
        messages = [
            {
                "role": "system",
                "content": "You are a support issue detection assistant. Analyze conversations and determine "
                           "if they require support ticket creation. Return only valid JSON.",
            },
            {"role": "user", "content": prompt},
        ]
        try:
            result = await self.provider.complete_json(messages, temperature=0.2, max_tokens=150, timeout=self.timeout)
        except ProviderError as e:
            logger.warning(f"[Support] Classifier unavailable ({type(e).__name__}); not escalating")
            return EscalationDecision(False, "classifier unavailable")
        except Exception:
            logger.exception("[Support] Classifier failed; not escalating")
            return EscalationDecision(False, "classifier failed")

        return EscalationDecision(
            is_support_issue=result.get("isSupportIssue") is True,
            reason=str(result.get("reason") or ""),
            category=result.get("category"),
        )

    async def analyze_sentiment(self, conversation: ConversationRecord) -> Sentiment:
        user_texts = [t.content for t in conversation.turns if t.role == TurnRole.USER]
        prompt = (
            "Classify the overall sentiment of the user in this conversation.\n\n"
            f"{self._recent(conversation)}\n\n"
            'Respond with JSON: {"sentiment": "positive|neutral|negative|very_negative", "confidence": 0.0-1.0}'
        )
        try:
            result = await self.provider.complete_json(
                [{"role": "user", "content": prompt}], temperature=0.2, max_tokens=60, timeout=self.timeout
            )
            return Sentiment(str(result.get("sentiment", "")).strip().lower())
        except (ProviderError, ValueError) as e:
            logger.debug(f"[Support] Sentiment fallback: {type(e).__name__}")
            return basic_sentiment(user_texts)

    async def determine_priority(self, conversation: ConversationRecord, sentiment: Sentiment) -> TicketPriority:
        prompt = (
            "Assign a support priority to this conversation. Use urgent only for outages or "
            "safety issues, high for angry customers or blocked work.\n\n"
            f"Sentiment: {sentiment.value}\n\n{self._recent(conversation)}\n\n"
            'Respond with JSON: {"priority": "low|medium|high|urgent"}'
        )
        try:
            result = await self.provider.complete_json(
                [{"role": "user", "content": prompt}], temperature=0.2, max_tokens=40, timeout=self.timeout
            )
        except ProviderError as e:
            logger.debug(f"[Support] Priority fallback: {type(e).__name__}")
            return fallback_priority(sentiment)

        try:
            return TicketPriority(str(result.get("priority", "")).strip().lower())
        except ValueError:
            return TicketPriority.HIGH if sentiment == Sentiment.VERY_NEGATIVE else TicketPriority.MEDIUM

    async def summarize(self, conversation: ConversationRecord, lead: Optional[LeadRecord]) -> str:
        fallback = f"Support request from {(lead.name if lead and lead.name else None) or 'user'}"
        prompt = (
            "Summarize the user's support issue in one or two sentences for a support agent.\n\n"
            f"{self._recent(conversation)}\n\n"
            'Respond with JSON: {"summary": "..."}'
        )
        try:
            result = await self.provider.complete_json(
                [{"role": "user", "content": prompt}], temperature=0.3, max_tokens=120, timeout=self.timeout
            )
        except ProviderError as e:
            logger.debug(f"[Support] Summary fallback: {type(e).__name__}")
            return fallback
        return str(result.get("summary") or "").strip() or fallback
