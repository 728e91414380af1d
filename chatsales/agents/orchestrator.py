# chatsales/agents/orchestrator.py
"""
Conversation Orchestrator

One visitor message in, one streamed assistant reply out:

  append user turn -> support escalation -> extraction -> per-field validation
  -> lead update -> question plan -> system prompt -> streamed reply
  -> append assistant turn -> notifications

Turns for the same session are serialized through the session lock registry.
Extraction, validation and escalation are fail-soft; only the streamed reply
retries. Store failures end the turn with a generic apology. Notifications
are fire-and-forget.

Caller events: {"chunk": text, "done": False} ... then {"chunk": "", "done": True}
or {"error": text, "done": True}.
"""
from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from chatsales.agents.extraction_engine import ExtractionEngine
from chatsales.agents.field_validator import FieldValidator, ValidationFailure
from chatsales.agents.prompt_composer import PromptComposer, PromptContext, TemplateKind
from chatsales.agents.question_selector import (
    QuestionPlan,
    QuestionSelector,
    TurnSignals,
    field_for_question,
)
from chatsales.agents.streaming_driver import StreamingResponseDriver, StreamOutcome, StreamStatus
from chatsales.agents.support_detector import EscalationOutcome, SupportEscalationDetector
from chatsales.config import settings
from chatsales.models.conversation import ConversationRecord, TurnRecord, TurnRole
from chatsales.models.lead import LeadRecord, LeadStatus, TRACKED_FIELDS, UNKNOWN_VALUE
from chatsales.models.support_ticket import TicketRecord
from chatsales.services.notification_service import NotificationDispatcher, NotificationKind
from chatsales.services.openai_service import CompletionProvider, ProviderError
from chatsales.services.stores import (
    ConversationStore,
    LeadStatusTransitionError,
    LeadStore,
    PersistenceError,
    TicketStore,
)
from chatsales.utils.logger import logger
from chatsales.utils.response_cache import ExtractionCache
from chatsales.utils.session_locks import SessionLockRegistry, get_session_locks
from chatsales.utils.validators import sanitize_text


EventSink = Callable[[Dict[str, Any]], Awaitable[bool]]

GENERIC_ERROR = "Sorry, something went wrong. Please try again."
NO_RESPONSE_ERROR = "No response from AI. Please try again."

# Format-checked fields are cleared when a new value fails validation
CLEAR_ON_INVALID = ("email", "phone")


# =============================================================================
# Lead enrichment
# =============================================================================

_SERVICE_TAGS = (
    (("chatbot",), "chatbot"),
    (("website",), "website"),
    (("e-commerce", "ecommerce", "shop"), "e-commerce"),
    (("consultation",), "consultation"),
)
_URGENT_TIMING = ("asap", "immediately", "urgent")


def compute_tags(lead: LeadRecord) -> List[str]:
    tags = []
    service = (lead.service_need or "").lower()
    for needles, tag in _SERVICE_TAGS:
        if any(n in service for n in needles):
            tags.append(tag)
    timing = (lead.timing or "").lower()
    if any(n in timing for n in _URGENT_TIMING):
        tags.append("urgent")
    if lead.has("budget") and not lead.budget_unknown:
        tags.append("budget-specified")
    return tags


def generate_session_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"session_{int(time.time() * 1000)}_{suffix}"


def booking_link(session_id: str) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/book-demo?sessionId={session_id}"


# =============================================================================
# Turn state
# =============================================================================

@dataclass
class PreparedTurn:
    conversation: ConversationRecord
    lead: LeadRecord
    plan: QuestionPlan
    escalation: EscalationOutcome
    messages: List[Dict[str, str]]
    template: TemplateKind
    failures: List[ValidationFailure] = field(default_factory=list)


@dataclass
class TurnResult:
    session_id: str
    reply: str = ""
    status: Optional[StreamStatus] = None
    error: Optional[str] = None
    plan: Optional[QuestionPlan] = None
    template: Optional[TemplateKind] = None
    lead: Optional[LeadRecord] = None
    ticket: Optional[TicketRecord] = None
    ticket_created: bool = False
    failures: List[ValidationFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


class ConversationOrchestrator:

    def __init__(
        self,
        provider: CompletionProvider,
        conversations: Optional[ConversationStore] = None,
        leads: Optional[LeadStore] = None,
        tickets: Optional[TicketStore] = None,
        notifier: Optional[NotificationDispatcher] = None,
        locks: Optional[SessionLockRegistry] = None,
        extraction: Optional[ExtractionEngine] = None,
        validator: Optional[FieldValidator] = None,
        selector: Optional[QuestionSelector] = None,
        support: Optional[SupportEscalationDetector] = None,
        composer: Optional[PromptComposer] = None,
        driver: Optional[StreamingResponseDriver] = None,
        demo_mode: Optional[bool] = None,
    ):
        self.provider = provider
        self.conversations = conversations or ConversationStore()
        self.leads = leads or LeadStore()
        self.tickets = tickets or TicketStore()
        self.notifier = notifier or NotificationDispatcher()
        self.locks = locks or get_session_locks()

        self.extraction = extraction or ExtractionEngine(provider, ExtractionCache(settings.EXTRACTION_CACHE_TTL_SECONDS))
        self.validator = validator or FieldValidator(provider)
        self.selector = selector or QuestionSelector()
        self.support = support or SupportEscalationDetector(provider, self.tickets)
        self.composer = composer or PromptComposer()
        self.driver = driver or StreamingResponseDriver(provider)
        self.demo_mode = settings.DEMO_MODE if demo_mode is None else demo_mode

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def start_conversation(
        self,
        session_id: Optional[str] = None,
        user_email: Optional[str] = None,
        user_name: Optional[str] = None,
    ) -> ConversationRecord:
        session_id = session_id or generate_session_id()
        return await self.conversations.create(session_id, user_email, user_name)

    async def end_conversation(self, session_id: str) -> bool:
        ended = await self.conversations.deactivate(session_id)
        if ended:
            logger.info(f"[Orchestrator] Conversation {session_id} ended")
        return ended

    async def save_message(self, session_id: str, role: TurnRole, content: str) -> TurnRecord:
        """Record a turn without generating a reply (e.g. a greeting shown by the widget)."""
        async with self.locks.hold(session_id):
            return await self.conversations.append(session_id, role, sanitize_text(content))

    async def get_conversation(self, session_id: str) -> Optional[ConversationRecord]:
        return await self.conversations.get(session_id)

    async def list_conversations(self, limit: int = 50) -> List[ConversationRecord]:
        return await self.conversations.list_active(limit)

    # =========================================================================
    # Turn
    # =========================================================================

    async def handle_turn(self, session_id: str, message: str, emit_event: EventSink) -> TurnResult:
        """
        Process one visitor message and stream the reply through emit_event.

        emit_event returns False once the caller can no longer be written to.
        Exactly one terminal event is emitted unless the caller went away.
        """
        message = sanitize_text(message)
        result = TurnResult(session_id=session_id)
        start = time.perf_counter()

        async with self.locks.hold(session_id):
            try:
                prepared = await self._prepare(session_id, message)
            except PersistenceError:
                logger.exception(f"[Orchestrator] Store failure preparing turn for {session_id}")
                result.error = GENERIC_ERROR
                await self._emit(emit_event, {"error": GENERIC_ERROR, "done": True})
                return result
            except Exception:
                logger.exception(f"[Orchestrator] Unexpected failure preparing turn for {session_id}")
                result.error = GENERIC_ERROR
                await self._emit(emit_event, {"error": GENERIC_ERROR, "done": True})
                return result

            result.plan = prepared.plan
            result.template = prepared.template
            result.lead = prepared.lead
            result.ticket = prepared.escalation.ticket
            result.ticket_created = prepared.escalation.created
            result.failures = prepared.failures

            async def emit_chunk(piece: str) -> bool:
                return await self._emit(emit_event, {"chunk": piece, "done": False})

            outcome = await self.driver.run(prepared.messages, emit_chunk)
            result.status = outcome.status
            result.reply = outcome.text
            await self._finalize(session_id, outcome, emit_event, result)

        logger.info(
            f"[LATENCY] Turn {session_id} {(time.perf_counter() - start) * 1000:.0f}ms "
            f"phase={prepared.plan.phase.value} template={prepared.template.value} status={outcome.status.value}"
        )
        return result

    async def _finalize(
        self,
        session_id: str,
        outcome: StreamOutcome,
        emit_event: EventSink,
        result: TurnResult,
    ) -> None:
        """The single commit point for the assistant reply."""
        if not outcome.has_text:
            if outcome.status == StreamStatus.CANCELLED:
                return
            result.error = NO_RESPONSE_ERROR
            await self._emit(emit_event, {"error": NO_RESPONSE_ERROR, "done": True})
            return

        try:
            await self.conversations.append(session_id, TurnRole.ASSISTANT, outcome.text)
        except PersistenceError:
            logger.exception(f"[Orchestrator] Could not store assistant reply for {session_id}")
            result.error = GENERIC_ERROR
            await self._emit(emit_event, {"error": GENERIC_ERROR, "done": True})
            return

        if outcome.status != StreamStatus.CANCELLED:
            await self._emit(emit_event, {"chunk": "", "done": True})

    @staticmethod
    async def _emit(emit_event: EventSink, event: Dict[str, Any]) -> bool:
        try:
            return bool(await emit_event(event))
        except Exception as e:
            logger.warning(f"[Orchestrator] Event sink failed ({type(e).__name__}); caller gone")
            return False

    async def _prepare(self, session_id: str, message: str) -> PreparedTurn:
        existing = await self.conversations.get(session_id)
        first_message = existing is None or not any(t.role == TurnRole.USER for t in existing.turns)

        await self.conversations.append(session_id, TurnRole.USER, message)
        conversation = await self.conversations.get(session_id)
        if conversation is None:
            raise PersistenceError(f"Conversation {session_id} missing after append")

        if first_message:
            self.notifier.send(NotificationKind.NEW_CONVERSATION, {"session_id": session_id, "message": message})

        lead = await self.leads.get(session_id)
        if lead is None:
            lead = await self.leads.create({"session_id": session_id})

        last_assistant = conversation.last_content(TurnRole.ASSISTANT)
        asked_field = field_for_question(last_assistant)

        escalation = await self.support.evaluate(session_id, message, conversation, lead)
        if escalation.created and escalation.ticket is not None:
            self.notifier.send(NotificationKind.TICKET_CREATED, {
                "ticket": escalation.ticket.model_dump(mode="json"),
                "lead": lead.model_dump(mode="json"),
            })

        # demo mode bypasses qualification, so no selling signals either
        signals = TurnSignals() if self.demo_mode else TurnSignals.detect(message, asked_field)
        lead, failures = await self._update_lead(session_id, lead, conversation, message, last_assistant, signals)

        if signals.urgent:
            logger.info(f"[Orchestrator] Urgent inquiry in {session_id}")
            self.notifier.send(NotificationKind.URGENT_INQUIRY, {
                "session_id": session_id,
                "message": message,
                "lead": lead.model_dump(mode="json"),
            })

        plan = self.selector.select(lead, signals, failures, asked_field)
        ctx = PromptContext(
            plan=plan,
            lead=lead,
            demo_mode=self.demo_mode,
            active_ticket=escalation.ticket,
            ticket_just_created=escalation.created,
        )
        if ctx.qualification_complete:
            ctx.booking_link = booking_link(session_id)
        composed = self.composer.compose(ctx)
        messages = self.composer.build_messages(composed, conversation)

        logger.info(
            f"[Orchestrator] {session_id} phase={plan.phase.value} next={plan.field} "
            f"template={composed.kind.value} failures={[f.field for f in failures]}"
        )
        return PreparedTurn(
            conversation=conversation,
            lead=lead,
            plan=plan,
            escalation=escalation,
            messages=messages,
            template=composed.kind,
            failures=failures,
        )

    # =========================================================================
    # Lead update
    # =========================================================================

    async def _update_lead(
        self,
        session_id: str,
        lead: LeadRecord,
        conversation: ConversationRecord,
        message: str,
        last_assistant: str,
        signals: TurnSignals,
    ) -> Tuple[LeadRecord, List[ValidationFailure]]:
        candidate = await self.extraction.extract(conversation.transcript_text(), message, last_assistant, lead)

        changes = {k: v for k, v in candidate.declared().items() if v != getattr(lead, k)}
        results = await self.validator.validate_many(changes)

        partial: Dict[str, Any] = {}
        failures: List[ValidationFailure] = []
        for name, value in changes.items():
            verdict = results[name]
            if verdict.is_valid:
                partial[name] = value
                continue
            failures.append(ValidationFailure(name, verdict.reason or "invalid"))
            if name in CLEAR_ON_INVALID and lead.has(name):
                partial[name] = None

        for name in candidate.cleared:
            if lead.has(name):
                partial[name] = None

        if signals.buying_intent and not lead.has_buying_intent:
            partial["has_buying_intent"] = True

        if not partial:
            return lead, failures

        projected = lead.model_copy(update=partial)
        fields_changed = any(k in TRACKED_FIELDS for k in partial)

        if fields_changed:
            partial["tags"] = compute_tags(projected)
            partial["summary"] = await self.summarize_lead(projected)

        became_qualified = False
        missing = projected.missing_mandatory()
        if not missing and lead.status == LeadStatus.NEW:
            partial["status"] = LeadStatus.QUALIFIED
            became_qualified = lead.qualified_at is None
            if became_qualified:
                partial["qualified_at"] = datetime.now(timezone.utc)
        elif missing and lead.status == LeadStatus.QUALIFIED:
            # a correction cleared a mandatory field
            logger.info(f"[Orchestrator] {session_id} no longer qualified; missing {missing}")
            partial["status"] = LeadStatus.NEW

        try:
            updated = await self.leads.update(session_id, partial)
        except LeadStatusTransitionError as e:
            # status moved on (dashboard) since this turn read the lead
            logger.warning(f"[Orchestrator] {e}; keeping stored status")
            partial.pop("status", None)
            partial.pop("qualified_at", None)
            became_qualified = False
            updated = await self.leads.update(session_id, partial)
        logger.info(f"[Orchestrator] Lead {session_id} updated: {sorted(partial)}")

        if became_qualified:
            logger.info(f"[Orchestrator] Lead {session_id} qualified")
            self.notifier.send(NotificationKind.QUALIFIED_LEAD, {
                "lead": updated.model_dump(mode="json"),
                "transcript": conversation.transcript_text(),
            })
        return updated, failures

    async def summarize_lead(self, lead: LeadRecord) -> str:
        fallback = f"Lead interested in {lead.service_need or 'services'}"
        facts = {
            "name": lead.name,
            "company": lead.company,
            "businessType": lead.business_type,
            "email": lead.email,
            "serviceNeed": lead.service_need,
            "timing": lead.timing,
            "budget": None if lead.budget == UNKNOWN_VALUE else lead.budget,
        }
        facts = {k: v for k, v in facts.items() if v}
        if not facts:
            return fallback
        messages = [
            {"role": "system", "content": "You are a lead summarization assistant. Create concise summaries."},
            {
                "role": "user",
                "content": f"Summarize this lead in 2-3 sentences: {facts}\n\nRespond with JSON: {{\"summary\": \"...\"}}",
            },
        ]
        try:
            result = await self.provider.complete_json(
                messages, temperature=0.5, max_tokens=100, timeout=settings.LLM_AUX_TIMEOUT
            )
        except ProviderError as e:
            logger.debug(f"[Orchestrator] Summary fallback: {type(e).__name__}")
            return fallback
        return str(result.get("summary") or "").strip() or fallback
