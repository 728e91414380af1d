# chatsales/agents/extraction_engine.py
"""
Extraction Engine

Turns conversation text into a candidate value for every tracked lead field.
The model is treated as a fallible oracle: its output is normalised here and
always goes through the Field Validator before touching the lead.

Never raises. Any transport, timeout or parse failure yields an all-null
candidate, which the orchestrator treats as "nothing new this turn".
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from chatsales.agents.field_validator import is_unknown_answer
from chatsales.agents.question_selector import field_for_question, is_rejection
from chatsales.config import settings
from chatsales.models.lead import LeadRecord, TRACKED_FIELDS, UNKNOWN_VALUE
from chatsales.services.openai_service import CompletionProvider, ProviderError
from chatsales.utils.logger import logger
from chatsales.utils.response_cache import ExtractionCache


# lead field -> JSON key the model is asked to return
JSON_KEYS: Dict[str, str] = {
    "name": "name",
    "company": "company",
    "business_type": "businessType",
    "lead_source": "leadSource",
    "leads_per_week": "leadsPerWeek",
    "deal_value": "dealValue",
    "after_hours_pain": "afterHoursPain",
    "email": "email",
    "phone": "phone",
    "service_need": "serviceNeed",
    "timing": "timing",
    "budget": "budget",
    "leads_per_day": "leadsPerDay",
    "overnight_leads": "overnightLeads",
    "return_call_timing": "returnCallTiming",
}

_NULL_STRINGS = {"", "null", "undefined"}


@dataclass
class ExtractionCandidate:
    """Every tracked field mapped to a string or None, plus fields to clear."""
    values: Dict[str, Optional[str]] = field(default_factory=lambda: {f: None for f in TRACKED_FIELDS})
    cleared: Set[str] = field(default_factory=set)

    @classmethod
    def empty(cls) -> "ExtractionCandidate":
        return cls()

    def declared(self) -> Dict[str, str]:
        return {k: v for k, v in self.values.items() if v is not None}

    def is_empty(self) -> bool:
        return not self.declared() and not self.cleared


_SYSTEM_PROMPT = (
    "You are a data extraction assistant. Extract lead information from "
    "conversations and return only valid JSON."
)


def _build_extraction_prompt(
    transcript: str,
    last_user_message: str,
    last_assistant_message: str,
    lead: LeadRecord,
    persona: str,
) -> str:
    known = lead.collected()
    known_lines = "\n".join(f"- {JSON_KEYS[k]}: {v}" for k, v in known.items()) or "- (nothing yet)"
    keys = ", ".join(JSON_KEYS.values())
    shape = ", ".join(f'"{k}": null or "value"' for k in JSON_KEYS.values())

    return f"""You are a lead qualification data extractor. Extract these fields: {keys}.

CRITICAL PRIORITY: The LAST user message is the most important. If it contradicts or rejects previous answers, DO NOT extract the old values.

RULES:
1. Return null for any field the user has not explicitly stated. Never guess.
2. name: only from declarations ("I'm John", "This is Maria"). Never from questions or the assistant's own name "{persona}".
3. company: the visitor's company name ("I'm John from ABC Plumbing" -> company "ABC Plumbing").
4. email / phone: only values the user actually typed. Phone may be in any format with digits.
5. businessType: the industry ("We're a plumbing company" -> "plumbing").
6. leadSource: the CHANNEL leads arrive through ("mostly Google and referrals"). This is not a number.
7. leadsPerWeek: the VOLUME of leads per week ("15-20", "about 5"). This is not a channel.
8. dealValue: typical job or deal worth ("$1500", "$500-3000").
9. afterHoursPain: what happens to leads when nobody is available ("go to voicemail, lose them").
10. serviceNeed: what they want help with, from declarative statements anywhere in the conversation.
11. timing: when they want to start. If the user is unsure about timing, return null. Never return "unknown" for timing.
12. budget: an amount or range. Return "unknown" ONLY if the LAST ASSISTANT MESSAGE asked about budget and the user said they don't know / not sure / haven't decided. If the unclear answer was to a different question, return null.
13. leadsPerDay, overnightLeads, returnCallTiming: answers to "how many leads per day", "how many come in overnight", "when do you return calls".
14. REJECTIONS: if the last user message is a refusal ("no", "skip", "don't want to answer", "not interested"), return null for the field that was being asked about.

ALREADY KNOWN:
{known_lines}

FULL CONVERSATION (for context):
{transcript}

LAST ASSISTANT MESSAGE (to understand which question was asked):
"{last_assistant_message}"

LAST USER MESSAGE (most important - prioritize this):
"{last_user_message}"

Return JSON: {{{shape}}}"""


def _clean(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    if text.lower() in _NULL_STRINGS:
        return None
    return text


class ExtractionEngine:

    def __init__(
        self,
        provider: CompletionProvider,
        cache: Optional[ExtractionCache] = None,
        persona_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.provider = provider
        self.cache = cache if cache is not None else ExtractionCache(ttl_seconds=settings.EXTRACTION_CACHE_TTL_SECONDS)
        self.persona_name = persona_name or settings.AGENT_PERSONA_NAME
        self.timeout = timeout or settings.LLM_AUX_TIMEOUT

    async def extract(
        self,
        transcript: str,
        last_user_message: str,
        last_assistant_message: str,
        lead: LeadRecord,
    ) -> ExtractionCandidate:
        snapshot = lead.collected()
        key = ExtractionCache.make_key(transcript, last_user_message, last_assistant_message, snapshot)
        cached = self.cache.get(key)
        if cached is not None:
            return ExtractionCandidate(values=cached["values"], cleared=set(cached["cleared"]))

        start = time.perf_counter()
        messages = [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {
                "role": "user",
                "content": _build_extraction_prompt(
                    transcript, last_user_message, last_assistant_message, lead, self.persona_name
                ),
            },
        ]
        try:
            raw = await self.provider.complete_json(messages, temperature=0.0, max_tokens=500, timeout=self.timeout)
        except ProviderError as e:
            logger.warning(f"[Extraction] Provider failure, using empty candidate: {type(e).__name__}")
            return ExtractionCandidate.empty()
        except Exception:
            logger.exception("[Extraction] Unexpected failure, using empty candidate")
            return ExtractionCandidate.empty()

        candidate = self.normalise(raw, last_user_message, last_assistant_message, lead)
        self.cache.set(key, {"values": candidate.values, "cleared": sorted(candidate.cleared)})
        logger.info(
            f"[LATENCY] Extraction {(time.perf_counter() - start) * 1000:.0f}ms "
            f"declared={sorted(candidate.declared())} cleared={sorted(candidate.cleared)}"
        )
        return candidate

    def normalise(
        self,
        raw: Dict[str, Any],
        last_user_message: str,
        last_assistant_message: str,
        lead: LeadRecord,
    ) -> ExtractionCandidate:
        """Apply the deterministic rules on top of whatever the model returned."""
        candidate = ExtractionCandidate()
        for name, json_key in JSON_KEYS.items():
            candidate.values[name] = _clean(raw.get(json_key))

        asked = field_for_question(last_assistant_message)
        answer = (last_user_message or "").strip()
        unsure = is_unknown_answer(answer)

        budget = candidate.values["budget"]
        if budget is not None and (UNKNOWN_VALUE in budget.lower() or is_unknown_answer(budget)):
            # "unknown" only stands when budget was the question
            candidate.values["budget"] = UNKNOWN_VALUE if asked == "budget" else None
        elif budget is None and asked == "budget" and unsure:
            candidate.values["budget"] = UNKNOWN_VALUE

        timing = candidate.values["timing"]
        if timing is not None and (timing.lower() == UNKNOWN_VALUE or is_unknown_answer(timing)):
            candidate.values["timing"] = None

        if asked and not unsure and is_rejection(answer):
            current = getattr(lead, asked, None)
            value = candidate.values.get(asked)
            # a correction like "no, it's bob@x.com" carries a new value
            if value is None or value == current:
                candidate.values[asked] = None
                candidate.cleared.add(asked)

        return candidate
