# chatsales/agents/field_validator.py
"""
Field Validator

Accepts or rejects one candidate value for one lead field. Each field has its
own policy (format check, persona-name guard, "unknown" bypass) and most end
in a lenient semantic check run by the model.

When the semantic check itself fails (transport, timeout, bad JSON) the
fallback is asymmetric: short answers (<= VALIDATOR_SHORT_ANSWER_MAX_LEN
characters) are rejected, longer ones are accepted, so an infrastructure
hiccup never blocks a real answer.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Dict, Optional

from chatsales.config import settings
from chatsales.services.openai_service import CompletionProvider, ProviderError
from chatsales.utils.logger import logger
from chatsales.utils.validators import validate_email_format, validate_phone_format


@dataclass
class ValidationResult:
    is_valid: bool
    reason: Optional[str] = None


@dataclass
class ValidationFailure:
    """A rejected answer; shapes only the very next reply."""
    field: str
    reason: str


FIELD_LABELS: Dict[str, str] = {
    "name": "name",
    "company": "company name",
    "business_type": "type of business",
    "lead_source": "where leads come from (channel)",
    "leads_per_week": "number of leads per week",
    "deal_value": "typical deal or job value",
    "after_hours_pain": "what happens to leads after hours",
    "email": "email address",
    "phone": "phone number",
    "service_need": "service need",
    "timing": "timing (when they want to start)",
    "budget": "budget",
    "leads_per_day": "number of leads per day",
    "overnight_leads": "number of leads that come in overnight",
    "return_call_timing": "how quickly calls are returned",
}

# "I don't know" variants; valid for budget and timing without a semantic call
_UNKNOWN_ANSWER = re.compile(
    r"^\s*(?:i\s+)?(?:"
    r"don'?t\s+know|do\s+not\s+know|dunno|no\s+idea|not\s+sure(?:\s+yet)?|unsure|"
    r"haven'?t\s+decided(?:\s+yet)?|not\s+decided(?:\s+yet)?|undecided|unknown|"
    r"haven'?t\s+thought\s+about\s+it|don'?t\s+have\s+one|no\s+budget\s+yet|tbd"
    r")\b",
    re.IGNORECASE,
)


def is_unknown_answer(value: Optional[str]) -> bool:
    return bool(value) and bool(_UNKNOWN_ANSWER.match(value))


_SYSTEM_PROMPT = (
    "You are a validation assistant. Analyze answers and determine if they are "
    "valid or invalid for lead qualification forms. Return only valid JSON."
)

_REJECT_ONLY = """ONLY reject if the answer is:
- A clear refusal: "no", "skip", "I don't want to answer", "not interested"
- Completely vague on its own: "yes", "no", "help", "information"
- A question back at the agent: "what?", "how?", "why?"
Typos, poor grammar and partial sentences are ALWAYS acceptable when the intent is clear."""

_FIELD_RULES: Dict[str, str] = {
    "service_need": """Be EXTREMELY LENIENT. Accept any answer that describes a service, product or business need.
Examples:
- "social marketing", "socail media marketing" -> VALID (typo OK)
- "want website", "chatbot", "consultation", "CRM" -> VALID
- "yes" -> INVALID (too vague)
- "skip" -> INVALID (refusal)""",
    "budget": """Be EXTREMELY LENIENT. Accept any answer that mentions an amount, price or range in any format.
Examples:
- "10k", "$10,000", "ten thousand usd", "around 5k", "between 10 and 20 thousand" -> VALID
- "yes" -> INVALID (no amount mentioned)
- "no budget", "skip" -> INVALID (refusal)""",
    "timing": """Be EXTREMELY LENIENT. Accept any answer that mentions a time, date or timeframe in any format.
Examples:
- "in 2 moths" -> VALID (typo for months)
- "asap", "next month", "q1", "within 6 months", "flexible" -> VALID
- "yes" -> INVALID (no time mentioned)
- "never", "skip" -> INVALID (refusal)""",
    "leads_per_week": """Accept any number, range or rough description of volume ("5", "10-15", "a couple", "not many, maybe 5").""",
    "leads_per_day": """Accept any number, range or rough description of volume ("3", "about 20", "a handful").""",
    "overnight_leads": """Accept any number, range or rough description ("none", "maybe 5-10", "a few").""",
    "deal_value": """Accept any amount or range in any format ("$500", "2-5k", "a few hundred").""",
    "lead_source": """Accept any channel description ("website", "google and referrals", "phone calls", "facebook ads").""",
    "business_type": """Accept any industry or business description ("plumbing", "we do HVAC", "dental practice").""",
    "after_hours_pain": """Accept any description of what happens to leads when nobody is available ("voicemail", "we lose them", "call back next day").""",
    "return_call_timing": """Accept any timeframe or description ("next morning", "within an hour", "whenever we can").""",
    "name": """Accept a real person's name. Reject greetings ("hi", "hello"), questions, and the assistant's own name "{persona}".""",
    "email": """Accept a real email address. Reject refusals and placeholder text.""",
    "phone": """Accept any value with digits in any phone format ("+1234567890", "(123) 456-7890", "032350536"). Reject refusals.""",
}


def _build_validation_prompt(field: str, value: str, persona: str) -> str:
    label = FIELD_LABELS.get(field, field)
    rules = _FIELD_RULES.get(field, "Accept any answer that provides the requested information.")
    return (
        f'Analyze if this answer is valid for the "{label}" field in a lead qualification chat.\n\n'
        f'Answer to analyze: "{value}"\n\n'
        f"{rules.format(persona=persona)}\n\n"
        f"{_REJECT_ONLY}\n\n"
        'Respond with JSON: {"isInvalid": true/false, "reason": "brief explanation"}'
    )


class FieldValidator:

    def __init__(
        self,
        provider: CompletionProvider,
        persona_name: Optional[str] = None,
        short_answer_max_len: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.provider = provider
        self.persona_name = (persona_name or settings.AGENT_PERSONA_NAME).strip()
        self.short_answer_max_len = (
            settings.VALIDATOR_SHORT_ANSWER_MAX_LEN if short_answer_max_len is None else short_answer_max_len
        )
        self.timeout = timeout or settings.LLM_AUX_TIMEOUT

    async def validate(self, field: str, value: Optional[str]) -> ValidationResult:
        text = (value or "").strip()
        if not text:
            return ValidationResult(False, "No answer given")

        if field in ("budget", "timing") and is_unknown_answer(text):
            return ValidationResult(True)

        if field == "email":
            ok, error = validate_email_format(text)
            if not ok:
                return ValidationResult(False, error)
        elif field == "phone":
            ok, error = validate_phone_format(text)
            if not ok:
                return ValidationResult(False, error)
        elif field == "name":
            if len(text) <= 2:
                return ValidationResult(False, "Name is too short")
            if text.lower() == self.persona_name.lower():
                return ValidationResult(False, "That's the assistant's name, not the visitor's")

        return await self._semantic_check(field, text)

    async def validate_many(self, candidates: Dict[str, str]) -> Dict[str, ValidationResult]:
        """Validate distinct fields concurrently; results are joined before returning."""
        if not candidates:
            return {}
        fields = list(candidates)
        results = await asyncio.gather(*(self.validate(f, candidates[f]) for f in fields))
        return dict(zip(fields, results))

    async def _semantic_check(self, field: str, text: str) -> ValidationResult:
        messages = [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "user", "content": _build_validation_prompt(field, text, self.persona_name)},
        ]
        try:
            result = await self.provider.complete_json(
                messages,
                temperature=0.2,
                max_tokens=100,
                timeout=self.timeout,
            )
        except ProviderError as e:
            return self._fallback(field, text, e)
        except Exception as e:
            logger.exception(f"[Validator] Unexpected error validating {field}")
            return self._fallback(field, text, e)

        if result.get("isInvalid") is True:
            reason = str(result.get("reason") or "").strip() or f"That doesn't look like a {FIELD_LABELS.get(field, field)}"
            logger.info(f"[Validator] Rejected {field}={text[:40]!r}: {reason}")
            return ValidationResult(False, reason)
        return ValidationResult(True)

    def _fallback(self, field: str, text: str, error: Exception) -> ValidationResult:
        accepted = len(text) > self.short_answer_max_len
        logger.warning(
            f"[Validator] Semantic check for {field} unavailable ({type(error).__name__}); "
            f"{'accepting' if accepted else 'rejecting'} {len(text)}-char answer"
        )
        if accepted:
            return ValidationResult(True)
        return ValidationResult(False, "Answer too short to confirm")
