# chatsales/models/lead.py
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Boolean
from sqlalchemy.sql import func

from chatsales.database import Base


class LeadStatus(str, Enum):
    NEW = "new"
    QUALIFIED = "qualified"
    CONTACTED = "contacted"
    BOOKED = "booked"
    LOST = "lost"


# Fields the extraction engine fills from conversation text
TRACKED_FIELDS = (
    "name",
    "company",
    "business_type",
    "lead_source",
    "leads_per_week",
    "deal_value",
    "after_hours_pain",
    "email",
    "phone",
    "service_need",
    "timing",
    "budget",
    "leads_per_day",
    "overnight_leads",
    "return_call_timing",
)

# All seven must be present and valid before a lead is qualified
MANDATORY_FIELDS = (
    "name",
    "business_type",
    "lead_source",
    "leads_per_week",
    "deal_value",
    "after_hours_pain",
    "email",
)

UNKNOWN_VALUE = "unknown"


class Lead(Base):
    __tablename__ = "chat_leads"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    session_id = Column(String(100), unique=True, index=True, nullable=False)

    # ================= Opening / Contact =================
    name = Column(String(255))
    company = Column(String(255))
    email = Column(String(255), index=True)
    phone = Column(String(50))

    # ================= Discovery =================
    business_type = Column(String(255))
    lead_source = Column(String(255))
    leads_per_week = Column(String(100))
    deal_value = Column(String(100))
    after_hours_pain = Column(Text)

    # ================= Follow-up =================
    service_need = Column(Text)
    timing = Column(String(255))
    budget = Column(String(255))  # value or literal "unknown"
    leads_per_day = Column(String(100))
    overnight_leads = Column(String(100))
    return_call_timing = Column(String(255))

    tags = Column(JSON, default=list)
    summary = Column(Text)
    has_buying_intent = Column(Boolean, default=False, nullable=False)

    status = Column(String(50), default=LeadStatus.NEW.value, index=True, nullable=False)
    qualified_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class LeadRecord(BaseModel):
    """Detached lead snapshot handed between pipeline stages."""
    session_id: str

    name: Optional[str] = None
    company: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    business_type: Optional[str] = None
    lead_source: Optional[str] = None
    leads_per_week: Optional[str] = None
    deal_value: Optional[str] = None
    after_hours_pain: Optional[str] = None

    service_need: Optional[str] = None
    timing: Optional[str] = None
    budget: Optional[str] = None
    leads_per_day: Optional[str] = None
    overnight_leads: Optional[str] = None
    return_call_timing: Optional[str] = None

    tags: List[str] = []
    summary: Optional[str] = None
    has_buying_intent: bool = False

    status: LeadStatus = LeadStatus.NEW
    qualified_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    def has(self, field: str) -> bool:
        value = getattr(self, field, None)
        return bool(value and str(value).strip())

    def missing_mandatory(self) -> List[str]:
        return [f for f in MANDATORY_FIELDS if not self.has(f)]

    @property
    def budget_unknown(self) -> bool:
        return (self.budget or "").strip().lower() == UNKNOWN_VALUE

    def collected(self) -> dict:
        """Non-empty tracked fields, for prompt personalisation."""
        return {f: getattr(self, f) for f in TRACKED_FIELDS if self.has(f)}


# Forward order; LOST can be reached from any open status
_STATUS_ORDER = (LeadStatus.NEW, LeadStatus.QUALIFIED, LeadStatus.CONTACTED, LeadStatus.BOOKED)
TERMINAL_LEAD_STATUSES = (LeadStatus.BOOKED, LeadStatus.LOST)


def status_transition_error(current: LeadStatus, target: LeadStatus, lead: LeadRecord) -> Optional[str]:
    """
    Why `current -> target` is refused for `lead` (its values after the
    update), or None when the move is allowed.

    Status only moves forward. The one way back is qualified -> new, after a
    correction has cleared a mandatory field.
    """
    missing = lead.missing_mandatory()
    if target == LeadStatus.QUALIFIED and missing:
        return f"missing mandatory fields: {', '.join(missing)}"
    if target == current:
        return None
    if current in TERMINAL_LEAD_STATUSES:
        return f"{current.value} is final"
    if target == LeadStatus.LOST:
        return None
    if target == LeadStatus.NEW:
        if current == LeadStatus.QUALIFIED and missing:
            return None
        return f"cannot move back from {current.value} to new"
    if _STATUS_ORDER.index(target) < _STATUS_ORDER.index(current):
        return f"cannot move back from {current.value} to {target.value}"
    return None
