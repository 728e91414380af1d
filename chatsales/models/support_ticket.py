# chatsales/models/support_ticket.py
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import Column, Integer, String, DateTime, Text
from sqlalchemy.sql import func

from chatsales.database import Base


class TicketStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class TicketPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"
    VERY_NEGATIVE = "very_negative"


# At most one ticket per session may sit in one of these
ACTIVE_TICKET_STATUSES = (TicketStatus.OPEN.value, TicketStatus.IN_PROGRESS.value)
TERMINAL_TICKET_STATUSES = (TicketStatus.RESOLVED.value, TicketStatus.CLOSED.value)


class SupportTicket(Base):
    __tablename__ = "support_tickets"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    ticket_id = Column(String(64), unique=True, index=True, nullable=False)
    session_id = Column(String(100), index=True, nullable=False)

    status = Column(String(20), default=TicketStatus.OPEN.value, index=True, nullable=False)
    priority = Column(String(20), default=TicketPriority.MEDIUM.value, index=True, nullable=False)
    sentiment = Column(String(20))

    transcript = Column(Text, nullable=False)
    summary = Column(Text)

    user_email = Column(String(255))
    user_name = Column(String(255))
    user_phone = Column(String(50))

    opened_at = Column(DateTime(timezone=True), server_default=func.now())
    resolved_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class TicketRecord(BaseModel):
    ticket_id: str
    session_id: str
    status: TicketStatus = TicketStatus.OPEN
    priority: TicketPriority = TicketPriority.MEDIUM
    sentiment: Optional[Sentiment] = None
    transcript: str
    summary: Optional[str] = None
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    user_phone: Optional[str] = None
    opened_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def is_active(self) -> bool:
        return self.status.value in ACTIVE_TICKET_STATUSES
