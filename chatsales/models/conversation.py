# chatsales/models/conversation.py
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from chatsales.database import Base


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


# ==================== SQLAlchemy Models ====================

class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    session_id = Column(String(100), unique=True, index=True, nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)
    user_email = Column(String(255))
    user_name = Column(String(255))

    # next sequence number handed to an appended turn
    turn_count = Column(Integer, default=0, nullable=False)

    started_at = Column(DateTime(timezone=True), server_default=func.now())
    last_message_at = Column(DateTime(timezone=True), index=True)

    turns = relationship(
        "ConversationTurn",
        back_populates="conversation",
        order_by="ConversationTurn.seq",
        cascade="all, delete-orphan",
    )


class ConversationTurn(Base):
    __tablename__ = "conversation_turns"
    __table_args__ = (UniqueConstraint("conversation_id", "seq", name="uq_turn_seq"),)

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)

    # insertion order within the conversation; never rewritten
    seq = Column(Integer, nullable=False)
    role = Column(String(20), nullable=False)
    content = Column(Text, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="turns")


# ==================== Pydantic Models ====================

class TurnRecord(BaseModel):
    role: TurnRole
    content: str
    timestamp: datetime

    class Config:
        from_attributes = True


class ConversationRecord(BaseModel):
    """Detached view of a conversation and its turns in order."""
    session_id: str
    turns: List[TurnRecord] = []
    is_active: bool = True
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    started_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    def last_content(self, role: TurnRole) -> str:
        for turn in reversed(self.turns):
            if turn.role == role:
                return turn.content
        return ""

    def dialogue(self) -> List[TurnRecord]:
        """User and assistant turns only."""
        return [t for t in self.turns if t.role != TurnRole.SYSTEM]

    def transcript_text(self) -> str:
        return "\n".join(f"{t.role.value}: {t.content}" for t in self.dialogue())
