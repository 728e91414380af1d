# chatsales/services/stores.py
"""
SQLAlchemy-backed stores for conversations, leads and support tickets.

Every public method is async and runs its blocking session work in a worker
thread. Rows never leave the session: callers get detached pydantic records.
Any database failure surfaces as PersistenceError.
"""
from __future__ import annotations

import asyncio
import secrets
import string
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chatsales.database import SessionLocal, safe_commit, session_scope
from chatsales.models.conversation import Conversation, ConversationTurn, ConversationRecord, TurnRecord, TurnRole
from chatsales.models.lead import Lead, LeadRecord, LeadStatus, TRACKED_FIELDS, status_transition_error
from chatsales.models.support_ticket import (
    ACTIVE_TICKET_STATUSES,
    TERMINAL_TICKET_STATUSES,
    SupportTicket,
    TicketRecord,
    TicketStatus,
)
from chatsales.utils.logger import logger


class PersistenceError(Exception):
    """Raised when a store cannot read or write its records."""
    pass


class ActiveTicketExistsError(PersistenceError):
    """Raised when a session already has an open or in-progress ticket."""

    def __init__(self, session_id: str, ticket_id: str):
        super().__init__(f"Session {session_id} already has active ticket {ticket_id}")
        self.session_id = session_id
        self.ticket_id = ticket_id


class LeadStatusTransitionError(PersistenceError):
    """Raised when a lead status change breaks the forward-only lifecycle."""

    def __init__(self, session_id: str, current: LeadStatus, target: LeadStatus, reason: str):
        super().__init__(f"Lead {session_id}: {current.value} -> {target.value} refused ({reason})")
        self.session_id = session_id
        self.current = current
        self.target = target
        self.reason = reason


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _SQLStore:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(self._guarded, fn, *args)

    def _guarded(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            with session_scope(self.session_factory) as db:
                return fn(db, *args)
        except PersistenceError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"[{type(self).__name__}] Database error: {str(e)[:200]}")
            raise PersistenceError(f"{type(self).__name__} failed") from e

    @staticmethod
    def _commit(db: Session, operation: str) -> None:
        ok, error = safe_commit(db, operation)
        if not ok:
            raise PersistenceError(error or f"{operation} failed")


# =============================================================================
# Conversations
# =============================================================================

class ConversationStore(_SQLStore):

    async def create(
        self,
        session_id: str,
        user_email: Optional[str] = None,
        user_name: Optional[str] = None,
    ) -> ConversationRecord:
        """Return the session's conversation, creating it on first contact."""
        return await self._run(self._create, session_id, user_email, user_name)

    def _create(self, db: Session, session_id: str, user_email: Optional[str], user_name: Optional[str]) -> ConversationRecord:
        convo = db.query(Conversation).filter(Conversation.session_id == session_id).first()
        if convo is None:
            convo = Conversation(
                session_id=session_id,
                user_email=user_email,
                user_name=user_name,
                is_active=True,
                turn_count=0,
                started_at=_utcnow(),
            )
            db.add(convo)
            self._commit(db, "create conversation")
            db.refresh(convo)
            logger.info(f"[ConversationStore] Created conversation {session_id}")
        return ConversationRecord.model_validate(convo)

    async def append(self, session_id: str, role: TurnRole, content: str) -> TurnRecord:
        """Append one turn atomically; sequence numbers make ordering explicit."""
        return await self._run(self._append, session_id, TurnRole(role), content)

    def _append(self, db: Session, session_id: str, role: TurnRole, content: str) -> TurnRecord:
        convo = (
            db.query(Conversation)
            .filter(Conversation.session_id == session_id)
            .with_for_update()
            .first()
        )
        if convo is None:
            convo = Conversation(session_id=session_id, is_active=True, turn_count=0, started_at=_utcnow())
            db.add(convo)
            db.flush()

        now = _utcnow()
        turn = ConversationTurn(
            conversation_id=convo.id,
            seq=convo.turn_count,
            role=role.value,
            content=content,
            timestamp=now,
        )
        convo.turn_count = convo.turn_count + 1
        convo.last_message_at = now
        db.add(turn)
        self._commit(db, f"append {role.value} turn")
        return TurnRecord(role=role, content=content, timestamp=now)

    async def get(self, session_id: str) -> Optional[ConversationRecord]:
        return await self._run(self._get, session_id)

    def _get(self, db: Session, session_id: str) -> Optional[ConversationRecord]:
        convo = db.query(Conversation).filter(Conversation.session_id == session_id).first()
        if convo is None:
            return None
        return ConversationRecord.model_validate(convo)

    async def deactivate(self, session_id: str) -> bool:
        return await self._run(self._deactivate, session_id)

    def _deactivate(self, db: Session, session_id: str) -> bool:
        convo = db.query(Conversation).filter(Conversation.session_id == session_id).first()
        if convo is None:
            return False
        convo.is_active = False
        self._commit(db, "deactivate conversation")
        return True

    async def list_active(self, limit: int = 50) -> List[ConversationRecord]:
        return await self._run(self._list_active, limit)

    def _list_active(self, db: Session, limit: int) -> List[ConversationRecord]:
        rows = (
            db.query(Conversation)
            .filter(Conversation.is_active.is_(True))
            .order_by(Conversation.last_message_at.desc(), Conversation.id.desc())
            .limit(max(1, int(limit)))
            .all()
        )
        return [ConversationRecord.model_validate(r) for r in rows]


# =============================================================================
# Leads
# =============================================================================

# Keys a caller may write besides the tracked fields
_LEAD_META_FIELDS = ("tags", "summary", "has_buying_intent", "status", "qualified_at")
_LEAD_WRITABLE = set(TRACKED_FIELDS) | set(_LEAD_META_FIELDS)


def _check_lead_keys(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - _LEAD_WRITABLE - {"session_id"}
    if unknown:
        raise ValueError(f"Unknown lead fields: {sorted(unknown)}")


def _coerce_lead_value(key: str, value: Any) -> Any:
    if key == "status" and isinstance(value, LeadStatus):
        return value.value
    if key == "tags" and value is not None:
        return sorted(set(value))
    return value


class LeadStore(_SQLStore):

    async def get(self, session_id: str) -> Optional[LeadRecord]:
        return await self._run(self._get, session_id)

    def _get(self, db: Session, session_id: str) -> Optional[LeadRecord]:
        lead = db.query(Lead).filter(Lead.session_id == session_id).first()
        return LeadRecord.model_validate(lead) if lead else None

    async def create(self, fields: Dict[str, Any]) -> LeadRecord:
        if not fields.get("session_id"):
            raise ValueError("session_id is required to create a lead")
        _check_lead_keys(fields)
        return await self._run(self._create, dict(fields))

    def _create(self, db: Session, fields: Dict[str, Any]) -> LeadRecord:
        values = {k: _coerce_lead_value(k, v) for k, v in fields.items()}
        values.setdefault("status", LeadStatus.NEW.value)
        values.setdefault("tags", [])
        lead = Lead(**values)
        db.add(lead)
        self._commit(db, "create lead")
        db.refresh(lead)
        return LeadRecord.model_validate(lead)

    async def update(self, session_id: str, partial: Dict[str, Any]) -> LeadRecord:
        """
        Apply a partial update.

        A key mapped to None clears that field; a key that is absent leaves
        the stored value untouched. A qualified lead that loses a mandatory
        field drops back to new.

        Raises:
            LeadStatusTransitionError: the requested status is behind the
                stored one, or is qualified while mandatory fields are missing.
        """
        _check_lead_keys(partial)
        return await self._run(self._update, session_id, dict(partial))

    def _update(self, db: Session, session_id: str, partial: Dict[str, Any]) -> LeadRecord:
        lead = db.query(Lead).filter(Lead.session_id == session_id).with_for_update().first()
        if lead is None:
            raise PersistenceError(f"No lead for session {session_id}")

        current = LeadRecord.model_validate(lead)
        projected = current.model_copy(update={k: v for k, v in partial.items() if k in TRACKED_FIELDS})
        if "status" in partial:
            target = LeadStatus(partial["status"])
            reason = status_transition_error(current.status, target, projected)
            if reason:
                raise LeadStatusTransitionError(session_id, current.status, target, reason)
        elif current.status == LeadStatus.QUALIFIED and projected.missing_mandatory():
            logger.info(f"[LeadStore] {session_id} lost a mandatory field; back to new")
            partial["status"] = LeadStatus.NEW

        for key, value in partial.items():
            if key == "session_id":
                continue
            setattr(lead, key, _coerce_lead_value(key, value))
        self._commit(db, "update lead")
        db.refresh(lead)
        return LeadRecord.model_validate(lead)

    async def list(self, limit: int = 50, status: Optional[str] = None) -> List[LeadRecord]:
        return await self._run(self._list, limit, status)

    def _list(self, db: Session, limit: int, status: Optional[str]) -> List[LeadRecord]:
        q = db.query(Lead)
        if status:
            q = q.filter(Lead.status == status)
        rows = q.order_by(Lead.id.desc()).limit(max(1, int(limit))).all()
        return [LeadRecord.model_validate(r) for r in rows]

    async def count_by_status(self) -> Dict[str, int]:
        """Lead count per status; every status is present, zero included."""
        return await self._run(self._count_by_status)

    def _count_by_status(self, db: Session) -> Dict[str, int]:
        counts = {s.value: 0 for s in LeadStatus}
        for status, n in db.query(Lead.status, func.count(Lead.id)).group_by(Lead.status).all():
            counts[status] = n
        return counts


# =============================================================================
# Support tickets
# =============================================================================

def generate_ticket_id() -> str:
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(6))
    return f"TKT-{int(time.time() * 1000)}-{suffix}"


class TicketStore(_SQLStore):

    async def create(self, fields: Dict[str, Any]) -> TicketRecord:
        """
        Open a ticket for a session.

        Raises:
            ActiveTicketExistsError: the session already has an open or
                in-progress ticket.
        """
        if not fields.get("session_id"):
            raise ValueError("session_id is required to create a ticket")
        if not fields.get("transcript"):
            raise ValueError("transcript is required to create a ticket")
        return await self._run(self._create, dict(fields))

    def _create(self, db: Session, fields: Dict[str, Any]) -> TicketRecord:
        session_id = fields["session_id"]
        existing = self._active_row(db, session_id)
        if existing is not None:
            raise ActiveTicketExistsError(session_id, existing.ticket_id)

        values = {k: (v.value if hasattr(v, "value") else v) for k, v in fields.items()}
        values.setdefault("ticket_id", generate_ticket_id())
        values["status"] = TicketStatus.OPEN.value
        values.setdefault("priority", "medium")
        values["opened_at"] = _utcnow()

        ticket = SupportTicket(**values)
        db.add(ticket)
        self._commit(db, "create support ticket")
        db.refresh(ticket)
        logger.info(f"[TicketStore] Opened {ticket.ticket_id} for session {session_id} ({ticket.priority})")
        return TicketRecord.model_validate(ticket)

    @staticmethod
    def _active_row(db: Session, session_id: str) -> Optional[SupportTicket]:
        return (
            db.query(SupportTicket)
            .filter(
                SupportTicket.session_id == session_id,
                SupportTicket.status.in_(ACTIVE_TICKET_STATUSES),
            )
            .order_by(SupportTicket.id.desc())
            .first()
        )

    async def get_active_by_session(self, session_id: str) -> Optional[TicketRecord]:
        return await self._run(self._get_active_by_session, session_id)

    def _get_active_by_session(self, db: Session, session_id: str) -> Optional[TicketRecord]:
        row = self._active_row(db, session_id)
        return TicketRecord.model_validate(row) if row else None

    async def get(self, ticket_id: str) -> Optional[TicketRecord]:
        return await self._run(self._get, ticket_id)

    def _get(self, db: Session, ticket_id: str) -> Optional[TicketRecord]:
        row = db.query(SupportTicket).filter(SupportTicket.ticket_id == ticket_id).first()
        return TicketRecord.model_validate(row) if row else None

    async def update_status(self, ticket_id: str, status: TicketStatus) -> Optional[TicketRecord]:
        return await self._run(self._update_status, ticket_id, TicketStatus(status))

    def _update_status(self, db: Session, ticket_id: str, status: TicketStatus) -> Optional[TicketRecord]:
        ticket = db.query(SupportTicket).filter(SupportTicket.ticket_id == ticket_id).with_for_update().first()
        if ticket is None:
            return None

        reopening = ticket.status in TERMINAL_TICKET_STATUSES and status.value in ACTIVE_TICKET_STATUSES
        if reopening:
            other = self._active_row(db, ticket.session_id)
            if other is not None and other.ticket_id != ticket_id:
                raise ActiveTicketExistsError(ticket.session_id, other.ticket_id)

        ticket.status = status.value
        if status.value in TERMINAL_TICKET_STATUSES:
            ticket.resolved_at = _utcnow()
        elif reopening:
            ticket.resolved_at = None
        self._commit(db, "update ticket status")
        db.refresh(ticket)
        return TicketRecord.model_validate(ticket)

    async def list(
        self,
        limit: int = 50,
        status: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> List[TicketRecord]:
        return await self._run(self._list, limit, status, priority)

    def _list(self, db: Session, limit: int, status: Optional[str], priority: Optional[str]) -> List[TicketRecord]:
        q = db.query(SupportTicket)
        if status:
            q = q.filter(SupportTicket.status == status)
        if priority:
            q = q.filter(SupportTicket.priority == priority)
        rows = q.order_by(SupportTicket.id.desc()).limit(max(1, int(limit))).all()
        return [TicketRecord.model_validate(r) for r in rows]

    async def count_by_status(self) -> Dict[str, int]:
        return await self._run(self._count_by_status)

    def _count_by_status(self, db: Session) -> Dict[str, int]:
        counts = {s.value: 0 for s in TicketStatus}
        rows = db.query(SupportTicket.status, func.count(SupportTicket.id)).group_by(SupportTicket.status).all()
        for status, n in rows:
            counts[status] = n
        return counts
