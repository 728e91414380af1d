# chatsales/api/dashboard.py
"""
Admin dashboard: leads, support tickets and their status counts.

Reads require an admin Bearer token. The two POST receivers accept pushes
from the notification dispatcher (service-to-service) and only log them;
the records are already in the database.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from chatsales.auth.dependencies import require_admin
from chatsales.auth.models import AdminUser
from chatsales.models.lead import TRACKED_FIELDS, LeadStatus
from chatsales.models.support_ticket import TicketPriority, TicketStatus
from chatsales.services.stores import ActiveTicketExistsError, LeadStatusTransitionError, LeadStore, TicketStore
from chatsales.utils.logger import logger

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

MAX_PAGINATION_LIMIT = 500


def get_lead_store() -> LeadStore:
    return LeadStore()


def get_ticket_store() -> TicketStore:
    return TicketStore()


class TicketStatusUpdate(BaseModel):
    status: TicketStatus


class LeadUpdate(BaseModel):
    status: Optional[LeadStatus] = None
    fields: Dict[str, Optional[str]] = {}


@router.get("/stats")
async def dashboard_stats(
    admin: AdminUser = Depends(require_admin),
    leads: LeadStore = Depends(get_lead_store),
    tickets: TicketStore = Depends(get_ticket_store),
):
    lead_counts = await leads.count_by_status()
    ticket_counts = await tickets.count_by_status()
    return {
        "success": True,
        "leads": {"total": sum(lead_counts.values()), "by_status": lead_counts},
        "tickets": {"total": sum(ticket_counts.values()), "by_status": ticket_counts},
    }


@router.get("/leads")
async def list_leads(
    limit: int = Query(100, ge=1, le=MAX_PAGINATION_LIMIT),
    status: Optional[LeadStatus] = None,
    admin: AdminUser = Depends(require_admin),
    leads: LeadStore = Depends(get_lead_store),
):
    rows = await leads.list(limit=limit, status=status.value if status else None)
    return {"success": True, "leads": [r.model_dump(mode="json") for r in rows]}


@router.patch("/leads/{session_id}")
async def update_lead(
    session_id: str,
    body: LeadUpdate,
    admin: AdminUser = Depends(require_admin),
    leads: LeadStore = Depends(get_lead_store),
):
    """
    Move a lead along its lifecycle and/or correct collected fields.

    Status only moves forward (new, qualified, contacted, booked; lost from
    any open status). Going back to new is accepted only together with a
    correction that clears a mandatory field.
    """
    unknown = sorted(set(body.fields) - set(TRACKED_FIELDS))
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown lead fields: {', '.join(unknown)}")
    if body.status is None and not body.fields:
        raise HTTPException(status_code=400, detail="status or fields is required")

    lead = await leads.get(session_id)
    if lead is None:
        raise HTTPException(status_code=404, detail="Lead not found")

    partial: Dict[str, Any] = dict(body.fields)
    if body.status is not None:
        partial["status"] = body.status
        if body.status == LeadStatus.QUALIFIED and lead.qualified_at is None:
            partial["qualified_at"] = datetime.now(timezone.utc)

    try:
        updated = await leads.update(session_id, partial)
    except LeadStatusTransitionError as e:
        raise HTTPException(status_code=409, detail=f"Cannot move lead from {e.current.value} to {e.target.value}: {e.reason}")

    logger.info(f"[Dashboard] {admin.username} updated lead {session_id}: {sorted(partial)}")
    return {"success": True, "lead": updated.model_dump(mode="json")}


@router.get("/tickets")
async def list_tickets(
    limit: int = Query(100, ge=1, le=MAX_PAGINATION_LIMIT),
    status: Optional[TicketStatus] = None,
    priority: Optional[TicketPriority] = None,
    admin: AdminUser = Depends(require_admin),
    tickets: TicketStore = Depends(get_ticket_store),
):
    rows = await tickets.list(
        limit=limit,
        status=status.value if status else None,
        priority=priority.value if priority else None,
    )
    return {"success": True, "tickets": [r.model_dump(mode="json") for r in rows]}


@router.patch("/tickets/{ticket_id}")
async def update_ticket_status(
    ticket_id: str,
    body: TicketStatusUpdate,
    admin: AdminUser = Depends(require_admin),
    tickets: TicketStore = Depends(get_ticket_store),
):
    try:
        ticket = await tickets.update_status(ticket_id, body.status)
    except ActiveTicketExistsError as e:
        raise HTTPException(status_code=409, detail=f"Session already has active ticket {e.ticket_id}")
    if ticket is None:
        raise HTTPException(status_code=404, detail="Ticket not found")
    logger.info(f"[Dashboard] {admin.username} set {ticket_id} to {body.status.value}")
    return {"success": True, "ticket": ticket.model_dump(mode="json")}


@router.post("/ticket")
async def receive_ticket(body: Dict[str, Any]):
    logger.info(f"[Dashboard] Ticket received: {body.get('ticketId')} (session {body.get('sessionId')})")
    return {"success": True, "message": "Ticket received successfully", "ticketId": body.get("ticketId")}


@router.post("/lead")
async def receive_lead(body: Dict[str, Any]):
    logger.info(f"[Dashboard] Lead received: session {body.get('session_id')}")
    return {"success": True, "message": "Lead received successfully"}
