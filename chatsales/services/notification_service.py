# chatsales/services/notification_service.py
"""
Out-of-band notifications: admin/client/visitor emails and the dashboard push.

Nothing here may slow down or break a conversation turn. `send()` schedules
delivery as a tracked background task with a timeout and returns at once;
failures are logged, never raised.
"""
from __future__ import annotations

import asyncio
import html
from enum import Enum
from typing import Any, Dict, List, Optional, Set

import httpx

from chatsales.config import settings
from chatsales.services.email_service import EmailService
from chatsales.utils.logger import logger
from chatsales.utils.retry import HTTPX_RETRYABLE_EXCEPTIONS, RetryError, async_retry


class NotificationKind(str, Enum):
    NEW_CONVERSATION = "new_conversation"
    QUALIFIED_LEAD = "qualified_lead"
    TICKET_CREATED = "ticket_created"
    URGENT_INQUIRY = "urgent_inquiry"


LEAD_LABELS = (
    ("name", "Name"),
    ("company", "Company"),
    ("email", "Email"),
    ("phone", "Phone"),
    ("business_type", "Business type"),
    ("lead_source", "Lead source"),
    ("leads_per_week", "Leads per week"),
    ("deal_value", "Deal value"),
    ("after_hours_pain", "After-hours handling"),
    ("service_need", "Service need"),
    ("timing", "Timing"),
    ("budget", "Budget"),
)


def esc(s: Any) -> str:
    return html.escape("" if s is None else str(s))


def _lead_list(lead: Optional[Dict[str, Any]]) -> str:
    if not lead:
        return "<p>No lead details captured.</p>"
    rows = [
        f"<li><b>{label}:</b> {esc(lead.get(key))}</li>"
        for key, label in LEAD_LABELS
        if lead.get(key)
    ]
    return "<ul>" + "".join(rows) + "</ul>" if rows else "<p>No lead details captured.</p>"


def _pre(text: Optional[str]) -> str:
    return f"<pre style='white-space:pre-wrap'>{esc(text or '')}</pre>"


# ==================== Dashboard ====================

class DashboardClient:
    """POSTs tickets and leads to the external dashboard API."""

    def __init__(self, base_url: Optional[str] = None, timeout: float = 10.0):
        self.base_url = (base_url or settings.DASHBOARD_API_URL or "").rstrip("/")
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def push_ticket(self, ticket: Dict[str, Any], lead: Optional[Dict[str, Any]] = None) -> bool:
        body = {
            "ticketId": ticket.get("ticket_id"),
            "sessionId": ticket.get("session_id"),
            "status": ticket.get("status"),
            "priority": ticket.get("priority"),
            "sentiment": ticket.get("sentiment"),
            "summary": ticket.get("summary"),
            "transcript": ticket.get("transcript"),
            "userName": ticket.get("user_name"),
            "userEmail": ticket.get("user_email"),
            "userPhone": ticket.get("user_phone"),
            "leadInfo": {
                "serviceNeed": lead.get("service_need"),
                "timing": lead.get("timing"),
                "budget": lead.get("budget"),
            } if lead else None,
        }
        return await self._push("/api/dashboard/ticket", body)

    async def push_lead(self, lead: Dict[str, Any]) -> bool:
        return await self._push("/api/dashboard/lead", lead)

    async def _push(self, path: str, body: Dict[str, Any]) -> bool:
        if not self.enabled:
            logger.debug(f"[Dashboard] DASHBOARD_API_URL not set; skipping {path}")
            return False
        try:
            await self._post(f"{self.base_url}{path}", body)
        except RetryError as e:
            logger.warning(f"[Dashboard] Push to {path} failed after {e.attempts} attempts: {e.last_exception}")
            return False
        except httpx.HTTPStatusError as e:
            logger.warning(f"[Dashboard] Push to {path} rejected: {e.response.status_code}")
            return False
        logger.info(f"[Dashboard] Pushed {path}")
        return True

    @async_retry(
        max_attempts=3,
        initial_delay=1.0,
        max_delay=10.0,
        retryable_exceptions=HTTPX_RETRYABLE_EXCEPTIONS,
        operation_name="dashboard_push",
    )
    async def _post(self, url: str, body: Dict[str, Any]) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(url, json=body)
            resp.raise_for_status()


# ==================== Dispatcher ====================

class NotificationDispatcher:

    def __init__(
        self,
        email: Optional[EmailService] = None,
        dashboard: Optional[DashboardClient] = None,
        timeout: Optional[float] = None,
    ):
        self.email = email or EmailService()
        self.dashboard = dashboard or DashboardClient()
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def send(self, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        """Fire and forget. Never raises."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"[Notify] No running loop; dropping {kind.value}")
            return
        task = loop.create_task(self._guarded(kind, payload), name=f"notify:{kind.value}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight notifications (used on shutdown and in tests)."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"[Notify] Cancelled {len(pending)} notification(s) still running at drain")

    async def _guarded(self, kind: NotificationKind, payload: Dict[str, Any]) -> bool:
        try:
            return await asyncio.wait_for(self.deliver(kind, payload), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[Notify] {kind.value} timed out after {self.timeout}s")
        except Exception:
            logger.exception(f"[Notify] {kind.value} failed")
        return False

    async def deliver(self, kind: NotificationKind, payload: Dict[str, Any]) -> bool:
        handler = {
            NotificationKind.NEW_CONVERSATION: self._new_conversation,
            NotificationKind.QUALIFIED_LEAD: self._qualified_lead,
            NotificationKind.TICKET_CREATED: self._ticket_created,
            NotificationKind.URGENT_INQUIRY: self._urgent_inquiry,
        }[kind]
        return await handler(payload)

    # =========================================================================
    # Recipients
    # =========================================================================

    @staticmethod
    def _admin_recipients() -> List[str]:
        raw = settings.NOTIFICATION_EMAIL or settings.ADMIN_EMAIL or ""
        return [x.strip() for x in raw.split(",") if x.strip()]

    async def _mail_admins(self, subject: str, html_body: str) -> bool:
        recipients = self._admin_recipients()
        if not recipients:
            logger.warning(f"[Notify] ADMIN_EMAIL/NOTIFICATION_EMAIL not set; skipping '{subject}'")
            return False
        results = [await self.email.send_email(to, subject, html_body) for to in recipients]
        return all(ok for ok, _ in results)

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _new_conversation(self, payload: Dict[str, Any]) -> bool:
        session_id = payload.get("session_id")
        body = (
            "<h2>New website conversation</h2>"
            f"<p><b>Session:</b> {esc(session_id)}</p>"
            f"<p><b>First message:</b> {esc(payload.get('message'))}</p>"
        )
        return await self._mail_admins(f"New conversation started ({session_id})", body)

    async def _qualified_lead(self, payload: Dict[str, Any]) -> bool:
        lead = payload.get("lead") or {}
        who = lead.get("name") or "Lead"
        body = (
            "<h2>Qualified lead</h2>"
            f"{_lead_list(lead)}"
            f"<p><b>Summary:</b> {esc(lead.get('summary') or '-')}</p>"
            f"<p><b>Tags:</b> {esc(', '.join(lead.get('tags') or []) or '-')}</p>"
            "<h3>Transcript</h3>"
            f"{_pre(payload.get('transcript'))}"
        )
        admin_ok = await self._mail_admins(f"Qualified lead: {who}", body)

        if lead.get("email"):
            confirmation = (
                f"<p>Hi {esc(lead.get('name') or 'there')},</p>"
                f"<p>Thanks for chatting with us about {esc(settings.PRODUCT_NAME)}. "
                "We have your details and will be in touch shortly.</p>"
            )
            await self.email.send_email(
                lead["email"],
                f"Thanks for your interest in {settings.PRODUCT_NAME}",
                confirmation,
                to_name=lead.get("name") or "",
            )

        await self.dashboard.push_lead(lead)
        return admin_ok

    async def _ticket_created(self, payload: Dict[str, Any]) -> bool:
        ticket = payload.get("ticket") or {}
        lead = payload.get("lead")
        ticket_id = ticket.get("ticket_id")
        body = (
            f"<h2>Support ticket {esc(ticket_id)}</h2>"
            "<ul>"
            f"<li><b>Priority:</b> {esc(ticket.get('priority'))}</li>"
            f"<li><b>Sentiment:</b> {esc(ticket.get('sentiment') or '-')}</li>"
            f"<li><b>User:</b> {esc(ticket.get('user_name') or '-')} {esc(ticket.get('user_email') or '')}</li>"
            "</ul>"
            f"<p><b>Summary:</b> {esc(ticket.get('summary') or '-')}</p>"
            "<h3>Transcript</h3>"
            f"{_pre(ticket.get('transcript'))}"
        )
        admin_ok = await self._mail_admins(f"[{str(ticket.get('priority') or '').upper()}] Support ticket {ticket_id}", body)

        if ticket.get("user_email"):
            await self.email.send_email(
                ticket["user_email"],
                f"We received your request ({ticket_id})",
                f"<p>Hi {esc(ticket.get('user_name') or 'there')},</p>"
                f"<p>Your support request has been logged as <b>{esc(ticket_id)}</b>. "
                "Our team will follow up soon.</p>",
                to_name=ticket.get("user_name") or "",
            )

        await self.dashboard.push_ticket(ticket, lead)
        return admin_ok

    async def _urgent_inquiry(self, payload: Dict[str, Any]) -> bool:
        to = (settings.CLIENT_EMAIL or settings.ADMIN_EMAIL or "").strip()
        if not to:
            logger.warning("[Notify] CLIENT_EMAIL/ADMIN_EMAIL not set; skipping urgent inquiry email")
            return False
        message = payload.get("message") or ""
        lead = payload.get("lead")
        body = (
            "<h2>Urgent inquiry</h2>"
            f"<p><b>Session:</b> {esc(payload.get('session_id'))}</p>"
            f"<p><b>Message:</b> {esc(message)}</p>"
            f"{_lead_list(lead)}"
        )
        ok, _ = await self.email.send_email(to, f"URGENT INQUIRY: {message[:50]}", body, skip_throttle=True)
        return ok
