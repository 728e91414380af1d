# chatsales/services/email_service.py
"""
SMTP delivery for the notification dispatcher (lead, ticket and urgent
inquiry emails).

Sends are retried on connection-level failures, throttled per sender over a
sliding hour, and reported back as (ok, error_category) instead of raising.
With EMAIL_ENVIRONMENT=test nothing leaves the process; the send is logged.
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict, deque
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Deque, Dict, Optional, Tuple

import aiosmtplib

from chatsales.config import settings
from chatsales.utils.logger import logger
from chatsales.utils.retry import async_retry, RetryError

THROTTLE_WINDOW_SECONDS = 3600


class EmailThrottler:
    """Sliding one-hour window of send timestamps per sender address."""

    def __init__(self, max_per_hour: Optional[int] = None):
        self.max_per_hour = max_per_hour or settings.EMAIL_MAX_PER_HOUR
        self._sent: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    def _prune(self, sender: str, now: float) -> Deque[float]:
        window = self._sent[sender]
        while window and window[0] <= now - THROTTLE_WINDOW_SECONDS:
            window.popleft()
        return window

    async def can_send(self, sender: str) -> Tuple[bool, int]:
        """(allowed, seconds until the oldest send leaves the window)"""
        async with self._lock:
            now = time.monotonic()
            window = self._prune(sender, now)
            if len(window) < self.max_per_hour:
                return True, 0
            return False, max(1, int(window[0] + THROTTLE_WINDOW_SECONDS - now) + 1)

    async def record_send(self, sender: str) -> None:
        async with self._lock:
            self._sent[sender].append(time.monotonic())


class EmailErrorCategory:
    CONNECTION = "connection"
    AUTH = "auth"
    RECIPIENT = "recipient"
    CONTENT = "content"
    THROTTLE = "throttle"
    CONFIG = "config"
    UNKNOWN = "unknown"


# first match wins; SMTP reply codes appear in the exception text
_ERROR_MARKERS = [
    (EmailErrorCategory.CONNECTION, "SMTP connection failed", ("connection", "timeout", "refused", "network", "eof")),
    (EmailErrorCategory.AUTH, "SMTP authentication failed", ("535", "auth", "credential", "password", "login")),
    (EmailErrorCategory.RECIPIENT, "Invalid recipient address", ("550", "551", "553", "user unknown", "mailbox", "recipient")),
    (EmailErrorCategory.CONTENT, "Email content rejected", ("552", "554", "message size", "content", "spam")),
    (EmailErrorCategory.THROTTLE, "SMTP rate limited", ("421", "450", "rate", "limit", "too many")),
]


def categorize_smtp_error(error: Exception) -> Tuple[str, str]:
    """(category, description) for logging; never includes credentials."""
    if isinstance(error, aiosmtplib.SMTPAuthenticationError):
        return EmailErrorCategory.AUTH, "SMTP authentication failed"
    if isinstance(error, aiosmtplib.SMTPRecipientsRefused):
        return EmailErrorCategory.RECIPIENT, "Invalid recipient address"

    text = str(error).lower()
    for category, description, markers in _ERROR_MARKERS:
        if any(m in text for m in markers):
            return category, description
    return EmailErrorCategory.UNKNOWN, f"SMTP error: {str(error)[:100]}"


class EmailService:

    def __init__(self, throttler: Optional[EmailThrottler] = None):
        self.throttler = throttler or EmailThrottler()

    @staticmethod
    def is_configured() -> bool:
        return bool(settings.SMTP_HOST and settings.SMTP_USER and settings.SMTP_PASSWORD)

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str = "",
        to_name: str = "",
        skip_throttle: bool = False,
    ) -> Tuple[bool, Optional[str]]:
        """
        Send one email with retry and throttling.

        Returns:
            (success, error_category)
        """
        to_email = (to_email or "").strip()
        subject = (subject or "").strip()
        html_body = (html_body or "").strip()
        text_body = (text_body or "").strip()

        if not to_email or not subject or (not html_body and not text_body):
            logger.error("[Email] Missing to_email/subject/body for send_email")
            return False, EmailErrorCategory.CONTENT

        if settings.EMAIL_ENVIRONMENT == "test":
            logger.info(f"[TEST MODE] Would send email to {to_email}: {subject}")
            return True, None

        if not self.is_configured():
            logger.warning(f"[Email] SMTP not configured; skipping '{subject}' to {to_email}")
            return False, EmailErrorCategory.CONFIG

        from_email = (settings.EMAIL_FROM or settings.SMTP_USER or "").strip()
        if not skip_throttle:
            can_send, wait_seconds = await self.throttler.can_send(from_email)
            if not can_send:
                logger.warning(f"[Email] Throttled for {from_email}. Wait {wait_seconds}s")
                return False, EmailErrorCategory.THROTTLE

        try:
            await self._send_smtp(to_email, to_name, subject, html_body, text_body)
        except RetryError as e:
            category, description = categorize_smtp_error(e.last_exception or e)
            logger.error(f"[Email] Send failed after retries to {to_email}: {description}")
            return False, category
        except Exception as e:
            category, description = categorize_smtp_error(e)
            logger.error(f"[Email] Send failed to {to_email}: {description}")
            return False, category

        await self.throttler.record_send(from_email)
        logger.info(f"[Email] Sent '{subject}' to {to_email}")
        return True, None

    @async_retry(
        max_attempts=3,
        initial_delay=2.0,
        max_delay=30.0,
        backoff_factor=2.0,
        retryable_exceptions=(ConnectionError, TimeoutError, aiosmtplib.SMTPConnectError, aiosmtplib.SMTPServerDisconnected),
        operation_name="email_send",
    )
    async def _send_smtp(
        self,
        to_email: str,
        to_name: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> None:
        from_email = (settings.EMAIL_FROM or settings.SMTP_USER or "").strip()
        from_name = (settings.EMAIL_FROM_NAME or settings.PRODUCT_NAME).strip()

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = formataddr((from_name, from_email))
        msg["To"] = formataddr(((to_name or "").strip() or "there", to_email))
        msg["Reply-To"] = from_email

        if text_body:
            msg.attach(MIMEText(text_body, "plain", "utf-8"))
        if html_body:
            msg.attach(MIMEText(html_body, "html", "utf-8"))

        await aiosmtplib.send(
            msg,
            hostname=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            start_tls=settings.SMTP_TLS,
            timeout=30,
        )
