# chatsales/agents/streaming_driver.py
"""
Streaming Response Driver

Runs the visitor-facing completion and forwards each text increment through
an emitter callback the moment it arrives. The emitter returns False once
the downstream can no longer be written to; generation stops there.

Retry rules:
- only while the current attempt has produced zero tokens
- exponential backoff between attempts (calculate_backoff)
- invalid credentials, quota exceeded and rate limited abort at once
- text produced before a failure is the final reply; no further attempt

The driver never persists anything. It returns a StreamOutcome and the
orchestrator commits the assistant turn exactly once from it.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from chatsales.config import settings
from chatsales.services.openai_service import (
    CompletionProvider,
    NonRetryableProviderError,
    ProviderError,
    classify_openai_error,
)
from chatsales.utils.logger import logger
from chatsales.utils.retry import calculate_backoff


Emitter = Callable[[str], Awaitable[bool]]


class StreamStatus(str, Enum):
    COMPLETED = "completed"   # provider finished normally
    PARTIAL = "partial"       # failed after some text; text is the reply
    CANCELLED = "cancelled"   # downstream went away; text is the reply
    FAILED = "failed"         # no text at all


@dataclass
class StreamOutcome:
    status: StreamStatus
    text: str = ""
    attempts: int = 0
    error: Optional[ProviderError] = None

    @property
    def has_text(self) -> bool:
        return bool(self.text)


class StreamingResponseDriver:

    def __init__(
        self,
        provider: CompletionProvider,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        temperature: Optional[float] = None,
        first_token_timeout: Optional[float] = None,
        idle_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.max_attempts = max(1, max_attempts or settings.STREAM_MAX_ATTEMPTS)
        self.base_delay = settings.STREAM_RETRY_BASE_DELAY if base_delay is None else base_delay
        self.max_delay = settings.STREAM_RETRY_MAX_DELAY if max_delay is None else max_delay
        self.temperature = settings.LLM_STREAM_TEMPERATURE if temperature is None else temperature
        self.first_token_timeout = first_token_timeout or settings.LLM_STREAM_FIRST_TOKEN_TIMEOUT
        self.idle_timeout = idle_timeout or settings.LLM_STREAM_IDLE_TIMEOUT
        self._sleep = sleep

    async def run(self, messages: List[Dict[str, str]], emit: Emitter) -> StreamOutcome:
        parts: List[str] = []
        start = time.perf_counter()

        for attempt in range(1, self.max_attempts + 1):
            try:
                cancelled = await self._attempt(messages, emit, parts)
            except NonRetryableProviderError as e:
                logger.error(f"[Stream] Non-retryable provider error ({e.kind}); aborting")
                status = StreamStatus.PARTIAL if parts else StreamStatus.FAILED
                return StreamOutcome(status, "".join(parts), attempt, e)
            except Exception as e:
                error = classify_openai_error(e)
                if parts:
                    logger.warning(
                        f"[Stream] Attempt {attempt} failed after {len(''.join(parts))} chars "
                        f"({type(error).__name__}); keeping partial reply"
                    )
                    return StreamOutcome(StreamStatus.PARTIAL, "".join(parts), attempt, error)
                if attempt >= self.max_attempts:
                    logger.error(f"[Stream] All {self.max_attempts} attempts failed: {error}")
                    return StreamOutcome(StreamStatus.FAILED, "", attempt, error)
                delay = calculate_backoff(attempt - 1, base_delay=self.base_delay, max_delay=self.max_delay)
                logger.warning(
                    f"[Stream] Attempt {attempt}/{self.max_attempts} produced nothing "
                    f"({type(error).__name__}); retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
                continue

            text = "".join(parts)
            if cancelled:
                logger.info(f"[Stream] Downstream closed after {len(text)} chars; generation cancelled")
                return StreamOutcome(StreamStatus.CANCELLED, text, attempt)
            logger.info(f"[LATENCY] Stream completed in {(time.perf_counter() - start) * 1000:.0f}ms ({len(text)} chars)")
            return StreamOutcome(StreamStatus.COMPLETED, text, attempt)

        return StreamOutcome(StreamStatus.FAILED, "", self.max_attempts)

    async def _attempt(self, messages: List[Dict[str, str]], emit: Emitter, parts: List[str]) -> bool:
        """Stream one attempt into parts. Returns True when the downstream closed."""
        stream = self.provider.stream_chat(
            messages,
            temperature=self.temperature,
            first_token_timeout=self.first_token_timeout,
            idle_timeout=self.idle_timeout,
        )
        try:
            async for piece in stream:
                if not piece:
                    continue
                parts.append(piece)
                try:
                    writable = await emit(piece)
                except Exception as e:
                    logger.warning(f"[Stream] Emitter failed ({type(e).__name__}); treating downstream as closed")
                    writable = False
                if not writable:
                    return True
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        return False
