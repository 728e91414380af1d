# chatsales/services/openai_service.py
"""
Completion provider for the chat engine.

Two call shapes:
- stream_chat: token-incremental reply text (the visitor-facing answer)
- complete_json: one JSON object (extraction, validation, classification)

OpenAI exceptions are classified here, once, into the engine's taxonomy:
TransportError (retry-worthy), NonRetryableProviderError (auth, quota,
rate limit) and ParseError (model returned something that is not a JSON
object). Nothing above this module imports openai.
"""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import openai
from openai import AsyncOpenAI

from chatsales.config import settings
from chatsales.utils.circuit_breaker import CircuitBreaker, CircuitBreakerError
from chatsales.utils.logger import logger


Message = Dict[str, str]


# =============================================================================
# Error taxonomy
# =============================================================================

class ProviderError(Exception):
    """Base class for completion provider failures."""
    pass


class TransportError(ProviderError):
    """Network failure, timeout, 5xx or open breaker. Safe to retry."""
    pass


class NonRetryableProviderError(ProviderError):
    """Provider refused the call for a reason a retry will not fix."""

    INVALID_CREDENTIALS = "invalid_credentials"
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMITED = "rate_limited"

    def __init__(self, kind: str, message: str = ""):
        super().__init__(message or kind)
        self.kind = kind


class ParseError(ProviderError):
    """Provider answered but the payload is not a JSON object."""
    pass


def classify_openai_error(exc: BaseException) -> ProviderError:
    """Map an openai/httpx exception onto the provider error taxonomy."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return NonRetryableProviderError(NonRetryableProviderError.INVALID_CREDENTIALS, str(exc))
    if isinstance(exc, openai.RateLimitError):
        code = getattr(exc, "code", None) or ""
        if code == "insufficient_quota" or "quota" in str(exc).lower():
            return NonRetryableProviderError(NonRetryableProviderError.QUOTA_EXCEEDED, str(exc))
        return NonRetryableProviderError(NonRetryableProviderError.RATE_LIMITED, str(exc))
    if isinstance(exc, (asyncio.TimeoutError, openai.APITimeoutError, httpx.TimeoutException)):
        return TransportError(f"timeout: {type(exc).__name__}")
    if isinstance(exc, (openai.APIConnectionError, httpx.HTTPError)):
        return TransportError(f"connection: {type(exc).__name__}")
    return TransportError(f"{type(exc).__name__}: {exc}")


# =============================================================================
# Provider interface
# =============================================================================

class CompletionProvider:
    """
    Interface the engine depends on. Implementations are injected into the
    orchestrator; there is no process-wide client.
    """

    def stream_chat(
        self,
        messages: List[Message],
        temperature: float = 0.7,
        first_token_timeout: Optional[float] = None,
        idle_timeout: Optional[float] = None,
    ) -> AsyncIterator[str]:
        raise NotImplementedError

    async def complete_json(
        self,
        messages: List[Message],
        temperature: float = 0.2,
        max_tokens: int = 300,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class OpenAICompletionProvider(CompletionProvider):

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.model = (model or settings.OPENAI_MODEL or "gpt-4o-mini").strip()
        key = api_key or settings.OPENAI_API_KEY
        if client is None and not key:
            logger.error("[OpenAI] OPENAI_API_KEY not set; every completion will fail as invalid_credentials")
        self.client = client or AsyncOpenAI(api_key=key or "", max_retries=0)
        self.breaker = breaker or CircuitBreaker(
            name="openai-aux",
            failure_threshold=settings.LLM_BREAKER_FAILURE_THRESHOLD,
            timeout=settings.LLM_BREAKER_RESET_TIMEOUT,
        )

    async def stream_chat(
        self,
        messages: List[Message],
        temperature: float = 0.7,
        first_token_timeout: Optional[float] = None,
        idle_timeout: Optional[float] = None,
    ) -> AsyncIterator[str]:
        """
        Yield text increments as they arrive.

        The first increment must arrive within first_token_timeout and each
        later one within idle_timeout; either expiry raises TransportError.
        """
        first_token_timeout = first_token_timeout or settings.LLM_STREAM_FIRST_TOKEN_TIMEOUT
        idle_timeout = idle_timeout or settings.LLM_STREAM_IDLE_TIMEOUT
        start = time.perf_counter()

        try:
            stream = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=temperature,
                    stream=True,
                ),
                timeout=first_token_timeout,
            )
        except Exception as e:
            raise classify_openai_error(e) from e

        chunks = stream.__aiter__()
        got_first = False
        try:
            while True:
                wait = idle_timeout if got_first else first_token_timeout
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), timeout=wait)
                except StopAsyncIteration:
                    break
                except Exception as e:
                    raise classify_openai_error(e) from e

                if not chunk.choices:
                    continue
                text = chunk.choices[0].delta.content
                if not text:
                    continue
                if not got_first:
                    got_first = True
                    logger.info(f"[LATENCY] First token in {(time.perf_counter() - start) * 1000:.0f}ms")
                yield text
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                try:
                    await close()
                except Exception as e:
                    logger.debug(f"[OpenAI] Stream close failed: {e}")

    async def complete_json(
        self,
        messages: List[Message],
        temperature: float = 0.2,
        max_tokens: int = 300,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        timeout = timeout or settings.LLM_AUX_TIMEOUT

        async def _call() -> str:
            resp = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    response_format={"type": "json_object"},
                ),
                timeout=timeout,
            )
            return (resp.choices[0].message.content or "").strip()

        try:
            content = await self.breaker.call(_call)
        except CircuitBreakerError as e:
            raise TransportError(str(e)) from e
        except Exception as e:
            raise classify_openai_error(e) from e

        return parse_json_object(content)

    async def close(self) -> None:
        await self.client.close()


def parse_json_object(content: str) -> Dict[str, Any]:
    """Decode a model reply that must be a JSON object."""
    text = (content or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError) as e:
        raise ParseError(f"Invalid JSON from model: {text[:80]!r}") from e
    if not isinstance(data, dict):
        raise ParseError(f"Expected a JSON object, got {type(data).__name__}")
    return data
