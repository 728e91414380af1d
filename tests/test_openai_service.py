# tests/test_openai_service.py
"""
OpenAI completion provider: error taxonomy, JSON parsing, stream timeouts.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from chatsales.services.openai_service import (
    NonRetryableProviderError,
    OpenAICompletionProvider,
    ParseError,
    TransportError,
    classify_openai_error,
    parse_json_object,
)
from chatsales.utils.circuit_breaker import CircuitBreaker


def _status_error(cls, status, message):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    return cls(message, response=httpx.Response(status, request=request), body=None)


def _completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _chunk(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


class FakeStream:
    def __init__(self, pieces, delay=0.0):
        self.pieces = list(pieces)
        self.delay = delay
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.pieces:
            raise StopAsyncIteration
        return self.pieces.pop(0)

    async def close(self):
        self.closed = True


def _provider(create):
    client = MagicMock()
    client.chat.completions.create = create
    return OpenAICompletionProvider(client=client, breaker=CircuitBreaker("test", failure_threshold=2, timeout=60.0))


class TestErrorTaxonomy:

    def test_auth_is_non_retryable(self):
        err = classify_openai_error(_status_error(openai.AuthenticationError, 401, "bad key"))
        assert isinstance(err, NonRetryableProviderError)
        assert err.kind == NonRetryableProviderError.INVALID_CREDENTIALS

    def test_quota_and_rate_limit(self):
        quota = classify_openai_error(_status_error(openai.RateLimitError, 429, "You exceeded your current quota"))
        limited = classify_openai_error(_status_error(openai.RateLimitError, 429, "Slow down"))
        assert quota.kind == NonRetryableProviderError.QUOTA_EXCEEDED
        assert limited.kind == NonRetryableProviderError.RATE_LIMITED

    @pytest.mark.parametrize("exc", [
        asyncio.TimeoutError(),
        httpx.ConnectError("refused"),
        RuntimeError("weird"),
    ])
    def test_everything_else_is_transport(self, exc):
        assert isinstance(classify_openai_error(exc), TransportError)

    def test_provider_errors_pass_through(self):
        err = ParseError("x")
        assert classify_openai_error(err) is err


class TestParseJson:

    def test_plain_object(self):
        assert parse_json_object('{"name": "Maria"}') == {"name": "Maria"}

    def test_fenced_object(self):
        assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}

    @pytest.mark.parametrize("content", ["not json", "[1, 2]", ""])
    def test_rejects_non_objects(self, content):
        with pytest.raises(ParseError):
            parse_json_object(content)


class TestCompleteJson:

    @pytest.mark.asyncio
    async def test_returns_object(self):
        provider = _provider(AsyncMock(return_value=_completion('{"isInvalid": false}')))
        assert await provider.complete_json([{"role": "user", "content": "x"}]) == {"isInvalid": False}

    @pytest.mark.asyncio
    async def test_open_breaker_is_a_transport_error(self):
        create = AsyncMock(side_effect=httpx.ConnectError("refused"))
        provider = _provider(create)

        for _ in range(2):
            with pytest.raises(TransportError):
                await provider.complete_json([{"role": "user", "content": "x"}])
        with pytest.raises(TransportError, match="OPEN"):
            await provider.complete_json([{"role": "user", "content": "x"}])

        assert create.await_count == 2

    @pytest.mark.asyncio
    async def test_bad_json_is_parse_error(self):
        provider = _provider(AsyncMock(return_value=_completion("sure! here you go")))
        with pytest.raises(ParseError):
            await provider.complete_json([{"role": "user", "content": "x"}])


class TestStreamChat:

    @pytest.mark.asyncio
    async def test_yields_non_empty_increments(self):
        stream = FakeStream([_chunk("Hi"), _chunk(None), SimpleNamespace(choices=[]), _chunk(" there")])
        provider = _provider(AsyncMock(return_value=stream))

        pieces = [p async for p in provider.stream_chat([{"role": "user", "content": "x"}])]

        assert pieces == ["Hi", " there"]
        assert stream.closed

    @pytest.mark.asyncio
    async def test_first_token_timeout(self):
        provider = _provider(AsyncMock(return_value=FakeStream([_chunk("late")], delay=0.2)))

        with pytest.raises(TransportError):
            async for _ in provider.stream_chat([{"role": "user", "content": "x"}], first_token_timeout=0.01):
                pass

    @pytest.mark.asyncio
    async def test_rejected_request_is_classified(self):
        provider = _provider(AsyncMock(side_effect=_status_error(openai.AuthenticationError, 401, "bad key")))

        with pytest.raises(NonRetryableProviderError):
            async for _ in provider.stream_chat([{"role": "user", "content": "x"}]):
                pass
