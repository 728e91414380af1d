# tests/test_streaming_driver.py
"""
Streaming Response Driver: retry only before the first token, keep partial
text, stop when the downstream closes.
"""

import pytest

from chatsales.agents.streaming_driver import StreamingResponseDriver, StreamStatus
from chatsales.services.openai_service import NonRetryableProviderError, TransportError

from tests.conftest import FakeProvider

MESSAGES = [{"role": "system", "content": "be nice"}, {"role": "user", "content": "hi"}]


class Emitter:
    def __init__(self, writable_for=None):
        self.pieces = []
        self.writable_for = writable_for

    async def __call__(self, piece):
        self.pieces.append(piece)
        if self.writable_for is not None and len(self.pieces) >= self.writable_for:
            return False
        return True


class Sleeper:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _driver(provider, max_attempts=3):
    sleeper = Sleeper()
    driver = StreamingResponseDriver(provider, max_attempts=max_attempts, base_delay=0.5, max_delay=4.0, sleep=sleeper)
    return driver, sleeper


class TestStreamingDriver:

    @pytest.mark.asyncio
    async def test_completed_stream_forwards_every_increment(self):
        provider = FakeProvider(stream_scripts=[["Hi ", "Maria", "!"]])
        driver, _ = _driver(provider)
        emit = Emitter()

        outcome = await driver.run(MESSAGES, emit)

        assert outcome.status == StreamStatus.COMPLETED
        assert outcome.text == "Hi Maria!"
        assert emit.pieces == ["Hi ", "Maria", "!"]
        assert outcome.attempts == 1

    @pytest.mark.asyncio
    async def test_empty_increments_are_skipped(self):
        provider = FakeProvider(stream_scripts=[["", "Hello", ""]])
        driver, _ = _driver(provider)
        emit = Emitter()

        outcome = await driver.run(MESSAGES, emit)

        assert emit.pieces == ["Hello"]
        assert outcome.text == "Hello"

    @pytest.mark.asyncio
    async def test_retries_with_backoff_when_no_tokens(self):
        provider = FakeProvider(stream_scripts=[
            [TransportError("connect")],
            [TransportError("timeout")],
            ["Recovered."],
        ])
        driver, sleeper = _driver(provider)

        outcome = await driver.run(MESSAGES, Emitter())

        assert outcome.status == StreamStatus.COMPLETED
        assert outcome.text == "Recovered."
        assert provider.stream_calls == 3
        assert len(sleeper.delays) == 2
        assert all(0 < d <= 4.0 for d in sleeper.delays)

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        provider = FakeProvider(stream_scripts=[[TransportError("down")]] * 3)
        driver, sleeper = _driver(provider, max_attempts=3)

        outcome = await driver.run(MESSAGES, Emitter())

        assert outcome.status == StreamStatus.FAILED
        assert outcome.text == ""
        assert isinstance(outcome.error, TransportError)
        assert provider.stream_calls == 3
        assert len(sleeper.delays) == 2

    @pytest.mark.asyncio
    async def test_partial_text_is_final_and_never_retried(self):
        """40 characters arrive, then the connection drops: one call, 40 characters kept."""
        first = "Thanks Maria, plumbing is a great field. "
        provider = FakeProvider(stream_scripts=[[first[:20], first[20:40], TransportError("reset")], ["never"]])
        driver, sleeper = _driver(provider)
        emit = Emitter()

        outcome = await driver.run(MESSAGES, emit)

        assert outcome.status == StreamStatus.PARTIAL
        assert outcome.text == first[:40]
        assert len(outcome.text) == 40
        assert provider.stream_calls == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", [
        NonRetryableProviderError.INVALID_CREDENTIALS,
        NonRetryableProviderError.QUOTA_EXCEEDED,
        NonRetryableProviderError.RATE_LIMITED,
    ])
    async def test_non_retryable_errors_abort_immediately(self, kind):
        provider = FakeProvider(stream_scripts=[[NonRetryableProviderError(kind)], ["never"]])
        driver, sleeper = _driver(provider)

        outcome = await driver.run(MESSAGES, Emitter())

        assert outcome.status == StreamStatus.FAILED
        assert outcome.error.kind == kind
        assert provider.stream_calls == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_unknown_exception_is_classified_as_transport(self):
        provider = FakeProvider(stream_scripts=[[RuntimeError("boom")], ["ok"]])
        driver, _ = _driver(provider)

        outcome = await driver.run(MESSAGES, Emitter())

        assert outcome.status == StreamStatus.COMPLETED
        assert provider.stream_calls == 2

    @pytest.mark.asyncio
    async def test_closed_downstream_cancels_generation(self):
        provider = FakeProvider(stream_scripts=[["one ", "two ", "three ", "four"]])
        driver, _ = _driver(provider)
        emit = Emitter(writable_for=2)

        outcome = await driver.run(MESSAGES, emit)

        assert outcome.status == StreamStatus.CANCELLED
        assert outcome.text == "one two "
        assert emit.pieces == ["one ", "two "]

    @pytest.mark.asyncio
    async def test_failing_emitter_treated_as_closed(self):
        provider = FakeProvider(stream_scripts=[["one ", "two "]])
        driver, _ = _driver(provider)

        async def broken(piece):
            raise ConnectionResetError("client gone")

        outcome = await driver.run(MESSAGES, broken)

        assert outcome.status == StreamStatus.CANCELLED
        assert outcome.text == "one "
