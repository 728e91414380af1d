# tests/conftest.py
"""
Shared fixtures: a throwaway SQLite database per test and a scripted
completion provider standing in for the model.
"""

import asyncio
import os
import tempfile

# settings are read at import time
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite:///{os.path.join(tempfile.mkdtemp(prefix='chatsales-tests-'), 'app.db')}",
)
os.environ.setdefault("OPENAI_API_KEY", "sk-test")
os.environ.setdefault("EMAIL_ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("ADMIN_USERNAME", "admin")
os.environ.setdefault("ADMIN_PASSWORD", "correct-horse")
os.environ.setdefault("DEMO_MODE", "false")
os.environ.setdefault("FRONTEND_URL", "http://localhost:3000")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

from typing import Any, Callable, Dict, List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from chatsales.agents.orchestrator import ConversationOrchestrator
from chatsales.agents.streaming_driver import StreamingResponseDriver
from chatsales.database import build_engine, init_db
from chatsales.models.lead import TRACKED_FIELDS
from chatsales.services.openai_service import CompletionProvider
from chatsales.services.stores import ConversationStore, LeadStore, TicketStore
from chatsales.utils.session_locks import SessionLockRegistry


# =============================================================================
# Scripted provider
# =============================================================================

class FakeProvider(CompletionProvider):
    """
    stream_scripts: one list per stream_chat call. Strings are yielded as
    increments; an exception instance is raised at that point.

    JSON calls are routed by prompt: extraction replies are popped from
    `extractions` (camelCase keys), validation answers come from
    `invalid_values`, and the support classifier answers `support_issue`.
    """

    def __init__(
        self,
        stream_scripts: Optional[List[List[Any]]] = None,
        extractions: Optional[List[Dict[str, Any]]] = None,
        invalid_values: Optional[Dict[str, str]] = None,
        support_issue: bool = False,
        json_error: Optional[Exception] = None,
    ):
        self.stream_scripts = list(stream_scripts or [])
        self.extractions = list(extractions or [])
        self.invalid_values = dict(invalid_values or {})
        self.support_issue = support_issue
        self.json_error = json_error
        self.stream_calls = 0
        self.stream_messages: List[List[Dict[str, str]]] = []
        self.json_calls: List[str] = []
        self.closed = False

    def stream_chat(self, messages, temperature=0.7, first_token_timeout=None, idle_timeout=None):
        self.stream_calls += 1
        self.stream_messages.append(messages)
        script = self.stream_scripts.pop(0) if self.stream_scripts else ["Thanks! ", "Tell me more."]
        return self._stream(script)

    async def _stream(self, script):
        for item in script:
            if isinstance(item, BaseException):
                raise item
            yield item

    async def complete_json(self, messages, temperature=0.2, max_tokens=300, timeout=None):
        system = messages[0]["content"] if messages[0]["role"] == "system" else ""
        prompt = messages[-1]["content"]

        if "data extraction assistant" in system:
            self.json_calls.append("extraction")
            if self.json_error:
                raise self.json_error
            return self.extractions.pop(0) if self.extractions else {}

        if "validation assistant" in system:
            self.json_calls.append("validation")
            if self.json_error:
                raise self.json_error
            for value, reason in self.invalid_values.items():
                if f'Answer to analyze: "{value}"' in prompt:
                    return {"isInvalid": True, "reason": reason}
            return {"isInvalid": False}

        if "support issue detection" in system:
            self.json_calls.append("support")
            if self.json_error:
                raise self.json_error
            return {"isSupportIssue": self.support_issue, "reason": "scripted", "category": "technical"}

        if "lead summarization" in system:
            self.json_calls.append("lead_summary")
            return {"summary": "Scripted lead summary."}

        if prompt.startswith("Classify the overall sentiment"):
            self.json_calls.append("sentiment")
            return {"sentiment": "negative", "confidence": 0.8}
        if prompt.startswith("Assign a support priority"):
            self.json_calls.append("priority")
            return {"priority": "high"}
        if prompt.startswith("Summarize the user's support issue"):
            self.json_calls.append("ticket_summary")
            return {"summary": "Widget is broken."}

        self.json_calls.append("other")
        return {}

    async def close(self) -> None:
        self.closed = True


class GatedProvider(FakeProvider):
    """
    FakeProvider whose validation calls all block until `expected` of them
    are in flight at once. Validations run one after another never finish.
    """

    def __init__(self, expected: int, **kwargs):
        super().__init__(**kwargs)
        self.expected = expected
        self.started = 0
        self.finished = 0
        self.release = asyncio.Event()

    async def complete_json(self, messages, temperature=0.2, max_tokens=300, timeout=None):
        if "validation assistant" not in messages[0]["content"]:
            return await super().complete_json(messages, temperature, max_tokens, timeout)
        self.started += 1
        if self.started >= self.expected:
            self.release.set()
        await self.release.wait()
        try:
            return await super().complete_json(messages, temperature, max_tokens, timeout)
        finally:
            self.finished += 1


def extraction(**fields) -> Dict[str, Any]:
    """Extraction reply with camelCase keys; unspecified fields are null."""
    from chatsales.agents.extraction_engine import JSON_KEYS
    reply = {JSON_KEYS[f]: None for f in TRACKED_FIELDS}
    for name, value in fields.items():
        reply[JSON_KEYS[name]] = value
    return reply


class RecordingNotifier:
    """Captures notifications instead of scheduling delivery."""

    def __init__(self):
        self.sent: List[tuple] = []
        self.pending = 0

    def send(self, kind, payload):
        self.sent.append((kind, payload))

    def kinds(self) -> List[str]:
        return [k.value for k, _ in self.sent]

    async def drain(self, timeout=None):
        return None


class EventCollector:
    """Caller-side emitter; optionally goes away after `close_after` chunks."""

    def __init__(self, close_after: Optional[int] = None):
        self.events: List[Dict[str, Any]] = []
        self.close_after = close_after

    async def __call__(self, event: Dict[str, Any]) -> bool:
        self.events.append(event)
        chunks = [e for e in self.events if e.get("chunk")]
        if self.close_after is not None and len(chunks) >= self.close_after:
            return False
        return True

    @property
    def text(self) -> str:
        return "".join(e.get("chunk", "") for e in self.events)

    @property
    def terminal(self) -> Optional[Dict[str, Any]]:
        done = [e for e in self.events if e.get("done")]
        return done[-1] if done else None


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def conversations(session_factory):
    return ConversationStore(session_factory)


@pytest.fixture
def leads(session_factory):
    return LeadStore(session_factory)


@pytest.fixture
def tickets(session_factory):
    return TicketStore(session_factory)


@pytest.fixture
def notifier():
    return RecordingNotifier()


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def make_orchestrator(conversations, leads, tickets, notifier) -> Callable[..., ConversationOrchestrator]:
    def _make(provider: FakeProvider, **kwargs) -> ConversationOrchestrator:
        kwargs.setdefault("driver", StreamingResponseDriver(provider, max_attempts=3, sleep=_no_sleep))
        return ConversationOrchestrator(
            provider=provider,
            conversations=conversations,
            leads=leads,
            tickets=tickets,
            notifier=notifier,
            locks=SessionLockRegistry(),
            demo_mode=kwargs.pop("demo_mode", False),
            **kwargs,
        )
    return _make
