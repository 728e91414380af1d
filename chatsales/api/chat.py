# chatsales/api/chat.py
"""
Chat widget endpoints.

POST /api/chat/message streams the reply as Server-Sent Events:
  data: {"chunk": "...", "done": false}
  ...
  data: {"chunk": "", "done": true}      or      data: {"error": "...", "done": true}

The orchestrator writes events into a bounded queue; the response drains it.
When the client disconnects the queue is closed, the emitter starts
returning False and the turn stops generating, but whatever text was already
produced is still stored.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional, Set

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from chatsales.agents.orchestrator import GENERIC_ERROR, ConversationOrchestrator
from chatsales.config import settings
from chatsales.models.conversation import ConversationRecord, TurnRole
from chatsales.services.stores import PersistenceError
from chatsales.utils.logger import logger
from chatsales.utils.rate_limit import rate_limit

router = APIRouter(prefix="/api/chat", tags=["chat"])

SSE_QUEUE_SIZE = 256
MAX_LIST_LIMIT = 200

# turns keep running after a disconnect so the reply is committed
_turn_tasks: Set[asyncio.Task] = set()


def get_orchestrator(request: Request) -> ConversationOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Chat engine is not ready")
    return orchestrator


# -----------------------------
# Request bodies
# -----------------------------
class StartChatRequest(BaseModel):
    sessionId: Optional[str] = None
    userEmail: Optional[str] = None
    userName: Optional[str] = None


class ChatMessageRequest(BaseModel):
    sessionId: Optional[str] = None
    message: Optional[str] = None


class SaveMessageRequest(BaseModel):
    sessionId: str
    role: str
    content: str


class EndChatRequest(BaseModel):
    sessionId: str


# -----------------------------
# Helpers (serialization)
# -----------------------------
def conversation_to_dict(convo: ConversationRecord) -> Dict[str, Any]:
    return {
        "sessionId": convo.session_id,
        "isActive": convo.is_active,
        "userEmail": convo.user_email,
        "userName": convo.user_name,
        "startedAt": convo.started_at.isoformat() if convo.started_at else None,
        "lastMessageAt": convo.last_message_at.isoformat() if convo.last_message_at else None,
        "messages": [
            {"role": t.role.value, "content": t.content, "timestamp": t.timestamp.isoformat()}
            for t in convo.turns
        ],
    }


def _sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


# -----------------------------
# Endpoints
# -----------------------------
@router.post("/start")
@rate_limit("session")
async def start_chat(
    request: Request,
    body: StartChatRequest,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    try:
        convo = await orchestrator.start_conversation(body.sessionId, body.userEmail, body.userName)
    except PersistenceError:
        logger.exception("[ChatAPI] Could not start conversation")
        raise HTTPException(status_code=500, detail=GENERIC_ERROR)
    return {"success": True, "sessionId": convo.session_id, "conversation": conversation_to_dict(convo)}


@router.post("/message")
@rate_limit("chat")
async def send_message(
    request: Request,
    body: ChatMessageRequest,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    session_id = (body.sessionId or "").strip()
    message = (body.message or "").strip()
    if not session_id or not message:
        raise HTTPException(status_code=400, detail="sessionId and message are required")
    if len(message) > settings.MAX_MESSAGE_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"message must be at most {settings.MAX_MESSAGE_LENGTH} characters",
        )

    queue: asyncio.Queue = asyncio.Queue(maxsize=SSE_QUEUE_SIZE)
    closed = asyncio.Event()

    async def emit_event(event: Dict[str, Any]) -> bool:
        if closed.is_set():
            return False
        await queue.put(event)
        return not closed.is_set()

    async def run_turn() -> None:
        try:
            await orchestrator.handle_turn(session_id, message, emit_event)
        except Exception:
            logger.exception(f"[ChatAPI] Turn failed for {session_id}")
            if not closed.is_set():
                await queue.put({"error": GENERIC_ERROR, "done": True})
        finally:
            if not closed.is_set():
                await queue.put(None)

    async def event_stream():
        task = asyncio.create_task(run_turn())
        _turn_tasks.add(task)
        task.add_done_callback(_turn_tasks.discard)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield _sse(event)
                if event.get("done"):
                    break
        finally:
            closed.set()
            while not queue.empty():
                queue.get_nowait()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@router.post("/save-message")
async def save_message(
    body: SaveMessageRequest,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    try:
        role = TurnRole(body.role)
    except ValueError:
        raise HTTPException(status_code=400, detail="role must be user, assistant or system")
    if not body.sessionId.strip() or not body.content.strip():
        raise HTTPException(status_code=400, detail="sessionId and content are required")

    try:
        turn = await orchestrator.save_message(body.sessionId.strip(), role, body.content)
    except PersistenceError:
        logger.exception("[ChatAPI] Could not save message")
        raise HTTPException(status_code=500, detail=GENERIC_ERROR)
    return {"success": True, "message": {"role": turn.role.value, "content": turn.content, "timestamp": turn.timestamp.isoformat()}}


@router.get("/conversation/{session_id}")
async def get_conversation(
    session_id: str,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    convo = await orchestrator.get_conversation(session_id)
    if convo is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"success": True, "conversation": conversation_to_dict(convo)}


@router.get("/conversations")
async def list_conversations(
    limit: int = Query(50, ge=1, le=MAX_LIST_LIMIT),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    convos: List[ConversationRecord] = await orchestrator.list_conversations(limit)
    return {"success": True, "conversations": [conversation_to_dict(c) for c in convos]}


@router.post("/end")
async def end_chat(
    body: EndChatRequest,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    ended = await orchestrator.end_conversation(body.sessionId)
    if not ended:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"success": True}
