import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from cropdoc.config import CHAT_RATE_LIMIT
from cropdoc.dependencies import SessionHandle
from cropdoc.routers import limiter
from cropdoc.routers.sessions import get_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions/{session_id}/assistant", tags=["assistant"])


class ChatRequest(BaseModel):
    text: str = Field(..., max_length=4000)


def _chat_log(handle: SessionHandle) -> dict:
    panel = handle.assistant
    context = panel.context
    return {
        "session_id": handle.session_id,
        "open": panel.is_open,
        "context": {"crop": context.crop, "disease": context.disease} if context else None,
        "messages": [m.to_dict() for m in panel.messages],
    }


@router.get("")
async def read_chat(handle: SessionHandle = Depends(get_session)):
    handle.sync_assistant()
    return _chat_log(handle)


@router.post("/open")
async def open_chat(handle: SessionHandle = Depends(get_session)):
    handle.assistant.open(handle.orchestrator.diagnostic_context)
    return _chat_log(handle)


@router.post("/messages")
@limiter.limit(CHAT_RATE_LIMIT)
async def send_message(request: Request, body: ChatRequest, handle: SessionHandle = Depends(get_session)):
    handle.sync_assistant()
    if not handle.assistant.is_open:
        handle.assistant.open(handle.orchestrator.diagnostic_context)
    reply = await handle.assistant.send(body.text)
    return {**_chat_log(handle), "reply": reply.to_dict() if reply else None}


@router.delete("")
async def close_chat(handle: SessionHandle = Depends(get_session)):
    handle.assistant.close()
    return _chat_log(handle)
