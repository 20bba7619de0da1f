import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from pydantic import BaseModel, Field

from cropdoc.config import ANALYZE_RATE_LIMIT, MAX_IMAGE_BYTES
from cropdoc.dependencies import DEFAULT_CLIENT_ID, SessionHandle, SessionRegistry, get_registry
from cropdoc.routers import limiter
from cropdoc.services.imaging import InvalidImageError, encode_image, inspect_image

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


class SessionCreate(BaseModel):
    client_id: str = Field(DEFAULT_CLIENT_ID, min_length=1, max_length=64, pattern=r'^[A-Za-z0-9_-]+$')


class DeepDiveRequest(BaseModel):
    recommendation: int = Field(..., ge=0, description="Index into the current recommendations")


def get_session(session_id: str, registry: SessionRegistry = Depends(get_registry)) -> SessionHandle:
    return registry.get(session_id)


def _respond(handle: SessionHandle) -> dict:
    handle.sync_assistant()
    return {"session_id": handle.session_id, "client_id": handle.client_id, **handle.orchestrator.snapshot()}


@router.post("")
async def create_session(body: Optional[SessionCreate] = None, registry: SessionRegistry = Depends(get_registry)):
    handle = registry.create((body or SessionCreate()).client_id)
    return _respond(handle)


@router.get("/{session_id}")
async def read_session(handle: SessionHandle = Depends(get_session)):
    return _respond(handle)


@router.delete("/{session_id}")
async def close_session(handle: SessionHandle = Depends(get_session), registry: SessionRegistry = Depends(get_registry)):
    registry.discard(handle.session_id)
    return {"status": "closed", "session_id": handle.session_id}


# ============================================================================#
# Analysis lifecycle
# ============================================================================#

@router.post("/{session_id}/analyze")
@limiter.limit(ANALYZE_RATE_LIMIT)
async def analyze_image(request: Request, image: UploadFile = File(...), handle: SessionHandle = Depends(get_session)):
    image_bytes = await image.read()
    if len(image_bytes) > MAX_IMAGE_BYTES:
        raise HTTPException(status_code=413, detail=f"Image larger than {MAX_IMAGE_BYTES} bytes")
    try:
        mime_type = inspect_image(image_bytes)
    except InvalidImageError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await handle.orchestrator.submit(encode_image(image_bytes, mime_type))
    return _respond(handle)


@router.post("/{session_id}/retry")
@limiter.limit(ANALYZE_RATE_LIMIT)
async def retry_analysis(request: Request, handle: SessionHandle = Depends(get_session)):
    await handle.orchestrator.retry()
    return _respond(handle)


@router.post("/{session_id}/reset")
async def reset_session(handle: SessionHandle = Depends(get_session)):
    handle.orchestrator.reset()
    return _respond(handle)


@router.post("/{session_id}/new-scan")
async def new_scan(handle: SessionHandle = Depends(get_session)):
    handle.orchestrator.new_scan()
    return _respond(handle)


@router.post("/{session_id}/demo")
async def run_demo(handle: SessionHandle = Depends(get_session)):
    handle.orchestrator.run_demo()
    return _respond(handle)


# ============================================================================#
# History
# ============================================================================#

@router.get("/{session_id}/history")
async def list_history(handle: SessionHandle = Depends(get_session)):
    entries = handle.orchestrator.history
    return {"total": len(entries), "entries": [entry.summary() for entry in entries]}


@router.delete("/{session_id}/history")
async def clear_history(handle: SessionHandle = Depends(get_session)):
    handle.orchestrator.clear_history()
    return {"total": 0, "entries": []}


@router.post("/{session_id}/history/{entry_id}/select")
async def select_history_entry(entry_id: str, handle: SessionHandle = Depends(get_session)):
    handle.orchestrator.select_history(entry_id)
    return _respond(handle)


# ============================================================================#
# Deep dive
# ============================================================================#

@router.post("/{session_id}/deep-dive")
async def deep_dive(body: DeepDiveRequest, handle: SessionHandle = Depends(get_session)):
    try:
        await handle.orchestrator.learn_more(body.recommendation)
    except (IndexError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _respond(handle)


@router.delete("/{session_id}/deep-dive")
async def reset_deep_dive(handle: SessionHandle = Depends(get_session)):
    handle.orchestrator.reset_deep_dive()
    return _respond(handle)
