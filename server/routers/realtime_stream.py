"""HTTP streaming transport for the realtime voice relay.

Split-channel variant for clients that cannot hold a WebSocket open:
events come down a Server-Sent Events response and audio goes up in
separate chunked POST bodies. The conversation id is the only link
between the requests, and they may arrive in any order.

Endpoints:
- GET  /stream  SSE download; starts (or replaces) the session
- POST /upload  raw PCM16 body, each chunk is one audio append
- POST /commit  end of utterance, ask for an answer now
- POST /end     end the conversation (idempotent)
"""

import asyncio
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import ORJSONResponse, StreamingResponse
from starlette.requests import ClientDisconnect

from constants import SSE_HEADERS, SSE_KEEPALIVE_COMMENT, SSE_MEDIA_TYPE
from core.config import Settings
from core.dependencies import get_registry, get_settings, require_device
from core.logging import get_logger
from models.realtime import decode_history
from services.device_auth import DeviceIdentity
from services.realtime.exceptions import AudioBufferFull, ConversationInUse, MalformedFrame, SessionNotFound
from services.realtime.registry import SessionRegistry
from services.realtime.session import Session

logger = get_logger(__name__)

router = APIRouter(tags=["realtime-stream"])


def _client_error(error: Exception, status_code: int = status.HTTP_400_BAD_REQUEST) -> ORJSONResponse:
    return ORJSONResponse(status_code=status_code, content={"error": error.public_message})


async def _sse_events(
    session: Session,
    registry: SessionRegistry,
    keepalive: float,
) -> AsyncIterator[str]:
    """Render the session's events as SSE frames until the conversation ends."""
    try:
        while True:
            try:
                event = await asyncio.wait_for(session.events.receive(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield SSE_KEEPALIVE_COMMENT
                continue

            if event is None:
                break
            yield event.to_sse()
            if event.is_terminal:
                break
    finally:
        # Client went away or conversation is over; no-op if already ended
        registry.schedule_end(session)
        logger.info("[Realtime SSE] Stream closed", conversation_id=session.conversation_id)


@router.get("/stream")
async def stream_events(
    conversation_id: Optional[str] = Query(default=None, alias="conversationId"),
    history: Optional[str] = Query(default=None),
    device: DeviceIdentity = Depends(require_device),
    registry: SessionRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
):
    """Open the event stream and start the conversation.

    ``history`` is base64 of a JSON list of ``{"role", "content"}`` turns.
    """
    try:
        turns = decode_history(history)
    except MalformedFrame as e:
        logger.warning("[Realtime SSE] Invalid history parameter", error=str(e),
                       device_id=device.device_id)
        return _client_error(e)

    try:
        session = await registry.start_session(conversation_id, device, history=turns, transport="stream")
    except ConversationInUse as e:
        return _client_error(e, status.HTTP_409_CONFLICT)
    logger.info("[Realtime SSE] Stream opened", conversation_id=session.conversation_id,
                device_id=device.device_id)

    return StreamingResponse(
        _sse_events(session, registry, settings.sse_keepalive_seconds),
        media_type=SSE_MEDIA_TYPE,
        headers=SSE_HEADERS,
    )


@router.post("/upload")
async def upload_audio(
    request: Request,
    conversation_id: str = Query(alias="conversationId"),
    device: DeviceIdentity = Depends(require_device),
    registry: SessionRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
):
    """Forward a chunked raw PCM16 body. Completion does not end the conversation."""
    try:
        session = await registry.wait_for_session(
            conversation_id, settings.upload_session_wait_seconds, device=device,
        )
    except SessionNotFound as e:
        logger.warning("[Realtime SSE] Upload without session", conversation_id=conversation_id,
                       device_id=device.device_id)
        return _client_error(e)

    chunks = 0
    size = 0
    dropped = 0
    try:
        async for chunk in request.stream():
            if not chunk:
                continue
            if await session.upstream.send_audio(chunk):
                chunks += 1
                size += len(chunk)
            else:
                dropped += 1
    except AudioBufferFull as e:
        logger.warning("[Realtime SSE] Upload rejected, buffer full",
                       conversation_id=conversation_id, chunks=chunks)
        return _client_error(e, status.HTTP_429_TOO_MANY_REQUESTS)
    except ClientDisconnect:
        logger.info("[Realtime SSE] Upload aborted by client",
                    conversation_id=conversation_id, chunks=chunks)

    logger.debug("[Realtime SSE] Upload complete", conversation_id=conversation_id,
                 chunks=chunks, bytes=size, dropped=dropped)
    return {"success": True, "chunks": chunks, "bytes": size, "dropped": dropped}


@router.post("/commit")
async def commit_utterance(
    conversation_id: str = Query(alias="conversationId"),
    device: DeviceIdentity = Depends(require_device),
    registry: SessionRegistry = Depends(get_registry),
):
    """User stopped speaking: commit buffered audio and request a response."""
    try:
        session = registry.require_session(conversation_id, device)
    except SessionNotFound as e:
        return _client_error(e)

    committed = await session.upstream.finalize_turn()
    return {"success": True, "committed": committed}


@router.post("/end")
async def end_conversation(
    conversation_id: str = Query(alias="conversationId"),
    device: DeviceIdentity = Depends(require_device),
    registry: SessionRegistry = Depends(get_registry),
):
    """End the conversation. Unknown ids are a no-op."""
    session = registry.get_session(conversation_id)
    if session is not None and session.belongs_to(device):
        await registry.end_session(conversation_id, session)
    return {"success": True}
