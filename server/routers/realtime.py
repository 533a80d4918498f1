"""WebSocket transport for the realtime voice relay.

Full-duplex: the device streams microphone audio up and receives relay
events down on the same socket.

Inbound text frames (JSON, tagged by ``type``):
- start_conversation: open or replace the conversation for this socket
- audio_chunk: base64 PCM16 audio
- end_utterance: user stopped speaking, ask for an answer now
- end_conversation: end the conversation

Inbound binary frames are raw PCM16 audio. Every relay event is sent back
as one JSON text frame.
"""

import asyncio
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, WebSocket

from constants import INTERNAL_ERROR_MESSAGE, WS_CLOSE_INTERNAL_ERROR, WS_CLOSE_POLICY_VIOLATION
from core.config import Settings
from core.dependencies import authenticate_websocket, get_registry, get_settings
from core.logging import bind_conversation, clear_conversation, get_logger
from models.realtime import (
    AudioChunk,
    EndConversation,
    EndUtterance,
    StartConversation,
    parse_client_frame,
)
from services.device_auth import DeviceIdentity
from services.realtime.events import RelayEvent
from services.realtime.exceptions import (
    MalformedFrame,
    RelayError,
    SessionNotFound,
    Unauthenticated,
)
from services.realtime.registry import SessionRegistry
from services.realtime.session import Session

logger = get_logger(__name__)

router = APIRouter(tags=["realtime"])


class SocketConnection:
    """One accepted client WebSocket and the conversation it currently drives."""

    def __init__(
        self,
        websocket: WebSocket,
        device: DeviceIdentity,
        registry: SessionRegistry,
        settings: Settings,
    ):
        self.websocket = websocket
        self.device = device
        self.registry = registry
        self.settings = settings
        self.session: Optional[Session] = None

        # Pump tasks and handler replies share the socket
        self._send_lock = asyncio.Lock()
        self._pumps: Set[asyncio.Task] = set()
        self._malformed = 0
        self._open = True

    # =========================================================================
    # Outbound
    # =========================================================================

    async def send(self, frame: Dict[str, Any]) -> bool:
        async with self._send_lock:
            if not self._open:
                return False
            try:
                await self.websocket.send_json(frame)
            except Exception as e:
                self._open = False
                logger.debug("[Realtime WS] Send failed, client gone", error=str(e))
                return False
        return True

    async def send_error(self, message: str) -> None:
        conversation_id = self.session.conversation_id if self.session else None
        await self.send(RelayEvent.error(conversation_id, message).to_frame())

    async def _pump_events(self, session: Session) -> None:
        """Forward one session's events, in order, until its channel closes."""
        async for event in session.events:
            if not await self.send(event.to_frame()):
                return

    # =========================================================================
    # Inbound
    # =========================================================================

    async def run(self) -> None:
        """Receive until the client disconnects or is kicked."""
        while self._open:
            message = await self.websocket.receive()
            if message["type"] == "websocket.disconnect":
                self._open = False
                logger.debug("[Realtime WS] Client disconnected", code=message.get("code"))
                return

            if message.get("bytes") is not None:
                await self._dispatch(message["bytes"])
            elif message.get("text") is not None:
                await self._on_text(message["text"])

    async def _on_text(self, raw: str) -> None:
        try:
            frame = parse_client_frame(raw)
        except MalformedFrame as e:
            self._malformed += 1
            logger.warning("[Realtime WS] Malformed frame", error=str(e),
                           consecutive=self._malformed, device_id=self.device.device_id)
            await self.send_error(e.public_message)
            if self._malformed >= self.settings.malformed_frame_limit:
                await self.kick("Too many malformed messages")
            return

        self._malformed = 0
        await self._dispatch(frame)

    async def _dispatch(self, frame: Any) -> None:
        try:
            if isinstance(frame, bytes):
                await self.on_audio(frame)
            elif isinstance(frame, AudioChunk):
                await self.on_audio(frame.data)
            elif isinstance(frame, StartConversation):
                await self.on_start(frame)
            elif isinstance(frame, EndUtterance):
                await self.on_end_utterance()
            elif isinstance(frame, EndConversation):
                await self.on_end()
        except RelayError as e:
            logger.warning("[Realtime WS] Relay error", error=str(e),
                           error_type=type(e).__name__)
            await self.send_error(e.public_message)
        except Exception as e:
            logger.error("[Realtime WS] Handler failed", error=str(e), exc_info=True)
            await self.send_error(INTERNAL_ERROR_MESSAGE)

    def _live_session(self) -> Session:
        """This socket's session, if the registry still holds it."""
        session = self.session
        if session is None or self.registry.get_session(session.conversation_id) is not session:
            raise SessionNotFound(session.conversation_id if session else None)
        return session

    # =========================================================================
    # Commands
    # =========================================================================

    async def on_start(self, frame: StartConversation) -> None:
        if self.session is not None:
            await self._end_current()

        session = await self.registry.start_session(
            frame.conversation_id,
            self.device,
            history=frame.conversation_history,
            transport="socket",
        )
        self.session = session
        bind_conversation(session.conversation_id, self.device.device_id)

        pump = asyncio.create_task(self._pump_events(session),
                                   name=f"ws-pump-{session.conversation_id}")
        self._pumps.add(pump)
        pump.add_done_callback(self._pumps.discard)

    async def on_audio(self, pcm: bytes) -> None:
        session = self._live_session()
        await session.upstream.send_audio(pcm)

    async def on_end_utterance(self) -> None:
        session = self._live_session()
        await session.upstream.finalize_turn()

    async def on_end(self) -> None:
        # Ending with nothing active is a no-op
        if self.session is not None:
            await self._end_current()

    async def _end_current(self) -> None:
        session, self.session = self.session, None
        await self.registry.end_session(session.conversation_id, session)

    # =========================================================================
    # Teardown
    # =========================================================================

    async def kick(self, reason: str, code: int = WS_CLOSE_POLICY_VIOLATION) -> None:
        logger.warning("[Realtime WS] Closing connection", reason=reason, code=code,
                       device_id=self.device.device_id)
        async with self._send_lock:
            if not self._open:
                return
            self._open = False
            try:
                await self.websocket.close(code=code, reason=reason)
            except Exception as e:
                logger.debug("[Realtime WS] Close failed, client gone", error=str(e))

    async def close(self) -> None:
        """Release the session and stop forwarding events."""
        self._open = False
        if self.session is not None:
            await self._end_current()

        for pump in list(self._pumps):
            pump.cancel()
        if self._pumps:
            await asyncio.gather(*self._pumps, return_exceptions=True)


@router.websocket("/realtime")
async def realtime_socket(websocket: WebSocket):
    """Realtime voice relay over a single WebSocket.

    Authenticates from the ``Authorization`` header or ``token`` query
    parameter before the handshake is accepted.
    """
    try:
        device = authenticate_websocket(websocket)
    except Unauthenticated as e:
        logger.info("[Realtime WS] Rejected connection", reason=e.reason)
        await websocket.close(code=WS_CLOSE_POLICY_VIOLATION, reason=e.public_message)
        return

    await websocket.accept()
    logger.info("[Realtime WS] Device connected", device_id=device.device_id)

    connection = SocketConnection(websocket, device, get_registry(), get_settings())
    try:
        await connection.run()
    except Exception as e:
        logger.error("[Realtime WS] Connection failed", error=str(e), exc_info=True)
        await connection.kick(INTERNAL_ERROR_MESSAGE, code=WS_CLOSE_INTERNAL_ERROR)
    finally:
        await connection.close()
        clear_conversation()
        logger.info("[Realtime WS] Device disconnected", device_id=device.device_id)
