"""
OpenAI Realtime upstream client

Owns the single provider connection of one relay session and translates in
both directions.

Lifecycle:
    connecting  -> socket opens, session.update sent              -> configuring
    configuring -> session.updated: replay history, flush audio   -> ready
    ready       -> audio appends / finalize turn, stays ready between turns
    end()       -> commit + response.create, close after grace    -> closing
    closing     -> provider socket closed                         -> closed (terminal)

An end() that arrives before ready with audio already queued is deferred
until the provider is configured, so captured speech is still answered.
"""
import asyncio
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Protocol, Union

import aiohttp
import orjson

from core.config import Settings
from core.logging import get_logger
from models.realtime import HistoryTurn
from . import protocol
from .events import EventChannel, RelayEvent, RelayEventType
from .exceptions import AudioBufferFull, UpstreamUnavailable

logger = get_logger(__name__)

ProviderMessage = Union[Dict[str, Any], bytes]


class ProviderConnection(Protocol):
    """Minimal duplex message connection to the provider."""

    async def send(self, message: Dict[str, Any]) -> None: ...

    async def receive(self) -> Optional[ProviderMessage]:
        """Next JSON event or binary frame; None once the connection is closed."""
        ...

    async def close(self) -> None: ...


ProviderConnector = Callable[[Settings], Awaitable[ProviderConnection]]


class AiohttpProviderConnection:
    """Provider connection over an aiohttp client WebSocket."""

    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse):
        self._session = session
        self._ws = ws
        self._send_lock = asyncio.Lock()

    async def send(self, message: Dict[str, Any]) -> None:
        async with self._send_lock:
            await self._ws.send_str(orjson.dumps(message).decode())

    async def receive(self) -> Optional[ProviderMessage]:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    return orjson.loads(msg.data)
                except orjson.JSONDecodeError:
                    logger.warning("[Upstream] Skipping non-JSON provider frame", size=len(msg.data))
                    continue
            if msg.type == aiohttp.WSMsgType.BINARY:
                return msg.data
            if msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("[Upstream] Provider socket error", error=str(self._ws.exception()))
            return None

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()
        if not self._session.closed:
            await self._session.close()


async def connect_provider(settings: Settings) -> AiohttpProviderConnection:
    """Open the provider WebSocket.

    Raises:
        UpstreamUnavailable: Missing API key, network failure or rejected handshake
    """
    if not settings.openai_api_key:
        raise UpstreamUnavailable("OPENAI_API_KEY not configured")

    timeout = aiohttp.ClientTimeout(total=None, connect=settings.upstream_connect_timeout)
    session = aiohttp.ClientSession(timeout=timeout)
    try:
        ws = await session.ws_connect(
            settings.provider_url,
            headers={
                "Authorization": f"Bearer {settings.openai_api_key}",
                "OpenAI-Beta": "realtime=v1",
            },
            heartbeat=settings.upstream_heartbeat,
            autoping=True,
        )
    except aiohttp.WSServerHandshakeError as e:
        await session.close()
        raise UpstreamUnavailable(f"Provider rejected handshake (status {e.status})") from e
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
        await session.close()
        raise UpstreamUnavailable(f"Cannot connect to provider: {type(e).__name__}") from e
    except asyncio.CancelledError:
        await session.close()
        raise

    logger.info("[Upstream] Connected to provider", model=settings.openai_realtime_model)
    return AiohttpProviderConnection(session, ws)


class UpstreamState(str, Enum):
    CONNECTING = "connecting"
    CONFIGURING = "configuring"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"


class UpstreamClient:
    """Provider side of one relay session.

    All provider events are pushed, in provider order, onto ``events``.
    The channel is closed when the client reaches ``closed``.
    """

    def __init__(
        self,
        conversation_id: str,
        settings: Settings,
        events: EventChannel,
        connector: ProviderConnector = connect_provider,
        history: Optional[List[HistoryTurn]] = None,
    ):
        self.conversation_id = conversation_id
        self._settings = settings
        self._events = events
        self._connector = connector
        self._history = list(history or [])

        self._state = UpstreamState.CONNECTING
        self._conn: Optional[ProviderConnection] = None
        self._pending: Deque[bytes] = deque()
        self._end_requested = False
        self._transcript = protocol.TranscriptState()

        self._task: Optional[asyncio.Task] = None
        self._grace_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def state(self) -> UpstreamState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is UpstreamState.READY

    @property
    def pending_audio(self) -> int:
        return len(self._pending)

    def open(self) -> None:
        """Start connecting in the background. Returns immediately."""
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"upstream-{self.conversation_id}")

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def end(self) -> None:
        """Graceful end: let trailing audio be answered, then close."""
        if self._state in (UpstreamState.CLOSING, UpstreamState.CLOSED):
            return

        if self._state is UpstreamState.READY:
            await self._drain_and_close()
            return

        if self._pending:
            # Audio is already queued: answer it once the provider is configured
            self._end_requested = True
            logger.info("[Upstream] End requested before ready, deferring",
                        conversation_id=self.conversation_id, queued=len(self._pending))
            return

        # Not configured yet and nothing to answer
        self._state = UpstreamState.CLOSING
        if self._conn is not None:
            await self._close_connection()
        else:
            await self._cancel_run()

    async def abort(self) -> None:
        """Close immediately without draining; returns once closed."""
        if self._state is not UpstreamState.CLOSED:
            self._state = UpstreamState.CLOSING
            if self._grace_task is not None:
                self._grace_task.cancel()
            # The reader sees None even if the cancellation below is lost
            await self._close_connection()
            await self._cancel_run()
        await self._closed.wait()

    async def _cancel_run(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.wait([self._task])
        # A task cancelled before its first step never reaches its finally block
        await self._finish(announce=True)

    async def _drain_and_close(self) -> None:
        self._state = UpstreamState.CLOSING
        if not await self._send_commands(protocol.finalize_turn(self._settings)):
            await self._close_connection()
            return
        logger.info("[Upstream] Ending conversation, draining final response",
                    conversation_id=self.conversation_id,
                    grace_seconds=self._settings.end_grace_seconds)
        self._grace_task = asyncio.create_task(self._close_after_grace())

    async def _close_after_grace(self) -> None:
        await asyncio.sleep(self._settings.end_grace_seconds)
        logger.debug("[Upstream] Grace period over", conversation_id=self.conversation_id)
        await self._close_connection()

    async def _close_connection(self) -> None:
        if self._conn is None:
            return
        try:
            await self._conn.close()
        except Exception as e:
            logger.warning("[Upstream] Error closing provider connection",
                           conversation_id=self.conversation_id, error=str(e))

    async def _run(self) -> None:
        announce = True
        try:
            try:
                self._conn = await asyncio.wait_for(
                    self._connector(self._settings),
                    timeout=self._settings.upstream_connect_timeout,
                )
            except asyncio.TimeoutError as e:
                raise UpstreamUnavailable("Provider connect timed out") from e

            if self._state is UpstreamState.CLOSING:
                return

            self._state = UpstreamState.CONFIGURING
            await self._conn.send(protocol.session_update(self._settings))
            logger.info("[Upstream] Sent session configuration", conversation_id=self.conversation_id)
            await self._read_loop()

        except UpstreamUnavailable as e:
            logger.error("[Upstream] Provider unavailable",
                         conversation_id=self.conversation_id, error=str(e))
            self._events.put(RelayEvent.error(self.conversation_id, e.public_message))
            announce = False
        except asyncio.CancelledError:
            logger.debug("[Upstream] Run cancelled", conversation_id=self.conversation_id)
        except Exception as e:
            logger.error("[Upstream] Provider connection failed",
                         conversation_id=self.conversation_id, error=str(e), exc_info=True)
        finally:
            await self._finish(announce)

    async def _read_loop(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.upstream_configure_timeout

        while True:
            if self._state is UpstreamState.CONFIGURING:
                message = await self._receive_before(max(deadline - loop.time(), 0))
            else:
                message = await self._conn.receive()

            if message is None:
                if self._state is UpstreamState.CONFIGURING:
                    raise UpstreamUnavailable("Provider closed before confirming session")
                if self._state is not UpstreamState.CLOSING:
                    logger.warning("[Upstream] Provider closed connection",
                                   conversation_id=self.conversation_id,
                                   discarded_transcript=len(self._transcript.parts))
                return

            await self._handle(message)

    async def _receive_before(self, timeout: float) -> Optional[ProviderMessage]:
        # Not wait_for: before Python 3.12 it can swallow a cancellation
        receive = asyncio.ensure_future(self._conn.receive())
        try:
            done, _ = await asyncio.wait([receive], timeout=timeout)
        except asyncio.CancelledError:
            receive.cancel()
            raise
        if not done:
            receive.cancel()
            raise UpstreamUnavailable("Provider did not confirm session configuration")
        return receive.result()

    async def _finish(self, announce: bool) -> None:
        if self._state is UpstreamState.CLOSED:
            return
        self._state = UpstreamState.CLOSED

        if self._grace_task is not None and not self._grace_task.done():
            self._grace_task.cancel()
        if self._pending:
            logger.warning("[Upstream] Discarding audio queued before ready",
                           conversation_id=self.conversation_id, chunks=len(self._pending))
            self._pending.clear()
        self._transcript.reset()
        await self._close_connection()

        if announce:
            self._events.put(RelayEvent.ended(self.conversation_id))
        self._events.close()
        self._closed.set()
        logger.info("[Upstream] Closed", conversation_id=self.conversation_id)

    # =========================================================================
    # Provider -> client
    # =========================================================================

    async def _handle(self, message: ProviderMessage) -> None:
        if isinstance(message, (bytes, bytearray)):
            self._events.put(RelayEvent(RelayEventType.AUDIO_RESPONSE, self.conversation_id,
                                        audio=bytes(message)))
            return

        provider_type = message.get("type")
        if provider_type == protocol.SESSION_UPDATED and self._state is UpstreamState.CONFIGURING:
            await self._become_ready()
            return
        if provider_type == protocol.SESSION_CREATED:
            logger.debug("[Upstream] Provider session created", conversation_id=self.conversation_id)
            return

        event = protocol.translate_provider_event(self.conversation_id, message, self._transcript)
        if event is None:
            return
        self._events.put(event)

        if event.type is RelayEventType.RESPONSE_COMPLETE and self._state is UpstreamState.CLOSING:
            # Final answer delivered; no need to wait out the grace period
            await self._close_connection()

    async def _become_ready(self) -> None:
        items = protocol.history_items(self._history, self._settings.history_max_turns)
        for item in items:
            await self._conn.send(item)
        if items:
            logger.info("[Upstream] Replayed conversation history",
                        conversation_id=self.conversation_id, turns=len(items))

        self._events.put(RelayEvent.started(self.conversation_id))

        # Appends that arrive while flushing are queued behind the flushed ones
        flushed = 0
        while self._pending:
            await self._conn.send(protocol.audio_append(self._pending.popleft()))
            flushed += 1
        logger.info("[Upstream] Session ready", conversation_id=self.conversation_id,
                    flushed_audio_chunks=flushed)

        if self._state is not UpstreamState.CONFIGURING:
            return
        if self._end_requested:
            await self._drain_and_close()
        else:
            self._state = UpstreamState.READY

    # =========================================================================
    # Client -> provider
    # =========================================================================

    async def send_audio(self, pcm: bytes) -> bool:
        """Forward one PCM16 chunk.

        Returns False when the session is closing (chunk dropped).

        Raises:
            AudioBufferFull: Provider not ready and the pre-ready queue is full
        """
        if not pcm:
            return True
        if self._state is UpstreamState.READY:
            return await self._send_commands([protocol.audio_append(pcm)])
        if self._state in (UpstreamState.CONNECTING, UpstreamState.CONFIGURING) and not self._end_requested:
            if len(self._pending) >= self._settings.pre_ready_audio_max_chunks:
                logger.warning("[Upstream] Pre-ready audio queue full, rejecting chunk",
                               conversation_id=self.conversation_id, queued=len(self._pending))
                raise AudioBufferFull()
            self._pending.append(pcm)
            return True

        logger.debug("[Upstream] Dropping audio after end", conversation_id=self.conversation_id,
                     state=self._state.value, size=len(pcm))
        return False

    async def finalize_turn(self) -> bool:
        """End of utterance: commit buffered audio and request a response."""
        if self._state is not UpstreamState.READY:
            logger.debug("[Upstream] Ignoring finalize outside ready state",
                         conversation_id=self.conversation_id, state=self._state.value)
            return False
        return await self._send_commands(protocol.finalize_turn(self._settings))

    async def _send_commands(self, commands: List[Dict[str, Any]]) -> bool:
        # A dropped provider socket surfaces as conversation_ended from the reader
        try:
            for command in commands:
                await self._conn.send(command)
        except (ConnectionError, aiohttp.ClientError) as e:
            logger.warning("[Upstream] Send to provider failed",
                           conversation_id=self.conversation_id, error=str(e))
            return False
        return True
