"""Relay events and the per-session outbound event channel.

Both client transports consume the same ``RelayEvent`` stream; each event
knows how to render itself as a WebSocket frame or as an SSE frame.
"""
import asyncio
import base64
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional

from core.logging import get_logger

logger = get_logger(__name__)


class RelayEventType(str, Enum):
    """Outbound event tags shared by both transports."""
    CONVERSATION_STARTED = "conversation_started"
    SPEECH_STARTED = "speech_started"
    SPEECH_STOPPED = "speech_stopped"
    TRANSCRIPT_DELTA = "transcript_delta"
    TRANSCRIPT_COMPLETE = "transcript_complete"
    AUDIO_RESPONSE = "audio_response"
    RESPONSE_COMPLETE = "response_complete"
    ERROR = "error"
    CONVERSATION_ENDED = "conversation_ended"


@dataclass(frozen=True)
class RelayEvent:
    """One event delivered to the client."""
    type: RelayEventType
    conversation_id: Optional[str]
    text: Optional[str] = None
    audio: Optional[bytes] = None
    message: Optional[str] = None

    @classmethod
    def started(cls, conversation_id: str) -> "RelayEvent":
        return cls(RelayEventType.CONVERSATION_STARTED, conversation_id)

    @classmethod
    def ended(cls, conversation_id: str) -> "RelayEvent":
        return cls(RelayEventType.CONVERSATION_ENDED, conversation_id)

    @classmethod
    def error(cls, conversation_id: Optional[str], message: str) -> "RelayEvent":
        return cls(RelayEventType.ERROR, conversation_id, message=message)

    @property
    def is_terminal(self) -> bool:
        return self.type is RelayEventType.CONVERSATION_ENDED

    def to_frame(self) -> Dict[str, Any]:
        """Render as a SocketTransport JSON frame."""
        frame: Dict[str, Any] = {"type": self.type.value, "conversationId": self.conversation_id}
        if self.text is not None:
            frame["text"] = self.text
        if self.audio is not None:
            frame["data"] = base64.b64encode(self.audio).decode("ascii")
        if self.message is not None:
            frame["message"] = self.message
        return frame

    def sse_data(self) -> str:
        """Payload carried in the SSE ``data:`` field."""
        if self.type is RelayEventType.CONVERSATION_STARTED:
            return json.dumps({"conversationId": self.conversation_id})
        if self.audio is not None:
            return base64.b64encode(self.audio).decode("ascii")
        if self.text is not None:
            return self.text
        if self.message is not None:
            return self.message
        return "{}"

    def to_sse(self) -> str:
        """Render as an SSE frame; multi-line payloads span several data lines."""
        lines = self.sse_data().split("\n")
        data = "".join(f"data: {line}\n" for line in lines)
        return f"event: {self.type.value}\n{data}\n"


class EventChannel:
    """Ordered, single-consumer queue of relay events for one session.

    Closing the channel lets the consumer drain what is already queued and
    then stop. Events put after close are discarded.
    """

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        self._queue: asyncio.Queue[Optional[RelayEvent]] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, event: RelayEvent) -> bool:
        """Queue an event. Returns False if the channel is already closed."""
        if self._closed:
            logger.debug("[Events] Dropped event on closed channel",
                         conversation_id=self.conversation_id, event=event.type.value)
            return False
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        """Mark end of stream. Idempotent."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def receive(self) -> Optional[RelayEvent]:
        """Next event, or None once the channel is closed and drained.

        Safe to cancel (e.g. under ``asyncio.wait_for``): no event is lost.
        """
        event = await self._queue.get()
        if event is None:
            # Leave the sentinel for any later receive() call
            self._queue.put_nowait(None)
        return event

    async def __aiter__(self) -> AsyncIterator[RelayEvent]:
        while True:
            event = await self.receive()
            if event is None:
                return
            yield event
