"""
OpenAI Realtime wire protocol

Builds provider commands and translates provider events into relay events.

Outbound (relay -> provider):
    session.update              session configuration, first message sent
    conversation.item.create    one replayed history turn
    input_audio_buffer.append   base64 PCM16 audio
    input_audio_buffer.commit   finalize the buffered user audio
    response.create             ask for an answer to the committed audio

Inbound (provider -> relay): see PROVIDER_EVENT_MAP and translate_provider_event.
"""
import base64
import binascii
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.config import Settings
from core.logging import get_logger
from models.realtime import HistoryTurn
from .events import RelayEvent, RelayEventType
from .exceptions import UpstreamProtocolError

logger = get_logger(__name__)

# Audio format is fixed end to end: 16-bit signed PCM, mono, 24 kHz
AUDIO_FORMAT = "pcm16"
AUDIO_SAMPLE_RATE = 24000

SESSION_CREATED = "session.created"
SESSION_UPDATED = "session.updated"
SPEECH_STARTED = "input_audio_buffer.speech_started"
SPEECH_STOPPED = "input_audio_buffer.speech_stopped"
TRANSCRIPT_DELTA = "response.audio_transcript.delta"
TRANSCRIPT_DONE = "response.audio_transcript.done"
AUDIO_DELTA = "response.audio.delta"
RESPONSE_DONE = "response.done"
PROVIDER_ERROR = "error"

PROVIDER_EVENT_MAP: Dict[str, RelayEventType] = {
    SPEECH_STARTED: RelayEventType.SPEECH_STARTED,
    SPEECH_STOPPED: RelayEventType.SPEECH_STOPPED,
    TRANSCRIPT_DELTA: RelayEventType.TRANSCRIPT_DELTA,
    TRANSCRIPT_DONE: RelayEventType.TRANSCRIPT_COMPLETE,
    AUDIO_DELTA: RelayEventType.AUDIO_RESPONSE,
    RESPONSE_DONE: RelayEventType.RESPONSE_COMPLETE,
    PROVIDER_ERROR: RelayEventType.ERROR,
}


@dataclass
class TranscriptState:
    """Transcript fragments of the AI turn currently in flight."""
    parts: List[str] = field(default_factory=list)

    def append(self, delta: str) -> None:
        self.parts.append(delta)

    @property
    def text(self) -> str:
        return "".join(self.parts)

    def reset(self) -> None:
        self.parts.clear()


# =============================================================================
# Outbound commands
# =============================================================================

def session_update(settings: Settings) -> Dict[str, Any]:
    """Session configuration sent as soon as the provider socket opens."""
    return {
        "type": "session.update",
        "session": {
            "modalities": list(settings.realtime_modalities),
            "instructions": settings.realtime_instructions,
            "voice": settings.realtime_voice,
            "input_audio_format": AUDIO_FORMAT,
            "output_audio_format": AUDIO_FORMAT,
            "input_audio_transcription": {
                "model": settings.realtime_transcription_model,
            },
            "turn_detection": {
                "type": "server_vad",
                "threshold": settings.vad_threshold,
                "prefix_padding_ms": settings.vad_prefix_padding_ms,
                "silence_duration_ms": settings.vad_silence_duration_ms,
            },
            "temperature": settings.realtime_temperature,
            "max_response_output_tokens": settings.realtime_max_response_tokens,
        },
    }


def history_item(turn: HistoryTurn) -> Dict[str, Any]:
    """Inject one prior turn; assistant turns use the ``text`` content type."""
    content_type = "input_text" if turn.role == "user" else "text"
    return {
        "type": "conversation.item.create",
        "item": {
            "type": "message",
            "role": turn.role,
            "content": [{"type": content_type, "text": turn.content}],
        },
    }


def history_items(turns: List[HistoryTurn], max_turns: int) -> List[Dict[str, Any]]:
    """Most recent ``max_turns`` turns, oldest first."""
    if max_turns <= 0:
        return []
    return [history_item(turn) for turn in turns[-max_turns:]]


def audio_append(pcm: bytes) -> Dict[str, Any]:
    return {
        "type": "input_audio_buffer.append",
        "audio": base64.b64encode(pcm).decode("ascii"),
    }


def buffer_commit() -> Dict[str, Any]:
    return {"type": "input_audio_buffer.commit"}


def response_create(settings: Settings) -> Dict[str, Any]:
    return {
        "type": "response.create",
        "response": {"modalities": list(settings.realtime_modalities)},
    }


def finalize_turn(settings: Settings) -> List[Dict[str, Any]]:
    """Commit buffered audio and request the answer, in that order."""
    return [buffer_commit(), response_create(settings)]


# =============================================================================
# Inbound translation
# =============================================================================

def provider_error(message: Dict[str, Any]) -> UpstreamProtocolError:
    """Build the relay error for a provider ``error`` frame."""
    error = message.get("error") or {}
    if not isinstance(error, dict):
        error = {"message": str(error)}
    return UpstreamProtocolError(error.get("message") or "OpenAI API error", code=error.get("code"))


def translate_provider_event(
    conversation_id: str,
    message: Dict[str, Any],
    transcript: TranscriptState,
) -> Optional[RelayEvent]:
    """Translate one provider event, updating ``transcript`` as a side effect.

    Returns None for provider events that are not forwarded to the client
    (session lifecycle, unknown types, empty deltas).
    """
    provider_type = message.get("type")
    relay_type = PROVIDER_EVENT_MAP.get(provider_type)
    if relay_type is None:
        if provider_type not in (SESSION_CREATED, SESSION_UPDATED):
            logger.debug("[Protocol] Ignoring provider event", provider_type=provider_type)
        return None

    if relay_type is RelayEventType.SPEECH_STARTED:
        # New user utterance; any unfinished AI transcript is stale
        transcript.reset()
        return RelayEvent(relay_type, conversation_id)

    if relay_type is RelayEventType.TRANSCRIPT_DELTA:
        delta = message.get("delta")
        if not delta:
            return None
        transcript.append(delta)
        return RelayEvent(relay_type, conversation_id, text=delta)

    if relay_type is RelayEventType.TRANSCRIPT_COMPLETE:
        text = message.get("transcript") or transcript.text
        return RelayEvent(relay_type, conversation_id, text=text)

    if relay_type is RelayEventType.AUDIO_RESPONSE:
        delta = message.get("delta")
        if not delta:
            return None
        try:
            audio = base64.b64decode(delta, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("[Protocol] Provider sent undecodable audio delta",
                           conversation_id=conversation_id)
            return None
        return RelayEvent(relay_type, conversation_id, audio=audio)

    if relay_type is RelayEventType.RESPONSE_COMPLETE:
        transcript.reset()
        return RelayEvent(relay_type, conversation_id)

    if relay_type is RelayEventType.ERROR:
        error = provider_error(message)
        logger.warning("[Protocol] Provider error", conversation_id=conversation_id,
                       code=error.code, error=str(error))
        return RelayEvent.error(conversation_id, error.public_message)

    return RelayEvent(relay_type, conversation_id)
