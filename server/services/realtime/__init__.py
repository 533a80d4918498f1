"""
Realtime Voice Relay Module

Relays a device's microphone audio to the OpenAI Realtime API and streams
transcripts and synthesized speech back over one of two client transports.

Components:
- exceptions.py: Relay error hierarchy with client-safe messages
- events.py: RelayEvent and the per-session EventChannel
- protocol.py: Provider command builders and event translation
- upstream.py: UpstreamClient, one provider connection per session
- session.py: Session record
- registry.py: SessionRegistry, at most one live session per conversation id
"""

from .events import EventChannel, RelayEvent, RelayEventType
from .exceptions import (
    AudioBufferFull,
    ConversationInUse,
    MalformedFrame,
    RelayError,
    SessionNotFound,
    Unauthenticated,
    UpstreamProtocolError,
    UpstreamUnavailable,
)

__all__ = [
    "EventChannel",
    "RelayEvent",
    "RelayEventType",
    "RelayError",
    "Unauthenticated",
    "UpstreamUnavailable",
    "UpstreamProtocolError",
    "SessionNotFound",
    "MalformedFrame",
    "AudioBufferFull",
    "ConversationInUse",
]
