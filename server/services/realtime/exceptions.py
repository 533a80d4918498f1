"""Realtime relay exception hierarchy.

Every error carries a ``public_message`` that is safe to show a client.
The full message (``str(exc)``) may contain detail meant for logs only.
"""

from typing import Optional


class RelayError(Exception):
    """Base exception for all relay errors."""

    public_message = "Relay error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)


class Unauthenticated(RelayError):
    """Bad, expired or wrong-type device credential.

    Deliberately uniform: callers never learn which check failed.
    """

    public_message = "Invalid or expired credential"

    def __init__(self, message: Optional[str] = None):
        super().__init__(self.public_message)
        self.reason = message


class UpstreamUnavailable(RelayError):
    """Provider connection could not be opened or configured."""

    public_message = "Realtime provider unavailable"


class UpstreamProtocolError(RelayError):
    """Provider sent an error frame mid-session."""

    public_message = "Realtime provider error"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message)
        self.code = code
        # The provider's own error text is client-facing by design
        if message:
            self.public_message = message


class SessionNotFound(RelayError):
    """Operation referenced a conversation id with no live session."""

    public_message = "No active conversation session"

    def __init__(self, conversation_id: Optional[str] = None):
        self.conversation_id = conversation_id
        super().__init__(f"No active session for conversation {conversation_id!r}")


class MalformedFrame(RelayError):
    """Client input could not be parsed."""

    public_message = "Malformed message"


class AudioBufferFull(RelayError):
    """Too much audio buffered while the provider is not ready yet."""

    public_message = "Audio buffer full, conversation not ready"


class ConversationInUse(RelayError):
    """Start for a conversation id whose live session belongs to another device."""

    public_message = "Conversation is active on another device"

    def __init__(self, conversation_id: Optional[str] = None):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id!r} is owned by another device")
