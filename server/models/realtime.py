"""Client-facing realtime wire models.

Inbound client commands form a closed tagged union on ``type``. Frames are
parsed once at the transport boundary; unknown tags are rejected.
"""

import base64
import binascii
from typing import Annotated, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from services.realtime.exceptions import MalformedFrame


def decode_base64(value: str) -> bytes:
    """Decode standard or URL-safe base64, tolerating missing padding.

    Raises:
        ValueError: If the value is not valid base64
    """
    # Query strings turn '+' into ' ' when the client forgets to escape it
    normalized = value.strip().replace(" ", "+").replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    try:
        return base64.b64decode(normalized, validate=True)
    except binascii.Error as e:
        raise ValueError(f"invalid base64: {e}") from e


class HistoryTurn(BaseModel):
    """One prior conversation turn replayed to the provider as seed context."""
    model_config = ConfigDict(extra="ignore")

    role: Literal["user", "assistant"]
    content: str


class StartConversation(BaseModel):
    """Open (or replace) the conversation for this connection."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Literal["start_conversation"]
    conversation_id: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=128,
        validation_alias=AliasChoices("conversationId", "conversation_id"),
    )
    conversation_history: List[HistoryTurn] = Field(
        default_factory=list,
        validation_alias=AliasChoices("conversationHistory", "conversation_history"),
    )


class AudioChunk(BaseModel):
    """Base64 PCM16 audio wrapped in a JSON envelope."""
    model_config = ConfigDict(extra="ignore")

    type: Literal["audio_chunk"]
    data: bytes = Field(validation_alias=AliasChoices("data", "audio"))

    @field_validator("data", mode="before")
    @classmethod
    def decode_audio(cls, v):
        if not isinstance(v, str):
            raise ValueError("audio data must be a base64 string")
        decoded = decode_base64(v)
        if not decoded:
            raise ValueError("audio data is empty")
        return decoded


class EndUtterance(BaseModel):
    """User finished speaking; ask the provider to answer now."""
    type: Literal["end_utterance"]


class EndConversation(BaseModel):
    """User finished the conversation."""
    type: Literal["end_conversation"]


ClientFrame = Annotated[
    Union[StartConversation, AudioChunk, EndUtterance, EndConversation],
    Field(discriminator="type"),
]

_client_frame_adapter: TypeAdapter[ClientFrame] = TypeAdapter(ClientFrame)
_history_adapter: TypeAdapter[List[HistoryTurn]] = TypeAdapter(List[HistoryTurn])


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "frame"
    return f"{location}: {first.get('msg', 'invalid')}"


def parse_client_frame(raw: Union[str, bytes]) -> ClientFrame:
    """Parse one JSON client frame.

    Raises:
        MalformedFrame: Invalid JSON, unknown ``type`` tag or invalid fields
    """
    try:
        return _client_frame_adapter.validate_json(raw)
    except ValidationError as e:
        raise MalformedFrame(_describe(e)) from e


def decode_history(encoded: Optional[str]) -> List[HistoryTurn]:
    """Decode the ``history`` query parameter (base64 of a JSON turn list).

    Raises:
        MalformedFrame: When the parameter is not base64 JSON of turns
    """
    if not encoded:
        return []
    try:
        raw = decode_base64(encoded)
    except ValueError as e:
        raise MalformedFrame(f"history: {e}") from e
    try:
        return _history_adapter.validate_json(raw)
    except ValidationError as e:
        raise MalformedFrame(f"history: {_describe(e)}") from e
