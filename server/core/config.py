"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=1024, le=65535)
    debug: bool = Field(default=False)
    workers: int = Field(default=1, ge=1, le=8)

    # Device credentials (issued by the pairing service)
    jwt_secret_key: str = Field(min_length=32)
    jwt_algorithm: str = Field(default="HS256")
    jwt_expire_minutes: int = Field(default=43200, ge=5)  # 30 days
    device_token_type: str = Field(default="device")

    # Security
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    # OpenAI Realtime provider
    openai_api_key: Optional[str] = Field(default=None)
    openai_realtime_url: str = Field(default="wss://api.openai.com/v1/realtime")
    openai_realtime_model: str = Field(default="gpt-4o-realtime-preview-2024-12-17")
    realtime_instructions: str = Field(
        default=(
            "You are ChatOnWrist, a concise, context-aware AI assistant. "
            "Answer in the language the user uses. "
            "Keep responses conversational and natural."
        )
    )
    realtime_voice: Literal["alloy", "echo", "fable", "onyx", "nova", "shimmer"] = Field(default="alloy")
    realtime_modalities: List[str] = Field(default_factory=lambda: ["text", "audio"])
    realtime_transcription_model: str = Field(default="whisper-1")
    realtime_temperature: float = Field(default=0.8, ge=0.6, le=1.2)
    realtime_max_response_tokens: int = Field(default=4096, ge=1, le=4096)
    vad_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    vad_prefix_padding_ms: int = Field(default=300, ge=0)
    vad_silence_duration_ms: int = Field(default=500, ge=100)

    # Session tuning
    history_max_turns: int = Field(default=10, ge=0, le=100)
    pre_ready_audio_max_chunks: int = Field(default=256, ge=1)
    upstream_connect_timeout: float = Field(default=10.0, gt=0)
    upstream_configure_timeout: float = Field(default=10.0, gt=0)
    upstream_heartbeat: float = Field(default=30.0, gt=0)
    end_grace_seconds: float = Field(default=2.0, ge=0, le=30.0)
    malformed_frame_limit: int = Field(default=5, ge=1)

    # HTTP streaming transport
    sse_keepalive_seconds: float = Field(default=15.0, gt=0)
    upload_session_wait_seconds: float = Field(default=2.0, ge=0, le=30.0)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("openai_realtime_url")
    @classmethod
    def validate_realtime_url(cls, v):
        """Provider endpoint must be a WebSocket URL."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("openai_realtime_url must start with ws:// or wss://")
        return v.rstrip("/")

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        v = v.lower()
        if v not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug

    @property
    def provider_url(self) -> str:
        """Full provider WebSocket URL including the model query."""
        return f"{self.openai_realtime_url}?model={self.openai_realtime_model}"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
