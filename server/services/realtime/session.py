"""Relay session: one client conversation paired with one upstream connection."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Literal

from services.device_auth import DeviceIdentity
from .events import EventChannel
from .upstream import UpstreamClient, UpstreamState

Transport = Literal["socket", "stream"]


@dataclass
class Session:
    """Live relay session, owned by the SessionRegistry."""
    conversation_id: str
    device: DeviceIdentity
    transport: Transport
    upstream: UpstreamClient
    events: EventChannel
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def state(self) -> UpstreamState:
        return self.upstream.state

    def belongs_to(self, device: DeviceIdentity) -> bool:
        return self.device.device_id == device.device_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "device_id": self.device.device_id,
            "transport": self.transport,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
        }
