"""Shared fixtures: a scripted fake provider and a wired test application.

No test opens a network connection; the provider connector on the container
is overridden with ``FakeConnector``.
"""

import asyncio
import base64
import os
from typing import Any, Dict, List, Optional

# Settings are read at import time by main.py; provide the required values first.
TEST_SECRET = "test-device-secret-key-0123456789abcdef"
os.environ.setdefault("JWT_SECRET_KEY", TEST_SECRET)
os.environ.setdefault("OPENAI_API_KEY", "sk-test")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from dependency_injector import providers
from fastapi.testclient import TestClient

from core.config import Settings
from core.container import container
from services.device_auth import DeviceAuthService, DeviceIdentity
from services.realtime.exceptions import UpstreamUnavailable
from services.realtime.registry import SessionRegistry

HANG_UP = None

ASSISTANT_AUDIO = b"\x01\x02\x03\x04"

DEFAULT_REPLY: List[Optional[Dict[str, Any]]] = [
    {"type": "response.audio_transcript.delta", "delta": "Hello"},
    {"type": "response.audio_transcript.delta", "delta": " there"},
    {"type": "response.audio.delta", "delta": base64.b64encode(ASSISTANT_AUDIO).decode()},
    {"type": "response.audio_transcript.done", "transcript": "Hello there"},
    {"type": "response.done"},
]


class FakeProviderConnection:
    """In-memory provider socket.

    Confirms ``session.update`` with ``session.updated`` (unless ``confirm`` is
    off), plays ``on_ready`` right after confirming and ``reply`` for every
    ``response.create``. ``None`` in a script means the provider hangs up.
    """

    def __init__(self, confirm=True, on_ready=None, reply=None):
        self.confirm = confirm
        self.on_ready = list(on_ready or [])
        self.reply = list(DEFAULT_REPLY if reply is None else reply)
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    def push(self, message: Optional[Dict[str, Any]]) -> None:
        self._inbox.put_nowait(message)

    def push_all(self, messages) -> None:
        for message in messages:
            self.push(message)

    def drop(self) -> None:
        self.push(HANG_UP)

    async def send(self, message: Dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionResetError("provider connection closed")
        self.sent.append(message)
        if message["type"] == "session.update" and self.confirm:
            self.push({"type": "session.updated", "session": message["session"]})
            self.push_all(self.on_ready)
        elif message["type"] == "response.create":
            self.push_all(self.reply)

    async def receive(self):
        if self.closed:
            return None
        return await self._inbox.get()

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)

    def sent_types(self) -> List[str]:
        return [m["type"] for m in self.sent]


class FakeConnector:
    """Provider connector handing out FakeProviderConnections."""

    def __init__(self):
        self.connections: List[FakeProviderConnection] = []
        self.fail = False
        self.confirm = True
        self.on_ready: List[Optional[Dict[str, Any]]] = []
        self.reply: Optional[List[Optional[Dict[str, Any]]]] = None
        self.delay = 0.0

    async def __call__(self, settings: Settings) -> FakeProviderConnection:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise UpstreamUnavailable("connection refused")
        connection = FakeProviderConnection(self.confirm, self.on_ready, self.reply)
        self.connections.append(connection)
        return connection

    @property
    def last(self) -> FakeProviderConnection:
        return self.connections[-1]

    @property
    def open_connections(self) -> List[FakeProviderConnection]:
        return [c for c in self.connections if not c.closed]


def pcm(n: int = 480, value: int = 0) -> bytes:
    """``n`` PCM16 samples of a constant value."""
    return value.to_bytes(2, "little", signed=True) * n


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def collect_events(channel, timeout: float = 2.0):
    """Drain a channel until it closes."""
    events = []
    while True:
        event = await asyncio.wait_for(channel.receive(), timeout=timeout)
        if event is None:
            return events
        events.append(event)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        jwt_secret_key=TEST_SECRET,
        openai_api_key="sk-test",
        end_grace_seconds=0.3,
        upstream_connect_timeout=1.0,
        upstream_configure_timeout=0.5,
        upload_session_wait_seconds=0.2,
        malformed_frame_limit=3,
        pre_ready_audio_max_chunks=8,
        log_level="WARNING",
    )


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def device() -> DeviceIdentity:
    return DeviceIdentity(device_id="watch-1", user_id="user-1")


@pytest.fixture
def auth(settings) -> DeviceAuthService:
    return DeviceAuthService(settings)


@pytest.fixture
def token(auth, device) -> str:
    return auth.create_device_token(device.device_id, device.user_id)


@pytest.fixture
async def registry(settings, connector):
    registry = SessionRegistry(settings, connector=connector)
    yield registry
    await registry.shutdown()


@pytest.fixture
def client(settings, connector):
    """TestClient with the fake provider wired into the container."""
    from main import app

    container.settings.override(providers.Object(settings))
    container.provider_connector.override(providers.Object(connector))
    container.device_auth.reset()
    container.session_registry.reset()
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        container.session_registry.reset()
        container.device_auth.reset()
        container.provider_connector.reset_override()
        container.settings.reset_override()
