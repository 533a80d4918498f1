"""UpstreamClient state machine against the fake provider."""

import asyncio

import pytest

from conftest import ASSISTANT_AUDIO, FakeConnector, FakeProviderConnection, collect_events, pcm, wait_until
from models.realtime import HistoryTurn
from services.realtime.events import EventChannel, RelayEventType
from services.realtime.exceptions import AudioBufferFull
from services.realtime.upstream import UpstreamClient, UpstreamState


def make_client(settings, connector, history=None):
    events = EventChannel("c1")
    client = UpstreamClient("c1", settings, events, connector=connector, history=history)
    return client, events


def types(events):
    return [e.type for e in events]


async def test_configures_then_announces_start(settings, connector):
    client, events = make_client(settings, connector)
    client.open()

    first = await asyncio.wait_for(events.receive(), timeout=1)

    assert first.type is RelayEventType.CONVERSATION_STARTED
    assert client.state is UpstreamState.READY
    assert connector.last.sent_types() == ["session.update"]
    await client.abort()


async def test_audio_before_ready_is_queued_then_flushed(settings, connector):
    connector.confirm = False
    client, events = make_client(settings, connector)
    client.open()
    await wait_until(lambda: client.state is UpstreamState.CONFIGURING)

    for i in range(3):
        assert await client.send_audio(pcm(value=i)) is True

    assert client.pending_audio == 3
    assert connector.last.sent_types() == ["session.update"]

    connector.last.push({"type": "session.updated"})
    await wait_until(lambda: client.is_ready)

    provider = connector.last
    assert provider.sent_types() == ["session.update"] + ["input_audio_buffer.append"] * 3
    assert [m["audio"] for m in provider.sent[1:]] == [
        protocol_audio(pcm(value=i)) for i in range(3)
    ]
    assert client.pending_audio == 0
    await client.abort()


def protocol_audio(data):
    from services.realtime.protocol import audio_append
    return audio_append(data)["audio"]


async def test_pre_ready_queue_overflow_rejected(settings, connector):
    connector.confirm = False
    client, _ = make_client(settings, connector)
    client.open()

    for _ in range(settings.pre_ready_audio_max_chunks):
        await client.send_audio(pcm())
    with pytest.raises(AudioBufferFull):
        await client.send_audio(pcm())
    await client.abort()


async def test_history_replayed_before_audio(settings, connector):
    history = [HistoryTurn(role="user" if i % 2 == 0 else "assistant", content=f"turn {i}") for i in range(3)]
    connector.confirm = False
    client, _ = make_client(settings, connector, history=history)
    client.open()
    await wait_until(lambda: client.state is UpstreamState.CONFIGURING)
    await client.send_audio(pcm())

    connector.last.push({"type": "session.updated"})
    await wait_until(lambda: client.is_ready)

    sent = connector.last.sent
    assert [m["type"] for m in sent] == (
        ["session.update"] + ["conversation.item.create"] * 3 + ["input_audio_buffer.append"]
    )
    replayed = [(m["item"]["role"], m["item"]["content"][0]["text"]) for m in sent[1:4]]
    assert replayed == [(t.role, t.content) for t in history]
    await client.abort()


async def test_history_capped(settings, connector):
    settings.history_max_turns = 2
    history = [HistoryTurn(role="user", content=f"turn {i}") for i in range(5)]
    client, events = make_client(settings, connector, history=history)
    client.open()
    await asyncio.wait_for(events.receive(), timeout=1)

    items = [m for m in connector.last.sent if m["type"] == "conversation.item.create"]
    assert [m["item"]["content"][0]["text"] for m in items] == ["turn 3", "turn 4"]
    await client.abort()


async def test_events_delivered_in_provider_order(settings, connector):
    client, events = make_client(settings, connector)
    client.open()
    await asyncio.wait_for(events.receive(), timeout=1)

    await client.send_audio(pcm())
    assert await client.finalize_turn() is True
    received = [await asyncio.wait_for(events.receive(), timeout=1) for _ in range(5)]

    assert types(received) == [
        RelayEventType.TRANSCRIPT_DELTA,
        RelayEventType.TRANSCRIPT_DELTA,
        RelayEventType.AUDIO_RESPONSE,
        RelayEventType.TRANSCRIPT_COMPLETE,
        RelayEventType.RESPONSE_COMPLETE,
    ]
    assert received[2].audio == ASSISTANT_AUDIO
    assert received[3].text == "Hello there"
    # Between turns the session stays open
    assert client.state is UpstreamState.READY
    await client.abort()


async def test_speech_and_transcript_events_keep_provider_order(settings, connector):
    connector.reply = [
        {"type": "input_audio_buffer.speech_started"},
        {"type": "response.audio_transcript.delta", "delta": "One"},
        {"type": "response.audio_transcript.delta", "delta": " two"},
        {"type": "response.audio_transcript.delta", "delta": " three"},
        {"type": "response.audio_transcript.done", "transcript": "One two three"},
        {"type": "response.done"},
    ]
    client, events = make_client(settings, connector)
    client.open()
    await asyncio.wait_for(events.receive(), timeout=1)

    await client.finalize_turn()
    received = [await asyncio.wait_for(events.receive(), timeout=1) for _ in range(6)]

    assert types(received) == [
        RelayEventType.SPEECH_STARTED,
        RelayEventType.TRANSCRIPT_DELTA,
        RelayEventType.TRANSCRIPT_DELTA,
        RelayEventType.TRANSCRIPT_DELTA,
        RelayEventType.TRANSCRIPT_COMPLETE,
        RelayEventType.RESPONSE_COMPLETE,
    ]
    assert [e.text for e in received[1:4]] == ["One", " two", " three"]
    assert received[4].text == "One two three"
    await client.abort()


class CancelResistantConnection(FakeProviderConnection):
    """Receive that keeps waiting through cancellation, like a reader whose
    cancel was lost while a frame was being delivered."""

    async def receive(self):
        while True:
            try:
                return await super().receive()
            except asyncio.CancelledError:
                continue


class CancelResistantConnector(FakeConnector):

    async def __call__(self, settings):
        connection = CancelResistantConnection(self.confirm, self.on_ready, self.reply)
        self.connections.append(connection)
        return connection


@pytest.mark.parametrize("confirm", [True, False], ids=["ready", "configuring"])
async def test_abort_completes_when_reader_ignores_cancel(settings, confirm):
    connector = CancelResistantConnector()
    connector.confirm = confirm
    client, events = make_client(settings, connector)
    client.open()
    await wait_until(lambda: client.state is (UpstreamState.READY if confirm else UpstreamState.CONFIGURING))

    await asyncio.wait_for(client.abort(), timeout=1)

    assert client.state is UpstreamState.CLOSED
    assert connector.last.closed
    assert events.closed


async def test_abort_while_session_confirmation_arrives(settings, connector):
    connector.confirm = False
    client, events = make_client(settings, connector)
    client.open()
    await wait_until(lambda: client.state is UpstreamState.CONFIGURING)

    connector.last.push({"type": "session.updated"})
    await asyncio.wait_for(client.abort(), timeout=1)

    assert client.state is UpstreamState.CLOSED
    assert connector.last.closed


async def test_provider_error_does_not_end_session(settings, connector):
    client, events = make_client(settings, connector)
    client.open()
    await asyncio.wait_for(events.receive(), timeout=1)

    connector.last.push({"type": "error", "error": {"message": "Invalid audio", "code": "bad_audio"}})
    event = await asyncio.wait_for(events.receive(), timeout=1)

    assert event.type is RelayEventType.ERROR
    assert event.message == "Invalid audio"
    assert client.is_ready
    await client.abort()


async def test_connect_failure_emits_single_error(settings, connector):
    connector.fail = True
    client, events = make_client(settings, connector)
    client.open()

    received = await collect_events(events)

    assert types(received) == [RelayEventType.ERROR]
    assert received[0].message == "Realtime provider unavailable"
    assert client.state is UpstreamState.CLOSED


async def test_configure_timeout_is_unavailable(settings, connector):
    connector.confirm = False
    client, events = make_client(settings, connector)
    client.open()

    received = await collect_events(events)

    assert types(received) == [RelayEventType.ERROR]
    assert connector.last.closed


async def test_provider_drop_ends_conversation(settings, connector):
    client, events = make_client(settings, connector)
    client.open()
    await asyncio.wait_for(events.receive(), timeout=1)

    connector.last.push({"type": "response.audio_transcript.delta", "delta": "half a sent"})
    connector.last.drop()
    received = await collect_events(events)

    assert types(received) == [RelayEventType.TRANSCRIPT_DELTA, RelayEventType.CONVERSATION_ENDED]
    assert client.state is UpstreamState.CLOSED
    assert await client.send_audio(pcm()) is False


async def test_end_drains_final_response(settings, connector):
    settings.end_grace_seconds = 5.0
    client, events = make_client(settings, connector)
    client.open()
    await asyncio.wait_for(events.receive(), timeout=1)
    await client.send_audio(pcm())

    await client.end()
    assert client.state is UpstreamState.CLOSING
    assert await client.send_audio(pcm()) is False

    # response.done closes the connection without waiting out the grace period
    received = await collect_events(events, timeout=1)

    assert connector.last.sent_types()[-2:] == ["input_audio_buffer.commit", "response.create"]
    assert types(received)[-2:] == [RelayEventType.RESPONSE_COMPLETE, RelayEventType.CONVERSATION_ENDED]
    assert types(received).count(RelayEventType.CONVERSATION_ENDED) == 1
    assert connector.last.closed


async def test_end_closes_after_grace_without_response(settings, connector):
    connector.reply = []
    client, events = make_client(settings, connector)
    client.open()
    await asyncio.wait_for(events.receive(), timeout=1)

    await client.end()
    received = await collect_events(events, timeout=2)

    assert types(received) == [RelayEventType.CONVERSATION_ENDED]
    assert client.state is UpstreamState.CLOSED


async def test_end_before_ready_answers_queued_audio(settings, connector):
    connector.confirm = False
    client, events = make_client(settings, connector)
    client.open()
    await wait_until(lambda: client.state is UpstreamState.CONFIGURING)
    await client.send_audio(pcm())

    await client.end()
    connector.last.push({"type": "session.updated"})
    received = await collect_events(events)

    assert connector.last.sent_types() == [
        "session.update",
        "input_audio_buffer.append",
        "input_audio_buffer.commit",
        "response.create",
    ]
    assert types(received)[0] is RelayEventType.CONVERSATION_STARTED
    assert types(received)[-1] is RelayEventType.CONVERSATION_ENDED


async def test_end_while_connecting_closes_quietly(settings, connector):
    connector.delay = 0.5
    client, events = make_client(settings, connector)
    client.open()

    await client.end()
    received = await collect_events(events)

    assert types(received) == [RelayEventType.CONVERSATION_ENDED]
    assert connector.connections == []


async def test_abort_before_first_step(settings, connector):
    client, events = make_client(settings, connector)
    client.open()

    await asyncio.wait_for(client.abort(), timeout=1)

    assert client.state is UpstreamState.CLOSED
    assert events.closed
