"""
Tests for StreamingTranscriptionSession: wire URL, message handling, audio queue,
status transitions, keepalive and reconnect.
"""

import asyncio
import json
from urllib.parse import parse_qs, urlparse

import pytest

from callassist.asr import (
    ConnectionState,
    SessionStatus,
    StreamingConfig,
    StreamingTranscriptionSession,
    build_listen_url,
)
from callassist.errors import InvalidStatusTransition, MissingCredentialsError
from callassist.events import EventType
from tests.fakes import FakeConnector, results_message, settle, word


def _config(**overrides):
    base = dict(
        api_key="test-key",
        sample_rate=16000,
        channels=2,
        model="general",
        language="en",
        endpointing_ms=450,
        utterance_end_ms=1100,
        multichannel=True,
        reconnect_base_delay=60.0,
        reconnect_max_delay=60.0,
        keepalive_interval=60.0,
    )
    base.update(overrides)
    return StreamingConfig(**base)


def _collect(session):
    events = []
    session.events.subscribe_all(lambda kind, payload: events.append((kind, payload)))
    return events


def _of(events, kind):
    return [payload for k, payload in events if k is kind]


# --- wire URL ---


def test_listen_url_parameters():
    url = build_listen_url(_config(keywords=["Acme:2", " "], keyterms=["pricing sheet"]))
    parsed = urlparse(url)
    query = parse_qs(parsed.query)

    assert parsed.scheme == "wss" and parsed.path == "/v1/listen"
    assert query["encoding"] == ["linear16"]
    assert query["sample_rate"] == ["16000"]
    assert query["channels"] == ["2"]
    assert query["endpointing"] == ["450"]
    assert query["utterance_end_ms"] == ["1100"]
    assert query["multichannel"] == ["true"]
    assert query["interim_results"] == ["true"]
    assert query["keywords"] == ["Acme:2"]
    assert query["keyterm"] == ["pricing sheet"]
    assert "diarize" not in query


def test_listen_url_diarized_mono():
    query = parse_qs(urlparse(build_listen_url(_config(channels=1, multichannel=False, diarize=True))).query)
    assert query["diarize"] == ["true"]
    assert "multichannel" not in query


# --- status state machine ---


def test_status_transitions():
    status = SessionStatus(ConnectionState.IDLE)
    status = status.transition(ConnectionState.CONNECTING)
    status = status.transition(ConnectionState.OPEN)
    status = status.transition(ConnectionState.CLOSED, code=1006, reason="")
    assert (status.state, status.code) == (ConnectionState.CLOSED, 1006)
    status = status.transition(ConnectionState.CONNECTING)
    status = status.transition(ConnectionState.ERROR, message="boom")
    assert status.message == "boom"

    with pytest.raises(InvalidStatusTransition):
        SessionStatus(ConnectionState.IDLE).transition(ConnectionState.OPEN)
    with pytest.raises(InvalidStatusTransition):
        SessionStatus(ConnectionState.CLOSED).transition(ConnectionState.OPEN)


# --- message handling (no socket needed) ---


def test_interim_results_become_deduplicated_captions():
    session = StreamingTranscriptionSession(_config())
    events = _collect(session)

    for text in ["hel", "hel", "", "hello"]:
        session.handle_message(json.dumps(results_message(text, channel=1)))

    captions = _of(events, EventType.CAPTION)
    assert [(c.channel_index, c.text) for c in captions] == [(1, "hel"), (1, "hello")]
    assert _of(events, EventType.UTTERANCE) == []


def test_speech_final_emits_one_merged_utterance():
    session = StreamingTranscriptionSession(_config())
    events = _collect(session)

    session.handle_message(
        json.dumps(results_message("hello", channel=1, is_final=True, words=[word("hello", 1.0, 1.4)]))
    )
    session.handle_message(
        json.dumps(
            results_message(
                "hello there",
                channel=1,
                is_final=True,
                speech_final=True,
                words=[word("there", 1.5, 1.9)],
            )
        )
    )

    [utt] = _of(events, EventType.UTTERANCE)
    assert (utt.channel_index, utt.text, utt.start_ms, utt.end_ms) == (1, "hello there", 1000, 1900)
    assert utt.speaker_id is None


def test_utterance_end_finalizes_with_last_word_end():
    session = StreamingTranscriptionSession(_config())
    events = _collect(session)

    session.handle_message(json.dumps(results_message("okay", channel=0, is_final=True, words=[word("okay", 0.2, 0.6)])))
    session.handle_message(json.dumps({"type": "UtteranceEnd", "channel": [0, 2], "last_word_end": 2.5}))
    session.handle_message(json.dumps({"type": "UtteranceEnd", "channel": [0, 2], "last_word_end": 3.0}))

    [utt] = _of(events, EventType.UTTERANCE)
    assert utt.text == "okay"
    assert utt.end_ms == 2500


def test_utterance_end_without_last_word_end_clears_end_time():
    session = StreamingTranscriptionSession(_config())
    events = _collect(session)

    session.handle_message(json.dumps(results_message("yes", is_final=True, words=[word("yes", 0.2, 0.4)])))
    session.handle_message(json.dumps({"type": "UtteranceEnd", "channel_index": [0]}))

    [utt] = _of(events, EventType.UTTERANCE)
    assert utt.end_ms is None


def test_diarized_final_splits_by_speaker():
    session = StreamingTranscriptionSession(_config(channels=1, multichannel=False, diarize=True))
    events = _collect(session)

    words = [
        word("Hi.", 0.0, 0.3, speaker=0),
        word("Hello,", 0.4, 0.7, speaker=1),
        word("there.", 0.7, 1.0, speaker=1),
        word("Right.", 1.1, 1.4, speaker=0),
    ]
    session.handle_message(
        json.dumps(results_message("Hi. Hello, there. Right.", channels=1, is_final=True, speech_final=True, words=words))
    )

    utterances = _of(events, EventType.UTTERANCE)
    assert [(u.speaker_id, u.text) for u in utterances] == [(0, "Hi."), (1, "Hello, there."), (0, "Right.")]


def test_metadata_is_published():
    session = StreamingTranscriptionSession(_config())
    events = _collect(session)
    session.handle_message(json.dumps({"type": "Metadata", "request_id": "req-1", "channels": 2, "duration": 12}))
    [meta] = _of(events, EventType.METADATA)
    assert (meta.request_id, meta.channels, meta.duration) == ("req-1", 2, 12.0)


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2, 3]",
        '"Results"',
        json.dumps({"type": "Results"}),
        json.dumps({"type": "Results", "is_final": True, "channel": {"alternatives": "nope"}}),
        json.dumps({"type": "SpeechStarted", "channel": [0]}),
        json.dumps({"no_type": True}),
    ],
)
def test_malformed_messages_are_dropped(raw):
    session = StreamingTranscriptionSession(_config())
    events = _collect(session)
    session.handle_message(raw)
    assert events == []


# --- connection lifecycle ---


def test_start_requires_api_key():
    session = StreamingTranscriptionSession(_config(api_key=""), connector=FakeConnector())
    with pytest.raises(MissingCredentialsError):
        asyncio.run(session.start())
    assert session.status.state is ConnectionState.IDLE


def test_start_sends_token_header_and_stop_closes_stream():
    connector = FakeConnector()
    session = StreamingTranscriptionSession(_config(), connector=connector)
    events = _collect(session)

    async def scenario():
        await session.start()
        await session.start()  # already open: no second connection
        ws = connector.last_socket
        await session.send_audio(b"\x01\x00" * 4)
        await session.stop()
        await settle()
        return ws

    ws = asyncio.run(scenario())

    assert len(connector.calls) == 1
    url, headers = connector.calls[0]
    assert headers == {"Authorization": "Token test-key"}
    assert url.startswith("wss://api.deepgram.com/v1/listen?")
    assert ws.sent_bytes == [b"\x01\x00" * 4]
    assert ws.control_messages == ["CloseStream"]
    assert ws.closed
    states = [s.state for s in _of(events, EventType.STATUS)]
    assert states == [
        ConnectionState.CONNECTING,
        ConnectionState.OPEN,
        ConnectionState.CLOSING,
        ConnectionState.CLOSED,
    ]
    assert not session.has_pending_reconnect


def test_audio_queue_is_bounded_and_flushed_on_open():
    connector = FakeConnector()
    session = StreamingTranscriptionSession(_config(max_queued_frames=5), connector=connector)
    frames = [bytes([i, 0]) for i in range(8)]

    async def scenario():
        for frame in frames:
            await session.send_audio(frame)
        assert session.queued_frames == 5
        await session.start()
        ws = connector.last_socket
        await session.stop()
        return ws

    ws = asyncio.run(scenario())
    assert ws.sent_bytes == frames[3:]
    assert session.queued_frames == 0


def test_messages_from_socket_reach_subscribers():
    connector = FakeConnector()
    session = StreamingTranscriptionSession(_config(), connector=connector)
    events = _collect(session)

    async def scenario():
        await session.start()
        connector.last_socket.feed(results_message("Can you hear me?", channel=1, is_final=True, speech_final=True))
        await settle()
        await session.stop()

    asyncio.run(scenario())
    [utt] = _of(events, EventType.UTTERANCE)
    assert (utt.channel_index, utt.text) == (1, "Can you hear me?")


def test_connect_failure_reports_error_and_reconnects():
    connector = FakeConnector(failures=1)
    session = StreamingTranscriptionSession(
        _config(reconnect_base_delay=0.01, reconnect_max_delay=0.05), connector=connector
    )

    async def scenario():
        await session.start()
        assert session.status.state is ConnectionState.ERROR
        assert "refused" in session.status.message
        assert session.has_pending_reconnect
        await session.send_audio(b"\x07\x00")
        assert session.queued_frames == 1
        for _ in range(50):
            await asyncio.sleep(0.01)
            if session.is_open:
                break
        ws = connector.last_socket
        await session.stop()
        return ws

    ws = asyncio.run(scenario())
    assert len(connector.calls) == 2
    assert ws.sent_bytes == [b"\x07\x00"]
    assert session.reconnect_attempts == 0


def test_failed_send_closes_socket_and_resends_on_reconnect():
    connector = FakeConnector()
    session = StreamingTranscriptionSession(
        _config(reconnect_base_delay=0.01, reconnect_max_delay=0.05), connector=connector
    )
    events = _collect(session)
    frames = [b"\x01\x00", b"\x02\x00", b"\x03\x00"]

    async def scenario():
        await session.start()
        first = connector.last_socket
        first.send_failures = 1
        await session.send_audio(frames[0])
        await settle()
        assert first.closed
        assert session.has_pending_reconnect
        for frame in frames[1:]:
            await session.send_audio(frame)
        for _ in range(50):
            await asyncio.sleep(0.01)
            if len(connector.sockets) == 2 and session.is_open:
                break
        second = connector.last_socket
        await session.stop()
        return first, second

    first, second = asyncio.run(scenario())
    assert first.sent_bytes == []
    assert second.sent_bytes == frames
    states = [s.state for s in _of(events, EventType.STATUS)]
    assert states[:5] == [
        ConnectionState.CONNECTING,
        ConnectionState.OPEN,
        ConnectionState.ERROR,
        ConnectionState.CLOSED,
        ConnectionState.CONNECTING,
    ]


# --- reconnect ---


def test_reconnect_delay_backs_off_to_ceiling():
    session = StreamingTranscriptionSession(_config(reconnect_base_delay=1.0, reconnect_max_delay=10.0))
    assert [session.reconnect_delay(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


def test_unexpected_close_schedules_single_reconnect_timer():
    connector = FakeConnector()
    session = StreamingTranscriptionSession(_config(), connector=connector)
    events = _collect(session)

    async def scenario():
        await session.start()
        connector.last_socket.drop(code=1011)
        await settle()
        assert session.status.state is ConnectionState.CLOSED
        assert session.status.code == 1011
        assert session.has_pending_reconnect
        session._schedule_reconnect()
        assert session.reconnect_attempts == 1

        await session.stop()
        assert not session.has_pending_reconnect

    asyncio.run(scenario())
    assert len(connector.calls) == 1
    assert _of(events, EventType.STATUS)[-1].state is ConnectionState.CLOSED


def test_reconnects_after_drop_and_flushes_queued_audio():
    connector = FakeConnector()
    session = StreamingTranscriptionSession(
        _config(reconnect_base_delay=0.01, reconnect_max_delay=0.05), connector=connector
    )

    async def scenario():
        await session.start()
        connector.last_socket.drop()
        await settle()
        await session.send_audio(b"\x05\x00")
        assert session.queued_frames == 1
        for _ in range(50):
            await asyncio.sleep(0.01)
            if len(connector.sockets) == 2 and session.is_open:
                break
        second = connector.last_socket
        await session.stop()
        return second

    second = asyncio.run(scenario())
    assert len(connector.calls) == 2
    assert second.sent_bytes == [b"\x05\x00"]
    assert session.reconnect_attempts == 0


def test_failed_reconnect_schedules_next_attempt_with_longer_delay():
    connector = FakeConnector()

    class RecordingSession(StreamingTranscriptionSession):
        delays = []

        def reconnect_delay(self, attempt):
            delay = super().reconnect_delay(attempt)
            self.delays.append(delay)
            return delay

    session = RecordingSession(_config(reconnect_base_delay=0.01, reconnect_max_delay=0.03), connector=connector)

    async def scenario():
        await session.start()
        connector.failures = 2
        connector.last_socket.drop()
        for _ in range(100):
            await asyncio.sleep(0.01)
            if session.is_open:
                break
        await session.stop()

    asyncio.run(scenario())
    assert session.delays == [0.01, 0.02, 0.03]
    assert len(connector.calls) == 4


def test_no_reconnect_after_stop():
    connector = FakeConnector()
    session = StreamingTranscriptionSession(_config(reconnect_base_delay=0.01), connector=connector)

    async def scenario():
        await session.start()
        await session.stop()
        await asyncio.sleep(0.05)

    asyncio.run(scenario())
    assert len(connector.calls) == 1
    assert session.status.state is ConnectionState.CLOSED


# --- keepalive ---


def test_keepalive_sent_after_audio_silence():
    connector = FakeConnector()
    now = [100.0]
    session = StreamingTranscriptionSession(
        _config(keepalive_interval=0.01, keepalive_silence=8.0), connector=connector, clock=lambda: now[0]
    )

    async def scenario():
        await session.start()
        ws = connector.last_socket
        await asyncio.sleep(0.03)
        assert "KeepAlive" not in ws.control_messages  # nothing sent yet

        await session.send_audio(b"\x01\x00")
        now[0] += 3.0
        await asyncio.sleep(0.03)
        assert "KeepAlive" not in ws.control_messages

        now[0] += 6.0
        await asyncio.sleep(0.03)
        await session.stop()
        return ws

    ws = asyncio.run(scenario())
    assert "KeepAlive" in ws.control_messages
