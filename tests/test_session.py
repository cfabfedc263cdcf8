"""
Tests for the per-call session state machine.

Recognizer connections are replaced by FakeRecognizer so tests control exactly
when a connection becomes ready, emits transcripts, or drops.
"""

import asyncio
import base64
import json
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.relay.config import get_config
from src.relay.dispatch import CALL_START_SENTINEL, LANGUAGE_SWITCH_SENTINEL, DecisionReply, DispatchBridge
from src.relay.session import CallSession, SessionEvent, SessionEventType
from src.relay.stt import RecognizerConnection, TranscriptionResult

TEN_WORD_TWIML = "<Response><Say>one two three four five six seven eight nine ten</Say></Response>"


class FakeRecognizer(RecognizerConnection):
    def __init__(self, connection_id, language, *, auto_ready=True, fail=False, **callbacks):
        super().__init__(connection_id, language, **callbacks)
        self.auto_ready = auto_ready
        self.fail = fail
        self.sent = []
        self.closed = False

    async def connect(self):
        if self.fail:
            self._on_error(self.connection_id, "refused")
            return False
        if self.auto_ready:
            self._on_ready(self.connection_id)
        return True

    async def send_audio(self, audio_bytes):
        self.sent.append(audio_bytes)

    async def close(self):
        self.closed = True

    def ready(self):
        self._on_ready(self.connection_id)

    def transcript(self, text, *, is_final=True, language=None):
        self._on_transcript(
            self.connection_id,
            TranscriptionResult(text=text, is_final=is_final, detected_language=language),
        )

    def drop(self, reason="remote_closed"):
        self._on_closed(self.connection_id, reason)


class FakeRecognizerFactory:
    def __init__(self, auto_ready=True, fail=False):
        self.auto_ready = auto_ready
        self.fail = fail
        self.connections = []

    def __call__(self, connection_id, language, **callbacks):
        connection = FakeRecognizer(
            connection_id, language, auto_ready=self.auto_ready, fail=self.fail, **callbacks
        )
        self.connections.append(connection)
        return connection

    @property
    def current(self) -> FakeRecognizer:
        return self.connections[-1]


def make_bridge(twiml=TEN_WORD_TWIML):
    """Real DispatchBridge with its two outbound calls mocked."""
    bridge = DispatchBridge(decision=MagicMock(), call_control=MagicMock(), config=get_config())
    reply = DecisionReply(twiml=twiml, spoken_text=" ".join(["word"] * 10)) if twiml is not None else None
    bridge.request = AsyncMock(return_value=reply)
    bridge.update_call = AsyncMock(return_value=True)
    return bridge


def media(payload: bytes) -> str:
    return json.dumps({
        "event": "media",
        "streamSid": "MZ1",
        "media": {"track": "inbound", "chunk": 1, "timestamp": "0", "payload": base64.b64encode(payload).decode()},
    })


def start_message() -> str:
    return json.dumps({
        "event": "start",
        "streamSid": "MZ1",
        "start": {"callSid": "CA1", "accountSid": "AC1", "tracks": ["inbound"]},
    })


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def start_session(language=None, *, bridge=None, factory=None, **overrides):
    settings = {"silence_window_seconds": 0.05, "notify_call_start": False}
    settings.update(overrides)
    config = replace(get_config(), **settings)
    factory = factory or FakeRecognizerFactory()
    bridge = bridge or make_bridge()
    session = CallSession("CA1", bridge=bridge, language=language, connection_factory=factory, config=config)
    await session.start()
    await settle()
    return session, factory, bridge


class TestAudioIngest:
    @pytest.mark.asyncio
    async def test_frames_buffered_until_ready_then_flushed_in_order(self):
        session, factory, _ = await start_session("en", factory=FakeRecognizerFactory(auto_ready=False))
        connection = factory.current

        for payload in (b"f1", b"f2", b"f3"):
            await session.handle_message(media(payload))
        await settle()

        assert connection.sent == []
        assert session.buffered_frames == 3

        connection.ready()
        await session.handle_message(media(b"f4"))
        await settle()

        assert connection.sent == [b"f1", b"f2", b"f3", b"f4"]
        assert session.buffered_frames == 0
        await session.destroy()

    @pytest.mark.asyncio
    async def test_buffer_is_bounded(self):
        session, factory, _ = await start_session("en", factory=FakeRecognizerFactory(auto_ready=False))
        frames = [i.to_bytes(2, "big") for i in range(501)]

        for frame in frames:
            session.post(SessionEvent(SessionEventType.FRAME_ARRIVED, data=frame))
        await settle(50)
        assert session.buffered_frames == 500

        factory.current.ready()
        await settle()

        assert factory.current.sent == frames[:500]
        await session.destroy()
        assert session.metrics.frames_dropped == 1

    @pytest.mark.asyncio
    async def test_outbound_and_malformed_frames_are_discarded(self):
        session, factory, _ = await start_session("en")

        await session.handle_message("not json")
        await session.handle_message(json.dumps({
            "event": "media",
            "media": {"track": "outbound", "payload": base64.b64encode(b"x").decode()},
        }))
        await settle()

        assert factory.current.sent == []
        assert session.metrics.malformed_messages == 1
        assert not session.is_destroyed
        await session.destroy()

    @pytest.mark.asyncio
    async def test_stale_ready_does_not_flush(self):
        session, factory, _ = await start_session("en", factory=FakeRecognizerFactory(auto_ready=False))
        await session.handle_message(media(b"f1"))
        await settle()

        session.post(SessionEvent(SessionEventType.CONNECTION_READY, connection_id=99))
        await settle()

        assert factory.current.sent == []
        assert session.buffered_frames == 1
        await session.destroy()


class TestDebounce:
    @pytest.mark.asyncio
    async def test_fragments_within_window_merge(self):
        session, factory, bridge = await start_session("en")

        for fragment in ("book", "a", "table"):
            factory.current.transcript(fragment)
        await settle()
        bridge.request.assert_not_called()

        await asyncio.sleep(0.15)
        await settle()

        bridge.request.assert_awaited_once()
        assert bridge.request.call_args.args[0] == "book a table"
        assert bridge.request.call_args.kwargs == {"call_sid": "CA1", "stream_sid": "", "language": "en"}
        await session.destroy()

    @pytest.mark.asyncio
    async def test_pause_splits_utterances(self):
        # No reply, so no speech lock between the two turns.
        session, factory, bridge = await start_session("en", bridge=make_bridge(twiml=None))

        factory.current.transcript("book")
        factory.current.transcript("a")
        await asyncio.sleep(0.15)
        factory.current.transcript("table")
        await asyncio.sleep(0.15)
        await settle()

        texts = [call.args[0] for call in bridge.request.call_args_list]
        assert texts == ["book a", "table"]
        await session.destroy()

    @pytest.mark.asyncio
    async def test_interim_results_do_not_append(self):
        session, factory, bridge = await start_session("en")

        factory.current.transcript("boo", is_final=False)
        factory.current.transcript("book a table")
        await asyncio.sleep(0.15)
        await settle()

        assert bridge.request.call_args.args[0] == "book a table"
        await session.destroy()

    @pytest.mark.asyncio
    async def test_noise_is_discarded(self):
        session, factory, bridge = await start_session("en")

        factory.current.transcript("a")
        await asyncio.sleep(0.15)
        await settle()

        bridge.request.assert_not_called()
        assert session.metrics.utterances_discarded == 1
        await session.destroy()

    @pytest.mark.asyncio
    async def test_reply_is_pushed_to_call(self):
        session, factory, bridge = await start_session("en")
        await session.handle_message(start_message())

        factory.current.transcript("book a table")
        await asyncio.sleep(0.15)
        await settle()

        bridge.update_call.assert_awaited_once_with("CA1", TEN_WORD_TWIML)
        assert bridge.request.call_args.kwargs["stream_sid"] == "MZ1"
        assert session.metrics.utterances_dispatched == 1
        await session.destroy()


class TestLanguageLock:
    @pytest.mark.asyncio
    async def test_preselected_language_starts_confirmed(self):
        session, factory, _ = await start_session("es")

        assert session.lock.is_confirmed
        assert session.language == "es"
        assert factory.current.language == "es"
        await session.destroy()

    @pytest.mark.asyncio
    async def test_confirmed_language_is_stable(self):
        session, factory, _ = await start_session("es")

        factory.current.transcript("hello there how are you", language="en")
        await settle()

        assert session.language == "es"
        assert len(factory.connections) == 1
        assert session.pending_text == "hello there how are you"
        await session.destroy()

    @pytest.mark.asyncio
    async def test_non_default_language_restarts_recognizer_and_notifies(self):
        session, factory, bridge = await start_session(factory=FakeRecognizerFactory(auto_ready=False))
        first = factory.current
        assert first.language == "multi"
        first.ready()
        await settle()

        first.transcript("Hola, quiero hablar con alguien")
        await session.handle_message(media(b"during-switch"))
        await settle()

        assert session.language == "es"
        assert len(factory.connections) == 2
        second = factory.current
        assert second.language == "es"
        assert first.closed
        assert session.is_switching
        assert first.sent == []

        bridge.request.assert_awaited_once()
        assert bridge.request.call_args.args[0] == LANGUAGE_SWITCH_SENTINEL
        assert bridge.request.call_args.kwargs["language"] == "es"

        second.ready()
        await settle()
        assert not session.is_switching
        assert second.sent == [b"during-switch"]
        await session.destroy()

    @pytest.mark.asyncio
    async def test_default_language_confirmed_after_three_votes(self):
        session, factory, bridge = await start_session()

        for text in ("hello there", "I need a table", "for two people"):
            factory.current.transcript(text, language="en")
        await settle()

        assert session.language == "en"
        assert len(factory.connections) == 1
        await asyncio.sleep(0.15)
        await settle()

        bridge.request.assert_awaited_once()
        assert bridge.request.call_args.args[0] == "hello there I need a table for two people"
        await session.destroy()

    @pytest.mark.asyncio
    async def test_escalation_redirects_once_and_goes_quiet(self):
        session, factory, bridge = await start_session()
        await session.handle_message(start_message())
        connection = factory.current

        connection.transcript("mmm")
        connection.transcript("hmm")
        await settle()

        bridge.update_call.assert_awaited_once()
        call_sid, twiml = bridge.update_call.call_args.args
        assert call_sid == "CA1"
        assert "https://test.ngrok.io/language-menu" in twiml
        assert connection.closed
        assert session.lock.escalated

        connection.transcript("book a table", language="en")
        await session.handle_message(media(b"late"))
        await asyncio.sleep(0.15)
        await settle()

        bridge.request.assert_not_called()
        assert bridge.update_call.await_count == 1
        assert session.buffered_frames == 0
        await session.destroy()

    @pytest.mark.asyncio
    async def test_escalation_discards_pending_greeting(self):
        bridge = make_bridge()
        gate = asyncio.Event()
        greeting = DecisionReply(twiml="<Response><Say>Welcome</Say></Response>", spoken_text="Welcome")

        async def slow_greeting(*args, **kwargs):
            await gate.wait()
            return greeting

        bridge.request = AsyncMock(side_effect=slow_greeting)
        session, factory, _ = await start_session(bridge=bridge, notify_call_start=True)
        await session.handle_message(start_message())
        await settle()
        assert bridge.request.call_args.args[0] == CALL_START_SENTINEL

        factory.current.transcript("mmm")
        factory.current.transcript("hmm")
        await settle()
        gate.set()
        await settle()

        pushed = [call.args[1] for call in bridge.update_call.call_args_list]
        assert len(pushed) == 1
        assert "https://test.ngrok.io/language-menu" in pushed[0]
        assert not session.speech_locked
        await session.destroy()


class TestSelfSpeechSuppression:
    @pytest.mark.asyncio
    async def test_reply_arms_lock_and_suppresses_transcripts(self):
        session, factory, bridge = await start_session("en")

        factory.current.transcript("book a table")
        await asyncio.sleep(0.15)
        await settle()

        assert session.speech_locked
        remaining = session.speech_lock_until - asyncio.get_running_loop().time()
        assert remaining >= 2.9

        factory.current.transcript("one two three four")
        await asyncio.sleep(0.15)
        await settle()

        assert session.pending_text == ""
        assert bridge.request.await_count == 1
        assert session.metrics.suppressed_transcripts == 1
        await session.destroy()

    @pytest.mark.asyncio
    async def test_lock_blocks_language_transitions(self):
        session, factory, bridge = await start_session(notify_call_start=True)
        await session.handle_message(start_message())
        await settle()

        assert bridge.request.call_args.args[0] == CALL_START_SENTINEL
        assert session.speech_locked

        factory.current.transcript("Hola, quiero hablar con alguien")
        await settle()

        assert not session.lock.is_confirmed
        assert session.lock.history == []
        assert len(factory.connections) == 1
        await session.destroy()

    @pytest.mark.asyncio
    async def test_lock_expiry_restores_transcripts(self):
        session, factory, bridge = await start_session(
            "en",
            speech_lock_floor_seconds=0.1,
            speech_lock_per_word_seconds=0.0,
            speech_lock_base_seconds=0.0,
        )
        session.post(SessionEvent(SessionEventType.REPLY_RECEIVED, data=DecisionReply(twiml="", spoken_text="hi")))
        await settle()
        assert session.speech_locked

        await asyncio.sleep(0.2)
        await settle()
        assert not session.speech_locked

        factory.current.transcript("yes please")
        await settle()
        assert session.pending_text == "yes please"
        await session.destroy()


class TestRecognizerRecovery:
    @pytest.mark.asyncio
    async def test_reconnects_after_unexpected_close(self, monkeypatch):
        monkeypatch.setattr("src.relay.session.RECONNECT_BACKOFF_BASE_S", 0.01)
        session, factory, _ = await start_session("fr")
        first = factory.current

        first.drop()
        await session.handle_message(media(b"gap"))
        await asyncio.sleep(0.05)
        await settle()

        assert len(factory.connections) == 2
        assert factory.current.language == "fr"
        assert factory.current.sent == [b"gap"]
        assert session.metrics.recognizer_reconnects == 1
        await session.destroy()

    @pytest.mark.asyncio
    async def test_reconnect_attempts_are_bounded(self, monkeypatch):
        monkeypatch.setattr("src.relay.session.RECONNECT_BACKOFF_BASE_S", 0.001)
        monkeypatch.setattr("src.relay.session.RECONNECT_BACKOFF_MAX_S", 0.001)
        factory = FakeRecognizerFactory(fail=True)
        session, factory, _ = await start_session("en", factory=factory, recognizer_max_reconnects=2)

        await asyncio.sleep(0.1)
        await settle()

        assert len(factory.connections) == 3
        assert session.metrics.recognizer_errors == 3
        assert not session.is_destroyed
        await session.destroy()

    @pytest.mark.asyncio
    async def test_recognizer_error_keeps_session_alive(self):
        session, factory, _ = await start_session("en")

        factory.current._on_error(factory.current.connection_id, "transient")
        await settle()

        assert session.metrics.recognizer_errors == 1
        assert session.recognizer_ready
        assert len(factory.connections) == 1
        await session.destroy()


class TestDestroy:
    @pytest.mark.asyncio
    async def test_destroy_cancels_timers_and_releases_connection(self):
        session, factory, bridge = await start_session("en")

        factory.current.transcript("book a table")
        await settle()
        await session.destroy()

        await asyncio.sleep(0.15)
        await settle()

        assert session.is_destroyed
        assert factory.current.closed
        bridge.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_events_after_destroy_are_noops(self):
        session, factory, _ = await start_session("en")
        await session.destroy()

        session.post(SessionEvent(SessionEventType.FRAME_ARRIVED, data=b"late"))
        await session.handle_event(SessionEvent(SessionEventType.FRAME_ARRIVED, data=b"late"))
        await session.handle_message(media(b"late"))

        assert factory.current.sent == []
        assert session.metrics.frames_received == 0

    @pytest.mark.asyncio
    async def test_destroy_is_idempotent(self):
        session, factory, _ = await start_session("en")
        await session.destroy()
        await session.destroy()
        assert session.is_destroyed

    @pytest.mark.asyncio
    async def test_destroy_cancels_inflight_dispatch(self):
        bridge = make_bridge()
        never = asyncio.Event()

        async def hang(*args, **kwargs):
            await never.wait()

        bridge.request = AsyncMock(side_effect=hang)
        session, factory, _ = await start_session("en", bridge=bridge)

        factory.current.transcript("book a table")
        await asyncio.sleep(0.15)
        await settle()
        bridge.request.assert_awaited_once()

        await session.destroy()
        await settle()

        bridge.update_call.assert_not_called()
        assert not session.speech_locked

    @pytest.mark.asyncio
    async def test_stop_event_destroys_session(self, twilio_stop_message):
        session, factory, _ = await start_session("en")

        await session.handle_message(twilio_stop_message)
        await settle()

        assert session.is_destroyed
        assert factory.current.closed
