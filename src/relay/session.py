"""Per-call session state machine.

One CallSession exists per live call. It owns the recognizer connection, the
inbound frame buffer, the language lock, the pending utterance and the silence /
self-speech timers.

Four sources feed a session: inbound Twilio frames, recognizer transcripts,
recognizer lifecycle callbacks and local timers. None of them touch session
state directly; they post a SessionEvent onto the session's queue and a single
actor task applies the events one at a time through `handle_event`. Slow I/O
(opening/closing recognizer sockets, decision-service requests, call updates)
runs in background tasks whose results come back as events, so the actor never
blocks on the network.

Frame path:
  Twilio media -> FRAME_ARRIVED -> forward (connection ready, not switching)
                                -> else bounded FrameBuffer (drop when full)
  CONNECTION_READY -> flush buffer in order, then resume forwarding

Transcript path (finals only, and never while the self-speech lock is held):
  lock undetermined -> LanguageLock.observe -> confirm / switch recognizer / escalate
  lock confirmed    -> UtteranceAggregator + silence timer -> dispatch
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
import time
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

from src.relay.audio import FrameBuffer
from src.relay.config import Config, get_config
from src.relay.dispatch import (
    CALL_START_SENTINEL,
    LANGUAGE_SWITCH_SENTINEL,
    DecisionReply,
    DispatchBridge,
)
from src.relay.language import LanguageLock, LockOutcome
from src.relay.playback import estimate_from_config
from src.relay.stt import AUTO_DETECT_HINT, DeepgramConnection, RecognizerConnection, TranscriptionResult
from src.relay.twilio_protocol import (
    TwilioEventType,
    TwilioMediaEvent,
    TwilioStartEvent,
    parse_twilio_message,
)
from src.relay.twiml import redirect_twiml
from src.relay.utterance import UtteranceAggregator

logger = structlog.get_logger(__name__)

ConnectionFactory = Callable[..., RecognizerConnection]

RECONNECT_BACKOFF_BASE_S = 0.5
RECONNECT_BACKOFF_MAX_S = 4.0


class SessionEventType(str, Enum):
    """Everything that can happen to a call session."""
    STREAM_STARTED = "stream_started"
    FRAME_ARRIVED = "frame_arrived"
    STREAM_STOPPED = "stream_stopped"
    TRANSCRIPT_RECEIVED = "transcript_received"
    CONNECTION_READY = "connection_ready"
    CONNECTION_ERROR = "connection_error"
    CONNECTION_CLOSED = "connection_closed"
    RECONNECT_DUE = "reconnect_due"
    SILENCE_TIMEOUT = "silence_timeout"
    SPEECH_LOCK_EXPIRED = "speech_lock_expired"
    REPLY_RECEIVED = "reply_received"
    DESTROY = "destroy"


@dataclass
class SessionEvent:
    type: SessionEventType
    data: Any = None
    connection_id: int = 0
    generation: int = 0


@dataclass
class CallMetrics:
    """Metrics for an entire call session."""
    call_id: str = ""
    stream_sid: str = ""
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    frames_received: int = 0
    frames_forwarded: int = 0
    frames_flushed: int = 0
    frames_dropped: int = 0
    malformed_messages: int = 0
    transcripts: int = 0
    suppressed_transcripts: int = 0
    utterances_dispatched: int = 0
    utterances_discarded: int = 0
    dispatch_failures: int = 0
    recognizer_starts: int = 0
    recognizer_errors: int = 0
    recognizer_reconnects: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time > 0 else time.time()
        return end - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "stream_sid": self.stream_sid,
            "duration_seconds": round(self.duration_seconds, 2),
            "frames_received": self.frames_received,
            "frames_forwarded": self.frames_forwarded,
            "frames_flushed": self.frames_flushed,
            "frames_dropped": self.frames_dropped,
            "malformed_messages": self.malformed_messages,
            "transcripts": self.transcripts,
            "suppressed_transcripts": self.suppressed_transcripts,
            "utterances_dispatched": self.utterances_dispatched,
            "utterances_discarded": self.utterances_discarded,
            "dispatch_failures": self.dispatch_failures,
            "recognizer_starts": self.recognizer_starts,
            "recognizer_errors": self.recognizer_errors,
            "recognizer_reconnects": self.recognizer_reconnects,
        }


class CallSession:
    """
    Serialized state machine for one phone call.

    Use `start()` to launch the actor and the first recognizer connection,
    `handle_message()` to feed raw Twilio frames, and `destroy()` to tear down.
    `handle_event()` is the transition function; tests may drive it directly.
    """

    def __init__(
        self,
        call_id: str,
        *,
        bridge: DispatchBridge,
        language: Optional[str] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        config: Optional[Config] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.call_id = call_id
        self.stream_sid = ""
        self.call_sid = ""
        self._bridge = bridge
        self._connection_factory = connection_factory or partial(DeepgramConnection, config=config)
        self._log = logger.bind(call_id=call_id)

        self.lock = LanguageLock(
            default_language=config.default_language,
            supported=tuple(config.supported_languages),
            default_votes_required=config.language_default_votes,
            unclassified_limit=config.language_unclassified_limit,
        )
        self.preselected_language = language
        if language:
            self.lock.confirm(language)

        self._buffer = FrameBuffer(config.audio_buffer_capacity)
        self._aggregator = UtteranceAggregator(min_chars=config.min_utterance_chars)
        # Default-language finals heard while the lock votes; they open the first utterance.
        self._voting_fragments: List[str] = []

        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._actor_task: Optional[asyncio.Task] = None
        self._destroyed = False

        # Recognizer connection
        self._connection: Optional[RecognizerConnection] = None
        self._connection_ready = False
        self._switching = False
        self._next_connection_id = 0
        self._language_hint = language or AUTO_DETECT_HINT
        self._reconnect_attempts = 0
        self._reconnect_generation = 0
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._open_tasks: Set[asyncio.Task] = set()
        self._close_tasks: Set[asyncio.Task] = set()

        # Timers
        self._silence_handle: Optional[asyncio.TimerHandle] = None
        self._silence_generation = 0
        self._speech_lock_handle: Optional[asyncio.TimerHandle] = None
        self._speech_lock_generation = 0
        self._speech_locked = False
        self._speech_lock_until = 0.0

        self._dispatch_tasks: Set[asyncio.Task] = set()
        self.metrics = CallMetrics(call_id=call_id)

    # ------------------------------------------------------------------ state

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    @property
    def language(self) -> Optional[str]:
        return self.lock.language

    @property
    def language_hint(self) -> str:
        return self._language_hint

    @property
    def connection(self) -> Optional[RecognizerConnection]:
        return self._connection

    @property
    def recognizer_ready(self) -> bool:
        return self._connection is not None and self._connection_ready and not self._switching

    @property
    def is_switching(self) -> bool:
        return self._switching

    @property
    def speech_locked(self) -> bool:
        return self._speech_locked

    @property
    def speech_lock_until(self) -> float:
        return self._speech_lock_until

    @property
    def buffered_frames(self) -> int:
        return len(self._buffer)

    @property
    def pending_text(self) -> str:
        return self._aggregator.text

    @property
    def twilio_call_sid(self) -> str:
        return self.call_sid or self.call_id

    # -------------------------------------------------------------- lifecycle

    async def start(self) -> None:
        """Launch the actor and open the first recognizer connection."""
        if self._destroyed or self._actor_task is not None:
            return
        self._log.info(
            "Call session started",
            language=self.lock.language,
            language_hint=self._language_hint,
        )
        self._actor_task = asyncio.create_task(self._run())
        self._start_recognizer(self._language_hint, reason="session_start")

    async def destroy(self, reason: str = "destroyed") -> None:
        """
        Tear the session down. Idempotent.

        After this returns the session holds no connection, no timers and no
        in-flight dispatches; any event posted later is ignored.
        """
        if self._destroyed:
            return
        self._destroyed = True

        task = self._actor_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._release(reason)

    async def _release(self, reason: str) -> None:
        self._cancel_silence_timer()
        self._cancel_speech_lock()
        if self._reconnect_handle:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

        current = asyncio.current_task()
        pending = [t for t in self._dispatch_tasks | self._open_tasks if not t.done() and t is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        connection = self._connection
        self._connection = None
        self._connection_ready = False
        if connection is not None:
            await self._close_connection(connection)
        if self._close_tasks:
            await asyncio.gather(*list(self._close_tasks), return_exceptions=True)

        self.metrics.frames_dropped = self._buffer.total_dropped
        self._buffer.clear()
        self._aggregator.clear()
        self._voting_fragments.clear()

        self.metrics.end_time = time.time()
        self._log.info("Call session ended", reason=reason, language=self.lock.language, metrics=self.metrics.to_dict())

    def post(self, event: SessionEvent) -> None:
        """Queue an event for the actor. No-op once destroyed."""
        if self._destroyed:
            return
        self._queue.put_nowait(event)

    async def _run(self) -> None:
        while not self._destroyed:
            event = await self._queue.get()
            try:
                await self.handle_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._log.error(
                    "Session event handler error",
                    event=event.type.value,
                    error_type=type(e).__name__,
                    error=str(e),
                )

    # ---------------------------------------------------------- Twilio input

    async def handle_message(self, raw_message: str) -> None:
        """
        Handle an incoming WebSocket message from Twilio.

        Malformed frames are discarded; the session keeps running.
        """
        if self._destroyed:
            return
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            self.metrics.malformed_messages += 1
            self._log.warning("Failed to parse Twilio message", error=str(e))
            return

        if event_type == TwilioEventType.MEDIA:
            media: TwilioMediaEvent = event
            if media.is_inbound and media.payload:
                self.post(SessionEvent(SessionEventType.FRAME_ARRIVED, data=media.payload))

        elif event_type == TwilioEventType.START:
            self.post(SessionEvent(SessionEventType.STREAM_STARTED, data=event))

        elif event_type == TwilioEventType.STOP:
            self.post(SessionEvent(SessionEventType.STREAM_STOPPED))

        elif event_type == TwilioEventType.DTMF:
            self._log.info("DTMF received", digit=event.digit)

        else:
            self._log.debug("Twilio event", event_type=event_type.value)

    # ------------------------------------------------------------ transitions

    async def handle_event(self, event: SessionEvent) -> None:
        """Apply one event to the session state."""
        if self._destroyed:
            return

        kind = event.type
        if kind == SessionEventType.FRAME_ARRIVED:
            await self._on_frame(event.data)

        elif kind == SessionEventType.TRANSCRIPT_RECEIVED:
            await self._on_transcript(event.connection_id, event.data)

        elif kind == SessionEventType.CONNECTION_READY:
            await self._on_connection_ready(event.connection_id)

        elif kind == SessionEventType.CONNECTION_ERROR:
            self.metrics.recognizer_errors += 1
            self._log.error(
                "Recognizer error",
                connection_id=event.connection_id,
                current=event.connection_id == self._current_connection_id,
                error=event.data,
            )

        elif kind == SessionEventType.CONNECTION_CLOSED:
            self._on_connection_closed(event.connection_id, event.data)

        elif kind == SessionEventType.RECONNECT_DUE:
            if event.generation == self._reconnect_generation and self._connection is None:
                self._reconnect_handle = None
                self._start_recognizer(self._language_hint, reason="reconnect")

        elif kind == SessionEventType.SILENCE_TIMEOUT:
            self._on_silence_timeout(event.generation)

        elif kind == SessionEventType.SPEECH_LOCK_EXPIRED:
            self._on_speech_lock_expired(event.generation)

        elif kind == SessionEventType.REPLY_RECEIVED:
            self._on_reply(event.data)

        elif kind == SessionEventType.STREAM_STARTED:
            self._on_stream_started(event.data)

        elif kind == SessionEventType.STREAM_STOPPED:
            self._log.info("Stream stopped")
            await self.destroy(reason="stream_stopped")

        elif kind == SessionEventType.DESTROY:
            await self.destroy(reason=str(event.data or "destroy_event"))

    def _on_stream_started(self, start: TwilioStartEvent) -> None:
        self.stream_sid = start.stream_sid
        self.call_sid = start.call_sid or self.call_sid
        self.metrics.stream_sid = start.stream_sid
        self._log.info(
            "Stream started",
            call_sid=self.call_sid,
            stream_sid=self.stream_sid,
            tracks=start.tracks,
        )
        if self.config.notify_call_start:
            self._dispatch(CALL_START_SENTINEL, kind="call_start")

    # ----------------------------------------------------------------- audio

    async def _on_frame(self, frame: bytes) -> None:
        self.metrics.frames_received += 1
        if self.lock.escalated:
            return

        if self.recognizer_ready:
            await self._connection.send_audio(frame)
            self.metrics.frames_forwarded += 1
            return

        if not self._buffer.append(frame) and self._buffer.dropped == 1:
            self._log.warning(
                "Audio buffer full; dropping frames",
                capacity=self._buffer.capacity,
                switching=self._switching,
            )

    async def _on_connection_ready(self, connection_id: int) -> None:
        if connection_id != self._current_connection_id:
            self._log.debug("Ignoring ready from stale recognizer connection", connection_id=connection_id)
            return

        self._connection_ready = True
        self._switching = False
        dropped = self._buffer.dropped
        buffered_ms = self._buffer.buffered_ms
        frames = self._buffer.drain()
        connection = self._connection
        for frame in frames:
            await connection.send_audio(frame)
        self.metrics.frames_flushed += len(frames)

        self._log.info(
            "Recognizer ready",
            connection_id=connection_id,
            language_hint=self._language_hint,
            flushed_frames=len(frames),
            flushed_ms=buffered_ms,
            dropped_frames=dropped,
        )

    # ------------------------------------------------------------ recognizer

    @property
    def _current_connection_id(self) -> Optional[int]:
        return self._connection.connection_id if self._connection is not None else None

    def _start_recognizer(self, language_hint: str, *, reason: str) -> None:
        """
        Replace the recognizer connection.

        The old connection is detached at once (no audio reaches it again) and
        closed in the background; frames are buffered until the new one is ready.
        """
        if self._destroyed:
            return

        previous = self._connection
        if previous is not None:
            self._switching = True
            self._track(self._close_tasks, self._close_connection(previous))

        self._next_connection_id += 1
        self._language_hint = language_hint
        self._connection_ready = False
        connection = self._connection_factory(
            self._next_connection_id,
            language_hint,
            on_ready=self._cb_ready,
            on_transcript=self._cb_transcript,
            on_error=self._cb_error,
            on_closed=self._cb_closed,
        )
        self._connection = connection
        self.metrics.recognizer_starts += 1
        self._log.info(
            "Starting recognizer",
            connection_id=connection.connection_id,
            language_hint=language_hint,
            reason=reason,
            switching=self._switching,
        )
        self._track(self._open_tasks, self._open_connection(connection))

    def _track(self, tasks: Set[asyncio.Task], coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)
        return task

    async def _open_connection(self, connection: RecognizerConnection) -> None:
        try:
            ok = await connection.connect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.error("Recognizer connect error", connection_id=connection.connection_id, error=str(e))
            ok = False
        if not ok:
            self.post(
                SessionEvent(
                    SessionEventType.CONNECTION_CLOSED,
                    data="connect_failed",
                    connection_id=connection.connection_id,
                )
            )

    async def _close_connection(self, connection: RecognizerConnection) -> None:
        try:
            await connection.close()
        except Exception as e:
            self._log.warning("Error closing recognizer", connection_id=connection.connection_id, error=str(e))

    def _on_connection_closed(self, connection_id: int, reason: Any) -> None:
        if connection_id != self._current_connection_id:
            return

        self._connection = None
        self._connection_ready = False
        self._switching = False
        if self.lock.escalated:
            return

        if self._reconnect_attempts >= self.config.recognizer_max_reconnects:
            self._log.error(
                "Recognizer closed; reconnect limit reached",
                connection_id=connection_id,
                reason=reason,
                attempts=self._reconnect_attempts,
            )
            return

        self._reconnect_attempts += 1
        self.metrics.recognizer_reconnects += 1
        delay = min(RECONNECT_BACKOFF_BASE_S * (2 ** (self._reconnect_attempts - 1)), RECONNECT_BACKOFF_MAX_S)
        self._reconnect_generation += 1
        self._log.warning(
            "Recognizer closed; reconnecting",
            connection_id=connection_id,
            reason=reason,
            attempt=self._reconnect_attempts,
            delay_s=delay,
        )
        self._reconnect_handle = asyncio.get_running_loop().call_later(
            delay,
            self.post,
            SessionEvent(SessionEventType.RECONNECT_DUE, generation=self._reconnect_generation),
        )

    # Recognizer callbacks only post; state changes happen in the actor.
    def _cb_ready(self, connection_id: int) -> None:
        self.post(SessionEvent(SessionEventType.CONNECTION_READY, connection_id=connection_id))

    def _cb_transcript(self, connection_id: int, result: TranscriptionResult) -> None:
        self.post(SessionEvent(SessionEventType.TRANSCRIPT_RECEIVED, data=result, connection_id=connection_id))

    def _cb_error(self, connection_id: int, message: str) -> None:
        self.post(SessionEvent(SessionEventType.CONNECTION_ERROR, data=message, connection_id=connection_id))

    def _cb_closed(self, connection_id: int, reason: str) -> None:
        self.post(SessionEvent(SessionEventType.CONNECTION_CLOSED, data=reason, connection_id=connection_id))

    # ------------------------------------------------------------ transcripts

    async def _on_transcript(self, connection_id: int, result: TranscriptionResult) -> None:
        if connection_id != self._current_connection_id:
            return

        self.metrics.transcripts += 1
        # A transcript proves the connection works again.
        self._reconnect_attempts = 0

        if self._speech_locked:
            self.metrics.suppressed_transcripts += 1
            self._log.debug("Transcript suppressed during playback", text=result.text[:50], is_final=result.is_final)
            return

        if self.lock.escalated:
            return

        text = (result.text or "").strip()
        if not text:
            return

        if not result.is_final:
            # Caller still talking: hold off the pending utterance.
            if self.lock.is_confirmed and self._aggregator:
                self._arm_silence_timer()
            return

        if not self.lock.is_confirmed:
            self._observe_language(result.detected_language, text)
            return

        self._aggregator.append(text)
        self._arm_silence_timer()
        self._log.debug(
            "Utterance fragment",
            text=text[:100],
            confidence=round(result.confidence, 3),
            speech_final=result.speech_final,
            pending_chars=len(self._aggregator.text),
        )

    def _observe_language(self, asserted: Optional[str], text: str) -> None:
        outcome = self.lock.observe(asserted, text)
        detected = self.lock.history[-1] if self.lock.history else None
        self._log.info(
            "Language decision",
            outcome=outcome.value,
            asserted_language=asserted,
            detected_language=detected,
            language=self.lock.language,
            default_votes=self.lock.default_votes,
            unclassified=self.lock.unclassified,
        )

        if outcome == LockOutcome.PENDING:
            if detected == self.lock.default_language:
                self._voting_fragments.append(text)

        elif outcome == LockOutcome.CONFIRMED_DEFAULT:
            self._aggregator.extend(self._voting_fragments + [text])
            self._voting_fragments.clear()
            self._arm_silence_timer()

        elif outcome == LockOutcome.CONFIRMED_OTHER:
            self._voting_fragments.clear()
            self._start_recognizer(self.lock.language, reason="language_locked")
            self._dispatch(LANGUAGE_SWITCH_SENTINEL, kind="language_switch")

        elif outcome == LockOutcome.ESCALATED:
            self._escalate()

    def _escalate(self) -> None:
        """Hand the caller to the keypad language menu and go quiet."""
        self._log.warning(
            "Language undetermined; redirecting to language menu",
            unclassified=self.lock.unclassified,
            default_votes=self.lock.default_votes,
        )
        self._cancel_silence_timer()
        self._aggregator.clear()
        self._voting_fragments.clear()
        self._buffer.clear()

        connection = self._connection
        self._connection = None
        self._connection_ready = False
        self._switching = False
        if connection is not None:
            self._track(self._close_tasks, self._close_connection(connection))

        # No turn still in flight may push its reply over the menu redirect.
        inflight = [t for t in self._dispatch_tasks if not t.done()]
        for task in inflight:
            task.cancel()
        self._track(self._dispatch_tasks, self._redirect_to_menu(inflight))

    async def _redirect_to_menu(self, inflight: List[asyncio.Task]) -> None:
        if inflight:
            await asyncio.gather(*inflight, return_exceptions=True)
        menu_url = f"{self.config.base_url}/language-menu"
        await self._bridge.update_call(self.twilio_call_sid, redirect_twiml(menu_url))

    # ----------------------------------------------------------------- timers

    def _arm_silence_timer(self) -> None:
        self._cancel_silence_timer()
        self._silence_generation += 1
        self._silence_handle = asyncio.get_running_loop().call_later(
            self.config.silence_window_seconds,
            self.post,
            SessionEvent(SessionEventType.SILENCE_TIMEOUT, generation=self._silence_generation),
        )

    def _cancel_silence_timer(self) -> None:
        if self._silence_handle:
            self._silence_handle.cancel()
            self._silence_handle = None

    def _on_silence_timeout(self, generation: int) -> None:
        if generation != self._silence_generation:
            return
        self._silence_handle = None
        if self.lock.escalated or self._speech_locked:
            # Pending text waits for the speech lock to expire.
            return

        text = self._aggregator.take()
        if text is None:
            self.metrics.utterances_discarded += 1
            self._log.debug("Pending utterance discarded as noise")
            return

        self._log.info("Utterance complete", text=text[:100], language=self.lock.language)
        self._dispatch(text, kind="utterance")

    def _arm_speech_lock(self, duration_s: float) -> None:
        self._cancel_speech_lock()
        self._speech_lock_generation += 1
        loop = asyncio.get_running_loop()
        self._speech_locked = True
        self._speech_lock_until = loop.time() + duration_s
        self._speech_lock_handle = loop.call_later(
            duration_s,
            self.post,
            SessionEvent(SessionEventType.SPEECH_LOCK_EXPIRED, generation=self._speech_lock_generation),
        )

    def _cancel_speech_lock(self) -> None:
        if self._speech_lock_handle:
            self._speech_lock_handle.cancel()
            self._speech_lock_handle = None

    def _on_speech_lock_expired(self, generation: int) -> None:
        if generation != self._speech_lock_generation:
            return
        self._speech_lock_handle = None
        self._speech_locked = False
        self._log.debug("Speech lock expired", pending=bool(self._aggregator))
        if self._aggregator:
            self._arm_silence_timer()

    # --------------------------------------------------------------- dispatch

    def _on_reply(self, reply: DecisionReply) -> None:
        duration = estimate_from_config(reply.spoken_text, self.config)
        self._arm_speech_lock(duration)
        self._log.info(
            "Speech lock armed",
            duration_s=round(duration, 2),
            spoken_words=len(reply.spoken_text.split()),
        )

    def _dispatch(self, text: str, *, kind: str) -> None:
        self._track(self._dispatch_tasks, self._run_dispatch(text, kind))

    async def _run_dispatch(self, text: str, kind: str) -> None:
        reply = await self._bridge.dispatch(
            text,
            call_sid=self.twilio_call_sid,
            stream_sid=self.stream_sid,
            language=self.lock.language or "",
            on_reply=self._reply_arrived,
            is_active=self._accepts_replies,
        )
        if reply is None:
            if not self._accepts_replies():
                return
            self.metrics.dispatch_failures += 1
            self._log.warning("Turn dropped", kind=kind)
        elif kind == "utterance":
            self.metrics.utterances_dispatched += 1

    def _accepts_replies(self) -> bool:
        return not self._destroyed and not self.lock.escalated

    def _reply_arrived(self, reply: DecisionReply) -> None:
        self.post(SessionEvent(SessionEventType.REPLY_RECEIVED, data=reply))
