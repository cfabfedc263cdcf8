"""
Deepgram streaming speech recognition connection.

- Accepts mu-law 8kHz directly from Twilio (no conversion needed)
- One connection per language hint; "multi" lets Deepgram code-switch/auto-detect
- Lifecycle is reported through callbacks (ready / transcript / error / closed)
  so the owning call session can serialize them onto its own event queue
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.relay.audio import TWILIO_CHANNELS, TWILIO_ENCODING, TWILIO_SAMPLE_RATE, get_audio_duration_ms
from src.relay.config import get_config

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"

# Language hint that asks the recognizer to detect the spoken language itself.
AUTO_DETECT_HINT = "multi"


@dataclass
class TranscriptionResult:
    """Result from STT."""
    text: str
    is_final: bool
    confidence: float = 0.0
    speech_final: bool = False
    detected_language: Optional[str] = None


@dataclass
class STTMetrics:
    """Metrics for one recognizer connection."""
    total_audio_ms: float = 0.0
    frames_sent: int = 0
    total_transcripts: int = 0
    final_transcripts: int = 0

    def record_transcript(self, is_final: bool) -> None:
        self.total_transcripts += 1
        if is_final:
            self.final_transcripts += 1


ReadyCallback = Callable[[int], None]
TranscriptCallback = Callable[[int, TranscriptionResult], None]
ErrorCallback = Callable[[int, str], None]
ClosedCallback = Callable[[int, str], None]


def _noop(*_args: Any) -> None:
    return None


class RecognizerConnection(ABC):
    """
    A single streaming recognition connection.

    Callbacks receive the connection id first so that events from a connection
    that has since been replaced can be told apart from the live one.
    """

    def __init__(
        self,
        connection_id: int,
        language: str,
        *,
        on_ready: Optional[ReadyCallback] = None,
        on_transcript: Optional[TranscriptCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_closed: Optional[ClosedCallback] = None,
    ):
        self.connection_id = connection_id
        self.language = language
        self._on_ready = on_ready or _noop
        self._on_transcript = on_transcript or _noop
        self._on_error = on_error or _noop
        self._on_closed = on_closed or _noop

    @abstractmethod
    async def connect(self) -> bool:
        """Open the connection. Calls on_ready and returns True on success."""
        raise NotImplementedError

    @abstractmethod
    async def send_audio(self, audio_bytes: bytes) -> None:
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError


def build_listen_url(language: str, *, model: str, endpointing_ms: int) -> str:
    """Deepgram live URL for Twilio-format audio."""
    params = {
        "model": model,
        "language": language or AUTO_DETECT_HINT,
        "punctuate": "true",
        "interim_results": "true",
        "endpointing": str(endpointing_ms),
        "encoding": TWILIO_ENCODING,
        "sample_rate": str(TWILIO_SAMPLE_RATE),
        "channels": str(TWILIO_CHANNELS),
    }
    return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"


def extract_asserted_language(data: dict) -> Optional[str]:
    """
    Best-effort extraction of the language Deepgram asserts for a result.

    In multilingual mode Deepgram lists languages per alternative; with
    detect_language it may instead report `detected_language` at top-level,
    under `metadata`, or under `channel` depending on model/endpoint.
    """
    channel = data.get("channel")
    if isinstance(channel, dict):
        alternatives = channel.get("alternatives") or []
        if alternatives and isinstance(alternatives[0], dict):
            languages = alternatives[0].get("languages")
            if isinstance(languages, list):
                for value in languages:
                    if isinstance(value, str) and value.strip():
                        return value.strip()

    candidates: list[dict] = [data]
    metadata = data.get("metadata")
    if isinstance(metadata, dict):
        candidates.append(metadata)
    if isinstance(channel, dict):
        candidates.append(channel)

    for c in candidates:
        value = c.get("detected_language")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class DeepgramConnection(RecognizerConnection):
    """
    Deepgram streaming STT connection using a raw WebSocket.
    """

    def __init__(
        self,
        connection_id: int,
        language: str,
        *,
        config: Optional[Any] = None,
        **callbacks: Any,
    ):
        super().__init__(connection_id, language, **callbacks)
        if config is None:
            config = get_config()
        self.config = config
        self._ws = None
        self._is_connected = False
        self._closing = False
        self._receive_task: Optional[asyncio.Task] = None
        self._metrics = STTMetrics()

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    async def connect(self) -> bool:
        """Connect to Deepgram streaming API."""
        if self._is_connected:
            return True

        url = build_listen_url(
            self.language,
            model=self.config.deepgram_model,
            endpointing_ms=self.config.deepgram_endpointing_ms,
        )
        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}

        try:
            logger.info(
                "Connecting to Deepgram",
                connection_id=self.connection_id,
                language=self.language,
                model=self.config.deepgram_model,
            )
            self._ws = await websockets.connect(url, additional_headers=headers, open_timeout=10)
        except Exception as e:
            logger.error(
                "Deepgram connection failed",
                connection_id=self.connection_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            self._on_error(self.connection_id, f"{type(e).__name__}: {e}")
            return False

        if self._closing:
            # Closed while the handshake was in flight.
            await self._ws.close()
            self._ws = None
            return False

        self._is_connected = True
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Deepgram STT connected", connection_id=self.connection_id, language=self.language)
        self._on_ready(self.connection_id)
        return True

    async def close(self) -> None:
        """Finish the stream and disconnect from Deepgram."""
        self._closing = True
        was_connected = self._is_connected
        self._is_connected = False

        if self._ws and was_connected:
            try:
                await self._ws.send(json.dumps({"type": "CloseStream"}))
            except Exception as e:
                logger.debug("CloseStream not delivered", connection_id=self.connection_id, error=str(e))

        if self._receive_task and self._receive_task is not asyncio.current_task():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        logger.info(
            "Deepgram STT disconnected",
            connection_id=self.connection_id,
            audio_ms=round(self._metrics.total_audio_ms),
            transcripts=self._metrics.total_transcripts,
        )

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Send audio data to Deepgram."""
        if not self._is_connected or not self._ws:
            return

        try:
            await self._ws.send(audio_bytes)
            self._metrics.frames_sent += 1
            self._metrics.total_audio_ms += get_audio_duration_ms(audio_bytes)
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", connection_id=self.connection_id, error=str(e))

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        reason = "remote_closed"
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                    continue
                self._handle_message(data)
        except websockets.exceptions.ConnectionClosed as e:
            reason = f"connection_closed:{getattr(e, 'code', '')}"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"receive_error:{type(e).__name__}"
            logger.error("Deepgram receive loop error", connection_id=self.connection_id, error=str(e))
            self._on_error(self.connection_id, str(e))
        finally:
            self._is_connected = False

        if not self._closing:
            logger.warning("Deepgram connection closed unexpectedly", connection_id=self.connection_id, reason=reason)
            self._on_closed(self.connection_id, reason)

    def _handle_message(self, data: dict) -> None:
        """Handle a message from Deepgram."""
        msg_type = data.get("type", "")
        msg_type_norm = msg_type.lower() if isinstance(msg_type, str) else ""

        if msg_type_norm == "results":
            alternatives = (data.get("channel") or {}).get("alternatives") or []
            if not alternatives:
                return

            transcript = (alternatives[0].get("transcript") or "").strip()
            if not transcript:
                return

            is_final = bool(data.get("is_final", False))
            self._metrics.record_transcript(is_final)

            result = TranscriptionResult(
                text=transcript,
                is_final=is_final,
                confidence=float(alternatives[0].get("confidence") or 0.0),
                speech_final=bool(data.get("speech_final", False)),
                detected_language=extract_asserted_language(data),
            )
            logger.debug(
                "STT transcript",
                connection_id=self.connection_id,
                text=transcript[:50],
                is_final=is_final,
                detected_language=result.detected_language,
            )
            self._on_transcript(self.connection_id, result)

        elif msg_type_norm == "error":
            message = str(data.get("message") or data.get("description") or "Unknown")
            logger.error("Deepgram error", connection_id=self.connection_id, error=message, details=data)
            self._on_error(self.connection_id, message)

        elif msg_type_norm == "metadata":
            logger.debug("Deepgram metadata", connection_id=self.connection_id, request_id=data.get("request_id"))
