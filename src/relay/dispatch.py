"""
Dispatch / call-update bridge.

Sends a completed utterance (or an out-of-band notification) to the decision
service and relays the TwiML it returns back to the live call.

Every attempt is one-shot: a non-2xx response or transport error is logged and
the turn is dropped; the caller simply has to speak again.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx
import structlog
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client as TwilioClient

from src.relay.config import get_config
from src.relay.twiml import extract_spoken_text

logger = structlog.get_logger(__name__)

# SpeechResult values for notifications that are not caller speech.
CALL_START_SENTINEL = "__CALL_START__"
LANGUAGE_SWITCH_SENTINEL = "__LANGUAGE_SWITCH__"


@dataclass
class DecisionReply:
    """Decision-service response: TwiML to push plus the text it will speak."""
    twiml: str
    spoken_text: str
    latency_ms: float = 0.0


class DecisionServiceClient:
    """Form-encoded POST client for the decision webhook."""

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        if config is None:
            config = get_config()
        self.config = config
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.config.decision_timeout_seconds))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def request(
        self,
        *,
        speech_result: str,
        call_sid: str,
        stream_sid: str,
        language: str,
    ) -> Optional[DecisionReply]:
        form = {
            "SpeechResult": speech_result,
            "CallSid": call_sid,
            "StreamSid": stream_sid or "",
            "Language": language or "",
        }
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            response = await self._get_client().post(self.config.decision_service_url, data=form)
        except httpx.HTTPError as e:
            logger.error(
                "Decision service request failed",
                call_sid=call_sid,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

        latency_ms = (loop.time() - started) * 1000
        if not response.is_success:
            logger.error(
                "Decision service returned error",
                call_sid=call_sid,
                status_code=response.status_code,
                response=response.text[:200],
            )
            return None

        twiml = response.text
        logger.info(
            "Decision service reply received",
            call_sid=call_sid,
            latency_ms=round(latency_ms, 2),
            bytes=len(twiml),
        )
        return DecisionReply(twiml=twiml, spoken_text=extract_spoken_text(twiml), latency_ms=latency_ms)


class CallControl:
    """
    Pushes TwiML to a live call through the Twilio REST API.

    Credentials are optional; without them updates are logged and skipped.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[TwilioClient] = None):
        if config is None:
            config = get_config()
        self.config = config
        self._client = client
        if self._client is None and config.twilio_account_sid and config.twilio_auth_token:
            self._client = TwilioClient(config.twilio_account_sid, config.twilio_auth_token)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def update_call(self, call_sid: str, twiml: str) -> bool:
        """Replace the call's current TwiML. Returns True on success."""
        if not self._client:
            logger.error("Cannot update call - missing Twilio credentials", call_sid=call_sid)
            return False
        if not call_sid:
            logger.warning("Cannot update call - missing call_sid")
            return False

        def _update():
            return self._client.calls(call_sid).update(twiml=twiml)

        try:
            call = await asyncio.to_thread(_update)
        except TwilioRestException as e:
            logger.error("Twilio update failed", call_sid=call_sid, status=e.status, error=str(e.msg))
            return False
        except Exception as e:
            logger.error("Error updating Twilio call", call_sid=call_sid, error=str(e))
            return False

        logger.info("Call updated", call_sid=call_sid, status=getattr(call, "status", "unknown"))
        return True


class DispatchBridge:
    """Decision request followed by the call update, as one turn."""

    def __init__(
        self,
        decision: Optional[DecisionServiceClient] = None,
        call_control: Optional[CallControl] = None,
        config: Optional[Any] = None,
    ):
        if config is None:
            config = get_config()
        self.config = config
        self.decision = decision or DecisionServiceClient(config)
        self.call_control = call_control or CallControl(config)

    async def request(self, text: str, *, call_sid: str, stream_sid: str, language: str) -> Optional[DecisionReply]:
        return await self.decision.request(
            speech_result=text,
            call_sid=call_sid,
            stream_sid=stream_sid,
            language=language,
        )

    async def update_call(self, call_sid: str, twiml: str) -> bool:
        return await self.call_control.update_call(call_sid, twiml)

    async def dispatch(
        self,
        text: str,
        *,
        call_sid: str,
        stream_sid: str,
        language: str,
        on_reply: Optional[Callable[[DecisionReply], None]] = None,
        is_active: Optional[Callable[[], bool]] = None,
    ) -> Optional[DecisionReply]:
        """
        Send one turn and push the reply to the call.

        `on_reply` runs before the call update, so whatever it arms is in place
        by the time the reply starts playing. When `is_active` returns False
        once the reply arrives, the reply is discarded and the call is left
        alone. Returns None when the turn was dropped.
        """
        reply = await self.request(text, call_sid=call_sid, stream_sid=stream_sid, language=language)
        if reply is None:
            return None

        if is_active is not None and not is_active():
            logger.info("Discarding reply for inactive call", call_sid=call_sid)
            return None

        if on_reply is not None:
            on_reply(reply)
        if reply.twiml.strip():
            # A push that has started completes even if this turn is cancelled.
            update = asyncio.ensure_future(self.update_call(call_sid, reply.twiml))
            try:
                await asyncio.shield(update)
            except asyncio.CancelledError:
                await update
                raise
        return reply

    async def aclose(self) -> None:
        await self.decision.aclose()
