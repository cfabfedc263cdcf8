"""
FastAPI server for the Twilio call relay.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /incoming-call, /twiml: TwiML that forks caller audio to /stream/{CallSid}
- POST /language-menu: Keypad language menu
- POST /language-selected: Restart the stream pinned to the chosen language
- WS /stream/{call_id}[/{language}]: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging

from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse
import structlog
import uvicorn

from src.relay.config import ConfigError, get_config, init_config
from src.relay.dispatch import DispatchBridge
from src.relay.registry import SessionRegistry
from src.relay.session import CallSession
from src.relay.twiml import language_for_digit, language_menu_twiml, redirect_twiml, stream_twiml


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    menu_requests: int = 0
    language_selections: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "menu_requests": self.menu_requests,
            "language_selections": self.language_selections,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting call relay server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        bridge = DispatchBridge(config=config)
        app.state.bridge = bridge
        app.state.registry = SessionRegistry(
            lambda call_id, language: CallSession(call_id, bridge=bridge, language=language, config=config)
        )

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            stream_url=config.stream_url("{CallSid}"),
            twilio_enabled=config.twilio_enabled,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    await app.state.registry.shutdown()
    await app.state.bridge.aclose()


app = FastAPI(
    title="Twilio Call Relay",
    description="Relays live call audio to streaming speech recognition and caller turns to a decision service",
    version="1.0.0",
    lifespan=lifespan,
)


async def _request_params(request: Request) -> Dict[str, str]:
    """Twilio webhook parameters from the form body (POST) or query string (GET)."""
    params = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({k: str(v) for k, v in form.items()})
    return params


def _twiml_response(twiml: str) -> Response:
    return Response(content=twiml, media_type="application/xml")


@app.get("/")
async def root() -> PlainTextResponse:
    return PlainTextResponse("Twilio call relay is running")


@app.get("/health")
async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint."""
    registry: Optional[SessionRegistry] = getattr(request.app.state, "registry", None)
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": registry.active_count if registry else 0,
        }
    )


@app.get("/metrics")
async def get_metrics(request: Request) -> JSONResponse:
    """Metrics endpoint."""
    content = metrics.to_dict()
    registry: Optional[SessionRegistry] = getattr(request.app.state, "registry", None)
    if registry:
        content.update(
            {
                "active_calls": registry.active_count,
                "total_calls": registry.total_admitted,
                "superseded_sessions": registry.superseded_count,
            }
        )
    return JSONResponse(content=content)


@app.post("/twiml")
@app.get("/twiml")
@app.post("/incoming-call")
@app.get("/incoming-call")
async def incoming_call(request: Request) -> Response:
    """
    Twilio voice webhook.

    Forks the caller's audio to our media-stream WebSocket and holds the line
    while the decision service drives the call through call updates.
    """
    config = get_config()
    params = await _request_params(request)
    call_sid = params.get("CallSid") or f"call_{int(time.time() * 1000)}"

    stream_url = config.stream_url(call_sid)
    logger.info("Incoming call", call_sid=call_sid, stream_url=stream_url)
    return _twiml_response(stream_twiml(stream_url))


@app.post("/language-menu")
@app.get("/language-menu")
async def language_menu(request: Request) -> Response:
    """Keypad menu offered when the caller's language cannot be determined."""
    config = get_config()
    params = await _request_params(request)
    metrics.menu_requests += 1

    logger.info("Language menu requested", call_sid=params.get("CallSid", ""))
    return _twiml_response(
        language_menu_twiml(
            config.supported_languages,
            action_url=f"{config.base_url}/language-selected",
            menu_url=f"{config.base_url}/language-menu",
        )
    )


@app.post("/language-selected")
@app.get("/language-selected")
async def language_selected(request: Request) -> Response:
    """Restart the media stream pinned to the language the caller picked."""
    config = get_config()
    params = await _request_params(request)
    call_sid = params.get("CallSid", "")
    digits = params.get("Digits", "")

    language = language_for_digit(digits, config.supported_languages)
    if language is None or not call_sid:
        logger.warning("Invalid language selection", call_sid=call_sid, digits=digits)
        return _twiml_response(redirect_twiml(f"{config.base_url}/language-menu"))

    metrics.language_selections += 1
    logger.info("Language selected", call_sid=call_sid, language=language)
    return _twiml_response(stream_twiml(config.stream_url(call_sid, language)))


@app.websocket("/stream/{call_id}")
@app.websocket("/stream/{call_id}/{language}")
async def media_stream(websocket: WebSocket, call_id: str, language: Optional[str] = None) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    One socket feeds one CallSession; a second socket for the same call id
    supersedes the first.
    """
    config = get_config()
    if language:
        language = language.strip().lower()
        if language not in config.supported_languages:
            logger.warning("Unsupported stream language; auto-detecting", call_id=call_id, language=language)
            language = None

    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    registry: SessionRegistry = websocket.app.state.registry
    session: Optional[CallSession] = None

    logger.info(
        "WebSocket connected",
        call_id=call_id,
        language=language,
        active_connections=metrics.active_connections,
    )

    try:
        session = await registry.admit(call_id, language)

        while not session.is_destroyed:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_id=call_id)
                break
            await session.handle_message(message)

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            call_id=call_id,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        if session is not None:
            try:
                await registry.remove(call_id, session)
            except Exception as e:
                logger.error("Error destroying call session", call_id=call_id, error=str(e))

        metrics.active_connections -= 1

        logger.info(
            "Stream ended",
            call_id=call_id,
            active_calls=registry.active_count,
        )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
