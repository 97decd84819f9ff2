"""
FastAPI server for the voice chat UI bridge.

Endpoints:
- GET /health: Health check (includes backend reachability)
- GET /metrics: JSON metrics
- GET /conversations: Stored conversation summaries
- WS /ws: UI bridge WebSocket (one coordinator per connection)
"""

import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.voicechat.config import get_config, init_config, ConfigError
from src.voicechat.conversation import ConversationStore, JsonConversationStore
from src.voicechat.transport import ChatTransport, HttpChatTransport


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
    commands_handled: int = 0
    commands_rejected: int = 0
    errors: int = 0
    sessions: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "commands_handled": self.commands_handled,
            "commands_rejected": self.commands_rejected,
            "errors": self.errors,
            "recent_sessions": self.sessions[-10:],
        }


# Global state
metrics = ServerMetrics()
_transport: Optional[ChatTransport] = None
_store: Optional[ConversationStore] = None


def get_transport() -> ChatTransport:
    global _transport
    if _transport is None:
        _transport = HttpChatTransport(get_config())
    return _transport


def get_store() -> ConversationStore:
    global _store
    if _store is None:
        config = get_config()
        _store = JsonConversationStore(
            config.conversations_path,
            title_chars=config.conversation_title_chars,
        )
    return _store


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global _transport

    logger.info("Starting voice chat bridge...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        if not await get_transport().check_health():
            logger.warning("Chat backend not reachable yet", api_base_url=config.api_base_url)

        logger.info(
            "Server ready",
            host=config.host,
            port=config.port,
            api_base_url=config.api_base_url,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    if _transport is not None:
        await _transport.aclose()
        _transport = None


app = FastAPI(
    title="Voice Chat Bridge",
    description="Streaming voice chat turns between a browser UI and the chat backend",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    backend_ok = await get_transport().check_health()
    return JSONResponse(
        content={
            "status": "healthy",
            "backend": "reachable" if backend_ok else "unreachable",
            "timestamp": time.time(),
            "active_connections": metrics.active_connections,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.get("/conversations")
async def list_conversations() -> JSONResponse:
    return JSONResponse(content=[c.to_dict() for c in get_store().list_conversations()])


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    UI bridge WebSocket endpoint.

    Each connection gets its own coordinator; malformed messages are logged
    and the connection stays open.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    connection_id = f"ui_{int(time.time() * 1000)}"
    logger.info(
        "WebSocket connected",
        connection_id=connection_id,
        active_connections=metrics.active_connections,
    )

    # Import here to avoid circular imports and speed up startup
    from src.voicechat.ui_bridge import UiBridge

    bridge = None

    try:
        bridge = UiBridge(websocket.send_text, get_transport(), store=get_store())
        await bridge.start()

        while True:
            try:
                message = await websocket.receive_text()
                await bridge.handle_message(message)

            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", connection_id=connection_id)
                break
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    connection_id=connection_id,
                    error=str(e),
                )
                metrics.errors += 1
                continue

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            connection_id=connection_id,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        if bridge:
            metrics.commands_handled += bridge.commands_handled
            metrics.commands_rejected += bridge.commands_rejected
            try:
                await bridge.close()
            except Exception as e:
                logger.error("Error closing bridge", error=str(e))
            metrics.sessions.append(
                {"connection_id": connection_id, **bridge.coordinator.metrics_dict()}
            )

        metrics.active_connections -= 1

        logger.info(
            "Connection ended",
            connection_id=connection_id,
            active_connections=metrics.active_connections,
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

    logger.info("Starting server", host=config.host, port=config.port)

    uvicorn.run(
        "server.app:app",
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
