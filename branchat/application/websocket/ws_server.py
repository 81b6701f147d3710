from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional
from datetime import datetime
import asyncio
import pydantic
import structlog

from .connection_manager import WebSocketSink
from .schema.events import EventType, UserMessage
from application.container import Container, build_container
from domain.context.context_assembler import ContextOptions
from domain.errors import BranchatError, ValidationError
from domain.orchestration.chat_service import ChatOptions
from infrastructure.config.settings import get_settings
from infrastructure.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def parse_chat_options(raw: Optional[dict]) -> ChatOptions:
    """Client-supplied options; context flags may be given at the top level"""

    raw = dict(raw or {})
    context_fields = set(ContextOptions.model_fields)
    context = {k: raw.pop(k) for k in list(raw) if k in context_fields}
    if context:
        raw["context"] = ContextOptions(**context)
    return ChatOptions(**raw)


def create_app(container: Optional[Container] = None) -> FastAPI:
    """Create the streaming server around a service container"""

    if container is None:
        settings = get_settings()
        setup_logging(
            log_level=settings.log_level,
            log_format=settings.log_format,
            service_name=settings.service_name,
            environment=settings.environment
        )
        container = build_container(settings)

    app = FastAPI(title="BranChat Context Service")
    app.state.container = container

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        await container.startup()
        logger.info("WebSocket server started")

    @app.on_event("shutdown")
    async def shutdown_event():
        await container.shutdown()
        logger.info("WebSocket server shutdown")

    @app.websocket("/ws/stream/{client_id}")
    async def stream_websocket(websocket: WebSocket, client_id: str):
        """One streamed turn per connection; closed once the stream ends"""

        engine = container.streaming_engine
        await websocket.accept()

        sink = WebSocketSink(websocket, client_id)
        session = await engine.initialize(client_id, sink)
        await engine.start_heartbeat(client_id)
        structlog.contextvars.bind_contextvars(client_id=client_id)

        try:
            while session.is_live:
                data = await websocket.receive_json()

                if data.get("type") != EventType.USER_MESSAGE.value:
                    await engine.send_error(client_id, ValidationError(
                        f"Unsupported event type: {data.get('type')}", code="UNSUPPORTED_EVENT"
                    ))
                    continue

                try:
                    message = UserMessage(**data)
                    options = parse_chat_options(message.options)
                except pydantic.ValidationError as e:
                    await engine.send_error(client_id, ValidationError(str(e)))
                    continue

                structlog.contextvars.bind_contextvars(conversation_id=message.conversation_id)
                if not await run_turn(client_id, websocket, message, options):
                    break

        except WebSocketDisconnect:
            logger.info("Client disconnected", client_id=client_id)
        except Exception as e:
            logger.error("WebSocket error", error=str(e), client_id=client_id)
        finally:
            await engine.disconnect(client_id)
            # Finished sessions leave the registry without closing their socket
            await sink.close()
            structlog.contextvars.unbind_contextvars("client_id", "conversation_id")

    async def run_turn(client_id: str, websocket: WebSocket, message: UserMessage, options: ChatOptions) -> bool:
        """Stream one turn while watching the socket; False once the client is gone"""

        engine = container.streaming_engine
        turn = asyncio.create_task(container.chat_service.stream_message(
            client_id,
            message.conversation_id,
            message.content,
            options
        ))

        try:
            while not turn.done():
                watcher = asyncio.create_task(websocket.receive())
                try:
                    done, _ = await asyncio.wait({turn, watcher}, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    if not watcher.done():
                        watcher.cancel()

                if watcher not in done:
                    break

                incoming = watcher.result()
                if incoming["type"] == "websocket.disconnect":
                    logger.info("Client disconnected during streaming", client_id=client_id)
                    await engine.disconnect(client_id)
                    turn.cancel()
                    await asyncio.gather(turn, return_exceptions=True)
                    return False

                await engine.send_error(client_id, ValidationError(
                    "A stream is already in progress", code="STREAM_IN_PROGRESS"
                ))
        except asyncio.CancelledError:
            turn.cancel()
            raise

        try:
            await turn
        except BranchatError as e:
            logger.warning("Stream request rejected", code=e.code, error=e.message)
            await engine.send_error(client_id, e)
        return True

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "active_streams": container.streaming_engine.connected_client_count(),
            "memory_available": container.memory_index.is_available,
            "memory_vector_support": container.memory_index.supports_vector_search,
            "embedding_failures": container.embedding_queue.failed,
            "usage": container.usage_tracker.current_stats(),
            "timestamp": datetime.utcnow().isoformat()
        }

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("application.websocket.ws_server:create_app", factory=True, host="0.0.0.0", port=8000)
