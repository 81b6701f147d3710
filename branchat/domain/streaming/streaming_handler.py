from typing import Dict, List, Optional
import asyncio
import time

import structlog
from pydantic import BaseModel

from application.websocket.connection_manager import EventSink
from application.websocket.schema.events import (
    BaseEvent, ConnectedData, ConnectedEvent, HeartbeatEvent,
    SaveErrorData, SaveErrorEvent, StreamCompleteData, StreamCompleteEvent,
    StreamErrorData, StreamErrorEvent, StreamStartData, StreamStartEvent,
    TokenData, TokenEvent
)
from domain.context.token_budget import estimate_tokens
from domain.errors import BranchatError, NotFoundError, ValidationError
from domain.generation.provider import GenerationOptions, GenerationProvider, LLMMessage
from domain.models.chat import Message, MessageMetadata, MessageRole
from domain.store.interfaces import MessageStore
from domain.streaming.session import StreamSession, StreamState

logger = structlog.get_logger(__name__)


class StreamOptions(BaseModel):
    """Per-stream generation and persistence settings"""
    temperature: float = 0.7
    max_tokens: int = 2000
    persist_partial: bool = False


class StreamingEngine:
    """Relays generated tokens to connected clients.

    Owns the registry of client sessions. Each session moves through
    INIT -> STREAMING -> COMPLETED | ERRORED | DISCONNECTED and sends
    nothing once it reaches a terminal state.
    """

    def __init__(
        self,
        provider: GenerationProvider,
        message_store: MessageStore,
        heartbeat_interval: float = 15.0
    ):
        self.provider = provider
        self.message_store = message_store
        self.heartbeat_interval = heartbeat_interval
        self.sessions: Dict[str, StreamSession] = {}
        self._lock = asyncio.Lock()

    async def initialize(self, client_id: str, sink: EventSink) -> StreamSession:
        """Register a client and confirm the connection"""

        async with self._lock:
            previous = self.sessions.get(client_id)

        if previous is not None:
            logger.warning("Replacing existing stream session", client_id=client_id)
            await self.disconnect(client_id)

        session = StreamSession(client_id, sink)
        async with self._lock:
            self.sessions[client_id] = session

        await session.emit(ConnectedEvent(payload=ConnectedData(client_id=client_id)))
        logger.info("Stream session initialized", client_id=client_id)

        return session

    def get_session(self, client_id: str) -> Optional[StreamSession]:
        return self.sessions.get(client_id)

    def is_client_connected(self, client_id: str) -> bool:
        session = self.sessions.get(client_id)
        return session is not None and session.is_live

    def connected_client_count(self) -> int:
        return sum(1 for s in self.sessions.values() if s.is_live)

    async def _release(self, session: StreamSession):
        """Drop a finished session from the registry"""

        async with self._lock:
            if self.sessions.get(session.client_id) is session:
                del self.sessions[session.client_id]
                logger.debug("Stream session released", client_id=session.client_id, state=session.state.value)

    async def _emit(self, session: StreamSession, event: BaseEvent) -> bool:
        if not session.is_live:
            return False
        if await session.emit(event):
            return True

        # A channel that cannot be written to is treated as a closed client
        await self.disconnect(session.client_id)
        return False

    async def send_custom_event(self, client_id: str, event: BaseEvent) -> bool:
        session = self.sessions.get(client_id)
        if session is None:
            return False
        return await self._emit(session, event)

    async def send_error(self, client_id: str, error: BranchatError) -> bool:
        """Report a rejected request without ending the session"""
        return await self.send_custom_event(
            client_id,
            StreamErrorEvent(payload=StreamErrorData(error=error.message, code=error.code))
        )

    async def broadcast_event(self, event: BaseEvent) -> int:
        """Send an event to every live session"""

        sent = 0
        for session in list(self.sessions.values()):
            if await self._emit(session, event.model_copy()):
                sent += 1

        logger.info("Event broadcasted to all clients", event_type=event.type.value, client_count=sent)
        return sent

    async def start_heartbeat(self, client_id: str, interval: Optional[float] = None):
        session = self.sessions.get(client_id)
        if session is None or not session.is_live:
            return

        session.stop_heartbeat()
        session.heartbeat = asyncio.create_task(
            self._heartbeat_loop(session, interval or self.heartbeat_interval)
        )

    async def _heartbeat_loop(self, session: StreamSession, interval: float):
        while session.is_live:
            await asyncio.sleep(interval)
            if not await self._emit(session, HeartbeatEvent()):
                break

    async def stream_generation(
        self,
        client_id: str,
        messages: List[LLMMessage],
        conversation_id: str,
        options: Optional[StreamOptions] = None
    ) -> Optional[Message]:
        """Stream a completion to the client and persist the result.

        Returns the stored assistant message, the stored partial message when
        ``persist_partial`` applies, or None.
        """

        session = self.sessions.get(client_id)
        if session is None:
            raise NotFoundError(f"Client {client_id} not found or disconnected", code="CLIENT_NOT_FOUND")
        if session.state != StreamState.INIT:
            raise ValidationError(
                f"Client {client_id} cannot start a stream in state {session.state.value}",
                code="STREAM_NOT_READY"
            )

        options = options or StreamOptions()

        await self._emit(session, StreamStartEvent(
            payload=StreamStartData(model=self.provider.model_name, conversation_id=conversation_id)
        ))
        if not session.is_live:
            return None
        session.transition(StreamState.STREAMING)

        session.task = asyncio.create_task(self._generate(session, messages, conversation_id, options))
        try:
            return await session.task
        except asyncio.CancelledError:
            if session.state == StreamState.DISCONNECTED:
                logger.info("Client disconnected during streaming", client_id=client_id)
                return None
            raise
        finally:
            session.task = None
            if session.is_terminal:
                await self._release(session)

    async def _generate(
        self,
        session: StreamSession,
        messages: List[LLMMessage],
        conversation_id: str,
        options: StreamOptions
    ) -> Optional[Message]:
        started = time.monotonic()
        generation_options = GenerationOptions(
            temperature=options.temperature,
            max_tokens=options.max_tokens
        )

        try:
            async for chunk in self.provider.complete_streaming(messages, generation_options):
                session.token_count += 1
                session.accumulated_text += chunk
                await self._emit(session, TokenEvent(
                    payload=TokenData(content=chunk, token_index=session.token_count)
                ))
                if not session.is_live:
                    return None
        except Exception as e:
            logger.error("LLM streaming failed", client_id=session.client_id, error=str(e))
            if not session.is_live:
                return None

            partial = None
            if options.persist_partial and session.accumulated_text:
                partial = await self._persist(session, conversation_id, started, partial=True)

            await session.finish(StreamState.ERRORED, StreamErrorEvent(payload=StreamErrorData(
                error=str(e),
                code=e.code if isinstance(e, BranchatError) else "STREAM_FAILED",
                partial_message_id=partial.id if partial else None
            )))
            return partial

        if not session.is_live:
            return None

        message = await self._persist(session, conversation_id, started)

        await session.finish(StreamState.COMPLETED, StreamCompleteEvent(payload=StreamCompleteData(
            message_id=message.id if message else None,
            full_response=session.accumulated_text,
            token_count=session.token_count,
            metadata=message.metadata.model_dump(exclude_none=True) if message else {}
        )))

        logger.info(
            "LLM streaming completed",
            client_id=session.client_id,
            token_count=session.token_count,
            response_length=len(session.accumulated_text)
        )
        return message

    async def _persist(
        self,
        session: StreamSession,
        conversation_id: str,
        started: float,
        partial: bool = False
    ) -> Optional[Message]:
        """Store the accumulated text as an assistant message"""

        message = Message(
            conversation_id=conversation_id,
            role=MessageRole.ASSISTANT,
            content=session.accumulated_text,
            metadata=MessageMetadata(
                tokens=estimate_tokens(session.accumulated_text),
                model=self.provider.model_name,
                processing_time=round((time.monotonic() - started) * 1000, 1),
                partial=partial
            )
        )

        try:
            return await self.message_store.append(message)
        except Exception as e:
            logger.error("Failed to save streamed message", client_id=session.client_id, partial=partial, error=str(e))
            await self._emit(session, SaveErrorEvent(payload=SaveErrorData(error=str(e))))
            return None

    async def disconnect(self, client_id: str):
        """Tear down a client session; no event is sent"""

        async with self._lock:
            session = self.sessions.pop(client_id, None)
        if session is None:
            return

        if session.is_live:
            session.transition(StreamState.DISCONNECTED)
        session.stop_heartbeat()

        if session.task is not None and session.task is not asyncio.current_task():
            session.task.cancel()

        try:
            await session.sink.close()
        except Exception as e:
            logger.warning("Error closing client sink", client_id=client_id, error=str(e))

        logger.info("Client disconnected and cleaned up", client_id=client_id)

    async def disconnect_all(self):
        """Disconnect every client, for shutdown"""

        client_ids = list(self.sessions.keys())
        for client_id in client_ids:
            await self.disconnect(client_id)

        logger.info("All clients disconnected", count=len(client_ids))
