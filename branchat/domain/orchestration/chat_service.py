from typing import Optional
import time

import structlog
from pydantic import BaseModel

from application.websocket.schema.events import UserMessageData, UserMessageEvent
from domain.background.embedding_queue import EmbeddingQueue
from domain.context.context_assembler import ContextAssembler, ContextMetadata, ContextOptions
from domain.context.token_budget import estimate_tokens
from domain.errors import BranchatError, FatalError, NotFoundError, ValidationError
from domain.generation.provider import GenerationOptions, GenerationProvider
from domain.models.chat import Message, MessageMetadata, MessageRole
from domain.store.interfaces import ConversationStore, MessageStore
from domain.streaming.streaming_handler import StreamingEngine, StreamOptions

logger = structlog.get_logger(__name__)


class ChatOptions(BaseModel):
    """Per-turn generation and context settings"""
    temperature: float = 0.7
    max_tokens: int = 2000
    persist_partial: bool = False
    context: Optional[ContextOptions] = None


class ChatTurnResult(BaseModel):
    user_message: Message
    assistant_message: Message
    context_metadata: ContextMetadata


class ChatService:
    """Runs one user turn: persist, assemble context, generate, persist"""

    def __init__(
        self,
        message_store: MessageStore,
        conversation_store: ConversationStore,
        assembler: ContextAssembler,
        provider: GenerationProvider,
        streaming_engine: Optional[StreamingEngine] = None,
        embedding_queue: Optional[EmbeddingQueue] = None
    ):
        self.message_store = message_store
        self.conversation_store = conversation_store
        self.assembler = assembler
        self.provider = provider
        self.streaming_engine = streaming_engine
        self.embedding_queue = embedding_queue

    def _queue_embedding(self, message: Message):
        if self.embedding_queue is not None:
            self.embedding_queue.enqueue(message.id)

    async def _save_user_message(self, conversation_id: str, content: str) -> Message:
        if not content or not content.strip():
            raise ValidationError("Message content cannot be empty", code="EMPTY_MESSAGE")
        if await self.conversation_store.get_conversation(conversation_id) is None:
            raise NotFoundError(f"Conversation {conversation_id} not found", code="CONVERSATION_NOT_FOUND")

        try:
            message = await self.message_store.append(Message(
                conversation_id=conversation_id,
                role=MessageRole.USER,
                content=content
            ))
        except Exception as e:
            logger.error("Failed to save user message", conversation_id=conversation_id, error=str(e))
            raise FatalError(f"Failed to save message: {e}", code="SAVE_FAILED") from e

        self._queue_embedding(message)

        try:
            await self.conversation_store.touch_conversation(conversation_id)
        except Exception as e:
            logger.warning("Failed to update conversation timestamp", conversation_id=conversation_id, error=str(e))

        return message

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        options: Optional[ChatOptions] = None
    ) -> ChatTurnResult:
        """Non-streaming turn"""

        options = options or ChatOptions()
        user_message = await self._save_user_message(conversation_id, content)

        context = await self.assembler.assemble(conversation_id, content, options.context)

        started = time.monotonic()
        try:
            response = await self.provider.complete(
                context.messages,
                GenerationOptions(temperature=options.temperature, max_tokens=options.max_tokens)
            )
        except BranchatError:
            raise
        except Exception as e:
            logger.error("Chat completion failed", conversation_id=conversation_id, error=str(e))
            raise FatalError(f"Failed to generate response: {e}", code="GENERATION_FAILED") from e

        try:
            assistant_message = await self.message_store.append(Message(
                conversation_id=conversation_id,
                role=MessageRole.ASSISTANT,
                content=response,
                metadata=MessageMetadata(
                    tokens=estimate_tokens(response),
                    model=self.provider.model_name,
                    processing_time=round((time.monotonic() - started) * 1000, 1)
                )
            ))
        except Exception as e:
            logger.error("Failed to save assistant message", conversation_id=conversation_id, error=str(e))
            raise FatalError(f"Failed to save response: {e}", code="SAVE_FAILED") from e

        self._queue_embedding(assistant_message)

        logger.info(
            "Chat turn complete",
            conversation_id=conversation_id,
            user_message_id=user_message.id,
            assistant_message_id=assistant_message.id
        )

        return ChatTurnResult(
            user_message=user_message,
            assistant_message=assistant_message,
            context_metadata=context.metadata
        )

    async def stream_message(
        self,
        client_id: str,
        conversation_id: str,
        content: str,
        options: Optional[ChatOptions] = None
    ) -> Optional[Message]:
        """Streaming turn; tokens go to the client's session"""

        if self.streaming_engine is None:
            raise FatalError("Streaming is not configured", code="STREAMING_UNAVAILABLE")

        options = options or ChatOptions()
        user_message = await self._save_user_message(conversation_id, content)

        await self.streaming_engine.send_custom_event(client_id, UserMessageEvent(
            payload=UserMessageData(
                message_id=user_message.id,
                conversation_id=conversation_id,
                content=user_message.content
            )
        ))

        context = await self.assembler.assemble(conversation_id, content, options.context)

        assistant_message = await self.streaming_engine.stream_generation(
            client_id,
            context.messages,
            conversation_id,
            StreamOptions(
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                persist_partial=options.persist_partial
            )
        )

        if assistant_message is not None:
            self._queue_embedding(assistant_message)

        return assistant_message
