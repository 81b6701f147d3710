from typing import List, Optional
from datetime import datetime

import structlog
from pydantic import BaseModel, Field

from domain.errors import BranchatError, FatalError
from domain.models.chat import Message, MessageRole, SubchatSummaryMarker
from domain.store.interfaces import MessageStore, ConversationStore
from domain.generation.provider import GenerationProvider

logger = structlog.get_logger(__name__)

# Messages read per previous conversation, of which at most 4 are kept
PREVIOUS_MESSAGES_SCANNED = 5
PREVIOUS_EXCHANGE_LINES = 4


class PreviousConversation(BaseModel):
    """Recent exchanges of another conversation by the same user"""
    conversation_id: str
    title: str
    updated_at: datetime
    exchanges: List[Message] = Field(default_factory=list)


class ContextRetriever:
    """Reads the raw material for each context tier from the stores"""

    def __init__(
        self,
        message_store: MessageStore,
        conversation_store: ConversationStore,
        provider: Optional[GenerationProvider] = None
    ):
        self.message_store = message_store
        self.conversation_store = conversation_store
        self.provider = provider

    async def recent_messages(self, conversation_id: str, limit: int) -> List[Message]:
        """Tail of the conversation, chronological; failure is fatal"""

        try:
            return await self.message_store.find_recent(conversation_id, limit)
        except BranchatError:
            raise
        except Exception as e:
            logger.error("Failed to read recent messages", conversation_id=conversation_id, error=str(e))
            raise FatalError(
                f"Could not read conversation history: {e}", code="HISTORY_UNAVAILABLE"
            ) from e

    async def similar_messages(
        self,
        conversation_id: str,
        query: str,
        top_k: int,
        threshold: float
    ) -> List[Message]:
        """Stored messages semantically close to the query"""

        if self.provider is None:
            return []

        # The query embedding is only used for this lookup
        embedding = await self.provider.embed(query)
        return await self.message_store.find_similar(conversation_id, embedding, top_k, threshold)

    async def subchat_markers(self, conversation_id: str, limit: int) -> List[SubchatSummaryMarker]:
        """Most recent merged-subchat annotations, newest first"""

        messages = await self.message_store.find_markers(conversation_id, limit)
        return [m.metadata.subchat_marker for m in messages if m.metadata.subchat_marker]

    async def previous_conversations(self, conversation_id: str, limit: int) -> List[PreviousConversation]:
        """Latest Q/A exchanges from the user's other conversations"""

        conversation = await self.conversation_store.get_conversation(conversation_id)
        if conversation is None:
            return []

        others = await self.conversation_store.list_user_conversations(
            conversation.user_id, exclude_id=conversation_id, limit=limit
        )

        previous = []
        for other in others:
            messages = await self.message_store.find_recent(other.id, PREVIOUS_MESSAGES_SCANNED)
            exchanges = [m for m in messages if m.role != MessageRole.SYSTEM][:PREVIOUS_EXCHANGE_LINES]
            if not exchanges:
                continue

            previous.append(PreviousConversation(
                conversation_id=other.id,
                title=other.title,
                updated_at=other.updated_at,
                exchanges=exchanges
            ))

        return previous
