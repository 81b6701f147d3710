from abc import ABC, abstractmethod
from typing import List, Optional

from domain.models.chat import Message, Conversation, Subchat, User


class MessageStore(ABC):
    """Append-only, per-conversation message log"""

    @abstractmethod
    async def append(self, message: Message) -> Message:
        """Persist a message and return the stored record"""
        pass

    @abstractmethod
    async def get(self, message_id: str) -> Optional[Message]:
        pass

    @abstractmethod
    async def find_recent(self, conversation_id: str, limit: int) -> List[Message]:
        """Last ``limit`` messages, oldest first"""
        pass

    @abstractmethod
    async def find_similar(
        self,
        conversation_id: str,
        embedding: List[float],
        top_k: int,
        threshold: float
    ) -> List[Message]:
        """Messages whose stored embedding is at least ``threshold`` cosine-similar"""
        pass

    @abstractmethod
    async def list_messages(self, conversation_id: str) -> List[Message]:
        """Whole log, oldest first"""
        pass

    @abstractmethod
    async def find_markers(self, conversation_id: str, limit: int) -> List[Message]:
        """Most recent subchat marker messages, newest first"""
        pass

    @abstractmethod
    async def set_embedding(self, message_id: str, embedding: List[float]) -> bool:
        pass

    @abstractmethod
    async def find_missing_embeddings(self, conversation_id: str) -> List[Message]:
        """Non-system messages that have no embedding yet"""
        pass


class ConversationStore(ABC):
    """Conversation, subchat and user records"""

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def list_user_conversations(
        self,
        user_id: str,
        exclude_id: Optional[str] = None,
        limit: int = 3
    ) -> List[Conversation]:
        """Most recently updated conversations of a user"""
        pass

    @abstractmethod
    async def touch_conversation(self, conversation_id: str) -> None:
        pass

    @abstractmethod
    async def get_subchat(self, subchat_id: str) -> Optional[Subchat]:
        pass

    @abstractmethod
    async def save_subchat(self, subchat: Subchat) -> Subchat:
        pass

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        pass
