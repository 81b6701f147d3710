from typing import Dict, List, Optional
from datetime import datetime, timedelta
import asyncio
from collections import defaultdict

from domain.models.chat import Message, MessageRole, Conversation, Subchat, User
from domain.store.interfaces import MessageStore, ConversationStore
from domain.context.context_ranker import cosine_similarity


class InMemoryMessageStore(MessageStore):
    """Process-local message log used for tests and single-node runs"""

    def __init__(self):
        self.conversations: Dict[str, List[Message]] = defaultdict(list)
        self.index: Dict[str, Message] = {}
        self._lock = asyncio.Lock()

    async def append(self, message: Message) -> Message:
        """Add a message to its conversation log"""

        async with self._lock:
            log = self.conversations[message.conversation_id]
            stored = message.model_copy(deep=True)

            # Keep created_at strictly increasing within a conversation
            if log and stored.created_at <= log[-1].created_at:
                stored.created_at = log[-1].created_at + timedelta(microseconds=1)

            log.append(stored)
            self.index[stored.id] = stored
            return stored.model_copy(deep=True)

    async def get(self, message_id: str) -> Optional[Message]:
        async with self._lock:
            message = self.index.get(message_id)
            return message.model_copy(deep=True) if message else None

    async def find_recent(self, conversation_id: str, limit: int) -> List[Message]:
        """Get the tail of a conversation, chronological"""

        async with self._lock:
            log = self.conversations.get(conversation_id, [])
            return [m.model_copy(deep=True) for m in log[-limit:]] if limit > 0 else []

    async def find_similar(
        self,
        conversation_id: str,
        embedding: List[float],
        top_k: int,
        threshold: float
    ) -> List[Message]:
        async with self._lock:
            scored = []
            for message in self.conversations.get(conversation_id, []):
                if not message.embedding:
                    continue
                score = cosine_similarity(embedding, message.embedding)
                if score >= threshold:
                    scored.append((score, message))

        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [m.model_copy(deep=True) for _, m in scored[:top_k]]

    async def list_messages(self, conversation_id: str) -> List[Message]:
        async with self._lock:
            return [m.model_copy(deep=True) for m in self.conversations.get(conversation_id, [])]

    async def find_markers(self, conversation_id: str, limit: int) -> List[Message]:
        async with self._lock:
            markers = [m for m in self.conversations.get(conversation_id, []) if m.is_marker]
            return [m.model_copy(deep=True) for m in reversed(markers[-limit:])] if limit > 0 else []

    async def set_embedding(self, message_id: str, embedding: List[float]) -> bool:
        async with self._lock:
            message = self.index.get(message_id)
            if message is None:
                return False
            message.embedding = list(embedding)
            return True

    async def find_missing_embeddings(self, conversation_id: str) -> List[Message]:
        async with self._lock:
            return [
                m.model_copy(deep=True)
                for m in self.conversations.get(conversation_id, [])
                if m.role != MessageRole.SYSTEM and not m.embedding
            ]


class InMemoryConversationStore(ConversationStore):
    """Process-local conversation, subchat and user records"""

    def __init__(self):
        self.conversations: Dict[str, Conversation] = {}
        self.subchats: Dict[str, Subchat] = {}
        self.users: Dict[str, User] = {}
        self._lock = asyncio.Lock()

    async def add_conversation(self, conversation: Conversation) -> Conversation:
        async with self._lock:
            self.conversations[conversation.id] = conversation
            return conversation

    async def add_user(self, user: User) -> User:
        async with self._lock:
            self.users[user.id] = user
            return user

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with self._lock:
            conversation = self.conversations.get(conversation_id)
            return conversation.model_copy() if conversation else None

    async def list_user_conversations(
        self,
        user_id: str,
        exclude_id: Optional[str] = None,
        limit: int = 3
    ) -> List[Conversation]:
        async with self._lock:
            owned = [
                c for c in self.conversations.values()
                if c.user_id == user_id and c.id != exclude_id
            ]

        owned.sort(key=lambda c: c.updated_at, reverse=True)
        return [c.model_copy() for c in owned[:limit]]

    async def touch_conversation(self, conversation_id: str) -> None:
        async with self._lock:
            if conversation_id in self.conversations:
                self.conversations[conversation_id].updated_at = datetime.utcnow()

    async def get_subchat(self, subchat_id: str) -> Optional[Subchat]:
        async with self._lock:
            subchat = self.subchats.get(subchat_id)
            return subchat.model_copy() if subchat else None

    async def save_subchat(self, subchat: Subchat) -> Subchat:
        async with self._lock:
            self.subchats[subchat.id] = subchat.model_copy()
            return subchat

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._lock:
            return self.users.get(user_id)
