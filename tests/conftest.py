from typing import AsyncIterator, Dict, List, Optional
import asyncio

import pytest

from application.websocket.connection_manager import EventSink
from application.websocket.schema.events import BaseEvent, EventType
from domain.context.memory.memory_index import MemoryIndex
from domain.context.memory.runtime_memory import InMemoryConversationStore, InMemoryMessageStore
from domain.context.memory.vector_memory_store import InMemoryMemoryBackend, MemoryBackend
from domain.generation.provider import GenerationOptions, GenerationProvider, LLMMessage
from domain.models.chat import Conversation, Message, MessageRole, User
from infrastructure.observability.logging import UsageTracker


class StubProvider(GenerationProvider):
    """Scripted generation provider"""

    def __init__(
        self,
        completion: str = "Stub answer",
        chunks: Optional[List[str]] = None,
        fail_after: Optional[int] = None,
        summary_response: str = '{"summary": "Discussed things", "actions": [], "artifacts": [], "keywords": []}',
        embeddings: Optional[Dict[str, List[float]]] = None,
        default_embedding: Optional[List[float]] = None,
        chunk_delay: float = 0.0,
        stall_after: Optional[int] = None,
        usage_tracker: Optional[UsageTracker] = None
    ):
        super().__init__("stub-model", usage_tracker)
        self.completion = completion
        self.chunks = chunks if chunks is not None else ["Hello", " ", "world"]
        self.fail_after = fail_after
        self.summary_response = summary_response
        self.embeddings = embeddings or {}
        self.default_embedding = default_embedding if default_embedding is not None else [1.0, 0.0, 0.0]
        self.chunk_delay = chunk_delay
        self.stall_after = stall_after
        self.cancelled = False
        self.calls: List[List[LLMMessage]] = []
        self.embed_calls: List[str] = []

    async def _complete(self, messages: List[LLMMessage], options: GenerationOptions) -> str:
        self.calls.append(messages)
        if messages and messages[0]["content"].startswith("You are a helpful assistant that creates structured summaries"):
            return self.summary_response
        return self.completion

    async def _stream(self, messages: List[LLMMessage], options: GenerationOptions) -> AsyncIterator[str]:
        self.calls.append(messages)
        for i, chunk in enumerate(self.chunks):
            if self.fail_after is not None and i >= self.fail_after:
                raise RuntimeError("provider stream broke")
            if self.stall_after is not None and i >= self.stall_after:
                # Hang like an upstream that stopped sending
                try:
                    await asyncio.Event().wait()
                except asyncio.CancelledError:
                    self.cancelled = True
                    raise
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            yield chunk

    async def _embed(self, text: str) -> List[float]:
        self.embed_calls.append(text)
        return self.embeddings.get(text, self.default_embedding)


class RecordingSink(EventSink):
    """Event sink that keeps everything it was asked to send"""

    def __init__(self, fail_on_send: bool = False):
        self.events: List[BaseEvent] = []
        self.closed = False
        self.fail_on_send = fail_on_send

    async def send(self, event: BaseEvent) -> None:
        if self.fail_on_send or self.closed:
            raise ConnectionError("sink closed")
        self.events.append(event)

    async def close(self) -> None:
        self.closed = True

    def types(self) -> List[EventType]:
        return [event.type for event in self.events]


class UnreachableMemoryBackend(MemoryBackend):
    """Backend whose store can never be reached"""

    async def connect(self) -> None:
        raise ConnectionError("memory store unreachable")

    async def put(self, entry):
        raise ConnectionError("memory store unreachable")

    async def get(self, entry_id):
        raise ConnectionError("memory store unreachable")

    async def remove(self, entry_id):
        raise ConnectionError("memory store unreachable")

    async def entries(self, user_id=None):
        raise ConnectionError("memory store unreachable")


@pytest.fixture
def message_store():
    return InMemoryMessageStore()


@pytest.fixture
def conversation_store():
    return InMemoryConversationStore()


@pytest.fixture
def provider():
    return StubProvider()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
async def memory_index(provider):
    index = MemoryIndex(InMemoryMemoryBackend(supports_vectors=True), provider=provider)
    await index.initialize()
    return index


@pytest.fixture
async def text_memory_index():
    index = MemoryIndex(InMemoryMemoryBackend(supports_vectors=False))
    await index.initialize()
    return index


@pytest.fixture
async def conversation(conversation_store):
    await conversation_store.add_user(User(id="user-1", memory_opt_in=True))
    return await conversation_store.add_conversation(Conversation(user_id="user-1", title="Main"))


async def add_messages(store: InMemoryMessageStore, conversation_id: str, contents: List[str]) -> List[Message]:
    """Append alternating user/assistant messages"""

    stored = []
    for i, content in enumerate(contents):
        role = MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT
        stored.append(await store.append(Message(conversation_id=conversation_id, role=role, content=content)))
    return stored


@pytest.fixture(name="add_messages")
def add_messages_fixture():
    return add_messages


@pytest.fixture
def make_provider():
    return StubProvider


@pytest.fixture
def make_sink():
    return RecordingSink


@pytest.fixture
async def unreachable_memory_index(provider):
    index = MemoryIndex(UnreachableMemoryBackend(), provider=provider)
    await index.initialize()
    return index
