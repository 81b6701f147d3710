from typing import Optional

import structlog
from langchain.chat_models import init_chat_model
from langchain.embeddings import init_embeddings
from langchain_core.embeddings import Embeddings
from langchain_core.language_models import BaseChatModel

from domain.background.embedding_queue import EmbeddingQueue
from domain.context.context_assembler import ContextAssembler
from domain.context.context_retriever import ContextRetriever
from domain.context.memory.memory_index import MemoryIndex
from domain.context.memory.runtime_memory import InMemoryConversationStore, InMemoryMessageStore
from domain.context.memory.sqlite_memory_store import SQLiteMemoryBackend
from domain.context.memory.vector_memory_store import InMemoryMemoryBackend, MemoryBackend
from domain.generation.langchain_provider import LangChainGenerationProvider
from domain.generation.provider import GenerationProvider
from domain.orchestration.chat_service import ChatService
from domain.orchestration.merge_pipeline import MergePipeline
from domain.store.interfaces import ConversationStore, MessageStore
from domain.streaming.streaming_handler import StreamingEngine
from infrastructure.config.settings import ContextLimits, Settings, get_settings
from infrastructure.observability.logging import UsageTracker

logger = structlog.get_logger(__name__)


def build_memory_backend(settings: Settings) -> MemoryBackend:
    if settings.memory_backend == "sqlite":
        return SQLiteMemoryBackend(settings.memory_db_path)
    return InMemoryMemoryBackend(supports_vectors=settings.memory_vector_support)


def build_chat_model(settings: Settings) -> BaseChatModel:
    return init_chat_model(settings.llm_model, model_provider=settings.llm_provider)


def build_embeddings(settings: Settings) -> Optional[Embeddings]:
    try:
        return init_embeddings(settings.embedding_model, provider=settings.embedding_provider)
    except Exception as e:
        logger.warning("Embedding model unavailable, semantic search disabled", model=settings.embedding_model, error=str(e))
        return None


class Container:
    """Wires stores, provider, memory index and services for one process"""

    def __init__(
        self,
        settings: Settings,
        provider: GenerationProvider,
        message_store: MessageStore,
        conversation_store: ConversationStore,
        memory_backend: MemoryBackend,
        usage_tracker: UsageTracker
    ):
        self.settings = settings
        self.provider = provider
        self.message_store = message_store
        self.conversation_store = conversation_store
        self.usage_tracker = usage_tracker

        self.memory_index = MemoryIndex(
            memory_backend,
            provider=provider,
            default_top_k=settings.memory_top_k,
            default_threshold=settings.memory_similarity_threshold
        )
        self.retriever = ContextRetriever(message_store, conversation_store, provider)
        self.assembler = ContextAssembler(self.retriever, ContextLimits.from_settings(settings))
        self.streaming_engine = StreamingEngine(
            provider,
            message_store,
            heartbeat_interval=settings.heartbeat_interval_seconds
        )
        self.embedding_queue = EmbeddingQueue(
            provider,
            message_store,
            workers=settings.embedding_workers,
            batch_size=settings.embedding_batch_size
        )
        self.chat_service = ChatService(
            message_store,
            conversation_store,
            self.assembler,
            provider,
            streaming_engine=self.streaming_engine,
            embedding_queue=self.embedding_queue
        )
        self.merge_pipeline = MergePipeline(
            provider,
            message_store,
            conversation_store,
            memory_index=self.memory_index
        )

    async def startup(self):
        await self.memory_index.initialize()
        await self.embedding_queue.start()
        logger.info("Service container started", memory_available=self.memory_index.is_available)

    async def shutdown(self):
        await self.streaming_engine.disconnect_all()
        await self.embedding_queue.stop()
        await self.memory_index.close()
        logger.info("Service container stopped")


def build_container(
    settings: Optional[Settings] = None,
    chat_model: Optional[BaseChatModel] = None,
    embeddings: Optional[Embeddings] = None,
    provider: Optional[GenerationProvider] = None,
    message_store: Optional[MessageStore] = None,
    conversation_store: Optional[ConversationStore] = None,
    memory_backend: Optional[MemoryBackend] = None
) -> Container:
    """Build a container, creating anything not supplied from settings"""

    settings = settings or get_settings()
    usage_tracker = UsageTracker(max_entries=settings.usage_log_size)

    if provider is None:
        provider = LangChainGenerationProvider(
            chat_model or build_chat_model(settings),
            embeddings if embeddings is not None else build_embeddings(settings),
            model_name=settings.llm_model,
            usage_tracker=usage_tracker
        )

    return Container(
        settings=settings,
        provider=provider,
        message_store=message_store or InMemoryMessageStore(),
        conversation_store=conversation_store or InMemoryConversationStore(),
        memory_backend=memory_backend or build_memory_backend(settings),
        usage_tracker=usage_tracker
    )
