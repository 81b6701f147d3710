"""Background embedding generation for persisted messages.

Message ids are queued after save and drained by a small pool of worker
tasks. Each embedding call is retried with exponential backoff; ids that
still fail are logged and counted, never raised to the caller that saved
the message.
"""

from typing import List, Optional
import asyncio

import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from domain.generation.provider import GenerationProvider
from domain.models.chat import MessageRole
from domain.store.interfaces import MessageStore

logger = structlog.get_logger(__name__)

MIN_EMBEDDING_CHARS = 20


class EmbeddingQueue:
    """Worker pool that fills in message embeddings"""

    def __init__(
        self,
        provider: GenerationProvider,
        message_store: MessageStore,
        workers: int = 2,
        batch_size: int = 10,
        max_attempts: int = 3,
        retry_wait: Optional[wait_base] = None
    ):
        self.provider = provider
        self.message_store = message_store
        self.workers = workers
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)

        self.queue: asyncio.Queue = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self.processed = 0
        self.skipped = 0
        self.failed = 0

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self):
        if self.is_running:
            return

        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"embedding-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info("Embedding queue started", workers=self.workers)

    async def stop(self):
        """Cancel the workers; queued ids that were not processed are dropped"""

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        logger.info(
            "Embedding queue stopped",
            processed=self.processed,
            skipped=self.skipped,
            failed=self.failed,
            pending=self.queue.qsize()
        )

    async def join(self):
        """Wait until every queued id has been handled"""
        await self.queue.join()

    def enqueue(self, message_id: str):
        self.queue.put_nowait(message_id)

    async def backfill(self, conversation_id: str) -> int:
        """Queue every message of a conversation that still lacks an embedding"""

        missing = await self.message_store.find_missing_embeddings(conversation_id)

        for start in range(0, len(missing), self.batch_size):
            batch = missing[start:start + self.batch_size]
            for message in batch:
                self.enqueue(message.id)

            logger.info(
                "Queued embedding batch",
                conversation_id=conversation_id,
                batch=start // self.batch_size + 1,
                size=len(batch)
            )
            # Let workers drain the batch before queueing the next one
            if self.is_running:
                await self.join()

        logger.info("Embedding backfill queued", conversation_id=conversation_id, total=len(missing))
        return len(missing)

    async def _worker(self, index: int):
        while True:
            message_id = await self.queue.get()
            try:
                await self.process(message_id)
            except Exception as e:
                self.failed += 1
                logger.error("Embedding worker error", worker=index, message_id=message_id, error=str(e))
            finally:
                self.queue.task_done()

    async def process(self, message_id: str) -> bool:
        """Generate and store the embedding of one message"""

        message = await self.message_store.get(message_id)
        if message is None:
            logger.warning("Message not found for embedding generation", message_id=message_id)
            self.skipped += 1
            return False

        # Skip system messages and very short messages
        if message.role == MessageRole.SYSTEM or len(message.content) < MIN_EMBEDDING_CHARS:
            self.skipped += 1
            return False

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=self.retry_wait,
                retry=retry_if_exception_type(Exception),
            ):
                with attempt:
                    embedding = await self.provider.embed(message.content)
        except RetryError as e:
            self.failed += 1
            logger.error(
                "Failed to generate embedding",
                message_id=message_id,
                attempts=self.max_attempts,
                error=str(e.last_attempt.exception())
            )
            return False

        await self.message_store.set_embedding(message_id, embedding)
        self.processed += 1

        logger.info(
            "Embedding generated and stored",
            message_id=message_id,
            content_length=len(message.content),
            embedding_dimensions=len(embedding)
        )
        return True
