"""Long-term memory of merged sub-conversations.

The index ranks entries by cosine similarity when the backend keeps vectors
and the caller supplies a query embedding; otherwise it falls back to fuzzy
lexical scoring over summaries and keywords. No operation raises: an
unreachable or failing backend degrades to empty results and ``False``.
"""

from typing import List, Optional
from datetime import datetime, timedelta

import structlog

from domain.models.memory import (
    MemoryDocument, MemoryEntry, MemorySearchResult, MemoryStats, SearchType
)
from domain.context.context_ranker import ContextRanker, cosine_similarity
from domain.context.memory.vector_memory_store import MemoryBackend
from domain.generation.provider import GenerationProvider

logger = structlog.get_logger(__name__)

SUMMARY_BOOST = 2.0
KEYWORDS_BOOST = 1.5


class MemoryIndex:
    """Search and storage of structured subchat summaries"""

    def __init__(
        self,
        backend: MemoryBackend,
        provider: Optional[GenerationProvider] = None,
        default_top_k: int = 5,
        default_threshold: float = 0.7
    ):
        self.backend = backend
        self.provider = provider
        self.default_top_k = default_top_k
        self.default_threshold = default_threshold
        self.ranker = ContextRanker()
        self._available = False

    async def initialize(self) -> bool:
        """Connect the backend; on failure the index stays unavailable"""

        try:
            await self.backend.connect()
            self._available = True
            logger.info(
                "Memory index initialized",
                backend=type(self.backend).__name__,
                vector_support=self.backend.supports_vectors
            )
        except Exception as e:
            self._available = False
            logger.warning("Memory index unavailable", error=str(e))

        return self._available

    async def close(self):
        try:
            await self.backend.close()
        except Exception as e:
            logger.warning("Failed to close memory backend", error=str(e))
        self._available = False

    @property
    def is_available(self) -> bool:
        return self._available

    @property
    def supports_vector_search(self) -> bool:
        return self._available and self.backend.supports_vectors

    async def upsert(
        self,
        entry_id: str,
        doc: MemoryDocument,
        embedding: Optional[List[float]] = None
    ) -> bool:
        """Insert or overwrite the memory with the given id"""

        if not self._available:
            return False

        entry = MemoryEntry(
            **doc.model_dump(exclude={"subchat_id"}),
            subchat_id=entry_id,
            embedding=embedding if self.backend.supports_vectors else None
        )

        try:
            await self.backend.put(entry)
            return True
        except Exception as e:
            logger.error("Failed to upsert memory", memory_id=entry_id, error=str(e))
            return False

    async def delete(self, entry_id: str) -> bool:
        if not self._available:
            return False

        try:
            deleted = await self.backend.remove(entry_id)
            logger.info("Memory deleted", memory_id=entry_id, deleted=deleted)
            return deleted
        except Exception as e:
            logger.error("Failed to delete memory", memory_id=entry_id, error=str(e))
            return False

    async def search(
        self,
        query: str,
        user_id: str,
        top_k: Optional[int] = None,
        embedding: Optional[List[float]] = None,
        threshold: Optional[float] = None,
        exclude_conversation_id: Optional[str] = None
    ) -> List[MemorySearchResult]:
        """Ranked memories of one user"""

        if not self._available:
            return []

        top_k = top_k if top_k is not None else self.default_top_k
        threshold = threshold if threshold is not None else self.default_threshold

        try:
            candidates = [
                entry for entry in await self.backend.entries(user_id)
                if entry.conversation_id != exclude_conversation_id
            ]
        except Exception as e:
            logger.error("Memory search failed", user_id=user_id, error=str(e))
            return []

        if self.backend.supports_vectors and embedding:
            results = self._vector_rank(candidates, embedding, threshold)
        else:
            results = self._text_rank(candidates, query)

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:top_k]

    def _vector_rank(
        self,
        candidates: List[MemoryEntry],
        embedding: List[float],
        threshold: float
    ) -> List[MemorySearchResult]:
        results = []
        for entry in candidates:
            if not entry.embedding:
                continue
            score = cosine_similarity(embedding, entry.embedding)
            if score >= threshold:
                results.append(self._result(entry, score, SearchType.VECTOR))
        return results

    def _text_rank(self, candidates: List[MemoryEntry], query: str) -> List[MemorySearchResult]:
        results = []
        for entry in candidates:
            score = self.ranker.score_fields(query, {
                "summary": (entry.summary, SUMMARY_BOOST),
                "keywords": (" ".join(entry.keywords), KEYWORDS_BOOST),
            })
            if score > 0:
                results.append(self._result(entry, score, SearchType.TEXT))
        return results

    @staticmethod
    def _result(entry: MemoryEntry, score: float, search_type: SearchType) -> MemorySearchResult:
        return MemorySearchResult(
            subchat_id=entry.subchat_id,
            score=score,
            summary=entry.summary,
            keywords=entry.keywords,
            actions=entry.actions,
            artifacts=entry.artifacts,
            created_at=entry.created_at,
            search_type=search_type
        )

    async def stats(self, user_id: str) -> MemoryStats:
        if not self._available:
            return MemoryStats(is_available=False)

        try:
            entries = await self.backend.entries(user_id)
        except Exception as e:
            logger.error("Failed to read memory stats", user_id=user_id, error=str(e))
            return MemoryStats(is_available=True, has_vector_support=self.backend.supports_vectors)

        stats = MemoryStats(
            total_memories=len(entries),
            is_available=True,
            has_vector_support=self.backend.supports_vectors
        )
        if entries:
            created = [entry.created_at for entry in entries]
            stats.oldest_memory = min(created)
            stats.newest_memory = max(created)
            stats.average_keywords = round(sum(len(e.keywords) for e in entries) / len(entries))

        return stats

    async def _embed(self, text: str) -> Optional[List[float]]:
        if not self.supports_vector_search or self.provider is None:
            return None

        try:
            return await self.provider.embed(text)
        except Exception as e:
            logger.warning("Memory embedding failed", error=str(e))
            return None

    async def store_memory(self, entry: MemoryEntry) -> bool:
        """Embed (when vectors are supported) and store a merged summary"""

        if not self._available:
            logger.info("Memory index unavailable, skipping store", subchat_id=entry.subchat_id)
            return False

        embedding = entry.embedding
        if embedding is None:
            embedding = await self._embed(f"{entry.summary} {' '.join(entry.keywords)}")

        stored = await self.upsert(entry.subchat_id, entry.to_document(), embedding)
        if stored:
            logger.info(
                "Memory stored",
                subchat_id=entry.subchat_id,
                user_id=entry.user_id,
                has_embedding=embedding is not None
            )
        return stored

    async def search_memories(
        self,
        query: str,
        user_id: str,
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
        exclude_conversation_id: Optional[str] = None
    ) -> List[MemorySearchResult]:
        """Search with a query embedding when possible, lexically otherwise"""

        if not self._available:
            return []

        embedding = await self._embed(query)
        results = await self.search(
            query,
            user_id,
            top_k=top_k,
            embedding=embedding,
            threshold=threshold,
            exclude_conversation_id=exclude_conversation_id
        )

        logger.debug(
            "Memory search complete",
            user_id=user_id,
            results=len(results),
            search_type=SearchType.VECTOR.value if embedding else SearchType.TEXT.value
        )
        return results

    async def cleanup(
        self,
        user_id: Optional[str] = None,
        older_than_days: Optional[int] = None,
        max_entries: Optional[int] = None
    ) -> int:
        """Delete aged entries and trim each user to their newest ``max_entries``"""

        if not self._available:
            return 0

        try:
            entries = await self.backend.entries(user_id)
        except Exception as e:
            logger.error("Memory cleanup failed", error=str(e))
            return 0

        doomed = set()
        if older_than_days is not None:
            cutoff = datetime.utcnow() - timedelta(days=older_than_days)
            doomed.update(e.subchat_id for e in entries if e.created_at < cutoff)

        if max_entries is not None:
            by_user = {}
            for entry in entries:
                by_user.setdefault(entry.user_id, []).append(entry)
            for owned in by_user.values():
                owned.sort(key=lambda e: e.created_at, reverse=True)
                doomed.update(e.subchat_id for e in owned[max_entries:])

        deleted = 0
        for entry_id in doomed:
            if await self.delete(entry_id):
                deleted += 1

        logger.info("Memory cleanup complete", user_id=user_id, deleted=deleted)
        return deleted
