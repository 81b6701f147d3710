from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import asyncio

from domain.models.memory import MemoryEntry


class MemoryBackend(ABC):
    """Storage for long-term memory entries, keyed by subchat id"""

    supports_vectors: bool = False

    async def connect(self) -> None:
        """Open the underlying store; raise if it cannot be reached"""
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def put(self, entry: MemoryEntry) -> None:
        """Insert or overwrite the entry with the same id"""
        pass

    @abstractmethod
    async def get(self, entry_id: str) -> Optional[MemoryEntry]:
        pass

    @abstractmethod
    async def remove(self, entry_id: str) -> bool:
        pass

    @abstractmethod
    async def entries(self, user_id: Optional[str] = None) -> List[MemoryEntry]:
        """All entries, optionally restricted to one user"""
        pass


class InMemoryMemoryBackend(MemoryBackend):
    """Process-local memory store with optional vector support"""

    def __init__(self, supports_vectors: bool = True):
        self.supports_vectors = supports_vectors
        self.memories: Dict[str, MemoryEntry] = {}
        self._lock = asyncio.Lock()

    async def put(self, entry: MemoryEntry) -> None:
        async with self._lock:
            stored = entry.model_copy(deep=True)
            if not self.supports_vectors:
                stored.embedding = None
            self.memories[entry.id] = stored

    async def get(self, entry_id: str) -> Optional[MemoryEntry]:
        async with self._lock:
            entry = self.memories.get(entry_id)
            return entry.model_copy(deep=True) if entry else None

    async def remove(self, entry_id: str) -> bool:
        async with self._lock:
            return self.memories.pop(entry_id, None) is not None

    async def entries(self, user_id: Optional[str] = None) -> List[MemoryEntry]:
        async with self._lock:
            return [
                entry.model_copy(deep=True)
                for entry in self.memories.values()
                if user_id is None or entry.user_id == user_id
            ]
