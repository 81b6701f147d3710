from typing import List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum


class SearchType(str, Enum):
    """Which ranking served a memory search"""
    VECTOR = "vector"
    TEXT = "text"


class MemoryDocument(BaseModel):
    """Indexed form of a merged subchat summary"""
    summary: str
    keywords: List[str] = Field(default_factory=list)
    actions: List[str] = Field(default_factory=list)
    artifacts: List[str] = Field(default_factory=list)
    conversation_id: str
    subchat_id: str
    user_id: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
    merged_at: datetime = Field(default_factory=datetime.utcnow)


class MemoryEntry(MemoryDocument):
    """Long-term memory record, keyed by the originating subchat id"""
    embedding: Optional[List[float]] = None

    @property
    def id(self) -> str:
        return self.subchat_id

    def to_document(self) -> MemoryDocument:
        return MemoryDocument(**self.model_dump(exclude={"embedding"}))


class MemorySearchResult(BaseModel):
    """One ranked hit, identical in shape for vector and text search"""
    subchat_id: str
    score: float
    summary: str
    keywords: List[str] = Field(default_factory=list)
    actions: List[str] = Field(default_factory=list)
    artifacts: List[str] = Field(default_factory=list)
    created_at: datetime
    search_type: SearchType = SearchType.TEXT


class MemoryStats(BaseModel):
    """Per-user memory statistics"""
    total_memories: int = 0
    oldest_memory: Optional[datetime] = None
    newest_memory: Optional[datetime] = None
    average_keywords: int = 0
    is_available: bool = False
    has_vector_support: bool = False
