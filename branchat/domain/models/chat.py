from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
import uuid


def new_id() -> str:
    return uuid.uuid4().hex


class MessageRole(str, Enum):
    """Author of a message"""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class SubchatStatus(str, Enum):
    """Sub-conversation lifecycle status"""
    ACTIVE = "active"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class SubchatSummaryMarker(BaseModel):
    """Structured summary of a merged sub-conversation, carried on a parent message"""
    subchat_id: str
    title: str = Field(default="General discussion", description="Selected text the subchat branched from")
    summary: str
    actions: List[str] = Field(default_factory=list)
    artifacts: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    question_count: int = 0
    merged_at: datetime = Field(default_factory=datetime.utcnow)


class MessageMetadata(BaseModel):
    """Optional per-message bookkeeping"""
    tokens: Optional[int] = None
    model: Optional[str] = None
    processing_time: Optional[float] = Field(None, description="Generation time in milliseconds")
    from_subchat: bool = False
    subchat_id: Optional[str] = None
    subchat_marker: Optional[SubchatSummaryMarker] = None
    partial: bool = False


class Message(BaseModel):
    """A single entry of a conversation's append-only log"""
    id: str = Field(default_factory=new_id)
    conversation_id: str
    role: MessageRole
    content: str
    embedding: Optional[List[float]] = None
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_marker(self) -> bool:
        """True for messages that carry a subchat summary annotation"""
        return self.metadata.subchat_marker is not None

    def to_llm(self) -> Dict[str, str]:
        """Role/content pair as sent to the generation provider"""
        return {"role": self.role.value, "content": self.content}


class Conversation(BaseModel):
    """Top-level conversation owned by a user"""
    id: str = Field(default_factory=new_id)
    user_id: str
    title: str = "New conversation"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Subchat(BaseModel):
    """Branch of a parent conversation, merged back via summarization"""
    id: str = Field(default_factory=new_id)
    conversation_id: str = Field(description="Parent conversation")
    user_id: str
    title: str = "General discussion"
    status: SubchatStatus = Field(default=SubchatStatus.ACTIVE)
    include_in_memory: bool = True
    summary: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == SubchatStatus.ACTIVE

    def resolve(self, summary: str):
        """Mark the subchat merged"""
        self.status = SubchatStatus.RESOLVED
        self.summary = summary
        self.resolved_at = datetime.utcnow()


class User(BaseModel):
    """The parts of a user record this service reads"""
    id: str
    memory_opt_in: bool = False
