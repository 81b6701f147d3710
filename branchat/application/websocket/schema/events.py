from typing import Dict, Any, Optional, Literal
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum


class EventType(str, Enum):
    """Streaming event types"""
    CONNECTED = "connected"
    STREAM_START = "stream_start"
    TOKEN = "token"
    STREAM_COMPLETE = "stream_complete"
    STREAM_ERROR = "stream_error"
    HEARTBEAT = "heartbeat"
    USER_MESSAGE = "user_message"
    SAVE_ERROR = "save_error"


class BaseEvent(BaseModel):
    """Base event model for all streamed messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    client_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class ConnectedData(BaseModel):
    client_id: str


class ConnectedEvent(BaseEvent):
    """Sent once when a client session is registered"""
    type: Literal[EventType.CONNECTED] = EventType.CONNECTED
    payload: ConnectedData


class StreamStartData(BaseModel):
    model: str = "default"
    conversation_id: Optional[str] = None


class StreamStartEvent(BaseEvent):
    type: Literal[EventType.STREAM_START] = EventType.STREAM_START
    payload: StreamStartData


class TokenData(BaseModel):
    """One generated chunk; token_index counts from 1"""
    content: str
    token_index: int


class TokenEvent(BaseEvent):
    type: Literal[EventType.TOKEN] = EventType.TOKEN
    payload: TokenData


class StreamCompleteData(BaseModel):
    message_id: Optional[str] = None
    full_response: str
    token_count: int
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StreamCompleteEvent(BaseEvent):
    type: Literal[EventType.STREAM_COMPLETE] = EventType.STREAM_COMPLETE
    payload: StreamCompleteData


class StreamErrorData(BaseModel):
    error: str
    code: str = "STREAM_FAILED"
    partial_message_id: Optional[str] = None


class StreamErrorEvent(BaseEvent):
    """Generation failed, or a client message was rejected"""
    type: Literal[EventType.STREAM_ERROR] = EventType.STREAM_ERROR
    payload: StreamErrorData


class HeartbeatEvent(BaseEvent):
    type: Literal[EventType.HEARTBEAT] = EventType.HEARTBEAT


class UserMessageData(BaseModel):
    message_id: str
    conversation_id: str
    content: str


class UserMessageEvent(BaseEvent):
    """Acknowledges a persisted user message"""
    type: Literal[EventType.USER_MESSAGE] = EventType.USER_MESSAGE
    payload: UserMessageData


class SaveErrorData(BaseModel):
    error: str
    code: str = "SAVE_FAILED"


class SaveErrorEvent(BaseEvent):
    """The stream finished but its message could not be persisted"""
    type: Literal[EventType.SAVE_ERROR] = EventType.SAVE_ERROR
    payload: SaveErrorData


class UserMessage(BaseModel):
    """Inbound user message from a client"""
    type: Literal["user_message"] = "user_message"
    conversation_id: str
    content: str
    options: Optional[Dict[str, Any]] = None
