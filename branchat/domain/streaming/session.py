from typing import Dict, FrozenSet, Optional
from datetime import datetime
from enum import Enum
import asyncio

import structlog

from application.websocket.connection_manager import EventSink
from application.websocket.schema.events import BaseEvent
from domain.errors import BranchatError

logger = structlog.get_logger(__name__)


class StreamState(str, Enum):
    """Lifecycle of one client stream"""
    INIT = "init"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    DISCONNECTED = "disconnected"


ALLOWED_TRANSITIONS: Dict[StreamState, FrozenSet[StreamState]] = {
    StreamState.INIT: frozenset({StreamState.STREAMING, StreamState.DISCONNECTED}),
    StreamState.STREAMING: frozenset({
        StreamState.COMPLETED, StreamState.ERRORED, StreamState.DISCONNECTED
    }),
    StreamState.COMPLETED: frozenset(),
    StreamState.ERRORED: frozenset(),
    StreamState.DISCONNECTED: frozenset(),
}


class InvalidStateTransition(BranchatError):
    default_code = "INVALID_STATE_TRANSITION"


class StreamSession:
    """Connection-scoped streaming state for one client"""

    def __init__(self, client_id: str, sink: EventSink):
        self.client_id = client_id
        self.sink = sink
        self.state = StreamState.INIT
        self.accumulated_text = ""
        self.token_count = 0
        self.connected_at = datetime.utcnow()
        self.task: Optional[asyncio.Task] = None
        self.heartbeat: Optional[asyncio.Task] = None

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self.state]

    @property
    def is_live(self) -> bool:
        return not self.is_terminal

    def transition(self, new_state: StreamState):
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateTransition(
                f"Cannot move stream {self.client_id} from {self.state.value} to {new_state.value}"
            )

        logger.debug("Stream state change", client_id=self.client_id, old=self.state.value, new=new_state.value)
        self.state = new_state

    async def emit(self, event: BaseEvent) -> bool:
        """Send a non-terminal event; refused once the session has ended"""

        if self.is_terminal:
            return False

        event.client_id = self.client_id
        try:
            await self.sink.send(event)
            return True
        except Exception as e:
            logger.error("Failed to send event", client_id=self.client_id, event_type=event.type.value, error=str(e))
            return False

    async def finish(self, state: StreamState, event: BaseEvent) -> bool:
        """Enter a terminal state and send its closing event"""

        if self.is_terminal:
            return False

        self.transition(state)
        self.stop_heartbeat()

        event.client_id = self.client_id
        try:
            await self.sink.send(event)
            return True
        except Exception as e:
            logger.error("Failed to send final event", client_id=self.client_id, event_type=event.type.value, error=str(e))
            return False

    def stop_heartbeat(self):
        if self.heartbeat is not None and self.heartbeat is not asyncio.current_task():
            self.heartbeat.cancel()
        self.heartbeat = None
