from abc import ABC, abstractmethod
from fastapi import WebSocket
from starlette.websockets import WebSocketState
import structlog

from .schema.events import BaseEvent

logger = structlog.get_logger(__name__)


class EventSink(ABC):
    """Push channel to one connected client"""

    @abstractmethod
    async def send(self, event: BaseEvent) -> None:
        """Deliver an event; raise if the channel is gone"""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class WebSocketSink(EventSink):
    """Sends events as JSON over an accepted FastAPI WebSocket"""

    def __init__(self, websocket: WebSocket, client_id: str):
        self.websocket = websocket
        self.client_id = client_id

    async def send(self, event: BaseEvent) -> None:
        await self.websocket.send_json(event.model_dump(mode="json"))

    async def close(self) -> None:
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return

        try:
            await self.websocket.close()
        except Exception as e:
            logger.warning("Error closing WebSocket", client_id=self.client_id, error=str(e))
