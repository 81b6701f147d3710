import time

import pytest
from fastapi.testclient import TestClient

from application.container import build_container
from application.websocket.ws_server import create_app, parse_chat_options
from domain.context.memory.runtime_memory import InMemoryConversationStore
from domain.models.chat import Conversation
from infrastructure.config.settings import Settings


@pytest.fixture
def conversation_record():
    return Conversation(user_id="u1", title="Main")


@pytest.fixture
def build(conversation_record):
    def build(provider):
        conversation_store = InMemoryConversationStore()
        conversation_store.conversations[conversation_record.id] = conversation_record
        settings = Settings(_env_file=None, heartbeat_interval_seconds=60)
        return build_container(settings, provider=provider, conversation_store=conversation_store)
    return build


@pytest.fixture
def container(build, make_provider):
    return build(make_provider())


@pytest.fixture
def client(container):
    with TestClient(create_app(container)) as client:
        yield client


def receive_until(ws, event_type):
    events = []
    while True:
        event = ws.receive_json()
        events.append(event)
        if event["type"] == event_type:
            return events


def test_parse_chat_options_moves_context_flags():
    options = parse_chat_options({"temperature": 0.2, "enable_semantic": False, "max_tokens": 500})

    assert options.temperature == 0.2
    assert options.max_tokens == 2000
    assert options.context.enable_semantic is False
    assert options.context.max_tokens == 500


def test_parse_chat_options_defaults():
    options = parse_chat_options(None)

    assert options.context is None
    assert options.persist_partial is False


def test_websocket_streams_one_turn(client, conversation_record):
    with client.websocket_connect("/ws/stream/c1") as ws:
        connected = ws.receive_json()
        assert connected["type"] == "connected"
        assert connected["payload"]["client_id"] == "c1"

        ws.send_json({"type": "user_message", "conversation_id": conversation_record.id, "content": "say hello"})
        events = receive_until(ws, "stream_complete")

    types = [e["type"] for e in events]
    assert types[:2] == ["user_message", "stream_start"]
    assert types.count("token") == 3
    assert events[-1]["payload"]["full_response"] == "Hello world"


def test_websocket_rejections_keep_the_session_open(client, conversation_record):
    with client.websocket_connect("/ws/stream/c2") as ws:
        ws.receive_json()

        ws.send_json({"type": "ping"})
        unsupported = ws.receive_json()

        ws.send_json({"type": "user_message", "conversation_id": conversation_record.id, "content": "   "})
        empty = ws.receive_json()

        ws.send_json({"type": "user_message", "conversation_id": "missing", "content": "hello"})
        unknown = ws.receive_json()

        ws.send_json({"type": "user_message", "conversation_id": conversation_record.id, "content": "say hello"})
        events = receive_until(ws, "stream_complete")

    assert unsupported["type"] == "stream_error"
    assert unsupported["payload"]["code"] == "UNSUPPORTED_EVENT"
    assert empty["payload"]["code"] == "EMPTY_MESSAGE"
    assert unknown["type"] == "stream_error"
    assert unknown["payload"]["code"] == "CONVERSATION_NOT_FOUND"
    assert events[0]["type"] == "user_message"
    assert events[-1]["payload"]["full_response"] == "Hello world"


def test_client_leaving_mid_stream_cancels_generation(build, make_provider, conversation_record):
    provider = make_provider(chunks=["a", "b", "c"], stall_after=1)
    container = build(provider)

    with TestClient(create_app(container)) as client:
        with client.websocket_connect("/ws/stream/c3") as ws:
            ws.receive_json()
            ws.send_json({"type": "user_message", "conversation_id": conversation_record.id, "content": "say hello"})
            receive_until(ws, "token")

        deadline = time.monotonic() + 2.0
        while time.monotonic() < deadline:
            if provider.cancelled and container.streaming_engine.get_session("c3") is None:
                break
            time.sleep(0.01)

        assert provider.cancelled is True
        assert container.streaming_engine.get_session("c3") is None
        assert client.get("/health").json()["active_streams"] == 0

    stored = container.message_store.conversations[conversation_record.id]
    assert [m.role.value for m in stored] == ["user"]


def test_health_reports_service_state(client):
    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["active_streams"] == 0
    assert body["memory_available"] is True
    assert body["embedding_failures"] == 0
    assert "by_operation" in body["usage"]
