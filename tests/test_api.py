import asyncio

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from messenger.main import create_app, queue_event
from messenger.schemas import ChangeEvent, ChangeType


@pytest.fixture
def client(tmp_path):
    app = create_app(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", echo=False)
    with TestClient(app) as client:
        yield client


def _register(client, email, name):
    resp = client.post("/auth/signup", json={"email": email, "password": "pw",
                                             "display_name": name})
    assert resp.status_code == 200
    token = client.post("/auth/token", json={"email": email, "password": "pw"}).json()
    return token["user_id"], {"Authorization": f"Bearer {token['access_token']}"}


def test_requires_a_bearer_token(client):
    assert client.get("/chats").status_code == 401
    assert client.get("/chats", headers={"Authorization": "Bearer junk"}).status_code == 401


def test_bad_credentials(client):
    _register(client, "alice@example.com", "Alice")
    resp = client.post("/auth/token", json={"email": "alice@example.com", "password": "no"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid login credentials"


def test_direct_chat_and_messages(client):
    alice, alice_auth = _register(client, "alice@example.com", "Alice")
    bob, bob_auth = _register(client, "bob@example.com", "Bob")

    chat_id = client.post("/chats/direct", json={"user_id": bob}, headers=alice_auth).json()["chat_id"]
    again = client.post("/chats/direct", json={"user_id": alice}, headers=bob_auth).json()["chat_id"]
    assert again == chat_id

    sent = client.post(f"/chats/{chat_id}/messages", json={"text": "hi bob"}, headers=alice_auth)
    assert sent.status_code == 200
    assert sent.json()["sender"]["display_name"] == "Alice"

    history = client.get(f"/chats/{chat_id}/messages", headers=bob_auth).json()
    assert [m["text"] for m in history] == ["hi bob"]

    chats = client.get("/chats", headers=bob_auth).json()
    assert [c["id"] for c in chats] == [chat_id]
    assert {p["user_id"] for p in chats[0]["participants"]} == {alice, bob}


def test_group_chat_with_unknown_member_is_rejected(client):
    _, alice_auth = _register(client, "alice@example.com", "Alice")

    resp = client.post("/chats/group", json={"name": "Team", "participants": ["ghost"]},
                       headers=alice_auth)

    assert resp.status_code == 400
    assert client.get("/chats", headers=alice_auth).json() == []


def test_direct_chat_with_self_is_rejected(client):
    alice, alice_auth = _register(client, "alice@example.com", "Alice")
    resp = client.post("/chats/direct", json={"user_id": alice}, headers=alice_auth)
    assert resp.status_code == 422


def test_websocket_streams_message_inserts(client):
    alice, alice_auth = _register(client, "alice@example.com", "Alice")
    bob, _ = _register(client, "bob@example.com", "Bob")
    chat_id = client.post("/chats/direct", json={"user_id": bob}, headers=alice_auth).json()["chat_id"]
    token = alice_auth["Authorization"].split(" ", 1)[1]

    with client.websocket_connect(f"/ws/messages?token={token}&chat_id={chat_id}") as ws:
        client.post(f"/chats/{chat_id}/messages", json={"text": "live"}, headers=alice_auth)
        event = ws.receive_json()

    assert event["table"] == "messages"
    assert event["type"] == "INSERT"
    assert event["new"]["text"] == "live"
    assert event["new"]["chat_id"] == chat_id


def test_websocket_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/messages?token=bogus") as ws:
            ws.receive_json()


def test_full_outbox_drops_events_instead_of_blocking():
    outbox = asyncio.Queue(maxsize=1)
    first = ChangeEvent(table="messages", type=ChangeType.INSERT, new={"id": "m1"})
    second = ChangeEvent(table="messages", type=ChangeType.INSERT, new={"id": "m2"})

    assert queue_event(outbox, first) is True
    assert queue_event(outbox, second) is False
    assert outbox.get_nowait()["new"] == {"id": "m1"}
    assert outbox.empty()
