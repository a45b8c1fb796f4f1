"""
End-to-end tests for the REST routes and the /ws endpoint.
"""
import pytest
from fastapi.testclient import TestClient

from app import create_app
from backend import InMemoryBackend
from conftest import FakeClock, PASSWORD
from coordinator import build_coordinator
from errors import ACCESS_DENIED_MESSAGE


@pytest.fixture
def client(hasher):
    coordinator = build_coordinator(InMemoryBackend(), hasher=hasher)
    with TestClient(create_app(coordinator)) as test_client:
        yield test_client


def create_room(client, nickname="alice", max_users=None):
    body = {"nickname": nickname, "password": PASSWORD}
    if max_users is not None:
        body["maxUsers"] = max_users
    response = client.post("/api/rooms", json=body)
    assert response.status_code == 200, response.text
    return response.json()


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "OK"
    assert data["storage"] == "memory"
    assert "timestamp" in data


def test_create_room(client):
    room = create_room(client)

    assert len(room["roomId"]) == 32
    assert len(room["encryptionKey"]) == 64
    assert room["sessionId"]
    assert room["expiresAt"]

    info = client.get(f"/api/rooms/{room['roomId']}").json()
    assert info["creator"] == "alice"
    assert info["userCount"] == 1
    assert info["maxUsers"] == 10
    assert "password_hash" not in info
    assert "encryptionKey" not in info


def test_create_room_clamps_max_users(client):
    room = create_room(client, max_users=500)
    assert client.get(f"/api/rooms/{room['roomId']}").json()["maxUsers"] == 50


@pytest.mark.parametrize("body", [
    {"nickname": "alice", "password": "short"},
    {"nickname": "alice", "password": "alllowercase1"},
    {"nickname": "alice", "password": "NoDigitsHere"},
    {"nickname": "bad nickname", "password": PASSWORD},
    {"nickname": "x" * 21, "password": PASSWORD},
    {"password": PASSWORD},
])
def test_create_room_validation(client, body):
    assert client.post("/api/rooms", json=body).status_code == 422


def test_join_room(client):
    room = create_room(client)

    response = client.post(f"/api/rooms/{room['roomId']}/join", json={"nickname": "bob", "password": PASSWORD})

    assert response.status_code == 200
    joined = response.json()
    assert joined["encryptionKey"] == room["encryptionKey"]
    assert joined["sessionId"] != room["sessionId"]
    assert client.get(f"/api/rooms/{room['roomId']}").json()["userCount"] == 2


def test_wrong_password_and_missing_room_are_indistinguishable(client):
    room = create_room(client)

    wrong = client.post(f"/api/rooms/{room['roomId']}/join", json={"nickname": "bob", "password": "Wrong123"})
    missing = client.post("/api/rooms/0000/join", json={"nickname": "bob", "password": PASSWORD})

    assert wrong.status_code == missing.status_code == 404
    assert wrong.json() == missing.json() == {"error": ACCESS_DENIED_MESSAGE}


def test_join_full_room(client):
    room = create_room(client, max_users=1)

    response = client.post(f"/api/rooms/{room['roomId']}/join", json={"nickname": "bob", "password": PASSWORD})

    assert response.status_code == 403
    assert response.json() == {"error": "Room is full"}


def test_room_info_for_missing_room(client):
    response = client.get("/api/rooms/unknown")
    assert response.status_code == 404
    assert response.json() == {"error": ACCESS_DENIED_MESSAGE}


def join_frame(room_id, nickname, session_id=None):
    data = {"roomId": room_id, "nickname": nickname, "password": PASSWORD}
    if session_id:
        data["sessionId"] = session_id
    return {"event": "join-room", "data": data}


def test_websocket_chat_flow(client):
    room = create_room(client)
    room_id = room["roomId"]

    with client.websocket_connect("/ws") as alice:
        alice.send_json(join_frame(room_id, "alice", room["sessionId"]))
        assert alice.receive_json() == {"event": "session-updated", "data": {"sessionId": room["sessionId"]}}
        info = alice.receive_json()
        assert info["event"] == "room-info"
        assert info["data"]["currentUsers"] == 1
        assert info["data"]["encryptionKey"] == room["encryptionKey"]

        with client.websocket_connect("/ws") as bob:
            bob.send_json(join_frame(room_id, "bob"))
            assert bob.receive_json()["event"] == "session-updated"
            assert sorted(bob.receive_json()["data"]["users"]) == ["alice", "bob"]

            joined = alice.receive_json()
            assert joined["event"] == "user-joined"
            assert joined["data"]["nickname"] == "bob"

            bob.send_json({"event": "send-message", "data": {"text": "ciphertext", "iv": "abc"}})
            for ws in (bob, alice):
                message = ws.receive_json()
                assert message["event"] == "new-message"
                assert message["data"]["text"] == "ciphertext"
                assert message["data"]["sender"] == "bob"

            alice.send_json({"event": "panic-mode", "data": {}})
            for ws in (alice, bob):
                panic = ws.receive_json()
                assert panic["event"] == "panic-mode"
                assert panic["data"]["triggeredBy"] == "alice"

        left = alice.receive_json()
        assert left["event"] == "user-left"
        assert left["data"]["user"]["nickname"] == "bob"
        assert client.get(f"/api/rooms/{room_id}").json()["userCount"] == 1


def test_websocket_requires_join_first(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"event": "send-message", "data": {"text": "hello"}})
        error = ws.receive_json()
        assert error["event"] == "message-error"
        assert error["data"]["message"] == "Not in a room"

        ws.send_json({"event": "ping", "data": {}})
        assert ws.receive_json()["event"] == "pong"


def test_join_attempts_are_throttled_per_client(client):
    room = create_room(client)
    join_url = f"/api/rooms/{room['roomId']}/join"

    for _ in range(20):
        assert client.post(join_url, json={"nickname": "bob", "password": "Wrong123"}).status_code == 404
    response = client.post(join_url, json={"nickname": "bob", "password": PASSWORD})

    assert response.status_code == 429
    assert response.json() == {"error": "Too many authentication attempts. Please try again later."}


def test_room_creation_is_throttled_per_client(client):
    for i in range(50):
        create_room(client, nickname=f"user{i}")

    response = client.post("/api/rooms", json={"nickname": "late", "password": PASSWORD})

    assert response.status_code == 429
    assert response.json() == {"error": "Too many room creations. Please try again later."}


def test_expired_room_is_only_revealed_to_the_right_password(hasher):
    clock = FakeClock()
    coordinator = build_coordinator(InMemoryBackend(), hasher=hasher, clock=clock)
    with TestClient(create_app(coordinator)) as client:
        room = create_room(client)
        clock.advance(901)
        join_url = f"/api/rooms/{room['roomId']}/join"

        wrong = client.post(join_url, json={"nickname": "bob", "password": "Wrong123"})
        right = client.post(join_url, json={"nickname": "bob", "password": PASSWORD})

    assert wrong.status_code == 404
    assert wrong.json() == {"error": ACCESS_DENIED_MESSAGE}
    assert right.status_code == 410
    assert right.json() == {"error": "Room has expired"}
