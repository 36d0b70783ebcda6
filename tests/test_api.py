from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import make_settings
from liveroom.main import create_app
from liveroom.services.document_store import MemoryDocumentStore


@pytest.fixture
def client():
    app = create_app(make_settings(), MemoryDocumentStore())
    with TestClient(app) as test_client:
        yield test_client


def _create_room(client: TestClient, room_id: str, **fields) -> dict:
    response = client.post("/api/rooms/", json={"roomId": room_id, "roomName": f"Room {room_id}", **fields})
    assert response.status_code == 201, response.text
    return response.json()


def test_root_and_health(client: TestClient) -> None:
    assert client.get("/").json()["status"] == "running"
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["timestamp"] > 0


def test_room_crud(client: TestClient) -> None:
    created = _create_room(client, "design", description="  weekly  ", maxParticipants=4)
    assert created["roomId"] == "design"
    assert created["description"] == "weekly"
    assert created["createdBy"] == "system"
    assert created["currentParticipants"] == 0

    assert client.post("/api/rooms/", json={"roomId": "design"}).status_code == 400

    detail = client.get("/api/rooms/design").json()
    assert detail["participants"] == []
    assert detail["maxParticipants"] == 4

    updated = client.put("/api/rooms/design", json={"roomName": "Design sync", "settings": {"allowChat": False}})
    assert updated.status_code == 200
    body = updated.json()
    assert body["roomName"] == "Design sync"
    assert body["settings"]["allowChat"] is False
    assert body["settings"]["allowCodeEditing"] is True

    assert client.get("/api/rooms/missing").status_code == 404
    assert client.put("/api/rooms/missing", json={"roomName": "x"}).status_code == 404


def test_room_list_is_paginated(client: TestClient) -> None:
    for index in range(3):
        _create_room(client, f"team-{index}")
    _create_room(client, "other", roomName="Lunch")

    page = client.get("/api/rooms/", params={"search": "room team", "limit": 2}).json()
    assert page["pagination"] == {
        "currentPage": 1,
        "totalPages": 2,
        "totalRooms": 3,
        "hasNextPage": True,
        "hasPrevPage": False,
    }
    assert len(page["rooms"]) == 2

    assert client.get("/api/rooms/", params={"limit": 51}).status_code == 422


def test_delete_deactivates_then_removes(client: TestClient) -> None:
    _create_room(client, "old")
    response = client.delete("/api/rooms/old")
    assert response.status_code == 200
    assert client.get("/api/rooms/old").status_code == 404
    assert all(room["roomId"] != "old" for room in client.get("/api/rooms/").json()["rooms"])

    assert client.delete("/api/rooms/old", params={"hard": "true"}).status_code == 200
    assert client.delete("/api/rooms/old", params={"hard": "true"}).status_code == 404


def test_users(client: TestClient) -> None:
    response = client.post(
        "/api/users/",
        json={"username": "Ada", "sessionId": "sess-1", "preferences": {"appearance": {"theme": "dark"}}},
    )
    assert response.status_code == 201
    user = response.json()
    assert user["sessionId"] == "sess-1"
    assert user["stats"]["roomsJoined"] == 0

    assert client.post("/api/users/", json={"username": "Ada!"}).status_code == 400
    assert client.post("/api/users/", json={"username": "Bob", "sessionId": "sess-1"}).status_code == 409

    updated = client.put(
        f"/api/users/{user['userId']}",
        json={"preferences": {"appearance": {"cursorColor": "#FF0000"}}},
    ).json()
    assert updated["preferences"]["appearance"] == {"theme": "dark", "cursorColor": "#FF0000"}
    assert client.get(f"/api/users/{user['userId']}").json()["username"] == "Ada"
    assert client.get("/api/users/nobody").status_code == 404


def test_crud_routes_are_rate_limited() -> None:
    app = create_app(make_settings(http_rate_limit_requests=2), MemoryDocumentStore())
    with TestClient(app) as client:
        assert client.get("/api/rooms/").status_code == 200
        assert client.get("/api/rooms/").status_code == 200
        limited = client.get("/api/rooms/")
        assert limited.status_code == 429
        # health checks are not budgeted
        assert client.get("/health").status_code == 200


def test_websocket_join_shows_up_in_rest_views(client: TestClient) -> None:
    with client.websocket_connect("/ws/lobby") as websocket:
        websocket.send_json({"event": "joinRoom", "data": {"username": "Ada", "sessionId": "ws-1"}})
        frame = websocket.receive_json()
        assert frame["event"] == "roomJoined"
        assert frame["data"]["roomId"] == "lobby"
        assert frame["data"]["seq"] == 1

        detail = client.get("/api/rooms/lobby").json()
        assert detail["currentParticipants"] == 1
        assert detail["participants"][0]["username"] == "Ada"
        stats = client.get("/api/hub/stats").json()
        assert stats["rooms"] == 1
        assert stats["connections"] == 1

        websocket.send_json({"event": "ping", "data": {}})
        assert websocket.receive_json()["event"] == "pong"
