"""HTTP and WebSocket surface tests through FastAPI's TestClient.

Discovery is switched off for the lifespan, so no zeroconf sockets are opened.
"""

import pytest
from fastapi.testclient import TestClient

import main


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(main, "DISCOVERY_ENABLED", False)
    with TestClient(main.app) as client:
        yield client
    main.discovery_service._registry.clear()


def join(room: str, name: str) -> dict:
    return {
        "event": "join-workspace",
        "data": {"workspaceId": room, "userName": name, "userId": name.lower(), "avatarColor": "#abc"},
    }


class TestRestApi:

    def test_peers_empty(self, client):
        resp = client.get("/api/peers")
        assert resp.status_code == 200
        assert resp.json() == {"peers": []}

    def test_peers_lists_registry(self, client):
        main.discovery_service.handle_advertisement(
            "RyFlow-Bob._http._tcp.local.", "10.0.0.5", 4100, {"app": "ryflow"}
        )
        (peer,) = client.get("/api/peers").json()["peers"]
        assert peer["display_name"] == "Bob"
        assert peer["host"] == "10.0.0.5"
        assert peer["port"] == 4100
        assert isinstance(peer["last_seen"], float)

    def test_discovery_status_standalone(self, client):
        body = client.get("/api/discovery").json()
        assert body["running"] is False
        assert body["standalone"] is True

    def test_health(self, client):
        body = client.get("/api/health").json()
        assert body["status"] == "ok"
        assert "timestamp" in body


class TestRelayWebSocket:

    def test_two_clients_collaborate(self, client):
        with client.websocket_connect("/ws") as a:
            a_id = a.receive_json()["data"]["connectionId"]
            a.send_json(join("ws-1", "Alice"))
            first = a.receive_json()
            assert first["event"] == "presence-update"
            assert [m["userName"] for m in first["data"]] == ["Alice"]

            with client.websocket_connect("/ws") as b:
                b_id = b.receive_json()["data"]["connectionId"]
                b.send_json(join("ws-1", "Bob"))
                for ws in (a, b):
                    msg = ws.receive_json()
                    assert msg["event"] == "presence-update"
                    assert [m["userName"] for m in msg["data"]] == ["Alice", "Bob"]

                room = client.get("/api/rooms/ws-1").json()
                assert [m["userName"] for m in room["members"]] == ["Alice", "Bob"]

                a.send_json({
                    "event": "cursor-update",
                    "data": {"workspaceId": "ws-1", "position": 12, "userName": "Alice", "avatarColor": "#abc"},
                })
                msg = b.receive_json()
                assert msg["event"] == "cursor-update"
                assert msg["data"]["userId"] == a_id
                assert msg["data"]["position"] == 12

                # A malformed frame leaves the connection usable
                b.send_text("{not json")
                b.send_json({"event": "signal-offer", "data": {"targetId": a_id, "offer": {"sdp": "x"}, "from": "Bob"}})
                msg = a.receive_json()
                # No cursor echo was queued ahead of the offer
                assert msg["event"] == "signal-offer"
                assert msg["data"] == {"offer": {"sdp": "x"}, "from": b_id, "fromName": "Bob"}

            msg = a.receive_json()
            assert msg["event"] == "presence-update"
            assert [m["userName"] for m in msg["data"]] == ["Alice"]

    def test_bad_frames_do_not_drop_sender(self, client):
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            a.receive_json()
            b.receive_json()
            a.send_json(join("ws-1", "Alice"))
            a.receive_json()
            b.send_json(join("ws-1", "Bob"))
            a.receive_json()
            b.receive_json()

            a.send_bytes(b"\x00\x01garbage")
            a.send_text("[" * 100000 + "]" * 100000)
            a.send_json({"event": "doc-update", "data": {"workspaceId": "ws-1", "docId": "d1", "update": [1, 2]}})

            msg = b.receive_json()
            assert msg["event"] == "doc-update"
            assert msg["data"]["update"] == [1, 2]
            room = client.get("/api/rooms/ws-1").json()
            assert [m["userName"] for m in room["members"]] == ["Alice", "Bob"]
