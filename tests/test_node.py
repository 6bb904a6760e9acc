import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from tuturu.config import Settings
from tuturu.signaling.node import Peer, _Close, create_app

from tests.conftest import RecordingStore, TURN_SECRET

CODE = "482913"


@pytest.fixture
def app():
    return create_app(Settings())


def test_health_reports_rooms(app):
    with TestClient(app) as client:
        response = client.get("/health")
        assert response.status_code == 200
        payload = response.json()
        assert payload["status"] == "ok"
        assert payload["rooms"] == 0
        assert payload["revocation"] is False

        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "join", "code": CODE})
            ws.receive_json()
            assert client.get("/health").json()["rooms"] == 1


def test_call_between_two_browsers(app):
    offer = {"type": "offer", "sdp": "v=0..."}
    answer = {"type": "answer", "sdp": "v=0..."}

    with TestClient(app) as client:
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            a.send_json({"type": "join", "code": CODE})
            joined = a.receive_json()
            assert joined["type"] == "join"
            assert joined["data"]["relayPolicy"] == "all"

            b.send_json({"type": "join", "code": CODE})
            assert b.receive_json()["type"] == "join"
            assert a.receive_json() == {"type": "peer-joined"}

            a.send_json({"type": "offer", "data": offer})
            assert b.receive_json() == {"type": "offer", "data": offer}

            b.send_json({"type": "answer", "data": answer})
            assert a.receive_json() == {"type": "answer", "data": answer}

            a.send_json({"type": "leave"})
            assert b.receive_json() == {"type": "peer-left"}
            with pytest.raises(WebSocketDisconnect) as closed:
                a.receive_json()
            assert closed.value.code == 1000

            b.send_json({"type": "leave"})
            with pytest.raises(WebSocketDisconnect):
                b.receive_json()

        assert CODE not in app.state.registry

        with client.websocket_connect("/ws") as c:
            c.send_json({"type": "join", "code": CODE})
            assert c.receive_json()["type"] == "join"
            assert len(app.state.registry.get(CODE).occupants) == 1


def test_abrupt_disconnect_notifies_peer(app):
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as a:
            a.send_json({"type": "join", "code": CODE})
            a.receive_json()
            with client.websocket_connect("/ws") as b:
                b.send_json({"type": "join", "code": CODE})
                b.receive_json()
                assert a.receive_json() == {"type": "peer-joined"}
            assert a.receive_json() == {"type": "peer-left"}


def test_malformed_code_closes_connection(app):
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "join", "code": "12a45"})
            error = ws.receive_json()
            assert error["type"] == "error"
            assert "12a45" in error["error"]
            with pytest.raises(WebSocketDisconnect) as closed:
                ws.receive_json()
            assert closed.value.code == 1008
        assert len(app.state.registry) == 0


def test_unknown_message_type_closes_connection(app):
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_text('{"type": "hello"}')
            assert ws.receive_json() == {"type": "error", "error": "Invalid message: Unknown message type: hello"}
            with pytest.raises(WebSocketDisconnect) as closed:
                ws.receive_json()
            assert closed.value.code == 1008


def test_third_client_gets_room_full(app):
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            for ws in (a, b):
                ws.send_json({"type": "join", "code": CODE})
                ws.receive_json()
            with client.websocket_connect("/ws") as c:
                c.send_json({"type": "join", "code": CODE})
                error = c.receive_json()
                assert error == {"type": "error", "error": f"Room {CODE} is full (maximum 2 clients)"}
                with pytest.raises(WebSocketDisconnect):
                    c.receive_json()
            assert len(app.state.registry.get(CODE).occupants) == 2


def test_join_includes_turn_servers_when_configured():
    settings = Settings(turn_secret=TURN_SECRET, domain="example.com", force_relay=True)
    store = RecordingStore()
    app = create_app(settings, revocations=store)

    with TestClient(app) as client:
        assert client.get("/health").json()["revocation"] is True
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "join", "code": CODE})
            data = ws.receive_json()["data"]

    assert data["relayPolicy"] == "relay"
    urls = [entry["urls"] for entry in data["iceServers"]]
    assert urls[0].startswith("stun:")
    assert "turns:t.example.com:443?transport=tcp" in urls
    usernames = {entry.get("username") for entry in data["iceServers"][1:]}
    assert len(usernames) == 1
    assert store.revoked and store.revoked[0][0] in usernames


def test_binary_frames_are_decoded(app):
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_bytes(b'{"type":"join","code":"482913"}')
            assert ws.receive_json()["type"] == "join"

        with client.websocket_connect("/ws") as ws:
            ws.send_bytes(b"\xff\xfe")
            assert ws.receive_json() == {"type": "error", "error": "Invalid message: Malformed JSON"}
            with pytest.raises(WebSocketDisconnect) as closed:
                ws.receive_json()
            assert closed.value.code == 1008


def test_stalled_client_outbox_is_bounded(monkeypatch):
    monkeypatch.setattr("tuturu.signaling.node.OUTBOX_LIMIT", 3)
    peer = Peer(ws=None, connection_id="client-slow")

    for i in range(5):
        peer.send({"type": "ice-candidate", "data": i})

    assert peer._outbox.qsize() == 1
    marker = peer._outbox.get_nowait()
    assert isinstance(marker, _Close)
    assert marker.code == 1008
