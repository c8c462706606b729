from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import main
from auth import create_access_token
from conftest import FAST, FakeLedger
from errors import InvariantViolation
from game import TABLES, Table


@pytest.fixture
def client():
    TABLES.clear()
    TABLES["table-1"] = Table(
        "table-1",
        "Fort Creek #1",
        ledger=FakeLedger({1: Decimal("10.00"), 2: Decimal("10.00")}),
        listener=main.hub,
        timings=FAST,
    )
    with TestClient(main.app) as test_client:
        yield test_client
    TABLES.clear()


def _auth(user_id, name):
    return {"Authorization": f"Bearer {create_access_token(user_id, name)}"}


def test_state_requires_token(client):
    assert client.get("/api/tables/table-1/state").status_code == 401


def test_state_for_unknown_table(client):
    r = client.get("/api/tables/nope/state", headers=_auth(1, "alice"))
    assert r.status_code == 404


def test_state_projection(client):
    r = client.get("/api/tables/table-1/state", headers=_auth(1, "alice"))
    assert r.status_code == 200
    data = r.json()
    assert data["tableId"] == "table-1"
    assert data["state"] == "Waiting for Players"
    assert data["players"] == []
    assert data["insurance"]["isActive"] is False


def test_ws_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/table-1?token=garbage") as ws:
            ws.receive_json()


def test_ws_join_and_error_frames(client):
    token = create_access_token(1, "alice")
    with client.websocket_connect(f"/ws/table-1?token={token}") as ws:
        first = ws.receive_json()
        assert first["type"] == "state"
        assert first["payload"]["players"] == []

        ws.send_json({"type": "join"})
        joined = ws.receive_json()
        assert joined["type"] == "state"
        assert [p["playerName"] for p in joined["payload"]["players"]] == ["alice"]
        assert joined["payload"]["playerTokens"]["alice"] == "10.00"

        ws.send_json({"type": "placeBid", "bid": "Frog"})
        error = ws.receive_json()
        assert error["type"] == "error"
        assert "Waiting for Players" in error["error"]

        ws.send_json({"type": "shuffleDeck"})
        invalid = ws.receive_json()
        assert invalid["type"] == "error"
        assert invalid["error"].startswith("Invalid command")


def test_ws_broadcasts_to_other_watchers(client):
    token_a = create_access_token(1, "alice")
    token_b = create_access_token(2, "bob")
    with client.websocket_connect(f"/ws/table-1?token={token_a}") as ws_a:
        ws_a.receive_json()
        with client.websocket_connect(f"/ws/table-1?token={token_b}") as ws_b:
            ws_b.receive_json()
            ws_b.send_json({"type": "join", "playerName": "bobby"})
            seen_by_b = ws_b.receive_json()
            seen_by_a = ws_a.receive_json()
            assert [p["playerName"] for p in seen_by_a["payload"]["players"]] == ["bobby"]
            assert seen_by_a["payload"]["hand"] is None
            assert seen_by_b["payload"]["players"][0]["userId"] == 2


def test_ws_server_error_closes_socket_and_frees_seat(client, monkeypatch):
    token = create_access_token(1, "alice")
    with client.websocket_connect(f"/ws/table-1?token={token}") as ws:
        ws.receive_json()
        ws.send_json({"type": "join"})
        ws.receive_json()
        assert TABLES["table-1"]._seat(1) is not None

        async def broken(*args, **kwargs):
            raise InvariantViolation("Trick without a winner")

        monkeypatch.setattr(main, "apply_command", broken)
        ws.send_json({"type": "leave"})
        with pytest.raises(WebSocketDisconnect) as closed:
            ws.receive_json()
        assert closed.value.code == 1011

    assert TABLES["table-1"]._seat(1) is None
    assert not main.hub.is_watching("table-1", 1)
