import pytest
from sqlalchemy.exc import OperationalError
from starlette.websockets import WebSocketDisconnect

from boardsync.auth import TokenService
from boardsync.storage import HierarchyStore


def connect(client, user):
    return client.websocket_connect(f"/ws?token={user['token']}")


def handshake(ws):
    message = ws.receive_json()
    assert message["event"] == "connected"
    return message["data"]["sessionId"]


def join(ws, board_id):
    ws.send_json({"event": "join-board", "data": board_id})
    assert ws.receive_json() == {"event": "joined", "data": {"boardId": board_id}}


def assert_quiet(ws):
    """Nothing is queued ahead of a fresh pong."""
    ws.send_json({"event": "ping"})
    assert ws.receive_json() == {"event": "pong", "data": None}


def test_handshake_rejects_invalid_signature(client, register):
    user = register()
    forged = TokenService("not-our-secret").issue(user["id"])
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect(f"/ws?token={forged}"):
            pass
    assert excinfo.value.code == 1008


def test_handshake_rejects_missing_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws"):
            pass


def test_handshake_accepts_bearer_header(client, register):
    user = register()
    with client.websocket_connect("/ws", headers=user["headers"]) as ws:
        message = ws.receive_json()
        assert message["event"] == "connected"
        assert message["data"]["userId"] == user["id"]


def test_relayed_event_reaches_room_except_sender(client, register, make_board):
    alice, bob, carol, dave = (register(n) for n in ("Alice", "Bob", "Carol", "Dave"))
    board = make_board(alice, members=[bob, carol])
    payload = {
        "boardId": board["id"],
        "taskId": "t1",
        "sourceListId": board["lists"][0]["id"],
        "targetListId": board["lists"][1]["id"],
        "task": {"id": "t1", "title": "moved"},
    }

    with (
        connect(client, alice) as wa,
        connect(client, bob) as wb,
        connect(client, carol) as wc,
        connect(client, dave) as wd,
    ):
        for ws in (wa, wb, wc, wd):
            handshake(ws)
        for ws in (wa, wb, wc):
            join(ws, board["id"])

        wc.send_json({"event": "task-moved", "data": payload})

        assert wa.receive_json() == {"event": "task-moved", "data": payload}
        assert wb.receive_json() == {"event": "task-moved", "data": payload}
        assert_quiet(wc)
        assert_quiet(wd)


def test_disconnected_session_leaves_every_room(client, app, register, make_board):
    alice, bob = register("Alice"), register("Bob")
    board = make_board(alice, members=[bob])
    other = make_board(bob, "Bob's own")
    broadcaster = app.state.broadcaster

    with connect(client, alice) as wa:
        alice_sid = handshake(wa)
        join(wa, board["id"])
        with connect(client, bob) as wb:
            bob_sid = handshake(wb)
            join(wb, board["id"])
            join(wb, other["id"])
            assert broadcaster.subscribers(board["id"]) == {alice_sid, bob_sid}

        assert broadcaster.subscribers(board["id"]) == {alice_sid}
        assert broadcaster.subscriptions(bob_sid) == set()
        assert broadcaster.subscribers(other["id"]) == set()

        client.post("/api/tasks", json={"title": "after", "listId": board["lists"][0]["id"]}, headers=bob["headers"])
        assert wa.receive_json()["event"] == "task-created"


def test_non_member_cannot_join_or_relay(client, register, make_board):
    alice, mallory = register("Alice"), register("Mallory")
    board = make_board(alice)

    with connect(client, alice) as wa, connect(client, mallory) as wm:
        handshake(wa)
        handshake(wm)
        join(wa, board["id"])

        wm.send_json({"event": "join-board", "data": {"boardId": board["id"]}})
        assert wm.receive_json() == {
            "event": "error",
            "data": {"message": "You do not have access to this board", "event": "join-board"},
        }

        wm.send_json({"event": "task-deleted", "data": {"boardId": board["id"], "taskId": "t1", "listId": "l1"}})
        assert wm.receive_json()["event"] == "error"
        assert_quiet(wa)


def test_leave_board_stops_delivery(client, register, make_board):
    alice, bob = register("Alice"), register("Bob")
    board = make_board(alice, members=[bob])

    with connect(client, bob) as wb:
        handshake(wb)
        join(wb, board["id"])
        wb.send_json({"event": "leave-board", "data": board["id"]})
        assert wb.receive_json() == {"event": "left", "data": {"boardId": board["id"]}}

        client.post("/api/tasks", json={"title": "quiet", "listId": board["lists"][0]["id"]}, headers=alice["headers"])
        assert_quiet(wb)


def test_bad_frames_answer_with_error(client, register):
    user = register()
    with connect(client, user) as ws:
        handshake(ws)
        ws.send_text("{not json")
        assert ws.receive_json() == {"event": "error", "data": {"message": "Malformed message"}}
        ws.send_bytes(b"\xff\x00garbage")
        assert ws.receive_json() == {"event": "error", "data": {"message": "Malformed message"}}
        ws.send_json({"event": "shout", "data": {}})
        assert ws.receive_json() == {"event": "error", "data": {"message": "Unknown event", "event": "shout"}}
        ws.send_json({"event": "join-board"})
        assert ws.receive_json()["data"]["message"] == "boardId is required"
        assert_quiet(ws)


def test_http_mutations_publish_server_side(client, register, make_board):
    alice, bob = register("Alice"), register("Bob")
    board = make_board(alice, members=[bob])
    todo, doing = board["lists"][0], board["lists"][1]

    with connect(client, alice) as wa, connect(client, bob) as wb:
        alice_sid = handshake(wa)
        handshake(wb)
        join(wa, board["id"])
        join(wb, board["id"])
        headers = {**alice["headers"], "X-Socket-Id": alice_sid}

        created = client.post("/api/tasks", json={"title": "live", "listId": todo["id"]}, headers=headers).json()["data"]
        event = wb.receive_json()
        assert event["event"] == "task-created"
        assert event["data"]["boardId"] == board["id"]
        assert event["data"]["task"]["id"] == created["id"]

        client.put(f"/api/tasks/{created['id']}", json={"listId": doing["id"]}, headers=headers)
        moved = wb.receive_json()
        assert moved["event"] == "task-moved"
        assert moved["data"]["sourceListId"] == todo["id"]
        assert moved["data"]["targetListId"] == doing["id"]
        assert moved["data"]["task"]["listId"] == doing["id"]

        client.put(f"/api/tasks/{created['id']}", json={"status": "Done"}, headers=headers)
        updated = wb.receive_json()
        assert updated["event"] == "task-updated"
        assert updated["data"]["task"]["status"] == "Done"

        client.delete(f"/api/tasks/{created['id']}", headers=headers)
        assert wb.receive_json() == {
            "event": "task-deleted",
            "data": {"boardId": board["id"], "taskId": created["id"], "listId": doing["id"]},
        }

        listed = client.post("/api/lists", json={"name": "Review", "boardId": board["id"]}, headers=alice["headers"])
        assert wb.receive_json()["data"]["list"]["id"] == listed.json()["data"]["id"]
        # alice's own socket only sees the list event, which was sent without X-Socket-Id
        assert wa.receive_json()["event"] == "list-created"
        assert_quiet(wa)


def test_storage_failure_during_join_answers_error(client, register, make_board, monkeypatch):
    alice = register("Alice")
    board = make_board(alice)

    def locked(self, board_id):
        raise OperationalError("SELECT boards", {}, Exception("database is locked"))

    with connect(client, alice) as ws:
        handshake(ws)
        monkeypatch.setattr(HierarchyStore, "get_board", locked)
        ws.send_json({"event": "join-board", "data": board["id"]})
        assert ws.receive_json() == {
            "event": "error",
            "data": {"message": "Internal server error", "event": "join-board"},
        }
        assert_quiet(ws)
