import pytest
from starlette.websockets import WebSocketDisconnect

from helpers import BUYER, OTHER, SELLER, auth_header, make_token


def seed_conversation(fake_db, a, b, listing_id=None):
    u1, u2 = sorted([a, b])
    return fake_db.seed("conversations", participant_1=u1, participant_2=u2, listing_id=listing_id)


def test_requests_without_valid_token_are_rejected(api_client):
    assert api_client.get("/chat/conversations").status_code in (401, 403)

    resp = api_client.get("/chat/conversations", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401


def test_responses_carry_request_id(api_client):
    resp = api_client.get(
        "/chat/unread", headers={**auth_header(BUYER), "X-Request-ID": "req-42"}
    )

    assert resp.status_code == 200
    assert resp.headers["X-Request-ID"] == "req-42"
    assert api_client.get("/protected", headers=auth_header(BUYER)).status_code == 404


def test_open_conversation_then_reuse(api_client, fake_db):
    body = {"counterpart_id": SELLER, "listing_id": "listing-1"}

    first = api_client.post("/chat/conversations", json=body, headers=auth_header(BUYER))
    second = api_client.post(
        "/chat/conversations",
        json={"counterpart_id": BUYER, "listing_id": "listing-1"},
        headers=auth_header(SELLER),
    )

    assert first.status_code == 200
    assert first.json()["is_new"] is True
    assert second.json() == {"conversation_id": first.json()["conversation_id"], "is_new": False}
    assert len(fake_db.rows("conversations")) == 1


def test_open_conversation_with_yourself_is_a_bad_request(api_client):
    resp = api_client.post(
        "/chat/conversations", json={"counterpart_id": BUYER}, headers=auth_header(BUYER)
    )
    assert resp.status_code == 400


def test_send_list_and_read_flow(api_client, fake_db):
    convo = seed_conversation(fake_db, BUYER, SELLER)

    sent = api_client.post(
        "/chat/messages",
        json={"conversation_id": convo["id"], "content": "  is it available?  "},
        headers=auth_header(BUYER),
    )
    assert sent.status_code == 201
    assert sent.json()["content"] == "is it available?"

    inbox = api_client.get("/chat/conversations", headers=auth_header(SELLER)).json()
    assert inbox["unread_total"] == 1
    assert inbox["conversations"][0]["other_user"]["full_name"] == "Bea Buyer"
    assert inbox["conversations"][0]["last_message"]["content"] == "is it available?"

    history = api_client.get(f"/chat/messages/{convo['id']}", headers=auth_header(SELLER))
    assert history.status_code == 200
    assert [m["content"] for m in history.json()["messages"]] == ["is it available?"]

    unread = api_client.get("/chat/unread", headers=auth_header(SELLER))
    assert unread.json() == {"unread_total": 0}


def test_blank_and_failed_sends(api_client, fake_db):
    convo = seed_conversation(fake_db, BUYER, SELLER)

    blank = api_client.post(
        "/chat/messages",
        json={"conversation_id": convo["id"], "content": "   "},
        headers=auth_header(BUYER),
    )
    assert blank.status_code == 400

    fake_db.fail("messages", "insert")
    failed = api_client.post(
        "/chat/messages",
        json={"conversation_id": convo["id"], "content": "hello"},
        headers=auth_header(BUYER),
    )
    assert failed.status_code == 502
    assert fake_db.rows("messages") == []


def test_conversation_routes_check_membership(api_client, fake_db):
    convo = seed_conversation(fake_db, BUYER, SELLER)

    assert api_client.get(f"/chat/messages/{convo['id']}", headers=auth_header(OTHER)).status_code == 403
    assert api_client.get("/chat/messages/missing", headers=auth_header(BUYER)).status_code == 404
    resp = api_client.post(
        "/chat/messages",
        json={"conversation_id": convo["id"], "content": "hi"},
        headers=auth_header(OTHER),
    )
    assert resp.status_code == 403


def test_select_deep_link(api_client, fake_db):
    convo = seed_conversation(fake_db, BUYER, SELLER, listing_id="listing-1")

    resp = api_client.get(
        "/chat/conversations/select",
        params={"conversation_id": convo["id"], "listing_id": "listing-1"},
        headers=auth_header(BUYER),
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["conversation"]["conversation"]["id"] == convo["id"]
    assert body["attached_listing"]["name"] == "Vintage lamp"

    missing = api_client.get(
        "/chat/conversations/select",
        params={"conversation_id": "missing"},
        headers=auth_header(BUYER),
    )
    assert missing.status_code == 404


def test_websocket_streams_history_and_send_events(api_client, fake_db):
    convo = seed_conversation(fake_db, BUYER, SELLER)
    fake_db.seed("messages", conversation_id=convo["id"], sender_id=SELLER, content="hello")

    url = f"/chat/ws/{convo['id']}?token={make_token(BUYER)}"
    with api_client.websocket_connect(url) as ws:
        history = ws.receive_json()
        assert history["type"] == "history"
        assert [m["content"] for m in history["messages"]] == ["hello"]

        ws.send_json({"content": "hi there", "client_id": "c-1"})
        provisional = ws.receive_json()
        confirmed = ws.receive_json()
        ack = ws.receive_json()

        assert provisional["type"] == "provisional"
        assert provisional["message"]["id"].startswith("tmp-")
        assert confirmed["type"] == "confirmed"
        assert confirmed["message"]["content"] == "hi there"
        assert ack["type"] == "ack"
        assert ack["ok"] is True
        assert ack["client_id"] == "c-1"
        assert ack["message"]["id"] == confirmed["message"]["id"]


def test_websocket_answers_malformed_frames_and_stays_open(api_client, fake_db):
    convo = seed_conversation(fake_db, BUYER, SELLER)

    url = f"/chat/ws/{convo['id']}?token={make_token(BUYER)}"
    with api_client.websocket_connect(url) as ws:
        assert ws.receive_json()["type"] == "history"

        ws.send_text("not json")
        assert ws.receive_json() == {"type": "error", "detail": "Frames must be JSON objects"}

        ws.send_json(["content", "hi"])
        assert ws.receive_json()["type"] == "error"

        ws.send_json({"content": 42, "client_id": "c-2"})
        ack = ws.receive_json()
        assert ack["type"] == "ack"
        assert ack["ok"] is False

        ws.send_json({"content": "still here"})
        assert ws.receive_json()["type"] == "provisional"
        assert ws.receive_json()["type"] == "confirmed"
        assert ws.receive_json()["ok"] is True

    assert [m["content"] for m in fake_db.rows("messages")] == ["still here"]


def test_inbox_socket_pushes_listing_on_message_changes(api_client, fake_db):
    convo = seed_conversation(fake_db, BUYER, SELLER, listing_id="listing-1")

    url = f"/chat/ws/inbox?token={make_token(BUYER)}"
    with api_client.websocket_connect(url) as ws:
        first = ws.receive_json()
        assert first["type"] == "inbox"
        assert first["unread_total"] == 0
        assert first["conversations"][0]["conversation"]["id"] == convo["id"]
        assert [ch.topic for ch in fake_db.channels] == [f"messages-global-{BUYER}"]

        row = fake_db.seed(
            "messages", conversation_id=convo["id"], sender_id=SELLER, content="new offer"
        )
        api_client.portal.call(fake_db.broadcast, "messages", "INSERT", row)

        pushed = ws.receive_json()
        assert pushed["type"] == "inbox"
        assert pushed["unread_total"] == 1
        assert pushed["conversations"][0]["last_message"]["content"] == "new offer"

        ws.send_json({"type": "refresh"})
        assert ws.receive_json()["unread_total"] == 1

        ws.send_text("ping")
        assert ws.receive_json()["type"] == "error"


def test_inbox_socket_requires_a_token(api_client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with api_client.websocket_connect("/chat/ws/inbox") as ws:
            ws.receive_json()

    assert exc.value.code == 4401
