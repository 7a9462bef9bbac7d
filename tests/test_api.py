import asyncio

import pytest
from fastapi.testclient import TestClient

import main
from main import app, get_store
from subscriptions import Subscription
from tests.conftest import skill_data


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def sign_in(client, user_id="a", **fields):
    response = client.post("/api/session", json={"user_id": user_id, "display_name": user_id.title(), **fields})
    assert response.status_code == 200
    return response.json()


def test_root(client):
    assert client.get("/").json() == {"message": "Swapskill Backend Running"}


def test_database_diagnostics(client):
    body = client.get("/test").json()
    assert body["backend"] == "✅ Running"
    assert body["connection_status"] == "Connected"
    assert isinstance(body["collections"], list)


def test_requires_session(client):
    assert client.get("/api/conversations").status_code == 401
    assert client.get("/api/notifications").status_code == 401


def test_session_and_profile(client):
    profile = sign_in(client)
    assert profile["id"] == "a"
    assert profile["role"] == "user"

    response = client.patch("/api/users/a", json={"bio": "Teaches Python"})
    assert response.json()["bio"] == "Teaches Python"
    assert client.get("/api/users/a").json()["bio"] == "Teaches Python"
    assert client.get("/api/users/nobody").status_code == 404
    assert client.patch("/api/users/someone-else", json={"bio": "x"}).status_code == 403

    assert client.delete("/api/session").status_code == 200
    assert client.get("/api/conversations").status_code == 401


def test_skills_and_search(client, make_user):
    asyncio.run(make_user("b", is_verified=True, rating=4))
    sign_in(client)

    added = client.post("/api/users/a/skills", json={"skill": skill_data("Python"), "type": "offered"}).json()
    assert [s["name"] for s in added["skills"]["offered"]] == ["Python"]
    assert client.get("/api/users/a/skills").json()["offered"][0]["id"] == added["id"]

    # Unverified profiles stay out of search
    assert client.get("/api/users", params={"category": "tech"}).json() == []
    assert [u["id"] for u in client.get("/api/users").json()] == ["b"]


def test_swap_request_flow(client, store, make_user):
    asyncio.run(make_user("b"))
    sign_in(client)
    payload = {
        "requester_id": "a",
        "target_id": "b",
        "offered_skill": skill_data("Python"),
        "requested_skill": skill_data("Guitar"),
    }
    request_id = client.post("/api/swap-requests", json=payload).json()["id"]
    assert client.post("/api/swap-requests", json={**payload, "requester_id": "b"}).status_code == 403

    # The requester can withdraw but not accept
    assert client.patch(f"/api/swap-requests/{request_id}", json={"status": "accepted"}).status_code == 403
    assert client.patch(f"/api/swap-requests/{request_id}", json={"status": "cancelled"}).status_code == 200
    listed = client.get("/api/swap-requests", params={"type": "outgoing"}).json()
    assert [(r["id"], r["status"]) for r in listed] == [(request_id, "cancelled")]


def test_rating_validation(client):
    sign_in(client)
    response = client.post("/api/ratings", json={"to_id": "b", "swap_request_id": "s", "rating": 7})
    assert response.status_code == 400


def test_messaging_flow(client, make_user):
    asyncio.run(make_user("b"))
    sign_in(client)

    conversation_id = client.post("/api/conversations", json={"participants": ["b"]}).json()["id"]
    assert client.post("/api/conversations", json={"participants": []}).status_code == 400

    messages = client.post(f"/api/conversations/{conversation_id}/messages", json={"content": "hi there"}).json()
    assert [m["content"] for m in messages] == ["hi there"]
    message_id = messages[0]["id"]

    assert client.post(f"/api/messages/{message_id}/reactions", json={"emoji": "👍"}).status_code == 200
    assert client.patch(f"/api/messages/{message_id}", json={"content": "hi again"}).status_code == 200

    listed = client.get(f"/api/conversations/{conversation_id}/messages").json()
    assert listed[0]["content"] == "hi again"
    assert listed[0]["reactions"] == [{"emoji": "👍", "users": ["a"]}]

    assert client.delete(f"/api/messages/{message_id}").status_code == 200
    assert client.get(f"/api/conversations/{conversation_id}/messages").json() == []


def test_posting_to_foreign_conversation_is_forbidden(client, services):
    conversation_id = asyncio.run(services.messages.create_conversation(["b", "c"]))
    sign_in(client)
    response = client.post(f"/api/conversations/{conversation_id}/messages", json={"content": "let me in"})
    assert response.status_code == 403
    assert "not part of this conversation" in response.json()["detail"]


def test_admin_routes_need_admin_role(client):
    sign_in(client)
    assert client.get("/api/admin/users").status_code == 403
    assert client.post("/api/admin/broadcasts", json={"content": "hi"}).status_code == 403


def test_admin_moderation(client, make_user):
    asyncio.run(make_user("b", is_verified=True))
    asyncio.run(make_user("boss", role="admin"))
    sign_in(client, "boss")

    assert client.post("/api/admin/broadcasts", json={"content": " "}).status_code == 400
    assert client.post("/api/admin/broadcasts", json={"content": "Welcome!", "type": "success"}).status_code == 200

    flag_id = client.post("/api/reports", json={"content_type": "profile", "content_id": "b", "reason": "spam"}).json()["id"]
    feed = client.get("/api/admin/feed").json()
    assert [m["content"] for m in feed["system_messages"]] == ["Welcome!"]
    assert [f["id"] for f in feed["flagged_content"]] == [flag_id]

    assert client.post("/api/admin/users/b/ban", json={"reason": ""}).status_code == 400
    assert client.post("/api/admin/users/b/ban", json={"reason": "spam"}).status_code == 200
    assert client.post("/api/admin/users/b/verify").status_code == 400
    assert client.post("/api/admin/users/b/unban").status_code == 200
    assert client.post("/api/admin/users/b/verify").status_code == 200

    users = {u["id"]: u for u in client.get("/api/admin/users").json()}
    assert users["b"]["is_verified"] and not users["b"]["is_banned"]

    resolved = client.post(f"/api/admin/flagged/{flag_id}", json={"action": "reject"}).json()
    assert resolved["flagged_content"] == []


def test_session_cannot_grant_admin(client):
    profile = sign_in(client, "mallory", role="admin")
    assert profile["role"] == "user"
    assert client.post("/api/admin/broadcasts", json={"content": "pwned"}).status_code == 403
    assert client.get("/api/admin/users").status_code == 403


def test_outsiders_cannot_touch_messages(client, services):
    async def seed():
        conversation_id = await services.messages.create_conversation(["a", "b"])
        message_id = await services.messages.send_message(conversation_id, "a", "just us")
        return conversation_id, message_id

    conversation_id, message_id = asyncio.run(seed())
    sign_in(client, "c")

    assert client.get(f"/api/conversations/{conversation_id}/messages").status_code == 403
    assert client.post(f"/api/conversations/{conversation_id}/read", json={}).status_code == 403
    assert client.patch(f"/api/messages/{message_id}", json={"content": "rewritten"}).status_code == 403
    assert client.post(f"/api/messages/{message_id}/reactions", json={"emoji": "👎"}).status_code == 403
    assert client.delete(f"/api/messages/{message_id}/reactions/👎").status_code == 403
    assert client.delete(f"/api/messages/{message_id}").status_code == 403
    assert client.patch("/api/messages/missing", json={"content": "x"}).status_code == 404

    message = asyncio.run(services.messages.get_message(message_id))
    assert message.content == "just us"
    assert message.reactions == []


def test_participants_only_change_their_own_messages(client, services):
    async def seed():
        conversation_id = await services.messages.create_conversation(["a", "b"])
        message_id = await services.messages.send_message(conversation_id, "a", "from a")
        return conversation_id, message_id

    conversation_id, message_id = asyncio.run(seed())
    sign_in(client, "b")

    assert client.patch(f"/api/messages/{message_id}", json={"content": "from b"}).status_code == 403
    assert client.delete(f"/api/messages/{message_id}").status_code == 403
    # Reacting is open to every participant
    assert client.post(f"/api/messages/{message_id}/reactions", json={"emoji": "🎸"}).status_code == 200
    listed = client.get(f"/api/conversations/{conversation_id}/messages").json()
    assert [(m["content"], m["reactions"]) for m in listed] == [("from a", [{"emoji": "🎸", "users": ["b"]}])]


def test_terminal_swap_request_rejects_new_status(client, services, make_user):
    asyncio.run(make_user("a"))
    request_id = asyncio.run(services.swap_requests.create_swap_request({
        "requester_id": "b",
        "target_id": "a",
        "offered_skill": skill_data("Python"),
        "requested_skill": skill_data("Guitar"),
    }))
    sign_in(client)

    assert client.patch(f"/api/swap-requests/{request_id}", json={"status": "completed"}).status_code == 200
    response = client.patch(f"/api/swap-requests/{request_id}", json={"status": "accepted"})
    assert response.status_code == 400
    assert "already completed" in response.json()["detail"]


def test_shutdown_cancels_session_listeners():
    main.store.subscriptions.attach("test-slot", "k", lambda: Subscription(lambda: None, label="k"))
    assert len(main.store.subscriptions) == 1
    with TestClient(app):
        pass
    assert len(main.store.subscriptions) == 0
