from __future__ import annotations

import json

from chatrelay import app_db
from chatrelay.seed import DEFAULT_CHARACTERS
from conftest import ndjson


def _frames(resp) -> list[dict]:
    return [json.loads(line) for line in resp.text.splitlines() if line.strip()]


def _new_session(client, user, **extra) -> dict:
    resp = client.post("/sessions", json={"userId": user["user_id"], **extra})
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health_and_config(client):
    assert client.get("/health").json() == {"ok": True}
    assert "model" in client.get("/config").json()


def test_user_registration_and_lookup(client):
    resp = client.post("/users", json={"username": "Neo_1"})
    assert resp.status_code == 201
    created = resp.json()
    assert created["username"] == "Neo_1"
    assert created["preferredModel"]

    assert client.post("/users", json={"username": "neo_1"}).status_code == 409
    assert client.post("/users", json={"username": "x"}).status_code == 400
    assert client.get("/users/Neo_1").json()["id"] == created["id"]
    assert client.get("/users/nobody").status_code == 404


def test_chat_streams_deltas_and_persists_reply(client, fake_ollama, user):
    session = _new_session(client, user)
    assert session["title"] == "New chat"
    fake_ollama.chat_chunks = [
        b'{"message":{"content":"Hi"}}\n{"mess',
        b'age":{"content":" there"}}\n',
        ndjson({"done": True}),
    ]

    resp = client.post("/chat", json={"userId": user["user_id"], "sessionId": session["id"], "content": "Hello"})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/x-ndjson")
    assert resp.headers["cache-control"] == "no-cache, no-transform"
    assert _frames(resp) == [
        {"type": "delta", "content": "Hi"},
        {"type": "delta", "content": " there"},
        {"type": "done"},
    ]

    transcript = client.get(f"/sessions/{session['id']}/messages", params={"userId": user["user_id"]}).json()
    assert [(m["role"], m["content"]) for m in transcript["messages"]] == [("user", "Hello"), ("assistant", "Hi there")]
    assert transcript["session"]["messageCount"] == 2
    assert transcript["session"]["title"] == "Hello"

    sent = fake_ollama.chat_requests[0]
    assert sent["model"] == "a"
    assert sent["stream"] is True
    assert sent["messages"][-1] == {"role": "user", "content": "Hello"}


def test_second_turn_keeps_title_and_sends_history(client, fake_ollama, user):
    session = _new_session(client, user)
    fake_ollama.chat_chunks = [ndjson({"response": "one"})]
    client.post("/chat", json={"userId": user["user_id"], "sessionId": session["id"], "content": "First question"})
    fake_ollama.chat_chunks = [ndjson({"response": "two"})]
    client.post("/chat", json={"userId": user["user_id"], "sessionId": session["id"], "content": "Second question"})

    transcript = client.get(f"/sessions/{session['id']}/messages", params={"userId": user["user_id"]}).json()
    assert transcript["session"]["title"] == "First question"
    assert transcript["session"]["messageCount"] == 4
    assert [m["role"] for m in fake_ollama.chat_requests[1]["messages"]] == ["user", "assistant", "user"]


def test_chat_missing_fields_is_400(client, user):
    session = _new_session(client, user)
    for body in (
        {"sessionId": session["id"], "content": "Hi"},
        {"userId": user["user_id"], "content": "Hi"},
        {"userId": user["user_id"], "sessionId": session["id"], "content": "   "},
        {"userId": user["user_id"], "sessionId": session["id"], "content": 42},
    ):
        resp = client.post("/chat", json=body)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "userId, sessionId, and content are required"
    assert app_db.list_messages(session["id"]) == []


def test_chat_unknown_user_or_foreign_session_is_404(client, user, other_user):
    session = _new_session(client, user)
    assert client.post("/chat", json={"userId": "ghost", "sessionId": session["id"], "content": "Hi"}).status_code == 404
    resp = client.post("/chat", json={"userId": other_user["user_id"], "sessionId": session["id"], "content": "Hi"})
    assert resp.status_code == 404
    assert app_db.list_messages(session["id"]) == []


def test_upstream_rejection_is_500_and_keeps_user_turn(client, fake_ollama, user):
    session = _new_session(client, user)
    fake_ollama.chat_status = 500

    resp = client.post("/chat", json={"userId": user["user_id"], "sessionId": session["id"], "content": "Hello"})
    assert resp.status_code == 500
    assert resp.json() == {"detail": "Failed to contact Ollama"}
    assert [m["role"] for m in app_db.list_messages(session["id"])] == ["user"]


def test_upstream_error_frame_ends_stream_without_reply(client, fake_ollama, user):
    session = _new_session(client, user)
    fake_ollama.chat_chunks = [ndjson({"response": "par"}, {"error": "model crashed"})]

    resp = client.post("/chat", json={"userId": user["user_id"], "sessionId": session["id"], "content": "Hello"})
    assert _frames(resp) == [{"type": "delta", "content": "par"}, {"type": "error", "message": "model crashed"}]
    assert [m["role"] for m in app_db.list_messages(session["id"])] == ["user"]


def test_models_endpoint_repairs_stale_preference(client, db):
    carol = app_db.create_user(username="carol", preferred_model="ghost")
    resp = client.get("/models", params={"userId": carol["user_id"]})
    assert resp.status_code == 200
    assert resp.json() == {"models": ["a", "b"], "selectedModel": "a"}
    assert app_db.get_user(carol["user_id"])["preferred_model"] == "a"

    assert client.get("/models").status_code == 400
    assert client.get("/models", params={"userId": "ghost"}).status_code == 404


def test_models_endpoint_falls_back_when_upstream_is_down(client, fake_ollama, user, monkeypatch):
    from chatrelay import main

    monkeypatch.setattr(main.model_resolver, "default_model", "fallback")
    fake_ollama.tags_status = 503
    resp = client.get("/models", params={"userId": user["user_id"]})
    assert resp.json() == {"models": ["fallback"], "selectedModel": "fallback"}


def test_select_model(client, user):
    resp = client.patch(f"/users/{user['user_id']}/model", json={"model": "b"})
    assert resp.json() == {"model": "b"}
    assert app_db.get_user(user["user_id"])["preferred_model"] == "b"
    assert client.patch(f"/users/{user['user_id']}/model", json={"model": "zzz"}).status_code == 400


def test_session_with_foreign_character_requires_publication(client, user, other_user):
    draft = app_db.create_character(owner_id=other_user["user_id"], name="Secret", prompt="Hidden.")
    resp = client.post("/sessions", json={"userId": user["user_id"], "characterId": draft["character_id"]})
    assert resp.status_code == 404
    assert resp.json()["detail"]["code"] == "CHARACTER_NOT_FOUND"

    client.post(f"/characters/{draft['character_id']}/publish", json={"userId": other_user["user_id"]})
    session = _new_session(client, user, characterId=draft["character_id"])
    assert session["character"]["name"] == "Secret"
    assert session["character"]["status"] == "published"


def test_persona_prompt_is_sent_upstream(client, fake_ollama, user, other_user):
    character = app_db.create_character(owner_id=other_user["user_id"], name="Pirate", prompt="Talk like a pirate.")
    client.post(f"/characters/{character['character_id']}/publish", json={"userId": other_user["user_id"]})
    session = _new_session(client, user, characterId=character["character_id"])
    fake_ollama.chat_chunks = [ndjson({"response": "Arr"})]

    client.post("/chat", json={"userId": user["user_id"], "sessionId": session["id"], "content": "Hi"})
    assert fake_ollama.chat_requests[0]["messages"][0] == {"role": "system", "content": "Talk like a pirate."}


def test_publish_pin_and_unpin_routes(client, user, other_user):
    draft = app_db.create_character(owner_id=other_user["user_id"], name="Pirate", prompt="Arr.")
    cid = draft["character_id"]

    resp = client.post(f"/characters/{cid}/pin", json={"userId": user["user_id"]})
    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "CHARACTER_NOT_PUBLISHED"
    assert client.post("/characters/nope/pin", json={"userId": user["user_id"]}).status_code == 404

    assert client.post(f"/characters/{cid}/publish", json={"userId": user["user_id"]}).status_code == 404
    assert client.post(f"/characters/{cid}/publish", json={"userId": other_user["user_id"]}).status_code == 200

    assert client.post(f"/characters/{cid}/pin", json={"userId": user["user_id"]}).status_code == 200
    pinned = client.get("/characters/pinned", params={"userId": user["user_id"]}).json()["characters"]
    assert [c["id"] for c in pinned] == [cid]

    assert client.delete(f"/characters/{cid}/pin", params={"userId": user["user_id"]}).json() == {"ok": True}
    resp = client.delete(f"/characters/{cid}/pin", params={"userId": user["user_id"]})
    assert resp.status_code == 404
    assert resp.json()["detail"]["code"] == "CHARACTER_NOT_PINNED"

    unpublished = client.post(f"/characters/{cid}/unpublish", json={"userId": other_user["user_id"]}).json()
    assert unpublished["character"]["status"] == "draft"


def test_default_characters_are_published_on_startup(client):
    names = {c["name"] for c in client.get("/characters/published").json()["characters"]}
    assert names == {c["name"] for c in DEFAULT_CHARACTERS}


def test_session_and_owned_character_listings(client, fake_ollama, user, other_user):
    mine = app_db.create_character(owner_id=user["user_id"], name="Draft", prompt="Mine.")
    app_db.create_character(owner_id=other_user["user_id"], name="Theirs", prompt="Not mine.")
    older = _new_session(client, user, title="Older")
    newer = _new_session(client, user, characterId=mine["character_id"])
    fake_ollama.chat_chunks = [ndjson({"response": "ok"})]
    client.post("/chat", json={"userId": user["user_id"], "sessionId": older["id"], "content": "bump"})

    sessions = client.get("/sessions", params={"userId": user["user_id"]}).json()["sessions"]
    assert [s["id"] for s in sessions] == [older["id"], newer["id"]]
    assert sessions[0]["messageCount"] == 2
    assert sessions[1]["character"]["status"] == "draft"
    assert client.get("/sessions", params={"userId": other_user["user_id"]}).json() == {"sessions": []}

    owned = client.get("/characters", params={"userId": user["user_id"]}).json()["characters"]
    assert [c["name"] for c in owned] == ["Draft"]


def test_chat_relays_two_message_lines_and_stores_joined_reply(client, fake_ollama, user):
    session = _new_session(client, user)
    fake_ollama.chat_chunks = [b'{"message":{"content":"Hi"}}\n{"message":{"content":" there"}}\n']

    resp = client.post("/chat", json={"userId": user["user_id"], "sessionId": session["id"], "content": "Hello"})
    assert _frames(resp) == [
        {"type": "delta", "content": "Hi"},
        {"type": "delta", "content": " there"},
        {"type": "done"},
    ]
    assistant = [m for m in app_db.list_messages(session["id"]) if m["role"] == "assistant"]
    assert [m["content"] for m in assistant] == ["Hi there"]


def test_pinned_route_drops_character_after_owner_unpublishes(client, user, other_user):
    cid = app_db.create_character(owner_id=other_user["user_id"], name="Oracle", prompt="SECRET PROMPT")["character_id"]
    client.post(f"/characters/{cid}/publish", json={"userId": other_user["user_id"]})
    client.post(f"/characters/{cid}/pin", json={"userId": user["user_id"]})
    client.post(f"/characters/{cid}/unpublish", json={"userId": other_user["user_id"]})

    resp = client.get("/characters/pinned", params={"userId": user["user_id"]})
    assert resp.json() == {"characters": []}
    assert "SECRET PROMPT" not in resp.text
