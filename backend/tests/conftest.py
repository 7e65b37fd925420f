from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator

import httpx
import pytest
from fastapi.testclient import TestClient

from chatrelay import app_db, config


def ndjson(*payloads: dict[str, Any]) -> bytes:
    return b"".join(json.dumps(p).encode("utf-8") + b"\n" for p in payloads)


class FakeOllama:
    """Scriptable stand-in for the upstream backend, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.models: list[str] = ["a", "b"]
        self.tags_status = 200
        self.chat_status = 200
        self.chat_chunks: list[bytes] = []
        self.chat_requests: list[dict[str, Any]] = []
        self.tags_calls = 0
        self.chat_hang = False
        self.chat_cancelled = False

    async def _body(self) -> AsyncIterator[bytes]:
        for chunk in self.chat_chunks:
            yield chunk

    async def _hang(self) -> httpx.Response:
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.chat_cancelled = True
            raise
        return httpx.Response(500)

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            self.tags_calls += 1
            if self.tags_status != 200:
                return httpx.Response(self.tags_status, text="unavailable")
            return httpx.Response(200, json={"models": [{"name": m, "model": m} for m in self.models]})
        if request.url.path == "/api/chat":
            self.chat_requests.append(json.loads(request.content))
            if self.chat_hang:
                return self._hang()  # type: ignore[return-value]
            if self.chat_status != 200:
                return httpx.Response(self.chat_status, text="boom")
            return httpx.Response(200, content=self._body(), headers={"Content-Type": "application/x-ndjson"})
        return httpx.Response(404)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakeRequest:
    def __init__(self) -> None:
        self.disconnected = False

    async def is_disconnected(self) -> bool:
        return self.disconnected


@pytest.fixture
def db(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "APP_DB_PATH", tmp_path / "chat.sqlite")
    app_db.init_db()
    return tmp_path / "chat.sqlite"


@pytest.fixture
def fake_ollama() -> FakeOllama:
    return FakeOllama()


@pytest.fixture
def client(db, fake_ollama, monkeypatch):
    from chatrelay import main

    monkeypatch.setattr(main.ollama_client, "_transport", fake_ollama.transport())
    monkeypatch.setattr(main.ollama_client, "_client", None)
    monkeypatch.setattr(main.model_resolver, "_last_good", None)
    main.model_cache.clear()
    main.character_cache.clear()
    with TestClient(main.app) as c:
        yield c
    main.model_cache.clear()
    main.character_cache.clear()


@pytest.fixture
def user(db) -> dict[str, Any]:
    return app_db.create_user(username="alice", preferred_model="a")


@pytest.fixture
def other_user(db) -> dict[str, Any]:
    return app_db.create_user(username="bob", preferred_model="a")
