from __future__ import annotations

import re
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from . import app_db
from .cache import MemoryCache
from .characters import (
    CHARACTER_NOT_FOUND,
    CHARACTER_NOT_PINNED,
    CHARACTER_NOT_PUBLISHED,
    Character,
    CharacterError,
    CharacterService,
)
from .chat import ChatAborted, ChatOrchestrator, ChatTurnError
from .config import OLLAMA_MODEL, SYSTEM_PROMPT
from .conversation import ContextBuilder
from .logging_utils import get_logger
from .model_resolver import ModelResolver
from .ollama import OllamaClient, OllamaError
from .relay import RELAY_ERROR_MESSAGE, StreamRelay
from .schemas import (
    CharacterActionRequest,
    CharacterInfo,
    CharacterResponse,
    CharactersResponse,
    ChatRequest,
    ConfigResponse,
    Message,
    ModelSelectRequest,
    ModelSelectResponse,
    ModelsResponse,
    OkResponse,
    SessionCreateRequest,
    SessionInfo,
    SessionsResponse,
    TranscriptResponse,
    UserCreateRequest,
    UserInfo,
)
from .seed import ensure_default_characters

log = get_logger(__name__)

app = FastAPI(title="chatrelay-backend")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

model_cache = MemoryCache()
character_cache = MemoryCache()

ollama_client = OllamaClient()
model_resolver = ModelResolver(ollama_client, cache=model_cache)
character_service = CharacterService(cache=character_cache)
context_builder = ContextBuilder(character_service, system_prompt=SYSTEM_PROMPT)
stream_relay = StreamRelay(ollama_client)
orchestrator = ChatOrchestrator(context=context_builder, resolver=model_resolver, relay=stream_relay)

USERNAME_RE = re.compile(r"^[a-zA-Z0-9_-]{3,32}$")

_CHARACTER_ERROR_STATUS = {
    CHARACTER_NOT_FOUND: 404,
    CHARACTER_NOT_PUBLISHED: 409,
    CHARACTER_NOT_PINNED: 404,
}


@app.on_event("startup")
def _startup() -> None:
    app_db.init_db()
    ensure_default_characters()


@app.on_event("shutdown")
async def _shutdown() -> None:
    await ollama_client.aclose()


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": "Invalid request body"})


def _require_user(user_id: str | None, missing_message: str = "userId is required.") -> dict[str, Any]:
    if not user_id:
        raise HTTPException(status_code=400, detail=missing_message)
    user = app_db.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    return user


def _require_session(session_id: str | None, user_id: str, missing_message: str = "sessionId is required.") -> dict[str, Any]:
    if not session_id:
        raise HTTPException(status_code=400, detail=missing_message)
    session = app_db.get_session_owned_by(session_id, user_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found.")
    return session


def _character_error(e: CharacterError) -> HTTPException:
    return HTTPException(status_code=_CHARACTER_ERROR_STATUS.get(e.code, 400), detail={"code": e.code, "message": str(e)})


def _user_info(user: dict[str, Any]) -> UserInfo:
    return UserInfo(id=user["user_id"], username=user["username"], preferred_model=user.get("preferred_model") or OLLAMA_MODEL)


def _character_info(character: Character | None) -> CharacterInfo | None:
    if character is None:
        return None
    return CharacterInfo(
        id=character.character_id,
        owner_id=character.owner_id,
        owner_username=character.owner_username,
        name=character.name,
        prompt=character.prompt,
        avatar_url=character.avatar_url,
        short_description=character.short_description,
        status=character.status,
        version=character.version,
        last_published_at=character.last_published_at,
        created_at=character.created_at,
        updated_at=character.updated_at,
    )


def _session_info(session: dict[str, Any], user_id: str) -> SessionInfo:
    character = None
    if session.get("character_id"):
        character = character_service.get_for_user(session["character_id"], user_id)
    return SessionInfo(
        id=session["session_id"],
        title=session.get("title") or app_db.DEFAULT_SESSION_TITLE,
        character_id=session.get("character_id"),
        character=_character_info(character),
        created_at=session["created_at"],
        updated_at=session["updated_at"],
        message_count=int(session.get("message_count") or 0),
    )


@app.get("/health")
def health() -> dict[str, Any]:
    return {"ok": True}


@app.get("/config", response_model=ConfigResponse)
def get_config() -> ConfigResponse:
    return ConfigResponse(model=OLLAMA_MODEL)


@app.post("/users", response_model=UserInfo, status_code=201)
def users_create(req: UserCreateRequest) -> UserInfo:
    username = (req.username or "").strip()
    if not USERNAME_RE.match(username):
        raise HTTPException(status_code=400, detail="Username must be 3-32 characters (letters, numbers, _ or -).")
    if app_db.get_user_by_username(username):
        raise HTTPException(status_code=409, detail="Username already exists.")
    try:
        user = app_db.create_user(username=username, preferred_model=OLLAMA_MODEL)
    except Exception as e:
        log.exception("Failed to create user")
        raise HTTPException(status_code=500, detail="Unable to create user.") from e
    return _user_info(user)


@app.get("/users/{username}", response_model=UserInfo)
def users_get(username: str) -> UserInfo:
    if not USERNAME_RE.match(username):
        raise HTTPException(status_code=400, detail="Invalid username.")
    user = app_db.get_user_by_username(username)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    return _user_info(user)


@app.patch("/users/{user_id}/model", response_model=ModelSelectResponse)
async def users_select_model(user_id: str, req: ModelSelectRequest) -> ModelSelectResponse:
    _require_user(user_id)
    model = (req.model or "").strip()
    if not model:
        raise HTTPException(status_code=400, detail="model is required.")
    try:
        models = await model_resolver.list_models()
    except Exception as e:
        log.exception("Failed to update user model")
        raise HTTPException(status_code=502, detail="Unable to update model preference.") from e
    if model not in models:
        raise HTTPException(status_code=400, detail="Model is not available on the server.")
    app_db.set_user_preferred_model(user_id, model)
    return ModelSelectResponse(model=model)


@app.get("/models", response_model=ModelsResponse)
async def models_list(user_id: str | None = Query(default=None, alias="userId")) -> ModelsResponse:
    user = _require_user(user_id, "userId query parameter is required.")
    try:
        models = await model_resolver.list_models()
        selected = model_resolver.resolve_for_user(user, models)
    except Exception as e:
        log.exception("Failed to load models list")
        raise HTTPException(status_code=502, detail="Unable to load model list from Ollama.") from e
    return ModelsResponse(models=models, selected_model=selected)


@app.get("/sessions", response_model=SessionsResponse)
def sessions_list(user_id: str | None = Query(default=None, alias="userId")) -> SessionsResponse:
    user = _require_user(user_id, "userId query parameter is required.")
    sessions = app_db.list_sessions(owner_id=user["user_id"])
    return SessionsResponse(sessions=[_session_info(s, user["user_id"]) for s in sessions])


@app.post("/sessions", response_model=SessionInfo, status_code=201)
def sessions_create(req: SessionCreateRequest) -> SessionInfo:
    user = _require_user(req.user_id)
    character_id = req.character_id or None
    if character_id and not character_service.get_for_user(character_id, user["user_id"]):
        raise HTTPException(
            status_code=404, detail={"code": CHARACTER_NOT_FOUND, "message": "Character not found for user."}
        )
    session = app_db.create_session(owner_id=user["user_id"], title=req.title, character_id=character_id)
    return _session_info(session, user["user_id"])


@app.get("/sessions/{session_id}/messages", response_model=TranscriptResponse)
def sessions_messages(session_id: str, user_id: str | None = Query(default=None, alias="userId")) -> TranscriptResponse:
    user = _require_user(user_id, "userId query parameter is required.")
    session = _require_session(session_id, user["user_id"])
    messages = [
        Message(id=m["message_id"], role=m["role"], content=m["content"], created_at=m["created_at"])
        for m in app_db.list_messages(session_id)
    ]
    return TranscriptResponse(session=_session_info(session, user["user_id"]), messages=messages)


@app.get("/characters", response_model=CharactersResponse)
def characters_owned(user_id: str | None = Query(default=None, alias="userId")) -> CharactersResponse:
    user = _require_user(user_id, "userId query parameter is required.")
    return CharactersResponse(characters=[_character_info(c) for c in character_service.list_owned(user["user_id"])])


@app.get("/characters/published", response_model=CharactersResponse)
def characters_published() -> CharactersResponse:
    return CharactersResponse(characters=[_character_info(c) for c in character_service.list_published()])


@app.get("/characters/pinned", response_model=CharactersResponse)
def characters_pinned(user_id: str | None = Query(default=None, alias="userId")) -> CharactersResponse:
    user = _require_user(user_id, "userId query parameter is required.")
    return CharactersResponse(characters=[_character_info(c) for c in character_service.list_pinned(user["user_id"])])


@app.post("/characters/{character_id}/publish", response_model=CharacterResponse)
def characters_publish(character_id: str, req: CharacterActionRequest) -> CharacterResponse:
    user = _require_user(req.user_id)
    character = character_service.publish(character_id, user["user_id"])
    if not character:
        raise HTTPException(status_code=404, detail="Character not found.")
    return CharacterResponse(character=_character_info(character))


@app.post("/characters/{character_id}/unpublish", response_model=CharacterResponse)
def characters_unpublish(character_id: str, req: CharacterActionRequest) -> CharacterResponse:
    user = _require_user(req.user_id)
    character = character_service.unpublish(character_id, user["user_id"])
    if not character:
        raise HTTPException(status_code=404, detail="Character not found.")
    return CharacterResponse(character=_character_info(character))


@app.post("/characters/{character_id}/pin", response_model=CharacterResponse)
def characters_pin(character_id: str, req: CharacterActionRequest) -> CharacterResponse:
    user = _require_user(req.user_id)
    try:
        character = character_service.pin(character_id, user["user_id"])
    except CharacterError as e:
        raise _character_error(e) from e
    return CharacterResponse(character=_character_info(character))


@app.delete("/characters/{character_id}/pin", response_model=OkResponse)
def characters_unpin(character_id: str, user_id: str | None = Query(default=None, alias="userId")) -> OkResponse:
    user = _require_user(user_id, "userId query parameter is required.")
    try:
        character_service.unpin(character_id, user["user_id"])
    except CharacterError as e:
        raise _character_error(e) from e
    return OkResponse()


@app.post("/chat")
async def chat(req: ChatRequest, request: Request) -> Response:
    missing = "userId, sessionId, and content are required"
    if not req.user_id or not req.session_id or not isinstance(req.content, str) or not req.content.strip():
        raise HTTPException(status_code=400, detail=missing)
    user = _require_user(req.user_id, missing)
    session = _require_session(req.session_id, user["user_id"], missing)

    try:
        turn = await orchestrator.handle_chat_turn(user, session, req.content, request=request)
    except ChatTurnError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except ChatAborted:
        # client closed request
        return Response(status_code=499)
    except OllamaError as e:
        log.exception("Error calling Ollama")
        raise HTTPException(status_code=500, detail=RELAY_ERROR_MESSAGE) from e

    return StreamingResponse(
        turn.frames,
        media_type="application/x-ndjson",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
        },
        background=BackgroundTask(turn.upstream.aclose),
    )
