from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatRequest(ApiModel):
    # Presence is checked by the handler so a missing field is a 400, not a 422.
    user_id: str | None = None
    session_id: str | None = None
    content: Any = None


class UserCreateRequest(ApiModel):
    username: str | None = None


class UserInfo(ApiModel):
    id: str
    username: str
    preferred_model: str | None = None


class ModelSelectRequest(ApiModel):
    model: str | None = None


class ModelSelectResponse(ApiModel):
    model: str


class ModelsResponse(ApiModel):
    models: list[str]
    selected_model: str


class ConfigResponse(ApiModel):
    model: str


class CharacterInfo(ApiModel):
    id: str
    owner_id: str
    owner_username: str | None = None
    name: str
    prompt: str
    avatar_url: str | None = None
    short_description: str | None = None
    status: Literal["draft", "published"]
    version: int
    last_published_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class CharacterResponse(ApiModel):
    character: CharacterInfo


class CharactersResponse(ApiModel):
    characters: list[CharacterInfo]


class CharacterActionRequest(ApiModel):
    user_id: str | None = None


class SessionCreateRequest(ApiModel):
    user_id: str | None = None
    title: str | None = None
    character_id: str | None = None


class SessionInfo(ApiModel):
    id: str
    title: str
    character_id: str | None = None
    character: CharacterInfo | None = None
    created_at: str
    updated_at: str
    message_count: int = 0


class Message(ApiModel):
    id: str
    role: Literal["user", "assistant"]
    content: str
    created_at: str


class SessionsResponse(ApiModel):
    sessions: list[SessionInfo] = Field(default_factory=list)


class TranscriptResponse(ApiModel):
    session: SessionInfo
    messages: list[Message] = Field(default_factory=list)


class OkResponse(ApiModel):
    ok: bool = True
