from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from . import app_db
from .cache import MemoryCache
from .config import CHARACTER_CACHE_TTL_S
from .logging_utils import get_logger

log = get_logger(__name__)

CHARACTER_NOT_FOUND = "CHARACTER_NOT_FOUND"
CHARACTER_NOT_PUBLISHED = "CHARACTER_NOT_PUBLISHED"
CHARACTER_NOT_PINNED = "CHARACTER_NOT_PINNED"


class CharacterError(RuntimeError):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class Character:
    character_id: str
    owner_id: str
    name: str
    prompt: str
    status: str
    version: int
    owner_username: str | None = None
    avatar_url: str | None = None
    short_description: str | None = None
    last_published_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_published(self) -> bool:
        return self.status == app_db.STATUS_PUBLISHED

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Character":
        return cls(
            character_id=row["character_id"],
            owner_id=row["owner_id"],
            name=row["name"],
            prompt=row["prompt"],
            status=row["status"],
            version=int(row.get("version") or 1),
            owner_username=row.get("owner_username"),
            avatar_url=row.get("avatar_url"),
            short_description=row.get("short_description"),
            last_published_at=row.get("last_published_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


def _published_key(character_id: str) -> str:
    return f"character:published:{character_id}"


class CharacterService:
    """Ownership-aware character access with a cache of published views.

    Owners always read their live row. Everyone else may only see published
    characters; those views are cached and refreshed or dropped on every
    owner-side write that changes what other users should see.
    """

    def __init__(self, *, cache: MemoryCache, ttl_s: float = CHARACTER_CACHE_TTL_S) -> None:
        self.cache = cache
        self.ttl_s = ttl_s

    def _load_published(self, character_id: str) -> Character | None:
        row = app_db.get_character(character_id)
        if not row or row["status"] != app_db.STATUS_PUBLISHED:
            return None
        return Character.from_row(row)

    def _refresh_cache(self, character: Character) -> None:
        if character.is_published:
            self.cache.set(_published_key(character.character_id), character, self.ttl_s)
        else:
            self.cache.delete(_published_key(character.character_id))

    def get_for_user(self, character_id: str, user_id: str) -> Character | None:
        owned = app_db.get_character_owned_by(character_id, user_id)
        if owned:
            return Character.from_row(owned)
        return self.cache.wrap(_published_key(character_id), self.ttl_s, lambda: self._load_published(character_id))

    def list_owned(self, user_id: str) -> list[Character]:
        return [Character.from_row(r) for r in app_db.list_characters(owner_id=user_id)]

    def list_published(self) -> list[Character]:
        return [Character.from_row(r) for r in app_db.list_published_characters()]

    def list_pinned(self, user_id: str) -> list[Character]:
        return [Character.from_row(r) for r in app_db.list_pinned_characters(user_id=user_id)]

    def create(
        self,
        user_id: str,
        *,
        name: str,
        prompt: str,
        avatar_url: str | None = None,
        short_description: str | None = None,
    ) -> Character:
        row = app_db.create_character(
            owner_id=user_id, name=name, prompt=prompt, avatar_url=avatar_url, short_description=short_description
        )
        return Character.from_row(row)

    def update(
        self,
        character_id: str,
        user_id: str,
        *,
        name: str,
        prompt: str,
        avatar_url: str | None = None,
        short_description: str | None = None,
    ) -> Character | None:
        row = app_db.update_character(
            character_id=character_id,
            owner_id=user_id,
            name=name,
            prompt=prompt,
            avatar_url=avatar_url,
            short_description=short_description,
        )
        if not row:
            return None
        character = Character.from_row(row)
        self._refresh_cache(character)
        return character

    def publish(self, character_id: str, user_id: str) -> Character | None:
        row = app_db.set_character_status(character_id=character_id, owner_id=user_id, status=app_db.STATUS_PUBLISHED)
        if not row:
            return None
        character = Character.from_row(row)
        self._refresh_cache(character)
        log.info("Published character %s (v%d)", character_id, character.version)
        return character

    def unpublish(self, character_id: str, user_id: str) -> Character | None:
        row = app_db.set_character_status(character_id=character_id, owner_id=user_id, status=app_db.STATUS_DRAFT)
        if not row:
            return None
        character = Character.from_row(row)
        self._refresh_cache(character)
        log.info("Unpublished character %s", character_id)
        return character

    def delete(self, character_id: str, user_id: str) -> bool:
        removed = app_db.delete_character(character_id=character_id, owner_id=user_id)
        if removed:
            self.cache.delete(_published_key(character_id))
        return removed

    def pin(self, character_id: str, user_id: str) -> Character:
        row = app_db.get_character(character_id)
        if not row:
            raise CharacterError(CHARACTER_NOT_FOUND, "Character not found.")
        character = Character.from_row(row)
        if character.owner_id != user_id and not character.is_published:
            raise CharacterError(CHARACTER_NOT_PUBLISHED, "Character is not published.")
        app_db.insert_pin(user_id=user_id, character_id=character_id)
        return character

    def unpin(self, character_id: str, user_id: str) -> None:
        if not app_db.delete_pin(user_id=user_id, character_id=character_id):
            raise CharacterError(CHARACTER_NOT_PINNED, "Character is not pinned.")
