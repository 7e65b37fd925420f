from __future__ import annotations

from typing import Any

from . import app_db
from .characters import CharacterService
from .logging_utils import get_logger

log = get_logger(__name__)


class ContextBuilder:
    def __init__(self, characters: CharacterService, *, system_prompt: str = "") -> None:
        self.characters = characters
        self.system_prompt = system_prompt

    def build_turns(self, session: dict[str, Any], user_id: str, new_text: str) -> list[dict[str, str]]:
        """Ordered role/content turns: operator prompt, persona prompt, stored transcript, new user turn."""
        turns: list[dict[str, str]] = []
        if self.system_prompt:
            turns.append({"role": "system", "content": self.system_prompt})

        character_id = session.get("character_id")
        if character_id:
            character = self.characters.get_for_user(character_id, user_id)
            if character and character.prompt:
                turns.append({"role": "system", "content": character.prompt})
            else:
                log.warning("Session %s references unavailable character %s", session["session_id"], character_id)

        for m in app_db.list_messages(session["session_id"]):
            if m["role"] in ("user", "assistant"):
                turns.append({"role": m["role"], "content": m["content"]})

        turns.append({"role": "user", "content": new_text})
        return turns
