from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator

from . import app_db
from .abort import AbortCoordinator, DisconnectAware
from .conversation import ContextBuilder
from .logging_utils import get_logger
from .model_resolver import ModelResolver
from .relay import StreamRelay

log = get_logger(__name__)

MAX_TITLE_CHARS = 60

_WS_RE = re.compile(r"\s+")


class ChatTurnError(ValueError):
    pass


class ChatAborted(RuntimeError):
    pass


def derive_title(content: str) -> str | None:
    text = _WS_RE.sub(" ", content or "").strip()
    if not text:
        return None
    if len(text) > MAX_TITLE_CHARS:
        return text[:MAX_TITLE_CHARS] + "…"
    return text


def maybe_auto_title(session: dict[str, Any], user_id: str, content: str) -> str | None:
    """Replace the placeholder title with one derived from ``content``; no-op once titled."""
    title = session.get("title")
    if title and title != app_db.DEFAULT_SESSION_TITLE:
        return None
    candidate = derive_title(content)
    if not candidate:
        return None
    if not app_db.set_session_title(session["session_id"], user_id, candidate, only_if_default=True):
        return None
    session["title"] = candidate
    return candidate


@dataclass
class RelayedTurn:
    session_id: str
    model: str
    upstream: Any
    frames: AsyncIterator[bytes]


class ChatOrchestrator:
    def __init__(self, *, context: ContextBuilder, resolver: ModelResolver, relay: StreamRelay) -> None:
        self.context = context
        self.resolver = resolver
        self.relay = relay

    async def handle_chat_turn(
        self,
        user: dict[str, Any],
        session: dict[str, Any],
        content: Any,
        *,
        request: DisconnectAware | None = None,
    ) -> RelayedTurn:
        """Store the user's turn, open the upstream stream and hand back the client frame iterator.

        Raises ``ChatTurnError`` for empty input, ``OllamaError`` when the
        upstream call cannot be started and ``ChatAborted`` when the client
        leaves while it is being opened; in those cases no bytes have been sent
        to the client yet. The abort watcher is armed before the upstream call
        and handed to the relay.
        """
        if not isinstance(content, str) or not content.strip():
            raise ChatTurnError("content must be a non-empty string")
        text = content.strip()
        user_id = user["user_id"]
        session_id = session["session_id"]

        turns = self.context.build_turns(session, user_id, text)

        app_db.insert_message(session_id, "user", text)
        maybe_auto_title(session, user_id, text)

        available = await self.resolver.list_models()
        model = self.resolver.resolve_for_user(user, available)

        log.info("Relaying chat turn session=%s model=%s turns=%d", session_id, model, len(turns))
        coordinator = AbortCoordinator(request, poll_interval_s=self.relay.poll_interval_s)
        opening = asyncio.create_task(self.relay.open(turns, model))
        coordinator.arm(on_fire=opening.cancel)
        try:
            upstream = await opening
        except asyncio.CancelledError:
            await coordinator.disarm()
            if not coordinator.fired:
                raise
            log.warning("Client left while the upstream call was opening session=%s", session_id)
            raise ChatAborted("client disconnected before the upstream responded") from None
        except Exception:
            await coordinator.disarm()
            raise
        if coordinator.fired:
            await coordinator.disarm()
            await upstream.aclose()
            raise ChatAborted("client disconnected before the upstream responded")

        def persist_reply(answer: str) -> None:
            app_db.insert_message(session_id, "assistant", answer)
            log.info("Stored assistant reply session=%s chars=%d", session_id, len(answer))

        frames = self.relay.stream(
            upstream,
            coordinator,
            on_complete=persist_reply,
            label=f"session={session_id} model={model}",
        )
        return RelayedTurn(session_id=session_id, model=model, upstream=upstream, frames=frames)
