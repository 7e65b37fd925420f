from __future__ import annotations

from typing import Any

from . import app_db
from .cache import MemoryCache
from .config import MODEL_CACHE_TTL_S, OLLAMA_MODEL
from .logging_utils import get_logger
from .ollama import OllamaClient, OllamaError

log = get_logger(__name__)

MODELS_CACHE_KEY = "ollama:models"


class ModelResolver:
    def __init__(
        self,
        client: OllamaClient,
        *,
        cache: MemoryCache,
        default_model: str = OLLAMA_MODEL,
        ttl_s: float = MODEL_CACHE_TTL_S,
    ) -> None:
        self.client = client
        self.cache = cache
        self.default_model = default_model
        self.ttl_s = ttl_s
        self._last_good: tuple[str, ...] | None = None

    async def _load(self) -> tuple[str, ...]:
        names = await self.client.fetch_model_names()
        models = tuple(names) if names else (self.default_model,)
        self._last_good = models
        return models

    async def list_models(self) -> list[str]:
        """Installed upstream models, cached briefly; never raises for upstream failures."""
        try:
            models = await self.cache.wrap_async(MODELS_CACHE_KEY, self.ttl_s, self._load)
        except OllamaError as e:
            log.warning("Model discovery failed; using %s | %s", "last known list" if self._last_good else "fallback", e)
            models = self._last_good or (self.default_model,)
        return list(models)

    def resolve_model(self, user: dict[str, Any] | None, available: list[str]) -> str:
        preferred = (user or {}).get("preferred_model") or None
        if not available:
            return preferred or self.default_model
        if preferred and preferred in available:
            return preferred
        if self.default_model in available:
            return self.default_model
        return available[0]

    def resolve_for_user(self, user: dict[str, Any], available: list[str]) -> str:
        """Resolve and persist the effective model when the stored preference no longer applies."""
        selected = self.resolve_model(user, available)
        if selected != user.get("preferred_model"):
            log.info("Updating preferred model for user=%s: %s -> %s", user["user_id"], user.get("preferred_model"), selected)
            app_db.set_user_preferred_model(user["user_id"], selected)
            user["preferred_model"] = selected
        return selected
