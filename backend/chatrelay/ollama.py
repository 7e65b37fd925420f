from __future__ import annotations

from typing import Any

import httpx

from .config import OLLAMA_CHAT_URL, OLLAMA_TAGS_URL, UPSTREAM_TIMEOUT_S
from .logging_utils import get_logger

log = get_logger(__name__)

CHAT_OPTIONS: dict[str, Any] = {"temperature": 0.7, "top_p": 0.9}


class OllamaError(RuntimeError):
    pass


def _error_detail(e: httpx.HTTPError) -> str:
    response = getattr(e, "response", None) if isinstance(e, httpx.HTTPStatusError) else None
    detail = ""
    if response is not None:
        try:
            detail = response.text
        except httpx.ResponseNotRead:
            detail = ""
    msg = str(e).strip() or repr(e)
    return f"({type(e).__name__}): {msg} {detail}".strip()


class OllamaClient:
    """Long-lived, keep-alive HTTP client for the upstream chat backend.

    One instance is shared by every concurrent chat turn. Streaming reads have
    no read timeout so a slow generation is never cut short; connect and pool
    acquisition are bounded so a stuck upstream cannot starve other turns.
    """

    def __init__(
        self,
        *,
        chat_url: str = OLLAMA_CHAT_URL,
        tags_url: str = OLLAMA_TAGS_URL,
        timeout_s: float = UPSTREAM_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.chat_url = chat_url
        self.tags_url = tags_url
        self.timeout_s = timeout_s
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            timeout = httpx.Timeout(self.timeout_s, connect=10.0, read=None, write=10.0, pool=10.0)
            limits = httpx.Limits(max_connections=None, max_keepalive_connections=32, keepalive_expiry=60.0)
            self._client = httpx.AsyncClient(timeout=timeout, limits=limits, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch_model_names(self) -> list[str]:
        try:
            resp = await self._http().get(self.tags_url, timeout=10.0)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise OllamaError(f"Ollama model discovery failed {_error_detail(e)}") from e
        except ValueError as e:
            raise OllamaError(f"Ollama model discovery returned invalid JSON: {e}") from e

        models = data.get("models") if isinstance(data, dict) else None
        if not isinstance(models, list):
            return []
        names: list[str] = []
        for entry in models:
            if not isinstance(entry, dict):
                continue
            name = entry.get("model") or entry.get("name")
            if not isinstance(name, str) or not name.strip():
                continue
            if name not in names:
                names.append(name)
        return names

    async def open_chat_stream(self, messages: list[dict[str, str]], model: str) -> httpx.Response:
        """Start a streaming chat call; returns the open response once the status is known to be OK.

        The caller owns the returned response and must ``aclose()`` it.
        """
        payload = {
            "model": model,
            "messages": messages,
            "stream": True,
            "options": dict(CHAT_OPTIONS),
        }
        client = self._http()
        request = client.build_request("POST", self.chat_url, json=payload)
        try:
            resp = await client.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise OllamaError(f"Ollama request timed out ({type(e).__name__}).") from e
        except httpx.HTTPError as e:
            raise OllamaError(f"Ollama request failed {_error_detail(e)}") from e

        if resp.is_success:
            return resp

        try:
            body = (await resp.aread()).decode("utf-8", errors="replace")
        except httpx.HTTPError:
            body = ""
        finally:
            await resp.aclose()
        raise OllamaError(f"Ollama request failed: {resp.status_code} {body}".strip())
