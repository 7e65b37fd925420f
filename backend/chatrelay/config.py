from __future__ import annotations

import os
from pathlib import Path
from urllib.parse import urlsplit


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _origin(url: str) -> str:
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return "http://localhost:11434"
    return f"{parts.scheme}://{parts.netloc}"


REPO_ROOT = _repo_root()

APP_DB_PATH = Path(os.getenv("CHATRELAY_DB_PATH", str(REPO_ROOT / "backend" / "data" / "chat.sqlite")))

OLLAMA_CHAT_URL = os.getenv("OLLAMA_CHAT_URL", "http://localhost:11434/api/chat").rstrip("/")
OLLAMA_BASE_URL = _origin(OLLAMA_CHAT_URL)
OLLAMA_TAGS_URL = f"{OLLAMA_BASE_URL}/api/tags"
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL") or "qwen2.5:7b"

SYSTEM_PROMPT = os.getenv("CHATRELAY_SYSTEM_PROMPT", "").strip()

MODEL_CACHE_TTL_S = float(os.getenv("CHATRELAY_MODEL_CACHE_TTL_S", "15"))
CHARACTER_CACHE_TTL_S = float(os.getenv("CHATRELAY_CHARACTER_CACHE_TTL_S", "300"))

UPSTREAM_TIMEOUT_S = float(os.getenv("CHATRELAY_UPSTREAM_TIMEOUT_S", "120"))
ABORT_POLL_S = float(os.getenv("CHATRELAY_ABORT_POLL_S", "0.25"))

LOG_LEVEL = os.getenv("CHATRELAY_LOG_LEVEL", "INFO").upper()
