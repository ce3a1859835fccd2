from __future__ import annotations

import os
from pathlib import Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


REPO_ROOT = _repo_root()

APP_DB_PATH = Path(os.getenv("EDDEZ_APP_DB_PATH", str(REPO_ROOT / "backend" / "data" / "app.sqlite")))

# Upstream provider (OpenAI-compatible chat completions). The key stays server-side.
UPSTREAM_BASE_URL = os.getenv("EDDEZ_UPSTREAM_BASE_URL", "https://api.groq.com/openai/v1").rstrip("/")
UPSTREAM_TIMEOUT_S = float(os.getenv("EDDEZ_UPSTREAM_TIMEOUT_S", "60"))
MISSING_KEY_MESSAGE = "Missing API Key configuration on server."


def upstream_api_key() -> str | None:
    # Read on every call so a key added to the environment is picked up without a restart.
    key = os.getenv("GROQ_API_KEY")
    return key.strip() if key and key.strip() else None


PRIMARY_MODEL = os.getenv("EDDEZ_PRIMARY_MODEL", "meta-llama/llama-4-scout-17b-16e-instruct")
FALLBACK_MODEL = os.getenv("EDDEZ_FALLBACK_MODEL", "llama-3.3-70b-versatile")

# Client side: where the chat client finds the backend.
API_URL = os.getenv("EDDEZ_API_URL", "http://localhost:7860").rstrip("/")
SUPPORT_URL = os.getenv("EDDEZ_SUPPORT_URL", "https://wa.me/923122152507?text=Hi%20I%20need%20your%20assistance")

ASSISTANT_NAME = os.getenv("EDDEZ_ASSISTANT_NAME", "Eddez")
DEFAULT_SESSION_TITLE = "New Chat"
