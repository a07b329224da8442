"""Central configuration for paths, model backend and server settings."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel

# Data directory, override with CHATRELAY_DATA_DIR env var
DATA_DIR = Path(os.environ.get("CHATRELAY_DATA_DIR", str(Path.home() / ".chatrelay")))

# Database path
SQLITE_PATH = DATA_DIR / "chats.db"

# Chat titles
DEFAULT_TITLE = "New Chat"
TITLE_MAX_CHARS = 50  # Auto-derived titles are cut here
TITLE_ELLIPSIS = "..."
RENAME_MAX_CHARS = 200

# Prefix reserved for client-side ids that the store has not assigned yet
TEMP_ID_PREFIX = "temp_"

# HTTP server
HOST = os.environ.get("CHATRELAY_HOST", "127.0.0.1")
PORT = int(os.environ.get("CHATRELAY_PORT", "8000"))
API_URL = os.environ.get("CHATRELAY_API_URL", f"http://{HOST}:{PORT}")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("CHATRELAY_CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

SYSTEM_PROMPT = (
    "You are a smart, friendly and professional AI assistant. "
    "You are good at answering all kinds of questions, including programming, "
    "writing, analysis and creative tasks. "
    "Answer concisely and clearly, using Markdown when it helps. "
    "If a question is unclear, politely ask for more information."
)


class GatewaySettings(BaseModel):
    api_key: str = "sk-placeholder"
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-3.5-turbo"
    timeout: float = 60.0
    max_retries: int = 2
    temperature: float = 0.7
    max_tokens: int = 4096
    system_prompt: str = SYSTEM_PROMPT


def load_gateway_settings() -> GatewaySettings:
    """Build gateway settings from AI_* env vars, falling back to defaults."""
    env = {
        "api_key": os.environ.get("AI_API_KEY"),
        "base_url": os.environ.get("AI_BASE_URL"),
        "model": os.environ.get("AI_MODEL"),
        "timeout": os.environ.get("AI_TIMEOUT"),
        "max_retries": os.environ.get("AI_MAX_RETRIES"),
        "temperature": os.environ.get("AI_TEMPERATURE"),
        "max_tokens": os.environ.get("AI_MAX_TOKENS"),
    }
    return GatewaySettings(**{k: v for k, v in env.items() if v})
