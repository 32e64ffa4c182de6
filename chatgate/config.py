from __future__ import annotations

import logging
import os

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    OLLAMA_BASE_URL: str = "http://localhost:11434"
    OLLAMA_MODEL: str = ""
    # Conversation window for Ollama, counted in user/assistant pairs.
    OLLAMA_MAX_TURNS: int = 5

    XINFERENCE_BASE_URL: str = "http://127.0.0.1:9997"
    XINFERENCE_MODEL: str = ""

    DIFY_BASE_URL: str = "https://api.dify.ai/v1"
    DIFY_API_KEY: str = ""
    DIFY_MODEL: str = ""

    GATEWAY_HOST: str = "0.0.0.0"
    GATEWAY_PORT: int = 8383
    GATEWAY_AUTOSTART: bool = False

    # Interface name prefixes used to build the LAN url, comma-separated.
    GATEWAY_INTERFACES: str = "en0,en1,en2,en3,en4,en5"

    # Requests are read up to this many bytes; the rest is dropped.
    GATEWAY_MAX_REQUEST_BYTES: int = 65536
    GATEWAY_READ_TIMEOUT_SEC: float = 30.0

    BACKEND_TIMEOUT_SEC: float = 600.0

    SETTINGS_PATH: str = "~/.chatgate/settings.json"


S = Settings()

logger = logging.getLogger("chatgate")
logger.setLevel(os.getenv("GATEWAY_LOG_LEVEL", "INFO").upper())
