"""Persisted key-value settings.

The desktop client keeps backend URLs, API keys, selected models and the
gateway's port/running flag in a flat key-value store. Values are loaded once
at startup, mutated in memory, and written back on every change. Adapters read
the in-memory config objects on each request.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from chatgate.config import Settings, logger
from chatgate.models import SavedModel, parse_saved_models


@dataclass
class OllamaConfig:
    base_url: str
    selected_model: str = ""
    max_turns: int = 5


@dataclass
class XinferenceConfig:
    base_url: str
    selected_model: str = ""
    models: List[SavedModel] = field(default_factory=list)

    def add_model(self, name: str) -> Optional[SavedModel]:
        return _add_saved(self.models, name, available=False)

    def remove_model(self, model_id: str) -> None:
        self.models[:] = [m for m in self.models if m.id != model_id]


@dataclass
class DifyConfig:
    base_url: str
    api_key: str = ""
    selected_model: str = ""
    models: List[SavedModel] = field(default_factory=list)

    def add_model(self, name: str) -> Optional[SavedModel]:
        return _add_saved(self.models, name, available=True)

    def remove_model(self, model_id: str) -> None:
        self.models[:] = [m for m in self.models if m.id != model_id]


@dataclass
class GatewayConfig:
    host: str = "0.0.0.0"
    port: int = 8383
    running: bool = False
    autostart: bool = False
    interfaces: Tuple[str, ...] = ("en0", "en1", "en2", "en3", "en4", "en5")
    max_request_bytes: int = 65536
    read_timeout: float = 30.0


@dataclass
class AppConfig:
    ollama: OllamaConfig
    xinference: XinferenceConfig
    dify: DifyConfig
    gateway: GatewayConfig


def _add_saved(models: List[SavedModel], name: str, *, available: bool) -> Optional[SavedModel]:
    name = (name or "").strip()
    if not name or any(m.name == name for m in models):
        return None
    m = SavedModel(name=name, is_available=available)
    models.append(m)
    return m


def _split_csv(raw: str) -> Tuple[str, ...]:
    return tuple(p.strip() for p in (raw or "").split(",") if p.strip())


class SettingsStore:
    """JSON file backed key-value store."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path
        self._values: Dict[str, Any] = {}
        self._read()

    def _read(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("settings: cannot read %s (%s), using defaults", self.path, e)
            return
        if isinstance(payload, dict):
            self._values = payload

    def _write(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self._values, f, indent=2, sort_keys=True)
        os.replace(tmp, self.path)

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value
        self._write()

    def update(self, values: Dict[str, Any]) -> None:
        self._values.update(values)
        self._write()

    def _str(self, key: str, default: str) -> str:
        v = self._values.get(key)
        return v if isinstance(v, str) else default

    def _int(self, key: str, default: int) -> int:
        v = self._values.get(key)
        # Counters and ports are positive; zero or below means "unset".
        if isinstance(v, int) and not isinstance(v, bool) and v > 0:
            return v
        return default

    def _bool(self, key: str, default: bool) -> bool:
        v = self._values.get(key)
        return v if isinstance(v, bool) else default

    def load(self, settings: Settings) -> AppConfig:
        return AppConfig(
            ollama=OllamaConfig(
                base_url=self._str("ollama_base_url", settings.OLLAMA_BASE_URL),
                selected_model=self._str("ollama_selected_model", settings.OLLAMA_MODEL),
                max_turns=self._int("ollama_max_turns", settings.OLLAMA_MAX_TURNS),
            ),
            xinference=XinferenceConfig(
                base_url=self._str("xinference_base_url", settings.XINFERENCE_BASE_URL),
                selected_model=self._str("xinference_selected_model", settings.XINFERENCE_MODEL),
                models=parse_saved_models(self._values.get("xinference_saved_models")),
            ),
            dify=DifyConfig(
                base_url=self._str("dify_base_url", settings.DIFY_BASE_URL),
                api_key=self._str("dify_api_key", settings.DIFY_API_KEY),
                selected_model=self._str("dify_selected_model", settings.DIFY_MODEL),
                models=parse_saved_models(self._values.get("dify_saved_models")),
            ),
            gateway=GatewayConfig(
                host=settings.GATEWAY_HOST,
                port=self._int("network_server_port", settings.GATEWAY_PORT),
                running=self._bool("network_server_status", False),
                autostart=self._bool("network_server_autostart", settings.GATEWAY_AUTOSTART),
                interfaces=_split_csv(settings.GATEWAY_INTERFACES),
                max_request_bytes=settings.GATEWAY_MAX_REQUEST_BYTES,
                read_timeout=settings.GATEWAY_READ_TIMEOUT_SEC,
            ),
        )

    def save(self, cfg: AppConfig) -> None:
        self.update(
            {
                "ollama_base_url": cfg.ollama.base_url,
                "ollama_selected_model": cfg.ollama.selected_model,
                "ollama_max_turns": cfg.ollama.max_turns,
                "xinference_base_url": cfg.xinference.base_url,
                "xinference_selected_model": cfg.xinference.selected_model,
                "xinference_saved_models": [m.model_dump() for m in cfg.xinference.models],
                "dify_base_url": cfg.dify.base_url,
                "dify_api_key": cfg.dify.api_key,
                "dify_selected_model": cfg.dify.selected_model,
                "dify_saved_models": [m.model_dump() for m in cfg.dify.models],
                "network_server_port": cfg.gateway.port,
                "network_server_status": cfg.gateway.running,
                "network_server_autostart": cfg.gateway.autostart,
            }
        )


def default_settings_path(settings: Settings) -> Path:
    return Path(os.path.expanduser(settings.SETTINGS_PATH))
