from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from chatgate.config import logger
from chatgate.errors import BackendError, ConfigError, TransportError
from chatgate.models import BackendKind, ChatMessage, OllamaModel, SavedModel
from chatgate.settings_store import AppConfig, DifyConfig, OllamaConfig, XinferenceConfig
from chatgate.streaming import LineDecoder, decode_dify_line, decode_ollama_line, decode_openai_line, iter_fragments

DIFY_USER = "chatgate_user"


def build_context(history: Sequence[ChatMessage], prompt: str, max_turns: int) -> List[Dict[str, str]]:
    """Prompt context for Ollama, oldest first.

    Keeps the newest ``max_turns`` user/assistant pairs of ``history`` and
    appends the prompt as the final user turn. A ``max_turns`` below 1 is
    treated as 1; settings loading already replaces such values with the
    default.
    """
    limit = max(1, max_turns) * 2
    recent = list(history)[-limit:]
    context = [m.as_prompt() for m in recent]
    context.append({"role": "user", "content": prompt})
    return context


def last_user_content(messages: Sequence[Dict[str, str]]) -> str:
    for m in reversed(messages):
        if m.get("role") == "user":
            return m.get("content") or ""
    return ""


def _base_url(backend: str, raw: str) -> str:
    base = (raw or "").strip().rstrip("/")
    if not base.startswith(("http://", "https://")):
        raise ConfigError(f"{backend}: invalid base URL {raw!r}")
    return base


def _status_error(backend: str, r: httpx.Response) -> BackendError:
    try:
        body = r.text[:5000]
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        body = ""
    return BackendError(backend, "bad_status", "upstream returned an error", status=r.status_code, body=body)


def _json_body(backend: str, r: httpx.Response) -> Any:
    try:
        return r.json()
    except ValueError as e:
        raise BackendError(backend, "decode_error", f"response is not JSON: {e}") from e


async def _request_json(
    backend: str,
    method: str,
    url: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport],
) -> Any:
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        try:
            r = await client.request(method, url, json=payload, headers=headers)
        except httpx.RequestError as e:
            raise TransportError(backend, str(e) or type(e).__name__) from e
    if r.status_code < 200 or r.status_code >= 300:
        raise _status_error(backend, r)
    return _json_body(backend, r)


async def _stream_fragments(
    backend: str,
    url: str,
    payload: Dict[str, Any],
    decode: LineDecoder,
    *,
    headers: Optional[Dict[str, str]] = None,
    transport: Optional[httpx.AsyncBaseTransport],
) -> AsyncIterator[str]:
    async with httpx.AsyncClient(timeout=None, transport=transport) as client:
        try:
            async with client.stream("POST", url, json=payload, headers=headers) as r:
                if r.status_code < 200 or r.status_code >= 300:
                    await r.aread()
                    raise _status_error(backend, r)
                async for fragment in iter_fragments(r.aiter_lines(), decode):
                    yield fragment
        except httpx.RequestError as e:
            raise TransportError(backend, str(e) or type(e).__name__) from e


class OllamaClient:
    kind: BackendKind = "ollama"

    def __init__(
        self,
        config: OllamaConfig,
        *,
        timeout: float = 600.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.timeout = timeout
        self.transport = transport

    def _model(self, model: Optional[str]) -> str:
        return (model or "").strip() or self.config.selected_model

    async def complete_blocking(self, prompt: str, model: Optional[str] = None) -> str:
        url = f"{_base_url('ollama', self.config.base_url)}/api/chat"
        payload = {
            "model": self._model(model),
            "messages": [{"role": "user", "content": prompt}],
            "stream": False,
        }
        logger.debug("ollama: blocking chat model=%s", payload["model"])
        out = await _request_json("ollama", "POST", url, payload=payload, timeout=self.timeout, transport=self.transport)

        msg = out.get("message") if isinstance(out, dict) else None
        content = msg.get("content") if isinstance(msg, dict) else None
        if not isinstance(content, str):
            raise BackendError("ollama", "decode_error", "no message.content in response")
        return content

    def complete_streaming(self, messages: List[Dict[str, str]], model: Optional[str] = None) -> AsyncIterator[str]:
        url = f"{_base_url('ollama', self.config.base_url)}/api/chat"
        payload = {"model": self._model(model), "messages": messages, "stream": True}
        return _stream_fragments("ollama", url, payload, decode_ollama_line, transport=self.transport)

    async def list_models(self) -> List[OllamaModel]:
        url = f"{_base_url('ollama', self.config.base_url)}/api/tags"
        out = await _request_json("ollama", "GET", url, timeout=self.timeout, transport=self.transport)

        # Older servers return a bare list instead of {"models": [...]}.
        items = out.get("models") if isinstance(out, dict) else out
        if not isinstance(items, list):
            raise BackendError("ollama", "decode_error", "unexpected /api/tags shape")

        models: List[OllamaModel] = []
        for item in items:
            if isinstance(item, dict) and isinstance(item.get("name"), str):
                try:
                    models.append(OllamaModel.model_validate(item))
                except ValueError:
                    continue
        return models


class OpenAICompatibleClient:
    """Xinference and other servers speaking /v1/chat/completions."""

    kind: BackendKind = "xinference"

    def __init__(
        self,
        config: XinferenceConfig,
        *,
        timeout: float = 600.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.timeout = timeout
        self.transport = transport

    def _model(self, model: Optional[str]) -> str:
        return (model or "").strip() or self.config.selected_model

    async def complete_blocking(self, prompt: str, model: Optional[str] = None) -> str:
        url = f"{_base_url('xinference', self.config.base_url)}/v1/chat/completions"
        payload = {
            "model": self._model(model),
            "messages": [{"role": "user", "content": prompt}],
            "stream": False,
        }
        out = await _request_json("xinference", "POST", url, payload=payload, timeout=self.timeout, transport=self.transport)

        choices = out.get("choices") if isinstance(out, dict) else None
        if not isinstance(choices, list):
            raise BackendError("xinference", "decode_error", "no choices in response")
        if not choices:
            return ""
        msg = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = msg.get("content") if isinstance(msg, dict) else None
        if not isinstance(content, str):
            raise BackendError("xinference", "decode_error", "no choices[0].message.content in response")
        return content

    def complete_streaming(self, messages: List[Dict[str, str]], model: Optional[str] = None) -> AsyncIterator[str]:
        url = f"{_base_url('xinference', self.config.base_url)}/v1/chat/completions"
        payload = {"model": self._model(model), "messages": messages, "stream": True}
        return _stream_fragments(
            "xinference",
            url,
            payload,
            decode_openai_line,
            headers={"accept": "text/event-stream"},
            transport=self.transport,
        )

    async def list_models(self) -> List[SavedModel]:
        return list(self.config.models)

    async def refresh_models(self) -> List[SavedModel]:
        """Mark saved models available iff the server lists them under /v1/models."""
        url = f"{_base_url('xinference', self.config.base_url)}/v1/models"
        out = await _request_json("xinference", "GET", url, timeout=self.timeout, transport=self.transport)

        data = out.get("data") if isinstance(out, dict) else None
        if not isinstance(data, list):
            raise BackendError("xinference", "decode_error", "unexpected /v1/models shape")
        available = {d.get("id") for d in data if isinstance(d, dict)}
        for m in self.config.models:
            m.is_available = m.name in available
        return list(self.config.models)


class DifyClient:
    kind: BackendKind = "dify"

    def __init__(
        self,
        config: DifyConfig,
        *,
        timeout: float = 600.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.timeout = timeout
        self.transport = transport

    def _auth(self) -> Dict[str, str]:
        key = (self.config.api_key or "").strip()
        if not key:
            raise ConfigError("dify: API key is not configured")
        return {"authorization": f"Bearer {key}"}

    def _payload(self, query: str, model: Optional[str], mode: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "inputs": {},
            "query": query,
            "response_mode": mode,
            "conversation_id": "",
            "user": DIFY_USER,
        }
        m = (model or "").strip() or self.config.selected_model
        if m:
            payload["model"] = m
        return payload

    async def complete_blocking(self, prompt: str, model: Optional[str] = None) -> str:
        headers = self._auth()
        url = f"{_base_url('dify', self.config.base_url)}/chat-messages"
        out = await _request_json(
            "dify",
            "POST",
            url,
            payload=self._payload(prompt, model, "blocking"),
            headers=headers,
            timeout=self.timeout,
            transport=self.transport,
        )

        answer = out.get("answer") if isinstance(out, dict) else None
        if not isinstance(answer, str):
            raise BackendError("dify", "decode_error", "no answer in response")
        return answer

    def complete_streaming(self, messages: List[Dict[str, str]], model: Optional[str] = None) -> AsyncIterator[str]:
        headers = self._auth()
        url = f"{_base_url('dify', self.config.base_url)}/chat-messages"
        payload = self._payload(last_user_content(messages), model, "streaming")
        return _stream_fragments("dify", url, payload, decode_dify_line, headers=headers, transport=self.transport)

    async def list_models(self) -> List[SavedModel]:
        return list(self.config.models)

    async def fetch_models(self) -> List[SavedModel]:
        """Replace the saved list with the providers reported by /model-providers."""
        headers = self._auth()
        url = f"{_base_url('dify', self.config.base_url)}/model-providers"
        out = await _request_json("dify", "GET", url, headers=headers, timeout=self.timeout, transport=self.transport)

        data = out.get("data") if isinstance(out, dict) else None
        if not isinstance(data, list):
            raise BackendError("dify", "decode_error", "unexpected /model-providers shape")
        self.config.models[:] = [
            SavedModel(name=d["name"], is_available=True)
            for d in data
            if isinstance(d, dict) and isinstance(d.get("name"), str)
        ]
        return list(self.config.models)


@dataclass
class BackendClients:
    ollama: OllamaClient
    xinference: OpenAICompatibleClient
    dify: DifyClient

    @classmethod
    def from_config(
        cls,
        cfg: AppConfig,
        *,
        timeout: float = 600.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "BackendClients":
        return cls(
            ollama=OllamaClient(cfg.ollama, timeout=timeout, transport=transport),
            xinference=OpenAICompatibleClient(cfg.xinference, timeout=timeout, transport=transport),
            dify=DifyClient(cfg.dify, timeout=timeout, transport=transport),
        )

    def get(self, kind: BackendKind):
        if kind == "ollama":
            return self.ollama
        if kind == "xinference":
            return self.xinference
        if kind == "dify":
            return self.dify
        raise ConfigError(f"unknown backend: {kind!r}")
