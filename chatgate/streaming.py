from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, Optional

SSE_PREFIX = "data: "


@dataclass(frozen=True)
class StreamEvent:
    text: str
    done: bool = False


LineDecoder = Callable[[str], Optional[StreamEvent]]


def _load_object(raw: str) -> Optional[Dict[str, Any]]:
    try:
        obj = json.loads(raw)
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


def _str_or_empty(v: Any) -> str:
    return v if isinstance(v, str) else ""


def decode_ollama_line(line: str) -> Optional[StreamEvent]:
    """Ollama /api/chat NDJSON: {"message": {"content": "..."}, "done": bool}."""
    if not line.strip():
        return None
    obj = _load_object(line)
    if obj is None:
        return None

    msg = obj.get("message")
    content = msg.get("content") if isinstance(msg, dict) else None
    # /api/generate streams use "response" instead of "message"
    if content is None:
        content = obj.get("response")

    return StreamEvent(text=_str_or_empty(content), done=obj.get("done") is True)


def decode_openai_line(line: str) -> Optional[StreamEvent]:
    """OpenAI-compatible SSE: data: {"choices": [{"delta": {"content": "..."}}]}."""
    if not line.startswith(SSE_PREFIX):
        return None
    payload = line[len(SSE_PREFIX) :].strip()
    if payload == "[DONE]":
        return StreamEvent(text="", done=True)
    obj = _load_object(payload)
    if obj is None:
        return None

    choices = obj.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return StreamEvent(text="")
    delta = choices[0].get("delta") or {}
    return StreamEvent(text=_str_or_empty(delta.get("content") if isinstance(delta, dict) else None))


def decode_dify_line(line: str) -> Optional[StreamEvent]:
    """Dify chat-messages SSE: message.content, falling back to answer."""
    if not line.startswith(SSE_PREFIX):
        return None
    obj = _load_object(line[len(SSE_PREFIX) :])
    if obj is None:
        return None

    content = None
    msg = obj.get("message")
    if isinstance(msg, dict):
        content = msg.get("content")
    if content is None:
        content = obj.get("answer")

    return StreamEvent(text=_str_or_empty(content), done=obj.get("event") in ("message_end", "[DONE]"))


async def iter_fragments(lines: AsyncIterable[str], decode: LineDecoder) -> AsyncIterator[str]:
    """Yield the text of each decodable line until the end-of-stream event."""
    async for line in lines:
        event = decode(line)
        if event is None:
            continue
        yield event.text
        if event.done:
            return
