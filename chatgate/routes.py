from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ValidationError

from chatgate.backends import BackendClients
from chatgate.config import logger
from chatgate.errors import GatewayError
from chatgate.http_server import HttpRequest, HttpResponse, HttpServer
from chatgate.models import ChatRequest, ChatResponse, ModelsResponse

STATIC_DIR = Path(__file__).resolve().parent / "static"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def load_index_html() -> bytes:
    return (STATIC_DIR / "chat.html").read_bytes()


def _json(model: BaseModel, headers: Optional[dict] = None) -> HttpResponse:
    return HttpResponse.ok(model.model_dump_json().encode("utf-8"), headers=headers)


def configure_routes(server: HttpServer, clients: BackendClients, index_html: Optional[bytes] = None) -> None:
    """Register the LAN gateway routes on ``server``."""

    page = index_html if index_html is not None else load_index_html()

    async def index(_req: HttpRequest) -> HttpResponse:
        return HttpResponse.html(page)

    async def chat_preflight(_req: HttpRequest) -> HttpResponse:
        return HttpResponse.ok(b"", headers=CORS_HEADERS)

    async def chat(req: HttpRequest) -> HttpResponse:
        try:
            body = ChatRequest.model_validate_json(req.body)
        except ValidationError as e:
            logger.info("chat: rejecting request body (%d errors)", e.error_count())
            return HttpResponse.bad_request()

        logger.info("chat: %s model=%s chars=%d", body.modelType, body.model, len(body.message))
        try:
            text = await clients.get(body.modelType).complete_blocking(body.message, body.model)
        except GatewayError as e:
            # Backend failures are reported in the body, not the status.
            logger.warning("chat: %s request failed: %s", body.modelType, e)
            text = f"Error: {e}"
        return _json(ChatResponse(response=text), headers={"Access-Control-Allow-Origin": "*"})

    async def models(_req: HttpRequest) -> HttpResponse:
        try:
            ollama = await clients.ollama.list_models()
        except GatewayError as e:
            logger.warning("models: ollama listing failed: %s", e)
            return HttpResponse.internal_server_error()
        out = ModelsResponse(
            ollama=ollama,
            xinference=await clients.xinference.list_models(),
            dify=await clients.dify.list_models(),
        )
        return _json(out)

    server.get("/", index)
    server.options("/chat", chat_preflight)
    server.post("/chat", chat)
    server.get("/models", models)
