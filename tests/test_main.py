import logging

import httpx
import pytest

from chatgate.config import Settings
from chatgate.main import build_app, check_models, main


def _app(tmp_path, **kw):
    return build_app(Settings(_env_file=None, **kw), tmp_path / "settings.json")


def test_build_app_wires_one_of_each(tmp_path):
    app = _app(tmp_path, OLLAMA_MODEL="llama3", GATEWAY_PORT=8500)

    assert app.chat.store is app.messages
    assert app.chat.aggregator is app.aggregator
    assert app.chat.clients is app.clients
    assert app.gateway.config is app.config.gateway
    assert app.gateway.store is app.store
    assert app.clients.ollama.config is app.config.ollama
    assert app.config.gateway.port == 8500


@pytest.mark.asyncio
async def test_check_models_warns_when_selected_model_is_missing(tmp_path, caplog):
    app = _app(tmp_path, OLLAMA_MODEL="llama3")
    app.clients.ollama.transport = httpx.MockTransport(
        lambda request: httpx.Response(200, json={"models": [{"name": "mistral"}]})
    )

    with caplog.at_level(logging.WARNING, logger="chatgate"):
        await check_models(app)
    assert any("ollama model missing: llama3" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_check_models_tolerates_unreachable_ollama(tmp_path, caplog):
    app = _app(tmp_path, OLLAMA_MODEL="llama3")

    def refuse(request):
        raise httpx.ConnectError("Connection refused", request=request)

    app.clients.ollama.transport = httpx.MockTransport(refuse)
    with caplog.at_level(logging.WARNING, logger="chatgate"):
        await check_models(app)
    assert not any("missing" in r.getMessage() for r in caplog.records)


def test_cli_requires_a_command():
    with pytest.raises(SystemExit):
        main([])
