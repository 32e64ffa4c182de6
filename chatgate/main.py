from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from chatgate.aggregator import StreamAggregator
from chatgate.backends import BackendClients
from chatgate.chat_service import ChatService
from chatgate.config import S, Settings, logger
from chatgate.conversation import MessageStore
from chatgate.errors import BindError, GatewayError
from chatgate.gateway import GatewayService
from chatgate.models import ChatMessage
from chatgate.routes import configure_routes
from chatgate.settings_store import AppConfig, SettingsStore, default_settings_path


@dataclass
class App:
    config: AppConfig
    store: SettingsStore
    clients: BackendClients
    gateway: GatewayService
    aggregator: StreamAggregator
    messages: MessageStore
    chat: ChatService


def build_app(settings: Settings = S, settings_path: Optional[Path] = None) -> App:
    """Construct every component once and wire them together."""
    store = SettingsStore(settings_path or default_settings_path(settings))
    config = store.load(settings)
    clients = BackendClients.from_config(config, timeout=settings.BACKEND_TIMEOUT_SEC)

    gateway = GatewayService(
        config.gateway,
        store,
        configure_routes=lambda server: configure_routes(server, clients),
    )

    aggregator = StreamAggregator()
    messages = MessageStore()
    chat = ChatService(messages, aggregator, clients, config.ollama)
    return App(
        config=config,
        store=store,
        clients=clients,
        gateway=gateway,
        aggregator=aggregator,
        messages=messages,
        chat=chat,
    )


async def check_models(app: App) -> None:
    """Non-fatal check that the selected Ollama model is actually pulled."""
    wanted = app.config.ollama.selected_model
    if not wanted:
        return
    try:
        present = {m.name for m in await app.clients.ollama.list_models()}
    except GatewayError as e:
        logger.info("startup: model availability check skipped (%s)", e)
        return
    if wanted not in present:
        logger.warning("startup: ollama model missing: %s (run 'ollama pull %s')", wanted, wanted)


async def serve(app: App, port: Optional[int] = None) -> int:
    if port is not None and port != app.config.gateway.port:
        await app.gateway.set_port(port)

    await check_models(app)
    try:
        if not await app.gateway.resume():
            await app.gateway.start()
    except BindError:
        return 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    print(f"chatgate listening on port {app.config.gateway.port}" + (f" ({app.gateway.url})" if app.gateway.url else ""))
    await stop.wait()
    await app.gateway.shutdown()
    return 0


async def chat_repl(app: App, backend: str, model: Optional[str]) -> int:
    printed = 0

    def show(messages: List[ChatMessage]) -> None:
        nonlocal printed
        last = messages[-1] if messages else None
        if last is None or last.is_user or not app.chat.is_loading:
            return
        sys.stdout.write(last.content[printed:])
        sys.stdout.flush()
        printed = len(last.content)

    app.messages.subscribe(show)
    loop = asyncio.get_running_loop()

    while True:
        try:
            line = await loop.run_in_executor(None, input, "> ")
        except (EOFError, KeyboardInterrupt):
            print()
            return 0

        line = line.strip()
        if not line:
            continue
        if line in ("/quit", "/q"):
            return 0
        if line in ("/clear", "/c"):
            app.chat.clear()
            continue

        printed = 0
        if line in ("/retry", "/r"):
            task = asyncio.ensure_future(app.chat.regenerate(backend, model))
        else:
            task = asyncio.ensure_future(app.chat.send_message(line, backend, model))

        try:
            loop.add_signal_handler(signal.SIGINT, app.chat.cancel)
        except NotImplementedError:
            pass
        try:
            result = await task
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except NotImplementedError:
                pass
        print()
        if result is not None and result.error is not None:
            print(f"[error] {result.error}")
        elif result is not None and result.cancelled:
            print("[cancelled]")


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(prog="chatgate", description="Local LLM chat gateway")
    ap.add_argument("--settings", default="", help="path of the persisted settings file")
    sub = ap.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="run the LAN gateway")
    p_serve.add_argument("--port", type=int, default=None)
    p_serve.add_argument("--host", default=None)
    p_serve.add_argument("--autostart", action="store_true", help="start on every launch")

    p_chat = sub.add_parser("chat", help="terminal chat with streamed replies")
    p_chat.add_argument("--backend", choices=["ollama", "xinference", "dify"], default="ollama")
    p_chat.add_argument("--model", default=None)

    args = ap.parse_args(argv)

    logging.basicConfig(level=logger.level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    app = build_app(S, Path(args.settings).expanduser() if args.settings else None)

    if args.command == "serve":
        if args.host:
            app.config.gateway.host = args.host
        if args.autostart:
            app.config.gateway.autostart = True
            app.store.set("network_server_autostart", True)
        return asyncio.run(serve(app, args.port))

    return asyncio.run(chat_repl(app, args.backend, args.model))


if __name__ == "__main__":
    raise SystemExit(main())
