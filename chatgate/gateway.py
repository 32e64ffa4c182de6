"""Gateway lifecycle: start/stop, restart on port change, LAN url discovery."""

from __future__ import annotations

import socket
from typing import Callable, Optional, Sequence

import psutil

from chatgate.config import logger
from chatgate.errors import BindError
from chatgate.http_server import HttpServer, ServerState
from chatgate.settings_store import GatewayConfig, SettingsStore

ServerFactory = Callable[[GatewayConfig], HttpServer]
RouteConfigurer = Callable[[HttpServer], None]


def default_server_factory(cfg: GatewayConfig) -> HttpServer:
    return HttpServer(cfg.host, max_request_bytes=cfg.max_request_bytes, read_timeout=cfg.read_timeout)


def local_ipv4_address(prefixes: Sequence[str]) -> Optional[str]:
    """First IPv4 address on an interface whose name starts with one of ``prefixes``.

    Prefixes are tried in order, so ``en0`` wins over ``en1``.
    """
    try:
        addrs = psutil.net_if_addrs()
    except (OSError, RuntimeError) as e:
        logger.info("gateway: interface listing failed (%s)", e)
        return None

    for prefix in prefixes:
        for name in sorted(addrs):
            if not name.startswith(prefix):
                continue
            for a in addrs[name]:
                if a.family == socket.AF_INET and a.address:
                    return a.address
    return None


class GatewayService:
    def __init__(
        self,
        config: GatewayConfig,
        store: SettingsStore,
        configure_routes: RouteConfigurer,
        server_factory: ServerFactory = default_server_factory,
        address_lookup: Callable[[Sequence[str]], Optional[str]] = local_ipv4_address,
    ):
        self.config = config
        self.store = store
        self.configure_routes = configure_routes
        self.server_factory = server_factory
        self.address_lookup = address_lookup
        self.server: Optional[HttpServer] = None
        self.url = ""

    @property
    def state(self) -> ServerState:
        if self.server is not None and self.server.state == "running":
            return "running"
        return "stopped"

    def _persist_running(self, running: bool) -> None:
        self.config.running = running
        self.store.set("network_server_status", running)

    async def start(self) -> None:
        if self.state == "running":
            return

        server = self.server_factory(self.config)
        self.configure_routes(server)
        try:
            await server.start(self.config.port)
        except BindError as e:
            logger.error("gateway: start failed: %s", e)
            self.server = None
            self.url = ""
            self._persist_running(False)
            raise

        self.server = server
        self._persist_running(True)

        ip = self.address_lookup(self.config.interfaces)
        if ip:
            self.url = f"http://{ip}:{self.config.port}"
            logger.info("gateway: serving at %s", self.url)
        else:
            self.url = ""
            logger.info("gateway: running on port %d, no LAN address found", self.config.port)

    async def stop(self) -> None:
        server, self.server = self.server, None
        if server is not None:
            await server.stop()
        self.url = ""
        self._persist_running(False)
        self.config.autostart = False
        self.store.set("network_server_autostart", False)

    async def shutdown(self) -> None:
        """Stop serving on process exit; the persisted running flag is kept."""
        server, self.server = self.server, None
        if server is not None:
            await server.stop()
        self.url = ""

    async def set_port(self, port: int) -> None:
        self.config.port = port
        self.store.set("network_server_port", port)
        if self.state == "running":
            await self.stop()
            await self.start()

    async def resume(self) -> bool:
        """Start again if the gateway was running last time or autostart is on."""
        if self.config.running or self.config.autostart:
            await self.start()
            return True
        return False
