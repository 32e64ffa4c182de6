import socket

import httpx
import pytest

from chatgate.errors import BindError
from chatgate.gateway import GatewayService, local_ipv4_address
from chatgate.http_server import HttpResponse, HttpServer
from chatgate.settings_store import GatewayConfig, SettingsStore


def _another_port(avoid: int) -> int:
    while True:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            port = int(s.getsockname()[1])
        if port != avoid:
            return port


def _routes(server: HttpServer) -> None:
    async def ping(_req):
        return HttpResponse.ok(b'"pong"')

    server.get("/ping", ping)


def _gateway(tmp_path, port: int, address="192.168.1.20", **cfg) -> GatewayService:
    store = SettingsStore(tmp_path / "settings.json")
    config = GatewayConfig(host="127.0.0.1", port=port, **cfg)
    return GatewayService(config, store, _routes, address_lookup=lambda _prefixes: address)


async def _ping(port: int) -> int:
    async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{port}") as client:
        r = await client.get("/ping")
    return r.status_code


@pytest.mark.asyncio
async def test_start_serves_and_persists_running(tmp_path, free_port):
    gw = _gateway(tmp_path, free_port)
    await gw.start()
    try:
        assert gw.state == "running"
        assert gw.url == f"http://192.168.1.20:{free_port}"
        assert await _ping(free_port) == 200
        assert SettingsStore(tmp_path / "settings.json").get("network_server_status") is True

        first = gw.server
        await gw.start()
        assert gw.server is first
    finally:
        await gw.stop()

    assert gw.state == "stopped"
    assert gw.url == ""
    reread = SettingsStore(tmp_path / "settings.json")
    assert reread.get("network_server_status") is False
    assert reread.get("network_server_autostart") is False
    with pytest.raises(httpx.ConnectError):
        await _ping(free_port)


@pytest.mark.asyncio
async def test_port_change_restarts_on_new_port(tmp_path, free_port):
    gw = _gateway(tmp_path, free_port)
    new_port = _another_port(free_port)
    await gw.start()
    try:
        await gw.set_port(new_port)
        assert gw.state == "running"
        assert gw.url.endswith(f":{new_port}")
        assert await _ping(new_port) == 200
        with pytest.raises(httpx.ConnectError):
            await _ping(free_port)
    finally:
        await gw.stop()
    assert SettingsStore(tmp_path / "settings.json").get("network_server_port") == new_port


@pytest.mark.asyncio
async def test_port_change_while_stopped_only_persists(tmp_path, free_port):
    gw = _gateway(tmp_path, free_port)
    await gw.set_port(free_port)
    assert gw.state == "stopped"
    assert gw.server is None
    assert SettingsStore(tmp_path / "settings.json").get("network_server_port") == free_port


@pytest.mark.asyncio
async def test_no_lan_address_leaves_url_empty_while_running(tmp_path, free_port):
    gw = _gateway(tmp_path, free_port, address=None)
    await gw.start()
    try:
        assert gw.state == "running"
        assert gw.url == ""
        assert await _ping(free_port) == 200
    finally:
        await gw.stop()


@pytest.mark.asyncio
async def test_bind_failure_marks_gateway_stopped(tmp_path, free_port):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(("127.0.0.1", free_port))
        blocker.listen(1)

        gw = _gateway(tmp_path, free_port)
        with pytest.raises(BindError):
            await gw.start()

    assert gw.state == "stopped"
    assert gw.url == ""
    assert gw.config.running is False
    assert SettingsStore(tmp_path / "settings.json").get("network_server_status") is False


@pytest.mark.asyncio
async def test_resume_follows_persisted_flags(tmp_path, free_port):
    idle = _gateway(tmp_path, free_port)
    assert await idle.resume() is False
    assert idle.state == "stopped"

    gw = _gateway(tmp_path, free_port, running=True)
    try:
        assert await gw.resume() is True
        assert gw.state == "running"
    finally:
        await gw.shutdown()
    # Process exit keeps the flag so the next launch resumes.
    assert gw.config.running is True
    assert SettingsStore(tmp_path / "settings.json").get("network_server_status") is True


def test_interface_lookup_prefers_prefix_order(monkeypatch):
    class Addr:
        def __init__(self, family, address):
            self.family = family
            self.address = address

    fake = {
        "en1": [Addr(socket.AF_INET, "10.0.0.2")],
        "en0": [Addr(socket.AF_INET6, "fe80::1"), Addr(socket.AF_INET, "192.168.1.5")],
        "lo0": [Addr(socket.AF_INET, "127.0.0.1")],
    }
    monkeypatch.setattr("chatgate.gateway.psutil.net_if_addrs", lambda: fake)

    assert local_ipv4_address(("en0", "en1")) == "192.168.1.5"
    assert local_ipv4_address(("en1", "en0")) == "10.0.0.2"
    assert local_ipv4_address(("wlan",)) is None
