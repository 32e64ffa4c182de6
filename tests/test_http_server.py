import asyncio
import json
import socket

import httpx
import pytest

from chatgate.errors import BindError
from chatgate.http_server import HttpRequest, HttpResponse, HttpServer


async def _raw_exchange(port: int, *parts: bytes, pause: float = 0.05) -> bytes:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    for i, p in enumerate(parts):
        if i:
            await asyncio.sleep(pause)
        writer.write(p)
        await writer.drain()
    data = await reader.read()
    writer.close()
    return data


@pytest.mark.asyncio
async def test_ok_response_round_trips_through_http_client(free_port):
    server = HttpServer("127.0.0.1")
    payload = json.dumps({"hello": "wörld"}).encode("utf-8")

    async def handler(_req: HttpRequest) -> HttpResponse:
        return HttpResponse.ok(payload, "application/json")

    server.get("/thing", handler)
    await server.start(free_port)
    try:
        assert server.state == "running"
        assert server.bound_port == free_port
        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{free_port}") as client:
            r = await client.get("/thing")
        assert r.status_code == 200
        assert r.content == payload
        assert r.headers["content-type"] == "application/json"
        assert r.headers["connection"] == "close"
    finally:
        await server.stop()
    assert server.state == "stopped"


@pytest.mark.asyncio
async def test_second_registration_for_a_key_wins(free_port):
    server = HttpServer("127.0.0.1")
    calls = []

    async def first(_req):
        calls.append("first")
        return HttpResponse.ok(b'"first"')

    async def second(_req):
        calls.append("second")
        return HttpResponse.ok(b'"second"')

    server.route("GET /models", first)
    server.route("GET /models", second)
    await server.start(free_port)
    try:
        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{free_port}") as client:
            r = await client.get("/models")
        assert r.json() == "second"
        assert calls == ["second"]
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_unknown_route_trailing_slash_and_query_are_404(free_port):
    server = HttpServer("127.0.0.1")

    async def handler(_req):
        return HttpResponse.ok(b"{}")

    server.get("/models", handler)
    await server.start(free_port)
    try:
        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{free_port}") as client:
            for path in ("/nope", "/models/", "/models?refresh=1"):
                r = await client.get(path)
                assert r.status_code == 404, path
                assert r.content == b""
            r = await client.post("/models", content=b"{}")
            assert r.status_code == 404
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_handler_exception_becomes_500_and_server_keeps_serving(free_port):
    server = HttpServer("127.0.0.1")

    async def boom(_req):
        raise RuntimeError("boom")

    async def fine(_req):
        return HttpResponse.ok(b"{}")

    server.get("/boom", boom)
    server.get("/fine", fine)
    await server.start(free_port)
    try:
        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{free_port}") as client:
            r = await client.get("/boom")
            assert r.status_code == 500
            assert r.content == b""
            r = await client.get("/fine")
            assert r.status_code == 200
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_body_split_across_writes_is_reassembled(free_port):
    server = HttpServer("127.0.0.1")
    seen = {}

    async def echo(req: HttpRequest) -> HttpResponse:
        seen["body"] = req.body
        seen["type"] = req.header("Content-Type")
        return HttpResponse.ok(req.body)

    server.post("/echo", echo)
    await server.start(free_port)
    try:
        body = b'{"message": "hi"}'
        head = b"POST /echo HTTP/1.1\r\nHost: x\r\ncontent-type: application/json\r\nContent-Length: %d\r\n\r\n" % len(body)
        raw = await _raw_exchange(free_port, head, body[:5], body[5:])
        assert raw.startswith(b"HTTP/1.1 200 OK\r\n")
        assert raw.endswith(b"\r\n\r\n" + body)
        assert seen == {"body": body, "type": "application/json"}
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_malformed_request_gets_404(free_port):
    server = HttpServer("127.0.0.1")
    await server.start(free_port)
    try:
        raw = await _raw_exchange(free_port, b"garbage\r\n\r\n")
        assert raw.startswith(b"HTTP/1.1 404 Not Found\r\n")
        assert b"Content-Length: 0\r\n" in raw
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_connection_is_closed_even_when_keep_alive_requested(free_port):
    server = HttpServer("127.0.0.1")

    async def handler(_req):
        return HttpResponse.ok(b"{}")

    server.get("/", handler)
    await server.start(free_port)
    try:
        raw = await _raw_exchange(free_port, b"GET / HTTP/1.1\r\nConnection: keep-alive\r\n\r\n")
        # read() returned, so the server closed the connection.
        assert raw.endswith(b"\r\n\r\n{}")
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_invalid_port_raises_bind_error():
    server = HttpServer("127.0.0.1")
    for port in (0, -1, 70000):
        with pytest.raises(BindError):
            await server.start(port)
    assert server.state == "stopped"


@pytest.mark.asyncio
async def test_port_in_use_raises_bind_error(free_port):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", free_port))
        s.listen(1)
        server = HttpServer("127.0.0.1")
        with pytest.raises(BindError) as ei:
            await server.start(free_port)
        assert ei.value.port == free_port
        assert server.state == "stopped"


@pytest.mark.asyncio
async def test_stop_refuses_new_connections(free_port):
    server = HttpServer("127.0.0.1")

    async def handler(_req):
        return HttpResponse.ok(b"{}")

    server.get("/", handler)
    await server.start(free_port)
    await server.stop()
    async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{free_port}") as client:
        with pytest.raises(httpx.ConnectError):
            await client.get("/")
