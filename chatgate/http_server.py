"""A deliberately small HTTP/1.1 server on asyncio streams.

One request per connection: read the head up to CRLFCRLF, read the body up
to Content-Length, dispatch on the exact "METHOD PATH" key, write the whole
response in one go and close. The total request is capped at
``max_request_bytes``; anything beyond the cap is dropped.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Literal, Optional, Tuple

from chatgate.config import logger
from chatgate.errors import BindError, ProtocolError

HEAD_END = b"\r\n\r\n"
READ_CHUNK = 65536

STATUS_REASONS = {
    200: "OK",
    400: "Bad Request",
    404: "Not Found",
    500: "Internal Server Error",
}

ServerState = Literal["stopped", "running"]


@dataclass
class HttpRequest:
    method: str
    path: str
    version: str = "HTTP/1.1"
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)

    @property
    def route_key(self) -> str:
        return f"{self.method} {self.path}"


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: bytes = b""
    content_type: str = "application/json"
    headers: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def ok(
        cls,
        body: bytes,
        content_type: str = "application/json",
        headers: Optional[Dict[str, str]] = None,
    ) -> "HttpResponse":
        return cls(200, body, content_type, tuple((headers or {}).items()))

    @classmethod
    def html(cls, body: bytes) -> "HttpResponse":
        return cls(200, body, "text/html; charset=utf-8")

    @classmethod
    def bad_request(cls) -> "HttpResponse":
        return cls(400)

    @classmethod
    def not_found(cls) -> "HttpResponse":
        return cls(404)

    @classmethod
    def internal_server_error(cls) -> "HttpResponse":
        return cls(500)


Handler = Callable[[HttpRequest], Awaitable[HttpResponse]]


def render_response(resp: HttpResponse) -> bytes:
    reason = STATUS_REASONS.get(resp.status, "Unknown")
    lines = [
        f"HTTP/1.1 {resp.status} {reason}",
        f"Content-Type: {resp.content_type}",
    ]
    for k, v in resp.headers:
        lines.append(f"{k}: {v}")
    lines.append(f"Content-Length: {len(resp.body)}")
    lines.append("Connection: close")
    head = "\r\n".join(lines) + "\r\n\r\n"
    return head.encode("latin-1") + resp.body


def parse_head(head: bytes) -> Tuple[str, str, str, Dict[str, str]]:
    """Request line and headers; ProtocolError when no usable request line exists."""
    try:
        text = head.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtocolError("request head is not UTF-8") from e

    lines = text.split("\r\n")
    parts = lines[0].split(" ")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise ProtocolError(f"bad request line: {lines[0][:80]!r}")
    method, path = parts[0], parts[1]
    version = parts[2] if len(parts) > 2 else "HTTP/1.0"

    headers: Dict[str, str] = {}
    for line in lines[1:]:
        if ":" not in line:
            continue
        k, v = line.split(":", 1)
        k = k.strip().lower()
        if k:
            headers[k] = v.strip()
    return method, path, version, headers


def _content_length(headers: Dict[str, str]) -> int:
    try:
        n = int(headers.get("content-length", "0"))
    except ValueError:
        return 0
    return max(n, 0)


class RequestParser:
    """Incremental reader: headers, then body per Content-Length, then done."""

    def __init__(self, max_bytes: int = 65536):
        self.max_bytes = max_bytes
        self.buffer = bytearray()
        self.state: Literal["headers", "body", "done"] = "headers"
        self.truncated = False
        self._head_end = -1
        self._content_length = 0

    def feed(self, data: bytes) -> bool:
        """Add received bytes; True once nothing more should be read."""
        if self.state == "done":
            return True

        room = self.max_bytes - len(self.buffer)
        if len(data) > room:
            data = data[:room]
            self.truncated = True
        self.buffer += data

        if self.state == "headers":
            idx = self.buffer.find(HEAD_END)
            if idx >= 0:
                self._head_end = idx + len(HEAD_END)
                try:
                    self._content_length = _content_length(parse_head(bytes(self.buffer[:idx]))[3])
                except ProtocolError:
                    self._content_length = 0
                self.state = "body"

        if self.state == "body" and len(self.buffer) - self._head_end >= self._content_length:
            self.state = "done"

        if len(self.buffer) >= self.max_bytes:
            if self.state != "done":
                self.truncated = True
            self.state = "done"
        return self.state == "done"

    def finish(self) -> None:
        self.state = "done"

    @property
    def empty(self) -> bool:
        return not self.buffer

    def result(self) -> Optional[HttpRequest]:
        if self._head_end >= 0:
            head = bytes(self.buffer[: self._head_end - len(HEAD_END)])
            body = bytes(self.buffer[self._head_end :])
            if self._content_length and len(body) > self._content_length:
                body = body[: self._content_length]
        else:
            head, body = bytes(self.buffer), b""

        try:
            method, path, version, headers = parse_head(head)
        except ProtocolError as e:
            logger.debug("http: %s", e)
            return None
        return HttpRequest(method=method, path=path, version=version, headers=headers, body=body)


class HttpServer:
    def __init__(
        self,
        host: str = "0.0.0.0",
        *,
        max_request_bytes: int = 65536,
        read_timeout: float = 30.0,
    ):
        self.host = host
        self.max_request_bytes = max_request_bytes
        self.read_timeout = read_timeout
        self.routes: Dict[str, Handler] = {}
        self.state: ServerState = "stopped"
        self._server: Optional[asyncio.AbstractServer] = None

    def route(self, key: str, handler: Handler) -> None:
        self.routes[key] = handler

    def get(self, path: str, handler: Handler) -> None:
        self.route(f"GET {path}", handler)

    def post(self, path: str, handler: Handler) -> None:
        self.route(f"POST {path}", handler)

    def options(self, path: str, handler: Handler) -> None:
        self.route(f"OPTIONS {path}", handler)

    @property
    def bound_port(self) -> Optional[int]:
        if self._server is None or not self._server.sockets:
            return None
        return int(self._server.sockets[0].getsockname()[1])

    async def start(self, port: int) -> None:
        if self.state == "running":
            return
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port <= 65535:
            raise BindError(port, "invalid port")
        try:
            self._server = await asyncio.start_server(self._handle_connection, self.host, port)
        except OSError as e:
            raise BindError(port, e.strerror or str(e)) from e
        self.state = "running"
        logger.info("http: listening on %s:%d", self.host, port)

    async def stop(self) -> None:
        server, self._server = self._server, None
        self.state = "stopped"
        if server is None:
            return
        server.close()
        await server.wait_closed()
        logger.info("http: stopped")

    async def _read_request(self, reader: asyncio.StreamReader) -> RequestParser:
        parser = RequestParser(self.max_request_bytes)
        while True:
            try:
                chunk = await asyncio.wait_for(reader.read(READ_CHUNK), timeout=self.read_timeout)
            except asyncio.TimeoutError:
                logger.debug("http: read timed out after %d bytes", len(parser.buffer))
                parser.finish()
                break
            if not chunk:
                parser.finish()
                break
            if parser.feed(chunk):
                break
        if parser.truncated:
            logger.warning("http: request truncated at %d bytes", self.max_request_bytes)
        return parser

    async def dispatch(self, req: Optional[HttpRequest]) -> HttpResponse:
        if req is None:
            return HttpResponse.not_found()
        handler = self.routes.get(req.route_key)
        if handler is None:
            return HttpResponse.not_found()
        try:
            return await handler(req)
        except Exception:
            logger.exception("http: handler for %s failed", req.route_key)
            return HttpResponse.internal_server_error()

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        start = time.time()
        try:
            parser = await self._read_request(reader)
            if parser.empty:
                return
            req = parser.result()
            resp = await self.dispatch(req)
            writer.write(render_response(resp))
            await writer.drain()

            dur_ms = (time.time() - start) * 1000.0
            if req is None:
                logger.info("malformed request -> %d (%.1fms)", resp.status, dur_ms)
            else:
                logger.info("%s %s -> %d (%.1fms)", req.method, req.path, resp.status, dur_ms)
        except (ConnectionError, OSError) as e:
            logger.debug("http: connection error: %s", e)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
