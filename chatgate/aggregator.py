"""Stream aggregation for a single target message.

A session consumes fragments from a backend adapter, appends them to an
accumulated buffer, and publishes the whole buffer after every fragment so a
reader always sees a consistent, growing string. Cancellation is cooperative:
the token is checked before each read and after each fragment arrives.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, List, Optional

import httpx

from chatgate.config import logger
from chatgate.errors import GatewayError
from chatgate.models import BackendKind

# httpx.StreamError (StreamClosed, StreamConsumed, ...) is not an HTTPError.
STREAM_ERRORS = (GatewayError, httpx.HTTPError, httpx.StreamError)


class CancelToken:
    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass(frozen=True)
class StreamUpdate:
    session_id: int
    text: str


@dataclass
class GenerationSession:
    id: int
    kind: BackendKind
    model: str
    messages: List[Dict[str, str]]
    token: CancelToken = field(default_factory=CancelToken)
    accumulated: str = ""
    received: int = 0


@dataclass(frozen=True)
class SessionResult:
    session_id: int
    text: str
    received: int
    cancelled: bool
    error: Optional[Exception] = None

    @property
    def failed_before_first_fragment(self) -> bool:
        return self.error is not None and self.received == 0


Subscriber = Callable[[StreamUpdate], None]


class StreamAggregator:
    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._ids = itertools.count(1)
        self._active: Optional[GenerationSession] = None

    @property
    def active(self) -> Optional[GenerationSession]:
        return self._active

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def _publish(self, update: StreamUpdate) -> None:
        for cb in list(self._subscribers):
            cb(update)

    def begin(self, kind: BackendKind, model: str, messages: List[Dict[str, str]]) -> GenerationSession:
        if self._active is not None:
            self._active.token.cancel()
        session = GenerationSession(id=next(self._ids), kind=kind, model=model, messages=messages)
        self._active = session
        return session

    def cancel(self) -> None:
        if self._active is not None:
            self._active.token.cancel()

    def finish(self, session: GenerationSession) -> None:
        if self._active is session:
            self._active = None

    async def run(self, session: GenerationSession, fragments: AsyncIterator[str]) -> SessionResult:
        token = session.token
        error: Optional[Exception] = None
        iterator = fragments.__aiter__()
        try:
            while not token.cancelled:
                try:
                    fragment = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                if token.cancelled:
                    break
                session.received += 1
                session.accumulated += fragment
                self._publish(StreamUpdate(session.id, session.accumulated))
        except STREAM_ERRORS as e:
            error = e
            logger.warning(
                "stream: session %d (%s) failed after %d fragments: %s",
                session.id,
                session.kind,
                session.received,
                e,
            )
        finally:
            aclose = getattr(iterator, "aclose", None)
            try:
                if aclose is not None:
                    await aclose()
            except STREAM_ERRORS as e:
                logger.warning("stream: session %d close failed: %s", session.id, e)
                if error is None:
                    error = e
            finally:
                self.finish(session)

        if token.cancelled:
            logger.info("stream: session %d cancelled after %d fragments", session.id, session.received)
        return SessionResult(
            session_id=session.id,
            text=session.accumulated,
            received=session.received,
            cancelled=token.cancelled,
            error=error,
        )
