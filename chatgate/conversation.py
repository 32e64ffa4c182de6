from __future__ import annotations

from typing import Callable, List, Optional, Protocol, Sequence

from chatgate.aggregator import StreamUpdate
from chatgate.models import ChatMessage


class HistorySink(Protocol):
    def update_current_conversation(self, messages: List[ChatMessage]) -> None: ...


class MessageStore:
    """Message list of the current conversation.

    While a stream is active the only mutation is replacing the trailing
    assistant message's content with the session's accumulated text.
    """

    def __init__(self, messages: Optional[Sequence[ChatMessage]] = None):
        self._messages: List[ChatMessage] = list(messages or [])
        self._tracked: Optional[int] = None
        self._listeners: List[Callable[[List[ChatMessage]], None]] = []

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def subscribe(self, callback: Callable[[List[ChatMessage]], None]) -> None:
        self._listeners.append(callback)

    def _changed(self) -> None:
        for cb in list(self._listeners):
            cb(self.messages)

    def last(self) -> Optional[ChatMessage]:
        return self._messages[-1] if self._messages else None

    def last_user(self) -> Optional[ChatMessage]:
        for m in reversed(self._messages):
            if m.is_user:
                return m
        return None

    def append(self, message: ChatMessage) -> None:
        self._messages.append(message)
        self._changed()

    def remove_last(self) -> Optional[ChatMessage]:
        if not self._messages:
            return None
        m = self._messages.pop()
        self._changed()
        return m

    def replace_last_content(self, text: str) -> None:
        last = self.last()
        if last is None or last.is_user:
            return
        self._messages[-1] = last.model_copy(update={"content": text})
        self._changed()

    def replace_all(self, messages: Sequence[ChatMessage]) -> None:
        self._messages = list(messages)
        self._tracked = None
        self._changed()

    def track(self, session_id: Optional[int]) -> None:
        self._tracked = session_id

    def untrack(self, session_id: int) -> None:
        """Stop tracking ``session_id``; a newer tracked session is left alone."""
        if self._tracked == session_id:
            self._tracked = None

    def on_update(self, update: StreamUpdate) -> None:
        # Updates from a superseded or finished session are dropped.
        if self._tracked is None or update.session_id != self._tracked:
            return
        self.replace_last_content(update.text)
