from __future__ import annotations

from typing import List, Optional, Sequence

from chatgate.aggregator import SessionResult, StreamAggregator
from chatgate.backends import BackendClients, build_context
from chatgate.config import logger
from chatgate.conversation import HistorySink, MessageStore
from chatgate.errors import GatewayError
from chatgate.models import BackendKind, ChatMessage
from chatgate.settings_store import OllamaConfig


class ChatService:
    """Drives streamed generations into one conversation's message store."""

    def __init__(
        self,
        store: MessageStore,
        aggregator: StreamAggregator,
        clients: BackendClients,
        ollama_config: OllamaConfig,
        history: Optional[HistorySink] = None,
    ):
        self.store = store
        self.aggregator = aggregator
        self.clients = clients
        self.ollama_config = ollama_config
        self.history = history
        self.is_loading = False
        self._current: Optional[int] = None
        aggregator.subscribe(store.on_update)

    def clear(self) -> None:
        self.store.replace_all([])

    def load(self, messages: Sequence[ChatMessage]) -> None:
        self.store.replace_all(messages)

    def cancel(self) -> None:
        self.aggregator.cancel()

    async def send_message(self, content: str, kind: BackendKind, model: Optional[str] = None) -> SessionResult:
        history = self.store.messages
        self.store.append(ChatMessage(content=content, role="user"))
        return await self._generate(content, history, kind, model)

    async def regenerate(self, kind: BackendKind, model: Optional[str] = None) -> Optional[SessionResult]:
        last_user = self.store.last_user()
        if last_user is None or len(self.store) < 2:
            return None

        last = self.store.last()
        if last is not None and not last.is_user:
            self.store.remove_last()

        msgs = self.store.messages
        # Context is everything before the prompt being regenerated.
        cut = max(i for i, m in enumerate(msgs) if m.id == last_user.id)
        return await self._generate(last_user.content, msgs[:cut], kind, model)

    def _context(self, kind: BackendKind, prompt: str, history: List[ChatMessage]):
        if kind == "ollama":
            return build_context(history, prompt, self.ollama_config.max_turns)
        return [{"role": "user", "content": prompt}]

    async def _generate(
        self,
        prompt: str,
        history: List[ChatMessage],
        kind: BackendKind,
        model: Optional[str],
    ) -> SessionResult:
        self.is_loading = True
        self.store.append(ChatMessage(content="", role="assistant"))

        messages = self._context(kind, prompt, history)
        session = self.aggregator.begin(kind, model or "", messages)
        self._current = session.id
        self.store.track(session.id)
        try:
            try:
                fragments = self.clients.get(kind).complete_streaming(messages, model)
            except GatewayError as e:
                logger.warning("chat: cannot start %s generation: %s", kind, e)
                self.aggregator.finish(session)
                result = SessionResult(session_id=session.id, text="", received=0, cancelled=False, error=e)
            else:
                result = await self.aggregator.run(session, fragments)
        finally:
            self.store.untrack(session.id)
            superseded = self._current != session.id
            if not superseded:
                self._current = None
                self.is_loading = False

        if superseded:
            # A newer generation owns the store tail and the loading flag.
            return result

        if result.failed_before_first_fragment:
            # Nothing arrived: drop the empty assistant placeholder.
            self.store.remove_last()
            return result

        if self.history is not None:
            self.history.update_current_conversation(self.store.messages)
        return result
