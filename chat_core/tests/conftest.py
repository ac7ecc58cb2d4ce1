import asyncio
from typing import List, Optional, Sequence

import pytest

from chat_core.domain.conversation import Conversation, utcnow
from chat_core.domain.models import ChatTurn, ModelDescriptor
from chat_core.engine.state import ConversationState


SUMMARY_MARKER = "Generate a concise summary"


class FakeProvider:
    """按脚本吐出增量的 Provider，记录每次调用与同时打开的流数量。"""

    def __init__(
        self,
        name: str = "ollama",
        chunks: Sequence[str] = ("Hel", "lo", " there"),
        delay: float = 0.0,
        error: Optional[Exception] = None,
        hang_after: Optional[int] = None,
        summary_chunks: Sequence[str] = ("Short ", "summary"),
        available: bool = True,
        models: Optional[List[ModelDescriptor]] = None,
    ):
        self.name = name
        self.chunks = list(chunks)
        self.delay = delay
        self.error = error
        self.hang_after = hang_after
        self.summary_chunks = list(summary_chunks)
        self.available = available
        self.models = models or [ModelDescriptor(name="m", provider=name)]
        self.calls: List[List[ChatTurn]] = []
        self.summary_calls: List[List[ChatTurn]] = []
        self.open_streams = 0
        self.max_open_streams = 0
        self.closed_streams = 0

    async def check_availability(self) -> bool:
        return self.available

    async def list_models(self) -> List[ModelDescriptor]:
        return list(self.models)

    async def stream_completion(self, model: str, turns: Sequence[ChatTurn]):
        if turns and turns[0].content.startswith(SUMMARY_MARKER):
            self.summary_calls.append(list(turns))
            for chunk in self.summary_chunks:
                yield chunk
            return

        self.calls.append(list(turns))
        self.open_streams += 1
        self.max_open_streams = max(self.max_open_streams, self.open_streams)
        try:
            for i, chunk in enumerate(self.chunks):
                if self.hang_after is not None and i >= self.hang_after:
                    await asyncio.Event().wait()
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield chunk
            if self.error is not None:
                raise self.error
        finally:
            self.open_streams -= 1
            self.closed_streams += 1


@pytest.fixture
def make_provider():
    return FakeProvider


@pytest.fixture
def make_state():
    def factory(conversation_id: str = "c1") -> ConversationState:
        now = utcnow()
        return ConversationState(
            conversation=Conversation(id=conversation_id, title="t", created_at=now, updated_at=now)
        )

    return factory
