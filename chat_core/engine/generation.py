"""生成控制器。

每个会话一个状态机：IDLE -> GENERATING -> {COMPLETED, CANCELLED, FAILED} -> IDLE。

- 同一会话任意时刻最多一个 GENERATING。新的 start() 会先取消旧生成并等待其退出
  （宽限期后强制取消任务），即“新意图优先”。
- 取消是协作式的：消费循环在两次读取增量之间检查取消信号。没有任何内容时
  删除占位消息；已有内容则保留，只是不再增长。
- 失败（网络 / 后端错误）把占位消息改写为 ``Error: <message>``，不自动重试。
- 每次读取增量都有超时，后端停滞会变成 FAILED，而不是永远卡住。
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence

from chat_core.config.settings import settings
from chat_core.domain.conversation import Message, new_message_id, utcnow
from chat_core.domain.exceptions import BackendConnectionError, BusinessError, CancellationError
from chat_core.domain.models import ChatTurn, SnapshotEvent
from chat_core.engine.coalescer import StreamCoalescer
from chat_core.engine.state import ConversationState
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers.base import ProviderAdapter


class GenerationState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class GenerationHandle:
    conversation_id: str
    sequence: int
    message_id: str
    provider: str
    model: str
    turns: List[ChatTurn] = field(default_factory=list, repr=False)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    state: GenerationState = GenerationState.GENERATING
    content: str = ""
    error: Optional[BusinessError] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    _force_timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @property
    def is_active(self) -> bool:
        return self.state is GenerationState.GENERATING

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    async def wait(self) -> GenerationState:
        """等待本次生成结束并返回终态。"""

        if self.task is not None:
            await asyncio.wait({self.task})
        return self.state


SnapshotCallback = Callable[[SnapshotEvent], None]
FinishedCallback = Callable[[ConversationState, GenerationHandle], None]


class GenerationController:
    def __init__(
        self,
        on_snapshot: SnapshotCallback,
        on_finished: Optional[FinishedCallback] = None,
        read_timeout: Optional[float] = None,
        grace: Optional[float] = None,
        min_interval: Optional[float] = None,
        debounce: Optional[float] = None,
    ):
        self._on_snapshot = on_snapshot
        self._on_finished = on_finished
        self._read_timeout = settings.stream_read_timeout if read_timeout is None else read_timeout
        self._grace = settings.supersede_grace if grace is None else grace
        self._min_interval = min_interval
        self._debounce = debounce
        self._active: Dict[str, GenerationHandle] = {}

    # ---- 对外操作 ----

    def query_state(self, conversation_id: str) -> GenerationState:
        handle = self._active.get(conversation_id)
        if handle is not None and handle.is_active:
            return GenerationState.GENERATING
        return GenerationState.IDLE

    def active_handle(self, conversation_id: str) -> Optional[GenerationHandle]:
        handle = self._active.get(conversation_id)
        return handle if handle is not None and handle.is_active else None

    async def start(
        self,
        state: ConversationState,
        turns: Sequence[ChatTurn],
        provider: ProviderAdapter,
        model: str,
    ) -> GenerationHandle:
        """启动一次生成；如已有生成在进行，先取消并等待其退出。"""

        while state.is_generating:
            await self.cancel_and_wait(state.generation)

        conv = state.conversation
        placeholder = Message(
            id=new_message_id(),
            role="assistant",
            content="",
            created_at=utcnow(),
            persona_id=conv.persona_id,
            frozen=False,
        )
        conv.messages.append(placeholder)
        handle = GenerationHandle(
            conversation_id=conv.id,
            sequence=state.next_sequence(),
            message_id=placeholder.id,
            provider=provider.name,
            model=model,
            turns=list(turns),
        )
        state.generation = handle
        self._active[conv.id] = handle
        handle.task = asyncio.create_task(
            self._run(state, handle, placeholder, provider),
            name=f"generation-{conv.id}-{handle.sequence}",
        )
        log_event(
            logging.INFO,
            "Generation started",
            conversation_id=conv.id,
            sequence=handle.sequence,
            provider=provider.name,
            model=model,
            turn_count=len(handle.turns),
        )
        return handle

    def cancel(self, handle: Optional[GenerationHandle]) -> None:
        """发出取消信号；宽限期内未退出则强制取消任务。"""

        if handle is None or not handle.is_active or handle.cancel_requested:
            return
        handle.cancel_event.set()
        loop = asyncio.get_running_loop()
        handle._force_timer = loop.call_later(self._grace, self._force_cancel, handle)

    async def cancel_and_wait(self, handle: Optional[GenerationHandle]) -> None:
        if handle is None:
            return
        self.cancel(handle)
        if handle.task is not None:
            await asyncio.wait({handle.task})

    # ---- 内部实现 ----

    def _force_cancel(self, handle: GenerationHandle) -> None:
        handle._force_timer = None
        if handle.task is not None and not handle.task.done():
            log_event(
                logging.INFO,
                "Generation did not stop within grace period, cancelling task",
                conversation_id=handle.conversation_id,
                sequence=handle.sequence,
            )
            handle.task.cancel()

    async def _run(
        self,
        state: ConversationState,
        handle: GenerationHandle,
        placeholder: Message,
        provider: ProviderAdapter,
    ) -> None:
        coalescer = StreamCoalescer(
            lambda content, final: self._publish(handle, content, final),
            min_interval=self._min_interval,
            debounce=self._debounce,
        )
        stream = provider.stream_completion(handle.model, handle.turns)
        try:
            outcome = await self._consume(handle, placeholder, coalescer, stream, provider.name)
        except asyncio.CancelledError:
            self._finish(state, handle, placeholder, coalescer, GenerationState.CANCELLED)
            raise
        except BusinessError as exc:
            self._finish(state, handle, placeholder, coalescer, GenerationState.FAILED, exc)
        except Exception as exc:
            log_event(
                logging.ERROR,
                "Unexpected generation error",
                conversation_id=handle.conversation_id,
                exc_info=True,
            )
            error = BusinessError(code="INTERNAL_ERROR", message=str(exc) or type(exc).__name__)
            self._finish(state, handle, placeholder, coalescer, GenerationState.FAILED, error)
        else:
            self._finish(state, handle, placeholder, coalescer, outcome)

    async def _consume(
        self,
        handle: GenerationHandle,
        placeholder: Message,
        coalescer: StreamCoalescer,
        stream: AsyncIterator[str],
        provider_name: str,
    ) -> GenerationState:
        try:
            while not handle.cancel_requested:
                try:
                    async with asyncio.timeout(self._read_timeout):
                        delta = await anext(stream)
                except StopAsyncIteration:
                    break
                except TimeoutError:
                    raise BackendConnectionError(
                        code="STREAM_TIMEOUT",
                        message=f"No response from {provider_name} for {self._read_timeout:g}s",
                    )
                if handle.cancel_requested:
                    break
                placeholder.append(delta)
                coalescer.push(delta)
        finally:
            await stream.aclose()
        if handle.cancel_requested:
            return GenerationState.CANCELLED
        return GenerationState.COMPLETED

    def _finish(
        self,
        state: ConversationState,
        handle: GenerationHandle,
        placeholder: Message,
        coalescer: StreamCoalescer,
        outcome: GenerationState,
        error: Optional[BusinessError] = None,
    ) -> None:
        conv = state.conversation
        if outcome is GenerationState.COMPLETED:
            placeholder.freeze()
            coalescer.finish()
        elif outcome is GenerationState.CANCELLED:
            error = CancellationError(code="CANCELLED", message="Generation cancelled")
            if placeholder.content:
                placeholder.freeze()
                coalescer.finish(cancelled=True)
            else:
                coalescer.close()
                conv.messages = [m for m in conv.messages if m.id != placeholder.id]
        else:
            coalescer.close()
            message = error.message if error is not None else "Failed to get response"
            placeholder.rewrite(f"Error: {message}")
            state.error = message
            self._publish(handle, placeholder.content, final=True, is_error=True)

        handle.state = outcome
        handle.content = placeholder.content
        handle.error = error
        if handle._force_timer is not None:
            handle._force_timer.cancel()
            handle._force_timer = None
        if self._active.get(handle.conversation_id) is handle:
            del self._active[handle.conversation_id]

        log_event(
            logging.WARNING if outcome is GenerationState.FAILED else logging.INFO,
            "Generation finished",
            conversation_id=handle.conversation_id,
            sequence=handle.sequence,
            state=outcome.value,
            content_length=len(handle.content),
            error_code=error.code if error is not None else None,
        )
        if self._on_finished is not None:
            self._on_finished(state, handle)

    def _publish(self, handle: GenerationHandle, content: str, final: bool, is_error: bool = False) -> None:
        self._on_snapshot(
            SnapshotEvent(
                conversation_id=handle.conversation_id,
                message_id=handle.message_id,
                content=content,
                sequence=handle.sequence,
                final=final,
                error=is_error,
            )
        )
