"""滚动摘要的后台调度。

生成成功完成后延迟 delay 秒（避免与刚结束的回复争抢后端），
通过同一个 Provider 请求一段不超过 100 词的对话摘要。结果到达时：

- 会话已经开始了更新的生成（is_current() 为假），或调度器已关闭：静默丢弃；
- 否则交给 on_summary 回调替换会话的滚动摘要。

发送流程从不等待这里的任务；失败只记录日志。
"""

import asyncio
import logging
from typing import Callable, Dict, Optional, Sequence

from chat_core.config.settings import settings
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import ChatTurn
from chat_core.infrastructure.logging.logger import log_event
from chat_core.prompts import load_prompt
from chat_core.providers.base import ProviderAdapter


SummaryCallback = Callable[[str, str], None]


class SummarizationScheduler:
    def __init__(
        self,
        on_summary: SummaryCallback,
        delay: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        self._on_summary = on_summary
        self._delay = settings.summary_delay if delay is None else delay
        self._timeout = settings.stream_read_timeout if timeout is None else timeout
        self._jobs: Dict[str, asyncio.Task] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self, conversation_id: str) -> Optional[asyncio.Task]:
        task = self._jobs.get(conversation_id)
        return task if task is not None and not task.done() else None

    def schedule(
        self,
        conversation_id: str,
        turns: Sequence[ChatTurn],
        reply: str,
        provider: ProviderAdapter,
        model: str,
        is_current: Callable[[], bool],
    ) -> Optional[asyncio.Task]:
        if self._closed or not reply.strip():
            return None
        previous = self.pending(conversation_id)
        if previous is not None:
            previous.cancel()
        summary_turns = [
            ChatTurn(role="system", content=load_prompt("summary_instruction")),
            *turns,
            ChatTurn(role="assistant", content=reply),
        ]
        task = asyncio.create_task(
            self._run(conversation_id, summary_turns, provider, model, is_current),
            name=f"summary-{conversation_id}",
        )
        self._jobs[conversation_id] = task
        task.add_done_callback(lambda t: self._forget(conversation_id, t))
        return task

    async def shutdown(self) -> None:
        self._closed = True
        tasks = [t for t in self._jobs.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
        self._jobs.clear()

    def _forget(self, conversation_id: str, task: asyncio.Task) -> None:
        if self._jobs.get(conversation_id) is task:
            del self._jobs[conversation_id]

    async def _run(
        self,
        conversation_id: str,
        turns: Sequence[ChatTurn],
        provider: ProviderAdapter,
        model: str,
        is_current: Callable[[], bool],
    ) -> None:
        await asyncio.sleep(self._delay)
        try:
            async with asyncio.timeout(self._timeout):
                pieces = [delta async for delta in provider.stream_completion(model, turns)]
        except (BusinessError, TimeoutError) as exc:
            log_event(
                logging.WARNING,
                "Summary request failed",
                conversation_id=conversation_id,
                error=getattr(exc, "message", str(exc)) or type(exc).__name__,
            )
            return
        except Exception:
            log_event(
                logging.ERROR,
                "Unexpected summary error",
                conversation_id=conversation_id,
                exc_info=True,
            )
            return
        summary = "".join(pieces).strip()
        if self._closed or not is_current():
            log_event(logging.INFO, "Discarded stale summary", conversation_id=conversation_id)
            return
        if summary:
            self._on_summary(conversation_id, summary)
            log_event(logging.INFO, "Updated rolling summary", conversation_id=conversation_id, summary_length=len(summary))
