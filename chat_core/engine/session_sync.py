"""会话持久化同步。

在不压垮存储的前提下让持久化状态与内存状态最终一致：

- 任何消息变更都会（重新）挂起一个静默期定时器；生成进行中或正在切换会话时
  完全跳过自动保存（不排队），避免写入半截内容或写错会话。
- 定时器触发时按 id 与快照做差：新 id 批量插入，已有 id 指纹变化的逐条更新，
  标题或摘要变化时只写会话元数据；成功后推进 updated_at 并刷新快照。
- 写入失败只记录日志，快照保持旧值，下一个周期会重新算出同样的差异再写一次
  （写入按 id 幂等）。
- 同一会话的写入通过 save_lock 串行化。
"""

import asyncio
import logging
from typing import List, Optional

from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationStore, Message, utcnow
from chat_core.domain.exceptions import StorageError
from chat_core.engine.state import ConversationState, conversation_fingerprint, message_fingerprint
from chat_core.infrastructure.logging.logger import log_event


class SessionSynchronizer:
    def __init__(self, store: ConversationStore, quiet_period: Optional[float] = None):
        self._store = store
        self._quiet_period = settings.autosave_quiet_period if quiet_period is None else quiet_period
        self._tasks: set[asyncio.Task] = set()

    def notify_mutation(self, state: ConversationState) -> bool:
        """（重新）挂起保存定时器，被抑制时返回 False。"""

        self.cancel(state)
        if self._suppressed(state):
            return False
        loop = asyncio.get_running_loop()
        state.pending_save = loop.call_later(self._quiet_period, self._fire, state)
        return True

    def cancel(self, state: ConversationState) -> None:
        if state.pending_save is not None:
            state.pending_save.cancel()
            state.pending_save = None

    def prime(self, state: ConversationState) -> None:
        """用刚从存储读出的消息初始化快照。"""

        state.snapshot.fingerprints.clear()
        for message in state.conversation.messages:
            state.snapshot.record(message)
        state.snapshot.meta = conversation_fingerprint(state.conversation)

    def pending_changes(self, state: ConversationState) -> tuple[List[Message], List[Message]]:
        inserts: List[Message] = []
        updates: List[Message] = []
        for message in state.conversation.messages:
            if message.id not in state.snapshot:
                inserts.append(message)
            elif state.snapshot.is_stale(message):
                updates.append(message)
        return inserts, updates

    async def flush(self, state: ConversationState) -> bool:
        """立即执行一次差量写入，成功返回 True。"""

        conv = state.conversation
        async with state.save_lock:
            inserts, updates = self.pending_changes(state)
            meta = conversation_fingerprint(conv)
            if not inserts and not updates and meta == state.snapshot.meta:
                return True
            written = {m.id: message_fingerprint(m) for m in inserts + updates}
            try:
                if inserts:
                    await self._store.append_messages(conv.id, inserts)
                for message in updates:
                    await self._store.update_message(
                        message.id,
                        {
                            "content": message.content,
                            "created_at": message.created_at,
                            "persona_id": message.persona_id,
                        },
                    )
                now = utcnow()
                await self._store.update_conversation(
                    conv.id,
                    {
                        "updated_at": now,
                        "title": conv.title,
                        "summary": conv.summary,
                        "persona_id": conv.persona_id,
                        "provider": conv.provider,
                        "model": conv.model,
                    },
                )
            except StorageError as exc:
                log_event(
                    logging.WARNING,
                    "Autosave failed, will retry on next change",
                    conversation_id=conv.id,
                    error_code=exc.code,
                    error=exc.message,
                )
                return False
            conv.updated_at = now
            state.snapshot.fingerprints.update(written)
            state.snapshot.meta = meta
            log_event(
                logging.INFO,
                "Autosaved conversation",
                conversation_id=conv.id,
                inserted=len(inserts),
                updated=len(updates),
            )
            return True

    async def drain(self) -> None:
        """等待所有已触发的保存任务结束。"""

        while self._tasks:
            await asyncio.wait(set(self._tasks))

    def _suppressed(self, state: ConversationState) -> bool:
        return state.is_generating or state.switch_in_progress

    def _fire(self, state: ConversationState) -> None:
        state.pending_save = None
        if self._suppressed(state):
            return
        task = asyncio.create_task(self.flush(state), name=f"autosave-{state.conversation_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
