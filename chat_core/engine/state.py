"""每个会话的运行时状态。

取代“全局是否正在切换会话”之类的环境标志：生成句柄、自动保存定时器、
切换标志和持久化快照都挂在会话自己的状态对象上，随调用传递。
"""

import asyncio
import hashlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Optional

from chat_core.domain.conversation import Conversation, Message

if TYPE_CHECKING:
    from chat_core.engine.generation import GenerationHandle


def message_fingerprint(message: Message) -> str:
    """内容指纹：内容、时间戳和角色引用任一变化都会改变指纹。"""

    raw = "\x1f".join([
        message.content,
        message.created_at.isoformat(),
        message.persona_id or "",
    ])
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


def conversation_fingerprint(conversation: Conversation) -> str:
    raw = "\x1f".join([
        conversation.title,
        conversation.summary,
        conversation.persona_id or "",
        conversation.provider or "",
        conversation.model or "",
    ])
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


@dataclass
class PersistedSnapshot:
    """最近一次成功写入存储的消息 id -> 指纹，以及会话元数据指纹。"""

    fingerprints: Dict[str, str] = field(default_factory=dict)
    meta: str = ""

    def __contains__(self, message_id: str) -> bool:
        return message_id in self.fingerprints

    def is_stale(self, message: Message) -> bool:
        return self.fingerprints.get(message.id) != message_fingerprint(message)

    def record(self, message: Message) -> None:
        self.fingerprints[message.id] = message_fingerprint(message)

    def discard(self, message_id: str) -> None:
        self.fingerprints.pop(message_id, None)


@dataclass
class ConversationState:
    conversation: Conversation
    generation: Optional["GenerationHandle"] = None
    generation_counter: int = 0
    pending_save: Optional[asyncio.TimerHandle] = None
    switch_in_progress: bool = False
    error: Optional[str] = None
    snapshot: PersistedSnapshot = field(default_factory=PersistedSnapshot)
    save_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def conversation_id(self) -> str:
        return self.conversation.id

    @property
    def is_generating(self) -> bool:
        return self.generation is not None and self.generation.is_active

    def next_sequence(self) -> int:
        self.generation_counter += 1
        return self.generation_counter
