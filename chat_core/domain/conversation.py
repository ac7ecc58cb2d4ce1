from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol
from uuid import uuid4

from .models import ChatTurn, Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return f"m-{uuid4().hex}"


@dataclass
class Message:
    """一条会话消息。

    content 在流式生成期间只增不减；生成结束（完成/取消/失败）后调用 freeze()，
    之后再追加内容会抛出 RuntimeError。
    """

    id: str
    role: Role
    content: str
    created_at: datetime
    persona_id: Optional[str] = None
    frozen: bool = True

    def append(self, delta: str) -> None:
        if self.frozen:
            raise RuntimeError(f"message {self.id} is frozen")
        self.content += delta

    def rewrite(self, content: str) -> None:
        """生成失败时把占位消息改写为错误标记，随后冻结。"""

        self.content = content
        self.frozen = True

    def freeze(self) -> None:
        self.frozen = True

    @property
    def is_error(self) -> bool:
        return self.role == "assistant" and self.content.startswith("Error: ")

    def to_turn(self) -> ChatTurn:
        return ChatTurn(role=self.role, content=self.content)


@dataclass
class Persona:
    id: str
    name: str
    description: str
    avatar: Optional[str] = None
    is_default: bool = False


@dataclass
class Conversation:
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    messages: List[Message] = field(default_factory=list)
    persona_id: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    summary: str = ""

    def find_message(self, message_id: str) -> Optional[Message]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None


@dataclass
class SearchHit:
    conversation_id: Optional[str]
    message: Message
    conversation_title: str = ""


class ConversationStore(Protocol):
    """持久化边界。所有方法都是异步的，失败时抛出 StorageError。"""

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        ...

    async def get_conversation(self, conversation_id: str) -> Conversation:
        ...

    async def list_conversations(self) -> List[Conversation]:
        ...

    async def update_conversation(self, conversation_id: str, partial: Dict[str, Any]) -> None:
        ...

    async def append_messages(self, conversation_id: str, messages: List[Message]) -> None:
        ...

    async def update_message(self, message_id: str, partial: Dict[str, Any]) -> None:
        ...

    async def delete_conversation(self, conversation_id: str) -> None:
        ...

    async def search_messages(self, query: str) -> List[SearchHit]:
        ...

    async def list_personas(self) -> List[Persona]:
        ...

    async def get_persona(self, persona_id: str) -> Optional[Persona]:
        ...

    async def save_persona(self, persona: Persona) -> None:
        ...

    async def delete_persona(self, persona_id: str) -> None:
        ...

    async def export_conversations(self) -> Dict[str, Any]:
        ...

    async def import_conversations(self, data: Dict[str, Any]) -> int:
        ...
