"""统一的 Prompt 与流式事件数据模型。

本模块定义了引擎内部在不同 Provider 之间共享的标准数据结构：

- ChatTurn: 发给后端的一条 prompt（system/user/assistant）。
- ModelDescriptor: Provider 返回的可用模型描述。
- SnapshotEvent: 流式生成过程中推送给 UI 的内容快照。

所有 Provider 适配器（如 OllamaClient、GroqClient）都只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional


# LLM 消息角色类型（与 Ollama / OpenAI 兼容接口的 role 字段对应）
Role = Literal["system", "user", "assistant"]


@dataclass(frozen=True)
class ChatTurn:
    """一条 prompt 记录，只有角色和纯文本内容。"""

    role: Role
    content: str

    def to_payload(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ModelDescriptor:
    """单个可用模型。

    - name: 发给后端的模型 ID，例如 "gemma2:2b"、"llama-3.1-8b-instant"。
    - provider: 所属 Provider 名称（"ollama" / "groq"）。
    - context_window: 上下文长度，部分 Provider 才会返回。
    - details: 其他原始字段（大小、量化方式、owner 等），仅供展示。
    """

    name: str
    provider: str
    context_window: Optional[int] = None
    size: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SnapshotEvent:
    """一次内容快照。

    content 始终是该消息到目前为止的完整内容，而不是增量；
    final=True 表示本次生成的最后一次推送，error=True 表示内容已被改写为错误标记。
    """

    conversation_id: str
    message_id: str
    content: str
    sequence: int
    final: bool = False
    error: bool = False
