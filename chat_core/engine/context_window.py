"""上下文窗口构建。

纯函数：输入完整历史、角色、滚动摘要和新的用户输入，输出发给后端的有界 prompt。
顺序固定为：

1. 角色 system 轮（绑定了 Persona 或设置了自定义 system prompt 时）。
2. 摘要 system 轮（摘要非空时）："Conversation summary: <summary>"。
3. 历史子集：轮数 <= history_limit 时原样保留；否则始终保留最近
   recent_turns 轮，剩余名额按内容长度从长到短挑选较早的“实质性”轮次，
   挑中的轮次保持原有时间顺序。
4. 新的用户轮。

挑选较早轮次的启发式只影响上下文质量，不是正确性要求，参数由 ContextPolicy 调整。
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from chat_core.config.settings import settings
from chat_core.domain.conversation import Message, Persona
from chat_core.domain.models import ChatTurn
from chat_core.prompts import load_prompt


@dataclass(frozen=True)
class ContextPolicy:
    history_limit: int = 6
    recent_turns: int = 4
    substantive_chars: int = 50

    @classmethod
    def from_settings(cls, cfg=settings) -> "ContextPolicy":
        return cls(
            history_limit=cfg.context_history_limit,
            recent_turns=cfg.context_recent_turns,
            substantive_chars=cfg.context_substantive_chars,
        )

    @property
    def older_budget(self) -> int:
        return max(self.history_limit - self.recent_turns, 0)


def persona_system_prompt(persona: Persona) -> str:
    template = load_prompt("persona_system")
    return template.replace("{name}", persona.name).replace("{description}", persona.description)


def select_history(history: Sequence[Message], policy: ContextPolicy) -> List[Message]:
    """按策略挑选要带上的历史消息。"""

    turns = [
        m for m in history
        if m.role in ("user", "assistant") and m.content and not m.is_error
    ]
    if len(turns) <= policy.history_limit:
        return turns

    split = max(len(turns) - policy.recent_turns, 0)
    older, recent = turns[:split], turns[split:]
    candidates = [
        (idx, m) for idx, m in enumerate(older)
        if len(m.content.strip()) > policy.substantive_chars
    ]
    # 长的优先；等长时较新的优先
    candidates.sort(key=lambda pair: (-len(pair[1].content), -pair[0]))
    chosen = sorted(candidates[:policy.older_budget], key=lambda pair: pair[0])
    return [m for _, m in chosen] + recent


def build_context_window(
    history: Sequence[Message],
    persona: Optional[Persona],
    summary: str,
    new_text: str,
    policy: Optional[ContextPolicy] = None,
    system_prompt: str = "",
) -> List[ChatTurn]:
    policy = policy or ContextPolicy()
    turns: List[ChatTurn] = []

    system_parts = []
    if persona is not None:
        system_parts.append(persona_system_prompt(persona))
    if system_prompt and system_prompt.strip():
        system_parts.append(system_prompt.strip())
    if system_parts:
        turns.append(ChatTurn(role="system", content="\n\n".join(system_parts)))

    if summary and summary.strip():
        turns.append(ChatTurn(role="system", content=f"Conversation summary: {summary.strip()}"))

    turns.extend(m.to_turn() for m in select_history(history, policy))
    turns.append(ChatTurn(role="user", content=new_text))
    return turns
