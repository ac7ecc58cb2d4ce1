"""Chat Core 顶层包。

该包提供多后端流式对话引擎的核心实现，
包括配置加载、领域模型、Provider 适配、生成控制、
上下文构建、滚动摘要与会话持久化等能力。
"""

from chat_core.engine.chat_engine import ChatEngine

__all__ = ["ChatEngine"]
