"""会话引擎：生成控制、增量合并、上下文构建、滚动摘要与持久化同步。"""

from chat_core.engine.chat_engine import ChatEngine
from chat_core.engine.generation import GenerationController, GenerationHandle, GenerationState

__all__ = ["ChatEngine", "GenerationController", "GenerationHandle", "GenerationState"]
