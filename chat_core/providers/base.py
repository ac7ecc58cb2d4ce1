"""Provider 抽象接口。

引擎不直接依赖具体后端的 HTTP 协议，而是依赖此协议：

- 每种后端实现一个 ProviderAdapter（如 OllamaClient、GroqClient）。
- 负责：把 ChatTurn 列表转成具体 API 请求，并把各自的流式帧格式
  （逐行 JSON、SSE data 行等）归一化为纯文本增量。

这样可以在不改引擎代码的前提下接入更多后端。
"""

from typing import AsyncIterator, List, Protocol, Sequence

from chat_core.domain.models import ChatTurn, ModelDescriptor


class ProviderAdapter(Protocol):
    """流式 LLM 后端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志及会话绑定。
    - check_availability(): 后端是否可用，不抛异常。
    - list_models(): 可用模型列表。
    - stream_completion(model, turns): 异步迭代文本增量。每次调用都是一次新请求，
      不可重启；调用方通过 aclose() 提前结束迭代即视为取消，并释放连接。
    """

    name: str

    async def check_availability(self) -> bool:
        ...

    async def list_models(self) -> List[ModelDescriptor]:
        ...

    def stream_completion(self, model: str, turns: Sequence[ChatTurn]) -> AsyncIterator[str]:
        ...
