"""流式增量节流。

逐 token 刷新 UI 代价太高，这里把原始增量合并成有限频率的“内容快照”：

- 距上次推送已超过 min_interval：立即推送当前完整内容。
- 否则：若还没有挂起的尾随定时器，安排一次 debounce 之后的推送，
  期间到达的增量都会合并进这一次。任何即时推送都会取消挂起的定时器。
- 流结束（成功或取消）时无条件推送一次最终内容；
  唯一例外是取消发生在任何内容产生之前，此时不推送。

推送的内容只会变长，最终一次等于全部增量的拼接。
"""

import asyncio
from typing import Callable, Optional

from chat_core.config.settings import settings


EmitCallback = Callable[[str, bool], None]


class StreamCoalescer:
    def __init__(
        self,
        emit: EmitCallback,
        min_interval: Optional[float] = None,
        debounce: Optional[float] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self._emit_cb = emit
        self._min_interval = settings.coalesce_min_interval if min_interval is None else min_interval
        self._debounce = settings.coalesce_debounce if debounce is None else debounce
        self._loop = loop or asyncio.get_running_loop()
        self._content = ""
        self._emitted_len = -1
        self._last_emit: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._closed = False
        self.emissions = 0

    @property
    def content(self) -> str:
        return self._content

    @property
    def has_pending_timer(self) -> bool:
        return self._timer is not None

    def push(self, delta: str) -> None:
        if self._closed:
            raise RuntimeError("coalescer already finished")
        if not delta:
            return
        self._content += delta
        now = self._loop.time()
        if self._last_emit is None or now - self._last_emit >= self._min_interval:
            self._emit(final=False)
        elif self._timer is None:
            self._timer = self._loop.call_later(self._debounce, self._on_timer)

    def finish(self, cancelled: bool = False) -> Optional[str]:
        """结束节流并做最终推送，返回最终内容；取消且无内容时返回 None。"""

        self._cancel_timer()
        self._closed = True
        if cancelled and not self._content:
            return None
        self._emit(final=True)
        return self._content

    def close(self) -> None:
        """丢弃挂起的推送，不再发任何事件。"""

        self._cancel_timer()
        self._closed = True

    def _on_timer(self) -> None:
        self._timer = None
        if not self._closed:
            self._emit(final=False)

    def _emit(self, final: bool) -> None:
        self._cancel_timer()
        if not final and len(self._content) == self._emitted_len:
            return
        self._emitted_len = len(self._content)
        self._last_emit = self._loop.time()
        self.emissions += 1
        self._emit_cb(self._content, final)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
