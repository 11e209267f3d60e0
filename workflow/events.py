"""编排器与传输层之间的事件通道。

编排器任务写入，传输层（SSE 或测试）异步迭代读取；队列无界，写入从不阻塞。
close() 之后迭代在取完剩余事件后结束。
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

from models.events import WorkflowEvent

_CLOSED = object()


class EventChannel:
    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: WorkflowEvent) -> None:
        if self._closed:
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[WorkflowEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[WorkflowEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item
