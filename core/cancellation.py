"""协作式取消令牌。

工作流在阶段入口、每次模型调用前以及节流等待期间检查令牌；
进行中的 HTTP 请求通过 ``run`` 与令牌竞速，取消时直接 cancel 底层任务，
从而真正中断网络请求，而不仅仅是停止等待。
"""

from __future__ import annotations

import asyncio
import threading
from typing import Awaitable, Callable, TypeVar

from core.errors import Cancelled

T = TypeVar("T")


class CancellationToken:
    """线程安全的取消令牌，可在任意线程调用 ``cancel``。

    Examples:
        >>> token = CancellationToken()
        >>> token.is_cancelled()
        False
        >>> token.cancel("客户端断开")
        >>> token.reason
        '客户端断开'
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._reason = ""
        self._callbacks: list[Callable[[], None]] = []

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "已取消") -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            self._reason = reason
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            callback()

    def is_cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise Cancelled(self._reason)

    def cancel_after(self, seconds: float, reason: str = "运行超时") -> asyncio.TimerHandle:
        """在当前事件循环上注册超时取消。"""
        loop = asyncio.get_running_loop()
        return loop.call_later(seconds, self.cancel, reason)

    def _add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()

    def _remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    async def wait(self) -> None:
        """挂起直到令牌被取消。"""
        if self._cancelled:
            return
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[None] = loop.create_future()

        def _set() -> None:
            if not fut.done():
                fut.set_result(None)

        def _wake() -> None:
            loop.call_soon_threadsafe(_set)

        self._add_callback(_wake)
        try:
            await fut
        finally:
            self._remove_callback(_wake)

    async def sleep(self, seconds: float) -> None:
        """可被取消打断的等待；取消时抛出 Cancelled。"""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        waiter = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait({waiter}, timeout=seconds)
        finally:
            waiter.cancel()
        self.raise_if_cancelled()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """让 awaitable 与取消信号竞速，取消时中断 awaitable 并抛出 Cancelled。"""
        if self._cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise Cancelled(self._reason)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            waiter.cancel()
            raise

        if task.done():
            waiter.cancel()
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise Cancelled(self._reason)
