"""
请求句柄模块

RequestHandle 代表一个进行中或已完成的异步请求，由创建它的调用方独占。
同一个句柄同时支持回调和 await 两种取结果方式，底层是同一个 Future
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future

from network_engine.result import Result
from network_engine.utils import generate_request_id

logger = logging.getLogger(__name__)


class RequestHandle:
    """
    可取消的请求句柄

    参数:
        request_id: 请求唯一标识符，None 时自动生成
        on_finish: 句柄结束（完成或取消）时调用一次的回调，参数为句柄本身

    使用示例:
        >>> handle = dispatcher.execute(target, callback=lambda result: print(result.value))
        >>> handle.cancel()          # 取消后回调不会再收到任何结果
        >>> result = handle.result() # 阻塞等待（已取消时抛出 CancelledError）
        >>> result = await handle    # 在协程中等待
    """

    def __init__(self, request_id: str | None = None, on_finish: Callable[[RequestHandle], None] | None = None):
        self.id = request_id or generate_request_id()
        # 传输层通过该事件感知取消并中止读取
        self.cancel_event = threading.Event()
        self._future: Future = Future()
        self._lock = threading.RLock()
        self._cancelled = False
        self._done = False
        self._timer: threading.Timer | None = None
        self._on_finish = on_finish

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "done" if self._done else "pending"
        return f"<RequestHandle {self.id} {state}>"

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def is_done(self) -> bool:
        """已完成或已取消"""
        return self._done or self._cancelled

    def cancel(self) -> bool:
        """
        取消请求

        已完成或已取消时为空操作。取消会阻止结果交付、通知传输层中止、
        并停止尚未触发的重试定时器

        返回:
            本次调用是否真正执行了取消
        """
        with self._lock:
            if self._done or self._cancelled:
                return False
            self._cancelled = True
            self.cancel_event.set()
            timer, self._timer = self._timer, None

        if timer is not None:
            timer.cancel()
        logger.info(f"[{self.id}] Request cancelled")
        self._finish()
        self._future.cancel()
        return True

    def complete(self, result: Result) -> bool:
        """
        交付最终结果，只有第一次调用生效

        返回:
            结果是否被交付（已取消或已完成时返回 False）
        """
        with self._lock:
            if self._done or self._cancelled:
                return False
            self._done = True
            self._timer = None

        self._finish()
        self._future.set_result(result)
        return True

    def schedule(self, delay: float, function: Callable[[], None]) -> bool:
        """
        延迟执行函数（用于重试），不阻塞当前线程

        返回:
            是否成功安排（句柄已结束时返回 False）
        """
        timer = threading.Timer(delay, function)
        timer.daemon = True
        with self._lock:
            if self._done or self._cancelled:
                return False
            self._timer = timer
        timer.start()
        return True

    def add_done_callback(self, callback: Callable[[Result], None]) -> None:
        """注册结果回调；请求被取消时回调永远不会被调用"""

        def _deliver(future: Future) -> None:
            if future.cancelled():
                return
            callback(future.result())

        self._future.add_done_callback(_deliver)

    def result(self, timeout: float | None = None) -> Result:
        """
        阻塞等待结果

        异常:
            concurrent.futures.CancelledError: 请求已被取消
            concurrent.futures.TimeoutError: 等待超时
        """
        return self._future.result(timeout)

    def __await__(self):
        return asyncio.wrap_future(self._future).__await__()

    def _finish(self) -> None:
        if self._on_finish is None:
            return
        on_finish, self._on_finish = self._on_finish, None
        try:
            on_finish(self)
        except Exception:
            logger.exception(f"[{self.id}] on_finish callback failed")
