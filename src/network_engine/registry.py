"""
取消注册表模块

追踪所有未结束的请求句柄，支持按组原子地取消一批请求
"""

from __future__ import annotations

import logging
import threading
import weakref
from collections.abc import Iterable

from network_engine.handle import RequestHandle

logger = logging.getLogger(__name__)


class CancellationRegistry:
    """
    请求句柄注册表

    只持有句柄的弱引用，句柄的生命周期由创建它的调用方决定。
    所有操作都在同一把锁内完成，可从多个线程并发调用
    """

    def __init__(self):
        self._handles: weakref.WeakValueDictionary[str, RequestHandle] = weakref.WeakValueDictionary()
        self._lock = threading.RLock()

    def register(self, handle: RequestHandle) -> None:
        with self._lock:
            self._handles[handle.id] = handle
        logger.debug(f"[{handle.id}] Registered request handle")

    def remove(self, handle: RequestHandle) -> bool:
        """
        移除句柄

        返回:
            句柄是否在注册表中
        """
        with self._lock:
            removed = self._handles.pop(handle.id, None) is not None
        if removed:
            logger.debug(f"[{handle.id}] Removed request handle")
        return removed

    def get(self, request_id: str) -> RequestHandle | None:
        with self._lock:
            return self._handles.get(request_id)

    def handles(self) -> list[RequestHandle]:
        """当前已注册句柄的快照"""
        with self._lock:
            return list(self._handles.values())

    def cancel_all(self, handles: Iterable[RequestHandle] | None = None) -> int:
        """
        取消一组句柄，None 表示取消所有已注册的句柄

        每个句柄最多被取消一次，已完成的句柄被忽略

        返回:
            实际被取消的句柄数量
        """
        targets = self.handles() if handles is None else list(handles)
        seen: set[str] = set()
        cancelled = 0
        for handle in targets:
            if handle.id in seen:
                continue
            seen.add(handle.id)
            if handle.cancel():
                cancelled += 1
        if cancelled:
            logger.info(f"Cancelled {cancelled} request(s)")
        return cancelled

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def __contains__(self, handle: RequestHandle) -> bool:
        with self._lock:
            return handle.id in self._handles


class RequestGroup:
    """
    与某个生命周期（例如一个页面）绑定的一组请求

    生命周期结束时调用 cancel_all()，或作为上下文管理器在退出时自动取消

    使用示例:
        >>> with RequestGroup() as group:
        ...     group.add(dispatcher.execute(fetch_users(page=1)))
        ...     group.add(dispatcher.execute(fetch_profile()))
    """

    def __init__(self):
        self._handles: list[RequestHandle] = []
        self._lock = threading.Lock()

    def add(self, handle: RequestHandle) -> RequestHandle:
        with self._lock:
            # 顺便清理已结束的句柄
            self._handles = [h for h in self._handles if not h.is_done]
            self._handles.append(handle)
        return handle

    def cancel_all(self) -> int:
        with self._lock:
            handles, self._handles = self._handles, []
        return sum(1 for handle in handles if handle.cancel())

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for h in self._handles if not h.is_done)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.cancel_all()
