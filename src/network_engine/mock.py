"""
模拟调度器模块

MockDispatcher 与 Dispatcher 遵循相同的对外契约，但不进行任何网络 I/O:
在可配置的延迟之后，返回按目标名称查找到的固定响应，或返回注入的错误。
错误注入是实例级别的状态，不同测试之间互不影响

使用示例:
    >>> dispatcher = MockDispatcher(fixtures_dir="tests/fixtures", delay=0)
    >>> result = dispatcher.request(fetch_users(page=1))
    >>> dispatcher.set_error(APIClientNoConnectivityError())
    >>> dispatcher.request(fetch_users(page=1)).error_kind
    'no_connectivity'
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Mapping
from typing import Any

from network_engine.builder import WireRequest
from network_engine.constants import DEFAULT_MOCK_DELAY, MOCK_FIXTURE_SUFFIX
from network_engine.dispatcher import BaseDispatcher
from network_engine.exceptions import APIClientError, APIClientGenericError, APIClientValidationError
from network_engine.handle import RequestHandle
from network_engine.result import Result
from network_engine.target import TargetDefinition
from network_engine.transport import TransportResponse

logger = logging.getLogger(__name__)


class MockDispatcher(BaseDispatcher):
    """
    模拟调度器

    固定响应的查找顺序:
        1. fixtures 字典中以 target.name 为键的值（bytes、str 或可 JSON 编码的对象）
        2. fixtures_dir 目录下的 "<target.name>.json" 文件
        3. target.sample_data

    参数:
        fixtures: 目标名称到固定响应的映射
        fixtures_dir: 固定响应文件所在目录
        delay: 交付结果前的延迟（秒）
        error: 初始注入的错误，设置后所有请求都以该错误失败
        **kwargs: 传递给 BaseDispatcher 的参数
    """

    default_delay: float = DEFAULT_MOCK_DELAY
    fixture_suffix: str = MOCK_FIXTURE_SUFFIX

    def __init__(
        self,
        fixtures: Mapping[str, Any] | None = None,
        fixtures_dir: str | None = None,
        delay: float | None = None,
        error: APIClientError | None = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.fixtures: dict[str, Any] = dict(fixtures or {})
        self.fixtures_dir = fixtures_dir
        self.delay = delay if delay is not None else self.default_delay
        if self.delay < 0:
            raise APIClientValidationError("delay must be non-negative")
        self._error: APIClientError | None = None
        self._error_lock = threading.Lock()
        if error is not None:
            self.set_error(error)

    @property
    def error(self) -> APIClientError | None:
        with self._error_lock:
            return self._error

    def set_error(self, error: APIClientError) -> None:
        """注入错误，之后发起的请求都以该错误失败"""
        if not isinstance(error, APIClientError):
            raise APIClientValidationError(f"error must be an APIClientError, got {type(error).__name__}")
        with self._error_lock:
            self._error = error
        logger.info(f"Mock error override set: {type(error).__name__}")

    def clear_error(self) -> None:
        """清除注入的错误，恢复返回固定响应"""
        with self._error_lock:
            self._error = None
        logger.info("Mock error override cleared")

    def add_fixture(self, name: str, data: Any) -> None:
        """注册或替换一个固定响应"""
        self.fixtures[name] = data

    def _start(self, handle: RequestHandle, wire_request: WireRequest, target: TargetDefinition) -> None:
        # 错误注入在调度时读取，之后的 set_error/clear_error 不影响已调度的请求
        error = self.error
        request = self.before_request(handle.id, wire_request)
        logger.info(f"[{handle.id}] Mock {request.method} request to {self._safe_url(request.url)} ({target.name})")
        handle.schedule(self.delay, lambda: self._resolve(handle, target, error))

    def _resolve(self, handle: RequestHandle, target: TargetDefinition, error: APIClientError | None) -> None:
        if handle.is_cancelled:
            return
        if error is not None:
            self.on_request_error(handle.id, error)
            self._deliver(handle, Result.failure(error))
            return

        try:
            body = self.load_fixture(target)
        except (OSError, APIClientError) as e:
            logger.error(f"[{handle.id}] Failed to load fixture for {target.name}: {e}")
            self._deliver(handle, Result.failure(APIClientGenericError("Fixture Unavailable", str(e))))
            return

        if body is None:
            error = APIClientGenericError("Fixture Not Found", f"No fixture registered for {target.name}")
            self.on_request_error(handle.id, error)
            self._deliver(handle, Result.failure(error))
            return

        try:
            response = self.after_request(handle.id, TransportResponse(status_code=200, body=body, url=target.url))
            result = self._decode_result(handle.id, target, response)
        except Exception as e:
            logger.exception(f"[{handle.id}] Unexpected error while resolving mock response")
            result = Result.failure(APIClientGenericError("Something went wrong", str(e)))
        self._deliver(handle, result)

    def load_fixture(self, target: TargetDefinition) -> bytes | None:
        """
        按目标名称查找固定响应并转换为响应体字节

        返回:
            响应体字节，找不到时返回 None
        """
        if target.name in self.fixtures:
            data = self.fixtures[target.name]
            if isinstance(data, bytes):
                return data
            if isinstance(data, str):
                return data.encode(self.codec.encoding)
            return self.codec.encode(data)

        if self.fixtures_dir:
            path = os.path.join(self.fixtures_dir, f"{target.name}{self.fixture_suffix}")
            if os.path.isfile(path):
                logger.debug(f"Loading fixture file: {path}")
                with open(path, "rb") as f:
                    return f.read()

        return target.sample_data
