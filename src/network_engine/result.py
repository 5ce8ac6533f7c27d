"""
请求结果模块

Result 是请求管道交付给调用方的唯一结果类型：成功时携带解码后的值，
失败时携带已分类的 APIClientError
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from network_engine.exceptions import APIClientError

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    类型化的请求结果

    使用示例:
        >>> result = dispatcher.request(fetch_users(page=1))
        >>> if result.is_success:
        ...     users = result.value
        ... elif result.error_kind == ERROR_KIND_NO_CONNECTIVITY:
        ...     show_offline_banner()
    """

    value: T | None = None
    error: APIClientError | None = None

    @classmethod
    def success(cls, value: T) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: APIClientError) -> Result[Any]:
        if not isinstance(error, APIClientError):
            raise TypeError(f"failure() expects an APIClientError, got {type(error).__name__}")
        return cls(error=error)

    @property
    def is_success(self) -> bool:
        return self.error is None

    @property
    def is_failure(self) -> bool:
        return self.error is not None

    @property
    def error_kind(self) -> str | None:
        return self.error.kind if self.error is not None else None

    def unwrap(self) -> T:
        """成功时返回值，失败时抛出携带的异常"""
        if self.error is not None:
            raise self.error
        return self.value
