"""
目标定义模块

TargetDefinition 将任务描述与路由信息（基础 URL、路径、方法、请求头、
响应解码策略）绑定在一起，是调用方描述一个接口调用的唯一入口

使用示例:
    >>> def fetch_users(page: int) -> TargetDefinition:
    ...     return TargetDefinition(
    ...         base_url="https://api.example.com",
    ...         path="/users",
    ...         task=Parameters({"page": page}, encoding=ENCODING_URL_QUERY),
    ...         name="fetch_users",
    ...         response_type=list[User],
    ...     )
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from network_engine.constants import (
    DEFAULT_SUCCESS_CODES,
    HTTP_METHOD_GET,
    HTTP_METHODS,
    KEY_STRATEGIES,
    KEY_STRATEGY_DEFAULT,
)
from network_engine.exceptions import APIClientValidationError
from network_engine.task import Plain, TaskDescriptor


@dataclass(frozen=True)
class TargetDefinition:
    """
    一个接口调用的声明式描述

    属性:
        base_url: API 基础 URL
        path: 端点路径
        method: HTTP 方法
        headers: 请求头（只读副本）
        task: 任务描述
        key_decoding_strategy: 响应键名转换策略
        name: 目标名称，模拟调度器据此查找固定响应
        response_type: 期望的响应类型，None 表示返回解析后的 JSON
        sample_data: 模拟调度器在没有固定响应时使用的示例数据
        validate_status: 视为成功的状态码集合，None 表示不校验
        timeout: 单个请求超时时间（秒），None 使用调度器默认值
    """

    base_url: str
    path: str = ""
    method: str = HTTP_METHOD_GET
    headers: Mapping[str, str] = field(default_factory=dict)
    task: TaskDescriptor = field(default_factory=Plain)
    key_decoding_strategy: str = KEY_STRATEGY_DEFAULT
    name: str = ""
    response_type: Any = None
    sample_data: bytes | None = None
    validate_status: Iterable[int] | None = DEFAULT_SUCCESS_CODES
    timeout: float | None = None

    def __post_init__(self):
        if not self.base_url:
            raise APIClientValidationError("base_url must be provided.")
        method = self.method.upper()
        if method not in HTTP_METHODS:
            raise APIClientValidationError(f"Invalid HTTP method: {self.method}")
        if not isinstance(self.task, TaskDescriptor):
            raise APIClientValidationError(f"task must be a TaskDescriptor, got {type(self.task).__name__}")
        if self.key_decoding_strategy not in KEY_STRATEGIES:
            raise APIClientValidationError(f"Invalid key decoding strategy: {self.key_decoding_strategy}")

        object.__setattr__(self, "method", method)
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers or {})))
        if self.validate_status is not None:
            object.__setattr__(self, "validate_status", frozenset(self.validate_status))
        if not self.name:
            object.__setattr__(self, "name", f"{method} {self.path or '/'}")

    @property
    def url(self) -> str:
        """基础 URL 与路径拼接后的完整地址"""
        base_url = self.base_url.rstrip("/")
        return f"{base_url}/{self.path.lstrip('/')}" if self.path else base_url

    def with_headers(self, headers: Mapping[str, str]) -> TargetDefinition:
        """返回合并了额外请求头的新目标定义"""
        return dataclasses.replace(self, headers={**self.headers, **headers})

    def with_task(self, task: TaskDescriptor) -> TargetDefinition:
        """返回替换了任务描述的新目标定义"""
        return dataclasses.replace(self, task=task)
