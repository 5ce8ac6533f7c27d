"""工具函数模块

提供敏感信息脱敏、键名转换、查询参数展开等实用功能
"""

from __future__ import annotations

import re
import time
import uuid
from collections.abc import Mapping
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse


# 默认敏感请求头名称集合
DEFAULT_SENSITIVE_HEADERS = {
    "Authorization",
    "Cookie",
    "X-API-Key",
    "X-Auth-Token",
    "X-Access-Token",
    "API-Key",
    "Auth-Token",
    "Session-ID",
}

# 默认敏感URL参数名称集合
DEFAULT_SENSITIVE_PARAMS = {
    "token",
    "password",
    "secret",
    "key",
    "api_key",
    "apikey",
    "access_token",
    "auth_token",
    "session",
    "pwd",
}

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def generate_request_id(suffix=None) -> str:
    """生成全局唯一的请求 ID"""
    timestamp = int(time.time() * 1000)  # 毫秒级时间戳
    short_uuid = uuid.uuid4().hex[:8]
    if suffix is None:
        return f"REQ-{timestamp}-{short_uuid}"
    return f"REQ-{timestamp}-{short_uuid}-{suffix}"


def sanitize_headers(
    headers: Mapping[str, str],
    sensitive_keys: set[str] | None = None,
    mask: str = "***",
) -> dict[str, str]:
    """
    脱敏请求头中的敏感信息

    参数:
        headers: 原始请求头字典
        sensitive_keys: 敏感键名集合，不区分大小写。None 时使用默认集合
        mask: 脱敏后的替换字符串

    返回:
        脱敏后的请求头字典（新字典，不修改原字典）

    示例:
        >>> headers = {"Authorization": "Bearer token123", "Content-Type": "application/json"}
        >>> sanitize_headers(headers)
        {"Authorization": "***", "Content-Type": "application/json"}
    """
    if sensitive_keys is None:
        sensitive_keys = DEFAULT_SENSITIVE_HEADERS

    # 创建不区分大小写的查找集合
    sensitive_keys_lower = {k.lower() for k in sensitive_keys}

    return {k: mask if k.lower() in sensitive_keys_lower else v for k, v in headers.items()}


def sanitize_url(
    url: str,
    sensitive_params: set[str] | None = None,
    mask: str = "***",
) -> str:
    """
    脱敏 URL 中的敏感参数

    参数:
        url: 原始 URL
        sensitive_params: 敏感参数名集合，不区分大小写。None 时使用默认集合
        mask: 脱敏后的替换字符串

    返回:
        脱敏后的 URL

    示例:
        >>> sanitize_url("https://api.example.com/user?token=abc123&page=1")
        "https://api.example.com/user?token=***&page=1"
    """
    if sensitive_params is None:
        sensitive_params = DEFAULT_SENSITIVE_PARAMS

    sensitive_params_lower = {p.lower() for p in sensitive_params}

    parsed = urlparse(url)
    if not parsed.query:
        return url

    params = parse_qs(parsed.query, keep_blank_values=True)

    sanitized_params = {}
    for key, values in params.items():
        if key.lower() in sensitive_params_lower:
            # 保持参数结构，但值替换为 mask
            sanitized_params[key] = [mask] * len(values)
        else:
            sanitized_params[key] = values

    sanitized_query = urlencode(sanitized_params, doseq=True)
    return urlunparse(parsed._replace(query=sanitized_query))


def to_snake_case(name: str) -> str:
    """camelCase / PascalCase 转 snake_case，例如 "userId" -> "user_id" """
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def to_camel_case(name: str) -> str:
    """snake_case 转 camelCase，保留前导下划线，例如 "user_id" -> "userId" """
    stripped = name.lstrip("_")
    prefix = name[: len(name) - len(stripped)]
    head, *rest = stripped.split("_")
    return prefix + head + "".join(part[:1].upper() + part[1:] for part in rest if part)


def convert_keys(value: Any, converter) -> Any:
    """递归转换映射中所有键名，列表中的元素同样处理"""
    if isinstance(value, Mapping):
        return {converter(k) if isinstance(k, str) else k: convert_keys(v, converter) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [convert_keys(item, converter) for item in value]
    return value


def flatten_parameters(parameters: Mapping[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """
    将参数映射展开为有序的 (键, 值) 列表

    规则:
        - 键按字典序排列，保证相同输入得到相同输出
        - 嵌套映射使用 key[sub] 形式
        - 列表和元组重复同一个键
        - 布尔值渲染为 true / false，None 被跳过

    示例:
        >>> flatten_parameters({"page": 1, "filter": {"state": "open"}, "ids": [1, 2]})
        [("filter[state]", "open"), ("ids", "1"), ("ids", "2"), ("page", "1")]
    """
    pairs: list[tuple[str, str]] = []
    for key in sorted(parameters, key=str):
        value = parameters[key]
        name = f"{prefix}[{key}]" if prefix else str(key)
        pairs.extend(_flatten_value(name, value))
    return pairs


def _flatten_value(name: str, value: Any) -> list[tuple[str, str]]:
    if value is None:
        return []
    if isinstance(value, Mapping):
        return flatten_parameters(value, prefix=name)
    if isinstance(value, (list, tuple)):
        pairs = []
        for item in value:
            pairs.extend(_flatten_value(name, item))
        return pairs
    if isinstance(value, bool):
        return [(name, "true" if value else "false")]
    return [(name, str(value))]


def merge_query(url: str, pairs: list[tuple[str, str]]) -> str:
    """将查询参数追加到 URL 已有的查询字符串之后"""
    if not pairs:
        return url
    parsed = urlparse(url)
    query = urlencode(pairs)
    if parsed.query:
        query = f"{parsed.query}&{query}"
    return urlunparse(parsed._replace(query=query))
