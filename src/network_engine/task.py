"""
任务描述模块

任务描述（TaskDescriptor）声明一个请求的请求体与参数编码策略。
每种策略对应一个不可变的数据类，请求构建器按类型逐一处理

使用示例:
    >>> Parameters({"page": 1}, encoding=ENCODING_URL_QUERY)
    >>> JSONEncodable({"name": "alice"})
    >>> UploadMultipart((MultipartFormPart("avatar", file_path="/tmp/a.png", mime_type="image/png"),))
    >>> DownloadDestination(DownloadDestinationSpec(directory="/tmp/reports", remove_previous_file=True))
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from network_engine.constants import (
    DATE_STRATEGY_ISO8601,
    DATE_STRATEGY_TIMESTAMP,
    ENCODING_DEFAULT,
    ENCODING_URL_QUERY,
    KEY_STRATEGIES,
    KEY_STRATEGY_DEFAULT,
    PARAMETER_ENCODINGS,
)
from network_engine.exceptions import APIClientValidationError


def _freeze(mapping: Mapping | None) -> Mapping:
    """复制映射并包装为只读视图"""
    return MappingProxyType(dict(mapping or {}))


def _check_encoding(encoding: str) -> None:
    if encoding not in PARAMETER_ENCODINGS:
        raise APIClientValidationError(f"Invalid parameter encoding: {encoding}. Must be one of: {PARAMETER_ENCODINGS}")


@dataclass(frozen=True)
class EncoderConfig:
    """
    JSON 编码配置

    参数:
        key_strategy: 键名转换策略（constants.KEY_STRATEGY_*）
        date_strategy: 日期编码策略，iso8601 或 timestamp
        sort_keys: 是否按键名排序输出
        ensure_ascii: 是否转义非 ASCII 字符
    """

    key_strategy: str = KEY_STRATEGY_DEFAULT
    date_strategy: str = DATE_STRATEGY_ISO8601
    sort_keys: bool = False
    ensure_ascii: bool = False

    def __post_init__(self):
        if self.key_strategy not in KEY_STRATEGIES:
            raise APIClientValidationError(f"Invalid key strategy: {self.key_strategy}")
        if self.date_strategy not in (DATE_STRATEGY_ISO8601, DATE_STRATEGY_TIMESTAMP):
            raise APIClientValidationError(f"Invalid date strategy: {self.date_strategy}")


@dataclass(frozen=True)
class MultipartFormPart:
    """
    multipart/form-data 中的一个部分

    data 与 file_path 必须且只能提供一个；文件在发送时才会被读取

    参数:
        name: 表单字段名
        data: 字节内容
        file_path: 文件路径
        filename: 上传的文件名（文件部分默认取路径中的文件名）
        mime_type: 内容类型
    """

    name: str
    data: bytes | None = None
    file_path: str | None = None
    filename: str | None = None
    mime_type: str | None = None

    def __post_init__(self):
        if (self.data is None) == (self.file_path is None):
            raise APIClientValidationError(f"Multipart part '{self.name}' needs exactly one of data or file_path")
        if self.file_path is not None:
            object.__setattr__(self, "file_path", os.fspath(self.file_path))

    @property
    def resolved_filename(self) -> str | None:
        if self.filename:
            return self.filename
        if self.file_path:
            return os.path.basename(self.file_path)
        return None


@dataclass(frozen=True)
class DownloadDestinationSpec:
    """
    下载目标描述

    参数:
        directory: 保存目录，None 表示系统临时目录
        filename: 文件名，None 表示取 URL 的最后一段路径
        remove_previous_file: 目标文件已存在时是否覆盖
        create_intermediate_directories: 是否自动创建缺失的目录
    """

    directory: str | None = None
    filename: str | None = None
    remove_previous_file: bool = False
    create_intermediate_directories: bool = True

    def __post_init__(self):
        if self.directory is not None:
            object.__setattr__(self, "directory", os.fspath(self.directory))


class TaskDescriptor:
    """任务描述基类，所有请求任务变体都继承自此类"""

    is_download: bool = False
    is_upload: bool = False


@dataclass(frozen=True)
class Plain(TaskDescriptor):
    """无请求体、无额外参数的请求"""


@dataclass(frozen=True)
class RawData(TaskDescriptor):
    """原样发送的字节请求体"""

    data: bytes


@dataclass(frozen=True)
class JSONEncodable(TaskDescriptor):
    """使用默认 JSON 编码配置序列化的请求体"""

    value: Any


@dataclass(frozen=True)
class CustomEncoded(TaskDescriptor):
    """使用调用方提供的 JSON 编码配置序列化的请求体"""

    value: Any
    encoder_config: EncoderConfig = field(default_factory=EncoderConfig)


@dataclass(frozen=True)
class ParameterEncodable(TaskDescriptor):
    """值先转换为键值映射，再渲染为 URL 查询字符串"""

    value: Any


@dataclass(frozen=True)
class Parameters(TaskDescriptor):
    """按编码方式放入查询字符串或请求体的参数映射"""

    parameters: Mapping[str, Any]
    encoding: str = ENCODING_DEFAULT

    def __post_init__(self):
        _check_encoding(self.encoding)
        object.__setattr__(self, "parameters", _freeze(self.parameters))


@dataclass(frozen=True)
class CompositeData(TaskDescriptor):
    """字节请求体 + URL 查询参数"""

    data: bytes
    url_parameters: Mapping[str, Any]

    def __post_init__(self):
        object.__setattr__(self, "url_parameters", _freeze(self.url_parameters))


@dataclass(frozen=True)
class CompositeParameters(TaskDescriptor):
    """
    请求体参数 + URL 查询参数

    body_encoding 只允许 form 或 json，default 视为 form
    """

    body_parameters: Mapping[str, Any]
    url_parameters: Mapping[str, Any]
    body_encoding: str = ENCODING_DEFAULT

    def __post_init__(self):
        _check_encoding(self.body_encoding)
        if self.body_encoding == ENCODING_URL_QUERY:
            raise APIClientValidationError("CompositeParameters body_encoding cannot be the URL query encoding")
        object.__setattr__(self, "body_parameters", _freeze(self.body_parameters))
        object.__setattr__(self, "url_parameters", _freeze(self.url_parameters))


@dataclass(frozen=True)
class UploadFile(TaskDescriptor):
    """以文件内容作为流式请求体上传"""

    path: str
    is_upload = True

    def __post_init__(self):
        object.__setattr__(self, "path", os.fspath(self.path))


@dataclass(frozen=True)
class UploadMultipart(TaskDescriptor):
    """multipart/form-data 上传"""

    parts: tuple[MultipartFormPart, ...]
    is_upload = True

    def __post_init__(self):
        object.__setattr__(self, "parts", tuple(self.parts))


@dataclass(frozen=True)
class UploadCompositeMultipart(TaskDescriptor):
    """multipart/form-data 上传 + URL 查询参数"""

    parts: tuple[MultipartFormPart, ...]
    url_parameters: Mapping[str, Any]
    is_upload = True

    def __post_init__(self):
        object.__setattr__(self, "parts", tuple(self.parts))
        object.__setattr__(self, "url_parameters", _freeze(self.url_parameters))


@dataclass(frozen=True)
class DownloadDestination(TaskDescriptor):
    """将响应体写入目标位置"""

    destination: DownloadDestinationSpec = field(default_factory=DownloadDestinationSpec)
    is_download = True


@dataclass(frozen=True)
class DownloadParameters(TaskDescriptor):
    """携带参数的下载请求"""

    parameters: Mapping[str, Any]
    encoding: str = ENCODING_DEFAULT
    destination: DownloadDestinationSpec = field(default_factory=DownloadDestinationSpec)
    is_download = True

    def __post_init__(self):
        _check_encoding(self.encoding)
        object.__setattr__(self, "parameters", _freeze(self.parameters))
