"""请求构建模块

将 TargetDefinition 渲染为可直接发送的 WireRequest。
构建过程是纯函数：不读取文件、不访问网络，所有 I/O 推迟到调度器和传输层
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any
from urllib.parse import urlencode

from network_engine.codec import JSONCodec
from network_engine.constants import (
    CONTENT_TYPE_FORM,
    CONTENT_TYPE_JSON,
    CONTENT_TYPE_MULTIPART,
    CONTENT_TYPE_OCTET_STREAM,
    ENCODING_DEFAULT,
    ENCODING_FORM,
    ENCODING_JSON,
    ENCODING_URL_QUERY,
    QUERY_STRING_METHODS,
)
from network_engine.exceptions import APIClientEncodingError
from network_engine.target import TargetDefinition
from network_engine.task import (
    CompositeData,
    CompositeParameters,
    CustomEncoded,
    DownloadDestination,
    DownloadDestinationSpec,
    DownloadParameters,
    JSONEncodable,
    MultipartFormPart,
    ParameterEncodable,
    Parameters,
    Plain,
    RawData,
    UploadCompositeMultipart,
    UploadFile,
    UploadMultipart,
)
from network_engine.utils import flatten_parameters, merge_query

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WireRequest:
    """
    已完全解析、可直接发送的请求

    属性:
        method: HTTP 方法
        url: 完整 URL（已包含查询字符串）
        headers: 请求头（只读）
        body: 请求体字节，None 表示无请求体
        upload_file: 以流式方式上传的文件路径
        multipart: multipart/form-data 的各个部分
        boundary: multipart 分隔符
        is_download: 是否为下载请求
        destination: 下载目标描述
        timeout: 超时时间（秒）
    """

    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes | None = None
    upload_file: str | None = None
    multipart: tuple[MultipartFormPart, ...] = ()
    boundary: str | None = None
    is_download: bool = False
    destination: DownloadDestinationSpec | None = None
    timeout: float | None = None

    def __post_init__(self):
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))

    def header(self, name: str, default: str | None = None) -> str | None:
        """不区分大小写地读取请求头"""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    def with_header(self, name: str, value: str) -> WireRequest:
        """返回设置了指定请求头的新请求，同名（不区分大小写）的旧值被替换"""
        return self.with_headers({name: value})

    def with_headers(self, headers: Mapping[str, str]) -> WireRequest:
        lowered = {name.lower() for name in headers}
        merged = {k: v for k, v in self.headers.items() if k.lower() not in lowered}
        merged.update(headers)
        return replace(self, headers=merged)


class RequestBuilder:
    """
    请求构建器

    按任务描述的类型选择编码方式，生成 WireRequest

    参数:
        codec: 请求体编解码器，默认 JSONCodec
    """

    def __init__(self, codec: JSONCodec | None = None):
        self.codec = codec or JSONCodec()

    def build(self, target: TargetDefinition) -> WireRequest:
        """
        将目标定义渲染为 WireRequest

        参数:
            target: 目标定义

        返回:
            WireRequest 实例

        异常:
            APIClientEncodingError: 请求体编码失败
            APIClientParameterConversionError: ParameterEncodable 无法转换为参数字典
        """
        task = target.task
        method = target.method
        url = target.url
        headers = dict(target.headers)
        body: bytes | None = None
        extra: dict[str, Any] = {}

        if isinstance(task, Plain):
            pass

        elif isinstance(task, RawData):
            body = bytes(task.data)

        elif isinstance(task, JSONEncodable):
            body = self.codec.encode(task.value)
            self._set_default_header(headers, "Content-Type", CONTENT_TYPE_JSON)

        elif isinstance(task, CustomEncoded):
            body = self.codec.encode(task.value, task.encoder_config)
            self._set_default_header(headers, "Content-Type", CONTENT_TYPE_JSON)

        elif isinstance(task, ParameterEncodable):
            url = merge_query(url, flatten_parameters(self.codec.to_mapping(task.value)))

        elif isinstance(task, Parameters):
            url, body = self._encode_parameters(url, method, headers, task.parameters, task.encoding)

        elif isinstance(task, CompositeData):
            body = bytes(task.data)
            url = merge_query(url, flatten_parameters(task.url_parameters))

        elif isinstance(task, CompositeParameters):
            body_encoding = ENCODING_FORM if task.body_encoding == ENCODING_DEFAULT else task.body_encoding
            url, body = self._encode_parameters(url, method, headers, task.body_parameters, body_encoding)
            url = merge_query(url, flatten_parameters(task.url_parameters))

        elif isinstance(task, UploadFile):
            extra["upload_file"] = task.path
            self._set_default_header(headers, "Content-Type", CONTENT_TYPE_OCTET_STREAM)

        elif isinstance(task, (UploadMultipart, UploadCompositeMultipart)):
            boundary = self.multipart_boundary(task.parts)
            extra["multipart"] = task.parts
            extra["boundary"] = boundary
            self._set_default_header(headers, "Content-Type", f"{CONTENT_TYPE_MULTIPART}; boundary={boundary}")
            if isinstance(task, UploadCompositeMultipart):
                url = merge_query(url, flatten_parameters(task.url_parameters))

        elif isinstance(task, DownloadDestination):
            extra["is_download"] = True
            extra["destination"] = task.destination

        elif isinstance(task, DownloadParameters):
            url, body = self._encode_parameters(url, method, headers, task.parameters, task.encoding)
            extra["is_download"] = True
            extra["destination"] = task.destination

        else:
            raise APIClientEncodingError(f"Unsupported task descriptor: {type(task).__name__}")

        logger.debug(f"Built {method} request for {target.name} ({type(task).__name__})")
        return WireRequest(method=method, url=url, headers=headers, body=body, timeout=target.timeout, **extra)

    def _encode_parameters(
        self,
        url: str,
        method: str,
        headers: dict[str, str],
        parameters: Mapping[str, Any],
        encoding: str,
    ) -> tuple[str, bytes | None]:
        """
        按编码方式渲染参数

        返回:
            (可能追加了查询字符串的 URL, 请求体字节或 None)
        """
        if encoding == ENCODING_DEFAULT:
            encoding = ENCODING_URL_QUERY if method in QUERY_STRING_METHODS else ENCODING_FORM

        if encoding == ENCODING_URL_QUERY:
            return merge_query(url, flatten_parameters(parameters)), None

        if encoding == ENCODING_JSON:
            self._set_default_header(headers, "Content-Type", CONTENT_TYPE_JSON)
            return url, self.codec.encode(parameters)

        self._set_default_header(headers, "Content-Type", CONTENT_TYPE_FORM)
        try:
            return url, urlencode(flatten_parameters(parameters)).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise APIClientEncodingError(f"Failed to form-encode parameters: {e}", cause=e) from e

    @staticmethod
    def _set_default_header(headers: dict[str, str], name: str, value: str) -> None:
        """仅在调用方未设置同名请求头（不区分大小写）时写入"""
        if not any(key.lower() == name.lower() for key in headers):
            headers[name] = value

    @staticmethod
    def multipart_boundary(parts: tuple[MultipartFormPart, ...]) -> str:
        """根据各部分的元数据生成确定的 multipart 分隔符"""
        digest = hashlib.sha1()
        for part in parts:
            digest.update(part.name.encode("utf-8"))
            digest.update((part.resolved_filename or "").encode("utf-8"))
            digest.update((part.mime_type or "").encode("utf-8"))
            if part.data is not None:
                digest.update(hashlib.sha1(part.data).digest())
            else:
                digest.update(part.file_path.encode("utf-8"))
        return f"network-engine.boundary.{digest.hexdigest()[:32]}"
