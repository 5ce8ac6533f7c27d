"""传输层模块

传输协作者负责真正的网络 I/O：发送 WireRequest、流式读取响应、
在取消时中止读取、按需报告网络可达性。默认实现基于 requests.Session
"""

from __future__ import annotations

import logging
import mimetypes
import os
import socket
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from contextlib import closing
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.fields import RequestField

from network_engine.builder import WireRequest
from network_engine.constants import (
    CONTENT_TYPE_OCTET_STREAM,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_POOL_CONFIG,
    DEFAULT_TIMEOUT,
    REACHABILITY_CACHE_TTL,
    REACHABILITY_PROBE_HOST,
    REACHABILITY_PROBE_PORT,
    REACHABILITY_TIMEOUT,
)
from network_engine.exceptions import (
    APIClientCancelledError,
    APIClientEncodingError,
    APIClientGenericError,
    APIClientNetworkError,
    APIClientTimeoutError,
)
from network_engine.persistence import BasePersistence, FileSystemPersistence
from network_engine.task import MultipartFormPart

logger = logging.getLogger(__name__)


@dataclass
class TransportResponse:
    """
    传输层返回的原始响应

    属性:
        status_code: HTTP 状态码
        headers: 响应头
        body: 响应体字节（下载请求为空）
        url: 最终 URL（跟随重定向后）
        reason: 状态描述
        file_path: 下载请求写入的文件路径
    """

    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    url: str = ""
    reason: str = ""
    file_path: str | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def header(self, name: str, default: str | None = None) -> str | None:
        """不区分大小写地读取响应头"""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default


def iter_multipart(
    parts: tuple[MultipartFormPart, ...], boundary: str, chunk_size: int = DEFAULT_CHUNK_SIZE
) -> Iterator[bytes]:
    """
    按 multipart/form-data 格式逐块生成请求体

    文件部分按块读取，不会一次性加载到内存
    """
    for part in parts:
        mime_type = part.mime_type
        if mime_type is None and part.file_path:
            mime_type = mimetypes.guess_type(part.file_path)[0] or CONTENT_TYPE_OCTET_STREAM

        request_field = RequestField(name=part.name, data=b"", filename=part.resolved_filename)
        request_field.make_multipart(content_type=mime_type)

        yield f"--{boundary}\r\n".encode("latin-1")
        yield request_field.render_headers().encode("latin-1")
        if part.data is not None:
            yield part.data
        else:
            with open(part.file_path, "rb") as f:
                while chunk := f.read(chunk_size):
                    yield chunk
        yield b"\r\n"
    yield f"--{boundary}--\r\n".encode("latin-1")


class BaseTransport(ABC):
    """传输协作者基类"""

    @abstractmethod
    def send(self, request: WireRequest, cancel_event: threading.Event | None = None) -> TransportResponse:
        """
        发送请求并读取完整响应

        参数:
            request: 待发送的请求
            cancel_event: 取消事件，被设置后应尽快中止

        返回:
            TransportResponse 实例

        异常:
            APIClientTransportError: 网络层失败
            APIClientCancelledError: 读取过程中被取消
        """

    @abstractmethod
    def is_reachable(self, url: str | None = None) -> bool:
        """报告网络是否可达"""

    def close(self) -> None:
        """释放传输层资源"""


class RequestsTransport(BaseTransport):
    """
    基于 requests.Session 的传输实现

    类属性:
        default_timeout: 请求未指定超时时间时使用的默认值（秒）
        verify: SSL 证书验证开关
        chunk_size: 流式读取的分块大小（字节）
        pool_config: 连接池配置字典
        reachability_host: 可达性探测的主机，None 表示探测请求 URL 的主机
        reachability_port: 可达性探测的端口（配合 reachability_host 使用）
        reachability_cache_ttl: 探测结果缓存时间（秒）
        persistence_class: 未传入 persistence 时使用的持久化协作者类

    参数:
        session: 外部提供的 requests.Session，None 时自动创建
        persistence: 下载内容的持久化协作者
        **request_kwargs: 其他传递给 session.request 的参数（如 proxies、cert）
    """

    default_timeout: float = DEFAULT_TIMEOUT
    verify: bool = True
    chunk_size: int = DEFAULT_CHUNK_SIZE
    pool_config: dict[str, Any] = DEFAULT_POOL_CONFIG
    reachability_host: str | None = None
    reachability_port: int = REACHABILITY_PROBE_PORT
    reachability_cache_ttl: float = REACHABILITY_CACHE_TTL
    persistence_class: type[BasePersistence] = FileSystemPersistence

    def __init__(
        self,
        session: requests.Session | None = None,
        persistence: BasePersistence | None = None,
        timeout: float | None = None,
        verify: bool | None = None,
        chunk_size: int | None = None,
        pool_config: dict[str, Any] | None = None,
        reachability_host: str | None = None,
        **request_kwargs,
    ):
        self.timeout = timeout if timeout is not None else self.default_timeout
        self.verify = verify if verify is not None else self.verify
        self.chunk_size = chunk_size or self.chunk_size
        self.pool_config = {**self.pool_config, **(pool_config or {})}
        self.reachability_host = reachability_host or self.reachability_host
        self.persistence = persistence or self.persistence_class()
        self.request_kwargs = request_kwargs
        self.session = session or self._create_session()

        # (host, port) -> (是否可达, 探测时间)
        self._reachability_cache: dict[tuple[str, int], tuple[bool, float]] = {}
        self._reachability_lock = threading.Lock()

    def _create_session(self) -> requests.Session:
        """
        创建并配置 requests.Session 对象

        执行步骤:
            1. 创建新的 Session 对象
            2. 使用连接池配置创建 HTTP 适配器
            3. 为 HTTP 和 HTTPS 协议挂载适配器
        """
        session = requests.Session()
        # 重试由拦截器链负责，适配器层不重试
        adapter = HTTPAdapter(max_retries=0, **self.pool_config)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def send(self, request: WireRequest, cancel_event: threading.Event | None = None) -> TransportResponse:
        cancel_event = cancel_event or threading.Event()
        self._check_upload_sources(request)

        request_kwargs = {
            **self.request_kwargs,
            "method": request.method,
            "url": request.url,
            "headers": dict(request.headers),
            "stream": True,
            "timeout": request.timeout if request.timeout is not None else self.timeout,
            "verify": self.verify,
        }

        upload_file = None
        try:
            if request.upload_file:
                upload_file = open(request.upload_file, "rb")
                request_kwargs["data"] = upload_file
            elif request.multipart:
                request_kwargs["data"] = iter_multipart(request.multipart, request.boundary, self.chunk_size)
            elif request.body is not None:
                request_kwargs["data"] = request.body

            response = self.session.request(**request_kwargs)
            with closing(response):
                return self._read_response(request, response, cancel_event)

        except requests.exceptions.Timeout as e:
            raise APIClientTimeoutError(
                f"Request to {request.url} timed out after {request_kwargs['timeout']}s", underlying=e
            ) from e
        except requests.exceptions.RequestException as e:
            raise APIClientNetworkError(f"Request to {request.url} failed: {e}", underlying=e) from e
        finally:
            if upload_file is not None:
                upload_file.close()

    def _read_response(
        self, request: WireRequest, response: requests.Response, cancel_event: threading.Event
    ) -> TransportResponse:
        if cancel_event.is_set():
            raise APIClientCancelledError(f"Request to {request.url} was cancelled")

        result = TransportResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            url=response.url or request.url,
            reason=response.reason or "",
        )
        chunks = self._iter_chunks(request, response, cancel_event)

        if request.is_download and result.ok:
            try:
                result.file_path = self.persistence.write(request.destination, chunks, url=result.url)
            except OSError as e:
                raise APIClientGenericError("Download Failed", f"Could not save {result.url}: {e}") from e
            logger.debug(f"Download saved to {result.file_path}")
        else:
            result.body = b"".join(chunks)
        return result

    def _iter_chunks(
        self, request: WireRequest, response: requests.Response, cancel_event: threading.Event
    ) -> Iterator[bytes]:
        for chunk in response.iter_content(chunk_size=self.chunk_size):
            if cancel_event.is_set():
                raise APIClientCancelledError(f"Request to {request.url} was cancelled")
            if chunk:
                yield chunk

    @staticmethod
    def _check_upload_sources(request: WireRequest) -> None:
        """上传文件缺失属于请求本身的问题，发送前直接报告编码错误"""
        paths = [request.upload_file] if request.upload_file else []
        paths.extend(part.file_path for part in request.multipart if part.file_path)
        for path in paths:
            if not os.path.isfile(path):
                raise APIClientEncodingError(f"Upload source does not exist: {path}")

    def is_reachable(self, url: str | None = None) -> bool:
        """
        通过 TCP 连接探测网络可达性，结果按主机缓存一段时间

        参数:
            url: 请求 URL；未配置 reachability_host 时探测该 URL 的主机
        """
        host, port = self._probe_address(url)
        now = time.monotonic()
        with self._reachability_lock:
            cached = self._reachability_cache.get((host, port))
            if cached is not None and now - cached[1] < self.reachability_cache_ttl:
                return cached[0]

        try:
            with socket.create_connection((host, port), timeout=REACHABILITY_TIMEOUT):
                reachable = True
        except OSError:
            reachable = False

        with self._reachability_lock:
            self._reachability_cache[(host, port)] = (reachable, now)
        if not reachable:
            logger.warning(f"Network unreachable: {host}:{port}")
        return reachable

    def _probe_address(self, url: str | None) -> tuple[str, int]:
        if self.reachability_host:
            return self.reachability_host, self.reachability_port
        if url:
            parsed = urlparse(url)
            if parsed.hostname:
                return parsed.hostname, parsed.port or (443 if parsed.scheme == "https" else 80)
        return REACHABILITY_PROBE_HOST, REACHABILITY_PROBE_PORT

    def close(self) -> None:
        """
        关闭 Session 会话，释放连接池资源
        """
        if self.session:
            self.session.close()
            logger.info("Session closed")
