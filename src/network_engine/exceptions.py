"""
网络引擎异常模块

定义请求管道中所有可分类的错误类型。调度器将这些异常统一转换为
Result.failure 交付给调用方，调用方可根据 kind 属性决定展示方式
"""

from __future__ import annotations

from typing import Any

from network_engine.constants import (
    ERROR_KIND_DECODING,
    ERROR_KIND_ENCODING,
    ERROR_KIND_GENERIC,
    ERROR_KIND_NO_CONNECTIVITY,
    ERROR_KIND_PARAMETER_CONVERSION,
    ERROR_KIND_TRANSPORT,
)


class APIClientError(Exception):
    """
    API 客户端异常基类

    所有自定义异常的基类，用于统一捕获和处理客户端相关错误

    属性:
        kind: 错误类型标识（见 constants.ERROR_KIND_*）
        title: 面向展示的标题
        body: 面向展示的正文（默认为异常消息）
    """

    kind: str = ERROR_KIND_GENERIC
    default_title: str = "Error"

    @property
    def title(self) -> str:
        return self.default_title

    @property
    def body(self) -> str:
        return str(self)


class APIClientValidationError(APIClientError):
    """
    配置验证异常

    当客户端配置、组件类型等输入不合法时同步抛出，不会作为 Result 交付
    """


class APIClientTransportError(APIClientError):
    """
    传输层异常

    请求已发出但未能得到可接受的响应时使用，是唯一可被拦截器重试的错误类型

    参数:
        message: 错误描述信息
        response: 传输层响应对象（可选）
        body: 响应体字节（可选）
        underlying: 底层原始异常（可选）
    """

    kind = ERROR_KIND_TRANSPORT
    default_title = "Request Failed"

    def __init__(
        self,
        message: str,
        response: Any = None,
        body: bytes | None = None,
        underlying: BaseException | None = None,
    ):
        super().__init__(message)
        self.response = response
        self.body_bytes = body
        self.underlying = underlying

    @property
    def status_code(self) -> int | None:
        return getattr(self.response, "status_code", None) if self.response is not None else None


class APIClientHTTPError(APIClientTransportError):
    """
    HTTP 错误响应异常

    当响应状态码不在目标定义允许的范围内时抛出
    """


class APIClientNetworkError(APIClientTransportError):
    """
    网络连接异常

    当网络连接失败、DNS 解析失败等网络层面问题时抛出此异常
    """


class APIClientTimeoutError(APIClientTransportError):
    """
    请求超时异常

    当请求执行时间超过设定的超时时间时抛出此异常
    """


class APIClientEncodingError(APIClientError):
    """
    请求体编码异常

    请求描述无法编码为字节时抛出，属于请求本身的问题，不会重试

    参数:
        message: 错误描述信息
        cause: 原始异常（可选）
    """

    kind = ERROR_KIND_ENCODING
    default_title = "Encoding Failed"

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class APIClientParameterConversionError(APIClientError):
    """
    参数字典转换异常

    ParameterEncodable 的值无法转换为键值映射时抛出。
    与 APIClientEncodingError 是不同的错误类型，调用方可据此区分
    """

    kind = ERROR_KIND_PARAMETER_CONVERSION
    default_title = "Invalid Parameters"

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class APIClientDecodingError(APIClientError):
    """
    响应解码异常

    响应体无法解码为调用方期望的类型时抛出，不会重试

    参数:
        message: 错误描述信息
        cause: 原始异常（可选）
        response: 传输层响应对象（可选）
        errors: 序列化器验证错误详情（可选）
    """

    kind = ERROR_KIND_DECODING
    default_title = "Unexpected Response"

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        response: Any = None,
        errors: dict | list | None = None,
    ):
        super().__init__(message)
        self.cause = cause
        self.response = response
        self.errors = errors or {}


class APIClientNoConnectivityError(APIClientError):
    """
    无网络连接异常

    传输层报告网络不可达时由连接性拦截器抛出或重新分类
    """

    kind = ERROR_KIND_NO_CONNECTIVITY
    default_title = "No Internet Connection"

    def __init__(self, message: str = "The Internet connection appears to be offline."):
        super().__init__(message)


class APIClientGenericError(APIClientError):
    """
    通用异常

    没有更具体的原因时使用，携带面向展示的标题和正文

    参数:
        title: 标题
        body: 正文
    """

    kind = ERROR_KIND_GENERIC

    def __init__(self, title: str = "Something went wrong", body: str = "Please try again later."):
        super().__init__(body)
        self._title = title
        self._body = body

    @property
    def title(self) -> str:
        return self._title

    @property
    def body(self) -> str:
        return self._body


class APIClientCancelledError(APIClientError):
    """
    请求已取消

    仅在管道内部用于中止进行中的传输，不会作为 Result 交付给调用方
    """

    default_title = "Cancelled"
