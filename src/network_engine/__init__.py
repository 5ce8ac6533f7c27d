"""
network-engine 网络请求引擎

以声明式的目标定义描述接口调用，由调度器统一完成编码、拦截、发送、重试、解码与取消

主要组件:
    - TargetDefinition / 任务描述: 描述一次接口调用
    - RequestBuilder: 将目标定义渲染为 WireRequest
    - Dispatcher / MockDispatcher: 真实调度器与模拟调度器
    - 拦截器: ConnectivityInterceptor, TokenRefreshInterceptor, StatusRetryInterceptor
    - RequestHandle / CancellationRegistry: 请求取消
    - Result: 成功值或分类错误

使用示例:
    >>> from network_engine import Dispatcher, Parameters, TargetDefinition
    >>>
    >>> def fetch_users(page: int) -> TargetDefinition:
    ...     return TargetDefinition(
    ...         base_url="https://api.example.com",
    ...         path="/users",
    ...         task=Parameters({"page": page}),
    ...         name="fetch_users",
    ...     )
    >>>
    >>> with Dispatcher() as dispatcher:
    ...     result = dispatcher.request(fetch_users(page=1))
"""

# 请求描述
from network_engine.target import TargetDefinition
from network_engine.task import (
    CompositeData,
    CompositeParameters,
    CustomEncoded,
    DownloadDestination,
    DownloadDestinationSpec,
    DownloadParameters,
    EncoderConfig,
    JSONEncodable,
    MultipartFormPart,
    ParameterEncodable,
    Parameters,
    Plain,
    RawData,
    TaskDescriptor,
    UploadCompositeMultipart,
    UploadFile,
    UploadMultipart,
)

# 构建与编解码
from network_engine.builder import RequestBuilder, WireRequest
from network_engine.codec import JSONCodec

# 调度器
from network_engine.dispatcher import BaseDispatcher, Dispatcher
from network_engine.mock import MockDispatcher

# 拦截器
from network_engine.interceptor import (
    BaseInterceptor,
    ConnectivityInterceptor,
    InterceptorChain,
    RequestContext,
    RequestsAuthInterceptor,
    RetryDecision,
    StatusRetryInterceptor,
    TokenRefreshInterceptor,
    default_interceptor,
)

# 传输与持久化
from network_engine.transport import BaseTransport, RequestsTransport, TransportResponse
from network_engine.persistence import BasePersistence, FileSystemPersistence

# 取消与结果
from network_engine.handle import RequestHandle
from network_engine.registry import CancellationRegistry, RequestGroup
from network_engine.result import Result

# 异常类
from network_engine.exceptions import (
    APIClientDecodingError,
    APIClientEncodingError,
    APIClientError,
    APIClientGenericError,
    APIClientHTTPError,
    APIClientNetworkError,
    APIClientNoConnectivityError,
    APIClientParameterConversionError,
    APIClientTimeoutError,
    APIClientTransportError,
    APIClientValidationError,
)

# 常量配置
from network_engine.constants import (
    DATE_STRATEGY_ISO8601,
    DATE_STRATEGY_TIMESTAMP,
    ENCODING_DEFAULT,
    ENCODING_FORM,
    ENCODING_JSON,
    ENCODING_URL_QUERY,
    KEY_STRATEGY_CAMEL_CASE,
    KEY_STRATEGY_DEFAULT,
    KEY_STRATEGY_SNAKE_CASE,
)

__all__ = [
    # 请求描述
    "TargetDefinition",
    "TaskDescriptor",
    "Plain",
    "RawData",
    "JSONEncodable",
    "CustomEncoded",
    "ParameterEncodable",
    "Parameters",
    "CompositeData",
    "CompositeParameters",
    "UploadFile",
    "UploadMultipart",
    "UploadCompositeMultipart",
    "DownloadDestination",
    "DownloadParameters",
    "DownloadDestinationSpec",
    "EncoderConfig",
    "MultipartFormPart",
    # 构建与编解码
    "RequestBuilder",
    "WireRequest",
    "JSONCodec",
    # 调度器
    "BaseDispatcher",
    "Dispatcher",
    "MockDispatcher",
    # 拦截器
    "BaseInterceptor",
    "InterceptorChain",
    "RequestContext",
    "RetryDecision",
    "ConnectivityInterceptor",
    "TokenRefreshInterceptor",
    "StatusRetryInterceptor",
    "RequestsAuthInterceptor",
    "default_interceptor",
    # 传输与持久化
    "BaseTransport",
    "RequestsTransport",
    "TransportResponse",
    "BasePersistence",
    "FileSystemPersistence",
    # 取消与结果
    "RequestHandle",
    "CancellationRegistry",
    "RequestGroup",
    "Result",
    # 异常
    "APIClientError",
    "APIClientValidationError",
    "APIClientTransportError",
    "APIClientHTTPError",
    "APIClientNetworkError",
    "APIClientTimeoutError",
    "APIClientEncodingError",
    "APIClientParameterConversionError",
    "APIClientDecodingError",
    "APIClientNoConnectivityError",
    "APIClientGenericError",
    # 常量
    "ENCODING_DEFAULT",
    "ENCODING_URL_QUERY",
    "ENCODING_FORM",
    "ENCODING_JSON",
    "KEY_STRATEGY_DEFAULT",
    "KEY_STRATEGY_SNAKE_CASE",
    "KEY_STRATEGY_CAMEL_CASE",
    "DATE_STRATEGY_ISO8601",
    "DATE_STRATEGY_TIMESTAMP",
]

__version__ = "1.0.0"
