"""调度器模块

调度器负责请求的完整生命周期:

    1. 使用 RequestBuilder 将 TargetDefinition 渲染为 WireRequest
    2. 分配 RequestHandle 并登记到取消注册表
    3. 在线程池中执行：拦截器 adapt -> 钩子 -> 传输层发送 -> 状态码校验 -> 解码
    4. 失败时询问拦截器链是否重试，延迟重试通过定时器调度，不阻塞任何线程
    5. 以 Result 交付最终结果，并从注册表中移除句柄

BaseDispatcher 定义对外契约，Dispatcher 是真实实现，
MockDispatcher（见 network_engine.mock）是测试替身，二者对调用方不可区分
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Any

from requests.auth import AuthBase

from network_engine.builder import RequestBuilder, WireRequest
from network_engine.codec import JSONCodec
from network_engine.constants import DEFAULT_MAX_WORKERS, DEFAULT_TIMEOUT
from network_engine.exceptions import (
    APIClientCancelledError,
    APIClientDecodingError,
    APIClientEncodingError,
    APIClientError,
    APIClientGenericError,
    APIClientHTTPError,
    APIClientTransportError,
    APIClientValidationError,
)
from network_engine.handle import RequestHandle
from network_engine.interceptor import BaseInterceptor, InterceptorChain, RequestContext, RequestsAuthInterceptor
from network_engine.persistence import BasePersistence
from network_engine.registry import CancellationRegistry
from network_engine.result import Result
from network_engine.target import TargetDefinition
from network_engine.transport import BaseTransport, RequestsTransport, TransportResponse
from network_engine.utils import DEFAULT_SENSITIVE_HEADERS, DEFAULT_SENSITIVE_PARAMS, sanitize_headers, sanitize_url

logger = logging.getLogger(__name__)

ResultCallback = Callable[[Result], None]

HOOK_BEFORE_REQUEST = "before_request"
HOOK_AFTER_REQUEST = "after_request"
HOOK_ON_REQUEST_ERROR = "on_request_error"


class BaseDispatcher(ABC):
    """
    调度器基类

    类属性:
        default_headers: 所有请求默认携带的请求头（目标定义中的同名请求头优先）
        default_timeout: 目标定义未指定超时时的默认超时时间（秒）
        builder_class: 请求构建器类或实例
        codec_class: 编解码器类或实例
        sensitive_headers: 日志中需要脱敏的请求头
        sensitive_params: 日志中需要脱敏的 URL 参数
        enable_sanitization: 是否启用日志脱敏
    """

    default_headers: dict[str, str] = {}
    default_timeout: float = DEFAULT_TIMEOUT
    builder_class: type[RequestBuilder] | RequestBuilder = RequestBuilder
    codec_class: type[JSONCodec] | JSONCodec = JSONCodec

    sensitive_headers: set[str] = DEFAULT_SENSITIVE_HEADERS
    sensitive_params: set[str] = DEFAULT_SENSITIVE_PARAMS
    enable_sanitization: bool = True

    def __init__(
        self,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        builder: RequestBuilder | type[RequestBuilder] | None = None,
        codec: JSONCodec | type[JSONCodec] | None = None,
        registry: CancellationRegistry | None = None,
    ):
        self.headers = {**self.default_headers, **(headers or {})}
        self.timeout = timeout if timeout is not None else self.default_timeout
        self.codec = self._resolve_component(codec, "codec_class", JSONCodec, JSONCodec)
        self.builder = self._resolve_component(builder, "builder_class", RequestBuilder, RequestBuilder, codec=self.codec)
        self.registry = registry if registry is not None else CancellationRegistry()

        self._hooks: dict[str, list[Callable]] = {
            HOOK_BEFORE_REQUEST: [],
            HOOK_AFTER_REQUEST: [],
            HOOK_ON_REQUEST_ERROR: [],
        }

    def _resolve_component(self, component, class_attr_name, base_class, fallback_class, **init_kwargs):
        """
        统一的组件解析方法

        参数:
            component: 传入的组件配置（类或实例）
            class_attr_name: 类属性名称
            base_class: 基类类型
            fallback_class: 类属性缺失时使用的默认类
            **init_kwargs: 实例化时的额外参数

        返回:
            组件实例
        """
        # 优先使用传入配置，否则使用类级别配置
        source = component if component is not None else getattr(self, class_attr_name, fallback_class)

        if source is None:
            return None

        if isinstance(source, type) and issubclass(source, base_class):
            try:
                return source(**init_kwargs)
            except TypeError as e:
                raise APIClientValidationError(f"{class_attr_name} instantiation failed: {e}") from e

        if isinstance(source, base_class):
            return source

        raise APIClientValidationError(f"{class_attr_name} must be a {base_class.__name__} subclass or instance")

    # ========== 钩子机制 ==========

    def register_hook(self, hook_name: str, callback: Callable) -> None:
        """
        注册钩子函数

        参数:
            hook_name: 钩子名称，可选值："before_request", "after_request", "on_request_error"
            callback: 钩子回调函数

        钩子签名:
            before_request(dispatcher, request_id, request) -> WireRequest
            after_request(dispatcher, request_id, response) -> TransportResponse
            on_request_error(dispatcher, request_id, error) -> None

        异常:
            ValueError: 当钩子名称不合法时抛出
        """
        if hook_name not in self._hooks:
            raise ValueError(f"Invalid hook name: {hook_name}. Must be one of: {list(self._hooks.keys())}")
        self._hooks[hook_name].append(callback)
        logger.debug(f"Registered hook: {hook_name}")

    def before_request(self, request_id: str, request: WireRequest) -> WireRequest:
        """请求发送前的钩子方法，钩子失败只记录日志"""
        for hook in self._hooks[HOOK_BEFORE_REQUEST]:
            try:
                request = hook(self, request_id, request)
            except Exception:
                logger.exception(f"[{request_id}] before_request hook failed")
        return request

    def after_request(self, request_id: str, response: TransportResponse) -> TransportResponse:
        """收到响应后的钩子方法，钩子失败只记录日志"""
        for hook in self._hooks[HOOK_AFTER_REQUEST]:
            try:
                response = hook(self, request_id, response)
            except Exception:
                logger.exception(f"[{request_id}] after_request hook failed")
        return response

    def on_request_error(self, request_id: str, error: APIClientError) -> None:
        """请求失败时的钩子方法，钩子失败只记录日志"""
        for hook in self._hooks[HOOK_ON_REQUEST_ERROR]:
            try:
                hook(self, request_id, error)
            except Exception:
                logger.exception(f"[{request_id}] on_request_error hook failed")

    # ========== 对外接口 ==========

    def execute(self, target: TargetDefinition, callback: ResultCallback | None = None) -> RequestHandle:
        """
        构建并调度一个请求

        参数:
            target: 目标定义
            callback: 结果回调，请求被取消时不会调用

        返回:
            RequestHandle，可用于取消、阻塞等待或 await
        """
        handle = self._create_handle(callback)
        try:
            wire_request = self.builder.build(target)
        except APIClientError as e:
            # 编码错误属于请求本身的问题，直接终止，不经过拦截器
            logger.error(f"[{handle.id}] Failed to build request for {target.name}: {e}")
            self._deliver(handle, Result.failure(e))
            return handle
        except Exception as e:
            logger.exception(f"[{handle.id}] Unexpected error while building request for {target.name}")
            self._deliver(handle, Result.failure(APIClientEncodingError(f"Failed to build request: {e}", cause=e)))
            return handle

        self._start(handle, self._prepare_request(wire_request), target)
        return handle

    def dispatch(
        self, wire_request: WireRequest, target: TargetDefinition, callback: ResultCallback | None = None
    ) -> RequestHandle:
        """调度一个已构建好的请求"""
        handle = self._create_handle(callback)
        self._start(handle, self._prepare_request(wire_request), target)
        return handle

    def execute_many(
        self, targets: Iterable[TargetDefinition], callback: ResultCallback | None = None
    ) -> list[RequestHandle]:
        """批量调度请求，返回顺序与输入一致的句柄列表"""
        targets = list(targets)
        if not targets:
            logger.warning("Empty target list provided")
            return []
        logger.info(f"Dispatching {len(targets)} requests")
        return [self.execute(target, callback) for target in targets]

    def request(
        self, target: TargetDefinition | list[TargetDefinition], timeout: float | None = None
    ) -> Result | list[Result]:
        """
        阻塞式请求入口，支持单个目标和目标列表

        参数:
            target: 目标定义或目标定义列表
            timeout: 等待结果的超时时间（秒）

        返回:
            Result 或与输入顺序一致的 Result 列表
        """
        if isinstance(target, TargetDefinition):
            return self.execute(target).result(timeout)
        if isinstance(target, list):
            return [handle.result(timeout) for handle in self.execute_many(target)]
        raise APIClientValidationError("target must be a TargetDefinition or a list of TargetDefinition")

    def cancel(self, handles: RequestHandle | Iterable[RequestHandle]) -> int:
        """取消一个或一组句柄，返回实际取消的数量"""
        if isinstance(handles, RequestHandle):
            handles = [handles]
        return self.registry.cancel_all(handles)

    def cancel_all(self) -> int:
        """取消所有未结束的请求"""
        return self.registry.cancel_all()

    def close(self) -> None:
        """取消未结束的请求并释放资源"""
        self.cancel_all()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ========== 内部实现 ==========

    @abstractmethod
    def _start(self, handle: RequestHandle, wire_request: WireRequest, target: TargetDefinition) -> None:
        """开始执行请求，结果必须通过 _deliver 交付"""

    def _create_handle(self, callback: ResultCallback | None) -> RequestHandle:
        handle = RequestHandle(on_finish=self.registry.remove)
        if callback is not None:
            handle.add_done_callback(callback)
        self.registry.register(handle)
        return handle

    def _prepare_request(self, wire_request: WireRequest) -> WireRequest:
        """合并默认请求头与默认超时时间，请求自身的值优先"""
        present = {name.lower() for name in wire_request.headers}
        defaults = {k: v for k, v in self.headers.items() if k.lower() not in present}
        if defaults:
            wire_request = replace(wire_request, headers={**defaults, **wire_request.headers})
        if wire_request.timeout is None:
            wire_request = replace(wire_request, timeout=self.timeout)
        return wire_request

    def _deliver(self, handle: RequestHandle, result: Result) -> None:
        if not handle.complete(result):
            logger.debug(f"[{handle.id}] Result dropped, handle already finished")
            return
        if result.is_success:
            logger.info(f"[{handle.id}] Request completed")
        else:
            logger.error(f"[{handle.id}] Request failed ({result.error_kind}): {result.error}")

    def _decode_result(self, request_id: str, target: TargetDefinition, response: TransportResponse) -> Result:
        """
        将传输层响应解码为 Result

        下载请求成功时返回保存后的文件路径
        """
        if response.file_path is not None:
            return Result.success(response.file_path)
        try:
            logger.debug(f"[{request_id}] Decoding response data")
            value = self.codec.decode(response.body, target.response_type, target.key_decoding_strategy)
        except APIClientDecodingError as e:
            e.response = response
            return Result.failure(e)
        except Exception as e:
            logger.exception(f"[{request_id}] Unexpected error while decoding response")
            return Result.failure(APIClientGenericError("Something went wrong", str(e)))
        return Result.success(value)

    def _safe_url(self, url: str) -> str:
        return sanitize_url(url, self.sensitive_params) if self.enable_sanitization else url

    def _safe_headers(self, headers) -> dict[str, str]:
        return sanitize_headers(headers, self.sensitive_headers) if self.enable_sanitization else dict(headers)


class Dispatcher(BaseDispatcher):
    """
    真实调度器

    类属性:
        max_workers: 线程池最大工作线程数
        verify: SSL 证书验证开关
        transport_class: 传输协作者类或实例
        interceptor_classes: 默认拦截器（类或实例）列表
        authentication_class: requests 认证类或实例，会作为第一个拦截器生效

    使用示例:
        >>> dispatcher = Dispatcher(interceptors=default_interceptor(transport, token, refresh))
        >>> handle = dispatcher.execute(fetch_users(page=1), callback=on_users)
        >>> result = dispatcher.request(fetch_users(page=2))
    """

    max_workers: int = DEFAULT_MAX_WORKERS
    verify: bool = True
    transport_class: type[BaseTransport] | BaseTransport = RequestsTransport
    interceptor_classes: list[type[BaseInterceptor] | BaseInterceptor] = []
    authentication_class: type[AuthBase] | AuthBase | None = None

    def __init__(
        self,
        transport: BaseTransport | type[BaseTransport] | None = None,
        interceptors: Iterable[BaseInterceptor] | BaseInterceptor | None = None,
        authentication: AuthBase | type[AuthBase] | None = None,
        persistence: BasePersistence | None = None,
        max_workers: int | None = None,
        verify: bool | None = None,
        **kwargs,
    ):
        """
        初始化调度器

        参数:
            transport: 传输协作者类或实例
            interceptors: 拦截器、拦截器序列或 InterceptorChain
            authentication: requests 认证类或实例
            persistence: 下载持久化协作者（仅在自动创建传输层时使用）
            max_workers: 线程池最大工作线程数
            verify: SSL 证书验证开关（仅在自动创建传输层时使用）
            **kwargs: 传递给 BaseDispatcher 的参数（headers、timeout、builder、codec、registry）
        """
        super().__init__(**kwargs)
        self.max_workers = max_workers if max_workers is not None else self.max_workers
        self.verify = verify if verify is not None else self.verify

        transport_kwargs: dict[str, Any] = {"verify": self.verify, "timeout": self.timeout}
        if persistence is not None:
            transport_kwargs["persistence"] = persistence
        self.transport = self._resolve_component(
            transport, "transport_class", BaseTransport, RequestsTransport, **transport_kwargs
        )

        self.interceptor = self._resolve_interceptors(interceptors, authentication)
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="network-engine")
        self._closed = False
        self._close_lock = threading.Lock()

    def _resolve_interceptors(
        self,
        interceptors: Iterable[BaseInterceptor] | BaseInterceptor | None,
        authentication: AuthBase | type[AuthBase] | None,
    ) -> InterceptorChain:
        """
        解析拦截器配置，返回拦截器链

        认证拦截器（如果配置）位于链首，其后是传入的拦截器或类级别默认拦截器
        """
        if interceptors is None:
            resolved = [self._instantiate(item) for item in self.interceptor_classes]
        elif isinstance(interceptors, BaseInterceptor):
            resolved = [interceptors]
        else:
            resolved = list(interceptors)

        auth = self._resolve_component(authentication, "authentication_class", AuthBase, None)
        if auth is not None:
            resolved.insert(0, RequestsAuthInterceptor(auth))

        if len(resolved) == 1 and isinstance(resolved[0], InterceptorChain):
            return resolved[0]
        return InterceptorChain(resolved)

    @staticmethod
    def _instantiate(item):
        return item() if isinstance(item, type) else item

    def _start(self, handle: RequestHandle, wire_request: WireRequest, target: TargetDefinition) -> None:
        context = RequestContext(request_id=handle.id, target=target)
        self._submit(handle, wire_request, target, context)

    def _submit(
        self, handle: RequestHandle, wire_request: WireRequest, target: TargetDefinition, context: RequestContext
    ) -> None:
        if handle.is_cancelled:
            return
        try:
            self._executor.submit(self._run_attempt, handle, wire_request, target, context)
        except RuntimeError as e:
            # 线程池已关闭
            logger.error(f"[{handle.id}] Cannot schedule request: {e}")
            self._deliver(handle, Result.failure(APIClientGenericError("Request Not Sent", str(e))))

    def _run_attempt(
        self, handle: RequestHandle, wire_request: WireRequest, target: TargetDefinition, context: RequestContext
    ) -> None:
        """
        执行一次请求尝试

        执行步骤:
            1. 依次执行拦截器 adapt，失败则直接结束
            2. 调用 before_request 钩子
            3. 通过传输层发送请求，调用 after_request 钩子
            4. 校验状态码，传输失败时交给 _handle_transport_failure 决定是否重试
            5. 解码响应并交付结果
        """
        request_id = handle.id
        if handle.is_cancelled:
            return

        request = wire_request
        try:
            request = self.interceptor.adapt(wire_request, context)
            request = self.before_request(request_id, request)

            logger.info(
                f"[{request_id}] Starting {request.method} request to {self._safe_url(request.url)} "
                f"(attempt {context.attempt})"
            )
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"[{request_id}] Request headers: {self._safe_headers(request.headers)}")

            response = self.transport.send(request, handle.cancel_event)
            response = self.after_request(request_id, response)
            logger.info(f"[{request_id}] Received {response.status_code} response")
            self._validate_status(target, response)
            if handle.is_cancelled:
                return
            result = self._decode_result(request_id, target, response)

        except APIClientCancelledError:
            logger.debug(f"[{request_id}] Transport aborted after cancellation")
            return
        except APIClientTransportError as e:
            self.on_request_error(request_id, e)
            self._handle_transport_failure(handle, wire_request, request, e, target, context)
            return
        except APIClientError as e:
            self.on_request_error(request_id, e)
            self._deliver(handle, Result.failure(e))
            return
        except Exception as e:
            logger.exception(f"[{request_id}] Unexpected error during request")
            error = APIClientGenericError("Something went wrong", str(e))
            self.on_request_error(request_id, error)
            self._deliver(handle, Result.failure(error))
            return

        self._deliver(handle, result)

    def _validate_status(self, target: TargetDefinition, response: TransportResponse) -> None:
        """
        校验响应状态码

        异常:
            APIClientHTTPError: 状态码不在目标定义允许的范围内
        """
        if target.validate_status is None or response.status_code in target.validate_status:
            return
        raise APIClientHTTPError(
            f"HTTP {response.status_code}: {response.reason or 'Unacceptable status code'}",
            response=response,
            body=response.body,
        )

    def _handle_transport_failure(
        self,
        handle: RequestHandle,
        wire_request: WireRequest,
        request: WireRequest,
        error: APIClientTransportError,
        target: TargetDefinition,
        context: RequestContext,
    ) -> None:
        """询问拦截器链是否重试；重试时从未经 adapt 的原始请求重新开始"""
        try:
            decision = self.interceptor.retry(request, error.response, error, context)
        except Exception:
            logger.exception(f"[{handle.id}] Retry decision failed")
            self._deliver(handle, Result.failure(error))
            return

        if not decision.should_retry:
            self._deliver(handle, Result.failure(decision.error or error))
            return

        if handle.is_cancelled:
            return
        context.attempt += 1
        logger.info(f"[{handle.id}] Retrying request (attempt {context.attempt}) in {decision.delay:.2f}s")
        if decision.delay > 0:
            handle.schedule(decision.delay, lambda: self._submit(handle, wire_request, target, context))
        else:
            self._submit(handle, wire_request, target, context)

    def close(self) -> None:
        """
        取消未结束的请求，关闭线程池与传输层
        """
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        super().close()
        self._executor.shutdown(wait=True)
        self.transport.close()
