"""拦截器模块

拦截器在请求发送前调整请求（adapt），在请求失败后决定是否重试（retry）。
多个拦截器通过 InterceptorChain 按固定顺序组合:

    - adapt 严格按顺序执行，每个拦截器接收上一个拦截器的输出
    - retry 按顺序询问，第一个要求重试的决定生效

内置拦截器:
    - ConnectivityInterceptor: 网络不可达时快速失败
    - TokenRefreshInterceptor: 注入访问令牌，认证失败时刷新一次并重试
    - StatusRetryInterceptor: 对 429/5xx 与网络错误做指数退避重试
    - RequestsAuthInterceptor: 复用 requests.auth.AuthBase 认证实现
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import Any

import requests
from requests.auth import AuthBase
from urllib3.exceptions import InvalidHeader, MaxRetryError
from urllib3.util.retry import Retry

from network_engine.builder import WireRequest
from network_engine.constants import (
    AUTH_FAILURE_STATUS_CODES,
    DEFAULT_AUTH_SCHEME,
    DEFAULT_RETRIES,
    RETRY_ALLOWED_METHODS,
    RETRY_BACKOFF_FACTOR,
    RETRY_BACKOFF_MAX,
    RETRY_STATUS_FORCELIST,
)
from network_engine.exceptions import (
    APIClientError,
    APIClientHTTPError,
    APIClientNetworkError,
    APIClientNoConnectivityError,
    APIClientTimeoutError,
)
from network_engine.target import TargetDefinition

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    """
    单个请求在拦截器之间共享的上下文

    属性:
        request_id: 请求唯一标识符
        target: 原始目标定义
        attempt: 当前尝试次数，从 1 开始
        state: 拦截器可自由使用的单请求状态字典
    """

    request_id: str
    target: TargetDefinition | None = None
    attempt: int = 1
    state: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RetryDecision:
    """
    重试决定

    属性:
        should_retry: 是否重试
        delay: 重试前等待的时间（秒）
        error: 不重试时，用于替换原始错误的重新分类错误
    """

    should_retry: bool
    delay: float = 0.0
    error: APIClientError | None = None

    @classmethod
    def retry(cls, delay: float = 0.0) -> RetryDecision:
        return cls(should_retry=True, delay=max(0.0, delay))

    @classmethod
    def do_not_retry(cls, error: APIClientError | None = None) -> RetryDecision:
        return cls(should_retry=False, error=error)


DO_NOT_RETRY = RetryDecision.do_not_retry()


class BaseInterceptor:
    """
    拦截器基类

    子类按需重写 adapt 与 retry。adapt 对同一请求的每次尝试都会调用一次，
    实现必须可以安全地重复执行；持有可变状态的拦截器需要自行加锁
    """

    def adapt(self, request: WireRequest, context: RequestContext) -> WireRequest:
        """
        发送前调整请求

        返回:
            调整后的请求（WireRequest 不可变，需返回新实例）

        异常:
            APIClientError: 请求无法发送时抛出，调度器直接以该错误结束请求
        """
        return request

    def retry(
        self,
        request: WireRequest,
        response: Any,
        error: APIClientError,
        context: RequestContext,
    ) -> RetryDecision:
        """
        请求失败后决定是否重试

        参数:
            request: 失败的请求（已经过 adapt）
            response: 传输层响应，网络错误时为 None
            error: 失败原因
            context: 请求上下文
        """
        return DO_NOT_RETRY


class InterceptorChain(BaseInterceptor):
    """
    有序的拦截器链

    顺序在构造时确定，之后不可修改

    参数:
        interceptors: 拦截器序列
    """

    def __init__(self, interceptors: Iterable[BaseInterceptor] = ()):
        self.interceptors: tuple[BaseInterceptor, ...] = tuple(interceptors)
        for interceptor in self.interceptors:
            if not isinstance(interceptor, BaseInterceptor):
                raise TypeError(f"Interceptor must be a BaseInterceptor, got {type(interceptor).__name__}")

    def __iter__(self):
        return iter(self.interceptors)

    def __len__(self) -> int:
        return len(self.interceptors)

    def adapt(self, request: WireRequest, context: RequestContext) -> WireRequest:
        for interceptor in self.interceptors:
            request = interceptor.adapt(request, context)
        return request

    def retry(
        self,
        request: WireRequest,
        response: Any,
        error: APIClientError,
        context: RequestContext,
    ) -> RetryDecision:
        reclassified: APIClientError | None = None
        for interceptor in self.interceptors:
            decision = interceptor.retry(request, response, error, context)
            if decision.should_retry:
                logger.debug(
                    f"[{context.request_id}] {type(interceptor).__name__} requested retry "
                    f"after {decision.delay}s"
                )
                return decision
            if decision.error is not None and reclassified is None:
                reclassified = decision.error
        return RetryDecision.do_not_retry(reclassified)


class ConnectivityInterceptor(BaseInterceptor):
    """
    网络连接性拦截器

    发送前询问传输层网络是否可达，不可达时以 APIClientNoConnectivityError 快速失败；
    请求因网络错误失败且网络不可达时，将错误重新分类为无网络连接

    参数:
        transport: 提供 is_reachable(url) 的传输协作者
    """

    def __init__(self, transport):
        self.transport = transport

    def adapt(self, request: WireRequest, context: RequestContext) -> WireRequest:
        if not self.transport.is_reachable(request.url):
            logger.warning(f"[{context.request_id}] No connectivity, failing fast")
            raise APIClientNoConnectivityError()
        return request

    def retry(self, request, response, error, context) -> RetryDecision:
        if isinstance(error, APIClientNetworkError) and not self.transport.is_reachable(request.url):
            return RetryDecision.do_not_retry(APIClientNoConnectivityError())
        return DO_NOT_RETRY


class TokenRefreshInterceptor(BaseInterceptor):
    """
    访问令牌刷新拦截器

    adapt 阶段注入 "Authorization: <scheme> <token>"；收到认证失败响应时调用
    refresh 获取新令牌并重试一次。同一请求刷新后再次认证失败视为终止，
    避免无限刷新循环。

    多个并发请求同时因旧令牌失败时，只有第一个会调用 refresh，
    其余请求发现令牌已更新后直接重试

    参数:
        token: 初始令牌，可为 None
        refresh: 无参可调用对象，返回新令牌
        scheme: 认证方案，为空时只写入令牌本身
        header_name: 认证请求头名称
        status_codes: 视为认证失败的状态码集合
    """

    state_key = "token_refreshed"

    def __init__(
        self,
        token: str | None = None,
        refresh: Callable[[], str] | None = None,
        scheme: str = DEFAULT_AUTH_SCHEME,
        header_name: str = "Authorization",
        status_codes: Iterable[int] = AUTH_FAILURE_STATUS_CODES,
    ):
        self._token = token
        self.refresh = refresh
        self.scheme = scheme
        self.header_name = header_name
        self.status_codes = set(status_codes)
        self._lock = threading.Lock()

    @property
    def token(self) -> str | None:
        with self._lock:
            return self._token

    def _header_value(self, token: str) -> str:
        return f"{self.scheme} {token}" if self.scheme else token

    def adapt(self, request: WireRequest, context: RequestContext) -> WireRequest:
        token = self.token
        if not token:
            return request
        return request.with_header(self.header_name, self._header_value(token))

    def retry(self, request, response, error, context) -> RetryDecision:
        if not isinstance(error, APIClientHTTPError) or error.status_code not in self.status_codes:
            return DO_NOT_RETRY
        if self.refresh is None:
            return DO_NOT_RETRY
        if context.state.get(self.state_key):
            logger.warning(f"[{context.request_id}] Authorization failed again after token refresh")
            return DO_NOT_RETRY

        context.state[self.state_key] = True
        sent_value = request.header(self.header_name)

        with self._lock:
            if self._token and sent_value != self._header_value(self._token):
                # 其他请求已经刷新过令牌
                logger.info(f"[{context.request_id}] Token already refreshed, retrying")
                return RetryDecision.retry()
            try:
                logger.info(f"[{context.request_id}] Authorization failed, refreshing token")
                self._token = self.refresh()
            except Exception:
                logger.exception(f"[{context.request_id}] Token refresh failed")
                return DO_NOT_RETRY
        return RetryDecision.retry()


class StatusRetryInterceptor(BaseInterceptor):
    """
    状态码退避重试拦截器

    使用 urllib3 的 Retry 策略决定是否重试：status_forcelist 中的状态码、
    超时以及网络错误按 Retry.get_backoff_time() 退避，不超过 backoff_max；
    响应携带 Retry-After 时优先使用该值。
    每个请求在 context.state 中保存自己的 Retry 实例，重试次数互不影响

    参数:
        max_retries: 最大重试次数
        backoff_factor: 退避因子
        status_forcelist: 需要重试的状态码
        retry_network_errors: 是否重试超时和网络错误
        backoff_max: 单次退避的最大等待时间
        allowed_methods: 允许重试的 HTTP 方法
    """

    state_key = "status_retry"

    def __init__(
        self,
        max_retries: int = DEFAULT_RETRIES,
        backoff_factor: float = RETRY_BACKOFF_FACTOR,
        status_forcelist: Iterable[int] = RETRY_STATUS_FORCELIST,
        retry_network_errors: bool = True,
        backoff_max: float = RETRY_BACKOFF_MAX,
        allowed_methods: Iterable[str] = RETRY_ALLOWED_METHODS,
    ):
        self.retry_network_errors = retry_network_errors
        self.retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            backoff_max=backoff_max,
            status_forcelist=set(status_forcelist),
            allowed_methods=frozenset(method.upper() for method in allowed_methods),
            raise_on_status=False,
        )

    def _is_retryable(self, retry: Retry, request: WireRequest, response, error: APIClientError) -> bool:
        if isinstance(error, APIClientHTTPError):
            has_retry_after = response is not None and response.header("Retry-After") is not None
            return retry.is_retry(request.method, error.status_code, has_retry_after)
        if isinstance(error, (APIClientTimeoutError, APIClientNetworkError)):
            return self.retry_network_errors and request.method.upper() in retry.allowed_methods
        return False

    def retry(self, request, response, error, context) -> RetryDecision:
        retry = context.state.get(self.state_key, self.retry_strategy)
        if not self._is_retryable(retry, request, response, error):
            return DO_NOT_RETRY

        try:
            retry = retry.increment(method=request.method, url=request.url)
        except MaxRetryError:
            logger.warning(f"[{context.request_id}] Giving up after {len(retry.history)} retries")
            return DO_NOT_RETRY
        context.state[self.state_key] = retry

        delay = self._retry_after(retry, response)
        if delay is None:
            delay = retry.get_backoff_time()
        delay = min(delay, retry.backoff_max)
        attempts = len(retry.history)
        logger.info(f"[{context.request_id}] Retrying in {delay:.2f}s ({attempts}/{self.retry_strategy.total})")
        return RetryDecision.retry(delay)

    @staticmethod
    def _retry_after(retry: Retry, response) -> float | None:
        """解析 Retry-After 响应头（秒数或 HTTP 日期），无效时回退到指数退避"""
        if response is None or not retry.respect_retry_after_header:
            return None
        value = response.header("Retry-After")
        if not value:
            return None
        try:
            return retry.parse_retry_after(value)
        except InvalidHeader:
            logger.debug(f"Ignoring invalid Retry-After header: {value!r}")
            return None


class RequestsAuthInterceptor(BaseInterceptor):
    """
    requests 认证适配拦截器

    将 requests.auth.AuthBase 实例（如 HTTPBasicAuth）应用到 WireRequest 上，
    认证实现新增或修改的请求头与 URL 会被写回

    参数:
        auth: AuthBase 实例
    """

    def __init__(self, auth: AuthBase):
        if not isinstance(auth, AuthBase):
            raise TypeError(f"auth must be a requests.auth.AuthBase, got {type(auth).__name__}")
        self.auth = auth

    def adapt(self, request: WireRequest, context: RequestContext) -> WireRequest:
        prepared = requests.Request(method=request.method, url=request.url, headers=dict(request.headers)).prepare()
        original_headers = dict(prepared.headers)
        prepared = self.auth(prepared)

        changed = {k: v for k, v in prepared.headers.items() if original_headers.get(k) != v}
        adapted = request.with_headers(changed) if changed else request
        if prepared.url != request.url:
            adapted = replace(adapted, url=prepared.url)
        return adapted


def default_interceptor(
    transport,
    token: str | None = None,
    refresh: Callable[[], str] | None = None,
    **token_kwargs,
) -> InterceptorChain:
    """
    默认拦截器链：连接性检查 + 令牌刷新

    参数:
        transport: 传输协作者，用于可达性检查
        token: 初始访问令牌
        refresh: 令牌刷新函数
        **token_kwargs: 传递给 TokenRefreshInterceptor 的其他参数
    """
    return InterceptorChain(
        [
            ConnectivityInterceptor(transport),
            TokenRefreshInterceptor(token=token, refresh=refresh, **token_kwargs),
        ]
    )
