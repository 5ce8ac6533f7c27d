"""
测试 Dispatcher 调度器

测试内容:
- 成功请求的解码与回调交付
- 状态码校验、解码错误、编码错误、参数转换错误的分类
- 拦截器驱动的重试：令牌刷新、退避重试、无网络连接
- 取消：进行中的请求、等待重试的请求、批量取消
- 钩子、默认请求头、认证、上下文管理
- 使用 responses 的端到端请求
"""

import asyncio
import dataclasses
import threading
import time
from concurrent.futures import CancelledError
from unittest.mock import Mock

import pytest
import responses
from responses import matchers
from requests.auth import HTTPBasicAuth

from conftest import BASE_URL, FakeTransport, network_error
from network_engine.constants import (
    ERROR_KIND_DECODING,
    ERROR_KIND_ENCODING,
    ERROR_KIND_GENERIC,
    ERROR_KIND_NO_CONNECTIVITY,
    ERROR_KIND_PARAMETER_CONVERSION,
    ERROR_KIND_TRANSPORT,
)
from network_engine.codec import JSONCodec
from network_engine.dispatcher import Dispatcher
from network_engine.exceptions import APIClientHTTPError, APIClientValidationError
from network_engine.interceptor import (
    BaseInterceptor,
    ConnectivityInterceptor,
    StatusRetryInterceptor,
    TokenRefreshInterceptor,
)
from network_engine.persistence import FileSystemPersistence
from network_engine.target import TargetDefinition
from network_engine.task import DownloadDestination, DownloadDestinationSpec, JSONEncodable, ParameterEncodable, Parameters
from network_engine.transport import TransportResponse

WAIT = 5


@dataclasses.dataclass
class User:
    id: int
    name: str


@pytest.fixture
def dispatcher_factory():
    """创建调度器并在测试结束后关闭"""
    created = []

    def _make(transport=None, **kwargs):
        dispatcher = Dispatcher(transport=transport or FakeTransport(), **kwargs)
        created.append(dispatcher)
        return dispatcher

    yield _make
    for dispatcher in created:
        dispatcher.close()


class TestDispatchSuccess:
    """测试成功请求"""

    @pytest.mark.unit
    def test_decodes_response_type(self, dispatcher_factory, make_target):
        """UT-DISP-001: 按 response_type 解码响应"""
        # Arrange
        transport = FakeTransport([(200, b'[{"id": 1, "name": "alice"}]')])
        dispatcher = dispatcher_factory(transport)

        # Act
        result = dispatcher.request(make_target(response_type=list[User]), timeout=WAIT)

        # Assert
        assert result.is_success
        assert result.value == [User(id=1, name="alice")]

    @pytest.mark.unit
    def test_callback_receives_result(self, dispatcher_factory, make_target):
        """UT-DISP-002: 回调收到结果"""
        dispatcher = dispatcher_factory(FakeTransport([(200, b'{"ok": true}')]))
        received = []
        done = threading.Event()

        def on_result(result):
            received.append(result)
            done.set()

        dispatcher.execute(make_target(), callback=on_result)

        assert done.wait(WAIT)
        assert received[0].value == {"ok": True}

    @pytest.mark.unit
    def test_handle_removed_from_registry(self, dispatcher_factory, make_target):
        """UT-DISP-003: 请求结束后句柄从注册表中移除"""
        dispatcher = dispatcher_factory()

        handle = dispatcher.execute(make_target())
        handle.result(WAIT)

        assert handle not in dispatcher.registry

    @pytest.mark.unit
    def test_await_handle(self, dispatcher_factory, make_target):
        """UT-DISP-004: 在协程中 await 句柄"""
        dispatcher = dispatcher_factory(FakeTransport([(200, b"1")]))

        async def main():
            return await dispatcher.execute(make_target(response_type=int))

        assert asyncio.run(main()).value == 1

    @pytest.mark.unit
    def test_request_list_keeps_order(self, dispatcher_factory, make_target):
        """UT-DISP-005: 批量请求按输入顺序返回结果"""
        dispatcher = dispatcher_factory(FakeTransport([(200, b"{}")]))
        targets = [make_target(path=f"/items/{i}") for i in range(5)]

        results = dispatcher.request(targets, timeout=WAIT)

        assert len(results) == 5
        assert all(result.is_success for result in results)

    @pytest.mark.unit
    def test_request_rejects_invalid_target(self, dispatcher_factory):
        """UT-DISP-006: 非目标定义参数抛出验证异常"""
        with pytest.raises(APIClientValidationError):
            dispatcher_factory().request({"endpoint": "/users"})

    @pytest.mark.unit
    def test_validate_status_disabled(self, dispatcher_factory, make_target):
        """UT-DISP-007: 关闭状态码校验时 404 也视为成功"""
        dispatcher = dispatcher_factory(FakeTransport([(404, b'{"error": "missing"}')]))

        result = dispatcher.request(make_target(validate_status=None), timeout=WAIT)

        assert result.value == {"error": "missing"}


class TestDispatchFailures:
    """测试失败分类"""

    @pytest.mark.unit
    def test_unacceptable_status(self, dispatcher_factory, make_target):
        """UT-DISP-010: 状态码不在允许范围内时返回传输错误，携带响应体"""
        dispatcher = dispatcher_factory(FakeTransport([(404, b'{"error": "Not Found"}')]))

        result = dispatcher.request(make_target(), timeout=WAIT)

        assert result.error_kind == ERROR_KIND_TRANSPORT
        assert isinstance(result.error, APIClientHTTPError)
        assert result.error.status_code == 404
        assert result.error.body_bytes == b'{"error": "Not Found"}'

    @pytest.mark.unit
    def test_decoding_error_not_retried(self, dispatcher_factory, make_target):
        """UT-DISP-011: 解码失败直接结束，不经过重试"""
        transport = FakeTransport([(200, b"<html>")])
        dispatcher = dispatcher_factory(transport, interceptors=[StatusRetryInterceptor(backoff_factor=0)])

        result = dispatcher.request(make_target(response_type=User), timeout=WAIT)

        assert result.error_kind == ERROR_KIND_DECODING
        assert result.error.response.status_code == 200
        assert len(transport.requests) == 1

    @pytest.mark.unit
    def test_encoding_error_completes_without_sending(self, dispatcher_factory, make_target):
        """UT-DISP-012: 编码失败同步结束，不调用拦截器和传输层"""
        transport = FakeTransport()
        interceptor = Mock(spec=BaseInterceptor)
        dispatcher = dispatcher_factory(transport, interceptors=[interceptor])
        callback = Mock()

        handle = dispatcher.execute(make_target(method="POST", task=JSONEncodable({"fn": object()})), callback)

        assert handle.is_done
        assert handle.result(0).error_kind == ERROR_KIND_ENCODING
        callback.assert_called_once()
        interceptor.adapt.assert_not_called()
        assert transport.requests == []

    @pytest.mark.unit
    def test_parameter_conversion_error(self, dispatcher_factory, make_target):
        """UT-DISP-013: 参数转换失败使用独立的错误类型"""
        dispatcher = dispatcher_factory()

        result = dispatcher.request(make_target(task=ParameterEncodable(42)), timeout=WAIT)

        assert result.error_kind == ERROR_KIND_PARAMETER_CONVERSION

    @pytest.mark.unit
    def test_unexpected_exception_becomes_generic(self, dispatcher_factory, make_target):
        """UT-DISP-014: 未预期的异常转换为通用错误"""
        dispatcher = dispatcher_factory(FakeTransport([RuntimeError("bug")]))

        result = dispatcher.request(make_target(), timeout=WAIT)

        assert result.error_kind == ERROR_KIND_GENERIC

    @pytest.mark.unit
    def test_network_error_without_retry(self, dispatcher_factory, make_target):
        """UT-DISP-015: 没有拦截器时网络错误直接返回"""
        dispatcher = dispatcher_factory(FakeTransport([network_error()]))

        result = dispatcher.request(make_target(), timeout=WAIT)

        assert result.error_kind == ERROR_KIND_TRANSPORT

    @pytest.mark.unit
    def test_response_type_constructor_failure(self, dispatcher_factory, make_target):
        """UT-DISP-016: response_type 构造时抛出任意异常都作为解码失败交付"""

        class Strict:
            def __init__(self, payload):
                raise RuntimeError("rejected")

        dispatcher = dispatcher_factory(FakeTransport([(200, b'{"id": 1}')]))

        handle = dispatcher.execute(make_target(response_type=Strict))
        result = handle.result(WAIT)

        assert result.error_kind == ERROR_KIND_DECODING
        assert isinstance(result.error.cause, RuntimeError)
        assert handle not in dispatcher.registry

    @pytest.mark.unit
    def test_unexpected_decode_error_becomes_generic(self, dispatcher_factory, make_target):
        """UT-DISP-017: 编解码器抛出未分类的异常时返回通用错误"""

        class BrokenCodec(JSONCodec):
            def decode(self, body, response_type=None, key_strategy=None):
                raise AttributeError("broken codec")

        dispatcher = dispatcher_factory(codec=BrokenCodec)

        handle = dispatcher.execute(make_target(method="GET"))

        assert handle.result(WAIT).error_kind == ERROR_KIND_GENERIC
        assert len(dispatcher.registry) == 0

    @pytest.mark.unit
    def test_after_request_hook_returning_garbage(self, dispatcher_factory, make_target):
        """UT-DISP-018: after_request 钩子返回非响应对象时返回通用错误"""
        dispatcher = dispatcher_factory()
        dispatcher.register_hook("after_request", lambda d, rid, response: None)

        result = dispatcher.request(make_target(), timeout=WAIT)

        assert result.error_kind == ERROR_KIND_GENERIC

    @pytest.mark.unit
    def test_self_referential_body(self, dispatcher_factory, make_target):
        """UT-DISP-019: 自引用的请求体作为编码失败交付，不会同步抛出"""
        body = {"name": "loop"}
        body["self"] = body
        transport = FakeTransport()
        dispatcher = dispatcher_factory(transport)

        handle = dispatcher.execute(make_target(method="POST", task=JSONEncodable(body)))

        assert handle.result(0).error_kind == ERROR_KIND_ENCODING
        assert handle not in dispatcher.registry
        assert transport.requests == []

    @pytest.mark.unit
    def test_unexpected_build_error_becomes_encoding_failure(self, dispatcher_factory, make_target):
        """UT-DISP-009: 构建请求时的未分类异常作为编码失败交付"""

        class Exploding:
            def to_dict(self):
                raise RuntimeError("cannot serialize")

        dispatcher = dispatcher_factory()

        handle = dispatcher.execute(make_target(task=ParameterEncodable(Exploding())))

        assert handle.result(0).error_kind == ERROR_KIND_ENCODING
        assert isinstance(handle.result(0).error.cause, RuntimeError)


class TestDispatchRetry:
    """测试拦截器驱动的重试"""

    @pytest.mark.unit
    def test_token_refreshed_once_and_retried(self, dispatcher_factory, make_target):
        """UT-DISP-020: 401 后刷新令牌一次并以新令牌重试"""
        # Arrange
        transport = FakeTransport([(401, b""), (200, b'{"id": 1, "name": "alice"}')])
        refresh = Mock(return_value="t2")
        dispatcher = dispatcher_factory(transport, interceptors=[TokenRefreshInterceptor(token="t1", refresh=refresh)])

        # Act
        result = dispatcher.request(make_target(response_type=User), timeout=WAIT)

        # Assert
        assert result.value == User(id=1, name="alice")
        refresh.assert_called_once()
        assert [r.header("Authorization") for r in transport.requests] == ["Bearer t1", "Bearer t2"]

    @pytest.mark.unit
    def test_second_auth_failure_is_terminal(self, dispatcher_factory, make_target):
        """UT-DISP-021: 刷新后再次 401 终止，不再刷新"""
        transport = FakeTransport([(401, b""), (401, b"")])
        refresh = Mock(return_value="t2")
        dispatcher = dispatcher_factory(transport, interceptors=[TokenRefreshInterceptor(token="t1", refresh=refresh)])

        result = dispatcher.request(make_target(), timeout=WAIT)

        assert result.error.status_code == 401
        refresh.assert_called_once()
        assert len(transport.requests) == 2

    @pytest.mark.unit
    def test_backoff_retry_until_success(self, dispatcher_factory, make_target):
        """UT-DISP-022: 503 按退避策略重试直到成功"""
        transport = FakeTransport([(503, b""), (503, b""), (200, b"{}")])
        dispatcher = dispatcher_factory(transport, interceptors=[StatusRetryInterceptor(backoff_factor=0.01)])

        result = dispatcher.request(make_target(), timeout=WAIT)

        assert result.is_success
        assert len(transport.requests) == 3

    @pytest.mark.unit
    def test_no_connectivity_fails_fast(self, dispatcher_factory, make_target):
        """UT-DISP-023: 网络不可达时快速失败，不发送请求"""
        transport = FakeTransport(reachable=False)
        dispatcher = dispatcher_factory(transport, interceptors=[ConnectivityInterceptor(transport)])

        result = dispatcher.request(make_target(), timeout=WAIT)

        assert result.error_kind == ERROR_KIND_NO_CONNECTIVITY
        assert transport.requests == []

    @pytest.mark.unit
    def test_network_error_reclassified(self, dispatcher_factory, make_target):
        """UT-DISP-024: 请求途中断网时，网络错误重新分类为无网络连接"""
        transport = FakeTransport([network_error()])
        transport.is_reachable = Mock(side_effect=[True, False])
        dispatcher = dispatcher_factory(transport, interceptors=[ConnectivityInterceptor(transport)])

        result = dispatcher.request(make_target(), timeout=WAIT)

        assert result.error_kind == ERROR_KIND_NO_CONNECTIVITY

    @pytest.mark.unit
    def test_adapt_runs_on_every_attempt(self, dispatcher_factory, make_target):
        """UT-DISP-025: 每次尝试都从原始请求重新执行 adapt"""
        transport = FakeTransport([(503, b""), (200, b"{}")])

        class Counter(BaseInterceptor):
            calls = 0

            def adapt(self, request, context):
                Counter.calls += 1
                return request.with_header("X-Attempt", str(context.attempt))

        dispatcher = dispatcher_factory(transport, interceptors=[Counter(), StatusRetryInterceptor(backoff_factor=0)])

        dispatcher.request(make_target(), timeout=WAIT)

        assert Counter.calls == 2
        assert [r.header("X-Attempt") for r in transport.requests] == ["1", "2"]


class TestDispatchCancellation:
    """测试取消"""

    @pytest.mark.unit
    def test_cancel_in_flight_request(self, dispatcher_factory, make_target):
        """UT-DISP-030: 取消进行中的请求后回调不会被调用"""
        # Arrange
        transport = FakeTransport([(200, b"{}")])
        transport.release = threading.Event()
        dispatcher = dispatcher_factory(transport)
        callback = Mock()

        # Act
        handle = dispatcher.execute(make_target(), callback)
        assert transport.sent.wait(WAIT)
        handle.cancel()
        transport.release.set()
        time.sleep(0.1)

        # Assert
        callback.assert_not_called()
        with pytest.raises(CancelledError):
            handle.result(0)
        assert handle not in dispatcher.registry
        assert handle.cancel() is False

    @pytest.mark.unit
    def test_cancel_pending_retry(self, dispatcher_factory, make_target):
        """UT-DISP-031: 取消等待重试的请求后不再发送"""
        transport = FakeTransport([TransportResponse(status_code=503, headers={"Retry-After": "1"})])
        dispatcher = dispatcher_factory(transport, interceptors=[StatusRetryInterceptor()])

        handle = dispatcher.execute(make_target())
        assert transport.sent.wait(WAIT)
        time.sleep(0.05)
        handle.cancel()
        time.sleep(0.5)

        assert len(transport.requests) == 1

    @pytest.mark.unit
    def test_cancel_all(self, dispatcher_factory, make_target):
        """UT-DISP-032: 批量取消所有未结束的请求"""
        transport = FakeTransport([(200, b"{}")])
        transport.release = threading.Event()
        dispatcher = dispatcher_factory(transport)
        handles = dispatcher.execute_many([make_target(), make_target(), make_target()])

        cancelled = dispatcher.cancel_all()
        transport.release.set()

        assert cancelled == 3
        assert all(handle.is_cancelled for handle in handles)
        assert len(dispatcher.registry) == 0

    @pytest.mark.unit
    def test_cancel_subset(self, dispatcher_factory, make_target):
        """UT-DISP-033: 只取消指定的句柄"""
        transport = FakeTransport([(200, b"{}")])
        transport.release = threading.Event()
        dispatcher = dispatcher_factory(transport)
        first, second = dispatcher.execute_many([make_target(), make_target()])

        assert dispatcher.cancel(first) == 1
        transport.release.set()

        assert first.is_cancelled
        assert second.result(WAIT).is_success


class TestDispatchConfiguration:
    """测试调度器配置与钩子"""

    @pytest.mark.unit
    def test_default_headers_and_timeout(self, dispatcher_factory, make_target):
        """UT-DISP-040: 默认请求头与超时时间，目标定义中的值优先"""
        transport = FakeTransport()
        dispatcher = dispatcher_factory(transport, headers={"User-Agent": "engine", "Accept": "*/*"}, timeout=12)

        dispatcher.request(make_target(headers={"accept": "application/json"}), timeout=WAIT)

        sent = transport.requests[0]
        assert sent.header("User-Agent") == "engine"
        assert sent.header("Accept") == "application/json"
        assert sent.timeout == 12

    @pytest.mark.unit
    def test_hooks(self, dispatcher_factory, make_target):
        """UT-DISP-041: 钩子按阶段调用，钩子异常不影响请求"""
        transport = FakeTransport([(500, b"")])
        dispatcher = dispatcher_factory(transport)
        errors = []

        dispatcher.register_hook("before_request", lambda d, rid, req: req.with_header("X-Hook", "1"))
        dispatcher.register_hook("before_request", Mock(side_effect=RuntimeError("broken hook")))
        dispatcher.register_hook("on_request_error", lambda d, rid, error: errors.append(error))

        result = dispatcher.request(make_target(), timeout=WAIT)

        assert transport.requests[0].header("X-Hook") == "1"
        assert errors == [result.error]

    @pytest.mark.unit
    def test_invalid_hook_name(self, dispatcher_factory):
        """UT-DISP-042: 非法钩子名称"""
        with pytest.raises(ValueError):
            dispatcher_factory().register_hook("on_success", lambda *args: None)

    @pytest.mark.unit
    def test_authentication(self, dispatcher_factory, make_target):
        """UT-DISP-043: requests 认证作为第一个拦截器生效"""
        transport = FakeTransport()
        dispatcher = dispatcher_factory(transport, authentication=HTTPBasicAuth("user", "pass"))

        dispatcher.request(make_target(), timeout=WAIT)

        assert transport.requests[0].header("Authorization") == "Basic dXNlcjpwYXNz"

    @pytest.mark.unit
    def test_class_level_configuration(self, make_target):
        """UT-DISP-044: 子类通过类属性配置传输层与拦截器"""
        transport = FakeTransport()

        class TracingDispatcher(Dispatcher):
            transport_class = transport
            interceptor_classes = [TokenRefreshInterceptor(token="static")]
            default_headers = {"X-Client": "tracing"}

        with TracingDispatcher() as dispatcher:
            dispatcher.request(make_target(), timeout=WAIT)

        assert transport.requests[0].header("Authorization") == "Bearer static"
        assert transport.requests[0].header("X-Client") == "tracing"
        assert transport.closed

    @pytest.mark.unit
    def test_invalid_transport(self):
        """UT-DISP-045: 非法传输层配置"""
        with pytest.raises(APIClientValidationError):
            Dispatcher(transport=object())

    @pytest.mark.unit
    def test_default_sanitization_matches_utils(self, dispatcher_factory):
        """UT-DISP-046: 默认脱敏集合与 utils 中的默认集合一致"""
        dispatcher = dispatcher_factory()

        headers = dispatcher._safe_headers({"Session-ID": "abc123", "Accept": "*/*"})
        url = dispatcher._safe_url("https://api.example.com/users?pwd=hunter2&page=1")

        assert headers["Session-ID"] != "abc123"
        assert headers["Accept"] == "*/*"
        assert "hunter2" not in url
        assert "page=1" in url


class TestDispatchIntegration:
    """使用 responses 的端到端测试"""

    @pytest.mark.integration
    @responses.activate
    def test_get_with_query_parameters(self):
        """IT-DISP-001: GET 请求参数放入查询字符串"""
        responses.add(
            responses.GET,
            f"{BASE_URL}/users",
            json=[{"id": 1, "name": "alice"}],
            match=[matchers.query_param_matcher({"page": "1"})],
        )
        target = TargetDefinition(
            base_url=BASE_URL, path="/users", task=Parameters({"page": 1}), response_type=list[User]
        )

        with Dispatcher() as dispatcher:
            result = dispatcher.request(target, timeout=WAIT)

        assert result.value == [User(id=1, name="alice")]

    @pytest.mark.integration
    @responses.activate
    def test_download(self, tmp_path):
        """IT-DISP-002: 下载请求返回保存后的文件路径"""
        responses.add(responses.GET, f"{BASE_URL}/files/report.pdf", body=b"%PDF-1.7")
        target = TargetDefinition(
            base_url=BASE_URL,
            path="/files/report.pdf",
            task=DownloadDestination(DownloadDestinationSpec(directory=str(tmp_path))),
        )

        with Dispatcher(persistence=FileSystemPersistence()) as dispatcher:
            result = dispatcher.request(target, timeout=WAIT)

        assert result.value == str(tmp_path / "report.pdf")
        assert (tmp_path / "report.pdf").read_bytes() == b"%PDF-1.7"
