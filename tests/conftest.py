"""
通用测试 Fixture 定义

提供测试所需的 Django 配置、假传输层、目标定义工厂等
"""

import os
import threading

import django
import pytest
from django.conf import settings

# DRF 序列化器需要 Django 设置
if not settings.configured:
    settings.configure(
        DEBUG=True,
        SECRET_KEY="test-secret-key",
        USE_I18N=True,
        USE_TZ=True,
    )
    django.setup()

from network_engine.builder import RequestBuilder  # noqa: E402
from network_engine.codec import JSONCodec  # noqa: E402
from network_engine.exceptions import APIClientHTTPError, APIClientNetworkError  # noqa: E402
from network_engine.target import TargetDefinition  # noqa: E402
from network_engine.transport import BaseTransport, TransportResponse  # noqa: E402

BASE_URL = "https://api.example.com"
FIXTURES_DIR = os.path.join(os.path.dirname(__file__), "fixtures")


class FakeTransport(BaseTransport):
    """
    按脚本依次返回响应的假传输层

    responses 中的元素可以是:
        - TransportResponse: 原样返回
        - (status_code, body): 构造 TransportResponse
        - Exception 实例: 直接抛出
    脚本用完后重复最后一个元素
    """

    def __init__(self, responses=None, reachable=True):
        self.responses = list(responses or [(200, b"{}")])
        self.reachable = reachable
        self.requests = []
        self.reachability_checks = 0
        self.closed = False
        self.sent = threading.Event()
        self.release = None  # 设置为 Event 时，send 会阻塞直到该事件被设置
        self._lock = threading.Lock()

    def send(self, request, cancel_event=None):
        with self._lock:
            self.requests.append(request)
            index = min(len(self.requests) - 1, len(self.responses) - 1)
            item = self.responses[index]
        self.sent.set()
        if self.release is not None:
            self.release.wait(5)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, TransportResponse):
            return item
        status_code, body = item
        return TransportResponse(status_code=status_code, body=body, url=request.url)

    def is_reachable(self, url=None):
        self.reachability_checks += 1
        return self.reachable

    def close(self):
        self.closed = True


@pytest.fixture
def codec():
    """默认 JSON 编解码器"""
    return JSONCodec()


@pytest.fixture
def builder(codec):
    """默认请求构建器"""
    return RequestBuilder(codec=codec)


@pytest.fixture
def make_target():
    """目标定义工厂，默认指向 https://api.example.com/test"""

    def _make(**kwargs):
        kwargs.setdefault("base_url", BASE_URL)
        kwargs.setdefault("path", "/test")
        return TargetDefinition(**kwargs)

    return _make


@pytest.fixture
def fake_transport():
    """默认返回 200 {} 的假传输层"""
    return FakeTransport()


@pytest.fixture
def fixtures_dir():
    """固定响应文件目录"""
    return FIXTURES_DIR


def http_error(status_code, body=b""):
    """构造携带响应的 HTTP 错误"""
    response = TransportResponse(status_code=status_code, body=body, url=f"{BASE_URL}/test")
    return APIClientHTTPError(f"HTTP {status_code}", response=response, body=body)


def network_error(message="connection reset"):
    return APIClientNetworkError(message)
