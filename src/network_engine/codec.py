"""
请求体编解码模块

提供 JSON 编解码器，负责:
    - 将请求值（映射、数据类、DRF 序列化器等）编码为字节
    - 将 ParameterEncodable 的值转换为键值映射
    - 将响应体解码为调用方期望的类型（数据类、DRF 序列化器、内置类型等）
"""

from __future__ import annotations

import dataclasses
import datetime
import decimal
import enum
import json
import logging
import types
import typing
import uuid
from collections.abc import Mapping
from typing import Any

from rest_framework import serializers

from network_engine.constants import (
    DATE_STRATEGY_TIMESTAMP,
    KEY_STRATEGY_CAMEL_CASE,
    KEY_STRATEGY_DEFAULT,
    KEY_STRATEGY_SNAKE_CASE,
)
from network_engine.exceptions import (
    APIClientDecodingError,
    APIClientEncodingError,
    APIClientParameterConversionError,
)
from network_engine.task import EncoderConfig
from network_engine.utils import convert_keys, to_camel_case, to_snake_case

logger = logging.getLogger(__name__)

_KEY_CONVERTERS = {
    KEY_STRATEGY_SNAKE_CASE: to_snake_case,
    KEY_STRATEGY_CAMEL_CASE: to_camel_case,
}

DEFAULT_ENCODER_CONFIG = EncoderConfig()


def apply_key_strategy(value: Any, key_strategy: str) -> Any:
    """按键名转换策略递归转换映射的键名"""
    if key_strategy == KEY_STRATEGY_DEFAULT:
        return value
    return convert_keys(value, _KEY_CONVERTERS[key_strategy])


class JSONCodec:
    """
    JSON 编解码器

    编码支持的值类型:
        - dict / list / 基础类型
        - dataclass 实例
        - DRF Serializer 实例（使用 serializer.data）
        - 提供 to_dict() 方法的对象
        - datetime / date / Decimal / UUID / Enum / set

    解码支持的目标类型:
        - None / Any: 原样返回解析后的 JSON
        - bytes / str: 返回原始字节或文本
        - dict / list / int / float / bool: 校验类型后返回
        - list[X] / dict[str, X]: 逐项转换
        - dataclass 类: 使用同名字段构造实例，忽略多余的键
        - DRF Serializer 类: 验证后返回 validated_data
        - 其他可调用对象: 以解析后的 JSON 作为参数调用
    """

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding

    # ========== 编码 ==========

    def to_primitive(self, value: Any, config: EncoderConfig = DEFAULT_ENCODER_CONFIG) -> Any:
        """将值递归转换为可 JSON 序列化的基础结构"""
        if isinstance(value, serializers.BaseSerializer):
            return self.to_primitive(value.data, config)
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            return self.to_primitive(dataclasses.asdict(value), config)
        if isinstance(value, Mapping):
            return {self._encode_key(k): self.to_primitive(v, config) for k, v in value.items()}
        if isinstance(value, (list, tuple, set, frozenset)):
            return [self.to_primitive(item, config) for item in value]
        if isinstance(value, (str, int, float, bool)) or value is None:
            return value
        if isinstance(value, enum.Enum):
            return self.to_primitive(value.value, config)
        if isinstance(value, datetime.datetime):
            return value.timestamp() if config.date_strategy == DATE_STRATEGY_TIMESTAMP else value.isoformat()
        if isinstance(value, datetime.date):
            return value.isoformat()
        if isinstance(value, (decimal.Decimal, uuid.UUID)):
            return str(value)
        to_dict = getattr(value, "to_dict", None)
        if callable(to_dict):
            return self.to_primitive(to_dict(), config)
        raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")

    @staticmethod
    def _encode_key(key: Any) -> str:
        if isinstance(key, str):
            return key
        if isinstance(key, (int, float, bool)) or key is None:
            return json.dumps(key)
        raise TypeError(f"Keys must be str, int, float, bool or None, not {type(key).__name__}")

    def encode(self, value: Any, config: EncoderConfig | None = None) -> bytes:
        """
        将值编码为 JSON 字节

        参数:
            value: 待编码的值
            config: 编码配置，None 使用默认配置

        返回:
            JSON 字节

        异常:
            APIClientEncodingError: 值无法编码时抛出
        """
        config = config or DEFAULT_ENCODER_CONFIG
        try:
            primitive = apply_key_strategy(self.to_primitive(value, config), config.key_strategy)
            text = json.dumps(
                primitive,
                sort_keys=config.sort_keys,
                ensure_ascii=config.ensure_ascii,
                separators=(",", ":"),
                allow_nan=False,
            )
        except (TypeError, ValueError, RecursionError) as e:
            raise APIClientEncodingError(f"Failed to encode {type(value).__name__} as JSON: {e}", cause=e) from e
        return text.encode(self.encoding)

    def to_mapping(self, value: Any) -> dict[str, Any]:
        """
        将值转换为键值映射

        异常:
            APIClientParameterConversionError: 值无法转换或转换结果不是映射时抛出
        """
        try:
            primitive = self.to_primitive(value)
        except (TypeError, ValueError, RecursionError) as e:
            raise APIClientParameterConversionError(
                f"Failed to convert {type(value).__name__} to a parameter dictionary: {e}", cause=e
            ) from e
        if not isinstance(primitive, Mapping):
            raise APIClientParameterConversionError(
                f"{type(value).__name__} does not convert to a parameter dictionary "
                f"(got {type(primitive).__name__})"
            )
        return dict(primitive)

    # ========== 解码 ==========

    def decode(self, body: bytes | None, response_type: Any = None, key_strategy: str = KEY_STRATEGY_DEFAULT) -> Any:
        """
        将响应体解码为期望的类型

        参数:
            body: 响应体字节
            response_type: 期望的类型
            key_strategy: 响应键名转换策略

        返回:
            解码后的值

        异常:
            APIClientDecodingError: 响应体不是合法 JSON 或无法转换为期望类型时抛出
        """
        if response_type is bytes:
            return body or b""
        if response_type is str:
            try:
                return (body or b"").decode(self.encoding)
            except UnicodeDecodeError as e:
                raise APIClientDecodingError(f"Response body is not valid {self.encoding} text", cause=e) from e

        try:
            payload = json.loads(body) if body else None
        except (ValueError, UnicodeDecodeError, RecursionError) as e:
            raise APIClientDecodingError(f"Response body is not valid JSON: {e}", cause=e) from e

        payload = apply_key_strategy(payload, key_strategy)
        try:
            return self.convert(payload, response_type)
        except APIClientDecodingError:
            raise
        except (TypeError, ValueError, KeyError, RecursionError) as e:
            type_name = getattr(response_type, "__name__", repr(response_type))
            raise APIClientDecodingError(f"Failed to decode response as {type_name}: {e}", cause=e) from e

    def convert(self, payload: Any, response_type: Any) -> Any:
        """将解析后的 JSON 转换为期望的类型"""
        if response_type is None or response_type is Any:
            return payload

        origin = typing.get_origin(response_type)
        if origin is not None:
            return self._convert_generic(payload, response_type, origin)

        if isinstance(response_type, type) and issubclass(response_type, serializers.BaseSerializer):
            return self._convert_with_serializer(payload, response_type)

        if dataclasses.is_dataclass(response_type) and isinstance(response_type, type):
            return self._convert_dataclass(payload, response_type)

        if response_type in (dict, list, str, bool):
            if not isinstance(payload, response_type):
                raise TypeError(f"expected {response_type.__name__}, got {type(payload).__name__}")
            return payload
        if response_type in (int, float):
            if isinstance(payload, bool) or not isinstance(payload, (int, float)):
                raise TypeError(f"expected {response_type.__name__}, got {type(payload).__name__}")
            return response_type(payload)

        return self._construct(response_type, payload)

    def _convert_generic(self, payload: Any, response_type: Any, origin: Any) -> Any:
        args = typing.get_args(response_type)
        if origin in (list, tuple, set, frozenset):
            if not isinstance(payload, list):
                raise TypeError(f"expected a JSON array, got {type(payload).__name__}")
            item_type = args[0] if args else None
            items = [self.convert(item, item_type) for item in payload]
            return items if origin is list else origin(items)
        if origin is dict:
            if not isinstance(payload, dict):
                raise TypeError(f"expected a JSON object, got {type(payload).__name__}")
            value_type = args[1] if len(args) == 2 else None
            return {key: self.convert(value, value_type) for key, value in payload.items()}
        if origin is typing.Union or origin is types.UnionType:
            # Optional[X] 与 X | None
            if payload is None and type(None) in args:
                return None
            last_error = None
            for candidate in args:
                if candidate is type(None):
                    continue
                try:
                    return self.convert(payload, candidate)
                except (TypeError, ValueError, KeyError, APIClientDecodingError) as e:
                    last_error = e
            raise TypeError(f"payload matches none of {args}: {last_error}")
        return self.convert(payload, origin)

    def _convert_dataclass(self, payload: Any, cls: type) -> Any:
        if not isinstance(payload, Mapping):
            raise TypeError(f"expected a JSON object for {cls.__name__}, got {type(payload).__name__}")
        hints = typing.get_type_hints(cls)
        kwargs = {}
        for f in dataclasses.fields(cls):
            if not f.init or f.name not in payload:
                continue
            kwargs[f.name] = self.convert(payload[f.name], hints.get(f.name))
        return self._construct(cls, **kwargs)

    @staticmethod
    def _construct(cls: Any, *args: Any, **kwargs: Any) -> Any:
        """调用调用方提供的类型构造结果，构造失败统一视为解码失败"""
        try:
            return cls(*args, **kwargs)
        except Exception as e:
            type_name = getattr(cls, "__name__", repr(cls))
            raise APIClientDecodingError(f"Failed to construct {type_name}: {e}", cause=e) from e

    @staticmethod
    def _convert_with_serializer(payload: Any, serializer_class: type[serializers.BaseSerializer]) -> Any:
        serializer = serializer_class(data=payload, many=isinstance(payload, list))
        if not serializer.is_valid():
            raise APIClientDecodingError(
                f"Response failed {serializer_class.__name__} validation", errors=serializer.errors
            )
        return serializer.validated_data
