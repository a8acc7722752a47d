"""
变量序列化模块

将解释器全局作用域中的数据类变量编码为二进制状态块，并从状态块中恢复。

状态块格式（版本 1）:
    头部   : magic(4) + version(1) + flags(1)
    正文   : count(uint32) + count * [name_len(uint16) + name + value_len(uint32) + pickle]
    flags 第 0 位表示正文经过 Fernet 加密
"""

import pickle
import struct
import logging
from enum import Enum
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from fractions import Fraction
from types import ModuleType
from typing import Any, Iterable, List, Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from ..errors import DecodeError, EncodeError


class BindingKind(Enum):
    """变量类别，只有 DATA 可以持久化"""
    DATA = "data"
    CALLABLE = "callable"
    ENVIRONMENT = "environment"
    OTHER = "other"


# 可持久化的基本类型
_DATA_TYPES = (
    type(None), bool, int, float, complex, str, bytes, bytearray,
    list, tuple, dict, set, frozenset,
    date, datetime, time, timedelta, Decimal, Fraction,
)


def _is_pandas_data(var) -> bool:
    """检查是否是 pandas 数据对象"""
    try:
        import pandas as pd
        return isinstance(var, (pd.DataFrame, pd.Series, pd.Index, pd.Timestamp, pd.Timedelta))
    except ImportError:
        return False


def _is_numpy_data(var) -> bool:
    """检查是否是 numpy 数组或标量"""
    try:
        import numpy as np
        return isinstance(var, (np.ndarray, np.generic))
    except ImportError:
        return False


def classify_value(var: Any) -> BindingKind:
    """
    判断变量类别

    Args:
        var: 变量值

    Returns:
        变量类别
    """
    if isinstance(var, ModuleType):
        return BindingKind.ENVIRONMENT
    if isinstance(var, _DATA_TYPES):
        return BindingKind.DATA
    if _is_pandas_data(var) or _is_numpy_data(var):
        return BindingKind.DATA
    if callable(var):
        return BindingKind.CALLABLE
    return BindingKind.OTHER


@dataclass(frozen=True)
class Binding:
    """全局作用域中的一个变量"""
    name: str
    value: Any

    @property
    def kind(self) -> BindingKind:
        return classify_value(self.value)

    def is_persistable(self) -> bool:
        return self.kind is BindingKind.DATA


MAGIC = b"SRPL"
VERSION = 1
FLAG_SEALED = 0x01

# 固定协议版本，保证相同输入得到相同输出
PICKLE_PROTOCOL = 4

_HEADER = struct.Struct(">4sBB")
_COUNT = struct.Struct(">I")
_NAME_LEN = struct.Struct(">H")
_VALUE_LEN = struct.Struct(">I")


class StateCodec:
    """
    状态编解码器

    encode 只编码 DATA 类变量；decode 遇到任何格式问题都抛出 DecodeError，
    由调用方当作“没有历史状态”处理。
    """

    def __init__(
        self,
        secret_key: Optional[Union[str, bytes]] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        初始化编解码器

        Args:
            secret_key: Fernet 密钥（可选），配置后状态块正文会被加密
            logger: 日志记录器
        """
        self.logger = logger or logging.getLogger(__name__)
        self._fernet: Optional[Fernet] = None
        if secret_key:
            key = secret_key.encode("utf-8") if isinstance(secret_key, str) else secret_key
            self._fernet = Fernet(key)

    @property
    def sealed(self) -> bool:
        return self._fernet is not None

    def encode(self, bindings: Iterable[Binding]) -> bytes:
        """
        编码变量

        Args:
            bindings: 变量列表（按定义顺序）

        Returns:
            状态块

        Raises:
            EncodeError: 变量值无法序列化
        """
        entries = []
        for binding in bindings:
            if not binding.is_persistable():
                continue
            entries.append(self._encode_entry(binding))

        body = _COUNT.pack(len(entries)) + b"".join(entries)
        flags = 0
        if self._fernet is not None:
            body = self._fernet.encrypt(body)
            flags |= FLAG_SEALED

        return _HEADER.pack(MAGIC, VERSION, flags) + body

    def _encode_entry(self, binding: Binding) -> bytes:
        name = binding.name.encode("utf-8")
        if len(name) > 0xFFFF:
            raise EncodeError(f"Variable name too long: {binding.name[:50]}...")
        try:
            value = pickle.dumps(binding.value, protocol=PICKLE_PROTOCOL)
        except Exception as e:
            raise EncodeError(f"Cannot encode variable '{binding.name}': {e}") from e
        if len(value) > 0xFFFFFFFF:
            raise EncodeError(f"Variable '{binding.name}' is too large to encode")
        return _NAME_LEN.pack(len(name)) + name + _VALUE_LEN.pack(len(value)) + value

    def decode(self, blob: bytes) -> List[Binding]:
        """
        解码状态块

        Args:
            blob: 状态块

        Returns:
            变量列表，顺序与编码时一致

        Raises:
            DecodeError: 数据损坏、截断、版本或加密方式不匹配
        """
        if blob is None or len(blob) < _HEADER.size:
            raise DecodeError("State blob is truncated")

        magic, version, flags = _HEADER.unpack_from(blob, 0)
        if magic != MAGIC:
            raise DecodeError("State blob has an unknown format")
        if version != VERSION:
            raise DecodeError(f"Unsupported state blob version {version}")

        body = bytes(blob[_HEADER.size:])
        if flags & FLAG_SEALED:
            if self._fernet is None:
                raise DecodeError("State blob is sealed but no secret key is configured")
            try:
                body = self._fernet.decrypt(body)
            except InvalidToken as e:
                raise DecodeError("State blob failed integrity check") from e
        elif self._fernet is not None:
            raise DecodeError("Refusing unsealed state blob")

        return self._decode_body(body)

    def _decode_body(self, body: bytes) -> List[Binding]:
        count, offset = self._unpack(_COUNT, body, 0)
        bindings = []
        for _ in range(count):
            name_len, offset = self._unpack(_NAME_LEN, body, offset)
            raw_name, offset = self._take(body, offset, name_len)
            value_len, offset = self._unpack(_VALUE_LEN, body, offset)
            raw_value, offset = self._take(body, offset, value_len)

            try:
                name = raw_name.decode("utf-8")
            except UnicodeDecodeError as e:
                raise DecodeError("Variable name is not valid UTF-8") from e
            if not name.isidentifier():
                raise DecodeError(f"Invalid variable name {name!r}")

            try:
                value = pickle.loads(raw_value)
            except Exception as e:
                raise DecodeError(f"Cannot decode variable '{name}': {e}") from e

            binding = Binding(name, value)
            if not binding.is_persistable():
                raise DecodeError(f"Variable '{name}' is not a data value")
            bindings.append(binding)

        if offset != len(body):
            raise DecodeError("State blob has trailing bytes")
        return bindings

    @staticmethod
    def _unpack(fmt: struct.Struct, buf: bytes, offset: int):
        if offset + fmt.size > len(buf):
            raise DecodeError("State blob is truncated")
        return fmt.unpack_from(buf, offset)[0], offset + fmt.size

    @staticmethod
    def _take(buf: bytes, offset: int, size: int):
        end = offset + size
        if end > len(buf):
            raise DecodeError("State blob is truncated")
        return buf[offset:end], end
