"""
输出捕获模块

按线程捕获 stdout/stderr 输出。多个 Worker 线程在同一进程中并发执行时，
各自只收到自己线程写入的内容。
"""

import sys
import threading
from typing import List, Optional
from dataclasses import dataclass
from enum import Enum


class OutputType(Enum):
    """输出类型枚举"""
    TEXT = "txt"      # 标准输出
    ERROR = "err"     # 错误输出


@dataclass
class OutputChunk:
    """输出片段"""
    type: OutputType
    content: str


# 当前线程正在使用的捕获器
_active = threading.local()
_install_lock = threading.Lock()


class ThreadRoutedStream:
    """
    线程路由流，替换 sys.stdout/stderr

    当前线程有活动的捕获器时写入捕获器，否则写入原始流。
    """

    def __init__(self, output_type: OutputType, original_stream):
        self.output_type = output_type
        self.original_stream = original_stream

    def write(self, text: str) -> int:
        """写入文本"""
        if not text:
            return 0

        capture: Optional["OutputCapture"] = getattr(_active, "capture", None)
        if capture is not None and capture.accepts(self.output_type):
            capture.put_output(self.output_type, text)
        elif self.original_stream is not None:
            self.original_stream.write(text)
        return len(text)

    def flush(self):
        """刷新流"""
        if self.original_stream is not None:
            self.original_stream.flush()

    def isatty(self) -> bool:
        """是否是终端"""
        return False

    @property
    def encoding(self) -> str:
        """编码"""
        return 'utf-8'


def _install_routers():
    """安装线程路由流（幂等）"""
    with _install_lock:
        if not isinstance(sys.stdout, ThreadRoutedStream):
            sys.stdout = ThreadRoutedStream(OutputType.TEXT, sys.stdout)
        if not isinstance(sys.stderr, ThreadRoutedStream):
            sys.stderr = ThreadRoutedStream(OutputType.ERROR, sys.stderr)


class OutputCapture:
    """
    输出捕获上下文管理器

    使用方式:
        with OutputCapture() as capture:
            exec(code)
        text = capture.getvalue()
    """

    def __init__(self, capture_stdout: bool = True, capture_stderr: bool = True):
        self.capture_stdout = capture_stdout
        self.capture_stderr = capture_stderr
        self.chunks: List[OutputChunk] = []
        self._previous: Optional["OutputCapture"] = None
        self._started = False

    def accepts(self, output_type: OutputType) -> bool:
        if output_type is OutputType.TEXT:
            return self.capture_stdout
        return self.capture_stderr

    def start(self):
        """开始捕获"""
        _install_routers()
        self._previous = getattr(_active, "capture", None)
        _active.capture = self
        self._started = True

    def stop(self):
        """停止捕获"""
        if self._started:
            _active.capture = self._previous
            self._previous = None
            self._started = False

    def put_output(self, output_type: OutputType, content: str):
        """手动放入输出"""
        if content:
            self.chunks.append(OutputChunk(type=output_type, content=content))

    def getvalue(self) -> str:
        """按写入顺序拼接所有输出"""
        return "".join(chunk.content for chunk in self.chunks)

    def __enter__(self):
        """同步上下文管理器入口"""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """同步上下文管理器出口"""
        self.stop()
        return False
