"""
解释器核心模块

提供脚本执行、输出捕获、状态编解码等功能。
"""

from .executor import IPythonExecutor, ParsedScript, parse_script
from .output_capture import OutputCapture, OutputType, OutputChunk
from .serializer import Binding, BindingKind, StateCodec, classify_value

__all__ = [
    'IPythonExecutor',
    'ParsedScript',
    'parse_script',
    'OutputCapture',
    'OutputType',
    'OutputChunk',
    'Binding',
    'BindingKind',
    'StateCodec',
    'classify_value',
]
