"""
异常定义

只有 EvaluationError 会返回给调用方，其余状态相关的异常都在流水线内部吸收。
"""


class ReplError(Exception):
    """所有 REPL 异常的基类"""


class EvaluationError(ReplError):
    """脚本执行失败（返回给调用方）"""

    def __init__(self, message: str, error_type: str = ""):
        super().__init__(message)
        self.message = message
        self.error_type = error_type


class EngineFault(ReplError):
    """解释器引擎在解析或执行时抛出的错误"""

    def __init__(self, message: str, error_type: str = ""):
        super().__init__(message)
        self.message = message
        self.error_type = error_type


class StateCodecError(ReplError):
    """状态编解码错误"""


class EncodeError(StateCodecError):
    """变量无法编码"""


class DecodeError(StateCodecError):
    """状态数据损坏、截断或版本不匹配"""


class SessionStoreError(ReplError):
    """Session 存储读写失败"""
