"""
Session REPL

会话连续的远程脚本执行服务：每次执行后保存数据类变量，下一次执行前恢复，
同一 Session 的调用可以由任意 Worker 处理。
"""

from .errors import (
    ReplError,
    EvaluationError,
    EngineFault,
    EncodeError,
    DecodeError,
    SessionStoreError,
)
from .models import EmptyInput, Success, Fault, PipelineStage, ReplConfig
from .session_store import SessionStore, InMemorySessionStore, FileSessionStore
from .interpreter_cache import WorkerInterpreterCache
from .pipeline import EvaluationPipeline

__all__ = [
    "ReplError",
    "EvaluationError",
    "EngineFault",
    "EncodeError",
    "DecodeError",
    "SessionStoreError",
    "EmptyInput",
    "Success",
    "Fault",
    "PipelineStage",
    "ReplConfig",
    "SessionStore",
    "InMemorySessionStore",
    "FileSessionStore",
    "WorkerInterpreterCache",
    "EvaluationPipeline",
]
