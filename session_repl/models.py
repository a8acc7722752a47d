"""
数据模型

定义流水线阶段、执行结果和配置等数据结构。
"""

import os
from enum import Enum
from dataclasses import dataclass
from typing import Optional, Union


class PipelineStage(Enum):
    """单次调用的流水线阶段"""
    IDLE = "idle"
    PARSED = "parsed"
    STATE_RESTORED = "state_restored"
    EXECUTED = "executed"
    STATE_PERSISTED = "state_persisted"
    RESPONDED = "responded"
    PARSE_EMPTY = "parse_empty"     # 没有可执行的语句
    FAILED = "failed"               # 执行出错，不保存状态

    def is_terminal(self) -> bool:
        """是否为终止状态"""
        return self in (
            PipelineStage.RESPONDED,
            PipelineStage.PARSE_EMPTY,
            PipelineStage.FAILED,
        )


@dataclass(frozen=True)
class EmptyInput:
    """输入为空，返回空文本"""
    output: str = ""

    def to_dict(self) -> dict:
        # 没有执行任何语句，存储中的状态仍然是最新的
        return {"output": self.output, "visible": False, "state_persisted": True}


@dataclass(frozen=True)
class Success:
    """执行成功"""
    output: str
    visible: bool
    state_persisted: bool = True

    def to_dict(self) -> dict:
        return {
            "output": self.output,
            "visible": self.visible,
            "state_persisted": self.state_persisted,
        }


@dataclass(frozen=True)
class Fault:
    """执行失败"""
    message: str
    error_type: str = ""

    def to_dict(self) -> dict:
        return {"error_type": self.error_type, "message": self.message}


EvaluationOutcome = Union[EmptyInput, Success, Fault]


@dataclass
class ReplConfig:
    """
    REPL 服务配置

    从 config.yaml 中加载，未配置的项使用默认值。
    """
    log_level: str = "INFO"
    cookie_name: str = "REPL_SESSION"
    preload_code: str = "import numpy as np\nimport pandas as pd\n"
    store_backend: str = "memory"
    store_path: str = ".repl_sessions"
    session_ttl_seconds: int = 1800
    secret_key: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 9000

    @classmethod
    def from_dict(cls, config: dict) -> "ReplConfig":
        """从字典创建配置"""
        defaults = cls()
        return cls(
            log_level=str(config.get("log_level", defaults.log_level)).upper(),
            cookie_name=config.get("cookie_name", defaults.cookie_name),
            preload_code=config.get("preload_code", defaults.preload_code) or "",
            store_backend=config.get("store_backend", defaults.store_backend),
            store_path=config.get("store_path", defaults.store_path),
            session_ttl_seconds=int(
                config.get("session_ttl_seconds", defaults.session_ttl_seconds)
            ),
            secret_key=config.get("secret_key", defaults.secret_key),
            host=config.get("host", defaults.host),
            port=int(config.get("port", defaults.port)),
        )

    @classmethod
    def load_from_config(cls, path: Optional[str] = None) -> "ReplConfig":
        """从项目配置文件加载"""
        from session_repl.config import get_config
        config = get_config(path)
        repl_config = dict(config.get("repl", {}))

        # 密钥允许通过环境变量提供，避免写入配置文件
        env_key = os.environ.get("SESSION_REPL_SECRET_KEY")
        if env_key:
            repl_config["secret_key"] = env_key

        return cls.from_dict(repl_config)
