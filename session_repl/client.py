"""
REPL 客户端

通过 HTTP 调用 REPL Worker，在多次调用之间保持 Session token。
"""

import logging
from typing import Optional

import httpx

from .errors import EvaluationError
from .main import SESSION_HEADER

logger = logging.getLogger(__name__)


class ReplClient:
    """
    REPL 客户端

    使用方式:
        with ReplClient("http://localhost:9000") as client:
            client.evaluate("x = 5")
            client.evaluate("print(x)")   # -> "5\\n"
    """

    def __init__(
        self,
        base_url: str = "http://localhost:9000",
        session_id: Optional[str] = None,
        timeout: float = 300.0,
        http_client: Optional[httpx.Client] = None
    ):
        """
        初始化客户端

        Args:
            base_url: Worker 地址
            session_id: 已有的 Session token（可选）
            timeout: 请求超时时间（秒）
            http_client: 自定义 httpx 客户端（可选）
        """
        self.session_id = session_id
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(connect=10.0, read=timeout, write=10.0, pool=10.0)
        )

    def _headers(self) -> dict:
        return {SESSION_HEADER: self.session_id} if self.session_id else {}

    def evaluate(self, script: str) -> str:
        """
        执行脚本

        Args:
            script: 脚本文本

        Returns:
            输出文本

        Raises:
            EvaluationError: 脚本执行出错
            httpx.HTTPStatusError: 其他 HTTP 错误
        """
        response = self._client.post("/eval", json={"script": script}, headers=self._headers())

        if response.status_code == 400:
            data = response.json()
            self.session_id = data.get("session_id", self.session_id)
            raise EvaluationError(data.get("message", ""), data.get("error_type", ""))

        response.raise_for_status()
        data = response.json()
        self.session_id = data["session_id"]

        if not data.get("state_persisted", True):
            logger.warning(f"Session {self.session_id} state was not persisted")
        return data["output"]

    def reset(self) -> bool:
        """清空当前 Session 的变量"""
        if not self.session_id:
            return True
        response = self._client.delete("/session", headers=self._headers())
        response.raise_for_status()
        return response.json()["success"]

    def health(self) -> dict:
        """健康检查"""
        response = self._client.get("/health")
        response.raise_for_status()
        return response.json()

    def close(self):
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
