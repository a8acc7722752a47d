"""
Session 存储

按 Session token 保存不透明的状态块。load 和 save 之间不提供事务保证，
同一 Session 的并发写入以最后一次为准。
"""

import os
import time
import hashlib
import logging
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

from .errors import SessionStoreError
from .models import ReplConfig


class SessionStore(ABC):
    """Session 存储接口"""

    @abstractmethod
    def load(self, token: str) -> Optional[bytes]:
        """
        读取状态块

        Returns:
            状态块，不存在时返回 None

        Raises:
            SessionStoreError: 存储后端读取失败
        """

    @abstractmethod
    def save(self, token: str, blob: bytes) -> None:
        """
        保存状态块

        Raises:
            SessionStoreError: 存储后端写入失败
        """

    @abstractmethod
    def delete(self, token: str) -> None:
        """删除状态块（不存在时忽略）"""


class InMemorySessionStore(SessionStore):
    """
    内存存储

    同一进程内的所有 Worker 线程共享。超过 ttl_seconds 未访问的 Session 过期，
    ttl_seconds 为 0 时不过期。
    """

    def __init__(
        self,
        ttl_seconds: int = 1800,
        clock=time.monotonic,
        logger: Optional[logging.Logger] = None
    ):
        self.ttl_seconds = ttl_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._entries: Dict[str, Tuple[bytes, float]] = {}
        self._lock = threading.Lock()
        self._last_purge = clock()

    def _expired(self, last_used: float) -> bool:
        return self.ttl_seconds > 0 and self._clock() - last_used > self.ttl_seconds

    def load(self, token: str) -> Optional[bytes]:
        with self._lock:
            entry = self._entries.get(token)
            if entry is None:
                return None
            blob, last_used = entry
            if self._expired(last_used):
                del self._entries[token]
                self.logger.info(f"Session {token} expired")
                return None
            self._entries[token] = (blob, self._clock())
            return blob

    def save(self, token: str, blob: bytes) -> None:
        with self._lock:
            now = self._clock()
            self._entries[token] = (bytes(blob), now)
            # 每个 ttl 周期最多顺带清理一次
            if self.ttl_seconds > 0 and now - self._last_purge >= self.ttl_seconds:
                purged = self._purge_locked()
                self._last_purge = now
                if purged:
                    self.logger.info(f"Purged {purged} expired sessions")

    def delete(self, token: str) -> None:
        with self._lock:
            self._entries.pop(token, None)

    def _purge_locked(self) -> int:
        expired = [t for t, (_, used) in self._entries.items() if self._expired(used)]
        for token in expired:
            del self._entries[token]
        return len(expired)

    def purge_expired(self) -> int:
        """清理过期 Session，返回清理数量"""
        with self._lock:
            self._last_purge = self._clock()
            return self._purge_locked()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class FileSessionStore(SessionStore):
    """
    文件目录存储

    每个 Session 一个文件，文件名为 token 的 SHA-256。
    写入时先写临时文件再替换，多个 Worker 进程可以共享同一目录。
    """

    SUFFIX = ".state"

    def __init__(self, directory: str, logger: Optional[logging.Logger] = None):
        self.directory = directory
        self.logger = logger or logging.getLogger(__name__)
        os.makedirs(directory, exist_ok=True)

    def _path(self, token: str) -> str:
        digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
        return os.path.join(self.directory, digest + self.SUFFIX)

    def load(self, token: str) -> Optional[bytes]:
        path = self._path(token)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise SessionStoreError(f"Failed to read session state: {e}") from e

    def save(self, token: str, blob: bytes) -> None:
        path = self._path(token)
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(blob)
                os.replace(tmp_path, path)
                self.logger.debug(f"Wrote {len(blob)} bytes to {path}")
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise SessionStoreError(f"Failed to write session state: {e}") from e

    def delete(self, token: str) -> None:
        try:
            os.unlink(self._path(token))
        except FileNotFoundError:
            pass
        except OSError as e:
            raise SessionStoreError(f"Failed to delete session state: {e}") from e


def create_session_store(
    config: ReplConfig,
    logger: Optional[logging.Logger] = None
) -> SessionStore:
    """根据配置创建存储后端"""
    if config.store_backend == "memory":
        return InMemorySessionStore(ttl_seconds=config.session_ttl_seconds, logger=logger)
    if config.store_backend == "file":
        return FileSessionStore(config.store_path, logger=logger)
    raise ValueError(f"Unknown store backend: {config.store_backend}")
