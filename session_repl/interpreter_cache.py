"""
Worker 解释器缓存

维护 Worker 标识到解释器实例的映射。每个 Worker 首次使用时创建解释器，
之后一直复用，避免每个请求都支付启动开销。
"""

import logging
import threading
import weakref
from typing import Callable, Dict, Hashable, Optional

from .core.executor import IPythonExecutor


def current_worker_id() -> threading.Thread:
    """默认的 Worker 标识：当前线程"""
    return threading.current_thread()


class WorkerInterpreterCache:
    """
    Worker 解释器缓存

    以线程为标识的解释器随线程对象一起释放（线程池会回收空闲线程）；
    其他标识的解释器一直保留到 clear()。
    每个条目只被对应的 Worker 访问，因此不需要加锁。
    """

    def __init__(
        self,
        factory: Callable[[], IPythonExecutor],
        logger: Optional[logging.Logger] = None
    ):
        """
        初始化缓存

        Args:
            factory: 创建解释器实例的工厂函数
            logger: 日志记录器
        """
        self._factory = factory
        self._interpreters: Dict[Hashable, IPythonExecutor] = {}
        self._thread_interpreters = weakref.WeakKeyDictionary()
        self.logger = logger or logging.getLogger(__name__)

    def _entries_for(self, worker_context: Hashable):
        if isinstance(worker_context, threading.Thread):
            return self._thread_interpreters
        return self._interpreters

    def get_or_create(self, worker_context: Optional[Hashable] = None) -> IPythonExecutor:
        """
        获取 Worker 的解释器，不存在时创建

        Args:
            worker_context: Worker 标识，不指定则使用当前线程

        Returns:
            该 Worker 独占的解释器实例
        """
        if worker_context is None:
            worker_context = current_worker_id()

        entries = self._entries_for(worker_context)
        interpreter = entries.get(worker_context)
        if interpreter is None:
            self.logger.info(f"Creating interpreter for worker {worker_context}")
            interpreter = self._factory()
            entries[worker_context] = interpreter
        return interpreter

    def __contains__(self, worker_context: Hashable) -> bool:
        return worker_context in self._entries_for(worker_context)

    def __len__(self) -> int:
        return len(self._interpreters) + len(self._thread_interpreters)

    def clear(self):
        """进程关闭时释放所有解释器"""
        count = len(self)
        self._interpreters.clear()
        self._thread_interpreters.clear()
        self.logger.info(f"Released {count} interpreters")
