"""
执行流水线

解析 -> 恢复 Session 状态 -> 执行 -> 保存 Session 状态 -> 返回输出。

只有执行错误会返回给调用方；状态读写的失败只记录日志，
Session 退化为全新状态或保留上一次的状态。
"""

import logging
from typing import Hashable, Optional

from .core.executor import IPythonExecutor, parse_script
from .core.output_capture import OutputCapture, OutputType
from .core.serializer import StateCodec
from .errors import DecodeError, EncodeError, EngineFault, EvaluationError, SessionStoreError
from .interpreter_cache import WorkerInterpreterCache
from .models import EmptyInput, EvaluationOutcome, Fault, PipelineStage, Success
from .session_store import SessionStore


class EvaluationPipeline:
    """
    执行流水线

    每次调用都从 SessionStore 恢复变量，因此同一 Session 的连续调用可以由
    不同的 Worker 处理。
    """

    def __init__(
        self,
        interpreters: WorkerInterpreterCache,
        store: SessionStore,
        codec: StateCodec,
        logger: Optional[logging.Logger] = None
    ):
        """
        初始化流水线

        Args:
            interpreters: Worker 解释器缓存
            store: Session 存储
            codec: 状态编解码器
            logger: 日志记录器
        """
        self.interpreters = interpreters
        self.store = store
        self.codec = codec
        self.logger = logger or logging.getLogger(__name__)

    def evaluate(
        self,
        token: str,
        script: str,
        worker_context: Optional[Hashable] = None
    ) -> str:
        """
        执行脚本并返回输出文本

        Args:
            token: Session token
            script: 脚本文本
            worker_context: Worker 标识，不指定则使用当前线程

        Returns:
            捕获的输出

        Raises:
            EvaluationError: 脚本执行出错
        """
        outcome = self.run(token, script, worker_context)

        if isinstance(outcome, Fault):
            raise EvaluationError(outcome.message, outcome.error_type)
        if isinstance(outcome, (Success, EmptyInput)):
            return outcome.output
        raise TypeError(f"Unexpected evaluation outcome: {outcome!r}")

    def run(
        self,
        token: str,
        script: str,
        worker_context: Optional[Hashable] = None
    ) -> EvaluationOutcome:
        """
        执行脚本并返回执行结果对象

        Returns:
            EmptyInput / Success / Fault 之一
        """
        stage = PipelineStage.IDLE

        try:
            parsed = parse_script(script)
        except EngineFault as e:
            self._transition(token, stage, PipelineStage.FAILED)
            self.logger.warning(f"Parse failed for session {token}: {e.message}")
            return Fault(e.message, e.error_type)

        if parsed is None:
            self._transition(token, stage, PipelineStage.PARSE_EMPTY)
            return EmptyInput()
        stage = self._transition(token, stage, PipelineStage.PARSED)

        interpreter = self.interpreters.get_or_create(worker_context)
        self._restore_state(token, interpreter)
        stage = self._transition(token, stage, PipelineStage.STATE_RESTORED)

        fault: Optional[EngineFault] = None
        visible = False
        with OutputCapture() as capture:
            try:
                value, visible = interpreter.evaluate(parsed)
                if visible:
                    # 相当于对结果调用默认的打印函数
                    capture.put_output(OutputType.TEXT, interpreter.render(value))
            except EngineFault as e:
                fault = e

        if fault is not None:
            self._transition(token, stage, PipelineStage.FAILED)
            self.logger.warning(f"Evaluation failed for session {token}: {fault.message}")
            return Fault(fault.message, fault.error_type)
        stage = self._transition(token, stage, PipelineStage.EXECUTED)

        stderr_chunks = [c for c in capture.chunks if c.type is OutputType.ERROR]
        if stderr_chunks:
            self.logger.debug(f"Session {token} wrote {len(stderr_chunks)} chunks to stderr")

        persisted = self._persist_state(token, interpreter)
        if persisted:
            stage = self._transition(token, stage, PipelineStage.STATE_PERSISTED)

        self._transition(token, stage, PipelineStage.RESPONDED)
        return Success(output=capture.getvalue(), visible=visible, state_persisted=persisted)

    def _transition(
        self,
        token: str,
        old_stage: PipelineStage,
        new_stage: PipelineStage
    ) -> PipelineStage:
        self.logger.debug(f"Session {token} stage: {old_stage.value} -> {new_stage.value}")
        return new_stage

    def _restore_state(self, token: str, interpreter: IPythonExecutor) -> int:
        """
        恢复 Session 变量

        先把解释器恢复到基线，避免上一个 Session 的变量泄漏到当前 Session。
        读取或解码失败时丢弃历史状态，按全新 Session 继续。

        Returns:
            恢复的变量数量
        """
        interpreter.reset_to_baseline()

        try:
            blob = self.store.load(token)
        except SessionStoreError as e:
            self.logger.warning(f"Could not load state for session {token}: {e}")
            return 0

        if blob is None:
            return 0

        try:
            bindings = self.codec.decode(blob)
        except DecodeError as e:
            self.logger.warning(f"Could not deserialize state for session {token}: {e}")
            self._discard_state(token)
            return 0

        for binding in bindings:
            interpreter.set_global_binding(binding.name, binding.value)

        self.logger.debug(f"Restored {len(bindings)} variables for session {token}")
        return len(bindings)

    def _discard_state(self, token: str):
        """删除无法解码的状态块"""
        try:
            self.store.delete(token)
        except SessionStoreError as e:
            self.logger.warning(f"Could not discard state for session {token}: {e}")

    def _persist_state(self, token: str, interpreter: IPythonExecutor) -> bool:
        """
        保存 Session 变量

        只保存数据类变量。编码或写入失败时只记录日志，
        存储中保留上一次成功保存的状态。

        Returns:
            是否保存成功
        """
        bindings = [b for b in interpreter.list_global_bindings() if b.is_persistable()]

        try:
            blob = self.codec.encode(bindings)
        except EncodeError as e:
            self.logger.warning(f"Failed to serialize globals for session {token}: {e}")
            return False

        try:
            self.store.save(token, blob)
        except SessionStoreError as e:
            self.logger.warning(f"Failed to save globals for session {token}: {e}")
            return False

        self.logger.info(f"{len(bindings)} variables saved, {len(blob)} bytes")
        return True
