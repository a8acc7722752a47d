"""
EvaluationPipeline 测试

覆盖状态连续性、Session 隔离、损坏状态容错、变量过滤、可见性等行为。
"""

import logging
import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from session_repl.core.executor import IPythonExecutor
from session_repl.core.serializer import StateCodec
from session_repl.errors import EvaluationError, SessionStoreError
from session_repl.interpreter_cache import WorkerInterpreterCache
from session_repl.models import EmptyInput, Fault, PipelineStage, Success
from session_repl.pipeline import EvaluationPipeline
from session_repl.session_store import InMemorySessionStore


class FailingStore(InMemorySessionStore):
    """可以模拟读写失败的存储"""

    def __init__(self):
        super().__init__(ttl_seconds=0)
        self.fail_load = False
        self.fail_save = False
        self.fail_delete = False

    def load(self, token):
        if self.fail_load:
            raise SessionStoreError("backend unavailable")
        return super().load(token)

    def save(self, token, blob):
        if self.fail_save:
            raise SessionStoreError("backend unavailable")
        super().save(token, blob)

    def delete(self, token):
        if self.fail_delete:
            raise SessionStoreError("backend unavailable")
        super().delete(token)


@pytest.fixture
def store():
    return FailingStore()


@pytest.fixture
def codec():
    return StateCodec()


@pytest.fixture
def pipeline(store, codec):
    interpreters = WorkerInterpreterCache(lambda: IPythonExecutor(preload_code=""))
    return EvaluationPipeline(interpreters, store, codec)


def stored_bindings(store, codec, token):
    """读取存储中的变量为字典"""
    return {b.name: b.value for b in codec.decode(store.load(token))}


class TestContinuity:
    """状态连续性测试"""

    def test_state_continues_on_same_worker(self, pipeline):
        """测试同一 Worker 上状态连续"""
        assert pipeline.evaluate("s", "x = 5", worker_context="w1") == ""
        assert pipeline.evaluate("s", "print(x)", worker_context="w1") == "5\n"

    def test_state_continues_on_different_worker(self, pipeline):
        """测试换一个 Worker 执行仍能看到之前的变量"""
        pipeline.evaluate("s", "x = 5", worker_context="w1")

        assert pipeline.evaluate("s", "print(x)", worker_context="w2") == "5\n"
        assert len(pipeline.interpreters) == 2

    def test_updates_are_carried_forward(self, pipeline):
        """测试每次调用都能看到上一次调用的结果"""
        pipeline.evaluate("s", "counter = 0", worker_context="w1")
        pipeline.evaluate("s", "counter += 1", worker_context="w2")
        pipeline.evaluate("s", "counter += 1", worker_context="w1")

        assert pipeline.evaluate("s", "counter", worker_context="w2") == "2\n"

    def test_dataframe_continuity(self, pipeline):
        """测试 DataFrame 跨 Worker 保持"""
        pipeline.evaluate(
            "s",
            "import pandas as pd\ndf = pd.DataFrame({'a': [1, 2, 3]})",
            worker_context="w1"
        )

        output = pipeline.evaluate("s", "int(df['a'].sum())", worker_context="w2")

        assert output == "6\n"


class TestIsolation:
    """Session 隔离测试"""

    def test_other_session_cannot_see_variable(self, pipeline):
        """测试 Session A 的变量在 Session B 中不可见"""
        pipeline.evaluate("a", "x = 5", worker_context="w1")

        with pytest.raises(EvaluationError, match="NameError"):
            pipeline.evaluate("b", "print(x)", worker_context="w1")

    def test_other_session_cannot_see_variable_on_other_worker(self, pipeline):
        """测试不同 Worker 上同样隔离"""
        pipeline.evaluate("a", "x = 5", worker_context="w1")

        with pytest.raises(EvaluationError, match="NameError"):
            pipeline.evaluate("b", "x", worker_context="w2")

    def test_interleaved_sessions(self, pipeline):
        """测试两个 Session 在同一 Worker 上交替执行"""
        pipeline.evaluate("a", "x = 'from a'", worker_context="w1")
        pipeline.evaluate("b", "x = 'from b'", worker_context="w1")

        assert pipeline.evaluate("a", "print(x)", worker_context="w1") == "from a\n"
        assert pipeline.evaluate("b", "print(x)", worker_context="w1") == "from b\n"

    def test_mutated_preload_data_not_shared(self, store, codec):
        """测试一个 Session 原地修改预加载的数据，其他 Session 看不到"""
        interpreters = WorkerInterpreterCache(lambda: IPythonExecutor(preload_code="cfg = {}"))
        pipeline = EvaluationPipeline(interpreters, store, codec)

        pipeline.evaluate("a", "cfg['secret'] = 1", worker_context="w1")

        assert pipeline.evaluate("b", "cfg", worker_context="w1") == "{}\n"
        assert pipeline.evaluate("a", "cfg", worker_context="w1") == "{'secret': 1}\n"


class TestVisibility:
    """可见性测试"""

    def test_assignment_produces_no_output(self, pipeline):
        """测试赋值语句没有输出"""
        outcome = pipeline.run("s", "x = 5", worker_context="w1")

        assert isinstance(outcome, Success)
        assert outcome.output == ""
        assert outcome.visible is False

    def test_expression_is_rendered(self, pipeline):
        """测试表达式结果被自动打印"""
        outcome = pipeline.run("s", "x = 5\nx + 1", worker_context="w1")

        assert outcome.output == "6\n"
        assert outcome.visible is True

    def test_print_output(self, pipeline):
        """测试 print 的输出非空并包含值"""
        output = pipeline.evaluate("s", "print('hello', 42)", worker_context="w1")
        assert output == "hello 42\n"

    def test_print_then_render_order(self, pipeline):
        """测试 print 输出在自动打印结果之前"""
        output = pipeline.evaluate("s", "print('first')\n'second'", worker_context="w1")
        assert output == "first\n'second'\n"

    def test_silenced_expression(self, pipeline):
        """测试分号结尾的表达式不输出"""
        assert pipeline.evaluate("s", "1 + 1;", worker_context="w1") == ""

    def test_stderr_is_captured(self, pipeline, caplog):
        """测试 stderr 输出也被捕获，并记录日志"""
        with caplog.at_level(logging.DEBUG, logger="session_repl.pipeline"):
            output = pipeline.evaluate(
                "s", "import sys\nsys.stderr.write('warn\\n')\nNone", worker_context="w1"
            )

        assert output == "warn\n"
        assert "wrote 1 chunks to stderr" in caplog.text


class TestEmptyInput:
    """空输入测试"""

    @pytest.mark.parametrize("script", ["", "   \n\t", "# only a comment"])
    def test_empty_input(self, pipeline, store, script):
        """测试空输入返回空文本且不读写存储"""
        outcome = pipeline.run("s", script, worker_context="w1")

        assert isinstance(outcome, EmptyInput)
        assert pipeline.evaluate("s", script, worker_context="w1") == ""
        assert store.load("s") is None
        assert len(pipeline.interpreters) == 0


class TestFailedEvaluation:
    """执行失败测试"""

    def test_error_message(self, pipeline):
        """测试错误信息包含异常类型和内容"""
        with pytest.raises(EvaluationError) as exc_info:
            pipeline.evaluate("s", "raise ValueError('boom')", worker_context="w1")

        assert exc_info.value.message == "ValueError: boom"
        assert exc_info.value.error_type == "ValueError"

    def test_syntax_error(self, pipeline, store):
        """测试语法错误作为执行错误返回，且不触碰存储"""
        outcome = pipeline.run("s", "def broken(", worker_context="w1")

        assert isinstance(outcome, Fault)
        assert outcome.error_type == "SyntaxError"
        assert store.load("s") is None

    @pytest.mark.parametrize("script", ["return 5", "x = 1\nbreak", "await foo()"])
    def test_compile_error_is_evaluation_error(self, pipeline, store, script):
        """测试编译阶段才发现的语法错误同样作为执行错误返回"""
        with pytest.raises(EvaluationError, match="SyntaxError") as exc_info:
            pipeline.evaluate("s", script, worker_context="w1")

        assert exc_info.value.error_type == "SyntaxError"
        assert store.load("s") is None

    @pytest.mark.parametrize("script, error_type", [
        ("raise KeyboardInterrupt", "KeyboardInterrupt"),
        ("raise BaseException('boom')", "BaseException"),
    ])
    def test_base_exception_is_evaluation_error(self, pipeline, store, codec, script, error_type):
        """测试非 Exception 的异常同样作为执行错误返回，状态保持不变"""
        pipeline.evaluate("s", "x = 5", worker_context="w1")

        with pytest.raises(EvaluationError) as exc_info:
            pipeline.evaluate("s", f"x = 6\n{script}", worker_context="w1")

        assert exc_info.value.error_type == error_type
        assert stored_bindings(store, codec, "s") == {"x": 5}

    def test_failed_evaluation_leaves_state_untouched(self, pipeline, store, codec):
        """测试执行失败后存储中仍是上一次成功的状态"""
        pipeline.evaluate("s", "x = 5", worker_context="w1")
        blob_before = store.load("s")

        with pytest.raises(EvaluationError):
            pipeline.evaluate("s", "x = 6\ny = 1\nraise RuntimeError('fail')", worker_context="w1")

        assert store.load("s") == blob_before
        assert stored_bindings(store, codec, "s") == {"x": 5}

    def test_next_call_sees_previous_state(self, pipeline):
        """测试失败后的下一次调用看到失败前的状态"""
        pipeline.evaluate("s", "x = 5", worker_context="w1")
        with pytest.raises(EvaluationError):
            pipeline.evaluate("s", "x = 6\nraise RuntimeError('fail')", worker_context="w1")

        assert pipeline.evaluate("s", "x", worker_context="w2") == "5\n"


class TestPersistenceFilter:
    """可持久化变量过滤测试"""

    def test_only_data_bindings_are_stored(self, pipeline, store, codec):
        """测试函数、模块等不会写入状态块"""
        pipeline.evaluate(
            "s",
            "import math\n"
            "def helper():\n"
            "    return 1\n"
            "class Point:\n"
            "    pass\n"
            "p = Point()\n"
            "x = 5\n"
            "name = 'data'\n",
            worker_context="w1"
        )

        assert stored_bindings(store, codec, "s") == {"x": 5, "name": "data"}

    def test_callable_absent_after_restore(self, pipeline):
        """测试恢复后函数不存在"""
        pipeline.evaluate("s", "def helper():\n    return 1\nx = 5", worker_context="w1")

        with pytest.raises(EvaluationError, match="NameError"):
            pipeline.evaluate("s", "helper()", worker_context="w2")
        assert pipeline.evaluate("s", "x", worker_context="w2") == "5\n"

    def test_definition_order_preserved(self, pipeline, store, codec):
        """测试状态块中的变量按定义顺序排列"""
        pipeline.evaluate("s", "b = 1\na = 2\nc = 3", worker_context="w1")

        names = [b.name for b in codec.decode(store.load("s"))]

        assert names == ["b", "a", "c"]


class TestCorruptionResilience:
    """损坏状态容错测试"""

    @pytest.mark.parametrize("blob", [
        b"",
        b"\x00\x01\x02",
        b"random bytes that are not a state blob at all",
        b"SRPL\x01\x00\x00\x00\x00\x05",
    ])
    def test_corrupt_blob_treated_as_fresh(self, pipeline, store, codec, blob):
        """测试损坏的状态块被当作没有历史状态"""
        store.save("s", blob)

        outcome = pipeline.run("s", "y = 1\ny", worker_context="w1")

        assert isinstance(outcome, Success)
        assert outcome.output == "1\n"
        assert stored_bindings(store, codec, "s") == {"y": 1}

    def test_truncated_blob(self, pipeline, store, codec):
        """测试截断的状态块"""
        pipeline.evaluate("s", "x = 5\ny = 'abc'", worker_context="w1")
        store.save("s", store.load("s")[:-3])

        with pytest.raises(EvaluationError, match="NameError"):
            pipeline.evaluate("s", "x", worker_context="w2")

    def test_corrupt_blob_discarded(self, pipeline, store, caplog):
        """测试无法解码的状态块被删除并记录日志"""
        store.save("s", b"garbage")

        with caplog.at_level(logging.WARNING):
            with pytest.raises(EvaluationError):
                pipeline.evaluate("s", "undefined_name", worker_context="w1")

        assert store.load("s") is None
        assert "Could not deserialize state" in caplog.text

    def test_discard_failure_is_absorbed(self, pipeline, store):
        """测试删除损坏状态失败时不影响执行"""
        store.save("s", b"garbage")
        store.fail_delete = True

        assert pipeline.evaluate("s", "1 + 1", worker_context="w1") == "2\n"

    def test_foreign_key_blob_treated_as_fresh(self, store):
        """测试其他密钥加密的状态块被当作没有历史状态"""
        from cryptography.fernet import Fernet

        interpreters = WorkerInterpreterCache(lambda: IPythonExecutor(preload_code=""))
        writer = EvaluationPipeline(interpreters, store, StateCodec(Fernet.generate_key()))
        reader = EvaluationPipeline(interpreters, store, StateCodec(Fernet.generate_key()))

        writer.evaluate("s", "x = 5", worker_context="w1")

        with pytest.raises(EvaluationError, match="NameError"):
            reader.evaluate("s", "x", worker_context="w1")


class TestStoreFailures:
    """存储失败测试"""

    def test_load_failure_proceeds_fresh(self, pipeline, store):
        """测试读取失败时按全新 Session 执行"""
        pipeline.evaluate("s", "x = 5", worker_context="w1")
        store.fail_load = True

        assert pipeline.evaluate("s", "y = 2\ny", worker_context="w1") == "2\n"
        with pytest.raises(EvaluationError, match="NameError"):
            pipeline.evaluate("s", "x", worker_context="w1")

    def test_save_failure_still_returns_output(self, pipeline, store, codec):
        """测试写入失败时仍返回输出，但状态未更新"""
        pipeline.evaluate("s", "x = 5", worker_context="w1")
        store.fail_save = True

        outcome = pipeline.run("s", "x = 6\nprint('done')", worker_context="w1")

        assert isinstance(outcome, Success)
        assert outcome.output == "done\n"
        assert outcome.state_persisted is False

        store.fail_save = False
        assert stored_bindings(store, codec, "s") == {"x": 5}

    def test_encode_failure_still_returns_output(self, pipeline, store, codec):
        """测试编码失败时仍返回输出，存储保留上一次的状态"""
        pipeline.evaluate("s", "x = 5", worker_context="w1")

        outcome = pipeline.run("s", "items = [lambda: 1]\n'ok'", worker_context="w1")

        assert isinstance(outcome, Success)
        assert outcome.output == "'ok'\n"
        assert outcome.state_persisted is False
        assert stored_bindings(store, codec, "s") == {"x": 5}

    def test_successful_call_reports_persisted(self, pipeline):
        """测试成功保存时 state_persisted 为 True"""
        outcome = pipeline.run("s", "x = 1", worker_context="w1")
        assert outcome.state_persisted is True


class TestPipelineStage:
    """流水线阶段测试"""

    def test_terminal_stages(self):
        assert PipelineStage.RESPONDED.is_terminal()
        assert PipelineStage.PARSE_EMPTY.is_terminal()
        assert PipelineStage.FAILED.is_terminal()
        assert not PipelineStage.PARSED.is_terminal()

    def test_transitions_logged(self, pipeline, caplog):
        """测试阶段转换记录在 debug 日志中"""
        with caplog.at_level(logging.DEBUG, logger="session_repl.pipeline"):
            pipeline.evaluate("s", "x = 1", worker_context="w1")

        assert "idle -> parsed" in caplog.text
        assert "executed -> state_persisted" in caplog.text
        assert "state_persisted -> responded" in caplog.text


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
