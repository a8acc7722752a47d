"""
IPython 执行引擎

提供脚本解析、执行、结果渲染和全局变量读写等功能。
每个 Worker 持有一个独立的执行器实例。
"""

import ast
import copy
import logging
from types import CodeType, ModuleType
from typing import Any, Dict, Optional, Set, Tuple, List
from dataclasses import dataclass

from IPython.core.displayhook import DisplayHook
from IPython.core.interactiveshell import InteractiveShell
from IPython.core.inputtransformer2 import TransformerManager
from traitlets.config import Config

from ..errors import EngineFault
from .serializer import Binding, BindingKind, classify_value

SCRIPT_FILENAME = "<repl>"

_MISSING = object()


@dataclass
class ParsedScript:
    """解析后的脚本"""
    source: str
    body: Optional[CodeType]
    last_expr: Optional[CodeType]
    silenced: bool = False


def _syntax_fault(e: Exception) -> EngineFault:
    line = getattr(e, "lineno", None)
    detail = getattr(e, "msg", None) or str(e)
    message = f"SyntaxError: {detail}" + (f" (line {line})" if line else "")
    return EngineFault(message, "SyntaxError")


def parse_script(code: str) -> Optional[ParsedScript]:
    """
    解析脚本

    先经过 IPython 的输入转换（%magic、!shell 等），再编译为 Python 代码。
    脚本以表达式结尾时，最后一个表达式单独编译，以便取得它的值。

    Args:
        code: 脚本文本

    Returns:
        解析结果；没有任何可执行语句时返回 None

    Raises:
        EngineFault: 语法错误（包括 ast 接受但编译器拒绝的语句，如顶层 return）
    """
    if not code or not code.strip():
        return None

    try:
        source = TransformerManager().transform_cell(code)
        tree = ast.parse(source, filename=SCRIPT_FILENAME, mode="exec")
        if not tree.body:
            return None

        last_expr = None
        if isinstance(tree.body[-1], ast.Expr):
            last = tree.body.pop()
            last_expr = compile(ast.Expression(body=last.value), SCRIPT_FILENAME, "eval")

        body = compile(tree, SCRIPT_FILENAME, "exec") if tree.body else None
    except (SyntaxError, ValueError) as e:
        raise _syntax_fault(e) from e

    return ParsedScript(
        source=source,
        body=body,
        last_expr=last_expr,
        silenced=(
            last_expr is not None
            and DisplayHook.semicolon_at_end_of_expression(source)
        ),
    )


class IPythonExecutor:
    """
    IPython 代码执行器

    特性:
    - 状态保持：变量保存在 shell 的用户命名空间中
    - 基线重置：切换 Session 前恢复到预加载后的命名空间
    - 脏变量清理：执行失败时回滚新增变量
    """

    # 内置变量，不参与持久化
    BUILTIN_VARS = {
        '__name__', '__doc__', '__package__', '__loader__', '__spec__',
        '__builtins__', '__builtin__', '_ih', '_oh', '_dh',
        'In', 'Out', 'get_ipython', 'exit', 'quit',
        '_', '__', '___', '_i', '_ii', '_iii',
    }

    def __init__(self, preload_code: str = "", logger: Optional[logging.Logger] = None):
        """
        初始化 IPython 执行器

        Args:
            preload_code: 启动时预执行的代码
            logger: 日志记录器
        """
        self.logger = logger or logging.getLogger(__name__)
        self.execution_count = 0

        # 历史记录只保存在内存中，避免多个实例争用同一个 sqlite 文件
        config = Config()
        config.HistoryManager.hist_file = ':memory:'

        # 创建独立的 InteractiveShell 实例（不使用单例），
        # 使用独立的用户模块，不替换进程的 __main__
        self.shell = InteractiveShell(
            config=config,
            user_module=ModuleType("__repl__", doc="REPL user namespace")
        )

        self._preload_libraries(preload_code)

        # 预加载完成后的命名空间作为基线
        self._baseline = dict(self.user_ns)
        # 数据类基线变量可能被原地修改，保存副本，每次重置时重新安装
        self._baseline_data = self._snapshot_data(self._baseline)

    def _preload_libraries(self, preload_code: str):
        """预加载常用库"""
        if not preload_code.strip():
            return
        try:
            parsed = parse_script(preload_code)
            if parsed is not None:
                self.evaluate(parsed)
        except EngineFault as e:
            self.logger.warning(f"Preload failed: {e.message}")

    @property
    def user_ns(self) -> dict:
        """获取用户命名空间"""
        return self.shell.user_ns

    @property
    def user_global_ns(self) -> dict:
        """获取用户全局命名空间"""
        return self.shell.user_global_ns

    def evaluate(self, parsed: ParsedScript) -> Tuple[Any, bool]:
        """
        执行解析后的脚本

        Args:
            parsed: 解析结果

        Returns:
            (最后一个表达式的值, 是否需要自动打印)

        Raises:
            EngineFault: 执行过程中抛出异常
        """
        keys_before = self._get_current_keys()
        self.execution_count += 1

        try:
            if parsed.body is not None:
                exec(parsed.body, self.user_global_ns, self.user_ns)
            if parsed.last_expr is None:
                return None, False
            value = eval(parsed.last_expr, self.user_global_ns, self.user_ns)
        except BaseException as e:
            # KeyboardInterrupt、SystemExit 同样作为脚本错误
            self._cleanup_dirty_variables(keys_before)
            raise EngineFault(f"{type(e).__name__}: {e}", type(e).__name__) from e

        visible = value is not None and not parsed.silenced
        return value, visible

    def render(self, value: Any) -> str:
        """
        使用 IPython 的纯文本格式化器渲染值

        Args:
            value: 要渲染的值

        Returns:
            渲染后的文本（以换行结尾）
        """
        try:
            format_dict, _ = self.shell.display_formatter.format(
                value, include={'text/plain'}
            )
            text = format_dict.get('text/plain')
            if text is None:
                text = repr(value)
        except BaseException as e:
            raise EngineFault(f"{type(e).__name__}: {e}", type(e).__name__) from e

        return text if text.endswith("\n") else text + "\n"

    def set_global_binding(self, name: str, value: Any):
        """设置用户命名空间中的变量（覆盖同名变量）"""
        self.user_ns[name] = value

    def _is_user_name(self, name: str) -> bool:
        return (
            name not in self.shell.user_ns_hidden
            and name not in self.BUILTIN_VARS
            and not (name.startswith('__') and name.endswith('__'))
        )

    def list_global_bindings(self) -> List[Binding]:
        """
        列出用户定义的变量

        Returns:
            按定义顺序排列的变量列表（排除内置和 IPython 隐藏变量）
        """
        return [
            Binding(name, value)
            for name, value in self.user_ns.items()
            if self._is_user_name(name)
        ]

    def _snapshot_data(self, namespace: dict) -> Dict[str, Any]:
        """复制命名空间中的数据类变量"""
        snapshot = {}
        for name, value in namespace.items():
            if not self._is_user_name(name) or classify_value(value) is not BindingKind.DATA:
                continue
            try:
                snapshot[name] = copy.deepcopy(value)
            except (TypeError, copy.Error) as e:
                self.logger.warning(
                    f"Preloaded variable {name} cannot be copied and is shared across sessions: {e}"
                )
        return snapshot

    def _get_current_keys(self) -> Set[str]:
        """获取当前命名空间的键集合"""
        return set(self.user_ns.keys())

    def _cleanup_dirty_variables(self, keys_before: Set[str]):
        """
        清理脏变量（执行失败时回滚新增的变量）

        Args:
            keys_before: 执行前的键集合
        """
        new_keys = self._get_current_keys() - keys_before

        for key in new_keys:
            if key not in self.BUILTIN_VARS:
                self.user_ns.pop(key, None)

    def reset_to_baseline(self):
        """
        恢复到预加载完成后的命名空间

        删除之后新增的变量，并还原被覆盖的基线变量。
        数据类基线变量每次都安装新的副本，原地修改不会带到下一个 Session。
        """
        ns = self.user_ns
        for key in list(ns.keys()):
            if key not in self._baseline:
                del ns[key]
        for key, value in self._baseline.items():
            if key in self._baseline_data:
                ns[key] = copy.deepcopy(self._baseline_data[key])
            elif ns.get(key, _MISSING) is not value:
                ns[key] = value
