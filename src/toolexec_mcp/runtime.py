"""Script execution engine: restricted scope, deadline race, bounded result."""

from __future__ import annotations

import ast
import asyncio
import json
import logging
import traceback
import types
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from toolexec_common.errors import ExecutionTimeout
from toolexec_mcp.broker import ConnectionBroker
from toolexec_mcp.constants import DEFAULT_TIMEOUT_MS, LOG_PREVIEW_ENTRIES, MAX_LOG_CHARS
from toolexec_mcp.proxies import build_proxies
from toolexec_mcp.workspace import ScriptWorkspace, Workspace

logger = logging.getLogger(__name__)

SCRIPT_FILENAME = "<script>"

_SCRIPT_FN = "__script__"
_WRAPPER_SOURCE = f"async def {_SCRIPT_FN}():\n    pass\n"

_SAFE_BUILTINS: Dict[str, Any] = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "dict": dict,
    "divmod": divmod,
    "enumerate": enumerate,
    "filter": filter,
    "float": float,
    "format": format,
    "frozenset": frozenset,
    "hasattr": hasattr,
    "int": int,
    "isinstance": isinstance,
    "iter": iter,
    "len": len,
    "list": list,
    "map": map,
    "max": max,
    "min": min,
    "next": next,
    "pow": pow,
    "range": range,
    "repr": repr,
    "reversed": reversed,
    "round": round,
    "set": set,
    "slice": slice,
    "sorted": sorted,
    "str": str,
    "sum": sum,
    "tuple": tuple,
    "zip": zip,
    "Exception": Exception,
    "ArithmeticError": ArithmeticError,
    "AttributeError": AttributeError,
    "IndexError": IndexError,
    "KeyError": KeyError,
    "LookupError": LookupError,
    "NotImplementedError": NotImplementedError,
    "RuntimeError": RuntimeError,
    "StopIteration": StopIteration,
    "TypeError": TypeError,
    "ValueError": ValueError,
    "ZeroDivisionError": ZeroDivisionError,
}

# Names the engine binds itself; a service with one of these names is only reachable via ``services``.
RESERVED_NAMES = frozenset({"console", "print", "workspace", "services", "json", "sleep", "gather"})


class SandboxConsole:
    """Captures script output in call order."""

    def __init__(self) -> None:
        self.logs: List[Any] = []

    def log(self, *args: Any) -> None:
        self.logs.append(args[0] if len(args) == 1 else list(args))

    def _leveled(self, level: str, args: tuple) -> None:
        self.logs.append({"level": level, "data": list(args)})

    def info(self, *args: Any) -> None:
        self._leveled("info", args)

    def warn(self, *args: Any) -> None:
        self._leveled("warn", args)

    warning = warn

    def error(self, *args: Any) -> None:
        self._leveled("error", args)

    def debug(self, *args: Any) -> None:
        self._leveled("debug", args)


@dataclass
class ExecutionResult:
    logs: List[Any] = field(default_factory=list)
    error: Optional[str] = None
    stack: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"logs": self.logs}
        if self.error is not None:
            out["error"] = self.error
        if self.stack is not None:
            out["stack"] = self.stack
        return out


def summarise_logs(logs: List[Any], max_chars: int = MAX_LOG_CHARS) -> List[Any]:
    """Return ``logs`` unchanged if they fit ``max_chars`` once serialized, else one summary record."""
    serialized = json.dumps(logs, ensure_ascii=False, default=str)
    if len(serialized) <= max_chars:
        return logs

    return [
        {
            "summary": True,
            "totalLogs": len(logs),
            "totalChars": len(serialized),
            "limit": max_chars,
            "preview": logs[:LOG_PREVIEW_ENTRIES],
            "hint": "Use workspace.write() to save large outputs, then read on demand.",
        }
    ]


class _PrivateAttributeGuard(ast.NodeVisitor):
    """Rejects ``obj._name`` and ``obj.__dunder__``; bound objects keep their state there."""

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_"):
            raise SyntaxError(
                f"access to private attribute {node.attr!r} is not allowed",
                (SCRIPT_FILENAME, node.lineno, node.col_offset + 1, None),
            )
        self.generic_visit(node)


def compile_script(code: str) -> types.CodeType:
    """
    Compile ``code`` as the body of ``async def __script__()``.

    Working on the AST keeps the caller's line numbers and leaves
    multi-line string literals untouched. Private attribute access is
    rejected here, before anything runs.
    """
    body = compile(
        code,
        SCRIPT_FILENAME,
        "exec",
        flags=ast.PyCF_ONLY_AST | ast.PyCF_ALLOW_TOP_LEVEL_AWAIT,
        dont_inherit=True,
    )
    _PrivateAttributeGuard().visit(body)
    wrapper = ast.parse(_WRAPPER_SOURCE, filename=SCRIPT_FILENAME)
    if body.body:
        wrapper.body[0].body = body.body
    ast.fix_missing_locations(wrapper)
    return compile(wrapper, SCRIPT_FILENAME, "exec", dont_inherit=True)


def _format_stack(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class ScriptEngine:
    """
    Runs caller-supplied scripts against the configured services.

    Each run gets a fresh console, fresh proxies and an explicit globals table
    (restricted builtins plus the bindings below); nothing from this module's
    namespace is reachable by name.

    Deadline semantics: the script task is raced against the timeout and is NOT
    cancelled when the timeout wins. Remote calls already issued may still land
    afterwards; the late outcome is logged and discarded.
    """

    def __init__(
        self,
        broker: ConnectionBroker,
        workspace: Workspace,
        *,
        max_log_chars: int = MAX_LOG_CHARS,
    ) -> None:
        self._broker = broker
        self._workspace = workspace
        self._max_log_chars = max_log_chars
        self._overdue: Set[asyncio.Task] = set()

    @property
    def overdue(self) -> int:
        """Timed-out scripts that are still running."""
        return len(self._overdue)

    def build_scope(self, console: SandboxConsole) -> Dict[str, Any]:
        builtins = dict(_SAFE_BUILTINS)
        builtins["print"] = console.log

        proxies = build_proxies(self._broker, self._workspace)
        scope: Dict[str, Any] = {
            "__builtins__": builtins,
            "__name__": "__sandbox__",
            "console": console,
            "print": console.log,
            "workspace": ScriptWorkspace(self._workspace),
            "services": dict(proxies),
            "json": types.SimpleNamespace(dumps=json.dumps, loads=json.loads),
            "sleep": asyncio.sleep,
            "gather": asyncio.gather,
        }
        for name, proxy in proxies.items():
            if name in RESERVED_NAMES or not name.isidentifier():
                logger.debug("Service %s is only reachable as services[%r]", name, name)
                continue
            scope[name] = proxy
        return scope

    async def execute(self, code: str, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> ExecutionResult:
        console = SandboxConsole()
        scope = self.build_scope(console)

        try:
            exec(compile_script(code), scope)
            task = asyncio.ensure_future(scope[_SCRIPT_FN]())
        except Exception as e:
            # SyntaxError and friends: nothing ran
            return self._finish(console.logs, error=_error_message(e), stack=_format_stack(e))

        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)

        if task not in done:
            self._overdue.add(task)
            task.add_done_callback(self._reap)
            return self._finish(console.logs, error=str(ExecutionTimeout(f"Execution timed out after {timeout_ms}ms")))

        try:
            value = task.result()
        except asyncio.CancelledError:
            raise
        except BaseException as e:
            return self._finish(console.logs, error=_error_message(e), stack=_format_stack(e))

        if value is not None:
            console.logs.append({"returned": value})
        return self._finish(console.logs)

    def _finish(self, logs: List[Any], *, error: str | None = None, stack: str | None = None) -> ExecutionResult:
        return ExecutionResult(logs=summarise_logs(logs, self._max_log_chars), error=error, stack=stack)

    def _reap(self, task: asyncio.Task) -> None:
        self._overdue.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("Timed-out script finished with %s: %s", type(exc).__name__, exc)
        else:
            logger.debug("Timed-out script finished after its deadline")
