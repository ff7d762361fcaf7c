import inspect
import logging
import os
import collections.abc
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional

import httpx

from orchid.orchid_config import RunOptions, load_config_for_script
from orchid.orchid_datatypes import Scope
from orchid.orchid_errors import EvaluationError, OrchidError, SourceError
from orchid.orchid_interpreter import Evaluator, RunContext, SCRIPT_MODULE
from orchid.orchid_mcp import SessionOpener, ToolServerManager
from orchid.orchid_plugins import PluginResolver
from orchid.orchid_printer import kind_of, to_display
from orchid.orchid_provider import REASONING_OPERATIONS, Provider, create_provider
from orchid.orchid_transformer import FrontEnd

log = logging.getLogger(__name__)


# ===================================================================
# 1. Builtins
# ===================================================================

def _need(kind: str, value: Any, fn: str):
    if kind_of(value) != kind:
        raise EvaluationError(f"{fn} expects a {kind}, got {kind_of(value)}")


class StdLib:
    """Contains Python implementations for all Orchid built-ins."""
    def __init__(self, evaluator: Evaluator):
        self.evaluator = evaluator

    def bind(self, scope: Scope) -> None:
        """Binds every `_name` method as `name`, plus one builtin per reasoning operation."""
        for name, member in inspect.getmembers(self):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                scope[name[1:]] = member
        for op in REASONING_OPERATIONS:
            scope[op] = self.reasoning(op)

    def reasoning(self, operation: str):
        async def run(value=None):
            return await self.evaluator.ask(operation, value)
        run.__name__ = operation
        run.orchid_name = operation
        return run

    # --- Output ---
    def _print(self, *values):
        self.evaluator.emit('stdout', " ".join(to_display(v) for v in values))
        return None

    # --- Conversion ---
    def _str(self, value): return to_display(value)

    def _number(self, value):
        match value:
            case bool():
                return 1.0 if value else 0.0
            case int() | float():
                return float(value)
            case str():
                try:
                    return float(value.strip())
                except ValueError:
                    raise EvaluationError(f"number: cannot convert {value!r}") from None
        raise EvaluationError(f"number: cannot convert {kind_of(value)}")

    def _type_of(self, value): return kind_of(value)

    # --- Collections ---
    def _len(self, value):
        if isinstance(value, (str, list, tuple, collections.abc.Mapping)):
            return float(len(value))
        raise EvaluationError(f"len expects a string, list or record, got {kind_of(value)}")

    def _keys(self, record):
        _need("record", record, "keys")
        return list(record.keys())

    def _values(self, record):
        _need("record", record, "values")
        return list(record.values())

    def _append(self, items, value):
        _need("list", items, "append")
        return [*items, value]

    def _join(self, items, separator=""):
        _need("list", items, "join")
        return str(separator).join(to_display(v) for v in items)

    def _split(self, text, separator=None):
        _need("string", text, "split")
        if separator == "":
            return list(text)
        return text.split(separator)

    def _range(self, *args):
        if not 1 <= len(args) <= 3 or not all(isinstance(a, (int, float)) and not isinstance(a, bool) for a in args):
            raise EvaluationError("range expects one to three numbers")
        if any(not float(a).is_integer() for a in args):
            raise EvaluationError("range expects whole numbers")
        if len(args) == 3 and args[2] == 0:
            raise EvaluationError("range step must not be zero")
        return [float(i) for i in range(*(int(a) for a in args))]


# ===================================================================
# 2. Script Execution
# ===================================================================

@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error: Optional[BaseException] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        if self.status != 'error':
            return ""
        return str(self.error_message or "Unknown error")

    def output(self, topic: str = 'stdout') -> List[str]:
        return [e['message'] for e in self.side_effects if topic in e.get('topics', ())]


class ScriptRunner:
    """Parses and executes Orchid scripts, one run per call."""

    _front_end: Optional[FrontEnd] = None

    def __init__(self, options: Optional[RunOptions] = None, *,
                 provider: Optional[Provider] = None,
                 tool_servers: Optional[ToolServerManager] = None,
                 session_opener: Optional[SessionOpener] = None,
                 http_transport: Optional[httpx.AsyncBaseTransport] = None,
                 on_effect: Optional[Callable[[Dict], None]] = None):
        self.options = options or RunOptions.from_env()
        self._provider = provider
        self._tool_servers = tool_servers
        self._session_opener = session_opener
        self._http_transport = http_transport
        self.on_effect = on_effect
        if ScriptRunner._front_end is None:
            ScriptRunner._front_end = FrontEnd()
        self.front_end = ScriptRunner._front_end
        self.evaluator: Optional[Evaluator] = None

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            out.append(f"{prefix} {str(i).rjust(width)} | {lines[i - 1]}")
            if i == line and col is not None:
                out.append(f"  {' ' * width} | {' ' * max(col - 1, 0)}^")
        return "\n".join(out)

    def _format_stacktrace(self, stack) -> str:
        frames = []
        for name, args in stack or ():
            shown = " ".join(to_display(a) if not isinstance(a, str) else repr(a) for a in args)
            frames.append(f"({name} {shown})" if shown else f"({name})")
        return "Orchid stacktrace: " + " ".join(frames) if frames else ""

    def _format_error(self, e: BaseException, source: str) -> tuple[str, str]:
        match e:
            case SourceError(line=line, column=col):
                kind = e.kind
                msg = str(e)
                # Raised while running means it came from a plugin's source, not this one.
                if line is not None and not hasattr(e, 'orchid_node'):
                    context = self._source_context(source, line, col)
                    if context:
                        msg = f"{msg}\n{context}"
                return kind, msg
            case OrchidError():
                kind = e.kind
                msg = str(e)
            case _:
                kind = "InternalError"
                msg = f"InternalError: {e}"

        node = getattr(e, 'orchid_node', None)
        line = getattr(node, 'line', None)
        if line is not None:
            col = getattr(node, 'column', None)
            module = getattr(e, 'orchid_module', SCRIPT_MODULE)
            if module == SCRIPT_MODULE:
                msg = f"{msg}\n(line {line}, col {col})\n{self._source_context(source, line, col)}"
            else:
                msg = f"{msg}\n(in plugin {module}, line {line})"
        st = self._format_stacktrace(getattr(e, 'orchid_stack', None))
        if st:
            msg += "\n" + st
        return kind, msg

    def _build(self, script_dir: Path, side_effects: List[Dict]) -> Evaluator:
        opts = self.options
        if self._tool_servers is not None:
            manager = self._tool_servers
        else:
            config = load_config_for_script(script_dir, opts.config_path)
            manager = ToolServerManager.from_config(
                config, opener=self._session_opener,
                connect_timeout=opts.connect_timeout, call_timeout=opts.tool_timeout)
        self._active_manager = manager

        provider = self._provider or create_provider(opts, transport=self._http_transport)
        global_scope = Scope(label="global")
        context = RunContext(
            provider=provider,
            global_scope=global_scope,
            tool_servers=manager,
            script_dir=script_dir,
            side_effects=side_effects,
            on_effect=self.on_effect,
            max_tool_rounds=opts.max_tool_rounds,
        )
        evaluator = Evaluator(context)
        context.plugins = PluginResolver(evaluator, global_scope, search_path=opts.plugin_path,
                                         front_end=self.front_end)
        StdLib(evaluator).bind(global_scope)
        return evaluator

    async def handle_script(self, source_code: str, script_path: Optional[str | Path] = None) -> ExecutionResult:
        """The main entry point to execute a script."""
        side_effects: List[Dict] = []
        self._active_manager = None
        if script_path is not None:
            script_dir = Path(script_path).resolve().parent
        else:
            script_dir = Path(self.options.script_dir or os.getcwd())
        error_effect = None
        try:
            self.evaluator = self._build(script_dir, side_effects)
            program = self.front_end.parse(source_code)
            script_scope = self.evaluator.context.global_scope.child(label="script")
            value = await self.evaluator.run_program(program, script_scope, script_dir)
            result = ExecutionResult(status='success', value=value, side_effects=side_effects)
        except Exception as e:
            kind, msg = self._format_error(e, source_code)
            log.debug("run failed: %s", msg, exc_info=not isinstance(e, OrchidError))
            effect = {'topics': ['stderr'], 'message': msg}
            side_effects.append(effect)
            error_effect = effect
            result = ExecutionResult(status='error', error=e, error_kind=kind, error_message=msg,
                                     side_effects=side_effects)
        finally:
            if self._active_manager is not None:
                await self._active_manager.disconnect_all()
        # Tool servers are down before the caller hears about the failure.
        if error_effect is not None and self.on_effect is not None:
            self.on_effect(error_effect)
        return result

    async def run_file(self, path: str | Path) -> ExecutionResult:
        p = Path(path)
        source = p.read_text(encoding="utf-8")
        return await self.handle_script(source, p)


async def execute(source: str, options: Optional[RunOptions] = None, *,
                  script_path: Optional[str | Path] = None, **runner_kwargs) -> Any:
    """Runs `source` and returns its value; errors are re-raised after cleanup."""
    result = await ScriptRunner(options, **runner_kwargs).handle_script(source, script_path)
    if result.status == 'error':
        raise result.error
    return result.value
