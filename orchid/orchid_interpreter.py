"""
The core Orchid interpreter: the Evaluator and the run context it works in.
"""
import asyncio
import collections.abc
import contextvars
import inspect
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TYPE_CHECKING

from orchid.orchid_datatypes import (
    Scope, OrchidFunction, PluginHandle, ToolHandle, ReturnValue, unwrap_return,
    Node, Program, Assignment, PluginUse, ServerUse, ExpressionStatement, FunctionDef, Return,
    If, For, While, Literal, Identifier, ListExpr, RecordExpr, Call, BinaryOp, UnaryOp,
)
from orchid.orchid_errors import EvaluationError, OrchidError, ProviderError, ToolNotFound
from orchid.orchid_plugins import PluginOperation, default_alias
from orchid.orchid_printer import is_truthy, kind_of, to_display, values_equal
from orchid.orchid_provider import Answer, Provider, ToolExchange, ToolRequest, ToolSpec, render_prompt
from orchid.orchid_serialize import from_wire

if TYPE_CHECKING:
    from orchid.orchid_mcp import ToolServerManager
    from orchid.orchid_plugins import PluginResolver

log = logging.getLogger(__name__)

SCRIPT_MODULE = "<script>"
MAX_CALL_DEPTH = 64

# Active Orchid call frames of the current task, outermost first.
_call_stack: contextvars.ContextVar[Tuple[Tuple[str, tuple], ...]] = contextvars.ContextVar(
    "orchid_call_stack", default=())


@dataclass
class RunContext:
    """Everything one run owns. Nothing in here is shared between runs."""
    provider: Provider
    global_scope: Scope
    tool_servers: 'ToolServerManager'
    plugins: Optional['PluginResolver'] = None
    script_dir: Path = field(default_factory=Path.cwd)
    side_effects: List[Dict] = field(default_factory=list)
    on_effect: Optional[Callable[[Dict], None]] = None
    max_tool_rounds: int = 10
    declared_servers: List[str] = field(default_factory=list)


@dataclass
class ModuleInfo:
    label: str
    base_dir: Path


# ===================================================================
# Operators
# ===================================================================

def _is_number(x) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def binary_op(op: str, a: Any, b: Any) -> Any:
    """Applies a non-short-circuit binary operator to two evaluated operands."""
    match op:
        case "+":
            if isinstance(a, str) or isinstance(b, str):
                return to_display(a) + to_display(b)
            if isinstance(a, list) and isinstance(b, list):
                return a + b
            if _is_number(a) and _is_number(b):
                return a + b
        case "-" | "*" | "/" | "%":
            if _is_number(a) and _is_number(b):
                if op in ("/", "%") and b == 0:
                    raise EvaluationError("division by zero")
                match op:
                    case "-":
                        return a - b
                    case "*":
                        return a * b
                    case "/":
                        return a / b
                    case "%":
                        return a % b
        case "==":
            return values_equal(a, b)
        case "!=":
            return not values_equal(a, b)
        case "<" | "<=" | ">" | ">=":
            if (_is_number(a) and _is_number(b)) or (isinstance(a, str) and isinstance(b, str)):
                match op:
                    case "<":
                        return a < b
                    case "<=":
                        return a <= b
                    case ">":
                        return a > b
                    case ">=":
                        return a >= b
        case _:
            raise EvaluationError(f"unknown operator {op!r}")
    raise EvaluationError(f"unsupported operands for {op}: {kind_of(a)} and {kind_of(b)}")


async def gather_all(coros) -> list:
    """Runs coroutines concurrently; on the first failure the rest are cancelled."""
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


# ===================================================================
# Evaluator
# ===================================================================

class Evaluator:
    """The Orchid execution engine."""

    def __init__(self, context: RunContext):
        self.context = context
        self.modules: Dict[Scope, ModuleInfo] = {}

    # --- Side effects ---

    def emit(self, topic: str, message: str) -> None:
        effect = {'topics': [topic], 'message': message}
        self.context.side_effects.append(effect)
        if self.context.on_effect is not None:
            self.context.on_effect(effect)

    @property
    def call_stack(self) -> Tuple[Tuple[str, tuple], ...]:
        return _call_stack.get()

    # --- Modules ---

    async def run_program(self, program: Program, scope: Scope, base_dir: Optional[Path] = None) -> Any:
        """Runs a script's top-level statements; returns the last statement's value."""
        self.modules[scope] = ModuleInfo(SCRIPT_MODULE, Path(base_dir or self.context.script_dir))
        return unwrap_return(await self.exec_block(program.body, scope))

    async def run_module(self, program: Program, scope: Scope, base_dir: Path, label: Optional[str] = None) -> Any:
        """Runs a plugin's top-level statements in its own scope."""
        self.modules[scope] = ModuleInfo(label or str(base_dir), Path(base_dir))
        result = await self.exec_block(program.body, scope)
        if isinstance(result, ReturnValue):
            raise EvaluationError("return outside of an agent or macro")
        return result

    def module_of(self, scope: Scope) -> ModuleInfo:
        cur = scope
        while cur is not None:
            info = self.modules.get(cur)
            if info is not None:
                return info
            cur = cur.parent
        return ModuleInfo(SCRIPT_MODULE, Path(self.context.script_dir))

    # --- Statements ---

    async def exec_block(self, statements: List[Node], scope: Scope) -> Any:
        result = None
        for stmt in statements:
            result = await self.exec_stmt(stmt, scope)
            if isinstance(result, ReturnValue):
                return result
        return result

    async def exec_stmt(self, stmt: Node, scope: Scope) -> Any:
        log.debug("exec %s line=%s", type(stmt).__name__, stmt.line)
        try:
            return await self._exec_stmt(stmt, scope)
        except OrchidError as e:
            # Innermost statement wins: it is the most precise location.
            if not hasattr(e, "orchid_node"):
                e.orchid_node = stmt
                e.orchid_module = self.module_of(scope).label
                e.orchid_stack = self.call_stack
            raise

    async def _exec_stmt(self, stmt: Node, scope: Scope) -> Any:
        match stmt:
            case Assignment(name=name, expr=expr):
                value = await self.eval(expr, scope)
                scope.define(name, value)
                return value

            case ExpressionStatement(expr=expr):
                return await self.eval(expr, scope)

            case PluginUse(name=raw, alias=alias):
                plugins = self.context.plugins
                module = self.module_of(scope)
                handle = await plugins.resolve(raw, module.base_dir, self.context.script_dir)
                alias = alias or default_alias(raw)
                scope.define(alias, handle)
                if module.label == SCRIPT_MODULE:
                    plugins.register_alias(alias, handle)
                return handle

            case ServerUse(name=server, alias=alias):
                if not self.context.tool_servers.has_server(server):
                    raise ToolNotFound(f"no tool server named {server!r} is configured")
                handle = ToolHandle(server)
                scope.define(alias or server.replace("-", "_"), handle)
                if server not in self.context.declared_servers:
                    self.context.declared_servers.append(server)
                return handle

            case FunctionDef(kind=kind, name=name, params=params, body=body):
                fn = OrchidFunction(kind, name, params, body, scope)
                scope.define(name, fn)
                return fn

            case Return(expr=expr):
                value = await self.eval(expr, scope) if expr is not None else None
                return ReturnValue(value)

            case If(branches=branches, orelse=orelse):
                for cond, body in branches:
                    if is_truthy(await self.eval(cond, scope)):
                        return await self.exec_block(body, scope)
                if orelse is not None:
                    return await self.exec_block(orelse, scope)
                return None

            case For(var=var, iterable=iterable, body=body):
                items = await self.eval(iterable, scope)
                match items:
                    case list() | tuple():
                        seq = list(items)
                    case str():
                        seq = list(items)
                    case collections.abc.Mapping():
                        seq = list(items.keys())
                    case _:
                        raise EvaluationError(f"cannot iterate over {kind_of(items)}")
                result = None
                for item in seq:
                    scope.define(var, item)
                    result = await self.exec_block(body, scope)
                    if isinstance(result, ReturnValue):
                        return result
                return result

            case While(cond=cond, body=body):
                result = None
                while is_truthy(await self.eval(cond, scope)):
                    result = await self.exec_block(body, scope)
                    if isinstance(result, ReturnValue):
                        return result
                return result

        raise EvaluationError(f"unknown statement {type(stmt).__name__}")

    # --- Expressions ---

    async def eval(self, node: Node, scope: Scope) -> Any:
        match node:
            case Literal(value=value):
                return value

            case Identifier(name=name):
                # Unbound names are null, not an error.
                return scope.lookup(name)

            case ListExpr(items=items):
                return [await self.eval(item, scope) for item in items]

            case RecordExpr(pairs=pairs):
                record = {}
                for key, expr in pairs:
                    record[key] = await self.eval(expr, scope)
                return record

            case UnaryOp(op="not", operand=operand):
                return not is_truthy(await self.eval(operand, scope))

            case UnaryOp(op="-", operand=operand):
                value = await self.eval(operand, scope)
                if not _is_number(value):
                    raise EvaluationError(f"cannot negate {kind_of(value)}")
                return -value

            case BinaryOp(op="and", left=left, right=right):
                value = await self.eval(left, scope)
                if not is_truthy(value):
                    return value
                return await self.eval(right, scope)

            case BinaryOp(op="or", left=left, right=right):
                value = await self.eval(left, scope)
                if is_truthy(value):
                    return value
                return await self.eval(right, scope)

            case BinaryOp(op=op, left=left, right=right):
                a = await self.eval(left, scope)
                b = await self.eval(right, scope)
                return binary_op(op, a, b)

            case Call():
                return await self.eval_call(node, scope)

        raise EvaluationError(f"unknown expression {type(node).__name__}")

    async def eval_call(self, node: Call, scope: Scope) -> Any:
        args = [await self.eval(a, scope) for a in node.args]
        kwargs = {}
        for name, expr in node.kwargs:
            kwargs[name] = await self.eval(expr, scope)

        if node.receiver is None:
            callee = scope.lookup(node.operation)
            if callee is None:
                raise EvaluationError(f"'{node.operation}' is not defined")
            return await self.call_value(callee, args, kwargs, node.operation)

        target = scope.lookup(node.receiver)
        match target:
            case PluginHandle():
                return await self.context.plugins.dispatch(target, node.operation, args, kwargs)
            case ToolHandle():
                return await self.context.tool_servers.call_tool(target.server, node.operation, args, kwargs)
            case None:
                raise ToolNotFound(f"'{node.receiver}' is not bound to a plugin or tool server")
        raise EvaluationError(
            f"'{node.receiver}' is a {kind_of(target)}, not a plugin or tool server")

    async def call_value(self, callee: Any, args: List[Any], kwargs: Dict[str, Any], name: str = "<call>") -> Any:
        if isinstance(callee, OrchidFunction):
            return await self.call_function(callee, args, kwargs)
        if isinstance(callee, (PluginHandle, ToolHandle)) or not callable(callee):
            raise EvaluationError(f"'{name}' is a {kind_of(callee)}, not callable")
        try:
            result = callee(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except TypeError as e:
            raise EvaluationError(f"invalid arguments for {name}: {e}") from e
        return result

    async def call_function(self, fn: OrchidFunction, args: List[Any], kwargs: Dict[str, Any]) -> Any:
        """Binds arguments in a fresh child of the closure and runs the body."""
        params = fn.params
        if len(args) > len(params):
            raise EvaluationError(
                f"{fn.kind} {fn.name} takes {len(params)} argument(s), got {len(args)}")
        local = fn.closure.child(label=f"{fn.kind} {fn.name}")
        for pname, value in zip(params, args):
            local.define(pname, value)
        for key, value in kwargs.items():
            if key not in params:
                raise EvaluationError(f"{fn.kind} {fn.name} has no parameter {key!r}")
            if key in local.bindings:
                raise EvaluationError(f"{fn.kind} {fn.name} got multiple values for {key!r}")
            local.define(key, value)
        # Missing parameters are null.
        for pname in params:
            if pname not in local.bindings:
                local.define(pname, None)

        stack = _call_stack.get()
        if len(stack) >= MAX_CALL_DEPTH:
            raise EvaluationError(f"maximum call depth of {MAX_CALL_DEPTH} exceeded in {fn.name}")
        token = _call_stack.set(stack + ((fn.name, tuple(args)),))
        try:
            result = await self.exec_block(fn.body, local)
        finally:
            _call_stack.reset(token)
        return unwrap_return(result)

    # --- Provider round trip ---

    async def tool_catalog(self) -> List[ToolSpec]:
        specs = list(self.context.plugins.catalog()) if self.context.plugins else []
        if self.context.provider.uses_tools and self.context.declared_servers:
            specs.extend(await self.context.tool_servers.catalog(self.context.declared_servers))
        seen: Set[str] = set()
        unique = []
        for spec in specs:
            if spec.name not in seen:
                seen.add(spec.name)
                unique.append(spec)
        return unique

    async def ask(self, operation: str, value: Any) -> Any:
        """Asks the provider, running requested tools until it answers or the round cap is hit."""
        prompt = render_prompt(operation, value)
        tools = await self.tool_catalog()
        by_name = {t.name: t for t in tools}
        rounds = 0
        while True:
            log.debug("ask %s (round %d, %d tools)", operation, rounds, len(tools))
            reply = await self.context.provider.ask(prompt, tools)
            if isinstance(reply, Answer):
                return reply.value
            requests = reply if isinstance(reply, list) else [reply]
            if not requests or not all(isinstance(r, ToolRequest) for r in requests):
                raise ProviderError(f"{operation}: provider returned {reply!r}")
            if rounds >= self.context.max_tool_rounds:
                raise ProviderError(
                    f"{operation}: no answer after {self.context.max_tool_rounds} tool round(s)")
            for i, request in enumerate(requests):
                if request.id is None:
                    request.id = f"call_{rounds}_{i}"
            results = await gather_all(self.run_tool_request(r, by_name) for r in requests)
            prompt = replace(prompt, exchanges=[
                *prompt.exchanges,
                *(ToolExchange(r, res, rounds) for r, res in zip(requests, results)),
            ])
            rounds += 1

    async def run_tool_request(self, request: ToolRequest, by_name: Dict[str, ToolSpec]) -> Any:
        spec = by_name.get(request.name)
        if spec is None:
            raise ToolNotFound(f"provider requested unknown tool {request.name!r}")
        log.debug("tool request %s %s", request.name, request.arguments)
        target = spec.target
        match target:
            case PluginOperation(handle=handle, operation=op):
                kwargs = {k: from_wire(v) for k, v in (request.arguments or {}).items()}
                return await self.context.plugins.dispatch(handle, op, (), kwargs)
            case ToolHandle(server=server, tool=tool):
                return await self.context.tool_servers.call_tool(server, tool, dict(request.arguments or {}))
        raise ToolNotFound(f"tool {request.name!r} has no target")
