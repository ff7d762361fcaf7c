"""
Defines the core data types for the Orchid runtime.

This module provides the environment (Scope), the runtime value types that
are not plain Python objects (callables and handles), and the AST node
classes the front end produces and the evaluator consumes.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING
import collections.abc

if TYPE_CHECKING:
    from pathlib import Path


# =================================================================
# Environment
# =================================================================

class Scope:
    """One level of an Orchid environment chain.

    Lookup walks from this scope through its parents. A name missing from
    every scope evaluates to null (`lookup` returns None); the mapping
    protocol (`scope[name]`) still raises KeyError for Python callers that
    want to tell a miss from a bound null.

    The parent is fixed at construction. Since a new scope can only point
    at scopes that already exist, the chain is a tree and never a cycle.
    """
    __slots__ = ("bindings", "_parent", "label")

    def __init__(self, parent: Optional['Scope'] = None, label: Optional[str] = None):
        self.bindings: Dict[str, Any] = {}
        self._parent = parent
        self.label = label

    @property
    def parent(self) -> Optional['Scope']:
        return self._parent

    def child(self, label: Optional[str] = None) -> 'Scope':
        """Returns a new scope whose parent is this one."""
        return Scope(parent=self, label=label)

    def define(self, name: str, value: Any) -> None:
        """Creates or overwrites `name` in this scope only."""
        if not isinstance(name, str):
            raise TypeError(f"Scope key must be a str, not {type(name)}")
        self.bindings[name] = value

    def lookup(self, name: str) -> Any:
        """Resolves `name` through the chain; a miss is null, never an error."""
        owner = self.find_owner(name)
        if owner is None:
            return None
        return owner.bindings[name]

    def find_owner(self, name: str) -> Optional['Scope']:
        """Finds the innermost scope in the chain that binds `name`."""
        cur = self
        while cur is not None:
            if name in cur.bindings:
                return cur
            cur = cur._parent
        return None

    def is_ancestor_of(self, other: 'Scope') -> bool:
        cur = other._parent
        while cur is not None:
            if cur is self:
                return True
            cur = cur._parent
        return False

    def depth(self) -> int:
        n = 0
        cur = self._parent
        while cur is not None:
            n += 1
            cur = cur._parent
        return n

    def __setitem__(self, key: str, value: Any):
        self.define(key, value)

    def __getitem__(self, key: str) -> Any:
        owner = self.find_owner(key)
        if owner is None:
            raise KeyError(f"'{key}'")
        return owner.bindings[key]

    def __contains__(self, key: Any) -> bool:
        return isinstance(key, str) and self.find_owner(key) is not None

    def get(self, key: str, default: Any = None) -> Any:
        owner = self.find_owner(key)
        if owner is None:
            return default
        return owner.bindings[key]

    def keys(self) -> collections.abc.KeysView:
        """Returns a view of keys in the current scope only."""
        return self.bindings.keys()

    def __repr__(self) -> str:
        keys = ', '.join(self.bindings.keys())
        parent_id = f", parent=#{id(self._parent)}" if self._parent else ""
        label = f" {self.label}" if self.label else ""
        return f"<Scope{label} bindings=[{keys}]{parent_id}>"


# Free-function spellings of the scope operations.
def lookup(env: Scope, name: str) -> Any:
    return env.lookup(name)


def define(env: Scope, name: str, value: Any) -> None:
    env.define(name, value)


def child_scope(env: Scope) -> Scope:
    return env.child()


# =================================================================
# Runtime values
# =================================================================

class OrchidFunction:
    """An `agent` or `macro` declared in Orchid source.

    This is a closure, bundling the parameter list, the body statements and
    the scope the declaration was evaluated in.
    """
    def __init__(self, kind: str, name: str, params: List[str], body: List['Node'], closure: Scope):
        self.kind = kind
        self.name = name
        self.params = list(params)
        self.body = body
        self.closure = closure

    def __repr__(self) -> str:
        return f"<{self.kind} {self.name}({', '.join(self.params)})>"


class PluginHandle:
    """Opaque reference to a loaded plugin and its dispatch table."""
    def __init__(self, name: str, path: 'Path', scope: Scope, operations: Dict[str, OrchidFunction]):
        self.name = name
        self.path = path
        self.scope = scope
        self.operations = operations

    def __repr__(self) -> str:
        return f"<plugin {self.name} ops=[{', '.join(self.operations)}]>"


class ToolHandle:
    """A tool server bound in a script; `tool` is set when one tool is singled out."""
    def __init__(self, server: str, tool: Optional[str] = None):
        self.server = server
        self.tool = tool

    def __eq__(self, other):
        if not isinstance(other, ToolHandle):
            return NotImplemented
        return self.server == other.server and self.tool == other.tool

    def __hash__(self):
        return hash((self.server, self.tool))

    def __repr__(self) -> str:
        target = f"{self.server}/{self.tool}" if self.tool else self.server
        return f"<tool {target}>"


class ReturnValue:
    """Control-flow signal produced by `return`; unwrapped at the call boundary."""
    __slots__ = ("value",)

    def __init__(self, value: Any):
        self.value = value

    def __repr__(self) -> str:
        return f"ReturnValue({self.value!r})"


def is_return(x) -> bool:
    return isinstance(x, ReturnValue)


def unwrap_return(x):
    return x.value if isinstance(x, ReturnValue) else x


# =================================================================
# AST nodes
# =================================================================

@dataclass
class Node:
    line: Optional[int] = field(default=None, compare=False, repr=False, kw_only=True)
    column: Optional[int] = field(default=None, compare=False, repr=False, kw_only=True)


# --- Expressions ---

@dataclass
class Literal(Node):
    value: Any


@dataclass
class Identifier(Node):
    name: str


@dataclass
class ListExpr(Node):
    items: List[Node]


@dataclass
class RecordExpr(Node):
    pairs: List[Tuple[str, Node]]


@dataclass
class Call(Node):
    """`operation(args)`; with a receiver, the namespaced form `receiver:operation(args)`."""
    receiver: Optional[str]
    operation: str
    args: List[Node] = field(default_factory=list)
    kwargs: List[Tuple[str, Node]] = field(default_factory=list)


@dataclass
class BinaryOp(Node):
    op: str
    left: Node
    right: Node


@dataclass
class UnaryOp(Node):
    op: str
    operand: Node


# --- Statements ---

@dataclass
class Assignment(Node):
    name: str
    expr: Node


@dataclass
class PluginUse(Node):
    name: str
    alias: Optional[str] = None


@dataclass
class ServerUse(Node):
    name: str
    alias: Optional[str] = None


@dataclass
class ExpressionStatement(Node):
    expr: Node


@dataclass
class FunctionDef(Node):
    kind: str
    name: str
    params: List[str]
    body: List[Node]


@dataclass
class Return(Node):
    expr: Optional[Node] = None


@dataclass
class If(Node):
    branches: List[Tuple[Node, List[Node]]]
    orelse: Optional[List[Node]] = None


@dataclass
class For(Node):
    var: str
    iterable: Node
    body: List[Node]


@dataclass
class While(Node):
    cond: Node
    body: List[Node]


@dataclass
class Program(Node):
    body: List[Node]
