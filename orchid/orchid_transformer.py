"""
The Orchid front end: turns source text into the AST defined in orchid_datatypes.

The grammar lives next to this module in `orchid.lark`. Lark produces a
parse tree which OrchidTransformer rewrites into Program/statement/expression
nodes. Lexing and parsing failures are reported as LexError / ParseError with
line and column.
"""

import ast as py_ast
import textwrap
from pathlib import Path
from typing import Any, Iterator, List, Optional

from lark import Lark, Token, Transformer, v_args
from lark.exceptions import UnexpectedCharacters, UnexpectedInput, VisitError
from lark.indenter import DedentError, Indenter

from orchid.orchid_datatypes import (
    Program, Assignment, PluginUse, ServerUse, ExpressionStatement, FunctionDef,
    Return, If, For, While,
    Literal, Identifier, ListExpr, RecordExpr, Call, BinaryOp, UnaryOp,
)
from orchid.orchid_errors import LexError, ParseError

_GRAMMAR_PATH = Path(__file__).with_name("orchid.lark")


class OrchidIndenter(Indenter):
    NL_type = '_NEWLINE'
    OPEN_PAREN_types = ['LPAR', 'LSQB', 'LBRACE']
    CLOSE_PAREN_types = ['RPAR', 'RSQB', 'RBRACE']
    INDENT_type = '_INDENT'
    DEDENT_type = '_DEDENT'
    tab_len = 4


class _Kwarg:
    __slots__ = ("name", "expr")

    def __init__(self, name: str, expr):
        self.name = name
        self.expr = expr


def _pos(meta) -> dict:
    if getattr(meta, "empty", True):
        return {}
    return {"line": getattr(meta, "line", None), "column": getattr(meta, "column", None)}


def decode_string(token: str) -> str:
    """Decodes a string literal token, escapes included."""
    try:
        value = py_ast.literal_eval(token)
    except (ValueError, SyntaxError) as e:
        raise ParseError(f"invalid string literal {token!r}: {e}")
    return str(value)


@v_args(meta=True)
class OrchidTransformer(Transformer):
    """Rewrites the lark parse tree into Orchid AST nodes."""

    # --- Statements ---

    def start(self, meta, children):
        return Program(list(children), **_pos(meta))

    def assign(self, meta, children):
        name, expr = children
        return Assignment(str(name), expr, **_pos(meta))

    def use_plugin(self, meta, children):
        name, alias = children
        return PluginUse(decode_string(name), str(alias) if alias is not None else None, **_pos(meta))

    def use_mcp(self, meta, children):
        name, alias = children
        return ServerUse(decode_string(name), str(alias) if alias is not None else None, **_pos(meta))

    def return_stmt(self, meta, children):
        return Return(children[0] if children else None, **_pos(meta))

    def expr_stmt(self, meta, children):
        return ExpressionStatement(children[0], **_pos(meta))

    def agent_def(self, meta, children):
        name, params, body = children
        return FunctionDef("agent", str(name), params or [], body, **_pos(meta))

    def macro_def(self, meta, children):
        name, params, body = children
        return FunctionDef("macro", str(name), params or [], body, **_pos(meta))

    def params(self, meta, children):
        names = [str(c) for c in children]
        if len(set(names)) != len(names):
            raise ParseError(f"duplicate parameter name in ({', '.join(names)})",
                             getattr(meta, "line", None), getattr(meta, "column", None))
        return names

    def suite(self, meta, children):
        return list(children)

    def if_stmt(self, meta, children):
        cond, body, *rest = children
        orelse = rest.pop() if rest else None
        branches = [(cond, body)] + list(rest)
        return If(branches, orelse, **_pos(meta))

    def elif_clause(self, meta, children):
        cond, body = children
        return (cond, body)

    def for_stmt(self, meta, children):
        var, iterable, body = children
        return For(str(var), iterable, body, **_pos(meta))

    def while_stmt(self, meta, children):
        cond, body = children
        return While(cond, body, **_pos(meta))

    # --- Operators ---

    def or_op(self, meta, children):
        return BinaryOp("or", children[0], children[1], **_pos(meta))

    def and_op(self, meta, children):
        return BinaryOp("and", children[0], children[1], **_pos(meta))

    def not_op(self, meta, children):
        return UnaryOp("not", children[0], **_pos(meta))

    def neg(self, meta, children):
        return UnaryOp("-", children[0], **_pos(meta))

    def compare(self, meta, children):
        left, op, right = children
        return BinaryOp(op, left, right, **_pos(meta))

    def binop(self, meta, children):
        left, op, right = children
        return BinaryOp(op, left, right, **_pos(meta))

    def comp_op(self, meta, children):
        return str(children[0])

    def add_op(self, meta, children):
        return str(children[0])

    def mul_op(self, meta, children):
        return str(children[0])

    # --- Calls ---

    def _split_arguments(self, meta, arguments):
        args, kwargs = [], []
        for item in arguments or []:
            if isinstance(item, _Kwarg):
                if any(k == item.name for k, _ in kwargs):
                    raise ParseError(f"keyword argument repeated: {item.name}",
                                     getattr(meta, "line", None), getattr(meta, "column", None))
                kwargs.append((item.name, item.expr))
            else:
                if kwargs:
                    raise ParseError("positional argument follows keyword argument",
                                     getattr(meta, "line", None), getattr(meta, "column", None))
                args.append(item)
        return args, kwargs

    def call(self, meta, children):
        name, arguments = children
        args, kwargs = self._split_arguments(meta, arguments)
        return Call(None, str(name), args, kwargs, **_pos(meta))

    def ns_call(self, meta, children):
        qualified, arguments = children
        receiver, operation = str(qualified).split(":", 1)
        args, kwargs = self._split_arguments(meta, arguments)
        return Call(receiver, operation, args, kwargs, **_pos(meta))

    def arguments(self, meta, children):
        return list(children)

    def kwarg(self, meta, children):
        name, expr = children
        return _Kwarg(str(name), expr)

    # --- Atoms ---

    def number(self, meta, children):
        return Literal(float(children[0]), **_pos(meta))

    def string(self, meta, children):
        return Literal(decode_string(children[0]), **_pos(meta))

    def true_lit(self, meta, children):
        return Literal(True, **_pos(meta))

    def false_lit(self, meta, children):
        return Literal(False, **_pos(meta))

    def null_lit(self, meta, children):
        return Literal(None, **_pos(meta))

    def var(self, meta, children):
        return Identifier(str(children[0]), **_pos(meta))

    def list_lit(self, meta, children):
        return ListExpr(children[0] or [], **_pos(meta))

    def record_lit(self, meta, children):
        return RecordExpr(children[0] or [], **_pos(meta))

    def exprlist(self, meta, children):
        return list(children)

    def pairs(self, meta, children):
        return list(children)

    def pair(self, meta, children):
        key, expr = children
        return (decode_string(key), expr)


class FrontEnd:
    """Parses Orchid source. The lark parser is built once and shared."""

    _parser: Optional[Lark] = None
    _transformer: Optional[OrchidTransformer] = None

    def __init__(self):
        if FrontEnd._parser is None:
            FrontEnd._parser = Lark(
                _GRAMMAR_PATH.read_text(encoding="utf-8"),
                parser="lalr",
                lexer="basic",
                postlex=OrchidIndenter(),
                propagate_positions=True,
                maybe_placeholders=True,
            )
        if FrontEnd._transformer is None:
            FrontEnd._transformer = OrchidTransformer()
        self.parser = FrontEnd._parser
        self.transformer = FrontEnd._transformer

    @staticmethod
    def _prepare(source: str) -> str:
        text = textwrap.dedent(source.replace("\r\n", "\n"))
        if not text.endswith("\n"):
            text += "\n"
        return text

    def parse(self, source: str) -> Program:
        text = self._prepare(source)
        try:
            tree = self.parser.parse(text)
        except UnexpectedCharacters as e:
            raise LexError(f"unexpected character {text[e.pos_in_stream]!r}", e.line, e.column) from None
        except UnexpectedInput as e:
            raise ParseError(self._describe(e), getattr(e, "line", None), getattr(e, "column", None)) from None
        except DedentError as e:
            raise ParseError(str(e)) from None
        try:
            return self.transformer.transform(tree)
        except VisitError as e:
            if isinstance(e.orig_exc, ParseError):
                raise e.orig_exc from None
            raise

    def lex(self, source: str) -> Iterator[Token]:
        text = self._prepare(source)
        try:
            yield from self.parser.lex(text)
        except UnexpectedCharacters as e:
            raise LexError(f"unexpected character {text[e.pos_in_stream]!r}", e.line, e.column) from None
        except DedentError as e:
            raise LexError(str(e)) from None

    def _describe(self, e: UnexpectedInput) -> str:
        token = getattr(e, "token", None)
        if token is None or getattr(token, "type", None) == "$END":
            return "unexpected end of input"
        expected = sorted(getattr(e, "expected", None) or [])
        msg = f"unexpected {token.type} {str(token)!r}"
        if expected:
            msg += f", expected one of: {', '.join(expected[:8])}"
        return msg


def parse(source: str) -> Program:
    return FrontEnd().parse(source)


def lex(source: str) -> List[Token]:
    return list(FrontEnd().lex(source))


def ast_to_data(node: Any) -> Any:
    """Converts AST nodes to plain data for `--parse` output."""
    from dataclasses import fields, is_dataclass
    if is_dataclass(node):
        out = {"type": type(node).__name__}
        for f in fields(node):
            value = getattr(node, f.name)
            if f.name in ("line", "column") and value is None:
                continue
            out[f.name] = ast_to_data(value)
        return out
    if isinstance(node, (list, tuple)):
        return [ast_to_data(n) for n in node]
    return node
