"""
Display, equality and truthiness for Orchid values.
"""
import collections.abc
import math

from orchid.orchid_datatypes import OrchidFunction, PluginHandle, ToolHandle


def kind_of(value) -> str:
    """Returns the name of the active kind of an Orchid value."""
    match value:
        case None:
            return "null"
        case bool():
            return "boolean"
        case int() | float():
            return "number"
        case str():
            return "string"
        case list() | tuple():
            return "list"
        case PluginHandle():
            return "plugin-handle"
        case ToolHandle():
            return "tool-handle"
        case OrchidFunction():
            return "callable"
        case collections.abc.Mapping():
            return "record"
    if callable(value):
        return "callable"
    return type(value).__name__


class Printer:
    """Formats Orchid values for display (`print`, string concatenation, CLI output)."""

    def __init__(self):
        self._handlers = self._create_handlers()

    def pformat(self, obj) -> str:
        """Public entry point to format an object at top level (strings unquoted)."""
        if isinstance(obj, str):
            return obj
        return self._format(obj)

    def _format(self, obj) -> str:
        handler = self._handlers.get(kind_of(obj))
        if handler is None:
            return repr(obj)
        return handler(obj)

    def _create_handlers(self):
        return {
            "null": lambda o: "null",
            "boolean": lambda o: "true" if o else "false",
            "number": self._pformat_number,
            "string": self._pformat_str,
            "list": self._pformat_list,
            "record": self._pformat_record,
            "callable": self._pformat_callable,
            "plugin-handle": lambda o: f"<plugin {o.name}>",
            "tool-handle": lambda o: f"<tool {o.server}/{o.tool}>" if o.tool else f"<tool {o.server}>",
        }

    def _pformat_number(self, obj) -> str:
        if isinstance(obj, float):
            if math.isnan(obj):
                return "NaN"
            if math.isinf(obj):
                return "Infinity" if obj > 0 else "-Infinity"
            if obj.is_integer() and abs(obj) < 1e16:
                return str(int(obj))
        return str(obj)

    def _pformat_str(self, obj) -> str:
        # Nested strings are quoted so lists/records read unambiguously.
        escaped = obj.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'

    def _pformat_list(self, obj) -> str:
        return "[" + ", ".join(self._format(item) for item in obj) + "]"

    def _pformat_record(self, obj) -> str:
        parts = [f"{self._pformat_str(str(k))}: {self._format(v)}" for k, v in obj.items()]
        return "{" + ", ".join(parts) + "}"

    def _pformat_callable(self, obj) -> str:
        if isinstance(obj, OrchidFunction):
            return f"<{obj.kind} {obj.name}>"
        name = getattr(obj, "orchid_name", None) or (getattr(obj, "__name__", None) or "callable").lstrip("_")
        return f"<builtin {name}>"


_printer = Printer()


def to_display(value) -> str:
    return _printer.pformat(value)


def values_equal(a, b) -> bool:
    """Per-kind equality; values of different kinds are never equal."""
    ka, kb = kind_of(a), kind_of(b)
    if ka != kb:
        return False
    match ka:
        case "null":
            return True
        case "number" | "boolean" | "string":
            return a == b
        case "list":
            return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
        case "record":
            if set(a.keys()) != set(b.keys()):
                return False
            return all(values_equal(a[k], b[k]) for k in a.keys())
        case "tool-handle":
            return a == b
    return a is b


def is_truthy(value) -> bool:
    match value:
        case None | False:
            return False
        case bool():
            return True
        case int() | float():
            return value != 0
        case str() | list() | tuple():
            return len(value) > 0
        case collections.abc.Mapping():
            return len(value) > 0
    return True


__all__ = ["Printer", "kind_of", "to_display", "values_equal", "is_truthy"]
