"""
Error taxonomy for the Orchid runtime.

Every error raised by the runtime derives from OrchidError and carries a
`kind` that prefixes its message, e.g. "ToolNotFound: plugin 'x'". None of
these are recovered from inside a run; they abort it and reach the caller.
"""
from typing import Optional


class OrchidError(Exception):
    kind = "OrchidError"

    def __init__(self, message: str):
        super().__init__(f"{self.kind}: {message}")
        self.detail = message


class ToolNotFound(OrchidError):
    """Unresolved plugin, plugin operation, tool server or external tool."""
    kind = "ToolNotFound"


class ProviderError(OrchidError):
    """The LLM backend failed, or the provider/tool loop did not settle."""
    kind = "ProviderError"


class ToolServerConnectionError(OrchidError, ConnectionError):
    kind = "ConnectionError"


class ProtocolError(OrchidError):
    """A tool server answered with something outside the protocol."""
    kind = "ProtocolError"


class RateLimitExceeded(OrchidError):
    kind = "RateLimitExceeded"


class ConfigError(OrchidError):
    kind = "ConfigError"


class OrchidTimeoutError(OrchidError, TimeoutError):
    kind = "TimeoutError"


class EvaluationError(OrchidError):
    """Type errors, bad arity, calling a non-callable, division by zero."""
    kind = "RuntimeError"


class SourceError(OrchidError):
    """Base for front-end errors; remembers where in the source it happened."""

    def __init__(self, message: str, line: Optional[int] = None, column: Optional[int] = None):
        self.line = line
        self.column = column
        if line is not None:
            message = f"{message} (line {line}, col {column})"
        super().__init__(message)


class LexError(SourceError):
    kind = "LexError"


class ParseError(SourceError):
    kind = "ParseError"


__all__ = [
    "OrchidError",
    "ToolNotFound",
    "ProviderError",
    "ToolServerConnectionError",
    "ProtocolError",
    "RateLimitExceeded",
    "ConfigError",
    "OrchidTimeoutError",
    "EvaluationError",
    "SourceError",
    "LexError",
    "ParseError",
]
