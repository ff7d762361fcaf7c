from orchid.orchid_config import RunOptions
from orchid.orchid_datatypes import Scope, OrchidFunction, PluginHandle, ToolHandle
from orchid.orchid_errors import (
    OrchidError, ToolNotFound, ProviderError, ToolServerConnectionError, ProtocolError,
    RateLimitExceeded, ConfigError, OrchidTimeoutError, EvaluationError, LexError, ParseError,
)
from orchid.orchid_mcp import ServerState, ToolServerManager
from orchid.orchid_plugins import PluginResolver
from orchid.orchid_provider import (
    Answer, ToolRequest, ToolSpec, Prompt, Provider, ConsoleProvider, AnthropicProvider, SandboxProvider,
    create_provider,
)
from orchid.orchid_runtime import ScriptRunner, ExecutionResult, StdLib, execute
from orchid.orchid_transformer import parse, lex

__all__ = [
    "RunOptions", "Scope", "OrchidFunction", "PluginHandle", "ToolHandle",
    "OrchidError", "ToolNotFound", "ProviderError", "ToolServerConnectionError", "ProtocolError",
    "RateLimitExceeded", "ConfigError", "OrchidTimeoutError", "EvaluationError", "LexError", "ParseError",
    "ServerState", "ToolServerManager", "PluginResolver",
    "Answer", "ToolRequest", "ToolSpec", "Prompt", "Provider", "ConsoleProvider", "AnthropicProvider",
    "SandboxProvider", "create_provider",
    "ScriptRunner", "ExecutionResult", "StdLib", "execute", "parse", "lex",
]
