"""
Tool-server manager: MCP clients for the servers a script declares.

Each registration moves through UNCONNECTED -> CONNECTING -> READY ->
DISCONNECTED. A connection is owned by a single background task that enters
the transport and ClientSession contexts, performs the handshake and then
waits until it is told to close. The MCP transports are built on anyio
cancel scopes, which must be entered and exited by the same task; keeping
every connection inside its own task satisfies that no matter which task
makes the calls.
"""
import asyncio
import enum
import logging
import re
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

import anyio
from mcp import ClientSession, McpError, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import CONNECTION_CLOSED

from orchid.orchid_config import OrchidConfig, ServerSpec
from orchid.orchid_datatypes import ToolHandle
from orchid.orchid_errors import (
    EvaluationError, OrchidTimeoutError, ProtocolError, ToolNotFound, ToolServerConnectionError,
)
from orchid.orchid_provider import ToolSpec
from orchid.orchid_serialize import from_wire, to_wire, try_json

log = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream)


class ServerState(enum.Enum):
    UNCONNECTED = "unconnected"
    CONNECTING = "connecting"
    READY = "ready"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class ToolInfo:
    name: str
    description: str
    input_schema: Dict[str, Any]

    @property
    def parameters(self) -> List[str]:
        props = self.input_schema.get("properties")
        return list(props) if isinstance(props, dict) else []


@dataclass
class ServerRegistration:
    spec: ServerSpec
    state: ServerState = ServerState.UNCONNECTED
    tools: Dict[str, ToolInfo] = field(default_factory=dict)
    last_error: Optional[str] = None
    connection: Optional['_ServerConnection'] = None
    handshake: Optional[asyncio.Task] = None

    @property
    def name(self) -> str:
        return self.spec.name


@asynccontextmanager
async def open_mcp_session(spec: ServerSpec) -> AsyncIterator[ClientSession]:
    """Opens the transport named by `spec` and yields an (uninitialized) ClientSession."""
    async with AsyncExitStack() as stack:
        if spec.transport == "stdio":
            params = StdioServerParameters(
                command=spec.command,
                args=list(spec.args),
                env=dict(spec.env) if spec.env else None,
                cwd=spec.cwd,
            )
            read_stream, write_stream = await stack.enter_async_context(stdio_client(params))
        elif spec.transport == "sse":
            read_stream, write_stream = await stack.enter_async_context(
                sse_client(spec.url, headers=spec.headers or None))
        else:
            read_stream, write_stream, _ = await stack.enter_async_context(
                streamablehttp_client(spec.url, headers=spec.headers or None))
        session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
        yield session


SessionOpener = Callable[[ServerSpec], Any]


class _ServerConnection:
    """One live server session, entered and exited by its own task."""

    def __init__(self, spec: ServerSpec, opener: SessionOpener):
        self.spec = spec
        self._opener = opener
        self.session = None
        self.lost: Optional[BaseException] = None
        self._ready: asyncio.Future = asyncio.get_running_loop().create_future()
        self._closing = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Starts the owner task; returns the tools/list result once the handshake is done."""
        self._task = asyncio.create_task(self._run(), name=f"mcp:{self.spec.name}")
        return await self._ready

    async def _run(self):
        try:
            async with self._opener(self.spec) as session:
                await session.initialize()
                listed = await session.list_tools()
                self.session = session
                if not self._ready.done():
                    self._ready.set_result(listed)
                await self._closing.wait()
        except Exception as e:
            if not self._ready.done():
                self._ready.set_exception(e)
            elif not self._closing.is_set():
                self.lost = e
                log.warning("tool server %r connection lost: %s", self.spec.name, e)
            else:
                log.debug("tool server %r raised during shutdown: %s", self.spec.name, e)
        finally:
            self.session = None
            if not self._ready.done():
                self._ready.cancel()

    async def close(self, timeout: float = 5.0):
        task = self._task
        if task is None or task.done():
            return
        self._closing.set()
        if self.session is None:
            task.cancel()
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


_TOOL_NAME_RE = re.compile(r"[^A-Za-z0-9_-]")


def catalog_name(server: str, tool: str) -> str:
    """Tool names offered to a model: `<server>__<tool>`, restricted to [A-Za-z0-9_-]."""
    return _TOOL_NAME_RE.sub("_", f"{server}__{tool}")[:64]


def map_arguments(info: ToolInfo, args: Optional[Iterable[Any]] = None,
                  kwargs: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Maps positional arguments onto the input schema's property order, then merges keywords."""
    positional = list(args or [])
    params = info.parameters
    out: Dict[str, Any] = {}
    if positional:
        if not params and len(positional) == 1 and isinstance(positional[0], dict) and not kwargs:
            return to_wire(positional[0])
        if len(positional) > len(params):
            raise EvaluationError(
                f"tool {info.name!r} takes {len(params)} positional argument(s), got {len(positional)}")
        for name, value in zip(params, positional):
            out[name] = value
    for name, value in (kwargs or {}).items():
        if name in out:
            raise EvaluationError(f"tool {info.name!r} got multiple values for {name!r}")
        out[name] = value
    return to_wire(out)


def decode_tool_result(result: Any) -> Any:
    """Turns a CallToolResult into an Orchid value."""
    content = getattr(result, "content", None)
    if not isinstance(content, list):
        raise ProtocolError(f"malformed tool result: {type(result).__name__}")
    texts = [block.text for block in content if isinstance(getattr(block, "text", None), str)]

    if getattr(result, "isError", False):
        return {"error": "\n".join(texts).strip() or "tool error"}

    if len(texts) == 1:
        ok, value = try_json(texts[0])
        return from_wire(value) if ok else texts[0]
    if texts:
        decoded = []
        for text in texts:
            ok, value = try_json(text)
            decoded.append(from_wire(value) if ok else text)
        return decoded
    structured = getattr(result, "structuredContent", None)
    if structured is not None:
        return from_wire(structured)
    return None


class ToolServerManager:
    """Owns every tool-server registration of one run."""

    def __init__(self, servers: Iterable[ServerSpec] = (), *, opener: Optional[SessionOpener] = None,
                 connect_timeout: float = 30.0, call_timeout: float = 120.0):
        self.registrations: Dict[str, ServerRegistration] = {s.name: ServerRegistration(s) for s in servers}
        self._opener = opener or open_mcp_session
        self.connect_timeout = connect_timeout
        self.call_timeout = call_timeout
        self._closed = False

    @classmethod
    def from_config(cls, config: OrchidConfig, **kwargs) -> 'ToolServerManager':
        return cls(config.servers.values(), **kwargs)

    @property
    def closed(self) -> bool:
        return self._closed

    def has_server(self, name: str) -> bool:
        return name in self.registrations

    def state(self, name: str) -> ServerState:
        return self._registration(name).state

    def _registration(self, name: str) -> ServerRegistration:
        reg = self.registrations.get(name)
        if reg is None:
            raise ToolNotFound(f"no tool server named {name!r} is configured")
        return reg

    def _set_state(self, reg: ServerRegistration, state: ServerState):
        log.debug("tool server %r: %s -> %s", reg.name, reg.state.value, state.value)
        reg.state = state

    # --- Connecting ---

    async def connect(self, *names: str) -> None:
        """Connects the named servers (all when none are named) in parallel."""
        targets = names or tuple(self.registrations)
        results = await asyncio.gather(*(self._ensure_ready(n) for n in targets), return_exceptions=True)
        for res in results:
            if isinstance(res, BaseException):
                raise res

    async def _ensure_ready(self, name: str) -> ServerRegistration:
        reg = self._registration(name)
        if self._closed:
            raise ToolServerConnectionError(f"tool server manager is closed; cannot use {name!r}")
        if reg.state is ServerState.READY:
            return reg
        if reg.state is ServerState.DISCONNECTED:
            raise ToolServerConnectionError(f"tool server {name!r} is disconnected")
        if reg.handshake is None:
            reg.handshake = asyncio.create_task(self._handshake(reg), name=f"mcp-handshake:{name}")
        await asyncio.shield(reg.handshake)
        return reg

    async def _handshake(self, reg: ServerRegistration) -> None:
        self._set_state(reg, ServerState.CONNECTING)
        conn = _ServerConnection(reg.spec, self._opener)
        try:
            try:
                listed = await asyncio.wait_for(conn.start(), self.connect_timeout)
            except asyncio.TimeoutError:
                await conn.close()
                raise OrchidTimeoutError(
                    f"tool server {reg.name!r} did not finish its handshake within {self.connect_timeout:g}s") from None
            except Exception as e:
                await conn.close()
                raise ToolServerConnectionError(f"cannot connect to tool server {reg.name!r}: {e}") from e
            tools = {}
            for tool in getattr(listed, "tools", None) or []:
                tname = getattr(tool, "name", None)
                if not isinstance(tname, str) or not tname:
                    continue
                schema = getattr(tool, "inputSchema", None)
                tools[tname] = ToolInfo(
                    name=tname,
                    description=getattr(tool, "description", None) or "",
                    input_schema=dict(schema) if isinstance(schema, dict) else {"type": "object", "properties": {}},
                )
        except (ToolServerConnectionError, OrchidTimeoutError) as e:
            reg.last_error = e.detail
            self._set_state(reg, ServerState.UNCONNECTED)
            raise
        finally:
            reg.handshake = None

        if self._closed:
            await conn.close()
            self._set_state(reg, ServerState.DISCONNECTED)
            raise ToolServerConnectionError(f"tool server manager closed while connecting {reg.name!r}")
        reg.tools = tools
        reg.connection = conn
        reg.last_error = None
        self._set_state(reg, ServerState.READY)
        log.debug("tool server %r ready with %d tool(s)", reg.name, len(tools))

    # --- Tools ---

    async def tool_info(self, server: str, tool: str) -> ToolInfo:
        reg = await self._ensure_ready(server)
        info = reg.tools.get(tool)
        if info is None:
            raise ToolNotFound(f"tool server {server!r} has no tool {tool!r}")
        return info

    async def list_tools(self, server: str) -> List[ToolInfo]:
        reg = await self._ensure_ready(server)
        return list(reg.tools.values())

    async def call_tool(self, server: str, tool: str, arguments: Any = None,
                        kwargs: Optional[Dict[str, Any]] = None) -> Any:
        """Calls `tool` on `server`. `arguments` is a record or a list of positional values."""
        if self._closed:
            raise ToolServerConnectionError(f"tool server manager is closed; cannot call {server}/{tool}")
        info = await self.tool_info(server, tool)
        reg = self.registrations[server]
        if isinstance(arguments, dict):
            wire_args = map_arguments(info, None, {**arguments, **(kwargs or {})})
        else:
            wire_args = map_arguments(info, arguments, kwargs)

        conn = reg.connection
        session = conn.session if conn is not None else None
        if session is None:
            reason = f": {conn.lost}" if conn is not None and conn.lost else ""
            raise ToolServerConnectionError(f"tool server {server!r} connection is gone{reason}")

        log.debug("tools/call %s/%s %s", server, tool, wire_args)
        try:
            result = await asyncio.wait_for(session.call_tool(tool, arguments=wire_args), self.call_timeout)
        except asyncio.TimeoutError:
            raise OrchidTimeoutError(f"{server}/{tool} did not answer within {self.call_timeout:g}s") from None
        except McpError as e:
            if getattr(e.error, "code", None) == CONNECTION_CLOSED:
                raise ToolServerConnectionError(f"tool server {server!r} closed the connection") from e
            raise ProtocolError(f"{server}/{tool}: {e}") from e
        except _TRANSPORT_ERRORS as e:
            raise ToolServerConnectionError(f"tool server {server!r} transport closed: {e!r}") from e
        return decode_tool_result(result)

    async def catalog(self, names: Iterable[str]) -> List[ToolSpec]:
        """ToolSpecs for every tool of the given servers, connecting them as needed."""
        names = list(dict.fromkeys(names))
        await self.connect(*names)
        specs = []
        for server in names:
            for info in self.registrations[server].tools.values():
                specs.append(ToolSpec(
                    name=catalog_name(server, info.name),
                    description=info.description or f"{info.name} on {server}",
                    input_schema=info.input_schema,
                    target=ToolHandle(server, info.name),
                ))
        return specs

    # --- Teardown ---

    async def disconnect_all(self) -> None:
        """Closes every live connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        pending = [reg.handshake for reg in self.registrations.values() if reg.handshake is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for reg in self.registrations.values():
            if reg.connection is not None:
                await reg.connection.close()
                reg.connection = None
                self._set_state(reg, ServerState.DISCONNECTED)
