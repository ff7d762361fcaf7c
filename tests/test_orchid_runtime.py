import json
import sys
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from mcp.types import CallToolResult, ListToolsResult, TextContent, Tool

from orchid.orchid_config import RunOptions, ServerSpec
from orchid.orchid_errors import EvaluationError, ToolNotFound
from orchid.orchid_mcp import ServerState, ToolServerManager
from orchid.orchid_provider import Answer, Provider, ToolRequest
from orchid.orchid_runtime import ScriptRunner, execute

FIXTURES = Path(__file__).parent / "fixtures"
SCRIPT = FIXTURES / "script.orch"


class SpyManager(ToolServerManager):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.disconnects = 0

    async def disconnect_all(self):
        self.disconnects += 1
        await super().disconnect_all()


class ScriptedProvider(Provider):
    """Replies from a list; each entry is a reply or a function of the prompt."""
    def __init__(self, *replies, uses_tools=False):
        self.replies = list(replies)
        self.uses_tools = uses_tools
        self.prompts = []
        self.tools_seen = []

    async def ask(self, prompt, tools=None):
        self.prompts.append(prompt)
        self.tools_seen.append([t.name for t in tools or []])
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return reply(prompt) if callable(reply) else reply


class BrokenProvider(Provider):
    async def ask(self, prompt, tools=None):
        raise RuntimeError("backend exploded")


@asynccontextmanager
async def echo_session(spec):
    class Session:
        async def initialize(self):
            pass

        async def list_tools(self):
            return ListToolsResult(tools=[Tool(name="echo", description="Echo", inputSchema={
                "type": "object", "properties": {"text": {"type": "string"}}})])

        async def call_tool(self, name, arguments=None):
            return CallToolResult(content=[TextContent(type="text", text=arguments["text"])])
    yield Session()


def last_result(prompt):
    return Answer(prompt.exchanges[-1].result)


async def run_orchid(src, *, options=None, script_path=SCRIPT, **runner_kwargs):
    runner_kwargs.setdefault("tool_servers", ToolServerManager())
    runner = ScriptRunner(options or RunOptions(), **runner_kwargs)
    return runner, await runner.handle_script(src, script_path)

# --- Cleanup on every exit path ---

@pytest.mark.asyncio
@pytest.mark.parametrize("src, status", [
    ('x := 1', 'success'),
    ('x := 1 / 0', 'error'),
    ('x := (1 +', 'error'),
    ('Use Plugin("nonexistent")', 'error'),
])
async def test_tool_servers_are_released_exactly_once(src, status):
    spy = SpyManager()
    _, res = await run_orchid(src, tool_servers=spy)
    assert res.status == status
    assert spy.disconnects == 1
    assert spy.closed

@pytest.mark.asyncio
async def test_tool_servers_released_when_setup_fails():
    spy = SpyManager()
    _, res = await run_orchid('1', options=RunOptions(provider="llm", api_key=None), tool_servers=spy)
    assert res.error_kind == "ConfigError"
    assert spy.disconnects == 1

@pytest.mark.asyncio
async def test_connected_servers_are_disconnected_after_run():
    manager = ToolServerManager([ServerSpec("fake", command="x")], opener=echo_session)
    _, res = await run_orchid('Use MCP("fake") as f\nf:echo("hi")', tool_servers=manager)
    assert res.value == "hi"
    assert manager.state("fake") is ServerState.DISCONNECTED

# --- Provider and tool loop ---

@pytest.mark.asyncio
async def test_provider_calls_plugin_operation_as_tool():
    provider = ScriptedProvider(ToolRequest("g__Greet", {"name": "Ann"}), last_result)
    src = 'Use Plugin("greeter") as g\nAsk("greet Ann")'
    _, res = await run_orchid(src, provider=provider)
    assert res.status == 'success', res.error_message
    assert res.value == "Hello, Ann!"
    assert "g__Greet" in provider.tools_seen[0]
    exchange = provider.prompts[1].exchanges[0]
    assert exchange.request.id == "call_0_0"
    assert exchange.round == 0

@pytest.mark.asyncio
async def test_several_requests_in_one_round():
    provider = ScriptedProvider(
        [ToolRequest("g__Greet", {"name": "A"}, "x1"), ToolRequest("g__Shout", {"text": "b"}, "x2")],
        lambda p: Answer([ex.result for ex in p.exchanges]),
    )
    _, res = await run_orchid('Use Plugin("greeter") as g\nCoT("go")', provider=provider)
    assert res.value == ["Hello, A!", "b!!!"]
    assert [ex.request.id for ex in provider.prompts[1].exchanges] == ["x1", "x2"]

@pytest.mark.asyncio
async def test_tool_loop_is_bounded():
    provider = ScriptedProvider(ToolRequest("g__Greet", {"name": "again"}))
    _, res = await run_orchid('Use Plugin("greeter") as g\nAsk("loop")',
                              options=RunOptions(max_tool_rounds=2), provider=provider)
    assert res.error_kind == "ProviderError"
    assert "2 tool round(s)" in res.error_message
    assert len(provider.prompts) == 3

@pytest.mark.asyncio
async def test_unknown_requested_tool():
    provider = ScriptedProvider(ToolRequest("ghost__Op", {}))
    _, res = await run_orchid('Ask("x")', provider=provider)
    assert res.error_kind == "ToolNotFound"

@pytest.mark.asyncio
async def test_mcp_tools_are_offered_to_tool_using_providers():
    manager = ToolServerManager([ServerSpec("fake", command="x")], opener=echo_session)
    provider = ScriptedProvider(ToolRequest("fake__echo", {"text": "from tool"}), last_result, uses_tools=True)
    _, res = await run_orchid('Use MCP("fake")\nAsk("x")', provider=provider, tool_servers=manager)
    assert res.value == "from tool"
    assert provider.tools_seen[0] == ["fake__echo"]

@pytest.mark.asyncio
async def test_mcp_catalog_skipped_for_providers_without_tools():
    manager = ToolServerManager([ServerSpec("fake", command="x")], opener=echo_session)
    provider = ScriptedProvider(Answer("plain"))
    _, res = await run_orchid('Use MCP("fake")\nAsk("x")', provider=provider, tool_servers=manager)
    assert res.value == "plain"
    assert provider.tools_seen == [[]]
    assert manager.state("fake") is ServerState.UNCONNECTED

@pytest.mark.asyncio
async def test_undeclared_server_is_tool_not_found():
    _, res = await run_orchid('Use MCP("filesystem") as fs')
    assert res.error_kind == "ToolNotFound"

@pytest.mark.asyncio
async def test_unexpected_failure_is_internal_error():
    _, res = await run_orchid('Ask("x")', provider=BrokenProvider())
    assert res.error_kind == "InternalError"
    assert "backend exploded" in res.error_message

# --- Sandbox ---

@pytest.mark.asyncio
async def test_sandbox_cap_stops_the_run():
    src = 'first := Ask("one")\nprint(first)\nsecond := Ask("two")\nprint("unreachable")'
    _, res = await run_orchid(src, options=RunOptions(sandbox=True, max_requests=1))
    assert res.status == 'error'
    assert res.error_kind == "RateLimitExceeded"
    assert res.output() == ["[Ask] one"]
    assert "line 3" in res.error_message

@pytest.mark.asyncio
async def test_console_ask():
    _, res = await run_orchid('Ask("hello")')
    assert res.value == "[Ask] hello"

# --- Results and errors ---

@pytest.mark.asyncio
async def test_effects_are_streamed_to_callback():
    seen = []
    _, res = await run_orchid('print("a")\nprint("b")\n1 / 0', on_effect=seen.append)
    assert [e['message'] for e in seen[:2]] == ["a", "b"]
    assert seen[-1]['topics'] == ['stderr']
    assert seen == res.side_effects
    assert res.output('stderr') == [res.error_message]

@pytest.mark.asyncio
async def test_error_reaches_callback_after_tool_servers_close():
    spy = SpyManager()
    disconnects_seen = []

    def on_effect(effect):
        if effect['topics'] == ['stderr']:
            disconnects_seen.append(spy.disconnects)

    _, res = await run_orchid('1 / 0', tool_servers=spy, on_effect=on_effect)
    assert res.status == 'error'
    assert disconnects_seen == [1]

@pytest.mark.asyncio
async def test_parse_error_shows_source_context():
    _, res = await run_orchid('x := 1\ny := (2 +\nz := 3')
    assert res.error_kind == "ParseError"
    assert "^" in res.error_message
    assert "| y := (2 +" in res.error_message
    assert res.format_error() == res.error_message

@pytest.mark.asyncio
async def test_execute_returns_value_or_raises():
    assert await execute('2 * 21', RunOptions(), tool_servers=ToolServerManager()) == 42
    with pytest.raises(EvaluationError):
        await execute('1 / 0', RunOptions(), tool_servers=ToolServerManager())
    with pytest.raises(ToolNotFound):
        await execute('Use Plugin("nonexistent")', RunOptions(), script_path=SCRIPT,
                      tool_servers=ToolServerManager())

@pytest.mark.asyncio
async def test_run_file(tmp_path):
    (tmp_path / "plugins").mkdir()
    (tmp_path / "plugins" / "local.orch").write_text('agent Twice(x):\n    return x * 2\n')
    script = tmp_path / "main.orch"
    script.write_text('Use Plugin("local")\nlocal:Twice(21)\n')
    runner = ScriptRunner(RunOptions(), tool_servers=ToolServerManager())
    res = await runner.run_file(script)
    assert res.value == 42

# --- Configured tool servers, end to end ---

@pytest.mark.asyncio
async def test_use_mcp_from_discovered_config(tmp_path):
    config = {"mcpServers": {"echo": {
        "command": sys.executable,
        "args": [str(FIXTURES / "echo_server.py")],
    }}}
    (tmp_path / "orchid.config.json").write_text(json.dumps(config))
    sub = tmp_path / "scripts"
    sub.mkdir()
    src = 'Use MCP("echo")\n[echo:echo("ping"), echo:add(2, 3)]'
    runner = ScriptRunner(RunOptions(connect_timeout=60))
    res = await runner.handle_script(src, sub / "main.orch")
    assert res.status == 'success', res.error_message
    assert res.value == ["ping", 5]
