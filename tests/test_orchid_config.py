import json
import os

import pytest

from orchid.orchid_config import (
    DEFAULT_MAX_REQUESTS, DEFAULT_MODEL, RunOptions, env_flag, find_config, load_config,
    load_config_for_script, parse_positive_int, split_search_path,
)
from orchid.orchid_errors import ConfigError


def write_config(directory, data, name="orchid.config.json"):
    path = directory / name
    path.write_text(json.dumps(data) if name.endswith(".json") else data)
    return path

# --- Run options ---

def test_defaults():
    opts = RunOptions()
    assert opts.provider == "console"
    assert opts.sandbox is False
    assert opts.max_requests == DEFAULT_MAX_REQUESTS
    assert opts.resolved_model == DEFAULT_MODEL

def test_from_env_reads_variables():
    env = {
        "ORCHID_MODEL": "my-model",
        "ANTHROPIC_API_KEY": "sk-1",
        "ORCHID_SANDBOX": "yes",
        "ORCHID_PLUGIN_PATH": os.pathsep.join(["/a", "", "/b"]),
        "ORCHID_MAX_REQUESTS": "7",
    }
    opts = RunOptions.from_env(env)
    assert opts.resolved_model == "my-model"
    assert opts.api_key == "sk-1"
    assert opts.sandbox is True
    assert opts.plugin_path == ["/a", "/b"]
    assert opts.max_requests == 7

def test_overrides_win_but_none_keeps_environment():
    env = {"ORCHID_SANDBOX": "1", "ORCHID_MODEL": "env-model"}
    opts = RunOptions.from_env(env, sandbox=None, model="cli-model", provider="llm")
    assert opts.sandbox is True
    assert opts.model == "cli-model"
    assert opts.provider == "llm"

def test_unknown_override_is_config_error():
    with pytest.raises(ConfigError):
        RunOptions.from_env({}, colour="blue")

def test_bad_max_requests_in_environment():
    with pytest.raises(ConfigError):
        RunOptions.from_env({"ORCHID_MAX_REQUESTS": "lots"})
    with pytest.raises(ConfigError):
        RunOptions.from_env({"ORCHID_MAX_REQUESTS": "0"})

@pytest.mark.parametrize("raw, expected", [
    ("1", True), ("true", True), ("ON", True), (" yes ", True),
    ("0", False), ("false", False), ("", False), ("maybe", False),
])
def test_env_flag(raw, expected):
    assert env_flag("X", {"X": raw}) is expected

def test_parse_positive_int_and_search_path():
    assert parse_positive_int("3", "n") == 3
    with pytest.raises(ConfigError, match="must be an integer"):
        parse_positive_int("x", "n")
    assert split_search_path(None) == []
    assert split_search_path("") == []

# --- Config discovery ---

def test_find_config_walks_upward(tmp_path):
    cfg = write_config(tmp_path, {"mcpServers": {}})
    deep = tmp_path / "a" / "b"
    deep.mkdir(parents=True)
    assert find_config(deep) == cfg.resolve()

def test_nearest_config_wins(tmp_path):
    write_config(tmp_path, {"mcpServers": {"outer": {"command": "x"}}})
    inner = tmp_path / "proj"
    inner.mkdir()
    write_config(inner, {"mcpServers": {"inner": {"command": "y"}}})
    assert list(load_config_for_script(inner).servers) == ["inner"]

def test_explicit_path_beats_discovery(tmp_path):
    write_config(tmp_path, {"mcpServers": {"found": {"command": "x"}}})
    other = tmp_path / "other"
    other.mkdir()
    explicit = write_config(other, {"mcpServers": {"chosen": {"command": "y"}}}, name="custom.json")
    assert list(load_config_for_script(tmp_path, explicit).servers) == ["chosen"]

def test_no_config_means_no_servers(tmp_path):
    cfg = load_config_for_script(tmp_path)
    assert cfg.servers == {}
    assert cfg.source is None
    assert load_config_for_script(None).servers == {}

# --- Server entries ---

def test_stdio_entry_with_expansion(tmp_path, monkeypatch):
    monkeypatch.setenv("ORCHID_TEST_TOKEN", "secret")
    path = write_config(tmp_path, {"mcpServers": {
        "fs": {
            "command": "npx",
            "args": ["-y", "server-fs", "${ORCHID_TEST_TOKEN}"],
            "env": {"TOKEN": "$ORCHID_TEST_TOKEN"},
            "cwd": "work",
        },
    }})
    spec = load_config(path).servers["fs"]
    assert spec.transport == "stdio"
    assert spec.command == "npx"
    assert spec.args == ["-y", "server-fs", "secret"]
    assert spec.env == {"TOKEN": "secret"}
    assert spec.cwd == str((tmp_path / "work").resolve())

def test_remote_entries(tmp_path):
    path = write_config(tmp_path, {"mcpServers": {
        "search": {"url": "https://example.test/mcp", "headers": {"Authorization": "Bearer t"}},
        "events": {"transport": "sse", "url": "https://example.test/sse"},
        "off": {"command": "x", "enabled": False},
    }})
    servers = load_config(path).servers
    assert servers["search"].transport == "http"
    assert servers["search"].headers == {"Authorization": "Bearer t"}
    assert servers["events"].transport == "sse"
    assert "off" not in servers

def test_yaml_config(tmp_path):
    path = write_config(tmp_path, "mcpServers:\n  fs:\n    command: npx\n    args: [a, b]\n",
                        name="orchid.config.yaml")
    spec = load_config(path).servers["fs"]
    assert spec.args == ["a", "b"]

@pytest.mark.parametrize("servers, message", [
    ({"bad": "npx"}, "must be an object"),
    ({"bad": {"transport": "carrier-pigeon", "command": "x"}}, "unknown transport"),
    ({"bad": {"transport": "stdio"}}, "needs a 'command'"),
    ({"bad": {"transport": "sse"}}, "needs a 'url'"),
    ({"bad": {"command": "x", "args": "a b"}}, "'args' must be a list"),
    ({"bad": {"command": "x", "env": ["A=1"]}}, "'env' must be an object"),
])
def test_invalid_entries(tmp_path, servers, message):
    path = write_config(tmp_path, {"mcpServers": servers})
    with pytest.raises(ConfigError, match=message):
        load_config(path)

def test_malformed_files(tmp_path):
    bad_json = tmp_path / "orchid.config.json"
    bad_json.write_text("{not json")
    with pytest.raises(ConfigError, match="invalid JSON"):
        load_config(bad_json)

    listing = tmp_path / "list.json"
    listing.write_text("[]")
    with pytest.raises(ConfigError, match="top level"):
        load_config(listing)

    with pytest.raises(ConfigError, match="cannot read"):
        load_config(tmp_path / "missing.json")
