"""
Run options and the per-script tool-server configuration.

Options come from the environment and are overridden by the CLI. The
tool-server file (`orchid.config.json`, or `.yaml`/`.yml`) is discovered by
walking upward from the script's directory; the first match wins.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from orchid.orchid_errors import ConfigError
from orchid.orchid_serialize import deserialize

log = logging.getLogger(__name__)

CONFIG_FILENAMES = ("orchid.config.json", "orchid.config.yaml", "orchid.config.yml")
DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_MAX_REQUESTS = 50
DEFAULT_MAX_TOOL_ROUNDS = 10
PLUGIN_PATH_ENV = "ORCHID_PLUGIN_PATH"

_TRUTHY = {"1", "true", "yes", "on"}


def env_flag(name: str, environ: Optional[Dict[str, str]] = None) -> bool:
    env = os.environ if environ is None else environ
    return str(env.get(name, "")).strip().lower() in _TRUTHY


@dataclass
class RunOptions:
    """Everything one run needs to know before it starts."""
    provider: str = "console"
    model: Optional[str] = None
    api_key: Optional[str] = None
    sandbox: bool = False
    max_requests: int = DEFAULT_MAX_REQUESTS
    config_path: Optional[str] = None
    trace: bool = False
    script_dir: Optional[str] = None
    plugin_path: List[str] = field(default_factory=list)
    max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS
    request_timeout: float = 120.0
    connect_timeout: float = 30.0
    tool_timeout: float = 120.0
    max_tokens: int = 4096

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> 'RunOptions':
        env = os.environ if environ is None else environ
        opts = cls(
            model=env.get("ORCHID_MODEL") or None,
            api_key=env.get("ANTHROPIC_API_KEY") or None,
            sandbox=env_flag("ORCHID_SANDBOX", env),
            plugin_path=split_search_path(env.get(PLUGIN_PATH_ENV)),
        )
        raw_max = env.get("ORCHID_MAX_REQUESTS")
        if raw_max:
            opts.max_requests = parse_positive_int(raw_max, "ORCHID_MAX_REQUESTS")
        for key, value in overrides.items():
            if not hasattr(opts, key):
                raise ConfigError(f"unknown run option {key!r}")
            # None means "not given on the command line": keep the environment's value.
            if value is None:
                continue
            setattr(opts, key, value)
        return opts

    @property
    def resolved_model(self) -> str:
        return self.model or DEFAULT_MODEL


def parse_positive_int(raw: Any, what: str) -> int:
    try:
        n = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{what} must be an integer, got {raw!r}") from None
    if n < 1:
        raise ConfigError(f"{what} must be at least 1, got {n}")
    return n


def split_search_path(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [p for p in raw.split(os.pathsep) if p.strip()]


# ===================================================================
# Tool-server configuration
# ===================================================================

@dataclass
class ServerSpec:
    """How to reach one tool server."""
    name: str
    transport: str = "stdio"
    command: Optional[str] = None
    args: List[str] = field(default_factory=list)
    env: Optional[Dict[str, str]] = None
    cwd: Optional[str] = None
    url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    enabled: bool = True


@dataclass
class OrchidConfig:
    servers: Dict[str, ServerSpec] = field(default_factory=dict)
    source: Optional[Path] = None


def find_config(start_dir: str | Path) -> Optional[Path]:
    """Walks upward from `start_dir`; returns the first config file found."""
    cur = Path(start_dir).resolve()
    for directory in (cur, *cur.parents):
        for name in CONFIG_FILENAMES:
            candidate = directory / name
            if candidate.is_file():
                return candidate
    return None


def _expand(value: str) -> str:
    return os.path.expandvars(value)


def _server_from_entry(name: str, entry: Any, base_dir: Path) -> ServerSpec:
    if not isinstance(entry, dict):
        raise ConfigError(f"server {name!r} must be an object")
    command = entry.get("command")
    url = entry.get("url")
    transport = str(entry.get("transport") or ("stdio" if command else "http")).lower()
    if transport not in ("stdio", "sse", "http"):
        raise ConfigError(f"server {name!r}: unknown transport {transport!r}")
    if transport == "stdio" and not (isinstance(command, str) and command.strip()):
        raise ConfigError(f"server {name!r}: stdio transport needs a 'command'")
    if transport != "stdio" and not (isinstance(url, str) and url.strip()):
        raise ConfigError(f"server {name!r}: {transport} transport needs a 'url'")

    args = entry.get("args") or []
    if not isinstance(args, list):
        raise ConfigError(f"server {name!r}: 'args' must be a list")
    env = entry.get("env")
    if env is not None and not isinstance(env, dict):
        raise ConfigError(f"server {name!r}: 'env' must be an object")
    headers = entry.get("headers") or {}
    if not isinstance(headers, dict):
        raise ConfigError(f"server {name!r}: 'headers' must be an object")

    cwd = entry.get("cwd")
    if isinstance(cwd, str) and cwd.strip():
        p = Path(os.path.expanduser(_expand(cwd.strip())))
        cwd = str(p if p.is_absolute() else (base_dir / p).resolve())
    else:
        cwd = None

    return ServerSpec(
        name=name,
        transport=transport,
        command=command.strip() if isinstance(command, str) else None,
        args=[_expand(str(a)) for a in args],
        env={str(k): _expand(str(v)) for k, v in env.items()} if env else None,
        cwd=cwd,
        url=_expand(url.strip()) if isinstance(url, str) else None,
        headers={str(k): _expand(str(v)) for k, v in headers.items()},
        enabled=entry.get("enabled") is not False,
    )


def load_config(path: str | Path) -> OrchidConfig:
    """Reads and validates a tool-server configuration file."""
    p = Path(path)
    try:
        raw = p.read_bytes()
    except OSError as e:
        raise ConfigError(f"cannot read config {p}: {e}") from e
    fmt = "yaml" if p.suffix.lower() in (".yaml", ".yml") else "json"
    try:
        data = deserialize(raw, fmt=fmt)
    except ValueError as e:
        raise ConfigError(f"{p}: {e}") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{p}: top level must be an object")
    servers_raw = data.get("mcpServers", {}) or {}
    if not isinstance(servers_raw, dict):
        raise ConfigError(f"{p}: 'mcpServers' must be an object")
    servers = {}
    for name, entry in servers_raw.items():
        spec = _server_from_entry(str(name), entry, p.parent)
        if spec.enabled:
            servers[spec.name] = spec
    log.debug("loaded %d tool server(s) from %s", len(servers), p)
    return OrchidConfig(servers=servers, source=p)


def load_config_for_script(script_dir: Optional[str | Path], explicit: Optional[str | Path] = None) -> OrchidConfig:
    """The explicit path wins; otherwise walk upward from the script directory."""
    if explicit:
        return load_config(explicit)
    if script_dir is None:
        return OrchidConfig()
    found = find_config(script_dir)
    if found is None:
        return OrchidConfig()
    return load_config(found)
