"""
Providers answer reasoning operations.

A provider receives a Prompt (operation name, input, rendered text and the
tool exchanges of the current round trip) plus the catalog of tools it may
request, and returns either an Answer or one or more ToolRequests. The
interpreter runs the requested tools and asks again.
"""
import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Union

import httpx
import pystache

from orchid.orchid_errors import ConfigError, ProviderError, RateLimitExceeded
from orchid.orchid_http import http_post_json
from orchid.orchid_printer import to_display
from orchid.orchid_serialize import serialize

log = logging.getLogger(__name__)


# ===================================================================
# Prompt / reply data
# ===================================================================

@dataclass
class ToolRequest:
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None


@dataclass
class ToolExchange:
    """One executed tool request and its result. `round` groups requests made together."""
    request: ToolRequest
    result: Any
    round: int = 0


@dataclass
class Answer:
    value: Any


@dataclass
class ToolSpec:
    """A tool offered to the provider. `target` tells the interpreter where to route it."""
    name: str
    description: str
    input_schema: Dict[str, Any]
    target: Any = None

    def to_wire(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "input_schema": self.input_schema}


@dataclass
class Prompt:
    operation: str
    input: Any
    text: str
    exchanges: List[ToolExchange] = field(default_factory=list)


Reply = Union[Answer, ToolRequest, List[ToolRequest]]


# ===================================================================
# Prompt templates
# ===================================================================

PROMPT_TEMPLATES: Dict[str, str] = {
    "Ask": "{{{input}}}",
    "CoT": (
        "Think through the following step by step. Show your reasoning, "
        "then give the final answer on the last line.\n\n{{{input}}}"
    ),
    "Summarize": "Summarize the following concisely, keeping every key fact.\n\n{{{input}}}",
    "Critique": (
        "Critique the following. List its weaknesses, errors and unsupported "
        "claims, most serious first.\n\n{{{input}}}"
    ),
    "Refine": "Improve the following. Return only the improved version.\n\n{{{input}}}",
    "Decide": (
        "Make a decision about the following. State the decision first, "
        "then a short justification.\n\n{{{input}}}"
    ),
    "Extract": (
        "Extract the structured information from the following. "
        "Answer with JSON only.\n\n{{{input}}}"
    ),
    "Search": (
        "Find information about the following. Use the available tools when "
        "they help, and cite what you found.\n\n{{{input}}}"
    ),
}

REASONING_OPERATIONS = tuple(PROMPT_TEMPLATES)

_renderer = pystache.Renderer(escape=lambda u: u)


def render_prompt(operation: str, value: Any) -> Prompt:
    template = PROMPT_TEMPLATES.get(operation)
    if template is None:
        raise ProviderError(f"no prompt template for operation {operation!r}")
    text = _renderer.render(template, {"input": to_display(value), "operation": operation})
    return Prompt(operation=operation, input=value, text=text)


# ===================================================================
# Providers
# ===================================================================

class Provider(ABC):
    name = "provider"
    # Whether the provider can make use of a tool catalog at all.
    uses_tools = False

    @abstractmethod
    async def ask(self, prompt: Prompt, tools: Optional[List[ToolSpec]] = None) -> Reply:
        raise NotImplementedError


class ConsoleProvider(Provider):
    """Echoes the operation and input. No I/O and no state."""
    name = "console"

    async def ask(self, prompt: Prompt, tools: Optional[List[ToolSpec]] = None) -> Reply:
        return Answer(f"[{prompt.operation}] {to_display(prompt.input)}")


ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

SYSTEM_PROMPT = (
    "You are the reasoning engine of an Orchid script. Answer the request "
    "directly. When tools are offered, call them only when they are needed."
)


def _result_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    return serialize(result, fmt="json", pretty=False)


class AnthropicProvider(Provider):
    """Anthropic Messages API over httpx."""
    name = "llm"
    uses_tools = True

    def __init__(self, api_key: Optional[str], model: str, *, max_tokens: int = 4096,
                 timeout: float = 120.0, url: str = ANTHROPIC_URL, retries: int = 2,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        if not api_key:
            raise ConfigError("the llm provider needs an API key (set ANTHROPIC_API_KEY)")
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.url = url
        self.retries = retries
        self.transport = transport

    def build_messages(self, prompt: Prompt) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = [{"role": "user", "content": prompt.text}]
        rounds: Dict[int, List[ToolExchange]] = {}
        for ex in prompt.exchanges:
            rounds.setdefault(ex.round, []).append(ex)
        for _, exchanges in sorted(rounds.items()):
            messages.append({
                "role": "assistant",
                "content": [
                    {"type": "tool_use", "id": ex.request.id, "name": ex.request.name, "input": ex.request.arguments}
                    for ex in exchanges
                ],
            })
            messages.append({
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": ex.request.id, "content": _result_text(ex.result)}
                    for ex in exchanges
                ],
            })
        return messages

    def build_payload(self, prompt: Prompt, tools: Optional[List[ToolSpec]] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": SYSTEM_PROMPT,
            "messages": self.build_messages(prompt),
        }
        if tools:
            payload["tools"] = [t.to_wire() for t in tools]
        return payload

    def parse_response(self, data: Any) -> Reply:
        if not isinstance(data, dict):
            raise ProviderError(f"unexpected response body: {to_display(data)[:200]}")
        if data.get("type") == "error":
            err = data.get("error") or {}
            raise ProviderError(f"{err.get('type', 'error')}: {err.get('message', '')}")
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise ProviderError("response has no content blocks")

        texts: List[str] = []
        requests: List[ToolRequest] = []
        for block in blocks:
            if not isinstance(block, dict):
                continue
            kind = block.get("type")
            if kind == "text":
                texts.append(str(block.get("text", "")))
            elif kind == "tool_use":
                args = block.get("input") or {}
                if not isinstance(args, dict):
                    raise ProviderError(f"tool_use input for {block.get('name')!r} is not an object")
                requests.append(ToolRequest(name=str(block.get("name")), arguments=args, id=block.get("id")))

        if requests:
            return requests[0] if len(requests) == 1 else requests
        return Answer("".join(texts).strip())

    async def ask(self, prompt: Prompt, tools: Optional[List[ToolSpec]] = None) -> Reply:
        payload = self.build_payload(prompt, tools)
        log.debug("llm request: op=%s model=%s tools=%d exchanges=%d",
                  prompt.operation, self.model, len(tools or []), len(prompt.exchanges))
        data = await http_post_json(
            self.url,
            payload,
            config={
                "timeout": self.timeout,
                "retries": self.retries,
                "headers": {
                    "x-api-key": self.api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                    "content-type": "application/json",
                },
            },
            transport=self.transport,
        )
        return self.parse_response(data)


# ===================================================================
# Sandbox
# ===================================================================

_ANSI_RE = re.compile(r"\x1b(?:\[[0-?]*[ -/]*[@-~]|\][^\x07\x1b]*(?:\x07|\x1b\\)?|[@-Z\\-_])")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_SPECIAL_TOKEN_RE = re.compile(r"<\|[^|<>]{0,40}\|>")
_INST_RE = re.compile(r"\[/?INST\]|<</?SYS>>", re.IGNORECASE)
_SYSTEM_TAG_RE = re.compile(r"</?\s*system\s*>", re.IGNORECASE)
_ROLE_RE = re.compile(r"^(\s*)(Human|Assistant|System|User)\s*:", re.IGNORECASE | re.MULTILINE)
_OVERRIDE_RE = re.compile(
    r"\b(?:ignore|disregard|forget)\s+(?:all\s+)?(?:of\s+)?(?:the\s+)?"
    r"(?:previous|prior|above|earlier)\s+(?:instructions|prompts|rules)\b",
    re.IGNORECASE,
)


def sanitize(text: str) -> str:
    """Neutralises prompt-injection markers in text bound for a model."""
    out = _ANSI_RE.sub("", text)
    out = _CONTROL_RE.sub("", out)
    out = _SPECIAL_TOKEN_RE.sub("", out)
    out = _INST_RE.sub("", out)
    out = _SYSTEM_TAG_RE.sub("", out)
    out = _ROLE_RE.sub(lambda m: f"{m.group(1)}{m.group(2)} (quoted) -", out)
    out = _OVERRIDE_RE.sub("[filtered]", out)
    return out


def sanitize_value(value: Any) -> Any:
    match value:
        case str():
            return sanitize(value)
        case list():
            return [sanitize_value(v) for v in value]
        case dict():
            return {k: sanitize_value(v) for k, v in value.items()}
    return value


class SandboxProvider(Provider):
    """Wraps another provider with a request cap and input sanitisation."""
    name = "sandbox"

    def __init__(self, inner: Provider, max_requests: int = 50):
        if not isinstance(max_requests, int) or isinstance(max_requests, bool) or max_requests < 1:
            raise ConfigError(f"max_requests must be a positive integer, got {max_requests!r}")
        self.inner = inner
        self.max_requests = max_requests
        self.request_count = 0
        self._lock = asyncio.Lock()

    @property
    def uses_tools(self) -> bool:
        return self.inner.uses_tools

    async def ask(self, prompt: Prompt, tools: Optional[List[ToolSpec]] = None) -> Reply:
        async with self._lock:
            if self.request_count >= self.max_requests:
                raise RateLimitExceeded(f"sandbox limit of {self.max_requests} requests reached")
            self.request_count += 1
            n = self.request_count
        log.debug("sandbox request %d/%d (%s)", n, self.max_requests, prompt.operation)
        clean = replace(
            prompt,
            text=sanitize(prompt.text),
            exchanges=[replace(ex, result=sanitize_value(ex.result)) for ex in prompt.exchanges],
        )
        return await self.inner.ask(clean, tools)


# ===================================================================
# Factory
# ===================================================================

PROVIDER_NAMES = ("console", "llm", "claude")


def create_provider(options, transport: Optional[httpx.AsyncBaseTransport] = None) -> Provider:
    """Builds the provider named by `options.provider`, sandboxed when asked."""
    name = (options.provider or "console").lower()
    match name:
        case "console":
            provider: Provider = ConsoleProvider()
        case "llm" | "claude" | "anthropic":
            provider = AnthropicProvider(
                options.api_key,
                options.resolved_model,
                max_tokens=options.max_tokens,
                timeout=options.request_timeout,
                transport=transport,
            )
        case _:
            raise ConfigError(f"unknown provider {options.provider!r}; use one of: {', '.join(PROVIDER_NAMES)}")
    if options.sandbox:
        provider = SandboxProvider(provider, options.max_requests)
    return provider
