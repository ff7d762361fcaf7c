"""
Plugin resolution, loading and dispatch.

A plugin is an Orchid source file whose top-level `agent` and `macro`
declarations become its operations. `Use Plugin("name@^1.0") as p` finds the
file, evaluates it once per run in its own child of the global scope, and
binds the handle; `p:Op(...)` then dispatches into it.
"""
import asyncio
import contextvars
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, TYPE_CHECKING

from orchid.orchid_datatypes import FunctionDef, OrchidFunction, PluginHandle, Scope
from orchid.orchid_errors import ToolNotFound
from orchid.orchid_provider import ToolSpec
from orchid.orchid_transformer import FrontEnd

if TYPE_CHECKING:
    from orchid.orchid_interpreter import Evaluator

log = logging.getLogger(__name__)

PLUGIN_SUFFIX = ".orch"

# Paths being loaded by the current task, outermost first.
_loading_chain: contextvars.ContextVar[Tuple[Path, ...]] = contextvars.ContextVar("orchid_plugin_chain", default=())


def is_explicit_path(raw: str) -> bool:
    return raw.startswith((".", "/", "~")) or raw.endswith(PLUGIN_SUFFIX)


def strip_version(raw: str) -> str:
    """`summarizer@^1.2` -> `summarizer`. A leading `@` is part of the name."""
    at = raw.rfind("@")
    if at > 0:
        return raw[:at]
    return raw


def default_alias(raw: str) -> str:
    bare = strip_version(raw.strip())
    if is_explicit_path(bare):
        p = Path(bare)
        if p.name == "index" + PLUGIN_SUFFIX:
            stem = p.parent.name
        elif p.suffix == PLUGIN_SUFFIX:
            stem = p.stem
        else:
            stem = p.name
    else:
        stem = bare.rstrip("/").rsplit("/", 1)[-1]
    return stem.replace("-", "_")


def plugin_candidates(target: Path) -> List[Path]:
    """`<target>.orch` then `<target>/index.orch`; a target already ending in .orch is used as is."""
    if target.suffix == PLUGIN_SUFFIX:
        return [target]
    return [target.parent / (target.name + PLUGIN_SUFFIX), target / ("index" + PLUGIN_SUFFIX)]


@dataclass(frozen=True)
class PluginOperation:
    """Catalog target for one plugin operation."""
    handle: PluginHandle
    operation: str


class PluginResolver:
    """Finds, loads (once per run) and dispatches into plugins."""

    def __init__(self, evaluator: 'Evaluator', global_scope: Scope, *,
                 search_path: Sequence[str] = (), front_end: Optional[FrontEnd] = None):
        self.evaluator = evaluator
        self.global_scope = global_scope
        self.search_path = [Path(os.path.expanduser(p)) for p in search_path]
        self.front_end = front_end or FrontEnd()
        self._cache: Dict[Path, PluginHandle] = {}
        self._inflight: Dict[Path, asyncio.Future] = {}
        self._aliases: Dict[str, PluginHandle] = {}

    @property
    def loaded(self) -> List[PluginHandle]:
        return list(self._cache.values())

    # --- Resolution ---

    def search_dirs(self, script_dir: Path) -> List[Path]:
        return [script_dir / "plugins", *self.search_path]

    def locate(self, raw_name: str, base_dir: Path, script_dir: Optional[Path] = None) -> Path:
        """Returns the resolved path of the plugin file for `raw_name`.

        Explicit paths resolve against `base_dir`, the directory of the file
        doing the `Use`. Bare names search `<script_dir>/plugins` and then the
        configured search path; `script_dir` defaults to `base_dir`.
        """
        bare = strip_version(raw_name.strip())
        if not bare:
            raise ToolNotFound("empty plugin name")
        searched: List[Path] = []
        if is_explicit_path(bare):
            target = Path(os.path.expanduser(bare))
            if not target.is_absolute():
                target = base_dir / target
            searched = plugin_candidates(target)
        else:
            for directory in self.search_dirs(script_dir or base_dir):
                searched.extend(plugin_candidates(directory / bare))
        for candidate in searched:
            if candidate.is_file():
                return candidate.resolve()
        listing = ", ".join(str(p) for p in searched)
        raise ToolNotFound(f"plugin {raw_name!r} not found (searched: {listing})")

    async def resolve(self, raw_name: str, base_dir: Path | str,
                      script_dir: Optional[Path | str] = None) -> PluginHandle:
        """Locates and loads a plugin, reusing the run's cache."""
        path = self.locate(raw_name, Path(base_dir), Path(script_dir) if script_dir is not None else None)
        cached = self._cache.get(path)
        if cached is not None:
            return cached

        chain = _loading_chain.get()
        if path in chain:
            cycle = " -> ".join(p.name for p in (*chain[chain.index(path):], path))
            raise ToolNotFound(f"cyclic plugin use: {cycle}")

        pending = self._inflight.get(path)
        if pending is not None:
            return await asyncio.shield(pending)

        fut = asyncio.get_running_loop().create_future()
        self._inflight[path] = fut
        token = _loading_chain.set(chain + (path,))
        try:
            handle = await self._load(path, default_alias(raw_name))
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            fut.set_exception(e)
            # Retrieved here so an unawaited future does not log; the error propagates below.
            fut.exception()
            raise
        else:
            self._cache[path] = handle
            fut.set_result(handle)
            return handle
        finally:
            _loading_chain.reset(token)
            self._inflight.pop(path, None)

    async def _load(self, path: Path, name: str) -> PluginHandle:
        log.debug("loading plugin %s from %s", name, path)
        try:
            source = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ToolNotFound(f"cannot read plugin {path}: {e}") from e
        program = self.front_end.parse(source)
        scope = self.global_scope.child(label=f"plugin {name}")
        await self.evaluator.run_module(program, scope, path.parent, label=path.name)
        operations: Dict[str, OrchidFunction] = {}
        for stmt in program.body:
            if isinstance(stmt, FunctionDef):
                fn = scope.bindings.get(stmt.name)
                if isinstance(fn, OrchidFunction):
                    operations[stmt.name] = fn
        return PluginHandle(name, path, scope, operations)

    def register_alias(self, alias: str, handle: PluginHandle) -> None:
        self._aliases[alias] = handle

    # --- Dispatch ---

    async def dispatch(self, handle: PluginHandle, operation: str, args: Iterable[Any] = (),
                       kwargs: Optional[Dict[str, Any]] = None) -> Any:
        fn = handle.operations.get(operation)
        if fn is None:
            raise ToolNotFound(f"plugin {handle.name!r} has no operation {operation!r}")
        log.debug("dispatch %s:%s", handle.name, operation)
        return await self.evaluator.call_function(fn, list(args), dict(kwargs or {}))

    def catalog(self) -> List[ToolSpec]:
        """ToolSpecs for the operations of every plugin the script binds, named `<alias>__<Operation>`.

        Plugins loaded only as another plugin's dependency stay out of the catalog.
        """
        specs = []
        for alias, handle in self._aliases.items():
            for op, fn in handle.operations.items():
                specs.append(ToolSpec(
                    name=f"{alias}__{op}",
                    description=f"{fn.kind} {op}({', '.join(fn.params)}) from plugin {handle.name}",
                    input_schema={
                        "type": "object",
                        "properties": {p: {"description": f"parameter {p}"} for p in fn.params},
                    },
                    target=PluginOperation(handle, op),
                ))
        return specs
