"""Extension hooks for the regasm machine.

An extension is a Python file defining ``regasm_register(ext)``.  It receives
an :class:`ExtensionAPI` and may subscribe to machine events or install rules
that run every N steps.  ``.rgx`` pointer files list extension paths (or
further pointer files), one per line, relative to the pointer file.
"""
from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple


EXTENSION_API_VERSION = 1

# Handlers get the machine followed by: nothing, the instruction, the error,
# and the final MachineState respectively.
EVENTS = {
    "program_start",
    "before_step",
    "on_error",
    "program_end",
}

POINTER_SUFFIX = ".rgx"


class ExtensionError(Exception):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    pc: int
    rule: str
    location: Any  # SourceLocation | None


EventHandler = Callable[..., None]
StepHandler = Callable[[Any, StepContext], None]


@dataclass
class HookRegistry:
    # event -> [(priority, handler, ext_name)], highest priority first
    _events: Dict[str, List[Tuple[int, EventHandler, str]]] = field(default_factory=dict)
    # [(every_n, handler, ext_name, name)]
    _step_rules: List[Tuple[int, StepHandler, str, str]] = field(default_factory=list)

    def on_event(self, event: str, handler: EventHandler, *, priority: int, ext_name: str) -> None:
        if event not in EVENTS:
            known = ", ".join(sorted(EVENTS))
            raise ExtensionError(f"Unknown event '{event}' (expected one of: {known})")
        handlers = self._events.setdefault(event, [])
        handlers.append((priority, handler, ext_name))
        handlers.sort(key=lambda entry: entry[0], reverse=True)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler, _ext in self._events.get(event, []):
            handler(*args, **kwargs)

    def add_step_rule(self, *, name: str, every_n: int, handler: StepHandler, ext_name: str) -> None:
        if every_n <= 0:
            raise ExtensionError(f"Step rule '{name}' of {ext_name}: every_n_steps must be >= 1")
        self._step_rules.append((every_n, handler, ext_name, name))

    def after_step(self, machine: Any, ctx: StepContext) -> None:
        for every_n, handler, _ext, _name in self._step_rules:
            if ctx.step_index % every_n == 0:
                handler(machine, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)


class ExtensionAPI:
    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        if requires_api != EXTENSION_API_VERSION:
            raise ExtensionError(
                f"Extension '{name}' requires API {requires_api}, host supports {EXTENSION_API_VERSION}"
            )
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    def on_event(self, event: str, handler: Optional[EventHandler] = None, *, priority: int = 0):
        registry = self._services.hook_registry
        if handler is None:
            def deco(fn: EventHandler) -> EventHandler:
                registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
                return fn
            return deco
        registry.on_event(event, handler, priority=priority, ext_name=self._ext_name)
        return handler

    def every_n_steps(self, every_n: int, handler: Optional[StepHandler] = None, *, name: str = ""):
        registry = self._services.hook_registry
        if handler is None:
            def deco(fn: StepHandler) -> StepHandler:
                registry.add_step_rule(name=name or fn.__name__, every_n=every_n, handler=fn, ext_name=self._ext_name)
                return fn
            return deco
        registry.add_step_rule(name=name or handler.__name__, every_n=every_n, handler=handler, ext_name=self._ext_name)
        return handler


def _module_name_for(path: str) -> str:
    stem = os.path.splitext(os.path.basename(path))[0]
    safe = "".join(ch if ch.isalnum() else "_" for ch in stem)
    digest = hashlib.sha256(path.encode("utf-8")).hexdigest()[:12]
    return f"regasm_ext_{safe}_{digest}"


def load_extension_module(path: str) -> Any:
    """Import the extension file at ``path`` under a name derived from its location."""
    path = os.path.abspath(path)
    if not os.path.isfile(path):
        raise ExtensionError(f"Extension not found: {path}")
    mod_name = _module_name_for(path)
    if mod_name in sys.modules:
        return sys.modules[mod_name]
    spec = importlib.util.spec_from_file_location(mod_name, path)
    if spec is None or spec.loader is None:
        raise ExtensionError(f"Cannot import extension: {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[mod_name] = module

    # Extensions may import helper modules that sit next to them.
    ext_dir = os.path.dirname(path)
    sys.path.insert(0, ext_dir)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        del sys.modules[mod_name]
        raise ExtensionError(f"Extension {path} failed to import: {exc}") from exc
    finally:
        if sys.path and sys.path[0] == ext_dir:
            sys.path.pop(0)
    return module


def read_pointer_file(pointer_file: str) -> List[str]:
    """Return the entries of an ``.rgx`` file as absolute paths; ``#`` starts a comment."""
    if not os.path.isfile(pointer_file):
        raise ExtensionError(f"{POINTER_SUFFIX} file not found: {pointer_file}")
    base_dir = os.path.dirname(os.path.abspath(pointer_file))
    with open(pointer_file, "r", encoding="utf-8") as handle:
        entries = [raw.split("#", 1)[0].strip() for raw in handle]
    return [os.path.normpath(os.path.join(base_dir, entry)) for entry in entries if entry]


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    """Flatten pointer files into extension paths, keeping first-seen order without duplicates."""
    found: List[str] = []
    seen: Set[str] = set()

    def visit(path: str, chain: Tuple[str, ...]) -> None:
        path = os.path.abspath(path)
        if path.lower().endswith(POINTER_SUFFIX):
            if path in chain:
                cycle = " -> ".join(chain + (path,))
                raise ExtensionError(f"Pointer file cycle: {cycle}")
            for entry in read_pointer_file(path):
                visit(entry, chain + (path,))
            return
        if path not in seen:
            seen.add(path)
            found.append(path)

    for path in paths:
        visit(path, ())
    return found


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for path in gather_extension_paths(paths):
        module = load_extension_module(path)
        api_version = getattr(module, "REGASM_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
        if api_version != EXTENSION_API_VERSION:
            raise ExtensionError(
                f"Extension {path} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
            )
        register = getattr(module, "regasm_register", None)
        if not callable(register):
            raise ExtensionError(f"Extension {path} must define callable regasm_register(ext)")
        ext_name = str(getattr(module, "REGASM_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0]))
        register(ExtensionAPI(services=services, ext_name=ext_name))
    return services
