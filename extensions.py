from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple


EVENTS = ("program_start", "on_output", "program_end")


class BefungeExtensionError(Exception):
    pass


@dataclass(frozen=True)
class StepContext:
    step_index: int
    instruction: str
    position: Tuple[int, int]
    direction: Tuple[int, int]


StepHandler = Callable[[Any, StepContext], None]


@dataclass
class HookRegistry:
    # event -> list[(priority, handler, ext_name)]
    _events: Dict[str, List[Tuple[int, Callable[..., None], str]]] = field(default_factory=dict)
    # list[(every_n, handler, ext_name, name)]
    _step_rules: List[Tuple[int, StepHandler, str, str]] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int, ext_name: str) -> None:
        if event not in EVENTS:
            raise BefungeExtensionError(f"Unknown event '{event}'")
        self._events.setdefault(event, []).append((priority, handler, ext_name))
        self._events[event].sort(key=lambda t: t[0], reverse=True)

    def has_handlers(self, event: str) -> bool:
        return bool(self._events.get(event))

    def handlers(self, event: str) -> List[Tuple[Callable[..., None], str]]:
        """Handlers for ``event`` with their owning extension, highest priority first."""
        return [(handler, ext) for _priority, handler, ext in self._events.get(event, [])]

    def add_step_rule(self, *, name: str, every_n: int, handler: StepHandler, ext_name: str) -> None:
        if every_n <= 0:
            raise BefungeExtensionError("every_n_steps must be >= 1")
        if any(rule_name == name and ext == ext_name for _n, _h, ext, rule_name in self._step_rules):
            raise BefungeExtensionError(f"Step rule '{name}' is already registered by '{ext_name}'")
        self._step_rules.append((every_n, handler, ext_name, name))

    @property
    def has_step_rules(self) -> bool:
        return bool(self._step_rules)

    def rules_due(self, step_index: int) -> List[Tuple[StepHandler, str, str]]:
        return [
            (handler, ext, name)
            for every_n, handler, ext, name in self._step_rules
            if step_index % every_n == 0
        ]

    def rule_names(self) -> List[str]:
        return [f"{ext}.{name}" for _n, _h, ext, name in self._step_rules]


@dataclass
class RuntimeServices:
    hook_registry: HookRegistry = field(default_factory=HookRegistry)


class ExtensionAPI:
    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        if not ext_name:
            raise BefungeExtensionError("Extension name must be non-empty")
        self._services = services
        self._ext_name = ext_name

    @property
    def name(self) -> str:
        return self._ext_name

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        if handler is None:
            def deco(fn: Callable[..., None]) -> Callable[..., None]:
                self._services.hook_registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
                return fn
            return deco
        self._services.hook_registry.on_event(event, handler, priority=priority, ext_name=self._ext_name)
        return handler

    def every_n_steps(self, every_n: int, handler: Optional[StepHandler] = None, *, name: str = ""):
        if handler is None:
            def deco(fn: StepHandler) -> StepHandler:
                self._services.hook_registry.add_step_rule(name=name or fn.__name__, every_n=every_n, handler=fn, ext_name=self._ext_name)
                return fn
            return deco
        self._services.hook_registry.add_step_rule(name=name or handler.__name__, every_n=every_n, handler=handler, ext_name=self._ext_name)
        return handler


def build_default_services() -> RuntimeServices:
    return RuntimeServices()
