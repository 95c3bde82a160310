from __future__ import annotations
import json
import random
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from extensions import HookRegistry, RuntimeServices, StepContext, build_default_services
from grid import BefungeConfigError, BefungeError, Grid, to_char


Direction = Tuple[int, int]
DirectionProvider = Callable[[Sequence[Direction]], Direction]

RIGHT: Direction = (1, 0)
LEFT: Direction = (-1, 0)
UP: Direction = (0, -1)
DOWN: Direction = (0, 1)
STILL: Direction = (0, 0)
CARDINAL_DIRECTIONS: Tuple[Direction, ...] = (RIGHT, LEFT, UP, DOWN)

TERMINATOR = "@"
QUOTE = '"'
DEFAULT_STEP_LIMIT = 1_000_000
DEFAULT_TRACE_LIMIT = 10_000
# Number of stack cells kept per trace entry.
TRACE_STACK_DEPTH = 8

# Stack cells are signed 64-bit; every pushed value wraps into this range.
CELL_BITS = 64
_CELL_MODULUS = 1 << CELL_BITS
_CELL_OFFSET = 1 << (CELL_BITS - 1)

STATUS_READY = "ready"
STATUS_HALTED = "halted"
STATUS_STEP_LIMIT = "step_limit"
STATUS_EMPTY = "empty"


class BefungeHookError(BefungeError):
    """Raised when a registered hook or step rule fails."""

    def __init__(
        self,
        message: str,
        *,
        hook: str,
        ext_name: str,
        rule: Optional[str] = None,
        step_index: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hook = hook
        self.ext_name = ext_name
        self.rule = rule
        self.step_index = step_index


def wrap_cell(value: int) -> int:
    return ((value + _CELL_OFFSET) % _CELL_MODULUS) - _CELL_OFFSET


def _safe_div(b: int, a: int) -> int:
    if a == 0:
        return 0
    quotient = abs(b) // abs(a)
    return quotient if (b < 0) == (a < 0) else -quotient


def _safe_mod(b: int, a: int) -> int:
    if a == 0:
        return 0
    return b - a * _safe_div(b, a)


class OperandStack:
    """LIFO of signed 64-bit cells where reading past the bottom yields 0."""

    def __init__(self) -> None:
        self._items: List[int] = []

    def push(self, value: int) -> None:
        self._items.append(wrap_cell(value))

    def pop(self) -> int:
        if not self._items:
            return 0
        return self._items.pop()

    def peek(self) -> int:
        if not self._items:
            return 0
        return self._items[-1]

    def snapshot(self, depth: Optional[int] = None) -> List[int]:
        if depth is None:
            return list(self._items)
        return self._items[-depth:] if depth > 0 else []

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class InstructionPointer:
    x: int = 0
    y: int = 0
    dx: int = 1
    dy: int = 0

    @property
    def position(self) -> Tuple[int, int]:
        return (self.x, self.y)

    @property
    def direction(self) -> Direction:
        return (self.dx, self.dy)

    def turn(self, direction: Direction) -> None:
        self.dx, self.dy = direction

    def advance(self, width: int, height: int) -> None:
        # Two-sided correction rather than modulo; only one cell is crossed per move.
        x = self.x + self.dx
        y = self.y + self.dy
        if x < 0:
            x = width - 1
        elif x >= width:
            x = 0
        if y < 0:
            y = height - 1
        elif y >= height:
            y = 0
        self.x = x
        self.y = y


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    position: Tuple[int, int]
    direction: Direction
    instruction: str
    string_mode: bool
    stack_snapshot: Optional[List[int]]


class StateLogger:
    def __init__(self, verbose: bool, capacity: Optional[int] = None) -> None:
        self.verbose = verbose
        self.capacity = capacity
        self.entries: Deque[StateEntry] = deque(maxlen=capacity)
        self.recorded = 0

    def reset(self) -> None:
        self.entries.clear()
        self.recorded = 0

    def record(
        self,
        *,
        step_index: int,
        position: Tuple[int, int],
        direction: Direction,
        instruction: str,
        string_mode: bool,
        stack_snapshot: Optional[List[int]] = None,
    ) -> StateEntry:
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            position=position,
            direction=direction,
            instruction=instruction,
            string_mode=string_mode,
            stack_snapshot=stack_snapshot,
        )
        self.entries.append(entry)
        self.recorded += 1
        return entry

    @property
    def last_entry(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None


class Interpreter:
    def __init__(
        self,
        *,
        step_limit: int = DEFAULT_STEP_LIMIT,
        verbose: bool = False,
        trace_limit: Optional[int] = DEFAULT_TRACE_LIMIT,
        direction_provider: Optional[DirectionProvider] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        services: Optional[RuntimeServices] = None,
    ) -> None:
        if isinstance(step_limit, bool) or not isinstance(step_limit, int) or step_limit < 0:
            raise BefungeConfigError(f"step_limit must be a non-negative integer, got {step_limit!r}")
        if trace_limit is not None and (isinstance(trace_limit, bool) or not isinstance(trace_limit, int) or trace_limit <= 0):
            raise BefungeConfigError(f"trace_limit must be a positive integer or None, got {trace_limit!r}")
        self.step_limit = step_limit
        self.verbose = verbose
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.direction_provider: DirectionProvider = direction_provider or random.choice
        self.output_sink = output_sink
        self.logger = StateLogger(verbose=verbose, capacity=trace_limit)
        self.instructions: Dict[str, Callable[[], None]] = {}
        self._register_instructions()
        self._reset(Grid.build(""))

    def _reset(self, grid: Grid) -> None:
        self.grid = grid
        self.pointer = InstructionPointer()
        self.stack = OperandStack()
        self.string_mode = False
        self.steps = 0
        self.status = STATUS_READY
        self._output: List[str] = []
        self.logger.reset()

    @property
    def output(self) -> str:
        return "".join(self._output)

    def run(self, source: str) -> str:
        self._reset(Grid.build(source))
        self._emit_event("program_start", self, self.grid)
        if self.grid.is_empty:
            self.status = STATUS_EMPTY
        else:
            self._execute()
        self._emit_event("program_end", self, self.status)
        return self.output

    def _execute(self) -> None:
        grid = self.grid
        pointer = self.pointer
        width, height = grid.width, grid.height
        dispatch = self._dispatch
        log_step = self._log_step
        observed = self.verbose or self.hook_registry.has_step_rules

        while self.steps < self.step_limit:
            instruction = grid.read(pointer.x, pointer.y)
            if instruction == TERMINATOR:
                self.status = STATUS_HALTED
                return
            position = (pointer.x, pointer.y)
            direction = (pointer.dx, pointer.dy)
            dispatch(instruction)
            pointer.advance(width, height)
            self.steps += 1
            if observed:
                log_step(instruction, position, direction)
        self.status = STATUS_STEP_LIMIT

    def _dispatch(self, instruction: str) -> None:
        if self.string_mode and instruction != QUOTE:
            self.stack.push(ord(instruction))
            return
        handler = self.instructions.get(instruction)
        if handler is not None:
            handler()

    # ---- instruction table ----

    def _register_instructions(self) -> None:
        for digit in "0123456789":
            self._register_push(digit, int(digit))
        self._register_binary("+", lambda b, a: b + a)
        self._register_binary("-", lambda b, a: b - a)
        self._register_binary("*", lambda b, a: b * a)
        self._register_binary("/", _safe_div)
        self._register_binary("%", _safe_mod)
        self._register_binary("`", lambda b, a: 1 if b > a else 0)
        self._register("!", self._not)
        self._register_turn(">", RIGHT)
        self._register_turn("<", LEFT)
        self._register_turn("^", UP)
        self._register_turn("v", DOWN)
        self._register("?", self._random_turn)
        self._register("_", self._horizontal_if)
        self._register("|", self._vertical_if)
        self._register(QUOTE, self._toggle_string_mode)
        self._register(":", self._duplicate)
        self._register("\\", self._swap)
        self._register("$", self._discard)
        self._register(".", self._output_int)
        self._register(",", self._output_char)
        self._register("#", self._trampoline)
        self._register("p", self._put)
        self._register("g", self._get)

    def _register(self, char: str, handler: Callable[[], None]) -> None:
        self.instructions[char] = handler

    def _register_push(self, char: str, value: int) -> None:
        self._register(char, lambda: self.stack.push(value))

    def _register_binary(self, char: str, func: Callable[[int, int], int]) -> None:
        def impl() -> None:
            a = self.stack.pop()
            b = self.stack.pop()
            self.stack.push(func(b, a))

        self._register(char, impl)

    def _register_turn(self, char: str, direction: Direction) -> None:
        self._register(char, lambda: self.pointer.turn(direction))

    # ---- instructions ----

    def _not(self) -> None:
        self.stack.push(1 if self.stack.pop() == 0 else 0)

    def _random_turn(self) -> None:
        self.pointer.turn(self.direction_provider(CARDINAL_DIRECTIONS))

    def _horizontal_if(self) -> None:
        self.pointer.turn(RIGHT if self.stack.pop() == 0 else LEFT)

    def _vertical_if(self) -> None:
        self.pointer.turn(DOWN if self.stack.pop() == 0 else UP)

    def _toggle_string_mode(self) -> None:
        self.string_mode = not self.string_mode

    def _duplicate(self) -> None:
        self.stack.push(self.stack.peek())

    def _swap(self) -> None:
        a = self.stack.pop()
        b = self.stack.pop()
        self.stack.push(a)
        self.stack.push(b)

    def _discard(self) -> None:
        self.stack.pop()

    def _output_int(self) -> None:
        self._write_output(str(self.stack.pop()))

    def _output_char(self) -> None:
        self._write_output(to_char(self.stack.pop()))

    def _trampoline(self) -> None:
        self.pointer.advance(self.grid.width, self.grid.height)

    def _put(self) -> None:
        y = self.stack.pop()
        x = self.stack.pop()
        value = self.stack.pop()
        self.grid.write(x, y, to_char(value))

    def _get(self) -> None:
        y = self.stack.pop()
        x = self.stack.pop()
        self.stack.push(self.grid.read_code(x, y, default=0))

    # ---- output, hooks and tracing ----

    def _write_output(self, text: str) -> None:
        self._output.append(text)
        if self.output_sink is not None:
            self.output_sink(text)
        if self.hook_registry.has_handlers("on_output"):
            self._emit_event("on_output", self, text)

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        for handler, ext_name in self.hook_registry.handlers(event):
            try:
                handler(*args, **kwargs)
            except BefungeError:
                raise
            except Exception as exc:
                raise BefungeHookError(
                    f"Hook '{event}' from '{ext_name}' failed: {exc}",
                    hook=event,
                    ext_name=ext_name,
                    step_index=self.steps,
                ) from exc

    def _log_step(self, instruction: str, position: Tuple[int, int], direction: Direction) -> None:
        if self.verbose:
            self.logger.record(
                step_index=self.steps,
                position=position,
                direction=direction,
                instruction=instruction,
                string_mode=self.string_mode,
                stack_snapshot=self.stack.snapshot(TRACE_STACK_DEPTH),
            )

        if not self.hook_registry.has_step_rules:
            return
        ctx = StepContext(step_index=self.steps, instruction=instruction, position=position, direction=direction)
        for handler, ext_name, name in self.hook_registry.rules_due(ctx.step_index):
            try:
                handler(self, ctx)
            except BefungeError:
                raise
            except Exception as exc:
                raise BefungeHookError(
                    f"Step rule '{name}' from '{ext_name}' failed: {exc}",
                    hook="step",
                    ext_name=ext_name,
                    rule=name,
                    step_index=self.steps,
                ) from exc


class TraceFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def _entries(self, limit: Optional[int]) -> List[StateEntry]:
        entries = list(self.interpreter.logger.entries)
        if limit is None:
            return entries
        return entries[-limit:] if limit > 0 else []

    def format_text(self, limit: Optional[int] = None) -> str:
        interp = self.interpreter
        lines = ["Trace (oldest step first):"]
        if not interp.verbose:
            lines.append("  <tracing disabled; construct the interpreter with verbose=True>")
        for entry in self._entries(limit):
            x, y = entry.position
            dx, dy = entry.direction
            line = f"  {entry.state_id} ({x},{y}) {entry.instruction!r} dir=({dx},{dy})"
            if entry.string_mode:
                line += " [string]"
            if entry.stack_snapshot is not None:
                line += f" stack={entry.stack_snapshot}"
            lines.append(line)
        dropped = interp.logger.recorded - len(interp.logger.entries)
        if dropped > 0:
            lines.append(f"  ... {dropped} earlier steps not retained")
        lines.append(f"Status: {interp.status}  Steps: {interp.steps}  Output: {len(interp.output)} chars")
        return "\n".join(lines)

    def to_json(self, limit: Optional[int] = None) -> str:
        interp = self.interpreter
        trace: List[Dict[str, Any]] = []
        for entry in self._entries(limit):
            item: Dict[str, Any] = {
                "step_index": entry.step_index,
                "state_id": entry.state_id,
                "position": list(entry.position),
                "direction": list(entry.direction),
                "instruction": entry.instruction,
                "string_mode": entry.string_mode,
            }
            if entry.stack_snapshot is not None:
                item["stack"] = entry.stack_snapshot
            trace.append(item)
        data = {
            "status": interp.status,
            "steps": interp.steps,
            "output": interp.output,
            "pointer": {
                "position": list(interp.pointer.position),
                "direction": list(interp.pointer.direction),
            },
            "stack": interp.stack.snapshot(TRACE_STACK_DEPTH),
            "trace": trace,
        }
        return json.dumps(data, indent=2)


def run(source: str, **options: Any) -> str:
    return Interpreter(**options).run(source)
