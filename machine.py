from __future__ import annotations
import json
import operator
from collections import deque
from dataclasses import asdict, dataclass
from functools import partial
from typing import Any, Callable, Deque, Dict, List, Optional

import numpy as np
from numpy.typing import NDArray

from assembler import ENTRY_LABEL, Instruction, Opcode, Program, Register
from extensions import HookRegistry, RuntimeServices, StepContext, build_default_services
from lexer import RegasmError, SourceLocation
from sinks import DebugSink, TextDebugSink


WORD_BITS = 32
_WORD_MASK = (1 << WORD_BITS) - 1
_SIGN_BIT = 1 << (WORD_BITS - 1)

CALL_STACK_LIMIT = 256
DATA_STACK_LIMIT = 4096
HISTORY_LIMIT = 1024


def wrap(value: int) -> int:
    """Reduce ``value`` to a signed machine word (two's complement)."""
    value &= _WORD_MASK
    return value - (1 << WORD_BITS) if value & _SIGN_BIT else value


def _truncated_div(a: int, b: int) -> int:
    quotient = abs(a) // abs(b)
    return quotient if (a < 0) == (b < 0) else -quotient


@dataclass(frozen=True)
class MachineState:
    pc: int
    registers: Dict[str, int]
    flag: bool
    guard: Optional[bool]
    call_depth: int
    data_depth: int
    halted: bool
    steps: int

    def describe(self) -> str:
        registers = " ".join(f"{name}={value}" for name, value in self.registers.items())
        guard = "-" if self.guard is None else str(int(self.guard))
        return (
            f"pc={self.pc} flag={int(self.flag)} guard={guard} "
            f"call_depth={self.call_depth} data_depth={self.data_depth} {registers}"
        )


class MachineError(RegasmError):
    """Raised for execution faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        state: Optional[MachineState] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.state = state
        self.step_index: Optional[int] = None


class CallStackUnderflow(MachineError):
    pass


class CallStackOverflow(MachineError):
    pass


class DataStackUnderflow(MachineError):
    pass


class DataStackOverflow(MachineError):
    pass


class DivisionByZero(MachineError):
    pass


class StepLimitExceeded(MachineError):
    pass


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    pc: int
    depth: int
    location: Optional[SourceLocation]
    rule: str
    registers: Optional[Dict[str, int]]

    @property
    def statement(self) -> Optional[str]:
        return self.location.statement if self.location else None


class StateLogger:
    def __init__(self, verbose: bool, history: int = HISTORY_LIMIT) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.next_state_index = 0
        self.last_state_id = "seed"
        self.depth_last_entry: Dict[int, StateEntry] = {}

    def record(
        self,
        *,
        pc: int,
        depth: int,
        location: Optional[SourceLocation],
        rule: str,
        registers: Optional[Dict[str, int]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        state_id = f"s_{step_index:06d}"
        entry = StateEntry(
            step_index=step_index,
            state_id=state_id,
            pc=pc,
            depth=depth,
            location=location,
            rule=rule,
            registers=registers,
        )
        self.entries.append(entry)
        # A step at a shallower depth means the deeper frames have returned.
        for stale in [d for d in self.depth_last_entry if d > depth]:
            del self.depth_last_entry[stale]
        self.depth_last_entry[depth] = entry
        self.last_state_id = state_id
        self.next_state_index += 1
        return entry

    def last_entry_for_depth(self, depth: int) -> Optional[StateEntry]:
        return self.depth_last_entry.get(depth)


Handler = Callable[..., Optional[int]]


class Machine:
    def __init__(
        self,
        program: Program,
        *,
        debug_sink: Optional[DebugSink] = None,
        verbose: bool = False,
        services: Optional[RuntimeServices] = None,
        call_stack_limit: int = CALL_STACK_LIMIT,
        data_stack_limit: int = DATA_STACK_LIMIT,
        history: int = HISTORY_LIMIT,
    ) -> None:
        self.debug_sink: DebugSink = debug_sink or TextDebugSink()
        self.verbose = verbose
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.call_stack_limit = call_stack_limit
        self.data_stack_limit = data_stack_limit
        self.history = history

        self.registers: NDArray[np.int32] = np.zeros(len(Register), dtype=np.int32)
        self.call_stack: List[int] = []
        self.data_stack: List[int] = []
        self.logger = StateLogger(verbose=verbose, history=history)
        self.steps = 0
        self.error: Optional[MachineError] = None

        self._dispatch: Dict[Opcode, Handler] = {
            Opcode.NOP: self._nop,
            Opcode.EXIT: self._exit,
            Opcode.JMP: self._jmp,
            Opcode.THEN: self._then,
            Opcode.ELSE: self._else,
            Opcode.SET: self._set,
            Opcode.PUSH: self._push,
            Opcode.POP: self._pop,
            Opcode.ADD: partial(self._arith, operator.add),
            Opcode.SUB: partial(self._arith, operator.sub),
            Opcode.MUL: partial(self._arith, operator.mul),
            Opcode.DIV: self._div,
            Opcode.MOD: self._mod,
            Opcode.NEG: self._neg,
            Opcode.GT: partial(self._compare, operator.gt),
            Opcode.LT: partial(self._compare, operator.lt),
            Opcode.GE: partial(self._compare, operator.ge),
            Opcode.LE: partial(self._compare, operator.le),
            Opcode.EQ: partial(self._compare, operator.eq),
            Opcode.NE: partial(self._compare, operator.ne),
            Opcode.RET: self._ret,
            Opcode.CALL: self._call,
            Opcode.MOV: self._mov,
            Opcode.DBG: self._dbg,
        }
        self.load(program)

    def load(self, program: Program, *, reset: bool = True) -> None:
        """Point the machine at ``program``; ``reset=False`` keeps registers and stacks."""
        self.program = program
        self.pc = program.entry
        self.flag = False
        self.guard: Optional[bool] = None
        self.halted = False
        self.error = None
        if reset:
            self.registers[:] = 0
            self.call_stack.clear()
            self.data_stack.clear()
            self.steps = 0
            self.logger = StateLogger(verbose=self.verbose, history=self.history)

    def reset(self) -> None:
        self.load(self.program)

    @property
    def finished(self) -> bool:
        return self.halted or self.pc >= len(self.program)

    def read(self, name: str) -> int:
        return int(self.registers[Register[name.upper()]])

    def write(self, name: str, value: int) -> None:
        self.registers[Register[name.upper()]] = wrap(value)

    def register_snapshot(self) -> Dict[str, int]:
        return {register.name.lower(): int(self.registers[register]) for register in Register}

    def snapshot(self) -> MachineState:
        return MachineState(
            pc=self.pc,
            registers=self.register_snapshot(),
            flag=self.flag,
            guard=self.guard,
            call_depth=len(self.call_stack),
            data_depth=len(self.data_stack),
            halted=self.halted,
            steps=self.steps,
        )

    def step(self) -> bool:
        """Execute one instruction; returns whether the machine can keep going."""
        if self.finished:
            return False
        instruction = self.program[self.pc]
        try:
            self._emit_event("before_step", self, instruction)
            guard, self.guard = self.guard, None
            if guard is False:
                # Predicated off: consumed like a nop.
                self._log_step(instruction, rule="skip")
                self.pc += 1
            else:
                self._log_step(instruction, rule=instruction.opcode.mnemonic)
                handler = self._dispatch[instruction.opcode]
                target = handler(*[operand.value for operand in instruction.operands])
                self.pc = self.pc + 1 if target is None else target
        except MachineError as error:
            self._fault(error, instruction)
            raise
        self.steps += 1
        return not self.finished

    def run(self, *, max_steps: Optional[int] = None) -> MachineState:
        self._emit_event("program_start", self)
        executed = 0
        try:
            while not self.finished:
                if max_steps is not None and executed >= max_steps:
                    raise self._fault(
                        StepLimitExceeded(f"Step limit of {max_steps} exceeded"),
                        self.program[self.pc],
                    )
                self.step()
                executed += 1
        except MachineError as error:
            self._emit_event("on_error", self, error)
            raise
        except Exception as exc:
            self._emit_event("on_error", self, exc)
            # Unexpected Python-level failures (a broken debug sink, say) still
            # surface as machine errors carrying the current state.
            location = self.program[self.pc].location if self.pc < len(self.program) else None
            wrapped = MachineError(f"Internal machine error: {exc}", location=location, state=self.snapshot())
            wrapped.step_index = self.logger.next_state_index - 1
            raise wrapped from exc
        state = self.snapshot()
        self._emit_event("program_end", self, state)
        return state

    def _fault(self, error: MachineError, instruction: Instruction) -> MachineError:
        if error.location is None:
            error.location = instruction.location
        if error.state is None:
            error.state = self.snapshot()
        error.step_index = self.logger.next_state_index - 1
        self.halted = True
        self.error = error
        return error

    # ---- registers ----

    def _load(self, register: int) -> int:
        return int(self.registers[register])

    def _store(self, register: int, value: int) -> None:
        self.registers[register] = wrap(value)

    # ---- opcode handlers; a returned int is the next pc ----

    def _nop(self) -> None:
        return None

    def _exit(self) -> int:
        self.halted = True
        return self.pc

    def _jmp(self, target: int) -> int:
        return target

    def _then(self) -> None:
        self.guard = self.flag
        self.flag = False

    def _else(self) -> None:
        self.guard = not self.flag
        self.flag = False

    def _set(self, register: int, value: int) -> None:
        self._store(register, value)

    def _mov(self, dst: int, src: int) -> None:
        self._store(dst, self._load(src))

    def _push(self, register: int) -> None:
        if len(self.data_stack) >= self.data_stack_limit:
            raise DataStackOverflow(f"Data stack limit of {self.data_stack_limit} exceeded")
        self.data_stack.append(self._load(register))

    def _pop(self, register: int) -> None:
        if not self.data_stack:
            raise DataStackUnderflow("pop from empty data stack")
        self._store(register, self.data_stack.pop())

    def _arith(self, op: Callable[[int, int], int], dst: int, src: int) -> None:
        self._store(dst, op(self._load(dst), self._load(src)))

    def _div(self, dst: int, src: int) -> None:
        divisor = self._load(src)
        if divisor == 0:
            raise DivisionByZero("division by zero")
        self._store(dst, _truncated_div(self._load(dst), divisor))

    def _mod(self, dst: int, src: int) -> None:
        divisor = self._load(src)
        if divisor == 0:
            raise DivisionByZero("modulo by zero")
        dividend = self._load(dst)
        self._store(dst, dividend - divisor * _truncated_div(dividend, divisor))

    def _neg(self, register: int) -> None:
        self._store(register, -self._load(register))

    def _compare(self, op: Callable[[int, int], bool], left: int, right: int) -> None:
        self.flag = bool(op(self._load(left), self._load(right)))

    def _call(self, target: int) -> int:
        if len(self.call_stack) >= self.call_stack_limit:
            raise CallStackOverflow(f"Call stack limit of {self.call_stack_limit} exceeded")
        self.call_stack.append(self.pc + 1)
        return target

    def _ret(self) -> int:
        if not self.call_stack:
            raise CallStackUnderflow("ret with empty call stack")
        return self.call_stack.pop()

    def _dbg(self, register: int, width: int) -> None:
        self.debug_sink.write(self._load(register), width)

    # ---- diagnostics ----

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except MachineError:
            raise
        except Exception as exc:
            location = None
            if self.pc < len(self.program):
                location = self.program[self.pc].location
            raise MachineError(
                f"Extension hook '{event}' failed: {exc}",
                location=location,
                state=self.snapshot(),
            )

    def _log_step(self, instruction: Instruction, *, rule: str) -> None:
        registers = self.register_snapshot() if self.verbose else None
        entry = self.logger.record(
            pc=self.pc,
            depth=len(self.call_stack),
            location=instruction.location,
            rule=rule,
            registers=registers,
        )

        # Run extension step rules (every N steps) after recording.
        try:
            self.hook_registry.after_step(
                self,
                StepContext(step_index=entry.step_index, pc=self.pc, rule=rule, location=instruction.location),
            )
        except MachineError:
            raise
        except Exception as exc:
            raise MachineError(
                f"Extension step rule failed: {exc}",
                location=instruction.location,
                state=self.snapshot(),
            )


@dataclass
class TracebackFrame:
    name: str
    location: Optional[SourceLocation]
    statement: Optional[str]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, machine: Machine) -> None:
        self.machine = machine

    def _frame_names(self) -> List[str]:
        program = self.machine.program
        if program.labels.get(ENTRY_LABEL) == program.entry:
            names = [ENTRY_LABEL]
        else:
            names = [program.label_at(program.entry) or "<entry>"]
        for return_address in self.machine.call_stack:
            name = "<unknown>"
            if 0 < return_address <= len(program):
                call = program[return_address - 1]
                if call.opcode == Opcode.CALL:
                    name = str(call.operands[0])
            names.append(name)
        return names

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for depth, name in enumerate(self._frame_names()):
            entry = self.machine.logger.last_entry_for_depth(depth)
            frames.append(
                TracebackFrame(
                    name=name,
                    location=entry.location if entry else None,
                    statement=entry.statement if entry else None,
                    state_entry=entry,
                )
            )
        return frames

    def format_text(self, error: MachineError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            if frame.location:
                where = f"  File \"{frame.location.file}\", line {frame.location.line}, in {frame.name}"
                if frame.location.expansion:
                    where += f" (expanded from {frame.location.expansion})"
                lines.append(where)
                if frame.statement:
                    lines.append(f"    {frame.statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            if frame.state_entry:
                lines.append(
                    f"    State log index: {frame.state_entry.step_index}  State id: {frame.state_entry.state_id}"
                )
                if verbose and frame.state_entry.registers is not None:
                    registers = ", ".join(f"{k}={v}" for k, v in frame.state_entry.registers.items())
                    lines.append(f"    Registers: {registers}")
        if error.state is not None:
            lines.append(f"  Machine state: {error.state.describe()}")
        lines.append(f"{error.__class__.__name__}: {error.message}")
        return "\n".join(lines)

    def to_json(self, error: MachineError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "statement": frame.location.statement,
                }
                if frame.location.expansion:
                    entry["source_location"]["expansion"] = frame.location.expansion
            if frame.state_entry:
                entry["state_id"] = frame.state_entry.state_id
                entry["step_index"] = frame.state_entry.step_index
                entry["pc"] = frame.state_entry.pc
                if frame.state_entry.registers is not None:
                    entry["registers"] = frame.state_entry.registers
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "failing_step_index": error.step_index,
                "state": asdict(error.state) if error.state is not None else None,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)
