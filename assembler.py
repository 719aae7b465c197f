from __future__ import annotations
from dataclasses import dataclass, field
from enum import IntEnum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from lexer import REGISTER_NAMES, CompileError, Lexer, SourceLocation, Token, render_tokens
from macros import MacroExpander


ENTRY_LABEL = "main"

IMMEDIATE_MIN = -(1 << 31)
IMMEDIATE_MAX = (1 << 32) - 1


class AssemblyError(CompileError):
    """Base class for label resolution and encoding failures."""


class DuplicateLabelError(AssemblyError):
    """Raised when a label is defined twice."""


class UnresolvedLabelError(AssemblyError):
    """Raised when a jump or call names an undefined label."""


class OperandError(AssemblyError):
    """Raised when operand count or kind does not match the opcode."""


class UnknownInstructionError(AssemblyError):
    """Raised for an unknown mnemonic."""


class MissingEntryPointError(AssemblyError):
    """Raised when the program has no ``main`` label."""


class Register(IntEnum):
    Z = 0
    A = 1
    B = 2
    C = 3
    D = 4


REGISTERS: Dict[str, Register] = {name: Register[name.upper()] for name in REGISTER_NAMES}


class Opcode(IntEnum):
    NOP = 0
    EXIT = 1
    JMP = 2
    THEN = 3
    ELSE = 4
    SET = 5
    PUSH = 6
    POP = 7
    ADD = 8
    SUB = 9
    MUL = 10
    DIV = 11
    MOD = 12
    NEG = 13
    GT = 14
    LT = 15
    GE = 16
    LE = 17
    EQ = 18
    NE = 19
    RET = 20
    CALL = 21
    MOV = 22
    DBG = 23

    @property
    def mnemonic(self) -> str:
        return self.name.lower()


MNEMONICS: Dict[str, Opcode] = {op.mnemonic: op for op in Opcode}


class OperandKind(IntEnum):
    NONE = 0
    REGISTER = 1
    IMMEDIATE = 2
    LABEL = 3


_R = OperandKind.REGISTER
_I = OperandKind.IMMEDIATE
_L = OperandKind.LABEL

# Destinations are always registers; immediates are read-only sources.
SIGNATURES: Dict[Opcode, Tuple[OperandKind, ...]] = {
    Opcode.NOP: (),
    Opcode.EXIT: (),
    Opcode.JMP: (_L,),
    Opcode.THEN: (),
    Opcode.ELSE: (),
    Opcode.SET: (_R, _I),
    Opcode.PUSH: (_R,),
    Opcode.POP: (_R,),
    Opcode.ADD: (_R, _R),
    Opcode.SUB: (_R, _R),
    Opcode.MUL: (_R, _R),
    Opcode.DIV: (_R, _R),
    Opcode.MOD: (_R, _R),
    Opcode.NEG: (_R,),
    Opcode.GT: (_R, _R),
    Opcode.LT: (_R, _R),
    Opcode.GE: (_R, _R),
    Opcode.LE: (_R, _R),
    Opcode.EQ: (_R, _R),
    Opcode.NE: (_R, _R),
    Opcode.RET: (),
    Opcode.CALL: (_L,),
    Opcode.MOV: (_R, _R),
    Opcode.DBG: (_R, _I),
}

# Fixed-shape encoding: one record per instruction, two operand slots.
RECORD_DTYPE = np.dtype(
    [
        ("opcode", "u1"),
        ("kind_a", "u1"),
        ("operand_a", "<i4"),
        ("kind_b", "u1"),
        ("operand_b", "<i4"),
    ]
)


@dataclass(frozen=True)
class Operand:
    kind: OperandKind
    value: int
    name: Optional[str] = field(default=None, compare=False)

    def __str__(self) -> str:
        if self.kind == OperandKind.REGISTER:
            return Register(self.value).name.lower()
        if self.kind == OperandKind.LABEL:
            return self.name if self.name is not None else f"@{self.value}"
        return str(self.value)


@dataclass(frozen=True)
class Instruction:
    opcode: Opcode
    operands: Tuple[Operand, ...] = ()
    location: Optional[SourceLocation] = field(default=None, compare=False)

    def __str__(self) -> str:
        if not self.operands:
            return self.opcode.mnemonic
        return f"{self.opcode.mnemonic} " + ", ".join(str(op) for op in self.operands)


@dataclass(frozen=True)
class Program:
    instructions: Tuple[Instruction, ...]
    labels: Mapping[str, int]
    entry: int
    filename: str = "<string>"

    def __len__(self) -> int:
        return len(self.instructions)

    def __getitem__(self, index: int) -> Instruction:
        return self.instructions[index]

    def to_records(self) -> NDArray[np.void]:
        records = np.zeros(len(self.instructions), dtype=RECORD_DTYPE)
        for index, instruction in enumerate(self.instructions):
            slots = [0, 0, 0, 0]
            for slot, operand in enumerate(instruction.operands):
                slots[slot * 2] = int(operand.kind)
                slots[slot * 2 + 1] = operand.value
            records[index] = (int(instruction.opcode), slots[0], slots[1], slots[2], slots[3])
        return records

    def encode(self) -> bytes:
        return self.to_records().tobytes()

    def labels_at(self, index: int) -> List[str]:
        return [name for name, target in self.labels.items() if target == index]

    def label_at(self, index: int) -> Optional[str]:
        names = self.labels_at(index)
        return names[0] if names else None

    def listing(self) -> str:
        lines: List[str] = []
        for index, instruction in enumerate(self.instructions):
            for name in self.labels_at(index):
                lines.append(f"{name}:")
            text = f"    {index:04d}  {instruction}"
            if instruction.operands and instruction.operands[0].kind == OperandKind.LABEL:
                text += f"    ; -> {instruction.operands[0].value:04d}"
            lines.append(text)
        for name in self.labels_at(len(self.instructions)):
            lines.append(f"{name}:")
        return "\n".join(lines)


def _parse_immediate(token: Token) -> int:
    text = token.value
    negative = text.startswith("-")
    if negative:
        text = text[1:]
    value = int(text, 16) if text[:2].lower() == "0x" else int(text, 10)
    value = -value if negative else value
    if not IMMEDIATE_MIN <= value <= IMMEDIATE_MAX:
        raise OperandError(f"Immediate {token.value} does not fit in 32 bits", location=token.location)
    # Unsigned spellings above INT32_MAX read as their two's-complement value.
    if value > (1 << 31) - 1:
        value -= 1 << 32
    return value


class Assembler:
    def __init__(self, tokens: Sequence[Token], filename: str = "<string>", *, require_entry: bool = True) -> None:
        self.tokens = tokens
        self.filename = filename
        self.require_entry = require_entry

    def assemble(self) -> Program:
        lines = self._split()
        labels = self._collect_labels(lines)
        instructions: List[Instruction] = []
        for _labels, body in lines:
            if body:
                instructions.append(self._encode(body, labels))
        entry = labels.get(ENTRY_LABEL)
        if entry is None:
            if self.require_entry:
                location = self.tokens[-1].location if self.tokens else None
                raise MissingEntryPointError(f"Program has no '{ENTRY_LABEL}' label", location=location)
            entry = 0
        return Program(
            instructions=tuple(instructions),
            labels=MappingProxyType(dict(labels)),
            entry=entry,
            filename=self.filename,
        )

    def _split(self) -> List[Tuple[List[Token], List[Token]]]:
        """Split the canonical stream into (label definitions, instruction tokens) per line."""
        lines: List[Tuple[List[Token], List[Token]]] = []
        current: List[Token] = []
        for token in self.tokens:
            if token.type in ("NEWLINE", "EOF"):
                if current:
                    lines.append(self._split_labels(current))
                    current = []
                continue
            current.append(token)
        if current:
            lines.append(self._split_labels(current))
        return lines

    def _split_labels(self, line: List[Token]) -> Tuple[List[Token], List[Token]]:
        defined: List[Token] = []
        rest = line
        while len(rest) >= 2 and rest[0].type == "IDENT" and rest[1].type == "COLON":
            defined.append(rest[0])
            rest = rest[2:]
        return defined, rest

    # Pass 1: bind every label to the index of the next instruction.
    def _collect_labels(self, lines: Sequence[Tuple[List[Token], List[Token]]]) -> Dict[str, int]:
        labels: Dict[str, int] = {}
        index = 0
        for defined, body in lines:
            for token in defined:
                if token.value in REGISTERS:
                    raise OperandError(
                        f"Register name '{token.value}' cannot be used as a label", location=token.location
                    )
                if token.value in labels:
                    raise DuplicateLabelError(f"Duplicate label '{token.value}'", location=token.location)
                labels[token.value] = index
            if body:
                index += 1
        return labels

    # Pass 2: encode one instruction per line.
    def _encode(self, body: List[Token], labels: Dict[str, int]) -> Instruction:
        head = body[0]
        location = SourceLocation(
            file=head.file,
            line=head.line,
            column=head.column,
            statement=render_tokens(body),
            expansion=head.expansion,
        )
        if head.type != "IDENT":
            raise UnknownInstructionError(f"Expected mnemonic but found '{head.value}'", location=location)
        opcode = MNEMONICS.get(head.value)
        if opcode is None:
            raise UnknownInstructionError(f"Unknown instruction '{head.value}'", location=location)
        operand_tokens = self._operand_tokens(body, location)
        signature = SIGNATURES[opcode]
        if len(operand_tokens) != len(signature):
            raise OperandError(
                f"'{opcode.mnemonic}' expects {len(signature)} operands but got {len(operand_tokens)}",
                location=location,
            )
        operands = tuple(
            self._operand(opcode, kind, token, labels) for kind, token in zip(signature, operand_tokens)
        )
        return Instruction(opcode=opcode, operands=operands, location=location)

    def _operand_tokens(self, body: List[Token], location: SourceLocation) -> List[Token]:
        tokens: List[Token] = []
        expect_operand = True
        for token in body[1:]:
            if token.type == "COMMA":
                if expect_operand:
                    raise OperandError("Missing operand before ','", location=token.location)
                expect_operand = True
                continue
            if not expect_operand:
                raise OperandError(f"Expected ',' before '{token.value}'", location=token.location)
            tokens.append(token)
            expect_operand = False
        if tokens and expect_operand:
            raise OperandError("Trailing ',' without operand", location=location)
        return tokens

    def _operand(self, opcode: Opcode, kind: OperandKind, token: Token, labels: Dict[str, int]) -> Operand:
        mnemonic = opcode.mnemonic
        if kind == OperandKind.REGISTER:
            if token.type == "NUMBER":
                raise OperandError(
                    f"'{mnemonic}' needs a register where immediate {token.value} was given",
                    location=token.location,
                )
            register = REGISTERS.get(token.value) if token.type == "IDENT" else None
            if register is None:
                raise OperandError(f"Unknown register '{token.value}'", location=token.location)
            return Operand(OperandKind.REGISTER, int(register))
        if kind == OperandKind.IMMEDIATE:
            if token.type != "NUMBER":
                raise OperandError(
                    f"'{mnemonic}' needs an immediate but found '{token.value}'", location=token.location
                )
            value = _parse_immediate(token)
            if opcode == Opcode.DBG and value < 0:
                raise OperandError(f"Field width must be non-negative, got {value}", location=token.location)
            return Operand(OperandKind.IMMEDIATE, value)
        if token.type != "IDENT" or token.value in REGISTERS:
            raise OperandError(f"'{mnemonic}' needs a label but found '{token.value}'", location=token.location)
        target = labels.get(token.value)
        if target is None:
            raise UnresolvedLabelError(f"Unresolved label '{token.value}'", location=token.location)
        return Operand(OperandKind.LABEL, target, name=token.value)


def assemble_source(
    text: str,
    filename: str = "<string>",
    *,
    require_entry: bool = True,
    expander: Optional[MacroExpander] = None,
) -> Program:
    """Lex, expand macros and assemble ``text`` into a program."""
    tokens = Lexer(text, filename).tokenize()
    expanded = (expander or MacroExpander()).expand(tokens)
    return Assembler(expanded, filename, require_entry=require_entry).assemble()
