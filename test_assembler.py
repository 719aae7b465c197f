import pytest

from assembler import (
    RECORD_DTYPE,
    Assembler,
    AssemblyError,
    DuplicateLabelError,
    MissingEntryPointError,
    Opcode,
    Operand,
    OperandError,
    OperandKind,
    Register,
    UnknownInstructionError,
    UnresolvedLabelError,
    assemble_source,
)
from lexer import CompileError, Lexer


def test_simple_program():
    program = assemble_source("main:\nset a, 5\nexit")
    assert len(program) == 2
    assert program.entry == 0
    assert program[0].opcode == Opcode.SET
    assert program[0].operands == (
        Operand(OperandKind.REGISTER, int(Register.A)),
        Operand(OperandKind.IMMEDIATE, 5),
    )
    assert program[1].opcode == Opcode.EXIT


def test_forward_references_resolve():
    program = assemble_source("main:\njmp end\nnop\nend:\nexit")
    assert program.labels["end"] == 2
    assert program[0].operands[0].value == 2
    assert program[0].operands[0].name == "end"


def test_label_shares_line_with_instruction():
    program = assemble_source("main: nop\nloop: jmp loop")
    assert dict(program.labels) == {"main": 0, "loop": 1}


def test_label_after_last_instruction():
    program = assemble_source("main:\nnop\nend:")
    assert program.labels["end"] == len(program) == 1


def test_entry_point_need_not_be_first():
    program = assemble_source("helper:\nret\nmain:\nexit")
    assert program.entry == 1


def test_label_table_is_read_only():
    program = assemble_source("main:\nnop")
    with pytest.raises(TypeError):
        program.labels["main"] = 5


def test_duplicate_label():
    with pytest.raises(DuplicateLabelError) as info:
        assemble_source("main:\nnop\nmain:\nnop")
    assert info.value.location.line == 3


def test_unresolved_label():
    with pytest.raises(UnresolvedLabelError) as info:
        assemble_source("main:\njmp nowhere")
    assert (info.value.location.line, info.value.location.column) == (2, 5)


@pytest.mark.parametrize(
    "line",
    [
        "add a, 1",
        "set 1, a",
        "set a",
        "set a, 1, 2",
        "mov a, q",
        "mov a, main",
        "dbg a, -1",
        "set a, 0x100000000",
        "set a, -2147483649",
        "set a,, 1",
        "set a 1",
        "set a,",
        "jmp 3",
        "call a",
        "exit a",
    ],
)
def test_operand_errors(line):
    with pytest.raises(OperandError):
        assemble_source("main:\n" + line)


def test_register_cannot_be_a_label():
    with pytest.raises(OperandError):
        assemble_source("a:\nmain:\nnop")


def test_unknown_instruction():
    with pytest.raises(UnknownInstructionError) as info:
        assemble_source("main:\nfly a")
    assert "fly" in info.value.message
    with pytest.raises(UnknownInstructionError):
        assemble_source("main:\n5")


def test_missing_entry_point():
    with pytest.raises(MissingEntryPointError):
        assemble_source("start:\nnop")
    program = assemble_source("start:\nnop", require_entry=False)
    assert program.entry == 0


@pytest.mark.parametrize(
    "literal, value",
    [
        ("0", 0),
        ("-5", -5),
        ("0x1F", 31),
        ("2147483647", 2147483647),
        ("-2147483648", -2147483648),
        ("0xFFFFFFFF", -1),
        ("0x80000000", -2147483648),
    ],
)
def test_immediates(literal, value):
    program = assemble_source(f"main:\nset a, {literal}")
    assert program[0].operands[1].value == value


def test_every_mnemonic_assembles():
    source = "\n".join(
        [
            "main:",
            "nop",
            "set a, 1",
            "mov b, a",
            "add a, b",
            "sub a, b",
            "mul a, b",
            "div a, b",
            "mod a, b",
            "neg a",
            "gt a, b",
            "lt a, b",
            "ge a, b",
            "le a, b",
            "eq a, b",
            "ne a, b",
            "then",
            "else",
            "push a",
            "pop a",
            "call main",
            "ret",
            "jmp main",
            "dbg z, 255",
            "exit",
        ]
    )
    program = assemble_source(source)
    assert {instruction.opcode for instruction in program.instructions} == set(Opcode)


def test_encoding_is_deterministic():
    source = "main:\ncall f\ndbg z, 255\nexit\nf:\nset a, 0x7FFFFFFF\nlt a, b\nthen\njmp f\nret"
    first = assemble_source(source).encode()
    second = assemble_source(source).encode()
    assert first == second
    assert len(first) == 8 * RECORD_DTYPE.itemsize


def test_macro_expansion_is_deterministic():
    source = "!macro spin():\ntop:\njmp top\n!endmacro\nmain:\nspin()\nspin()\nif({ lt a, b }, nop, nop)"
    assert assemble_source(source).encode() == assemble_source(source).encode()


def test_records():
    records = assemble_source("main:\nset b, -3\njmp main").to_records()
    assert records.dtype == RECORD_DTYPE
    assert records["opcode"].tolist() == [int(Opcode.SET), int(Opcode.JMP)]
    assert records["kind_a"].tolist() == [int(OperandKind.REGISTER), int(OperandKind.LABEL)]
    assert records["operand_a"].tolist() == [int(Register.B), 0]
    assert records["kind_b"].tolist() == [int(OperandKind.IMMEDIATE), int(OperandKind.NONE)]
    assert records["operand_b"].tolist() == [-3, 0]


def test_listing():
    listing = assemble_source("main:\nset a, 5\njmp end\nend:\nexit").listing()
    lines = listing.splitlines()
    assert lines[0] == "main:"
    assert "0000  set a, 5" in lines[1]
    assert lines[2].endswith("jmp end    ; -> 0002")
    assert lines[3] == "end:"


def test_instruction_locations_carry_statement_text():
    program = assemble_source("main:\n  add   b ,c", "prog.asm")
    location = program[0].location
    assert (location.file, location.line, location.column) == ("prog.asm", 2, 3)
    assert location.statement == "add b, c"


def test_errors_inside_macros_report_expansion():
    source = "!macro bad():\njmp nowhere\n!endmacro\nmain:\nbad()"
    with pytest.raises(UnresolvedLabelError) as info:
        assemble_source(source)
    assert info.value.location.expansion == "bad@1"
    assert info.value.location.line == 2


def test_assembler_accepts_raw_tokens():
    tokens = Lexer("main:\nnop").tokenize()
    program = Assembler(tokens, "raw.asm").assemble()
    assert program.filename == "raw.asm"
    assert len(program) == 1


def test_error_hierarchy():
    for error in (
        DuplicateLabelError,
        UnresolvedLabelError,
        OperandError,
        UnknownInstructionError,
        MissingEntryPointError,
    ):
        assert issubclass(error, AssemblyError)
        assert issubclass(error, CompileError)
