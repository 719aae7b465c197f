import pytest

from assembler import assemble_source
from lexer import Lexer, render_tokens
from macros import (
    MacroArityError,
    MacroError,
    MacroExpander,
    MacroRecursionError,
    MacroSyntaxError,
)


def expand(text, **kwargs):
    return render_tokens(MacroExpander(**kwargs).expand(Lexer(text).tokenize()))


INC = """\
!macro inc(r, one):
set ${one}, 1
add ${r}, ${one}
!endmacro
"""

SPIN = """\
!macro spin():
top:
nop
jmp top
!endmacro
"""


def test_plain_source_passes_through():
    assert expand("main:\nset a, 1\nexit") == "main:\nset a, 1\nexit"


def test_positional_substitution():
    assert expand(INC + "main:\ninc(a, b)") == "main:\nset b, 1\nadd a, b"


def test_use_before_definition():
    assert expand("main:\ninc(c, d)\n" + INC) == "main:\nset d, 1\nadd c, d"


def test_local_labels_are_renamed_per_expansion():
    out = expand(SPIN + "main:\nspin()\nspin()")
    assert out == "main:\ntop@1:\nnop\njmp top@1\ntop@2:\nnop\njmp top@2"


def test_expansions_resolve_to_distinct_addresses():
    count = 12
    program = assemble_source(SPIN + "main:\n" + "spin()\n" * count)
    addresses = {program.labels[f"top@{n}"] for n in range(1, count + 1)}
    assert len(addresses) == count
    for n in range(1, count + 1):
        jump = program[program.labels[f"top@{n}"] + 1]
        assert jump.operands[0].value == program.labels[f"top@{n}"]


def test_macro_id_placeholder():
    text = "!macro mark():\n${macro_id}_x:\njmp ${macro_id}_x\n!endmacro\nmain:\nmark()\nmark()"
    assert expand(text) == "main:\nmark@1_x:\njmp mark@1_x\nmark@2_x:\njmp mark@2_x"


def test_label_arguments_are_not_renamed():
    text = "!macro go(target):\njmp ${target}\n!endmacro\nmain:\ngo(main)"
    assert expand(text) == "main:\njmp main"


def test_label_prefix_on_invocation_line():
    assert expand(INC + "main: inc(a, b)") == "main:\nset b, 1\nadd a, b"


def test_nested_invocations():
    text = (
        "!macro two(r):\none(${r})\none(${r})\n!endmacro\n"
        "!macro one(r):\nadd ${r}, ${r}\n!endmacro\n"
        "main:\ntwo(a)"
    )
    assert expand(text) == "main:\nadd a, a\nadd a, a"


def test_braced_multi_instruction_argument():
    text = "!macro twice(body):\n${body}\n${body}\n!endmacro\nmain:\ntwice({\n  set a, 1\n  add a, a\n})"
    assert expand(text) == "main:\nset a, 1\nadd a, a\nset a, 1\nadd a, a"


def test_if_prelude_expansion():
    text = "main:\nset a, 1\nset b, 2\nif({ lt a, b }, { dbg a, 0 }, { dbg b, 0 })\nexit"
    assert expand(text) == (
        "main:\nset a, 1\nset b, 2\n"
        "lt a, b\nthen\njmp if@1_then\n"
        "dbg b, 0\njmp if@1_end\n"
        "if@1_then:\ndbg a, 0\n"
        "if@1_end:\nexit"
    )


def test_prelude_can_be_disabled():
    with pytest.raises(MacroArityError):
        expand("main:\nif({ lt a, b }, nop, nop)", prelude=False)


def test_recursion_limit():
    text = "!macro forever():\nforever()\n!endmacro\nmain:\nforever()"
    with pytest.raises(MacroRecursionError):
        expand(text)
    with pytest.raises(MacroRecursionError) as info:
        expand(text, max_depth=3)
    assert "exceeds depth 3" in info.value.message


def test_depth_limit_allows_shallow_nesting():
    text = "!macro one():\nnop\n!endmacro\n!macro two():\none()\n!endmacro\nmain:\ntwo()"
    assert expand(text, max_depth=2) == "main:\nnop"


def test_undefined_macro():
    with pytest.raises(MacroArityError):
        expand("main:\nnothere(a)")


@pytest.mark.parametrize("call", ["inc(a)", "inc(a, b, c)", "inc()"])
def test_argument_count_mismatch(call):
    with pytest.raises(MacroArityError) as info:
        expand(INC + "main:\n" + call)
    assert info.value.location.line == 6


@pytest.mark.parametrize(
    "text",
    [
        "!macro m():\nnop\n",
        "!endmacro",
        "!macro m():\nnop\n!endmacro\n!macro m():\nnop\n!endmacro",
        "!macro m():\n!macro n():\n!endmacro\n!endmacro",
        "!macro m(a, a):\nnop\n!endmacro",
        "!macro m(macro_id):\nnop\n!endmacro",
        "!macro m()\nnop\n!endmacro",
        "!macro m():\nnop ${q}\n!endmacro\nmain:\nm()",
        "main:\n{ nop }",
        "main:\njmp ${x}",
        INC + "main:\ninc(a, b) nop",
        INC + "main:\ninc(a, )",
    ],
)
def test_malformed_macro_syntax(text):
    with pytest.raises(MacroSyntaxError):
        expand(text)


def test_pasting_requires_single_word():
    text = "!macro lbl(name):\n${name}_x:\nnop\n!endmacro\nmain:\nlbl({ set a, 1 })"
    with pytest.raises(MacroSyntaxError):
        expand(text)


def test_register_name_cannot_be_a_macro_label():
    with pytest.raises(MacroSyntaxError):
        expand("!macro m():\na:\nnop\n!endmacro\nmain:\nm()")


DOUBLE = """\
fun double($r) use ($t) {
    mov $t, $r
    add $r, $t
    dbg $r, 0
    ret
}
"""


def test_fun_instantiation_and_reuse():
    text = DOUBLE + "main:\ncall double(a) use (b)\ncall double(a) use (b)\ncall double(c) use (d)\nexit"
    assert expand(text) == (
        "main:\n"
        "call double@1\ncall double@1\ncall double@2\nexit\n"
        "exit\n"
        "double@1:\npush a\npush b\nmov b, a\nadd a, b\ndbg a, 0\njmp double@1_return\n"
        "double@1_return:\npop b\npop a\nret\n"
        "double@2:\npush c\npush d\nmov d, c\nadd c, d\ndbg c, 0\njmp double@2_return\n"
        "double@2_return:\npop d\npop c\nret"
    )


def test_fun_label_placeholder():
    text = "fun spin() {\n${fun}_top:\njmp ${fun}_top\n}\nmain:\ncall spin()"
    assert "spin@1_top:\njmp spin@1_top" in expand(text)


def test_fun_local_labels_are_renamed():
    text = "fun f($r) {\nagain:\nadd $r, $r\n}\nmain:\ncall f(a)\ncall f(b)"
    out = expand(text)
    assert "again@1:" in out
    assert "again@2:" in out


@pytest.mark.parametrize(
    "call",
    ["call double(a, b) use (c)", "call double(a)", "call double(a) use (b, c)", "call nope(a)"],
)
def test_fun_arity_errors(call):
    with pytest.raises(MacroArityError):
        expand(DOUBLE + "main:\n" + call)


def test_fun_arguments_must_be_single_tokens():
    with pytest.raises(MacroSyntaxError):
        expand(DOUBLE + "main:\ncall double({ add a, b }) use (c)")


def test_fun_syntax_errors():
    with pytest.raises(MacroSyntaxError):
        expand("fun f($r) nop")
    with pytest.raises(MacroSyntaxError):
        expand("fun f($r) { nop } nop")
    with pytest.raises(MacroSyntaxError):
        expand("fun f($r) use ($r) { nop }")
    with pytest.raises(MacroSyntaxError):
        expand("fun f() { nop }\nfun f() { nop }")


def test_recursive_fun_reuses_its_instance():
    out = expand("fun f($r) {\ncall f($r)\n}\nmain:\ncall f(a)")
    assert out.count("f@1:") == 1
    assert "call f@1" in out


def test_errors_share_a_base_class():
    for error in (MacroArityError, MacroRecursionError, MacroSyntaxError):
        assert issubclass(error, MacroError)


def test_counter_is_per_expander():
    expander = MacroExpander()
    first = render_tokens(expander.expand(Lexer(SPIN + "main:\nspin()").tokenize()))
    assert "top@1:" in first
    fresh = MacroExpander()
    fresh.expand(Lexer(SPIN + "main:\nspin()").tokenize())
    assert fresh.expansion_counter == 1


def test_labelled_ret_runs_the_epilogue():
    out = expand("fun g($a) {\nset $a, 3\ndone: ret\n}\nmain:\ncall g(a)")
    assert "done@1: jmp g@1_return" in out
    assert out.endswith("g@1_return:\npop a\nret")
    assert out.splitlines().count("ret") == 1


def test_ret_inside_macro_argument_runs_the_epilogue():
    out = expand("fun f($a) {\nif({ lt $a, 0 }, { ret }, { nop })\nset $a, 1\nret\n}\nmain:\ncall f(a)")
    lines = out.splitlines()
    assert "if@2_then:" in lines
    assert lines[lines.index("if@2_then:") + 1] == "jmp f@1_return"
    assert lines.count("ret") == 1
    assert lines[-1] == "ret"
