import pytest

from lexer import CompileError, LexError, Lexer, format_tokens, render_tokens


def _types(text):
    return [token.type for token in Lexer(text).tokenize()]


def _values(text):
    return [token.value for token in Lexer(text).tokenize() if token.type not in ("NEWLINE", "EOF")]


def test_instruction_tokens():
    assert _types("set a, 1") == ["IDENT", "IDENT", "COMMA", "NUMBER", "NEWLINE", "EOF"]
    assert _values("set a, 1") == ["set", "a", ",", "1"]


def test_blank_lines_and_comments_produce_no_tokens():
    assert _types("; header\n\nnop ; trailing\n\n\n") == ["IDENT", "NEWLINE", "EOF"]
    assert _types("") == ["EOF"]
    assert _types("   ; only a comment") == ["EOF"]


def test_label_definition_and_reference():
    assert _types("loop:\njmp loop") == ["IDENT", "COLON", "NEWLINE", "IDENT", "IDENT", "NEWLINE", "EOF"]


def test_numeric_literals():
    assert _values("set a, -5") == ["set", "a", ",", "-5"]
    assert _values("set a, 0x1F") == ["set", "a", ",", "0x1F"]
    assert _values("dbg z, 255") == ["dbg", "z", ",", "255"]


@pytest.mark.parametrize("text", ["set a, 12ab", "set a, 0x", "set a, 0xg1", "set a, 7$x"])
def test_malformed_numbers(text):
    with pytest.raises(LexError):
        Lexer(text).tokenize()


def test_templates():
    tokens = Lexer("${macro_id}_end: jmp $a").tokenize()
    assert (tokens[0].type, tokens[0].value) == ("TEMPLATE", "${macro_id}_end")
    assert tokens[1].type == "COLON"
    assert (tokens[3].type, tokens[3].value) == ("TEMPLATE", "$a")


@pytest.mark.parametrize("text", ["jmp ${name", "jmp ${", "jmp $", "jmp $1"])
def test_unterminated_placeholders(text):
    with pytest.raises(LexError):
        Lexer(text).tokenize()


def test_directives():
    tokens = Lexer("!macro m():\n!endmacro").tokenize()
    assert [t.value for t in tokens if t.type == "DIRECTIVE"] == ["!macro", "!endmacro"]
    with pytest.raises(LexError):
        Lexer("!include foo").tokenize()


def test_unexpected_character_location():
    with pytest.raises(LexError) as info:
        Lexer("nop\n  #", "prog.asm").tokenize()
    location = info.value.location
    assert (location.file, location.line, location.column) == ("prog.asm", 2, 3)
    assert str(info.value).endswith("at prog.asm:2:3")
    assert isinstance(info.value, CompileError)


def test_lone_minus_is_rejected():
    with pytest.raises(LexError):
        Lexer("set a, - 1").tokenize()


def test_token_positions():
    tokens = Lexer("main:\n    add b, c").tokenize()
    add = tokens[3]
    assert (add.value, add.line, add.column) == ("add", 2, 5)


def test_render_tokens():
    assert render_tokens(Lexer("loop:   add b ,c\nnop").tokenize()) == "loop: add b, c\nnop"
    assert render_tokens(Lexer("if({ lt a, b }, nop)").tokenize()) == "if({lt a, b}, nop)"


def test_format_tokens():
    assert format_tokens(Lexer("set a, 1").tokenize()) == "IDENT(set) IDENT(a) COMMA NUMBER(1) NEWLINE\nEOF"


@pytest.mark.parametrize(
    "text, line, column",
    [
        ("main:\nnop (", 2, 5),
        ("main:\nnop )", 2, 5),
        ("if({ lt a, b )", 1, 14),
        ("fun f() {\nnop\n", 1, 9),
    ],
)
def test_unbalanced_brackets(text, line, column):
    with pytest.raises(LexError) as info:
        Lexer(text).tokenize()
    assert (info.value.location.line, info.value.location.column) == (line, column)
