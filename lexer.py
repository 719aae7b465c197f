from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Sequence


class RegasmError(Exception):
    """Base class for assembler and machine errors."""


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str = ""
    expansion: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"


class CompileError(RegasmError):
    """Raised when source text cannot be turned into a program."""

    def __init__(self, message: str, *, location: Optional[SourceLocation] = None) -> None:
        super().__init__(message if location is None else f"{message} at {location}")
        self.message = message
        self.location = location


class LexError(CompileError):
    """Raised when tokenizing fails."""


@dataclass(frozen=True)
class Token:
    type: str
    value: str
    line: int
    column: int
    file: str = "<string>"
    # Expansion identifier of the macro that produced this token, if any.
    expansion: Optional[str] = None

    @property
    def location(self) -> SourceLocation:
        return SourceLocation(file=self.file, line=self.line, column=self.column, expansion=self.expansion)


REGISTER_NAMES = ("z", "a", "b", "c", "d")

DIRECTIVES = {
    "!macro",
    "!endmacro",
}

SYMBOLS = {
    "(": "LPAREN",
    ")": "RPAREN",
    "{": "LBRACE",
    "}": "RBRACE",
    ",": "COMMA",
    ":": "COLON",
}

BRACKETS = {"(": ")", "{": "}"}
CLOSING = set(BRACKETS.values())

IDENT_START = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ_"
IDENT_PART = IDENT_START + "0123456789"
DIGITS = "0123456789"
HEX_DIGITS = "0123456789abcdefABCDEF"


class Lexer:
    def __init__(self, text: str, filename: str = "<string>") -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        symbols = SYMBOLS
        brackets: List[Token] = []
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch == " " or ch == "\t" or ch == "\r":
                _advance()
                continue
            if ch == "\n":
                # Blank and comment-only lines collapse into a single separator.
                if tokens and tokens[-1].type != "NEWLINE":
                    tokens_append(self._token("NEWLINE", "\n", self.line, self.column))
                _advance()
                continue
            if ch == ";":
                self._consume_comment()
                continue
            if ch in symbols:
                token = self._token(symbols[ch], ch, self.line, self.column)
                if ch in BRACKETS:
                    brackets.append(token)
                elif ch in CLOSING:
                    if not brackets or BRACKETS[brackets[-1].value] != ch:
                        raise LexError(f"Unbalanced '{ch}'", location=self._here())
                    brackets.pop()
                tokens_append(token)
                _advance()
                continue
            if ch == "!":
                tokens_append(self._consume_directive())
                continue
            if ch in DIGITS or (ch == "-" and self.index + 1 < n and text[self.index + 1] in DIGITS):
                tokens_append(self._consume_number())
                continue
            if ch in IDENT_START or ch == "$":
                tokens_append(self._consume_identifier())
                continue
            raise LexError(f"Unexpected character '{ch}'", location=self._here())
        if brackets:
            opened = brackets[-1]
            raise LexError(f"Unterminated '{opened.value}'", location=opened.location)
        if tokens and tokens[-1].type != "NEWLINE":
            tokens_append(self._token("NEWLINE", "\n", self.line, self.column))
        tokens_append(self._token("EOF", "", self.line, self.column))
        return tokens

    def _consume_comment(self) -> None:
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and text[self.index] != "\n":
            _advance()

    def _consume_directive(self) -> Token:
        line, col = self.line, self.column
        self._advance()  # consume '!'
        name = "!" + self._consume_word()
        if name not in DIRECTIVES:
            raise LexError(f"Unknown directive '{name}'", location=self._at(line, col))
        return self._token("DIRECTIVE", name, line, col)

    def _consume_number(self) -> Token:
        line, col = self.line, self.column
        chars: List[str] = []
        if self._peek() == "-":
            chars.append("-")
            self._advance()
        digits = DIGITS
        if self._peek() == "0" and self._peek_at(1) in ("x", "X"):
            chars.append("0x")
            self._advance()
            self._advance()
            digits = HEX_DIGITS
            if self._eof or self._peek() not in digits:
                raise LexError("Malformed hexadecimal literal", location=self._at(line, col))
        while not self._eof and self._peek() in digits:
            chars.append(self._peek())
            self._advance()
        # A literal running straight into letters ("12ab", "0x1g") is malformed.
        if not self._eof and (self._peek() in IDENT_PART or self._peek() == "$"):
            raise LexError(
                f"Malformed numeric literal '{''.join(chars)}{self._peek()}'",
                location=self._at(line, col),
            )
        return self._token("NUMBER", "".join(chars), line, col)

    def _consume_identifier(self) -> Token:
        # Identifiers may embed placeholder references ($name or ${name}); any
        # such reference turns the token into a TEMPLATE for the macro expander.
        line, col = self.line, self.column
        chars: List[str] = []
        is_template = False
        while not self._eof:
            ch = self._peek()
            if ch in IDENT_PART:
                chars.append(ch)
                self._advance()
                continue
            if ch == "$":
                chars.append(self._consume_placeholder())
                is_template = True
                continue
            break
        value = "".join(chars)
        return self._token("TEMPLATE" if is_template else "IDENT", value, line, col)

    def _consume_placeholder(self) -> str:
        line, col = self.line, self.column
        self._advance()  # consume '$'
        if not self._eof and self._peek() == "{":
            self._advance()
            if self._eof or self._peek() not in IDENT_START:
                raise LexError("Expected placeholder name after '${'", location=self._at(line, col))
            name = self._consume_word()
            if self._eof or self._peek() != "}":
                raise LexError(f"Unterminated placeholder '${{{name}'", location=self._at(line, col))
            self._advance()
            return "${" + name + "}"
        if self._eof or self._peek() not in IDENT_START:
            raise LexError("Expected placeholder name after '$'", location=self._at(line, col))
        return "$" + self._consume_word()

    def _consume_word(self) -> str:
        chars: List[str] = []
        while not self._eof and self._peek() in IDENT_PART:
            chars.append(self._peek())
            self._advance()
        return "".join(chars)

    def _token(self, token_type: str, value: str, line: int, column: int) -> Token:
        return Token(token_type, value, line, column, self.filename)

    def _at(self, line: int, column: int) -> SourceLocation:
        return SourceLocation(file=self.filename, line=line, column=column)

    def _here(self) -> SourceLocation:
        return self._at(self.line, self.column)

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _peek_at(self, offset: int) -> str:
        index = self.index + offset
        return self.text[index] if index < len(self.text) else ""

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1


_NO_SPACE_BEFORE = {"COMMA", "COLON", "RPAREN", "RBRACE"}
_NO_SPACE_AFTER = {"LPAREN", "LBRACE"}


def render_tokens(tokens: Sequence[Token]) -> str:
    """Turn a token sequence back into source text, one line per NEWLINE."""
    lines: List[str] = []
    current = ""
    previous: Optional[Token] = None
    for token in tokens:
        if token.type == "EOF":
            break
        if token.type == "NEWLINE":
            lines.append(current)
            current = ""
            previous = None
            continue
        glue = (
            previous is None
            or token.type in _NO_SPACE_BEFORE
            or previous.type in _NO_SPACE_AFTER
            or (token.type == "LPAREN" and previous.type in ("IDENT", "TEMPLATE"))
        )
        current += token.value if glue else " " + token.value
        previous = token
    if current:
        lines.append(current)
    return "\n".join(lines)


def format_tokens(tokens: Sequence[Token]) -> str:
    """Debug dump of a token stream, one source line per output line."""
    out: List[str] = []
    row: List[str] = []
    for token in tokens:
        if token.type in ("NEWLINE", "EOF"):
            row.append(token.type)
            out.append(" ".join(row))
            row = []
            continue
        if token.type in SYMBOLS.values():
            row.append(token.type)
        else:
            row.append(f"{token.type}({token.value})")
    if row:
        out.append(" ".join(row))
    return "\n".join(out)
