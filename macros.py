"""Macro expansion: ``!macro`` blocks, ``fun`` templates and ``call ... use``.

The expander works on the lexer's token stream and returns a canonical token
stream (labels and instructions only) for the assembler.  Every expansion
draws a fresh number from a counter owned by the expander; labels defined
inside a macro body are renamed ``label@N`` so two expansions of the same
macro never share a label.  ``@`` cannot appear in source identifiers, so a
generated name can never collide with a user label.
"""
from __future__ import annotations
import re
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Set, Tuple

from lexer import REGISTER_NAMES, CompileError, Lexer, SourceLocation, Token


DEFAULT_MAX_DEPTH = 64

# Tokens that only the macro layer understands; none may reach the assembler.
MACRO_ONLY_TOKENS = {"TEMPLATE", "LPAREN", "RPAREN", "LBRACE", "RBRACE", "DIRECTIVE"}

RESERVED_PARAMS = {"macro_id", "fun"}

OPENERS = {"LPAREN": "RPAREN", "LBRACE": "RBRACE"}
CLOSERS = {"RPAREN", "RBRACE"}

PLACEHOLDER_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")

PRELUDE = """\
!macro if(cond, ifTrue, ifFalse):
${cond}
then
jmp ${macro_id}_then
${ifFalse}
jmp ${macro_id}_end
${macro_id}_then:
${ifTrue}
${macro_id}_end:
!endmacro

!macro while(cond, body):
${macro_id}_test:
${cond}
then
jmp ${macro_id}_body
jmp ${macro_id}_end
${macro_id}_body:
${body}
jmp ${macro_id}_test
${macro_id}_end:
!endmacro
"""


class MacroError(CompileError):
    """Base class for macro expansion failures."""


class MacroArityError(MacroError):
    """Raised when a macro is undefined or invoked with the wrong argument count."""


class MacroRecursionError(MacroError):
    """Raised when nested expansion exceeds the depth limit."""


class MacroSyntaxError(MacroError):
    """Raised on malformed macro definitions or invocations."""


Line = List[Token]


@dataclass
class MacroDefinition:
    name: str
    params: List[str]
    body: List[Line]
    local_labels: Set[str]
    location: SourceLocation


@dataclass
class FunctionTemplate:
    name: str
    params: List[str]
    locals: List[str]
    body: List[Line]
    local_labels: Set[str]
    location: SourceLocation


def split_lines(tokens: Sequence[Token]) -> List[Line]:
    """Group tokens into logical lines.

    A NEWLINE only ends a line at bracket depth zero, so a brace-delimited
    argument or ``fun`` body stays on the line that opened it.
    """
    lines: List[Line] = []
    current: Line = []
    stack: List[Token] = []
    for token in tokens:
        if token.type == "EOF":
            break
        if token.type == "NEWLINE" and not stack:
            if current:
                lines.append(current)
                current = []
            continue
        if token.type in OPENERS:
            stack.append(token)
        elif token.type in CLOSERS:
            if not stack or OPENERS[stack[-1].type] != token.type:
                raise MacroSyntaxError(f"Unbalanced '{token.value}'", location=token.location)
            stack.pop()
        current.append(token)
    if stack:
        raise MacroSyntaxError(f"Unclosed '{stack[-1].value}'", location=stack[-1].location)
    if current:
        lines.append(current)
    return lines


def join_lines(lines: Sequence[Line]) -> List[Token]:
    tokens: List[Token] = []
    for line in lines:
        if not line:
            continue
        tokens.extend(line)
        last = line[-1]
        tokens.append(replace(last, type="NEWLINE", value="\n"))
    return tokens


def _strip_newlines(tokens: Sequence[Token]) -> List[Token]:
    start, end = 0, len(tokens)
    while start < end and tokens[start].type == "NEWLINE":
        start += 1
    while end > start and tokens[end - 1].type == "NEWLINE":
        end -= 1
    return list(tokens[start:end])


def _matching_close(tokens: Sequence[Token], start: int) -> int:
    depth = 0
    for index in range(start, len(tokens)):
        kind = tokens[index].type
        if kind in OPENERS:
            depth += 1
        elif kind in CLOSERS:
            depth -= 1
            if depth == 0:
                return index
    raise MacroSyntaxError(f"Unclosed '{tokens[start].value}'", location=tokens[start].location)


def _label_definitions(body: Sequence[Line]) -> Set[str]:
    labels: Set[str] = set()
    for line in body:
        if len(line) >= 2 and line[0].type == "IDENT" and line[1].type == "COLON":
            if line[0].value in REGISTER_NAMES:
                raise MacroSyntaxError(
                    f"Register name '{line[0].value}' cannot be used as a label",
                    location=line[0].location,
                )
            labels.add(line[0].value)
    return labels


def _placeholder_name(token: Token) -> Optional[str]:
    if token.type != "TEMPLATE":
        return None
    match = PLACEHOLDER_RE.fullmatch(token.value)
    if match is None:
        return None
    return match.group(1) or match.group(2)


def _redirect_returns(tokens: Sequence[Token], target: Token) -> List[Token]:
    """Turn every bare ``ret`` instruction of a canonical stream into ``jmp target``."""
    out: List[Token] = []
    line: Line = []
    for token in tokens:
        if token.type != "NEWLINE":
            line.append(token)
            continue
        start = 0
        while start + 1 < len(line) and line[start].type == "IDENT" and line[start + 1].type == "COLON":
            start += 2
        rest = line[start:]
        if len(rest) == 1 and rest[0].type == "IDENT" and rest[0].value == "ret":
            ret = rest[0]
            line = line[:start] + [replace(ret, value="jmp"), replace(ret, value=target.value)]
        out.extend(line)
        out.append(token)
        line = []
    out.extend(line)
    return out


class MacroExpander:
    def __init__(self, *, max_depth: int = DEFAULT_MAX_DEPTH, prelude: bool = True) -> None:
        self.max_depth = max_depth
        self.macros: Dict[str, MacroDefinition] = {}
        self.functions: Dict[str, FunctionTemplate] = {}
        self.expansion_counter = 0
        self._instances: Dict[Tuple[str, Tuple[str, ...], Tuple[str, ...]], str] = {}
        self._instance_lines: List[Token] = []
        if prelude:
            self._collect(Lexer(PRELUDE, "<prelude>").tokenize())

    def expand(self, tokens: Sequence[Token]) -> List[Token]:
        """Return the canonical token stream for ``tokens``."""
        self._instances = {}
        self._instance_lines = []
        lines = self._collect(tokens)
        out = self._expand_lines(lines, depth=0)
        if self._instance_lines:
            # Falling off the end of the program must not run into a function body.
            first = self._instance_lines[0]
            out.append(replace(first, type="IDENT", value="exit"))
            out.append(replace(first, type="NEWLINE", value="\n"))
            out.extend(self._instance_lines)
        end = tokens[-1] if tokens else Token("EOF", "", 1, 1)
        out.append(replace(end, type="EOF", value=""))
        return out

    # ---- definitions ----

    def _collect(self, tokens: Sequence[Token]) -> List[Line]:
        """Register every definition and return the remaining lines."""
        lines = split_lines(tokens)
        remaining: List[Line] = []
        i = 0
        while i < len(lines):
            line = lines[i]
            head = line[0]
            if head.type == "DIRECTIVE":
                if head.value == "!endmacro":
                    raise MacroSyntaxError("'!endmacro' without matching '!macro'", location=head.location)
                i = self._parse_macro(lines, i)
                continue
            if (
                head.type == "IDENT"
                and head.value == "fun"
                and len(line) > 2
                and line[1].type == "IDENT"
                and line[2].type == "LPAREN"
            ):
                self._parse_fun(line)
                i += 1
                continue
            remaining.append(line)
            i += 1
        return remaining

    def _parse_macro(self, lines: Sequence[Line], start: int) -> int:
        header = lines[start]
        directive = header[0]
        if len(header) < 3 or header[1].type != "IDENT" or header[2].type != "LPAREN":
            raise MacroSyntaxError("Expected '!macro name(params):'", location=directive.location)
        name_token = header[1]
        params, index = self._parse_names(header, 2)
        if index >= len(header) or header[index].type != "COLON" or index + 1 != len(header):
            raise MacroSyntaxError(
                f"Expected ':' after parameters of macro '{name_token.value}'",
                location=name_token.location,
            )
        body: List[Line] = []
        i = start + 1
        while i < len(lines):
            line = lines[i]
            if line[0].type == "DIRECTIVE":
                if line[0].value == "!macro":
                    raise MacroSyntaxError("Nested '!macro' definitions are not allowed", location=line[0].location)
                if len(line) != 1:
                    raise MacroSyntaxError("Unexpected tokens after '!endmacro'", location=line[1].location)
                self._define(
                    MacroDefinition(
                        name=name_token.value,
                        params=params,
                        body=body,
                        local_labels=_label_definitions(body),
                        location=name_token.location,
                    )
                )
                return i + 1
            body.append(line)
            i += 1
        raise MacroSyntaxError(f"Unterminated macro '{name_token.value}'", location=directive.location)

    def _parse_fun(self, line: Line) -> None:
        name_token = line[1]
        params, index = self._parse_names(line, 2)
        locals_: List[str] = []
        if index < len(line) and line[index].type == "IDENT" and line[index].value == "use":
            locals_, index = self._parse_names(line, index + 1)
        if index >= len(line) or line[index].type != "LBRACE":
            raise MacroSyntaxError(f"Expected '{{' to start body of '{name_token.value}'", location=name_token.location)
        close = _matching_close(line, index)
        if close != len(line) - 1:
            raise MacroSyntaxError(f"Unexpected tokens after body of '{name_token.value}'", location=line[close].location)
        body = split_lines(line[index + 1 : close])
        names = params + locals_
        if len(set(names)) != len(names):
            raise MacroSyntaxError(f"Duplicate parameter in '{name_token.value}'", location=name_token.location)
        if name_token.value in self.functions:
            raise MacroSyntaxError(f"Function '{name_token.value}' is already defined", location=name_token.location)
        self.functions[name_token.value] = FunctionTemplate(
            name=name_token.value,
            params=params,
            locals=locals_,
            body=body,
            local_labels=_label_definitions(body),
            location=name_token.location,
        )

    def _define(self, macro: MacroDefinition) -> None:
        if macro.name in self.macros:
            raise MacroSyntaxError(f"Macro '{macro.name}' is already defined", location=macro.location)
        if len(set(macro.params)) != len(macro.params):
            raise MacroSyntaxError(f"Duplicate parameter in macro '{macro.name}'", location=macro.location)
        self.macros[macro.name] = macro

    def _parse_names(self, line: Line, index: int) -> Tuple[List[str], int]:
        """Parse ``(name, $name, ${name})`` starting at the opening paren."""
        if index >= len(line) or line[index].type != "LPAREN":
            raise MacroSyntaxError("Expected '('", location=line[min(index, len(line) - 1)].location)
        names: List[str] = []
        index += 1
        while True:
            token = line[index] if index < len(line) else line[-1]
            if token.type == "RPAREN" and not names:
                return names, index + 1
            if token.type == "IDENT":
                name = token.value
            else:
                name = _placeholder_name(token)
                if name is None:
                    raise MacroSyntaxError(f"Expected parameter name, found '{token.value}'", location=token.location)
            if name in RESERVED_PARAMS:
                raise MacroSyntaxError(f"'{name}' is reserved and cannot be a parameter", location=token.location)
            names.append(name)
            index += 1
            token = line[index] if index < len(line) else line[-1]
            if token.type == "COMMA":
                index += 1
                continue
            if token.type == "RPAREN":
                return names, index + 1
            raise MacroSyntaxError(f"Expected ',' or ')', found '{token.value}'", location=token.location)

    # ---- expansion ----

    def _expand_lines(self, lines: Sequence[Line], depth: int) -> List[Token]:
        out: List[Token] = []
        for line in lines:
            out.extend(self._expand_line(line, depth))
        return out

    def _expand_line(self, line: Line, depth: int) -> List[Token]:
        out: List[Token] = []
        rest = line
        while len(rest) >= 2 and rest[0].type == "IDENT" and rest[1].type == "COLON":
            out.extend(rest[:2])
            rest = rest[2:]
        if not rest:
            out.append(replace(line[-1], type="NEWLINE", value="\n"))
            return out
        head = rest[0]
        if head.type == "IDENT" and len(rest) > 1 and rest[1].type == "LPAREN":
            if out:
                out.append(replace(out[-1], type="NEWLINE", value="\n"))
            return out + self._invoke(rest, depth)
        if (
            head.type == "IDENT"
            and head.value == "call"
            and len(rest) > 2
            and rest[1].type == "IDENT"
            and rest[2].type == "LPAREN"
        ):
            return out + self._call_function(rest, depth)
        for token in rest:
            if token.type in MACRO_ONLY_TOKENS:
                raise MacroSyntaxError(f"Unexpected '{token.value}' outside a macro", location=token.location)
        out.extend(rest)
        out.append(replace(rest[-1], type="NEWLINE", value="\n"))
        return out

    def _invoke(self, line: Line, depth: int) -> List[Token]:
        name_token = line[0]
        if depth >= self.max_depth:
            raise MacroRecursionError(
                f"Macro expansion of '{name_token.value}' exceeds depth {self.max_depth}",
                location=name_token.location,
            )
        macro = self.macros.get(name_token.value)
        if macro is None:
            raise MacroArityError(f"Undefined macro '{name_token.value}'", location=name_token.location)
        args, end = self._parse_args(line, 1)
        if end != len(line):
            raise MacroSyntaxError(
                f"Unexpected tokens after invocation of '{macro.name}'", location=line[end].location
            )
        if len(args) != len(macro.params):
            raise MacroArityError(
                f"Macro '{macro.name}' expects {len(macro.params)} arguments but got {len(args)}",
                location=name_token.location,
            )
        self.expansion_counter += 1
        expansion_id = f"{macro.name}@{self.expansion_counter}"
        id_token = replace(name_token, type="IDENT", value=expansion_id, expansion=expansion_id)
        bindings: Dict[str, List[Token]] = {"macro_id": [id_token]}
        bindings.update(zip(macro.params, args))
        body = [
            self._instantiate(body_line, bindings, macro.local_labels, expansion_id)
            for body_line in macro.body
        ]
        lines = split_lines(join_lines(body))
        return self._expand_lines(lines, depth + 1)

    def _call_function(self, line: Line, depth: int) -> List[Token]:
        call_token, name_token = line[0], line[1]
        if depth >= self.max_depth:
            raise MacroRecursionError(
                f"Expansion of call to '{name_token.value}' exceeds depth {self.max_depth}",
                location=name_token.location,
            )
        template = self.functions.get(name_token.value)
        if template is None:
            raise MacroArityError(f"Undefined function '{name_token.value}'", location=name_token.location)
        args, index = self._parse_args(line, 2)
        locals_: List[List[Token]] = []
        if index < len(line) and line[index].type == "IDENT" and line[index].value == "use":
            locals_, index = self._parse_args(line, index + 1)
        if index != len(line):
            raise MacroSyntaxError(
                f"Unexpected tokens after call to '{template.name}'", location=line[index].location
            )
        if len(args) != len(template.params):
            raise MacroArityError(
                f"Function '{template.name}' expects {len(template.params)} arguments but got {len(args)}",
                location=name_token.location,
            )
        if len(locals_) != len(template.locals):
            raise MacroArityError(
                f"Function '{template.name}' uses {len(template.locals)} locals but got {len(locals_)}",
                location=name_token.location,
            )
        for operand in args + locals_:
            if len(operand) != 1:
                raise MacroSyntaxError(
                    f"Arguments of '{template.name}' must be single registers",
                    location=(operand[0] if operand else name_token).location,
                )
        key = (
            template.name,
            tuple(arg[0].value for arg in args),
            tuple(local[0].value for local in locals_),
        )
        label = self._instances.get(key)
        if label is None:
            label = self._instantiate_function(template, args, locals_, key, depth)
        target = replace(name_token, type="IDENT", value=label)
        return [call_token, target, replace(name_token, type="NEWLINE", value="\n")]

    def _instantiate_function(
        self,
        template: FunctionTemplate,
        args: List[List[Token]],
        locals_: List[List[Token]],
        key: Tuple[str, Tuple[str, ...], Tuple[str, ...]],
        depth: int,
    ) -> str:
        self.expansion_counter += 1
        label = f"{template.name}@{self.expansion_counter}"
        # Register before expanding the body so recursive calls reuse this instance.
        self._instances[key] = label
        where = template.location
        label_token = Token("IDENT", label, where.line, where.column, where.file, expansion=label)
        origin = label_token
        saved = [arg[0] for arg in args + locals_]
        return_label = replace(origin, value=f"{label}_return")
        bindings: Dict[str, List[Token]] = {"macro_id": [label_token], "fun": [label_token]}
        bindings.update(zip(template.params + template.locals, args + locals_))

        lines: List[Line] = [[label_token, replace(origin, type="COLON", value=":")]]
        lines.extend([replace(origin, value="push"), reg] for reg in saved)
        lines.extend(
            self._instantiate(body_line, bindings, template.local_labels, label) for body_line in template.body
        )
        # Returns are redirected after expansion so a ret that arrives through a
        # macro argument or behind a label still runs the epilogue.
        body = _redirect_returns(self._expand_lines(split_lines(join_lines(lines)), depth + 1), return_label)

        epilogue: List[Line] = [[return_label, replace(origin, type="COLON", value=":")]]
        epilogue.extend([replace(origin, value="pop"), reg] for reg in reversed(saved))
        epilogue.append([replace(origin, value="ret")])

        self._instance_lines.extend(body)
        self._instance_lines.extend(join_lines(epilogue))
        return label

    def _instantiate(
        self,
        line: Line,
        bindings: Dict[str, List[Token]],
        local_labels: Set[str],
        expansion_id: str,
    ) -> Line:
        out: Line = []
        suffix = expansion_id.rsplit("@", 1)[1]
        for token in line:
            if token.type == "IDENT" and token.value in local_labels:
                out.append(replace(token, value=f"{token.value}@{suffix}", expansion=expansion_id))
                continue
            if token.type != "TEMPLATE":
                out.append(replace(token, expansion=expansion_id))
                continue
            name = _placeholder_name(token)
            if name is not None:
                if name not in bindings:
                    raise MacroSyntaxError(f"Unknown parameter '{name}'", location=token.location)
                out.extend(bindings[name])
                continue
            out.append(self._substitute(token, bindings, expansion_id))
        return out

    def _substitute(self, token: Token, bindings: Dict[str, List[Token]], expansion_id: str) -> Token:
        def _replace(match: "re.Match[str]") -> str:
            name = match.group(1) or match.group(2)
            if name not in bindings:
                raise MacroSyntaxError(f"Unknown parameter '{name}'", location=token.location)
            bound = bindings[name]
            if len(bound) != 1 or bound[0].type not in ("IDENT", "NUMBER"):
                raise MacroSyntaxError(
                    f"Argument for '{name}' must be a single word to be pasted into '{token.value}'",
                    location=token.location,
                )
            return bound[0].value

        value = PLACEHOLDER_RE.sub(_replace, token.value)
        return replace(token, type="IDENT", value=value, expansion=expansion_id)

    def _parse_args(self, line: Line, index: int) -> Tuple[List[List[Token]], int]:
        """Split ``( ... )`` at top-level commas; returns arguments and the index after ')'."""
        if index >= len(line) or line[index].type != "LPAREN":
            raise MacroSyntaxError("Expected '('", location=line[min(index, len(line) - 1)].location)
        close = _matching_close(line, index)
        raw: List[List[Token]] = [[]]
        depth = 0
        for token in line[index + 1 : close]:
            if token.type in OPENERS:
                depth += 1
            elif token.type in CLOSERS:
                depth -= 1
            if token.type == "COMMA" and depth == 0:
                raw.append([])
                continue
            raw[-1].append(token)
        if len(raw) == 1 and not _strip_newlines(raw[0]):
            return [], close + 1
        args: List[List[Token]] = []
        for arg in raw:
            arg = _strip_newlines(arg)
            if not arg:
                raise MacroSyntaxError("Empty macro argument", location=line[index].location)
            if arg[0].type == "LBRACE" and _matching_close(arg, 0) == len(arg) - 1:
                arg = _strip_newlines(arg[1:-1])
            args.append(arg)
        return args, close + 1
