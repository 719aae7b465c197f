"""regasm entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from assembler import Assembler, Program, assemble_source
from extensions import ExtensionError, RuntimeServices, load_runtime_services
from lexer import CompileError, Lexer, format_tokens, render_tokens
from machine import Machine, MachineError, TracebackFormatter
from macros import MacroExpander
from sinks import TextDebugSink


PROMPT = "\x1b[38;2;153;221;255m>>>\033[0m "
CONTINUATION_PROMPT = "\x1b[38;2;153;221;255m..>\033[0m "


def _is_block_start(stripped: str) -> bool:
    return (
        stripped.startswith("!macro")
        or stripped.startswith("fun ")
        or stripped.endswith("{")
        or stripped.endswith("(")
        or stripped.endswith(",")
    )


def _report_machine_error(machine: Machine, error: MachineError, *, verbose: bool, as_json: bool = False) -> None:
    formatter = TracebackFormatter(machine)
    print(formatter.format_text(error, verbose=verbose), file=sys.stderr)
    if as_json:
        print(formatter.to_json(error), file=sys.stderr)


def run_repl(verbose: bool, services: Optional[RuntimeServices] = None) -> int:
    print("\x1b[38;2;153;221;255mregasm\033[0m REPL. Enter instructions, blank line to run buffer.")
    had_output = False

    def _output_sink(text: str) -> None:
        nonlocal had_output
        had_output = True
        print(text)

    # Macro definitions and the expansion counter persist across chunks.
    expander = MacroExpander()
    machine = Machine(
        assemble_source("", "<repl>", require_entry=False, expander=expander),
        debug_sink=TextDebugSink(_output_sink),
        verbose=verbose,
        services=services,
    )
    buffer: List[str] = []

    def _run_chunk(source_text: str) -> None:
        program = assemble_source(source_text, "<repl>", require_entry=False, expander=expander)
        machine.load(program, reset=False)
        machine.run()

    while True:
        prompt = PROMPT if not buffer else CONTINUATION_PROMPT
        if had_output:
            print()
            had_output = False
        try:
            line = input(prompt)
        except EOFError:
            print()
            break

        stripped = line.strip()

        if not buffer and stripped != "" and not _is_block_start(stripped):
            try:
                _run_chunk(line)
            except CompileError:
                # A line that does not assemble on its own starts a multi-line buffer.
                buffer.append(line)
            except MachineError as error:
                _report_machine_error(machine, error, verbose=verbose)
                machine.call_stack.clear()
            continue

        if stripped == "":
            if not buffer:
                continue
            source_text = "\n".join(buffer)
            buffer.clear()
            try:
                _run_chunk(source_text)
            except CompileError as error:
                print(f"{error.__class__.__name__}: {error}", file=sys.stderr)
            except MachineError as error:
                _report_machine_error(machine, error, verbose=verbose)
                # Drop stale return addresses so the next chunk starts at depth zero.
                machine.call_stack.clear()
            continue

        buffer.append(line)
    return 0


def _compile(text: str, filename: str, args: argparse.Namespace) -> Optional[Program]:
    """Run the pipeline, printing any inspection output requested on the command line."""
    tokens = Lexer(text, filename).tokenize()
    if args.tokens:
        print(format_tokens(tokens))
    expanded = MacroExpander().expand(tokens)
    if args.expand:
        print(render_tokens(expanded))
    program = Assembler(expanded, filename).assemble()
    if args.listing:
        print(program.listing())
    if args.tokens or args.expand or args.listing:
        return None
    return program


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="regasm register-machine assembler and VM")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit register snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--max-steps", type=int, default=None, metavar="N", help="Abort after N executed instructions")
    parser.add_argument("--tokens", action="store_true", help="Print the token stream and stop")
    parser.add_argument("--expand", action="store_true", help="Print the macro-expanded source and stop")
    parser.add_argument("--listing", action="store_true", help="Print the assembled listing and stop")
    parser.add_argument("--ext", action="append", default=[], metavar="PATH", help="Load an extension (.py) or pointer file (.rgx)")
    args = parser.parse_args(argv)

    try:
        services = load_runtime_services(args.ext)
    except ExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(verbose=args.verbose, services=services)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    try:
        program = _compile(source_text, filename, args)
    except CompileError as error:
        print(f"{error.__class__.__name__}: {error}", file=sys.stderr)
        return 1
    if program is None:
        return 0

    machine = Machine(program, verbose=args.verbose, services=services)
    try:
        machine.run(max_steps=args.max_steps)
    except MachineError as error:
        _report_machine_error(machine, error, verbose=args.verbose, as_json=args.traceback_json)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
