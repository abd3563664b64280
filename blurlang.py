"""Blur entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import Callable, List, Optional

from history import DEFAULT_BLUR_FACTOR
from interpreter import (
    DEFAULT_ITERATION_CAP,
    BlurRuntimeError,
    Interpreter,
    TracebackFormatter,
    format_float,
    format_value,
)
from lexer import BlurParseError


VERSION = "0.1.0"

BANNER = r"""
  ____  _
 | __ )| |_   _ _ __
 |  _ \| | | | | '__|
 | |_) | | |_| | |
 |____/|_|\__,_|_|
"""

REPL_HELP = """REPL Commands:
    .help, .h          Show this help message
    .exit, .quit, .q   Exit the REPL
    .clear             Clear all variables and functions
    .vars              Show all defined variables and functions
    .blur [value]      Show or set blur factor (0.0-1.0)
    .load <file>       Load and run a .blur file
    .run [func]        Run a function (default: blur)

Multi-line input continues while braces are open."""


def _report_runtime_error(interpreter: Interpreter, error: BlurRuntimeError, *, as_json: bool = False) -> None:
    formatter = TracebackFormatter(interpreter)
    print(formatter.format_text(error, verbose=interpreter.verbose), file=sys.stderr)
    if as_json:
        print(formatter.to_json(error), file=sys.stderr)


def _execute_input(interpreter: Interpreter, text: str) -> None:
    try:
        program = interpreter.parse(text, "<repl>")
    except BlurParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return
    try:
        for name in interpreter.load_program(program):
            print(f"Defined function: {name}")
        if program.statements:
            interpreter.execute_statements(program.statements)
    except BlurRuntimeError as error:
        _report_runtime_error(interpreter, error)


def _print_variables(interpreter: Interpreter) -> None:
    bindings = interpreter.snapshot_bindings()
    if not bindings and not interpreter.functions:
        print("No variables or functions defined.")
        return
    if bindings:
        print("Variables:")
        for info in bindings:
            tag = ", sharp" if info.sharp else ""
            print(f"  {info.type} {info.name} = {format_value(info.value)} (history: {info.history}{tag})")
    if interpreter.functions:
        if bindings:
            print()
        print("Functions:")
        for function in interpreter.functions.values():
            params = ", ".join(f"{p.type} {p.name}{'[]' if p.is_array else ''}" for p in function.params)
            print(f"  {function.return_type} {function.name}({params})")


def _load_file(interpreter: Interpreter, filename: str) -> None:
    print(f"SEARCHING FOR {filename.upper()}")
    try:
        with open(filename, "r", encoding="utf-8") as handle:
            source_text = handle.read()
    except OSError:
        print("?FILE NOT FOUND  ERROR", file=sys.stderr)
        return
    print("LOADING")
    try:
        program = interpreter.parse(source_text, filename)
    except BlurParseError as error:
        print(f"?SYNTAX ERROR: {error}", file=sys.stderr)
        return
    try:
        names = interpreter.load_program(program)
        if names:
            print(f"FOUND: {', '.join(names)}")
        print("READY.")
        if program.statements:
            interpreter.execute_statements(program.statements)
        if "blur" in interpreter.functions:
            print("RUN")
            print()
            interpreter.call_function("blur")
    except BlurRuntimeError as error:
        print(f"?{error.message.upper()} ERROR", file=sys.stderr)


def _handle_command(command_line: str, interpreter: Interpreter) -> bool:
    """Run one dot command. Returns True when the REPL should exit."""
    parts = command_line.split(None, 1)
    command = parts[0]
    arg = parts[1].strip() if len(parts) > 1 else None

    if command in (".exit", ".quit", ".q"):
        print("Goodbye!")
        return True
    if command in (".help", ".h"):
        print(REPL_HELP)
    elif command == ".clear":
        interpreter.reset()
        print("State cleared.")
    elif command == ".vars":
        _print_variables(interpreter)
    elif command == ".blur":
        if arg is None:
            print(f"Blur factor: {format_float(interpreter.blur_factor)}")
        else:
            try:
                interpreter.blur_factor = float(arg)
            except ValueError:
                print("Invalid blur value. Use a number 0.0-1.0", file=sys.stderr)
            else:
                print(f"Blur factor set to: {format_float(interpreter.blur_factor)}")
    elif command == ".load":
        if arg is None:
            print("SEARCHING FOR *", file=sys.stderr)
            print("?FILE NOT FOUND  ERROR", file=sys.stderr)
            print("Usage: .load <filename>", file=sys.stderr)
        else:
            _load_file(interpreter, arg)
    elif command == ".run":
        name = arg or "blur"
        if name not in interpreter.functions:
            print(f"Function '{name}' not defined.", file=sys.stderr)
        else:
            try:
                interpreter.call_function(name)
            except BlurRuntimeError as error:
                _report_runtime_error(interpreter, error)
    else:
        print(f"Unknown command: {command}", file=sys.stderr)
        print("Type .help for available commands.", file=sys.stderr)
    return False


def run_repl(interpreter: Interpreter, input_provider: Callable[[str], str] = input) -> int:
    print(BANNER)
    print(f"Blur REPL v{VERSION}")
    print("Type .help for commands, .exit to quit.")
    buffer: List[str] = []
    depth = 0

    while True:
        prompt = "...> " if buffer else "blur> "
        try:
            line = input_provider(prompt)
        except EOFError:
            print("Goodbye!")
            return 0
        except KeyboardInterrupt:
            print("^C")
            buffer.clear()
            depth = 0
            continue

        stripped = line.strip()
        if not buffer and stripped.startswith("."):
            if _handle_command(stripped, interpreter):
                return 0
            continue

        depth = max(depth + line.count("{") - line.count("}"), 0)
        buffer.append(line)
        if depth > 0:
            continue

        source_text = "\n".join(buffer).strip()
        buffer.clear()
        if source_text:
            _execute_input(interpreter, source_text)


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="blur",
        description="Blur interpreter: every variable is the weighted average of its history",
    )
    parser.add_argument("program", nargs="?", help="Source file path, or '-' to read from stdin")
    parser.add_argument("-e", dest="code", help="Execute code directly")
    parser.add_argument("-i", "--repl", action="store_true", help="Start the REPL")
    parser.add_argument("--blur", type=float, default=DEFAULT_BLUR_FACTOR, help="Blur factor in [0.0, 1.0] (default 0.9)")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit env snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--history-limit", type=int, default=None, help="Keep at most N values per history")
    parser.add_argument(
        "--iteration-cap", type=int, default=DEFAULT_ITERATION_CAP, help="Iteration cap for regular for loops"
    )
    parser.add_argument("-v", "--version", action="version", version=f"blur {VERSION}")
    args = parser.parse_args(argv)

    if args.code is not None and args.program is not None:
        print("-e cannot be combined with a program argument", file=sys.stderr)
        return 1

    if args.code is not None:
        source_text = args.code
        filename = "<string>"
    elif args.program == "-":
        source_text = sys.stdin.read()
        filename = "<stdin>"
    elif args.program is not None:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1
    else:
        source_text = ""
        filename = "<repl>"

    try:
        interpreter = Interpreter(
            source=source_text,
            filename=filename,
            verbose=args.verbose,
            blur_factor=args.blur,
            iteration_cap=args.iteration_cap,
            history_limit=args.history_limit,
        )
    except ValueError as exc:
        print(f"Invalid option: {exc}", file=sys.stderr)
        return 1

    if args.repl or (args.program is None and args.code is None):
        return run_repl(interpreter)

    try:
        interpreter.run()
    except BlurParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return 1
    except BlurRuntimeError as error:
        _report_runtime_error(interpreter, error, as_json=args.traceback_json)
        return 1
    return 0


def main() -> int:
    return run_cli(sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(main())
