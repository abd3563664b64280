import io
import sys

import pytest

from blurlang import run_cli, run_repl
from interpreter import Interpreter


def scripted(lines):
    """An input provider that replays ``lines`` then signals EOF."""
    pending = list(lines)

    def _input(prompt):
        if not pending:
            raise EOFError
        return pending.pop(0)

    return _input


class TestCommandLine:

    def test_execute_code(self, capsys):
        assert run_cli(["-e", "int x = 5; print(x);"]) == 0
        assert capsys.readouterr().out == "5\n"

    def test_blur_flag(self, capsys):
        assert run_cli(["--blur", "1.0", "-e", "int x = 0; x = 10; print(x);"]) == 0
        assert capsys.readouterr().out == "5\n"

    def test_directive_beats_flag(self, capsys):
        assert run_cli(["--blur", "0.5", "-e", "#blur 1.0\nint x = 0; x = 10; print(x);"]) == 0
        assert capsys.readouterr().out == "5\n"

    def test_program_file(self, tmp_path, capsys):
        program = tmp_path / "hello.blur"
        program.write_text('void blur() { print("Hello, Blur!"); }\n', encoding="utf-8")
        assert run_cli([str(program)]) == 0
        assert capsys.readouterr().out == "Hello, Blur!\n"

    def test_stdin(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "stdin", io.StringIO("print(1 + 1);"))
        assert run_cli(["-"]) == 0
        assert capsys.readouterr().out == "2\n"

    def test_missing_file(self, tmp_path, capsys):
        assert run_cli([str(tmp_path / "absent.blur")]) == 1
        assert "Failed to read" in capsys.readouterr().err

    def test_parse_error(self, capsys):
        assert run_cli(["-e", "int x = ;"]) == 1
        assert "ParseError" in capsys.readouterr().err

    def test_runtime_error(self, capsys):
        assert run_cli(["-e", "print(y);", "--traceback-json"]) == 1
        err = capsys.readouterr().err
        assert "Traceback (most recent call last):" in err
        assert "UndefinedVariableError" in err
        assert '"type": "UndefinedVariableError"' in err

    def test_iteration_cap_flag(self, capsys):
        assert run_cli(["--iteration-cap", "3", "-e", "for (int i = 0; i < 5; i += 0) print(i);"]) == 0
        captured = capsys.readouterr()
        assert captured.out == "0\n0\n0\n"
        assert "Warning: for loop hit 3 iteration limit" in captured.err

    def test_invalid_option(self, capsys):
        assert run_cli(["--iteration-cap", "0", "-e", "print(1);"]) == 1
        assert "Invalid option" in capsys.readouterr().err

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as info:
            run_cli(["--version"])
        assert info.value.code == 0
        assert "blur 0.1.0" in capsys.readouterr().out


class TestRepl:

    def test_statements_persist(self, capsys):
        interpreter = Interpreter()
        lines = ["int x = 0;", "x = 10;", "print(x);", ".blur 1.0", "print(x);", ".exit"]
        assert run_repl(interpreter, scripted(lines)) == 0
        out = capsys.readouterr().out
        assert "6\n" in out
        assert "Blur factor set to: 1" in out
        assert out.rstrip().endswith("5\nGoodbye!")

    def test_multiline_function(self, capsys):
        lines = ["int add(int a, int b) {", "  return a + b;", "}", "print(add(2, 3));"]
        assert run_repl(Interpreter(), scripted(lines)) == 0
        out = capsys.readouterr().out
        assert "Defined function: add" in out
        assert "5\n" in out

    def test_vars(self, capsys):
        run_repl(Interpreter(), scripted(["int x = 0;", "x = 10;", "void f() { }", ".vars"]))
        out = capsys.readouterr().out
        assert "int x = 6 (history: [0, 10])" in out
        assert "void f()" in out

    def test_clear(self, capsys):
        run_repl(Interpreter(), scripted(["int x = 1;", ".clear", "print(x);", ".vars"]))
        captured = capsys.readouterr()
        assert "State cleared." in captured.out
        assert "No variables or functions defined." in captured.out
        assert "UndefinedVariableError" in captured.err

    def test_blur_show_and_invalid(self, capsys):
        run_repl(Interpreter(), scripted([".blur", ".blur nope"]))
        captured = capsys.readouterr()
        assert "Blur factor: 0.9" in captured.out
        assert "Invalid blur value" in captured.err

    def test_load(self, tmp_path, capsys):
        program = tmp_path / "demo.blur"
        program.write_text("int g = 2;\nvoid blur() { print(g); }\n", encoding="utf-8")
        run_repl(Interpreter(), scripted([f".load {program}", "print(g);"]))
        out = capsys.readouterr().out
        for marker in ("SEARCHING FOR", "LOADING", "FOUND: blur", "READY.", "RUN"):
            assert marker in out
        assert out.count("2\n") == 2

    def test_load_missing(self, tmp_path, capsys):
        run_repl(Interpreter(), scripted([f".load {tmp_path / 'absent.blur'}", ".load"]))
        err = capsys.readouterr().err
        assert err.count("?FILE NOT FOUND  ERROR") == 2
        assert "Usage: .load <filename>" in err

    def test_run(self, capsys):
        run_repl(Interpreter(), scripted(['void hi() { print("hi"); }', ".run hi", ".run"]))
        captured = capsys.readouterr()
        assert "hi\n" in captured.out
        assert "Function 'blur' not defined." in captured.err

    def test_error_keeps_session_alive(self, capsys):
        run_repl(Interpreter(), scripted(["int f() { return missing; }", "f();", "print(3);"]))
        captured = capsys.readouterr()
        assert "UndefinedVariableError" in captured.err
        assert "3\n" in captured.out

    def test_unknown_command(self, capsys):
        run_repl(Interpreter(), scripted([".bogus"]))
        err = capsys.readouterr().err
        assert "Unknown command: .bogus" in err
