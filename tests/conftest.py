import pytest

from interpreter import Interpreter


@pytest.fixture
def run_blur():
    """Run a source string; returns (printed lines, interpreter)."""

    def _run(source, **options):
        lines = []
        warnings = []
        interpreter = Interpreter(
            source=source,
            output_sink=lines.append,
            warning_sink=warnings.append,
            **options,
        )
        interpreter.run()
        interpreter.warnings = warnings
        return lines, interpreter

    return _run


@pytest.fixture
def session():
    """A quiet interpreter with captured output, for errors and state checks."""
    lines = []
    interpreter = Interpreter(output_sink=lines.append, warning_sink=lambda text: None)
    interpreter.lines = lines
    return interpreter
