from __future__ import annotations
import json
import math
import sys
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from history import (
    DEFAULT_BLUR_FACTOR,
    History,
    StringHistory,
    blur_bool,
    blur_char,
    blur_float,
    blur_int,
    blur_strings,
    ceil_mean,
    clamp_code_point,
)
from lexer import BlurError, BlurParseError, process_directives
from parser import (
    ArrayDecl,
    Assign,
    BinaryOp,
    Block,
    CallExpression,
    CompoundAssign,
    Expression,
    ExpressionStatement,
    ForStatement,
    FuncDef,
    Identifier,
    IfStatement,
    IncDec,
    IndexExpression,
    Literal,
    Param,
    Program,
    ReturnStatement,
    SourceLocation,
    Statement,
    StringRepeat,
    Target,
    UnaryOp,
    VarDecl,
    WhileStatement,
    parse_source,
)


TYPE_INT = "int"
TYPE_FLOAT = "float"
TYPE_BOOL = "bool"
TYPE_CHAR = "char"
TYPE_STRING = "string"
TYPE_ARRAY = "array"
TYPE_VOID = "void"

NUMERIC_TYPES = (TYPE_INT, TYPE_FLOAT, TYPE_CHAR)

DEFAULT_ITERATION_CAP = 1000
STATE_LOG_LIMIT = 4096
# warnings repeated at the end of a traceback
TRACEBACK_WARNING_TAIL = 3


@dataclass
class Value:
    type: str
    value: Any


VOID = Value(TYPE_VOID, None)


class BlurRuntimeError(BlurError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
        binding: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        # "int x", "char[3] a": the storage the failing operation touched
        self.binding = binding
        self.step_index: Optional[int] = None
        # call stack captured before unwinding, for tracebacks
        self.frames: Optional[List[TracebackFrame]] = None


class TypeMismatchError(BlurRuntimeError):
    pass


class UndefinedVariableError(BlurRuntimeError):
    pass


class UndefinedFunctionError(BlurRuntimeError):
    pass


class ArityMismatchError(BlurRuntimeError):
    pass


class IndexOutOfRangeError(BlurRuntimeError):
    pass


class DivisionByZeroError(BlurRuntimeError):
    pass


class ReturnSignal(Exception):
    def __init__(self, value: Value) -> None:
        super().__init__(value)
        self.value = value


@dataclass
class Diagnostic:
    kind: str
    message: str
    location: Optional[SourceLocation]


def _storage_kind(type_name: str) -> str:
    if type_name in NUMERIC_TYPES:
        return "number"
    return type_name


def accepts(target_type: str, value_type: str) -> bool:
    if target_type in NUMERIC_TYPES:
        return value_type in NUMERIC_TYPES
    if target_type == TYPE_BOOL:
        return value_type == TYPE_BOOL
    if target_type == TYPE_STRING:
        return value_type in (TYPE_STRING, TYPE_CHAR)
    return False


def as_number(value: Value) -> Union[int, float]:
    if value.type == TYPE_INT or value.type == TYPE_FLOAT:
        return value.value
    if value.type == TYPE_CHAR:
        return ord(value.value)
    if value.type == TYPE_BOOL:
        return 1 if value.value else 0
    raise TypeError(f"{value.type} is not numeric")


def coerce(value: Value, target_type: str) -> Value:
    """Convert ``value`` to ``target_type`` as a one-entry history would read."""
    if target_type == TYPE_INT:
        number = as_number(value)
        return Value(TYPE_INT, number if isinstance(number, int) else ceil_mean(number))
    if target_type == TYPE_FLOAT:
        return Value(TYPE_FLOAT, float(as_number(value)))
    if target_type == TYPE_CHAR:
        number = as_number(value)
        code = number if isinstance(number, int) else ceil_mean(number)
        return Value(TYPE_CHAR, chr(clamp_code_point(code)))
    if target_type == TYPE_BOOL:
        return Value(TYPE_BOOL, bool(value.value))
    if target_type == TYPE_STRING:
        return Value(TYPE_STRING, str(value.value))
    raise TypeError(f"cannot coerce to {target_type}")


def default_value(type_name: str) -> Value:
    if type_name == TYPE_INT:
        return Value(TYPE_INT, 0)
    if type_name == TYPE_FLOAT:
        return Value(TYPE_FLOAT, 0.0)
    if type_name == TYPE_BOOL:
        return Value(TYPE_BOOL, False)
    if type_name == TYPE_CHAR:
        return Value(TYPE_CHAR, "\0")
    if type_name == TYPE_STRING:
        return Value(TYPE_STRING, "")
    raise TypeError(f"no default for {type_name}")


def format_float(number: float) -> str:
    if math.isfinite(number) and number.is_integer():
        return str(int(number))
    return repr(number)


def format_value(value: Value) -> str:
    if value.type == TYPE_INT:
        return str(value.value)
    if value.type == TYPE_FLOAT:
        return format_float(value.value)
    if value.type == TYPE_BOOL:
        return "true" if value.value else "false"
    if value.type == TYPE_CHAR or value.type == TYPE_STRING:
        return value.value
    if value.type == TYPE_ARRAY:
        return "{" + ", ".join(format_value(item) for item in value.value) + "}"
    if value.type == TYPE_VOID:
        return "void"
    raise TypeError(f"unknown value type {value.type}")


class Binding:
    """A name's storage: a History, a StringHistory, array elements, or a sharp value."""

    def __init__(
        self,
        name: str,
        type_name: str,
        *,
        sharp: bool = False,
        limit: Optional[int] = None,
        storage: bool = True,
    ) -> None:
        self.name = name
        self.type = type_name
        self.sharp = sharp
        self.limit = limit
        self.elements: Optional[List[Binding]] = None
        self.current: Optional[Value] = None
        self.history: Optional[History] = None
        self.text: Optional[StringHistory] = None
        if storage and not sharp:
            if type_name == TYPE_STRING:
                self.text = StringHistory(limit)
            else:
                self.history = History(limit=limit)

    @classmethod
    def array(cls, name: str, element_type: str, size: int, limit: Optional[int] = None) -> "Binding":
        binding = cls(name, element_type, storage=False)
        binding.elements = [cls(f"{name}[{i}]", element_type, limit=limit) for i in range(size)]
        return binding

    @property
    def is_array(self) -> bool:
        return self.elements is not None

    @property
    def type_label(self) -> str:
        if self.elements is not None:
            return f"{self.type}[{len(self.elements)}]"
        return self.type

    def store(self, value: Value, times: int = 1) -> None:
        if self.sharp:
            self.current = coerce(value, self.type)
            return
        if self.text is not None:
            self.text.feed(str(value.value), times)
            return
        assert self.history is not None
        raw = as_number(value)
        for _ in range(times):
            self.history.append(raw)

    def read(self, factor: float) -> Value:
        if self.elements is not None:
            return Value(TYPE_ARRAY, [element.read(factor) for element in self.elements])
        if self.sharp:
            assert self.current is not None
            return self.current
        if self.type == TYPE_STRING:
            assert self.text is not None
            return Value(TYPE_STRING, self.text.blur(factor))
        assert self.history is not None
        if self.type == TYPE_INT:
            return Value(TYPE_INT, blur_int(self.history, factor))
        if self.type == TYPE_FLOAT:
            return Value(TYPE_FLOAT, blur_float(self.history, factor))
        if self.type == TYPE_CHAR:
            return Value(TYPE_CHAR, blur_char(self.history, factor))
        if self.type == TYPE_BOOL:
            return Value(TYPE_BOOL, blur_bool(self.history, factor))
        raise TypeError(f"unknown binding type {self.type}")

    def copy(self, name: str, type_name: Optional[str] = None) -> "Binding":
        clone = Binding(name, type_name or self.type, sharp=self.sharp, limit=self.limit, storage=False)
        clone.current = self.current
        if self.elements is not None:
            clone.elements = [element.copy(f"{name}[{i}]", type_name) for i, element in enumerate(self.elements)]
        if self.history is not None:
            clone.history = self.history.copy()
        if self.text is not None:
            clone.text = self.text.copy()
        return clone

    def mark(self) -> Tuple[Any, Any, Optional[Value]]:
        history_mark = self.history.mark() if self.history is not None else None
        text_mark = self.text.mark() if self.text is not None else None
        return history_mark, text_mark, self.current

    def rollback(self, mark: Tuple[Any, Any, Optional[Value]]) -> None:
        history_mark, text_mark, self.current = mark
        if history_mark is not None:
            assert self.history is not None
            self.history.rollback(history_mark)
        if text_mark is not None:
            assert self.text is not None
            self.text.rollback(text_mark)

    def history_values(self) -> List[Any]:
        if self.elements is not None:
            return [element.history_values() for element in self.elements]
        if self.sharp:
            assert self.current is not None
            return [self.current.value]
        if self.text is not None:
            return self.text.values()
        assert self.history is not None
        if self.type == TYPE_BOOL:
            return [bool(raw) for raw in self.history.values()]
        return self.history.values()

    def reset(self) -> None:
        if self.elements is not None:
            for element in self.elements:
                element.reset()
        if self.history is not None:
            self.history.reset()
        if self.text is not None:
            self.text.reset()
        self.current = None

    def __len__(self) -> int:
        if self.elements is not None:
            return len(self.elements)
        if self.sharp:
            assert self.current is not None
            return len(self.current.value) if self.type == TYPE_STRING else 1
        if self.text is not None:
            return len(self.text)
        assert self.history is not None
        return len(self.history)


class StringPosition:
    """One character position of a string binding, addressed as ``s[i]``."""

    type = TYPE_CHAR
    sharp = False
    elements = None
    is_array = False

    def __init__(self, binding: Binding, index: int) -> None:
        self.binding = binding
        self.index = index
        self.name = f"{binding.name}[{index}]"

    def read(self, factor: float) -> Value:
        if self.binding.sharp:
            assert self.binding.current is not None
            return Value(TYPE_CHAR, self.binding.current.value[self.index])
        assert self.binding.text is not None
        return Value(TYPE_CHAR, self.binding.text.char_at(self.index, factor))

    def store(self, value: Value, times: int = 1) -> None:
        ch = coerce(value, TYPE_CHAR).value
        if self.binding.sharp:
            assert self.binding.current is not None
            text = self.binding.current.value
            self.binding.current = Value(TYPE_STRING, text[: self.index] + ch + text[self.index + 1 :])
            return
        assert self.binding.text is not None
        for _ in range(times):
            self.binding.text.assign_char(self.index, ch)


Cell = Union[Binding, StringPosition]


@dataclass
class BindingInfo:
    name: str
    type: str
    value: Value
    history: List[Any]
    sharp: bool = False


@dataclass
class Scope:
    parent: Optional["Scope"] = None
    bindings: Dict[str, Binding] = field(default_factory=dict)

    def _find_scope(self, name: str) -> Optional["Scope"]:
        scope: Optional[Scope] = self
        while scope is not None:
            if name in scope.bindings:
                return scope
            scope = scope.parent
        return None

    def declare(self, binding: Binding) -> None:
        # Redeclaring in the same scope starts a fresh history.
        self.bindings[binding.name] = binding

    def lookup(self, name: str, location: Optional[SourceLocation] = None) -> Binding:
        scope = self._find_scope(name)
        if scope is not None:
            return scope.bindings[name]
        raise UndefinedVariableError(f"Undefined variable '{name}'", location=location, rule="IDENT")

    def has(self, name: str) -> bool:
        return self._find_scope(name) is not None

    def snapshot(self, factor: float) -> Dict[str, str]:
        def _render(binding: Binding) -> str:
            rendered = format_value(binding.read(factor))
            if len(rendered) > 80:
                rendered = rendered[:77] + "..."
            return f"{binding.type_label}:{rendered} (history {len(binding)})"

        merged: Dict[str, str] = {}
        scope: Optional[Scope] = self
        while scope is not None:
            for name, binding in scope.bindings.items():
                merged.setdefault(name, _render(binding))
            scope = scope.parent
        return merged


@dataclass
class Function:
    name: str
    params: List[Param]
    return_type: str
    body: Block


@dataclass
class Frame:
    name: str
    scope: Scope
    frame_id: str
    call_location: Optional[SourceLocation]


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    env_snapshot: Optional[Dict[str, Any]]
    rule: str


@dataclass
class TracebackFrame:
    name: str
    location: Optional[SourceLocation]
    statement: Optional[str]
    state_entry: Optional[StateEntry]


class StateLogger:
    def __init__(self, verbose: bool, limit: int = STATE_LOG_LIMIT) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=limit)
        self.next_state_index = 0
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        location: Optional[SourceLocation],
        rule: str,
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            frame_id=frame.frame_id if frame else None,
            source_location=location,
            statement=location.statement if location else None,
            env_snapshot=env_snapshot,
            rule=rule,
        )
        self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.next_state_index += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)

    def forget_frame(self, frame_id: str) -> None:
        self.frame_last_entry.pop(frame_id, None)

    def clear(self) -> None:
        self.entries.clear()
        self.frame_last_entry.clear()


BuiltinImpl = Callable[["Interpreter", List[Expression], Scope, SourceLocation], Value]


@dataclass
class BuiltinFunction:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: BuiltinImpl

    def validate(self, supplied: int, location: SourceLocation) -> None:
        if supplied < self.min_args:
            raise ArityMismatchError(
                f"{self.name} expects at least {self.min_args} arguments but received {supplied}",
                location=location,
                rule=self.name,
            )
        if self.max_args is not None and supplied > self.max_args:
            raise ArityMismatchError(
                f"{self.name} expects at most {self.max_args} arguments but received {supplied}",
                location=location,
                rule=self.name,
            )


class Builtins:
    def __init__(self) -> None:
        self.table: Dict[str, BuiltinFunction] = {}
        self._register("print", 0, None, self._print)
        self._register("blurstr", 1, None, self._blurstr)
        self._register("get_blur", 0, 0, self._get_blur)

    def _register(self, name: str, min_args: int, max_args: Optional[int], impl: BuiltinImpl) -> None:
        self.table[name] = BuiltinFunction(name=name, min_args=min_args, max_args=max_args, impl=impl)

    def has(self, name: str) -> bool:
        return name in self.table

    def invoke(
        self,
        interpreter: "Interpreter",
        name: str,
        arg_nodes: List[Expression],
        scope: Scope,
        location: SourceLocation,
    ) -> Value:
        builtin = self.table.get(name)
        if builtin is None:
            raise UndefinedFunctionError(f"Undefined function '{name}'", location=location, rule="CALL")
        builtin.validate(len(arg_nodes), location)
        return builtin.impl(interpreter, arg_nodes, scope, location)

    def _print(self, interpreter: "Interpreter", arg_nodes: List[Expression], scope: Scope, location: SourceLocation) -> Value:
        values = [interpreter._evaluate_expression(node, scope) for node in arg_nodes]
        for value in values:
            if value.type == TYPE_VOID:
                raise TypeMismatchError("print cannot render a void value", location=location, rule="print")
        interpreter.output_sink(" ".join(format_value(value) for value in values))
        return VOID

    def _blurstr(self, interpreter: "Interpreter", arg_nodes: List[Expression], scope: Scope, location: SourceLocation) -> Value:
        parts: List[Tuple[str, int]] = []
        for node in arg_nodes:
            value, times = interpreter._evaluate_feed(node, scope)
            if value.type not in (TYPE_STRING, TYPE_CHAR):
                raise TypeMismatchError(
                    f"blurstr expects string arguments but got {value.type}",
                    location=node.location,
                    rule="blurstr",
                )
            parts.append((value.value, times))
        return Value(TYPE_STRING, blur_strings(parts, interpreter.blur_factor))

    def _get_blur(self, interpreter: "Interpreter", _: List[Expression], __: Scope, ___: SourceLocation) -> Value:
        return Value(TYPE_FLOAT, interpreter.blur_factor)


def _stderr_warning(text: str) -> None:
    print(text, file=sys.stderr)


class Interpreter:
    def __init__(
        self,
        *,
        source: str = "",
        filename: str = "<string>",
        verbose: bool = False,
        blur_factor: float = DEFAULT_BLUR_FACTOR,
        iteration_cap: Optional[int] = DEFAULT_ITERATION_CAP,
        history_limit: Optional[int] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        warning_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        if iteration_cap is not None and iteration_cap <= 0:
            raise ValueError("iteration cap must be positive")
        if history_limit is not None and history_limit <= 0:
            raise ValueError("history limit must be positive")
        self.source = source
        self.filename = filename
        self.verbose = verbose
        self._blur_factor = DEFAULT_BLUR_FACTOR
        self.blur_factor = blur_factor
        self.iteration_cap = iteration_cap
        self.history_limit = history_limit
        self.output_sink = output_sink or (lambda text: print(text))
        self.warning_sink = warning_sink or _stderr_warning
        self.builtins = Builtins()
        self.functions: Dict[str, Function] = {}
        self.globals = Scope()
        self.diagnostics: List[Diagnostic] = []
        self.logger = StateLogger(verbose=verbose)
        self.call_stack: List[Frame] = []
        # id(binding) -> (binding, mark) for the statement being executed
        self._journal: Optional[Dict[int, Tuple[Binding, Any]]] = None
        self.frame_counter = 0
        self.global_frame = self._new_frame("<top-level>", self.globals, None)
        self.call_stack.append(self.global_frame)

    # ---- configuration ----

    @property
    def blur_factor(self) -> float:
        return self._blur_factor

    @blur_factor.setter
    def blur_factor(self, factor: float) -> None:
        factor = float(factor)
        if not math.isfinite(factor):
            raise ValueError(f"blur factor must be a finite number, got {factor}")
        self._blur_factor = min(max(factor, 0.0), 1.0)

    # ---- entry points ----

    def parse(self, text: Optional[str] = None, filename: Optional[str] = None) -> Program:
        """Apply any ``#blur`` directive, then parse ``text`` (default: the session source)."""
        factor, source = process_directives(self.source if text is None else text)
        if factor is not None:
            try:
                self.blur_factor = factor
            except ValueError as exc:
                raise BlurParseError(f"Invalid #blur directive: {exc}") from None
        return parse_source(source, filename or self.filename)

    def run(self) -> Value:
        """Parse the source, run top-level statements, then ``blur()`` if defined."""
        program = self.parse()

        def _run() -> Value:
            self.load_program(program)
            self._execute_top_level(program.statements)
            if "blur" in self.functions:
                return self._call_user_function(self.functions["blur"], [], self.globals, program.location)
            return VOID

        return self._guarded(_run)

    def load_program(self, program: Program) -> List[str]:
        loaded: List[str] = []
        for definition in program.functions:
            self.define_function(definition)
            loaded.append(definition.name)
        return loaded

    def define_function(self, definition: FuncDef) -> None:
        if self.builtins.has(definition.name):
            raise BlurRuntimeError(
                f"Function name '{definition.name}' conflicts with built-in",
                location=definition.location,
                rule="FUNC",
            )
        self.functions[definition.name] = Function(
            name=definition.name,
            params=definition.params,
            return_type=definition.return_type,
            body=definition.body,
        )

    def execute_statements(self, statements: List[Statement]) -> None:
        """Run statements in the persistent global scope (REPL and ``-e``)."""
        self._guarded(lambda: self._execute_top_level(statements))

    def call_function(self, name: str, args: Optional[List[Expression]] = None) -> Value:
        function = self.functions.get(name)
        if function is None:
            raise UndefinedFunctionError(f"Undefined function '{name}'", rule="CALL")
        return self._guarded(lambda: self._call_user_function(function, list(args or []), self.globals, function.body.location))

    def reset(self) -> None:
        """Drop every binding, history and function definition."""
        for binding in self.globals.bindings.values():
            binding.reset()
        self.globals = Scope()
        self.functions.clear()
        self.diagnostics.clear()
        self.logger.clear()
        self.frame_counter = 0
        self.global_frame = self._new_frame("<top-level>", self.globals, None)
        self.call_stack = [self.global_frame]
        self._journal = None

    def snapshot_bindings(self) -> List[BindingInfo]:
        return [
            BindingInfo(
                name=name,
                type=binding.type_label,
                value=binding.read(self.blur_factor),
                history=binding.history_values(),
                sharp=binding.sharp,
            )
            for name, binding in self.globals.bindings.items()
        ]

    def _guarded(self, action: Callable[[], Value]) -> Value:
        depth = len(self.call_stack)
        try:
            return action()
        except ReturnSignal:
            raise self._annotate(BlurRuntimeError("return used outside of a function", rule="RETURN")) from None
        except BlurRuntimeError as error:
            self._annotate(error)
            raise
        except RecursionError:
            raise self._annotate(BlurRuntimeError("Maximum recursion depth exceeded", rule="internal")) from None
        except Exception as exc:
            # Surface unexpected Python-level failures as Blur tracebacks.
            raise self._annotate(BlurRuntimeError(f"Internal interpreter error: {exc}", rule="internal")) from exc
        finally:
            self._unwind(depth)

    def _annotate(self, error: BlurRuntimeError) -> BlurRuntimeError:
        """Attach the failing step and the live call stack before it is unwound."""
        if self.logger.entries:
            last = self.logger.entries[-1]
            if error.step_index is None:
                error.step_index = last.step_index
            if error.location is None:
                error.location = last.source_location
        if error.frames is None:
            error.frames = self._capture_frames()
        return error

    def _capture_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for frame in self.call_stack:
            entry = self.logger.last_entry_for_frame(frame.frame_id)
            frames.append(
                TracebackFrame(
                    name=frame.name,
                    location=entry.source_location if entry else frame.call_location,
                    statement=entry.statement if entry else None,
                    state_entry=entry,
                )
            )
        return frames

    def _unwind(self, depth: int) -> None:
        for frame in self.call_stack[depth:]:
            self.logger.forget_frame(frame.frame_id)
        del self.call_stack[depth:]

    # ---- statement journal ----

    def _atomic(self, action: Callable[[], Any]) -> Any:
        """Run one statement's work; if it fails, every append it made is undone.

        Nested statements (inside calls) join the outermost journal.
        """
        if self._journal is not None:
            return action()
        self._journal = {}
        try:
            return action()
        except ReturnSignal:
            raise
        except Exception:
            for binding, mark in self._journal.values():
                binding.rollback(mark)
            raise
        finally:
            self._journal = None

    def _touch(self, binding: Binding) -> None:
        if self._journal is not None and id(binding) not in self._journal:
            self._journal[id(binding)] = (binding, binding.mark())

    # ---- statements ----

    def _execute_top_level(self, statements: List[Statement]) -> Value:
        self._execute_block(statements, self.globals)
        return VOID

    def _execute_block(self, statements: List[Statement], scope: Scope) -> None:
        execute_stmt = self._execute_statement
        for statement in statements:
            execute_stmt(statement, scope)

    def _execute_statement(self, statement: Statement, scope: Scope) -> None:
        self._log_step(rule=statement.__class__.__name__, location=statement.location, scope=scope)
        if isinstance(statement, ExpressionStatement):
            self._atomic(lambda: self._evaluate_expression(statement.expression, scope))
            return
        if isinstance(statement, VarDecl):
            self._atomic(lambda: self._declare_variable(statement, scope, sharp=False))
            return
        if isinstance(statement, ArrayDecl):
            self._atomic(lambda: self._declare_array(statement, scope))
            return
        if isinstance(statement, Block):
            self._execute_block(statement.statements, Scope(parent=scope))
            return
        if isinstance(statement, IfStatement):
            self._execute_if(statement, scope)
            return
        if isinstance(statement, WhileStatement):
            self._execute_while(statement, scope)
            return
        if isinstance(statement, ForStatement):
            self._execute_for(statement, scope)
            return
        if isinstance(statement, ReturnStatement):
            if statement.expression is None:
                raise ReturnSignal(VOID)
            raise ReturnSignal(self._evaluate_atomic(statement.expression, scope))
        raise BlurRuntimeError("Unsupported statement", location=statement.location)

    def _declare_variable(self, statement: VarDecl, scope: Scope, *, sharp: bool) -> None:
        if statement.init is None:
            value, times = default_value(statement.declared_type), 1
        else:
            value, times = self._evaluate_feed(statement.init, scope)
        self._check_assignable(statement.name, statement.declared_type, value, statement.location, rule="DECLARE")
        binding = Binding(statement.name, statement.declared_type, sharp=sharp, limit=self.history_limit)
        binding.store(value, times)
        scope.declare(binding)

    def _declare_array(self, statement: ArrayDecl, scope: Scope) -> None:
        items = statement.items or []
        if len(items) > statement.size:
            raise IndexOutOfRangeError(
                f"Too many initializers for '{statement.name}': {len(items)} for size {statement.size}",
                location=statement.location,
                rule="DECLARE",
            )
        seeds: List[Value] = []
        for i, item in enumerate(items):
            value = self._evaluate_expression(item, scope)
            self._check_assignable(f"{statement.name}[{i}]", statement.element_type, value, item.location, rule="DECLARE")
            seeds.append(value)
        while len(seeds) < statement.size:
            seeds.append(default_value(statement.element_type))
        binding = Binding.array(statement.name, statement.element_type, statement.size, limit=self.history_limit)
        assert binding.elements is not None
        for element, seed in zip(binding.elements, seeds):
            element.store(seed)
        scope.declare(binding)

    def _execute_if(self, statement: IfStatement, scope: Scope) -> None:
        if self._truthy(self._evaluate_atomic(statement.condition, scope)):
            self._execute_statement(statement.then_branch, scope)
        elif statement.else_branch is not None:
            self._execute_statement(statement.else_branch, scope)

    def _execute_while(self, statement: WhileStatement, scope: Scope) -> None:
        eval_expr = self._evaluate_atomic
        while self._truthy(eval_expr(statement.condition, scope)):
            self._execute_statement(statement.body, scope)

    def _execute_for(self, statement: ForStatement, scope: Scope) -> None:
        eval_expr = self._evaluate_atomic
        loop_scope = Scope(parent=scope)
        init = statement.init
        if isinstance(init, VarDecl):
            self._log_step(rule="VarDecl", location=init.location, scope=loop_scope)
            self._atomic(lambda: self._declare_variable(init, loop_scope, sharp=statement.sharp))
        elif init is not None:
            self._execute_statement(init, loop_scope)
        cap = None if statement.sharp else self.iteration_cap
        iterations = 0
        while True:
            if cap is not None and iterations >= cap:
                self._warn(
                    "IterationCapReached",
                    f"for loop hit {cap} iteration limit (use 'sharp for' for unlimited)",
                    statement.location,
                )
                return
            if statement.condition is not None and not self._truthy(eval_expr(statement.condition, loop_scope)):
                return
            iterations += 1
            self._execute_statement(statement.body, loop_scope)
            if statement.update is not None:
                eval_expr(statement.update, loop_scope)

    def _evaluate_atomic(self, expression: Expression, scope: Scope) -> Value:
        return self._atomic(lambda: self._evaluate_expression(expression, scope))

    def _warn(self, kind: str, message: str, location: Optional[SourceLocation]) -> None:
        self.diagnostics.append(Diagnostic(kind=kind, message=message, location=location))
        where = f" at {location.file}:{location.line}" if location else ""
        self.warning_sink(f"Warning: {message}{where}")

    # ---- expressions ----

    def _evaluate_expression(self, expression: Expression, scope: Scope) -> Value:
        if isinstance(expression, Literal):
            return Value(expression.literal_type, expression.value)
        if isinstance(expression, Identifier):
            return scope.lookup(expression.name, expression.location).read(self.blur_factor)
        if isinstance(expression, IndexExpression):
            return self._resolve_target(expression, scope).read(self.blur_factor)
        if isinstance(expression, BinaryOp):
            if expression.op == "&&":
                if not self._truthy(self._evaluate_expression(expression.left, scope)):
                    return Value(TYPE_BOOL, False)
                return Value(TYPE_BOOL, self._truthy(self._evaluate_expression(expression.right, scope)))
            if expression.op == "||":
                if self._truthy(self._evaluate_expression(expression.left, scope)):
                    return Value(TYPE_BOOL, True)
                return Value(TYPE_BOOL, self._truthy(self._evaluate_expression(expression.right, scope)))
            left = self._evaluate_expression(expression.left, scope)
            right = self._evaluate_expression(expression.right, scope)
            return self._binary(expression.op, left, right, expression.location)
        if isinstance(expression, UnaryOp):
            operand = self._evaluate_expression(expression.operand, scope)
            return self._unary(expression.op, operand, expression.location)
        if isinstance(expression, StringRepeat):
            text = self._evaluate_expression(expression.text, scope)
            count = self._evaluate_expression(expression.count, scope)
            return self._binary("*", text, count, expression.location)
        if isinstance(expression, CallExpression):
            return self._evaluate_call(expression, scope)
        if isinstance(expression, Assign):
            cell = self._resolve_target(expression.target, scope)
            value, times = self._evaluate_feed(expression.value, scope)
            self._store(cell, value, times, expression.location)
            return cell.read(self.blur_factor)
        if isinstance(expression, CompoundAssign):
            cell = self._resolve_target(expression.target, scope)
            self._reject_array(cell, expression.location)
            current = cell.read(self.blur_factor)
            rhs = self._evaluate_expression(expression.value, scope)
            self._store(cell, self._binary(expression.op, current, rhs, expression.location), 1, expression.location)
            return cell.read(self.blur_factor)
        if isinstance(expression, IncDec):
            cell = self._resolve_target(expression.target, scope)
            self._reject_array(cell, expression.location)
            current = cell.read(self.blur_factor)
            updated = self._binary("+", current, Value(TYPE_INT, expression.delta), expression.location)
            self._store(cell, updated, 1, expression.location)
            return cell.read(self.blur_factor) if expression.prefix else current
        raise BlurRuntimeError("Unsupported expression", location=expression.location)

    def _evaluate_feed(self, expression: Expression, scope: Scope) -> Tuple[Value, int]:
        """Evaluate a right-hand side, expanding ``"s" * n`` into ``n`` feeds of ``s``."""
        if isinstance(expression, StringRepeat):
            text = self._evaluate_expression(expression.text, scope)
            count = self._evaluate_expression(expression.count, scope)
            if text.type != TYPE_STRING:
                raise TypeMismatchError(
                    f"Repetition expects a string but got {text.type}", location=expression.location, rule="REPEAT"
                )
            if count.type != TYPE_INT:
                raise TypeMismatchError(
                    f"Repetition count must be int but got {count.type}", location=expression.location, rule="REPEAT"
                )
            if count.value < 0:
                raise BlurRuntimeError("Repetition count must not be negative", location=expression.location, rule="REPEAT")
            return text, count.value
        return self._evaluate_expression(expression, scope), 1

    def _resolve_target(self, target: Target, scope: Scope) -> Cell:
        binding = scope.lookup(target.name, target.location)
        if isinstance(target, Identifier):
            return binding
        index_value = self._evaluate_expression(target.index, scope)
        if index_value.type != TYPE_INT:
            raise TypeMismatchError(
                f"Index into '{target.name}' must be int but got {index_value.type}", location=target.location, rule="INDEX"
            )
        index = index_value.value
        if binding.elements is not None:
            if not 0 <= index < len(binding.elements):
                raise IndexOutOfRangeError(
                    f"Index {index} out of range for '{target.name}' of size {len(binding.elements)}",
                    location=target.location,
                    rule="INDEX",
                    binding=f"{binding.type_label} {target.name}",
                )
            return binding.elements[index]
        if binding.type == TYPE_STRING:
            if not 0 <= index < len(binding):
                raise IndexOutOfRangeError(
                    f"Index {index} out of range for '{target.name}' of length {len(binding)}",
                    location=target.location,
                    rule="INDEX",
                    binding=f"{binding.type_label} {target.name}",
                )
            return StringPosition(binding, index)
        raise TypeMismatchError(
            f"'{target.name}' of type {binding.type} cannot be indexed",
            location=target.location,
            rule="INDEX",
            binding=f"{binding.type_label} {target.name}",
        )

    def _check_assignable(self, name: str, target_type: str, value: Value, location: SourceLocation, *, rule: str) -> None:
        if not accepts(target_type, value.type):
            raise TypeMismatchError(
                f"Type mismatch for '{name}': expected {target_type} but got {value.type}",
                location=location,
                rule=rule,
                binding=f"{target_type} {name}",
            )

    def _reject_array(self, cell: Cell, location: SourceLocation) -> None:
        if cell.elements is not None:
            raise TypeMismatchError(
                f"Type mismatch for '{cell.name}': cannot assign to the whole array",
                location=location,
                rule="ASSIGN",
                binding=f"{cell.type_label} {cell.name}",
            )

    def _store(self, cell: Cell, value: Value, times: int, location: SourceLocation) -> None:
        self._reject_array(cell, location)
        self._check_assignable(cell.name, cell.type, value, location, rule="ASSIGN")
        self._touch(cell.binding if isinstance(cell, StringPosition) else cell)
        cell.store(value, times)

    def _truthy(self, value: Value) -> bool:
        if value.type == TYPE_BOOL:
            return bool(value.value)
        if value.type == TYPE_INT or value.type == TYPE_FLOAT:
            return value.value != 0
        if value.type == TYPE_CHAR:
            return value.value != "\0"
        if value.type == TYPE_STRING:
            return value.value != ""
        if value.type == TYPE_ARRAY:
            return len(value.value) > 0
        return False

    def _is_numeric(self, value: Value) -> bool:
        return value.type in (TYPE_INT, TYPE_FLOAT, TYPE_CHAR, TYPE_BOOL)

    def _binary(self, op: str, left: Value, right: Value, location: SourceLocation) -> Value:
        if op in ("==", "!="):
            if left.type in (TYPE_STRING, TYPE_CHAR) and right.type in (TYPE_STRING, TYPE_CHAR) and TYPE_STRING in (left.type, right.type):
                equal = left.value == right.value
            elif self._is_numeric(left) and self._is_numeric(right):
                equal = as_number(left) == as_number(right)
            else:
                raise self._operand_error(op, left, right, location)
            return Value(TYPE_BOOL, equal if op == "==" else not equal)
        if op in ("<", ">", "<=", ">="):
            if left.type == TYPE_STRING and right.type == TYPE_STRING:
                a, b = left.value, right.value
            elif self._is_numeric(left) and self._is_numeric(right):
                a, b = as_number(left), as_number(right)
            else:
                raise self._operand_error(op, left, right, location)
            if op == "<":
                return Value(TYPE_BOOL, a < b)
            if op == ">":
                return Value(TYPE_BOOL, a > b)
            if op == "<=":
                return Value(TYPE_BOOL, a <= b)
            return Value(TYPE_BOOL, a >= b)
        if op == "+" and TYPE_STRING in (left.type, right.type):
            if left.type in (TYPE_STRING, TYPE_CHAR) and right.type in (TYPE_STRING, TYPE_CHAR):
                return Value(TYPE_STRING, left.value + right.value)
            raise self._operand_error(op, left, right, location)
        if op == "*" and TYPE_STRING in (left.type, right.type):
            text, count = (left, right) if left.type == TYPE_STRING else (right, left)
            if count.type != TYPE_INT:
                raise self._operand_error(op, left, right, location)
            return Value(TYPE_STRING, text.value * max(count.value, 0))
        if not (self._is_numeric(left) and self._is_numeric(right)):
            raise self._operand_error(op, left, right, location)
        a, b = as_number(left), as_number(right)
        result_type = TYPE_FLOAT if TYPE_FLOAT in (left.type, right.type) else TYPE_INT
        if op == "+":
            return Value(result_type, a + b)
        if op == "-":
            return Value(result_type, a - b)
        if op == "*":
            return Value(result_type, a * b)
        if op == "/":
            if b == 0:
                raise DivisionByZeroError("Division by zero", location=location, rule="/")
            return Value(TYPE_FLOAT, a / b)
        if op == "%":
            if b == 0:
                raise DivisionByZeroError("Modulo by zero", location=location, rule="%")
            if result_type == TYPE_INT:
                remainder = abs(a) % abs(b)
                return Value(TYPE_INT, -remainder if a < 0 else remainder)
            return Value(TYPE_FLOAT, math.fmod(a, b))
        raise BlurRuntimeError(f"Unknown operator '{op}'", location=location)

    def _unary(self, op: str, operand: Value, location: SourceLocation) -> Value:
        if op == "!":
            return Value(TYPE_BOOL, not self._truthy(operand))
        if op == "-":
            if operand.type == TYPE_FLOAT:
                return Value(TYPE_FLOAT, -operand.value)
            if self._is_numeric(operand):
                return Value(TYPE_INT, -as_number(operand))
            raise TypeMismatchError(f"Operator '-' does not support {operand.type}", location=location, rule="-")
        raise BlurRuntimeError(f"Unknown operator '{op}'", location=location)

    def _operand_error(self, op: str, left: Value, right: Value, location: SourceLocation) -> TypeMismatchError:
        return TypeMismatchError(
            f"Operator '{op}' does not support {left.type} and {right.type}", location=location, rule=op
        )

    # ---- calls ----

    def _evaluate_call(self, expression: CallExpression, scope: Scope) -> Value:
        function = self.functions.get(expression.name)
        if function is not None:
            self._log_step(rule="CALL", location=expression.location, scope=scope, extra=expression.name)
            return self._call_user_function(function, expression.args, scope, expression.location)
        if self.builtins.has(expression.name):
            return self.builtins.invoke(self, expression.name, expression.args, scope, expression.location)
        raise UndefinedFunctionError(
            f"Undefined function '{expression.name}'", location=expression.location, rule="CALL"
        )

    def _call_user_function(
        self,
        function: Function,
        arg_nodes: List[Expression],
        scope: Scope,
        call_location: SourceLocation,
    ) -> Value:
        if len(arg_nodes) != len(function.params):
            raise ArityMismatchError(
                f"Function {function.name} expects {len(function.params)} arguments but received {len(arg_nodes)}",
                location=call_location,
                rule=function.name,
            )
        bindings = [
            self._argument_binding(param, node, scope, call_location)
            for param, node in zip(function.params, arg_nodes)
        ]
        local = Scope(parent=self.globals)
        for binding in bindings:
            local.declare(binding)
        frame = self._new_frame(function.name, local, call_location)
        self.call_stack.append(frame)
        try:
            self._execute_block(function.body.statements, local)
        except ReturnSignal as signal:
            result = signal.value
        else:
            result = VOID
        # Failed calls are unwound by _guarded once their frames are captured.
        self.call_stack.pop()
        self.logger.forget_frame(frame.frame_id)
        if function.return_type == TYPE_VOID:
            return VOID
        if result.type == TYPE_VOID:
            return VOID
        if not accepts(function.return_type, result.type):
            raise TypeMismatchError(
                f"Function {function.name} must return {function.return_type} but got {result.type}",
                location=call_location,
                rule=function.name,
            )
        return coerce(result, function.return_type)

    def _argument_binding(self, param: Param, node: Expression, scope: Scope, location: SourceLocation) -> Binding:
        """Seed a parameter: bare references carry a copy of their whole history."""
        if param.is_array:
            if not isinstance(node, Identifier):
                raise TypeMismatchError(
                    f"Argument for '{param.name}' must name an array", location=location, rule="CALL"
                )
            array = scope.lookup(node.name, node.location)
            if array.elements is None or _storage_kind(array.type) != _storage_kind(param.type):
                raise TypeMismatchError(
                    f"Argument for '{param.name}' expected {param.type}[] but got {array.type_label}",
                    location=location,
                    rule="CALL",
                )
            return array.copy(param.name, param.type)

        source: Optional[Cell] = None
        if isinstance(node, (Identifier, IndexExpression)):
            source = self._resolve_target(node, scope)
        if isinstance(source, Binding) and source.elements is not None:
            raise TypeMismatchError(
                f"Argument for '{param.name}' expected {param.type} but got {source.type_label}",
                location=location,
                rule="CALL",
            )
        if (
            isinstance(source, Binding)
            and not source.sharp
            and _storage_kind(source.type) == _storage_kind(param.type)
        ):
            return source.copy(param.name, param.type)

        if source is not None:
            value, times = source.read(self.blur_factor), 1
        else:
            value, times = self._evaluate_feed(node, scope)
        self._check_assignable(param.name, param.type, value, location, rule="CALL")
        binding = Binding(param.name, param.type, limit=self.history_limit)
        binding.store(value, times)
        return binding

    # ---- state log ----

    def _new_frame(self, name: str, scope: Scope, call_location: Optional[SourceLocation]) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, scope=scope, frame_id=frame_id, call_location=call_location)

    def _log_step(
        self,
        *,
        rule: str,
        location: Optional[SourceLocation],
        scope: Optional[Scope] = None,
        extra: Optional[str] = None,
    ) -> None:
        frame = self.call_stack[-1] if self.call_stack else None
        env_snapshot = scope.snapshot(self.blur_factor) if (self.verbose and scope is not None) else None
        self.logger.record(
            frame=frame,
            location=location,
            rule=f"{rule}:{extra}" if extra else rule,
            env_snapshot=env_snapshot,
        )


class TracebackFormatter:
    """Renders a runtime error with the call frames captured when it was raised.

    After the frames come the storage the failing operation touched, the
    blur factor in effect and the latest warnings, e.g. an iteration cap hit.
    """

    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def _recent_warnings(self) -> List[Diagnostic]:
        return self.interpreter.diagnostics[-TRACEBACK_WARNING_TAIL:]

    def format_text(self, error: BlurRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in error.frames or []:
            if frame.location is None:
                lines.append(f"  <unknown location> in {frame.name}")
            else:
                lines.append(f"  File \"{frame.location.file}\", line {frame.location.line}, in {frame.name}")
                if frame.statement:
                    lines.append(f"    {frame.statement}")
            entry = frame.state_entry
            if entry is None:
                continue
            lines.append(f"    step {entry.step_index} ({entry.rule})")
            if verbose and entry.env_snapshot is not None:
                for name, rendered in entry.env_snapshot.items():
                    lines.append(f"      {name} = {rendered}")
        if error.location:
            lines.append(f"  at {error.location.file}:{error.location.line}:{error.location.column}")
        if error.binding:
            lines.append(f"  binding: {error.binding}")
        lines.append(f"  blur factor: {format_float(self.interpreter.blur_factor)}")
        for diagnostic in self._recent_warnings():
            where = f" (line {diagnostic.location.line})" if diagnostic.location else ""
            lines.append(f"  warning: {diagnostic.kind}{where}: {diagnostic.message}")
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {error.rule or 'runtime'})")
        return "\n".join(lines)

    def to_json(self, error: BlurRuntimeError) -> str:
        frames: List[Dict[str, Any]] = []
        for index, frame in enumerate(error.frames or []):
            item: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.location:
                item["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "statement": frame.location.statement,
                }
            if frame.state_entry:
                item["state_id"] = frame.state_entry.state_id
                item["step_index"] = frame.state_entry.step_index
                item["rule"] = frame.state_entry.rule
                if frame.state_entry.env_snapshot is not None:
                    item["env_snapshot"] = frame.state_entry.env_snapshot
            frames.append(item)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rule": error.rule,
                "binding": error.binding,
                "failing_step_index": error.step_index,
            },
            "blur_factor": self.interpreter.blur_factor,
            "warnings": [
                {
                    "kind": diagnostic.kind,
                    "message": diagnostic.message,
                    "line": diagnostic.location.line if diagnostic.location else None,
                }
                for diagnostic in self._recent_warnings()
            ],
            "traceback": frames,
        }
        return json.dumps(data, indent=2)
