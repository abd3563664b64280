import pytest

from lexer import BlurParseError, Lexer, process_directives
from parser import (
    ArrayDecl,
    Assign,
    BinaryOp,
    CallExpression,
    CompoundAssign,
    ExpressionStatement,
    ForStatement,
    IncDec,
    IndexExpression,
    Literal,
    StringRepeat,
    VarDecl,
    parse_source,
)


def token_types(text):
    return [token.type for token in Lexer(text, "<test>").tokenize()]


class TestLexer:

    def test_declaration(self):
        assert token_types("int x = 5;") == ["TYPE", "IDENT", "ASSIGN", "INT", "SEMI", "EOF"]

    def test_double_symbols(self):
        assert token_types("x += 1; y++; a && b") == [
            "IDENT", "PLUS_ASSIGN", "INT", "SEMI",
            "IDENT", "PLUSPLUS", "SEMI",
            "IDENT", "AND", "IDENT", "EOF",
        ]

    def test_keywords(self):
        assert token_types("sharp for while return true") == ["SHARP", "FOR", "WHILE", "RETURN", "TRUE", "EOF"]

    def test_numbers(self):
        tokens = Lexer("3.14 42", "<test>").tokenize()
        assert (tokens[0].type, tokens[0].value) == ("FLOAT", "3.14")
        assert (tokens[1].type, tokens[1].value) == ("INT", "42")

    def test_comments_skipped(self):
        assert token_types("// note\nx /* block\n comment */ ;") == ["IDENT", "SEMI", "EOF"]

    def test_string_escapes(self):
        tokens = Lexer('"a\\nb" \'\\t\'', "<test>").tokenize()
        assert tokens[0].value == "a\nb"
        assert tokens[1].value == "\t"

    def test_line_tracking(self):
        tokens = Lexer("int x;\nx = 2;", "<test>").tokenize()
        assert tokens[3].line == 2
        assert tokens[3].column == 1

    @pytest.mark.parametrize("text", ["'ab'", '"open', "''", "/* open", "x @ y", '"\\q"'])
    def test_errors(self, text):
        with pytest.raises(BlurParseError):
            Lexer(text, "<test>").tokenize()


class TestDirectives:

    def test_strips_and_reads_factor(self):
        factor, source = process_directives("#blur 0.5\nint x = 1;")
        assert factor == 0.5
        assert source == "\nint x = 1;"

    def test_last_directive_wins(self):
        factor, _ = process_directives("#blur 0.5\n#blur 0.7\n")
        assert factor == 0.7

    def test_ignored_inside_block_comment(self):
        text = "/* example:\n#blur 0.5\n*/\nint x;"
        assert process_directives(text) == (None, text)

    def test_read_after_block_comment_closes(self):
        factor, source = process_directives('/* note */\nstring s = "/*";\n#blur 0.5\nint x;')
        assert factor == 0.5
        assert source.split("\n")[2] == ""

    def test_no_directive(self):
        assert process_directives("int x;") == (None, "int x;")

    @pytest.mark.parametrize("text", ["#blur", "#blur abc", "#blur 0.5 0.6"])
    def test_malformed(self, text):
        with pytest.raises(BlurParseError):
            process_directives(text)


class TestParser:

    def test_program_split(self):
        program = parse_source("int g = 1;\nint add(int a, int b[]) { return a; }\nprint(g);", "<test>")
        assert [f.name for f in program.functions] == ["add"]
        params = program.functions[0].params
        assert [(p.type, p.name, p.is_array) for p in params] == [("int", "a", False), ("int", "b", True)]
        assert len(program.statements) == 2
        assert isinstance(program.statements[0], VarDecl)

    def test_precedence(self):
        program = parse_source("x = 1 + 2 * 3;", "<test>")
        assign = program.statements[0].expression
        assert isinstance(assign, Assign)
        assert isinstance(assign.value, BinaryOp) and assign.value.op == "+"
        assert isinstance(assign.value.right, BinaryOp) and assign.value.right.op == "*"

    def test_string_repeat(self):
        program = parse_source('string s = "ab" * 3;', "<test>")
        init = program.statements[0].init
        assert isinstance(init, StringRepeat)
        assert init.text.value == "ab"
        assert init.count.value == 3

    def test_plain_multiplication(self):
        program = parse_source("print(x * 2);", "<test>")
        call = program.statements[0].expression
        assert isinstance(call, CallExpression)
        assert isinstance(call.args[0], BinaryOp)

    def test_increments(self):
        program = parse_source("x++; --y; a[1] += 2;", "<test>")
        post = program.statements[0].expression
        pre = program.statements[1].expression
        compound = program.statements[2].expression
        assert isinstance(post, IncDec) and (post.delta, post.prefix) == (1, False)
        assert isinstance(pre, IncDec) and (pre.delta, pre.prefix) == (-1, True)
        assert isinstance(compound, CompoundAssign) and compound.op == "+"
        assert isinstance(compound.target, IndexExpression)

    def test_sharp_for(self):
        program = parse_source("sharp for (int i = 0; i < 3; i++) print(i);", "<test>")
        loop = program.statements[0]
        assert isinstance(loop, ForStatement)
        assert loop.sharp
        assert isinstance(loop.init, VarDecl)
        assert isinstance(loop.body, ExpressionStatement)

    def test_for_with_empty_clauses(self):
        loop = parse_source("for (;;) ;", "<test>").statements[0]
        assert loop.init is None and loop.condition is None and loop.update is None
        assert not loop.sharp

    def test_array_declaration(self):
        decl = parse_source("int a[3] = {1, 2};", "<test>").statements[0]
        assert isinstance(decl, ArrayDecl)
        assert decl.size == 3
        assert [item.value for item in decl.items] == [1, 2]

    def test_literals(self):
        call = parse_source("print(true, 'c', 2.5);", "<test>").statements[0].expression
        assert [(arg.literal_type, arg.value) for arg in call.args] == [("bool", True), ("char", "c"), ("float", 2.5)]
        assert all(isinstance(arg, Literal) for arg in call.args)

    def test_location(self):
        program = parse_source("int x = 1;\n  x = 2;", "<file>")
        location = program.statements[1].location
        assert (location.file, location.line, location.column) == ("<file>", 2, 3)
        assert location.statement == "x = 2;"

    @pytest.mark.parametrize(
        "text",
        [
            "1 = x;",
            "int a[2] = {1, 2, 3};",
            "int a[0];",
            "void x;",
            "int x = 1",
            "int f(void v) { }",
            "int f(int a, int a) { }",
            "{ int x;",
        ],
    )
    def test_errors(self, text):
        with pytest.raises(BlurParseError):
            parse_source(text, "<test>")
