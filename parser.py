from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional, Union

from lexer import BlurParseError, Lexer, Token


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass
class Node:
    location: SourceLocation


class Statement(Node):
    pass


class Expression(Node):
    pass


@dataclass
class Param:
    type: str
    name: str
    is_array: bool = False


@dataclass
class FuncDef(Node):
    name: str
    params: List[Param]
    return_type: str
    body: "Block"


@dataclass
class Program(Node):
    functions: List[FuncDef] = field(default_factory=list)
    statements: List[Statement] = field(default_factory=list)


@dataclass
class Block(Statement):
    statements: List[Statement]


@dataclass
class VarDecl(Statement):
    declared_type: str
    name: str
    init: Optional[Expression]


@dataclass
class ArrayDecl(Statement):
    element_type: str
    name: str
    size: int
    items: Optional[List[Expression]]


@dataclass
class ExpressionStatement(Statement):
    expression: Expression


@dataclass
class IfStatement(Statement):
    condition: Expression
    then_branch: Statement
    else_branch: Optional[Statement]


@dataclass
class WhileStatement(Statement):
    condition: Expression
    body: Statement


@dataclass
class ForStatement(Statement):
    init: Optional[Statement]
    condition: Optional[Expression]
    update: Optional[Expression]
    body: Statement
    sharp: bool


@dataclass
class ReturnStatement(Statement):
    expression: Optional[Expression]


@dataclass
class Literal(Expression):
    value: Union[int, float, bool, str]
    literal_type: str


@dataclass
class Identifier(Expression):
    name: str


@dataclass
class IndexExpression(Expression):
    name: str
    index: Expression


@dataclass
class BinaryOp(Expression):
    op: str
    left: Expression
    right: Expression


@dataclass
class UnaryOp(Expression):
    op: str
    operand: Expression


@dataclass
class StringRepeat(Expression):
    text: Expression
    count: Expression


@dataclass
class CallExpression(Expression):
    name: str
    args: List[Expression]


Target = Union[Identifier, IndexExpression]


@dataclass
class Assign(Expression):
    target: Target
    value: Expression


@dataclass
class CompoundAssign(Expression):
    target: Target
    op: str
    value: Expression


@dataclass
class IncDec(Expression):
    target: Target
    delta: int
    prefix: bool


COMPOUND_OPS = {
    "PLUS_ASSIGN": "+",
    "MINUS_ASSIGN": "-",
    "STAR_ASSIGN": "*",
    "SLASH_ASSIGN": "/",
    "PERCENT_ASSIGN": "%",
}

EQUALITY_OPS = {"EQ": "==", "NE": "!="}
COMPARISON_OPS = {"LT": "<", "GT": ">", "LE": "<=", "GE": ">="}
ADDITIVE_OPS = {"PLUS": "+", "MINUS": "-"}
MULTIPLICATIVE_OPS = {"STAR": "*", "SLASH": "/", "PERCENT": "%"}


class Parser:
    def __init__(
        self,
        tokens: List[Token],
        filename: str,
        source_lines: List[str],
    ):
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines
        self.index = 0

    def parse(self) -> Program:
        functions: List[FuncDef] = []
        statements: List[Statement] = []
        first = self._peek()
        while self._peek().type != "EOF":
            if self._is_function_start():
                functions.append(self._parse_function())
            else:
                statements.append(self._parse_statement())
        return Program(location=self._location_from_token(first), functions=functions, statements=statements)

    # ---- declarations ----

    def _is_function_start(self) -> bool:
        return (
            self._peek().type == "TYPE"
            and self._peek_at(1).type == "IDENT"
            and self._peek_at(2).type == "LPAREN"
        )

    def _parse_function(self) -> FuncDef:
        type_token = self._consume("TYPE")
        name_token = self._consume("IDENT")
        self._consume("LPAREN")
        params: List[Param] = []
        if self._peek().type != "RPAREN":
            while True:
                param_type = self._consume("TYPE")
                if param_type.value == "void":
                    raise BlurParseError(f"Parameter cannot have type void at line {param_type.line}")
                param_name = self._consume("IDENT")
                is_array = False
                if self._match("LBRACKET"):
                    self._consume("RBRACKET")
                    is_array = True
                if any(p.name == param_name.value for p in params):
                    raise BlurParseError(
                        f"Duplicate parameter '{param_name.value}' in function {name_token.value} at line {param_name.line}"
                    )
                params.append(Param(type=param_type.value, name=param_name.value, is_array=is_array))
                if not self._match("COMMA"):
                    break
        self._consume("RPAREN")
        body = self._parse_block()
        return FuncDef(
            location=self._location_from_token(type_token),
            name=name_token.value,
            params=params,
            return_type=type_token.value,
            body=body,
        )

    def _parse_declaration(self) -> Statement:
        type_token = self._consume("TYPE")
        if type_token.value == "void":
            raise BlurParseError(f"Variables cannot have type void at line {type_token.line}")
        name_token = self._consume("IDENT")
        location = self._location_from_token(type_token)
        if self._match("LBRACKET"):
            size_token = self._consume("INT")
            self._consume("RBRACKET")
            size = int(size_token.value)
            if size <= 0:
                raise BlurParseError(f"Array size must be positive at line {size_token.line}")
            items: Optional[List[Expression]] = None
            if self._match("ASSIGN"):
                self._consume("LBRACE")
                items = []
                if self._peek().type != "RBRACE":
                    while True:
                        items.append(self._parse_expression())
                        if not self._match("COMMA"):
                            break
                self._consume("RBRACE")
                if len(items) > size:
                    raise BlurParseError(
                        f"Too many initializers for array '{name_token.value}' of size {size} at line {type_token.line}"
                    )
            return ArrayDecl(location=location, element_type=type_token.value, name=name_token.value, size=size, items=items)
        init: Optional[Expression] = None
        if self._match("ASSIGN"):
            init = self._parse_expression()
        return VarDecl(location=location, declared_type=type_token.value, name=name_token.value, init=init)

    # ---- statements ----

    def _parse_statement(self) -> Statement:
        token = self._peek()
        if token.type == "TYPE":
            decl = self._parse_declaration()
            self._consume("SEMI")
            return decl
        if token.type == "LBRACE":
            return self._parse_block()
        if token.type == "IF":
            return self._parse_if()
        if token.type == "WHILE":
            return self._parse_while()
        if token.type == "FOR" or token.type == "SHARP":
            return self._parse_for()
        if token.type == "RETURN":
            return self._parse_return()
        if token.type == "SEMI":
            self._consume("SEMI")
            return Block(location=self._location_from_token(token), statements=[])
        expr = self._parse_expression()
        self._consume("SEMI")
        return ExpressionStatement(location=self._location_from_token(token), expression=expr)

    def _parse_block(self) -> Block:
        start = self._consume("LBRACE")
        statements: List[Statement] = []
        while self._peek().type != "RBRACE":
            if self._peek().type == "EOF":
                raise BlurParseError(f"Unterminated block opened at line {start.line}")
            statements.append(self._parse_statement())
        self._consume("RBRACE")
        return Block(location=self._location_from_token(start), statements=statements)

    def _parse_if(self) -> IfStatement:
        keyword = self._consume("IF")
        condition = self._parse_parenthesized_expression()
        then_branch = self._parse_statement()
        else_branch: Optional[Statement] = self._parse_statement() if self._match("ELSE") else None
        return IfStatement(
            location=self._location_from_token(keyword),
            condition=condition,
            then_branch=then_branch,
            else_branch=else_branch,
        )

    def _parse_while(self) -> WhileStatement:
        keyword = self._consume("WHILE")
        condition = self._parse_parenthesized_expression()
        body = self._parse_statement()
        return WhileStatement(location=self._location_from_token(keyword), condition=condition, body=body)

    def _parse_for(self) -> ForStatement:
        keyword = self._peek()
        sharp = self._match("SHARP")
        self._consume("FOR")
        self._consume("LPAREN")
        init: Optional[Statement] = None
        if self._peek().type == "TYPE":
            init = self._parse_declaration()
        elif self._peek().type != "SEMI":
            start = self._peek()
            init = ExpressionStatement(location=self._location_from_token(start), expression=self._parse_expression())
        self._consume("SEMI")
        condition: Optional[Expression] = None
        if self._peek().type != "SEMI":
            condition = self._parse_expression()
        self._consume("SEMI")
        update: Optional[Expression] = None
        if self._peek().type != "RPAREN":
            update = self._parse_expression()
        self._consume("RPAREN")
        body = self._parse_statement()
        return ForStatement(
            location=self._location_from_token(keyword),
            init=init,
            condition=condition,
            update=update,
            body=body,
            sharp=sharp,
        )

    def _parse_return(self) -> ReturnStatement:
        keyword = self._consume("RETURN")
        expression: Optional[Expression] = None
        if self._peek().type != "SEMI":
            expression = self._parse_expression()
        self._consume("SEMI")
        return ReturnStatement(location=self._location_from_token(keyword), expression=expression)

    # ---- expressions ----

    def _parse_expression(self) -> Expression:
        return self._parse_assignment()

    def _parse_assignment(self) -> Expression:
        start = self._peek()
        expr = self._parse_or()
        token = self._peek()
        if token.type == "ASSIGN" or token.type in COMPOUND_OPS:
            target = self._as_target(expr, token)
            self.index += 1
            value = self._parse_assignment()
            location = self._location_from_token(start)
            if token.type == "ASSIGN":
                return Assign(location=location, target=target, value=value)
            return CompoundAssign(location=location, target=target, op=COMPOUND_OPS[token.type], value=value)
        return expr

    def _parse_or(self) -> Expression:
        expr = self._parse_and()
        while self._peek().type == "OR":
            op = self._consume("OR")
            expr = BinaryOp(location=self._location_from_token(op), op="||", left=expr, right=self._parse_and())
        return expr

    def _parse_and(self) -> Expression:
        expr = self._parse_equality()
        while self._peek().type == "AND":
            op = self._consume("AND")
            expr = BinaryOp(location=self._location_from_token(op), op="&&", left=expr, right=self._parse_equality())
        return expr

    def _parse_equality(self) -> Expression:
        expr = self._parse_comparison()
        while self._peek().type in EQUALITY_OPS:
            op = self._advance()
            expr = BinaryOp(
                location=self._location_from_token(op), op=EQUALITY_OPS[op.type], left=expr, right=self._parse_comparison()
            )
        return expr

    def _parse_comparison(self) -> Expression:
        expr = self._parse_additive()
        while self._peek().type in COMPARISON_OPS:
            op = self._advance()
            expr = BinaryOp(
                location=self._location_from_token(op), op=COMPARISON_OPS[op.type], left=expr, right=self._parse_additive()
            )
        return expr

    def _parse_additive(self) -> Expression:
        expr = self._parse_multiplicative()
        while self._peek().type in ADDITIVE_OPS:
            op = self._advance()
            expr = BinaryOp(
                location=self._location_from_token(op), op=ADDITIVE_OPS[op.type], left=expr, right=self._parse_multiplicative()
            )
        return expr

    def _parse_multiplicative(self) -> Expression:
        expr = self._parse_unary()
        while self._peek().type in MULTIPLICATIVE_OPS:
            op = self._advance()
            right = self._parse_unary()
            location = self._location_from_token(op)
            if op.type == "STAR" and isinstance(expr, Literal) and expr.literal_type == "string":
                expr = StringRepeat(location=location, text=expr, count=right)
            else:
                expr = BinaryOp(location=location, op=MULTIPLICATIVE_OPS[op.type], left=expr, right=right)
        return expr

    def _parse_unary(self) -> Expression:
        token = self._peek()
        if token.type == "NOT":
            self._advance()
            return UnaryOp(location=self._location_from_token(token), op="!", operand=self._parse_unary())
        if token.type == "MINUS":
            self._advance()
            return UnaryOp(location=self._location_from_token(token), op="-", operand=self._parse_unary())
        if token.type in ("PLUSPLUS", "MINUSMINUS"):
            self._advance()
            operand = self._parse_unary()
            target = self._as_target(operand, token)
            delta = 1 if token.type == "PLUSPLUS" else -1
            return IncDec(location=self._location_from_token(token), target=target, delta=delta, prefix=True)
        return self._parse_postfix()

    def _parse_postfix(self) -> Expression:
        expr = self._parse_primary()
        while self._peek().type in ("PLUSPLUS", "MINUSMINUS"):
            token = self._advance()
            target = self._as_target(expr, token)
            delta = 1 if token.type == "PLUSPLUS" else -1
            expr = IncDec(location=expr.location, target=target, delta=delta, prefix=False)
        return expr

    def _parse_primary(self) -> Expression:
        token = self._peek()
        location = self._location_from_token(token)
        if token.type == "INT":
            self._advance()
            return Literal(location=location, value=int(token.value), literal_type="int")
        if token.type == "FLOAT":
            self._advance()
            return Literal(location=location, value=float(token.value), literal_type="float")
        if token.type in ("TRUE", "FALSE"):
            self._advance()
            return Literal(location=location, value=token.type == "TRUE", literal_type="bool")
        if token.type == "CHAR":
            self._advance()
            return Literal(location=location, value=token.value, literal_type="char")
        if token.type == "STRING":
            self._advance()
            return Literal(location=location, value=token.value, literal_type="string")
        if token.type == "IDENT":
            ident = self._advance()
            if self._match("LPAREN"):
                args: List[Expression] = []
                if self._peek().type != "RPAREN":
                    while True:
                        args.append(self._parse_expression())
                        if not self._match("COMMA"):
                            break
                self._consume("RPAREN")
                return CallExpression(location=location, name=ident.value, args=args)
            if self._match("LBRACKET"):
                index = self._parse_expression()
                self._consume("RBRACKET")
                return IndexExpression(location=location, name=ident.value, index=index)
            return Identifier(location=location, name=ident.value)
        if token.type == "LPAREN":
            self._consume("LPAREN")
            expr = self._parse_expression()
            self._consume("RPAREN")
            return expr
        raise BlurParseError(
            f"Unexpected token '{token.value or token.type}' in expression at {self.filename}:{token.line}:{token.column}"
        )

    def _parse_parenthesized_expression(self) -> Expression:
        self._consume("LPAREN")
        expr = self._parse_expression()
        self._consume("RPAREN")
        return expr

    def _as_target(self, expr: Expression, token: Token) -> Target:
        if isinstance(expr, (Identifier, IndexExpression)):
            return expr
        raise BlurParseError(
            f"Operator '{token.value}' needs a variable or element on its left at {self.filename}:{token.line}:{token.column}"
        )

    # ---- token helpers ----

    def _consume(self, token_type: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            found = token.value or token.type
            raise BlurParseError(
                f"Expected token {token_type} but found '{found}' at {self.filename}:{token.line}:{token.column}"
            )
        self.index += 1
        return token

    def _match(self, token_type: str) -> bool:
        if self._peek().type == token_type:
            self.index += 1
            return True
        return False

    def _advance(self) -> Token:
        token = self._peek()
        self.index += 1
        return token

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _peek_at(self, offset: int) -> Token:
        position = min(self.index + offset, len(self.tokens) - 1)
        return self.tokens[position]

    def _location_from_token(self, token: Token) -> SourceLocation:
        line_index = token.line - 1
        statement = ""
        if 0 <= line_index < len(self.source_lines):
            statement = self.source_lines[line_index].strip()
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=statement)


def parse_source(text: str, filename: str) -> Program:
    """Tokenize and parse ``text`` into a Program."""
    tokens = Lexer(text, filename).tokenize()
    return Parser(tokens, filename, text.splitlines()).parse()
