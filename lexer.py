from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Tuple


class BlurError(Exception):
    """Base class for interpreter errors."""


class BlurParseError(BlurError):
    """Raised when lexing or parsing fails."""


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int


TYPE_KEYWORDS = {"int", "float", "bool", "char", "string", "void"}

KEYWORDS = {
    "if",
    "else",
    "while",
    "for",
    "sharp",
    "return",
    "true",
    "false",
}

# Longest match first: every two-character operator is tried before its prefix.
DOUBLE_SYMBOLS = {
    "++": "PLUSPLUS",
    "--": "MINUSMINUS",
    "+=": "PLUS_ASSIGN",
    "-=": "MINUS_ASSIGN",
    "*=": "STAR_ASSIGN",
    "/=": "SLASH_ASSIGN",
    "%=": "PERCENT_ASSIGN",
    "==": "EQ",
    "!=": "NE",
    "<=": "LE",
    ">=": "GE",
    "&&": "AND",
    "||": "OR",
}

SYMBOLS = {
    "(": "LPAREN",
    ")": "RPAREN",
    "{": "LBRACE",
    "}": "RBRACE",
    "[": "LBRACKET",
    "]": "RBRACKET",
    ",": "COMMA",
    ";": "SEMI",
    "=": "ASSIGN",
    "+": "PLUS",
    "-": "MINUS",
    "*": "STAR",
    "/": "SLASH",
    "%": "PERCENT",
    "<": "LT",
    ">": "GT",
    "!": "NOT",
}

ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "0": "\0",
    "\\": "\\",
    "'": "'",
    '"': '"',
}


def _ends_in_block_comment(line: str, in_comment: bool) -> bool:
    """Whether a ``/* ... */`` comment is still open at the end of ``line``."""
    index = 0
    quote: Optional[str] = None
    while index < len(line):
        ch = line[index]
        pair = line[index : index + 2]
        if in_comment:
            if pair == "*/":
                in_comment = False
                index += 1
        elif quote is not None:
            if ch == "\\":
                index += 1
            elif ch == quote:
                quote = None
        elif pair == "//":
            break
        elif pair == "/*":
            in_comment = True
            index += 1
        elif ch in "\"'":
            quote = ch
        index += 1
    return in_comment


def process_directives(text: str) -> Tuple[Optional[float], str]:
    """Strip ``#blur <factor>`` lines and return ``(factor, source)``.

    Directive lines are replaced by empty lines so token line numbers still
    match the source file. Lines inside a block comment are left alone. The
    last directive wins.
    """
    factor: Optional[float] = None
    lines = text.split("\n")
    in_comment = False
    for index, line in enumerate(lines):
        stripped = line.strip()
        if in_comment or not stripped.startswith("#blur"):
            in_comment = _ends_in_block_comment(line, in_comment)
            continue
        parts = stripped.split()
        if parts[0] != "#blur":
            in_comment = _ends_in_block_comment(line, in_comment)
            continue
        if len(parts) != 2:
            raise BlurParseError(f"Malformed #blur directive at line {index + 1}: expected '#blur <0.0-1.0>'")
        try:
            factor = float(parts[1])
        except ValueError:
            raise BlurParseError(f"Invalid blur factor '{parts[1]}' at line {index + 1}") from None
        lines[index] = ""
    return factor, "\n".join(lines)


class Lexer:
    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch in " \t\r\n\f":
                _advance()
                continue
            if ch == "/" and self.index + 1 < n and text[self.index + 1] == "/":
                self._consume_line_comment()
                continue
            if ch == "/" and self.index + 1 < n and text[self.index + 1] == "*":
                self._consume_block_comment()
                continue
            if ch == '"':
                tokens_append(self._consume_string())
                continue
            if ch == "'":
                tokens_append(self._consume_char())
                continue
            if ch.isdigit():
                tokens_append(self._consume_number())
                continue
            if ch.isalpha() or ch == "_":
                tokens_append(self._consume_identifier())
                continue
            pair = text[self.index:self.index + 2]
            if pair in DOUBLE_SYMBOLS:
                tokens_append(Token(DOUBLE_SYMBOLS[pair], pair, self.line, self.column))
                _advance()
                _advance()
                continue
            if ch in SYMBOLS:
                tokens_append(Token(SYMBOLS[ch], ch, self.line, self.column))
                _advance()
                continue
            raise BlurParseError(
                f"Unexpected character '{ch}' at {self.filename}:{self.line}:{self.column}"
            )
        tokens_append(Token("EOF", "", self.line, self.column))
        return tokens

    def _consume_line_comment(self) -> None:
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and text[self.index] != "\n":
            _advance()

    def _consume_block_comment(self) -> None:
        line, col = self.line, self.column
        self._advance()
        self._advance()
        while not self._eof:
            if self._peek() == "*" and self.index + 1 < len(self.text) and self.text[self.index + 1] == "/":
                self._advance()
                self._advance()
                return
            self._advance()
        raise BlurParseError(f"Unterminated block comment at {self.filename}:{line}:{col}")

    def _consume_number(self) -> Token:
        line, col = self.line, self.column
        whole = self._consume_digits()
        # A '.' is a radix point only when a digit follows it.
        if (
            not self._eof
            and self._peek() == "."
            and self.index + 1 < len(self.text)
            and self.text[self.index + 1].isdigit()
        ):
            self._advance()
            frac = self._consume_digits()
            return Token("FLOAT", f"{whole}.{frac}", line, col)
        return Token("INT", whole, line, col)

    def _consume_digits(self) -> str:
        digits: List[str] = []
        while not self._eof and self._peek().isdigit():
            digits.append(self._peek())
            self._advance()
        return "".join(digits)

    def _consume_string(self) -> Token:
        line, col = self.line, self.column
        self._advance()  # consume opening quote
        chars: List[str] = []
        while not self._eof:
            ch = self._peek()
            if ch == '"':
                self._advance()
                return Token("STRING", "".join(chars), line, col)
            if ch == "\n":
                raise BlurParseError(
                    f"Unterminated string literal at {self.filename}:{line}:{col}"
                )
            if ch == "\\":
                chars.append(self._consume_escape(line, col))
                continue
            chars.append(ch)
            self._advance()
        raise BlurParseError(
            f"Unterminated string literal at {self.filename}:{line}:{col}"
        )

    def _consume_char(self) -> Token:
        line, col = self.line, self.column
        self._advance()  # consume opening quote
        if self._eof or self._peek() in "'\n":
            raise BlurParseError(f"Empty character literal at {self.filename}:{line}:{col}")
        if self._peek() == "\\":
            value = self._consume_escape(line, col)
        else:
            value = self._peek()
            self._advance()
        if self._eof or self._peek() != "'":
            raise BlurParseError(
                f"Character literal must hold exactly one character at {self.filename}:{line}:{col}"
            )
        self._advance()
        return Token("CHAR", value, line, col)

    def _consume_escape(self, line: int, col: int) -> str:
        self._advance()  # consume backslash
        if self._eof:
            raise BlurParseError(f"Unterminated escape sequence at {self.filename}:{line}:{col}")
        code = self._peek()
        if code not in ESCAPES:
            raise BlurParseError(f"Unknown escape sequence '\\{code}' at {self.filename}:{self.line}:{self.column}")
        self._advance()
        return ESCAPES[code]

    def _consume_identifier(self) -> Token:
        line, col = self.line, self.column
        chars: List[str] = []
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n:
            ch = text[self.index]
            if ch.isalnum() or ch == "_":
                chars.append(ch)
                _advance()
                continue
            break
        value = "".join(chars)
        if value in TYPE_KEYWORDS:
            token_type = "TYPE"
        elif value in KEYWORDS:
            token_type = value.upper()
        else:
            token_type = "IDENT"
        return Token(token_type, value, line, col)

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1
