#!/usr/bin/env python3
"""gplot.py

A compiler for the .g plotting language that renders to SVG.

A .g program describes one 2D plot: named value ranges (`#define`), a single
canvas configuration (`#root`), an optional background grid (`#grid`) and any
number of shapes (`@line`, `@graph`, `@point`). Every block ends with `#end`.

Key features:
- Hand-written single-pass lexer whose vocabulary grows with each `#define`.
- Two-pass model builder: structural checks first, then a cursor-driven build.
- Function plotting through sympy-parsed expressions sampled per pixel column.
- Fail-fast diagnostics carrying the offending source line.

Run:
  python gplot.py compile plot.g > plot.svg
  python gplot.py compile -e '#define x max 10 #end ...' -o plot.svg
  python gplot.py check plot.g
  python gplot.py tokens plot.g
  python gplot.py --help
"""

from __future__ import annotations

import argparse
import logging
import math
import os
import re
import sys
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union, cast

import numpy as np
import sympy as sp
from sympy.parsing.sympy_parser import (
    convert_xor,
    parse_expr,
    standard_transformations,
)

log = logging.getLogger("gplot")

Point = tuple[float, float]

TOP_LEVEL_DECLARATIONS = ("root", "grid", "define", "include", "end")
SHAPE_FUNCTIONS = ("line", "graph", "point")
KEYWORDS = (
    "min",
    "max",
    "name",
    "color",
    "background",
    "alpha",
    "thickness",
    "function",
    "from",
    "to",
    "axes",
    "axis",
    "box",
    "at",
    "step",
)

# Extra room on the high side of each axis for labels and overflow.
PADDING = 10.0

DEFAULT_STROKE = "000000"
DEFAULT_BACKGROUND = "ffffff"


# -------------------------
# Errors
# -------------------------


class CompileError(ValueError):
    """Base for every fatal diagnostic; the first one raised ends compilation."""

    def __init__(
        self, message: str, line: int | None = None, hint: str | None = None
    ) -> None:
        self.message = message
        self.line = line
        self.hint = hint
        super().__init__(self._render())

    def _render(self) -> str:
        text = self.message
        if self.line is not None:
            text = f"{text} at line {self.line}"
        if self.hint:
            text = f"{text}\n         > {self.hint}"
        return text


class LexError(CompileError):
    pass


class StructureError(CompileError):
    pass


class BuildError(CompileError):
    pass


class EvaluationError(CompileError):
    pass


def _require(
    cond: bool, msg: str, line: int | None = None, hint: str | None = None
) -> None:
    if not cond:
        raise BuildError(msg, line, hint)


# -------------------------
# Lexer
# -------------------------


class TokenKind(Enum):
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    HEX_COLOR = "hexadecimal color"
    COMMA = "comma"
    KEYWORD = "keyword"
    DECLARATION = "declaration"
    SHAPE_FUNCTION = "shape function"
    VARNAME = "new identifier"
    VAR = "variable"
    DEFINE_MARKER = "define"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    line: int


_DIGITS = "0123456789"
_HEX_DIGITS = "0123456789abcdefABCDEF"


class Lexer:
    """Single left-to-right scan producing a flat token list.

    `identifiers` is the set of names registered by `#define`; it is consulted
    before the fixed keyword table, so a defined name always lexes as VAR.
    A dict is used as an insertion-ordered set.
    """

    def __init__(self, source: str) -> None:
        self.source = source
        self.pos = 0
        self.line = 1
        self.tokens: list[Token] = []
        self.identifiers: dict[str, None] = {}

    def _peek(self, offset: int = 0) -> str:
        i = self.pos + offset
        return self.source[i] if i < len(self.source) else ""

    def _skip_blanks(self) -> None:
        while self._peek() in (" ", "\t", "\r"):
            self.pos += 1

    def _emit(self, kind: TokenKind, text: str) -> None:
        self.tokens.append(Token(kind, text, self.line))

    def _read_alpha(self) -> str:
        start = self.pos
        while self.pos < len(self.source) and self.source[self.pos].isalpha():
            self.pos += 1
        return self.source[start : self.pos]

    def _read_string(self) -> None:
        chars: list[str] = []
        escaped = False
        self.pos += 1
        while self.pos < len(self.source):
            c = self.source[self.pos]
            self.pos += 1
            if c == '"' and not escaped:
                break
            if c == "\\" and not escaped:
                escaped = True
                continue
            chars.append(c)
            escaped = False
        # An unterminated string simply runs to end of input.
        self._emit(TokenKind.STRING, "".join(chars))

    def _read_number(self) -> None:
        start = self.pos
        while self.pos < len(self.source) and (
            self.source[self.pos] in _DIGITS or self.source[self.pos] == "."
        ):
            self.pos += 1
        text = self.source[start : self.pos]
        dots = text.count(".")
        if dots > 1:
            raise LexError(f"Invalid number '{text}'", self.line)
        if text == ".":
            return
        self._emit(TokenKind.FLOAT if dots == 1 else TokenKind.INTEGER, text)

    def _read_hex(self) -> None:
        self.pos += 2
        start = self.pos
        while self.pos < len(self.source) and self.source[self.pos] in _HEX_DIGITS:
            self.pos += 1
        self._emit(TokenKind.HEX_COLOR, self.source[start : self.pos])

    def _read_declaration(self) -> None:
        self.pos += 1
        name = self._read_alpha()
        if name not in TOP_LEVEL_DECLARATIONS:
            raise LexError(
                f"Unknown declaration '#{name}'",
                self.line,
                hint=f"Expected one of: {', '.join(TOP_LEVEL_DECLARATIONS)}",
            )
        if name != "define":
            self._emit(TokenKind.DECLARATION, name)
            return

        self._emit(TokenKind.DEFINE_MARKER, name)
        self._skip_blanks()
        if self._peek() == "\n":
            self.pos += 1
            self.line += 1
            self._skip_blanks()
        ident = self._read_alpha()
        if not ident:
            raise LexError("Missing identifier after '#define'", self.line)
        if ident in self.identifiers:
            raise LexError(f"Identifier '{ident}' already defined", self.line)
        self.identifiers[ident] = None
        self._emit(TokenKind.VARNAME, ident)

    def _read_shape(self) -> None:
        self.pos += 1
        name = self._read_alpha()
        if name not in SHAPE_FUNCTIONS:
            raise LexError(
                f"Unknown function '@{name}'",
                self.line,
                hint=f"Expected one of: {', '.join(SHAPE_FUNCTIONS)}",
            )
        self._emit(TokenKind.SHAPE_FUNCTION, name)

    def _read_word(self) -> None:
        word = self._read_alpha()
        if word in self.identifiers:
            self._emit(TokenKind.VAR, word)
        elif word in KEYWORDS:
            self._emit(TokenKind.KEYWORD, word)
        else:
            raise LexError(
                f"Unknown keyword '{word}'",
                self.line,
                hint="Expected a keyword or a defined identifier",
            )

    def _skip_comment(self) -> None:
        # Newlines inside a comment are not counted.
        end = self.source.find("%", self.pos + 1)
        self.pos = len(self.source) if end < 0 else end + 1

    def tokenize(self) -> list[Token]:
        while self.pos < len(self.source):
            c = self.source[self.pos]
            if c == '"':
                self._read_string()
            elif c in (" ", "\t"):
                self.pos += 1
            elif c == "\n":
                self.pos += 1
                self.line += 1
            elif c == "0" and self._peek(1) == "x":
                self._read_hex()
            elif c in _DIGITS or c == ".":
                self._read_number()
            elif c == ",":
                self._emit(TokenKind.COMMA, c)
                self.pos += 1
            elif c == "#":
                self._read_declaration()
            elif c == "@":
                self._read_shape()
            elif c.isalpha():
                self._read_word()
            elif c == "%":
                self._skip_comment()
            else:
                # Parentheses, semicolons, bullets and anything else are inert.
                self.pos += 1

        log.debug(
            "lexed %d tokens, %d identifiers", len(self.tokens), len(self.identifiers)
        )
        return list(self.tokens)


def tokenize(source: str) -> list[Token]:
    return Lexer(source).tokenize()


# -------------------------
# Semantic model
# -------------------------


@dataclass(frozen=True)
class Declaration:
    identifier: str
    name: str | None
    minimum: float
    maximum: float


@dataclass(frozen=True)
class Root:
    box: tuple[float, float, float, float]
    color: str
    background: str
    axes: tuple[Declaration, Declaration]


@dataclass(frozen=True)
class Grid:
    color: str = DEFAULT_STROKE
    alpha: float = 0.5
    thickness: float = 1.0
    step: float = 1.0


@dataclass(frozen=True)
class Line:
    start: Point
    end: Point
    name: str | None = None
    color: str | None = None
    thickness: float | None = None


@dataclass(frozen=True)
class Graph:
    function: str
    name: str | None = None
    color: str | None = None
    thickness: float | None = None


@dataclass(frozen=True)
class PlotPoint:
    at: Point
    name: str | None = None
    color: str | None = None


Shape = Union[Line, Graph, PlotPoint]


@dataclass(frozen=True)
class Program:
    definitions: tuple[Declaration, ...]
    root: Root
    grid: Grid | None
    shapes: tuple[Shape, ...]


# -------------------------
# Structural validation
# -------------------------


def _is_end(tok: Token) -> bool:
    return tok.kind is TokenKind.DECLARATION and tok.text == "end"


def _opens_block(tok: Token) -> bool:
    if tok.kind in (TokenKind.DEFINE_MARKER, TokenKind.SHAPE_FUNCTION):
        return True
    return tok.kind is TokenKind.DECLARATION and tok.text != "end"


def check_structure(tokens: Sequence[Token]) -> None:
    """Reject programs with an unterminated block or without exactly one root."""
    last_end = max((i for i, tok in enumerate(tokens) if _is_end(tok)), default=-1)
    for i, tok in enumerate(tokens):
        if _opens_block(tok) and i > last_end:
            raise StructureError(
                f"Missing 'end' keyword for declaration '{tok.text}'", tok.line
            )

    root_seen = False
    for tok in tokens:
        if tok.kind is TokenKind.DECLARATION and tok.text == "root":
            if root_seen:
                raise StructureError("Multiple 'root' declarations", tok.line)
            root_seen = True
    if not root_seen:
        raise StructureError("Missing 'root' declaration")


# -------------------------
# Model builder
# -------------------------


class TokenCursor:
    """Read position over an immutable token sequence."""

    def __init__(self, tokens: Iterable[Token]) -> None:
        self._tokens = tuple(tokens)
        self.pos = 0

    def at_end(self) -> bool:
        return self.pos >= len(self._tokens)

    def peek(self) -> Token | None:
        if self.at_end():
            return None
        return self._tokens[self.pos]

    def advance(self) -> Token:
        tok = self.peek()
        if tok is None:
            raise RuntimeError("advance() called past the last token")
        self.pos += 1
        return tok


_NUMBER = frozenset({TokenKind.INTEGER, TokenKind.FLOAT})
_FIELD_ALIASES = {"axes": "axis"}


def _describe(kinds: Iterable[TokenKind]) -> str:
    return ", ".join(sorted(k.value for k in kinds))


def read_tuple(
    cursor: TokenCursor,
    count: int,
    allowed: Iterable[TokenKind],
    keyword: Token,
) -> list[Token]:
    """Read exactly `count` values of the allowed kinds after `keyword`.

    Commas may appear anywhere between values and are never counted.
    """
    allowed = frozenset(allowed)
    values: list[Token] = []
    while len(values) < count:
        tok = cursor.peek()
        if tok is None:
            raise BuildError(
                f"Missing values after '{keyword.text}'",
                keyword.line,
                hint=f"Expected {count} values",
            )
        if tok.kind is TokenKind.COMMA:
            cursor.advance()
            continue
        if tok.kind not in allowed:
            raise BuildError(
                f"Unexpected token '{tok.text}'",
                tok.line,
                hint=f"Expected one of the following: {_describe(allowed)}",
            )
        values.append(cursor.advance())
    return values


_Reader = Callable[[Token], object]


class ModelBuilder:
    """Walks the token list once and assembles a Program."""

    def __init__(self, tokens: Sequence[Token]) -> None:
        self.cursor = TokenCursor(tokens)
        self.definitions: list[Declaration] = []
        self.root: Root | None = None
        self.grid: Grid | None = None
        self.shapes: list[Shape] = []

    # -- value readers, called with the keyword token already consumed

    def _value(self, keyword: Token, kinds: frozenset[TokenKind], hint: str) -> Token:
        tok = self.cursor.peek()
        if tok is None:
            raise BuildError(
                f"Missing value after '{keyword.text}' keyword", keyword.line
            )
        if tok.kind not in kinds:
            raise BuildError(f"Unexpected token '{tok.text}'", tok.line, hint=hint)
        return self.cursor.advance()

    def _number(self, keyword: Token) -> float:
        tok = self._value(keyword, _NUMBER, "Expected an integer or a float")
        return float(tok.text)

    def _string(self, keyword: Token) -> str:
        return self._value(
            keyword, frozenset({TokenKind.STRING}), "Expected a string"
        ).text

    def _color(self, keyword: Token) -> str:
        tok = self._value(
            keyword, frozenset({TokenKind.HEX_COLOR}), "Expected a hexadecimal value"
        )
        _require(
            len(tok.text) in (3, 6),
            f"Invalid color '0x{tok.text}' after '{keyword.text}'",
            tok.line,
            hint="Write colors as 0xRGB or 0xRRGGBB",
        )
        return tok.text.lower()

    def _pair(self, keyword: Token) -> Point:
        x, y = read_tuple(self.cursor, 2, _NUMBER, keyword)
        return (float(x.text), float(y.text))

    def _box(self, keyword: Token) -> tuple[float, float, float, float]:
        x, y, w, h = read_tuple(self.cursor, 4, _NUMBER, keyword)
        return (float(x.text), float(y.text), float(w.text), float(h.text))

    def _axes(self, keyword: Token) -> tuple[Declaration, Declaration]:
        first, second = read_tuple(self.cursor, 2, {TokenKind.VAR}, keyword)
        return (self._lookup(first), self._lookup(second))

    def _alpha(self, keyword: Token) -> float:
        value = self._number(keyword)
        _require(
            0.0 <= value <= 1.0, "Alpha value must be between 0 and 1", keyword.line
        )
        return value

    def _step(self, keyword: Token) -> float:
        value = self._number(keyword)
        _require(value > 0, "Step value must be greater than 0", keyword.line)
        return value

    def _lookup(self, tok: Token) -> Declaration:
        # The lexer only emits VAR for #define'd names, so this fails only for
        # token lists built by hand.
        for decl in self.definitions:
            if decl.identifier == tok.text:
                return decl
        raise BuildError(
            f"Undefined variable '{tok.text}'",
            tok.line,
            hint="Axes must reference a #define'd variable",
        )

    # -- blocks

    def _read_block(
        self, opener: Token, readers: dict[str, _Reader]
    ) -> dict[str, object]:
        """Consume `keyword value` pairs up to and including the block's `#end`."""
        values: dict[str, object] = {}
        while True:
            tok = self.cursor.peek()
            if tok is None:
                raise StructureError(
                    f"Missing 'end' keyword for declaration '{opener.text}'",
                    opener.line,
                )
            if _is_end(tok):
                self.cursor.advance()
                return values
            if tok.kind is not TokenKind.KEYWORD or tok.text not in readers:
                raise BuildError(
                    f"Unexpected token '{tok.text}'",
                    tok.line,
                    hint=f"Expected a keyword (one of: {', '.join(readers)})",
                )
            self.cursor.advance()
            values[_FIELD_ALIASES.get(tok.text, tok.text)] = readers[tok.text](tok)

    def _build_define(self) -> None:
        marker = self.cursor.advance()
        tok = self.cursor.peek()
        if tok is None or tok.kind is not TokenKind.VARNAME:
            raise BuildError(
                "Missing variable name after 'define' keyword",
                (tok or marker).line,
            )
        self.cursor.advance()

        values = self._read_block(
            marker, {"min": self._number, "max": self._number, "name": self._string}
        )
        _require(
            "max" in values,
            "Missing 'max' keyword",
            marker.line,
            hint=f"Need to specify a maximum value for the variable '{tok.text}'",
        )
        self.definitions.append(
            Declaration(
                identifier=tok.text,
                name=cast("str | None", values.get("name")),
                minimum=cast(float, values.get("min", 0.0)),
                maximum=cast(float, values["max"]),
            )
        )

    def _build_root(self, opener: Token) -> None:
        values = self._read_block(
            opener,
            {
                "box": self._box,
                "color": self._color,
                "background": self._color,
                "axes": self._axes,
                "axis": self._axes,
            },
        )
        _require(
            "box" in values,
            "Missing 'box' keyword",
            opener.line,
            hint="Need to specify a box for the root",
        )
        _require(
            "axis" in values,
            "Missing 'axis' keyword",
            opener.line,
            hint="Need to specify axes for the root",
        )
        self.root = Root(
            box=cast("tuple[float, float, float, float]", values["box"]),
            color=cast(str, values.get("color", DEFAULT_STROKE)),
            background=cast(str, values.get("background", DEFAULT_BACKGROUND)),
            axes=cast("tuple[Declaration, Declaration]", values["axis"]),
        )

    def _build_grid(self, opener: Token) -> None:
        _require(self.grid is None, "Multiple 'grid' declarations", opener.line)
        values = self._read_block(
            opener,
            {
                "color": self._color,
                "alpha": self._alpha,
                "thickness": self._number,
                "step": self._step,
            },
        )
        self.grid = Grid(**cast("dict[str, Any]", values))

    def _build_declaration(self) -> None:
        opener = self.cursor.advance()
        if opener.text == "root":
            self._build_root(opener)
        elif opener.text == "grid":
            self._build_grid(opener)
        else:
            raise BuildError(f"Unknown declaration '{opener.text}'", opener.line)

    def _build_shape(self) -> None:
        opener = self.cursor.advance()
        common: dict[str, _Reader] = {"name": self._string, "color": self._color}

        def required(values: dict[str, object], key: str) -> object:
            _require(
                key in values,
                f"Missing '{key}' keyword",
                opener.line,
                hint=f"Need to specify '{key}' for '@{opener.text}'",
            )
            return values[key]

        if opener.text == "line":
            values = self._read_block(
                opener,
                {
                    "from": self._pair,
                    "to": self._pair,
                    "thickness": self._number,
                    **common,
                },
            )
            shape: Shape = Line(
                start=cast(Point, required(values, "from")),
                end=cast(Point, required(values, "to")),
                name=cast("str | None", values.get("name")),
                color=cast("str | None", values.get("color")),
                thickness=cast("float | None", values.get("thickness")),
            )
        elif opener.text == "graph":
            values = self._read_block(
                opener,
                {"function": self._string, "thickness": self._number, **common},
            )
            shape = Graph(
                function=cast(str, required(values, "function")),
                name=cast("str | None", values.get("name")),
                color=cast("str | None", values.get("color")),
                thickness=cast("float | None", values.get("thickness")),
            )
        elif opener.text == "point":
            values = self._read_block(opener, {"at": self._pair, **common})
            shape = PlotPoint(
                at=cast(Point, required(values, "at")),
                name=cast("str | None", values.get("name")),
                color=cast("str | None", values.get("color")),
            )
        else:
            raise BuildError(f"Unknown function '{opener.text}'", opener.line)
        self.shapes.append(shape)

    def build(self) -> Program:
        while not self.cursor.at_end():
            tok = cast(Token, self.cursor.peek())
            if tok.kind is TokenKind.DEFINE_MARKER:
                self._build_define()
            elif tok.kind is TokenKind.DECLARATION:
                self._build_declaration()
            elif tok.kind is TokenKind.SHAPE_FUNCTION:
                self._build_shape()
            else:
                raise BuildError(
                    f"Unexpected token '{tok.text}'",
                    tok.line,
                    hint=(
                        "Only declarations, definitions and functions are allowed "
                        "at the top level"
                    ),
                )

        if self.root is None:
            raise StructureError("Missing 'root' declaration")
        program = Program(
            definitions=tuple(self.definitions),
            root=self.root,
            grid=self.grid,
            shapes=tuple(self.shapes),
        )
        log.debug(
            "built program: %d definitions, grid=%s, %d shapes",
            len(program.definitions),
            program.grid is not None,
            len(program.shapes),
        )
        return program


def build_program(tokens: Sequence[Token]) -> Program:
    check_structure(tokens)
    return ModelBuilder(tokens).build()


# -------------------------
# Expression sampling
# -------------------------

_X = sp.Symbol("x")
_TRANSFORMATIONS = standard_transformations + (convert_xor,)

# Every name a function may use; anything else never reaches parse_expr.
_CONSTANT_NAMES = frozenset({"x", "pi", "E"})
_FUNCTION_NAMES = frozenset(
    {
        "sin",
        "cos",
        "tan",
        "asin",
        "acos",
        "atan",
        "sinh",
        "cosh",
        "tanh",
        "exp",
        "log",
        "ln",
        "sqrt",
        "abs",
        "Abs",
        "floor",
        "ceiling",
    }
)
_EXPRESSION_TOKEN = re.compile(
    r"\s*(?:(?P<number>\d+\.?\d*|\.\d+)|(?P<name>[A-Za-z]+)|(?P<op>\*\*|[-+*/^(),]))"
)


def _check_expression(text: str) -> None:
    """Reject anything but numbers, known names, arithmetic and parentheses."""
    body = text.rstrip()
    pos = 0
    while pos < len(body):
        m = _EXPRESSION_TOKEN.match(body, pos)
        if m is None:
            bad = body[pos:].lstrip()[:1]
            raise EvaluationError(
                f"Invalid function '{text}'", hint=f"Unexpected character {bad!r}"
            )
        pos = m.end()
        name = m.group("name")
        if name is None or name in _CONSTANT_NAMES:
            continue
        called = body[pos:].lstrip().startswith("(")
        if called and name in _FUNCTION_NAMES:
            continue
        kind = "function" if called else "variable"
        raise EvaluationError(
            f"Unknown {kind} '{name}' in function '{text}'",
            hint="Functions may only use x, pi, E and "
            + ", ".join(sorted(_FUNCTION_NAMES)),
        )


def compile_expression(text: str) -> Callable[[float], float]:
    """Parse `text` as a function of x and return a float evaluator.

    `^` is power. Domain errors and undefined constants such as 1/0 evaluate
    to NaN, division by zero at a sample to an infinity. Text outside the
    arithmetic vocabulary, or that cannot be parsed, raises EvaluationError.
    """
    _check_expression(text)
    try:
        expr = parse_expr(text, local_dict={"x": _X}, transformations=_TRANSFORMATIONS)
    except Exception as e:  # parse_expr surfaces whatever eval raises
        raise EvaluationError(f"Invalid function '{text}': {e}") from e
    if not isinstance(expr, sp.Expr):
        raise EvaluationError(f"Function '{text}' is not an arithmetic expression")
    unknown = sorted(str(s) for s in expr.free_symbols if s != _X)
    if unknown:
        raise EvaluationError(
            f"Unknown variable '{unknown[0]}' in function '{text}'",
            hint="Functions may only use x",
        )

    # sympy folds 1/0 and log(0) to complex infinity, which numpy cannot print.
    expr = expr.subs(sp.zoo, sp.nan)
    try:
        fn = sp.lambdify(_X, expr, modules="numpy")
    except (KeyError, NameError, SyntaxError, TypeError, ValueError) as e:
        raise EvaluationError(f"Cannot compile function '{text}': {e}") from e

    def evaluate(x: float) -> float:
        try:
            with np.errstate(all="ignore"):
                y = np.asarray(fn(np.float64(x)))
            if np.iscomplexobj(y):
                return float(y.real) if y.imag == 0 else math.nan
            return float(y)
        except (ArithmeticError, TypeError, ValueError, NameError) as e:
            raise EvaluationError(
                f"Cannot evaluate function '{text}' at x={x}: {e}"
            ) from e

    return evaluate


def sample(text: str, x: float) -> float:
    return compile_expression(text)(x)


# -------------------------
# SVG rendering
# -------------------------


@dataclass(frozen=True)
class RenderOptions:
    precision: int = 3
    point_radius: float = 3.0
    xml_declaration: bool = True

    def __post_init__(self) -> None:
        if not 0 <= self.precision <= 10:
            raise ValueError("precision must be between 0 and 10")


def _fmt(x: float, precision: int) -> str:
    # Normalise -0.0 so it never produces "-0" in SVG output.
    if not x:
        x = 0.0
    s = f"{x:.{precision}f}"
    if "." in s:
        s = s.rstrip("0").rstrip(".")
    return s or "0"


def _escape(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def transform(p: Point, canvas_height: float) -> Point:
    """Shift right by the padding and flip y so the origin sits bottom-left."""
    return (p[0] + PADDING, canvas_height - p[1])


def _optional_attrs(
    name: str | None, thickness: float | None, precision: int
) -> str:
    out = ""
    if name is not None:
        out += f' data-name="{_escape(name)}"'
    if thickness is not None:
        out += f' stroke-width="{_fmt(thickness, precision)}"'
    return out


def _grid_elements(
    grid: Grid, width: float, height: float, precision: int
) -> list[str]:
    step = _fmt(grid.step, precision)
    return [
        "  <defs>",
        f'    <pattern id="grid" width="{step}" height="{step}" '
        'patternUnits="userSpaceOnUse">',
        f'      <path d="M {step} 0 L 0 0 0 {step}" fill="none" '
        f'stroke="#{grid.color}" stroke-width="{_fmt(grid.thickness, precision)}" '
        f'stroke-opacity="{_fmt(grid.alpha, precision)}" />',
        "    </pattern>",
        "  </defs>",
        f'  <rect x="0" y="0" width="{_fmt(width, precision)}" '
        f'height="{_fmt(height, precision)}" fill="url(#grid)" />',
    ]


def _axis_elements(root: Root, precision: int) -> list[str]:
    x_axis, y_axis = root.axes
    # Short tick indicators anchored at the untransformed origin.
    ends = [(x_axis.maximum, PADDING), (PADDING, y_axis.maximum)]
    return [
        f'  <line x1="0" y1="0" x2="{_fmt(x, precision)}" y2="{_fmt(y, precision)}" '
        f'stroke="#{root.color}" stroke-width="1" />'
        for x, y in ends
    ]


def _graph_path(graph: Graph, width: float, height: float, precision: int) -> str:
    evaluate = compile_expression(graph.function)
    commands: list[str] = []
    pen_down = False
    skipped = 0
    for x in range(math.ceil(width)):
        y = evaluate(x)
        if not math.isfinite(y):
            skipped += 1
            pen_down = False
            continue
        # Curves get the y-flip but not the x padding applied to other shapes.
        op = "L" if pen_down else "M"
        commands.append(f"{op} {_fmt(x, precision)} {_fmt(height - y, precision)}")
        pen_down = True
    log.debug(
        "graph %r: %d samples, %d skipped", graph.function, len(commands), skipped
    )
    return " ".join(commands)


def _shape_element(shape: Shape, root: Root, height: float, opts: RenderOptions) -> str:
    p = opts.precision
    if isinstance(shape, Line):
        x1, y1 = transform(shape.start, height)
        x2, y2 = transform(shape.end, height)
        stroke = f' stroke="#{shape.color}"' if shape.color is not None else ""
        return (
            f'  <line x1="{_fmt(x1, p)}" y1="{_fmt(y1, p)}" '
            f'x2="{_fmt(x2, p)}" y2="{_fmt(y2, p)}"{stroke}'
            f"{_optional_attrs(shape.name, shape.thickness, p)} />"
        )
    if isinstance(shape, PlotPoint):
        cx, cy = transform(shape.at, height)
        color = shape.color or DEFAULT_STROKE
        return (
            f'  <circle cx="{_fmt(cx, p)}" cy="{_fmt(cy, p)}" '
            f'r="{_fmt(opts.point_radius, p)}" stroke="#{color}" fill="#{color}"'
            f"{_optional_attrs(shape.name, None, p)} />"
        )
    if isinstance(shape, Graph):
        d = _graph_path(shape, root.box[2], height, p)
        color = shape.color or DEFAULT_STROKE
        return (
            f'  <path d="{d}" fill="none" stroke="#{color}"'
            f"{_optional_attrs(shape.name, shape.thickness, p)} />"
        )
    raise TypeError(f"Unsupported shape {type(shape).__name__}")


def render_svg(program: Program, options: RenderOptions | None = None) -> str:
    opts = options or RenderOptions()
    p = opts.precision
    root = program.root
    width = root.box[2] + PADDING
    height = root.box[3] + PADDING
    w, h = _fmt(width, p), _fmt(height, p)

    lines: list[str] = []
    if opts.xml_declaration:
        lines.append('<?xml version="1.0" encoding="UTF-8"?>')
    lines.append(
        '<svg xmlns="http://www.w3.org/2000/svg" version="1.1" '
        f'width="{w}" height="{h}" viewBox="0 0 {w} {h}">'
    )
    lines.append(
        f'  <rect x="0" y="0" width="{w}" height="{h}" fill="#{root.background}" />'
    )
    if program.grid is not None:
        lines.extend(_grid_elements(program.grid, width, height, p))
    lines.extend(_axis_elements(root, p))
    for shape in program.shapes:
        lines.append(_shape_element(shape, root, height, opts))
    lines.append("</svg>")
    return "\n".join(lines) + "\n"


def compile_source(source: str, options: RenderOptions | None = None) -> str:
    """Run the whole pipeline. Empty input compiles to an empty string."""
    if not source:
        return ""
    program = build_program(tokenize(source))
    return render_svg(program, options)


def summarize(program: Program) -> list[str]:
    out: list[str] = []
    for d in program.definitions:
        label = f' "{d.name}"' if d.name is not None else ""
        out.append(f"define {d.identifier}{label}: [{d.minimum:g}, {d.maximum:g}]")
    root = program.root
    box = ", ".join(f"{v:g}" for v in root.box)
    out.append(
        f"root: box=({box}) axes=({root.axes[0].identifier}, "
        f"{root.axes[1].identifier}) color={root.color} background={root.background}"
    )
    if program.grid is None:
        out.append("grid: none")
    else:
        g = program.grid
        out.append(
            f"grid: color={g.color} alpha={g.alpha:g} thickness={g.thickness:g} "
            f"step={g.step:g}"
        )
    kinds = {Line: "line", Graph: "graph", PlotPoint: "point"}
    names = ", ".join(kinds[type(s)] for s in program.shapes)
    out.append(f"shapes: {len(program.shapes)}" + (f" ({names})" if names else ""))
    return out


# -------------------------
# CLI / Help
# -------------------------

HELP_EPILOG = r"""
SOURCE SYNTAX

A program is a sequence of blocks. Each block starts with a `#` declaration
or an `@` shape and ends with `#end`. Inside a block, each line is a keyword
followed by its value. Parentheses, semicolons and leading dashes are ignored;
commas may separate tuple values or be left out.

  % comments sit between percent signs %

  #define x           a named range; `max` required, `min` defaults to 0
      min 0
      max 100
      name "x"
  #end

  #root               exactly one; `box` and `axis` (or `axes`) required
      box (0, 0, 100, 100)
      color 0x000000        default 0x000000
      background 0xffffff   default 0xffffff
      axis (x, y)
  #end

  #grid               optional, at most one
      color 0x000000        default 0x000000
      alpha 0.2             0..1, default 0.5
      thickness 1           default 1
      step 10               > 0, default 1
  #end

  @line   from (x, y)  to (x, y)  [name "..."] [color 0x...] [thickness n]  #end
  @graph  function "x^2"          [name "..."] [color 0x...] [thickness n]  #end
  @point  at (x, y)               [name "..."] [color 0x...]                #end

Graph functions are sampled at every integer x across the box width; `^` is
power and the usual functions (sin, cos, sqrt, log, exp, ...) are available.

EXIT STATUS

  0 on success (including empty input), 2 on a compile or file error.
"""


def _precision(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid precision {value!r}") from None
    if not 0 <= n <= 10:
        raise argparse.ArgumentTypeError("precision must be between 0 and 10")
    return n


def _add_source_arguments(parser: argparse.ArgumentParser) -> None:
    src = parser.add_mutually_exclusive_group(required=True)
    src.add_argument(
        "path", nargs="?", help="Path of the .g source file ('-' reads stdin)."
    )
    src.add_argument("-e", "--source", help="Compile this source text instead.")


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="gplot",
        description="Compile .g plot programs to SVG.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=HELP_EPILOG,
    )
    p.add_argument(
        "-v", "--verbose", action="store_true", help="Log pipeline progress to stderr."
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    pc = sub.add_parser(
        "compile",
        help="Compile a .g program to an SVG document.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_source_arguments(pc)
    pc.add_argument("-o", "--output", help="Write the SVG here instead of stdout.")
    pc.add_argument(
        "--precision",
        type=_precision,
        default=3,
        help="Decimal places for coordinates (0..10, default 3).",
    )
    pc.add_argument(
        "--no-xml-declaration",
        action="store_true",
        help="Omit the <?xml ...?> header line.",
    )

    pk = sub.add_parser(
        "check",
        help="Validate a .g program and print a summary of its model.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_source_arguments(pk)

    pt = sub.add_parser(
        "tokens",
        help="Print the token stream of a .g program.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_source_arguments(pt)

    return p


# -------------------------
# Commands
# -------------------------


def _ensure_parent_dir(path: str) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)) or ".", exist_ok=True)


def read_source(path: str | None, inline: str | None) -> str:
    if inline is not None:
        return inline
    if path == "-":
        return sys.stdin.read()
    with open(cast(str, path), encoding="utf-8") as f:
        return f.read()


def cmd_compile(source: str, output_path: str | None, options: RenderOptions) -> None:
    svg = compile_source(source, options)
    if output_path is None:
        sys.stdout.write(svg)
        return
    _ensure_parent_dir(output_path)
    with open(output_path, "w", encoding="utf-8") as f:
        f.write(svg)
    log.debug("wrote %s", output_path)


def cmd_check(source: str) -> None:
    program = build_program(tokenize(source))
    for text in summarize(program):
        print(text)


def cmd_tokens(source: str) -> None:
    for tok in tokenize(source):
        print(f"{tok.line}\t{tok.kind.name}\t{tok.text}")


def main(argv: list[str] | None = None) -> int:
    ap = build_argparser()
    args = ap.parse_args(argv)

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s"
        )

    try:
        source = read_source(args.path, args.source)
        if not source:
            log.debug("empty source, nothing to compile")
            return 0
        if args.cmd == "compile":
            options = RenderOptions(
                precision=args.precision, xml_declaration=not args.no_xml_declaration
            )
            cmd_compile(source, args.output, options)
        elif args.cmd == "check":
            cmd_check(source)
        elif args.cmd == "tokens":
            cmd_tokens(source)
        else:
            raise AssertionError("unreachable")
    except CompileError as e:
        print(f"[ERROR]: {e}", file=sys.stderr)
        return 2
    except OSError as e:
        print(f"File error: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
