"""
Normalized source model.

Everything the engine knows about a C translation unit lives in these frozen
dataclasses. The adapter builds them once from the external parser's output;
extractors only ever read them.
"""

from __future__ import annotations
from dataclasses import dataclass, field
import re
from typing import Dict, FrozenSet, Iterator, Optional, Tuple, Union


# ============================================================
# ====================== SOURCE SPANS ========================
# ============================================================

# Line number used for scopes that run to the end of a file.
END_OF_FILE = 2 ** 31 - 1


@dataclass(frozen=True, order=True)
class SourceSpan:
    file: str
    line_start: int
    col_start: int
    line_end: int
    col_end: int

    @classmethod
    def point(cls, file: str, line: int, column: int) -> "SourceSpan":
        return cls(file, line, column, line, column)

    @classmethod
    def lines(cls, file: str, first: int, last: Optional[int] = None) -> "SourceSpan":
        """Span covering whole lines ``first..last`` (inclusive)."""
        return cls(file, first, 1, last if last is not None else first, END_OF_FILE)

    @classmethod
    def whole_file(cls, file: str) -> "SourceSpan":
        return cls(file, 1, 1, END_OF_FILE, END_OF_FILE)

    @property
    def start(self) -> Tuple[int, int]:
        return (self.line_start, self.col_start)

    @property
    def end(self) -> Tuple[int, int]:
        return (self.line_end, self.col_end)

    def covers(self, other: "SourceSpan") -> bool:
        if self.file != other.file:
            return False
        return self.start <= other.start and other.end <= self.end

    def overlaps(self, other: "SourceSpan") -> bool:
        if self.file != other.file:
            return False
        return self.start <= other.end and other.start <= self.end

    def to_dict(self) -> Dict[str, object]:
        return {
            "file": self.file,
            "line_start": self.line_start,
            "col_start": self.col_start,
            "line_end": self.line_end,
            "col_end": self.col_end,
        }

    def __str__(self) -> str:
        return f"{self.file}:{self.line_start}:{self.col_start}"


# ============================================================
# ========================== TYPES ===========================
# ============================================================

# (width in bits, signed) for the integer spellings we understand.
# Plain int/long follow the 32-bit targets this tool is aimed at.
INTEGER_TYPES: Dict[str, Tuple[int, bool]] = {
    "_Bool": (8, False),
    "bool": (8, False),
    "char": (8, True),
    "signed char": (8, True),
    "unsigned char": (8, False),
    "short": (16, True),
    "short int": (16, True),
    "signed short": (16, True),
    "unsigned short": (16, False),
    "unsigned short int": (16, False),
    "int": (32, True),
    "signed": (32, True),
    "signed int": (32, True),
    "unsigned": (32, False),
    "unsigned int": (32, False),
    "long": (32, True),
    "long int": (32, True),
    "signed long": (32, True),
    "unsigned long": (32, False),
    "unsigned long int": (32, False),
    "long long": (64, True),
    "long long int": (64, True),
    "unsigned long long": (64, False),
    "unsigned long long int": (64, False),
    "int8_t": (8, True),
    "uint8_t": (8, False),
    "int16_t": (16, True),
    "uint16_t": (16, False),
    "int32_t": (32, True),
    "uint32_t": (32, False),
    "int64_t": (64, True),
    "uint64_t": (64, False),
    "int_least8_t": (8, True),
    "uint_least8_t": (8, False),
    "int_fast8_t": (8, True),
    "uint_fast8_t": (8, False),
    "size_t": (32, False),
    "ptrdiff_t": (32, True),
    "intptr_t": (32, True),
    "uintptr_t": (32, False),
}

FLOAT_TYPES = frozenset({"float", "double", "long double"})

# Spellings whose width depends on the target. Plain char is left out:
# it is the right type for text.
NATIVE_INTEGER_TYPES = frozenset(
    name
    for name in INTEGER_TYPES
    if not name.endswith("_t") and name not in ("char", "_Bool", "bool")
)

_WHITESPACE = re.compile(r"\s+")


def normalize_spelling(text: str) -> str:
    return _WHITESPACE.sub(" ", text.strip())


@dataclass(frozen=True)
class CType:
    """
    Simplified C type.

    ``is_const``/``is_volatile`` qualify the base type (the pointee for
    pointers); ``pointer_const`` is a top-level const on the pointer itself.
    """
    spelling: str
    pointer_depth: int = 0
    is_const: bool = False
    is_volatile: bool = False
    pointer_const: bool = False
    is_array: bool = False
    array_length: Optional[int] = None

    @property
    def is_pointer(self) -> bool:
        return self.pointer_depth > 0

    @property
    def is_scalar_integer(self) -> bool:
        return not self.is_pointer and not self.is_array and self.spelling in INTEGER_TYPES

    @property
    def integer_width(self) -> Optional[int]:
        if not self.is_scalar_integer:
            return None
        return INTEGER_TYPES[self.spelling][0]

    @property
    def is_signed(self) -> bool:
        return self.is_scalar_integer and INTEGER_TYPES[self.spelling][1]

    @property
    def is_floating(self) -> bool:
        return not self.is_pointer and self.spelling in FLOAT_TYPES

    @property
    def is_native_integer(self) -> bool:
        return self.spelling in NATIVE_INTEGER_TYPES

    def is_aggregate(self, struct_types: FrozenSet[str]) -> bool:
        if self.is_pointer:
            return False
        if self.spelling.startswith(("struct ", "union ")):
            return True
        return self.spelling in struct_types

    def render(self) -> str:
        parts = []
        if self.is_volatile:
            parts.append("volatile")
        if self.is_const:
            parts.append("const")
        parts.append(self.spelling)
        text = " ".join(parts)
        if self.pointer_depth:
            text += " " + "*" * self.pointer_depth
            if self.pointer_const:
                text += " const"
        if self.is_array:
            text += f"[{self.array_length if self.array_length is not None else ''}]"
        return text


# ============================================================
# ======================= EXPRESSIONS ========================
# ============================================================

_INT_LITERAL = re.compile(
    r"^(?P<body>0[xX][0-9a-fA-F]+|0[bB][01]+|[0-9]+)(?P<suffix>[uUlL]*)$"
)


@dataclass(frozen=True)
class Name:
    id: str
    span: SourceSpan

    def children(self) -> Tuple["Expr", ...]:
        return ()


@dataclass(frozen=True)
class Literal:
    text: str
    span: SourceSpan

    def children(self) -> Tuple["Expr", ...]:
        return ()

    @property
    def int_value(self) -> Optional[int]:
        match = _INT_LITERAL.match(self.text)
        if not match:
            return None
        body = match.group("body")
        if body[:2] in ("0x", "0X"):
            return int(body[2:], 16)
        if body[:2] in ("0b", "0B"):
            return int(body[2:], 2)
        if len(body) > 1 and body.startswith("0"):
            try:
                return int(body, 8)
            except ValueError:
                return None
        return int(body)

    @property
    def is_unsigned(self) -> bool:
        match = _INT_LITERAL.match(self.text)
        return bool(match and "u" in match.group("suffix").lower())

    @property
    def is_octal(self) -> bool:
        match = _INT_LITERAL.match(self.text)
        if not match:
            return False
        body = match.group("body")
        return len(body) > 1 and body.startswith("0") and body[1].isdigit()


@dataclass(frozen=True)
class Unary:
    op: str  # '*', '&', '!', '-', '+', '~', '++', '--'
    operand: "Expr"
    span: SourceSpan
    postfix: bool = False

    def children(self) -> Tuple["Expr", ...]:
        return (self.operand,)


@dataclass(frozen=True)
class Binary:
    op: str
    left: "Expr"
    right: "Expr"
    span: SourceSpan

    def children(self) -> Tuple["Expr", ...]:
        return (self.left, self.right)


@dataclass(frozen=True)
class Assign:
    op: str  # '=', '+=', '|=', ...
    target: "Expr"
    value: "Expr"
    span: SourceSpan

    def children(self) -> Tuple["Expr", ...]:
        return (self.target, self.value)


@dataclass(frozen=True)
class Call:
    callee: str
    args: Tuple["Expr", ...]
    span: SourceSpan

    def children(self) -> Tuple["Expr", ...]:
        return self.args


@dataclass(frozen=True)
class Cast:
    ctype: CType
    operand: "Expr"
    span: SourceSpan

    def children(self) -> Tuple["Expr", ...]:
        return (self.operand,)


@dataclass(frozen=True)
class Member:
    base: "Expr"
    field: str
    arrow: bool
    span: SourceSpan

    def children(self) -> Tuple["Expr", ...]:
        return (self.base,)


@dataclass(frozen=True)
class Index:
    base: "Expr"
    index: "Expr"
    span: SourceSpan

    def children(self) -> Tuple["Expr", ...]:
        return (self.base, self.index)


@dataclass(frozen=True)
class InitList:
    items: Tuple["Expr", ...]
    span: SourceSpan

    def children(self) -> Tuple["Expr", ...]:
        return self.items


@dataclass(frozen=True)
class Conditional:
    cond: "Expr"
    then: "Expr"
    orelse: "Expr"
    span: SourceSpan

    def children(self) -> Tuple["Expr", ...]:
        return (self.cond, self.then, self.orelse)


Expr = Union[Name, Literal, Unary, Binary, Assign, Call, Cast, Member, Index, InitList, Conditional]


def render(expr: Expr) -> str:
    """Compact C rendering of an expression, for messages."""
    if isinstance(expr, Name):
        return expr.id
    if isinstance(expr, Literal):
        return expr.text
    if isinstance(expr, Unary):
        inner = render(expr.operand)
        return f"{inner}{expr.op}" if expr.postfix else f"{expr.op}{inner}"
    if isinstance(expr, Binary):
        return f"{render(expr.left)} {expr.op} {render(expr.right)}"
    if isinstance(expr, Assign):
        return f"{render(expr.target)} {expr.op} {render(expr.value)}"
    if isinstance(expr, Call):
        return f"{expr.callee}({', '.join(render(arg) for arg in expr.args)})"
    if isinstance(expr, Cast):
        return f"({expr.ctype.render()}){render(expr.operand)}"
    if isinstance(expr, Member):
        return f"{render(expr.base)}{'->' if expr.arrow else '.'}{expr.field}"
    if isinstance(expr, Index):
        return f"{render(expr.base)}[{render(expr.index)}]"
    if isinstance(expr, InitList):
        return "{" + ", ".join(render(item) for item in expr.items) + "}"
    if isinstance(expr, Conditional):
        return f"{render(expr.cond)} ? {render(expr.then)} : {render(expr.orelse)}"
    return "<expr>"


def iter_expr(expr: Optional[Expr]) -> Iterator[Expr]:
    """Pre-order walk over an expression and all of its sub-expressions."""
    if expr is None:
        return
    stack = [expr]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children()))


# ============================================================
# ====================== DECLARATIONS ========================
# ============================================================

@dataclass(frozen=True)
class Declaration:
    name: str
    ctype: CType
    span: SourceSpan
    storage: str = "auto"  # "auto", "static", "extern", "register"
    init: Optional[Expr] = None
    file_scope: bool = False

    @property
    def is_static(self) -> bool:
        return self.storage == "static"

    @property
    def has_static_duration(self) -> bool:
        return self.file_scope or self.storage in ("static", "extern")


@dataclass(frozen=True)
class Parameter:
    name: str
    ctype: CType
    span: SourceSpan

    @property
    def is_const(self) -> bool:
        return self.ctype.is_const

    @property
    def is_pointer(self) -> bool:
        return self.ctype.is_pointer


# ============================================================
# ======================== STATEMENTS ========================
# ============================================================

@dataclass(frozen=True)
class DeclStmt:
    decl: Declaration
    span: SourceSpan


@dataclass(frozen=True)
class ExprStmt:
    expr: Expr
    span: SourceSpan


@dataclass(frozen=True)
class IfStmt:
    cond: Expr
    then_body: Tuple["Stmt", ...]
    else_body: Optional[Tuple["Stmt", ...]]
    span: SourceSpan


@dataclass(frozen=True)
class WhileStmt:
    cond: Expr
    body: Tuple["Stmt", ...]
    span: SourceSpan


@dataclass(frozen=True)
class DoWhileStmt:
    body: Tuple["Stmt", ...]
    cond: Expr
    span: SourceSpan


@dataclass(frozen=True)
class ForStmt:
    init: Optional["Stmt"]
    cond: Optional[Expr]
    step: Optional[Expr]
    body: Tuple["Stmt", ...]
    span: SourceSpan


@dataclass(frozen=True)
class SwitchCase:
    labels: Tuple[str, ...]  # e.g. ("STATE_ERR", "3") or ("default",)
    body: Tuple["Stmt", ...]
    span: SourceSpan

    @property
    def is_default(self) -> bool:
        return "default" in self.labels


@dataclass(frozen=True)
class SwitchStmt:
    control: Expr
    cases: Tuple[SwitchCase, ...]
    span: SourceSpan

    @property
    def has_default(self) -> bool:
        return any(case.is_default for case in self.cases)


@dataclass(frozen=True)
class ReturnStmt:
    value: Optional[Expr]
    span: SourceSpan


@dataclass(frozen=True)
class BreakStmt:
    span: SourceSpan


@dataclass(frozen=True)
class ContinueStmt:
    span: SourceSpan


@dataclass(frozen=True)
class GotoStmt:
    label: str
    span: SourceSpan


@dataclass(frozen=True)
class LabelStmt:
    name: str
    span: SourceSpan


@dataclass(frozen=True)
class FallthroughStmt:
    """Explicit fallthrough marker (attribute or recognized comment)."""
    span: SourceSpan


@dataclass(frozen=True)
class Block:
    body: Tuple["Stmt", ...]
    span: SourceSpan


Stmt = Union[
    DeclStmt, ExprStmt, IfStmt, WhileStmt, DoWhileStmt, ForStmt, SwitchStmt,
    ReturnStmt, BreakStmt, ContinueStmt, GotoStmt, LabelStmt, FallthroughStmt, Block,
]

EXIT_STATEMENTS = (ReturnStmt, BreakStmt, ContinueStmt, GotoStmt)


# ============================================================
# ======================== FUNCTIONS =========================
# ============================================================

@dataclass(frozen=True)
class Function:
    name: str
    file: str
    return_type: CType
    params: Tuple[Parameter, ...]
    body: Tuple[Stmt, ...]
    span: SourceSpan
    attributes: Tuple[str, ...] = ()
    is_isr: bool = False
    is_static: bool = False
    calls: FrozenSet[str] = frozenset()

    @property
    def identity(self) -> Tuple[str, str]:
        return (self.file, self.name)

    def param(self, name: str) -> Optional[Parameter]:
        for param in self.params:
            if param.name == name:
                return param
        return None


# ============================================================
# ===================== EXCEPTION TAGS =======================
# ============================================================

@dataclass(frozen=True)
class ExceptionTag:
    """
    A documented exception: waives matching violations inside ``scope``.

    An empty ``rules`` set applies to every rule in scope.
    """
    tag_id: str
    justification: str
    scope: SourceSpan
    rules: FrozenSet[str] = frozenset()
    origin: str = "config"  # "config" or "inline"

    @property
    def is_justified(self) -> bool:
        return bool(self.tag_id.strip()) and bool(self.justification.strip())

    def admits(self, rule_id: str) -> bool:
        return not self.rules or rule_id in self.rules

    def applies_to(self, rule_id: str, span: SourceSpan) -> bool:
        return self.admits(rule_id) and self.scope.covers(span)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.tag_id,
            "justification": self.justification,
            "scope": self.scope.to_dict(),
            "rules": sorted(self.rules),
            "origin": self.origin,
        }

    def __str__(self) -> str:
        rules = ",".join(sorted(self.rules)) or "*"
        return f"{self.tag_id or '<unnamed>'} [{rules}] @ {self.scope}"


# ============================================================
# =================== TRANSLATION UNIT =======================
# ============================================================

@dataclass(frozen=True)
class Token:
    kind: str  # "identifier", "keyword", "literal", "punctuation", "comment"
    text: str
    span: SourceSpan


@dataclass(frozen=True)
class TranslationUnit:
    """
    One source file's normalized view: file-scope declarations and function
    definitions in source order, plus the token stream when the parser
    provides one.
    """
    path: str
    declarations: Tuple[Declaration, ...] = ()
    functions: Tuple[Function, ...] = ()
    struct_types: FrozenSet[str] = frozenset()
    tokens: Tuple[Token, ...] = ()
    exception_tags: Tuple[ExceptionTag, ...] = ()
    globals: Dict[str, Declaration] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not self.globals:
            object.__setattr__(self, "globals", {decl.name: decl for decl in self.declarations})

    def function(self, name: str) -> Optional[Function]:
        for fn in self.functions:
            if fn.name == name:
                return fn
        return None


# ============================================================
# ==================== TREE NAVIGATION =======================
# ============================================================

def child_bodies(stmt: Stmt) -> Tuple[Tuple[Stmt, ...], ...]:
    """Statement sequences nested directly inside ``stmt``, in source order."""
    if isinstance(stmt, IfStmt):
        if stmt.else_body is None:
            return (stmt.then_body,)
        return (stmt.then_body, stmt.else_body)
    if isinstance(stmt, (WhileStmt, DoWhileStmt, Block)):
        return (stmt.body,)
    if isinstance(stmt, ForStmt):
        if stmt.init is None:
            return (stmt.body,)
        return ((stmt.init,), stmt.body)
    if isinstance(stmt, SwitchStmt):
        return tuple(case.body for case in stmt.cases)
    return ()


def stmt_exprs(stmt: Stmt) -> Tuple[Expr, ...]:
    """Expressions owned directly by ``stmt`` (not by nested statements)."""
    if isinstance(stmt, DeclStmt):
        return (stmt.decl.init,) if stmt.decl.init is not None else ()
    if isinstance(stmt, ExprStmt):
        return (stmt.expr,)
    if isinstance(stmt, (IfStmt, WhileStmt, DoWhileStmt)):
        return (stmt.cond,)
    if isinstance(stmt, ForStmt):
        return tuple(expr for expr in (stmt.cond, stmt.step) if expr is not None)
    if isinstance(stmt, SwitchStmt):
        return (stmt.control,)
    if isinstance(stmt, ReturnStmt):
        return (stmt.value,) if stmt.value is not None else ()
    return ()


def iter_stmts(body: Tuple[Stmt, ...]) -> Iterator[Stmt]:
    """Pre-order walk over a statement sequence and everything nested in it."""
    for stmt in body:
        yield stmt
        for nested in child_bodies(stmt):
            yield from iter_stmts(nested)


def iter_body_exprs(body: Tuple[Stmt, ...]) -> Iterator[Expr]:
    """Every expression node reachable from a statement sequence."""
    for stmt in iter_stmts(body):
        for expr in stmt_exprs(stmt):
            yield from iter_expr(expr)
