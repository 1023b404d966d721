"""
Function-body traversal shared by the extractors.

``walk_function`` visits every expression node of a function once, in source
order, and records for each a ``Site``: how the node is accessed (read, write,
read-modify-write, address taken), which checks dominate it, whether it sits
inside a critical section and how deeply it is nested in loops.

Dominance is shallow on purpose: a check dominates a use when it is an
enclosing condition proving the property on the taken branch, an earlier
``if (<negated check>) <exit>`` in an enclosing block, or an assert-style
call. Assigning a variable drops the null checks proven for it. Range checks
are sticky: once any relational comparison on an operand has been seen in
the function, later casts of that operand count as checked.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Set, Tuple

from firmlint.config import Conventions
from firmlint.model import (
    Assign,
    Binary,
    Block,
    Call,
    Cast,
    Conditional,
    DeclStmt,
    DoWhileStmt,
    EXIT_STATEMENTS,
    Expr,
    ExprStmt,
    ForStmt,
    Function,
    IfStmt,
    Index,
    Literal,
    Member,
    Name,
    ReturnStmt,
    SourceSpan,
    Stmt,
    SwitchStmt,
    Unary,
    WhileStmt,
    render,
)

READ = "read"
WRITE = "write"
RMW = "rmw"
ADDR = "addr"

NULL_SPELLINGS = frozenset({"NULL", "0", "nullptr", "((void*)0)", "((void *)0)"})
RELATIONAL_OPS = frozenset({"<", "<=", ">", ">="})


@dataclass(frozen=True)
class Site:
    expr: Expr
    access: str
    stmt: Stmt
    nonnull: FrozenSet[str]
    ranged: FrozenSet[str]
    critical: bool
    loop_depth: int

    @property
    def span(self) -> SourceSpan:
        return self.expr.span


@dataclass(frozen=True)
class CriticalIssue:
    span: SourceSpan
    reason: str


@dataclass
class FunctionWalk:
    function: Function
    sites: List[Site]
    critical_issues: List[CriticalIssue]


def root_name(expr: Expr) -> Optional[str]:
    """The variable an lvalue expression ultimately names, if any."""
    while True:
        if isinstance(expr, Name):
            return expr.id
        if isinstance(expr, (Member, Index)):
            expr = expr.base
        elif isinstance(expr, Unary) and expr.op == "*":
            expr = expr.operand
        elif isinstance(expr, Cast):
            expr = expr.operand
        else:
            return None


def is_null(expr: Expr) -> bool:
    if isinstance(expr, Cast):
        return is_null(expr.operand)
    return isinstance(expr, (Name, Literal)) and render(expr).replace(" ", "") in {
        spelling.replace(" ", "") for spelling in NULL_SPELLINGS
    }


def ends_with_exit(body: Tuple[Stmt, ...]) -> bool:
    if not body:
        return False
    last = body[-1]
    if isinstance(last, Block):
        return ends_with_exit(last.body)
    return isinstance(last, EXIT_STATEMENTS)


def proves_nonnull(cond: Expr, truth: bool) -> Set[str]:
    """Pointer expressions known non-null when ``cond`` evaluates to ``truth``."""
    if isinstance(cond, Unary) and cond.op == "!":
        return proves_nonnull(cond.operand, not truth)
    if isinstance(cond, Binary):
        if cond.op == "&&" and truth:
            return proves_nonnull(cond.left, True) | proves_nonnull(cond.right, True)
        if cond.op == "||" and not truth:
            return proves_nonnull(cond.left, False) | proves_nonnull(cond.right, False)
        if cond.op in ("!=", "=="):
            if is_null(cond.right):
                checked = cond.left
            elif is_null(cond.left):
                checked = cond.right
            else:
                return set()
            if (cond.op == "!=") == truth:
                return {render(checked)}
        return set()
    if isinstance(cond, (Name, Member, Index)) and truth:
        return {render(cond)}
    if isinstance(cond, Cast):
        return proves_nonnull(cond.operand, truth)
    return set()


def range_checked(cond: Expr) -> Set[str]:
    """Operands of every relational comparison inside ``cond``."""
    found: Set[str] = set()
    stack = [cond]
    while stack:
        node = stack.pop()
        if isinstance(node, Binary) and node.op in RELATIONAL_OPS:
            for side in (node.left, node.right):
                found.add(render(side))
                if isinstance(side, Cast):
                    found.add(render(side.operand))
        stack.extend(node.children())
    return found


class _Walker:
    def __init__(self, function: Function, conventions: Conventions) -> None:
        self.function = function
        self.conventions = conventions
        self.sites: List[Site] = []
        self.issues: List[CriticalIssue] = []
        self.ranged: Set[str] = set()
        self.critical_depth = 0
        self.loop_depth = 0
        self._stmt: Optional[Stmt] = None

    # ------------------------------------------------------- statements

    def body(self, stmts: Tuple[Stmt, ...], nonnull: FrozenSet[str]) -> None:
        for stmt in stmts:
            self.stmt(stmt, nonnull)
            nonnull = self._after(stmt, nonnull)

    def _after(self, stmt: Stmt, nonnull: FrozenSet[str]) -> FrozenSet[str]:
        if isinstance(stmt, IfStmt) and ends_with_exit(stmt.then_body) and not stmt.else_body:
            return nonnull | proves_nonnull(stmt.cond, False)
        if isinstance(stmt, ExprStmt):
            expr = stmt.expr
            if isinstance(expr, Call) and expr.callee in self.conventions.assert_functions and expr.args:
                return nonnull | proves_nonnull(expr.args[0], True)
            if isinstance(expr, Assign):
                return self._invalidate(nonnull, render(expr.target))
        if isinstance(stmt, DeclStmt):
            return self._invalidate(nonnull, stmt.decl.name)
        return nonnull

    @staticmethod
    def _invalidate(nonnull: FrozenSet[str], name: str) -> FrozenSet[str]:
        return frozenset(
            key for key in nonnull
            if key != name and not key.startswith((name + "->", name + ".", name + "["))
        )

    def stmt(self, stmt: Stmt, nonnull: FrozenSet[str]) -> None:
        self._stmt = stmt
        if isinstance(stmt, DeclStmt):
            if stmt.decl.init is not None:
                self.expr(stmt.decl.init, READ, nonnull)
        elif isinstance(stmt, ExprStmt):
            self.expr(stmt.expr, READ, nonnull)
        elif isinstance(stmt, IfStmt):
            self.condition(stmt.cond, nonnull)
            depth = self.critical_depth
            self.body(stmt.then_body, nonnull | proves_nonnull(stmt.cond, True))
            then_depth = depth if ends_with_exit(stmt.then_body) else self.critical_depth
            if stmt.else_body is not None:
                self.critical_depth = depth
                self.body(stmt.else_body, nonnull | proves_nonnull(stmt.cond, False))
                else_depth = depth if ends_with_exit(stmt.else_body) else self.critical_depth
                self.critical_depth = max(then_depth, else_depth)
            else:
                self.critical_depth = max(then_depth, depth)
        elif isinstance(stmt, WhileStmt):
            self.condition(stmt.cond, nonnull)
            self.loop(stmt.body, nonnull | proves_nonnull(stmt.cond, True))
        elif isinstance(stmt, DoWhileStmt):
            self.loop(stmt.body, nonnull)
            self._stmt = stmt
            self.condition(stmt.cond, nonnull)
        elif isinstance(stmt, ForStmt):
            if stmt.init is not None:
                self.stmt(stmt.init, nonnull)
                self._stmt = stmt
            guarded = nonnull
            if stmt.cond is not None:
                self.condition(stmt.cond, nonnull)
                guarded = nonnull | proves_nonnull(stmt.cond, True)
            self.loop(stmt.body, guarded)
            if stmt.step is not None:
                self._stmt = stmt
                self.loop_depth += 1
                self.expr(stmt.step, READ, guarded)
                self.loop_depth -= 1
        elif isinstance(stmt, SwitchStmt):
            self.condition(stmt.control, nonnull)
            for case in stmt.cases:
                self.body(case.body, nonnull)
        elif isinstance(stmt, ReturnStmt):
            if stmt.value is not None:
                self.expr(stmt.value, READ, nonnull)
            if self.critical_depth > 0:
                self.issues.append(CriticalIssue(stmt.span, "return inside a critical section"))
        elif isinstance(stmt, Block):
            self.body(stmt.body, nonnull)

    def loop(self, body: Tuple[Stmt, ...], nonnull: FrozenSet[str]) -> None:
        self.loop_depth += 1
        try:
            self.body(body, nonnull)
        finally:
            self.loop_depth -= 1

    def condition(self, cond: Expr, nonnull: FrozenSet[str]) -> None:
        self.ranged |= range_checked(cond)
        self.expr(cond, READ, nonnull)

    # ------------------------------------------------------ expressions

    def record(self, expr: Expr, access: str, nonnull: FrozenSet[str]) -> None:
        self.sites.append(
            Site(
                expr=expr,
                access=access,
                stmt=self._stmt,
                nonnull=nonnull,
                ranged=frozenset(self.ranged),
                critical=self.critical_depth > 0,
                loop_depth=self.loop_depth,
            )
        )

    def expr(self, expr: Expr, access: str, nonnull: FrozenSet[str]) -> None:
        if isinstance(expr, Call):
            self.record(expr, access, nonnull)
            for arg in expr.args:
                self.expr(arg, READ, nonnull)
            self._critical_call(expr)
            return

        self.record(expr, access, nonnull)

        if isinstance(expr, Assign):
            self.expr(expr.value, READ, nonnull)
            self.expr(expr.target, WRITE if expr.op == "=" else RMW, nonnull)
        elif isinstance(expr, Unary):
            if expr.op in ("++", "--"):
                self.expr(expr.operand, RMW, nonnull)
            elif expr.op == "&":
                self.expr(expr.operand, ADDR, nonnull)
            else:
                self.expr(expr.operand, READ, nonnull)
        elif isinstance(expr, Binary):
            self.expr(expr.left, READ, nonnull)
            if expr.op == "&&":
                self.expr(expr.right, READ, nonnull | proves_nonnull(expr.left, True))
            elif expr.op == "||":
                self.expr(expr.right, READ, nonnull | proves_nonnull(expr.left, False))
            else:
                self.expr(expr.right, READ, nonnull)
        elif isinstance(expr, Conditional):
            self.ranged |= range_checked(expr.cond)
            self.expr(expr.cond, READ, nonnull)
            self.expr(expr.then, READ, nonnull | proves_nonnull(expr.cond, True))
            self.expr(expr.orelse, READ, nonnull | proves_nonnull(expr.cond, False))
        elif isinstance(expr, Member):
            self.expr(expr.base, READ if expr.arrow else access, nonnull)
        elif isinstance(expr, Index):
            self.expr(expr.base, access, nonnull)
            self.expr(expr.index, READ, nonnull)
        else:
            for child in expr.children():
                self.expr(child, READ, nonnull)

    def _critical_call(self, call: Call) -> None:
        if call.callee in self.conventions.critical_enter:
            self.critical_depth += 1
        elif call.callee in self.conventions.critical_exit:
            if self.critical_depth == 0:
                self.issues.append(
                    CriticalIssue(call.span, f"'{call.callee}' without a matching enter")
                )
            else:
                self.critical_depth -= 1


def walk_function(function: Function, conventions: Conventions) -> FunctionWalk:
    walker = _Walker(function, conventions)
    walker.body(function.body, frozenset())
    if walker.critical_depth > 0:
        walker.issues.append(
            CriticalIssue(function.span, "function can end inside a critical section")
        )
    return FunctionWalk(function, walker.sites, walker.issues)
