"""Switch completeness, fallthrough, polling loops, recursion and goto."""

from __future__ import annotations
from typing import List, Tuple

from firmlint.extractors.base import ExtractionContext, extractor
from firmlint.facts import Fact
from firmlint.model import (
    Block,
    Call,
    DoWhileStmt,
    EXIT_STATEMENTS,
    ExprStmt,
    FallthroughStmt,
    Function,
    GotoStmt,
    Literal,
    Name,
    Member,
    Stmt,
    SwitchStmt,
    TranslationUnit,
    WhileStmt,
    iter_body_exprs,
    iter_expr,
    iter_stmts,
    render,
)


def _terminates(body: Tuple[Stmt, ...]) -> bool:
    if not body:
        return False
    last = body[-1]
    if isinstance(last, Block):
        return _terminates(last.body)
    return isinstance(last, EXIT_STATEMENTS + (FallthroughStmt,))


def _switch_facts(function: Function, switch: SwitchStmt) -> List[Fact]:
    facts = []
    control = render(switch.control)
    if not switch.has_default:
        facts.append(
            Fact(
                "SwitchMissingDefault",
                switch.span,
                control,
                function.name,
                {"control": control, "case_count": len(switch.cases)},
            )
        )
    for current, following in zip(switch.cases, switch.cases[1:]):
        if current.body and not _terminates(current.body):
            facts.append(
                Fact(
                    "ImplicitFallthrough",
                    following.span,
                    control,
                    function.name,
                    {
                        "from_label": current.labels[-1],
                        "to_label": following.labels[0],
                    },
                )
            )
    return facts


def _is_idle_body(body: Tuple[Stmt, ...]) -> bool:
    """Empty loop body, or one doing nothing but argument-less calls (NOP, WFI)."""
    for stmt in body:
        if isinstance(stmt, Block):
            if not _is_idle_body(stmt.body):
                return False
        elif not (isinstance(stmt, ExprStmt) and isinstance(stmt.expr, Call) and not stmt.expr.args):
            return False
    return True


def _polling_fact(function: Function, loop, context: ExtractionContext) -> List[Fact]:
    cond = loop.cond
    if isinstance(cond, Literal):
        return []
    if not _is_idle_body(loop.body):
        return []
    identifiers = []
    for expr in list(iter_expr(cond)) + list(iter_body_exprs(loop.body)):
        if isinstance(expr, Name):
            identifiers.append(expr.id)
        elif isinstance(expr, Member):
            identifiers.append(expr.field)
        elif isinstance(expr, Call):
            identifiers.append(expr.callee)
    if not identifiers or any(context.conventions.mentions_timeout(name) for name in identifiers):
        return []
    return [
        Fact(
            "UnboundedPolling",
            loop.span,
            render(cond),
            function.name,
            {
                "condition": render(cond),
                "loop": "do-while" if isinstance(loop, DoWhileStmt) else "while",
            },
        )
    ]


@extractor(
    "control_flow",
    produces=(
        "SwitchMissingDefault",
        "ImplicitFallthrough",
        "UnboundedPolling",
        "RecursionCycle",
        "GotoStatement",
    ),
)
def extract_control_flow(unit: TranslationUnit, context: ExtractionContext) -> List[Fact]:
    facts: List[Fact] = []
    for fn in unit.functions:
        for stmt in iter_stmts(fn.body):
            if isinstance(stmt, SwitchStmt):
                facts.extend(_switch_facts(fn, stmt))
            elif isinstance(stmt, (WhileStmt, DoWhileStmt)):
                facts.extend(_polling_fact(fn, stmt, context))
            elif isinstance(stmt, GotoStmt):
                facts.append(Fact("GotoStatement", stmt.span, stmt.label, fn.name, {"label": stmt.label}))

        cycle = context.project.shortest_cycle(fn.name)
        if cycle is not None:
            facts.append(
                Fact(
                    "RecursionCycle",
                    fn.span,
                    fn.name,
                    fn.name,
                    {
                        "cycle": cycle,
                        "cycle_length": len(cycle),
                        "direct": len(cycle) == 1,
                        "path": " -> ".join(cycle + (fn.name,)),
                    },
                )
            )
    return facts
