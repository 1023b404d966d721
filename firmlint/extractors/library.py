"""
Library usage: heap allocation, banned functions, discarded status codes and
pointer parameters that could be const.
"""

from __future__ import annotations
from typing import List, Set

from firmlint.extractors.base import ExtractionContext, extractor
from firmlint.facts import Fact
from firmlint.model import (
    Assign,
    Binary,
    Call,
    Cast,
    DeclStmt,
    Expr,
    ExprStmt,
    Function,
    Name,
    ReturnStmt,
    TranslationUnit,
    iter_stmts,
)
from firmlint.walk import RMW, WRITE, root_name


def _call_facts(function: Function, context: ExtractionContext) -> List[Fact]:
    conventions = context.conventions
    in_isr = context.in_isr_context(function)
    facts = []
    for site in context.walk(function).sites:
        call = site.expr
        if not isinstance(call, Call):
            continue
        if call.callee in conventions.allocation_functions:
            facts.append(
                Fact(
                    "DynamicAllocationCall",
                    call.span,
                    call.callee,
                    function.name,
                    {"callee": call.callee, "in_isr": in_isr, "in_loop": site.loop_depth > 0},
                )
            )
        if call.callee in conventions.banned_functions:
            facts.append(
                Fact("BannedFunctionCall", call.span, call.callee, function.name, {"callee": call.callee})
            )
    return facts


def _ignored_results(function: Function, context: ExtractionContext) -> List[Fact]:
    facts = []
    for stmt in iter_stmts(function.body):
        if not isinstance(stmt, ExprStmt) or not isinstance(stmt.expr, Call):
            continue
        call = stmt.expr
        if context.conventions.must_check(call.callee):
            facts.append(
                Fact("IgnoredReturnValue", call.span, call.callee, function.name, {"callee": call.callee})
            )
    return facts


def _aliased_name(expr: Expr) -> str:
    """Name of the pointer an expression hands on, following casts and offsets."""
    while True:
        if isinstance(expr, Cast):
            expr = expr.operand
        elif isinstance(expr, Binary) and expr.op in ("+", "-"):
            expr = expr.left
        else:
            break
    return expr.id if isinstance(expr, Name) else ""


def _escaping_names(function: Function, context: ExtractionContext) -> Set[str]:
    """Pointers passed on to calls, stored elsewhere or returned."""
    escaping: Set[str] = set()
    for site in context.walk(function).sites:
        if isinstance(site.expr, Call):
            escaping.update(_aliased_name(arg) for arg in site.expr.args)
        elif isinstance(site.expr, Assign):
            escaping.add(_aliased_name(site.expr.value))
    for stmt in iter_stmts(function.body):
        if isinstance(stmt, DeclStmt) and stmt.decl.init is not None:
            escaping.add(_aliased_name(stmt.decl.init))
        elif isinstance(stmt, ReturnStmt) and stmt.value is not None:
            escaping.add(_aliased_name(stmt.value))
    return escaping


def _non_const_params(function: Function, context: ExtractionContext) -> List[Fact]:
    candidates = {
        param.name: param for param in function.params
        if param.ctype.is_pointer and not param.ctype.is_const
    }
    if not candidates:
        return []
    written: Set[str] = set()
    for site in context.walk(function).sites:
        if site.access not in (WRITE, RMW) or isinstance(site.expr, Name):
            continue
        name = root_name(site.expr)
        if name in candidates:
            written.add(name)
    escaping = _escaping_names(function, context)

    facts = []
    for name, param in candidates.items():
        if name in written or name in escaping:
            continue
        facts.append(
            Fact(
                "NonConstPointerParam",
                param.span,
                name,
                function.name,
                {"parameter": name, "type": param.ctype.render()},
            )
        )
    return facts


@extractor(
    "library",
    produces=(
        "DynamicAllocationCall",
        "BannedFunctionCall",
        "IgnoredReturnValue",
        "NonConstPointerParam",
    ),
)
def extract_library(unit: TranslationUnit, context: ExtractionContext) -> List[Fact]:
    facts: List[Fact] = []
    for fn in unit.functions:
        facts.extend(_call_facts(fn, context))
        facts.extend(_ignored_results(fn, context))
        facts.extend(_non_const_params(fn, context))
    return facts
