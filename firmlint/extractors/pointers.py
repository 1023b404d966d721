"""
Pointer safety: dereferences not dominated by a null check, and functions
handing out the address of their own automatic storage.
"""

from __future__ import annotations
from typing import Dict, List, Optional, Tuple

from firmlint.extractors.base import ExtractionContext, extractor, local_declarations
from firmlint.facts import Fact
from firmlint.model import (
    Cast,
    Expr,
    Function,
    Index,
    Literal,
    Member,
    Name,
    ReturnStmt,
    TranslationUnit,
    Unary,
    iter_stmts,
)


def _dereferenced(expr: Expr) -> Optional[Expr]:
    """The pointer operand when ``expr`` dereferences one."""
    if isinstance(expr, Unary) and expr.op == "*":
        return expr.operand
    if isinstance(expr, Member) and expr.arrow:
        return expr.base
    if isinstance(expr, Index):
        return expr.base
    return None


def _known_target(init: Optional[Expr], arrays: Dict[str, bool]) -> bool:
    """True when a pointer initializer can only be non-null."""
    while isinstance(init, Cast):
        init = init.operand
    if isinstance(init, Unary) and init.op == "&":
        return True
    if isinstance(init, Literal) and init.text.startswith('"'):
        return True
    return isinstance(init, Name) and arrays.get(init.id, False)


def _tracked_pointers(function: Function) -> Dict[str, str]:
    """Pointer variables worth checking, mapped to where they come from."""
    locals_ = local_declarations(function)
    arrays = {name: decl.ctype.is_array for name, decl in locals_.items()}
    pointers = {param.name: "parameter" for param in function.params if param.ctype.is_pointer}
    for name, decl in locals_.items():
        if not decl.ctype.is_pointer or decl.ctype.is_array:
            continue
        if _known_target(decl.init, arrays):
            pointers.pop(name, None)
            continue
        pointers[name] = "local"
    return pointers


def _unguarded_derefs(function: Function, context: ExtractionContext) -> List[Fact]:
    pointers = _tracked_pointers(function)
    if not pointers:
        return []
    first: Dict[str, Tuple[Expr, str]] = {}
    counts: Dict[str, int] = {}
    for site in context.walk(function).sites:
        operand = _dereferenced(site.expr)
        if not isinstance(operand, Name) or operand.id not in pointers:
            continue
        if operand.id in site.nonnull:
            continue
        counts[operand.id] = counts.get(operand.id, 0) + 1
        first.setdefault(operand.id, (site.expr, site.access))

    facts = []
    for name, (expr, access) in first.items():
        facts.append(
            Fact(
                "UnguardedPointerDeref",
                expr.span,
                name,
                function.name,
                {
                    "pointer": name,
                    "origin": pointers[name],
                    "access": access,
                    "occurrences": counts[name],
                },
            )
        )
    return facts


def _local_address(value: Expr, automatic: Dict[str, bool]) -> Optional[Tuple[str, str]]:
    while isinstance(value, Cast):
        value = value.operand
    if isinstance(value, Unary) and value.op == "&":
        target = value.operand
        while isinstance(target, (Member, Index)) and not (isinstance(target, Member) and target.arrow):
            target = target.base
        if isinstance(target, Name) and target.id in automatic:
            return target.id, "address-of"
        return None
    if isinstance(value, Name) and automatic.get(value.id):
        return value.id, "array"
    return None


def _returned_locals(function: Function) -> List[Fact]:
    if not function.return_type.is_pointer:
        return []
    automatic = {
        name: decl.ctype.is_array
        for name, decl in local_declarations(function).items()
        if not decl.has_static_duration
    }
    for param in function.params:
        automatic.setdefault(param.name, False)

    facts = []
    for stmt in iter_stmts(function.body):
        if not isinstance(stmt, ReturnStmt) or stmt.value is None:
            continue
        found = _local_address(stmt.value, automatic)
        if found is not None:
            variable, how = found
            facts.append(
                Fact(
                    "ReturnLocalAddress",
                    stmt.span,
                    variable,
                    function.name,
                    {"variable": variable, "how": how},
                )
            )
    return facts


@extractor("pointers", produces=("UnguardedPointerDeref", "ReturnLocalAddress"))
def extract_pointers(unit: TranslationUnit, context: ExtractionContext) -> List[Fact]:
    facts: List[Fact] = []
    for fn in unit.functions:
        facts.extend(_unguarded_derefs(fn, context))
        facts.extend(_returned_locals(fn))
    return facts
