"""
Hardware and protocol interfacing: whole structs on the wire, narrowing casts
without a range check, and memory-mapped register accesses.
"""

from __future__ import annotations
from typing import Dict, List, Optional, Set, Tuple

from firmlint.extractors.base import ExtractionContext, extractor, variable_types
from firmlint.facts import Fact
from firmlint.model import (
    Assign,
    Binary,
    Call,
    Cast,
    CType,
    Expr,
    Function,
    Literal,
    Member,
    Name,
    TranslationUnit,
    Unary,
    render,
)
from firmlint.walk import ADDR, RMW, WRITE

_BOOLEAN_OPS = frozenset({"==", "!=", "<", "<=", ">", ">=", "&&", "||"})


# ----------------------------------------------------------- transmit

def _strip_casts(expr: Expr) -> Expr:
    while isinstance(expr, Cast):
        expr = expr.operand
    return expr


def _aggregate_argument(
    arg: Expr, types: Dict[str, CType], struct_types
) -> Optional[Tuple[str, CType]]:
    arg = _strip_casts(arg)
    if isinstance(arg, Unary) and arg.op == "&":
        arg = arg.operand
    if isinstance(arg, Name):
        ctype = types.get(arg.id)
        if ctype is not None and ctype.is_aggregate(struct_types):
            return arg.id, ctype
    return None


def _aggregate_transmits(unit: TranslationUnit, function: Function, context: ExtractionContext) -> List[Fact]:
    types = variable_types(unit, function)
    facts = []
    for site in context.walk(function).sites:
        call = site.expr
        if not isinstance(call, Call) or call.callee not in context.conventions.transmit_functions:
            continue
        payload = context.conventions.payload_argument(call.callee)
        for position, arg in enumerate(call.args):
            if payload is not None and position != payload:
                continue
            found = _aggregate_argument(arg, types, unit.struct_types)
            if found is None:
                continue
            name, ctype = found
            facts.append(
                Fact(
                    "AggregateTransmit",
                    call.span,
                    name,
                    function.name,
                    {"callee": call.callee, "variable": name, "type": ctype.render(), "argument": position},
                )
            )
    return facts


# ---------------------------------------------------------- narrowing

def expression_width(expr: Expr, types: Dict[str, CType]) -> Optional[int]:
    """
    Best-effort number of significant bits an integer expression can carry,
    ``None`` when unknown.
    """
    if isinstance(expr, Name):
        ctype = types.get(expr.id)
        return ctype.integer_width if ctype is not None else None
    if isinstance(expr, Cast):
        return expr.ctype.integer_width
    if isinstance(expr, Literal):
        value = expr.int_value
        return value.bit_length() if value is not None else None
    if not isinstance(expr, Binary):
        return None
    if expr.op in _BOOLEAN_OPS:
        return 1
    left = expression_width(expr.left, types)
    right = expression_width(expr.right, types)
    amount = expr.right.int_value if isinstance(expr.right, Literal) else None
    if expr.op == "&":
        known = [width for width in (left, right) if width is not None]
        return min(known) if known else None
    if expr.op == ">>" and left is not None and amount is not None:
        return max(left - amount, 0)
    if expr.op == "<<" and left is not None and amount is not None:
        return min(left + amount, 64)
    if left is None or right is None:
        return None
    return max(left, right)


def _narrowing_casts(unit: TranslationUnit, function: Function, context: ExtractionContext) -> List[Fact]:
    types = variable_types(unit, function)
    facts = []
    for site in context.walk(function).sites:
        cast = site.expr
        if not isinstance(cast, Cast) or not cast.ctype.is_scalar_integer:
            continue
        operand = cast.operand
        if isinstance(operand, Literal):
            continue
        source_width = expression_width(operand, types)
        target_width = cast.ctype.integer_width
        if source_width is None or target_width is None or source_width <= target_width:
            continue
        if render(operand) in site.ranged:
            continue
        facts.append(
            Fact(
                "UncheckedNarrowingCast",
                cast.span,
                render(operand),
                function.name,
                {
                    "operand": render(operand),
                    "to_type": cast.ctype.render(),
                    "from_width": source_width,
                    "to_width": target_width,
                },
            )
        )
    return facts


# ---------------------------------------------------------- registers

def _register_target(
    expr: Expr, unit: TranslationUnit, context: ExtractionContext
) -> Optional[Tuple[str, Optional[str], Optional[bool], Optional[Expr]]]:
    """
    ``(register, peripheral, volatile, consumed_base)`` when ``expr`` names a
    memory-mapped register; ``volatile`` is ``None`` when unknown.
    """
    conventions = context.conventions
    if isinstance(expr, Member):
        base = expr.base
        if isinstance(base, Name) and conventions.is_register_name(base.id):
            decl = unit.globals.get(base.id)
            volatile = decl.ctype.is_volatile if decl is not None else None
            return expr.field, base.id, volatile, expr.base
        if isinstance(expr.base, Cast) and isinstance(expr.base.operand, Literal):
            return expr.field, expr.base.operand.text, expr.base.ctype.is_volatile, expr.base
        return None
    if isinstance(expr, Unary) and expr.op == "*":
        operand = expr.operand
        if isinstance(operand, Cast) and operand.ctype.is_pointer and isinstance(operand.operand, Literal):
            return operand.operand.text, None, operand.ctype.is_volatile, operand
        return None
    if isinstance(expr, Name) and conventions.is_register_name(expr.id):
        decl = unit.globals.get(expr.id)
        if decl is not None and decl.file_scope:
            return expr.id, None, decl.ctype.is_volatile, None
    return None


def _register_accesses(unit: TranslationUnit, function: Function, context: ExtractionContext) -> List[Fact]:
    conventions = context.conventions
    facts = []
    consumed: Set[int] = set()
    assign_ops: Dict[int, str] = {}
    status_read: Set[Optional[str]] = set()
    for site in context.walk(function).sites:
        expr = site.expr
        if isinstance(expr, Assign):
            assign_ops[id(expr.target)] = expr.op
        if id(expr) in consumed:
            continue
        target = _register_target(expr, unit, context)
        if target is None:
            continue
        register, peripheral, volatile, base = target
        if base is not None:
            consumed.add(id(base))
        if site.access == ADDR:
            continue
        is_status = conventions.is_status_register(register)
        is_data = conventions.is_data_register(register)
        if site.access == WRITE:
            op = assign_ops.get(id(expr), "=")
        elif site.access == RMW:
            op = assign_ops.get(id(expr), "++")
        else:
            op = None
        facts.append(
            Fact(
                "RegisterAccess",
                expr.span,
                register,
                function.name,
                {
                    "register": register,
                    "peripheral": peripheral,
                    "field": render(expr),
                    "access": site.access,
                    "op": op,
                    "volatile": volatile,
                    "status_register": is_status,
                    "data_register": is_data,
                    "status_checked": peripheral in status_read or (
                        peripheral is None and bool(status_read)
                    ),
                    "in_loop": site.loop_depth > 0,
                },
            )
        )
        if is_status and site.access != WRITE:
            status_read.add(peripheral)
    return facts


@extractor("interfacing", produces=("AggregateTransmit", "UncheckedNarrowingCast", "RegisterAccess"))
def extract_interfacing(unit: TranslationUnit, context: ExtractionContext) -> List[Fact]:
    facts: List[Fact] = []
    for fn in unit.functions:
        facts.extend(_aggregate_transmits(unit, fn, context))
        facts.extend(_narrowing_casts(unit, fn, context))
        facts.extend(_register_accesses(unit, fn, context))
    return facts
