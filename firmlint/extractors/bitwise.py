"""Bit manipulation on signed operands and shifts past the operand width."""

from __future__ import annotations
from typing import Dict, List, Optional, Tuple

from firmlint.extractors.base import ExtractionContext, extractor, variable_types
from firmlint.facts import Fact
from firmlint.model import Assign, Binary, Cast, CType, Expr, Function, Literal, Name, TranslationUnit, Unary, render

BITWISE_OPS = frozenset({"&", "|", "^", "<<", ">>"})
SHIFT_OPS = frozenset({"<<", ">>"})
# Operands narrower than int are promoted before shifting.
_PROMOTED_WIDTH = 32


def _operand_type(expr: Expr, types: Dict[str, CType]) -> Optional[Tuple[str, bool, Optional[int]]]:
    """``(type spelling, signed, width)`` of an operand, when it can be told."""
    if isinstance(expr, Name):
        ctype = types.get(expr.id)
        if ctype is None or not ctype.is_scalar_integer:
            return None
        return ctype.render(), ctype.is_signed, ctype.integer_width
    if isinstance(expr, Cast):
        if not expr.ctype.is_scalar_integer:
            return None
        return expr.ctype.render(), expr.ctype.is_signed, expr.ctype.integer_width
    if isinstance(expr, Literal) and expr.int_value is not None:
        text = expr.text.lower()
        width = 64 if text.endswith(("ll", "llu")) else _PROMOTED_WIDTH
        signed = not expr.is_unsigned and not text.startswith(("0x", "0b"))
        return ("literal", signed, width)
    return None


def _bitwise_operations(expr: Expr) -> Optional[Tuple[str, Tuple[Expr, ...]]]:
    if isinstance(expr, Binary) and expr.op in BITWISE_OPS:
        return expr.op, (expr.left, expr.right)
    if isinstance(expr, Assign) and expr.op[:-1] in BITWISE_OPS:
        return expr.op, (expr.target, expr.value)
    if isinstance(expr, Unary) and expr.op == "~":
        return "~", (expr.operand,)
    return None


def _function_facts(unit: TranslationUnit, function: Function, context: ExtractionContext) -> List[Fact]:
    types = variable_types(unit, function)
    facts = []
    for site in context.walk(function).sites:
        found = _bitwise_operations(site.expr)
        if found is None:
            continue
        op, operands = found
        base_op = op.rstrip("=")

        for position, operand in enumerate(operands):
            if base_op in SHIFT_OPS and position == 1:
                continue
            info = _operand_type(operand, types)
            if info is None or not info[1]:
                continue
            facts.append(
                Fact(
                    "SignedBitwiseOperand",
                    site.expr.span,
                    render(operand),
                    function.name,
                    {
                        "operator": op,
                        "operand": render(operand),
                        "type": info[0],
                        "literal": isinstance(operand, Literal),
                    },
                )
            )

        if base_op in SHIFT_OPS:
            amount_expr = operands[1]
            if not isinstance(amount_expr, Literal) or amount_expr.int_value is None:
                continue
            info = _operand_type(operands[0], types)
            if info is None or info[2] is None:
                continue
            width = max(info[2], _PROMOTED_WIDTH)
            if amount_expr.int_value >= width:
                facts.append(
                    Fact(
                        "ShiftExceedsWidth",
                        site.expr.span,
                        render(operands[0]),
                        function.name,
                        {
                            "operator": op,
                            "amount": amount_expr.int_value,
                            "width": width,
                            "operand": render(operands[0]),
                        },
                    )
                )
    return facts


@extractor("bitwise", produces=("SignedBitwiseOperand", "ShiftExceedsWidth"))
def extract_bitwise(unit: TranslationUnit, context: ExtractionContext) -> List[Fact]:
    facts: List[Fact] = []
    for fn in unit.functions:
        facts.extend(_function_facts(unit, fn, context))
    return facts
