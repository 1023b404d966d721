"""Interrupt discipline: what may not happen in ISR context."""

from __future__ import annotations
import re
from typing import List

from firmlint.extractors.base import ExtractionContext, extractor, variable_types
from firmlint.facts import Fact
from firmlint.model import Call, Cast, Function, Literal, Name, TranslationUnit

_FLOAT_LITERAL = re.compile(r"^(\d+\.\d*|\.\d+|\d+[eE][+-]?\d+|\d+\.\d*[eE][+-]?\d+)[fFlL]?$|^\d+[fF]$")


def _context_details(function: Function) -> dict:
    return {"direct": function.is_isr}


def _isr_calls(function: Function, context: ExtractionContext) -> List[Fact]:
    conventions = context.conventions
    facts = []
    for site in context.walk(function).sites:
        call = site.expr
        if not isinstance(call, Call):
            continue
        if call.callee in conventions.blocking_apis:
            facts.append(
                Fact(
                    "IsrBlockingCall",
                    call.span,
                    call.callee,
                    function.name,
                    dict(_context_details(function), callee=call.callee),
                )
            )
        if call.callee in conventions.rtos_isr_apis:
            facts.append(
                Fact(
                    "IsrRtosApiMisuse",
                    call.span,
                    call.callee,
                    function.name,
                    dict(
                        _context_details(function),
                        callee=call.callee,
                        replacement=f"{call.callee}FromISR",
                    ),
                )
            )
    return facts


def _floating_point(unit: TranslationUnit, function: Function, context: ExtractionContext) -> List[Fact]:
    types = variable_types(unit, function)
    first = None
    count = 0
    for site in context.walk(function).sites:
        expr = site.expr
        if isinstance(expr, Literal):
            hit = bool(_FLOAT_LITERAL.match(expr.text))
        elif isinstance(expr, Cast):
            hit = expr.ctype.is_floating
        elif isinstance(expr, Name):
            ctype = types.get(expr.id)
            hit = ctype is not None and ctype.is_floating
        else:
            hit = False
        if hit:
            count += 1
            if first is None:
                first = expr
    if first is None:
        return []
    return [
        Fact(
            "IsrFloatingPoint",
            first.span,
            function.name,
            function.name,
            dict(_context_details(function), occurrences=count),
        )
    ]


@extractor("isr", produces=("IsrBlockingCall", "IsrRtosApiMisuse", "IsrFloatingPoint"))
def extract_isr(unit: TranslationUnit, context: ExtractionContext) -> List[Fact]:
    facts: List[Fact] = []
    for fn in unit.functions:
        if not context.in_isr_context(fn):
            continue
        facts.extend(_isr_calls(fn, context))
        facts.extend(_floating_point(unit, fn, context))
    return facts
