"""
Data shared between interrupt and task context.

Shared-variable analysis reports per unit: the globals of a unit that an
ISR-reachable function writes, checked against the accesses made from task
context. Writers of externally linked globals are collected project wide, so
an ISR in one unit is matched against the task code defining the variable in
another.
"""

from __future__ import annotations
from typing import Dict, List, Set, Tuple

from firmlint.extractors.base import ExtractionContext, extractor, local_declarations
from firmlint.facts import Fact
from firmlint.model import Function, Name, TranslationUnit
from firmlint.walk import READ, RMW, WRITE


def _shadowed(function: Function) -> Set[str]:
    names = {param.name for param in function.params}
    names.update(local_declarations(function))
    return names


def _global_accesses(
    function: Function, context: ExtractionContext, shared: Set[str]
) -> List[Tuple[Name, str, bool]]:
    """``(name, access, in_critical_section)`` for every use of a shared global."""
    visible = shared - _shadowed(function)
    found = []
    for site in context.walk(function).sites:
        if isinstance(site.expr, Name) and site.expr.id in visible and site.access in (READ, WRITE, RMW):
            found.append((site.expr, site.access, site.critical))
    return found


@extractor(
    "concurrency",
    produces=("SharedVarUnprotectedAccess", "NonVolatileIsrShared", "UnbalancedCriticalSection"),
)
def extract_concurrency(unit: TranslationUnit, context: ExtractionContext) -> List[Fact]:
    facts: List[Fact] = []
    for fn in unit.functions:
        for issue in context.walk(fn).critical_issues:
            facts.append(
                Fact("UnbalancedCriticalSection", issue.span, fn.name, fn.name, {"reason": issue.reason})
            )

    candidates = {
        name for name, decl in unit.globals.items()
        if not decl.ctype.is_const or decl.ctype.is_pointer
    }
    if not candidates:
        return facts

    accesses = {fn.name: _global_accesses(fn, context, candidates) for fn in unit.functions}
    isr_functions = {fn.name for fn in unit.functions if context.in_isr_context(fn)}
    # A helper shared by an ISR and task code counts on both sides.
    task_functions = {
        fn.name for fn in unit.functions
        if fn.name not in isr_functions or (not fn.is_isr and context.project.is_task_reachable(fn.name))
    }

    isr_writers: Dict[str, Set[str]] = {}
    for name in isr_functions:
        for expr, access, _ in accesses[name]:
            if access in (WRITE, RMW):
                isr_writers.setdefault(expr.id, set()).add(name)
    for name in sorted(candidates):
        elsewhere = () if unit.globals[name].is_static else context.project.isr_writers_of(name)
        if elsewhere:
            isr_writers.setdefault(name, set()).update(elsewhere)
    if not isr_writers:
        return facts

    readers: Dict[str, Set[str]] = {}
    for fn in unit.functions:
        if fn.name not in task_functions:
            continue
        seen: Set[Tuple[str, str]] = set()
        for expr, access, critical in accesses[fn.name]:
            if expr.id not in isr_writers:
                continue
            if access in (READ, RMW):
                readers.setdefault(expr.id, set()).add(fn.name)
            if critical or (expr.id, access) in seen:
                continue
            seen.add((expr.id, access))
            decl = unit.globals[expr.id]
            facts.append(
                Fact(
                    "SharedVarUnprotectedAccess",
                    expr.span,
                    expr.id,
                    fn.name,
                    {
                        "variable": expr.id,
                        "access": access,
                        "width": decl.ctype.integer_width,
                        "volatile": decl.ctype.is_volatile,
                        "isr_writers": tuple(sorted(isr_writers[expr.id])),
                    },
                )
            )

    for name in sorted(isr_writers):
        decl = unit.globals[name]
        if decl.ctype.is_volatile or name not in readers:
            continue
        facts.append(
            Fact(
                "NonVolatileIsrShared",
                decl.span,
                name,
                None,
                {
                    "variable": name,
                    "type": decl.ctype.render(),
                    "isr_writers": tuple(sorted(isr_writers[name])),
                    "readers": tuple(sorted(readers[name])),
                },
            )
        )
    return facts
