"""Declarations without initializers and partially initialized arrays."""

from __future__ import annotations
from typing import List, Optional

from firmlint.extractors.base import ExtractionContext, extractor
from firmlint.facts import Fact
from firmlint.model import Declaration, DeclStmt, InitList, Literal, TranslationUnit, iter_stmts


def _is_zero_fill(init: InitList) -> bool:
    return (
        len(init.items) == 1
        and isinstance(init.items[0], Literal)
        and init.items[0].int_value == 0
    )


def _partial_init(decl: Declaration, function: Optional[str]) -> Optional[Fact]:
    ctype = decl.ctype
    init = decl.init
    if not ctype.is_array or ctype.array_length is None or not isinstance(init, InitList):
        return None
    if not init.items or len(init.items) >= ctype.array_length or _is_zero_fill(init):
        return None
    return Fact(
        "PartialArrayInit",
        decl.span,
        decl.name,
        function,
        {
            "declared_length": ctype.array_length,
            "initialized": len(init.items),
            "type": ctype.render(),
        },
    )


@extractor("initialization", produces=("UninitializedDeclaration", "PartialArrayInit"))
def extract_initialization(unit: TranslationUnit, context: ExtractionContext) -> List[Fact]:
    facts: List[Fact] = []
    for decl in unit.declarations:
        partial = _partial_init(decl, None)
        if partial is not None:
            facts.append(partial)

    for fn in unit.functions:
        for stmt in iter_stmts(fn.body):
            if not isinstance(stmt, DeclStmt):
                continue
            decl = stmt.decl
            if decl.init is None and not decl.has_static_duration:
                facts.append(
                    Fact(
                        "UninitializedDeclaration",
                        decl.span,
                        decl.name,
                        fn.name,
                        {
                            "type": decl.ctype.render(),
                            "is_array": decl.ctype.is_array,
                            "is_pointer": decl.ctype.is_pointer,
                            "storage": decl.storage,
                        },
                    )
                )
            partial = _partial_init(decl, fn.name)
            if partial is not None:
                facts.append(partial)
    return facts
