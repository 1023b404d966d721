"""Lexical conventions: octal literals, magic numbers, native integer types."""

from __future__ import annotations
from typing import Dict, List, Optional, Set

from firmlint.extractors.base import ExtractionContext, extractor
from firmlint.facts import Fact
from firmlint.model import (
    INTEGER_TYPES,
    Assign,
    Binary,
    Call,
    Cast,
    CType,
    DeclStmt,
    Expr,
    Function,
    Index,
    InitList,
    Literal,
    ReturnStmt,
    SourceSpan,
    TranslationUnit,
    Unary,
    iter_body_exprs,
    iter_stmts,
)
from firmlint.walk import Site

_COMPARISON_OPS = frozenset({"==", "!=", "<", "<=", ">", ">="})
_MASK_OPS = frozenset({"&", "|", "^", "&=", "|=", "^="})


def fixed_width_for(ctype: CType) -> Optional[str]:
    if ctype.spelling not in INTEGER_TYPES:
        return None
    width, signed = INTEGER_TYPES[ctype.spelling]
    return f"{'' if signed else 'u'}int{width}_t"


# ------------------------------------------------------------- octal

def _octal_literals(unit: TranslationUnit) -> List[Fact]:
    facts = []
    seen: Set[SourceSpan] = set()
    if unit.tokens:
        candidates = [
            Literal(token.text, token.span) for token in unit.tokens if token.kind == "literal"
        ]
    else:
        candidates = [
            expr
            for fn in unit.functions
            for expr in iter_body_exprs(fn.body)
            if isinstance(expr, Literal)
        ]
        candidates.extend(
            decl.init for decl in unit.declarations if isinstance(decl.init, Literal)
        )
    for literal in candidates:
        if not literal.is_octal or literal.span in seen:
            continue
        seen.add(literal.span)
        facts.append(
            Fact(
                "OctalLiteral",
                literal.span,
                literal.text,
                None,
                {"text": literal.text, "value": literal.int_value},
            )
        )
    return facts


# ------------------------------------------------------ magic numbers

def _literal_context(parent: Optional[Expr], site: Site) -> str:
    if parent is None:
        if isinstance(site.stmt, DeclStmt):
            return "initializer"
        if isinstance(site.stmt, ReturnStmt):
            return "return"
        return "condition"
    if isinstance(parent, Binary):
        if parent.op in ("<<", ">>"):
            return "shift"
        if parent.op in _MASK_OPS:
            return "mask"
        if parent.op in _COMPARISON_OPS:
            return "compare"
        return "arithmetic"
    if isinstance(parent, Assign):
        return "mask" if parent.op in _MASK_OPS else "assign"
    if isinstance(parent, Unary):
        return "mask" if parent.op == "~" else "arithmetic"
    if isinstance(parent, Index):
        return "index"
    if isinstance(parent, Call):
        return "argument"
    if isinstance(parent, InitList):
        return "initializer"
    if isinstance(parent, Cast):
        return "cast"
    return "expression"


def _magic_numbers(function: Function, context: ExtractionContext) -> List[Fact]:
    allowed = set(context.conventions.magic_number_allowlist)
    parents: Dict[int, Expr] = {}
    facts = []
    for site in context.walk(function).sites:
        expr = site.expr
        for child in expr.children():
            parents[id(child)] = expr
        if not isinstance(expr, Literal):
            continue
        value = expr.int_value
        if value is None or value in allowed:
            continue
        if isinstance(site.stmt, DeclStmt) and site.stmt.decl.ctype.is_const:
            continue
        facts.append(
            Fact(
                "MagicNumber",
                expr.span,
                expr.text,
                function.name,
                {
                    "text": expr.text,
                    "value": value,
                    "context": _literal_context(parents.get(id(expr)), site),
                },
            )
        )
    return facts


# ----------------------------------------------------- integer types

def _native_type(span: SourceSpan, name: str, ctype: CType, where: str, function: Optional[str]) -> Optional[Fact]:
    if not ctype.is_native_integer:
        return None
    return Fact(
        "NonFixedWidthType",
        span,
        name,
        function,
        {"type": ctype.render(), "where": where, "suggestion": fixed_width_for(ctype)},
    )


def _native_types(unit: TranslationUnit) -> List[Fact]:
    found = []
    for decl in unit.declarations:
        found.append(_native_type(decl.span, decl.name, decl.ctype, "declaration", None))
    for fn in unit.functions:
        if fn.name != "main":
            found.append(_native_type(fn.span, fn.name, fn.return_type, "return", fn.name))
        for param in fn.params:
            found.append(_native_type(param.span, param.name, param.ctype, "parameter", fn.name))
        for stmt in iter_stmts(fn.body):
            if isinstance(stmt, DeclStmt):
                decl = stmt.decl
                found.append(_native_type(decl.span, decl.name, decl.ctype, "declaration", fn.name))
    return [fact for fact in found if fact is not None]


@extractor("lexical", produces=("OctalLiteral", "MagicNumber", "NonFixedWidthType"))
def extract_lexical(unit: TranslationUnit, context: ExtractionContext) -> List[Fact]:
    facts = _octal_literals(unit)
    for fn in unit.functions:
        facts.extend(_magic_numbers(fn, context))
    facts.extend(_native_types(unit))
    return facts
