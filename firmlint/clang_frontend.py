"""
libclang frontend.

Parses a C file with ``clang.cindex`` and translates the cursor tree into the
unit document understood by ``firmlint.adapter.load_unit``. Only what the
extractors consume is translated; anything else is skipped.

Suppression comments take the form::

    x = USART1->DR;  // firmlint-waive(R-REG-002, EXC-VOLATILE): DR read through HAL macro

A trailing comment covers the statement or declaration starting on its own
line; a comment on a line of its own covers the one starting on the next line
of code. Either way the waiver extends to the last line of that construct.
``*`` instead of a rule id waives every rule.
"""

from __future__ import annotations
import bisect
import logging
import os
import re
import shlex
from typing import Any, Dict, List, Optional, Sequence, Tuple

from clang import cindex

from firmlint.adapter import load_unit
from firmlint.config import Conventions
from firmlint.errors import MalformedUnitError
from firmlint.model import END_OF_FILE, TranslationUnit

logger = logging.getLogger(__name__)

CLANG_ARGS_ENV = "FIRMLINT_CLANG_ARGS"

_WAIVER = re.compile(
    r"firmlint-waive\(\s*(?P<rule>[^,\s)]+)\s*,\s*(?P<tag>[^)\s]*)\s*\)\s*:?\s*(?P<text>.*?)\s*(?:\*/)?\s*$"
)
_FALLTHROUGH_COMMENT = re.compile(r"(?i)(//|/\*)\s*fall(s|-|\s)?\s*thr(ough|u)")
_COMMENT_ONLY = re.compile(r"^\s*(//|/\*|\*)")
_IDENTIFIER = re.compile(r"^[A-Za-z_]\w*$")
_ASSIGN_OPS = {"=", "+=", "-=", "*=", "/=", "%=", "&=", "|=", "^=", "<<=", ">>="}
_UNARY_OPS = {"*", "&", "!", "-", "+", "~", "++", "--"}
_TOKEN_KINDS = {
    "IDENTIFIER": "identifier",
    "KEYWORD": "keyword",
    "LITERAL": "literal",
    "PUNCTUATION": "punctuation",
    "COMMENT": "comment",
}


def default_clang_args() -> List[str]:
    """
    Compiler arguments for every parse. Extra flags can be appended through
    the FIRMLINT_CLANG_ARGS environment variable.
    """
    base = ["-x", "c", "-std=c11"]
    extra = os.environ.get(CLANG_ARGS_ENV)
    if extra:
        base.extend(shlex.split(extra))
    return base


def parse_file(
    path: str,
    conventions: Optional[Conventions] = None,
    args: Sequence[str] = (),
) -> TranslationUnit:
    """Parse ``path`` and normalize it into a ``TranslationUnit``."""
    document = document_from_file(path, args)
    return load_unit(document, conventions, path=path)


def document_from_file(path: str, args: Sequence[str] = ()) -> Dict[str, Any]:
    """The adapter document for ``path``; raises ``MalformedUnitError`` on parse errors."""
    canonical = os.path.abspath(path)
    if not os.path.exists(canonical):
        raise MalformedUnitError("input file not found", unit=path)
    try:
        with open(canonical, "r", encoding="utf-8", errors="replace") as handle:
            lines = handle.read().splitlines()
    except OSError as exc:
        raise MalformedUnitError(f"could not read source ({exc})", unit=path) from exc

    index = cindex.Index.create()
    try:
        clang_tu = index.parse(
            canonical,
            args=default_clang_args() + list(args),
            options=cindex.TranslationUnit.PARSE_DETAILED_PROCESSING_RECORD,
        )
    except cindex.TranslationUnitLoadError as exc:
        raise MalformedUnitError(f"libclang could not parse the file ({exc})", unit=path) from exc

    errors = [d for d in clang_tu.diagnostics if d.severity >= cindex.Diagnostic.Error]
    if errors:
        first = errors[0]
        where = f"{first.location.line}:{first.location.column}" if first.location.file else "?"
        raise MalformedUnitError(
            f"{len(errors)} compiler error(s), first at {where}: {first.spelling}",
            unit=path,
        )
    for diagnostic in clang_tu.diagnostics:
        logger.debug("%s: clang: %s", path, diagnostic.spelling)

    return _Translator(clang_tu, canonical, path, lines).document()


# ============================================================
# ======================= TRANSLATION ========================
# ============================================================

class _Translator:
    def __init__(
        self,
        clang_tu: "cindex.TranslationUnit",
        canonical: str,
        display_path: str,
        lines: List[str],
    ) -> None:
        self.clang_tu = clang_tu
        self.canonical = canonical
        self.path = display_path
        self.lines = lines
        self.fallthrough_lines = sorted(
            number for number, text in enumerate(lines, start=1) if _FALLTHROUGH_COMMENT.search(text)
        )

    def document(self) -> Dict[str, Any]:
        declarations: List[Dict[str, Any]] = []
        functions: List[Dict[str, Any]] = []
        types: List[str] = []
        for cursor in self.clang_tu.cursor.get_children():
            kind = cursor.kind.name
            if kind in ("STRUCT_DECL", "UNION_DECL", "TYPEDEF_DECL"):
                name = self.record_name(cursor)
                if name:
                    types.append(name)
            if not self.in_main_file(cursor):
                continue
            if kind == "FUNCTION_DECL" and cursor.is_definition():
                functions.append(self.function(cursor))
            elif kind == "VAR_DECL":
                declarations.append(self.var_decl(cursor))
        return {
            "path": self.path,
            "types": sorted(set(types)),
            "declarations": declarations,
            "functions": functions,
            "tokens": self.tokens(),
            "suppressions": self.suppressions(),
        }

    # ------------------------------------------------------------ helpers

    def in_main_file(self, cursor: "cindex.Cursor") -> bool:
        location = cursor.location
        if location is None or location.file is None:
            return False
        return os.path.abspath(location.file.name) == self.canonical

    def span(self, cursor: "cindex.Cursor") -> Optional[List[int]]:
        start, end = cursor.extent.start, cursor.extent.end
        if start.file is None or os.path.abspath(start.file.name) != self.canonical:
            return None
        if start.line < 1 or start.column < 1:
            return None
        if (end.line, end.column) < (start.line, start.column):
            return [start.line, start.column]
        return [start.line, start.column, end.line, end.column]

    def with_span(self, node: Dict[str, Any], cursor: "cindex.Cursor") -> Dict[str, Any]:
        span = self.span(cursor)
        if span is not None:
            node["span"] = span
        return node

    @staticmethod
    def token_texts(cursor: "cindex.Cursor") -> List[str]:
        return [token.spelling for token in cursor.get_tokens()]

    @staticmethod
    def record_name(cursor: "cindex.Cursor") -> Optional[str]:
        if cursor.kind.name == "TYPEDEF_DECL":
            underlying = cursor.underlying_typedef_type.get_canonical()
            return cursor.spelling if underlying.kind.name == "RECORD" else None
        if not cursor.spelling:
            return None
        keyword = "struct" if cursor.kind.name == "STRUCT_DECL" else "union"
        return f"{keyword} {cursor.spelling}"

    @staticmethod
    def storage(cursor: "cindex.Cursor") -> str:
        name = cursor.storage_class.name.lower()
        return name if name in ("static", "extern", "register") else "auto"

    # -------------------------------------------------------- declarations

    def var_decl(self, cursor: "cindex.Cursor") -> Dict[str, Any]:
        node: Dict[str, Any] = {
            "name": cursor.spelling,
            "type": cursor.type.spelling,
            "storage": self.storage(cursor),
        }
        if "=" in self.token_texts(cursor):
            initializers = [child for child in cursor.get_children() if child.kind.is_expression()]
            if initializers:
                node["init"] = self.expr(initializers[-1])
        return self.with_span(node, cursor)

    def function(self, cursor: "cindex.Cursor") -> Dict[str, Any]:
        params = [
            self.with_span({"name": arg.spelling or f"arg{i}", "type": arg.type.spelling}, arg)
            for i, arg in enumerate(cursor.get_arguments())
        ]
        attributes = []
        body: List[Dict[str, Any]] = []
        for child in cursor.get_children():
            if child.kind.is_attribute():
                attributes.append(child.spelling or " ".join(self.token_texts(child)))
            elif child.kind.name == "COMPOUND_STMT":
                body = self.body(child)
        node = {
            "name": cursor.spelling,
            "return_type": cursor.result_type.spelling,
            "params": params,
            "attributes": [attr for attr in attributes if attr],
            "static": cursor.storage_class.name == "STATIC",
            "body": body,
        }
        return self.with_span(node, cursor)

    # ---------------------------------------------------------- statements

    def body(self, cursor: "cindex.Cursor") -> List[Dict[str, Any]]:
        if cursor.kind.name == "COMPOUND_STMT":
            stmts: List[Dict[str, Any]] = []
            for child in cursor.get_children():
                stmts.extend(self.stmt(child))
            return stmts
        return self.stmt(cursor)

    def stmt(self, cursor: "cindex.Cursor") -> List[Dict[str, Any]]:
        kind = cursor.kind.name
        children = list(cursor.get_children())

        if kind == "COMPOUND_STMT":
            return [self.with_span({"kind": "block", "body": self.body(cursor)}, cursor)]
        if kind == "DECL_STMT":
            return [
                {"kind": "decl", **self.var_decl(child)}
                for child in children
                if child.kind.name == "VAR_DECL"
            ]
        if kind == "IF_STMT":
            node = {"kind": "if", "cond": self.expr(children[0]), "then": self.body(children[1])}
            if len(children) > 2:
                node["else"] = self.body(children[2])
            return [self.with_span(node, cursor)]
        if kind == "WHILE_STMT":
            node = {"kind": "while", "cond": self.expr(children[0]), "body": self.body(children[-1])}
            return [self.with_span(node, cursor)]
        if kind == "DO_STMT":
            node = {"kind": "do", "body": self.body(children[0]), "cond": self.expr(children[-1])}
            return [self.with_span(node, cursor)]
        if kind == "FOR_STMT":
            return [self.for_stmt(cursor, children)]
        if kind == "SWITCH_STMT":
            return [self.switch_stmt(cursor, children)]
        if kind == "RETURN_STMT":
            node = {"kind": "return"}
            if children:
                node["value"] = self.expr(children[0])
            return [self.with_span(node, cursor)]
        if kind == "BREAK_STMT":
            return [self.with_span({"kind": "break"}, cursor)]
        if kind == "CONTINUE_STMT":
            return [self.with_span({"kind": "continue"}, cursor)]
        if kind == "GOTO_STMT":
            label = children[0].spelling if children else self.token_texts(cursor)[-2]
            return [self.with_span({"kind": "goto", "label": label}, cursor)]
        if kind == "LABEL_STMT":
            label = self.with_span({"kind": "label", "name": cursor.spelling}, cursor)
            nested = [stmt for child in children for stmt in self.stmt(child)]
            return [label] + nested
        if kind in ("CASE_STMT", "DEFAULT_STMT"):
            # Labels outside a switch body are translated by switch_stmt().
            return [stmt for child in children[-1:] for stmt in self.stmt(child)]
        if kind == "NULL_STMT":
            return []
        if kind == "ATTRIBUTED_STMT" or kind == "UNEXPOSED_STMT":
            if "fallthrough" in self.token_texts(cursor):
                return [self.with_span({"kind": "fallthrough"}, cursor)]
            return [stmt for child in children for stmt in self.stmt(child)]
        if cursor.kind.is_expression():
            return [self.with_span({"kind": "expr", "expr": self.expr(cursor)}, cursor)]
        logger.debug("%s: skipping statement kind %s", self.path, kind)
        return []

    def for_stmt(self, cursor: "cindex.Cursor", children: List["cindex.Cursor"]) -> Dict[str, Any]:
        # libclang omits empty header clauses, so place each child by offset
        # relative to the two header semicolons.
        semicolons: List[int] = []
        depth = 0
        for token in cursor.get_tokens():
            if token.spelling == "(":
                depth += 1
            elif token.spelling == ")":
                depth -= 1
                if depth == 0:
                    break
            elif token.spelling == ";" and depth == 1:
                semicolons.append(token.extent.start.offset)
        node: Dict[str, Any] = {"kind": "for", "body": self.body(children[-1]) if children else []}
        header = children[:-1]
        for child in header:
            offset = child.extent.start.offset
            if len(semicolons) >= 1 and offset < semicolons[0]:
                init = self.stmt(child)
                if init:
                    node["init"] = init[0]
            elif len(semicolons) >= 2 and offset < semicolons[1]:
                node["cond"] = self.expr(child)
            else:
                node["step"] = self.expr(child)
        return self.with_span(node, cursor)

    def switch_stmt(self, cursor: "cindex.Cursor", children: List["cindex.Cursor"]) -> Dict[str, Any]:
        control = children[0]
        body = children[-1]
        items = list(body.get_children()) if body.kind.name == "COMPOUND_STMT" else [body]
        cases: List[Dict[str, Any]] = []
        for item in items:
            if item.kind.name not in ("CASE_STMT", "DEFAULT_STMT"):
                if cases:
                    cases[-1]["body"].extend(self.stmt(item))
                continue
            labels: List[str] = []
            current = item
            while current.kind.name in ("CASE_STMT", "DEFAULT_STMT"):
                parts = list(current.get_children())
                if current.kind.name == "DEFAULT_STMT":
                    labels.append("default")
                else:
                    labels.append(" ".join(self.token_texts(parts[0])) or parts[0].spelling or "?")
                current = parts[-1]
            case = self.with_span({"labels": labels, "body": self.stmt(current)}, item)
            if cases:
                self.mark_fallthrough(cases[-1], item)
            cases.append(case)
        return self.with_span({"kind": "switch", "control": self.expr(control), "cases": cases}, cursor)

    def mark_fallthrough(self, previous: Dict[str, Any], next_case: "cindex.Cursor") -> None:
        """Append a marker when a fallthrough comment sits just before the next label."""
        span = previous.get("span")
        if not span:
            return
        first = span[0]
        last = next_case.extent.start.line
        position = bisect.bisect_left(self.fallthrough_lines, first)
        if position < len(self.fallthrough_lines) and self.fallthrough_lines[position] <= last:
            line = self.fallthrough_lines[position]
            previous["body"].append({"kind": "fallthrough", "span": [line, 1]})

    # --------------------------------------------------------- expressions

    def expr(self, cursor: "cindex.Cursor") -> Any:
        node = self._expr(cursor)
        if isinstance(node, dict) and "span" not in node:
            self.with_span(node, cursor)
        return node

    def _expr(self, cursor: "cindex.Cursor") -> Any:
        kind = cursor.kind.name
        children = list(cursor.get_children())
        tokens = self.token_texts(cursor)

        if kind == "DECL_REF_EXPR":
            return {"kind": "name", "id": cursor.spelling}
        if kind != "CALL_EXPR" and len(tokens) == 1 and _IDENTIFIER.match(tokens[0]):
            # macro-expanded constant or register spelled as one identifier
            return {"kind": "name", "id": tokens[0]}
        if kind in ("INTEGER_LITERAL", "FLOATING_LITERAL", "CHARACTER_LITERAL", "STRING_LITERAL"):
            return {"kind": "literal", "value": " ".join(tokens) or cursor.spelling or "0"}
        if kind in ("PAREN_EXPR", "UNEXPOSED_EXPR") and len(children) == 1:
            return self.expr(children[0])
        if kind == "BINARY_OPERATOR" and len(children) == 2:
            op = self.operator_after(cursor, children[0])
            if op in _ASSIGN_OPS:
                return {"kind": "assign", "op": op, "target": self.expr(children[0]), "value": self.expr(children[1])}
            return {"kind": "binary", "op": op, "left": self.expr(children[0]), "right": self.expr(children[1])}
        if kind == "COMPOUND_ASSIGNMENT_OPERATOR" and len(children) == 2:
            op = self.operator_after(cursor, children[0])
            return {"kind": "assign", "op": op, "target": self.expr(children[0]), "value": self.expr(children[1])}
        if kind == "UNARY_OPERATOR" and len(children) == 1:
            operand = children[0]
            all_tokens = list(cursor.get_tokens())
            if all_tokens and all_tokens[0].extent.start.offset < operand.extent.start.offset:
                op, postfix = all_tokens[0].spelling, False
            else:
                op, postfix = (all_tokens[-1].spelling if all_tokens else "+"), True
            if op not in _UNARY_OPS:
                return self.expr(operand)
            return {"kind": "unary", "op": op, "operand": self.expr(operand), "postfix": postfix}
        if kind == "CALL_EXPR":
            return {
                "kind": "call",
                "callee": cursor.spelling or "<indirect>",
                "args": [self.expr(arg) for arg in cursor.get_arguments()],
            }
        if kind == "CSTYLE_CAST_EXPR":
            operands = [child for child in children if child.kind.is_expression()]
            if not operands:
                return {"kind": "literal", "value": " ".join(tokens) or "0"}
            return {"kind": "cast", "type": cursor.type.spelling, "operand": self.expr(operands[-1])}
        if kind == "MEMBER_REF_EXPR" and children:
            return {
                "kind": "member",
                "base": self.expr(children[0]),
                "field": cursor.spelling,
                "arrow": self.operator_after(cursor, children[0]) == "->",
            }
        if kind == "ARRAY_SUBSCRIPT_EXPR" and len(children) == 2:
            return {"kind": "index", "base": self.expr(children[0]), "index": self.expr(children[1])}
        if kind == "INIT_LIST_EXPR":
            return {"kind": "init_list", "items": [self.expr(child) for child in children]}
        if kind == "CONDITIONAL_OPERATOR" and len(children) == 3:
            return {
                "kind": "conditional",
                "cond": self.expr(children[0]),
                "then": self.expr(children[1]),
                "else": self.expr(children[2]),
            }
        if len(children) == 1 and children[0].kind.is_expression():
            return self.expr(children[0])
        return {"kind": "literal", "value": " ".join(tokens) or cursor.spelling or "<expr>"}

    @staticmethod
    def operator_after(cursor: "cindex.Cursor", left: "cindex.Cursor") -> str:
        boundary = left.extent.end.offset
        for token in cursor.get_tokens():
            if token.extent.start.offset >= boundary and token.kind.name == "PUNCTUATION":
                return token.spelling
        return "?"

    # ------------------------------------------------- tokens & suppressions

    def tokens(self) -> List[Dict[str, Any]]:
        found = []
        for token in self.clang_tu.get_tokens(extent=self.clang_tu.cursor.extent):
            start, end = token.extent.start, token.extent.end
            if start.file is None or os.path.abspath(start.file.name) != self.canonical:
                continue
            kind = _TOKEN_KINDS.get(token.kind.name)
            if kind is None:
                continue
            found.append(
                {
                    "kind": kind,
                    "text": token.spelling,
                    "span": [start.line, start.column, end.line, max(end.column, start.column)],
                }
            )
        return found

    def statement_ends(self) -> Dict[int, int]:
        """Last line of the outermost cursor starting on each line of the main file."""
        ends: Dict[int, int] = {}
        if self.clang_tu is None:
            return ends
        for top in self.clang_tu.cursor.get_children():
            if not self.in_main_file(top):
                continue
            for cursor in top.walk_preorder():
                span = self.span(cursor)
                if span is None:
                    continue
                start, end = span[0], span[2] if len(span) == 4 else span[0]
                ends[start] = max(ends.get(start, start), end)
        return ends

    def suppressions(self) -> List[Dict[str, Any]]:
        found = []
        ends: Optional[Dict[int, int]] = None
        for number, text in enumerate(self.lines, start=1):
            match = _WAIVER.search(text)
            if match is None:
                continue
            if ends is None:
                ends = self.statement_ends()
            target = number
            if _COMMENT_ONLY.match(text):
                target = self.next_code_line(number)
            found.append(
                {
                    "rule": match.group("rule"),
                    "tag": match.group("tag"),
                    "justification": match.group("text"),
                    "span": {"line": target, "col": 1, "line_end": ends.get(target, target), "col_end": END_OF_FILE},
                }
            )
        return found

    def next_code_line(self, number: int) -> int:
        for candidate in range(number + 1, len(self.lines) + 1):
            text = self.lines[candidate - 1]
            if text.strip() and not _COMMENT_ONLY.match(text):
                return candidate
        return number


def parse_files(
    paths: Sequence[str],
    conventions: Optional[Conventions] = None,
    args: Sequence[str] = (),
) -> Tuple[List[TranslationUnit], List[MalformedUnitError]]:
    """Parse several files; failures are returned rather than raised."""
    units: List[TranslationUnit] = []
    failures: List[MalformedUnitError] = []
    for path in paths:
        try:
            units.append(parse_file(path, conventions, args))
        except MalformedUnitError as exc:
            logger.warning("Skipping %s: %s", path, exc.reason)
            failures.append(exc)
    return units, failures
