"""
Source Model Adapter.

Normalizes an external parser's structured output (a mapping document, usually
read from YAML or JSON) into the immutable source model, and stitches units
into the read-only project index. No analysis happens here: malformed input is
rejected with ``MalformedUnitError``, never half-accepted.

Document shape (abridged)::

    path: src/uart.c
    types: [frame_t, {name: msg, kind: struct}]
    declarations:
      - {name: g_count, type: "volatile uint32_t", storage: static, span: [3, 1]}
    functions:
      - name: USART1_IRQHandler
        span: [10, 1, 20, 1]
        params: [{name: buf, type: "const uint8_t *"}]
        body:
          - {kind: expr, span: [11, 5], expr: {kind: call, callee: HAL_Delay, args: ["10"]}}
    suppressions:
      - {rule: R-REG-002, tag: EXC-VOLATILE, justification: "...", span: [12, 1, 12, 40]}

Spans are ``[line, col]``, ``[line, col, line_end, col_end]`` or a mapping.
Functions and file-scope declarations must carry one; other nodes inherit the
span of the nearest enclosing node when they omit it. Expressions may be
written as bare identifiers or numbers.
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
import logging
import re
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import yaml

from firmlint.config import Conventions, parse_rule_allowlist
from firmlint.errors import MalformedUnitError
from firmlint.model import (
    Assign,
    Binary,
    Block,
    BreakStmt,
    Call,
    Cast,
    Conditional,
    ContinueStmt,
    CType,
    Declaration,
    DeclStmt,
    DoWhileStmt,
    ExceptionTag,
    Expr,
    ExprStmt,
    FallthroughStmt,
    ForStmt,
    Function,
    GotoStmt,
    IfStmt,
    Index,
    InitList,
    LabelStmt,
    Literal,
    Member,
    Name,
    Parameter,
    ReturnStmt,
    SourceSpan,
    Stmt,
    SwitchCase,
    SwitchStmt,
    Token,
    TranslationUnit,
    Unary,
    WhileStmt,
    iter_body_exprs,
    iter_stmts,
    normalize_spelling,
)

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_ARRAY_SUFFIX = re.compile(r"\[\s*(\d*)\s*\]")
_QUALIFIERS = {"const", "volatile", "restrict", "__restrict", "static", "extern", "register", "inline"}
_STORAGE_CLASSES = ("auto", "static", "extern", "register")
_UNARY_OPS = {"*", "&", "!", "-", "+", "~", "++", "--"}
_TOKEN_KINDS = {"identifier", "keyword", "literal", "punctuation", "comment"}


def parse_type_spelling(text: str) -> CType:
    """
    Parse a C type spelling such as ``"volatile uint32_t *const"`` or
    ``"uint8_t [16]"`` into a ``CType``.
    """
    text = normalize_spelling(text)
    dims = _ARRAY_SUFFIX.findall(text)
    text = _ARRAY_SUFFIX.sub(" ", text)
    is_array = bool(dims)
    array_length = int(dims[0]) if dims and dims[0] else None

    parts = text.split("*")
    depth = len(parts) - 1
    base_words = parts[0].split()
    trailing_words = parts[-1].split() if depth else []

    spelling = " ".join(word for word in base_words if word not in _QUALIFIERS)
    return CType(
        spelling=normalize_spelling(spelling) or "int",
        pointer_depth=depth,
        is_const="const" in base_words,
        is_volatile="volatile" in base_words,
        pointer_const="const" in trailing_words,
        is_array=is_array,
        array_length=array_length,
    )


# ============================================================
# ===================== UNIT BUILDING ========================
# ============================================================

class _UnitBuilder:
    """Walks one unit document, tracking where it is for error messages."""

    def __init__(self, path: str, conventions: Conventions) -> None:
        self.path = path
        self.conventions = conventions

    def fail(self, where: str, message: str) -> MalformedUnitError:
        return MalformedUnitError(f"{where}: {message}", unit=self.path)

    # ---------------------------------------------------------- helpers

    def mapping(self, raw: Any, where: str) -> Mapping[str, Any]:
        if not isinstance(raw, Mapping):
            raise self.fail(where, f"expected a mapping, got {type(raw).__name__}")
        return raw

    def sequence(self, raw: Any, where: str) -> Sequence[Any]:
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise self.fail(where, f"expected a list, got {type(raw).__name__}")
        return raw

    def string(self, raw: Mapping[str, Any], key: str, where: str) -> str:
        value = raw.get(key)
        if not isinstance(value, str) or not value:
            raise self.fail(where, f"'{key}' must be a non-empty string")
        return value

    def span(self, raw: Any, where: str, inherited: Optional[SourceSpan]) -> SourceSpan:
        if raw is None:
            if inherited is None:
                raise self.fail(where, "missing 'span'")
            return inherited
        if isinstance(raw, list):
            if len(raw) not in (2, 4) or not all(isinstance(v, int) for v in raw):
                raise self.fail(where, "span list must be [line, col] or [line, col, line_end, col_end]")
            if len(raw) == 2:
                return SourceSpan.point(self.path, raw[0], raw[1])
            span = SourceSpan(self.path, raw[0], raw[1], raw[2], raw[3])
        elif isinstance(raw, Mapping):
            try:
                line = int(raw.get("line", raw.get("line_start")))
                col = int(raw.get("col", raw.get("col_start", 1)))
                line_end = int(raw.get("line_end", line))
                col_end = int(raw.get("col_end", col))
            except (TypeError, ValueError):
                raise self.fail(where, "span mapping needs integer 'line' and 'col'") from None
            span = SourceSpan(str(raw.get("file", self.path)), line, col, line_end, col_end)
        else:
            raise self.fail(where, "span must be a list or a mapping")
        if span.line_start < 1 or span.col_start < 1 or span.end < span.start:
            raise self.fail(where, f"invalid span {span.start}..{span.end}")
        return span

    def ctype(self, raw: Any, where: str) -> CType:
        if isinstance(raw, str):
            return parse_type_spelling(raw)
        if isinstance(raw, Mapping):
            name = raw.get("name")
            if not isinstance(name, str) or not name:
                raise self.fail(where, "type mapping needs a 'name'")
            base = parse_type_spelling(name)
            array = raw.get("array")
            return CType(
                spelling=base.spelling,
                pointer_depth=int(raw.get("pointer", base.pointer_depth)),
                is_const=bool(raw.get("const", base.is_const)),
                is_volatile=bool(raw.get("volatile", base.is_volatile)),
                pointer_const=bool(raw.get("pointer_const", base.pointer_const)),
                is_array=array is not None and array is not False or base.is_array,
                array_length=array if isinstance(array, int) and not isinstance(array, bool) else base.array_length,
            )
        raise self.fail(where, "type must be a string or a mapping")

    # ------------------------------------------------------ expressions

    def expr(self, raw: Any, where: str, inherited: SourceSpan) -> Expr:
        if isinstance(raw, bool):
            raise self.fail(where, "booleans are not expressions")
        if isinstance(raw, int):
            return Literal(str(raw), inherited)
        if isinstance(raw, str):
            if _IDENTIFIER.match(raw):
                return Name(raw, inherited)
            return Literal(raw, inherited)

        node = self.mapping(raw, where)
        kind = node.get("kind")
        span = self.span(node.get("span"), where, inherited)

        if kind == "name":
            return Name(self.string(node, "id", where), span)
        if kind == "literal":
            value = node.get("value")
            if value is None or isinstance(value, bool):
                raise self.fail(where, "literal needs a 'value'")
            return Literal(str(value), span)
        if kind == "unary":
            op = node.get("op")
            if op not in _UNARY_OPS:
                raise self.fail(where, f"unknown unary operator {op!r}")
            operand = self.expr(node.get("operand"), f"{where}.operand", span)
            return Unary(op, operand, span, postfix=bool(node.get("postfix", False)))
        if kind == "binary":
            op = self.string(node, "op", where)
            return Binary(
                op,
                self.expr(node.get("left"), f"{where}.left", span),
                self.expr(node.get("right"), f"{where}.right", span),
                span,
            )
        if kind == "assign":
            op = node.get("op", "=")
            if not isinstance(op, str) or not op.endswith("="):
                raise self.fail(where, f"unknown assignment operator {op!r}")
            return Assign(
                op,
                self.expr(node.get("target"), f"{where}.target", span),
                self.expr(node.get("value"), f"{where}.value", span),
                span,
            )
        if kind == "call":
            callee = self.string(node, "callee", where)
            args = tuple(
                self.expr(arg, f"{where}.args[{i}]", span)
                for i, arg in enumerate(self.sequence(node.get("args"), f"{where}.args"))
            )
            return Call(callee, args, span)
        if kind == "cast":
            return Cast(
                self.ctype(node.get("type"), f"{where}.type"),
                self.expr(node.get("operand"), f"{where}.operand", span),
                span,
            )
        if kind == "member":
            return Member(
                self.expr(node.get("base"), f"{where}.base", span),
                self.string(node, "field", where),
                bool(node.get("arrow", False)),
                span,
            )
        if kind == "index":
            return Index(
                self.expr(node.get("base"), f"{where}.base", span),
                self.expr(node.get("index"), f"{where}.index", span),
                span,
            )
        if kind == "init_list":
            items = tuple(
                self.expr(item, f"{where}.items[{i}]", span)
                for i, item in enumerate(self.sequence(node.get("items"), f"{where}.items"))
            )
            return InitList(items, span)
        if kind == "conditional":
            return Conditional(
                self.expr(node.get("cond"), f"{where}.cond", span),
                self.expr(node.get("then"), f"{where}.then", span),
                self.expr(node.get("else"), f"{where}.else", span),
                span,
            )
        raise self.fail(where, f"unknown expression kind {kind!r}")

    def optional_expr(self, raw: Any, where: str, inherited: SourceSpan) -> Optional[Expr]:
        if raw is None:
            return None
        return self.expr(raw, where, inherited)

    # ------------------------------------------------------- statements

    def body(self, raw: Any, where: str, inherited: SourceSpan) -> Tuple[Stmt, ...]:
        return tuple(
            self.stmt(item, f"{where}[{i}]", inherited)
            for i, item in enumerate(self.sequence(raw, where))
        )

    def declaration(
        self,
        node: Mapping[str, Any],
        where: str,
        inherited: Optional[SourceSpan],
        *,
        file_scope: bool,
    ) -> Declaration:
        span = self.span(node.get("span"), where, inherited)
        storage = node.get("storage", "auto")
        if storage not in _STORAGE_CLASSES:
            raise self.fail(where, f"unknown storage class {storage!r}")
        return Declaration(
            name=self.string(node, "name", where),
            ctype=self.ctype(node.get("type"), f"{where}.type"),
            span=span,
            storage=storage,
            init=self.optional_expr(node.get("init"), f"{where}.init", span),
            file_scope=file_scope,
        )

    def stmt(self, raw: Any, where: str, inherited: SourceSpan) -> Stmt:
        node = self.mapping(raw, where)
        kind = node.get("kind")
        span = self.span(node.get("span"), where, inherited)

        if kind == "decl":
            return DeclStmt(self.declaration(node, where, span, file_scope=False), span)
        if kind == "expr":
            return ExprStmt(self.expr(node.get("expr"), f"{where}.expr", span), span)
        if kind == "if":
            else_raw = node.get("else")
            return IfStmt(
                self.expr(node.get("cond"), f"{where}.cond", span),
                self.body(node.get("then"), f"{where}.then", span),
                self.body(else_raw, f"{where}.else", span) if else_raw is not None else None,
                span,
            )
        if kind == "while":
            return WhileStmt(
                self.expr(node.get("cond"), f"{where}.cond", span),
                self.body(node.get("body"), f"{where}.body", span),
                span,
            )
        if kind == "do":
            return DoWhileStmt(
                self.body(node.get("body"), f"{where}.body", span),
                self.expr(node.get("cond"), f"{where}.cond", span),
                span,
            )
        if kind == "for":
            init_raw = node.get("init")
            return ForStmt(
                self.stmt(init_raw, f"{where}.init", span) if init_raw is not None else None,
                self.optional_expr(node.get("cond"), f"{where}.cond", span),
                self.optional_expr(node.get("step"), f"{where}.step", span),
                self.body(node.get("body"), f"{where}.body", span),
                span,
            )
        if kind == "switch":
            cases = []
            for i, raw_case in enumerate(self.sequence(node.get("cases"), f"{where}.cases")):
                case_where = f"{where}.cases[{i}]"
                case_node = self.mapping(raw_case, case_where)
                case_span = self.span(case_node.get("span"), case_where, span)
                labels = self.sequence(case_node.get("labels"), f"{case_where}.labels")
                if not labels:
                    raise self.fail(case_where, "case needs at least one label")
                cases.append(
                    SwitchCase(
                        tuple(str(label) for label in labels),
                        self.body(case_node.get("body"), f"{case_where}.body", case_span),
                        case_span,
                    )
                )
            return SwitchStmt(self.expr(node.get("control"), f"{where}.control", span), tuple(cases), span)
        if kind == "return":
            return ReturnStmt(self.optional_expr(node.get("value"), f"{where}.value", span), span)
        if kind == "break":
            return BreakStmt(span)
        if kind == "continue":
            return ContinueStmt(span)
        if kind == "goto":
            return GotoStmt(self.string(node, "label", where), span)
        if kind == "label":
            return LabelStmt(self.string(node, "name", where), span)
        if kind == "fallthrough":
            return FallthroughStmt(span)
        if kind == "block":
            return Block(self.body(node.get("body"), f"{where}.body", span), span)
        raise self.fail(where, f"unknown statement kind {kind!r}")

    # -------------------------------------------------------- top level

    def function(self, raw: Any, where: str) -> Function:
        node = self.mapping(raw, where)
        name = self.string(node, "name", where)
        span = self.span(node.get("span"), where, None)
        params = []
        for i, raw_param in enumerate(self.sequence(node.get("params"), f"{where}.params")):
            param_where = f"{where}.params[{i}]"
            param = self.mapping(raw_param, param_where)
            params.append(
                Parameter(
                    name=self.string(param, "name", param_where),
                    ctype=self.ctype(param.get("type"), f"{param_where}.type"),
                    span=self.span(param.get("span"), param_where, span),
                )
            )
        attributes = tuple(str(attr) for attr in self.sequence(node.get("attributes"), f"{where}.attributes"))
        body = self.body(node.get("body"), f"{where}.body", span)
        calls = frozenset(expr.callee for expr in iter_body_exprs(body) if isinstance(expr, Call))
        return Function(
            name=name,
            file=span.file,
            return_type=self.ctype(node.get("return_type", "void"), f"{where}.return_type"),
            params=tuple(params),
            body=body,
            span=span,
            attributes=attributes,
            is_isr=self.conventions.is_isr(name, attributes),
            is_static=bool(node.get("static", False)) or node.get("storage") == "static",
            calls=calls,
        )

    def token(self, raw: Any, where: str) -> Token:
        node = self.mapping(raw, where)
        kind = node.get("kind")
        if kind not in _TOKEN_KINDS:
            raise self.fail(where, f"unknown token kind {kind!r}")
        text = node.get("text")
        if not isinstance(text, str):
            raise self.fail(where, "token needs 'text'")
        return Token(kind, text, self.span(node.get("span"), where, None))

    def suppression(self, raw: Any, where: str) -> ExceptionTag:
        node = self.mapping(raw, where)
        return ExceptionTag(
            tag_id=str(node.get("tag") or node.get("id") or ""),
            justification=str(node.get("justification") or ""),
            scope=self.span(node.get("span"), where, None),
            rules=parse_rule_allowlist(node.get("rules", node.get("rule"))),
            origin="inline",
        )

    def struct_types(self, raw: Any) -> FrozenSet[str]:
        names: Set[str] = set()
        for i, entry in enumerate(self.sequence(raw, "types")):
            if isinstance(entry, str):
                names.add(entry)
                continue
            node = self.mapping(entry, f"types[{i}]")
            if node.get("kind", "struct") in ("struct", "union"):
                names.add(self.string(node, "name", f"types[{i}]"))
        return frozenset(names)


def load_unit(
    document: Any,
    conventions: Optional[Conventions] = None,
    *,
    path: Optional[str] = None,
) -> TranslationUnit:
    """
    Normalize one parser document into a ``TranslationUnit``.

    Raises ``MalformedUnitError`` naming the unit and the offending location
    in the document.
    """
    if not isinstance(document, Mapping):
        raise MalformedUnitError("unit document must be a mapping", unit=path)
    unit_path = document.get("path") or path
    if not isinstance(unit_path, str) or not unit_path:
        raise MalformedUnitError("unit document needs a 'path'", unit=path)

    builder = _UnitBuilder(unit_path, conventions or Conventions())
    declarations = tuple(
        builder.declaration(
            builder.mapping(raw, f"declarations[{i}]"),
            f"declarations[{i}]",
            None,
            file_scope=True,
        )
        for i, raw in enumerate(builder.sequence(document.get("declarations"), "declarations"))
    )
    functions = tuple(
        builder.function(raw, f"functions[{i}]")
        for i, raw in enumerate(builder.sequence(document.get("functions"), "functions"))
    )
    seen: Dict[str, SourceSpan] = {}
    for fn in functions:
        if fn.name in seen:
            raise builder.fail(f"function '{fn.name}'", f"redefined (first defined at {seen[fn.name]})")
        seen[fn.name] = fn.span

    tokens = tuple(
        builder.token(raw, f"tokens[{i}]")
        for i, raw in enumerate(builder.sequence(document.get("tokens"), "tokens"))
    )
    tags = tuple(
        builder.suppression(raw, f"suppressions[{i}]")
        for i, raw in enumerate(builder.sequence(document.get("suppressions"), "suppressions"))
    )
    return TranslationUnit(
        path=unit_path,
        declarations=declarations,
        functions=functions,
        struct_types=builder.struct_types(document.get("types")),
        tokens=tokens,
        exception_tags=tags,
    )


def load_unit_file(path: str, conventions: Optional[Conventions] = None) -> TranslationUnit:
    """Read a parser document from a YAML or JSON file."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle)
    except OSError as exc:
        raise MalformedUnitError(f"could not read unit document ({exc})", unit=path) from exc
    except yaml.YAMLError as exc:
        raise MalformedUnitError(f"unit document is not valid YAML/JSON ({exc})", unit=path) from exc
    return load_unit(document, conventions, path=path)


# ============================================================
# ===================== PROJECT INDEX ========================
# ============================================================

@dataclass(frozen=True)
class ProjectIndex:
    """
    Project-wide, read-only index stitched from all units of a run.
    Shared by every unit evaluation; never mutated after construction.
    """
    functions_by_name: Mapping[str, Tuple[Function, ...]] = field(default_factory=dict)
    call_graph: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    isr_entries: FrozenSet[str] = frozenset()
    isr_reachable: FrozenSet[str] = frozenset()
    task_reachable: FrozenSet[str] = frozenset()
    isr_global_writers: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    duplicates: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()

    def callees(self, name: str) -> Tuple[str, ...]:
        return self.call_graph.get(name, ())

    def is_isr_reachable(self, name: str) -> bool:
        return name in self.isr_reachable

    def is_task_reachable(self, name: str) -> bool:
        """True when ``name`` can run outside interrupt context."""
        return name in self.task_reachable

    def isr_writers_of(self, variable: str) -> Tuple[str, ...]:
        """ISR-reachable functions, in any unit, that write the external global ``variable``."""
        return self.isr_global_writers.get(variable, ())

    def shortest_cycle(self, name: str) -> Optional[Tuple[str, ...]]:
        """
        Shortest call chain leading from ``name`` back to itself, as the list
        of functions on the cycle starting with ``name``.
        """
        parents: Dict[str, str] = {}
        queue = deque([name])
        visited = {name}
        while queue:
            current = queue.popleft()
            for callee in self.callees(current):
                if callee == name:
                    chain = [current]
                    while chain[-1] != name:
                        chain.append(parents[chain[-1]])
                    return tuple(reversed(chain))
                if callee not in visited:
                    visited.add(callee)
                    parents[callee] = current
                    queue.append(callee)
        return None


def stitch_project(units: Sequence[TranslationUnit]) -> ProjectIndex:
    """
    Build the project index from all units. The result does not depend on
    the order of ``units``.
    """
    by_name: Dict[str, List[Function]] = {}
    edges: Dict[str, Set[str]] = {}
    for unit in sorted(units, key=lambda u: u.path):
        for fn in unit.functions:
            by_name.setdefault(fn.name, []).append(fn)
            edges.setdefault(fn.name, set()).update(fn.calls)

    duplicates = []
    for name in sorted(by_name):
        external = [fn.file for fn in by_name[name] if not fn.is_static]
        if len(external) > 1:
            duplicates.append((name, tuple(external)))
            logger.warning("Function '%s' is defined in several units: %s", name, ", ".join(external))

    entries = frozenset(
        name for name, fns in by_name.items() if any(fn.is_isr for fn in fns)
    )
    reachable = _reach(entries, edges)

    # Task code starts at every defined function nobody else calls.
    called = {callee for name, callees in edges.items() for callee in callees if callee != name}
    roots = {name for name in by_name if name not in called and name not in entries}
    task_reachable = _reach(roots, edges, skip=entries)

    writers: Dict[str, Set[str]] = {}
    for unit in units:
        for fn in unit.functions:
            if fn.name in reachable:
                for variable in _external_writes(unit, fn):
                    writers.setdefault(variable, set()).add(fn.name)

    return ProjectIndex(
        functions_by_name={name: tuple(fns) for name, fns in by_name.items()},
        call_graph={name: tuple(sorted(callees)) for name, callees in edges.items()},
        isr_entries=entries,
        isr_reachable=reachable,
        task_reachable=task_reachable,
        isr_global_writers={name: tuple(sorted(fns)) for name, fns in sorted(writers.items())},
        duplicates=tuple(duplicates),
    )


def _reach(roots: Iterable[str], edges: Mapping[str, Set[str]], skip: FrozenSet[str] = frozenset()) -> FrozenSet[str]:
    reached: Set[str] = set(roots)
    queue = deque(sorted(reached))
    while queue:
        current = queue.popleft()
        for callee in edges.get(current, ()):
            if callee not in reached and callee not in skip:
                reached.add(callee)
                queue.append(callee)
    return frozenset(reached)


def _external_writes(unit: TranslationUnit, function: Function) -> Set[str]:
    """Non-static globals of ``unit`` that ``function`` assigns or increments by name."""
    shadowed = {param.name for param in function.params}
    shadowed.update(stmt.decl.name for stmt in iter_stmts(function.body) if isinstance(stmt, DeclStmt))
    visible = {name for name, decl in unit.globals.items() if not decl.is_static} - shadowed
    written: Set[str] = set()
    for expr in iter_body_exprs(function.body):
        if isinstance(expr, Assign):
            target = expr.target
        elif isinstance(expr, Unary) and expr.op in ("++", "--"):
            target = expr.operand
        else:
            continue
        if isinstance(target, Name) and target.id in visible:
            written.add(target.id)
    return written
