"""
Extractor registry and the per-unit context extractors run with.
"""

from __future__ import annotations
from dataclasses import dataclass
import time
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional

from firmlint.adapter import ProjectIndex
from firmlint.config import Conventions
from firmlint.errors import ExtractionError, UnitBudgetExceeded
from firmlint.facts import FACT_KINDS, Fact
from firmlint.model import CType, Declaration, DeclStmt, Function, TranslationUnit, iter_stmts
from firmlint.walk import FunctionWalk, walk_function


class ExtractionContext:
    """
    Read-only inputs for extracting facts from one unit, plus a cache of
    function walks shared by the extractors of that unit.

    One context serves one unit; extractors of a unit run sequentially.
    """

    def __init__(
        self,
        conventions: Conventions,
        project: Optional[ProjectIndex] = None,
        *,
        deadline: Optional[float] = None,
        cancelled: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.conventions = conventions
        self.project = project or ProjectIndex()
        self.deadline = deadline
        self._cancelled = cancelled
        self._walks: Dict[int, FunctionWalk] = {}

    def walk(self, function: Function) -> FunctionWalk:
        key = id(function)
        cached = self._walks.get(key)
        if cached is None or cached.function is not function:
            cached = walk_function(function, self.conventions)
            self._walks[key] = cached
        return cached

    def in_isr_context(self, function: Function) -> bool:
        return function.is_isr or self.project.is_isr_reachable(function.name)

    def checkpoint(self, unit: str) -> None:
        """Raise once the unit's wall-clock budget is spent."""
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise UnitBudgetExceeded("unit exceeded its time budget", unit=unit)

    @property
    def cancelled(self) -> bool:
        return bool(self._cancelled and self._cancelled())


def local_declarations(function: Function) -> Dict[str, Declaration]:
    """Declarations made inside ``function``, by name (last one wins)."""
    return {
        stmt.decl.name: stmt.decl
        for stmt in iter_stmts(function.body)
        if isinstance(stmt, DeclStmt)
    }


def variable_types(unit: TranslationUnit, function: Function) -> Dict[str, CType]:
    """Type of every name visible in ``function``: globals, then parameters, then locals."""
    types = {name: decl.ctype for name, decl in unit.globals.items()}
    types.update({param.name: param.ctype for param in function.params})
    types.update({name: decl.ctype for name, decl in local_declarations(function).items()})
    return types


ExtractorFunc = Callable[[TranslationUnit, ExtractionContext], List[Fact]]


@dataclass(frozen=True)
class Extractor:
    name: str
    produces: FrozenSet[str]
    func: ExtractorFunc

    def run(self, unit: TranslationUnit, context: ExtractionContext) -> List[Fact]:
        facts = self.func(unit, context)
        for fact in facts:
            if fact.kind not in self.produces:
                raise ExtractionError(
                    f"extractor '{self.name}' produced undeclared fact kind '{fact.kind}'",
                    span=fact.span,
                    unit=unit.path,
                )
        return facts


EXTRACTORS: Dict[str, Extractor] = {}


def extractor(name: str, produces: Iterable[str]) -> Callable[[ExtractorFunc], ExtractorFunc]:
    """Register an extractor function under ``name``."""
    kinds = frozenset(produces)
    unknown = kinds - set(FACT_KINDS)
    if unknown:
        raise ValueError(f"extractor '{name}' declares unknown fact kinds: {sorted(unknown)}")

    def decorator(func: ExtractorFunc) -> ExtractorFunc:
        if name in EXTRACTORS:
            raise ValueError(f"extractor '{name}' registered twice")
        EXTRACTORS[name] = Extractor(name, kinds, func)
        return func

    return decorator


def producers(kinds: Iterable[str], registry: Optional[Mapping[str, Extractor]] = None) -> List[Extractor]:
    """Extractors needed to produce ``kinds``, in name order."""
    wanted = set(kinds)
    registry = EXTRACTORS if registry is None else registry
    return [
        registry[name]
        for name in sorted(registry)
        if registry[name].produces & wanted
    ]
