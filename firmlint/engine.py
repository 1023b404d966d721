"""
Evaluation driver.

The Engine will:
- validate the catalog, configuration and every exception tag up front
- stitch the project index once and share it read-only
- evaluate units concurrently: extractors first, then rules (join point)
- resolve exception tags per violation
- merge and sort everything into one Report
"""

from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
import threading
import time
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from firmlint.adapter import ProjectIndex, load_unit, stitch_project
from firmlint.config import EngineConfig
from firmlint.errors import ConfigurationError, ExpressionEvalError, ExtractionError, UnitBudgetExceeded
from firmlint.extractors import EXTRACTORS, ExtractionContext, Extractor, producers
from firmlint.facts import Fact, FactSet
from firmlint.model import ExceptionTag, TranslationUnit
from firmlint.report import Diagnostic, Report, Violation
from firmlint.rules import ActiveRule, RuleCatalog, UnitView, default_catalog
from firmlint.suppressions import ExceptionResolver, find_ambiguities

logger = logging.getLogger(__name__)


@dataclass
class UnitResult:
    """What one worker hands back for one unit."""
    path: str
    violations: List[Violation] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    used_tags: Set[ExceptionTag] = field(default_factory=set)
    failed: bool = False
    cancelled: bool = False


class Engine:
    """
    Evaluates translation units against a rule catalog.

    An Engine holds only immutable inputs, so one instance may serve
    several evaluations, including concurrent ones.
    """

    def __init__(self, catalog: Optional[RuleCatalog] = None, config: Optional[EngineConfig] = None) -> None:
        self.catalog = catalog if catalog is not None else default_catalog()
        self.config = config if config is not None else EngineConfig()
        problems = self.catalog.validate(self.config) + find_ambiguities(self.config.exceptions)
        if problems:
            for problem in problems:
                logger.error("Invalid configuration: %s", problem)
            raise ConfigurationError(problems)
        self.active: Tuple[ActiveRule, ...] = self.catalog.configure(self.config)
        self.extractors: Tuple[Extractor, ...] = tuple(
            producers(self.catalog.subscribed_kinds(self.active), EXTRACTORS)
        )
        rules_by_kind: Dict[str, List[ActiveRule]] = {}
        for rule in self.active:
            for kind in rule.rule.facts:
                rules_by_kind.setdefault(kind, []).append(rule)
        self._rules_by_kind = {kind: tuple(rules) for kind, rules in sorted(rules_by_kind.items())}
        logger.debug(
            "Engine ready: %d active rule(s), extractors %s",
            len(self.active),
            ", ".join(ext.name for ext in self.extractors) or "<none>",
        )

    # ------------------------------------------------------------------ entry points

    def evaluate(
        self,
        units: Iterable[TranslationUnit],
        *,
        cancel: Optional[threading.Event] = None,
    ) -> Report:
        """Evaluate already-normalized units. Raises ``ConfigurationError`` before any work."""
        return self._run(list(units), [], cancel)

    def evaluate_documents(
        self,
        documents: Sequence[Any],
        *,
        cancel: Optional[threading.Event] = None,
    ) -> Report:
        """
        Normalize parser documents and evaluate them. A document the adapter
        rejects becomes an ``extraction-error`` for that unit only.
        """
        units: List[TranslationUnit] = []
        diagnostics: List[Diagnostic] = []
        for index, document in enumerate(documents):
            name = f"<document {index + 1}>"
            try:
                units.append(load_unit(document, self.config.conventions, path=name))
            except ExtractionError as exc:
                unit = exc.unit or name
                logger.warning("Skipping unit %s: %s", unit, exc)
                diagnostics.append(
                    Diagnostic("extraction-error", str(exc), unit=unit, span=exc.span)
                )
        return self._run(units, diagnostics, cancel)

    # ---------------------------------------------------------------------- driver

    def validate(self, units: Sequence[TranslationUnit]) -> List[ExceptionTag]:
        """Every exception tag of the run; raises on any tag or unit problem."""
        inline: List[ExceptionTag] = []
        seen: Set[str] = set()
        problems: List[str] = []
        for unit in sorted(units, key=lambda u: u.path):
            if unit.path in seen:
                problems.append(f"unit '{unit.path}' is given more than once")
            seen.add(unit.path)
            inline.extend(unit.exception_tags)
        tags = list(self.config.exceptions) + inline
        problems.extend(self.catalog.validate(self.config, inline))
        problems.extend(find_ambiguities(tags))
        if problems:
            for problem in problems:
                logger.error("Invalid configuration: %s", problem)
            raise ConfigurationError(problems)
        return tags

    def _run(
        self,
        units: List[TranslationUnit],
        diagnostics: List[Diagnostic],
        cancel: Optional[threading.Event],
    ) -> Report:
        tags = self.validate(units)
        resolver = ExceptionResolver(tags)
        project = stitch_project(units)
        cancel = cancel if cancel is not None else threading.Event()

        for name, files in project.duplicates:
            diagnostics.append(
                Diagnostic(
                    "duplicate-definition",
                    f"function '{name}' has external definitions in {', '.join(files)}",
                    unit=files[0],
                )
            )
        for tag in resolver.unjustified:
            diagnostics.append(
                Diagnostic(
                    "unjustified-suppression",
                    f"exception tag {tag} has no id or justification and waives nothing",
                    unit=tag.scope.file,
                    span=tag.scope,
                    tag=tag,
                )
            )

        logger.info("Evaluating %d unit(s) with %d worker(s)", len(units), self.config.workers)
        with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
            futures = [
                pool.submit(self._evaluate_unit, unit, project, resolver, cancel)
                for unit in units
            ]
            results = [future.result() for future in futures]

        violations: List[Violation] = []
        used: Set[ExceptionTag] = set()
        skipped: Set[str] = set()
        for result in results:
            if result.cancelled:
                skipped.add(result.path)
                continue
            violations.extend(result.violations)
            diagnostics.extend(result.diagnostics)
            used.update(result.used_tags)
            if result.failed:
                skipped.add(result.path)
        skipped.update(_failed_paths(diagnostics))

        cancelled = cancel.is_set()
        for tag in resolver.stale(used, frozenset(skipped)):
            diagnostics.append(
                Diagnostic(
                    "stale-suppression",
                    f"exception tag {tag} matched no violation",
                    unit=tag.scope.file,
                    span=tag.scope,
                    tag=tag,
                )
            )
        if cancelled:
            logger.warning("Evaluation cancelled; %d unit(s) discarded", sum(r.cancelled for r in results))
        return Report.build(violations, diagnostics, cancelled=cancelled)

    def _evaluate_unit(
        self,
        unit: TranslationUnit,
        project: ProjectIndex,
        resolver: ExceptionResolver,
        cancel: threading.Event,
    ) -> UnitResult:
        result = UnitResult(unit.path)
        if cancel.is_set():
            result.cancelled = True
            return result

        budget = self.config.unit_budget_seconds
        context = ExtractionContext(
            self.config.conventions,
            project,
            deadline=time.monotonic() + budget if budget is not None else None,
            cancelled=cancel.is_set,
        )
        try:
            facts = self._extract(unit, context, result)
            if context.cancelled:
                result.cancelled = True
                return result
            self._apply_rules(unit, FactSet(facts), context, resolver, result)
        except UnitBudgetExceeded as exc:
            logger.warning("Unit %s: %s", unit.path, exc.reason)
            return UnitResult(
                unit.path,
                diagnostics=[Diagnostic("extraction-error", exc.reason, unit=unit.path)],
                failed=True,
            )
        if context.cancelled:
            result.cancelled = True
        return result

    def _extract(self, unit: TranslationUnit, context: ExtractionContext, result: UnitResult) -> List[Fact]:
        facts: List[Fact] = []
        for ext in self.extractors:
            if context.cancelled:
                break
            context.checkpoint(unit.path)
            try:
                facts.extend(ext.run(unit, context))
            except UnitBudgetExceeded:
                raise
            except ExtractionError as exc:
                self._extraction_failed(unit, ext, exc, result)
            except Exception as exc:  # pragma: no cover - safeguard
                self._extraction_failed(unit, ext, exc, result)
        context.checkpoint(unit.path)
        return facts

    @staticmethod
    def _extraction_failed(unit: TranslationUnit, ext: Extractor, exc: Exception, result: UnitResult) -> None:
        logger.warning("Extractor '%s' failed on %s: %s", ext.name, unit.path, exc)
        span = exc.span if isinstance(exc, ExtractionError) else None
        result.diagnostics.append(
            Diagnostic(
                "extraction-error",
                f"extractor '{ext.name}' failed: {exc}",
                unit=unit.path,
                span=span,
            )
        )
        result.failed = True

    def _apply_rules(
        self,
        unit: TranslationUnit,
        facts: FactSet,
        context: ExtractionContext,
        resolver: ExceptionResolver,
        result: UnitResult,
    ) -> None:
        view = UnitView(
            unit.path,
            tuple(sorted(fn.name for fn in unit.functions if context.in_isr_context(fn))),
        )
        for kind, rules in self._rules_by_kind.items():
            context.checkpoint(unit.path)
            for fact in facts.of_kind(kind):
                for rule in rules:
                    violation = self._apply(rule, fact, view, result)
                    if violation is None:
                        continue
                    winner, eligible = resolver.resolve(rule.id, violation.span)
                    result.used_tags.update(eligible)
                    if winner is not None:
                        violation = violation.waive(winner)
                    result.violations.append(violation)

    @staticmethod
    def _apply(rule: ActiveRule, fact: Fact, view: UnitView, result: UnitResult) -> Optional[Violation]:
        env = rule.env(fact, view)
        try:
            if not rule.applies(env):
                return None
            message = rule.render_message(env)
            fix = rule.render_fix(env)
        except ExpressionEvalError as exc:
            Engine._rule_failed(rule, fact, view.path, exc, result)
            return None
        except Exception as exc:  # pragma: no cover - safeguard
            Engine._rule_failed(rule, fact, view.path, exc, result)
            return None
        return Violation(
            rule_id=rule.id,
            category=rule.category,
            severity=rule.severity,
            original_severity=rule.severity,
            span=fact.span,
            message=message,
            fact_kind=fact.kind,
            function=fact.function,
            fix=fix,
        )

    @staticmethod
    def _rule_failed(rule: ActiveRule, fact: Fact, unit: str, exc: Exception, result: UnitResult) -> None:
        logger.warning("Rule %s failed on %s at %s: %s", rule.id, fact.kind, fact.span, exc)
        result.diagnostics.append(
            Diagnostic(
                "rule-error",
                f"rule {rule.id} failed on {fact.kind} '{fact.subject}': {exc}",
                unit=unit,
                span=fact.span,
                rule_id=rule.id,
            )
        )


def evaluate(
    units: Iterable[TranslationUnit],
    catalog: Optional[RuleCatalog] = None,
    config: Optional[EngineConfig] = None,
    *,
    cancel: Optional[threading.Event] = None,
) -> Report:
    """One-shot evaluation with a fresh Engine."""
    return Engine(catalog, config).evaluate(units, cancel=cancel)


def _failed_paths(diagnostics: Iterable[Diagnostic]) -> FrozenSet[str]:
    return frozenset(d.unit for d in diagnostics if d.kind == "extraction-error" and d.unit)
