"""
Report model: the one artifact an evaluation hands to rendering and
exit-code layers.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
import json
from typing import Any, Dict, Iterable, Optional, Tuple

from firmlint.config import SEVERITIES
from firmlint.model import ExceptionTag, SourceSpan

WAIVED_SEVERITY = "info"

DIAGNOSTIC_KINDS = (
    "extraction-error",
    "rule-error",
    "stale-suppression",
    "unjustified-suppression",
    "duplicate-definition",
)


@dataclass(frozen=True)
class Violation:
    """
    One rule firing on one fact.

    A waived violation keeps its ``original_severity`` and records the tag
    that waived it; only ``severity`` is demoted.
    """
    rule_id: str
    category: str
    severity: str
    original_severity: str
    span: SourceSpan
    message: str
    fact_kind: str
    function: Optional[str] = None
    fix: Optional[str] = None
    waived_by: Optional[ExceptionTag] = None

    @property
    def waived(self) -> bool:
        return self.waived_by is not None

    @property
    def sort_key(self) -> Tuple[Any, ...]:
        return (self.span, self.rule_id, self.message)

    def waive(self, tag: ExceptionTag) -> "Violation":
        return replace(self, severity=WAIVED_SEVERITY, waived_by=tag)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "category": self.category,
            "severity": self.severity,
            "original_severity": self.original_severity,
            "span": self.span.to_dict(),
            "message": self.message,
            "fact_kind": self.fact_kind,
            "function": self.function,
            "fix": self.fix,
            "waived_by": self.waived_by.to_dict() if self.waived_by is not None else None,
        }


@dataclass(frozen=True)
class Diagnostic:
    """Something about the run itself rather than about the code under analysis."""
    kind: str
    message: str
    unit: Optional[str] = None
    span: Optional[SourceSpan] = None
    rule_id: Optional[str] = None
    tag: Optional[ExceptionTag] = None

    def __post_init__(self) -> None:
        if self.kind not in DIAGNOSTIC_KINDS:
            raise ValueError(f"unknown diagnostic kind '{self.kind}'")

    @property
    def sort_key(self) -> Tuple[Any, ...]:
        location = self.unit or (self.span.file if self.span is not None else "")
        start = self.span.start if self.span is not None else (0, 0)
        return (location, start, DIAGNOSTIC_KINDS.index(self.kind), self.rule_id or "", self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "unit": self.unit,
            "span": self.span.to_dict() if self.span is not None else None,
            "rule_id": self.rule_id,
            "tag": self.tag.to_dict() if self.tag is not None else None,
        }


@dataclass(frozen=True)
class Report:
    violations: Tuple[Violation, ...] = ()
    diagnostics: Tuple[Diagnostic, ...] = ()
    cancelled: bool = False

    @classmethod
    def build(
        cls,
        violations: Iterable[Violation],
        diagnostics: Iterable[Diagnostic],
        cancelled: bool = False,
    ) -> "Report":
        """Sorted report; the input order never shows through."""
        return cls(
            violations=tuple(sorted(violations, key=lambda v: v.sort_key)),
            diagnostics=tuple(sorted(diagnostics, key=lambda d: d.sort_key)),
            cancelled=cancelled,
        )

    @property
    def passed(self) -> bool:
        return not any(v.severity == "error" and not v.waived for v in self.violations)

    @property
    def active(self) -> Tuple[Violation, ...]:
        return tuple(v for v in self.violations if not v.waived)

    @property
    def waived(self) -> Tuple[Violation, ...]:
        return tuple(v for v in self.violations if v.waived)

    def diagnostics_of(self, kind: str) -> Tuple[Diagnostic, ...]:
        return tuple(d for d in self.diagnostics if d.kind == kind)

    def counts(self) -> Dict[str, int]:
        counts = {severity: 0 for severity in SEVERITIES}
        for violation in self.violations:
            counts[violation.severity] += 1
        counts["waived"] = len(self.waived)
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "cancelled": self.cancelled,
            "summary": self.counts(),
            "violations": [v.to_dict() for v in self.violations],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True)
