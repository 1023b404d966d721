"""
Exception taxonomy for firmlint.

Violations are not errors; they are the product of a run. Everything below is
about the engine failing to do its job on some input.
"""

from __future__ import annotations
from typing import Iterable, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from firmlint.model import SourceSpan


class FirmlintError(Exception):
    """Base class for every error raised by firmlint."""


class ExtractionError(FirmlintError):
    """
    A malformed or unsupported source construct.

    Isolated to one unit (or one fact during rule evaluation); the driver
    records it as a diagnostic and keeps going with everything else.
    """

    def __init__(
        self,
        reason: str,
        span: Optional["SourceSpan"] = None,
        unit: Optional[str] = None,
    ) -> None:
        self.reason = reason
        self.span = span
        self.unit = unit
        super().__init__(self._describe())

    def _describe(self) -> str:
        if self.span is not None:
            return f"{self.span.file}:{self.span.line_start}:{self.span.col_start}: {self.reason}"
        if self.unit:
            return f"{self.unit}: {self.reason}"
        return self.reason


class MalformedUnitError(ExtractionError):
    """The parser output for a unit could not be normalized."""


class UnitBudgetExceeded(ExtractionError):
    """A unit ran past its wall-clock budget."""


class ConfigurationError(FirmlintError):
    """
    Catalog, configuration or exception-tag problems.

    Always raised before any unit is evaluated and always carries the full
    list of problems that were found, not just the first one.
    """

    def __init__(self, problems: Iterable[str]) -> None:
        self.problems: Tuple[str, ...] = tuple(problems)
        summary = "; ".join(self.problems) if self.problems else "invalid configuration"
        super().__init__(summary)


class ExpressionEvalError(FirmlintError):
    """Raised when the rule expression evaluator encounters an unsafe or invalid construct."""
