"""
firmlint - rule-based convention checking for embedded C.

Typical use::

    from firmlint import Engine, load_config, load_unit_file

    config = load_config(["firmlint.yaml"])
    units = [load_unit_file(path, config.conventions) for path in paths]
    report = Engine(config=config).evaluate(units)
    print(report.to_json())

C sources can be parsed directly with ``firmlint.clang_frontend.parse_file``.
"""

from firmlint.adapter import ProjectIndex, load_unit, load_unit_file, stitch_project
from firmlint.config import Conventions, EngineConfig, RuleSettings, config_from_mapping, load_config
from firmlint.engine import Engine, evaluate
from firmlint.errors import (
    ConfigurationError,
    ExpressionEvalError,
    ExtractionError,
    FirmlintError,
    MalformedUnitError,
    UnitBudgetExceeded,
)
from firmlint.facts import FACT_KINDS, Fact, FactSet
from firmlint.model import ExceptionTag, SourceSpan, TranslationUnit
from firmlint.report import Diagnostic, Report, Violation
from firmlint.rules import RuleCatalog, default_catalog, load_catalog

__version__ = "0.2.0"

__all__ = [
    "ConfigurationError",
    "Conventions",
    "Diagnostic",
    "Engine",
    "EngineConfig",
    "ExceptionTag",
    "ExpressionEvalError",
    "ExtractionError",
    "FACT_KINDS",
    "Fact",
    "FactSet",
    "FirmlintError",
    "MalformedUnitError",
    "ProjectIndex",
    "Report",
    "RuleCatalog",
    "RuleSettings",
    "SourceSpan",
    "TranslationUnit",
    "UnitBudgetExceeded",
    "Violation",
    "config_from_mapping",
    "default_catalog",
    "evaluate",
    "load_catalog",
    "load_config",
    "load_unit",
    "load_unit_file",
    "stitch_project",
]
