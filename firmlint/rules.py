"""
Rule catalog.

Rules are declared as YAML records and compiled once when the catalog loads::

    - id: R-INIT-001
      category: initialization
      severity: warning          # optional, defaults to the category severity
      facts: [UninitializedDeclaration]
      where: not fact.details.is_array or params.include_arrays
      message: "'{{ fact.subject }}' is declared without an initializer"
      fixit: "Initialize '{{ fact.subject }}' where it is declared"
      params: {include_arrays: false}
      description: Every automatic variable is initialized at its declaration.

``where`` and the ``{{ }}`` placeholders use the restricted expression
language of ``firmlint.expression`` with the names ``fact``, ``params`` and
``unit`` in scope.
"""

from __future__ import annotations
from dataclasses import dataclass, field
import functools
from importlib import resources
import logging
import re
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import yaml

from firmlint.config import DEFAULT_CATEGORY_SEVERITY, SEVERITIES, EngineConfig
from firmlint.errors import ConfigurationError, ExpressionEvalError
from firmlint.expression import CompiledExpression, CompiledTemplate, compile_expression, compile_template
from firmlint.facts import FACT_KINDS, Fact
from firmlint.model import ExceptionTag

logger = logging.getLogger(__name__)

RULE_ID_PATTERN = re.compile(r"^R-[A-Z]+-\d{3}$")
_REQUIRED_FIELDS = ("id", "category", "facts", "message")
_KNOWN_FIELDS = set(_REQUIRED_FIELDS) | {"severity", "where", "fixit", "params", "description", "tags"}


@dataclass(frozen=True)
class UnitView:
    """What a rule may know about the unit a fact came from."""
    path: str
    isr_functions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Rule:
    id: str
    category: str
    facts: Tuple[str, ...]
    where: CompiledExpression
    message: CompiledTemplate
    severity: Optional[str] = None
    description: str = ""
    fixit: Optional[CompiledTemplate] = None
    params: Mapping[str, Any] = field(default_factory=dict)
    tags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ActiveRule:
    """A catalog rule with configuration applied: resolved severity and params."""
    rule: Rule
    severity: str
    params: Mapping[str, Any]

    @property
    def id(self) -> str:
        return self.rule.id

    @property
    def category(self) -> str:
        return self.rule.category

    def env(self, fact: Fact, unit: UnitView) -> Dict[str, Any]:
        return {"fact": fact, "params": self.params, "unit": unit}

    def applies(self, env: Mapping[str, Any]) -> bool:
        return bool(self.rule.where.evaluate(env))

    def render_message(self, env: Mapping[str, Any]) -> str:
        return self.rule.message.render(env)

    def render_fix(self, env: Mapping[str, Any]) -> Optional[str]:
        if self.rule.fixit is None:
            return None
        return self.rule.fixit.render(env) or None


class RuleCatalog:
    """Immutable, id-ordered collection of rules."""

    def __init__(self, rules: Iterable[Rule]) -> None:
        by_id: Dict[str, Rule] = {}
        problems = []
        for rule in rules:
            if rule.id in by_id:
                problems.append(f"duplicate rule id '{rule.id}'")
                continue
            by_id[rule.id] = rule
        if problems:
            raise ConfigurationError(problems)
        self._rules = {rule_id: by_id[rule_id] for rule_id in sorted(by_id)}

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._rules

    def __iter__(self) -> Iterator[Rule]:
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    def get(self, rule_id: str) -> Optional[Rule]:
        return self._rules.get(rule_id)

    @property
    def ids(self) -> Tuple[str, ...]:
        return tuple(self._rules)

    def validate(self, config: EngineConfig, extra_tags: Sequence[ExceptionTag] = ()) -> List[str]:
        """Every problem with ``config`` (and any inline tags) relative to this catalog."""
        problems = []
        for rule_id in sorted(config.rules):
            if rule_id not in self._rules:
                problems.append(f"unknown rule id '{rule_id}' in rule configuration")
        for tag in tuple(config.exceptions) + tuple(extra_tags):
            for rule_id in sorted(tag.rules):
                if rule_id not in self._rules:
                    problems.append(f"exception tag {tag} names unknown rule id '{rule_id}'")
        return problems

    def configure(self, config: EngineConfig) -> Tuple[ActiveRule, ...]:
        """The enabled rules under ``config``; raises on unknown rule ids."""
        problems = self.validate(config)
        if problems:
            raise ConfigurationError(problems)
        active = []
        for rule in self:
            settings = config.rules.get(rule.id)
            if settings is not None and settings.enabled is False:
                continue
            severity = (
                (settings.severity if settings is not None else None)
                or rule.severity
                or config.category_severity(rule.category)
            )
            params = dict(rule.params)
            if settings is not None:
                params.update(settings.params)
            active.append(ActiveRule(rule, severity, _frozen(params)))
        return tuple(active)

    def subscribed_kinds(self, active: Sequence[ActiveRule]) -> FrozenSet[str]:
        return frozenset(kind for rule in active for kind in rule.rule.facts)


# ============================================================
# ======================= YAML LOADING =======================
# ============================================================

def _frozen(value: Any) -> Any:
    """Read-only copy of rule params; rules share them across worker threads."""
    if isinstance(value, Mapping):
        return MappingProxyType({key: _frozen(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_frozen(item) for item in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(value)
    return value


def _to_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v) for v in value if v is not None]
    return [str(value)]


def _normalize_rule_docs(doc: Any) -> List[Any]:
    if doc is None:
        return []
    if isinstance(doc, list):
        return doc
    if isinstance(doc, dict):
        if isinstance(doc.get("rules"), list):
            return doc["rules"]
        return [doc]
    return [doc]


def build_rule(raw_rule: Any, origin: str, problems: List[str]) -> Optional[Rule]:
    """Build one rule, appending to ``problems`` instead of raising."""
    if not isinstance(raw_rule, Mapping):
        problems.append(f"{origin}: rule entry must be a mapping")
        return None
    rule_id = str(raw_rule.get("id") or "<unnamed>")
    where = f"{origin}: rule '{rule_id}'"
    count = len(problems)

    missing = [name for name in _REQUIRED_FIELDS if raw_rule.get(name) in (None, "", [])]
    if missing:
        problems.append(f"{where}: missing required field(s) {missing}")
        return None
    for key in sorted(set(raw_rule) - _KNOWN_FIELDS):
        problems.append(f"{where}: unknown field '{key}'")

    if not RULE_ID_PATTERN.match(rule_id):
        problems.append(f"{where}: rule ids look like 'R-MEM-010'")
    category = str(raw_rule["category"])
    if category not in DEFAULT_CATEGORY_SEVERITY:
        problems.append(f"{where}: unknown category '{category}'")
    severity = raw_rule.get("severity")
    if severity is not None and severity not in SEVERITIES:
        problems.append(f"{where}: invalid severity '{severity}'")
    kinds = tuple(_to_str_list(raw_rule["facts"]))
    for kind in kinds:
        if kind not in FACT_KINDS:
            problems.append(f"{where}: unknown fact kind '{kind}'")
    params = raw_rule.get("params") or {}
    if not isinstance(params, Mapping):
        problems.append(f"{where}: 'params' must be a mapping")
        params = {}

    compiled: Dict[str, Any] = {}
    for name, compile_fn in (
        ("where", compile_expression),
        ("message", compile_template),
        ("fixit", compile_template),
    ):
        source = raw_rule.get(name)
        if source is None:
            continue
        try:
            compiled[name] = compile_fn(str(source))
        except ExpressionEvalError as exc:
            problems.append(f"{where}: bad '{name}' expression ({exc})")

    if len(problems) > count:
        return None
    return Rule(
        id=rule_id,
        category=category,
        facts=kinds,
        where=compiled.get("where") or compile_expression(None),
        message=compiled["message"],
        severity=severity,
        description=str(raw_rule.get("description", "")).strip(),
        fixit=compiled.get("fixit"),
        params=dict(params),
        tags=tuple(_to_str_list(raw_rule.get("tags"))),
    )


def rules_from_documents(documents: Sequence[Tuple[str, Any]]) -> RuleCatalog:
    problems: List[str] = []
    rules: List[Rule] = []
    for origin, doc in documents:
        for raw_rule in _normalize_rule_docs(doc):
            rule = build_rule(raw_rule, origin, problems)
            if rule is not None:
                rules.append(rule)
    if problems:
        for problem in problems:
            logger.error("Invalid rule: %s", problem)
        raise ConfigurationError(problems)
    return RuleCatalog(rules)


def load_catalog(yaml_paths: Sequence[str]) -> RuleCatalog:
    """Load a rule catalog from YAML rule files."""
    documents: List[Tuple[str, Any]] = []
    problems: List[str] = []
    for path in yaml_paths:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                loaded = list(yaml.safe_load_all(handle))
        except FileNotFoundError:
            problems.append(f"Rule file not found: {path}")
            continue
        except OSError as exc:
            problems.append(f"Could not read rule file {path}: {exc}")
            continue
        except yaml.YAMLError as exc:
            problems.append(f"Invalid YAML in rule file {path}: {exc}")
            continue
        for index, doc in enumerate(loaded):
            documents.append((f"{path}#doc{index + 1}", doc))
    if problems:
        raise ConfigurationError(problems)
    catalog = rules_from_documents(documents)
    logger.debug("Loaded %d rules from %d file(s)", len(catalog), len(yaml_paths))
    return catalog


@functools.lru_cache(maxsize=None)
def default_catalog() -> RuleCatalog:
    """The built-in catalog shipped in ``firmlint/catalog``."""
    documents: List[Tuple[str, Any]] = []
    catalog_dir = resources.files("firmlint") / "catalog"
    for entry in sorted(catalog_dir.iterdir(), key=lambda item: item.name):
        if not entry.name.endswith((".yaml", ".yml")):
            continue
        text = entry.read_text(encoding="utf-8")
        for index, doc in enumerate(yaml.safe_load_all(text)):
            documents.append((f"catalog/{entry.name}#doc{index + 1}", doc))
    return rules_from_documents(documents)
