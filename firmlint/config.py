"""
Engine configuration: naming conventions, per-rule settings, category
severity defaults, configured exception tags and driver knobs.

Configuration is loaded from YAML and validated eagerly. Every problem found
is collected and reported together through ``ConfigurationError``.
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields, replace
import logging
import re
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

import yaml

from firmlint.errors import ConfigurationError
from firmlint.model import END_OF_FILE, ExceptionTag, SourceSpan

logger = logging.getLogger(__name__)

SEVERITIES = ("info", "warning", "error")
SEVERITY_RANK = {name: rank for rank, name in enumerate(SEVERITIES)}

DEFAULT_CATEGORY_SEVERITY: Dict[str, str] = {
    "initialization": "warning",
    "memory": "error",
    "concurrency": "error",
    "isr": "error",
    "rtos": "error",
    "control-flow": "warning",
    "interfacing": "warning",
    "registers": "warning",
    "bit-manipulation": "warning",
    "types": "warning",
    "library": "warning",
}


# ============================================================
# ====================== CONVENTIONS =========================
# ============================================================

@dataclass(frozen=True)
class Conventions:
    """
    Project naming conventions the extractors rely on. Passed explicitly to
    the adapter and extractors; never read from process state.
    """
    isr_pattern: str = r"(_IRQHandler|_ISR|_isr|_Handler)$"
    isr_attributes: Tuple[str, ...] = ("interrupt", "isr", "irq", "signal")
    critical_enter: Tuple[str, ...] = (
        "__disable_irq",
        "taskENTER_CRITICAL",
        "taskENTER_CRITICAL_FROM_ISR",
        "portENTER_CRITICAL",
        "portDISABLE_INTERRUPTS",
        "enter_critical",
        "ENTER_CRITICAL",
    )
    critical_exit: Tuple[str, ...] = (
        "__enable_irq",
        "taskEXIT_CRITICAL",
        "taskEXIT_CRITICAL_FROM_ISR",
        "portEXIT_CRITICAL",
        "portENABLE_INTERRUPTS",
        "exit_critical",
        "EXIT_CRITICAL",
    )
    blocking_apis: Tuple[str, ...] = (
        "vTaskDelay",
        "vTaskDelayUntil",
        "HAL_Delay",
        "osDelay",
        "osMutexAcquire",
        "delay_ms",
        "delay_us",
        "sleep_ms",
        "printf",
        "puts",
    )
    # RTOS calls that have a FromISR variant that must be used in interrupts.
    rtos_isr_apis: Tuple[str, ...] = (
        "xQueueSend",
        "xQueueSendToBack",
        "xQueueSendToFront",
        "xQueueReceive",
        "xQueueOverwrite",
        "xSemaphoreGive",
        "xSemaphoreTake",
        "xTaskNotify",
        "xTaskNotifyGive",
        "xEventGroupSetBits",
        "xTimerStart",
        "xTimerStop",
        "xTimerReset",
    )
    transmit_functions: Tuple[str, ...] = (
        "HAL_UART_Transmit",
        "HAL_UART_Transmit_IT",
        "HAL_UART_Transmit_DMA",
        "HAL_SPI_Transmit",
        "HAL_I2C_Master_Transmit",
        "HAL_CAN_AddTxMessage",
        "uart_write",
        "uart_send",
        "spi_write",
        "i2c_write",
        "can_send",
        "send",
        "write",
    )
    # Payload position for transmit calls that also take a device handle or
    # address. Every argument of an unlisted transmit function is checked.
    transmit_payload_args: Tuple[Tuple[str, int], ...] = (
        ("HAL_UART_Transmit", 1),
        ("HAL_UART_Transmit_IT", 1),
        ("HAL_UART_Transmit_DMA", 1),
        ("HAL_SPI_Transmit", 1),
        ("HAL_I2C_Master_Transmit", 2),
        ("HAL_CAN_AddTxMessage", 2),
    )
    register_pattern: str = r"^[A-Z][A-Z0-9_]*$"
    status_register_pattern: str = r"^(SR|ISR|STAT|STATUS|FLAGS?|[A-Z0-9_]*_(SR|STAT|STATUS))$"
    data_register_pattern: str = r"^(DR|TDR|TXDR|DATA|TXDATA|[A-Z0-9_]*_(DR|TDR|DATA))$"
    allocation_functions: Tuple[str, ...] = (
        "malloc",
        "calloc",
        "realloc",
        "free",
        "pvPortMalloc",
        "vPortFree",
    )
    banned_functions: Tuple[str, ...] = (
        "gets",
        "strcpy",
        "strcat",
        "sprintf",
        "vsprintf",
        "atoi",
        "atol",
        "atof",
        "strtok",
        "setjmp",
        "longjmp",
    )
    must_check_functions: Tuple[str, ...] = (
        "xQueueSend",
        "xQueueReceive",
        "xSemaphoreTake",
        "fread",
        "fwrite",
    )
    must_check_pattern: str = r"^HAL_\w+_(Transmit|Receive|Init|Start|Write|Read)\w*$"
    timeout_pattern: str = r"(?i)(timeout|tmo|retr|tries|attempt|deadline|tick|count|elapsed)"
    assert_functions: Tuple[str, ...] = ("assert", "ASSERT", "configASSERT", "assert_param")
    magic_number_allowlist: Tuple[int, ...] = (0, 1)

    def is_isr(self, name: str, attributes: Sequence[str] = ()) -> bool:
        if any(attr in self.isr_attributes for attr in attributes):
            return True
        return bool(re.search(self.isr_pattern, name))

    def is_register_name(self, name: str) -> bool:
        return bool(re.match(self.register_pattern, name))

    def is_status_register(self, name: str) -> bool:
        return bool(re.match(self.status_register_pattern, name))

    def is_data_register(self, name: str) -> bool:
        return bool(re.match(self.data_register_pattern, name))

    def payload_argument(self, callee: str) -> Optional[int]:
        for name, position in self.transmit_payload_args:
            if name == callee:
                return position
        return None

    def must_check(self, callee: str) -> bool:
        return callee in self.must_check_functions or bool(re.match(self.must_check_pattern, callee))

    def mentions_timeout(self, identifier: str) -> bool:
        return bool(re.search(self.timeout_pattern, identifier))


_PATTERN_FIELDS = (
    "isr_pattern",
    "register_pattern",
    "status_register_pattern",
    "data_register_pattern",
    "must_check_pattern",
    "timeout_pattern",
)


# ============================================================
# ===================== ENGINE CONFIG ========================
# ============================================================

@dataclass(frozen=True)
class RuleSettings:
    enabled: Optional[bool] = None
    severity: Optional[str] = None
    params: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EngineConfig:
    conventions: Conventions = field(default_factory=Conventions)
    rules: Mapping[str, RuleSettings] = field(default_factory=dict)
    categories: Mapping[str, str] = field(default_factory=dict)
    exceptions: Tuple[ExceptionTag, ...] = ()
    workers: int = 4
    unit_budget_seconds: Optional[float] = None

    def category_severity(self, category: str) -> str:
        return self.categories.get(category) or DEFAULT_CATEGORY_SEVERITY.get(category, "warning")


_TOP_LEVEL_KEYS = {"rules", "categories", "conventions", "exceptions", "engine"}
_RULE_KEYS = {"enabled", "severity", "params"}
_ENGINE_KEYS = {"workers", "unit_budget_seconds"}
_EXCEPTION_KEYS = {"id", "justification", "file", "line", "lines", "span", "rules", "rule"}


def load_config(paths: Sequence[str]) -> EngineConfig:
    """
    Load and merge configuration from YAML files.

    Each file may contain several documents; they are merged in order. Later
    documents may add settings but may not contradict an earlier severity
    override for the same rule or category.
    """
    documents: List[Tuple[str, Any]] = []
    problems: List[str] = []
    for path in paths:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                loaded = list(yaml.safe_load_all(handle))
        except FileNotFoundError:
            problems.append(f"{path}: configuration file not found")
            continue
        except OSError as exc:
            problems.append(f"{path}: could not read configuration ({exc})")
            continue
        except yaml.YAMLError as exc:
            problems.append(f"{path}: invalid YAML ({exc})")
            continue
        for index, doc in enumerate(loaded):
            documents.append((f"{path}#doc{index + 1}", doc))

    if problems:
        raise ConfigurationError(problems)
    return config_from_documents(documents)


def config_from_mapping(data: Optional[Mapping[str, Any]], origin: str = "<config>") -> EngineConfig:
    return config_from_documents([(origin, data)])


def config_from_documents(documents: Sequence[Tuple[str, Any]]) -> EngineConfig:
    problems: List[str] = []
    rules: Dict[str, RuleSettings] = {}
    categories: Dict[str, str] = {}
    convention_values: Dict[str, Any] = {}
    exceptions: List[ExceptionTag] = []
    engine_values: Dict[str, Any] = {}

    for origin, doc in documents:
        if doc is None:
            continue
        if not isinstance(doc, Mapping):
            problems.append(f"{origin}: configuration document must be a mapping")
            continue
        for key in sorted(set(doc) - _TOP_LEVEL_KEYS):
            problems.append(f"{origin}: unknown configuration key '{key}'")

        _merge_rules(doc.get("rules"), origin, rules, problems)
        _merge_categories(doc.get("categories"), origin, categories, problems)
        _merge_conventions(doc.get("conventions"), origin, convention_values, problems)
        exceptions.extend(_parse_exceptions(doc.get("exceptions"), origin, problems))
        _merge_engine(doc.get("engine"), origin, engine_values, problems)

    if problems:
        for problem in problems:
            logger.error("Invalid configuration: %s", problem)
        raise ConfigurationError(problems)
    logger.debug("Loaded %d configuration document(s)", len(documents))

    return EngineConfig(
        conventions=replace(Conventions(), **convention_values),
        rules=rules,
        categories=categories,
        exceptions=tuple(exceptions),
        workers=engine_values.get("workers", 4),
        unit_budget_seconds=engine_values.get("unit_budget_seconds"),
    )


def _merge_rules(
    raw: Any,
    origin: str,
    rules: Dict[str, RuleSettings],
    problems: List[str],
) -> None:
    if raw is None:
        return
    if not isinstance(raw, Mapping):
        problems.append(f"{origin}: 'rules' must map rule ids to settings")
        return
    for rule_id, settings in raw.items():
        rule_id = str(rule_id)
        if settings is None:
            settings = {}
        if isinstance(settings, bool):
            settings = {"enabled": settings}
        if not isinstance(settings, Mapping):
            problems.append(f"{origin}: settings for rule '{rule_id}' must be a mapping")
            continue
        for key in sorted(set(settings) - _RULE_KEYS):
            problems.append(f"{origin}: unknown setting '{key}' for rule '{rule_id}'")

        enabled = settings.get("enabled")
        if enabled is not None and not isinstance(enabled, bool):
            problems.append(f"{origin}: 'enabled' for rule '{rule_id}' must be true or false")
            enabled = None

        severity = settings.get("severity")
        if severity is not None and severity not in SEVERITIES:
            problems.append(
                f"{origin}: invalid severity '{severity}' for rule '{rule_id}' "
                f"(expected one of {', '.join(SEVERITIES)})"
            )
            severity = None

        params = settings.get("params") or {}
        if not isinstance(params, Mapping):
            problems.append(f"{origin}: 'params' for rule '{rule_id}' must be a mapping")
            params = {}

        previous = rules.get(rule_id)
        if previous is not None:
            if severity and previous.severity and severity != previous.severity:
                problems.append(
                    f"{origin}: conflicting severity override for rule '{rule_id}' "
                    f"('{previous.severity}' vs '{severity}')"
                )
            merged_params = dict(previous.params)
            merged_params.update(params)
            rules[rule_id] = RuleSettings(
                enabled=enabled if enabled is not None else previous.enabled,
                severity=severity or previous.severity,
                params=merged_params,
            )
        else:
            rules[rule_id] = RuleSettings(enabled=enabled, severity=severity, params=dict(params))


def _merge_categories(
    raw: Any,
    origin: str,
    categories: Dict[str, str],
    problems: List[str],
) -> None:
    if raw is None:
        return
    if not isinstance(raw, Mapping):
        problems.append(f"{origin}: 'categories' must map category names to severities")
        return
    for category, severity in raw.items():
        category = str(category)
        if category not in DEFAULT_CATEGORY_SEVERITY:
            problems.append(f"{origin}: unknown rule category '{category}'")
            continue
        if severity not in SEVERITIES:
            problems.append(f"{origin}: invalid severity '{severity}' for category '{category}'")
            continue
        previous = categories.get(category)
        if previous is not None and previous != severity:
            problems.append(
                f"{origin}: conflicting severity for category '{category}' "
                f"('{previous}' vs '{severity}')"
            )
            continue
        categories[category] = severity


def _merge_conventions(
    raw: Any,
    origin: str,
    values: Dict[str, Any],
    problems: List[str],
) -> None:
    if raw is None:
        return
    if not isinstance(raw, Mapping):
        problems.append(f"{origin}: 'conventions' must be a mapping")
        return
    defaults = Conventions()
    known = {f.name for f in fields(Conventions)}
    for key, value in raw.items():
        if key not in known:
            problems.append(f"{origin}: unknown convention '{key}'")
            continue
        default = getattr(defaults, key)
        if key == "transmit_payload_args":
            if not isinstance(value, Mapping) or not all(
                isinstance(pos, int) and not isinstance(pos, bool) and pos >= 0 for pos in value.values()
            ):
                problems.append(f"{origin}: convention '{key}' must map function names to argument positions")
                continue
            values[key] = tuple(sorted((str(name), pos) for name, pos in value.items()))
            continue
        if isinstance(default, tuple):
            if isinstance(value, (str, int)):
                value = [value]
            if not isinstance(value, list):
                problems.append(f"{origin}: convention '{key}' must be a list")
                continue
            if key == "magic_number_allowlist":
                if not all(isinstance(item, int) for item in value):
                    problems.append(f"{origin}: convention '{key}' must list integers")
                    continue
                values[key] = tuple(value)
            else:
                values[key] = tuple(str(item) for item in value)
            continue
        if not isinstance(value, str):
            problems.append(f"{origin}: convention '{key}' must be a string")
            continue
        if key in _PATTERN_FIELDS:
            try:
                re.compile(value)
            except re.error as exc:
                problems.append(f"{origin}: invalid regular expression for '{key}': {exc}")
                continue
        values[key] = value


def _merge_engine(
    raw: Any,
    origin: str,
    values: Dict[str, Any],
    problems: List[str],
) -> None:
    if raw is None:
        return
    if not isinstance(raw, Mapping):
        problems.append(f"{origin}: 'engine' must be a mapping")
        return
    for key in sorted(set(raw) - _ENGINE_KEYS):
        problems.append(f"{origin}: unknown engine setting '{key}'")
    workers = raw.get("workers")
    if workers is not None:
        if not isinstance(workers, int) or isinstance(workers, bool) or workers < 1:
            problems.append(f"{origin}: 'workers' must be a positive integer")
        else:
            values["workers"] = workers
    budget = raw.get("unit_budget_seconds")
    if budget is not None:
        if not isinstance(budget, (int, float)) or isinstance(budget, bool) or budget <= 0:
            problems.append(f"{origin}: 'unit_budget_seconds' must be a positive number")
        else:
            values["unit_budget_seconds"] = float(budget)


def _parse_exceptions(raw: Any, origin: str, problems: List[str]) -> List[ExceptionTag]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        problems.append(f"{origin}: 'exceptions' must be a list")
        return []

    tags: List[ExceptionTag] = []
    for index, entry in enumerate(raw):
        where = f"{origin}: exception #{index + 1}"
        if not isinstance(entry, Mapping):
            problems.append(f"{where} must be a mapping")
            continue
        for key in sorted(set(entry) - _EXCEPTION_KEYS):
            problems.append(f"{where}: unknown key '{key}'")
        file_name = entry.get("file")
        if not file_name:
            problems.append(f"{where}: 'file' is required")
            continue
        scope = _parse_scope(str(file_name), entry, where, problems)
        if scope is None:
            continue
        rules = parse_rule_allowlist(entry.get("rules", entry.get("rule")))
        tags.append(
            ExceptionTag(
                tag_id=str(entry.get("id") or ""),
                justification=str(entry.get("justification") or ""),
                scope=scope,
                rules=rules,
                origin="config",
            )
        )
    return tags


def _parse_scope(
    file_name: str,
    entry: Mapping[str, Any],
    where: str,
    problems: List[str],
) -> Optional[SourceSpan]:
    if "span" in entry:
        raw_span = entry["span"]
        if not isinstance(raw_span, Mapping):
            problems.append(f"{where}: 'span' must be a mapping")
            return None
        try:
            return SourceSpan(
                file=file_name,
                line_start=int(raw_span["line_start"]),
                col_start=int(raw_span.get("col_start", 1)),
                line_end=int(raw_span.get("line_end", raw_span["line_start"])),
                col_end=int(raw_span.get("col_end", END_OF_FILE)),
            )
        except (KeyError, TypeError, ValueError):
            problems.append(f"{where}: 'span' needs an integer 'line_start'")
            return None
    if "lines" in entry:
        lines = entry["lines"]
        if (
            not isinstance(lines, list)
            or len(lines) != 2
            or not all(isinstance(n, int) for n in lines)
            or lines[0] > lines[1]
        ):
            problems.append(f"{where}: 'lines' must be [first, last]")
            return None
        return SourceSpan.lines(file_name, lines[0], lines[1])
    if "line" in entry:
        line = entry["line"]
        if not isinstance(line, int):
            problems.append(f"{where}: 'line' must be an integer")
            return None
        return SourceSpan.lines(file_name, line)
    return SourceSpan.whole_file(file_name)


def parse_rule_allowlist(raw: Any) -> FrozenSet[str]:
    """``None``, ``'*'`` and empty lists all mean "any rule"."""
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        raw = [raw]
    names = {str(item).strip() for item in raw if item is not None}
    names.discard("")
    if "*" in names:
        return frozenset()
    return frozenset(names)
