"""
Facts: the only channel between extractors and rules.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Tuple

from firmlint.model import SourceSpan


# Every fact kind an extractor may produce, with a one-line description.
FACT_KINDS: Dict[str, str] = {
    # initialization
    "UninitializedDeclaration": "local automatic variable declared without an initializer",
    "PartialArrayInit": "array initializer shorter than the declared length",
    # pointers
    "UnguardedPointerDeref": "pointer dereference not dominated by a null check",
    "ReturnLocalAddress": "function returns the address of automatic storage",
    # concurrency
    "SharedVarUnprotectedAccess": "ISR-shared variable accessed outside a critical section",
    "NonVolatileIsrShared": "variable written in ISR context and read elsewhere, not volatile",
    "UnbalancedCriticalSection": "critical section entered and exited unevenly",
    # isr
    "IsrBlockingCall": "blocking API called from ISR context",
    "IsrRtosApiMisuse": "task-level RTOS API called from ISR context",
    "IsrFloatingPoint": "floating-point arithmetic in ISR context",
    # control flow
    "SwitchMissingDefault": "switch statement without a default case",
    "ImplicitFallthrough": "case group falls through without an explicit marker",
    "UnboundedPolling": "polling loop with no timeout or exit",
    "RecursionCycle": "function takes part in a call cycle",
    "GotoStatement": "goto statement",
    # interfacing
    "AggregateTransmit": "struct passed whole to a byte transmission call",
    "UncheckedNarrowingCast": "narrowing integer cast with no preceding range check",
    "RegisterAccess": "access to a memory-mapped register",
    # bitwise
    "SignedBitwiseOperand": "bitwise operator applied to a signed operand",
    "ShiftExceedsWidth": "constant shift amount not smaller than the operand width",
    # lexical
    "OctalLiteral": "integer literal written in octal",
    "MagicNumber": "unnamed numeric constant in an expression",
    "NonFixedWidthType": "native integer type used instead of a fixed-width type",
    # library
    "DynamicAllocationCall": "call to a heap allocation function",
    "BannedFunctionCall": "call to a banned library function",
    "IgnoredReturnValue": "return value of a must-check function discarded",
    "NonConstPointerParam": "pointer parameter never written through but not const",
}


@dataclass(frozen=True, eq=False)
class Fact:
    """
    A typed observation about one unit.

    ``subject`` names the thing observed (variable, callee, register...),
    ``details`` carries kind-specific attributes read by rule predicates.
    """
    kind: str
    span: SourceSpan
    subject: str
    function: Optional[str] = None
    details: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind not in FACT_KINDS:
            raise ValueError(f"unknown fact kind '{self.kind}'")
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))

    def get(self, key: str, default: Any = None) -> Any:
        return self.details.get(key, default)

    @property
    def sort_key(self) -> Tuple[Any, ...]:
        return (self.span, self.kind, self.subject)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "span": self.span.to_dict(),
            "subject": self.subject,
            "function": self.function,
            "details": dict(self.details),
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Fact):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __hash__(self) -> int:
        return hash((self.kind, self.span, self.subject, self.function))


class FactSet:
    """
    All facts produced for one unit in one evaluation generation, grouped by
    kind in deterministic order.
    """

    def __init__(self, facts: Iterable[Fact] = ()) -> None:
        grouped: Dict[str, list] = {}
        for fact in facts:
            grouped.setdefault(fact.kind, []).append(fact)
        self._by_kind: Dict[str, Tuple[Fact, ...]] = {
            kind: tuple(sorted(items, key=lambda f: f.sort_key)) for kind, items in grouped.items()
        }

    def of_kind(self, kind: str) -> Tuple[Fact, ...]:
        return self._by_kind.get(kind, ())

    @property
    def kinds(self) -> Tuple[str, ...]:
        return tuple(sorted(self._by_kind))

    def __iter__(self) -> Iterator[Fact]:
        for kind in self.kinds:
            yield from self._by_kind[kind]

    def __len__(self) -> int:
        return sum(len(items) for items in self._by_kind.values())
