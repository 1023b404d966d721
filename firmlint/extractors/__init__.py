"""
Fact extractors. Importing this package registers every built-in extractor.
"""

from firmlint.extractors.base import (
    EXTRACTORS,
    ExtractionContext,
    Extractor,
    extractor,
    producers,
)
from firmlint.extractors import (  # noqa: F401  (registration side effects)
    bitwise,
    concurrency,
    control_flow,
    initialization,
    interfacing,
    isr,
    lexical,
    library,
    pointers,
)

__all__ = [
    "EXTRACTORS",
    "ExtractionContext",
    "Extractor",
    "extractor",
    "producers",
]
