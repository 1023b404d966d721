"""
Exception resolution: which documented exception, if any, waives a violation.

A tag is a candidate for a violation when it is justified, its scope covers
the violation span and its allowlist admits the rule. Among candidates the
innermost scope wins; an exact span match is the innermost possible. Two tags
that could both claim some violation without one being nested inside the
other are ambiguous and rejected up front, so resolution never has to pick
arbitrarily.
"""

from __future__ import annotations
from collections import defaultdict
import logging
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from firmlint.errors import ConfigurationError
from firmlint.model import ExceptionTag, SourceSpan

logger = logging.getLogger(__name__)


def allowlists_overlap(first: ExceptionTag, second: ExceptionTag) -> bool:
    if not first.rules or not second.rules:
        return True
    return bool(first.rules & second.rules)


def _nested(first: SourceSpan, second: SourceSpan) -> bool:
    return first != second and (first.covers(second) or second.covers(first))


def find_ambiguities(tags: Sequence[ExceptionTag]) -> List[str]:
    """Describe every pair of justified tags that could tie for a violation."""
    by_file: Dict[str, List[ExceptionTag]] = defaultdict(list)
    for tag in tags:
        if tag.is_justified:
            by_file[tag.scope.file].append(tag)

    problems = []
    for file_name in sorted(by_file):
        group = by_file[file_name]
        for index, first in enumerate(group):
            for second in group[index + 1:]:
                if not allowlists_overlap(first, second):
                    continue
                if not first.scope.overlaps(second.scope) or _nested(first.scope, second.scope):
                    continue
                relation = "identical" if first.scope == second.scope else "partially overlapping"
                problems.append(
                    f"ambiguous exception tags {first} and {second}: {relation} scopes "
                    f"with overlapping rule allowlists"
                )
    return problems


class ExceptionResolver:
    """
    Stateless lookup over a fixed set of tags; safe to share between worker
    threads. Callers collect the tags reported as eligible to decide which
    ones went unused.
    """

    def __init__(self, tags: Iterable[ExceptionTag]) -> None:
        tags = tuple(tags)
        self.tags: Tuple[ExceptionTag, ...] = tags
        self.unjustified: Tuple[ExceptionTag, ...] = tuple(tag for tag in tags if not tag.is_justified)
        self._by_file: Dict[str, List[ExceptionTag]] = defaultdict(list)
        for tag in tags:
            if tag.is_justified:
                self._by_file[tag.scope.file].append(tag)

    def candidates(self, rule_id: str, span: SourceSpan) -> Tuple[ExceptionTag, ...]:
        return tuple(tag for tag in self._by_file.get(span.file, ()) if tag.applies_to(rule_id, span))

    def resolve(
        self, rule_id: str, span: SourceSpan
    ) -> Tuple[Optional[ExceptionTag], Tuple[ExceptionTag, ...]]:
        """``(winning tag or None, every eligible tag)`` for one violation."""
        eligible = self.candidates(rule_id, span)
        if not eligible:
            return None, ()
        winner = eligible[0]
        for tag in eligible[1:]:
            if winner.scope.covers(tag.scope) and winner.scope != tag.scope:
                winner = tag
            elif not tag.scope.covers(winner.scope) or winner.scope == tag.scope:
                raise ConfigurationError(
                    [f"ambiguous exception tags {winner} and {tag} for {rule_id} at {span}"]
                )
        return winner, eligible

    def stale(
        self,
        used: Set[ExceptionTag],
        skipped_files: FrozenSet[str] = frozenset(),
    ) -> List[ExceptionTag]:
        """Justified tags that matched nothing, excluding files whose analysis is incomplete."""
        found = []
        for tag in self.tags:
            if not tag.is_justified or tag in used or tag.scope.file in skipped_files:
                continue
            found.append(tag)
        for tag in found:
            logger.info("Stale exception tag %s", tag)
        return found
