"""
Conflict resolution for fields answered by more than one provider.

Contributions arrive in provider-priority order. Values are grouped by
equality (``==``, so nested dicts and lists compare structurally); equal
answers reinforce each other, distinct answers become conflicts.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from loguru import logger

from chainfeed.models import ConflictStrategy, FieldAggregationResult, FieldConflict

DISAGREEMENT_CONFIDENCE = 0.8


@dataclass
class Contribution:
    provider: str
    value: Any
    observed_at: datetime | None = None


@dataclass
class _ValueGroup:
    value: Any
    providers: list[str]
    newest: datetime | None = None

    @property
    def count(self) -> int:
        return len(self.providers)


def resolve_field(
    field: str,
    contributions: list[Contribution],
    strategy: ConflictStrategy | str = ConflictStrategy.PRIORITY,
) -> FieldAggregationResult:
    """
    Pick one value for ``field``.

    Raises:
        ValueError: If ``contributions`` is empty
    """
    if not contributions:
        raise ValueError(f"No contributions for field {field}")

    groups = _group(contributions)

    if len(groups) == 1:
        only = groups[0]
        return FieldAggregationResult(
            field=field, value=only.value, sources=list(only.providers), confidence=1.0
        )

    strategy = ConflictStrategy(strategy)
    total = len(contributions)

    if strategy == ConflictStrategy.MAJORITY:
        chosen = max(groups, key=lambda g: g.count)
        confidence = chosen.count / total
    elif strategy == ConflictStrategy.NEWEST and any(g.newest for g in groups):
        chosen = max(groups, key=lambda g: (g.newest is not None, g.newest or datetime.min))
        confidence = DISAGREEMENT_CONFIDENCE
    else:
        if strategy == ConflictStrategy.NEWEST:
            logger.debug(f"No observation times for {field}, resolving by priority")
        chosen = groups[0]
        confidence = DISAGREEMENT_CONFIDENCE

    conflicts = [
        FieldConflict(provider=g.providers[0], value=g.value, count=g.count)
        for g in groups
        if g is not chosen
    ]
    return FieldAggregationResult(
        field=field,
        value=chosen.value,
        sources=list(chosen.providers),
        confidence=confidence,
        conflicts=conflicts,
    )


def _group(contributions: list[Contribution]) -> list[_ValueGroup]:
    groups: list[_ValueGroup] = []
    for c in contributions:
        group = next((g for g in groups if _same(g.value, c.value)), None)
        if group is None:
            groups.append(_ValueGroup(value=c.value, providers=[c.provider], newest=c.observed_at))
            continue
        group.providers.append(c.provider)
        if c.observed_at and (group.newest is None or c.observed_at > group.newest):
            group.newest = c.observed_at
    return groups


def _same(a: Any, b: Any) -> bool:
    # bool is an int subclass; keep True distinct from 1
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    return a == b
