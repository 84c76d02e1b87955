"""Level ladder derived from point totals.

Levels are never stored: they are recomputed from the account totals on every
read so they cannot drift from the ledger.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from iptv_manager_api.core.settings import settings

from .errors import LoyaltyValidationError


@dataclass(frozen=True)
class LevelThreshold:
    """One rung of the ladder; ``max_points`` is inclusive and ``None`` for the top."""

    level_number: int
    name: str
    min_points: int
    max_points: int | None
    benefits: tuple[str, ...] = field(default_factory=tuple)

    def contains(self, points: int) -> bool:
        if points < self.min_points:
            return False
        return self.max_points is None or points <= self.max_points


@dataclass(frozen=True)
class LevelResult:
    level_number: int
    name: str
    min_points: int
    max_points: int | None
    benefits: tuple[str, ...]


@dataclass(frozen=True)
class NextLevelResult:
    level_number: int
    name: str
    points_needed: int


@dataclass(frozen=True)
class LevelProgress:
    """Current level plus progress towards the next one."""

    points: int
    level: LevelResult
    next_level: NextLevelResult | None
    progress_percent: float


DEFAULT_LEVELS: tuple[LevelThreshold, ...] = (
    LevelThreshold(1, "Bronze", 0, 499, ("Acesso ao catálogo de recompensas",)),
    LevelThreshold(2, "Prata", 500, 999, ("Acesso ao catálogo de recompensas", "Suporte prioritário")),
    LevelThreshold(
        3,
        "Ouro",
        1000,
        1999,
        ("Suporte prioritário", "Descontos exclusivos em renovações"),
    ),
    LevelThreshold(
        4,
        "Platina",
        2000,
        4999,
        ("Suporte prioritário", "Descontos exclusivos em renovações", "Conexão extra gratuita"),
    ),
    LevelThreshold(
        5,
        "Diamante",
        5000,
        None,
        (
            "Suporte VIP",
            "Descontos exclusivos em renovações",
            "Conexão extra gratuita",
            "Acesso antecipado a novidades",
        ),
    ),
)


def validate_table(table: Sequence[LevelThreshold]) -> tuple[LevelThreshold, ...]:
    """Ensure the ladder is ordered, contiguous from zero and open-ended at the top."""

    if not table:
        raise LoyaltyValidationError("Level table must contain at least one level")
    ordered = tuple(sorted(table, key=lambda level: level.min_points))
    if ordered[0].min_points != 0:
        raise LoyaltyValidationError("Level table must start at 0 points")
    for current, following in zip(ordered, ordered[1:]):
        if current.max_points is None:
            raise LoyaltyValidationError(f"Only the last level may be open-ended ({current.name})")
        if current.max_points < current.min_points:
            raise LoyaltyValidationError(f"Level {current.name} has max_points below min_points")
        if following.min_points != current.max_points + 1:
            raise LoyaltyValidationError(
                f"Levels {current.name} and {following.name} overlap or leave a gap"
            )
    if ordered[-1].max_points is not None:
        raise LoyaltyValidationError("The last level must be open-ended")
    return ordered


def parse_table(rows: Iterable[Mapping[str, Any]]) -> tuple[LevelThreshold, ...]:
    """Build a ladder from plain mappings (settings / JSON)."""

    levels: list[LevelThreshold] = []
    for index, row in enumerate(rows, start=1):
        try:
            max_points = row.get("max_points")
            levels.append(
                LevelThreshold(
                    level_number=int(row.get("level_number", index)),
                    name=str(row["name"]),
                    min_points=int(row["min_points"]),
                    max_points=int(max_points) if max_points is not None else None,
                    benefits=tuple(str(item) for item in row.get("benefits", ())),
                )
            )
        except (KeyError, TypeError, ValueError) as error:
            raise LoyaltyValidationError(f"Invalid level definition at position {index}") from error
    return validate_table(levels)


def configured_levels() -> tuple[LevelThreshold, ...]:
    if settings.loyalty_levels:
        return parse_table(settings.loyalty_levels)
    return DEFAULT_LEVELS


def _locate(points: int, table: Sequence[LevelThreshold]) -> int:
    if points < 0:
        raise LoyaltyValidationError("Points cannot be negative")
    for index, level in enumerate(table):
        if level.contains(points):
            return index
    raise LoyaltyValidationError(f"No level covers {points} points")


def level_for(points: int, threshold_table: Sequence[LevelThreshold] | None = None) -> LevelResult:
    table = threshold_table if threshold_table is not None else configured_levels()
    level = table[_locate(points, table)]
    return LevelResult(
        level_number=level.level_number,
        name=level.name,
        min_points=level.min_points,
        max_points=level.max_points,
        benefits=level.benefits,
    )


def next_level_for(
    points: int, threshold_table: Sequence[LevelThreshold] | None = None
) -> NextLevelResult | None:
    """Return the following rung, or ``None`` at the top of the ladder."""

    table = threshold_table if threshold_table is not None else configured_levels()
    index = _locate(points, table)
    if index + 1 >= len(table):
        return None
    upcoming = table[index + 1]
    return NextLevelResult(
        level_number=upcoming.level_number,
        name=upcoming.name,
        points_needed=upcoming.min_points - points,
    )


def progress_for(points: int, threshold_table: Sequence[LevelThreshold] | None = None) -> LevelProgress:
    table = threshold_table if threshold_table is not None else configured_levels()
    current = level_for(points, table)
    upcoming = next_level_for(points, table)
    if current.max_points is None:
        percent = 100.0
    else:
        span = current.max_points + 1 - current.min_points
        percent = round((points - current.min_points) / span * 100, 2)
    return LevelProgress(points=points, level=current, next_level=upcoming, progress_percent=percent)


__all__ = [
    "DEFAULT_LEVELS",
    "LevelProgress",
    "LevelResult",
    "LevelThreshold",
    "NextLevelResult",
    "configured_levels",
    "level_for",
    "next_level_for",
    "parse_table",
    "progress_for",
    "validate_table",
]
