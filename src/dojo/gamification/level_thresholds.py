"""Level thresholds and computation.

Thresholds come from the ``level_thresholds`` table when an admin has
persisted one; otherwise they are generated from the exponential curve
described by ``base_jump`` and ``difficulty_pct``.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dojo.config import get_settings
from dojo.db.models import LevelSettings, LevelThreshold, Student
from dojo.errors import ValidationError

logger = logging.getLogger(__name__)

MAX_LEVEL = 99

# level_thresholds.min_lifetime_points is a BIGINT.
MAX_THRESHOLD_POINTS = 2**63 - 1

Threshold = tuple[int, int]  # (level, min_lifetime_points)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return int(math.floor(value + 0.5))


def generate_thresholds(
    base_jump: float,
    difficulty_pct: float,
    max_level: int = MAX_LEVEL,
    rounding_unit: int = 10,
) -> list[Threshold]:
    """Generate the level table from the exponential curve.

    Level 1 is 0. Each later level L adds ``base_jump * (1 + pct/100) ** (L-1)``
    to a running total; the total is rounded to the nearest ``rounding_unit``
    and floored at 0.
    """
    if rounding_unit <= 0:
        raise ValueError("rounding_unit must be positive")

    levels: list[Threshold] = [(1, 0)]
    total = 0.0
    for level in range(2, max_level + 1):
        total += base_jump * math.pow(1 + difficulty_pct / 100, level - 1)
        rounded = round_half_up(total / rounding_unit) * rounding_unit
        levels.append((level, max(0, rounded)))
    return levels


def validate_thresholds(thresholds: list[Threshold]) -> None:
    """Raise ValidationError unless the table starts at (1, 0) and never decreases.

    Minimums above ``MAX_THRESHOLD_POINTS`` are rejected before they reach the store.
    """
    if not thresholds:
        raise ValidationError("Threshold table is empty")
    ordered = sorted(thresholds)
    if ordered[0] != (1, 0):
        raise ValidationError("Level 1 must require 0 lifetime points")
    for (prev_level, prev_min), (level, min_points) in zip(ordered, ordered[1:]):
        if level == prev_level:
            raise ValidationError(f"Duplicate level {level}")
        if min_points < prev_min:
            raise ValidationError(
                f"Level {level} requires fewer points than level {prev_level}",
                details={"level": level, "min_lifetime_points": min_points},
            )
        if min_points > MAX_THRESHOLD_POINTS:
            raise ValidationError(
                f"Level {level} requires more than {MAX_THRESHOLD_POINTS} points; lower base_jump or difficulty_pct",
                details={"level": level, "min_lifetime_points": min_points},
            )


def level_for(lifetime_points: int, thresholds: list[Threshold]) -> int:
    """Highest level whose minimum is satisfied by ``lifetime_points``."""
    current = 1
    for level, min_points in sorted(thresholds):
        if lifetime_points >= min_points:
            current = level
    return current


def level_progress(lifetime_points: int, thresholds: list[Threshold]) -> dict:
    """Level info for display: current level and distance to the next one."""
    ordered = sorted(thresholds) or [(1, 0)]
    level = level_for(lifetime_points, ordered)
    by_level = dict(ordered)
    current_min = by_level.get(level, 0)

    higher = [(lvl, pts) for lvl, pts in ordered if lvl > level]
    if higher:
        next_level, next_min = higher[0]
    else:
        next_level, next_min = level, current_min

    points_for_level = next_min - current_min
    return {
        "level": level,
        "points_into_level": lifetime_points - current_min,
        "points_for_level": points_for_level,
        "next_level": next_level,
        "next_level_min": next_min,
        "is_max_level": not higher,
    }


async def get_curve_settings(db: AsyncSession) -> tuple[int, int]:
    """Return (base_jump, difficulty_pct) from the settings row, or configured defaults."""
    result = await db.execute(select(LevelSettings).where(LevelSettings.id == 1))
    row = result.scalar_one_or_none()
    if row is not None:
        return row.base_jump, row.difficulty_pct
    settings = get_settings()
    return settings.level_base_jump, settings.level_difficulty_pct


async def load_thresholds(db: AsyncSession) -> list[Threshold]:
    """Persisted thresholds if any exist, else the generated curve."""
    result = await db.execute(select(LevelThreshold).order_by(LevelThreshold.level.asc()))
    rows = result.scalars().all()
    if rows:
        return [(r.level, r.min_lifetime_points) for r in rows]

    settings = get_settings()
    base_jump, difficulty_pct = await get_curve_settings(db)
    return generate_thresholds(
        base_jump,
        difficulty_pct,
        max_level=settings.max_level,
        rounding_unit=settings.level_rounding_unit,
    )


async def save_generated_thresholds(
    db: AsyncSession,
    base_jump: int,
    difficulty_pct: int,
) -> list[Threshold]:
    """Regenerate the curve, persist it as the level table, and store its parameters."""
    if base_jump < 0 or difficulty_pct < 0:
        raise ValidationError("base_jump and difficulty_pct must be non-negative")

    settings = get_settings()
    thresholds = generate_thresholds(
        base_jump,
        difficulty_pct,
        max_level=settings.max_level,
        rounding_unit=settings.level_rounding_unit,
    )
    validate_thresholds(thresholds)

    now = datetime.now(timezone.utc)
    existing = await db.get(LevelSettings, 1)
    if existing is None:
        db.add(LevelSettings(id=1, base_jump=base_jump, difficulty_pct=difficulty_pct, updated_at=now))
    else:
        existing.base_jump = base_jump
        existing.difficulty_pct = difficulty_pct
        existing.updated_at = now

    await db.execute(delete(LevelThreshold))
    db.add_all(LevelThreshold(level=lvl, min_lifetime_points=pts) for lvl, pts in thresholds)
    await db.commit()

    logger.info("Saved %d level thresholds (base_jump=%d, difficulty_pct=%d)", len(thresholds), base_jump, difficulty_pct)
    return thresholds


async def recompute_all_levels(db: AsyncSession) -> list[dict]:
    """Re-derive every student's cached level from their stored lifetime points.

    Returns the students whose level changed.
    """
    thresholds = await load_thresholds(db)
    result = await db.execute(select(Student).order_by(Student.id))
    changed: list[dict] = []
    now = datetime.now(timezone.utc)

    for student in result.scalars():
        new_level = level_for(student.lifetime_points, thresholds)
        if new_level != student.level:
            changed.append({
                "student_id": student.id,
                "name": student.name,
                "old_level": student.level,
                "new_level": new_level,
            })
            student.level = new_level
            student.updated_at = now

    await db.commit()
    logger.info("Level recompute complete: %d students changed", len(changed))
    return changed


async def describe_levels(db: AsyncSession) -> dict:
    """Curve parameters, whether the table is persisted, and the active thresholds."""
    count = await db.execute(select(func.count()).select_from(LevelThreshold))
    base_jump, difficulty_pct = await get_curve_settings(db)
    return {
        "base_jump": base_jump,
        "difficulty_pct": difficulty_pct,
        "persisted": int(count.scalar_one()) > 0,
        "levels": await load_thresholds(db),
    }
