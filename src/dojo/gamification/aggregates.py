"""Precomputed per-student aggregates used by badge rules and boards.

Counters live in ``student_activity_counts`` and are bumped by the
collaborators that own the underlying activity (attendance, battles,
skill trackers...). Badge evaluation only reads them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dojo.db.models import Student, StudentActivityCount
from dojo.errors import StoreUnavailableError, ValidationError

logger = logging.getLogger(__name__)


class ActivityMetric(str, Enum):
    CHECKINS = "checkins"
    CAMP_CHECKINS = "camp_checkins"
    CHALLENGES_COMPLETED = "challenges_completed"
    BATTLE_WINS = "battle_wins"
    BATTLE_MVP = "battle_mvp"
    SPOTLIGHT_STARS = "spotlight_stars"
    GOLD_MEDALS = "gold_medals"
    TUMBLE_TREES_COMPLETED = "tumble_trees_completed"
    TAOLU_TREES_COMPLETED = "taolu_trees_completed"
    TAOLU_TRACKERS_COMPLETED = "taolu_trackers_completed"


@dataclass
class StudentAggregate:
    student_id: int
    name: str
    lifetime_points: int = 0
    level: int = 1
    is_competition_team: bool = False
    counts: dict[str, int] = field(default_factory=dict)

    def count(self, metric: ActivityMetric | str) -> int:
        key = metric.value if isinstance(metric, ActivityMetric) else metric
        return self.counts.get(key, 0)


async def load_aggregates(
    db: AsyncSession,
    student_ids: list[int] | None = None,
) -> dict[int, StudentAggregate]:
    """Aggregates for the given students, or for every student when None."""
    stmt = select(Student).order_by(Student.id)
    if student_ids is not None:
        if not student_ids:
            return {}
        stmt = stmt.where(Student.id.in_(student_ids))
    result = await db.execute(stmt)

    aggregates = {
        s.id: StudentAggregate(
            student_id=s.id,
            name=s.name,
            lifetime_points=s.lifetime_points,
            level=s.level,
            is_competition_team=s.is_competition_team,
        )
        for s in result.scalars()
    }
    if not aggregates:
        return aggregates

    counts = await db.execute(
        select(
            StudentActivityCount.student_id,
            StudentActivityCount.metric,
            StudentActivityCount.value,
        ).where(StudentActivityCount.student_id.in_(list(aggregates)))
    )
    for student_id, metric, value in counts.all():
        aggregates[student_id].counts[metric] = value

    return aggregates


async def increment_activity(
    db: AsyncSession,
    student_id: int,
    metric: str,
    delta: int = 1,
) -> int:
    """Add ``delta`` to a student's counter, creating it on first use. Returns the new value."""
    try:
        metric = ActivityMetric(metric).value
    except ValueError:
        raise ValidationError(f"Unknown activity metric: {metric}") from None
    if await db.get(Student, student_id) is None:
        raise ValidationError("Unknown student id", details={"student_id": student_id})

    for attempt in range(2):
        result = await db.execute(
            select(StudentActivityCount)
            .where(
                StudentActivityCount.student_id == student_id,
                StudentActivityCount.metric == metric,
            )
            .with_for_update()
        )
        row = result.scalar_one_or_none()
        now = datetime.now(timezone.utc)
        if row is None:
            row = StudentActivityCount(student_id=student_id, metric=metric, value=0)
            db.add(row)
        row.value = max(0, row.value + delta)
        row.updated_at = now
        value = row.value
        try:
            await db.commit()
            return value
        except IntegrityError:
            # Another writer created the counter first; re-read and add to it.
            await db.rollback()
            logger.info("Counter race for student %d metric %s (attempt %d)", student_id, metric, attempt + 1)

    raise StoreUnavailableError("Could not update activity counter", details={"student_id": student_id, "metric": metric})
