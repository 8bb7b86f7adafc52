"""Skill Sprint: time-boxed challenges with a decaying prize.

The prize falls linearly from the full reward at assignment to zero at the
deadline. Penalty days are accrued by an external scheduled process into
``charged_days``; this module only renders the points lost so far.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dojo.db.models import SkillSprintAssignment
from dojo.errors import ConflictError, InconsistentStateError, NotFoundError, StoreUnavailableError
from dojo.gamification.categories import LedgerCategory
from dojo.gamification.civil_day import ensure_utc
from dojo.gamification.ledger_service import EntryDraft, append_entries, recompute_with_retry
from dojo.gamification.level_thresholds import round_half_up

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400


def prize_now(reward_points: int, assigned_at: datetime, due_at: datetime, now: datetime) -> int:
    """Current prize: full before assignment, zero at or after the deadline."""
    assigned_at, due_at, now = ensure_utc(assigned_at), ensure_utc(due_at), ensure_utc(now)
    window = (due_at - assigned_at).total_seconds()
    if window <= 0:
        return reward_points if now < due_at else 0

    remaining = (due_at - now).total_seconds() / window
    return round_half_up(reward_points * min(1.0, max(0.0, remaining)))


def prize_drop_per_day(reward_points: int, assigned_at: datetime, due_at: datetime) -> float:
    total_days = (ensure_utc(due_at) - ensure_utc(assigned_at)).total_seconds() / SECONDS_PER_DAY
    if total_days <= 0:
        return 0.0
    return reward_points / total_days


def pool_dropped(reward_points: int, assigned_at: datetime, due_at: datetime, now: datetime) -> int:
    return reward_points - prize_now(reward_points, assigned_at, due_at, now)


def penalty_lost(charged_days: int, penalty_points_per_day: int) -> int:
    return charged_days * penalty_points_per_day


def sprint_status(sprint: SkillSprintAssignment, now: datetime | None = None) -> dict:
    """Display snapshot of a sprint. A completed sprint reports its frozen award."""
    now = now or datetime.now(timezone.utc)
    completed = sprint.completed_at is not None
    current = (
        sprint.awarded_points or 0
        if completed
        else prize_now(sprint.reward_points, sprint.assigned_at, sprint.due_at, now)
    )
    return {
        "id": sprint.id,
        "student_id": sprint.student_id,
        "title": sprint.title,
        "assigned_at": sprint.assigned_at,
        "due_at": sprint.due_at,
        "reward_points": sprint.reward_points,
        "prize_now": current,
        "prize_drop_per_day": prize_drop_per_day(sprint.reward_points, sprint.assigned_at, sprint.due_at),
        "pool_dropped": sprint.reward_points - current,
        "penalty_lost": penalty_lost(sprint.charged_days, sprint.penalty_points_per_day),
        "charged_days": sprint.charged_days,
        "completed_at": sprint.completed_at,
        "awarded_points": sprint.awarded_points,
        "is_overdue": not completed and ensure_utc(now) >= ensure_utc(sprint.due_at),
    }


async def get_sprint(db: AsyncSession, sprint_id: int) -> SkillSprintAssignment:
    sprint = await db.get(SkillSprintAssignment, sprint_id)
    if sprint is None:
        raise NotFoundError(f"Skill sprint {sprint_id} not found")
    return sprint


async def complete_sprint(
    db: AsyncSession,
    redis: object | None,
    sprint_id: int,
    now: datetime | None = None,
) -> dict:
    """Freeze the current prize, pay it into the ledger and refresh totals.

    ``completed_at`` is set by a conditional update, so only one of two
    concurrent completions wins; the other gets ConflictError.
    """
    now = now or datetime.now(timezone.utc)
    sprint = await get_sprint(db, sprint_id)
    if sprint.completed_at is not None:
        raise ConflictError(f"Skill sprint {sprint_id} is already completed")

    prize = prize_now(sprint.reward_points, sprint.assigned_at, sprint.due_at, now)
    try:
        result = await db.execute(
            update(SkillSprintAssignment)
            .where(
                SkillSprintAssignment.id == sprint_id,
                SkillSprintAssignment.completed_at.is_(None),
            )
            .values(completed_at=now, awarded_points=prize)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            raise ConflictError(f"Skill sprint {sprint_id} is already completed")
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StoreUnavailableError("Could not complete skill sprint") from exc
    await db.refresh(sprint)

    totals = None
    if prize > 0:
        draft = EntryDraft(
            student_id=sprint.student_id,
            points=prize,
            category=LedgerCategory.SKILL_SPRINT.value,
            note=(f"Skill Sprint: {sprint.title}" if sprint.title else "Skill Sprint")[:200],
            source_type="skill_sprint",
            source_id=str(sprint.id),
        )
        try:
            await append_entries(db, [draft], now=now)
        except StoreUnavailableError as exc:
            logger.critical(
                "Skill sprint %d completed but prize of %d unpaid for student %d",
                sprint.id, prize, sprint.student_id,
            )
            raise InconsistentStateError(
                "Skill sprint completed but its prize was not recorded",
                details={"sprint_id": sprint.id, "student_id": sprint.student_id, "points": prize},
            ) from exc
        totals = await recompute_with_retry(db, sprint.student_id, redis)

    logger.info("Skill sprint %d completed by student %d for %d points", sprint.id, sprint.student_id, prize)
    status = sprint_status(sprint, now)
    status["balance"] = totals.balance if totals else None
    return status
