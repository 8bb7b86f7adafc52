"""Points ledger and recompute engine.

The ledger is append-only. A student's ``points_balance``, ``lifetime_points``
and ``level`` are never incremented in place: every recompute re-derives them
from the full log under a row lock, so concurrent recomputes converge on the
same totals regardless of order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dojo.config import get_settings
from dojo.db.models import LedgerEntry, Student
from dojo.errors import NotFoundError, StoreUnavailableError, ValidationError
from dojo.gamification.categories import LedgerCategory, non_lifetime_categories
from dojo.gamification.level_thresholds import level_for, level_progress, load_thresholds
from dojo.gamification.notifications import notify

logger = logging.getLogger(__name__)

MAX_NOTE_LENGTH = 200

# Ledger and claim amounts are stored in 32-bit INTEGER columns.
MAX_POINTS = 2**31 - 1

_KNOWN_CATEGORIES = frozenset(c.value for c in LedgerCategory)


@dataclass(frozen=True)
class EntryDraft:
    """A ledger entry that has not been written yet."""

    student_id: int
    points: int
    category: str
    note: str | None = None
    source_type: str | None = None
    source_id: str | None = None


@dataclass(frozen=True)
class PointTotals:
    student_id: int
    balance: int
    lifetime: int
    level: int


def _validate_draft(draft: EntryDraft) -> None:
    if isinstance(draft.points, bool) or not isinstance(draft.points, int):
        raise ValidationError("points must be an integer", details={"student_id": draft.student_id})
    if draft.points == 0:
        raise ValidationError("points must be non-zero", details={"student_id": draft.student_id})
    if abs(draft.points) > MAX_POINTS:
        raise ValidationError(
            f"points must be between -{MAX_POINTS} and {MAX_POINTS}",
            details={"student_id": draft.student_id, "points": draft.points},
        )
    if draft.category not in _KNOWN_CATEGORIES:
        raise ValidationError(f"Unknown ledger category: {draft.category}")
    if draft.note is not None and len(draft.note) > MAX_NOTE_LENGTH:
        raise ValidationError(f"note exceeds {MAX_NOTE_LENGTH} characters")


def _to_row(draft: EntryDraft, now: datetime) -> LedgerEntry:
    return LedgerEntry(
        student_id=draft.student_id,
        points=draft.points,
        category=draft.category,
        note=draft.note,
        source_type=draft.source_type,
        source_id=draft.source_id,
        created_at=now,
    )


async def _require_students(db: AsyncSession, student_ids: Iterable[int]) -> None:
    wanted = set(student_ids)
    result = await db.execute(select(Student.id).where(Student.id.in_(list(wanted))))
    missing = wanted - set(result.scalars().all())
    if missing:
        raise ValidationError(
            "Unknown student id(s)",
            details={"student_ids": sorted(missing)},
        )


async def append_entries(
    db: AsyncSession,
    entries: list[EntryDraft],
    now: datetime | None = None,
) -> list[LedgerEntry]:
    """Write entries in one transaction. All-or-nothing.

    Raises ValidationError before any write, or StoreUnavailableError if the
    commit fails (nothing is applied).
    """
    if not entries:
        raise ValidationError("At least one ledger entry is required")
    for draft in entries:
        _validate_draft(draft)
    await _require_students(db, (d.student_id for d in entries))

    now = now or datetime.now(timezone.utc)
    rows = [_to_row(d, now) for d in entries]
    db.add_all(rows)
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Ledger append failed for %d entries", len(rows), exc_info=True)
        raise StoreUnavailableError("Ledger write failed; nothing was applied") from exc

    logger.info(
        "Appended %d ledger entries for students %s",
        len(rows),
        sorted({r.student_id for r in rows}),
    )
    return rows


async def _sum_points(db: AsyncSession, student_id: int, lifetime_only: bool = False) -> int:
    stmt = select(func.coalesce(func.sum(LedgerEntry.points), 0)).where(
        LedgerEntry.student_id == student_id
    )
    if lifetime_only:
        excluded = non_lifetime_categories()
        if excluded:
            stmt = stmt.where(LedgerEntry.category.notin_(sorted(excluded)))
    result = await db.execute(stmt)
    return int(result.scalar_one())


async def recompute_student_points(
    db: AsyncSession,
    student_id: int,
    redis: object | None = None,
) -> PointTotals:
    """Re-derive balance, lifetime points and level from the full ledger.

    Locks the student row for the duration of the transaction so two
    concurrent recomputes serialize. Safe to call repeatedly.
    """
    result = await db.execute(
        select(Student).where(Student.id == student_id).with_for_update()
    )
    student = result.scalar_one_or_none()
    if student is None:
        raise NotFoundError(f"Student {student_id} not found")

    balance = await _sum_points(db, student_id)
    lifetime = await _sum_points(db, student_id, lifetime_only=True)
    thresholds = await load_thresholds(db)
    level = level_for(lifetime, thresholds)

    old_level = student.level
    student.points_balance = balance
    student.lifetime_points = lifetime
    student.level = level
    student.updated_at = datetime.now(timezone.utc)

    if level > old_level:
        await notify(db, redis, student_id, "level_up", f"{student.name} reached level {level}!")
        logger.info("Student %d levelled up %d -> %d", student_id, old_level, level)

    await db.commit()
    return PointTotals(student_id=student_id, balance=balance, lifetime=lifetime, level=level)


async def recompute_with_retry(
    db: AsyncSession,
    student_id: int,
    redis: object | None = None,
) -> PointTotals:
    """Recompute after a durable ledger write, retrying transient store failures.

    Never touches the ledger. If every attempt fails the cached totals are
    stale and StoreUnavailableError says so; the ``recompute_student`` worker
    job repairs them.
    """
    settings = get_settings()
    attempts = max(1, settings.recompute_retry_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await recompute_student_points(db, student_id, redis)
        except SQLAlchemyError:
            await db.rollback()
            logger.warning(
                "Recompute failed for student %d (attempt %d/%d)",
                student_id, attempt, attempts,
                exc_info=True,
            )
            if attempt < attempts:
                await asyncio.sleep(settings.recompute_retry_backoff_seconds * attempt)

    logger.error("Recompute exhausted retries for student %d; cached totals are stale", student_id)
    raise StoreUnavailableError(
        "Ledger write is durable but cached totals are stale; recompute will be retried",
        details={"student_id": student_id, "stale_cache": True},
    )


async def append_and_recompute(
    db: AsyncSession,
    redis: object | None,
    entries: list[EntryDraft],
) -> dict[int, PointTotals]:
    """Append entries, then refresh every touched student before returning."""
    await append_entries(db, entries)

    totals: dict[int, PointTotals] = {}
    for student_id in dict.fromkeys(d.student_id for d in entries):
        totals[student_id] = await recompute_with_retry(db, student_id, redis)
    return totals


async def spend_points(
    db: AsyncSession,
    redis: object | None,
    student_id: int,
    cost: int,
    note: str | None = None,
) -> PointTotals:
    """Redeem ``cost`` points from the student's balance.

    The balance check and the negative ``redeem`` entry share one transaction
    with the student row locked, so two concurrent spends cannot overdraw.
    """
    if isinstance(cost, bool) or not isinstance(cost, int) or cost <= 0:
        raise ValidationError("cost must be a positive integer")
    draft = EntryDraft(
        student_id=student_id,
        points=-cost,
        category=LedgerCategory.REDEEM.value,
        note=note,
        source_type="redeem",
    )
    _validate_draft(draft)

    result = await db.execute(
        select(Student).where(Student.id == student_id).with_for_update()
    )
    if result.scalar_one_or_none() is None:
        raise NotFoundError(f"Student {student_id} not found")

    balance = await _sum_points(db, student_id)
    if balance < cost:
        await db.rollback()
        raise ValidationError(
            "Insufficient balance",
            details={"balance": balance, "cost": cost},
        )

    db.add(_to_row(draft, datetime.now(timezone.utc)))
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StoreUnavailableError("Redeem failed; nothing was applied") from exc

    logger.info("Student %d redeemed %d points", student_id, cost)
    return await recompute_with_retry(db, student_id, redis)


async def get_student(db: AsyncSession, student_id: int) -> Student:
    student = await db.get(Student, student_id)
    if student is None:
        raise NotFoundError(f"Student {student_id} not found")
    return student


async def get_points_summary(db: AsyncSession, student_id: int) -> dict:
    """Cached totals plus level progress for display."""
    student = await get_student(db, student_id)
    thresholds = await load_thresholds(db)
    return {
        "student_id": student.id,
        "name": student.name,
        "balance": student.points_balance,
        "lifetime": student.lifetime_points,
        **level_progress(student.lifetime_points, thresholds),
    }


async def get_ledger_history(
    db: AsyncSession,
    student_id: int,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[LedgerEntry], int]:
    """Newest-first page of a student's ledger and the total entry count."""
    await get_student(db, student_id)

    total_result = await db.execute(
        select(func.count()).select_from(LedgerEntry).where(LedgerEntry.student_id == student_id)
    )
    total = int(total_result.scalar_one())

    offset = (max(page, 1) - 1) * per_page
    result = await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.student_id == student_id)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .offset(offset)
        .limit(per_page)
    )
    return list(result.scalars().all()), total
