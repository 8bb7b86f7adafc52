"""Daily claim guard.

A claim is an insert into ``daily_claims`` guarded by the unique key
``(student_id, claim_category, claim_date)``. The insert commits before any
ledger write: whichever of two concurrent requests commits first wins, and
the other gets ``already_claimed``. A claim that commits but whose ledger
append then fails is "claimed but unpaid". That is raised as
InconsistentStateError and never retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dojo.config import get_settings
from dojo.db.models import DailyClaimRecord, Student
from dojo.errors import InconsistentStateError, StoreUnavailableError, ValidationError
from dojo.gamification.categories import LedgerCategory
from dojo.gamification.civil_day import civil_date_key, next_civil_day_start, snapshot_cycle_date
from dojo.gamification.leaderboard_service import bonus_points_for
from dojo.gamification.ledger_service import MAX_POINTS, EntryDraft, append_entries, recompute_with_retry

logger = logging.getLogger(__name__)

REASON_ALREADY_CLAIMED = "already_claimed"
REASON_NOT_PLACED = "not_placed"


class ClaimCategory(str, Enum):
    AVATAR_DAILY = "avatar_daily"
    LEADERBOARD_BONUS = "leaderboard_bonus"
    CAMP_ROLE = "camp_role"
    EVENT = "event"


_LEDGER_CATEGORY = {
    ClaimCategory.AVATAR_DAILY: LedgerCategory.AVATAR_DAILY,
    ClaimCategory.LEADERBOARD_BONUS: LedgerCategory.LEADERBOARD_BONUS,
    ClaimCategory.CAMP_ROLE: LedgerCategory.CAMP_ROLE,
    ClaimCategory.EVENT: LedgerCategory.EVENT_BONUS,
}


@dataclass(frozen=True)
class ClaimRequest:
    student_id: int
    category: ClaimCategory
    points: int | None = None
    role: str | None = None
    event_id: str | None = None


@dataclass(frozen=True)
class ClaimResult:
    granted: bool
    claim_key: str
    claim_date: date
    points: int = 0
    reason: str | None = None
    balance: int | None = None


def claim_key(category: ClaimCategory, event_id: str | None = None) -> str:
    """Key stored in ``daily_claims.claim_category``. Events are keyed per event."""
    if category is ClaimCategory.EVENT:
        if not event_id:
            raise ValidationError("event_id is required for event claims")
        return f"event:{event_id}"
    return category.value


async def try_claim(
    db: AsyncSession,
    student_id: int,
    key: str,
    date_key: date,
    points: int = 0,
    now: datetime | None = None,
) -> ClaimResult:
    """Insert the claim row and commit. A unique-key collision is a rejected claim."""
    db.add(DailyClaimRecord(
        student_id=student_id,
        claim_category=key,
        claim_date=date_key,
        points=points,
        claimed_at=now or datetime.now(timezone.utc),
    ))
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return ClaimResult(
            granted=False,
            claim_key=key,
            claim_date=date_key,
            reason=REASON_ALREADY_CLAIMED,
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StoreUnavailableError("Claim could not be recorded") from exc

    return ClaimResult(granted=True, claim_key=key, claim_date=date_key, points=points)


def _positive_points(points: int | None, category: ClaimCategory) -> int:
    if points is None or isinstance(points, bool) or points <= 0:
        raise ValidationError(f"A positive points amount is required for {category.value} claims")
    if points > MAX_POINTS:
        raise ValidationError(
            f"{category.value} claims are capped at {MAX_POINTS} points",
            details={"points": points},
        )
    return points


def _camp_role_points(role: str | None) -> int:
    table = get_settings().camp_role_daily_points
    if not role or role not in table:
        raise ValidationError(
            "Unknown camp role",
            details={"role": role, "known_roles": sorted(table)},
        )
    return table[role]


async def claim_daily_bonus(
    db: AsyncSession,
    redis: object | None,
    request: ClaimRequest,
    now: datetime | None = None,
) -> ClaimResult:
    """Claim one daily bonus: guard first, then pay, then refresh totals."""
    now = now or datetime.now(timezone.utc)
    category = ClaimCategory(request.category)
    if await db.get(Student, request.student_id) is None:
        raise ValidationError("Unknown student id", details={"student_id": request.student_id})

    key = claim_key(category, request.event_id)
    date_key = civil_date_key(now)
    note = None

    if category is ClaimCategory.LEADERBOARD_BONUS:
        date_key = snapshot_cycle_date(now)
        points, placements = await bonus_points_for(db, request.student_id, date_key, now=now)
        if points <= 0:
            return ClaimResult(granted=False, claim_key=key, claim_date=date_key, reason=REASON_NOT_PLACED)
        note = "Leaderboard bonus: " + ", ".join(f"{p.board_key} #{p.rank}" for p in placements)
    elif category is ClaimCategory.CAMP_ROLE:
        points = _camp_role_points(request.role)
        note = f"Camp role: {request.role}"
    else:
        points = _positive_points(request.points, category)
        if category is ClaimCategory.EVENT:
            note = f"Event bonus: {request.event_id}"

    result = await try_claim(db, request.student_id, key, date_key, points, now)
    if not result.granted:
        logger.info("Rejected repeat claim %s for student %d on %s", key, request.student_id, date_key)
        return result

    draft = EntryDraft(
        student_id=request.student_id,
        points=points,
        category=_LEDGER_CATEGORY[category].value,
        note=note[:200] if note else None,
        source_type="daily_claim",
        source_id=f"{key}:{date_key.isoformat()}",
    )
    try:
        await append_entries(db, [draft], now=now)
    except (StoreUnavailableError, SQLAlchemyError) as exc:
        logger.critical(
            "Claim %s for student %d on %s committed but %d points unpaid",
            key, request.student_id, date_key, points,
        )
        raise InconsistentStateError(
            "Claim recorded but its points were not paid",
            details={
                "student_id": request.student_id,
                "claim_key": key,
                "claim_date": date_key.isoformat(),
                "points": points,
            },
        ) from exc

    totals = await recompute_with_retry(db, request.student_id, redis)
    logger.info("Granted claim %s for student %d: %d points", key, request.student_id, points)
    return ClaimResult(
        granted=True,
        claim_key=key,
        claim_date=date_key,
        points=points,
        balance=totals.balance,
    )


async def get_claim_status(
    db: AsyncSession,
    student_id: int,
    now: datetime | None = None,
) -> dict:
    """Claims already made in the current civil day and bonus cycle."""
    now = now or datetime.now(timezone.utc)
    if await db.get(Student, student_id) is None:
        raise ValidationError("Unknown student id", details={"student_id": student_id})

    today = civil_date_key(now)
    cycle = snapshot_cycle_date(now)
    result = await db.execute(
        select(DailyClaimRecord).where(
            DailyClaimRecord.student_id == student_id,
            DailyClaimRecord.claim_date.in_(sorted({today, cycle})),
        )
    )

    claimed: dict[str, dict] = {}
    for record in result.scalars():
        is_bonus = record.claim_category == ClaimCategory.LEADERBOARD_BONUS.value
        current = cycle if is_bonus else today
        if record.claim_date == current:
            claimed[record.claim_category] = {
                "claimed_at": record.claimed_at,
                "points": record.points,
            }

    return {
        "student_id": student_id,
        "claim_date": today,
        "bonus_cycle_date": cycle,
        "claimed": claimed,
        "next_reset": next_civil_day_start(now),
    }
