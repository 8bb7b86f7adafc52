"""Badge awards: rule sweeps and coach awards, each granted at most once.

Per rule: students already holding the badge are subtracted from the
eligible set; the rest are inserted under the ``(student_id, badge_id)``
unique key, then paid (``badge_award`` ledger entries when the rule carries
points), recomputed and notified. Rules are isolated: one failing rule is
recorded in the report and the sweep moves on.

A coach award goes through the same unique key, so a badge already earned
by a sweep is never paid a second time by hand (and vice versa).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dojo.db.models import BadgeRule, Student, StudentBadgeAward
from dojo.errors import (
    AwardFollowUpError,
    DojoError,
    InconsistentStateError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from dojo.gamification.aggregates import load_aggregates
from dojo.gamification.badge_criteria import eligible_students, parse_criteria
from dojo.gamification.categories import LedgerCategory
from dojo.gamification.ledger_service import (
    MAX_NOTE_LENGTH,
    EntryDraft,
    PointTotals,
    append_entries,
    recompute_with_retry,
)
from dojo.gamification.notifications import notify

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_FAILED = "failed"
STATUS_INCONSISTENT = "inconsistent"

SOURCE_AUTO = "auto"
SOURCE_COACH = "coach"

REASON_ALREADY_HELD = "already_held"


@dataclass(frozen=True)
class RuleSpec:
    """Plain copy of a badge rule, safe to use after a session rollback."""

    id: str
    name: str
    criteria: dict
    points_award: int = 0

    @classmethod
    def from_model(cls, rule: BadgeRule) -> RuleSpec:
        return cls(id=rule.id, name=rule.name, criteria=dict(rule.criteria), points_award=rule.points_award)


@dataclass
class RuleSweepResult:
    rule_id: str
    status: str = STATUS_OK
    eligible: int = 0
    already_held: int = 0
    awarded: int = 0
    awarded_student_ids: list[int] = field(default_factory=list)
    error: str | None = None


@dataclass
class SweepReport:
    results: list[RuleSweepResult] = field(default_factory=list)

    @property
    def total_awarded(self) -> int:
        return sum(r.awarded for r in self.results)

    @property
    def failed_rules(self) -> list[str]:
        return [r.rule_id for r in self.results if r.status != STATUS_OK]


async def get_holders(db: AsyncSession, badge_id: str) -> set[int]:
    result = await db.execute(
        select(StudentBadgeAward.student_id).where(StudentBadgeAward.badge_id == badge_id)
    )
    return set(result.scalars().all())


async def _insert_awards(
    db: AsyncSession,
    rule: RuleSpec,
    eligible: list[int],
    now: datetime,
) -> tuple[list[int], int]:
    """Insert awards for eligible non-holders. Returns (new ids, already held count).

    A concurrent sweep can insert the same pair between our read and our
    commit; on that collision the holders are re-read and the insert is
    retried once.
    """
    for attempt in range(2):
        holders = await get_holders(db, rule.id)
        new_ids = [sid for sid in eligible if sid not in holders]
        if not new_ids:
            return [], len(eligible)

        db.add_all(
            StudentBadgeAward(
                student_id=sid,
                badge_id=rule.id,
                awarded_at=now,
                points_awarded=max(rule.points_award, 0),
                source=SOURCE_AUTO,
            )
            for sid in new_ids
        )
        try:
            await db.commit()
            return new_ids, len(eligible) - len(new_ids)
        except IntegrityError:
            await db.rollback()
            logger.info("Award race on badge %s (attempt %d); re-reading holders", rule.id, attempt + 1)

    raise StoreUnavailableError(
        f"Could not persist awards for badge {rule.id}",
        details={"badge_id": rule.id},
    )


async def _settle_awards(
    db: AsyncSession,
    redis: object | None,
    rule: RuleSpec,
    student_ids: list[int],
    names: dict[int, str],
    now: datetime,
) -> dict[int, PointTotals]:
    """Pay freshly committed awards, then refresh totals and notify the holders.

    A failed payment is InconsistentStateError. A failure after payment is
    AwardFollowUpError; either way the awards themselves stand.
    """
    if rule.points_award > 0:
        drafts = [
            EntryDraft(
                student_id=sid,
                points=rule.points_award,
                category=LedgerCategory.BADGE_AWARD.value,
                note=f"Badge: {rule.name}"[:MAX_NOTE_LENGTH],
                source_type="badge",
                source_id=rule.id,
            )
            for sid in student_ids
        ]
        try:
            await append_entries(db, drafts, now=now)
        except (StoreUnavailableError, SQLAlchemyError) as exc:
            logger.critical(
                "Badge %s awarded to %s but %d points each unpaid",
                rule.id, student_ids, rule.points_award,
            )
            raise InconsistentStateError(
                "Badge awarded but its points were not paid",
                details={"badge_id": rule.id, "student_ids": student_ids, "points": rule.points_award},
            ) from exc

    totals: dict[int, PointTotals] = {}
    try:
        if rule.points_award > 0:
            for sid in student_ids:
                totals[sid] = await recompute_with_retry(db, sid, redis)
        for sid in student_ids:
            await notify(db, redis, sid, "badge_awarded", f"{names[sid]} earned {rule.name}.")
        await db.commit()
    except (DojoError, SQLAlchemyError) as exc:
        await db.rollback()
        logger.error("Badge %s awarded to %s but follow-up failed", rule.id, student_ids, exc_info=True)
        raise AwardFollowUpError(
            f"Badge {rule.id} awarded but totals or notifications are behind",
            details={"badge_id": rule.id, "student_ids": student_ids, "stale_cache": True},
        ) from exc
    return totals


async def sweep_rule(
    db: AsyncSession,
    redis: object | None,
    rule: BadgeRule | RuleSpec,
    candidate_ids: list[int] | None = None,
    now: datetime | None = None,
) -> RuleSweepResult:
    """Award one rule's badge to every eligible candidate who lacks it."""
    now = now or datetime.now(timezone.utc)
    if isinstance(rule, BadgeRule):
        rule = RuleSpec.from_model(rule)

    criteria = parse_criteria(rule.criteria)
    aggregates = await load_aggregates(db, candidate_ids)
    eligible = eligible_students(criteria, aggregates)

    new_ids, already_held = await _insert_awards(db, rule, eligible, now)
    outcome = RuleSweepResult(
        rule_id=rule.id,
        eligible=len(eligible),
        already_held=already_held,
        awarded=len(new_ids),
        awarded_student_ids=new_ids,
    )
    if not new_ids:
        return outcome

    await _settle_awards(db, redis, rule, new_ids, {sid: aggregates[sid].name for sid in new_ids}, now)
    logger.info("Badge %s awarded to %d students", rule.id, len(new_ids))
    return outcome


async def sweep(
    db: AsyncSession,
    redis: object | None,
    rule_id: str | None = None,
    student_id: int | None = None,
    now: datetime | None = None,
) -> SweepReport:
    """Run every enabled rule (or one) over all students (or one)."""
    stmt = select(BadgeRule).order_by(BadgeRule.sort_order, BadgeRule.id)
    if rule_id is not None:
        stmt = stmt.where(BadgeRule.id == rule_id)
    else:
        stmt = stmt.where(BadgeRule.enabled.is_(True))
    rules = [RuleSpec.from_model(r) for r in (await db.execute(stmt)).scalars()]
    if rule_id is not None and not rules:
        raise NotFoundError(f"Badge rule {rule_id} not found")

    candidate_ids = [student_id] if student_id is not None else None
    report = SweepReport()

    for rule in rules:
        try:
            report.results.append(await sweep_rule(db, redis, rule, candidate_ids, now))
        except InconsistentStateError as exc:
            report.results.append(_failed_after_award(rule.id, STATUS_INCONSISTENT, exc))
        except AwardFollowUpError as exc:
            report.results.append(_failed_after_award(rule.id, STATUS_FAILED, exc))
        except Exception as exc:
            await db.rollback()
            logger.exception("Badge sweep failed for rule %s", rule.id)
            report.results.append(
                RuleSweepResult(rule_id=rule.id, status=STATUS_FAILED, error=str(exc))
            )

    logger.info(
        "Badge sweep complete: %d rules, %d awards, %d failed",
        len(report.results), report.total_awarded, len(report.failed_rules),
    )
    return report


def _failed_after_award(rule_id: str, status: str, exc: DojoError) -> RuleSweepResult:
    # The awards committed before the failure, so they are reported as awarded.
    awarded_ids = list(exc.details.get("student_ids", []))
    return RuleSweepResult(
        rule_id=rule_id,
        status=status,
        awarded=len(awarded_ids),
        awarded_student_ids=awarded_ids,
        error=exc.message,
    )


# ---------------------------------------------------------------------------
# Coach awards
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BadgeAwardResult:
    student_id: int
    badge_id: str
    granted: bool
    points_awarded: int = 0
    reason: str | None = None
    balance: int | None = None


async def award_badge(
    db: AsyncSession,
    redis: object | None,
    student_id: int,
    badge_id: str,
    note: str | None = None,
    now: datetime | None = None,
) -> BadgeAwardResult:
    """Grant one badge to one student by hand, regardless of its criteria.

    A repeat award (or a badge the student already earned in a sweep) is a
    normal result with ``granted=False``, not an error.
    """
    now = now or datetime.now(timezone.utc)
    note = (note or "").strip() or None
    if note is not None and len(note) > MAX_NOTE_LENGTH:
        raise ValidationError(f"note exceeds {MAX_NOTE_LENGTH} characters")

    student = await db.get(Student, student_id)
    if student is None:
        raise ValidationError("Unknown student id", details={"student_id": student_id})
    badge = await db.get(BadgeRule, badge_id)
    if badge is None:
        raise NotFoundError(f"Badge rule {badge_id} not found")
    rule = RuleSpec.from_model(badge)
    name = student.name

    db.add(StudentBadgeAward(
        student_id=student_id,
        badge_id=rule.id,
        awarded_at=now,
        points_awarded=max(rule.points_award, 0),
        note=note,
        source=SOURCE_COACH,
    ))
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Student %d already holds badge %s", student_id, rule.id)
        return BadgeAwardResult(student_id, rule.id, granted=False, reason=REASON_ALREADY_HELD)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StoreUnavailableError("Badge award could not be recorded") from exc

    totals = await _settle_awards(db, redis, rule, [student_id], {student_id: name}, now)
    logger.info("Coach awarded badge %s to student %d", rule.id, student_id)
    paid = totals.get(student_id)
    return BadgeAwardResult(
        student_id,
        rule.id,
        granted=True,
        points_awarded=max(rule.points_award, 0),
        balance=paid.balance if paid else None,
    )


async def list_student_badges(
    db: AsyncSession,
    student_id: int,
    limit: int | None = None,
) -> list[StudentBadgeAward]:
    """A student's badges, most recent first."""
    if await db.get(Student, student_id) is None:
        raise NotFoundError(f"Student {student_id} not found")
    stmt = (
        select(StudentBadgeAward)
        .where(StudentBadgeAward.student_id == student_id)
        .order_by(StudentBadgeAward.awarded_at.desc(), StudentBadgeAward.id.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())
