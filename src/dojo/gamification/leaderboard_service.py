"""Leaderboards and the daily leaderboard bonus.

Each metric loads ``BoardRow`` values from the store and runs them through
``rank_rows``. Boards: total, weekly, lifetime, skill_pulse_today, mvp, and
one ``stat:<id>`` board per enabled performance stat.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Awaitable, Callable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dojo.config import get_settings
from dojo.db.models import (
    LeaderboardBonusSnapshot,
    LedgerEntry,
    PerformanceStat,
    Student,
    StudentActivityCount,
    StudentStatRecord,
)
from dojo.errors import NotFoundError, StoreUnavailableError
from dojo.gamification.aggregates import ActivityMetric
from dojo.gamification.categories import LedgerCategory, weekly_excluded_categories
from dojo.gamification.civil_day import civil_day_start, get_week_boundaries
from dojo.gamification.ranking import BoardRow, RankedRow, rank_rows

logger = logging.getLogger(__name__)

BONUS_BOARD_LIMIT = 10
STAT_PREFIX = "stat:"

Loader = Callable[[AsyncSession, datetime], Awaitable[list[BoardRow]]]


@dataclass(frozen=True)
class BoardSpec:
    key: str
    label: str
    loader: Loader
    higher_is_better: bool = True
    min_value: float | None = None


async def _student_column_rows(db: AsyncSession, column) -> list[BoardRow]:
    result = await db.execute(select(Student.id, Student.name, column))
    return [BoardRow(sid, name, value) for sid, name, value in result.all()]


async def _load_total(db: AsyncSession, now: datetime) -> list[BoardRow]:
    return await _student_column_rows(db, Student.points_balance)


async def _load_lifetime(db: AsyncSession, now: datetime) -> list[BoardRow]:
    return await _student_column_rows(db, Student.lifetime_points)


async def _ledger_sum_rows(db: AsyncSession, *conditions) -> list[BoardRow]:
    total = func.sum(LedgerEntry.points)
    result = await db.execute(
        select(Student.id, Student.name, total)
        .join(LedgerEntry, LedgerEntry.student_id == Student.id)
        .where(*conditions)
        .group_by(Student.id, Student.name)
    )
    return [BoardRow(sid, name, int(value or 0)) for sid, name, value in result.all()]


async def _load_weekly(db: AsyncSession, now: datetime) -> list[BoardRow]:
    week_start, _ = get_week_boundaries(now)
    conditions = [LedgerEntry.created_at >= week_start]
    excluded = weekly_excluded_categories()
    if excluded:
        conditions.append(LedgerEntry.category.notin_(sorted(excluded)))
    return await _ledger_sum_rows(db, *conditions)


async def _load_skill_pulse_today(db: AsyncSession, now: datetime) -> list[BoardRow]:
    return await _ledger_sum_rows(
        db,
        LedgerEntry.category == LedgerCategory.SKILL_PULSE.value,
        LedgerEntry.points > 0,
        LedgerEntry.created_at >= civil_day_start(now),
    )


async def _load_mvp(db: AsyncSession, now: datetime) -> list[BoardRow]:
    result = await db.execute(
        select(Student.id, Student.name, StudentActivityCount.value)
        .join(StudentActivityCount, StudentActivityCount.student_id == Student.id)
        .where(StudentActivityCount.metric == ActivityMetric.BATTLE_MVP.value)
    )
    return [BoardRow(sid, name, value) for sid, name, value in result.all()]


_STATIC_BOARDS: dict[str, BoardSpec] = {
    "total": BoardSpec("total", "Total Points", _load_total),
    "weekly": BoardSpec("weekly", "This Week", _load_weekly),
    "lifetime": BoardSpec("lifetime", "Lifetime Points", _load_lifetime),
    "skill_pulse_today": BoardSpec("skill_pulse_today", "Skill Pulse Today", _load_skill_pulse_today, min_value=1),
    "mvp": BoardSpec("mvp", "Battle MVP", _load_mvp, min_value=1),
}


def _stat_spec(stat: PerformanceStat) -> BoardSpec:
    best = func.max(StudentStatRecord.value) if stat.higher_is_better else func.min(StudentStatRecord.value)

    async def _load(db: AsyncSession, now: datetime) -> list[BoardRow]:
        result = await db.execute(
            select(Student.id, Student.name, best)
            .join(StudentStatRecord, StudentStatRecord.student_id == Student.id)
            .where(StudentStatRecord.stat_id == stat.id, StudentStatRecord.value > 0)
            .group_by(Student.id, Student.name)
        )
        return [BoardRow(sid, name, float(value)) for sid, name, value in result.all()]

    label = f"{stat.name} ({stat.unit})" if stat.unit else stat.name
    return BoardSpec(
        key=f"{STAT_PREFIX}{stat.id}",
        label=label,
        loader=_load,
        higher_is_better=stat.higher_is_better,
        min_value=stat.min_value,
    )


async def _resolve_board(db: AsyncSession, metric: str) -> BoardSpec:
    spec = _STATIC_BOARDS.get(metric)
    if spec is not None:
        return spec

    if metric.startswith(STAT_PREFIX):
        raw_id = metric[len(STAT_PREFIX):]
        if raw_id.isdigit():
            stat = await db.get(PerformanceStat, int(raw_id))
            if stat is not None and stat.enabled:
                return _stat_spec(stat)

    raise NotFoundError(f"Unknown leaderboard: {metric}")


async def list_boards(db: AsyncSession) -> list[BoardSpec]:
    """Static boards followed by one board per enabled performance stat."""
    result = await db.execute(
        select(PerformanceStat)
        .where(PerformanceStat.enabled.is_(True))
        .order_by(PerformanceStat.id)
    )
    return [*_STATIC_BOARDS.values(), *(_stat_spec(s) for s in result.scalars())]


async def _rank_board(
    db: AsyncSession,
    spec: BoardSpec,
    limit: int,
    now: datetime,
) -> dict:
    rows = await spec.loader(db, now)
    ranked = rank_rows(
        rows,
        higher_is_better=spec.higher_is_better,
        limit=limit,
        min_value=spec.min_value,
    )
    return {
        "metric": spec.key,
        "label": spec.label,
        "higher_is_better": spec.higher_is_better,
        "rows": ranked,
    }


async def get_leaderboard(
    db: AsyncSession,
    metric: str,
    limit: int | None = None,
    now: datetime | None = None,
) -> dict:
    """One ranked board. ``rows`` may exceed ``limit`` when a tie straddles the cutoff."""
    spec = await _resolve_board(db, metric)
    limit = limit if limit is not None else get_settings().leaderboard_default_limit
    return await _rank_board(db, spec, limit, now or datetime.now(timezone.utc))


async def get_all_leaderboards(
    db: AsyncSession,
    limit: int | None = None,
    now: datetime | None = None,
) -> list[dict]:
    limit = limit if limit is not None else get_settings().leaderboard_default_limit
    now = now or datetime.now(timezone.utc)
    return [await _rank_board(db, spec, limit, now) for spec in await list_boards(db)]


# ---------------------------------------------------------------------------
# Leaderboard bonus
# ---------------------------------------------------------------------------


def board_points_for_rank(rank: int) -> int:
    settings = get_settings()
    if rank == 1:
        return settings.board_points_top1
    if 1 < rank <= BONUS_BOARD_LIMIT:
        return settings.board_points_top10
    return 0


def compute_board_awards(boards: list[dict]) -> list[tuple[str, RankedRow, int]]:
    """Flatten ranked boards into (board_key, row, bonus points) placements.

    Placements with a non-positive value deliberately earn nothing, even when
    they rank inside the top 10 of the total, weekly, lifetime or mvp board:
    a day where everyone sits on zero pays no bonus.
    """
    awards: list[tuple[str, RankedRow, int]] = []
    for board in boards:
        for row in board["rows"]:
            if row.value <= 0:
                continue
            points = board_points_for_rank(row.rank)
            if points > 0:
                awards.append((board["metric"], row, points))
    return awards


async def _read_snapshot(db: AsyncSession, snapshot_date: date) -> list[LeaderboardBonusSnapshot]:
    result = await db.execute(
        select(LeaderboardBonusSnapshot)
        .where(LeaderboardBonusSnapshot.snapshot_date == snapshot_date)
        .order_by(LeaderboardBonusSnapshot.board_key, LeaderboardBonusSnapshot.rank)
    )
    return list(result.scalars().all())


async def get_or_create_bonus_snapshot(
    db: AsyncSession,
    snapshot_date: date,
    now: datetime | None = None,
) -> list[LeaderboardBonusSnapshot]:
    """Freeze the day's placements once; every later claim reads the same rows.

    Concurrent creators race on the snapshot's unique key. The loser rolls
    back and reads the winner's rows.
    """
    existing = await _read_snapshot(db, snapshot_date)
    if existing:
        return existing

    boards = await get_all_leaderboards(db, limit=BONUS_BOARD_LIMIT, now=now)
    rows = [
        LeaderboardBonusSnapshot(
            snapshot_date=snapshot_date,
            board_key=board_key,
            student_id=row.student_id,
            rank=row.rank,
            board_points=points,
        )
        for board_key, row, points in compute_board_awards(boards)
    ]
    if not rows:
        return []

    db.add_all(rows)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Bonus snapshot for %s created concurrently; re-reading", snapshot_date)
        existing = await _read_snapshot(db, snapshot_date)
        if not existing:
            raise StoreUnavailableError("Bonus snapshot could not be created") from None
        return existing

    logger.info("Created bonus snapshot for %s with %d placements", snapshot_date, len(rows))
    return rows


async def bonus_points_for(
    db: AsyncSession,
    student_id: int,
    snapshot_date: date,
    now: datetime | None = None,
) -> tuple[int, list[LeaderboardBonusSnapshot]]:
    """A student's total board bonus for the cycle and the placements behind it."""
    snapshot = await get_or_create_bonus_snapshot(db, snapshot_date, now=now)
    placements = [s for s in snapshot if s.student_id == student_id]
    return sum(p.board_points for p in placements), placements
