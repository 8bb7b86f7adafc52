"""Points engine API endpoints."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from dojo.dependencies import get_db, get_redis_dep, require_sweep_secret
from dojo.gamification import (
    aggregates,
    badge_service,
    claim_service,
    leaderboard_service,
    ledger_service,
    level_thresholds,
    skill_sprint,
)
from dojo.gamification.schemas import (
    ActivityIncrementRequest,
    ActivityIncrementResponse,
    AllLeaderboardsResponse,
    BadgeAwardRequest,
    BadgeAwardResponse,
    ClaimRequestBody,
    ClaimResponse,
    ClaimStatusResponse,
    LeaderboardResponse,
    LedgerAppendRequest,
    LedgerAppendResponse,
    LedgerEntryResponse,
    LedgerHistoryResponse,
    LevelChange,
    LevelEntry,
    LevelRecomputeResponse,
    LevelsResponse,
    LevelsUpdateRequest,
    PointsSummaryResponse,
    PointTotalsResponse,
    RankedRowResponse,
    RedeemRequest,
    RuleSweepResponse,
    SkillSprintResponse,
    StudentBadgeResponse,
    StudentBadgesResponse,
    SweepRequest,
    SweepResponse,
)

router = APIRouter(prefix="/api/v1", tags=["Points"])


def _board_response(board: dict) -> LeaderboardResponse:
    return LeaderboardResponse(
        metric=board["metric"],
        label=board["label"],
        higher_is_better=board["higher_is_better"],
        rows=[RankedRowResponse(**asdict(r)) for r in board["rows"]],
    )


def _levels_response(info: dict) -> LevelsResponse:
    return LevelsResponse(
        base_jump=info["base_jump"],
        difficulty_pct=info["difficulty_pct"],
        persisted=info["persisted"],
        levels=[LevelEntry(level=lvl, min_lifetime_points=pts) for lvl, pts in info["levels"]],
    )


# ── Ledger ──


@router.post("/ledger", response_model=LedgerAppendResponse, status_code=201)
async def append_ledger(
    body: LedgerAppendRequest,
    db: AsyncSession = Depends(get_db),
    redis: object | None = Depends(get_redis_dep),
):
    """Append entries atomically and return each touched student's refreshed totals."""
    drafts = [
        ledger_service.EntryDraft(
            student_id=e.student_id,
            points=e.points,
            category=e.category.value,
            note=e.note,
            source_type=e.source_type,
            source_id=e.source_id,
        )
        for e in body.entries
    ]
    totals = await ledger_service.append_and_recompute(db, redis, drafts)
    return LedgerAppendResponse(
        appended=len(drafts),
        totals=[PointTotalsResponse(**asdict(t)) for t in totals.values()],
    )


@router.post("/students/{student_id}/recompute", response_model=PointTotalsResponse)
async def recompute_student(
    student_id: int,
    db: AsyncSession = Depends(get_db),
    redis: object | None = Depends(get_redis_dep),
):
    totals = await ledger_service.recompute_student_points(db, student_id, redis)
    return PointTotalsResponse(**asdict(totals))


@router.get("/students/{student_id}/points", response_model=PointsSummaryResponse)
async def get_student_points(student_id: int, db: AsyncSession = Depends(get_db)):
    return PointsSummaryResponse(**await ledger_service.get_points_summary(db, student_id))


@router.get("/students/{student_id}/ledger", response_model=LedgerHistoryResponse)
async def get_student_ledger(
    student_id: int,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    entries, total = await ledger_service.get_ledger_history(db, student_id, page, per_page)
    return LedgerHistoryResponse(
        entries=[
            LedgerEntryResponse(
                id=e.id,
                points=e.points,
                category=e.category,
                note=e.note,
                source_type=e.source_type,
                source_id=e.source_id,
                created_at=e.created_at,
            )
            for e in entries
        ],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.post("/students/{student_id}/redeem", response_model=PointTotalsResponse)
async def redeem_points(
    student_id: int,
    body: RedeemRequest,
    db: AsyncSession = Depends(get_db),
    redis: object | None = Depends(get_redis_dep),
):
    totals = await ledger_service.spend_points(db, redis, student_id, body.cost, body.note)
    return PointTotalsResponse(**asdict(totals))


# ── Claims ──


@router.post("/claims", response_model=ClaimResponse)
async def claim_bonus(
    body: ClaimRequestBody,
    db: AsyncSession = Depends(get_db),
    redis: object | None = Depends(get_redis_dep),
):
    """Claim a daily bonus. A repeat claim is a normal response with granted=false."""
    result = await claim_service.claim_daily_bonus(
        db,
        redis,
        claim_service.ClaimRequest(
            student_id=body.student_id,
            category=body.category,
            points=body.points,
            role=body.role,
            event_id=body.event_id,
        ),
    )
    return ClaimResponse(**asdict(result))


@router.get("/students/{student_id}/claims", response_model=ClaimStatusResponse)
async def get_claims(student_id: int, db: AsyncSession = Depends(get_db)):
    return ClaimStatusResponse(**await claim_service.get_claim_status(db, student_id))


# ── Leaderboards ──


@router.get("/leaderboards", response_model=AllLeaderboardsResponse)
async def list_leaderboards(
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    boards = await leaderboard_service.get_all_leaderboards(db, limit)
    return AllLeaderboardsResponse(boards=[_board_response(b) for b in boards])


@router.get("/leaderboards/{metric}", response_model=LeaderboardResponse)
async def get_leaderboard(
    metric: str,
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Ranked board. May return more than ``limit`` rows when a tie straddles the cutoff."""
    return _board_response(await leaderboard_service.get_leaderboard(db, metric, limit))


# ── Badges ──


@router.post(
    "/badges/sweep",
    response_model=SweepResponse,
    dependencies=[Depends(require_sweep_secret)],
)
async def sweep_badges(
    body: SweepRequest,
    db: AsyncSession = Depends(get_db),
    redis: object | None = Depends(get_redis_dep),
):
    report = await badge_service.sweep(db, redis, rule_id=body.rule_id, student_id=body.student_id)
    return SweepResponse(
        total_awarded=report.total_awarded,
        failed_rules=report.failed_rules,
        results=[RuleSweepResponse(**asdict(r)) for r in report.results],
    )


@router.post("/badges/award", response_model=BadgeAwardResponse)
async def coach_award_badge(
    body: BadgeAwardRequest,
    db: AsyncSession = Depends(get_db),
    redis: object | None = Depends(get_redis_dep),
):
    """Coach award. A badge the student already holds comes back with granted=false."""
    result = await badge_service.award_badge(db, redis, body.student_id, body.badge_id, body.note)
    return BadgeAwardResponse(**asdict(result))


@router.get("/students/{student_id}/badges", response_model=StudentBadgesResponse)
async def get_student_badges(
    student_id: int,
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    awards = await badge_service.list_student_badges(db, student_id, limit)
    return StudentBadgesResponse(
        student_id=student_id,
        badges=[
            StudentBadgeResponse(
                badge_id=a.badge_id,
                name=a.badge.name,
                category=a.badge.category,
                awarded_at=a.awarded_at,
                points_awarded=a.points_awarded,
                source=a.source,
                note=a.note,
            )
            for a in awards
        ],
    )


# ── Levels ──


@router.get("/levels", response_model=LevelsResponse)
async def get_levels(db: AsyncSession = Depends(get_db)):
    return _levels_response(await level_thresholds.describe_levels(db))


@router.put("/levels", response_model=LevelsResponse)
async def put_levels(body: LevelsUpdateRequest, db: AsyncSession = Depends(get_db)):
    """Regenerate the level table from new curve parameters and persist it."""
    await level_thresholds.save_generated_thresholds(db, body.base_jump, body.difficulty_pct)
    return _levels_response(await level_thresholds.describe_levels(db))


@router.post("/levels/recompute", response_model=LevelRecomputeResponse)
async def recompute_levels(db: AsyncSession = Depends(get_db)):
    changed = await level_thresholds.recompute_all_levels(db)
    return LevelRecomputeResponse(changed=[LevelChange(**c) for c in changed])


# ── Skill Sprint ──


@router.get("/skill-sprints/{sprint_id}", response_model=SkillSprintResponse)
async def get_skill_sprint(sprint_id: int, db: AsyncSession = Depends(get_db)):
    sprint = await skill_sprint.get_sprint(db, sprint_id)
    return SkillSprintResponse(**skill_sprint.sprint_status(sprint))


@router.post("/skill-sprints/{sprint_id}/complete", response_model=SkillSprintResponse)
async def complete_skill_sprint(
    sprint_id: int,
    db: AsyncSession = Depends(get_db),
    redis: object | None = Depends(get_redis_dep),
):
    return SkillSprintResponse(**await skill_sprint.complete_sprint(db, redis, sprint_id))


# ── Activity counters ──


@router.post("/students/{student_id}/activity", response_model=ActivityIncrementResponse)
async def bump_activity(
    student_id: int,
    body: ActivityIncrementRequest,
    db: AsyncSession = Depends(get_db),
):
    value = await aggregates.increment_activity(db, student_id, body.metric, body.delta)
    return ActivityIncrementResponse(student_id=student_id, metric=body.metric, value=value)
