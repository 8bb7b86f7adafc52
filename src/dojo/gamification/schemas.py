"""Pydantic request/response models for the points engine endpoints."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field

from dojo.gamification.categories import LedgerCategory
from dojo.gamification.claim_service import ClaimCategory
from dojo.gamification.ledger_service import MAX_POINTS


# --- Ledger ---


class LedgerEntryIn(BaseModel):
    student_id: int
    points: int = Field(ge=-MAX_POINTS, le=MAX_POINTS)
    category: LedgerCategory
    note: str | None = Field(default=None, max_length=200)
    source_type: str | None = Field(default=None, max_length=32)
    source_id: str | None = Field(default=None, max_length=128)


class LedgerAppendRequest(BaseModel):
    entries: list[LedgerEntryIn] = Field(min_length=1)


class PointTotalsResponse(BaseModel):
    student_id: int
    balance: int
    lifetime: int
    level: int


class LedgerAppendResponse(BaseModel):
    appended: int
    totals: list[PointTotalsResponse]


class LedgerEntryResponse(BaseModel):
    id: int
    points: int
    category: str
    note: str | None = None
    source_type: str | None = None
    source_id: str | None = None
    created_at: datetime


class LedgerHistoryResponse(BaseModel):
    entries: list[LedgerEntryResponse]
    total: int
    page: int
    per_page: int


class PointsSummaryResponse(BaseModel):
    student_id: int
    name: str
    balance: int
    lifetime: int
    level: int
    points_into_level: int
    points_for_level: int
    next_level: int
    next_level_min: int
    is_max_level: bool


class RedeemRequest(BaseModel):
    cost: int = Field(gt=0, le=MAX_POINTS)
    note: str | None = Field(default=None, max_length=200)


# --- Claims ---


class ClaimRequestBody(BaseModel):
    student_id: int
    category: ClaimCategory
    points: int | None = Field(default=None, le=MAX_POINTS)
    role: str | None = None
    event_id: str | None = Field(default=None, max_length=80)


class ClaimResponse(BaseModel):
    granted: bool
    claim_key: str
    claim_date: date
    points: int = 0
    reason: str | None = None
    balance: int | None = None


class ClaimStatusEntry(BaseModel):
    claimed_at: datetime
    points: int


class ClaimStatusResponse(BaseModel):
    student_id: int
    claim_date: date
    bonus_cycle_date: date
    claimed: dict[str, ClaimStatusEntry]
    next_reset: datetime


# --- Leaderboards ---


class RankedRowResponse(BaseModel):
    rank: int
    student_id: int
    name: str
    value: float


class LeaderboardResponse(BaseModel):
    metric: str
    label: str
    higher_is_better: bool
    rows: list[RankedRowResponse]


class AllLeaderboardsResponse(BaseModel):
    boards: list[LeaderboardResponse]


# --- Badges ---


class SweepRequest(BaseModel):
    rule_id: str | None = None
    student_id: int | None = None


class RuleSweepResponse(BaseModel):
    rule_id: str
    status: str
    eligible: int
    already_held: int
    awarded: int
    awarded_student_ids: list[int] = []
    error: str | None = None


class SweepResponse(BaseModel):
    total_awarded: int
    failed_rules: list[str]
    results: list[RuleSweepResponse]


class BadgeAwardRequest(BaseModel):
    student_id: int
    badge_id: str = Field(min_length=1, max_length=64)
    note: str | None = Field(default=None, max_length=200)


class BadgeAwardResponse(BaseModel):
    student_id: int
    badge_id: str
    granted: bool
    points_awarded: int = 0
    reason: str | None = None
    balance: int | None = None


class StudentBadgeResponse(BaseModel):
    badge_id: str
    name: str
    category: str
    awarded_at: datetime
    points_awarded: int
    source: str
    note: str | None = None


class StudentBadgesResponse(BaseModel):
    student_id: int
    badges: list[StudentBadgeResponse]


# --- Levels ---


class LevelEntry(BaseModel):
    level: int
    min_lifetime_points: int


class LevelsResponse(BaseModel):
    base_jump: int
    difficulty_pct: int
    persisted: bool
    levels: list[LevelEntry]


class LevelsUpdateRequest(BaseModel):
    base_jump: int = Field(ge=0, le=MAX_POINTS)
    difficulty_pct: int = Field(ge=0, le=100)


class LevelChange(BaseModel):
    student_id: int
    name: str
    old_level: int
    new_level: int


class LevelRecomputeResponse(BaseModel):
    changed: list[LevelChange]


# --- Skill Sprint ---


class SkillSprintResponse(BaseModel):
    id: int
    student_id: int
    title: str | None = None
    assigned_at: datetime
    due_at: datetime
    reward_points: int
    prize_now: int
    prize_drop_per_day: float
    pool_dropped: int
    penalty_lost: int
    charged_days: int
    completed_at: datetime | None = None
    awarded_points: int | None = None
    is_overdue: bool
    balance: int | None = None


# --- Activity ---


class ActivityIncrementRequest(BaseModel):
    metric: str
    delta: int = Field(default=1, ge=-MAX_POINTS, le=MAX_POINTS)


class ActivityIncrementResponse(BaseModel):
    student_id: int
    metric: str
    value: int
