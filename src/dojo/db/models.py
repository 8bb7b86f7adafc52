"""ORM models for the points ledger and gamification rules engine.

The ledger is the only durable truth for points. ``Student.points_balance``,
``Student.lifetime_points`` and ``Student.level`` are a projection of it that
the recompute engine rebuilds from the full log.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dojo.db.base import Base, BigIntPK, JSONType

StudentFK = BigInteger().with_variant(Integer, "sqlite")


# ---------------------------------------------------------------------------
# Students (roster owned elsewhere; point fields owned by the recompute engine)
# ---------------------------------------------------------------------------


class Student(Base):
    """Maps to the 'students' table."""

    __tablename__ = "students"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    points_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default="0", default=0)
    lifetime_points: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default="0", default=0)
    level: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1", default=1)
    is_competition_team: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false(), default=False)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class LedgerEntry(Base):
    """Immutable signed point transaction. Never updated or deleted."""

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(
        StudentFK, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    note: Mapped[str | None] = mapped_column(String(200), nullable=True)
    source_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    source_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


# ---------------------------------------------------------------------------
# Levels
# ---------------------------------------------------------------------------


class LevelThreshold(Base):
    """Persisted level table. Level 1 is always 0 points."""

    __tablename__ = "level_thresholds"

    level: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    min_lifetime_points: Mapped[int] = mapped_column(BigInteger, nullable=False)


class LevelSettings(Base):
    """Single-row curve parameters used when no thresholds are persisted."""

    __tablename__ = "level_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False, default=1)
    base_jump: Mapped[int] = mapped_column(Integer, nullable=False)
    difficulty_pct: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Badges
# ---------------------------------------------------------------------------


class BadgeRule(Base):
    """Declarative badge rule. ``criteria`` is a tagged JSON object (see badge_criteria)."""

    __tablename__ = "badge_rules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False, server_default="achievement")
    criteria: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    points_award: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=true(), default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)


class StudentBadgeAward(Base):
    """Badges held by students. UNIQUE(student_id, badge_id): granted at most once, ever."""

    __tablename__ = "student_badge_awards"
    __table_args__ = (
        UniqueConstraint("student_id", "badge_id", name="uq_student_badge_awards_student_badge"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(
        StudentFK, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )
    badge_id: Mapped[str] = mapped_column(String(64), ForeignKey("badge_rules.id"), nullable=False)
    awarded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    points_awarded: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)
    note: Mapped[str | None] = mapped_column(String(200), nullable=True)
    source: Mapped[str] = mapped_column(String(16), nullable=False, server_default="auto", default="auto")

    badge: Mapped[BadgeRule] = relationship("BadgeRule", lazy="joined")


# ---------------------------------------------------------------------------
# Daily claims
# ---------------------------------------------------------------------------


class DailyClaimRecord(Base):
    """One row per (student, claim category, civil date). The unique key is the claim gate."""

    __tablename__ = "daily_claims"
    __table_args__ = (
        UniqueConstraint(
            "student_id", "claim_category", "claim_date", name="uq_daily_claims_student_category_date"
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(
        StudentFK, ForeignKey("students.id", ondelete="CASCADE"), nullable=False
    )
    claim_category: Mapped[str] = mapped_column(String(96), nullable=False)
    claim_date: Mapped[date] = mapped_column(Date, nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)
    claimed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Skill Sprint
# ---------------------------------------------------------------------------


class SkillSprintAssignment(Base):
    """Time-boxed challenge whose prize decays linearly to zero at ``due_at``."""

    __tablename__ = "skill_sprints"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(
        StudentFK, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str | None] = mapped_column(String(128), nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reward_points: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)
    penalty_points_per_day: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)
    charged_days: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    awarded_points: Mapped[int | None] = mapped_column(Integer, nullable=True)


# ---------------------------------------------------------------------------
# Precomputed aggregates (written by roster / attendance / battle collaborators)
# ---------------------------------------------------------------------------


class StudentActivityCount(Base):
    """Per-student activity counter, e.g. check-ins or battle wins."""

    __tablename__ = "student_activity_counts"
    __table_args__ = (
        UniqueConstraint("student_id", "metric", name="uq_student_activity_counts_student_metric"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(
        StudentFK, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )
    metric: Mapped[str] = mapped_column(String(32), nullable=False)
    value: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PerformanceStat(Base):
    """Admin-defined stat (e.g. '40m sprint seconds') ranked on its own leaderboard."""

    __tablename__ = "performance_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    unit: Mapped[str | None] = mapped_column(String(32), nullable=True)
    higher_is_better: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=true(), default=True)
    min_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=true(), default=True)


class StudentStatRecord(Base):
    """One recorded value of a performance stat."""

    __tablename__ = "student_stat_records"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(
        StudentFK, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )
    stat_id: Mapped[int] = mapped_column(Integer, ForeignKey("performance_stats.id"), nullable=False, index=True)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Leaderboard bonus snapshots
# ---------------------------------------------------------------------------


class LeaderboardBonusSnapshot(Base):
    """Frozen daily leaderboard placements used by the leaderboard bonus claim."""

    __tablename__ = "leaderboard_bonus_snapshots"
    __table_args__ = (
        UniqueConstraint(
            "snapshot_date", "board_key", "student_id", name="uq_lb_bonus_snapshots_date_board_student"
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    board_key: Mapped[str] = mapped_column(String(64), nullable=False)
    student_id: Mapped[int] = mapped_column(
        StudentFK, ForeignKey("students.id", ondelete="CASCADE"), nullable=False
    )
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    board_points: Mapped[int] = mapped_column(Integer, nullable=False)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class Notification(Base):
    """Persisted student notifications (badge earned, level up...)."""

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(
        StudentFK, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false(), default=False)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
