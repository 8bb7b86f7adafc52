"""Points engine schema: ledger, levels, badges, claims, sprints, boards.

Revision ID: 001_points_engine
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa  # noqa: F401
from alembic import op

revision: str = "001_points_engine"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Students (point fields are a projection of the ledger) ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS students (
            id                  BIGSERIAL PRIMARY KEY,
            name                VARCHAR(128) NOT NULL,
            points_balance      BIGINT NOT NULL DEFAULT 0,
            lifetime_points     BIGINT NOT NULL DEFAULT 0,
            level               INT NOT NULL DEFAULT 1,
            is_competition_team BOOLEAN NOT NULL DEFAULT FALSE,
            created_at          TIMESTAMPTZ DEFAULT now(),
            updated_at          TIMESTAMPTZ
        )
    """)

    # --- Ledger (append-only) ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS ledger_entries (
            id          BIGSERIAL PRIMARY KEY,
            student_id  BIGINT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
            points      INT NOT NULL CHECK (points <> 0),
            category    VARCHAR(32) NOT NULL,
            note        VARCHAR(200),
            source_type VARCHAR(32),
            source_id   VARCHAR(128),
            created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_ledger_entries_student_id ON ledger_entries (student_id)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_ledger_entries_category ON ledger_entries (category)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_ledger_entries_created_at ON ledger_entries (created_at)")
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_ledger_entries_student_created
        ON ledger_entries (student_id, created_at DESC)
    """)

    # --- Levels ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS level_thresholds (
            level               INT PRIMARY KEY CHECK (level >= 1),
            min_lifetime_points BIGINT NOT NULL CHECK (min_lifetime_points >= 0)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS level_settings (
            id             INT PRIMARY KEY DEFAULT 1 CHECK (id = 1),
            base_jump      INT NOT NULL,
            difficulty_pct INT NOT NULL,
            updated_at     TIMESTAMPTZ
        )
    """)

    # --- Badges ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS badge_rules (
            id           VARCHAR(64) PRIMARY KEY,
            name         VARCHAR(128) NOT NULL,
            category     VARCHAR(32) NOT NULL DEFAULT 'achievement',
            criteria     JSONB NOT NULL,
            points_award INT NOT NULL DEFAULT 0,
            enabled      BOOLEAN NOT NULL DEFAULT TRUE,
            sort_order   INT NOT NULL DEFAULT 0
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS student_badge_awards (
            id             BIGSERIAL PRIMARY KEY,
            student_id     BIGINT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
            badge_id       VARCHAR(64) NOT NULL REFERENCES badge_rules(id),
            awarded_at     TIMESTAMPTZ NOT NULL,
            points_awarded INT NOT NULL DEFAULT 0,
            note           VARCHAR(200),
            source         VARCHAR(16) NOT NULL DEFAULT 'auto',
            CONSTRAINT uq_student_badge_awards_student_badge UNIQUE (student_id, badge_id)
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_student_badge_awards_student_id ON student_badge_awards (student_id)")

    # --- Daily claims (the unique key is the claim gate) ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS daily_claims (
            id             BIGSERIAL PRIMARY KEY,
            student_id     BIGINT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
            claim_category VARCHAR(96) NOT NULL,
            claim_date     DATE NOT NULL,
            points         INT NOT NULL DEFAULT 0,
            claimed_at     TIMESTAMPTZ NOT NULL,
            CONSTRAINT uq_daily_claims_student_category_date UNIQUE (student_id, claim_category, claim_date)
        )
    """)

    # --- Skill Sprint ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS skill_sprints (
            id                     BIGSERIAL PRIMARY KEY,
            student_id             BIGINT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
            title                  VARCHAR(128),
            assigned_at            TIMESTAMPTZ NOT NULL,
            due_at                 TIMESTAMPTZ NOT NULL,
            reward_points          INT NOT NULL DEFAULT 0,
            penalty_points_per_day INT NOT NULL DEFAULT 0,
            charged_days           INT NOT NULL DEFAULT 0,
            completed_at           TIMESTAMPTZ,
            awarded_points         INT
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_skill_sprints_student_id ON skill_sprints (student_id)")

    # --- Aggregates ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS student_activity_counts (
            id         BIGSERIAL PRIMARY KEY,
            student_id BIGINT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
            metric     VARCHAR(32) NOT NULL,
            value      INT NOT NULL DEFAULT 0,
            updated_at TIMESTAMPTZ,
            CONSTRAINT uq_student_activity_counts_student_metric UNIQUE (student_id, metric)
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_student_activity_counts_student_id ON student_activity_counts (student_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS performance_stats (
            id               SERIAL PRIMARY KEY,
            name             VARCHAR(128) NOT NULL,
            unit             VARCHAR(32),
            higher_is_better BOOLEAN NOT NULL DEFAULT TRUE,
            min_value        DOUBLE PRECISION,
            enabled          BOOLEAN NOT NULL DEFAULT TRUE
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS student_stat_records (
            id          BIGSERIAL PRIMARY KEY,
            student_id  BIGINT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
            stat_id     INT NOT NULL REFERENCES performance_stats(id),
            value       DOUBLE PRECISION NOT NULL,
            recorded_at TIMESTAMPTZ NOT NULL
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_student_stat_records_student_id ON student_stat_records (student_id)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_student_stat_records_stat_id ON student_stat_records (stat_id)")

    # --- Leaderboard bonus snapshots ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS leaderboard_bonus_snapshots (
            id            BIGSERIAL PRIMARY KEY,
            snapshot_date DATE NOT NULL,
            board_key     VARCHAR(64) NOT NULL,
            student_id    BIGINT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
            rank          INT NOT NULL,
            board_points  INT NOT NULL,
            CONSTRAINT uq_lb_bonus_snapshots_date_board_student UNIQUE (snapshot_date, board_key, student_id)
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_leaderboard_bonus_snapshots_snapshot_date ON leaderboard_bonus_snapshots (snapshot_date)")

    # --- Notifications ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS notifications (
            id         BIGSERIAL PRIMARY KEY,
            student_id BIGINT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
            kind       VARCHAR(32) NOT NULL,
            message    TEXT NOT NULL,
            read       BOOLEAN NOT NULL DEFAULT FALSE,
            created_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_notifications_student_unread
        ON notifications (student_id)
        WHERE read = FALSE
    """)


def downgrade() -> None:
    for table in (
        "notifications",
        "leaderboard_bonus_snapshots",
        "student_stat_records",
        "performance_stats",
        "student_activity_counts",
        "skill_sprints",
        "daily_claims",
        "student_badge_awards",
        "badge_rules",
        "level_settings",
        "level_thresholds",
        "ledger_entries",
        "students",
    ):
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE")  # noqa: S608
